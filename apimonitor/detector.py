"""Incident lifecycle: open incidents from detection rules and auto-resolve them."""

import logging
import sqlite3
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from threading import Event, Thread

from .config import DetectorConfig
from .database import (
    IncidentExistsError,
    NotFoundError,
    create_incident_if_absent,
    get_checks_in_window,
    get_enabled_endpoints,
    get_endpoint,
    get_open_incidents,
    get_recent_checks,
)
from .database import resolve_incident as mark_resolved
from .models import INCIDENT_TYPES, SEVERITIES, STATUS_UP, EndpointConfig, Incident
from .notifier import Notifier
from .rules import RESOLVE_SAMPLE_SIZE, Trigger, evaluate_downtime, evaluate_latency_spike, should_resolve
from .schedule import advance_tick

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class IncidentDetector:
    """Threaded detector that opens and closes incidents on a fixed interval.

    Each tick evaluates the downtime and latency spike rules for every
    enabled endpoint, then checks every open incident (for any endpoint,
    enabled or not) against its resolve rule. Incident states only move
    from open to resolved.

    Opening an incident is a conditional insert in the store, so two ticks
    evaluating the same endpoint at once still leave at most one open
    incident per (endpoint, type).

    Example:
        detector = IncidentDetector(db_conn, config.detector, notifier)
        detector.start()
        # ... later ...
        detector.stop()
    """

    def __init__(
        self,
        db_conn: sqlite3.Connection,
        config: DetectorConfig | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the detector.

        Args:
            db_conn: Database connection shared with the checker.
            config: Detection thresholds and tick interval.
            notifier: Optional notifier for incident:created / incident:resolved events.
            clock: Returns the current UTC time; used for windows and end times.
        """
        self._db_conn = db_conn
        self._config = config or DetectorConfig()
        self._notifier = notifier
        self._clock = clock or _utcnow
        self._stop_event = Event()
        self._thread: Thread | None = None

    def start(self) -> None:
        """Start the detector loop in a background thread.

        The first tick runs immediately. A loop that was asked to stop but is
        still finishing its last tick is left to exit on its own; the new loop
        gets a fresh stop event.
        """
        if self.is_running():
            logger.warning("Incident detector is already running")
            return

        if self._thread is not None and self._thread.is_alive():
            logger.info("Previous detector loop is still finishing its last tick")

        self._stop_event = Event()
        self._thread = Thread(target=self._run_loop, args=(self._stop_event,), daemon=True, name="detector-loop")
        self._thread.start()
        logger.info("Starting incident detector (interval: %ds)", self._config.interval)

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the detector loop.

        Future ticks are cancelled; an in-flight tick is allowed to finish
        for up to `timeout` seconds.
        """
        if self._thread is None or not self._thread.is_alive():
            return

        self._stop_event.set()
        self._thread.join(timeout=timeout)

        if self._thread.is_alive():
            logger.warning("Detector thread did not stop within timeout")
        else:
            logger.info("Incident detector stopped")

    def is_running(self) -> bool:
        """Check if the detector loop is running and has not been asked to stop."""
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def run_once(self) -> tuple[list[Incident], list[Incident]]:
        """Run a single detection tick.

        Returns:
            Tuple of (incidents created, incidents resolved) by this tick.
        """
        try:
            endpoints = get_enabled_endpoints(self._db_conn)
        except Exception as e:
            logger.error("Error detecting incidents: %s", e)
            return [], []

        created: list[Incident] = []
        for endpoint in endpoints:
            try:
                created.extend(self._detect(endpoint))
            except Exception as e:
                logger.error("Incident detection failed for endpoint %s: %s", endpoint.id, e)

        resolved = self._auto_resolve()
        return created, resolved

    def resolve_incident(self, incident_id: int) -> Incident:
        """Manually resolve an open incident, bypassing the rules.

        Raises:
            NotFoundError: If the incident does not exist or is already resolved.
        """
        incident = mark_resolved(self._db_conn, incident_id, self._clock())
        if incident is None:
            raise NotFoundError(f"Incident {incident_id} not found or already resolved")

        logger.info("Manually resolved incident %d (%s)", incident.id, incident.type)
        self._emit_resolved(incident)
        return incident

    def create_incident(
        self,
        endpoint_id: str,
        incident_type: str,
        summary: str,
        severity: str = "medium",
        start_time: datetime | None = None,
    ) -> Incident:
        """Manually open an incident.

        Raises:
            ValueError: If the type or severity is unknown.
            NotFoundError: If the endpoint does not exist.
            IncidentExistsError: If an incident of this type is already open for the endpoint.
        """
        if incident_type not in INCIDENT_TYPES:
            raise ValueError(f"Unknown incident type '{incident_type}'. Must be one of: {INCIDENT_TYPES}")
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown severity '{severity}'. Must be one of: {SEVERITIES}")
        if get_endpoint(self._db_conn, endpoint_id) is None:
            raise NotFoundError(f"Endpoint {endpoint_id} not found")

        incident = create_incident_if_absent(
            self._db_conn,
            endpoint_id,
            incident_type,
            summary,
            severity,
            start_time or self._clock(),
        )
        if incident is None:
            raise IncidentExistsError(f"An open {incident_type} incident already exists for endpoint {endpoint_id}")

        logger.info("Manually created %s incident %d for endpoint %s", incident_type, incident.id, endpoint_id)
        self._emit_created(incident)
        return incident

    def _run_loop(self, stop_event: Event) -> None:
        """Main detector loop - runs in background thread."""
        logger.debug("Detector loop started")
        interval = self._config.interval
        next_tick = time.monotonic()

        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error("Detection tick failed: %s", e)

            now = time.monotonic()
            next_tick, skipped = advance_tick(next_tick + interval, now, interval)
            if skipped:
                logger.warning("Detection tick overran the %ss interval, skipping %d tick(s)", interval, skipped)

            stop_event.wait(timeout=next_tick - now)

        logger.debug("Detector loop exited")

    def _detect(self, endpoint: EndpointConfig) -> list[Incident]:
        """Evaluate both trigger rules for one endpoint and open incidents."""
        threshold = self._config.consecutive_failures_threshold
        recent = get_recent_checks(self._db_conn, endpoint.id, threshold)
        downtime = evaluate_downtime(endpoint, recent, threshold)

        since = self._clock() - timedelta(minutes=self._config.latency_spike_window_minutes)
        window = get_checks_in_window(self._db_conn, endpoint.id, since, status=STATUS_UP, with_latency=True)
        latency_spike = evaluate_latency_spike(endpoint, window, self._config.latency_spike_threshold_ms)

        created: list[Incident] = []
        for trigger in (downtime, latency_spike):
            if trigger is None:
                continue
            incident = self._open_incident(endpoint, trigger)
            if incident is not None:
                created.append(incident)
        return created

    def _open_incident(self, endpoint: EndpointConfig, trigger: Trigger) -> Incident | None:
        incident = create_incident_if_absent(
            self._db_conn,
            endpoint.id,
            trigger.incident_type,
            trigger.summary,
            trigger.severity,
            trigger.start_time,
        )
        if incident is None:
            logger.debug("Open %s incident already exists for endpoint %s", trigger.incident_type, endpoint.id)
            return None

        logger.warning("Created %s incident for endpoint %s", incident.type, endpoint.id)
        self._emit_created(incident)
        return incident

    def _auto_resolve(self) -> list[Incident]:
        """Resolve every open incident whose rule has cleared."""
        try:
            open_incidents = get_open_incidents(self._db_conn)
        except Exception as e:
            logger.error("Error loading open incidents: %s", e)
            return []

        threshold_ms = self._config.latency_spike_threshold_ms
        resolved: list[Incident] = []
        for incident in open_incidents:
            try:
                recent = get_recent_checks(self._db_conn, incident.endpoint_id, RESOLVE_SAMPLE_SIZE)
                if not should_resolve(incident, recent, threshold_ms):
                    continue
                updated = mark_resolved(self._db_conn, incident.id, self._clock())
            except Exception as e:
                logger.error("Auto-resolve failed for incident %d: %s", incident.id, e)
                continue

            # None means it was resolved elsewhere since we loaded it
            if updated is None:
                continue

            logger.info("Auto-resolved incident %d (%s)", updated.id, updated.type)
            self._emit_resolved(updated)
            resolved.append(updated)

        return resolved

    def _emit_created(self, incident: Incident) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.incident_created(incident)
        except Exception as e:
            logger.error("Incident notification failed: %s", e)

    def _emit_resolved(self, incident: Incident) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.incident_resolved(incident)
        except Exception as e:
            logger.error("Incident notification failed: %s", e)
