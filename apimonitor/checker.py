"""Checker loop that probes every enabled endpoint on a fixed interval."""

import dataclasses
import logging
import sqlite3
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from threading import Event, Thread

from .config import CheckerConfig
from .database import NotFoundError, get_enabled_endpoints, get_endpoint, insert_check
from .models import CheckResult, EndpointConfig
from .notifier import Notifier
from .probe import check_endpoint
from .schedule import advance_tick

logger = logging.getLogger(__name__)


class Checker:
    """Threaded checker that probes all enabled endpoints at a global interval.

    Every tick loads the enabled endpoints from the store, probes them
    concurrently and persists each result on its own, so one endpoint's
    failure never cancels or delays another's. Ticks run on a single loop
    thread; a tick that overruns the interval pushes the next one back
    instead of overlapping with it.

    Example:
        checker = Checker(db_conn, config.checker, notifier)
        checker.start()
        # ... later ...
        checker.stop()
    """

    def __init__(
        self,
        db_conn: sqlite3.Connection,
        config: CheckerConfig | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        """Initialize the checker.

        Args:
            db_conn: Database connection for reading endpoints and storing results.
            config: Checker configuration (interval, timeout, pool size).
            notifier: Optional notifier receiving a check:result event per stored result.
        """
        self._db_conn = db_conn
        self._config = config or CheckerConfig()
        self._notifier = notifier
        self._stop_event = Event()
        self._thread: Thread | None = None

    def start(self) -> None:
        """Start the checker loop in a background thread.

        The first tick runs immediately. A loop that was asked to stop but is
        still finishing its last tick is left to exit on its own; the new loop
        gets a fresh stop event.
        """
        if self.is_running():
            logger.warning("Checker is already running")
            return

        if self._thread is not None and self._thread.is_alive():
            logger.info("Previous checker loop is still finishing its last tick")

        self._stop_event = Event()
        self._thread = Thread(target=self._run_loop, args=(self._stop_event,), daemon=True, name="checker-loop")
        self._thread.start()
        logger.info("Starting synthetic checker (interval: %ds)", self._config.interval)

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the checker loop.

        Future ticks are cancelled; an in-flight tick is allowed to finish
        for up to `timeout` seconds.
        """
        if self._thread is None or not self._thread.is_alive():
            return

        self._stop_event.set()
        self._thread.join(timeout=timeout)

        if self._thread.is_alive():
            logger.warning("Checker thread did not stop within timeout")
        else:
            logger.info("Synthetic checker stopped")

    def is_running(self) -> bool:
        """Check if the checker loop is running and has not been asked to stop."""
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def run_once(self) -> list[CheckResult]:
        """Run a single tick: probe every enabled endpoint and store the results.

        Returns:
            The results of this tick, in completion order.
        """
        try:
            endpoints = get_enabled_endpoints(self._db_conn)
        except Exception as e:
            logger.error("Error running checks: %s", e)
            return []

        logger.debug("Running checks for %d endpoints", len(endpoints))
        if not endpoints:
            return []

        results: list[CheckResult] = []
        max_workers = min(self._config.max_workers, len(endpoints))
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="probe") as executor:
            futures = {executor.submit(self._probe_and_store, endpoint): endpoint for endpoint in endpoints}

            for future in as_completed(futures):
                endpoint = futures[future]
                try:
                    results.append(future.result())
                except Exception as e:
                    logger.error("Failed to check %s: %s", endpoint.id, e)

        return results

    def check_now(self, endpoint_id: str) -> CheckResult:
        """Probe one endpoint immediately, outside the schedule.

        Uses the same classification and persistence as scheduled ticks.

        Raises:
            NotFoundError: If the endpoint does not exist.
        """
        endpoint = get_endpoint(self._db_conn, endpoint_id)
        if endpoint is None:
            raise NotFoundError(f"Endpoint {endpoint_id} not found")
        return self._probe_and_store(endpoint)

    def _run_loop(self, stop_event: Event) -> None:
        """Main checker loop - runs in background thread."""
        logger.debug("Checker loop started")
        interval = self._config.interval
        next_tick = time.monotonic()

        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error("Check tick failed: %s", e)

            now = time.monotonic()
            next_tick, skipped = advance_tick(next_tick + interval, now, interval)
            if skipped:
                logger.warning("Check tick overran the %ss interval, skipping %d tick(s)", interval, skipped)

            stop_event.wait(timeout=next_tick - now)

        logger.debug("Checker loop exited")

    def _probe_and_store(self, endpoint: EndpointConfig) -> CheckResult:
        result = check_endpoint(endpoint, timeout=self._config.timeout)
        return self._store_result(result)

    def _store_result(self, result: CheckResult) -> CheckResult:
        """Store a check result and emit it. Failures are logged, not raised."""
        try:
            result = dataclasses.replace(result, id=insert_check(self._db_conn, result))
        except Exception as e:
            logger.error("Error storing check result for %s: %s", result.endpoint_id, e)
            return result

        if self._notifier is not None:
            try:
                self._notifier.check_result(result)
            except Exception as e:
                logger.error("Check notification failed: %s", e)

        return result
