"""Tests for the incident detector."""

import logging
import sqlite3
import threading
import time
from datetime import UTC, datetime, timedelta
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from apimonitor.config import DetectorConfig
from apimonitor.database import (
    DatabaseError,
    IncidentExistsError,
    NotFoundError,
    get_incident,
    init_db,
    insert_check,
    list_incidents,
    upsert_endpoint,
)
from apimonitor.detector import IncidentDetector
from apimonitor.models import (
    INCIDENT_DOWNTIME,
    INCIDENT_ERROR_RATE,
    INCIDENT_LATENCY_SPIKE,
    STATUS_DOWN,
    STATUS_UP,
    CheckResult,
    EndpointConfig,
)
from apimonitor.notifier import EVENT_INCIDENT_CREATED, EVENT_INCIDENT_RESOLVED, Notifier

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Settable clock passed to the detector."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def db_conn(tmp_path: Path) -> sqlite3.Connection:
    """Create a temporary database for testing."""
    db_path = str(tmp_path / "test.db")
    conn = init_db(db_path)
    yield conn
    conn.close()


@pytest.fixture
def endpoint(db_conn: sqlite3.Connection) -> EndpointConfig:
    endpoint = EndpointConfig(id="api", name="API", url="https://api.example.com/health")
    upsert_endpoint(db_conn, endpoint)
    return endpoint


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(NOW)


@pytest.fixture
def detector(db_conn: sqlite3.Connection, clock: FakeClock) -> IncidentDetector:
    return IncidentDetector(db_conn, DetectorConfig(), clock=clock)


def _record(
    db_conn: sqlite3.Connection,
    at: datetime,
    status: str = STATUS_UP,
    latency_ms: int | None = 100,
    endpoint_id: str = "api",
) -> None:
    insert_check(
        db_conn,
        CheckResult(
            endpoint_id=endpoint_id,
            checked_at=at,
            status=status,
            latency_ms=latency_ms,
            http_status=200 if status == STATUS_UP else 500,
            error_message=None if status == STATUS_UP else "Expected status 200, got 500",
        ),
    )


class TestDowntimeDetection:
    """Tests for downtime incidents."""

    def test_three_failures_open_one_critical_incident(
        self,
        db_conn: sqlite3.Connection,
        endpoint: EndpointConfig,
        detector: IncidentDetector,
    ) -> None:
        for seconds in (90, 60, 30):
            _record(db_conn, NOW - timedelta(seconds=seconds), STATUS_DOWN)

        created, resolved = detector.run_once()

        assert len(created) == 1
        assert resolved == []
        incident = created[0]
        assert incident.type == INCIDENT_DOWNTIME
        assert incident.severity == "critical"
        assert incident.start_time == NOW - timedelta(seconds=90)
        assert incident.summary == "API is experiencing downtime (3 consecutive failures)"

    def test_repeated_ticks_do_not_duplicate(
        self,
        db_conn: sqlite3.Connection,
        endpoint: EndpointConfig,
        detector: IncidentDetector,
    ) -> None:
        for seconds in (90, 60, 30):
            _record(db_conn, NOW - timedelta(seconds=seconds), STATUS_DOWN)

        detector.run_once()
        _record(db_conn, NOW, STATUS_DOWN)
        created, _ = detector.run_once()

        assert created == []
        assert len(list_incidents(db_conn, endpoint_id="api")) == 1

    def test_fewer_failures_than_threshold(
        self,
        db_conn: sqlite3.Connection,
        endpoint: EndpointConfig,
        detector: IncidentDetector,
    ) -> None:
        _record(db_conn, NOW - timedelta(seconds=60), STATUS_DOWN)
        _record(db_conn, NOW - timedelta(seconds=30), STATUS_DOWN)

        created, _ = detector.run_once()

        assert created == []

    def test_threshold_from_config(
        self,
        db_conn: sqlite3.Connection,
        endpoint: EndpointConfig,
        clock: FakeClock,
    ) -> None:
        detector = IncidentDetector(db_conn, DetectorConfig(consecutive_failures_threshold=5), clock=clock)
        for seconds in (90, 60, 30):
            _record(db_conn, NOW - timedelta(seconds=seconds), STATUS_DOWN)

        created, _ = detector.run_once()

        assert created == []

    def test_disabled_endpoint_is_not_evaluated(
        self,
        db_conn: sqlite3.Connection,
        detector: IncidentDetector,
    ) -> None:
        upsert_endpoint(db_conn, EndpointConfig(id="off", name="Off", url="https://off.example.com", enabled=False))
        for seconds in (90, 60, 30):
            _record(db_conn, NOW - timedelta(seconds=seconds), STATUS_DOWN, endpoint_id="off")

        created, _ = detector.run_once()

        assert created == []

    def test_auto_resolves_after_recovery(
        self,
        db_conn: sqlite3.Connection,
        endpoint: EndpointConfig,
        detector: IncidentDetector,
        clock: FakeClock,
    ) -> None:
        for seconds in (90, 60, 30):
            _record(db_conn, NOW - timedelta(seconds=seconds), STATUS_DOWN)
        created, _ = detector.run_once()

        for seconds in (30, 60, 90):
            _record(db_conn, NOW + timedelta(seconds=seconds))
        clock.now = NOW + timedelta(minutes=2)
        created_again, resolved = detector.run_once()

        assert created_again == []
        assert [i.id for i in resolved] == [created[0].id]
        stored = get_incident(db_conn, created[0].id)
        assert stored.resolved is True
        assert stored.end_time == NOW + timedelta(minutes=2)

    def test_new_incident_after_resolution(
        self,
        db_conn: sqlite3.Connection,
        endpoint: EndpointConfig,
        detector: IncidentDetector,
    ) -> None:
        for seconds in (90, 60, 30):
            _record(db_conn, NOW - timedelta(seconds=seconds), STATUS_DOWN)
        first, _ = detector.run_once()
        for seconds in (10, 20, 30):
            _record(db_conn, NOW + timedelta(seconds=seconds))
        detector.run_once()

        for seconds in (40, 50, 60):
            _record(db_conn, NOW + timedelta(seconds=seconds), STATUS_DOWN)
        second, _ = detector.run_once()

        assert len(second) == 1
        assert second[0].id != first[0].id
        assert get_incident(db_conn, first[0].id).resolved is True


class TestLatencySpikeDetection:
    """Tests for latency spike incidents."""

    def test_opens_and_resolves_latency_spike(
        self,
        db_conn: sqlite3.Connection,
        endpoint: EndpointConfig,
        detector: IncidentDetector,
        clock: FakeClock,
    ) -> None:
        for seconds in (240, 180, 120, 60, 30):
            _record(db_conn, NOW - timedelta(seconds=seconds), latency_ms=2500)

        created, _ = detector.run_once()

        assert len(created) == 1
        spike = created[0]
        assert spike.type == INCIDENT_LATENCY_SPIKE
        assert spike.severity == "high"
        assert spike.start_time == NOW - timedelta(seconds=120)
        assert spike.summary == "API is experiencing high latency (avg: 2500ms)"

        for seconds in (30, 60, 90):
            _record(db_conn, NOW + timedelta(seconds=seconds), latency_ms=1000)
        clock.now = NOW + timedelta(minutes=2)
        created_again, resolved = detector.run_once()

        assert created_again == []
        assert [i.id for i in resolved] == [spike.id]
        assert get_incident(db_conn, spike.id).end_time == NOW + timedelta(minutes=2)

    def test_stays_open_while_latency_near_threshold(
        self,
        db_conn: sqlite3.Connection,
        endpoint: EndpointConfig,
        detector: IncidentDetector,
        clock: FakeClock,
    ) -> None:
        for seconds in (240, 180, 120, 60, 30):
            _record(db_conn, NOW - timedelta(seconds=seconds), latency_ms=2500)
        created, _ = detector.run_once()

        for seconds in (30, 60, 90):
            _record(db_conn, NOW + timedelta(seconds=seconds), latency_ms=1500)
        clock.now = NOW + timedelta(minutes=2)
        _, resolved = detector.run_once()

        assert resolved == []
        assert get_incident(db_conn, created[0].id).resolved is False

    def test_samples_outside_window_ignored(
        self,
        db_conn: sqlite3.Connection,
        endpoint: EndpointConfig,
        detector: IncidentDetector,
    ) -> None:
        for minutes in (9, 8, 7, 6):
            _record(db_conn, NOW - timedelta(minutes=minutes), latency_ms=2500)
        _record(db_conn, NOW - timedelta(seconds=30), latency_ms=2500)

        created, _ = detector.run_once()

        assert created == []


class TestConcurrentTicks:
    """Tests for overlapping detection ticks."""

    def test_concurrent_ticks_open_single_incident(
        self,
        db_conn: sqlite3.Connection,
        endpoint: EndpointConfig,
        clock: FakeClock,
    ) -> None:
        for seconds in (90, 60, 30):
            _record(db_conn, NOW - timedelta(seconds=seconds), STATUS_DOWN)

        workers = 8
        barrier = threading.Barrier(workers)
        created_counts: list[int] = []
        lock = threading.Lock()

        def tick() -> None:
            detector = IncidentDetector(db_conn, DetectorConfig(), clock=clock)
            barrier.wait()
            created, _ = detector.run_once()
            with lock:
                created_counts.append(len(created))

        threads = [threading.Thread(target=tick) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert sum(created_counts) == 1
        assert len(list_incidents(db_conn, resolved=False, incident_type=INCIDENT_DOWNTIME)) == 1


class TestManualOverride:
    """Tests for manual incident creation and resolution."""

    def test_manual_resolve(
        self,
        db_conn: sqlite3.Connection,
        endpoint: EndpointConfig,
        detector: IncidentDetector,
        clock: FakeClock,
    ) -> None:
        incident = detector.create_incident("api", INCIDENT_DOWNTIME, "Investigating")
        clock.now = NOW + timedelta(minutes=3)

        resolved = detector.resolve_incident(incident.id)

        assert resolved.resolved is True
        assert resolved.end_time == NOW + timedelta(minutes=3)

    def test_resolving_twice_raises(
        self,
        db_conn: sqlite3.Connection,
        endpoint: EndpointConfig,
        detector: IncidentDetector,
        clock: FakeClock,
    ) -> None:
        incident = detector.create_incident("api", INCIDENT_DOWNTIME, "Investigating")
        detector.resolve_incident(incident.id)
        clock.now = NOW + timedelta(minutes=10)

        with pytest.raises(NotFoundError):
            detector.resolve_incident(incident.id)
        assert get_incident(db_conn, incident.id).end_time == NOW

    def test_resolving_unknown_incident_raises(self, detector: IncidentDetector) -> None:
        with pytest.raises(NotFoundError):
            detector.resolve_incident(999)

    def test_manual_resolve_bypasses_rules(
        self,
        db_conn: sqlite3.Connection,
        endpoint: EndpointConfig,
        detector: IncidentDetector,
    ) -> None:
        for seconds in (90, 60, 30):
            _record(db_conn, NOW - timedelta(seconds=seconds), STATUS_DOWN)
        created, _ = detector.run_once()

        resolved = detector.resolve_incident(created[0].id)

        assert resolved.resolved is True

    def test_create_uses_defaults(self, endpoint: EndpointConfig, detector: IncidentDetector) -> None:
        incident = detector.create_incident("api", INCIDENT_ERROR_RATE, "Elevated errors")

        assert incident.severity == "medium"
        assert incident.start_time == NOW
        assert incident.resolved is False

    def test_create_for_unknown_endpoint_raises(self, detector: IncidentDetector) -> None:
        with pytest.raises(NotFoundError):
            detector.create_incident("missing", INCIDENT_DOWNTIME, "x")

    def test_create_with_unknown_type_raises(self, endpoint: EndpointConfig, detector: IncidentDetector) -> None:
        with pytest.raises(ValueError, match="Unknown incident type"):
            detector.create_incident("api", "meltdown", "x")

    def test_create_with_unknown_severity_raises(self, endpoint: EndpointConfig, detector: IncidentDetector) -> None:
        with pytest.raises(ValueError, match="Unknown severity"):
            detector.create_incident("api", INCIDENT_DOWNTIME, "x", severity="urgent")

    def test_create_duplicate_open_incident_raises(
        self,
        endpoint: EndpointConfig,
        detector: IncidentDetector,
    ) -> None:
        detector.create_incident("api", INCIDENT_DOWNTIME, "first")

        with pytest.raises(IncidentExistsError):
            detector.create_incident("api", INCIDENT_DOWNTIME, "second")

    def test_error_rate_is_never_auto_resolved(
        self,
        db_conn: sqlite3.Connection,
        endpoint: EndpointConfig,
        detector: IncidentDetector,
    ) -> None:
        incident = detector.create_incident("api", INCIDENT_ERROR_RATE, "Elevated errors")
        for seconds in (30, 60, 90):
            _record(db_conn, NOW + timedelta(seconds=seconds), latency_ms=10)

        _, resolved = detector.run_once()

        assert resolved == []
        assert get_incident(db_conn, incident.id).resolved is False

    def test_open_incident_on_disabled_endpoint_still_auto_resolves(
        self,
        db_conn: sqlite3.Connection,
        endpoint: EndpointConfig,
        detector: IncidentDetector,
    ) -> None:
        incident = detector.create_incident("api", INCIDENT_DOWNTIME, "Investigating")
        upsert_endpoint(db_conn, EndpointConfig(id="api", name="API", url=endpoint.url, enabled=False))
        for seconds in (30, 60, 90):
            _record(db_conn, NOW + timedelta(seconds=seconds))

        _, resolved = detector.run_once()

        assert [i.id for i in resolved] == [incident.id]


class TestNotifications:
    """Tests for incident events."""

    def test_emits_created_and_resolved(
        self,
        db_conn: sqlite3.Connection,
        endpoint: EndpointConfig,
        clock: FakeClock,
    ) -> None:
        notifier = Notifier(background=False)
        events: list[tuple[str, dict]] = []
        notifier.add_listener(lambda event, payload: events.append((event, payload)))
        detector = IncidentDetector(db_conn, DetectorConfig(), notifier, clock=clock)

        for seconds in (90, 60, 30):
            _record(db_conn, NOW - timedelta(seconds=seconds), STATUS_DOWN)
        detector.run_once()
        for seconds in (30, 60, 90):
            _record(db_conn, NOW + timedelta(seconds=seconds))
        detector.run_once()

        assert [event for event, _ in events] == [EVENT_INCIDENT_CREATED, EVENT_INCIDENT_RESOLVED]
        assert events[0][1]["type"] == INCIDENT_DOWNTIME
        assert events[1][1]["resolved"] is True
        assert events[1][1]["end_time"] is not None

    def test_no_event_when_incident_already_open(
        self,
        db_conn: sqlite3.Connection,
        endpoint: EndpointConfig,
        clock: FakeClock,
    ) -> None:
        notifier = Notifier(background=False)
        events: list[str] = []
        notifier.add_listener(lambda event, payload: events.append(event))
        detector = IncidentDetector(db_conn, DetectorConfig(), notifier, clock=clock)

        for seconds in (90, 60, 30):
            _record(db_conn, NOW - timedelta(seconds=seconds), STATUS_DOWN)
        detector.run_once()
        detector.run_once()

        assert events == [EVENT_INCIDENT_CREATED]


class TestFailureHandling:
    """Tests for store failures during a tick."""

    def test_endpoint_load_failure_is_swallowed(self, detector: IncidentDetector) -> None:
        with patch("apimonitor.detector.get_enabled_endpoints", side_effect=DatabaseError("locked")):
            assert detector.run_once() == ([], [])

    def test_failure_for_one_endpoint_does_not_stop_others(
        self,
        db_conn: sqlite3.Connection,
        endpoint: EndpointConfig,
        detector: IncidentDetector,
    ) -> None:
        upsert_endpoint(db_conn, EndpointConfig(id="web", name="Web", url="https://www.example.com"))
        for seconds in (90, 60, 30):
            _record(db_conn, NOW - timedelta(seconds=seconds), STATUS_DOWN, endpoint_id="web")

        real_detect = IncidentDetector._detect

        def flaky_detect(self, ep):
            if ep.id == "api":
                raise DatabaseError("locked")
            return real_detect(self, ep)

        with patch.object(IncidentDetector, "_detect", flaky_detect):
            created, _ = detector.run_once()

        assert [i.endpoint_id for i in created] == ["web"]


class TestLifecycle:
    """Tests for starting and stopping the detector loop."""

    def test_start_runs_first_tick_immediately(self, detector: IncidentDetector) -> None:
        ticked = threading.Event()

        with patch.object(detector, "run_once", side_effect=lambda: ticked.set() or ([], [])):
            detector.start()
            try:
                assert ticked.wait(timeout=2)
                assert detector.is_running()
            finally:
                detector.stop()

        assert not detector.is_running()

    def test_start_twice_keeps_single_thread(self, detector: IncidentDetector) -> None:
        with patch.object(detector, "run_once", return_value=([], [])):
            detector.start()
            thread = detector._thread
            detector.start()
            try:
                assert detector._thread is thread
            finally:
                detector.stop()

    def test_stop_without_start(self, detector: IncidentDetector) -> None:
        detector.stop()
        assert not detector.is_running()

    def test_restart_while_previous_tick_in_flight(self, detector: IncidentDetector) -> None:
        entered = threading.Event()
        release = threading.Event()
        restarted = threading.Event()
        calls: list[int] = []

        def tick() -> tuple[list, list]:
            calls.append(1)
            if len(calls) == 1:
                entered.set()
                release.wait(timeout=5)
            else:
                restarted.set()
            return [], []

        with patch.object(detector, "run_once", side_effect=tick):
            detector.start()
            try:
                assert entered.wait(timeout=2)
                old_thread = detector._thread
                detector.stop(timeout=0.1)
                assert old_thread.is_alive()
                assert not detector.is_running()

                detector.start()
                assert restarted.wait(timeout=2)

                release.set()
                old_thread.join(timeout=2)
                assert not old_thread.is_alive()
                assert detector.is_running()
                assert detector._thread is not old_thread
            finally:
                release.set()
                detector.stop()

    def test_tick_after_failed_tick(self, db_conn: sqlite3.Connection, clock: FakeClock) -> None:
        detector = IncidentDetector(db_conn, SimpleNamespace(interval=0.05), clock=clock)
        second_tick = threading.Event()
        calls: list[int] = []

        def tick() -> tuple[list, list]:
            calls.append(1)
            if len(calls) == 1:
                raise DatabaseError("locked")
            second_tick.set()
            return [], []

        with patch.object(detector, "run_once", side_effect=tick):
            detector.start()
            try:
                assert second_tick.wait(timeout=2)
                assert detector.is_running()
            finally:
                detector.stop()

    def test_overrunning_tick_is_not_overlapped(
        self,
        db_conn: sqlite3.Connection,
        clock: FakeClock,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        detector = IncidentDetector(db_conn, SimpleNamespace(interval=0.1), clock=clock)
        spans: list[tuple[float, float]] = []
        done = threading.Event()

        def tick() -> tuple[list, list]:
            began = time.monotonic()
            if not spans:
                time.sleep(0.35)
            spans.append((began, time.monotonic()))
            if len(spans) == 3:
                done.set()
            return [], []

        with caplog.at_level(logging.WARNING, logger="apimonitor.detector"):
            with patch.object(detector, "run_once", side_effect=tick):
                detector.start()
                try:
                    assert done.wait(timeout=3)
                finally:
                    detector.stop()

        assert all(later[0] >= earlier[1] for earlier, later in zip(spans, spans[1:]))
        assert any("skipping" in record.getMessage() for record in caplog.records)
