"""Data models for endpoint probes and incidents."""

from dataclasses import dataclass, field
from datetime import datetime

# Check outcome classification
STATUS_UP = "UP"
STATUS_DOWN = "DOWN"
STATUS_ERROR = "ERROR"
CHECK_STATUSES = (STATUS_UP, STATUS_DOWN, STATUS_ERROR)

# Incident kinds. error_rate is reserved: no rule produces it.
INCIDENT_DOWNTIME = "downtime"
INCIDENT_LATENCY_SPIKE = "latency_spike"
INCIDENT_ERROR_RATE = "error_rate"
INCIDENT_TYPES = (INCIDENT_DOWNTIME, INCIDENT_LATENCY_SPIKE, INCIDENT_ERROR_RATE)

SEVERITIES = ("low", "medium", "high", "critical")

# Methods that carry a request body
BODY_METHODS = ("POST", "PUT", "PATCH")


@dataclass(frozen=True)
class EndpointConfig:
    """An HTTP endpoint to probe.

    Attributes:
        id: Stable identifier of the endpoint.
        name: Human readable name used in incident summaries.
        url: Full URL to request.
        method: HTTP method.
        headers: Extra request headers, or None.
        body: Request body (str, or a JSON-serialisable dict/list), or None.
        expected_status: HTTP status code that counts as UP.
        enabled: Whether the endpoint is probed and evaluated.
        schedule_seconds: Declared probe interval. Stored but not honored;
            all endpoints are probed on the checker interval.
    """

    id: str
    name: str
    url: str
    method: str = "GET"
    headers: dict[str, str] | None = None
    body: str | dict | list | None = None
    expected_status: int = 200
    enabled: bool = True
    schedule_seconds: int = 30


@dataclass(frozen=True)
class CheckResult:
    """Result of a single endpoint probe.

    Attributes:
        endpoint_id: Identifier of the probed endpoint.
        checked_at: Timestamp when the probe started (UTC).
        status: One of UP, DOWN or ERROR.
        latency_ms: Elapsed time in milliseconds, or None if not measured.
        http_status: HTTP status code, or None if no response was obtained.
        error_message: Failure description for DOWN and ERROR results.
        id: Row id once persisted, None before.
    """

    endpoint_id: str
    checked_at: datetime
    status: str
    latency_ms: int | None
    http_status: int | None
    error_message: str | None
    id: int | None = None

    @property
    def is_failure(self) -> bool:
        """True for DOWN and ERROR results."""
        return self.status in (STATUS_DOWN, STATUS_ERROR)


@dataclass(frozen=True)
class Incident:
    """A problem period for one endpoint.

    Attributes:
        id: Row id.
        endpoint_id: Identifier of the affected endpoint.
        type: One of INCIDENT_TYPES.
        summary: Human readable description.
        severity: One of SEVERITIES.
        start_time: When the problem period began.
        end_time: When the incident was resolved, None while open.
        resolved: Whether the incident is closed. Never goes back to False.
    """

    id: int
    endpoint_id: str
    type: str
    summary: str
    severity: str
    start_time: datetime
    end_time: datetime | None = None
    resolved: bool = False


@dataclass(frozen=True)
class IncidentStats:
    """Incident counts over a period, grouped by type and severity."""

    total: int
    resolved: int
    ongoing: int
    by_type: dict[str, int] = field(default_factory=dict)
    by_severity: dict[str, int] = field(default_factory=dict)
