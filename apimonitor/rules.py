"""Incident trigger and resolve rules over recent check history.

All functions here are pure: callers fetch the history and pass it in,
newest result first.

Triggering and resolving use different thresholds for latency (100% vs 70%
of the configured threshold) so an endpoint hovering around the threshold
does not open and close incidents on every tick.
"""

from dataclasses import dataclass
from datetime import datetime

from .models import (
    INCIDENT_DOWNTIME,
    INCIDENT_LATENCY_SPIKE,
    STATUS_UP,
    CheckResult,
    EndpointConfig,
    Incident,
)

# Latency spike trigger
MIN_LATENCY_SAMPLES = 5
RECENT_SAMPLE_SIZE = 3
MIN_RECENT_HIGH_SAMPLES = 2
TRIGGER_MEAN_RATIO = 0.8

# Resolve predicates
RESOLVE_SAMPLE_SIZE = 3
RESOLVE_LATENCY_RATIO = 0.7


@dataclass(frozen=True)
class Trigger:
    """A rule firing for one endpoint: the incident it would open."""

    incident_type: str
    severity: str
    summary: str
    start_time: datetime


def evaluate_downtime(
    endpoint: EndpointConfig,
    recent_checks: list[CheckResult],
    threshold: int,
) -> Trigger | None:
    """Fire when the last `threshold` results are all DOWN or ERROR.

    Args:
        endpoint: Endpoint the history belongs to.
        recent_checks: Most recent results, newest first.
        threshold: Number of consecutive failures required.

    Returns:
        A critical downtime Trigger starting at the oldest failure in the
        window, or None.
    """
    window = recent_checks[:threshold]
    if len(window) < threshold:
        return None
    if not all(check.is_failure for check in window):
        return None

    return Trigger(
        incident_type=INCIDENT_DOWNTIME,
        severity="critical",
        summary=f"{endpoint.name} is experiencing downtime ({threshold} consecutive failures)",
        start_time=window[-1].checked_at,
    )


def evaluate_latency_spike(
    endpoint: EndpointConfig,
    window_checks: list[CheckResult],
    threshold_ms: int,
) -> Trigger | None:
    """Fire on sustained high latency within the trailing window.

    Requires at least MIN_LATENCY_SAMPLES samples, at least 2 of the 3 newest
    strictly above `threshold_ms`, and the mean of the whole window above
    80% of `threshold_ms`.

    Args:
        endpoint: Endpoint the history belongs to.
        window_checks: UP results in the window, newest first. Results
            without latency are ignored.
        threshold_ms: Latency threshold in milliseconds.

    Returns:
        A high severity latency_spike Trigger starting at the oldest of the
        recent high-latency samples, or None.
    """
    samples = [check for check in window_checks if check.status == STATUS_UP and check.latency_ms is not None]
    if len(samples) < MIN_LATENCY_SAMPLES:
        return None

    mean_latency = sum(check.latency_ms for check in samples) / len(samples)
    recent_high = [check for check in samples[:RECENT_SAMPLE_SIZE] if check.latency_ms > threshold_ms]

    if len(recent_high) < MIN_RECENT_HIGH_SAMPLES:
        return None
    if mean_latency <= threshold_ms * TRIGGER_MEAN_RATIO:
        return None

    return Trigger(
        incident_type=INCIDENT_LATENCY_SPIKE,
        severity="high",
        summary=f"{endpoint.name} is experiencing high latency (avg: {round(mean_latency)}ms)",
        start_time=recent_high[-1].checked_at,
    )


def should_resolve(incident: Incident, recent_checks: list[CheckResult], threshold_ms: int) -> bool:
    """Decide whether an open incident has cleared.

    Looks only at the RESOLVE_SAMPLE_SIZE most recent results of the
    endpoint; with fewer results the incident stays open. Incident kinds
    without a rule (error_rate) never auto-resolve.

    Args:
        incident: The open incident.
        recent_checks: Most recent results of its endpoint, newest first.
        threshold_ms: Latency spike threshold in milliseconds.
    """
    window = recent_checks[:RESOLVE_SAMPLE_SIZE]
    if len(window) < RESOLVE_SAMPLE_SIZE:
        return False

    if incident.type == INCIDENT_DOWNTIME:
        return all(check.status == STATUS_UP for check in window)

    if incident.type == INCIDENT_LATENCY_SPIKE:
        limit = threshold_ms * RESOLVE_LATENCY_RATIO
        return all(check.latency_ms is not None and check.latency_ms < limit for check in window)

    return False
