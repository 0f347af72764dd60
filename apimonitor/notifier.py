"""Fire-and-forget event emission to the live push layer."""

import logging
import queue
import threading
from collections.abc import Callable
from datetime import UTC, datetime

import requests

from .config import NotifierConfig, WebhookConfig
from .models import CheckResult, Incident

logger = logging.getLogger(__name__)

EVENT_CHECK_RESULT = "check:result"
EVENT_INCIDENT_CREATED = "incident:created"
EVENT_INCIDENT_RESOLVED = "incident:resolved"

Listener = Callable[[str, dict], None]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def check_result_payload(result: CheckResult) -> dict:
    """Build the event payload for a persisted check result."""
    return {
        "id": result.id,
        "endpoint_id": result.endpoint_id,
        "timestamp": _iso(result.checked_at),
        "status": result.status,
        "latency_ms": result.latency_ms,
        "http_status": result.http_status,
        "error_message": result.error_message,
    }


def incident_payload(incident: Incident) -> dict:
    """Build the event payload for an incident."""
    return {
        "id": incident.id,
        "endpoint_id": incident.endpoint_id,
        "type": incident.type,
        "summary": incident.summary,
        "severity": incident.severity,
        "start_time": _iso(incident.start_time),
        "end_time": _iso(incident.end_time),
        "resolved": incident.resolved,
    }


class Notifier:
    """Delivers engine events to in-process listeners and push-layer webhooks.

    Delivery never raises into the caller: listener and webhook failures are
    logged and dropped. In background mode webhooks are posted by daemon
    worker threads reading a bounded queue. While the queue is full (push
    layer down or slow) new events are dropped, so an unreachable push layer
    neither holds up scheduler ticks nor delays shutdown.
    """

    def __init__(
        self,
        config: NotifierConfig | None = None,
        background: bool = True,
        max_workers: int = 2,
    ):
        """Initialize notifier with configuration.

        Args:
            config: Notifier configuration with webhooks, retry policy and queue size.
            background: Post webhooks from worker threads (False posts inline).
            max_workers: Worker threads used for background delivery.
        """
        self._config = config or NotifierConfig()
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._queue: queue.Queue | None = None
        self._workers: list[threading.Thread] = []
        self.dropped_events = 0

        if background and self._config.webhooks:
            self._queue = queue.Queue(maxsize=self._config.max_queue_size)
            for i in range(max_workers):
                worker = threading.Thread(target=self._deliver_loop, daemon=True, name=f"notifier-{i}")
                worker.start()
                self._workers.append(worker)

    def add_listener(self, listener: Listener) -> None:
        """Register a callback invoked as listener(event, payload)."""
        with self._lock:
            self._listeners.append(listener)

    def emit(self, event: str, payload: dict) -> None:
        """Emit an event to every listener and enabled webhook."""
        with self._lock:
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(event, payload)
            except Exception as e:
                logger.error("Event listener failed for %s: %s", event, e)

        if self._closed.is_set():
            logger.debug("Notifier closed, not delivering %s to webhooks", event)
            return

        for webhook in self._config.webhooks:
            if not webhook.enabled:
                continue
            if self._queue is None:
                self._send_webhook(webhook, event, payload)
                continue
            try:
                self._queue.put_nowait((webhook, event, payload))
            except queue.Full:
                with self._lock:
                    self.dropped_events += 1
                logger.warning("Notifier queue full, dropping %s event for %s", event, webhook.url)

    def check_result(self, result: CheckResult) -> None:
        self.emit(EVENT_CHECK_RESULT, check_result_payload(result))

    def incident_created(self, incident: Incident) -> None:
        self.emit(EVENT_INCIDENT_CREATED, incident_payload(incident))

    def incident_resolved(self, incident: Incident) -> None:
        self.emit(EVENT_INCIDENT_RESOLVED, incident_payload(incident))

    def close(self, wait: bool = True) -> None:
        """Stop webhook delivery.

        Args:
            wait: Deliver every queued event before stopping. With False,
                queued events are discarded and in-flight retries are
                abandoned; a request already on the wire is left to the
                daemon worker.
        """
        if self._queue is not None and wait:
            self._queue.join()

        self._closed.set()

        if self._queue is not None:
            discarded = 0
            while True:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    break
                self._queue.task_done()
                discarded += 1
            if discarded:
                logger.warning("Notifier closed with %d undelivered event(s)", discarded)

        if wait:
            for worker in self._workers:
                worker.join()

    def _deliver_loop(self) -> None:
        """Worker loop - posts queued events until the notifier is closed."""
        while not self._closed.is_set():
            try:
                webhook, event, payload = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                if not self._closed.is_set():
                    self._send_webhook(webhook, event, payload)
            except Exception as e:
                logger.error("Webhook delivery failed for %s: %s", event, e)
            finally:
                self._queue.task_done()

    def _send_webhook(self, webhook: WebhookConfig, event: str, payload: dict) -> bool:
        """Post an event to a webhook (with retries).

        Args:
            webhook: The webhook configuration
            event: Event name
            payload: Event payload

        Returns:
            True if the webhook accepted the event, False otherwise
        """
        body = {
            "event": event,
            "data": payload,
            "sent_at": datetime.now(UTC).isoformat(),
        }
        max_retries = self._config.max_retries
        retry_count = 0

        while retry_count <= max_retries:
            try:
                response = requests.post(
                    webhook.url,
                    json=body,
                    timeout=webhook.timeout_seconds,
                )
                response.raise_for_status()
                logger.debug("Event %s delivered to %s", event, webhook.url)
                return True

            except requests.RequestException as e:
                retry_count += 1
                if retry_count <= max_retries:
                    delay = self._config.retry_delay * (2 ** (retry_count - 1))
                    logger.warning(
                        "Event %s delivery to %s failed (attempt %d/%d, retrying in %ds): %s",
                        event,
                        webhook.url,
                        retry_count,
                        max_retries + 1,
                        delay,
                        e,
                    )
                    if self._closed.wait(delay):
                        logger.debug("Notifier closed, abandoning %s delivery to %s", event, webhook.url)
                        return False
                else:
                    logger.error(
                        "Event %s delivery to %s failed after %d attempts: %s",
                        event,
                        webhook.url,
                        retry_count,
                        e,
                    )
        return False

    def test_webhooks(self) -> dict[str, bool]:
        """Send a test event to every configured webhook.

        Returns:
            Dictionary mapping webhook URLs to success status
        """
        results = {}

        for webhook in self._config.webhooks:
            if not webhook.enabled:
                results[webhook.url] = False
                continue

            try:
                response = requests.post(
                    webhook.url,
                    json={"event": "test", "data": {}, "sent_at": datetime.now(UTC).isoformat()},
                    timeout=webhook.timeout_seconds,
                )
                response.raise_for_status()
                results[webhook.url] = True
                logger.info("Test event sent successfully to %s", webhook.url)

            except requests.RequestException as e:
                results[webhook.url] = False
                logger.error("Test event failed for %s: %s", webhook.url, e)

        return results
