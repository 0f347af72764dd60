"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .models import EndpointConfig


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


# Minimum interval between ticks in seconds.
MIN_CHECK_INTERVAL = 5
MIN_DETECTOR_INTERVAL = 5

# Probe timeout used when none is configured.
DEFAULT_CHECK_TIMEOUT = 30

HTTP_METHODS = ("GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS")


@dataclass(frozen=True)
class CheckerConfig:
    """Configuration for the checker loop."""

    interval: int = 30  # seconds between probe ticks
    timeout: int = DEFAULT_CHECK_TIMEOUT  # per-request timeout in seconds
    max_workers: int = 8  # concurrent probes per tick

    def __post_init__(self) -> None:
        if self.interval < MIN_CHECK_INTERVAL:
            raise ConfigError(f"Check interval must be at least {MIN_CHECK_INTERVAL} seconds (got {self.interval})")
        if self.timeout < 1:
            raise ConfigError(f"Check timeout must be at least 1 second (got {self.timeout})")
        if self.max_workers < 1:
            raise ConfigError(f"Checker max_workers must be at least 1 (got {self.max_workers})")


@dataclass(frozen=True)
class DetectorConfig:
    """Configuration for incident detection.

    - consecutive_failures_threshold: DOWN/ERROR results in a row that open a downtime incident.
    - latency_spike_threshold_ms: Latency above which a sample counts as slow.
    - latency_spike_window_minutes: Trailing window of UP samples used for latency spikes.
    """

    interval: int = 60
    consecutive_failures_threshold: int = 3
    latency_spike_threshold_ms: int = 2000
    latency_spike_window_minutes: int = 5

    def __post_init__(self) -> None:
        if self.interval < MIN_DETECTOR_INTERVAL:
            raise ConfigError(
                f"Detector interval must be at least {MIN_DETECTOR_INTERVAL} seconds (got {self.interval})"
            )
        if self.consecutive_failures_threshold < 1:
            raise ConfigError(
                f"Consecutive failures threshold must be at least 1 (got {self.consecutive_failures_threshold})"
            )
        if self.latency_spike_threshold_ms < 1:
            raise ConfigError(
                f"Latency spike threshold must be at least 1ms (got {self.latency_spike_threshold_ms})"
            )
        if self.latency_spike_window_minutes < 1:
            raise ConfigError(
                f"Latency spike window must be at least 1 minute (got {self.latency_spike_window_minutes})"
            )


def _get_default_db_path() -> str:
    """Get the default database path using XDG-compliant directory."""
    home = Path.home()
    return str(home / ".local" / "share" / "apimonitor" / "monitor.db")


DEFAULT_DB_PATH = _get_default_db_path()


@dataclass(frozen=True)
class DatabaseConfig:
    """Configuration for SQLite database."""

    path: str = DEFAULT_DB_PATH

    def __post_init__(self) -> None:
        if not self.path:
            raise ConfigError("Database path cannot be empty")


@dataclass(frozen=True)
class WebhookConfig:
    """A push-layer webhook that receives engine events."""

    url: str
    enabled: bool = True
    timeout_seconds: int = 10

    def __post_init__(self) -> None:
        if not self.url:
            raise ConfigError("Webhook URL cannot be empty")
        if not self.url.startswith(("http://", "https://")):
            raise ConfigError(f"Webhook URL must start with http:// or https://, got '{self.url}'")
        if self.timeout_seconds < 1:
            raise ConfigError(f"Webhook timeout must be at least 1 second, got {self.timeout_seconds}")


@dataclass(frozen=True)
class NotifierConfig:
    """Configuration for event emission to the push layer."""

    webhooks: list[WebhookConfig] = field(default_factory=list)
    max_retries: int = 2
    retry_delay: int = 1
    max_queue_size: int = 100  # pending webhook deliveries before new events are dropped

    def __post_init__(self) -> None:
        if not isinstance(self.webhooks, list):
            raise ConfigError("Webhooks must be a list")
        if self.max_retries < 0:
            raise ConfigError(f"Notifier max_retries must be non-negative, got {self.max_retries}")
        if self.retry_delay < 0:
            raise ConfigError(f"Notifier retry_delay must be non-negative, got {self.retry_delay}")
        if self.max_queue_size < 1:
            raise ConfigError(f"Notifier max_queue_size must be at least 1, got {self.max_queue_size}")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    endpoints: list[EndpointConfig] = field(default_factory=list)
    checker: CheckerConfig = field(default_factory=CheckerConfig)
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    notifier: NotifierConfig = field(default_factory=NotifierConfig)

    def __post_init__(self) -> None:
        ids = [endpoint.id for endpoint in self.endpoints]
        duplicates = [endpoint_id for endpoint_id in ids if ids.count(endpoint_id) > 1]
        if duplicates:
            raise ConfigError(f"Duplicate endpoint ids found: {set(duplicates)}")


def _parse_endpoint_config(data: dict, index: int) -> EndpointConfig:
    """Parse a single endpoint entry."""
    if not isinstance(data, dict):
        raise ConfigError(f"Endpoint entry {index} must be a dictionary")

    url = data.get("url")
    if url is None:
        raise ConfigError(f"Endpoint entry {index} is missing 'url' field")
    url = str(url)
    if not url.startswith(("http://", "https://")):
        raise ConfigError(f"Endpoint entry {index}: URL must start with http:// or https://")

    name = data.get("name")
    if name is None:
        raise ConfigError(f"Endpoint entry {index} is missing 'name' field")

    endpoint_id = str(data.get("id", name))
    if not endpoint_id:
        raise ConfigError(f"Endpoint entry {index} has an empty id")

    method = str(data.get("method", "GET")).upper()
    if method not in HTTP_METHODS:
        raise ConfigError(f"Endpoint '{endpoint_id}': unsupported method '{method}'")

    headers = data.get("headers")
    if headers is not None:
        if not isinstance(headers, dict):
            raise ConfigError(f"Endpoint '{endpoint_id}': headers must be a dictionary")
        headers = {str(k): str(v) for k, v in headers.items()}

    body = data.get("body")
    if body is not None and not isinstance(body, str | dict | list):
        body = str(body)

    expected_status = int(data.get("expected_status", 200))
    if not (100 <= expected_status <= 599):
        raise ConfigError(f"Endpoint '{endpoint_id}': invalid expected_status {expected_status} (must be 100-599)")

    schedule_seconds = int(data.get("schedule_seconds", 30))
    if schedule_seconds < 1:
        raise ConfigError(f"Endpoint '{endpoint_id}': schedule_seconds must be at least 1")

    return EndpointConfig(
        id=endpoint_id,
        name=str(name),
        url=url,
        method=method,
        headers=headers,
        body=body,
        expected_status=expected_status,
        enabled=bool(data.get("enabled", True)),
        schedule_seconds=schedule_seconds,
    )


def _parse_checker_config(data: dict | None) -> CheckerConfig:
    """Parse checker configuration section."""
    if data is None:
        return CheckerConfig()
    if not isinstance(data, dict):
        raise ConfigError("'checker' section must be a dictionary")

    return CheckerConfig(
        interval=int(data.get("interval", 30)),
        timeout=int(data.get("timeout", DEFAULT_CHECK_TIMEOUT)),
        max_workers=int(data.get("max_workers", 8)),
    )


def _parse_detector_config(data: dict | None) -> DetectorConfig:
    """Parse detector configuration section."""
    if data is None:
        return DetectorConfig()
    if not isinstance(data, dict):
        raise ConfigError("'detector' section must be a dictionary")

    return DetectorConfig(
        interval=int(data.get("interval", 60)),
        consecutive_failures_threshold=int(data.get("consecutive_failures_threshold", 3)),
        latency_spike_threshold_ms=int(data.get("latency_spike_threshold_ms", 2000)),
        latency_spike_window_minutes=int(data.get("latency_spike_window_minutes", 5)),
    )


def _parse_database_config(data: dict | None) -> DatabaseConfig:
    """Parse database configuration section."""
    if data is None:
        return DatabaseConfig()
    if not isinstance(data, dict):
        raise ConfigError("'database' section must be a dictionary")

    return DatabaseConfig(path=str(data.get("path", DEFAULT_DB_PATH)))


def _parse_webhook_config(data: dict, index: int) -> WebhookConfig:
    """Parse a single webhook configuration entry."""
    if not isinstance(data, dict):
        raise ConfigError(f"Webhook entry {index} must be a dictionary")

    url = data.get("url")
    if url is None:
        raise ConfigError(f"Webhook entry {index} is missing 'url' field")

    return WebhookConfig(
        url=str(url),
        enabled=bool(data.get("enabled", True)),
        timeout_seconds=int(data.get("timeout_seconds", 10)),
    )


def _parse_notifier_config(data: dict | None) -> NotifierConfig:
    """Parse notifier configuration section."""
    if data is None:
        return NotifierConfig()
    if not isinstance(data, dict):
        raise ConfigError("'notifier' section must be a dictionary")

    webhooks_data = data.get("webhooks", [])
    if not isinstance(webhooks_data, list):
        raise ConfigError("'notifier.webhooks' must be a list")

    return NotifierConfig(
        webhooks=[_parse_webhook_config(webhook_data, i) for i, webhook_data in enumerate(webhooks_data)],
        max_retries=int(data.get("max_retries", 2)),
        retry_delay=int(data.get("retry_delay", 1)),
        max_queue_size=int(data.get("max_queue_size", 100)),
    )


# (section, key, environment variable)
_ENV_OVERRIDES = (
    ("checker", "interval", "APIMONITOR_CHECK_INTERVAL_SECONDS"),
    ("checker", "timeout", "APIMONITOR_CHECK_TIMEOUT_SECONDS"),
    ("detector", "interval", "APIMONITOR_DETECTOR_INTERVAL_SECONDS"),
    ("detector", "consecutive_failures_threshold", "APIMONITOR_CONSECUTIVE_FAILURES_THRESHOLD"),
    ("detector", "latency_spike_threshold_ms", "APIMONITOR_LATENCY_SPIKE_THRESHOLD_MS"),
    ("detector", "latency_spike_window_minutes", "APIMONITOR_LATENCY_SPIKE_WINDOW_MINUTES"),
)


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - APIMONITOR_CHECK_INTERVAL_SECONDS: Override checker.interval
    - APIMONITOR_CHECK_TIMEOUT_SECONDS: Override checker.timeout
    - APIMONITOR_DETECTOR_INTERVAL_SECONDS: Override detector.interval
    - APIMONITOR_CONSECUTIVE_FAILURES_THRESHOLD: Override detector.consecutive_failures_threshold
    - APIMONITOR_LATENCY_SPIKE_THRESHOLD_MS: Override detector.latency_spike_threshold_ms
    - APIMONITOR_LATENCY_SPIKE_WINDOW_MINUTES: Override detector.latency_spike_window_minutes
    - APIMONITOR_DB_PATH: Override database.path
    """
    for section in ("checker", "detector", "database"):
        if config_data.get(section) is None:
            config_data[section] = {}

    for section, key, env_name in _ENV_OVERRIDES:
        value = os.environ.get(env_name)
        if value is None:
            continue
        try:
            config_data[section][key] = int(value)
        except ValueError:
            raise ConfigError(f"{env_name} must be an integer, got '{value}'")

    db_path = os.environ.get("APIMONITOR_DB_PATH")
    if db_path is not None:
        config_data["database"]["path"] = db_path

    return config_data


def load_config(config_path: str | None = None, required: bool = True) -> Config:
    """Load and validate configuration from a YAML file plus environment.

    Args:
        config_path: Path to the YAML configuration file, or None for
            environment-only configuration.
        required: If False, a missing file falls back to defaults.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    data: dict = {}

    if config_path is not None:
        path = Path(config_path)
        if path.exists():
            try:
                with open(path, encoding="utf-8") as f:
                    loaded = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Failed to parse YAML configuration: {e}")
            except OSError as e:
                raise ConfigError(f"Failed to read configuration file: {e}")

            if loaded is not None:
                if not isinstance(loaded, dict):
                    raise ConfigError("Configuration must be a YAML dictionary")
                data = loaded
        elif required:
            raise ConfigError(f"Configuration file not found: {config_path}")

    data = _apply_env_overrides(data)

    endpoints_data = data.get("endpoints") or []
    if not isinstance(endpoints_data, list):
        raise ConfigError("'endpoints' must be a list")

    try:
        return Config(
            endpoints=[_parse_endpoint_config(entry, i) for i, entry in enumerate(endpoints_data)],
            checker=_parse_checker_config(data.get("checker")),
            detector=_parse_detector_config(data.get("detector")),
            database=_parse_database_config(data.get("database")),
            notifier=_parse_notifier_config(data.get("notifier")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")
