"""apimonitor - Synthetic HTTP endpoint monitoring with incident detection."""

import argparse
import logging
import signal
import sys
from pathlib import Path
from threading import Event
from typing import Optional

__version__ = "0.1.0"

# Global shutdown event for signal handlers
_shutdown_event: Optional[Event] = None

# Look-back periods accepted by the stats command, in days
STATS_PERIODS = {"7d": 7, "30d": 30, "90d": 90}

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _log_config_source(config_path: str) -> None:
    """Log whether the configuration came from a file or from defaults."""
    if Path(config_path).is_file():
        logger.info("Configuration loaded from %s", config_path)
    else:
        logger.info("Configuration file %s not found, using defaults and environment", config_path)


def _open_store(args: argparse.Namespace):
    """Load configuration and open the database, exiting on failure."""
    from .config import ConfigError, load_config
    from .database import DatabaseError, init_db

    try:
        config = load_config(args.config, required=False)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    try:
        db_conn = init_db(config.database.path)
    except DatabaseError as e:
        print(f"Error: {e}")
        sys.exit(1)

    return config, db_conn


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - start the checker and the incident detector."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("apimonitor %s starting...", __version__)

    # Import here to avoid circular imports and allow logging setup first
    from .checker import Checker
    from .config import ConfigError, load_config
    from .database import DatabaseError, init_db, upsert_endpoint
    from .detector import IncidentDetector
    from .notifier import Notifier

    # 1. Load configuration
    try:
        config = load_config(args.config, required=False)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)
    _log_config_source(args.config)

    # 2. Initialize database
    try:
        db_conn = init_db(config.database.path)
        logger.info("Database initialized at %s", config.database.path)
    except DatabaseError as e:
        logger.error("Database error: %s", e)
        sys.exit(1)

    # 3. Seed endpoints declared in the configuration file
    for endpoint in config.endpoints:
        try:
            upsert_endpoint(db_conn, endpoint)
        except DatabaseError as e:
            logger.error("Failed to seed endpoint %s: %s", endpoint.id, e)
    if config.endpoints:
        logger.info("Seeded %d endpoint(s) from configuration", len(config.endpoints))

    # 4. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    # 5. Start components
    notifier = Notifier(config.notifier)
    if config.notifier.webhooks:
        logger.info("Events delivered to %d webhook(s)", len(config.notifier.webhooks))

    checker = Checker(db_conn, config.checker, notifier)
    detector = IncidentDetector(db_conn, config.detector, notifier)

    try:
        checker.start()
        detector.start()

        logger.info("All components started, waiting for shutdown signal...")

        # 6. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        # 7. Cleanup - stop all components
        logger.info("Shutting down components...")

        checker.stop()
        detector.stop()
        notifier.close(wait=False)

        db_conn.close()
        logger.info("Database connection closed")

        logger.info("Shutdown complete")


def _cmd_check(args: argparse.Namespace) -> None:
    """Execute the check command - probe one endpoint now."""
    from .checker import Checker
    from .database import NotFoundError
    from .notifier import Notifier

    config, db_conn = _open_store(args)
    notifier = Notifier(config.notifier, background=False)
    try:
        result = Checker(db_conn, config.checker, notifier).check_now(args.endpoint_id)
    except NotFoundError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        notifier.close()
        db_conn.close()

    latency = f"{result.latency_ms}ms" if result.latency_ms is not None else "-"
    http_status = result.http_status if result.http_status is not None else "-"
    print(f"{result.endpoint_id}: {result.status} (HTTP {http_status}, {latency})")
    if result.error_message:
        print(f"  {result.error_message}")


def _cmd_resolve(args: argparse.Namespace) -> None:
    """Execute the resolve command - manually close an incident."""
    from .database import NotFoundError
    from .detector import IncidentDetector
    from .notifier import Notifier

    config, db_conn = _open_store(args)
    notifier = Notifier(config.notifier, background=False)
    try:
        incident = IncidentDetector(db_conn, config.detector, notifier).resolve_incident(args.incident_id)
    except NotFoundError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        notifier.close()
        db_conn.close()

    print(f"Resolved incident {incident.id} ({incident.type}) at {incident.end_time.isoformat()}")


def _cmd_incidents(args: argparse.Namespace) -> None:
    """Execute the incidents command - list incidents."""
    from .database import list_incidents

    _, db_conn = _open_store(args)
    try:
        incidents = list_incidents(
            db_conn,
            endpoint_id=args.endpoint,
            resolved=False if args.open else None,
            incident_type=args.type,
        )
    finally:
        db_conn.close()

    if not incidents:
        print("No incidents.")
        return

    for incident in incidents:
        state = "resolved" if incident.resolved else "OPEN"
        print(
            f"#{incident.id} [{state}] {incident.type} {incident.severity} "
            f"{incident.endpoint_id} since {incident.start_time.isoformat()}: {incident.summary}"
        )


def _cmd_stats(args: argparse.Namespace) -> None:
    """Execute the stats command - count incidents over a period."""
    from datetime import UTC, datetime, timedelta

    from .database import get_incident_stats

    _, db_conn = _open_store(args)
    since = datetime.now(UTC) - timedelta(days=STATS_PERIODS[args.period])
    try:
        stats = get_incident_stats(db_conn, since)
    finally:
        db_conn.close()

    print(f"Incidents in the last {args.period}: {stats.total} ({stats.ongoing} ongoing, {stats.resolved} resolved)")
    print("By type:")
    for incident_type, count in stats.by_type.items():
        print(f"  {incident_type}: {count}")
    print("By severity:")
    for severity, count in stats.by_severity.items():
        print(f"  {severity}: {count}")


def _cmd_replay(args: argparse.Namespace) -> None:
    """Execute the replay command - show the checks around an incident."""
    from .database import NotFoundError, get_incident_replay

    _, db_conn = _open_store(args)
    try:
        incident, checks = get_incident_replay(db_conn, args.incident_id)
    except NotFoundError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        db_conn.close()

    end = incident.end_time.isoformat() if incident.end_time else "ongoing"
    print(f"#{incident.id} {incident.type} {incident.severity} {incident.endpoint_id}: {incident.summary}")
    print(f"  {incident.start_time.isoformat()} -> {end}")
    print(f"{len(checks)} check(s):")
    for check in checks:
        latency = f"{check.latency_ms}ms" if check.latency_ms is not None else "-"
        http_status = check.http_status if check.http_status is not None else "-"
        line = f"  {check.checked_at.isoformat()} {check.status} HTTP {http_status} {latency}"
        if check.error_message:
            line += f" ({check.error_message})"
        print(line)


def _cmd_test_notifier(args: argparse.Namespace) -> None:
    """Execute the test-notifier command - verify webhook configuration."""
    from .notifier import Notifier

    config, db_conn = _open_store(args)
    db_conn.close()

    if not config.notifier.webhooks:
        print("Error: No webhooks configured in notifier section")
        sys.exit(1)

    notifier = Notifier(config.notifier, background=False)
    print(f"Testing {len(config.notifier.webhooks)} webhook(s)...\n")
    results = notifier.test_webhooks()

    success_count = sum(1 for success in results.values() if success)
    for url, success in results.items():
        status = "SUCCESS" if success else "FAILED"
        print(f"{status}: {url}")

    print(f"\nResult: {success_count}/{len(results)} webhooks successful")

    if success_count < len(results):
        sys.exit(1)


def _add_config_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the apimonitor package."""
    parser = argparse.ArgumentParser(
        description="apimonitor - Synthetic HTTP endpoint monitoring with incident detection"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"apimonitor {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser(
        "run",
        help="Start the checker and incident detector (default)",
    )
    _add_config_argument(run_parser)
    run_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    run_parser.set_defaults(func=_cmd_run)

    check_parser = subparsers.add_parser(
        "check",
        help="Probe one endpoint immediately",
    )
    _add_config_argument(check_parser)
    check_parser.add_argument("endpoint_id", help="Endpoint id")
    check_parser.set_defaults(func=_cmd_check)

    resolve_parser = subparsers.add_parser(
        "resolve",
        help="Manually resolve an open incident",
    )
    _add_config_argument(resolve_parser)
    resolve_parser.add_argument("incident_id", type=int, help="Incident id")
    resolve_parser.set_defaults(func=_cmd_resolve)

    incidents_parser = subparsers.add_parser(
        "incidents",
        help="List incidents, newest first",
    )
    _add_config_argument(incidents_parser)
    incidents_parser.add_argument(
        "--open",
        action="store_true",
        help="Only show unresolved incidents",
    )
    incidents_parser.add_argument("--endpoint", help="Only show incidents for this endpoint id")
    incidents_parser.add_argument("--type", help="Only show incidents of this type")
    incidents_parser.set_defaults(func=_cmd_incidents)

    stats_parser = subparsers.add_parser(
        "stats",
        help="Count incidents by type and severity",
    )
    _add_config_argument(stats_parser)
    stats_parser.add_argument(
        "--period",
        choices=list(STATS_PERIODS),
        default="30d",
        help="Look-back period (default: 30d)",
    )
    stats_parser.set_defaults(func=_cmd_stats)

    replay_parser = subparsers.add_parser(
        "replay",
        help="Show the checks recorded around an incident",
    )
    _add_config_argument(replay_parser)
    replay_parser.add_argument("incident_id", type=int, help="Incident id")
    replay_parser.set_defaults(func=_cmd_replay)

    test_parser = subparsers.add_parser(
        "test-notifier",
        help="Send a test event to every configured webhook",
    )
    _add_config_argument(test_parser)
    test_parser.set_defaults(func=_cmd_test_notifier)

    args = parser.parse_args(argv)

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = "config.yaml"
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
