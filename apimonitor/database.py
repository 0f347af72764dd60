"""SQLite persistence for endpoints, check results and incidents."""

import json
import sqlite3
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

from .models import (
    INCIDENT_TYPES,
    SEVERITIES,
    CheckResult,
    EndpointConfig,
    Incident,
    IncidentStats,
)


class DatabaseError(Exception):
    """Raised when a database operation fails."""

    pass


class NotFoundError(Exception):
    """Raised when a referenced endpoint or incident does not exist."""

    pass


class IncidentExistsError(Exception):
    """Raised when an open incident already exists for an (endpoint, type) pair."""

    pass


# Global lock for thread-safe database access.
# One connection is shared by the checker, the detector and manual callers.
_db_lock = threading.Lock()

# Checks fetched around an incident when replaying it.
REPLAY_BUFFER = timedelta(minutes=30)


def _to_iso(value: datetime) -> str:
    """Serialize a timestamp so that string order matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def init_db(db_path: str) -> sqlite3.Connection:
    """Initialize the database and create tables if they don't exist.

    Args:
        db_path: Path to the SQLite database file, or ":memory:".

    Returns:
        Database connection with WAL mode enabled.

    Raises:
        DatabaseError: If database initialization fails.
    """
    try:
        if db_path != ":memory:":
            parent_dir = Path(db_path).parent
            if not parent_dir.exists():
                parent_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS endpoints (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                url TEXT NOT NULL,
                method TEXT NOT NULL DEFAULT 'GET',
                headers TEXT,
                body TEXT,
                expected_status INTEGER NOT NULL DEFAULT 200,
                enabled INTEGER NOT NULL DEFAULT 1,
                schedule_seconds INTEGER NOT NULL DEFAULT 30
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS checks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                endpoint_id TEXT NOT NULL,
                checked_at TEXT NOT NULL,
                status TEXT NOT NULL,
                latency_ms INTEGER,
                http_status INTEGER,
                error_message TEXT
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS incidents (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                endpoint_id TEXT NOT NULL,
                type TEXT NOT NULL,
                summary TEXT NOT NULL,
                severity TEXT NOT NULL DEFAULT 'medium',
                start_time TEXT NOT NULL,
                end_time TEXT,
                resolved INTEGER NOT NULL DEFAULT 0
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_endpoints_enabled
            ON endpoints(enabled)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_checks_endpoint_checked_at
            ON checks(endpoint_id, checked_at)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_incidents_endpoint_start
            ON incidents(endpoint_id, start_time)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_incidents_resolved
            ON incidents(resolved)
        """)
        # At most one open incident per (endpoint, type)
        conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_incidents_one_open
            ON incidents(endpoint_id, type) WHERE resolved = 0
        """)

        conn.commit()
        return conn

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to initialize database: {e}")
    except OSError as e:
        raise DatabaseError(f"Failed to create database directory: {e}")


# =============================================================================
# ENDPOINTS
# =============================================================================


def _row_to_endpoint(row: sqlite3.Row) -> EndpointConfig:
    return EndpointConfig(
        id=row["id"],
        name=row["name"],
        url=row["url"],
        method=row["method"],
        headers=json.loads(row["headers"]) if row["headers"] else None,
        body=json.loads(row["body"]) if row["body"] is not None else None,
        expected_status=row["expected_status"],
        enabled=bool(row["enabled"]),
        schedule_seconds=row["schedule_seconds"],
    )


def upsert_endpoint(conn: sqlite3.Connection, endpoint: EndpointConfig) -> None:
    """Insert an endpoint or replace the stored definition with the same id.

    Raises:
        DatabaseError: If the write fails.
    """
    try:
        with _db_lock:
            conn.execute(
                """
                INSERT INTO endpoints
                (id, name, url, method, headers, body, expected_status, enabled, schedule_seconds)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    url = excluded.url,
                    method = excluded.method,
                    headers = excluded.headers,
                    body = excluded.body,
                    expected_status = excluded.expected_status,
                    enabled = excluded.enabled,
                    schedule_seconds = excluded.schedule_seconds
                """,
                (
                    endpoint.id,
                    endpoint.name,
                    endpoint.url,
                    endpoint.method,
                    json.dumps(endpoint.headers) if endpoint.headers else None,
                    json.dumps(endpoint.body) if endpoint.body is not None else None,
                    endpoint.expected_status,
                    1 if endpoint.enabled else 0,
                    endpoint.schedule_seconds,
                ),
            )
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to save endpoint: {e}")


def get_endpoint(conn: sqlite3.Connection, endpoint_id: str) -> EndpointConfig | None:
    """Get an endpoint by id, or None if it does not exist.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        with _db_lock:
            row = conn.execute("SELECT * FROM endpoints WHERE id = ?", (endpoint_id,)).fetchone()
        return _row_to_endpoint(row) if row else None
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get endpoint: {e}")


def list_endpoints(conn: sqlite3.Connection, enabled_only: bool = False) -> list[EndpointConfig]:
    """List endpoints ordered by id.

    Raises:
        DatabaseError: If the query fails.
    """
    query = "SELECT * FROM endpoints"
    if enabled_only:
        query += " WHERE enabled = 1"
    query += " ORDER BY id"

    try:
        with _db_lock:
            rows = conn.execute(query).fetchall()
        return [_row_to_endpoint(row) for row in rows]
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to list endpoints: {e}")


def get_enabled_endpoints(conn: sqlite3.Connection) -> list[EndpointConfig]:
    """List all endpoints with enabled = true."""
    return list_endpoints(conn, enabled_only=True)


# =============================================================================
# CHECK RESULTS
# =============================================================================


def _row_to_check(row: sqlite3.Row) -> CheckResult:
    return CheckResult(
        id=row["id"],
        endpoint_id=row["endpoint_id"],
        checked_at=datetime.fromisoformat(row["checked_at"]),
        status=row["status"],
        latency_ms=row["latency_ms"],
        http_status=row["http_status"],
        error_message=row["error_message"],
    )


def insert_check(conn: sqlite3.Connection, result: CheckResult) -> int:
    """Append a check result.

    Thread-safe: acquires global lock before database access.

    Returns:
        Row id of the stored result.

    Raises:
        DatabaseError: If the insert fails.
    """
    try:
        with _db_lock:
            cursor = conn.execute(
                """
                INSERT INTO checks
                (endpoint_id, checked_at, status, latency_ms, http_status, error_message)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    result.endpoint_id,
                    _to_iso(result.checked_at),
                    result.status,
                    result.latency_ms,
                    result.http_status,
                    result.error_message,
                ),
            )
            conn.commit()
            return cursor.lastrowid
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to insert check result: {e}")


def get_recent_checks(conn: sqlite3.Connection, endpoint_id: str, limit: int) -> list[CheckResult]:
    """Get the most recent check results for an endpoint, newest first.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        with _db_lock:
            rows = conn.execute(
                """
                SELECT * FROM checks
                WHERE endpoint_id = ?
                ORDER BY checked_at DESC, id DESC
                LIMIT ?
                """,
                (endpoint_id, limit),
            ).fetchall()
        return [_row_to_check(row) for row in rows]
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get recent checks: {e}")


def get_checks_in_window(
    conn: sqlite3.Connection,
    endpoint_id: str,
    since: datetime,
    until: datetime | None = None,
    status: str | None = None,
    with_latency: bool = False,
    newest_first: bool = True,
) -> list[CheckResult]:
    """Get check results for an endpoint within a time range.

    Args:
        conn: Database connection.
        endpoint_id: Endpoint to query.
        since: Inclusive lower bound on checked_at.
        until: Inclusive upper bound on checked_at, or None for no bound.
        status: Only return results with this status.
        with_latency: Only return results that carry a latency.
        newest_first: Sort order by checked_at.

    Raises:
        DatabaseError: If the query fails.
    """
    query = "SELECT * FROM checks WHERE endpoint_id = ? AND checked_at >= ?"
    params: list = [endpoint_id, _to_iso(since)]

    if until is not None:
        query += " AND checked_at <= ?"
        params.append(_to_iso(until))
    if status is not None:
        query += " AND status = ?"
        params.append(status)
    if with_latency:
        query += " AND latency_ms IS NOT NULL"

    query += " ORDER BY checked_at DESC, id DESC" if newest_first else " ORDER BY checked_at ASC, id ASC"

    try:
        with _db_lock:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_check(row) for row in rows]
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get checks in window: {e}")


# =============================================================================
# INCIDENTS
# =============================================================================


def _row_to_incident(row: sqlite3.Row) -> Incident:
    return Incident(
        id=row["id"],
        endpoint_id=row["endpoint_id"],
        type=row["type"],
        summary=row["summary"],
        severity=row["severity"],
        start_time=datetime.fromisoformat(row["start_time"]),
        end_time=_from_iso(row["end_time"]),
        resolved=bool(row["resolved"]),
    )


def create_incident_if_absent(
    conn: sqlite3.Connection,
    endpoint_id: str,
    incident_type: str,
    summary: str,
    severity: str,
    start_time: datetime,
) -> Incident | None:
    """Open an incident unless one is already open for (endpoint, type).

    The check and the insert are a single statement guarded by the partial
    unique index, so concurrent callers cannot both succeed.

    Returns:
        The new Incident, or None if an open incident already exists.

    Raises:
        DatabaseError: If the insert fails for any other reason.
    """
    if incident_type not in INCIDENT_TYPES:
        raise ValueError(f"Unknown incident type: {incident_type}")
    if severity not in SEVERITIES:
        raise ValueError(f"Unknown severity: {severity}")

    try:
        with _db_lock:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO incidents (endpoint_id, type, summary, severity, start_time, resolved)
                    VALUES (?, ?, ?, ?, ?, 0)
                    """,
                    (endpoint_id, incident_type, summary, severity, _to_iso(start_time)),
                )
            except sqlite3.IntegrityError:
                conn.rollback()
                return None
            conn.commit()
            incident_id = cursor.lastrowid
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to create incident: {e}")

    return Incident(
        id=incident_id,
        endpoint_id=endpoint_id,
        type=incident_type,
        summary=summary,
        severity=severity,
        start_time=start_time,
    )


def get_incident(conn: sqlite3.Connection, incident_id: int) -> Incident | None:
    """Get an incident by id, or None if it does not exist.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        with _db_lock:
            row = conn.execute("SELECT * FROM incidents WHERE id = ?", (incident_id,)).fetchone()
        return _row_to_incident(row) if row else None
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get incident: {e}")


def get_open_incidents(conn: sqlite3.Connection) -> list[Incident]:
    """Get all unresolved incidents, oldest first."""
    return list_incidents(conn, resolved=False, newest_first=False)


def list_incidents(
    conn: sqlite3.Connection,
    endpoint_id: str | None = None,
    resolved: bool | None = None,
    incident_type: str | None = None,
    since: datetime | None = None,
    newest_first: bool = True,
) -> list[Incident]:
    """List incidents matching the given filters, ordered by start time.

    Raises:
        DatabaseError: If the query fails.
    """
    clauses: list[str] = []
    params: list = []

    if endpoint_id is not None:
        clauses.append("endpoint_id = ?")
        params.append(endpoint_id)
    if resolved is not None:
        clauses.append("resolved = ?")
        params.append(1 if resolved else 0)
    if incident_type is not None:
        clauses.append("type = ?")
        params.append(incident_type)
    if since is not None:
        clauses.append("start_time >= ?")
        params.append(_to_iso(since))

    query = "SELECT * FROM incidents"
    if clauses:
        query += " WHERE " + " AND ".join(clauses)
    query += " ORDER BY start_time DESC, id DESC" if newest_first else " ORDER BY start_time ASC, id ASC"

    try:
        with _db_lock:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_incident(row) for row in rows]
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to list incidents: {e}")


def resolve_incident(conn: sqlite3.Connection, incident_id: int, end_time: datetime) -> Incident | None:
    """Mark an open incident as resolved.

    Only an unresolved incident is updated, so a second call never changes
    state again.

    Returns:
        The resolved Incident, or None if it does not exist or was already resolved.

    Raises:
        DatabaseError: If the update fails.
    """
    try:
        with _db_lock:
            cursor = conn.execute(
                "UPDATE incidents SET resolved = 1, end_time = ? WHERE id = ? AND resolved = 0",
                (_to_iso(end_time), incident_id),
            )
            conn.commit()
            if cursor.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM incidents WHERE id = ?", (incident_id,)).fetchone()
        return _row_to_incident(row)
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to resolve incident: {e}")


def get_incident_stats(conn: sqlite3.Connection, since: datetime) -> IncidentStats:
    """Count incidents that started at or after `since`.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        with _db_lock:
            rows = conn.execute(
                """
                SELECT type, severity, resolved, COUNT(*) AS n
                FROM incidents
                WHERE start_time >= ?
                GROUP BY type, severity, resolved
                """,
                (_to_iso(since),),
            ).fetchall()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get incident stats: {e}")

    by_type = {incident_type: 0 for incident_type in INCIDENT_TYPES}
    by_severity = {severity: 0 for severity in SEVERITIES}
    total = resolved = 0
    for row in rows:
        total += row["n"]
        if row["resolved"]:
            resolved += row["n"]
        by_type[row["type"]] = by_type.get(row["type"], 0) + row["n"]
        by_severity[row["severity"]] = by_severity.get(row["severity"], 0) + row["n"]

    return IncidentStats(
        total=total,
        resolved=resolved,
        ongoing=total - resolved,
        by_type=by_type,
        by_severity=by_severity,
    )


def get_incident_replay(
    conn: sqlite3.Connection,
    incident_id: int,
    now: datetime | None = None,
) -> tuple[Incident, list[CheckResult]]:
    """Get an incident with the checks surrounding it, oldest first.

    Covers REPLAY_BUFFER before the start until REPLAY_BUFFER after the end
    (or after `now` while the incident is open).

    Raises:
        NotFoundError: If the incident does not exist.
        DatabaseError: If a query fails.
    """
    incident = get_incident(conn, incident_id)
    if incident is None:
        raise NotFoundError(f"Incident {incident_id} not found")

    end = incident.end_time or now or datetime.now(UTC)
    checks = get_checks_in_window(
        conn,
        incident.endpoint_id,
        since=incident.start_time - REPLAY_BUFFER,
        until=end + REPLAY_BUFFER,
        newest_first=False,
    )
    return incident, checks
