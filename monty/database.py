"""SQLite database operations for endpoints, check outcomes and status snapshots."""

import json
import sqlite3
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

from .models import CheckOutcome, DomainStatus, Endpoint, SSLStatus


class DatabaseError(Exception):
    """Raised when a database operation fails."""

    pass


# Global lock for thread-safe database access.
# The connection is shared by the scheduler coordinator and API handlers;
# every statement runs under this lock so no reader sees a partial write.
_db_lock = threading.Lock()


def init_db(db_path: str) -> sqlite3.Connection:
    """Initialize the database and create tables if they don't exist.

    Args:
        db_path: Path to the SQLite database file.

    Returns:
        Database connection with WAL mode enabled.

    Raises:
        DatabaseError: If database initialization fails.
    """
    try:
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
                url TEXT NOT NULL,
                check_type TEXT NOT NULL,
                interval INTEGER NOT NULL,
                timeout INTEGER NOT NULL,
                expected_status_codes TEXT NOT NULL DEFAULT '[]',
                max_response_time INTEGER NOT NULL,
                tcp_port INTEGER,
                dns_record_type TEXT NOT NULL DEFAULT 'A',
                expected_dns_answers TEXT NOT NULL DEFAULT '[]',
                min_days_valid INTEGER NOT NULL,
                check_chain INTEGER NOT NULL,
                check_domain_match INTEGER NOT NULL,
                acceptable_tls_versions TEXT NOT NULL DEFAULT '[]',
                created_at TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS checks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                endpoint_id TEXT NOT NULL,
                succeeded INTEGER NOT NULL,
                latency_ms INTEGER NOT NULL,
                status_code INTEGER,
                error_message TEXT,
                error_kind TEXT,
                checked_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_checks_endpoint_id_checked_at
            ON checks(endpoint_id, checked_at)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_checks_checked_at
            ON checks(checked_at)
        """)

        # One row per endpoint: each check replaces the previous snapshot.
        conn.execute("""
            CREATE TABLE IF NOT EXISTS ssl_statuses (
                endpoint_id TEXT PRIMARY KEY,
                id TEXT NOT NULL,
                certificate_expires_at TEXT,
                days_until_expiry INTEGER NOT NULL,
                is_valid INTEGER NOT NULL,
                domain_matches INTEGER NOT NULL,
                chain_valid INTEGER NOT NULL,
                issuer TEXT,
                subject TEXT,
                tls_version TEXT,
                serial_number TEXT,
                error_message TEXT,
                checked_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS domain_statuses (
                endpoint_id TEXT PRIMARY KEY,
                id TEXT NOT NULL,
                domain_expires_at TEXT,
                days_until_expiry INTEGER,
                is_registered INTEGER NOT NULL,
                registrar TEXT,
                error_message TEXT,
                checked_at TEXT NOT NULL
            )
        """)

        conn.commit()
        return conn

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to initialize database: {e}")
    except OSError as e:
        raise DatabaseError(f"Failed to create database directory: {e}")


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# =============================================================================
# ENDPOINTS
# =============================================================================


def _endpoint_params(endpoint: Endpoint) -> tuple:
    return (
        endpoint.url,
        endpoint.check_type,
        endpoint.interval,
        endpoint.timeout,
        json.dumps(list(endpoint.expected_status_codes)),
        endpoint.max_response_time,
        endpoint.tcp_port,
        endpoint.dns_record_type,
        json.dumps(list(endpoint.expected_dns_answers)),
        endpoint.min_days_valid,
        1 if endpoint.check_chain else 0,
        1 if endpoint.check_domain_match else 0,
        json.dumps(list(endpoint.acceptable_tls_versions)),
    )


def _row_to_endpoint(row: sqlite3.Row) -> Endpoint:
    return Endpoint(
        id=row["id"],
        url=row["url"],
        check_type=row["check_type"],
        interval=row["interval"],
        timeout=row["timeout"],
        created_at=datetime.fromisoformat(row["created_at"]),
        expected_status_codes=tuple(json.loads(row["expected_status_codes"])),
        max_response_time=row["max_response_time"],
        tcp_port=row["tcp_port"],
        dns_record_type=row["dns_record_type"],
        expected_dns_answers=tuple(json.loads(row["expected_dns_answers"])),
        min_days_valid=row["min_days_valid"],
        check_chain=bool(row["check_chain"]),
        check_domain_match=bool(row["check_domain_match"]),
        acceptable_tls_versions=tuple(json.loads(row["acceptable_tls_versions"])),
    )


def insert_endpoint(conn: sqlite3.Connection, endpoint: Endpoint) -> None:
    """Insert a new endpoint configuration.

    Raises:
        DatabaseError: If the insert fails (including a duplicate id).
    """
    try:
        with _db_lock:
            conn.execute(
                """
                INSERT INTO endpoints
                (url, check_type, interval, timeout, expected_status_codes, max_response_time,
                 tcp_port, dns_record_type, expected_dns_answers, min_days_valid,
                 check_chain, check_domain_match, acceptable_tls_versions, id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                _endpoint_params(endpoint) + (endpoint.id, endpoint.created_at.isoformat()),
            )
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to insert endpoint: {e}")


def update_endpoint(conn: sqlite3.Connection, endpoint: Endpoint) -> bool:
    """Replace the stored configuration of an existing endpoint.

    id and created_at are never changed.

    Returns:
        True if a row was updated, False if the id is unknown.

    Raises:
        DatabaseError: If the update fails.
    """
    try:
        with _db_lock:
            cursor = conn.execute(
                """
                UPDATE endpoints SET
                    url = ?, check_type = ?, interval = ?, timeout = ?, expected_status_codes = ?,
                    max_response_time = ?, tcp_port = ?, dns_record_type = ?, expected_dns_answers = ?,
                    min_days_valid = ?, check_chain = ?, check_domain_match = ?, acceptable_tls_versions = ?
                WHERE id = ?
                """,
                _endpoint_params(endpoint) + (endpoint.id,),
            )
            conn.commit()
            return cursor.rowcount > 0
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to update endpoint {endpoint.id}: {e}")


def delete_endpoint(conn: sqlite3.Connection, endpoint_id: str) -> bool:
    """Delete an endpoint together with its outcomes and status snapshots.

    Returns:
        True if the endpoint existed, False otherwise.

    Raises:
        DatabaseError: If the deletion fails.
    """
    try:
        with _db_lock:
            cursor = conn.execute("DELETE FROM endpoints WHERE id = ?", (endpoint_id,))
            deleted = cursor.rowcount > 0
            conn.execute("DELETE FROM checks WHERE endpoint_id = ?", (endpoint_id,))
            conn.execute("DELETE FROM ssl_statuses WHERE endpoint_id = ?", (endpoint_id,))
            conn.execute("DELETE FROM domain_statuses WHERE endpoint_id = ?", (endpoint_id,))
            conn.commit()
            return deleted
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to delete endpoint {endpoint_id}: {e}")


def get_endpoint(conn: sqlite3.Connection, endpoint_id: str) -> Endpoint | None:
    """Get a single endpoint by id, or None if it does not exist."""
    try:
        with _db_lock:
            row = conn.execute("SELECT * FROM endpoints WHERE id = ?", (endpoint_id,)).fetchone()
        return _row_to_endpoint(row) if row is not None else None
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get endpoint {endpoint_id}: {e}")


def list_endpoints(conn: sqlite3.Connection) -> list[Endpoint]:
    """Get all endpoints, oldest first."""
    try:
        with _db_lock:
            rows = conn.execute("SELECT * FROM endpoints ORDER BY created_at, id").fetchall()
        return [_row_to_endpoint(row) for row in rows]
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to list endpoints: {e}")


# =============================================================================
# CHECK OUTCOMES
# =============================================================================


def insert_check(conn: sqlite3.Connection, outcome: CheckOutcome) -> None:
    """Append a check outcome.

    Thread-safe: acquires global lock before database access.

    Raises:
        DatabaseError: If the insert fails.
    """
    try:
        with _db_lock:
            conn.execute(
                """
                INSERT INTO checks
                (endpoint_id, succeeded, latency_ms, status_code, error_message, error_kind, checked_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    outcome.endpoint_id,
                    1 if outcome.succeeded else 0,
                    outcome.latency_ms,
                    outcome.status_code,
                    outcome.error_message,
                    outcome.error_kind,
                    outcome.checked_at.isoformat(),
                ),
            )
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to insert check outcome: {e}")


def _row_to_outcome(row: sqlite3.Row) -> CheckOutcome:
    return CheckOutcome(
        endpoint_id=row["endpoint_id"],
        succeeded=bool(row["succeeded"]),
        latency_ms=row["latency_ms"],
        error_message=row["error_message"],
        checked_at=datetime.fromisoformat(row["checked_at"]),
        status_code=row["status_code"],
        error_kind=row["error_kind"],
    )


def get_uptime(
    conn: sqlite3.Connection,
    endpoint_id: str,
    window: timedelta | None = None,
) -> float | None:
    """Compute uptime percentage for an endpoint.

    Args:
        conn: Database connection.
        endpoint_id: Endpoint to aggregate.
        window: Trailing lookback, or None for all recorded outcomes.

    Returns:
        Percentage of succeeded outcomes (0.0-100.0), or None when no
        outcome has been recorded in the window.

    Raises:
        DatabaseError: If the query fails.
    """
    query = "SELECT COUNT(*) AS total, COALESCE(SUM(succeeded), 0) AS up FROM checks WHERE endpoint_id = ?"
    params: tuple = (endpoint_id,)
    if window is not None:
        query += " AND checked_at >= ?"
        params = (endpoint_id, (datetime.now(UTC) - window).isoformat())

    try:
        with _db_lock:
            row = conn.execute(query, params).fetchone()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to compute uptime for {endpoint_id}: {e}")

    if row["total"] == 0:
        return None
    return row["up"] / row["total"] * 100.0


def get_history(
    conn: sqlite3.Connection,
    endpoint_id: str,
    since: datetime | None = None,
    limit: int | None = None,
) -> list[CheckOutcome]:
    """Get check history for a specific endpoint.

    Args:
        conn: Database connection.
        endpoint_id: Endpoint to query.
        since: Return checks at or after this timestamp, or None for all.
        limit: Maximum number of results to return (newest first).

    Returns:
        List of CheckOutcome objects, ordered by checked_at descending.

    Raises:
        DatabaseError: If the query fails.
    """
    query = """
        SELECT endpoint_id, succeeded, latency_ms, status_code, error_message, error_kind, checked_at
        FROM checks
        WHERE endpoint_id = ?
    """
    params: list = [endpoint_id]
    if since is not None:
        query += " AND checked_at >= ?"
        params.append(since.isoformat())
    query += " ORDER BY checked_at DESC, id DESC"
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)

    try:
        with _db_lock:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_outcome(row) for row in rows]
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get history: {e}")


def get_recent_checks(conn: sqlite3.Connection, limit: int) -> list[CheckOutcome]:
    """Get the most recent outcomes across all endpoints, newest first."""
    try:
        with _db_lock:
            rows = conn.execute(
                """
                SELECT endpoint_id, succeeded, latency_ms, status_code, error_message, error_kind, checked_at
                FROM checks
                ORDER BY checked_at DESC, id DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [_row_to_outcome(row) for row in rows]
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get recent checks: {e}")


def cleanup_old_checks(conn: sqlite3.Connection, retention_days: int) -> int:
    """Delete checks older than the retention period.

    Thread-safe: acquires global lock before database access.

    Returns:
        Number of deleted records.

    Raises:
        DatabaseError: If the cleanup fails.
    """
    try:
        cutoff = (datetime.now(UTC) - timedelta(days=retention_days)).isoformat()

        with _db_lock:
            cursor = conn.execute(
                "DELETE FROM checks WHERE checked_at < ?",
                (cutoff,),
            )
            deleted = cursor.rowcount
            conn.commit()

        return deleted

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to cleanup old checks: {e}")


def delete_all_checks(conn: sqlite3.Connection) -> int:
    """Delete all check records from the database.

    Returns:
        Number of deleted records.

    Raises:
        DatabaseError: If the deletion fails.
    """
    try:
        with _db_lock:
            cursor = conn.execute("DELETE FROM checks")
            deleted = cursor.rowcount
            conn.commit()
        return deleted

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to delete all checks: {e}")


# =============================================================================
# SSL / DOMAIN STATUS (last write wins)
# =============================================================================


def upsert_ssl_status(conn: sqlite3.Connection, status: SSLStatus) -> None:
    """Store an SSL status, replacing any previous one for the endpoint.

    Raises:
        DatabaseError: If the write fails.
    """
    try:
        with _db_lock:
            conn.execute(
                """
                INSERT OR REPLACE INTO ssl_statuses
                (endpoint_id, id, certificate_expires_at, days_until_expiry, is_valid, domain_matches,
                 chain_valid, issuer, subject, tls_version, serial_number, error_message, checked_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    status.endpoint_id,
                    status.id,
                    _to_iso(status.certificate_expires_at),
                    status.days_until_expiry,
                    1 if status.is_valid else 0,
                    1 if status.domain_matches else 0,
                    1 if status.chain_valid else 0,
                    status.issuer,
                    status.subject,
                    status.tls_version,
                    status.serial_number,
                    status.error_message,
                    status.checked_at.isoformat(),
                ),
            )
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to store SSL status: {e}")


def _row_to_ssl_status(row: sqlite3.Row) -> SSLStatus:
    return SSLStatus(
        id=row["id"],
        endpoint_id=row["endpoint_id"],
        is_valid=bool(row["is_valid"]),
        checked_at=datetime.fromisoformat(row["checked_at"]),
        certificate_expires_at=_from_iso(row["certificate_expires_at"]),
        days_until_expiry=row["days_until_expiry"],
        domain_matches=bool(row["domain_matches"]),
        chain_valid=bool(row["chain_valid"]),
        issuer=row["issuer"],
        subject=row["subject"],
        tls_version=row["tls_version"],
        serial_number=row["serial_number"],
        error_message=row["error_message"],
    )


def get_latest_ssl_status(conn: sqlite3.Connection, endpoint_id: str) -> SSLStatus | None:
    """Get the current SSL status for an endpoint, or None if never checked."""
    try:
        with _db_lock:
            row = conn.execute("SELECT * FROM ssl_statuses WHERE endpoint_id = ?", (endpoint_id,)).fetchone()
        return _row_to_ssl_status(row) if row is not None else None
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get SSL status for {endpoint_id}: {e}")


def list_ssl_statuses(conn: sqlite3.Connection) -> list[SSLStatus]:
    """Get the current SSL status of every checked SSL endpoint, newest first."""
    try:
        with _db_lock:
            rows = conn.execute(
                """
                SELECT s.* FROM ssl_statuses s
                INNER JOIN endpoints e ON e.id = s.endpoint_id
                WHERE e.check_type = 'ssl'
                ORDER BY s.checked_at DESC
                """
            ).fetchall()
        return [_row_to_ssl_status(row) for row in rows]
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to list SSL statuses: {e}")


def upsert_domain_status(conn: sqlite3.Connection, status: DomainStatus) -> None:
    """Store a domain status, replacing any previous one for the endpoint.

    Raises:
        DatabaseError: If the write fails.
    """
    try:
        with _db_lock:
            conn.execute(
                """
                INSERT OR REPLACE INTO domain_statuses
                (endpoint_id, id, domain_expires_at, days_until_expiry, is_registered, registrar,
                 error_message, checked_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    status.endpoint_id,
                    status.id,
                    _to_iso(status.domain_expires_at),
                    status.days_until_expiry,
                    1 if status.is_registered else 0,
                    status.registrar,
                    status.error_message,
                    status.checked_at.isoformat(),
                ),
            )
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to store domain status: {e}")


def _row_to_domain_status(row: sqlite3.Row) -> DomainStatus:
    return DomainStatus(
        id=row["id"],
        endpoint_id=row["endpoint_id"],
        is_registered=bool(row["is_registered"]),
        checked_at=datetime.fromisoformat(row["checked_at"]),
        domain_expires_at=_from_iso(row["domain_expires_at"]),
        days_until_expiry=row["days_until_expiry"],
        registrar=row["registrar"],
        error_message=row["error_message"],
    )


def get_latest_domain_status(conn: sqlite3.Connection, endpoint_id: str) -> DomainStatus | None:
    """Get the current domain status for an endpoint, or None if never checked."""
    try:
        with _db_lock:
            row = conn.execute("SELECT * FROM domain_statuses WHERE endpoint_id = ?", (endpoint_id,)).fetchone()
        return _row_to_domain_status(row) if row is not None else None
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get domain status for {endpoint_id}: {e}")


def list_domain_statuses(conn: sqlite3.Connection) -> list[DomainStatus]:
    """Get the current domain status of every checked domain endpoint, newest first."""
    try:
        with _db_lock:
            rows = conn.execute("SELECT * FROM domain_statuses ORDER BY checked_at DESC").fetchall()
        return [_row_to_domain_status(row) for row in rows]
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to list domain statuses: {e}")
