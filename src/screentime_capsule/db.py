"""Read-only SQLite access to the Screen Time stores."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Sequence

from .exceptions import AccessDenied, QueryFailed, SchemaMismatch, SourceNotFound

logger = logging.getLogger(__name__)

USAGE_STREAMS = ("/app/usage", "/app/inFocus")
LINKAGE_COLUMNS = ("ZDEVICEID", "ZSOURCEID")


def open_store(path: Path) -> sqlite3.Connection:
    """Open a store read-only and prove it is readable with a metadata query."""
    path = Path(path)
    if not path.exists():
        raise SourceNotFound(path)
    try:
        conn = sqlite3.connect(
            f"{path.resolve().as_uri()}?mode=ro",
            uri=True,
            check_same_thread=False,
        )
    except sqlite3.Error as exc:
        raise AccessDenied(path, exc) from exc
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("SELECT COUNT(*) FROM sqlite_master").fetchone()
    except sqlite3.Error as exc:
        conn.close()
        raise AccessDenied(path, exc) from exc
    return conn


@contextmanager
def store_connection(path: Path) -> Iterator[sqlite3.Connection]:
    conn = open_store(path)
    try:
        yield conn
    finally:
        conn.close()


def verify_access(path: Path) -> bool:
    """Return True only when the store can be opened and queried."""
    try:
        with store_connection(path):
            return True
    except (SourceNotFound, AccessDenied) as exc:
        logger.info("Store access check failed: %s", exc)
        return False


def table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {row["name"] for row in rows}


def linkage_columns(conn: sqlite3.Connection) -> list[str]:
    """Device linkage columns on ZSOURCE reachable from ZOBJECT, in preference order."""
    if "ZSOURCE" not in table_columns(conn, "ZOBJECT"):
        return []
    source_columns = table_columns(conn, "ZSOURCE")
    return [column for column in LINKAGE_COLUMNS if column in source_columns]


def _device_expression(columns: Sequence[str]) -> str:
    qualified = [f"s.{column}" for column in columns]
    if len(qualified) == 1:
        return qualified[0]
    return f"COALESCE({', '.join(qualified)})"


def fetch_usage_events(
    conn: sqlite3.Connection,
    path: Path,
    start: float,
    end: float,
    device_filter: Optional[str] = None,
) -> list[sqlite3.Row]:
    """Fetch raw usage/focus events whose start lies within ``[start, end]``."""
    try:
        columns = linkage_columns(conn)
    except sqlite3.Error as exc:
        raise QueryFailed(path, exc) from exc

    if columns:
        device_select = f"{_device_expression(columns)} AS device_id"
        join = "LEFT JOIN ZSOURCE AS s ON o.ZSOURCE = s.Z_PK"
    else:
        device_select = "NULL AS device_id"
        join = ""

    params: list[object] = [*USAGE_STREAMS, start, end]
    device_clause = ""
    if device_filter is not None:
        if not columns:
            raise SchemaMismatch(path, "event store has no device linkage columns")
        device_clause = " AND (" + " OR ".join(f"s.{c} = ?" for c in columns) + ")"
        params.extend([device_filter] * len(columns))

    query = f"""
        SELECT
            o.Z_PK AS pk,
            o.ZVALUESTRING AS bundle_id,
            o.ZSTARTDATE AS start_date,
            o.ZENDDATE AS end_date,
            {device_select}
        FROM ZOBJECT AS o
        {join}
        WHERE o.ZSTREAMNAME IN (?, ?)
            AND o.ZSTARTDATE >= ? AND o.ZSTARTDATE <= ?
            AND o.ZVALUESTRING IS NOT NULL
            {device_clause}
        ORDER BY o.ZSTARTDATE, o.Z_PK
    """
    try:
        return conn.execute(query, params).fetchall()
    except sqlite3.Error as exc:
        raise QueryFailed(path, exc) from exc


def fetch_device_rows(conn: sqlite3.Connection, path: Path) -> list[dict]:
    """Read ZDEVICE, tolerating absent optional columns."""
    try:
        columns = table_columns(conn, "ZDEVICE")
    except sqlite3.Error as exc:
        raise QueryFailed(path, exc) from exc
    if not columns:
        raise SchemaMismatch(path, "table ZDEVICE not found")
    if "ZIDENTIFIER" not in columns:
        raise SchemaMismatch(path, "column ZDEVICE.ZIDENTIFIER not found")

    selected = [
        "ZIDENTIFIER AS identifier",
        "ZNAME AS name" if "ZNAME" in columns else "NULL AS name",
        "ZMODEL AS model" if "ZMODEL" in columns else "NULL AS model",
        "ZLASTSEENDATE AS last_seen" if "ZLASTSEENDATE" in columns else "NULL AS last_seen",
    ]
    try:
        rows = conn.execute(f"SELECT {', '.join(selected)} FROM ZDEVICE").fetchall()
    except sqlite3.Error as exc:
        raise QueryFailed(path, exc) from exc
    return [dict(row) for row in rows]


def fetch_linked_devices(conn: sqlite3.Connection, path: Path) -> list[sqlite3.Row]:
    """Distinct device identifiers referenced from events, with their latest event time."""
    try:
        columns = linkage_columns(conn)
        if not columns:
            return []
        return conn.execute(
            f"""
            SELECT {_device_expression(columns)} AS device_id,
                   MAX(o.ZSTARTDATE) AS last_seen
            FROM ZOBJECT AS o
            JOIN ZSOURCE AS s ON o.ZSOURCE = s.Z_PK
            WHERE {_device_expression(columns)} IS NOT NULL
            GROUP BY device_id
            ORDER BY device_id
            """
        ).fetchall()
    except sqlite3.Error as exc:
        raise QueryFailed(path, exc) from exc


def fetch_stream_names(
    conn: sqlite3.Connection, path: Path, prefix: str
) -> list[sqlite3.Row]:
    """Stream names starting with ``prefix`` and the latest event time for each."""
    try:
        return conn.execute(
            """
            SELECT ZSTREAMNAME AS stream_name, MAX(ZSTARTDATE) AS last_seen
            FROM ZOBJECT
            WHERE substr(ZSTREAMNAME, 1, ?) = ?
            GROUP BY ZSTREAMNAME
            ORDER BY ZSTREAMNAME
            """,
            (len(prefix), prefix),
        ).fetchall()
    except sqlite3.Error as exc:
        raise QueryFailed(path, exc) from exc
