import contextlib
import datetime
import logging
import sqlite3
from typing import Dict, List, Optional, Tuple

from .config import (DB_CONNECTION_TIMEOUT, DB_MAX_RETRIES, DB_RETRY_BASE_DELAY, DB_RETRY_MAX_DELAY,
                     MAX_BYTE_COUNT, MAX_HOSTNAME_LENGTH)
from .db_utils import retry_on_db_lock, get_optimized_connection

log = logging.getLogger("TrafficMonitor.Database")

TRAFFIC_SCHEMA = f'''
    CREATE TABLE IF NOT EXISTS traffic (
        hostname VARCHAR({MAX_HOSTNAME_LENGTH}) NOT NULL,
        month INTEGER NOT NULL CHECK (month BETWEEN 1 AND 12),
        year INTEGER NOT NULL,
        bytes INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (hostname, month, year)
    )
'''

OFFSETS_SCHEMA = '''
    CREATE TABLE IF NOT EXISTS follower_offsets (
        path TEXT PRIMARY KEY,
        inode INTEGER,
        offset INTEGER NOT NULL,
        updated_at TEXT NOT NULL
    )
'''

# An INTEGER sum past 2**63-1 turns into REAL in SQLite; MIN keeps the bucket an INTEGER at the cap
UPSERT_TRAFFIC_SQL = f'''
    INSERT INTO traffic (hostname, month, year, bytes) VALUES (?, ?, ?, ?)
    ON CONFLICT (hostname, month, year) DO UPDATE SET bytes = MIN(bytes + excluded.bytes, {MAX_BYTE_COUNT})
'''


def _create_table(cursor: sqlite3.Cursor, ddl: str):
    try:
        cursor.execute(ddl)
    except sqlite3.OperationalError as e:
        # Another process may have created it between the check and the create
        if "already exists" not in str(e).lower():
            raise
        log.debug(f"Table already exists: {e}")


def init_db(db_path: str, timeout: float = DB_CONNECTION_TIMEOUT):
    """
    Ensures the schema exists. Idempotent; any failure other than
    "already exists" propagates and is fatal at startup.
    """
    log.info(f"Connecting to database '{db_path}' and checking schema...")
    with contextlib.closing(get_optimized_connection(db_path, timeout=timeout)) as conn:
        cursor = conn.cursor()

        cursor.execute('PRAGMA journal_mode;')
        mode = cursor.fetchone()
        if mode and mode[0].lower() == 'wal':
            log.info("Database journal mode is set to WAL.")
        else:
            log.warning(f"Failed to set database journal mode to WAL. Current mode: {mode[0] if mode else 'unknown'}")

        _create_table(cursor, TRAFFIC_SCHEMA)
        _create_table(cursor, OFFSETS_SCHEMA)
        conn.commit()
    log.info("Database schema is ready.")


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_upsert_traffic(conn: sqlite3.Connection, hostname: str, month: int, year: int, delta_bytes: int):
    """Adds delta_bytes to the (hostname, month, year) bucket, creating it if absent, in one statement."""
    try:
        conn.execute(UPSERT_TRAFFIC_SQL, (hostname, month, year, delta_bytes))
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise


def blocking_flush_traffic(db_path: str, totals: Dict[str, int], month: int, year: int,
                           timeout: float = DB_CONNECTION_TIMEOUT,
                           written: Optional[Dict[str, int]] = None) -> Tuple[Dict[str, int], Dict[str, int]]:
    """
    Upserts every hostname's delta into the given month's buckets.

    Each hostname is committed on its own, so one failure does not affect
    the others. Returns (written, failed) mappings of hostname -> bytes.
    Hostnames are added to `written` as they are committed, so a caller
    passing its own mapping still knows what was stored if this raises.
    """
    written = {} if written is None else written
    failed = {}
    if not totals:
        return written, failed

    with contextlib.closing(get_optimized_connection(db_path, timeout=timeout)) as conn:
        for hostname, delta in totals.items():
            try:
                blocking_upsert_traffic(conn, hostname, month, year, delta)
                written[hostname] = delta
            except (sqlite3.Error, OverflowError) as e:
                log.error(f"Failed to add {delta} bytes for '{hostname}' ({year}-{month:02d}): {e}")
                failed[hostname] = delta

    log.info(f"Flushed traffic for {len(written)} host(s) into {year}-{month:02d}"
             + (f", {len(failed)} failed." if failed else "."))
    return written, failed


def blocking_get_monthly_traffic(db_path: str, month: int, year: int,
                                 timeout: float = DB_CONNECTION_TIMEOUT) -> List[Dict]:
    """Returns the persisted buckets of one month, largest first."""
    with contextlib.closing(get_optimized_connection(db_path, timeout=timeout, read_only=True)) as conn:
        conn.row_factory = sqlite3.Row
        rows = conn.execute(
            'SELECT hostname, month, year, bytes FROM traffic WHERE month = ? AND year = ? '
            'ORDER BY bytes DESC, hostname',
            (month, year)
        ).fetchall()
    return [dict(row) for row in rows]


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_save_offsets(db_path: str, offsets: Dict[str, Tuple[int, int]],
                          timeout: float = DB_CONNECTION_TIMEOUT):
    """Stores the committed (inode, offset) of each followed file."""
    if not offsets:
        return
    now_iso = datetime.datetime.now(datetime.timezone.utc).isoformat()
    rows = [(path, inode, offset, now_iso) for path, (inode, offset) in offsets.items()]
    with contextlib.closing(get_optimized_connection(db_path, timeout=timeout)) as conn:
        conn.executemany('''
            INSERT INTO follower_offsets (path, inode, offset, updated_at) VALUES (?, ?, ?, ?)
            ON CONFLICT (path) DO UPDATE SET inode = excluded.inode, offset = excluded.offset,
                                             updated_at = excluded.updated_at
        ''', rows)
        conn.commit()
    log.debug(f"Saved read offsets for {len(rows)} file(s).")


def blocking_load_offsets(db_path: str, timeout: float = DB_CONNECTION_TIMEOUT) -> Dict[str, Tuple[int, int]]:
    """Returns {path: (inode, offset)} for every file with a stored offset."""
    with contextlib.closing(get_optimized_connection(db_path, timeout=timeout)) as conn:
        rows = conn.execute('SELECT path, inode, offset FROM follower_offsets').fetchall()
    return {path: (inode, offset) for path, inode, offset in rows}
