"""
SQLite keeper store.

The keeper process writes operational events, submitted actions, live status
and (optionally) its scan checkpoint here; the status API reads it through
short-lived read-only connections. None of this is authoritative: the ledger
is the system of record and the keeper runs fine with an empty database.
"""
import json
import os
import sqlite3
import logging
import threading
import time
from functools import wraps
from pathlib import Path
from typing import Callable, TypeVar, ParamSpec

import pandas as pd

logger = logging.getLogger(__name__)

# Keep the database in the project root regardless of where the process is started from.
DB_PATH = os.environ.get("KEEPER_DATABASE_PATH") or str(Path(__file__).resolve().parents[2] / "keeper.db")

P = ParamSpec("P")
T = TypeVar("T")

# ----- PERSISTENT WRITE CONNECTION WITH BATCHING -----
# One connection for all keeper writes; commit every N seconds or N operations.
_write_conn_lock = threading.Lock()
_write_conn: sqlite3.Connection | None = None
_write_conn_path: str | None = None
_pending_writes = 0
_last_commit_time = 0.0
_BATCH_COMMIT_INTERVAL = 2.0
_BATCH_COMMIT_THRESHOLD = 50


def configure(db_path: str | None) -> None:
    """Point the store at a different file (closes any open write connection)."""
    global DB_PATH
    if not db_path:
        return
    close_write_conn()
    DB_PATH = str(db_path)


def _get_write_conn() -> sqlite3.Connection:
    global _write_conn, _write_conn_path
    if _write_conn is None or _write_conn_path != DB_PATH:
        with _write_conn_lock:
            if _write_conn is not None and _write_conn_path != DB_PATH:
                _write_conn.close()
                _write_conn = None
            if _write_conn is None:
                _write_conn = sqlite3.connect(DB_PATH, timeout=30, check_same_thread=False, isolation_level="DEFERRED")
                _write_conn.execute("PRAGMA journal_mode=WAL")
                _write_conn.execute("PRAGMA synchronous=NORMAL")
                _write_conn.execute("PRAGMA busy_timeout=10000")
                _write_conn_path = DB_PATH
                logger.info("Opened persistent write connection to %s (batched commits)", DB_PATH)
    return _write_conn


def _maybe_commit() -> None:
    """Commit if we've accumulated enough writes or enough time has passed."""
    global _pending_writes, _last_commit_time
    now = time.time()
    should_commit = (
        _pending_writes >= _BATCH_COMMIT_THRESHOLD or
        (now - _last_commit_time) >= _BATCH_COMMIT_INTERVAL
    )
    if should_commit and _write_conn is not None:
        try:
            _write_conn.commit()
            _pending_writes = 0
            _last_commit_time = now
        except sqlite3.Error as e:
            logger.warning(f"Batch commit failed: {e}")


def _increment_pending() -> None:
    global _pending_writes
    _pending_writes += 1
    _maybe_commit()


def force_commit() -> None:
    """Force an immediate commit (end of iteration, before sleeping)."""
    global _pending_writes, _last_commit_time
    if _write_conn is not None:
        try:
            _write_conn.commit()
            _pending_writes = 0
            _last_commit_time = time.time()
        except sqlite3.Error as e:
            logger.warning(f"Force commit failed: {e}")


def close_write_conn() -> None:
    """Commit and close the persistent write connection (call on shutdown)."""
    global _write_conn, _write_conn_path
    if _write_conn is not None:
        with _write_conn_lock:
            if _write_conn is not None:
                try:
                    _write_conn.commit()
                finally:
                    _write_conn.close()
                    _write_conn = None
                    _write_conn_path = None
                logger.info("Closed persistent write connection")


def safe_db_read(default_factory: Callable[[], T]) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """
    Decorator for read functions that returns a default value on database errors.
    Keeps the status API answering while the keeper holds the write lock.
    """
    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            try:
                return func(*args, **kwargs)
            except sqlite3.OperationalError as e:
                logger.warning(f"Database read failed ({func.__name__}): {e}")
                return default_factory()
            except sqlite3.DatabaseError as e:
                logger.error(f"Database error ({func.__name__}): {e}")
                return default_factory()
        return wrapper
    return decorator


def _connect_fresh() -> sqlite3.Connection:
    return sqlite3.connect(DB_PATH, timeout=30)


def _connect_ro() -> sqlite3.Connection:
    """Read connection for the API; autocommit and query-only."""
    conn = sqlite3.connect(DB_PATH, timeout=2, isolation_level=None)
    conn.execute("PRAGMA query_only = 1")
    return conn


def init_db() -> None:
    """Create the keeper schema (idempotent)."""
    conn = _connect_fresh()
    try:
        cursor = conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS event_stream (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
                level TEXT,
                trader TEXT,
                step TEXT,
                message TEXT
            )
            """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS keeper_actions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
                trader TEXT NOT NULL,
                action TEXT NOT NULL,  -- liquidate, closeIfTriggered
                tx_hash TEXT,
                status TEXT,  -- SENT, FAILED
                error TEXT,
                details TEXT  -- JSON (payout estimate, trigger flags)
            )
            """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS scan_state (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                cursor INTEGER NOT NULL,
                open_count INTEGER NOT NULL DEFAULT 0,
                perps_address TEXT,  -- contract the cursor belongs to
                last_scan_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        # Stores created before the address was recorded.
        columns = {row[1] for row in cursor.execute("PRAGMA table_info(scan_state)")}
        if "perps_address" not in columns:
            cursor.execute("ALTER TABLE scan_state ADD COLUMN perps_address TEXT")

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS open_traders (
                trader TEXT PRIMARY KEY
            )
            """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS live_status (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                current_step TEXT,
                detail TEXT,
                last_update DATETIME DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        cursor.execute(
            """
            INSERT OR IGNORE INTO live_status (id, current_step, detail)
            VALUES (1, 'Idle', 'Waiting for first iteration')
            """
        )
        conn.commit()
    finally:
        conn.close()


def log_event(level: str, message: str, trader: str | None = None, step: str | None = None) -> None:
    conn = _get_write_conn()
    conn.execute(
        "INSERT INTO event_stream (level, trader, step, message) VALUES (?, ?, ?, ?)",
        (level, trader, step, message),
    )
    _increment_pending()


def record_action(
    trader: str,
    action: str,
    tx_hash: str | None,
    status: str,
    error: str | None = None,
    details: dict | None = None,
) -> None:
    conn = _get_write_conn()
    conn.execute(
        """
        INSERT INTO keeper_actions (trader, action, tx_hash, status, error, details)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (trader, action, tx_hash, status, error, json.dumps(details) if details else None),
    )
    _increment_pending()


def update_live_status(step: str, detail: str) -> None:
    conn = _get_write_conn()
    conn.execute(
        """
        UPDATE live_status
        SET current_step = ?, detail = ?, last_update = CURRENT_TIMESTAMP
        WHERE id = 1
        """,
        (step, detail),
    )
    _increment_pending()


def save_checkpoint(cursor: int, traders: list[str] | tuple[str, ...], perps_address: str | None = None) -> None:
    """Replace the stored scan cursor and open-trader set in one transaction."""
    conn = _get_write_conn()
    with _write_conn_lock:
        conn.execute(
            """
            INSERT INTO scan_state (id, cursor, open_count, perps_address, last_scan_at)
            VALUES (1, ?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(id) DO UPDATE SET
                cursor = excluded.cursor,
                open_count = excluded.open_count,
                perps_address = excluded.perps_address,
                last_scan_at = excluded.last_scan_at
            """,
            (int(cursor), len(traders), perps_address.lower() if perps_address else None),
        )
        conn.execute("DELETE FROM open_traders")
        conn.executemany("INSERT INTO open_traders (trader) VALUES (?)", [(t,) for t in traders])
    force_commit()


def load_checkpoint(perps_address: str | None = None) -> tuple[int, list[str]] | None:
    """
    Return (cursor, traders) from the last checkpoint, or None if there is none.

    When `perps_address` is given, a checkpoint written for another contract
    (or one with no recorded contract) is treated as absent.
    """
    conn = _connect_fresh()
    try:
        row = conn.execute("SELECT cursor, perps_address FROM scan_state WHERE id = 1").fetchone()
        if row is None:
            return None
        if perps_address and (row[1] or "").lower() != perps_address.lower():
            logger.warning(
                "Ignoring scan checkpoint for %s; keeper is configured for %s", row[1] or "unknown contract", perps_address
            )
            return None
        traders = [r[0] for r in conn.execute("SELECT trader FROM open_traders ORDER BY trader")]
        return int(row[0]), traders
    finally:
        conn.close()


@safe_db_read(default_factory=pd.DataFrame)
def get_events(limit: int = 200) -> pd.DataFrame:
    conn = _connect_ro()
    try:
        return pd.read_sql_query(
            "SELECT * FROM event_stream ORDER BY timestamp DESC, id DESC LIMIT ?",
            conn,
            params=(int(limit),),
        )
    finally:
        conn.close()


@safe_db_read(default_factory=pd.DataFrame)
def get_actions(limit: int = 100) -> pd.DataFrame:
    conn = _connect_ro()
    try:
        return pd.read_sql_query(
            "SELECT * FROM keeper_actions ORDER BY timestamp DESC, id DESC LIMIT ?",
            conn,
            params=(int(limit),),
        )
    finally:
        conn.close()


@safe_db_read(default_factory=pd.DataFrame)
def get_open_traders() -> pd.DataFrame:
    conn = _connect_ro()
    try:
        return pd.read_sql_query("SELECT trader FROM open_traders ORDER BY trader", conn)
    finally:
        conn.close()


@safe_db_read(default_factory=lambda: None)
def get_scan_state():
    conn = _connect_ro()
    try:
        df = pd.read_sql_query("SELECT cursor, open_count, perps_address, last_scan_at FROM scan_state WHERE id = 1", conn)
        if df.empty:
            return None
        return df.iloc[0]
    finally:
        conn.close()


@safe_db_read(default_factory=lambda: None)
def get_live_status():
    conn = _connect_ro()
    try:
        df = pd.read_sql_query("SELECT current_step, detail, last_update FROM live_status WHERE id = 1", conn)
        if df.empty:
            return None
        return df.iloc[0]
    finally:
        conn.close()
