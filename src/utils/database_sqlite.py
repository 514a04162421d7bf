import logging
import os
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from functools import wraps
from pathlib import Path
from typing import Any, Callable, ParamSpec, TypeVar

import pandas as pd

from src.db.stats import empty_trade_stats, summarise_trades
from src.utils.runtime_config import normalise_cycle_config, validate_cycle_config

logger = logging.getLogger(__name__)

# Keep the database in the project root regardless of where the process is started from.
DB_PATH = os.environ.get("ROTATOR_SQLITE_PATH") or str(Path(__file__).resolve().parents[2] / "rotator.db")

BACKEND = "sqlite"

P = ParamSpec("P")
T = TypeVar("T")

# ----- PERSISTENT WRITE CONNECTION -----
# One shared write connection per process. Unlike a batched log writer, every cycle write
# commits immediately: the lease and phase must be durable before the step returns.
_write_conn_lock = threading.RLock()
_write_conn: sqlite3.Connection | None = None
_write_conn_path: str | None = None


def _get_write_conn() -> sqlite3.Connection:
    """Return the shared write connection, reopening it if DB_PATH was changed."""
    global _write_conn, _write_conn_path
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
            logger.info("Opened write connection to %s", DB_PATH)
        return _write_conn


def _execute_write(sql: str, params: tuple = ()) -> int:
    """Run one write statement in its own transaction; returns the affected row count."""
    with _write_conn_lock:
        conn = _get_write_conn()
        try:
            cur = conn.execute(sql, params)
            conn.commit()
            return cur.rowcount
        except sqlite3.Error:
            conn.rollback()
            raise


def close_write_conn() -> None:
    """Close the shared write connection (call on shutdown)."""
    global _write_conn, _write_conn_path
    with _write_conn_lock:
        if _write_conn is not None:
            _write_conn.close()
            _write_conn = None
            _write_conn_path = None
            logger.info("Closed write connection")


def safe_db_read(default_factory: Callable[[], T]) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """
    Decorator for history reads that returns a default value on error.
    Keeps the API responsive when the database is locked or unavailable.

    Usage:
        @safe_db_read(default_factory=pd.DataFrame)
        def get_something() -> pd.DataFrame:
            ...
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
            except Exception as e:
                logger.error(f"Unexpected error in {func.__name__}: {type(e).__name__}: {e}")
                return default_factory()

        return wrapper

    return decorator


def _connect_ro() -> sqlite3.Connection:
    """Short-lived autocommit read connection; the caller closes it."""
    conn = sqlite3.connect(DB_PATH, timeout=2, isolation_level=None)
    conn.execute("PRAGMA query_only = 1")
    return conn


def _ts(value: datetime | None) -> str | None:
    # One fixed ISO format in UTC so that string comparison orders timestamps correctly.
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now() -> str:
    return _ts(datetime.now(timezone.utc))  # type: ignore[return-value]


def init_db() -> None:
    """Create the rotator tables and seed the singleton rows (idempotent)."""
    conn = sqlite3.connect(DB_PATH, timeout=30)
    try:
        cursor = conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS cycle_config (
                id INTEGER PRIMARY KEY,
                target_asset TEXT,
                asset_symbol TEXT,
                slippage_bps INTEGER NOT NULL DEFAULT 300,
                is_running INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT
            )
            """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS cycle_state (
                id INTEGER PRIMARY KEY,
                phase TEXT NOT NULL DEFAULT 'IDLE' CHECK (phase IN ('IDLE', 'HOLDING', 'COOLING')),
                active_worker_index INTEGER NOT NULL DEFAULT 0,
                phase_started_at TEXT,
                version INTEGER NOT NULL DEFAULT 0,
                lease_owner TEXT,
                lease_expires_at TEXT,
                updated_at TEXT
            )
            """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS worker_accounts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                wallet_index INTEGER NOT NULL UNIQUE,
                address TEXT NOT NULL UNIQUE,
                secret TEXT NOT NULL,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
            """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS trade_ledger (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                worker_address TEXT NOT NULL,
                kind TEXT NOT NULL,
                amount INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                external_ref TEXT,
                error TEXT
            )
            """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS event_stream (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                level TEXT,
                step TEXT,
                message TEXT
            )
            """
        )

        cursor.execute("INSERT OR IGNORE INTO cycle_config (id, updated_at) VALUES (1, ?)", (_now(),))
        cursor.execute("INSERT OR IGNORE INTO cycle_state (id, updated_at) VALUES (1, ?)", (_now(),))
        conn.commit()
    finally:
        conn.close()


# ----- CYCLE CONFIG / STATE -----


def get_cycle_config() -> dict[str, Any]:
    conn = _connect_ro()
    try:
        row = conn.execute(
            "SELECT target_asset, asset_symbol, slippage_bps, is_running, updated_at FROM cycle_config WHERE id = 1"
        ).fetchone()
    finally:
        conn.close()
    if not row:
        raise RuntimeError("cycle_config row (id=1) not found; run init-db")
    return {
        "target_asset": row[0],
        "asset_symbol": row[1],
        "slippage_bps": row[2],
        "is_running": bool(row[3]),
        "updated_at": row[4],
    }


def set_cycle_config(doc: dict[str, Any]) -> None:
    doc = normalise_cycle_config(doc)
    validate_cycle_config(doc)
    _execute_write(
        """
        INSERT INTO cycle_config (id, target_asset, asset_symbol, slippage_bps, is_running, updated_at)
        VALUES (1, ?, ?, ?, ?, ?)
        ON CONFLICT (id) DO UPDATE
        SET target_asset = excluded.target_asset,
            asset_symbol = excluded.asset_symbol,
            slippage_bps = excluded.slippage_bps,
            is_running = excluded.is_running,
            updated_at = excluded.updated_at
        """,
        (doc["target_asset"], doc["asset_symbol"], int(doc["slippage_bps"]), int(bool(doc["is_running"])), _now()),
    )


def get_cycle_state() -> dict[str, Any]:
    conn = _connect_ro()
    try:
        row = conn.execute(
            """
            SELECT phase, active_worker_index, phase_started_at, version, lease_owner, lease_expires_at
            FROM cycle_state WHERE id = 1
            """
        ).fetchone()
    finally:
        conn.close()
    if not row:
        raise RuntimeError("cycle_state row (id=1) not found; run init-db")
    return {
        "phase": row[0],
        "active_worker_index": row[1],
        "phase_started_at": row[2],
        "version": row[3],
        "lease_owner": row[4],
        "lease_expires_at": row[5],
    }


def acquire_cycle_lease(owner: str, now: datetime, ttl_seconds: float) -> bool:
    """Take the lease if it is free or expired. Single conditional UPDATE; True if we got it."""
    expires = now + timedelta(seconds=float(ttl_seconds))
    changed = _execute_write(
        """
        UPDATE cycle_state
        SET lease_owner = ?, lease_expires_at = ?
        WHERE id = 1
          AND (lease_owner IS NULL OR lease_expires_at IS NULL OR lease_expires_at < ?)
        """,
        (owner, _ts(expires), _ts(now)),
    )
    return changed == 1


def renew_cycle_lease(owner: str, now: datetime, ttl_seconds: float) -> bool:
    """Push the expiry forward while `owner` still holds the lease; False once it was taken over."""
    expires = now + timedelta(seconds=float(ttl_seconds))
    changed = _execute_write(
        "UPDATE cycle_state SET lease_expires_at = ? WHERE id = 1 AND lease_owner = ?",
        (_ts(expires), owner),
    )
    return changed == 1


def save_cycle_state(
    phase: str,
    active_worker_index: int,
    phase_started_at: datetime | None,
    version: int,
    owner: str,
) -> bool:
    """Write the new phase only while `owner` still holds the lease."""
    changed = _execute_write(
        """
        UPDATE cycle_state
        SET phase = ?, active_worker_index = ?, phase_started_at = ?, version = ?, updated_at = ?
        WHERE id = 1 AND lease_owner = ?
        """,
        (phase, int(active_worker_index), _ts(phase_started_at), int(version), _now(), owner),
    )
    return changed == 1


def release_cycle_lease(owner: str) -> None:
    _execute_write(
        "UPDATE cycle_state SET lease_owner = NULL, lease_expires_at = NULL WHERE id = 1 AND lease_owner = ?",
        (owner,),
    )


# ----- WORKERS -----


def get_worker_accounts() -> list[dict[str, Any]]:
    conn = _connect_ro()
    try:
        rows = conn.execute(
            "SELECT wallet_index, address, secret FROM worker_accounts ORDER BY wallet_index ASC"
        ).fetchall()
    finally:
        conn.close()
    return [{"index": r[0], "address": r[1], "secret": r[2]} for r in rows]


def add_worker_account(index: int, address: str, secret: str) -> None:
    _execute_write(
        """
        INSERT INTO worker_accounts (wallet_index, address, secret)
        VALUES (?, ?, ?)
        ON CONFLICT (wallet_index) DO UPDATE
        SET address = excluded.address, secret = excluded.secret
        """,
        (int(index), address, secret),
    )


# ----- TRADE LEDGER -----


def record_trade(
    worker_address: str,
    kind: str,
    amount: int,
    status: str,
    external_ref: str | None = None,
    error: str | None = None,
) -> None:
    _execute_write(
        """
        INSERT INTO trade_ledger (timestamp, worker_address, kind, amount, status, external_ref, error)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (_now(), worker_address, kind, int(amount), status, external_ref, error),
    )


@safe_db_read(default_factory=pd.DataFrame)
def get_trades(limit: int = 200) -> pd.DataFrame:
    conn = _connect_ro()
    try:
        return pd.read_sql_query(
            "SELECT * FROM trade_ledger ORDER BY timestamp DESC, id DESC LIMIT ?",
            conn,
            params=(int(limit),),
        )
    finally:
        conn.close()


@safe_db_read(default_factory=empty_trade_stats)
def get_trade_stats() -> dict[str, Any]:
    conn = _connect_ro()
    try:
        df = pd.read_sql_query("SELECT kind, status, amount, timestamp FROM trade_ledger", conn)
    finally:
        conn.close()
    return summarise_trades(df)


@safe_db_read(default_factory=pd.DataFrame)
def get_recent_errors(limit: int = 10) -> pd.DataFrame:
    conn = _connect_ro()
    try:
        return pd.read_sql_query(
            "SELECT * FROM trade_ledger WHERE status = 'failed' ORDER BY timestamp DESC, id DESC LIMIT ?",
            conn,
            params=(int(limit),),
        )
    finally:
        conn.close()


# ----- EVENTS -----


def log_event(level: str, message: str, step: str | None = None) -> None:
    _execute_write(
        "INSERT INTO event_stream (timestamp, level, step, message) VALUES (?, ?, ?, ?)",
        (_now(), level, step, message),
    )


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
