from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from src.db.postgres.pool import _connect_ro, _pg_write_conn
from src.utils.runtime_config import normalise_cycle_config, validate_cycle_config


def get_cycle_config() -> dict[str, Any]:
    conn = _connect_ro()
    try:
        cur = conn.cursor()
        cur.execute(
            "SELECT target_asset, asset_symbol, slippage_bps, is_running, updated_at FROM cycle_config WHERE id = 1"
        )
        row = cur.fetchone()
        if not row:
            raise RuntimeError("cycle_config row (id=1) not found; run init-db")
        return {
            "target_asset": row[0],
            "asset_symbol": row[1],
            "slippage_bps": row[2],
            "is_running": bool(row[3]),
            "updated_at": row[4],
        }
    finally:
        conn.close()


def set_cycle_config(doc: dict[str, Any]) -> None:
    doc = normalise_cycle_config(doc)
    validate_cycle_config(doc)
    with _pg_write_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO cycle_config (id, target_asset, asset_symbol, slippage_bps, is_running, updated_at)
            VALUES (1, %s, %s, %s, %s, CURRENT_TIMESTAMP)
            ON CONFLICT (id) DO UPDATE
            SET target_asset = EXCLUDED.target_asset,
                asset_symbol = EXCLUDED.asset_symbol,
                slippage_bps = EXCLUDED.slippage_bps,
                is_running = EXCLUDED.is_running,
                updated_at = EXCLUDED.updated_at
            """,
            (doc["target_asset"], doc["asset_symbol"], int(doc["slippage_bps"]), bool(doc["is_running"])),
        )


def get_cycle_state() -> dict[str, Any]:
    conn = _connect_ro()
    try:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT phase, active_worker_index, phase_started_at, version, lease_owner, lease_expires_at
            FROM cycle_state WHERE id = 1
            """
        )
        row = cur.fetchone()
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
    finally:
        conn.close()


def acquire_cycle_lease(owner: str, now: datetime, ttl_seconds: float) -> bool:
    """Take the lease if it is free or expired. Single conditional UPDATE; True if we got it."""
    expires = now + timedelta(seconds=float(ttl_seconds))
    with _pg_write_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE cycle_state
            SET lease_owner = %s, lease_expires_at = %s
            WHERE id = 1
              AND (lease_owner IS NULL OR lease_expires_at IS NULL OR lease_expires_at < %s)
            """,
            (owner, expires, now),
        )
        return cur.rowcount == 1


def renew_cycle_lease(owner: str, now: datetime, ttl_seconds: float) -> bool:
    """Push the expiry forward while `owner` still holds the lease; False once it was taken over."""
    expires = now + timedelta(seconds=float(ttl_seconds))
    with _pg_write_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            "UPDATE cycle_state SET lease_expires_at = %s WHERE id = 1 AND lease_owner = %s",
            (expires, owner),
        )
        return cur.rowcount == 1


def save_cycle_state(
    phase: str,
    active_worker_index: int,
    phase_started_at: datetime | None,
    version: int,
    owner: str,
) -> bool:
    """Write the new phase only while `owner` still holds the lease."""
    with _pg_write_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE cycle_state
            SET phase = %s, active_worker_index = %s, phase_started_at = %s, version = %s,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = 1 AND lease_owner = %s
            """,
            (phase, int(active_worker_index), phase_started_at, int(version), owner),
        )
        return cur.rowcount == 1


def release_cycle_lease(owner: str) -> None:
    with _pg_write_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            "UPDATE cycle_state SET lease_owner = NULL, lease_expires_at = NULL WHERE id = 1 AND lease_owner = %s",
            (owner,),
        )
