from __future__ import annotations

from src.db.postgres.pool import _require_database_url


def init_db() -> None:
    """Create the rotator tables and seed the singleton rows (idempotent)."""
    import psycopg2  # type: ignore

    dsn = _require_database_url()
    conn = psycopg2.connect(dsn)
    try:
        conn.autocommit = True
        cur = conn.cursor()

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS cycle_config (
                id INTEGER PRIMARY KEY,
                target_asset TEXT,
                asset_symbol TEXT,
                slippage_bps INTEGER NOT NULL DEFAULT 300,
                is_running BOOLEAN NOT NULL DEFAULT FALSE,
                updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS cycle_state (
                id INTEGER PRIMARY KEY,
                phase TEXT NOT NULL DEFAULT 'IDLE',
                active_worker_index INTEGER NOT NULL DEFAULT 0,
                phase_started_at TIMESTAMPTZ,
                version BIGINT NOT NULL DEFAULT 0,
                lease_owner TEXT,
                lease_expires_at TIMESTAMPTZ,
                updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                CHECK (phase IN ('IDLE', 'HOLDING', 'COOLING'))
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS worker_accounts (
                id BIGSERIAL PRIMARY KEY,
                wallet_index INTEGER NOT NULL UNIQUE,
                address TEXT NOT NULL UNIQUE,
                secret TEXT NOT NULL,
                created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS trade_ledger (
                id BIGSERIAL PRIMARY KEY,
                timestamp TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                worker_address TEXT NOT NULL,
                kind TEXT NOT NULL,
                amount BIGINT NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                external_ref TEXT,
                error TEXT
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS trade_ledger_timestamp_idx ON trade_ledger (timestamp DESC)")

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS event_stream (
                id BIGSERIAL PRIMARY KEY,
                timestamp TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                level TEXT,
                step TEXT,
                message TEXT
            )
            """
        )

        cur.execute("INSERT INTO cycle_config (id) VALUES (1) ON CONFLICT (id) DO NOTHING")
        cur.execute("INSERT INTO cycle_state (id) VALUES (1) ON CONFLICT (id) DO NOTHING")
    finally:
        conn.close()
