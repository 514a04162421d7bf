from __future__ import annotations

from typing import Any

import pandas as pd

from src.db.postgres.pool import _connect_ro, _pg_write_conn, safe_db_read
from src.db.stats import empty_trade_stats, summarise_trades


def record_trade(
    worker_address: str,
    kind: str,
    amount: int,
    status: str,
    external_ref: str | None = None,
    error: str | None = None,
) -> None:
    with _pg_write_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO trade_ledger (worker_address, kind, amount, status, external_ref, error)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (worker_address, kind, int(amount), status, external_ref, error),
        )


@safe_db_read(default_factory=pd.DataFrame)
def get_trades(limit: int = 200) -> pd.DataFrame:
    conn = _connect_ro()
    try:
        return pd.read_sql_query(
            "SELECT * FROM trade_ledger ORDER BY timestamp DESC, id DESC LIMIT %s",
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
            "SELECT * FROM trade_ledger WHERE status = 'failed' ORDER BY timestamp DESC, id DESC LIMIT %s",
            conn,
            params=(int(limit),),
        )
    finally:
        conn.close()
