from __future__ import annotations

from typing import Any

from src.db.postgres.pool import _connect_ro, _pg_write_conn


def get_worker_accounts() -> list[dict[str, Any]]:
    conn = _connect_ro()
    try:
        cur = conn.cursor()
        cur.execute("SELECT wallet_index, address, secret FROM worker_accounts ORDER BY wallet_index ASC")
        return [{"index": r[0], "address": r[1], "secret": r[2]} for r in cur.fetchall()]
    finally:
        conn.close()


def add_worker_account(index: int, address: str, secret: str) -> None:
    with _pg_write_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO worker_accounts (wallet_index, address, secret)
            VALUES (%s, %s, %s)
            ON CONFLICT (wallet_index) DO UPDATE
            SET address = EXCLUDED.address, secret = EXCLUDED.secret
            """,
            (int(index), address, secret),
        )
