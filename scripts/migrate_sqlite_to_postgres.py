import sys
import argparse
import os
import sqlite3
from pathlib import Path
from typing import Callable, Iterable


# Ensure repo root is on sys.path so `import src...` works when running as a script.
_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def _require_postgres_url(cli_url: str | None) -> str:
    url = (cli_url or os.environ.get("ROTATOR_DATABASE_URL") or os.environ.get("DATABASE_URL") or "").strip()
    if not url:
        raise SystemExit("PostgreSQL URL not set. Provide --postgres or set ROTATOR_DATABASE_URL.")
    if not (url.startswith("postgres://") or url.startswith("postgresql://")):
        raise SystemExit("ROTATOR_DATABASE_URL must start with postgres:// or postgresql://")
    return url


def _ensure_sqlite_columns(conn: sqlite3.Connection, table: str, expected: list[str]) -> None:
    cols = [r[1] for r in conn.execute(f"PRAGMA table_info({table})").fetchall()]
    missing = [c for c in expected if c not in cols]
    if missing:
        raise SystemExit(f"SQLite table {table!r} is missing columns: {missing}. Run `cyclectl.py init-db` first.")


def _chunks(cur: sqlite3.Cursor, size: int) -> Iterable[list[tuple]]:
    while True:
        rows = cur.fetchmany(size)
        if not rows:
            break
        yield rows


def _config_row(row: tuple) -> tuple:
    # SQLite stores is_running as 0/1; Postgres wants a boolean.
    rid, target, symbol, slippage, running, updated = row
    return (rid, target, symbol, slippage, bool(running), updated)


# (columns, row transform). Lease columns are deliberately not migrated.
_TABLES: dict[str, tuple[list[str], Callable[[tuple], tuple] | None]] = {
    "cycle_config": (["id", "target_asset", "asset_symbol", "slippage_bps", "is_running", "updated_at"], _config_row),
    "cycle_state": (["id", "phase", "active_worker_index", "phase_started_at", "version", "updated_at"], None),
    "worker_accounts": (["id", "wallet_index", "address", "secret", "created_at"], None),
    "trade_ledger": (
        ["id", "timestamp", "worker_address", "kind", "amount", "status", "external_ref", "error"],
        None,
    ),
    "event_stream": (["id", "timestamp", "level", "step", "message"], None),
}
_SINGLETONS = {"cycle_config", "cycle_state"}
_SERIAL_TABLES = ["worker_accounts", "trade_ledger", "event_stream"]


def main() -> None:
    parser = argparse.ArgumentParser(description="Migrate rotator.db (SQLite) into PostgreSQL.")
    parser.add_argument("--sqlite", default="rotator.db", help="Path to SQLite file (default: rotator.db)")
    parser.add_argument("--postgres", default=None, help="PostgreSQL URL. If omitted, uses ROTATOR_DATABASE_URL.")
    parser.add_argument("--batch", type=int, default=2000, help="Insert batch size (default: 2000)")
    args = parser.parse_args()

    pg_url = _require_postgres_url(args.postgres)

    # Ensure the Postgres backend initialises with the right URL.
    os.environ["ROTATOR_DATABASE_URL"] = pg_url

    from src.db.postgres.schema import init_db

    init_db()

    import psycopg2  # type: ignore
    from psycopg2.extras import execute_values  # type: ignore

    sqlite_conn = sqlite3.connect(str(args.sqlite))
    pg_conn = psycopg2.connect(pg_url)
    pg_conn.autocommit = False

    try:
        pg_cur = pg_conn.cursor()

        for table, (cols, transform) in _TABLES.items():
            _ensure_sqlite_columns(sqlite_conn, table, cols)
            s_cur = sqlite_conn.cursor()
            s_cur.execute(f"SELECT {', '.join(cols)} FROM {table}")

            col_list = ", ".join(cols)
            if table in _SINGLETONS:
                insert_sql = (
                    f"INSERT INTO {table} ({col_list}) VALUES %s "
                    "ON CONFLICT (id) DO UPDATE SET "
                    + ", ".join([f"{c}=EXCLUDED.{c}" for c in cols if c != "id"])
                )
            else:
                insert_sql = f"INSERT INTO {table} ({col_list}) VALUES %s ON CONFLICT DO NOTHING"

            total = 0
            for batch in _chunks(s_cur, int(args.batch)):
                rows = [transform(r) for r in batch] if transform else batch
                execute_values(pg_cur, insert_sql, rows, page_size=int(args.batch))
                pg_conn.commit()
                total += len(rows)

            print(f"{table}: migrated {total} rows")

        for table in _SERIAL_TABLES:
            pg_cur.execute(
                f"""
                SELECT setval(
                    pg_get_serial_sequence('{table}', 'id'),
                    COALESCE((SELECT MAX(id) FROM {table}), 1),
                    true
                )
                """
            )
        pg_conn.commit()
        print("Sequences updated.")
    finally:
        sqlite_conn.close()
        pg_conn.close()


if __name__ == "__main__":
    main()
