"""
PostgreSQL database backend.

The implementation is split into:
- `src/db/postgres/pool.py` (connection pool + helpers)
- `src/db/postgres/schema.py` (schema initialisation)
- `src/db/postgres/repositories/*` (table-focused repository functions)

This file re-exports the public surface used by the store, API and control CLI.
"""

from __future__ import annotations

from src.db.postgres.pool import DB_PATH, DATABASE_URL, safe_db_read  # noqa: F401
from src.db.postgres.schema import init_db  # noqa: F401
from src.db.postgres.repositories.cycle import (  # noqa: F401
    acquire_cycle_lease,
    get_cycle_config,
    get_cycle_state,
    release_cycle_lease,
    renew_cycle_lease,
    save_cycle_state,
    set_cycle_config,
)
from src.db.postgres.repositories.events import get_events, log_event  # noqa: F401
from src.db.postgres.repositories.trades import (  # noqa: F401
    get_recent_errors,
    get_trade_stats,
    get_trades,
    record_trade,
)
from src.db.postgres.repositories.workers import add_worker_account, get_worker_accounts  # noqa: F401

BACKEND = "postgres"


def close_write_conn() -> None:
    # Pool handles lifecycle; nothing to do here.
    return
