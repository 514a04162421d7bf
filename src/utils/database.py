"""
Database backend selector.

Selection is configuration-driven:

- If `ROTATOR_DATABASE_URL` (or `DATABASE_URL`) starts with `postgres://` or `postgresql://`,
  the PostgreSQL backend is used.
- Else, if `ROTATOR_REST_URL` is set, the REST datastore backend is used.
- Otherwise, we default to the SQLite backend (`ROTATOR_SQLITE_PATH` or `rotator.db`).

This file re-exports a consistent function surface used across the codebase.
"""

from __future__ import annotations

import os


def _use_postgres() -> bool:
    url = (os.environ.get("ROTATOR_DATABASE_URL") or os.environ.get("DATABASE_URL") or "").strip()
    return url.startswith("postgres://") or url.startswith("postgresql://")


def _use_rest() -> bool:
    return bool((os.environ.get("ROTATOR_REST_URL") or "").strip())


if _use_postgres():
    from .database_postgres import *  # noqa: F401,F403
elif _use_rest():
    from .database_rest import *  # noqa: F401,F403
else:
    from .database_sqlite import *  # noqa: F401,F403
