"""
REST datastore backend (PostgREST / Supabase-style HTTP API over the same tables).

Schema creation is managed on the server side; `init_db` only seeds the singleton rows.
The cycle lease is a conditional PATCH: PostgREST applies the filter and the update in one
statement, and `Prefer: return=representation` tells us whether a row matched.
"""

from __future__ import annotations

import logging
import os
import threading
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Any, Callable, ParamSpec, TypeVar

import httpx
import pandas as pd

from src.db.stats import empty_trade_stats, summarise_trades
from src.utils.runtime_config import normalise_cycle_config, validate_cycle_config

logger = logging.getLogger(__name__)

REST_URL = (os.environ.get("ROTATOR_REST_URL") or "").strip().rstrip("/")
REST_KEY = (os.environ.get("ROTATOR_REST_KEY") or "").strip()
_TIMEOUT_SECONDS = float(os.environ.get("ROTATOR_REST_TIMEOUT_SECONDS", "10"))

# Reported by /api/health (redacted there).
DB_PATH = REST_URL

BACKEND = "rest"

P = ParamSpec("P")
T = TypeVar("T")

_client_lock = threading.Lock()
_client: httpx.Client | None = None


class RestStoreError(RuntimeError):
    """The REST datastore rejected a request or returned an unusable body."""


def _get_client() -> httpx.Client:
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                if not REST_URL:
                    raise RuntimeError("REST datastore selected but ROTATOR_REST_URL is not set.")
                headers = {"Content-Type": "application/json", "Accept": "application/json"}
                if REST_KEY:
                    headers["apikey"] = REST_KEY
                    headers["Authorization"] = f"Bearer {REST_KEY}"
                _client = httpx.Client(base_url=REST_URL, headers=headers, timeout=_TIMEOUT_SECONDS)
    return _client


def set_client(client: httpx.Client | None) -> None:
    """Swap the HTTP client (tests use an `httpx.MockTransport`)."""
    global _client
    with _client_lock:
        _client = client


def close_write_conn() -> None:
    global _client
    with _client_lock:
        if _client is not None:
            _client.close()
            _client = None


def safe_db_read(default_factory: Callable[[], T]) -> Callable[[Callable[P, T]], Callable[P, T]]:
    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            try:
                return func(*args, **kwargs)
            except (httpx.HTTPError, RestStoreError) as e:
                logger.warning(f"REST read failed in {func.__name__}: {e}")
                return default_factory()

        return wrapper

    return decorator


def _request(
    method: str,
    table: str,
    *,
    params: dict[str, str] | None = None,
    json: Any = None,
    prefer: str | None = None,
) -> Any:
    headers = {"Prefer": prefer} if prefer else None
    resp = _get_client().request(method, f"/{table}", params=params, json=json, headers=headers)
    if resp.status_code >= 400:
        raise RestStoreError(f"{method} {table} failed: {resp.status_code}: {resp.text[:200]}")
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError as e:
        raise RestStoreError(f"{method} {table} returned invalid JSON") from e


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _single(rows: Any, table: str) -> dict[str, Any]:
    if not isinstance(rows, list) or not rows:
        raise RuntimeError(f"{table} row (id=1) not found; run init-db")
    return rows[0]


def init_db() -> None:
    for table in ("cycle_config", "cycle_state"):
        _request("POST", table, json={"id": 1}, prefer="resolution=ignore-duplicates,return=minimal")
    logger.info("Seeded REST datastore singleton rows at %s", REST_URL)


# ----- CYCLE CONFIG / STATE -----


def get_cycle_config() -> dict[str, Any]:
    row = _single(
        _request(
            "GET",
            "cycle_config",
            params={"id": "eq.1", "select": "target_asset,asset_symbol,slippage_bps,is_running,updated_at"},
        ),
        "cycle_config",
    )
    return {
        "target_asset": row.get("target_asset"),
        "asset_symbol": row.get("asset_symbol"),
        "slippage_bps": row.get("slippage_bps"),
        "is_running": bool(row.get("is_running")),
        "updated_at": row.get("updated_at"),
    }


def set_cycle_config(doc: dict[str, Any]) -> None:
    doc = normalise_cycle_config(doc)
    validate_cycle_config(doc)
    body = {
        "id": 1,
        "target_asset": doc["target_asset"],
        "asset_symbol": doc["asset_symbol"],
        "slippage_bps": int(doc["slippage_bps"]),
        "is_running": bool(doc["is_running"]),
        "updated_at": _ts(datetime.now(timezone.utc)),
    }
    _request("POST", "cycle_config", json=body, prefer="resolution=merge-duplicates,return=minimal")


def get_cycle_state() -> dict[str, Any]:
    row = _single(
        _request(
            "GET",
            "cycle_state",
            params={
                "id": "eq.1",
                "select": "phase,active_worker_index,phase_started_at,version,lease_owner,lease_expires_at",
            },
        ),
        "cycle_state",
    )
    return {
        "phase": row.get("phase"),
        "active_worker_index": row.get("active_worker_index"),
        "phase_started_at": row.get("phase_started_at"),
        "version": row.get("version") or 0,
        "lease_owner": row.get("lease_owner"),
        "lease_expires_at": row.get("lease_expires_at"),
    }


def acquire_cycle_lease(owner: str, now: datetime, ttl_seconds: float) -> bool:
    expires = now + timedelta(seconds=float(ttl_seconds))
    rows = _request(
        "PATCH",
        "cycle_state",
        params={
            "id": "eq.1",
            "or": f'(lease_owner.is.null,lease_expires_at.is.null,lease_expires_at.lt."{_ts(now)}")',
        },
        json={"lease_owner": owner, "lease_expires_at": _ts(expires)},
        prefer="return=representation",
    )
    return isinstance(rows, list) and len(rows) == 1


def renew_cycle_lease(owner: str, now: datetime, ttl_seconds: float) -> bool:
    expires = now + timedelta(seconds=float(ttl_seconds))
    rows = _request(
        "PATCH",
        "cycle_state",
        params={"id": "eq.1", "lease_owner": f"eq.{owner}"},
        json={"lease_expires_at": _ts(expires)},
        prefer="return=representation",
    )
    return isinstance(rows, list) and len(rows) == 1


def save_cycle_state(
    phase: str,
    active_worker_index: int,
    phase_started_at: datetime | None,
    version: int,
    owner: str,
) -> bool:
    rows = _request(
        "PATCH",
        "cycle_state",
        params={"id": "eq.1", "lease_owner": f"eq.{owner}"},
        json={
            "phase": phase,
            "active_worker_index": int(active_worker_index),
            "phase_started_at": _ts(phase_started_at),
            "version": int(version),
            "updated_at": _ts(datetime.now(timezone.utc)),
        },
        prefer="return=representation",
    )
    return isinstance(rows, list) and len(rows) == 1


def release_cycle_lease(owner: str) -> None:
    _request(
        "PATCH",
        "cycle_state",
        params={"id": "eq.1", "lease_owner": f"eq.{owner}"},
        json={"lease_owner": None, "lease_expires_at": None},
        prefer="return=minimal",
    )


# ----- WORKERS -----


def get_worker_accounts() -> list[dict[str, Any]]:
    rows = _request(
        "GET",
        "worker_accounts",
        params={"select": "wallet_index,address,secret", "order": "wallet_index.asc"},
    )
    return [{"index": r["wallet_index"], "address": r["address"], "secret": r["secret"]} for r in rows or []]


def add_worker_account(index: int, address: str, secret: str) -> None:
    _request(
        "POST",
        "worker_accounts",
        params={"on_conflict": "wallet_index"},
        json={"wallet_index": int(index), "address": address, "secret": secret},
        prefer="resolution=merge-duplicates,return=minimal",
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
    _request(
        "POST",
        "trade_ledger",
        json={
            "worker_address": worker_address,
            "kind": kind,
            "amount": int(amount),
            "status": status,
            "external_ref": external_ref,
            "error": error,
        },
        prefer="return=minimal",
    )


@safe_db_read(default_factory=pd.DataFrame)
def get_trades(limit: int = 200) -> pd.DataFrame:
    rows = _request("GET", "trade_ledger", params={"order": "timestamp.desc,id.desc", "limit": str(int(limit))})
    return pd.DataFrame(rows or [])


@safe_db_read(default_factory=empty_trade_stats)
def get_trade_stats() -> dict[str, Any]:
    rows = _request("GET", "trade_ledger", params={"select": "kind,status,amount,timestamp"})
    return summarise_trades(pd.DataFrame(rows or [], columns=["kind", "status", "amount", "timestamp"]))


@safe_db_read(default_factory=pd.DataFrame)
def get_recent_errors(limit: int = 10) -> pd.DataFrame:
    rows = _request(
        "GET",
        "trade_ledger",
        params={"status": "eq.failed", "order": "timestamp.desc,id.desc", "limit": str(int(limit))},
    )
    return pd.DataFrame(rows or [])


# ----- EVENTS -----


def log_event(level: str, message: str, step: str | None = None) -> None:
    _request("POST", "event_stream", json={"level": level, "step": step, "message": message}, prefer="return=minimal")


@safe_db_read(default_factory=pd.DataFrame)
def get_events(limit: int = 200) -> pd.DataFrame:
    rows = _request("GET", "event_stream", params={"order": "timestamp.desc,id.desc", "limit": str(int(limit))})
    return pd.DataFrame(rows or [])
