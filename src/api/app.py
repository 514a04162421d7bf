from __future__ import annotations

import asyncio
import hmac
import logging
import os
import traceback
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any

import pandas as pd
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.domain.models import Phase, StepResult, StepStatus
from src.utils.database import (
    BACKEND,
    DB_PATH,
    get_cycle_config,
    get_cycle_state,
    get_events,
    get_recent_errors,
    get_trade_stats,
    get_trades,
    get_worker_accounts,
    set_cycle_config,
)
from src.utils.runtime_config import apply_cycle_config_patch, normalise_cycle_config

if TYPE_CHECKING:
    from src.trader.runner import RotatorComponents
    from src.trader.scheduler import CycleScheduler

logger = logging.getLogger(__name__)

_scheduler: CycleScheduler | None = None
_components: RotatorComponents | None = None

# Thread pool for blocking DB operations so they don't freeze the event loop.
_db_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="db_ro")
# Steps are serialised within this process; the lease serialises them across processes.
_step_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cycle_step")



def _df_to_records(df: pd.DataFrame) -> list[dict[str, Any]]:
    if df is None or df.empty:
        return []
    return jsonable_encoder(df.to_dict(orient="records"))


def _env_flag(name: str) -> bool:
    return str(os.environ.get(name, "")).strip() in {"1", "true", "TRUE", "yes", "YES"}


app = FastAPI(
    title="Wallet Rotator API",
    version="0.1.0",
)


@app.on_event("startup")
async def startup_event():
    global _scheduler, _components
    if _env_flag("ROTATOR_DISABLE_SCHEDULER"):
        logger.info("Scheduler startup skipped (ROTATOR_DISABLE_SCHEDULER set).")
        return

    # Import lazily so the read-only endpoints work without the signing stack configured.
    from src.trader.runner import build_components, build_scheduler

    try:
        _components = build_components()
        _scheduler = build_scheduler(_components)
    except Exception as e:
        # The API still serves history; /api/cycle/step reports 503 until this is fixed.
        logger.error(f"Scheduler unavailable: {type(e).__name__}: {e}")
        _components = None
        _scheduler = None
        return
    logger.info("Cycle scheduler ready (pool_size=%s)", _components.settings.pool_size)


@app.on_event("shutdown")
async def shutdown_event():
    global _scheduler, _components
    if _components is not None:
        _components.close()
    _components = None
    _scheduler = None


# Local dev defaults.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=False,
    allow_methods=["GET"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return a clean JSON 500 for anything a route did not handle."""
    logger.error(f"Unhandled exception: {type(exc).__name__}: {exc}")
    logger.debug(traceback.format_exc())
    return JSONResponse(
        status_code=500,
        content={
            "detail": f"Internal server error: {type(exc).__name__}",
            "message": str(exc)[:200],
        },
    )


async def _run_in_executor(func, *args, timeout_seconds: float = 3.0, **kwargs):
    """
    Run a blocking history read in the thread pool with a timeout.
    Returns None on timeout or failure so dashboards degrade instead of erroring.
    """
    loop = asyncio.get_event_loop()
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(_db_executor, lambda: func(*args, **kwargs)),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.warning(f"Database call timed out after {timeout_seconds}s: {func.__name__}")
        return None
    except Exception as e:
        logger.warning(f"Database call failed: {func.__name__}: {e}")
        return None


async def _run_in_executor_strict(func, *args, timeout_seconds: float = 3.0, executor=None, **kwargs):
    """
    Run a blocking call in an executor, but fail loudly (no silent fallbacks).
    Used for cycle config/state where partial/empty responses are dangerous.
    """
    loop = asyncio.get_event_loop()
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(executor or _db_executor, lambda: func(*args, **kwargs)),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError as e:
        raise HTTPException(status_code=503, detail=f"Call timed out: {func.__name__}") from e
    except HTTPException:
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)[:200]) from e
    except Exception as e:
        raise HTTPException(
            status_code=503,
            detail=f"Call failed: {func.__name__}: {type(e).__name__}: {str(e)[:200]}",
        ) from e


def _require_secret(request: Request) -> None:
    """Shared-secret check for the trigger and mutating endpoints (query `secret` or Bearer token)."""
    expected = (os.environ.get("ROTATOR_CRON_SECRET") or "").strip()
    if not expected:
        raise HTTPException(status_code=503, detail="Trigger secret not configured")
    provided = request.query_params.get("secret") or ""
    auth = request.headers.get("authorization") or ""
    if not provided and auth.lower().startswith("bearer "):
        provided = auth[7:].strip()
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Unauthorized")


def _redacted_db_path() -> str:
    # Do not leak credentials for network backends.
    if BACKEND == "sqlite":
        return str(DB_PATH)
    try:
        from urllib.parse import urlparse

        u = urlparse(str(DB_PATH))
        host = u.hostname or "localhost"
        if BACKEND == "postgres":
            port = u.port or 5432
            dbname = (u.path or "/").lstrip("/") or "postgres"
            return f"{u.scheme}://{host}:{port}/{dbname}"
        return f"{u.scheme}://{host}{u.path or ''}"
    except ValueError:
        return f"{BACKEND}://<redacted>"


@app.get("/api/health")
async def health() -> dict[str, Any]:
    """Health check: datastore reachability plus whether the scheduler is wired."""
    db_ok = False
    db_error = None
    try:
        await _run_in_executor_strict(get_cycle_state, timeout_seconds=3.0)
        db_ok = True
    except HTTPException as e:
        db_error = str(e.detail)

    return {
        "status": "ok" if db_ok else "degraded",
        "backend": BACKEND,
        "db_path": _redacted_db_path(),
        "db_ok": db_ok,
        "db_error": db_error,
        "scheduler_ready": _scheduler is not None,
    }


def _step_timeout_seconds(scheduler: CycleScheduler) -> float:
    override = (os.environ.get("ROTATOR_STEP_TIMEOUT_SECONDS") or "").strip()
    if override:
        return float(override)
    # A step may legitimately run as long as its lease.
    return float(scheduler.settings.lease_ttl_seconds)


def _timed_out_result(state: dict[str, Any] | None, timeout: float) -> StepResult:
    state = state or {}
    try:
        phase = Phase(str(state.get("phase") or Phase.IDLE.value).upper())
    except ValueError:
        phase = Phase.IDLE
    return StepResult(
        StepStatus.ERROR,
        phase,
        int(state.get("active_worker_index") or 0),
        action="none",
        message=f"Step did not finish within {timeout:g}s; it continues under its lease",
    )


@app.api_route("/api/cycle/step", methods=["GET", "POST"])
async def cycle_step(request: Request) -> JSONResponse:
    """
    Run one scheduler step. Called by cron / an external trigger at a fixed interval.

    Overlapping calls are safe: the loser of the lease gets status `skipped`.
    """
    _require_secret(request)
    scheduler = _scheduler
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler not ready")

    timeout = _step_timeout_seconds(scheduler)
    loop = asyncio.get_event_loop()
    try:
        result = await asyncio.wait_for(loop.run_in_executor(_step_executor, scheduler.run_step), timeout=timeout)
    except asyncio.TimeoutError:
        # The step keeps running in its thread under the lease; report where the state stands now.
        logger.error(f"Cycle step still running after {timeout:g}s")
        result = _timed_out_result(await _run_in_executor(get_cycle_state), timeout)
    status_code = 500 if result.status is StepStatus.ERROR else 200
    return JSONResponse(status_code=status_code, content=jsonable_encoder(result.to_dict()))


def _cycle_overview() -> dict[str, Any]:
    state = get_cycle_state()
    workers = get_worker_accounts()
    return {
        "config": normalise_cycle_config(get_cycle_config()),
        "state": {
            "phase": state.get("phase"),
            "active_worker_index": state.get("active_worker_index"),
            "phase_started_at": state.get("phase_started_at"),
            "version": state.get("version"),
            "lease_held": bool(state.get("lease_owner")),
            "lease_expires_at": state.get("lease_expires_at"),
        },
        "worker_count": len(workers),
    }


@app.get("/api/cycle/state")
async def cycle_state() -> dict[str, Any]:
    overview = await _run_in_executor_strict(_cycle_overview, timeout_seconds=3.0)
    return jsonable_encoder(overview)


@app.get("/api/config/cycle")
async def config_cycle() -> dict[str, Any]:
    doc = await _run_in_executor_strict(get_cycle_config, timeout_seconds=3.0)
    return jsonable_encoder(normalise_cycle_config(doc))


def _update_cycle_config(patch: dict[str, Any]) -> dict[str, Any]:
    merged = apply_cycle_config_patch(get_cycle_config(), patch)
    set_cycle_config(merged)
    return merged


@app.put("/api/config/cycle")
async def config_cycle_put(request: Request, payload: dict[str, Any]) -> dict[str, Any]:
    """Partial update of the cycle config (target asset, slippage, running flag)."""
    _require_secret(request)
    merged = await _run_in_executor_strict(_update_cycle_config, payload, timeout_seconds=3.0)
    return jsonable_encoder(merged)


@app.get("/api/history/trades")
async def history_trades(limit: int = Query(default=200, ge=1, le=5000)) -> list[dict[str, Any]]:
    df = await _run_in_executor(get_trades, limit=limit)
    return _df_to_records(df)


@app.get("/api/history/events")
async def history_events(limit: int = Query(default=200, ge=1, le=2000)) -> list[dict[str, Any]]:
    df = await _run_in_executor(get_events, limit=limit)
    return _df_to_records(df)


@app.get("/api/stats")
async def stats() -> dict[str, Any]:
    summary = await _run_in_executor(get_trade_stats)
    return jsonable_encoder(summary or {})


@app.get("/api/errors")
async def errors(limit: int = Query(default=10, ge=1, le=200)) -> list[dict[str, Any]]:
    df = await _run_in_executor(get_recent_errors, limit=limit)
    return _df_to_records(df)


@app.get("/api/balances")
async def balances(request: Request) -> dict[str, Any]:
    """Native and target-asset holdings of the treasury and every worker (live ledger reads)."""
    _require_secret(request)
    components = _components
    if components is None:
        raise HTTPException(status_code=503, detail="Ledger client not configured")

    from src.trader.recovery import collect_balances

    doc = await _run_in_executor_strict(
        collect_balances,
        components.store,
        components.ledger,
        components.treasury.address,
        timeout_seconds=60.0,
    )
    return jsonable_encoder(doc)
