from __future__ import annotations

import logging
import os
import threading
from copy import deepcopy
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from src.domain.models import LAMPORTS_PER_SOL, CycleSettings

logger = logging.getLogger(__name__)

_cache_lock = threading.Lock()
_cached: dict[str, Any] | None = None
_cached_path: str | None = None


def _project_root() -> Path:
    # src/utils/config_loader.py -> src/utils -> src -> project root
    return Path(__file__).resolve().parents[2]


def default_config_path() -> Path:
    return _project_root() / "config" / "config.yaml"


def _apply_env_overrides(cfg: dict[str, Any]) -> None:
    """
    Override selected YAML settings with environment variables.

    Secrets never live in the YAML; they are read where they are used.
    """
    network = cfg.setdefault("network", {})
    if os.getenv("ROTATOR_RPC_URL"):
        network["rpc_url"] = os.environ["ROTATOR_RPC_URL"]

    cycle = cfg.setdefault("cycle", {})
    if os.getenv("ROTATOR_POOL_SIZE"):
        cycle["pool_size"] = int(os.environ["ROTATOR_POOL_SIZE"])
    if os.getenv("ROTATOR_STEP_INTERVAL_SECONDS"):
        cycle["step_interval_seconds"] = int(os.environ["ROTATOR_STEP_INTERVAL_SECONDS"])

    notifications = cfg.setdefault("notifications", {})
    if os.getenv("ROTATOR_NOTIFICATIONS_ENABLED"):
        notifications["enabled"] = os.environ["ROTATOR_NOTIFICATIONS_ENABLED"].strip().lower() in {"1", "true", "yes"}


def validate_config(cfg: dict[str, Any]) -> None:
    """
    Fail fast if the configuration is missing required sections.
    Keep this minimal and pragmatic; value ranges are checked by `load_cycle_settings`.
    """
    required_top = ["network", "cycle", "treasury"]
    missing = [k for k in required_top if k not in cfg]
    if missing:
        raise ValueError(f"Missing required config sections: {', '.join(missing)}")

    if not (cfg.get("network") or {}).get("rpc_url"):
        raise ValueError("Missing network.rpc_url in config")

    cycle = cfg.get("cycle") or {}
    for k in ["pool_size", "hold_window_seconds", "cycle_window_seconds"]:
        if k not in cycle:
            raise ValueError(f"Missing cycle.{k} in config")


def load_config(config_path: str | Path | None = None, *, force_reload: bool = False) -> dict[str, Any]:
    """
    Load the YAML config once and reuse it across the process.

    - Reads `config/config.yaml` by default.
    - Applies environment overrides for a small set of operational settings.
    - Returns a deep copy so callers can safely mutate local copies.
    """
    global _cached, _cached_path

    path = Path(config_path) if config_path else default_config_path()
    path_str = str(path.resolve())

    with _cache_lock:
        if not force_reload and _cached is not None and _cached_path == path_str:
            return deepcopy(_cached)

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open("r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}

        if not isinstance(cfg, dict):
            raise ValueError(f"Config must be a YAML mapping (dict); got {type(cfg).__name__}")

        _apply_env_overrides(cfg)
        validate_config(cfg)

        _cached = cfg
        _cached_path = path_str
        logger.info("Loaded config from %s", path_str)
        return deepcopy(cfg)


def _sol(value: Any, *, name: str) -> int:
    """Convert a SOL amount from YAML into integer lamports."""
    try:
        lamports = Decimal(str(value)) * LAMPORTS_PER_SOL
    except InvalidOperation as e:
        raise ValueError(f"{name} must be a number") from e
    if lamports < 0:
        raise ValueError(f"{name} must be >= 0")
    return int(lamports)


def _positive(value: Any, *, name: str) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{name} must be a number") from e
    if v <= 0:
        raise ValueError(f"{name} must be > 0")
    return v


# Datastore round trips in one step: config, workers, lease, state, ledger rows, events.
_STORE_ALLOWANCE_SECONDS = 30.0
_DEFAULT_QUOTE_ENDPOINTS = 2


def worst_case_step_seconds(cfg: dict[str, Any]) -> float:
    """
    Upper bound on one scheduler step, from the configured network, swap and confirmation timeouts.

    The longer of the two legs that move funds:
      enter: treasury balance, fund transfer, settle wait, worker balance, buy
      exit:  token balance, sell, worker balance, sweep transfer
    A transfer is blockhash + submit + confirmation. A swap tries every quote endpoint on every
    attempt, then every build attempt, then submit + confirmation. A confirmation can overrun its
    timeout by one poll interval and one final status call.
    """
    network = cfg.get("network") or {}
    swap = cfg.get("swap") or {}
    cycle = cfg.get("cycle") or {}

    rpc = float(network.get("timeout_seconds", 15))
    http = float(swap.get("timeout_seconds", 15))
    attempts = max(1, int(swap.get("max_attempts", 2)))
    endpoints = len(swap.get("quote_urls") or ()) or _DEFAULT_QUOTE_ENDPOINTS
    confirm = float(cycle.get("confirm_timeout_seconds", 45)) + float(cycle.get("confirm_poll_seconds", 1.5)) + rpc

    transfer = 2 * rpc + confirm
    trade = attempts * endpoints * http + attempts * http + rpc + confirm
    enter = rpc + transfer + float(cycle.get("funding_settle_seconds", 2)) + rpc + trade
    exit_ = rpc + trade + rpc + transfer
    return max(enter, exit_) + _STORE_ALLOWANCE_SECONDS


def load_cycle_settings(cfg: dict[str, Any]) -> CycleSettings:
    """Build the frozen `CycleSettings` from a loaded config dict."""
    cycle = cfg.get("cycle") or {}
    treasury = cfg.get("treasury") or {}
    trading = cfg.get("trading") or {}
    settlement = cfg.get("settlement") or {}
    swap = cfg.get("swap") or {}

    pool_size = int(cycle["pool_size"])
    if pool_size < 1:
        raise ValueError("cycle.pool_size must be >= 1")

    safety = Decimal(str(treasury.get("safety_factor", "0.99")))
    if safety <= 0 or safety > 1:
        raise ValueError("treasury.safety_factor must be in (0, 1]")

    liquidation_bps = int(trading.get("liquidation_slippage_bps", 1000))
    if not 0 <= liquidation_bps <= 10_000:
        raise ValueError("trading.liquidation_slippage_bps must be between 0 and 10000")

    # The lease must outlive the slowest step, or a second trigger can reclaim it mid-step.
    lease_ttl = _positive(cycle.get("lease_ttl_seconds", 600), name="cycle.lease_ttl_seconds")
    step_budget = worst_case_step_seconds(cfg)
    if lease_ttl < step_budget:
        raise ValueError(
            f"cycle.lease_ttl_seconds ({lease_ttl:g}) must be at least the worst-case step duration "
            f"({step_budget:g}s) derived from the configured timeouts"
        )

    return CycleSettings(
        pool_size=pool_size,
        hold_window_seconds=_positive(cycle["hold_window_seconds"], name="cycle.hold_window_seconds"),
        cycle_window_seconds=_positive(cycle["cycle_window_seconds"], name="cycle.cycle_window_seconds"),
        step_interval_seconds=_positive(cycle.get("step_interval_seconds", 60), name="cycle.step_interval_seconds"),
        lease_ttl_seconds=lease_ttl,
        step_budget_seconds=step_budget,
        funding_settle_seconds=float(cycle.get("funding_settle_seconds", 2)),
        confirm_timeout_seconds=_positive(cycle.get("confirm_timeout_seconds", 45), name="cycle.confirm_timeout_seconds"),
        confirm_poll_seconds=_positive(cycle.get("confirm_poll_seconds", 1.5), name="cycle.confirm_poll_seconds"),
        min_reserve=_sol(treasury.get("min_reserve_sol", 0.05), name="treasury.min_reserve_sol"),
        safety_factor=safety,
        min_viable_trade=_sol(treasury.get("min_viable_trade_sol", 0.001), name="treasury.min_viable_trade_sol"),
        fee_buffer=_sol(trading.get("fee_buffer_sol", 0.003), name="trading.fee_buffer_sol"),
        dust_threshold=int(trading.get("dust_threshold", CycleSettings.dust_threshold)),
        liquidation_slippage_bps=liquidation_bps,
        rent_buffer=_sol(settlement.get("rent_buffer_sol", 0.001), name="settlement.rent_buffer_sol"),
        funding_asset=str(swap.get("funding_asset") or CycleSettings.funding_asset),
    )
