from __future__ import annotations

import re
from copy import deepcopy
from typing import Any

MIN_SLIPPAGE_BPS = 50
MAX_SLIPPAGE_BPS = 5000

# Base58 public key: 32 bytes encode to 32-44 characters, no 0/O/I/l.
_ADDRESS_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")

# Column names used by older datastores for the same fields.
_LEGACY_KEYS = {
    "token_mint": "target_asset",
    "token_symbol": "asset_symbol",
}


def default_cycle_config() -> dict[str, Any]:
    return {
        "target_asset": None,
        "asset_symbol": None,
        "slippage_bps": 300,
        "is_running": False,
    }


def normalise_cycle_config(doc: dict[str, Any] | None) -> dict[str, Any]:
    if doc is None:
        return default_cycle_config()
    if not isinstance(doc, dict):
        raise ValueError(f"cycle config must be an object; got {type(doc).__name__}")

    out = deepcopy(doc)
    for old, new in _LEGACY_KEYS.items():
        if old in out:
            value = out.pop(old)
            out.setdefault(new, value)

    # Bookkeeping columns are owned by the datastore.
    for k in ("id", "updated_at", "created_at"):
        out.pop(k, None)

    for k, v in default_cycle_config().items():
        if k not in out or (out[k] is None and k in {"slippage_bps", "is_running"}):
            out[k] = v

    if isinstance(out.get("target_asset"), str):
        out["target_asset"] = out["target_asset"].strip() or None
    if isinstance(out.get("asset_symbol"), str):
        out["asset_symbol"] = out["asset_symbol"].strip().upper() or None
    return out


def _validate_bool(v: Any, *, name: str) -> None:
    if not isinstance(v, bool):
        raise ValueError(f"{name} must be boolean")


def _validate_address(v: Any, *, name: str) -> None:
    if v is None:
        return
    if not isinstance(v, str) or not _ADDRESS_RE.match(v):
        raise ValueError(f"{name} must be a base58 address")


def _validate_symbol(v: Any, *, name: str) -> None:
    if v is None:
        return
    if not isinstance(v, str) or not v.strip():
        raise ValueError(f"{name} must be a non-empty string or null")
    if len(v) > 20:
        raise ValueError(f"{name} is too long (max 20 characters)")


def _validate_slippage(v: Any, *, name: str) -> None:
    if not isinstance(v, int) or isinstance(v, bool):
        raise ValueError(f"{name} must be an integer")
    if v < MIN_SLIPPAGE_BPS or v > MAX_SLIPPAGE_BPS:
        raise ValueError(f"{name} must be between {MIN_SLIPPAGE_BPS} and {MAX_SLIPPAGE_BPS}")


_ALLOWED_VALIDATORS: dict[str, Any] = {
    "target_asset": lambda v: _validate_address(v, name="target_asset"),
    "asset_symbol": lambda v: _validate_symbol(v, name="asset_symbol"),
    "slippage_bps": lambda v: _validate_slippage(v, name="slippage_bps"),
    "is_running": lambda v: _validate_bool(v, name="is_running"),
}


def validate_cycle_config(doc: dict[str, Any]) -> None:
    if not isinstance(doc, dict):
        raise ValueError("cycle config must be an object")

    # Disallow unknown keys; keeps the system predictable.
    for key, value in doc.items():
        validator = _ALLOWED_VALIDATORS.get(key)
        if validator is None:
            raise ValueError(f"Unsupported cycle config key: {key}")
        validator(value)

    if doc.get("is_running") and not doc.get("target_asset"):
        raise ValueError("Cannot start the cycle without a target_asset")


def apply_cycle_config_patch(current: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Merge a partial update into the current document and validate the result."""
    if not isinstance(patch, dict):
        raise ValueError("cycle config patch must be an object")
    changes = deepcopy(patch)
    for old, new in _LEGACY_KEYS.items():
        if old in changes:
            changes[new] = changes.pop(old)
    merged = normalise_cycle_config({**normalise_cycle_config(current), **changes})
    validate_cycle_config(merged)
    return merged
