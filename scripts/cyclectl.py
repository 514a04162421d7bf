#!/usr/bin/env python3
"""
Operator control for the wallet rotator.

    python scripts/cyclectl.py init-db
    python scripts/cyclectl.py import-wallets wallets.json
    python scripts/cyclectl.py set-asset <mint> --symbol BONK
    python scripts/cyclectl.py start | stop | status | stats | errors | step
    python scripts/cyclectl.py drain | withdraw | balances
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# Ensure repo root is on sys.path so `import src...` works when running as a script.
_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

_secrets = _REPO_ROOT / "config" / "secrets.env"
if _secrets.exists():
    load_dotenv(_secrets)


def _print(obj: Any) -> None:
    print(json.dumps(obj, indent=2, default=str))


def _read_secrets(path: Path) -> list[str]:
    """A JSON array of secrets, or one secret per line (JSON byte arrays or base58)."""
    raw = path.read_text(encoding="utf-8").strip()
    if raw.startswith("["):
        try:
            doc = json.loads(raw)
        except ValueError:
            # One byte array per line.
            doc = None
        if isinstance(doc, list):
            # A bare byte array is a single key, not a list of keys.
            if doc and all(isinstance(x, int) for x in doc):
                return [raw]
            return [x.strip() if isinstance(x, str) else json.dumps(x) for x in doc]
    return [line.strip() for line in raw.splitlines() if line.strip() and not line.startswith("#")]


def _update_config(patch: dict[str, Any]) -> dict[str, Any]:
    from src.utils.database import get_cycle_config, set_cycle_config
    from src.utils.runtime_config import apply_cycle_config_patch

    merged = apply_cycle_config_patch(get_cycle_config(), patch)
    set_cycle_config(merged)
    return merged


def cmd_init_db(args: argparse.Namespace) -> int:
    from src.utils.database import BACKEND, init_db

    init_db()
    print(f"Initialised {BACKEND} datastore")
    return 0


def cmd_import_wallets(args: argparse.Namespace) -> int:
    from src.ledger.keys import address_of
    from src.utils.database import add_worker_account

    secrets = _read_secrets(Path(args.path))
    for offset, secret in enumerate(secrets):
        index = int(args.start_index) + offset
        address = address_of(secret)
        add_worker_account(index, address, secret)
        print(f"{index:>3}  {address}")
    print(f"Imported {len(secrets)} worker accounts")
    return 0


def cmd_start(args: argparse.Namespace) -> int:
    _print(_update_config({"is_running": True}))
    return 0


def cmd_stop(args: argparse.Namespace) -> int:
    _print(_update_config({"is_running": False}))
    return 0


def cmd_set_asset(args: argparse.Namespace) -> int:
    patch: dict[str, Any] = {"target_asset": args.mint}
    if args.symbol:
        patch["asset_symbol"] = args.symbol
    _print(_update_config(patch))
    return 0


def cmd_set_slippage(args: argparse.Namespace) -> int:
    _print(_update_config({"slippage_bps": int(args.bps)}))
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    from src.utils.database import get_cycle_config, get_cycle_state, get_worker_accounts

    state = get_cycle_state()
    _print(
        {
            "config": get_cycle_config(),
            "state": {k: v for k, v in state.items() if k != "lease_owner"},
            "lease_held": bool(state.get("lease_owner")),
            "workers": len(get_worker_accounts()),
        }
    )
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    from src.utils.database import get_trade_stats

    _print(get_trade_stats())
    return 0


def cmd_errors(args: argparse.Namespace) -> int:
    from src.utils.database import get_recent_errors

    df = get_recent_errors(limit=int(args.limit))
    _print([] if df is None or df.empty else df.to_dict(orient="records"))
    return 0


def cmd_step(args: argparse.Namespace) -> int:
    from src.domain.models import StepStatus
    from src.trader.runner import build_components, build_scheduler

    components = build_components()
    try:
        result = build_scheduler(components).run_step()
    finally:
        components.close()
    _print(result.to_dict())
    return 1 if result.status is StepStatus.ERROR else 0


def cmd_drain(args: argparse.Namespace) -> int:
    from src.trader.recovery import drain_all_workers
    from src.trader.runner import build_components

    components = build_components()
    try:
        results = drain_all_workers(
            components.store, components.executor, components.settings, notifier=components.notifier
        )
    finally:
        components.close()
    _print(results)
    return 0 if all(r["success"] for r in results) else 1


def cmd_withdraw(args: argparse.Namespace) -> int:
    from src.trader.recovery import withdraw_all_workers
    from src.trader.runner import build_components

    components = build_components()
    try:
        results = withdraw_all_workers(
            components.store,
            components.settlement,
            components.treasury.address,
            components.settings,
            notifier=components.notifier,
        )
    finally:
        components.close()
    _print(results)
    return 0 if all(r["success"] for r in results) else 1


def cmd_balances(args: argparse.Namespace) -> int:
    from src.trader.recovery import collect_balances
    from src.trader.runner import build_components

    components = build_components()
    try:
        doc = collect_balances(components.store, components.ledger, components.treasury.address)
    finally:
        components.close()
    _print(doc)
    failed = doc["treasury"]["error"] or any(w["error"] for w in doc["workers"])
    return 1 if failed else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Wallet rotator control")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create tables and seed the singleton rows").set_defaults(func=cmd_init_db)

    p = sub.add_parser("import-wallets", help="Register worker accounts from a secrets file")
    p.add_argument("path", help="JSON array of secrets, or one secret per line")
    p.add_argument("--start-index", type=int, default=0)
    p.set_defaults(func=cmd_import_wallets)

    sub.add_parser("start", help="Set is_running = true").set_defaults(func=cmd_start)
    sub.add_parser("stop", help="Set is_running = false").set_defaults(func=cmd_stop)

    p = sub.add_parser("set-asset", help="Set the target asset (mint address)")
    p.add_argument("mint")
    p.add_argument("--symbol", default=None)
    p.set_defaults(func=cmd_set_asset)

    p = sub.add_parser("set-slippage", help="Set the buy slippage tolerance in basis points")
    p.add_argument("bps", type=int)
    p.set_defaults(func=cmd_set_slippage)

    sub.add_parser("status", help="Show config, phase and pool size").set_defaults(func=cmd_status)
    sub.add_parser("stats", help="Trade ledger totals").set_defaults(func=cmd_stats)

    p = sub.add_parser("errors", help="Most recent failed ledger entries")
    p.add_argument("--limit", type=int, default=10)
    p.set_defaults(func=cmd_errors)

    sub.add_parser("step", help="Run one scheduler step now").set_defaults(func=cmd_step)
    sub.add_parser("drain", help="Liquidate every worker's holding (cycle must be stopped)").set_defaults(
        func=cmd_drain
    )
    sub.add_parser("withdraw", help="Sweep every worker back to the treasury (cycle must be stopped)").set_defaults(
        func=cmd_withdraw
    )
    sub.add_parser("balances", help="Treasury and per-worker native / asset holdings").set_defaults(
        func=cmd_balances
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    from src.domain.errors import ConfigurationError, CycleBusy

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    args = build_parser().parse_args(argv)
    try:
        return int(args.func(args))
    except (ValueError, ConfigurationError, CycleBusy) as e:
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
