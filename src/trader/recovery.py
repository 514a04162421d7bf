"""
Operator recovery commands: liquidate every worker's holding, or sweep every worker back to the treasury.
`collect_balances` is the read that confirms either one landed.

Drain and withdraw run only while the cycle is stopped and hold the cycle lease for their whole duration, so a
trigger that fires meanwhile gets `skipped` instead of racing the recovery.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

from src.domain.errors import ConfigurationError, CycleBusy, LedgerError
from src.domain.models import CycleSettings, TradeLedgerEntry, lamports_to_sol, utcnow
from src.ports.ledger import LedgerPort
from src.ports.notifier import NotifierPort
from src.ports.store import CycleStore
from src.trader.notifier import NullNotifier
from src.trading.executor import TradeExecutor
from src.trading.settlement import SettlementAgent
from src.trading.worker_pool import WorkerPoolRegistry

logger = logging.getLogger(__name__)


@contextmanager
def _maintenance_lease(store: CycleStore, settings: CycleSettings) -> Iterator[str]:
    config = store.load_config()
    if config.is_running:
        raise CycleBusy("Stop the cycle before running recovery")
    owner = f"recovery-{uuid.uuid4().hex}"
    # Recovery walks the whole pool; give it one lease TTL per worker.
    ttl = float(settings.lease_ttl_seconds) * max(1, settings.pool_size)
    if not store.acquire_lease(owner, utcnow(), ttl):
        raise CycleBusy("Cycle lease is held by another invocation")
    try:
        yield owner
    finally:
        store.release_lease(owner)


def _record(store: CycleStore, entry: TradeLedgerEntry) -> None:
    try:
        store.record_trade(entry)
    except Exception as e:
        logger.error(f"Failed to record {entry.kind} for {entry.worker_address[:8]}: {e}")


def _event(store: CycleStore, level: str, message: str, step: str) -> None:
    try:
        store.log_event(level, message, step)
    except Exception as e:
        logger.warning(f"Failed to log event: {type(e).__name__}: {e}")


def _notify(notifier: NotifierPort, text: str) -> None:
    try:
        notifier.notify(text)
    except Exception as e:
        logger.warning(f"Notifier failed: {type(e).__name__}: {e}")


def drain_all_workers(
    store: CycleStore,
    executor: TradeExecutor,
    settings: CycleSettings,
    *,
    notifier: NotifierPort | None = None,
) -> list[dict[str, Any]]:
    """Sell every worker's holding of the target asset at the liquidation slippage."""
    notifier = notifier or NullNotifier()
    with _maintenance_lease(store, settings):
        config = store.load_config()
        if not config.target_asset:
            raise ConfigurationError("No target asset configured; nothing to drain")
        registry = WorkerPoolRegistry(store.load_workers(), settings.pool_size)

        results: list[dict[str, Any]] = []
        for worker in registry:
            trade = executor.liquidate_position(worker, config.target_asset)
            if trade.amount > 0 or not trade.success:
                _record(
                    store,
                    TradeLedgerEntry(
                        worker.address,
                        "sell",
                        trade.amount,
                        "success" if trade.success else "failed",
                        external_ref=trade.external_ref,
                        error=trade.error,
                    ),
                )
            results.append(
                {"index": worker.index, "address": worker.address, "success": trade.success,
                 "amount": trade.amount, "error": trade.error}
            )

    sold = sum(1 for r in results if r["success"] and r["amount"] > 0)
    failed = sum(1 for r in results if not r["success"])
    msg = f"Drain complete: {sold} sold, {failed} failed, {len(results) - sold - failed} empty"
    logger.info(msg)
    _event(store, "INFO" if not failed else "WARNING", msg, "Drain")
    _notify(notifier, f"🧹 <b>Drain complete</b>\nSold: {sold}\nFailed: {failed}")
    return results


def withdraw_all_workers(
    store: CycleStore,
    settlement: SettlementAgent,
    treasury_address: str,
    settings: CycleSettings,
    *,
    notifier: NotifierPort | None = None,
) -> list[dict[str, Any]]:
    """Sweep every worker's native balance (minus the rent buffer) back to the treasury."""
    notifier = notifier or NullNotifier()
    with _maintenance_lease(store, settings):
        registry = WorkerPoolRegistry(store.load_workers(), settings.pool_size)

        results: list[dict[str, Any]] = []
        for worker in registry:
            sweep = settlement.sweep(worker, treasury_address)
            if sweep.amount > 0 or not sweep.success:
                _record(
                    store,
                    TradeLedgerEntry(
                        worker.address,
                        "sweep",
                        sweep.amount,
                        "success" if sweep.success else "failed",
                        external_ref=sweep.external_ref,
                        error=sweep.error,
                    ),
                )
            results.append(
                {"index": worker.index, "address": worker.address, "success": sweep.success,
                 "amount": sweep.amount, "error": sweep.error}
            )

    total = sum(r["amount"] for r in results if r["success"])
    failed = sum(1 for r in results if not r["success"])
    msg = f"Withdraw complete: {lamports_to_sol(total)} SOL returned, {failed} failed"
    logger.info(msg)
    _event(store, "INFO" if not failed else "WARNING", msg, "Withdraw")
    _notify(notifier, f"💸 <b>Withdraw complete</b>\nReturned: {lamports_to_sol(total)} SOL\nFailed: {failed}")
    return results


def _read_balance(read, *args) -> tuple[int, str | None]:
    try:
        return int(read(*args)), None
    except LedgerError as e:
        return 0, str(e)[:200]


def collect_balances(store: CycleStore, ledger: LedgerPort, treasury_address: str) -> dict[str, Any]:
    """
    Native and target-asset holdings of every registered worker, plus the treasury.

    A failed read is reported on its row and left out of the totals; it never aborts the listing.
    """
    config = store.load_config()
    asset = config.target_asset

    treasury_native, treasury_error = _read_balance(ledger.get_balance, treasury_address)
    workers: list[dict[str, Any]] = []
    total_native = 0
    total_token = 0
    for worker in sorted(store.load_workers(), key=lambda w: w.index):
        native, error = _read_balance(ledger.get_balance, worker.address)
        token = 0
        if asset and error is None:
            token, error = _read_balance(ledger.get_token_balance, worker.address, asset)
        if error is None:
            total_native += native
            total_token += token
        workers.append(
            {"index": worker.index, "address": worker.address, "native": native,
             "sol": lamports_to_sol(native), "token": token, "error": error}
        )

    return {
        "asset": asset,
        "asset_symbol": config.asset_symbol,
        "treasury": {"address": treasury_address, "native": treasury_native,
                     "sol": lamports_to_sol(treasury_native), "error": treasury_error},
        "workers": workers,
        "totals": {"native": total_native, "sol": lamports_to_sol(total_native), "token": total_token,
                   "holding_workers": sum(1 for w in workers if w["token"] > 0)},
    }
