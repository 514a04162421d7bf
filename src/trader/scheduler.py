from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime
from typing import Callable

from src.domain.errors import ConfigurationError, InsufficientFunds, LeaseLost, LedgerError, TransferError
from src.domain.models import (
    CycleConfig,
    CycleSettings,
    CycleState,
    Phase,
    StepResult,
    StepStatus,
    TradeLedgerEntry,
    TradeResult,
    WorkerAccount,
    lamports_to_sol,
    utcnow,
)
from src.ports.ledger import LedgerPort
from src.ports.notifier import NotifierPort
from src.ports.store import CycleStore
from src.trader.notifier import NullNotifier, escape
from src.trading.executor import TradeExecutor
from src.trading.settlement import SettlementAgent
from src.trading.treasury import TreasuryGuard
from src.trading.worker_pool import WorkerPoolRegistry

logger = logging.getLogger(__name__)


class StepLease:
    """
    The lease one step holds on the persisted state.

    `renew` is called before every transfer and swap submission; once another invocation has
    taken the lease over it raises `LeaseLost` and nothing further is sent.
    """

    def __init__(self, store: CycleStore, now: datetime, ttl_seconds: float, clock: Callable[[], datetime]):
        self.store = store
        self.owner = uuid.uuid4().hex
        self.ttl_seconds = float(ttl_seconds)
        self._start = now
        self._clock = clock
        self._clock_at_start = clock()

    def now(self) -> datetime:
        # Step time advanced by the wall time spent since the step began.
        return self._start + (self._clock() - self._clock_at_start)

    def acquire(self) -> bool:
        return self.store.acquire_lease(self.owner, self._start, self.ttl_seconds)

    def renew(self, before: str) -> None:
        if not self.store.renew_lease(self.owner, self.now(), self.ttl_seconds):
            raise LeaseLost(f"lease taken over before {before}")

    def release(self) -> None:
        self.store.release_lease(self.owner)


class CycleScheduler:
    """
    One step of the wallet-rotation cycle per invocation.

    Transitions (checked in this order):
      IDLE                               -> enter-cycle on the current worker -> HOLDING
      COOLING and cycle window elapsed   -> rotate index, enter-cycle        -> HOLDING
      HOLDING and hold window elapsed    -> liquidate + sweep                 -> COOLING
      otherwise                          -> wait

    The step runs under a lease on the persisted state; the new phase is only written while
    the lease is still ours. Nothing here loops or retries: the next invocation re-derives
    what is due from the persisted phase.
    """

    def __init__(
        self,
        store: CycleStore,
        ledger: LedgerPort,
        treasury: TreasuryGuard,
        executor: TradeExecutor,
        settlement: SettlementAgent,
        settings: CycleSettings,
        *,
        notifier: NotifierPort | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.ledger = ledger
        self.treasury = treasury
        self.executor = executor
        self.settlement = settlement
        self.settings = settings
        self.notifier = notifier or NullNotifier()
        self._clock = clock
        self._sleep = sleep

    # ----- Entry point -----

    def run_step(self, now: datetime | None = None) -> StepResult:
        now = now or self._clock()
        lease = StepLease(self.store, now, self.settings.lease_ttl_seconds, self._clock)
        leased = False
        state: CycleState | None = None
        try:
            config = self.store.load_config()
            if not config.is_running:
                state = self.store.load_state()
                return self._result(StepStatus.NOT_RUNNING, state, action="none", message="Cycle is stopped")

            asset = _target_asset(config)
            registry = WorkerPoolRegistry(self.store.load_workers(), self.settings.pool_size)

            if not lease.acquire():
                state = self.store.load_state()
                logger.info("Cycle lease is held by another invocation; skipping")
                return self._result(StepStatus.SKIPPED, state, action="none", message="skipped, already running")
            leased = True

            state = self.store.load_state()
            return self._dispatch(state, config, asset, registry, now, lease)

        except ConfigurationError as e:
            msg = f"Configuration error: {e}"
            logger.error(msg)
            self._event("ERROR", msg, "Config")
            self._notify(f"⚠️ <b>Rotator configuration error</b>\n{escape(e)}")
            return self._result(StepStatus.ERROR, state or self._peek_state(), action="none", message=msg)

        except InsufficientFunds as e:
            msg = f"Halted: {e}"
            logger.error(msg)
            self._event("ERROR", msg, "Treasury")
            self._notify(
                "🛑 <b>Rotator halted</b>\n"
                f"Treasury: {lamports_to_sol(e.balance)} SOL\n"
                f"Reserve floor: {lamports_to_sol(e.reserve)} SOL\n"
                "Top up the treasury to resume."
            )
            return self._result(StepStatus.HALTED, state or self._peek_state(), action="none", message=msg)

        except LeaseLost as e:
            msg = f"Step aborted, {e}"
            logger.error(msg)
            self._event("ERROR", msg, "Lease")
            self._notify(f"⚠️ <b>Rotator lease lost</b>\n{escape(e)}")
            return self._result(StepStatus.ERROR, state or self._peek_state(), action="none", message=msg)

        except LedgerError as e:
            # Nothing was moved yet; the next invocation re-evaluates the same phase.
            msg = f"Ledger unavailable, step deferred: {e}"
            logger.warning(msg)
            self._event("WARNING", msg, "Ledger")
            return self._result(StepStatus.OK, state or self._peek_state(), action="deferred", message=msg)

        except Exception as e:
            msg = f"Step failed: {type(e).__name__}: {str(e)[:200]}"
            logger.exception("Cycle step failed")
            self._event("ERROR", msg, "Step")
            self._notify(f"⚠️ <b>Rotator step failed</b>\n{escape(msg)}")
            return self._result(StepStatus.ERROR, state or self._peek_state(), action="none", message=msg)

        finally:
            if leased:
                try:
                    lease.release()
                except Exception as e:
                    # The lease expires on its own; do not mask the step outcome.
                    logger.warning(f"Failed to release cycle lease: {type(e).__name__}: {e}")

    # ----- Dispatch -----

    def _dispatch(
        self,
        state: CycleState,
        config: CycleConfig,
        asset: str,
        registry: WorkerPoolRegistry,
        now: datetime,
        lease: StepLease,
    ) -> StepResult:
        n = registry.size()
        if not 0 <= state.active_worker_index < n:
            raise ConfigurationError(f"Active worker index {state.active_worker_index} outside pool of {n}")

        if state.phase is Phase.IDLE:
            return self._enter_cycle(
                state, state.active_worker_index, registry, config, asset, now, lease, action="enter_cycle"
            )

        elapsed = state.elapsed_seconds(now)
        if state.phase is Phase.COOLING:
            window = float(self.settings.cycle_window_seconds)
            if elapsed >= window:
                next_index = (state.active_worker_index + 1) % n
                return self._enter_cycle(state, next_index, registry, config, asset, now, lease, action="rotate")
        else:
            window = float(self.settings.hold_window_seconds)
            if elapsed >= window:
                return self._exit_cycle(state, registry, asset, now, lease)

        remaining = max(0.0, window - elapsed)
        return self._result(
            StepStatus.OK,
            state,
            action="wait",
            remaining_seconds=round(remaining, 1),
            message=f"{state.phase.value} worker {state.active_worker_index}; {int(remaining)}s remaining",
        )

    def _enter_cycle(
        self,
        state: CycleState,
        index: int,
        registry: WorkerPoolRegistry,
        config: CycleConfig,
        asset: str,
        now: datetime,
        lease: StepLease,
        *,
        action: str,
    ) -> StepResult:
        worker = registry.get(index)

        # Fresh read on every decision; InsufficientFunds halts the cycle without touching state.
        balance = self.treasury.balance()
        amount = self.treasury.compute_disbursement(balance)

        lease.renew(f"funding worker {index}")
        try:
            fund_ref = self.treasury.transfer(worker.address, amount)
        except TransferError as e:
            # Phase and index stay put: the next invocation re-sizes the disbursement and retries.
            self._record(TradeLedgerEntry(worker.address, "fund", amount, "failed", error=str(e)[:300]))
            msg = f"Funding worker {index} failed: {e}"
            logger.warning(msg)
            self._event("WARNING", msg, "Fund")
            self._notify(f"⚠️ <b>Funding failed</b>\nWorker {index}\n{escape(e)}")
            return self._result(StepStatus.OK, state, action="fund_failed", message=msg)

        self._record(TradeLedgerEntry(worker.address, "fund", amount, "success", external_ref=fund_ref))
        self._event("INFO", f"Funded worker {index} with {lamports_to_sol(amount)} SOL", "Fund")

        self._sleep(float(self.settings.funding_settle_seconds))
        funds_available = self._worker_balance(worker, fallback=amount)

        trade = self.executor.acquire_position(
            worker,
            funds_available,
            asset,
            config.slippage_bps,
            before_submit=lambda: lease.renew(f"the buy on worker {index}"),
        )
        self._record_trade_result(worker, "buy", trade)

        new_state = state.advance(Phase.HOLDING, now, index=index)
        self._persist(new_state, lease)

        outcome = "bought" if trade.success else f"buy failed ({trade.error})"
        msg = f"Worker {index} funded with {lamports_to_sol(amount)} SOL, {outcome}"
        self._event("INFO" if trade.success else "WARNING", msg, "Enter")
        self._notify(
            f"⚡ <b>Cycle started</b>\n"
            f"Worker {index}: <code>{escape(worker.address)}</code>\n"
            f"Funded: {lamports_to_sol(amount)} SOL\n"
            f"Buy: {'✅' if trade.success else '❌ ' + escape(trade.error or 'failed')}"
        )
        return self._result(StepStatus.OK, new_state, action=action, message=msg)

    def _exit_cycle(
        self,
        state: CycleState,
        registry: WorkerPoolRegistry,
        asset: str,
        now: datetime,
        lease: StepLease,
    ) -> StepResult:
        index = state.active_worker_index
        worker = registry.get(index)

        trade = self.executor.liquidate_position(
            worker, asset, before_submit=lambda: lease.renew(f"the sell on worker {index}")
        )
        if trade.success and trade.amount == 0:
            # Nothing was traded, so the ledger gets no sell row; the event log keeps the outcome.
            self._event("INFO", f"Worker {index} held no position to liquidate", "Exit")
        else:
            self._record_trade_result(worker, "sell", trade)

        # Always sweep: even after a failed or empty sell there may be native balance to recover.
        lease.renew(f"sweeping worker {index}")
        sweep = self.settlement.sweep(worker, self.treasury.address)
        if sweep.amount > 0 or not sweep.success:
            self._record(
                TradeLedgerEntry(
                    worker.address,
                    "sweep",
                    sweep.amount,
                    "success" if sweep.success else "failed",
                    external_ref=sweep.external_ref,
                    error=sweep.error,
                )
            )

        new_state = state.advance(Phase.COOLING, now)
        self._persist(new_state, lease)

        sell = "✅" if trade.success else "❌ " + escape(trade.error or "failed")
        swept = f"{lamports_to_sol(sweep.amount)} SOL" if sweep.success else "❌ " + escape(sweep.error or "failed")
        msg = f"Worker {index} settled: sell={'ok' if trade.success else 'failed'}, swept {lamports_to_sol(sweep.amount)} SOL"
        self._event("INFO" if trade.success and sweep.success else "WARNING", msg, "Exit")
        self._notify(f"🔄 <b>Cycle settled</b>\nWorker {index}\nSell: {sell}\nSwept: {swept}")
        return self._result(StepStatus.OK, new_state, action="exit_cycle", message=msg)

    # ----- Helpers -----

    def _persist(self, new_state: CycleState, lease: StepLease) -> None:
        if not self.store.save_state(new_state, lease.owner):
            raise LeaseLost(
                f"lease taken over before {new_state.phase.value} (worker {new_state.active_worker_index}) was saved"
            )

    def _worker_balance(self, worker: WorkerAccount, *, fallback: int) -> int:
        try:
            return self.ledger.get_balance(worker.address)
        except LedgerError as e:
            logger.warning(f"Worker {worker.index} balance unavailable after funding, assuming {fallback}: {e}")
            return int(fallback)

    def _record_trade_result(self, worker: WorkerAccount, kind: str, trade: TradeResult) -> None:
        self._record(
            TradeLedgerEntry(
                worker.address,
                kind,
                trade.amount,
                "success" if trade.success else "failed",
                external_ref=trade.external_ref,
                error=trade.error,
            )
        )

    def _record(self, entry: TradeLedgerEntry) -> None:
        # The ledger is audit only; a write failure must not change what the cycle does next.
        try:
            self.store.record_trade(entry)
        except Exception as e:
            logger.error(f"Failed to record {entry.kind} for {entry.worker_address[:8]}: {type(e).__name__}: {e}")

    def _event(self, level: str, message: str, step: str) -> None:
        try:
            self.store.log_event(level, message, step)
        except Exception as e:
            logger.warning(f"Failed to log event: {type(e).__name__}: {e}")

    def _notify(self, text: str) -> None:
        try:
            self.notifier.notify(text)
        except Exception as e:
            logger.warning(f"Notifier failed: {type(e).__name__}: {e}")

    def _peek_state(self) -> CycleState:
        try:
            return self.store.load_state()
        except Exception:
            logger.warning("Cycle state unavailable while reporting a failed step")
            return CycleState()

    @staticmethod
    def _result(
        status: StepStatus,
        state: CycleState,
        *,
        action: str,
        remaining_seconds: float | None = None,
        message: str | None = None,
    ) -> StepResult:
        return StepResult(
            status=status,
            phase=state.phase,
            active_worker_index=state.active_worker_index,
            action=action,
            remaining_seconds=remaining_seconds,
            message=message,
        )


def _target_asset(config: CycleConfig) -> str:
    if not config.target_asset:
        raise ConfigurationError("No target asset configured")
    return config.target_asset
