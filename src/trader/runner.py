import argparse
import logging
import os
import signal
import threading
import time
from dataclasses import dataclass
from typing import Any

from src.db.store import DatabaseCycleStore
from src.domain.models import CycleSettings, StepStatus
from src.ledger.rpc import LedgerClient
from src.ports.notifier import NotifierPort
from src.ports.store import CycleStore
from src.swap.jupiter import DEFAULT_QUOTE_URLS, DEFAULT_SWAP_URL, JupiterClient
from src.trader.notifier import NullNotifier, TelegramNotifier
from src.trader.scheduler import CycleScheduler
from src.trading.executor import TradeExecutor
from src.trading.settlement import SettlementAgent
from src.trading.treasury import TreasuryGuard
from src.utils.config_loader import load_config, load_cycle_settings
from src.utils.database import close_write_conn, init_db, log_event

logger = logging.getLogger(__name__)


@dataclass
class RotatorComponents:
    settings: CycleSettings
    store: CycleStore
    ledger: LedgerClient
    swap: JupiterClient
    treasury: TreasuryGuard
    executor: TradeExecutor
    settlement: SettlementAgent
    notifier: NotifierPort

    def close(self) -> None:
        self.ledger.close()
        self.swap.close()
        if isinstance(self.notifier, TelegramNotifier):
            self.notifier.close(wait=True)


def build_notifier(cfg: dict[str, Any]) -> NotifierPort:
    ncfg = cfg.get("notifications", {}) or {}
    token = (os.environ.get("ROTATOR_TELEGRAM_TOKEN") or "").strip()
    chat_id = (os.environ.get("ROTATOR_TELEGRAM_CHAT_ID") or "").strip()
    if not bool(ncfg.get("enabled", True)) or not token or not chat_id:
        logger.info("Operator notifications disabled")
        return NullNotifier()
    return TelegramNotifier(token, chat_id, timeout=float(ncfg.get("timeout_seconds", 5)))


def build_components(cfg: dict[str, Any] | None = None, *, store: CycleStore | None = None) -> RotatorComponents:
    """Wire the cycle components from config + environment secrets."""
    cfg = cfg if cfg is not None else load_config()
    settings = load_cycle_settings(cfg)
    network = cfg.get("network", {}) or {}
    swap_cfg = cfg.get("swap", {}) or {}

    ledger = LedgerClient(
        network["rpc_url"],
        commitment=str(network.get("commitment", "confirmed")),
        timeout=float(network.get("timeout_seconds", 15)),
        poll_interval=settings.confirm_poll_seconds,
    )
    swap = JupiterClient(
        quote_urls=swap_cfg.get("quote_urls") or DEFAULT_QUOTE_URLS,
        swap_url=str(swap_cfg.get("swap_url") or DEFAULT_SWAP_URL),
        api_key=(os.environ.get("ROTATOR_JUPITER_API_KEY") or "").strip() or None,
        timeout=float(swap_cfg.get("timeout_seconds", 15)),
    )
    treasury = TreasuryGuard(ledger, os.environ.get("ROTATOR_TREASURY_KEY") or "", settings)
    return RotatorComponents(
        settings=settings,
        store=store or DatabaseCycleStore(),
        ledger=ledger,
        swap=swap,
        treasury=treasury,
        executor=TradeExecutor(ledger, swap, settings, max_attempts=int(swap_cfg.get("max_attempts", 2))),
        settlement=SettlementAgent(ledger, settings),
        notifier=build_notifier(cfg),
    )


def build_scheduler(components: RotatorComponents) -> CycleScheduler:
    return CycleScheduler(
        components.store,
        components.ledger,
        components.treasury,
        components.executor,
        components.settlement,
        components.settings,
        notifier=components.notifier,
    )


def run_loop(scheduler: CycleScheduler, interval_seconds: float, stop: threading.Event) -> None:
    """Invoke one step per interval until `stop` is set. Steps never overlap within this process."""
    while not stop.is_set():
        started = time.monotonic()
        result = scheduler.run_step()
        logger.info(
            "Step %s: phase=%s worker=%s action=%s %s",
            result.status.value,
            result.phase.value,
            result.active_worker_index,
            result.action,
            result.message or "",
        )
        # A waiting phase only needs to be re-checked once its window is up.
        wait = float(interval_seconds)
        if result.status is StepStatus.OK and result.remaining_seconds is not None:
            wait = min(wait, max(1.0, float(result.remaining_seconds)))
        elapsed = time.monotonic() - started
        stop.wait(max(0.0, wait - elapsed))


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    parser = argparse.ArgumentParser(description="Wallet rotation cycle runner")
    parser.add_argument("--once", action="store_true", help="Run a single step and exit (for cron triggers)")
    parser.add_argument("--config", default=None, help="Path to config.yaml")
    args = parser.parse_args(argv)

    init_db()
    cfg = load_config(args.config)
    components = build_components(cfg)
    scheduler = build_scheduler(components)

    try:
        if args.once:
            result = scheduler.run_step()
            logger.info("Step result: %s", result.to_dict())
            return 1 if result.status is StepStatus.ERROR else 0

        stop = threading.Event()

        def _handle_signal(signum, _frame):
            logger.info("Received signal %s; stopping after the current step", signum)
            stop.set()

        signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)

        log_event("INFO", "Runner started", "Runner")
        run_loop(scheduler, components.settings.step_interval_seconds, stop)
        log_event("INFO", "Runner stopped", "Runner")
        return 0
    finally:
        components.close()
        close_write_conn()


if __name__ == "__main__":
    raise SystemExit(main())
