import json
import os
from datetime import datetime, timedelta, timezone

import pytest
from solders.hash import Hash
from solders.keypair import Keypair

# Unit tests never touch PostgreSQL or a REST datastore; the backend is chosen at import time.
os.environ.pop("ROTATOR_DATABASE_URL", None)
os.environ.pop("DATABASE_URL", None)
os.environ.pop("ROTATOR_REST_URL", None)
# The API must not wire a live scheduler during tests.
os.environ.setdefault("ROTATOR_DISABLE_SCHEDULER", "1")

from src.domain.errors import LedgerError, SwapServiceError
from src.domain.models import (
    CycleConfig,
    CycleSettings,
    CycleState,
    Quote,
    QuoteError,
    SweepResult,
    TradeResult,
    WorkerAccount,
)

T0 = datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)
TARGET_MINT = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"
SOL = 1_000_000_000


def new_secret() -> str:
    return json.dumps(list(bytes(Keypair())))


def make_workers(n: int) -> list[WorkerAccount]:
    out = []
    for i in range(n):
        kp = Keypair()
        out.append(WorkerAccount(index=i, address=str(kp.pubkey()), secret=json.dumps(list(bytes(kp)))))
    return out


def make_settings(**overrides) -> CycleSettings:
    base = dict(
        pool_size=3,
        hold_window_seconds=180,
        cycle_window_seconds=600,
        funding_settle_seconds=0,
        confirm_timeout_seconds=0,
    )
    base.update(overrides)
    return CycleSettings(**base)


class FakeLedger:
    """In-memory ledger: balances by address, token balances by (owner, mint), every submission recorded."""

    def __init__(self):
        self.balances: dict[str, int] = {}
        self.token_balances: dict[tuple[str, str], int] = {}
        self.submitted: list[bytes] = []
        self.confirm_result = True
        self.failing_balance: set[str] = set()
        self.fail_submit = False
        self.fail_token_balance = False
        self.token_balance_exception: Exception | None = None
        self.balance_reads: list[str] = []

    def get_balance(self, address: str) -> int:
        self.balance_reads.append(address)
        if address in self.failing_balance:
            raise LedgerError(f"getBalance failed for {address[:8]}")
        return int(self.balances.get(address, 0))

    def get_token_balance(self, owner: str, mint: str) -> int:
        if self.fail_token_balance:
            raise LedgerError("getTokenAccountsByOwner failed")
        if self.token_balance_exception is not None:
            raise self.token_balance_exception
        return int(self.token_balances.get((owner, mint), 0))

    def latest_blockhash(self) -> str:
        return str(Hash.default())

    def submit(self, signed_tx: bytes) -> str:
        if self.fail_submit:
            raise LedgerError("sendTransaction failed: node is behind")
        self.submitted.append(signed_tx)
        return f"sig{len(self.submitted):04d}" + "x" * 60

    def confirm(self, tx_ref: str, timeout: float) -> bool:
        return self.confirm_result


class FakeSwap:
    def __init__(self, quotes: list | None = None, build_errors: int = 0, quote_exception: Exception | None = None):
        self.quotes = list(quotes or [])
        self.build_errors = build_errors
        self.quote_exception = quote_exception
        self.quote_calls: list[tuple] = []
        self.build_calls: list[tuple] = []

    def quote(self, input_asset: str, output_asset: str, amount: int, slippage_bps: int) -> Quote | QuoteError:
        self.quote_calls.append((input_asset, output_asset, amount, slippage_bps))
        if self.quote_exception is not None:
            raise self.quote_exception
        if self.quotes:
            return self.quotes.pop(0)
        return Quote(input_asset, output_asset, amount, amount * 10, slippage_bps, raw={"inAmount": str(amount)})

    def build_swap_transaction(self, quote: Quote, taker: str) -> bytes:
        self.build_calls.append((quote, taker))
        if self.build_errors > 0:
            self.build_errors -= 1
            raise SwapServiceError("Swap build failed: 502")
        return b"unsigned-swap-tx"


class FakeStore:
    """In-memory `CycleStore` with the same lease semantics as the database backends."""

    def __init__(self, workers: list[WorkerAccount], *, config: CycleConfig | None = None, state: CycleState | None = None):
        self.config = config or CycleConfig(target_asset=TARGET_MINT, slippage_bps=300, is_running=True)
        self.state = state or CycleState()
        self.workers = list(workers)
        self.lease_owner: str | None = None
        self.lease_expires_at: datetime | None = None
        self.trades: list = []
        self.events: list[tuple] = []
        self.saves: list[CycleState] = []
        self.fail_record = False
        self.fail_events = False
        self.lose_lease_before_save = False
        self.lose_lease_on_renew = False
        self.renewals: list[datetime] = []

    def load_config(self) -> CycleConfig:
        return self.config

    def load_state(self) -> CycleState:
        return self.state

    def load_workers(self) -> list[WorkerAccount]:
        return list(self.workers)

    def acquire_lease(self, owner: str, now: datetime, ttl_seconds: float) -> bool:
        if self.lease_owner is not None and self.lease_expires_at is not None and self.lease_expires_at >= now:
            return False
        self.lease_owner = owner
        self.lease_expires_at = now + timedelta(seconds=ttl_seconds)
        return True

    def renew_lease(self, owner: str, now: datetime, ttl_seconds: float) -> bool:
        self.renewals.append(now)
        if self.lose_lease_on_renew:
            self.lease_owner = "someone-else"
        if self.lease_owner != owner:
            return False
        self.lease_expires_at = now + timedelta(seconds=ttl_seconds)
        return True

    def save_state(self, state: CycleState, owner: str) -> bool:
        if self.lose_lease_before_save:
            self.lease_owner = "someone-else"
        if self.lease_owner != owner:
            return False
        self.state = CycleState(state.phase, state.active_worker_index, state.phase_started_at, state.version + 1)
        self.saves.append(self.state)
        return True

    def release_lease(self, owner: str) -> None:
        if self.lease_owner == owner:
            self.lease_owner = None
            self.lease_expires_at = None

    def record_trade(self, entry) -> None:
        if self.fail_record:
            raise RuntimeError("database is locked")
        self.trades.append(entry)

    def log_event(self, level: str, message: str, step: str | None = None) -> None:
        if self.fail_events:
            raise RuntimeError("database is locked")
        self.events.append((level, message, step))

    def kinds(self) -> list[str]:
        return [t.kind for t in self.trades]


class FakeExecutor:
    def __init__(self, buy: TradeResult | None = None, sell: TradeResult | None = None):
        self.buy = buy or TradeResult(success=True, amount=5 * SOL, external_ref="buy-sig")
        self.sell = sell or TradeResult(success=True, amount=123_456, external_ref="sell-sig")
        self.acquired: list[tuple] = []
        self.liquidated: list[tuple] = []

    def acquire_position(self, worker, funds_available, asset, slippage_bps, *, before_submit=None) -> TradeResult:
        self.acquired.append((worker.index, funds_available, asset, slippage_bps))
        # Only trades that reached submission carry a reference.
        if before_submit is not None and self.buy.external_ref:
            before_submit()
        return self.buy

    def liquidate_position(self, worker, asset, *, before_submit=None) -> TradeResult:
        self.liquidated.append((worker.index, asset))
        if before_submit is not None and self.sell.external_ref:
            before_submit()
        return self.sell


class FakeSettlement:
    def __init__(self, result: SweepResult | None = None):
        self.result = result or SweepResult(amount=4 * SOL, external_ref="sweep-sig")
        self.swept: list[tuple] = []

    def sweep(self, worker, treasury_address) -> SweepResult:
        self.swept.append((worker.index, treasury_address))
        return self.result


class FakeNotifier:
    def __init__(self, fail: bool = False):
        self.messages: list[str] = []
        self.fail = fail

    def notify(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("telegram down")
        self.messages.append(text)


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def sqlite_db(tmp_path, monkeypatch):
    """Fresh SQLite datastore in a temp dir; yields the backend module."""
    from src.utils import database_sqlite

    database_sqlite.close_write_conn()
    monkeypatch.setattr(database_sqlite, "DB_PATH", str(tmp_path / "rotator-test.db"))
    database_sqlite.init_db()
    yield database_sqlite
    database_sqlite.close_write_conn()
