from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

LAMPORTS_PER_SOL = 1_000_000_000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def lamports_to_sol(lamports: int) -> Decimal:
    """Display conversion only; never use the result in comparisons."""
    return Decimal(int(lamports)) / Decimal(LAMPORTS_PER_SOL)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a DB/REST timestamp into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        raw = str(value).strip().replace("Z", "+00:00")
        dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class Phase(str, Enum):
    IDLE = "IDLE"
    HOLDING = "HOLDING"
    COOLING = "COOLING"


class StepStatus(str, Enum):
    OK = "ok"
    HALTED = "halted"
    NOT_RUNNING = "not_running"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass(frozen=True)
class CycleConfig:
    target_asset: str | None
    slippage_bps: int = 300
    is_running: bool = False
    asset_symbol: str | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_asset": self.target_asset,
            "slippage_bps": int(self.slippage_bps),
            "is_running": bool(self.is_running),
            "asset_symbol": self.asset_symbol,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class CycleState:
    phase: Phase = Phase.IDLE
    active_worker_index: int = 0
    phase_started_at: datetime | None = None
    version: int = 0

    def elapsed_seconds(self, now: datetime) -> float:
        # A timed phase without a start marker is treated as overdue.
        if self.phase_started_at is None:
            return float("inf")
        return (now - self.phase_started_at).total_seconds()

    def advance(self, phase: Phase, now: datetime, *, index: int | None = None) -> "CycleState":
        return replace(
            self,
            phase=phase,
            phase_started_at=now,
            active_worker_index=self.active_worker_index if index is None else int(index),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "active_worker_index": int(self.active_worker_index),
            "phase_started_at": self.phase_started_at.isoformat() if self.phase_started_at else None,
            "version": int(self.version),
        }


@dataclass(frozen=True)
class WorkerAccount:
    index: int
    address: str
    secret: str = field(repr=False)


@dataclass(frozen=True)
class TradeLedgerEntry:
    worker_address: str
    kind: str  # buy | sell | fund | sweep
    amount: int
    status: str  # success | failed
    external_ref: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "worker_address": self.worker_address,
            "kind": self.kind,
            "amount": int(self.amount),
            "status": self.status,
            "external_ref": self.external_ref,
            "error": self.error,
        }


@dataclass(frozen=True)
class Quote:
    input_asset: str
    output_asset: str
    in_amount: int
    out_amount: int
    slippage_bps: int
    raw: dict[str, Any] = field(repr=False, default_factory=dict)


@dataclass(frozen=True)
class QuoteError:
    message: str
    status_code: int | None = None


@dataclass(frozen=True)
class TradeResult:
    success: bool
    amount: int = 0
    external_ref: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class SweepResult:
    amount: int = 0
    success: bool = True
    external_ref: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class StepResult:
    status: StepStatus
    phase: Phase
    active_worker_index: int
    action: str = "wait"
    remaining_seconds: float | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "phase": self.phase.value,
            "activeWorkerIndex": int(self.active_worker_index),
            "action": self.action,
            "remainingSeconds": self.remaining_seconds,
            "message": self.message,
        }


@dataclass(frozen=True)
class CycleSettings:
    """Operational knobs from config.yaml; amounts are integer lamports / raw token units."""

    pool_size: int
    hold_window_seconds: float
    cycle_window_seconds: float
    step_interval_seconds: float = 60.0
    lease_ttl_seconds: float = 600.0
    step_budget_seconds: float = 320.0
    funding_settle_seconds: float = 2.0
    confirm_timeout_seconds: float = 45.0
    confirm_poll_seconds: float = 1.5
    min_reserve: int = 50_000_000
    safety_factor: Decimal = Decimal("0.99")
    min_viable_trade: int = 1_000_000
    fee_buffer: int = 3_000_000
    dust_threshold: int = 1_000
    liquidation_slippage_bps: int = 1_000
    rent_buffer: int = 1_000_000
    funding_asset: str = "So11111111111111111111111111111111111111112"
