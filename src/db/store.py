from __future__ import annotations

from datetime import datetime
from types import ModuleType

from src.domain.errors import ConfigurationError
from src.domain.models import CycleConfig, CycleState, Phase, TradeLedgerEntry, WorkerAccount, parse_timestamp


class DatabaseCycleStore:
    """`CycleStore` over the selected database backend (`src.utils.database` by default)."""

    def __init__(self, backend: ModuleType | None = None):
        if backend is None:
            from src.utils import database as backend
        self._db = backend

    def load_config(self) -> CycleConfig:
        row = self._db.get_cycle_config()
        return CycleConfig(
            target_asset=row.get("target_asset") or None,
            slippage_bps=int(row.get("slippage_bps") or 300),
            is_running=bool(row.get("is_running")),
            asset_symbol=row.get("asset_symbol"),
            updated_at=parse_timestamp(row.get("updated_at")),
        )

    def load_state(self) -> CycleState:
        row = self._db.get_cycle_state()
        try:
            phase = Phase(str(row.get("phase") or Phase.IDLE.value).upper())
        except ValueError as e:
            raise ConfigurationError(f"Unknown persisted phase: {row.get('phase')!r}") from e
        return CycleState(
            phase=phase,
            active_worker_index=int(row.get("active_worker_index") or 0),
            phase_started_at=parse_timestamp(row.get("phase_started_at")),
            version=int(row.get("version") or 0),
        )

    def load_workers(self) -> list[WorkerAccount]:
        return [
            WorkerAccount(index=int(r["index"]), address=str(r["address"] or ""), secret=str(r["secret"] or ""))
            for r in self._db.get_worker_accounts()
        ]

    def acquire_lease(self, owner: str, now: datetime, ttl_seconds: float) -> bool:
        return bool(self._db.acquire_cycle_lease(owner, now, ttl_seconds))

    def renew_lease(self, owner: str, now: datetime, ttl_seconds: float) -> bool:
        return bool(self._db.renew_cycle_lease(owner, now, ttl_seconds))

    def save_state(self, state: CycleState, owner: str) -> bool:
        return bool(
            self._db.save_cycle_state(
                state.phase.value,
                state.active_worker_index,
                state.phase_started_at,
                state.version + 1,
                owner,
            )
        )

    def release_lease(self, owner: str) -> None:
        self._db.release_cycle_lease(owner)

    def record_trade(self, entry: TradeLedgerEntry) -> None:
        self._db.record_trade(**entry.to_dict())

    def log_event(self, level: str, message: str, step: str | None = None) -> None:
        self._db.log_event(level, message, step)
