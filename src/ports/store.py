from __future__ import annotations

from datetime import datetime
from typing import Protocol

from src.domain.models import CycleConfig, CycleState, TradeLedgerEntry, WorkerAccount


class CycleStore(Protocol):
    def load_config(self) -> CycleConfig: ...

    def load_state(self) -> CycleState: ...

    def load_workers(self) -> list[WorkerAccount]: ...

    def acquire_lease(self, owner: str, now: datetime, ttl_seconds: float) -> bool: ...

    def renew_lease(self, owner: str, now: datetime, ttl_seconds: float) -> bool: ...

    def save_state(self, state: CycleState, owner: str) -> bool: ...

    def release_lease(self, owner: str) -> None: ...

    def record_trade(self, entry: TradeLedgerEntry) -> None: ...

    def log_event(self, level: str, message: str, step: str | None = None) -> None: ...
