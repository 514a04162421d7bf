from __future__ import annotations

from typing import Protocol


class LedgerPort(Protocol):
    def get_balance(self, address: str) -> int: ...

    def get_token_balance(self, owner: str, mint: str) -> int: ...

    def latest_blockhash(self) -> str: ...

    def submit(self, signed_tx: bytes) -> str: ...

    def confirm(self, tx_ref: str, timeout: float) -> bool: ...
