from __future__ import annotations

from typing import Protocol

from src.domain.models import Quote, QuoteError


class SwapPort(Protocol):
    def quote(self, input_asset: str, output_asset: str, amount: int, slippage_bps: int) -> Quote | QuoteError: ...

    def build_swap_transaction(self, quote: Quote, taker: str) -> bytes: ...
