from __future__ import annotations

import logging
from typing import Callable

from solders.keypair import Keypair

from src.domain.errors import ConfigurationError, LedgerError, SwapServiceError
from src.domain.models import CycleSettings, Quote, QuoteError, TradeResult, WorkerAccount
from src.ledger.keys import load_keypair, sign_versioned_transaction
from src.ports.ledger import LedgerPort
from src.ports.swap import SwapPort

logger = logging.getLogger(__name__)


class TradeExecutor:
    """
    Acquire / liquidate a worker's position through the swap service.

    Neither operation raises: the scheduler must always be able to move on to settlement,
    so every failure is reported as `TradeResult(success=False, error=...)`. The one exception
    is `before_submit`: it runs right before the signed swap is submitted, and whatever it raises
    propagates with nothing sent.
    """

    def __init__(
        self,
        ledger: LedgerPort,
        swap: SwapPort,
        settings: CycleSettings,
        *,
        max_attempts: int = 2,
        sign: Callable[[bytes, Keypair], bytes] = sign_versioned_transaction,
    ):
        self.ledger = ledger
        self.swap = swap
        self.settings = settings
        self.max_attempts = max(1, int(max_attempts))
        self._sign = sign

    def acquire_position(
        self,
        worker: WorkerAccount,
        funds_available: int,
        asset: str,
        slippage_bps: int,
        *,
        before_submit: Callable[[], None] | None = None,
    ) -> TradeResult:
        """Swap the worker's whole funding balance (minus the fee buffer) into `asset`."""
        amount = int(funds_available) - int(self.settings.fee_buffer)
        if amount < int(self.settings.min_viable_trade):
            logger.warning(
                f"Worker {worker.index}: {funds_available} lamports available, below fee buffer + minimum trade"
            )
            return TradeResult(success=False, error="amount_too_small")

        return self._swap(
            worker,
            input_asset=self.settings.funding_asset,
            output_asset=asset,
            amount=amount,
            slippage_bps=int(slippage_bps),
            label="buy",
            before_submit=before_submit,
        )

    def liquidate_position(
        self,
        worker: WorkerAccount,
        asset: str,
        *,
        before_submit: Callable[[], None] | None = None,
    ) -> TradeResult:
        """Sell the worker's full holding of `asset`; dust is a no-op success."""
        try:
            holding = int(self.ledger.get_token_balance(worker.address, asset))
        except LedgerError as e:
            return TradeResult(success=False, error=f"Token balance unavailable: {e}"[:300])
        except Exception as e:
            logger.exception(f"Unexpected token balance failure for worker {worker.index}")
            return TradeResult(success=False, error=f"Token balance unavailable: {type(e).__name__}: {str(e)[:200]}")

        if holding < int(self.settings.dust_threshold):
            logger.info(f"Worker {worker.index}: holding {holding} below dust threshold; nothing to liquidate")
            return TradeResult(success=True, amount=0)

        # Liquidation uses the wider tolerance so a thin book cannot strand the position.
        return self._swap(
            worker,
            input_asset=asset,
            output_asset=self.settings.funding_asset,
            amount=holding,
            slippage_bps=int(self.settings.liquidation_slippage_bps),
            label="sell",
            before_submit=before_submit,
        )

    def _quote_with_retry(self, input_asset: str, output_asset: str, amount: int, slippage_bps: int) -> Quote | QuoteError:
        result: Quote | QuoteError = QuoteError("not attempted")
        for attempt in range(1, self.max_attempts + 1):
            result = self.swap.quote(input_asset, output_asset, amount, slippage_bps)
            if isinstance(result, Quote):
                return result
            logger.warning(f"Quote attempt {attempt}/{self.max_attempts} failed: {result.message}")
        return result

    def _build_with_retry(self, quote: Quote, taker: str) -> bytes:
        attempt = 1
        while True:
            try:
                return self.swap.build_swap_transaction(quote, taker)
            except SwapServiceError as e:
                logger.warning(f"Swap build attempt {attempt}/{self.max_attempts} failed: {e}")
                if attempt >= self.max_attempts:
                    raise
                attempt += 1

    def _swap(
        self,
        worker: WorkerAccount,
        *,
        input_asset: str,
        output_asset: str,
        amount: int,
        slippage_bps: int,
        label: str,
        before_submit: Callable[[], None] | None,
    ) -> TradeResult:
        try:
            quote = self._quote_with_retry(input_asset, output_asset, amount, slippage_bps)
            if isinstance(quote, QuoteError):
                return TradeResult(success=False, error=quote.message)
            signer = load_keypair(worker.secret)
            unsigned = self._build_with_retry(quote, worker.address)
            signed = self._sign(unsigned, signer)
        except (SwapServiceError, LedgerError, ConfigurationError) as e:
            return TradeResult(success=False, error=str(e)[:300])
        except Exception as e:
            # Transport faults outside httpx.HTTPError and malformed aggregator bytes (solders errors).
            logger.exception(f"Unexpected {label} failure for worker {worker.index}")
            return TradeResult(success=False, error=f"{type(e).__name__}: {str(e)[:200]}")

        if before_submit is not None:
            before_submit()

        try:
            # Submitted once; a lost submission is retried by the next invocation, never here.
            tx_ref = self.ledger.submit(signed)
        except LedgerError as e:
            return TradeResult(success=False, error=str(e)[:300])
        except Exception as e:
            logger.exception(f"Unexpected {label} submission failure for worker {worker.index}")
            return TradeResult(success=False, error=f"{type(e).__name__}: {str(e)[:200]}")

        try:
            confirmed = self.ledger.confirm(tx_ref, self.settings.confirm_timeout_seconds)
        except LedgerError as e:
            return TradeResult(success=False, amount=amount, external_ref=tx_ref, error=str(e)[:300])
        except Exception as e:
            logger.exception(f"Unexpected confirmation failure for {label} on worker {worker.index}")
            return TradeResult(
                success=False, amount=amount, external_ref=tx_ref, error=f"{type(e).__name__}: {str(e)[:200]}"
            )
        if not confirmed:
            return TradeResult(
                success=False,
                amount=amount,
                external_ref=tx_ref,
                error=f"Not confirmed within {self.settings.confirm_timeout_seconds}s",
            )

        logger.info(f"Worker {worker.index}: {label} of {amount} confirmed ({tx_ref[:12]})")
        return TradeResult(success=True, amount=amount, external_ref=tx_ref)
