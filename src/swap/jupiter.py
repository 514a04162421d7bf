from __future__ import annotations

import base64
import logging
from typing import Any

import httpx

from src.domain.errors import SwapServiceError
from src.domain.models import Quote, QuoteError

logger = logging.getLogger(__name__)

DEFAULT_QUOTE_URLS = (
    "https://lite-api.jup.ag/swap/v1/quote",
    "https://api.jup.ag/swap/v1/quote",
)
DEFAULT_SWAP_URL = "https://lite-api.jup.ag/swap/v1/swap"


class JupiterClient:
    """
    Swap-aggregator adapter.

    Quotes are tried against each configured endpoint in order (public lite API first, then pro).
    Responses are validated once here and turned into `Quote` / `QuoteError`.
    """

    def __init__(
        self,
        *,
        quote_urls: list[str] | tuple[str, ...] = DEFAULT_QUOTE_URLS,
        swap_url: str = DEFAULT_SWAP_URL,
        api_key: str | None = None,
        timeout: float = 15.0,
        client: httpx.Client | None = None,
    ):
        if not quote_urls:
            raise ValueError("At least one quote URL is required")
        self.quote_urls = list(quote_urls)
        self.swap_url = swap_url
        headers = {"Accept": "application/json"}
        if api_key:
            headers["x-api-key"] = api_key
        self._client = client or httpx.Client(timeout=timeout, headers=headers)

    def close(self) -> None:
        self._client.close()

    def quote(self, input_asset: str, output_asset: str, amount: int, slippage_bps: int) -> Quote | QuoteError:
        params = {
            "inputMint": input_asset,
            "outputMint": output_asset,
            "amount": str(int(amount)),
            "slippageBps": str(int(slippage_bps)),
        }
        last_error = QuoteError("No quote endpoint configured")
        for url in self.quote_urls:
            try:
                resp = self._client.get(url, params=params)
            except httpx.HTTPError as e:
                last_error = QuoteError(f"Quote request failed: {type(e).__name__}: {str(e)[:200]}")
                logger.warning("Quote request to %s failed: %s", url, e)
                continue

            if resp.status_code != 200:
                last_error = QuoteError(f"Quote failed: {resp.status_code}", status_code=resp.status_code)
                logger.warning("Quote endpoint %s returned %s: %s", url, resp.status_code, resp.text[:200])
                continue

            try:
                return _parse_quote(resp.json(), input_asset, output_asset, slippage_bps)
            except (ValueError, KeyError, TypeError) as e:
                last_error = QuoteError(f"Malformed quote: {type(e).__name__}: {str(e)[:200]}")
                logger.warning("Malformed quote from %s: %s", url, e)
        return last_error

    def build_swap_transaction(self, quote: Quote, taker: str) -> bytes:
        """Ask the aggregator for an unsigned versioned transaction executing `quote` for `taker`."""
        body = {
            "quoteResponse": quote.raw,
            "userPublicKey": taker,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
        }
        try:
            resp = self._client.post(self.swap_url, json=body)
        except httpx.HTTPError as e:
            raise SwapServiceError(f"Swap build request failed: {type(e).__name__}: {str(e)[:200]}") from e
        if resp.status_code != 200:
            raise SwapServiceError(f"Swap build failed: {resp.status_code}: {resp.text[:200]}")
        try:
            data = resp.json()
        except ValueError as e:
            raise SwapServiceError("Swap build returned invalid JSON") from e
        if data.get("error"):
            raise SwapServiceError(str(data["error"])[:200])
        encoded = data.get("swapTransaction")
        if not encoded:
            raise SwapServiceError("No transaction returned from swap service")
        return base64.b64decode(encoded)


def _parse_quote(data: Any, input_asset: str, output_asset: str, slippage_bps: int) -> Quote | QuoteError:
    if not isinstance(data, dict):
        raise ValueError(f"quote must be an object; got {type(data).__name__}")
    if data.get("error"):
        return QuoteError(str(data["error"])[:200])
    in_amount = int(data["inAmount"])
    out_amount = int(data["outAmount"])
    if in_amount <= 0 or out_amount <= 0:
        return QuoteError(f"Empty route (in={in_amount}, out={out_amount})")
    return Quote(
        input_asset=str(data.get("inputMint") or input_asset),
        output_asset=str(data.get("outputMint") or output_asset),
        in_amount=in_amount,
        out_amount=out_amount,
        slippage_bps=int(data.get("slippageBps") or slippage_bps),
        raw=data,
    )
