from __future__ import annotations

import base64
import itertools
import logging
import time
from typing import Any, Callable

import httpx

from src.domain.errors import LedgerError

logger = logging.getLogger(__name__)

_CONFIRMED_LEVELS = {"confirmed", "finalized"}


class LedgerClient:
    """
    Minimal JSON-RPC client for the ledger network.

    Only the calls the cycle needs: balances, blockhash, submit and confirmation polling.
    Every call raises `LedgerError` on transport or RPC errors so callers decide what a failure means.
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        commitment: str = "confirmed",
        timeout: float = 15.0,
        poll_interval: float = 1.5,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not rpc_url:
            raise ValueError("rpc_url is required")
        self.rpc_url = rpc_url
        self.commitment = commitment
        self.poll_interval = float(poll_interval)
        self._client = client or httpx.Client(timeout=timeout)
        self._sleep = sleep
        self._ids = itertools.count(1)

    def close(self) -> None:
        self._client.close()

    def _call(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = self._client.post(self.rpc_url, json=payload)
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise LedgerError(f"{method} failed: {type(e).__name__}: {str(e)[:200]}") from e
        if body.get("error"):
            err = body["error"]
            raise LedgerError(f"{method} RPC error {err.get('code')}: {err.get('message')}")
        return body.get("result")

    def get_balance(self, address: str) -> int:
        result = self._call("getBalance", [address, {"commitment": self.commitment}])
        return int((result or {}).get("value") or 0)

    def get_token_balance(self, owner: str, mint: str) -> int:
        """Raw token units held by `owner` across all of its accounts for `mint`."""
        result = self._call(
            "getTokenAccountsByOwner",
            [owner, {"mint": mint}, {"encoding": "jsonParsed", "commitment": self.commitment}],
        )
        total = 0
        for acct in (result or {}).get("value") or []:
            try:
                amount = acct["account"]["data"]["parsed"]["info"]["tokenAmount"]["amount"]
            except (KeyError, TypeError):
                logger.warning("Unexpected token account shape for %s", owner[:8])
                continue
            total += int(amount)
        return total

    def latest_blockhash(self) -> str:
        result = self._call("getLatestBlockhash", [{"commitment": "finalized"}])
        try:
            return str(result["value"]["blockhash"])
        except (KeyError, TypeError) as e:
            raise LedgerError("getLatestBlockhash returned no blockhash") from e

    def submit(self, signed_tx: bytes) -> str:
        encoded = base64.b64encode(signed_tx).decode("ascii")
        result = self._call(
            "sendTransaction",
            [encoded, {"encoding": "base64", "skipPreflight": True, "maxRetries": 2}],
        )
        if not result:
            raise LedgerError("sendTransaction returned no signature")
        return str(result)

    def confirm(self, tx_ref: str, timeout: float) -> bool:
        """
        Poll until the transaction reaches `confirmed` or the timeout elapses.

        Returns False on timeout or when the transaction landed with an error.
        """
        deadline = time.monotonic() + float(timeout)
        while True:
            try:
                result = self._call("getSignatureStatuses", [[tx_ref], {"searchTransactionHistory": False}])
                status = ((result or {}).get("value") or [None])[0]
            except LedgerError as e:
                logger.warning("Confirmation poll failed for %s: %s", tx_ref[:12], e)
                status = None

            if status:
                if status.get("err"):
                    logger.warning("Transaction %s failed on-chain: %s", tx_ref[:12], status.get("err"))
                    return False
                if status.get("confirmationStatus") in _CONFIRMED_LEVELS:
                    return True

            if time.monotonic() >= deadline:
                logger.warning("Transaction %s not confirmed within %.1fs", tx_ref[:12], timeout)
                return False
            self._sleep(self.poll_interval)
