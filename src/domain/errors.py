from __future__ import annotations


class ConfigurationError(Exception):
    """The cycle cannot run with the current configuration (pool too small, missing keys, no asset)."""


class InsufficientFunds(Exception):
    """The treasury has no headroom above the reserve floor for a viable trade."""

    def __init__(self, balance: int, reserve: int, minimum: int):
        self.balance = int(balance)
        self.reserve = int(reserve)
        self.minimum = int(minimum)
        super().__init__(
            f"Treasury balance {self.balance} leaves no viable disbursement "
            f"(reserve={self.reserve}, min_trade={self.minimum})"
        )


class LedgerError(Exception):
    """A ledger-network RPC call failed."""


class TransferError(Exception):
    """A native-currency transfer could not be submitted or confirmed."""


class SwapServiceError(Exception):
    """The swap service returned an unusable response."""


class LeaseLost(Exception):
    """The cycle lease was taken over before the new state could be persisted."""


class CycleBusy(Exception):
    """A maintenance operation was refused because the cycle is running or its lease is held."""
