from __future__ import annotations

import logging
from decimal import ROUND_FLOOR, Decimal

from src.domain.errors import InsufficientFunds
from src.domain.models import CycleSettings
from src.ledger.keys import load_keypair
from src.ports.ledger import LedgerPort
from src.trading.transfers import transfer_native

logger = logging.getLogger(__name__)


class TreasuryGuard:
    """Keeps the treasury above its reserve floor and sizes worker disbursements."""

    def __init__(self, ledger: LedgerPort, treasury_secret: str, settings: CycleSettings):
        self.ledger = ledger
        self.settings = settings
        self._keypair = load_keypair(treasury_secret)
        self.address = str(self._keypair.pubkey())

    def balance(self) -> int:
        # Always read fresh: a sweep from the previous invocation may have landed.
        return self.ledger.get_balance(self.address)

    def compute_disbursement(self, current_balance: int) -> int:
        """
        floor((balance - MIN_RESERVE) * SAFETY_FACTOR), or InsufficientFunds when that is not a viable trade.
        """
        reserve = int(self.settings.min_reserve)
        minimum = int(self.settings.min_viable_trade)
        headroom = int(current_balance) - reserve
        if headroom <= minimum:
            raise InsufficientFunds(current_balance, reserve, minimum)

        amount = int((Decimal(headroom) * Decimal(self.settings.safety_factor)).to_integral_value(rounding=ROUND_FLOOR))
        amount = min(amount, headroom)
        if amount < minimum:
            raise InsufficientFunds(current_balance, reserve, minimum)
        return amount

    def transfer(self, to_address: str, amount: int) -> str:
        return transfer_native(
            self.ledger,
            self._keypair,
            to_address,
            amount,
            confirm_timeout=self.settings.confirm_timeout_seconds,
        )
