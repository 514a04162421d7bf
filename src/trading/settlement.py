from __future__ import annotations

import logging

from src.domain.errors import ConfigurationError, LedgerError, TransferError
from src.domain.models import CycleSettings, SweepResult, WorkerAccount
from src.ledger.keys import load_keypair
from src.ports.ledger import LedgerPort
from src.trading.transfers import transfer_native

logger = logging.getLogger(__name__)


class SettlementAgent:
    def __init__(self, ledger: LedgerPort, settings: CycleSettings):
        self.ledger = ledger
        self.settings = settings

    def sweep(self, worker: WorkerAccount, treasury_address: str) -> SweepResult:
        """Return the worker's native balance minus the rent buffer to the treasury."""
        try:
            balance = int(self.ledger.get_balance(worker.address))
        except LedgerError as e:
            logger.warning("Sweep of worker %s skipped: %s", worker.index, e)
            return SweepResult(amount=0, success=False, error=str(e)[:300])
        except Exception as e:
            logger.exception("Unexpected balance failure sweeping worker %s", worker.index)
            return SweepResult(amount=0, success=False, error=f"{type(e).__name__}: {str(e)[:200]}")

        amount = balance - int(self.settings.rent_buffer)
        if amount <= 0:
            return SweepResult(amount=0)

        try:
            tx_ref = transfer_native(
                self.ledger,
                load_keypair(worker.secret),
                treasury_address,
                amount,
                confirm_timeout=self.settings.confirm_timeout_seconds,
            )
        except (TransferError, ConfigurationError) as e:
            logger.warning("Sweep of worker %s failed: %s", worker.index, e)
            return SweepResult(amount=0, success=False, error=str(e)[:300])
        except Exception as e:
            logger.exception("Unexpected failure sweeping worker %s", worker.index)
            return SweepResult(amount=0, success=False, error=f"{type(e).__name__}: {str(e)[:200]}")
        return SweepResult(amount=amount, external_ref=tx_ref)
