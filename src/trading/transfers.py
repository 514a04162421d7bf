from __future__ import annotations

import logging

from solders.keypair import Keypair

from src.domain.errors import LedgerError, TransferError
from src.ledger.keys import build_native_transfer
from src.ports.ledger import LedgerPort

logger = logging.getLogger(__name__)


def transfer_native(
    ledger: LedgerPort,
    signer: Keypair,
    to_address: str,
    lamports: int,
    *,
    confirm_timeout: float,
) -> str:
    """
    Send one native-currency transfer and wait for confirmation.

    Returns the transaction reference. Raises TransferError on any failure; no internal retry.
    """
    if int(lamports) <= 0:
        raise TransferError(f"Refusing to transfer non-positive amount {lamports}")
    try:
        blockhash = ledger.latest_blockhash()
        signed = build_native_transfer(signer, to_address, int(lamports), blockhash)
        tx_ref = ledger.submit(signed)
    except LedgerError as e:
        raise TransferError(f"Transfer submission failed: {e}") from e

    try:
        confirmed = ledger.confirm(tx_ref, confirm_timeout)
    except LedgerError as e:
        raise TransferError(f"Transfer {tx_ref[:12]} confirmation failed: {e}") from e
    if not confirmed:
        raise TransferError(f"Transfer {tx_ref[:12]} not confirmed within {confirm_timeout}s")

    logger.info("Transferred %s lamports to %s (%s)", lamports, to_address[:8], tx_ref[:12])
    return tx_ref
