from __future__ import annotations

import json

from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction, VersionedTransaction

from src.domain.errors import ConfigurationError


def load_keypair(secret: str) -> Keypair:
    """
    Parse a signing secret.

    Accepts either a JSON byte array (`[12, 34, ...]`, the CLI keygen format) or a base58 string.
    """
    raw = (secret or "").strip()
    if not raw:
        raise ConfigurationError("Empty signing secret")
    try:
        if raw.startswith("["):
            return Keypair.from_bytes(bytes(json.loads(raw)))
        return Keypair.from_base58_string(raw)
    except Exception as e:
        # Never echo the secret itself.
        raise ConfigurationError(f"Invalid signing secret: {type(e).__name__}") from e


def address_of(secret: str) -> str:
    return str(load_keypair(secret).pubkey())


def build_native_transfer(signer: Keypair, to_address: str, lamports: int, blockhash: str) -> bytes:
    """Serialize a signed single-instruction system transfer."""
    ix = transfer(
        TransferParams(
            from_pubkey=signer.pubkey(),
            to_pubkey=Pubkey.from_string(to_address),
            lamports=int(lamports),
        )
    )
    recent = Hash.from_string(blockhash)
    msg = Message.new_with_blockhash([ix], signer.pubkey(), recent)
    tx = Transaction([signer], msg, recent)
    return bytes(tx)


def sign_versioned_transaction(unsigned: bytes, signer: Keypair) -> bytes:
    """Sign a swap-service transaction (versioned, built for `signer` as fee payer)."""
    tx = VersionedTransaction.from_bytes(unsigned)
    signed = VersionedTransaction(tx.message, [signer])
    return bytes(signed)
