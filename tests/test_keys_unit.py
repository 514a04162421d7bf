import json

import pytest
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction, VersionedTransaction

from src.domain.errors import ConfigurationError
from src.ledger.keys import address_of, build_native_transfer, load_keypair, sign_versioned_transaction


def test_load_keypair_accepts_json_byte_array_and_base58():
    kp = Keypair()
    from_json = load_keypair(json.dumps(list(bytes(kp))))
    from_b58 = load_keypair(str(kp))
    assert from_json.pubkey() == kp.pubkey()
    assert from_b58.pubkey() == kp.pubkey()
    assert address_of(str(kp)) == str(kp.pubkey())


@pytest.mark.parametrize("secret", ["", "   ", "[1, 2, 3]", "[]"])
def test_load_keypair_rejects_garbage_without_echoing_it(secret):
    with pytest.raises(ConfigurationError) as exc:
        load_keypair(secret)
    if secret.strip():
        assert secret.strip() not in str(exc.value)


def test_build_native_transfer_is_signed_by_sender():
    sender = Keypair()
    dest = Keypair().pubkey()
    raw = build_native_transfer(sender, str(dest), 12345, str(Hash.default()))
    tx = Transaction.from_bytes(raw)
    keys = tx.message.account_keys
    assert keys[0] == sender.pubkey()
    assert dest in keys
    assert tx.signatures[0] != Signature.default()


def test_sign_versioned_transaction_fills_fee_payer_signature():
    payer = Keypair()
    ix = Instruction(Pubkey.default(), b"", [AccountMeta(payer.pubkey(), True, True)])
    msg = MessageV0.try_compile(payer.pubkey(), [ix], [], Hash.default())
    unsigned = bytes(VersionedTransaction.populate(msg, [Signature.default()]))

    signed = VersionedTransaction.from_bytes(sign_versioned_transaction(unsigned, payer))

    assert signed.signatures[0] != Signature.default()
    assert signed.message.account_keys[0] == payer.pubkey()
