import pytest
import rlp

from ledger_provider.core.ledger_exceptions import CommandFailedError, InvalidTransactionError
from ledger_provider.core.ledger_signer import SignatureComponents
from ledger_provider.core.transactions import (
    TransactionType,
    UnsignedTransaction,
    normalize_access_list,
    to_data,
    to_quantity,
)

SENDER = "0x" + "aa" * 20
RECIPIENT = "0x" + "bb" * 20


@pytest.mark.parametrize(
    "value,expected",
    [(None, None), (7, 7), ("0x1f", 31), ("0X10", 16), ("42", 42), ("0x0", 0)],
)
def test_to_quantity(value, expected):
    assert to_quantity(value) == expected


@pytest.mark.parametrize("value", ["0xzz", "abc", -1, True, 1.5])
def test_to_quantity_rejects_invalid(value):
    with pytest.raises(InvalidTransactionError):
        to_quantity(value, "nonce")


def test_to_data():
    assert to_data(None) == b""
    assert to_data("0x") == b""
    assert to_data("0xdeadbeef") == b"\xde\xad\xbe\xef"
    with pytest.raises(InvalidTransactionError):
        to_data("0xnothex")


def test_normalize_access_list():
    normalized = normalize_access_list([{"address": RECIPIENT, "storageKeys": ["0x01"]}])
    assert normalized[0][0] == bytes.fromhex("bb" * 20)
    assert normalized[0][1] == (b"\x00" * 31 + b"\x01",)
    with pytest.raises(InvalidTransactionError):
        normalize_access_list([{"address": "0x1234", "storageKeys": []}])


def test_exactly_one_fee_scheme_required():
    with pytest.raises(InvalidTransactionError):
        UnsignedTransaction(chain_id=1, sender=SENDER, nonce=0, gas_limit=21000)
    with pytest.raises(InvalidTransactionError):
        UnsignedTransaction(
            chain_id=1, sender=SENDER, nonce=0, gas_limit=21000, gas_price=1, max_fee_per_gas=2, max_priority_fee_per_gas=1
        )
    with pytest.raises(InvalidTransactionError):
        UnsignedTransaction(chain_id=1, sender=SENDER, nonce=0, gas_limit=21000, max_fee_per_gas=2)


def test_invalid_recipient():
    with pytest.raises(InvalidTransactionError):
        UnsignedTransaction(chain_id=1, sender=SENDER, nonce=0, gas_limit=21000, gas_price=1, to="0x1234")


def test_legacy_unsigned_serialization_uses_eip155_fields():
    transaction = UnsignedTransaction(
        chain_id=1337, sender=SENDER, nonce=5, gas_limit=21000, gas_price=10, to=RECIPIENT, value=3
    )

    assert transaction.type is TransactionType.LEGACY
    fields = rlp.decode(transaction.serialize_unsigned())
    assert len(fields) == 9
    assert int.from_bytes(fields[0], "big") == 5
    assert fields[3] == bytes.fromhex("bb" * 20)
    assert int.from_bytes(fields[6], "big") == 1337
    assert fields[7] == b"" and fields[8] == b""


def test_fee_market_unsigned_serialization_is_type_2():
    transaction = UnsignedTransaction(
        chain_id=1, sender=SENDER, nonce=0, gas_limit=21000, max_fee_per_gas=100, max_priority_fee_per_gas=2
    )

    payload = transaction.serialize_unsigned()

    assert transaction.type is TransactionType.FEE_MARKET
    assert payload[0] == 0x02
    fields = rlp.decode(payload[1:])
    assert len(fields) == 9
    assert fields[5] == b""
    assert int.from_bytes(fields[2], "big") == 2
    assert int.from_bytes(fields[3], "big") == 100


def test_y_parity_from_truncated_legacy_v():
    transaction = UnsignedTransaction(chain_id=1337, sender=SENDER, nonce=0, gas_limit=21000, gas_price=1)
    base = 1337 * 2 + 35
    assert transaction.y_parity(base & 0xFF) == 0
    assert transaction.y_parity((base + 1) & 0xFF) == 1
    assert transaction.y_parity(28) == 1


def test_y_parity_for_fee_market():
    transaction = UnsignedTransaction(
        chain_id=1, sender=SENDER, nonce=0, gas_limit=21000, max_fee_per_gas=2, max_priority_fee_per_gas=1
    )
    assert transaction.y_parity(0) == 0
    assert transaction.y_parity(1) == 1
    assert transaction.y_parity(27) == 0
    with pytest.raises(CommandFailedError):
        transaction.y_parity(5)


def test_serialize_signed_legacy_embeds_full_v():
    transaction = UnsignedTransaction(chain_id=1337, sender=SENDER, nonce=0, gas_limit=21000, gas_price=1)
    signature = SignatureComponents.from_values((1337 * 2 + 36) & 0xFF, 5, 6)

    fields = rlp.decode(transaction.serialize_signed(signature))

    assert int.from_bytes(fields[6], "big") == 1337 * 2 + 36
    assert int.from_bytes(fields[7], "big") == 5
    assert int.from_bytes(fields[8], "big") == 6
