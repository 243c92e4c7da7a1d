import pytest

from enshrined.core.address import AddressNormalizer, default_normalizer
from enshrined.core.errors import MalformedEncoding

RAW = bytes(range(1, 21))
VALOPER = "orgvaloper1qypqxpq9qcrsszg2pvxq6rs0zqg3yyc5ny2p0s"
ACCOUNT = "cosmos1qypqxpq9qcrsszg2pvxq6rs0zqg3yyc5lzv7xu"
VALOPER_FF = "orgvaloper1lllllllllllllllllllllllllllllllln580fm"


def test_normalize_decodes_raw_address():
    assert default_normalizer.normalize(VALOPER) == RAW
    assert default_normalizer(VALOPER_FF) == b"\xff" * 20


def test_prefix_does_not_change_address_bytes():
    assert default_normalizer.normalize(ACCOUNT) == default_normalizer.normalize(VALOPER)


def test_encode_uses_operator_prefix_by_default():
    assert default_normalizer.encode(RAW) == VALOPER
    assert default_normalizer.encode(RAW, hrp="cosmos") == ACCOUNT


def test_bad_checksum_is_rejected():
    tampered = VALOPER[:-1] + ("q" if VALOPER[-1] != "q" else "p")
    with pytest.raises(MalformedEncoding):
        default_normalizer.normalize(tampered)


@pytest.mark.parametrize(
    "value",
    ["", "0x" + RAW.hex(), "not-an-address", "abc", "orgValoper1qypqxpq9qcrsszg2pvxq6rs0zqg3yyc5ny2p0s"],
)
def test_garbage_is_rejected(value):
    with pytest.raises(MalformedEncoding):
        default_normalizer.normalize(value)


def test_non_string_is_rejected():
    with pytest.raises(MalformedEncoding):
        default_normalizer.normalize(RAW)


def test_pinned_prefix():
    pinned = AddressNormalizer(hrp="ORGVALOPER")
    assert pinned.hrp == "orgvaloper"
    assert pinned.normalize(VALOPER) == RAW
    with pytest.raises(MalformedEncoding):
        pinned.normalize(ACCOUNT)


def test_wrong_width_is_rejected():
    wide = AddressNormalizer(width=32).encode(b"\x01" * 32)
    assert AddressNormalizer(width=32).normalize(wide) == b"\x01" * 32
    with pytest.raises(MalformedEncoding):
        default_normalizer.normalize(wide)
    with pytest.raises(MalformedEncoding):
        default_normalizer.encode(b"\x01" * 32)
