import hashlib

import pytest
from eth_account import Account

from gatekeeper.errors import SignatureError
from gatekeeper.signatures import (
    agent_signature,
    biometric_message_hash,
    der_to_compact,
    recover_agent_signer,
    to_bytes,
)

from conftest import CLAIMER, RELAYER_KEY


def der(r: bytes, s: bytes) -> bytes:
    body = bytes([0x02, len(r)]) + r + bytes([0x02, len(s)]) + s
    return bytes([0x30, len(body)]) + body


@pytest.mark.parametrize("size", [1, 5, 31, 32])
def test_der_components_are_left_padded(size):
    r = bytes([0x7F]) * size
    s = bytes([0x01]) * size
    compact = der_to_compact(der(r, s))
    assert len(compact) == 64
    assert compact[:32] == r.rjust(32, b"\x00")
    assert compact[32:] == s.rjust(32, b"\x00")


def test_der_strips_sign_padding():
    r = b"\x00" + b"\x80" + b"\x01" * 31  # 33 bytes with a leading zero
    s = b"\x00\x00" + b"\x05"
    compact = der_to_compact(der(r, s))
    assert compact[:32] == b"\x80" + b"\x01" * 31
    assert compact[32:] == b"\x05".rjust(32, b"\x00")


def test_der_rejects_oversized_component():
    r = b"\x01" * 33
    with pytest.raises(SignatureError):
        der_to_compact(der(r, b"\x01"))


def test_der_rejects_garbage():
    with pytest.raises(SignatureError):
        der_to_compact(b"\x31\x02\x00\x00")
    with pytest.raises(SignatureError):
        der_to_compact(der(b"\x01", b"\x02")[:-1])


def test_compact_input_passes_through():
    sig = bytes(range(64))
    assert der_to_compact(sig) == sig


def test_placeholder_signature_from_web_client():
    hex_sig = (
        "0x30440220" + "00" * 31 + "01" + "0220" + "00" * 31 + "01"
    )
    compact = der_to_compact(to_bytes(hex_sig, "signature"))
    assert compact == (b"\x01".rjust(32, b"\x00")) * 2


def test_to_bytes_accepts_browser_shapes():
    assert to_bytes([1, 2, 255]) == b"\x01\x02\xff"
    assert to_bytes("0x0102") == b"\x01\x02"
    assert to_bytes('{"type":"webauthn.get"}') == b'{"type":"webauthn.get"}'
    assert to_bytes("AQI") == b"\x01\x02"
    with pytest.raises(SignatureError):
        to_bytes([256])
    with pytest.raises(SignatureError):
        to_bytes(None, "clientDataJSON")


def test_biometric_hash_is_sha256_of_client_data():
    client_data = b'{"type":"webauthn.get","challenge":"abc"}'
    assert biometric_message_hash(list(client_data)) == hashlib.sha256(client_data).digest()


def test_agent_signature_recovers_to_relayer():
    sig = agent_signature(RELAYER_KEY, 7, CLAIMER)
    assert len(sig) == 65
    assert recover_agent_signer(sig, 7, CLAIMER) == Account.from_key(RELAYER_KEY).address
    assert recover_agent_signer(sig, 8, CLAIMER) != Account.from_key(RELAYER_KEY).address
