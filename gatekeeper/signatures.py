"""
Signature plumbing for claims.

WebAuthn platform authenticators hand back ASN.1 DER encoded P-256 signatures
while the vault's verifier wants a fixed 64-byte r||s. The relayer's own
authorization is an EIP-191 signature over keccak256(dropId || receiver).
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import string
from typing import List, Optional, Tuple, Union

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from .errors import SignatureError

COMPONENT_SIZE = 32
COMPACT_SIZE = 2 * COMPONENT_SIZE

_HEX_DIGITS = set(string.hexdigits)


def to_bytes(value: Union[str, bytes, List[int], None], field: str = "value") -> bytes:
    """Accept the shapes browsers send: a list of byte values, 0x-hex, raw JSON text or base64url."""
    if value is None:
        raise SignatureError(f"{field} is missing")
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, list):
        try:
            return bytes(value)
        except (TypeError, ValueError) as e:
            raise SignatureError(f"{field} must be a list of byte values: {e}") from e
    if isinstance(value, str):
        text = value.strip()
        if text.lower().startswith("0x"):
            try:
                return bytes.fromhex(text[2:])
            except ValueError as e:
                raise SignatureError(f"{field} is not valid hex") from e
        if text.startswith("{"):
            return text.encode("utf-8")
        if text and len(text) % 2 == 0 and set(text) <= _HEX_DIGITS:
            return bytes.fromhex(text)
        try:
            return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))
        except (binascii.Error, ValueError) as e:
            raise SignatureError(f"{field} is neither hex nor base64") from e
    raise SignatureError(f"{field} has unsupported type {type(value).__name__}")


def _read_integer(der: bytes, idx: int) -> Tuple[bytes, int]:
    if idx + 2 > len(der) or der[idx] != 0x02:
        raise SignatureError("malformed DER signature: expected INTEGER tag")
    length = der[idx + 1]
    start = idx + 2
    end = start + length
    if length == 0 or end > len(der):
        raise SignatureError("malformed DER signature: bad INTEGER length")
    return der[start:end], end


def _parse_der(der: bytes) -> Tuple[bytes, bytes]:
    if len(der) < 8 or der[0] != 0x30:
        raise SignatureError("malformed DER signature: expected SEQUENCE")
    seq_len = der[1]
    idx = 2
    if seq_len == 0x81:
        # long form, only seen with oversized components
        if len(der) < 3:
            raise SignatureError("malformed DER signature: truncated length")
        seq_len = der[2]
        idx = 3
    elif seq_len & 0x80:
        raise SignatureError("malformed DER signature: unsupported length form")
    if idx + seq_len != len(der):
        raise SignatureError("malformed DER signature: length mismatch")
    r, idx = _read_integer(der, idx)
    s, idx = _read_integer(der, idx)
    if idx != len(der):
        raise SignatureError("malformed DER signature: trailing bytes")
    return r, s


def _fit_component(value: bytes, name: str) -> bytes:
    stripped = value.lstrip(b"\x00")
    if len(stripped) > COMPONENT_SIZE:
        raise SignatureError(f"{name} is {len(stripped)} bytes, exceeds {COMPONENT_SIZE}")
    return stripped.rjust(COMPONENT_SIZE, b"\x00")


def der_to_compact(signature: bytes) -> bytes:
    """DER `0x30 len 0x02 rLen r 0x02 sLen s` -> 64-byte r||s. A 64-byte compact input is returned as is."""
    try:
        r, s = _parse_der(signature)
    except SignatureError:
        if len(signature) == COMPACT_SIZE:
            return bytes(signature)
        raise
    return _fit_component(r, "r") + _fit_component(s, "s")


def biometric_message_hash(client_data_json: Union[str, bytes, List[int], None]) -> bytes:
    """WebAuthn signs authenticatorData || sha256(clientDataJSON); the vault verifies against the latter."""
    return hashlib.sha256(to_bytes(client_data_json, "clientDataJSON")).digest()


def claim_digest(drop_id: int, receiver: str) -> bytes:
    return bytes(Web3.solidity_keccak(["uint256", "address"], [int(drop_id), Web3.to_checksum_address(receiver)]))


def agent_signature(private_key: str, drop_id: int, receiver: str) -> bytes:
    """65-byte r||s||v EIP-191 signature over the packed (dropId, receiver) hash."""
    signed = Account.sign_message(encode_defunct(primitive=claim_digest(drop_id, receiver)), private_key=private_key)
    return bytes(signed.signature)


def recover_agent_signer(signature: bytes, drop_id: int, receiver: str) -> Optional[str]:
    try:
        return Account.recover_message(encode_defunct(primitive=claim_digest(drop_id, receiver)), signature=signature)
    except (ValueError, TypeError):
        return None
