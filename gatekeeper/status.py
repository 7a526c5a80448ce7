"""
StatusReader: claim status of a drop without a full contract codec.

`drops(uint256)` is called with hand-built calldata and the fixed-size head of
the returned tuple is sliced word by word:

    word 0  sender      (address, right-aligned)
    word 1  amount      (uint256)
    word 2  active      (bool)
    word 3  expiresAt   (uint64)
    word 4  gatekeeper  (address)
    word 5  offset of signer public key X
    word 6  offset of signer public key Y

An inactive drop was either claimed or reclaimed by its creator; a
DropClaimed log for the drop id tells the two apart.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import Web3Exception

from .chains import ChainClients
from .config import Settings
from .errors import ChainError, ConfigurationError
from .models import ClaimStatus, DropRecord
from .tools.base import run_blocking

log = logging.getLogger(__name__)

WORD = 32
ZERO_ADDRESS = "0x" + "00" * 20

DROPS_SELECTOR = bytes(Web3.keccak(text="drops(uint256)")[:4])
DROP_CLAIMED_TOPIC = bytes(Web3.keccak(text="DropClaimed(uint256,address)"))

# drops mapping lives in slot 0; gatekeeper is the fifth struct field
DROPS_MAPPING_SLOT = 0
GATEKEEPER_FIELD_OFFSET = 4

RPC_ERRORS = (Web3Exception, requests.RequestException, ValueError)


def _as_bytes(raw: Union[str, bytes]) -> bytes:
    if isinstance(raw, str):
        text = raw[2:] if raw.lower().startswith("0x") else raw
        return bytes.fromhex(text)
    return bytes(raw)


def _word(data: bytes, index: int) -> bytes:
    return data[index * WORD : (index + 1) * WORD]


def _address(word: bytes) -> str:
    return Web3.to_checksum_address("0x" + word[-20:].hex())


def _uint(word: bytes) -> int:
    return int.from_bytes(word, "big")


def _dynamic_bytes(data: bytes, offset: int) -> bytes:
    """Best effort: a uint8[] (one word per element) or a packed `bytes` at `offset`."""
    if offset <= 0 or offset + WORD > len(data):
        return b""
    length = _uint(data[offset : offset + WORD])
    body = data[offset + WORD :]
    if length == 0:
        return b""
    if len(body) >= length * WORD:
        items = [_uint(body[i * WORD : (i + 1) * WORD]) for i in range(length)]
        if all(v < 256 for v in items):
            return bytes(items)
    if len(body) >= length:
        return body[:length]
    return b""


def encode_drops_call(drop_id: int) -> bytes:
    return DROPS_SELECTOR + int(drop_id).to_bytes(WORD, "big")


def decode_drop_record(raw: Union[str, bytes]) -> DropRecord:
    try:
        data = _as_bytes(raw)
    except ValueError as e:
        raise ChainError(f"drops() returned non-hex data: {e}") from e
    if len(data) < 5 * WORD:
        raise ChainError(f"drops() returned {len(data)} bytes, expected at least {5 * WORD}")

    record = DropRecord(
        sender=_address(_word(data, 0)),
        amount=_uint(_word(data, 1)),
        active=_uint(_word(data, 2)) != 0,
        expires_at=_uint(_word(data, 3)),
        gatekeeper_address=_address(_word(data, 4)),
    )
    if len(data) >= 7 * WORD:
        record.signer_pub_key_x = _dynamic_bytes(data, _uint(_word(data, 5)))
        record.signer_pub_key_y = _dynamic_bytes(data, _uint(_word(data, 6)))
    return record


def claimer_from_log(entry: Dict[str, Any]) -> Optional[str]:
    topics: List[Any] = list(entry.get("topics") or [])
    if len(topics) >= 3:
        return _address(_as_bytes(topics[2]) if isinstance(topics[2], str) else bytes(topics[2]))
    data = entry.get("data")
    if data:
        raw = _as_bytes(data) if isinstance(data, str) else bytes(data)
        if len(raw) >= 20:
            return _address(raw[-WORD:] if len(raw) >= WORD else raw)
    return None


def gatekeeper_slot(drop_id: int) -> int:
    key = int(drop_id).to_bytes(WORD, "big") + DROPS_MAPPING_SLOT.to_bytes(WORD, "big")
    return int.from_bytes(Web3.keccak(key), "big") + GATEKEEPER_FIELD_OFFSET


class StatusReader:
    def __init__(self, settings: Settings, clients: Optional[ChainClients] = None) -> None:
        self.settings = settings
        self.clients = clients or ChainClients(settings)

    def _web3(self) -> Web3:
        if not self.settings.status_enabled:
            raise ConfigurationError("STYLUS_CONTRACT_ADDRESS is not configured")
        w3 = self.clients.get(self.settings.claim_chain)
        if w3 is None:
            raise ConfigurationError(f"No RPC configured for claim chain '{self.settings.claim_chain}'")
        return w3

    @property
    def contract(self) -> str:
        return Web3.to_checksum_address(self.settings.contract_address)

    async def read_drop(self, drop_id: int) -> DropRecord:
        w3 = self._web3()

        def _call() -> bytes:
            return bytes(w3.eth.call({"to": self.contract, "data": Web3.to_hex(encode_drops_call(drop_id))}))

        try:
            raw = await run_blocking(_call)
        except RPC_ERRORS as e:
            raise ChainError(f"drops({drop_id}) call failed: {e}") from e
        return decode_drop_record(raw)

    async def find_claimer(self, drop_id: int) -> Optional[str]:
        w3 = self._web3()
        params = {
            "address": self.contract,
            "fromBlock": self.settings.claim_log_from_block,
            "toBlock": "latest",
            "topics": [Web3.to_hex(DROP_CLAIMED_TOPIC), Web3.to_hex(int(drop_id).to_bytes(WORD, "big"))],
        }
        try:
            logs = await run_blocking(w3.eth.get_logs, params)
        except RPC_ERRORS as e:
            raise ChainError(f"DropClaimed log query failed: {e}") from e
        for entry in reversed(list(logs)):
            claimer = claimer_from_log(entry)
            if claimer:
                return claimer
        return None

    async def read_status(self, drop_id: int) -> ClaimStatus:
        record = await self.read_drop(drop_id)
        details = {
            "sender": record.sender,
            "amount": str(record.amount),
            "expiresAt": record.expires_at,
            "gatekeeper": record.gatekeeper_address,
        }
        if not record.exists:
            details["exists"] = False
            return ClaimStatus(active=False, claimed=False, reclaimed=False, claimed_by=None, details=details)
        if record.active:
            return ClaimStatus(active=True, claimed=False, reclaimed=False, claimed_by=None, details=details)

        claimer = await self.find_claimer(drop_id)
        log.info("[STATUS] drop=%s inactive, %s", drop_id, f"claimed by {claimer}" if claimer else "reclaimed")
        return ClaimStatus(
            active=False,
            claimed=claimer is not None,
            reclaimed=claimer is None,
            claimed_by=claimer,
            details=details,
        )

    async def read_gatekeeper_slot(self, drop_id: int) -> Dict[str, Any]:
        """Gatekeeper address straight from storage, compared with the relayer's address."""
        w3 = self._web3()
        slot = gatekeeper_slot(drop_id)
        try:
            raw = await run_blocking(w3.eth.get_storage_at, self.contract, slot)
        except RPC_ERRORS as e:
            raise ChainError(f"storage read failed: {e}") from e

        stored = _address(bytes(raw).rjust(WORD, b"\x00"))
        relayer = Account.from_key(self.settings.relayer_private_key).address if self.settings.relayer_private_key else None
        return {
            "dropId": drop_id,
            "slot": hex(slot),
            "gatekeeper": stored,
            "relayer": relayer,
            "isZero": stored.lower() == ZERO_ADDRESS,
            "matchesRelayer": bool(relayer) and stored.lower() == relayer.lower(),
        }
