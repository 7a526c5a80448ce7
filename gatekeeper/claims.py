"""
ClaimSubmitter: turns an approved claim into a claimDrop transaction sent by the relayer.

Authorization paths accepted by the vault:
  agent      the relayer co-signs keccak256(dropId || receiver); only done when the
             claimer presents a live proof token from a successful verification
  biometric  a P-256 WebAuthn assertion checked against the drop's stored key
Both signatures plus sha256(clientDataJSON) go out in one contract call.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, Web3Exception

from .chains import ChainClients
from .config import Settings
from .errors import ChainError, ConfigurationError, SignatureError
from .models import BiometricData
from .proofs import ProofIssuer
from .signatures import agent_signature, biometric_message_hash, der_to_compact, to_bytes
from .tools.base import run_blocking

log = logging.getLogger(__name__)

CLAIM_ABI: List[Dict[str, Any]] = [
    {
        "inputs": [
            {"internalType": "uint256", "name": "drop_id", "type": "uint256"},
            {"internalType": "address", "name": "receiver", "type": "address"},
            {"internalType": "uint8[]", "name": "agent_signature", "type": "uint8[]"},
            {"internalType": "uint8[]", "name": "biometric_signature", "type": "uint8[]"},
            {"internalType": "uint8[]", "name": "message_hash", "type": "uint8[]"},
        ],
        "name": "claimDrop",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    }
]

# vault revert codes
REVERT_CODES: Dict[str, str] = {
    "E1": "drop already exists",
    "E2": "drop is not active",
    "E3": "drop has expired",
    "E4": "agent signature must be 65 bytes",
    "E5": "signature recovery failed",
    "E7": "unauthorized",
    "E8": "biometric signature invalid",
    "E9": "transfer to receiver failed",
    "E10": "only the drop creator can reclaim",
    "E11": "drop has not expired yet",
    "E12": "drop already settled",
    "E13": "refund transfer failed",
    "E14": "signer key or message hash has the wrong length",
    "E15": "biometric signature missing or not 64 bytes",
    "E16": "P-256 precompile call failed",
}

_CODE_RE = re.compile(r"\b(E\d{1,2})\b")

PRIORITY_FEE_GWEI = 2
GAS_HEADROOM = 1.2


def decode_revert_reason(err: Exception) -> str:
    texts: List[str] = []
    data = getattr(err, "data", None)
    if isinstance(data, str) and data.startswith("0x"):
        try:
            decoded = bytes.fromhex(data[2:]).decode("ascii")
            if decoded.isprintable():
                texts.append(decoded)
        except ValueError:
            pass
    texts.append(str(getattr(err, "message", "") or ""))
    texts.append(str(err))

    for text in texts:
        m = _CODE_RE.search(text)
        if m:
            code = m.group(1)
            return f"{code}: {REVERT_CODES.get(code, 'unknown vault error')}"
    message = next((t for t in texts if t), "unknown reason")
    return re.sub(r"^\(?'?execution reverted:?\s*", "", message).strip() or "unknown reason"


class ClaimSubmitter:
    def __init__(self, settings: Settings, proofs: ProofIssuer, clients: Optional[ChainClients] = None) -> None:
        self.settings = settings
        self.proofs = proofs
        self.clients = clients or ChainClients(settings)
        # one relayer key, one nonce sequence
        self._lock = asyncio.Lock()

    def _web3(self) -> Web3:
        w3 = self.clients.get(self.settings.claim_chain)
        if w3 is None:
            raise ConfigurationError(f"No RPC configured for claim chain '{self.settings.claim_chain}'")
        return w3

    @staticmethod
    def biometric_payload(biometric_data: Optional[BiometricData]) -> tuple:
        if biometric_data is None:
            return b"", b""
        signature = der_to_compact(to_bytes(biometric_data.signature, "signature"))
        message_hash = biometric_message_hash(biometric_data.client_data_json)
        return signature, message_hash

    async def submit_claim(
        self,
        drop_id: int,
        receiver: str,
        biometric_data: Optional[BiometricData] = None,
        proof_token: Optional[str] = None,
    ) -> str:
        if not self.settings.claim_enabled:
            raise ConfigurationError("Claim path disabled: PRIVATE_KEY and STYLUS_CONTRACT_ADDRESS are required")

        if proof_token and biometric_data is not None and biometric_data.client_data_json is None:
            # no clientDataJSON, nothing the vault could check; the agent signature carries the claim
            log.info("[CLAIM] drop=%s biometric data without clientDataJSON ignored on proof path", drop_id)
            biometric_data = None

        bio_signature, message_hash = self.biometric_payload(biometric_data)
        if proof_token:
            self.proofs.check(proof_token, address=receiver)
        elif not bio_signature:
            raise SignatureError("A biometric assertion is required when no proof token is presented")

        async with self._lock:
            agent_sig = b""
            if proof_token:
                # re-check under the lock so two claims cannot spend one token
                self.proofs.check(proof_token, address=receiver)
                agent_sig = agent_signature(self.settings.relayer_private_key, drop_id, receiver)
            log.info(
                "[CLAIM] drop=%s receiver=%s path=%s",
                drop_id,
                receiver,
                "agent" if agent_sig else "biometric",
            )
            tx_hash = await run_blocking(self._send, drop_id, receiver, agent_sig, bio_signature, message_hash)
            if proof_token:
                self.proofs.consume(proof_token)

        log.info("[CLAIM] drop=%s confirmed in %s", drop_id, tx_hash)
        return tx_hash

    def _send(self, drop_id: int, receiver: str, agent_sig: bytes, bio_sig: bytes, message_hash: bytes) -> str:
        w3 = self._web3()
        acct = Account.from_key(self.settings.relayer_private_key)
        contract = w3.eth.contract(address=Web3.to_checksum_address(self.settings.contract_address), abi=CLAIM_ABI)
        call = contract.functions.claimDrop(
            int(drop_id),
            Web3.to_checksum_address(receiver),
            list(agent_sig),
            list(bio_sig),
            list(message_hash),
        )

        try:
            nonce = w3.eth.get_transaction_count(acct.address, "pending")
            gas_estimate = call.estimate_gas({"from": acct.address})
            gas_limit = int(gas_estimate * GAS_HEADROOM)

            base_fee = w3.eth.gas_price
            max_priority_fee = w3.to_wei(PRIORITY_FEE_GWEI, "gwei")
            max_fee = base_fee + max_priority_fee

            tx = call.build_transaction(
                {
                    "from": acct.address,
                    "nonce": nonce,
                    "gas": gas_limit,
                    "maxFeePerGas": max_fee,
                    "maxPriorityFeePerGas": max_priority_fee,
                    "chainId": w3.eth.chain_id,
                }
            )
            signed = acct.sign_transaction(tx)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.settings.receipt_timeout_seconds)
        except ContractLogicError as e:
            reason = decode_revert_reason(e)
            log.warning("[CLAIM] drop=%s reverted: %s", drop_id, reason)
            raise ChainError(f"Claim reverted: {reason}", revert_reason=reason) from e
        except (Web3Exception, requests.RequestException, ValueError) as e:
            log.warning("[CLAIM] drop=%s transaction failed: %s", drop_id, e)
            raise ChainError(f"Claim transaction failed: {e}") from e

        hex_hash = Web3.to_hex(tx_hash)
        if int(receipt["status"]) != 1:
            raise ChainError(f"Claim transaction {hex_hash} reverted", revert_reason="transaction status 0")
        return hex_hash
