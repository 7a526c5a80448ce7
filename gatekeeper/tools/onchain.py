"""
On-chain fact providers: native wallet stats, ERC20 balances and ERC721 ownership.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

import requests
from web3 import Web3
from web3.exceptions import Web3Exception

from ..chains import CHAIN_IDS, NATIVE_SYMBOLS, ChainClients, is_address, resolve_collection, resolve_token
from ..config import Settings
from ..errors import ToolError
from .base import fetch_json, format_units, run_blocking, tool_error

log = logging.getLogger(__name__)

ETHERSCAN_V2_URL = "https://api.etherscan.io/v2/api"

ERC20_ABI = [
    {
        "inputs": [{"internalType": "address", "name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"internalType": "uint8", "name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
]

ERC721_ABI = [ERC20_ABI[0]]

RPC_ERRORS = (Web3Exception, requests.RequestException, ValueError, ToolError)

SECONDS_PER_DAY = 86400


def _history_unavailable(note: str) -> Dict[str, Any]:
    return {
        "wallet_age_days": -1,
        "days_since_last_active": -1,
        "lifetime_gas_spent_eth": "0",
        "largest_outbound_transfer_eth": "0",
        "history_available": False,
        "history_note": note,
    }


def summarize_history(address: str, txs: List[Dict[str, Any]], now: float) -> Dict[str, Any]:
    """Reduce an Etherscan txlist into the historical fields reported to the model."""
    if not txs:
        return {
            "wallet_age_days": 0,
            "days_since_last_active": -1,
            "lifetime_gas_spent_eth": "0",
            "largest_outbound_transfer_eth": "0",
            "history_available": True,
        }

    owner = address.lower()
    stamps = [int(tx.get("timeStamp", 0)) for tx in txs if tx.get("timeStamp")]
    gas_wei = 0
    largest_out = 0
    for tx in txs:
        if str(tx.get("from", "")).lower() != owner:
            continue
        gas_wei += int(tx.get("gasUsed", 0) or 0) * int(tx.get("gasPrice", 0) or 0)
        if str(tx.get("isError", "0")) == "0":
            largest_out = max(largest_out, int(tx.get("value", 0) or 0))

    return {
        "wallet_age_days": int((now - min(stamps)) // SECONDS_PER_DAY) if stamps else -1,
        "days_since_last_active": int((now - max(stamps)) // SECONDS_PER_DAY) if stamps else -1,
        "lifetime_gas_spent_eth": format_units(gas_wei, 18),
        "largest_outbound_transfer_eth": format_units(largest_out, 18),
        "history_available": True,
    }


class WalletStatsTool:
    """Native balance, nonce and code flag from RPC plus best-effort history from an explorer API."""

    def __init__(self, settings: Settings, clients: ChainClients, *, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self.clients = clients
        self.clock = clock

    async def run(self, *, address: str, chain: str) -> Dict[str, Any]:
        log.info("[Tool] Wallet stats on %s: %s", chain, address)
        w3 = self.clients.get(chain)
        if w3 is None:
            return tool_error(f"No RPC configured for chain '{chain}'", chain=chain)

        def _read() -> Dict[str, Any]:
            checksum = Web3.to_checksum_address(address)
            balance = w3.eth.get_balance(checksum)
            tx_count = w3.eth.get_transaction_count(checksum)
            code = w3.eth.get_code(checksum)
            return {"balance": balance, "tx_count": tx_count, "is_contract": len(code) > 0}

        try:
            onchain = await run_blocking(_read)
        except RPC_ERRORS as e:
            return tool_error(f"RPC failed for {chain}: {e}", chain=chain)

        out: Dict[str, Any] = {
            "address": address,
            "chain": chain,
            "balance_eth": format_units(onchain["balance"], 18),
            "native_symbol": NATIVE_SYMBOLS.get(chain, "ETH"),
            "tx_count": onchain["tx_count"],
            "is_active": onchain["tx_count"] > 0,
            "is_contract": onchain["is_contract"],
        }
        out.update(await self._history(address, chain))
        return out

    async def _history(self, address: str, chain: str) -> Dict[str, Any]:
        if not self.settings.etherscan_api_key:
            return _history_unavailable("history provider not configured")
        params = {
            "chainid": CHAIN_IDS[chain],
            "module": "account",
            "action": "txlist",
            "address": address,
            "startblock": 0,
            "endblock": 99999999,
            "page": 1,
            "offset": 1000,
            "sort": "asc",
            "apikey": self.settings.etherscan_api_key,
        }
        try:
            data = await fetch_json(ETHERSCAN_V2_URL, params=params, timeout=self.settings.provider_timeout_seconds)
        except ToolError as e:
            log.warning("[Tool] History provider failed for %s: %s", address, e)
            return _history_unavailable("history provider unavailable")

        result = data.get("result") if isinstance(data, dict) else None
        if not isinstance(result, list):
            # status "0" with a string result is how the API reports empty history and errors alike
            if isinstance(data, dict) and "no transactions" in str(data.get("message", "")).lower():
                return summarize_history(address, [], self.clock())
            return _history_unavailable("history provider returned no data")
        return summarize_history(address, result, self.clock())


class TokenBalanceTool:
    def __init__(self, settings: Settings, clients: ChainClients) -> None:
        self.settings = settings
        self.clients = clients

    async def run(self, *, address: str, symbol: str, chain: str) -> Dict[str, Any]:
        log.info("[Tool] Token %s on %s: %s", symbol, chain, address)
        token = resolve_token(symbol, chain)
        if token is None:
            return tool_error(
                f"No contract known for token '{symbol}' on chain '{chain}'",
                symbol=symbol,
                chain=chain,
            )
        w3 = self.clients.get(chain)
        if w3 is None:
            return tool_error(f"No RPC configured for chain '{chain}'", chain=chain)

        def _read() -> Dict[str, int]:
            contract = w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)
            raw = contract.functions.balanceOf(Web3.to_checksum_address(address)).call()
            try:
                decimals = contract.functions.decimals().call()
            except Web3Exception:
                decimals = 18
            return {"raw": int(raw), "decimals": int(decimals)}

        try:
            data = await run_blocking(_read)
        except RPC_ERRORS as e:
            return tool_error(f"Failed to fetch token data on {chain}: {e}", symbol=symbol, chain=chain)

        return {
            "address": address,
            "symbol": symbol.upper() if not is_address(symbol) else symbol,
            "chain": chain,
            "token_address": token,
            "balance": format_units(data["raw"], data["decimals"]),
            "balance_raw": str(data["raw"]),
            "decimals": data["decimals"],
            "has_token": data["raw"] > 0,
        }


class NftOwnershipTool:
    def __init__(self, settings: Settings, clients: ChainClients) -> None:
        self.settings = settings
        self.clients = clients

    @staticmethod
    def _soft_fail(note: str, **extra: Any) -> Dict[str, Any]:
        # owns_nft stays false; check_failed tells negated rules not to count this as "does not own"
        out: Dict[str, Any] = {"owns_nft": False, "check_failed": True, "note": note, "error": note}
        out.update(extra)
        return out

    async def run(
        self,
        *,
        address: str,
        collection_name: Optional[str] = None,
        contract_address: Optional[str] = None,
        chain: Optional[str] = None,
    ) -> Dict[str, Any]:
        known = resolve_collection(collection_name)
        if known is not None:
            chain, contract_address = known
        elif contract_address and is_address(contract_address):
            if not chain:
                return self._soft_fail(
                    "A chain is required to check an unknown NFT contract",
                    collection=collection_name,
                    contract=contract_address,
                )
        else:
            return self._soft_fail(
                f"Unknown NFT collection '{collection_name or contract_address}'",
                collection=collection_name,
            )

        log.info("[Tool] NFT %s on %s: %s", collection_name or contract_address, chain, address)
        w3 = self.clients.get(chain)
        if w3 is None:
            return self._soft_fail(f"No RPC configured for chain '{chain}'", chain=chain)

        def _read() -> int:
            contract = w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=ERC721_ABI)
            return int(contract.functions.balanceOf(Web3.to_checksum_address(address)).call())

        try:
            balance = await run_blocking(_read)
        except RPC_ERRORS as e:
            return self._soft_fail(
                f"Ownership check failed on {chain}: {e}",
                collection=collection_name,
                contract=contract_address,
                chain=chain,
            )

        return {
            "address": address,
            "collection": collection_name,
            "contract": contract_address,
            "chain": chain,
            "balance": balance,
            "owns_nft": balance > 0,
        }
