"""
Chain registry: aliases, chain ids, known token and NFT contracts, and a cache
of web3 HTTP clients keyed by canonical chain name.
"""

from __future__ import annotations

import re
from typing import Dict, Optional, Tuple

from web3 import Web3

from .config import Settings


CHAIN_IDS: Dict[str, int] = {
    "arbitrum": 42161,
    "arbitrum_sepolia": 421614,
    "ethereum": 1,
    "ethereum_sepolia": 11155111,
    "base": 8453,
    "optimism": 10,
    "polygon": 137,
}

CHAIN_ALIASES: Dict[str, str] = {
    "arb": "arbitrum",
    "arbitrum one": "arbitrum",
    "arbitrum mainnet": "arbitrum",
    "arb1": "arbitrum",
    "arbitrum sepolia": "arbitrum_sepolia",
    "arb sepolia": "arbitrum_sepolia",
    "arbsepolia": "arbitrum_sepolia",
    "arbitrumsepolia": "arbitrum_sepolia",
    "eth": "ethereum",
    "mainnet": "ethereum",
    "ethereum mainnet": "ethereum",
    "sepolia": "ethereum_sepolia",
    "eth sepolia": "ethereum_sepolia",
    "ethereum sepolia": "ethereum_sepolia",
    "matic": "polygon",
    "polygon pos": "polygon",
    "op": "optimism",
    "op mainnet": "optimism",
    "base mainnet": "base",
}

NATIVE_SYMBOLS: Dict[str, str] = {"polygon": "POL"}

# chain -> symbol -> ERC20 contract
TOKEN_REGISTRY: Dict[str, Dict[str, str]] = {
    "arbitrum": {
        "USDC": "0xaf88d065e77c8cC2239327C5EDb3A432268e5831",
        "USDT": "0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9",
        "ARB": "0x912CE59144191C1204E64559FE8253a0e49E6548",
        "WETH": "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1",
        "DAI": "0xDA10009cBd5D07dd0CeCc66161FC93D7c9000da1",
        "LINK": "0xf97f4df75117a78c1A5a0DBb814Af92458539FB4",
    },
    "arbitrum_sepolia": {
        "USDC": "0x75faf114eafb1BDbe2F0316DF893fd58CE46AA4d",
        "LINK": "0xb1D4538B4571d411F07960EF2838Ce337FE1E80E",
    },
    "ethereum": {
        "USDC": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
        "USDT": "0xdAC17F958D2ee523a2206206994597C13D831ec7",
        "DAI": "0x6B175474E89094C44Da98b954EedeAC495271d0F",
        "WETH": "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2",
        "LINK": "0x514910771AF9Ca656af840dff83E8264EcF986CA",
        "UNI": "0x1f9840a85d5aF5bf1D1762F925BDADdC4201F984",
    },
    "ethereum_sepolia": {
        "USDC": "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238",
        "LINK": "0x779877A7B0D9E8603169DdbD7836e478b4624789",
    },
    "base": {
        "USDC": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        "WETH": "0x4200000000000000000000000000000000000006",
    },
    "optimism": {
        "USDC": "0x0b2C639c533813f4Aa9D7837CAf62653d097Ff85",
        "OP": "0x4200000000000000000000000000000000000042",
        "WETH": "0x4200000000000000000000000000000000000006",
    },
    "polygon": {
        "USDC": "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359",
        "USDT": "0xc2132D05D31c914a87C6611C10748AEb04B58e8F",
        "WETH": "0x7ceB23fD6bC0adD59E62ac25578270cFf1b9f619",
    },
}

# normalized collection name -> (canonical chain, ERC721 contract)
NFT_COLLECTIONS: Dict[str, Tuple[str, str]] = {
    "bored ape yacht club": ("ethereum", "0xBC4CA0EdA7647A8aB7C2061c2E118A18a936f13D"),
    "bayc": ("ethereum", "0xBC4CA0EdA7647A8aB7C2061c2E118A18a936f13D"),
    "mutant ape yacht club": ("ethereum", "0x60E4d786628Fea6478F785A6d7e704777c86a7c6"),
    "mayc": ("ethereum", "0x60E4d786628Fea6478F785A6d7e704777c86a7c6"),
    "azuki": ("ethereum", "0xED5AF388653567Af2F388E6224dC7C4b3241C544"),
    "pudgy penguins": ("ethereum", "0xBd3531dA5CF5857e7CfAA92426877b022e612cf8"),
    "doodles": ("ethereum", "0x8a90CAb2b38dba80c64b7734e58Ee1dB38B8992e"),
    "milady": ("ethereum", "0x5Af0D9827E0c53E4799BB226655A1de152A425a5"),
    "cool cats": ("ethereum", "0x1A92f7381B9F03921564a437210bB9396471050C"),
    "smol brains": ("arbitrum", "0x6325439389E0797Ab35752B4F43a14C004f22A9c"),
    "base introduced": ("base", "0xD4307E0acD12CF46fD6cf93BC264f5D5D1598792"),
}

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_address(value: Optional[str]) -> bool:
    return bool(value) and bool(_ADDRESS_RE.match(value.strip()))


def resolve_chain(name: Optional[str]) -> Optional[str]:
    """Map a free-form chain name onto a canonical key, or None when unknown."""
    if not name:
        return None
    key = re.sub(r"[\s\-]+", " ", str(name).strip().lower())
    if key.replace(" ", "_") in CHAIN_IDS:
        return key.replace(" ", "_")
    if key in CHAIN_ALIASES:
        return CHAIN_ALIASES[key]
    compact = key.replace(" ", "")
    return CHAIN_ALIASES.get(compact)


def resolve_token(symbol: str, chain: str) -> Optional[str]:
    """Token contract for a symbol on exactly this chain; never falls back to another chain."""
    if is_address(symbol):
        return Web3.to_checksum_address(symbol)
    return TOKEN_REGISTRY.get(chain, {}).get(symbol.strip().upper().lstrip("$"))


def normalize_collection(name: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"[^a-z0-9 ]", " ", name.lower())).strip()


def resolve_collection(name: Optional[str]) -> Optional[Tuple[str, str]]:
    if not name:
        return None
    key = normalize_collection(name)
    if key in NFT_COLLECTIONS:
        return NFT_COLLECTIONS[key]
    if key.endswith(" nft") or key.endswith(" nfts"):
        return NFT_COLLECTIONS.get(key.rsplit(" ", 1)[0])
    return None


class ChainClients:
    """Lazily built Web3 HTTP clients, one per configured chain."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._clients: Dict[str, Web3] = {}

    def get(self, chain: str) -> Optional[Web3]:
        if chain in self._clients:
            return self._clients[chain]
        url = self.settings.rpc_url(chain)
        if not url:
            return None
        client = Web3(
            Web3.HTTPProvider(url, request_kwargs={"timeout": self.settings.provider_timeout_seconds})
        )
        self._clients[chain] = client
        return client

    def set(self, chain: str, client: Web3) -> None:
        self._clients[chain] = client
