"""
Environment configuration.

Everything is read once from the process environment (a local .env is loaded
first) into an immutable Settings object that the rest of the package receives
explicitly.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()


DEFAULT_RPC_URLS: Dict[str, str] = {
    "arbitrum": "https://arb1.arbitrum.io/rpc",
    "arbitrum_sepolia": "https://sepolia-rollup.arbitrum.io/rpc",
    "ethereum": "https://ethereum-rpc.publicnode.com",
    "ethereum_sepolia": "https://ethereum-sepolia-rpc.publicnode.com",
    "base": "https://mainnet.base.org",
    "optimism": "https://mainnet.optimism.io",
    "polygon": "https://polygon-rpc.com",
}

# chain key -> env var holding its RPC URL
RPC_ENV_VARS: Dict[str, str] = {
    "arbitrum": "RPC_ARBITRUM",
    "arbitrum_sepolia": "RPC_SEPOLIA_ARBITRUM",
    "ethereum": "RPC_ETHEREUM",
    "ethereum_sepolia": "RPC_SEPOLIA_ETH",
    "base": "RPC_BASE",
    "optimism": "RPC_OPTIMISM",
    "polygon": "RPC_POLYGON",
}

DEFAULT_MODELS: Tuple[str, ...] = ("gpt-4o-mini", "gpt-4o", "gpt-4.1-mini")
DEFAULT_DISCORD_GUILD_ID = "1453315409787883647"


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_int(name: str, default: int) -> int:
    raw = _env_str(name)
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = _env_str(name)
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = _env_str(name)
    if not raw:
        return default
    items = tuple(x.strip() for x in raw.split(",") if x.strip())
    return items or default


@dataclass(frozen=True)
class Settings:
    rpc_urls: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_RPC_URLS))
    contract_address: str = ""
    claim_chain: str = "arbitrum_sepolia"
    relayer_private_key: str = ""

    llm_api_keys: Tuple[str, ...] = ()
    llm_models: Tuple[str, ...] = DEFAULT_MODELS
    llm_timeout_seconds: float = 30.0
    max_turns: int = 12
    max_nudges: int = 2

    discord_bot_token: str = ""
    default_discord_guild_id: str = DEFAULT_DISCORD_GUILD_ID
    etherscan_api_key: str = ""
    provider_timeout_seconds: float = 4.0

    proof_ttl_seconds: int = 900
    claim_log_from_block: int = 0
    receipt_timeout_seconds: int = 120

    opik_api_key: str = ""
    opik_workspace: str = "gatekeeper"
    opik_project: str = "gatekeeper-verification"

    port: int = 4000

    @staticmethod
    def from_env() -> "Settings":
        rpc_urls = {
            chain: _env_str(env_name, DEFAULT_RPC_URLS[chain])
            for chain, env_name in RPC_ENV_VARS.items()
        }
        keys: List[str] = []
        for name in ("OPENAI_API_KEY", "OPENAI_API_KEY_2", "OPENAI_API_KEY_3"):
            value = _env_str(name)
            if value and value not in keys:
                keys.append(value)

        return Settings(
            rpc_urls=rpc_urls,
            contract_address=_env_str("STYLUS_CONTRACT_ADDRESS"),
            claim_chain=_env_str("CLAIM_CHAIN", "arbitrum_sepolia"),
            relayer_private_key=_env_str("PRIVATE_KEY"),
            llm_api_keys=tuple(keys),
            llm_models=_env_list("LLM_MODELS", DEFAULT_MODELS),
            llm_timeout_seconds=_env_float("LLM_TIMEOUT_SECONDS", 30.0),
            max_turns=_env_int("MAX_TURNS", 12),
            discord_bot_token=_env_str("DISCORD_BOT_TOKEN"),
            default_discord_guild_id=_env_str("DEFAULT_DISCORD_GUILD_ID", DEFAULT_DISCORD_GUILD_ID),
            etherscan_api_key=_env_str("ETHERSCAN_API_KEY"),
            proof_ttl_seconds=_env_int("PROOF_TTL_SECONDS", 900),
            claim_log_from_block=_env_int("CLAIM_LOG_FROM_BLOCK", 0),
            receipt_timeout_seconds=_env_int("RECEIPT_TIMEOUT_SECONDS", 120),
            opik_api_key=_env_str("OPIK_API_KEY"),
            opik_workspace=_env_str("OPIK_WORKSPACE", "gatekeeper"),
            opik_project=_env_str("OPIK_PROJECT", "gatekeeper-verification"),
            port=_env_int("PORT", _env_int("VERIFY_API_PORT", 4000)),
        )

    def rpc_url(self, chain: str) -> Optional[str]:
        return self.rpc_urls.get(chain)

    @property
    def claim_enabled(self) -> bool:
        """Claims need both the relayer key and the vault address."""
        return bool(self.relayer_private_key and self.contract_address)

    @property
    def status_enabled(self) -> bool:
        return bool(self.contract_address)

    @property
    def verification_enabled(self) -> bool:
        return bool(self.llm_api_keys)
