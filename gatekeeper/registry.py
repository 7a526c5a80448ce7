"""
Tool catalog and dispatch for the verification session.

The set of tools is closed (ToolName). Each call coming back from the model is
normalized against the claimer's own context before a provider sees it: the
wallet checked is always the claimer's, coordinates come from the device, the
Discord user is the linked account, and chain names are resolved to
canonical keys. Unknown tool names are answered with an explicit error.
"""

from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .chains import CHAIN_ALIASES, CHAIN_IDS, ChainClients, is_address, resolve_chain
from .config import Settings
from .models import ToolCallRecord, UserContext
from .tools import (
    DiscordMembershipTool,
    GeoSybilTool,
    LocalTimeTool,
    NftOwnershipTool,
    TokenBalanceTool,
    WalletStatsTool,
)

log = logging.getLogger(__name__)

DEFAULT_CHAIN = "arbitrum"

_DISCORD_ID_RE = re.compile(r"(?<!\d)(\d{17,19})(?!\d)")

# aliases that are also token tickers; "hold 1 ETH" says nothing about the chain
_TOKEN_LIKE_ALIASES = {"eth", "arb", "op", "matic"}


class ToolName(str, Enum):
    WALLET_STATS = "check_wallet_stats"
    TOKEN_BALANCE = "check_token_balance"
    NFT_OWNERSHIP = "check_nft_ownership"
    DISCORD_MEMBERSHIP = "check_discord_membership"
    GEO_SYBIL = "check_geo_sybil"
    LOCAL_TIME = "check_local_time"


_CHAIN_DESCRIPTION = "Chain key, e.g. 'arbitrum', 'arbitrum_sepolia', 'ethereum', 'base', 'optimism', 'polygon'."


def _fn(name: ToolName, description: str, properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name.value,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


TOOL_CATALOG: List[Dict[str, Any]] = [
    _fn(
        ToolName.WALLET_STATS,
        "Native balance, transaction count, contract flag and wallet history (age, days since last "
        "activity, lifetime gas, largest outbound transfer) for the user's wallet.",
        {"address": {"type": "string"}, "chain": {"type": "string", "description": _CHAIN_DESCRIPTION}},
        [],
    ),
    _fn(
        ToolName.TOKEN_BALANCE,
        "ERC20 token balance of the user's wallet, by token symbol (USDC, USDT, ARB, ...) or contract address.",
        {
            "address": {"type": "string"},
            "symbol": {"type": "string", "description": "Token symbol or ERC20 contract address"},
            "chain": {"type": "string", "description": _CHAIN_DESCRIPTION},
        },
        ["symbol"],
    ),
    _fn(
        ToolName.NFT_OWNERSHIP,
        "Whether the user's wallet owns an NFT from a collection. Known collections need only the name; "
        "unknown contracts need contractAddress and chain.",
        {
            "address": {"type": "string"},
            "collectionName": {"type": "string"},
            "contractAddress": {"type": "string"},
            "chain": {"type": "string", "description": _CHAIN_DESCRIPTION},
        },
        [],
    ),
    _fn(
        ToolName.DISCORD_MEMBERSHIP,
        "Discord server membership, roles and tenure of the user's linked Discord account.",
        {
            "userId": {"type": "string"},
            "guildId": {"type": "string", "description": "Discord server id (17-19 digits)"},
            "roleId": {"type": "string", "description": "Role id required by the rule, if any"},
        },
        [],
    ),
    _fn(
        ToolName.GEO_SYBIL,
        "checkType 'geo': country/city of the user's device coordinates and whether the country is blocked. "
        "checkType 'sybil': 0-100 humanity score of the wallet (below 30 is flagged as sybil).",
        {
            "checkType": {"type": "string", "enum": ["geo", "sybil"]},
            "latitude": {"type": "number"},
            "longitude": {"type": "number"},
            "address": {"type": "string"},
        },
        ["checkType"],
    ),
    _fn(
        ToolName.LOCAL_TIME,
        "Current local and UTC time at the user's location, or in a named city.",
        {
            "latitude": {"type": "number"},
            "longitude": {"type": "number"},
            "cityName": {"type": "string", "description": "Only when the rule names a city"},
        },
        [],
    ),
]


def extract_discord_ids(rule: str) -> List[str]:
    return _DISCORD_ID_RE.findall(rule or "")


def infer_chain_from_rule(rule: str) -> Optional[str]:
    """Chain mentioned in the rule text, preferring the longest alias ("arbitrum sepolia" over "arbitrum")."""
    text = re.sub(r"[\s\-_]+", " ", (rule or "").lower())
    names = {key.replace("_", " "): key for key in CHAIN_IDS}
    names.update(CHAIN_ALIASES)
    for alias in sorted(names, key=len, reverse=True):
        if alias in _TOKEN_LIKE_ALIASES:
            continue
        if re.search(rf"\b{re.escape(alias)}\b", text):
            return names[alias]
    return None


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None and value != "" else None
    except (TypeError, ValueError):
        return None


Handler = Callable[..., Awaitable[Dict[str, Any]]]


class ToolRegistry:
    def __init__(
        self,
        settings: Settings,
        clients: Optional[ChainClients] = None,
        *,
        handlers: Optional[Dict[ToolName, Handler]] = None,
    ) -> None:
        self.settings = settings
        self.clients = clients or ChainClients(settings)
        self._handlers: Dict[ToolName, Handler] = handlers or {
            ToolName.WALLET_STATS: WalletStatsTool(settings, self.clients).run,
            ToolName.TOKEN_BALANCE: TokenBalanceTool(settings, self.clients).run,
            ToolName.NFT_OWNERSHIP: NftOwnershipTool(settings, self.clients).run,
            ToolName.DISCORD_MEMBERSHIP: DiscordMembershipTool(settings).run,
            ToolName.GEO_SYBIL: GeoSybilTool(settings, self.clients).run,
            ToolName.LOCAL_TIME: LocalTimeTool(settings).run,
        }
        missing = set(ToolName) - set(self._handlers)
        if missing:
            raise ValueError(f"No handler registered for {sorted(t.value for t in missing)}")

    @property
    def catalog(self) -> List[Dict[str, Any]]:
        return TOOL_CATALOG

    def _chain(self, requested: Any, rule: str, *, default: Optional[str] = DEFAULT_CHAIN) -> Tuple[Optional[str], Optional[str]]:
        if requested:
            chain = resolve_chain(str(requested))
            if chain is None:
                return None, f"Unknown chain '{requested}'"
            return chain, None
        return infer_chain_from_rule(rule) or default, None

    def _claimer(self, args: Dict[str, Any], ctx: UserContext) -> str:
        requested = args.get("address")
        if requested and str(requested).lower() != ctx.address.lower():
            log.info("[Tool] Ignoring model-supplied address %s, checking claimer %s", requested, ctx.address)
        return ctx.address

    def resolve_guild(self, requested: Any, role_id: Optional[str], rule: str) -> str:
        candidates = extract_discord_ids(rule)
        if requested and str(requested) in candidates:
            return str(requested)
        for candidate in candidates:
            if candidate != role_id:
                return candidate
        return self.settings.default_discord_guild_id

    def normalize(
        self, tool: ToolName, args: Dict[str, Any], rule: str, ctx: UserContext
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        """Model arguments -> provider keyword arguments, or an error message."""
        if tool is ToolName.WALLET_STATS:
            chain, err = self._chain(args.get("chain"), rule)
            return {"address": self._claimer(args, ctx), "chain": chain}, err

        if tool is ToolName.TOKEN_BALANCE:
            symbol = str(args.get("symbol") or args.get("tokenAddress") or "").strip()
            if not symbol:
                return {}, "symbol is required"
            chain, err = self._chain(args.get("chain"), rule)
            return {"address": self._claimer(args, ctx), "symbol": symbol, "chain": chain}, err

        if tool is ToolName.NFT_OWNERSHIP:
            contract = args.get("contractAddress") or args.get("tokenAddress")
            chain: Optional[str] = None
            err = None
            if args.get("chain") or is_address(contract):
                chain, err = self._chain(args.get("chain"), rule, default=None)
            return {
                "address": self._claimer(args, ctx),
                "collection_name": args.get("collectionName"),
                "contract_address": contract,
                "chain": chain,
            }, err

        if tool is ToolName.DISCORD_MEMBERSHIP:
            role_id = str(args["roleId"]) if args.get("roleId") and str(args["roleId"]).isdigit() else None
            return {
                "user_id": ctx.discord_id or args.get("userId"),
                "guild_id": self.resolve_guild(args.get("guildId"), role_id, rule),
                "role_id": role_id,
            }, None

        if tool is ToolName.GEO_SYBIL:
            check_type = str(args.get("checkType") or "geo").lower()
            if check_type not in ("geo", "sybil"):
                return {}, f"Unknown checkType '{check_type}'"
            out: Dict[str, Any] = {"check_type": check_type}
            if check_type == "geo":
                out["latitude"] = ctx.latitude if ctx.latitude is not None else _as_float(args.get("latitude"))
                out["longitude"] = ctx.longitude if ctx.longitude is not None else _as_float(args.get("longitude"))
            else:
                chain, err = self._chain(args.get("chain"), rule)
                out.update({"address": self._claimer(args, ctx), "chain": chain})
                return out, err
            return out, None

        if tool is ToolName.LOCAL_TIME:
            city = args.get("cityName")
            if city:
                return {"city_name": str(city)}, None
            return {
                "latitude": ctx.latitude if ctx.latitude is not None else _as_float(args.get("latitude")),
                "longitude": ctx.longitude if ctx.longitude is not None else _as_float(args.get("longitude")),
            }, None

        return {}, f"Unsupported tool {tool.value}"

    async def execute(self, name: str, args: Dict[str, Any], *, rule: str, user_context: UserContext) -> ToolCallRecord:
        try:
            tool = ToolName(name)
        except ValueError:
            log.warning("[AI Error] Model requested unknown tool: %s", name)
            available = ", ".join(t.value for t in ToolName)
            return ToolCallRecord(name, dict(args), {"error": f"Unknown tool '{name}'. Available tools: {available}"})

        kwargs, err = self.normalize(tool, args or {}, rule, user_context)
        if err:
            return ToolCallRecord(tool.value, kwargs or dict(args), {"error": err})

        try:
            result = await self._handlers[tool](**kwargs)
        except Exception as e:
            # providers report failures as data; anything reaching here is unexpected
            log.exception("[Tool] %s raised", tool.value)
            result = {"error": f"{tool.value} failed: {e}"}
        if not isinstance(result, dict):
            result = {"error": f"{tool.value} returned no structured result"}
        return ToolCallRecord(tool.value, kwargs, result)
