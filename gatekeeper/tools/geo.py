"""
Geolocation and sybil-resistance checks.

geo    reverse-geocodes the claimer's coordinates and applies a country deny-list.
sybil  scores an address 0-100 from its transaction count and native balance.

Fallbacks on provider failure:
  geo    country/city "Unknown", is_blocked False, location_verified False. A rule
         requiring a specific place can never pass on an unknown location.
  sybil  sybil_score 0, is_sybil True, check_failed True (an unscored address is
         treated as unverified).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from web3 import Web3

from ..chains import ChainClients
from ..config import Settings
from ..errors import ToolError
from .base import fetch_json, run_blocking
from .onchain import RPC_ERRORS

log = logging.getLogger(__name__)

NOMINATIM_REVERSE_URL = "https://nominatim.openstreetmap.org/reverse"

BLOCKED_COUNTRIES: Dict[str, str] = {
    "KP": "North Korea",
    "IR": "Iran",
    "SY": "Syria",
    "CU": "Cuba",
}

SYBIL_THRESHOLD = 30
SYBIL_TX_CAP = 50
SYBIL_BALANCE_CAP_ETH = 0.05


async def reverse_geocode(latitude: float, longitude: float, *, timeout: float = 4.0) -> Dict[str, Any]:
    """Coordinates -> {country, country_code, city, region}. Raises ToolError on failure."""
    data = await fetch_json(
        NOMINATIM_REVERSE_URL,
        params={"format": "jsonv2", "lat": latitude, "lon": longitude, "zoom": 10, "addressdetails": 1},
        timeout=timeout,
    )
    address = data.get("address") if isinstance(data, dict) else None
    if not address:
        raise ToolError("reverse geocoder returned no address")
    city = (
        address.get("city")
        or address.get("town")
        or address.get("village")
        or address.get("municipality")
        or address.get("county")
        or "Unknown"
    )
    return {
        "country": address.get("country", "Unknown"),
        "country_code": str(address.get("country_code", "")).upper(),
        "city": city,
        "region": address.get("state") or address.get("region") or "",
    }


def sybil_score(tx_count: int, balance_eth: float) -> int:
    tx_part = min(max(tx_count, 0), SYBIL_TX_CAP) / SYBIL_TX_CAP * 60
    balance_part = min(max(balance_eth, 0.0), SYBIL_BALANCE_CAP_ETH) / SYBIL_BALANCE_CAP_ETH * 40
    return int(round(tx_part + balance_part))


class GeoSybilTool:
    def __init__(self, settings: Settings, clients: ChainClients) -> None:
        self.settings = settings
        self.clients = clients

    async def run(
        self,
        *,
        check_type: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        address: Optional[str] = None,
        chain: str = "arbitrum",
    ) -> Dict[str, Any]:
        if check_type == "sybil":
            return await self._sybil(address, chain)
        return await self._geo(latitude, longitude)

    async def _geo(self, latitude: Optional[float], longitude: Optional[float]) -> Dict[str, Any]:
        if latitude is None or longitude is None:
            return {
                "check_type": "geo",
                "country": "Unknown",
                "city": "Unknown",
                "is_blocked": False,
                "location_verified": False,
                "error": "No coordinates supplied by the user",
            }
        log.info("[Tool] Geo check at %.4f,%.4f", latitude, longitude)
        try:
            place = await reverse_geocode(latitude, longitude, timeout=self.settings.provider_timeout_seconds)
        except ToolError as e:
            log.warning("[Tool] Geo provider failed: %s", e)
            return {
                "check_type": "geo",
                "latitude": latitude,
                "longitude": longitude,
                "country": "Unknown",
                "city": "Unknown",
                "is_blocked": False,
                "location_verified": False,
                "note": "Geolocation service unavailable",
                "error": str(e),
            }

        code = place["country_code"]
        return {
            "check_type": "geo",
            "latitude": latitude,
            "longitude": longitude,
            "country": place["country"],
            "country_code": code,
            "city": place["city"],
            "region": place["region"],
            "is_blocked": code in BLOCKED_COUNTRIES,
            "location_verified": True,
        }

    async def _sybil(self, address: Optional[str], chain: str) -> Dict[str, Any]:
        fallback = {
            "check_type": "sybil",
            "address": address,
            "sybil_score": 0,
            "is_sybil": True,
            "check_failed": True,
            "threshold": SYBIL_THRESHOLD,
        }
        if not address:
            return dict(fallback, error="No address supplied")
        w3 = self.clients.get(chain)
        if w3 is None:
            return dict(fallback, error=f"No RPC configured for chain '{chain}'")

        log.info("[Tool] Sybil check on %s: %s", chain, address)

        def _read() -> Dict[str, Any]:
            checksum = Web3.to_checksum_address(address)
            return {
                "tx_count": w3.eth.get_transaction_count(checksum),
                "balance_eth": float(Web3.from_wei(w3.eth.get_balance(checksum), "ether")),
            }

        try:
            stats = await run_blocking(_read)
        except RPC_ERRORS as e:
            return dict(fallback, note="Sybil check unavailable; treated as unverified", error=str(e))

        score = sybil_score(stats["tx_count"], stats["balance_eth"])
        return {
            "check_type": "sybil",
            "address": address,
            "chain": chain,
            "tx_count": stats["tx_count"],
            "balance_eth": stats["balance_eth"],
            "sybil_score": score,
            "threshold": SYBIL_THRESHOLD,
            "is_sybil": score < SYBIL_THRESHOLD,
        }
