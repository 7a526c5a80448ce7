"""
Local time at a location.

Resolution cascade, first hit wins:
  1. timeapi.io timezone lookup by coordinates
  2. Open-Meteo timezone=auto lookup by coordinates
  3. reverse-geocoded country -> static UTC offset table
  4. bounding-box heuristic
  5. longitude / 15
City names are geocoded first (Open-Meteo geocoding, then a small static table).
The result always carries local and UTC hour/minute.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..config import Settings
from ..errors import ToolError
from .base import fetch_json
from .geo import reverse_geocode

log = logging.getLogger(__name__)

TIMEAPI_URL = "https://timeapi.io/api/TimeZone/coordinate"
OPEN_METEO_URL = "https://api.open-meteo.com/v1/forecast"
OPEN_METEO_GEOCODING_URL = "https://geocoding-api.open-meteo.com/v1/search"

COUNTRY_UTC_OFFSETS: Dict[str, float] = {
    "NG": 1, "GH": 0, "KE": 3, "ZA": 2, "EG": 2, "MA": 1, "ET": 3,
    "GB": 0, "IE": 0, "PT": 0, "FR": 1, "DE": 1, "ES": 1, "IT": 1, "NL": 1,
    "BE": 1, "CH": 1, "SE": 1, "NO": 1, "PL": 1, "UA": 2, "GR": 2, "TR": 3,
    "RU": 3, "AE": 4, "SA": 3, "PK": 5, "IN": 5.5, "BD": 6, "TH": 7, "VN": 7,
    "ID": 7, "CN": 8, "SG": 8, "PH": 8, "HK": 8, "KR": 9, "JP": 9, "AU": 10,
    "NZ": 12, "US": -5, "CA": -5, "MX": -6, "BR": -3, "AR": -3, "CO": -5,
    "CL": -4, "PE": -5,
}

# (lat_min, lat_max, lon_min, lon_max, utc_offset, label)
REGION_BOXES: List[Tuple[float, float, float, float, float, str]] = [
    (4.0, 14.0, 2.6, 14.7, 1, "Nigeria"),
    (49.8, 60.9, -8.7, 1.8, 0, "United Kingdom"),
    (6.5, 35.7, 68.0, 97.5, 5.5, "India"),
    (24.0, 46.0, 122.9, 146.0, 9, "Japan"),
    (18.0, 53.6, 73.5, 134.8, 8, "China"),
    (36.0, 55.0, -5.0, 24.0, 1, "Central Europe"),
    (24.5, 49.5, -85.0, -66.9, -5, "US Eastern"),
    (24.5, 49.5, -102.0, -85.0, -6, "US Central"),
    (31.0, 49.5, -114.0, -102.0, -7, "US Mountain"),
    (32.0, 49.5, -125.0, -114.0, -8, "US Pacific"),
    (-34.0, 5.3, -53.0, -34.7, -3, "Brazil East"),
    (-44.0, -10.0, 141.0, 154.0, 10, "Australia East"),
]

CITY_COORDS: Dict[str, Tuple[float, float, str]] = {
    "lagos": (6.5244, 3.3792, "NG"),
    "abuja": (9.0765, 7.3986, "NG"),
    "accra": (5.6037, -0.1870, "GH"),
    "nairobi": (-1.2921, 36.8219, "KE"),
    "london": (51.5074, -0.1278, "GB"),
    "paris": (48.8566, 2.3522, "FR"),
    "berlin": (52.5200, 13.4050, "DE"),
    "new york": (40.7128, -74.0060, "US"),
    "san francisco": (37.7749, -122.4194, "US"),
    "tokyo": (35.6762, 139.6503, "JP"),
    "singapore": (1.3521, 103.8198, "SG"),
    "dubai": (25.2048, 55.2708, "AE"),
    "mumbai": (19.0760, 72.8777, "IN"),
    "sydney": (-33.8688, 151.2093, "AU"),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def offset_from_bounding_box(latitude: float, longitude: float) -> Optional[Tuple[float, str]]:
    for lat_min, lat_max, lon_min, lon_max, offset, label in REGION_BOXES:
        if lat_min <= latitude <= lat_max and lon_min <= longitude <= lon_max:
            return offset, label
    return None


def offset_from_longitude(longitude: float) -> float:
    return float(round(longitude / 15.0))


class LocalTimeTool:
    def __init__(self, settings: Settings, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self.settings = settings
        self.clock = clock

    def _render(
        self,
        *,
        source: str,
        zone: Optional[str] = None,
        offset_hours: Optional[float] = None,
        place: Optional[str] = None,
    ) -> Dict[str, Any]:
        now_utc = self.clock()
        local = None
        if zone:
            try:
                local = now_utc.astimezone(ZoneInfo(zone))
            except (ZoneInfoNotFoundError, ValueError):
                local = None
        if local is None:
            local = now_utc + timedelta(hours=offset_hours or 0)
            local_offset = float(offset_hours or 0)
        else:
            delta = local.utcoffset() or timedelta(0)
            local_offset = delta.total_seconds() / 3600.0

        out: Dict[str, Any] = {
            "local_time": local.strftime("%H:%M"),
            "local_hour": local.hour,
            "local_minute": local.minute,
            "local_weekday": local.strftime("%A"),
            "utc_time": now_utc.strftime("%H:%M"),
            "utc_hour": now_utc.hour,
            "utc_minute": now_utc.minute,
            "utc_offset_hours": local_offset,
            "timezone": zone or f"UTC{local_offset:+g}",
            "source": source,
        }
        if place:
            out["place"] = place
        return out

    async def _geocode_city(self, city_name: str) -> Optional[Dict[str, Any]]:
        try:
            data = await fetch_json(
                OPEN_METEO_GEOCODING_URL,
                params={"name": city_name, "count": 1},
                timeout=self.settings.provider_timeout_seconds,
            )
            results = data.get("results") if isinstance(data, dict) else None
            if results:
                hit = results[0]
                return {
                    "latitude": float(hit["latitude"]),
                    "longitude": float(hit["longitude"]),
                    "timezone": hit.get("timezone"),
                    "country_code": str(hit.get("country_code", "")).upper(),
                }
        except (ToolError, KeyError, TypeError, ValueError) as e:
            log.warning("[Tool] City geocoding failed for %s: %s", city_name, e)

        static = CITY_COORDS.get(city_name.strip().lower())
        if static:
            return {"latitude": static[0], "longitude": static[1], "timezone": None, "country_code": static[2]}
        return None

    async def _zone_from_timeapi(self, latitude: float, longitude: float) -> Optional[Dict[str, Any]]:
        data = await fetch_json(
            TIMEAPI_URL,
            params={"latitude": latitude, "longitude": longitude},
            timeout=self.settings.provider_timeout_seconds,
        )
        zone = data.get("timeZone") if isinstance(data, dict) else None
        seconds = ((data.get("currentUtcOffset") or {}).get("seconds") if isinstance(data, dict) else None)
        if not zone and seconds is None:
            return None
        return {"zone": zone, "offset_hours": (seconds or 0) / 3600.0}

    async def _zone_from_open_meteo(self, latitude: float, longitude: float) -> Optional[Dict[str, Any]]:
        data = await fetch_json(
            OPEN_METEO_URL,
            params={"latitude": latitude, "longitude": longitude, "timezone": "auto", "current": "temperature_2m"},
            timeout=self.settings.provider_timeout_seconds,
        )
        if not isinstance(data, dict) or ("timezone" not in data and "utc_offset_seconds" not in data):
            return None
        zone = data.get("timezone")
        if zone in ("GMT", "UTC") and data.get("utc_offset_seconds"):
            zone = None
        return {"zone": zone, "offset_hours": (data.get("utc_offset_seconds") or 0) / 3600.0}

    async def run(
        self,
        *,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        city_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        country_code: Optional[str] = None
        place = city_name

        if city_name and (latitude is None or longitude is None):
            hit = await self._geocode_city(city_name)
            if hit is None:
                return {"error": f"Could not locate city '{city_name}'", **self._render(source="utc_only")}
            latitude, longitude = hit["latitude"], hit["longitude"]
            country_code = hit["country_code"] or None
            if hit.get("timezone"):
                return self._render(source="geocoding", zone=hit["timezone"], place=place)

        if latitude is None or longitude is None:
            return {"error": "No coordinates or city supplied", **self._render(source="utc_only")}

        log.info("[Tool] Local time at %.4f,%.4f", latitude, longitude)
        for source, lookup in (("timeapi", self._zone_from_timeapi), ("open_meteo", self._zone_from_open_meteo)):
            try:
                found = await lookup(latitude, longitude)
            except ToolError as e:
                log.warning("[Tool] %s lookup failed: %s", source, e)
                continue
            if found:
                return self._render(source=source, zone=found["zone"], offset_hours=found["offset_hours"], place=place)

        if country_code is None:
            try:
                country_code = (await reverse_geocode(latitude, longitude, timeout=self.settings.provider_timeout_seconds))["country_code"]
            except ToolError as e:
                log.warning("[Tool] Reverse geocoding for time failed: %s", e)
        if country_code and country_code in COUNTRY_UTC_OFFSETS:
            return self._render(source="country_table", offset_hours=COUNTRY_UTC_OFFSETS[country_code], place=place or country_code)

        boxed = offset_from_bounding_box(latitude, longitude)
        if boxed is not None:
            return self._render(source="bounding_box", offset_hours=boxed[0], place=place or boxed[1])

        return self._render(source="longitude_estimate", offset_hours=offset_from_longitude(longitude), place=place)
