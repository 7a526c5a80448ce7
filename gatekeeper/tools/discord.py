"""
Discord guild membership via the bot API.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import requests

from ..config import Settings
from .base import USER_AGENT, run_blocking, tool_error

log = logging.getLogger(__name__)

DISCORD_API = "https://discord.com/api/v10"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def tenure_days(joined_at: Optional[str], now: datetime) -> int:
    if not joined_at:
        return -1
    try:
        joined = datetime.fromisoformat(joined_at.replace("Z", "+00:00"))
    except ValueError:
        return -1
    if joined.tzinfo is None:
        joined = joined.replace(tzinfo=timezone.utc)
    return max(0, (now - joined).days)


class DiscordMembershipTool:
    def __init__(self, settings: Settings, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self.settings = settings
        self.clock = clock

    def _get_member(self, guild_id: str, user_id: str) -> requests.Response:
        return requests.get(
            f"{DISCORD_API}/guilds/{guild_id}/members/{user_id}",
            headers={"Authorization": f"Bot {self.settings.discord_bot_token}", "User-Agent": USER_AGENT},
            timeout=self.settings.provider_timeout_seconds,
        )

    async def run(self, *, user_id: Optional[str], guild_id: str, role_id: Optional[str] = None) -> Dict[str, Any]:
        if not self.settings.discord_bot_token:
            return tool_error("Discord bot token not configured", is_member=False, check_failed=True)
        if not user_id:
            return tool_error("No Discord account linked for this user", is_member=False, check_failed=True)

        log.info("[Tool] Discord member %s in guild %s", user_id, guild_id)
        try:
            resp = await run_blocking(self._get_member, guild_id, user_id)
        except requests.RequestException as e:
            return tool_error(f"Discord API unreachable: {e}", is_member=False, check_failed=True)

        if resp.status_code == 404:
            return {"is_member": False, "guild_id": guild_id, "note": "User not found in server"}
        if resp.status_code in (401, 403):
            return tool_error(
                f"Bot cannot read members of guild {guild_id} (HTTP {resp.status_code})",
                is_member=False,
                check_failed=True,
            )
        if resp.status_code >= 400:
            return tool_error(f"Discord API error HTTP {resp.status_code}", is_member=False, check_failed=True)

        try:
            data = resp.json()
        except ValueError:
            return tool_error("Discord API returned invalid JSON", is_member=False, check_failed=True)

        roles = [str(r) for r in data.get("roles", [])]
        out: Dict[str, Any] = {
            "is_member": True,
            "guild_id": guild_id,
            "username": (data.get("user") or {}).get("username"),
            "roles": roles,
            "joined_at": data.get("joined_at"),
            "tenure_days": tenure_days(data.get("joined_at"), self.clock()),
        }
        if role_id:
            out["role_id"] = str(role_id)
            out["has_role"] = str(role_id) in roles
        return out
