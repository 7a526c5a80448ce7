"""
Shared plumbing for fact providers: running blocking clients off the event
loop and fetching JSON with a bounded timeout.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from functools import partial
from typing import Any, Callable, Dict, Optional

import requests

from ..errors import ToolError

USER_AGENT = "GatekeeperVerifier/1.0"


async def run_blocking(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(fn, *args, **kwargs))


def _get_json(url: str, params: Optional[Dict[str, Any]], headers: Dict[str, str], timeout: float) -> Any:
    resp = requests.get(url, params=params, headers=headers, timeout=timeout)
    resp.raise_for_status()
    return resp.json()


async def fetch_json(
    url: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = 4.0,
) -> Any:
    """GET a JSON document. Any transport, HTTP status or decoding failure becomes a ToolError."""
    merged = {"User-Agent": USER_AGENT}
    merged.update(headers or {})
    try:
        return await run_blocking(_get_json, url, params, merged, timeout)
    except requests.RequestException as e:
        raise ToolError(f"request to {url} failed: {e}") from e
    except ValueError as e:
        raise ToolError(f"invalid JSON from {url}: {e}") from e


def format_units(raw: int, decimals: int) -> str:
    """Integer token amount -> plain decimal string without trailing zeros ("150", "0.5")."""
    value = Decimal(int(raw)).scaleb(-int(decimals))
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def tool_error(message: str, **extra: Any) -> Dict[str, Any]:
    out: Dict[str, Any] = {"error": message}
    out.update(extra)
    return out
