"""
Opik tracing for verification sessions.

Tracing is switched on only when OPIK_API_KEY is configured. Without a key the
OPIK_TRACK_DISABLE flag is set before the SDK is imported, so the @track
decorators below become pass-through and nothing is sent anywhere.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from dotenv import load_dotenv

load_dotenv()

if not os.getenv("OPIK_API_KEY"):
    os.environ.setdefault("OPIK_TRACK_DISABLE", "true")

import opik  # noqa: E402
from opik import track  # noqa: E402,F401
from opik.integrations.openai import track_openai  # noqa: E402

from .config import Settings  # noqa: E402

log = logging.getLogger(__name__)

_TRACING = {"enabled": False}


def configure_tracing(settings: Settings) -> bool:
    """Configure the Opik SDK once at startup. Returns True when traces will be exported."""
    if not settings.opik_api_key:
        log.info("[OPIK] No OPIK_API_KEY, tracing disabled")
        return False

    os.environ["OPIK_PROJECT_NAME"] = settings.opik_project
    try:
        opik.configure(api_key=settings.opik_api_key, workspace=settings.opik_workspace)
    except Exception as e:
        log.warning("[OPIK] Initialization failed, continuing without tracing: %s", e)
        return False

    _TRACING["enabled"] = True
    log.info("[OPIK] Tracing to workspace=%s project=%s", settings.opik_workspace, settings.opik_project)
    return True


def tracing_enabled() -> bool:
    return _TRACING["enabled"]


def traced_client(client: Any, project: str) -> Any:
    """Wrap an OpenAI client so every completion becomes an Opik span."""
    if not _TRACING["enabled"]:
        return client
    return track_openai(client, project_name=project)
