import json
import os
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

os.environ.pop("OPIK_API_KEY", None)
os.environ["OPIK_TRACK_DISABLE"] = "true"

import pytest  # noqa: E402

from gatekeeper.config import Settings  # noqa: E402
from gatekeeper.models import UserContext  # noqa: E402

CLAIMER = "0x1111111111111111111111111111111111111111"
CONTRACT = "0x2222222222222222222222222222222222222222"
RELAYER_KEY = "0x" + "11" * 32


@pytest.fixture
def settings():
    return Settings(
        llm_api_keys=("key-1", "key-2"),
        llm_models=("model-a", "model-b"),
        contract_address=CONTRACT,
        relayer_private_key=RELAYER_KEY,
        discord_bot_token="bot-token",
    )


@pytest.fixture
def ctx():
    return UserContext(address=CLAIMER, latitude=6.5244, longitude=3.3792, discordId="123456789012345678")


def text_response(text: Optional[str]):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text, tool_calls=None))])


def tool_response(name: str, args: Dict[str, Any], call_id: str = "call_1"):
    call = SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=json.dumps(args)))
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=None, tool_calls=[call]))])


class FakeCompletions:
    """Replays a script of responses; an Exception item is raised instead of returned."""

    def __init__(self, script: Optional[List[Any]] = None, responder: Optional[Callable[[int], Any]] = None):
        self.script = list(script or [])
        self.responder = responder
        self.calls: List[Dict[str, Any]] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.responder is not None:
            item = self.responder(len(self.calls))
        elif self.script:
            item = self.script.pop(0)
        else:
            item = text_response("")
        if isinstance(item, Exception):
            raise item
        return item


class FakeClient:
    def __init__(self, script=None, responder=None):
        self.completions = FakeCompletions(script, responder)
        self.chat = SimpleNamespace(completions=self.completions)


def fake_handlers(**overrides):
    """Handlers for every ToolName returning canned data; overrides keyed by tool value."""
    from gatekeeper.registry import ToolName

    calls: List[Dict[str, Any]] = []

    def make(tool: ToolName):
        async def handler(**kwargs):
            calls.append({"tool": tool.value, **kwargs})
            result = overrides.get(tool.value, {"ok": True})
            return result(**kwargs) if callable(result) else dict(result)

        return handler

    handlers = {tool: make(tool) for tool in ToolName}
    return handlers, calls
