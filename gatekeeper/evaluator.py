"""
RuleEvaluator: a bounded tool-calling chat session that judges one rule.

The session is a LangGraph workflow:

    model --(tool calls)--> tools --> model
    model --(empty reply)--> nudge --> model
    model --(text / budget spent)--> END

Every pass through `model` is one model call and counts against the turn
budget. A failing (key, model) pair is abandoned and the session restarts
from scratch on the next pair; when all pairs are spent the evaluator raises
ModelExhaustionError.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from itertools import product
from typing import Any, Callable, Dict, List, Optional, Tuple, TypedDict

import openai
from langgraph.graph import END, StateGraph
from openai import AsyncOpenAI

from .config import Settings
from .errors import GatekeeperError, ModelExhaustionError
from .models import ToolCallRecord, UserContext
from .observability import traced_client, track
from .registry import ToolRegistry

log = logging.getLogger(__name__)


SYSTEM_PROMPT = """You are the Gatekeeper, the judge deciding whether a user may claim a reward.
You receive a RULE written by the quest creator and facts about the USER. Decide whether the
user satisfies the rule.

Decision protocol. Classify the rule first, then follow exactly one route:
1. Trivia, password or creative rules ("say the secret word", "what is 2+2", "write a haiku"):
   judge the user's ANSWER directly. Do NOT call any tool.
2. Financial or history rules (native balance, number of transactions, wallet age, activity,
   gas spent, large transfers): call check_wallet_stats.
3. Token rules (hold N USDC / USDT / ARB / any ERC20): call check_token_balance with the symbol
   and the chain named in the rule.
4. NFT rules (own / do not own an NFT or collection): call check_nft_ownership.
5. Discord rules (member of a server, has a role, joined N days ago): call check_discord_membership.
6. Location rules (be in a country or city, not in a blocked country): call check_geo_sybil with
   checkType "geo". Humanity / anti-bot rules: call check_geo_sybil with checkType "sybil".
7. Time-window rules (claim between 9am and 5pm, only at night): call check_local_time. Use
   cityName only when the rule names a city; compare utc_hour when the rule says UTC.
Combined rules may need several of these tools, one call at a time.

Tool results are facts. If a result contains "error" or "check_failed": true, the fact could
not be verified and the requirement depending on it is NOT met. In particular a rule that
requires NOT owning an NFT is rejected when the ownership check failed.

Security: when you reject, never reveal the correct answer, the secret word, or why a trivia
answer is wrong. Say only that the requirement was not met.

When you are done, reply with ONLY this JSON and nothing else:
{"approved": true or false, "explanation": "one short sentence"}"""

NUDGE_PROMPT = (
    "You returned an empty reply. Either call another tool if you still need a fact, or reply now "
    'with ONLY the final JSON: {"approved": true or false, "explanation": "..."}'
)


class InvalidModelResponse(GatekeeperError):
    """The completion had no usable choice."""


FAILOVER_ERRORS = (openai.OpenAIError, InvalidModelResponse)


class SessionState(TypedDict):
    messages: List[Dict[str, Any]]
    tool_log: List[ToolCallRecord]
    pending: List[Dict[str, Any]]
    text: str
    turns: int
    nudges: int


@dataclass
class EvaluationResult:
    text: str
    tool_log: List[ToolCallRecord] = field(default_factory=list)
    model: str = ""
    attempts: List[str] = field(default_factory=list)
    turns: int = 0


def build_user_prompt(rule: str, ctx: UserContext) -> str:
    facts = {
        "address": ctx.address,
        "answer": ctx.answer,
        "location_provided": ctx.has_coordinates,
        "discord_linked": bool(ctx.discord_id),
    }
    return f"RULE:\n{rule}\n\nUSER:\n{json.dumps(facts, indent=2)}"


def _loads_args(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def read_message(resp: Any, model: str) -> Tuple[str, List[Dict[str, Any]]]:
    """(content, pending tool calls) of the first choice. Any other shape is an InvalidModelResponse."""
    choices = getattr(resp, "choices", None)
    if not choices:
        raise InvalidModelResponse(f"{model} returned no choices")
    message = getattr(choices[0], "message", None)
    if message is None:
        raise InvalidModelResponse(f"{model} returned a choice without a message")

    content = getattr(message, "content", None)
    if content is None:
        content = ""
    if not isinstance(content, str):
        raise InvalidModelResponse(f"{model} returned {type(content).__name__} content")

    pending: List[Dict[str, Any]] = []
    for tc in getattr(message, "tool_calls", None) or []:
        fn = getattr(tc, "function", None)
        name = getattr(fn, "name", None)
        arguments = getattr(fn, "arguments", None)
        call_id = getattr(tc, "id", None)
        if not isinstance(name, str) or not name or not isinstance(call_id, str):
            raise InvalidModelResponse(f"{model} returned a malformed tool call")
        if arguments is not None and not isinstance(arguments, str):
            raise InvalidModelResponse(f"{model} returned non-string tool arguments")
        pending.append({"id": call_id, "name": name, "arguments": arguments})
    return content, pending


ClientFactory = Callable[[str], Any]


class RuleEvaluator:
    def __init__(
        self,
        settings: Settings,
        registry: ToolRegistry,
        *,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self._client_factory = client_factory or self._default_client
        self._clients: Dict[str, Any] = {}

    def _default_client(self, api_key: str) -> Any:
        client = AsyncOpenAI(api_key=api_key, timeout=self.settings.llm_timeout_seconds, max_retries=0)
        return traced_client(client, self.settings.opik_project)

    def _client(self, api_key: str) -> Any:
        if api_key not in self._clients:
            self._clients[api_key] = self._client_factory(api_key)
        return self._clients[api_key]

    @property
    def recursion_limit(self) -> int:
        # model+tools per turn, nudge+model per nudge, plus slack
        return 2 * self.settings.max_turns + 2 * self.settings.max_nudges + 5

    @track(name="rule_evaluation")
    async def evaluate(self, rule: str, user_context: UserContext) -> EvaluationResult:
        keys = self.settings.llm_api_keys
        models = self.settings.llm_models
        if not keys or not models:
            raise ModelExhaustionError(["no API keys or models configured"])

        diagnostics: List[str] = []
        for (key_index, key), model in product(enumerate(keys, start=1), models):
            label = f"{model}@key{key_index}"
            log.info("[AI] Evaluating with %s", label)
            try:
                state = await self._session(self._client(key), model, rule, user_context)
            except FAILOVER_ERRORS as e:
                log.warning("[AI Error] %s failed: %s: %s", label, type(e).__name__, e)
                diagnostics.append(f"{label}: {type(e).__name__}: {e}")
                continue

            log.info("[AI] %s finished in %d turn(s), %d tool call(s)", label, state["turns"], len(state["tool_log"]))
            return EvaluationResult(
                text=state["text"],
                tool_log=state["tool_log"],
                model=model,
                attempts=diagnostics + [f"{label}: ok"],
                turns=state["turns"],
            )

        log.error("[AI Error] All models exhausted after %d attempt(s)", len(diagnostics))
        raise ModelExhaustionError(diagnostics)

    async def _session(self, client: Any, model: str, rule: str, ctx: UserContext) -> SessionState:
        graph = self._build_graph(client, model, rule, ctx)
        initial: SessionState = {
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_user_prompt(rule, ctx)},
            ],
            "tool_log": [],
            "pending": [],
            "text": "",
            "turns": 0,
            "nudges": 0,
        }
        return await graph.ainvoke(initial, config={"recursion_limit": self.recursion_limit})

    def _build_graph(self, client: Any, model: str, rule: str, ctx: UserContext):
        max_turns = self.settings.max_turns
        max_nudges = self.settings.max_nudges

        async def call_model(state: SessionState) -> Dict[str, Any]:
            if state["turns"] >= max_turns:
                return {"pending": []}
            resp = await client.chat.completions.create(
                model=model,
                messages=state["messages"],
                tools=self.registry.catalog,
                tool_choice="auto",
                parallel_tool_calls=False,
                temperature=0,
            )
            content, pending = read_message(resp, model)
            turns = state["turns"] + 1
            messages = list(state["messages"])

            if pending:
                messages.append(
                    {
                        "role": "assistant",
                        "content": content,
                        "tool_calls": [
                            {"id": p["id"], "type": "function", "function": {"name": p["name"], "arguments": p["arguments"] or "{}"}}
                            for p in pending
                        ],
                    }
                )
                log.info("[AI] Turn %d: %s", turns, ", ".join(p["name"] for p in pending))
                return {"messages": messages, "pending": pending, "turns": turns, "text": ""}

            text = content.strip()
            if text:
                messages.append({"role": "assistant", "content": text})
            log.info("[AI] Turn %d: %s", turns, "final text" if text else "empty reply")
            return {"messages": messages, "pending": [], "turns": turns, "text": text}

        async def run_tools(state: SessionState) -> Dict[str, Any]:
            messages = list(state["messages"])
            tool_log = list(state["tool_log"])
            for call in state["pending"]:
                args = _loads_args(call["arguments"])
                if args is None:
                    record = ToolCallRecord(call["name"], {}, {"error": "Tool arguments were not valid JSON"})
                else:
                    record = await self.registry.execute(call["name"], args, rule=rule, user_context=ctx)
                tool_log.append(record)
                messages.append({"role": "tool", "tool_call_id": call["id"], "content": json.dumps(record.result, default=str)})
            return {"messages": messages, "tool_log": tool_log, "pending": []}

        def nudge(state: SessionState) -> Dict[str, Any]:
            messages = list(state["messages"]) + [{"role": "user", "content": NUDGE_PROMPT}]
            log.info("[AI] Empty reply, nudging (%d/%d)", state["nudges"] + 1, max_nudges)
            return {"messages": messages, "nudges": state["nudges"] + 1}

        def after_model(state: SessionState) -> str:
            if state["pending"]:
                return "tools"
            if state["text"] or state["turns"] >= max_turns:
                return "end"
            if state["nudges"] < max_nudges:
                return "nudge"
            return "end"

        def after_tools(state: SessionState) -> str:
            return "model" if state["turns"] < max_turns else "end"

        g = StateGraph(SessionState)
        g.add_node("model", call_model)
        g.add_node("tools", run_tools)
        g.add_node("nudge", nudge)

        g.set_entry_point("model")
        g.add_conditional_edges("model", after_model, {"tools": "tools", "nudge": "nudge", "end": END})
        g.add_conditional_edges("tools", after_tools, {"model": "model", "end": END})
        g.add_edge("nudge", "model")
        return g.compile()
