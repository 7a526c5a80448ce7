import dataclasses
from types import SimpleNamespace

import httpx
import openai
import pytest

from gatekeeper.errors import ModelExhaustionError
from gatekeeper.evaluator import SYSTEM_PROMPT, RuleEvaluator
from gatekeeper.parser import parse
from gatekeeper.registry import ToolRegistry

from conftest import CLAIMER, FakeClient, fake_handlers, text_response, tool_response


def connection_error():
    return openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))


def make_evaluator(settings, clients_by_key, **handler_overrides):
    handlers, calls = fake_handlers(**handler_overrides)
    registry = ToolRegistry(settings, handlers=handlers)
    evaluator = RuleEvaluator(settings, registry, client_factory=lambda key: clients_by_key[key])
    return evaluator, calls


@pytest.mark.asyncio
async def test_trivia_answered_without_tools(settings, ctx):
    client = FakeClient([text_response('{"approved": true, "explanation": "Correct answer."}')])
    evaluator, calls = make_evaluator(settings, {"key-1": client})

    result = await evaluator.evaluate("What is 2+2?", ctx.model_copy(update={"answer": "4"}))

    assert result.text.startswith('{"approved": true')
    assert result.tool_log == []
    assert result.model == "model-a"
    assert calls == []
    request = client.completions.calls[0]
    assert request["messages"][0] == {"role": "system", "content": SYSTEM_PROMPT}
    assert request["parallel_tool_calls"] is False
    assert len(request["tools"]) == 6


@pytest.mark.asyncio
async def test_turn_budget_is_never_exceeded(settings, ctx):
    client = FakeClient(responder=lambda n: tool_response("check_wallet_stats", {"chain": "arbitrum"}, f"call_{n}"))
    evaluator, calls = make_evaluator(settings, {"key-1": client})

    result = await evaluator.evaluate("Have more than 5 transactions on Arbitrum", ctx)

    assert len(client.completions.calls) == settings.max_turns == 12
    assert result.turns == 12
    assert len(result.tool_log) == 12
    assert len(calls) == 12
    assert result.text == ""


@pytest.mark.asyncio
async def test_custom_turn_budget(settings, ctx):
    settings = dataclasses.replace(settings, max_turns=3)
    client = FakeClient(responder=lambda n: tool_response("check_wallet_stats", {}, f"call_{n}"))
    evaluator, _ = make_evaluator(settings, {"key-1": client})

    result = await evaluator.evaluate("any rule", ctx)

    assert len(client.completions.calls) == 3
    assert result.turns == 3


@pytest.mark.asyncio
async def test_empty_replies_are_nudged_then_answered(settings, ctx):
    client = FakeClient([text_response(""), text_response(None), text_response('{"approved": false}')])
    evaluator, _ = make_evaluator(settings, {"key-1": client})

    result = await evaluator.evaluate("Say the secret word", ctx)

    assert result.text == '{"approved": false}'
    assert len(client.completions.calls) == 3
    nudges = [m for m in client.completions.calls[2]["messages"] if m["role"] == "user"]
    assert len(nudges) == 3  # original prompt + two nudges


@pytest.mark.asyncio
async def test_gives_up_after_nudge_budget(settings, ctx):
    client = FakeClient(responder=lambda n: text_response(""))
    evaluator, _ = make_evaluator(settings, {"key-1": client})

    result = await evaluator.evaluate("Say the secret word", ctx)

    assert result.text == ""
    assert len(client.completions.calls) == 1 + settings.max_nudges


@pytest.mark.asyncio
async def test_tool_result_is_fed_back(settings, ctx):
    client = FakeClient(
        [
            tool_response("check_token_balance", {"symbol": "USDC", "chain": "Arbitrum Sepolia", "address": "0xdead"}),
            text_response('{"approved": true, "explanation": "Holds 150 USDC."}'),
        ]
    )
    evaluator, calls = make_evaluator(
        settings,
        {"key-1": client},
        check_token_balance={"balance": "150", "chain": "arbitrum_sepolia"},
    )

    result = await evaluator.evaluate("User must hold > 100 USDC on Arbitrum Sepolia", ctx)

    assert calls == [{"tool": "check_token_balance", "address": CLAIMER, "symbol": "USDC", "chain": "arbitrum_sepolia"}]
    tool_message = client.completions.calls[1]["messages"][-1]
    assert tool_message["role"] == "tool"
    assert tool_message["tool_call_id"] == "call_1"
    assert '"balance": "150"' in tool_message["content"]
    assert parse(result.text, result.tool_log).approved is True


@pytest.mark.asyncio
async def test_usdc_scenario_from_tool_log_alone(settings, ctx):
    client = FakeClient([tool_response("check_token_balance", {"symbol": "USDC", "chain": "arbitrum_sepolia"})])
    evaluator, _ = make_evaluator(
        settings,
        {"key-1": client},
        check_token_balance={"balance": "150", "chain": "arbitrum_sepolia"},
    )
    rule = "User must hold > 100 USDC on Arbitrum Sepolia"

    result = await evaluator.evaluate(rule, ctx)

    assert result.text == ""
    assert parse(result.text, result.tool_log, rule).approved is True


@pytest.mark.asyncio
async def test_unknown_tool_is_answered_with_error(settings, ctx):
    client = FakeClient([tool_response("check_weather", {}), text_response('{"approved": false}')])
    evaluator, calls = make_evaluator(settings, {"key-1": client})

    result = await evaluator.evaluate("It must be sunny", ctx)

    assert calls == []
    assert "Unknown tool" in result.tool_log[0].result["error"]


@pytest.mark.asyncio
async def test_invalid_tool_arguments_are_reported(settings, ctx):
    bad = tool_response("check_wallet_stats", {})
    bad.choices[0].message.tool_calls[0].function.arguments = "{not json"
    client = FakeClient([bad, text_response('{"approved": false}')])
    evaluator, calls = make_evaluator(settings, {"key-1": client})

    result = await evaluator.evaluate("any", ctx)

    assert calls == []
    assert result.tool_log[0].result == {"error": "Tool arguments were not valid JSON"}


@pytest.mark.asyncio
async def test_failover_walks_models_then_keys(settings, ctx):
    broken = FakeClient(responder=lambda n: connection_error())
    healthy = FakeClient([text_response('{"approved": true}')])
    evaluator, _ = make_evaluator(settings, {"key-1": broken, "key-2": healthy})

    result = await evaluator.evaluate("What is 2+2?", ctx)

    assert [c["model"] for c in broken.completions.calls] == ["model-a", "model-b"]
    assert [c["model"] for c in healthy.completions.calls] == ["model-a"]
    assert result.model == "model-a"
    assert len(result.attempts) == 3
    assert result.attempts[-1] == "model-a@key2: ok"


@pytest.mark.asyncio
async def test_response_without_choices_triggers_failover(settings, ctx):
    client = FakeClient([SimpleNamespace(choices=[]), text_response('{"approved": true}')])
    evaluator, _ = make_evaluator(settings, {"key-1": client})

    result = await evaluator.evaluate("What is 2+2?", ctx)

    assert result.model == "model-b"
    assert "InvalidModelResponse" in result.attempts[0]


@pytest.mark.parametrize(
    "bad_message",
    [
        None,
        SimpleNamespace(content={"approved": True}, tool_calls=None),
        SimpleNamespace(content=None, tool_calls=[SimpleNamespace(id="call_1", function=None)]),
    ],
)
@pytest.mark.asyncio
async def test_malformed_message_fails_over_to_next_key(settings, ctx, bad_message):
    settings = dataclasses.replace(settings, llm_models=("model-a",))
    broken = FakeClient([SimpleNamespace(choices=[SimpleNamespace(message=bad_message)])])
    healthy = FakeClient([text_response('{"approved": true, "explanation": "ok"}')])
    evaluator, calls = make_evaluator(settings, {"key-1": broken, "key-2": healthy})

    result = await evaluator.evaluate("What is 2+2?", ctx)

    assert result.text == '{"approved": true, "explanation": "ok"}'
    assert result.attempts[0].startswith("model-a@key1: InvalidModelResponse")
    assert result.attempts[-1] == "model-a@key2: ok"
    assert calls == []


@pytest.mark.asyncio
async def test_exhaustion_raises_with_diagnostics(settings, ctx):
    broken = FakeClient(responder=lambda n: connection_error())
    evaluator, _ = make_evaluator(settings, {"key-1": broken, "key-2": broken})

    with pytest.raises(ModelExhaustionError) as exc:
        await evaluator.evaluate("What is 2+2?", ctx)

    assert str(exc.value) == "all models exhausted"
    assert len(exc.value.diagnostics) == 4
    assert exc.value.diagnostics[0].startswith("model-a@key1: APIConnectionError")


@pytest.mark.asyncio
async def test_no_keys_is_exhaustion(settings, ctx):
    settings = dataclasses.replace(settings, llm_api_keys=())
    evaluator, _ = make_evaluator(settings, {})

    with pytest.raises(ModelExhaustionError):
        await evaluator.evaluate("What is 2+2?", ctx)
