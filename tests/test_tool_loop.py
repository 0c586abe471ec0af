from __future__ import annotations

import copy
from unittest.mock import AsyncMock, patch

import pytest

from ragquery.agents.base import (
    BUDGET_EXHAUSTED_ANSWER,
    EMPTY_RESPONSE_ANSWER,
    ToolLoop,
    parse_arguments,
)
from ragquery.errors import UpstreamProviderError
from tests.helpers import chat_response, tool_call


def _recording_gateway(*responses):
    """Gateway mock that snapshots the history it was sent on every round."""
    seen: list[list[dict]] = []
    replies = list(responses)

    async def chat(model_id, messages, tools=None, *, caller="gateway"):
        seen.append(copy.deepcopy(messages))
        return replies.pop(0)

    gateway = AsyncMock()
    gateway.chat.side_effect = chat
    return gateway, seen


def test_parse_arguments():
    assert parse_arguments('{"expression": "2+2"}') == {"expression": "2+2"}
    assert parse_arguments({"a": 1}) == {"a": 1}
    assert parse_arguments("{not json") == {}
    assert parse_arguments("[1, 2]") == {}
    assert parse_arguments(None) == {}
    assert parse_arguments("") == {}


@pytest.mark.asyncio
async def test_calculator_round_trip_answers_in_two_rounds():
    gateway, seen = _recording_gateway(
        chat_response(None, [tool_call("calculate", '{"expression": "2+2"}')]),
        chat_response("2 + 2 = 4"),
    )
    loop = ToolLoop(gateway, max_rounds=3)

    result = await loop.run([{"role": "user", "content": "What is 2+2?"}], "m")

    assert "4" in result.answer
    assert result.rounds == 2
    assert not result.exhausted
    tool_messages = [m for m in seen[1] if m["role"] == "tool"]
    assert tool_messages == [
        {"role": "tool", "tool_call_id": "call_1", "name": "calculate", "content": "4"}
    ]


@pytest.mark.asyncio
async def test_tools_run_in_a_worker_thread():
    gateway, seen = _recording_gateway(
        chat_response(None, [tool_call("calculate", '{"expression": "6*7"}')]),
        chat_response("42"),
    )
    loop = ToolLoop(gateway, max_rounds=3)

    with patch("ragquery.agents.base.asyncio.to_thread", new=AsyncMock(return_value="42")) as to_thread:
        await loop.run([{"role": "user", "content": "6*7?"}], "m")

    to_thread.assert_awaited_once_with(loop.executor.execute, "calculate", {"expression": "6*7"})
    assert seen[1][-1]["content"] == "42"


@pytest.mark.asyncio
async def test_oversized_calculation_becomes_a_tool_error():
    gateway, seen = _recording_gateway(
        chat_response(None, [tool_call("calculate", '{"expression": "((9**999)**999)**999"}')]),
        chat_response("That number is too large to compute."),
    )

    result = await ToolLoop(gateway, max_rounds=3).run([{"role": "user", "content": "big?"}], "m")

    assert result.answer == "That number is too large to compute."
    assert seen[1][-1]["content"] == "Error: Math evaluation error: result too large"

@pytest.mark.asyncio
async def test_empty_content_with_tool_call_appends_exactly_one_result():
    gateway, seen = _recording_gateway(
        chat_response("", [tool_call("get_current_time", "{}")]),
        chat_response("It is noon."),
    )

    result = await ToolLoop(gateway, max_rounds=3).run([{"role": "user", "content": "time?"}], "m")

    assert result.answer == "It is noon."
    assert gateway.chat.await_count == 2
    assert len(seen[1]) == len(seen[0]) + 2
    assistant, tool = seen[1][-2:]
    assert assistant["role"] == "assistant"
    assert assistant["tool_calls"][0]["function"]["name"] == "get_current_time"
    assert tool["role"] == "tool"
    assert tool["tool_call_id"] == "call_1"


@pytest.mark.asyncio
async def test_tools_are_offered_each_round():
    gateway, _ = _recording_gateway(chat_response("done"))
    loop = ToolLoop(gateway)

    await loop.run([{"role": "user", "content": "hi"}], "m")

    assert gateway.chat.call_args.kwargs["tools"] == loop.executor.definitions
    assert gateway.chat.call_args.kwargs["caller"] == "tool_loop"


@pytest.mark.asyncio
async def test_budget_exhaustion_returns_apology():
    call = tool_call("calculate", '{"expression": "1+1"}')
    gateway, _ = _recording_gateway(*(chat_response(None, [call]) for _ in range(3)))

    result = await ToolLoop(gateway, max_rounds=3).run([{"role": "user", "content": "loop"}], "m")

    assert result.answer == BUDGET_EXHAUSTED_ANSWER
    assert result.exhausted
    assert gateway.chat.await_count == 3


@pytest.mark.asyncio
async def test_malformed_arguments_become_tool_error_message():
    gateway, seen = _recording_gateway(
        chat_response(None, [tool_call("calculate", "{broken")]),
        chat_response("Could not compute."),
    )

    await ToolLoop(gateway).run([{"role": "user", "content": "?"}], "m")

    tool = seen[1][-1]
    assert tool["role"] == "tool"
    assert tool["content"].startswith("Error:")


@pytest.mark.asyncio
async def test_unknown_tool_is_reported_to_the_model():
    gateway, seen = _recording_gateway(
        chat_response(None, [tool_call("launch_rocket", "{}")]),
        chat_response("I can't do that."),
    )

    result = await ToolLoop(gateway).run([{"role": "user", "content": "launch"}], "m")

    assert result.answer == "I can't do that."
    assert seen[1][-1]["content"].startswith("Error:")


@pytest.mark.asyncio
async def test_empty_reply_without_tool_calls():
    gateway, _ = _recording_gateway(chat_response("   "))

    result = await ToolLoop(gateway).run([{"role": "user", "content": "hi"}], "m")

    assert result.answer == EMPTY_RESPONSE_ANSWER
    assert result.rounds == 1


@pytest.mark.asyncio
async def test_stops_between_rounds_when_consumer_is_gone():
    gateway, _ = _recording_gateway(
        chat_response(None, [tool_call("calculate", '{"expression": "3*3"}')]),
        chat_response("9"),
    )
    loop = ToolLoop(gateway, should_continue=lambda: False)

    result = await loop.run([{"role": "user", "content": "3*3"}], "m")

    assert result.exhausted
    assert gateway.chat.await_count == 1


@pytest.mark.asyncio
async def test_gateway_errors_propagate():
    gateway = AsyncMock()
    gateway.chat.side_effect = UpstreamProviderError("Groq", 500, "boom")

    with pytest.raises(UpstreamProviderError):
        await ToolLoop(gateway).run([{"role": "user", "content": "hi"}], "m")


@pytest.mark.asyncio
async def test_input_history_is_not_mutated():
    gateway, _ = _recording_gateway(
        chat_response(None, [tool_call("calculate", '{"expression": "2*3"}')]),
        chat_response("6"),
    )
    messages = [{"role": "user", "content": "2*3"}]

    await ToolLoop(gateway).run(messages, "m")

    assert messages == [{"role": "user", "content": "2*3"}]
