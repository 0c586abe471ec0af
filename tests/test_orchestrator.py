from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from ragquery.agents.orchestrator import QueryOrchestrator, build_context, trim_history
from ragquery.errors import ContentFetchError, RateExhaustedError, UpstreamProviderError
from ragquery.models.domain import ProviderType, SearchResult, Source
from ragquery.models.events import EventType
from ragquery.services.model_registry import ModelRegistry
from ragquery.services.streaming import EventChannel
from ragquery.tools.search_provider import SearchResponse
from tests.helpers import chat_response, groq_model, tool_call

NOW = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)
MODEL = "llama-3.3-70b-versatile"


def _registry():
    registry = ModelRegistry({}, default_model="")
    registry.replace([groq_model(MODEL)])
    return registry


def _fetcher(content="Fetched page text about the topic."):
    fetcher = MagicMock()
    fetcher.fetch = AsyncMock(return_value=content)
    return fetcher


def _orchestrator(gateway, storage, fetcher=None):
    return QueryOrchestrator(
        gateway,
        _registry(),
        storage,
        rate_gate=MagicMock(),
        fetcher=fetcher or _fetcher(),
        clock=lambda: NOW,
    )


def _planner_reply(*queries):
    return chat_response(json.dumps({"queries": list(queries)}))


async def _events(channel):
    return [event async for event in channel]


def test_build_context_numbers_sources():
    sources = [
        Source(1, "https://a.example", "A", "alpha " * 100, NOW),
        Source(2, "https://b.example", "B", "beta", NOW),
    ]

    context = build_context(sources, max_chars=12)

    assert "[Source 1]\nTitle: A\nURL: https://a.example\nContent: alpha alpha \n" in context
    assert "[Source 2]" in context
    assert build_context([], 100) == "No relevant sources found."


def test_trim_history_keeps_recent_conversation_turns():
    history = [
        {"role": "system", "content": "ignored"},
        {"role": "user", "content": "one"},
        {"role": "assistant", "content": "two"},
        {"role": "tool", "content": "ignored"},
        {"role": "user", "content": "three"},
    ]

    assert trim_history(history, 2) == [
        {"role": "assistant", "content": "two"},
        {"role": "user", "content": "three"},
    ]
    assert trim_history(None, 5) == []


@pytest.mark.asyncio
async def test_calculator_question_without_search(storage):
    gateway = AsyncMock()
    gateway.chat.side_effect = [
        chat_response(None, [tool_call("calculate", '{"expression": "2+2"}')]),
        chat_response("2 + 2 = 4"),
    ]
    channel = EventChannel(maxsize=50)

    result = await _orchestrator(gateway, storage).query("What is 2+2?", False, channel=channel)

    assert "4" in result.answer
    assert result.sources == []
    assert result.model == MODEL
    events = await _events(channel)
    assert events[-1].event is EventType.DONE
    assert [e.event for e in events].count(EventType.DONE) == 1
    answer = next(e for e in events if e.event is EventType.ANSWER)
    assert answer.data == {"answer": "2 + 2 = 4", "model": MODEL}


@pytest.mark.asyncio
async def test_time_sensitive_sub_query_is_date_anchored(storage):
    gateway = AsyncMock()
    gateway.chat.side_effect = [_planner_reply("current president of France"), chat_response("Answer [Source 1]")]
    search = AsyncMock(
        return_value=SearchResponse(
            results=[SearchResult("Élysée", "https://www.elysee.fr/")], provider=ProviderType.DUCKDUCKGO
        )
    )

    with patch("ragquery.tools.search_provider.search", new=search):
        await _orchestrator(gateway, storage).query("current president of France", True)

    assert search.await_args.args[0] == "current president of France as of October 19, 2026"


@pytest.mark.asyncio
async def test_duplicate_urls_across_sub_queries_are_fetched_once(storage):
    gateway = AsyncMock()
    gateway.chat.side_effect = [_planner_reply("rust 1.80", "rust lazylock"), chat_response("done")]
    same = SearchResponse(
        results=[SearchResult("Rust 1.80", "https://blog.rust-lang.org/1.80/")],
        provider=ProviderType.DUCKDUCKGO,
    )
    fetcher = _fetcher()
    channel = EventChannel(maxsize=50)

    with patch("ragquery.tools.search_provider.search", new=AsyncMock(return_value=same)):
        result = await _orchestrator(gateway, storage, fetcher).query("rust 1.80", True, channel=channel)

    fetcher.fetch.assert_awaited_once_with("https://blog.rust-lang.org/1.80/")
    assert len(result.sources) == 1
    events = await _events(channel)
    assert [e.event for e in events].count(EventType.SOURCE) == 1
    assert len(await storage.get_sources()) == 1


@pytest.mark.asyncio
async def test_fetched_sources_reach_the_prompt(storage):
    gateway = AsyncMock()
    gateway.chat.side_effect = [_planner_reply("lazylock"), chat_response("LazyLock is stable [Source 1]")]
    response = SearchResponse(results=[SearchResult("Rust blog", "https://blog.rust-lang.org/")], provider=ProviderType.TAVILY)

    with patch("ragquery.tools.search_provider.search", new=AsyncMock(return_value=response)):
        await _orchestrator(gateway, storage, _fetcher("LazyLock was stabilized")).query("lazylock", True)

    answer_messages = gateway.chat.await_args_list[-1].args[1]
    system = answer_messages[0]["content"]
    assert "LazyLock was stabilized" in system
    assert "October 19, 2026" in system
    assert answer_messages[-1] == {"role": "user", "content": "lazylock"}


@pytest.mark.asyncio
async def test_search_failure_is_reported_and_answering_continues(storage):
    gateway = AsyncMock()
    gateway.chat.side_effect = [_planner_reply("python 3.14"), chat_response("From memory: ...")]
    channel = EventChannel(maxsize=50)

    with patch(
        "ragquery.tools.search_provider.search",
        new=AsyncMock(side_effect=RateExhaustedError("Tavily", "month")),
    ):
        result = await _orchestrator(gateway, storage).query("python 3.14", True, channel=channel)

    assert result.answer == "From memory: ..."
    events = await _events(channel)
    error = next(e for e in events if e.event is EventType.ERROR)
    assert error.data["provider"] == "Tavily"
    assert events[-1].event is EventType.DONE


@pytest.mark.asyncio
async def test_unfetchable_result_is_skipped(storage):
    gateway = AsyncMock()
    gateway.chat.side_effect = [_planner_reply("q"), chat_response("ok")]
    fetcher = MagicMock()
    fetcher.fetch = AsyncMock(side_effect=[ContentFetchError("403"), "second page body"])
    response = SearchResponse(
        results=[SearchResult("Blocked", "https://a.example/"), SearchResult("Open", "https://b.example/")],
        provider=ProviderType.BRAVE,
    )

    with patch("ragquery.tools.search_provider.search", new=AsyncMock(return_value=response)):
        result = await _orchestrator(gateway, storage, fetcher).query("q", True)

    assert [s.url for s in result.sources] == ["https://b.example/"]


@pytest.mark.asyncio
async def test_stored_sources_are_used_without_search(storage):
    await storage.insert_source("https://kb.example/llamas", "Llamas", "llamas hum to communicate")
    gateway = AsyncMock()
    gateway.chat.return_value = chat_response("They hum [Source 1]")
    channel = EventChannel(maxsize=50)

    result = await _orchestrator(gateway, storage).query("llamas", False, channel=channel)

    assert [s.title for s in result.sources] == ["Llamas"]
    system = gateway.chat.await_args.args[1][0]["content"]
    assert "llamas hum to communicate" in system
    events = await _events(channel)
    assert [e.event for e in events] == [EventType.SOURCE, EventType.STATUS, EventType.ANSWER, EventType.DONE]


@pytest.mark.asyncio
async def test_history_is_forwarded(storage):
    gateway = AsyncMock()
    gateway.chat.return_value = chat_response("Paris.")
    history = [{"role": "user", "content": "Capital of Italy?"}, {"role": "assistant", "content": "Rome."}]

    await _orchestrator(gateway, storage).query("And France?", False, history=history)

    sent = gateway.chat.await_args.args[1]
    assert sent[1:] == [*history, {"role": "user", "content": "And France?"}]


@pytest.mark.asyncio
async def test_chat_failure_emits_error_then_done(storage):
    gateway = AsyncMock()
    gateway.chat.side_effect = UpstreamProviderError("Groq", 401, "invalid api key")
    channel = EventChannel(maxsize=50)

    with pytest.raises(UpstreamProviderError):
        await _orchestrator(gateway, storage).query("hi", False, channel=channel)

    events = await _events(channel)
    assert [e.event for e in events][-2:] == [EventType.ERROR, EventType.DONE]
    assert events[-2].data["message"] == "Groq error (401): invalid api key"


@pytest.mark.asyncio
async def test_consumer_disconnect_does_not_break_the_producer(storage):
    gateway = AsyncMock()
    gateway.chat.side_effect = [_planner_reply("rust"), chat_response("answer nobody reads")]
    channel = EventChannel(maxsize=50)
    response = SearchResponse(
        results=[SearchResult("One", "https://one.example/"), SearchResult("Two", "https://two.example/")],
        provider=ProviderType.DUCKDUCKGO,
    )

    async def fetch_then_disconnect(url):
        channel.close()
        return "page body"

    fetcher = MagicMock()
    fetcher.fetch = AsyncMock(side_effect=fetch_then_disconnect)

    with patch("ragquery.tools.search_provider.search", new=AsyncMock(return_value=response)):
        result = await _orchestrator(gateway, storage, fetcher).query("rust", True, channel=channel)

    assert result.answer == "answer nobody reads"
    assert fetcher.fetch.await_count == 1
    stored = await storage.get_sources()
    assert [s.url for s in stored] == ["https://one.example/"]
