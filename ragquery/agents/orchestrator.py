from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Callable

from loguru import logger

from ragquery.agents.base import ToolLoop
from ragquery.agents.planner import SearchPlanner, format_date
from ragquery.config import settings
from ragquery.errors import ContentFetchError, RateExhaustedError, StorageError, UpstreamProviderError
from ragquery.llm_client import LLMGateway
from ragquery.models.domain import QueryResult, SearchResult, Source
from ragquery.models.events import StreamEvent
from ragquery.services import logger as log_service
from ragquery.services import streaming
from ragquery.services.model_registry import ModelRegistry
from ragquery.services.prompt_store import render_prompt
from ragquery.services.rate_gate import RateGate
from ragquery.services.storage import Storage
from ragquery.services.streaming import EventChannel
from ragquery.tools import search_provider
from ragquery.tools.content_fetcher import ContentFetcher
from ragquery.tools.toolbox import ToolExecutor
from ragquery.tools.web_utils import dedupe_by_url

CONVERSATION_ROLES = ("user", "assistant")


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def build_context(sources: list[Source], max_chars: int) -> str:
    if not sources:
        return render_prompt("answer.no_sources")
    blocks = [
        render_prompt(
            "answer.source_block",
            index=i,
            title=src.title,
            url=src.url,
            content=src.content[:max_chars],
        )
        for i, src in enumerate(sources, start=1)
    ]
    return "\n---\n\n".join(blocks)


def trim_history(history: list[dict[str, Any]] | None, limit: int) -> list[dict[str, str]]:
    """Most recent user/assistant turns, oldest first."""
    turns = [
        {"role": m["role"], "content": m["content"]}
        for m in history or []
        if m.get("role") in CONVERSATION_ROLES and isinstance(m.get("content"), str)
    ]
    return turns[-limit:] if limit > 0 else []


class QueryOrchestrator:
    """Plans, searches, fetches, persists and answers one query at a time.

    Progress is mirrored onto an optional EventChannel. Every call that was
    given a channel finishes it, so the consumer always sees exactly one Done.
    """

    def __init__(
        self,
        gateway: LLMGateway,
        registry: ModelRegistry,
        storage: Storage,
        rate_gate: RateGate,
        planner: SearchPlanner | None = None,
        fetcher: ContentFetcher | None = None,
        executor: ToolExecutor | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.gateway = gateway
        self.registry = registry
        self.storage = storage
        self.rate_gate = rate_gate
        self._clock = clock
        self.planner = planner or SearchPlanner(gateway, clock=clock)
        self.fetcher = fetcher or ContentFetcher()
        self.executor = executor or ToolExecutor(clock=clock)

    async def query(
        self,
        text: str,
        search_enabled: bool,
        history: list[dict[str, Any]] | None = None,
        model: str | None = None,
        search_provider: str | None = None,
        channel: EventChannel | None = None,
    ) -> QueryResult:
        async def emit(event: StreamEvent) -> None:
            if channel is not None:
                await channel.send(event)

        def consumer_present() -> bool:
            return channel is None or not channel.closed

        t0 = time.monotonic()
        model_id = self.registry.resolve(model)
        try:
            sources: list[Source] = []
            if search_enabled:
                sources = await self._search_and_fetch(text, model_id, search_provider, emit, consumer_present)

            for stored in await self._stored_sources(text):
                if all(stored.id != s.id for s in sources):
                    sources.append(stored)
                    await emit(streaming.source(stored))

            context = build_context(sources, settings.source_context_chars)
            prompt_key = "answer.web_search" if search_enabled else "answer.stored_sources"
            messages: list[dict[str, Any]] = [
                {
                    "role": "system",
                    "content": render_prompt(
                        prompt_key, context=context, current_date=format_date(self._clock())
                    ),
                },
                *trim_history(history, settings.history_max_messages),
                {"role": "user", "content": text},
            ]

            await emit(streaming.status("Generating answer", model=model_id))
            loop = ToolLoop(
                self.gateway,
                self.executor,
                should_continue=consumer_present,
                on_status=lambda message: emit(streaming.status(message)),
            )
            result = await loop.run(messages, model_id)
            await emit(streaming.answer(result.answer, model=model_id))

            log_service.log_event(
                event_type="query_completed",
                message="Query answered",
                model=model_id,
                rounds=result.rounds,
                sources=len(sources),
                duration_ms=int((time.monotonic() - t0) * 1000),
            )
            return QueryResult(answer=result.answer, sources=sources, model=model_id)
        except Exception as e:
            logger.error(f"Query failed with model {model_id}: {e}")
            await emit(streaming.error(str(e)))
            raise
        finally:
            if channel is not None:
                await channel.finish()

    async def _search_and_fetch(
        self,
        text: str,
        model_id: str,
        provider: str | None,
        emit: Callable[[StreamEvent], Any],
        consumer_present: Callable[[], bool],
    ) -> list[Source]:
        await emit(streaming.status("Planning searches"))
        sub_queries = [q for q in await self.planner.plan(text, model_id) if q.strip()]

        seen_urls: set[str] = set()
        sources: list[Source] = []
        for sub_query in sub_queries:
            if not consumer_present():
                break
            await emit(streaming.status(f"Searching: {sub_query}", query=sub_query))
            try:
                response = await search_provider.search(sub_query, provider, rate_gate=self.rate_gate)
            except (RateExhaustedError, UpstreamProviderError) as e:
                logger.warning(f"Search for {sub_query!r} failed: {e}")
                await emit(streaming.error(str(e), provider=getattr(e, "provider", None)))
                continue

            fresh = dedupe_by_url(response.results, seen_urls)[: settings.max_sources_per_query]
            for result in fresh:
                if not consumer_present():
                    break
                source = await self._fetch_and_store(result)
                if source is not None:
                    sources.append(source)
                    await emit(streaming.source(source))
        return sources

    async def _fetch_and_store(self, result: SearchResult) -> Source | None:
        try:
            content = await self.fetcher.fetch(result.url)
        except ContentFetchError as e:
            logger.warning(f"Failed to fetch {result.url}: {e}")
            return None
        try:
            source_id = await self.storage.insert_source(result.url, result.title, content)
        except StorageError as e:
            logger.warning(f"Failed to store {result.url}: {e}")
            return None
        return Source(
            id=source_id,
            url=result.url,
            title=result.title,
            content=content,
            created_at=self._clock(),
        )

    async def _stored_sources(self, text: str) -> list[Source]:
        try:
            return await self.storage.search_sources(text, settings.stored_sources_limit)
        except StorageError as e:
            logger.warning(f"Stored source lookup failed: {e}")
            return []
