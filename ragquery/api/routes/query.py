from __future__ import annotations

import asyncio
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from loguru import logger
from sse_starlette.sse import EventSourceResponse

from ragquery.agents.orchestrator import QueryOrchestrator
from ragquery.api.deps import get_orchestrator, get_storage
from ragquery.config import settings
from ragquery.errors import RagQueryError, RateExhaustedError, StorageError
from ragquery.models.domain import QueryResult
from ragquery.models.schemas import QueryRequest, QueryResponse, SourceResponse
from ragquery.services import logger as log_service
from ragquery.services.storage import Storage
from ragquery.services.streaming import EventChannel

router = APIRouter(prefix="/api/query", tags=["query"])

_background_tasks: set[asyncio.Task] = set()


async def _history_for(request: QueryRequest, storage: Storage) -> list[dict[str, Any]]:
    if request.history:
        return [m.model_dump() for m in request.history]
    if not request.thread_id:
        return []
    try:
        return await storage.get_messages(request.thread_id, limit=settings.history_max_messages)
    except StorageError as e:
        logger.warning(f"Could not load history for thread {request.thread_id}: {e}")
        return []


async def _ensure_thread(request: QueryRequest, storage: Storage) -> None:
    if request.thread_id and await storage.get_thread(request.thread_id) is None:
        raise HTTPException(status_code=404, detail="Thread not found")


async def _record_turn(storage: Storage, thread_id: str | None, query: str, answer: str | None) -> None:
    if not thread_id:
        return
    try:
        await storage.add_message(thread_id, "user", query)
        if answer:
            await storage.add_message(thread_id, "assistant", answer)
    except StorageError as e:
        logger.warning(f"Could not save messages for thread {thread_id}: {e}")


def _to_response(result: QueryResult) -> QueryResponse:
    return QueryResponse(
        answer=result.answer,
        sources=[SourceResponse(**s.to_dict()) for s in result.sources],
        model=result.model,
    )


@router.post("", response_model=QueryResponse)
async def run_query(
    request: QueryRequest,
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
    storage: Storage = Depends(get_storage),
):
    """Answer a query and return the answer with its sources."""
    await _ensure_thread(request, storage)
    history = await _history_for(request, storage)
    try:
        result = await orchestrator.query(
            request.query,
            request.web_search_enabled,
            history=history,
            model=request.model,
            search_provider=request.search_provider,
        )
    except RateExhaustedError as e:
        raise HTTPException(status_code=429, detail=str(e)) from e
    except RagQueryError as e:
        raise HTTPException(status_code=502, detail=str(e)) from e

    await _record_turn(storage, request.thread_id, request.query, result.answer)
    return _to_response(result)


@router.post("/stream")
async def stream_query(
    request: QueryRequest,
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
    storage: Storage = Depends(get_storage),
):
    """SSE stream of status, source, answer and error events, ending with done."""
    await _ensure_thread(request, storage)
    history = await _history_for(request, storage)
    channel = EventChannel()

    async def produce() -> None:
        answer = None
        try:
            result = await orchestrator.query(
                request.query,
                request.web_search_enabled,
                history=history,
                model=request.model,
                search_provider=request.search_provider,
                channel=channel,
            )
            answer = result.answer
        except Exception as e:
            # already reported on the channel as an error event
            log_service.log_event(event_type="query_failed", message=str(e), query=request.query[:100])
        await _record_turn(storage, request.thread_id, request.query, answer)

    # runs outside the request scope so a disconnect never cancels pending writes
    task = asyncio.create_task(produce())
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)

    async def event_generator():
        try:
            async for event in channel:
                yield event.to_sse()
        finally:
            channel.close()

    return EventSourceResponse(event_generator())
