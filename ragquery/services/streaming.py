from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

from loguru import logger

from ragquery.config import settings
from ragquery.models.domain import Source
from ragquery.models.events import EventType, StreamEvent


def status(message: str, **kwargs: Any) -> StreamEvent:
    return StreamEvent(event=EventType.STATUS, data={"message": message, **kwargs})


def source(src: Source) -> StreamEvent:
    return StreamEvent(event=EventType.SOURCE, data=src.to_dict())


def answer(text: str, model: str | None = None) -> StreamEvent:
    data: dict[str, Any] = {"answer": text}
    if model:
        data["model"] = model
    return StreamEvent(event=EventType.ANSWER, data=data)


def error(message: str, provider: str | None = None) -> StreamEvent:
    data: dict[str, Any] = {"message": message}
    if provider:
        data["provider"] = provider
    return StreamEvent(event=EventType.ERROR, data=data)


def done() -> StreamEvent:
    return StreamEvent(event=EventType.DONE, data={})


# events the consumer must see even when it lags; at most a handful per query
GUARANTEED = frozenset({EventType.ANSWER, EventType.ERROR, EventType.DONE})


class EventChannel:
    """Event queue between one producer and one consumer.

    Status and source events are bounded by ``maxsize``: once that many are
    waiting, a send waits at most ``send_timeout`` for the consumer and then
    drops the event. Answer and error events are always queued, so a slow
    consumer still sees them before the single Done that ``finish`` delivers.
    """

    def __init__(self, maxsize: int | None = None, send_timeout: float | None = None):
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        self.maxsize = settings.stream_queue_size if maxsize is None else maxsize
        self.send_timeout = (
            settings.stream_send_timeout_seconds if send_timeout is None else send_timeout
        )
        self._progress = 0
        self._taken = asyncio.Event()
        self._closed = False
        self._finished = False
        self.dropped = 0

    @property
    def is_open(self) -> bool:
        return not self._closed and not self._finished

    @property
    def closed(self) -> bool:
        return self._closed

    def _full(self) -> bool:
        return self.maxsize > 0 and self._progress >= self.maxsize

    async def _wait_for_room(self) -> None:
        while self._full():
            self._taken.clear()
            await self._taken.wait()

    async def send(self, event: StreamEvent) -> bool:
        if event.is_terminal:
            return await self.finish()
        if not self.is_open:
            return False
        if event.event in GUARANTEED:
            self._queue.put_nowait(event)
            return True
        if self._full():
            try:
                await asyncio.wait_for(self._wait_for_room(), timeout=self.send_timeout)
            except asyncio.TimeoutError:
                self.dropped += 1
                logger.debug(f"Dropped {event.event.value} event: consumer is not keeping up")
                return False
            if not self.is_open:
                return False
        self._progress += 1
        self._queue.put_nowait(event)
        return True

    def close(self) -> None:
        """Consumer went away; the producer sees it on its next send."""
        self._closed = True

    async def finish(self) -> bool:
        if self._finished:
            return False
        self._finished = True
        if self._closed:
            return False
        self._queue.put_nowait(done())
        return True

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self._queue.get()
            if event.event not in GUARANTEED:
                self._progress -= 1
                self._taken.set()
            yield event
            if event.is_terminal:
                return
