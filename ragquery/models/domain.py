from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any


class Capability(StrEnum):
    CHAT = "chat"
    SEARCH = "search"


class ProviderType(StrEnum):
    OPENROUTER = "openrouter"
    GROQ = "groq"
    CEREBRAS = "cerebras"
    COHERE = "cohere"
    POLLINATIONS = "pollinations"
    TAVILY = "tavily"
    BRAVE = "brave"
    SEARXNG = "searxng"
    DUCKDUCKGO = "duckduckgo"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def capability(self) -> Capability:
        if self in (
            ProviderType.TAVILY,
            ProviderType.BRAVE,
            ProviderType.SEARXNG,
            ProviderType.DUCKDUCKGO,
        ):
            return Capability.SEARCH
        return Capability.CHAT

    @classmethod
    def parse(cls, name: str | None) -> ProviderType | None:
        if not name:
            return None
        try:
            return cls(name.strip().lower())
        except ValueError:
            return None


_DISPLAY_NAMES = {
    ProviderType.OPENROUTER: "OpenRouter",
    ProviderType.GROQ: "Groq",
    ProviderType.CEREBRAS: "Cerebras",
    ProviderType.COHERE: "Cohere",
    ProviderType.POLLINATIONS: "Pollinations",
    ProviderType.TAVILY: "Tavily",
    ProviderType.BRAVE: "Brave",
    ProviderType.SEARXNG: "SearXNG",
    ProviderType.DUCKDUCKGO: "DuckDuckGo",
}


@dataclass(frozen=True, slots=True)
class Model:
    id: str
    name: str
    provider: ProviderType
    context_length: int | None = None
    is_free: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.provider.value,
            "context_length": self.context_length,
            "is_free": self.is_free,
        }


class Window(StrEnum):
    MINUTE = "minute"
    DAY = "day"
    MONTH = "month"


class Cadence(StrEnum):
    ROLLING = "rolling"  # resets window_duration after window_start
    CALENDAR = "calendar"  # resets on UTC midnight / first of month


_ROLLING_DURATIONS = {
    Window.MINUTE: timedelta(minutes=1),
    Window.DAY: timedelta(days=1),
    Window.MONTH: timedelta(days=30),
}


def period_start(window: Window, cadence: Cadence, now: datetime) -> datetime:
    """Start of the window period that a reset at ``now`` opens."""
    if cadence is Cadence.ROLLING or window is Window.MINUTE:
        return now
    if window is Window.DAY:
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def period_end(window: Window, cadence: Cadence, start: datetime) -> datetime:
    if cadence is Cadence.ROLLING or window is Window.MINUTE:
        return start + _ROLLING_DURATIONS[window]
    if window is Window.DAY:
        midnight = start.replace(hour=0, minute=0, second=0, microsecond=0)
        return midnight + timedelta(days=1)
    first = start.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if first.month == 12:
        return first.replace(year=first.year + 1, month=1)
    return first.replace(month=first.month + 1)


@dataclass(slots=True)
class RateCounter:
    window: Window
    used: int
    limit: int | None
    window_start: datetime
    cadence: Cadence = Cadence.ROLLING
    # limit was reported by the provider rather than taken from the policy table
    observed: bool = False

    def is_due(self, now: datetime) -> bool:
        return now >= period_end(self.window, self.cadence, self.window_start)

    def reset(self, now: datetime) -> RateCounter:
        return replace(
            self,
            used=0,
            window_start=period_start(self.window, self.cadence, now),
        )

    def allows(self, cost: int) -> bool:
        return self.limit is None or self.used + cost <= self.limit

    @property
    def remaining(self) -> int | None:
        if self.limit is None:
            return None
        return max(self.limit - self.used, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "window": self.window.value,
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
            "window_start": self.window_start.isoformat(),
            "cadence": self.cadence.value,
            "observed": self.observed,
        }


@dataclass(frozen=True, slots=True)
class SearchResult:
    title: str
    url: str
    snippet: str = ""


@dataclass(frozen=True, slots=True)
class Source:
    id: int
    url: str
    title: str
    content: str
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(slots=True)
class QueryResult:
    answer: str
    sources: list[Source] = field(default_factory=list)
    model: str = ""
