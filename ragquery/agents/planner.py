from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable

from loguru import logger

from ragquery.config import settings
from ragquery.errors import RagQueryError
from ragquery.services.prompt_store import render_prompt

if TYPE_CHECKING:
    from ragquery.llm_client import LLMGateway

TEMPORAL_KEYWORDS: tuple[str, ...] = (
    "current",
    "currently",
    "today",
    "tonight",
    "now",
    "latest",
    "recent",
    "recently",
    "president",
    "ceo",
    "prime minister",
    "price",
    "this year",
    "this week",
    "this month",
    "news",
    "yesterday",
    "weather",
    "stock",
    "score",
    "election",
)

_TEMPORAL_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(k).replace(r"\ ", r"\s+") for k in TEMPORAL_KEYWORDS) + r")\b",
    re.IGNORECASE,
)


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def format_date(now: datetime) -> str:
    """``October 19, 2026``"""
    return f"{now:%B} {now.day}, {now.year}"


def is_time_sensitive(query: str) -> bool:
    return bool(_TEMPORAL_RE.search(query))


def enhance_query(query: str, now: datetime | None = None) -> str:
    """Anchor time-sensitive queries to today's UTC date."""
    query = query.strip()
    if not is_time_sensitive(query):
        return query
    stamp = format_date(now or _utc_now())
    if stamp.lower() in query.lower():
        return query
    return f"{query} as of {stamp}"


def extract_json_object(raw_text: str) -> dict[str, Any]:
    text = raw_text.strip()
    if text.startswith("```"):
        parts = text.split("```")
        if len(parts) >= 2:
            text = parts[1]
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise json.JSONDecodeError("object not found", text, 0)
    parsed = json.loads(text[start : end + 1])
    if not isinstance(parsed, dict):
        raise json.JSONDecodeError("not an object", text, 0)
    return parsed


def normalize_queries(raw: Any, limit: int) -> list[str]:
    if not isinstance(raw, list):
        return []
    seen: set[str] = set()
    queries: list[str] = []
    for item in raw:
        if not isinstance(item, str):
            continue
        text = re.sub(r"\s+", " ", item).strip()
        if not text or text.lower() in seen:
            continue
        seen.add(text.lower())
        queries.append(text)
    return queries[:limit]


def message_text(response: dict[str, Any]) -> str:
    choices = response.get("choices") or []
    if not choices:
        return ""
    content = (choices[0].get("message") or {}).get("content")
    return content if isinstance(content, str) else ""


class SearchPlanner:
    """Splits a question into up to three date-anchored search queries."""

    def __init__(
        self,
        gateway: LLMGateway,
        max_queries: int | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.gateway = gateway
        self.max_queries = max_queries or settings.max_search_queries
        self._clock = clock

    def fallback(self, query: str) -> list[str]:
        return [enhance_query(query, self._clock())]

    async def plan(self, query: str, model_id: str) -> list[str]:
        """Never raises and never returns an empty list."""
        if not query.strip():
            return self.fallback(query)

        now = self._clock()
        messages = [
            {
                "role": "system",
                "content": render_prompt(
                    "planner.system", current_date=format_date(now), max_queries=self.max_queries
                ),
            },
            {"role": "user", "content": render_prompt("planner.user", query=query.strip())},
        ]
        try:
            response = await self.gateway.chat(model_id, messages, caller="planner")
            payload = extract_json_object(message_text(response))
        except (RagQueryError, json.JSONDecodeError) as e:
            logger.info(f"Search planning degraded to the original query: {e}")
            return self.fallback(query)

        queries = normalize_queries(payload.get("queries"), self.max_queries)
        if not queries:
            logger.info("Search planner returned no queries; using the original query")
            return self.fallback(query)
        return [enhance_query(q, now) for q in queries]
