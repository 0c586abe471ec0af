from __future__ import annotations

import httpx

from ragquery.config import settings
from ragquery.models.domain import SearchResult

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"


async def search(query: str, *, max_results: int = 5) -> list[SearchResult]:
    """Execute a Brave web search and normalize results."""
    if not settings.brave_api_key:
        raise RuntimeError("BRAVE_API_KEY is not configured")

    async with httpx.AsyncClient(timeout=settings.search_timeout_seconds) as client:
        response = await client.get(
            BRAVE_SEARCH_URL,
            params={"q": query, "count": max_results},
            headers={
                "Accept": "application/json",
                "X-Subscription-Token": settings.brave_api_key,
            },
        )
        response.raise_for_status()
        payload = response.json()

    mapped: list[SearchResult] = []
    for item in payload.get("web", {}).get("results", []):
        description = (item.get("description") or "").strip()
        snippet = description or " ".join(item.get("extra_snippets") or []).strip()
        if item.get("url"):
            mapped.append(SearchResult(title=item.get("title", ""), url=item["url"], snippet=snippet))
    return mapped
