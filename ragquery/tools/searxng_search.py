from __future__ import annotations

import httpx

from ragquery.config import settings
from ragquery.models.domain import SearchResult


async def search(query: str, *, max_results: int = 5) -> list[SearchResult]:
    """Query a SearXNG instance through its JSON output format."""
    if not settings.searxng_base_url:
        raise RuntimeError("SEARXNG_BASE_URL is not configured")

    url = f"{settings.searxng_base_url.rstrip('/')}/search"
    async with httpx.AsyncClient(timeout=settings.search_timeout_seconds) as client:
        response = await client.get(url, params={"q": query, "format": "json"})
        response.raise_for_status()
        payload = response.json()

    return [
        SearchResult(title=r.get("title", ""), url=r["url"], snippet=r.get("content", "") or "")
        for r in payload.get("results", [])
        if r.get("url")
    ][:max_results]
