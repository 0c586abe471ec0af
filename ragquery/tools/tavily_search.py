from __future__ import annotations

from tavily import AsyncTavilyClient

from ragquery.config import settings
from ragquery.models.domain import SearchResult


async def search(query: str, *, max_results: int = 5) -> list[SearchResult]:
    """Execute a Tavily web search and return structured results."""
    if not settings.tavily_api_key:
        raise RuntimeError("TAVILY_API_KEY is not configured")

    client = AsyncTavilyClient(api_key=settings.tavily_api_key)
    response = await client.search(
        query=query,
        search_depth="basic",
        max_results=max_results,
        timeout=int(settings.search_timeout_seconds),
    )

    return [
        SearchResult(
            title=r.get("title", ""),
            url=r.get("url", ""),
            snippet=r.get("content", ""),
        )
        for r in response.get("results", [])
        if r.get("url")
    ]
