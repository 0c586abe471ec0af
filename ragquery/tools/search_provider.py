from __future__ import annotations

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx
from loguru import logger

from ragquery.config import settings
from ragquery.errors import RagQueryError, RateExhaustedError, UpstreamProviderError
from ragquery.models.domain import ProviderType, SearchResult
from ragquery.services import logger as log_service
from ragquery.tools import brave_search, duckduckgo_search, searxng_search, tavily_search

if TYPE_CHECKING:
    from ragquery.services.rate_gate import RateGate

# Tried in this order when no provider (or "auto") is requested.
SEARCH_CHAIN: tuple[ProviderType, ...] = (
    ProviderType.TAVILY,
    ProviderType.BRAVE,
    ProviderType.SEARXNG,
    ProviderType.DUCKDUCKGO,
)


@dataclass
class SearchResponse:
    results: list[SearchResult]
    provider: ProviderType
    fallback_from: ProviderType | None = None
    fallback_reason: str | None = None


def is_configured(provider: ProviderType) -> bool:
    if provider is ProviderType.TAVILY:
        return bool(settings.tavily_api_key)
    if provider is ProviderType.BRAVE:
        return bool(settings.brave_api_key)
    if provider is ProviderType.SEARXNG:
        return bool(settings.searxng_base_url)
    return provider is ProviderType.DUCKDUCKGO


def candidates(requested: str | None) -> list[ProviderType]:
    """Providers to try, in order, for a requested provider name."""
    chain = [p for p in SEARCH_CHAIN if is_configured(p)]
    if requested and requested.strip().lower() != "auto":
        provider = ProviderType.parse(requested)
        if provider in SEARCH_CHAIN and is_configured(provider):
            return [provider]
        logger.warning(f"Search provider {requested!r} unavailable, using the auto chain")
    return chain


async def _dispatch(provider: ProviderType, query: str, max_results: int) -> list[SearchResult]:
    if provider is ProviderType.TAVILY:
        return await tavily_search.search(query, max_results=max_results)
    if provider is ProviderType.BRAVE:
        return await brave_search.search(query, max_results=max_results)
    if provider is ProviderType.SEARXNG:
        return await searxng_search.search(query, max_results=max_results)
    return await duckduckgo_search.search(query, max_results=max_results)


async def _search_one(
    provider: ProviderType, query: str, max_results: int, rate_gate: RateGate
) -> list[SearchResult]:
    if not await rate_gate.admit(provider):
        window = rate_gate.denying_window(provider)
        raise RateExhaustedError(provider.display_name, window.value if window else None)

    t0 = time.monotonic()
    try:
        results = await _dispatch(provider, query, max_results)
    except httpx.HTTPStatusError as e:
        error = UpstreamProviderError(provider.display_name, e.response.status_code, e.response.text)
    except Exception as e:
        error = UpstreamProviderError(provider.display_name, None, str(e))
    else:
        log_service.log_search_call(
            provider=provider.value,
            query=query,
            results=len(results),
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        return results[:max_results]

    log_service.log_search_call(
        provider=provider.value,
        query=query,
        duration_ms=int((time.monotonic() - t0) * 1000),
        error=str(error),
    )
    raise error


async def search(
    query: str,
    provider: str | None = None,
    *,
    rate_gate: RateGate,
    max_results: int | None = None,
) -> SearchResponse:
    """Search through the requested provider or the auto chain.

    An explicit provider is tried alone. The auto chain moves on to the next
    configured provider when one is exhausted or fails, and raises the last
    error only when every provider did.
    """
    limit = settings.search_max_results if max_results is None else max_results
    providers = candidates(provider)
    first = providers[0]
    last_error: RagQueryError | None = None

    for candidate in providers:
        try:
            results = await _search_one(candidate, query, limit, rate_gate)
        except (RateExhaustedError, UpstreamProviderError) as e:
            logger.warning(f"Search via {candidate.value} failed: {e}")
            last_error = e
            continue
        if candidate is first:
            return SearchResponse(results=results, provider=candidate)
        return SearchResponse(
            results=results,
            provider=candidate,
            fallback_from=first,
            fallback_reason=str(last_error) if last_error else None,
        )

    assert last_error is not None
    raise last_error
