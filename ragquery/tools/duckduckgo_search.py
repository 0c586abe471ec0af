"""DuckDuckGo HTML endpoint: the no-credential search of last resort."""
from __future__ import annotations

from urllib.parse import parse_qs, unquote, urlparse

import httpx
from bs4 import BeautifulSoup

from ragquery.config import settings
from ragquery.models.domain import SearchResult
from ragquery.tools.web_utils import USER_AGENT, is_valid_url

DDG_HTML_URL = "https://html.duckduckgo.com/html/"


def decode_result_url(href: str) -> str:
    """Unwrap ``/l/?uddg=`` redirect links and protocol-relative URLs."""
    href = (href or "").strip()
    parsed = urlparse(href)
    if parsed.path.startswith("/l/") and "uddg" in parse_qs(parsed.query):
        href = unquote(parse_qs(parsed.query)["uddg"][0])
    if href.startswith("//"):
        href = f"https:{href}"
    return href


def parse_results(html: str, max_results: int = 5) -> list[SearchResult]:
    soup = BeautifulSoup(html, "html.parser")
    results: list[SearchResult] = []
    for block in soup.select(".result"):
        if len(results) >= max_results:
            break
        link = block.select_one(".result__a")
        if link is None:
            continue
        title = link.get_text(" ", strip=True)
        url = decode_result_url(link.get("href", ""))
        if not title or not is_valid_url(url):
            continue
        snippet_node = block.select_one(".result__snippet")
        snippet = snippet_node.get_text(" ", strip=True) if snippet_node else ""
        results.append(SearchResult(title=title, url=url, snippet=snippet))
    return results


async def search(query: str, *, max_results: int = 5) -> list[SearchResult]:
    async with httpx.AsyncClient(
        timeout=settings.search_timeout_seconds,
        headers={"User-Agent": USER_AGENT},
        follow_redirects=True,
    ) as client:
        response = await client.get(DDG_HTML_URL, params={"q": query})
        response.raise_for_status()
    return parse_results(response.text, max_results=max_results)
