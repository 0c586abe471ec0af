from __future__ import annotations

import httpx
from bs4 import BeautifulSoup
from loguru import logger

from ragquery.config import settings
from ragquery.errors import ContentFetchError
from ragquery.tools.web_utils import USER_AGENT, clean_content, normalize_url

MIN_PARAGRAPH_CHARS = 20


def extract_text(html: str, max_chars: int | None = None) -> str:
    """Paragraph text of a page, or all of its text when it has no paragraphs."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()

    root = soup.body or soup
    paragraphs = [p.get_text(" ", strip=True) for p in root.find_all("p")]
    text = "\n\n".join(p for p in paragraphs if len(p) > MIN_PARAGRAPH_CHARS)
    if not text:
        text = soup.get_text(" ", strip=True)
    return clean_content(text, settings.fetch_max_chars if max_chars is None else max_chars)


class ContentFetcher:
    """Best-effort HTML to text for search results."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    async def fetch(self, url: str) -> str:
        target = normalize_url(url)
        if target is None:
            raise ContentFetchError(f"Relative URL not supported: {url}")

        logger.debug(f"Fetching content from {target}")
        try:
            async with httpx.AsyncClient(
                timeout=settings.fetch_timeout_seconds,
                headers={"User-Agent": USER_AGENT},
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = await client.get(target)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise ContentFetchError(f"Failed to fetch {target}: {e}") from e

        text = extract_text(response.text)
        if not text:
            raise ContentFetchError(f"No text content at {target}")
        return text
