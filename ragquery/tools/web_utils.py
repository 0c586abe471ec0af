from __future__ import annotations

import re
from typing import Iterable
from urllib.parse import urlparse

from ragquery.models.domain import SearchResult

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"


def is_valid_url(url: str) -> bool:
    """Absolute http(s) URL with a host."""
    try:
        result = urlparse(url)
    except ValueError:
        return False
    return result.scheme in ("http", "https") and bool(result.netloc)


def normalize_url(url: str) -> str | None:
    """Make a fetchable absolute URL, or None for relative links."""
    url = (url or "").strip()
    if not url:
        return None
    if url.startswith("//"):
        return f"https:{url}"
    if url.startswith("/"):
        return None
    if not url.startswith(("http://", "https://")):
        return f"https://{url}"
    return url


def clean_content(text: str, max_length: int = 5000) -> str:
    """Collapse runs of blank space and trim to ``max_length``."""
    text = text.replace("\xa0", " ")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text).strip()
    if max_length > 0 and len(text) > max_length:
        text = text[:max_length]
    return text


def dedupe_by_url(results: Iterable[SearchResult], seen: set[str] | None = None) -> list[SearchResult]:
    """Drop results whose URL was already seen; ``seen`` is updated in place."""
    seen = set() if seen is None else seen
    unique = []
    for result in results:
        key = result.url.rstrip("/")
        if not key or key in seen:
            continue
        seen.add(key)
        unique.append(result)
    return unique
