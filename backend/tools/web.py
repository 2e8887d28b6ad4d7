"""Web search and page fetch over httpx."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

DUCKDUCKGO_API_URL = "https://api.duckduckgo.com/"
FETCH_MAX_CHARS = 3000

_SCRIPT_RE = re.compile(r"<script[^>]*>[\s\S]*?</script>", re.IGNORECASE)
_STYLE_RE = re.compile(r"<style[^>]*>[\s\S]*?</style>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")


def html_to_text(html: str) -> str:
    cleaned = _SCRIPT_RE.sub("", html or "")
    cleaned = _STYLE_RE.sub("", cleaned)
    cleaned = _TAG_RE.sub(" ", cleaned)
    return _SPACE_RE.sub(" ", cleaned).strip()


class DuckDuckGoSearch:
    """DuckDuckGo instant-answer search."""

    def __init__(
        self,
        *,
        timeout_sec: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeout_sec = timeout_sec
        self._transport = transport

    async def search(self, query: str) -> List[Dict[str, str]]:
        params = {
            "q": query,
            "format": "json",
            "no_html": "1",
            "skip_disambig": "1",
        }
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self._timeout_sec), transport=self._transport
        ) as client:
            response = await client.get(DUCKDUCKGO_API_URL, params=params)
            response.raise_for_status()
            data: Dict[str, Any] = response.json()

        results: List[Dict[str, str]] = []
        if data.get("Abstract"):
            results.append(
                {
                    "title": str(data.get("Heading") or ""),
                    "body": str(data["Abstract"]),
                    "url": str(data.get("AbstractURL") or ""),
                }
            )
        for topic in (data.get("RelatedTopics") or [])[:3]:
            if isinstance(topic, dict) and topic.get("Text"):
                text = str(topic["Text"])
                results.append(
                    {"title": text[:60], "body": text, "url": str(topic.get("FirstURL") or "")}
                )
        return results

    async def search_text(self, query: str) -> str:
        """Search result rendered for a tool reply."""
        query_value = (query or "").strip()
        if not query_value:
            return "Usage: SEARCH: <query>"
        logger.info("Searching DuckDuckGo: %s", query_value)
        try:
            results = await self.search(query_value)
        except (httpx.HTTPError, ValueError) as exc:
            return f"Search failed: {exc}"
        if not results:
            results = [
                {
                    "title": "Search completed",
                    "body": (
                        f'Search for "{query_value}" returned limited results from '
                        "DuckDuckGo instant answers. Use your own knowledge to respond."
                    ),
                    "url": "",
                }
            ]
        return json.dumps(results, ensure_ascii=False, indent=2)


async def fetch_page_text(
    url: str,
    *,
    max_chars: int = FETCH_MAX_CHARS,
    timeout_sec: float = 15.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    target = (url or "").strip()
    if not target:
        return "Usage: FETCH: <url>"
    logger.info("Fetching %s", target)
    try:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_sec),
            transport=transport,
            follow_redirects=True,
        ) as client:
            response = await client.get(target)
            response.raise_for_status()
            body = response.text
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        return f"Fetch failed for {target}: {exc}"
    cleaned = html_to_text(body)[:max_chars]
    return f"Fetched content from {target} (first {max_chars} chars):\n{cleaned}"
