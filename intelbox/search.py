"""Pluggable web-search backends.

Every backend implements ``async search(query, num=..., freshness_days=...)``
and returns a list of :class:`SearchResult`. Backend failures surface as
:class:`SearchProviderError`; the orchestrator treats them as phase-local.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import httpx
from duckduckgo_search import DDGS
from duckduckgo_search.exceptions import DuckDuckGoSearchException, RatelimitException

from intelbox.config import Settings, get_app_config
from intelbox.utils import as_utc, get_domain, parse_published_at, utcnow

log = logging.getLogger(__name__)

TAVILY_URL = "https://api.tavily.com/search"
SERPAPI_URL = "https://serpapi.com/search.json"


class SearchProviderError(Exception):
    """A search backend call failed."""
    def __init__(self, message: str, provider: str, retryable: bool = False):
        super().__init__(message)
        self.provider = provider
        self.retryable = retryable


@dataclass
class SearchResult:
    url: str
    title: str | None = None
    snippet: str | None = None
    published_at: str | None = None  # as returned by the backend
    source: str | None = None  # domain


class SearchProvider:
    name = "base"

    async def search(
        self, query: str, num: int = 10, freshness_days: int | None = None,
    ) -> list[SearchResult]:
        raise NotImplementedError


class NullSearch(SearchProvider):
    """No-op backend: always returns nothing, never errors."""
    name = "null"

    async def search(self, query: str, num: int = 10, freshness_days: int | None = None) -> list[SearchResult]:
        return []


# ---------------------------------------------------------------------------
# DuckDuckGo (no API key)
# ---------------------------------------------------------------------------


class _DDGRateLimiter:
    """Rate limiter for DuckDuckGo searches.

    Enforces a minimum delay between calls and exponential backoff
    on rate limit errors.
    """

    def __init__(self, min_delay: float = 2.0, max_delay: float = 60.0):
        self._lock = asyncio.Lock()
        self._min_delay = min_delay
        self._current_delay = min_delay
        self._max_delay = max_delay
        self._last_call: float = 0.0

    @property
    def current_delay(self) -> float:
        return self._current_delay

    async def acquire(self) -> None:
        async with self._lock:
            wait = self._current_delay - (time.monotonic() - self._last_call)
            if wait > 0:
                log.debug("DDG rate limiter: waiting %.1fs", wait)
                await asyncio.sleep(wait)
            self._last_call = time.monotonic()

    def backoff(self) -> None:
        self._current_delay = min(self._current_delay * 2, self._max_delay)
        log.warning("DDG rate limited, backing off to %.0fs between requests", self._current_delay)

    def reset(self) -> None:
        self._current_delay = self._min_delay


def _ddg_timelimit(freshness_days: int | None) -> str | None:
    if not freshness_days:
        return None
    if freshness_days <= 1:
        return "d"
    if freshness_days <= 7:
        return "w"
    if freshness_days <= 31:
        return "m"
    return "y"


class DuckDuckGoSearch(SearchProvider):
    name = "duckduckgo"

    def __init__(self, limiter: _DDGRateLimiter | None = None):
        self._limiter = limiter or _DDGRateLimiter()

    def _text(self, query: str, num: int, timelimit: str | None) -> list[dict[str, Any]]:
        return DDGS().text(query, max_results=num, timelimit=timelimit) or []

    async def search(self, query: str, num: int = 10, freshness_days: int | None = None) -> list[SearchResult]:
        timelimit = _ddg_timelimit(freshness_days)
        raw: list[dict[str, Any]] | None = None
        for attempt in range(2):
            await self._limiter.acquire()
            try:
                raw = await asyncio.to_thread(self._text, query, num, timelimit)
                self._limiter.reset()
                break
            except RatelimitException:
                self._limiter.backoff()
                if attempt == 1:
                    raise SearchProviderError(f"rate limited for query={query!r}", self.name, retryable=True)
            except DuckDuckGoSearchException as exc:
                raise SearchProviderError(str(exc), self.name) from exc
        return [
            SearchResult(
                url=r.get("href") or "",
                title=r.get("title"),
                snippet=r.get("body"),
                source=get_domain(r.get("href")),
            )
            for r in raw or []
            if r.get("href")
        ]


# ---------------------------------------------------------------------------
# Keyed HTTP backends
# ---------------------------------------------------------------------------


class _HttpSearch(SearchProvider):
    def __init__(self, api_key: str, client: httpx.AsyncClient | None = None):
        self.api_key = api_key
        self._client = client

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            if self._client is not None:
                resp = await self._client.request(method, url, **kwargs)
            else:
                timeout = httpx.Timeout(get_app_config().search_timeout_seconds)
                async with httpx.AsyncClient(timeout=timeout) as client:
                    resp = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise SearchProviderError(f"{type(exc).__name__}: {exc}", self.name, retryable=True) from exc
        if resp.status_code >= 400:
            raise SearchProviderError(
                f"HTTP {resp.status_code}: {resp.text[:200]}",
                self.name,
                retryable=resp.status_code == 429 or resp.status_code >= 500,
            )
        return resp.json()


class TavilySearch(_HttpSearch):
    name = "tavily"

    async def search(self, query: str, num: int = 10, freshness_days: int | None = None) -> list[SearchResult]:
        data = await self._request("POST", TAVILY_URL, json={
            "api_key": self.api_key,
            "query": query,
            "search_depth": "advanced",
            "max_results": min(20, num),
            "include_answer": False,
            "include_raw_content": False,
            "include_images": False,
        }, headers={"x-api-key": self.api_key})
        results = data.get("results") or []

        if freshness_days:
            cutoff = utcnow() - timedelta(days=freshness_days)
            kept = []
            for r in results:
                published = parse_published_at(r.get("published_date"))
                # undated results are kept
                if published is None or as_utc(published) >= cutoff:
                    kept.append(r)
            results = kept

        return [
            SearchResult(
                url=r.get("url") or "",
                title=r.get("title"),
                snippet=r.get("content") or r.get("snippet"),
                published_at=r.get("published_date"),
                source=get_domain(r.get("url")),
            )
            for r in results
            if r.get("url")
        ]


def _serpapi_tbs(freshness_days: int | None) -> str:
    if not freshness_days:
        return ""
    if freshness_days <= 7:
        return "qdr:w"
    if freshness_days <= 30:
        return "qdr:m"
    return "qdr:y"


class SerpApiSearch(_HttpSearch):
    name = "serpapi"

    async def search(self, query: str, num: int = 10, freshness_days: int | None = None) -> list[SearchResult]:
        data = await self._request("GET", SERPAPI_URL, params={
            "engine": "google",
            "q": query,
            "num": str(min(10, num)),
            "api_key": self.api_key,
            "tbs": _serpapi_tbs(freshness_days),
        })
        return [
            SearchResult(
                url=r.get("link") or "",
                title=r.get("title"),
                snippet=r.get("snippet"),
                published_at=r.get("date"),
                source=get_domain(r.get("link")),
            )
            for r in data.get("organic_results") or []
            if r.get("link")
        ]


def make_search(settings: Settings) -> SearchProvider:
    """Select the backend named in *settings*; fall back to :class:`NullSearch`."""
    provider = (settings.search_provider or "").lower()
    if provider == "tavily" and settings.api_key("tavily"):
        return TavilySearch(settings.api_keys["tavily"])
    if provider == "serpapi" and settings.api_key("serpapi"):
        return SerpApiSearch(settings.api_keys["serpapi"])
    if provider in ("duckduckgo", "ddg"):
        return DuckDuckGoSearch()
    if provider and provider != "null":
        log.warning("Search provider %r unavailable (missing key?), using null search", provider)
    return NullSearch()
