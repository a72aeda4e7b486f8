"""Tests for the search backends (no network: httpx MockTransport / patched DDGS)."""
from __future__ import annotations

import json
from datetime import timedelta
from unittest.mock import patch

import httpx
import pytest
from duckduckgo_search.exceptions import RatelimitException

from intelbox.config import Settings
from intelbox.search import (
    DuckDuckGoSearch, NullSearch, SearchProviderError, SerpApiSearch, TavilySearch, _DDGRateLimiter,
    make_search,
)
from intelbox.utils import utcnow


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestMakeSearch:
    def test_default_is_null(self):
        assert isinstance(make_search(Settings()), NullSearch)

    def test_missing_key_falls_back(self):
        assert isinstance(make_search(Settings(search_provider="tavily")), NullSearch)

    def test_keyed_providers(self):
        s = Settings(search_provider="serpapi", api_keys={"serpapi": "k"})
        assert isinstance(make_search(s), SerpApiSearch)
        s = Settings(search_provider="tavily", api_keys={"tavily": "k"})
        assert isinstance(make_search(s), TavilySearch)

    def test_duckduckgo_needs_no_key(self):
        assert isinstance(make_search(Settings(search_provider="duckduckgo")), DuckDuckGoSearch)


class TestTavily:
    @pytest.mark.asyncio
    async def test_freshness_filter_keeps_undated(self):
        recent = (utcnow() - timedelta(days=3)).isoformat()
        old = (utcnow() - timedelta(days=400)).isoformat()

        def handler(req: httpx.Request) -> httpx.Response:
            body = json.loads(req.content)
            assert body["query"] == "acme pricing"
            assert req.headers["x-api-key"] == "k"
            return httpx.Response(200, json={"results": [
                {"url": "https://a.io/", "title": "A", "content": "fresh", "published_date": recent},
                {"url": "https://b.io/", "title": "B", "content": "old", "published_date": old},
                {"url": "https://c.io/", "title": "C", "content": "undated"},
            ]})

        async with _client(handler) as client:
            results = await TavilySearch("k", client=client).search("acme pricing", freshness_days=180)
        assert [r.url for r in results] == ["https://a.io/", "https://c.io/"]
        assert results[0].snippet == "fresh"

    @pytest.mark.asyncio
    async def test_http_error_is_provider_error(self):
        async with _client(lambda req: httpx.Response(429, text="slow down")) as client:
            with pytest.raises(SearchProviderError) as exc_info:
                await TavilySearch("k", client=client).search("q")
        assert exc_info.value.provider == "tavily"
        assert exc_info.value.retryable


class TestSerpApi:
    @pytest.mark.asyncio
    async def test_params_and_mapping(self):
        seen = {}

        def handler(req: httpx.Request) -> httpx.Response:
            seen.update(dict(req.url.params))
            return httpx.Response(200, json={"organic_results": [
                {"link": "https://www.stripe.com/pricing", "title": "Stripe", "snippet": "fees", "date": "Mar 1, 2025"},
                {"title": "no link"},
            ]})

        async with _client(handler) as client:
            results = await SerpApiSearch("k", client=client).search("stripe pricing", freshness_days=30)
        assert seen["tbs"] == "qdr:m"
        assert seen["q"] == "stripe pricing"
        assert len(results) == 1
        assert results[0].source == "stripe.com"
        assert results[0].published_at == "Mar 1, 2025"


class TestDuckDuckGo:
    @pytest.mark.asyncio
    async def test_results_mapped(self):
        ddg = DuckDuckGoSearch(limiter=_DDGRateLimiter(min_delay=0))
        raw = [{"href": "https://x.io/a", "title": "X", "body": "snippet"}, {"title": "no href"}]
        with patch.object(DuckDuckGoSearch, "_text", return_value=raw):
            results = await ddg.search("x", num=5, freshness_days=7)
        assert [(r.url, r.snippet) for r in results] == [("https://x.io/a", "snippet")]

    @pytest.mark.asyncio
    async def test_rate_limit_retries_once_then_fails(self):
        limiter = _DDGRateLimiter(min_delay=0, max_delay=0)
        ddg = DuckDuckGoSearch(limiter=limiter)
        with patch.object(DuckDuckGoSearch, "_text", side_effect=RatelimitException("limited")) as text:
            with pytest.raises(SearchProviderError) as exc_info:
                await ddg.search("x")
        assert text.call_count == 2
        assert exc_info.value.retryable

    def test_limiter_backoff_and_reset(self):
        limiter = _DDGRateLimiter(min_delay=2, max_delay=5)
        limiter.backoff()
        assert limiter.current_delay == 4
        limiter.backoff()
        assert limiter.current_delay == 5
        limiter.reset()
        assert limiter.current_delay == 2
