from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass

import httpx
from lxml import etree, html as lxml_html

from intelbox.config import get_app_config

log = logging.getLogger(__name__)

_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
_BLOCK_TAGS = {"p", "div", "h1", "h2", "h3", "h4", "h5", "h6", "li", "br", "section", "article", "tr"}
_XML_DECL = re.compile(r"^\s*<\?xml[^>]*\?>", re.I)
_SCRIPT_STYLE = re.compile(r"<(script|style)\b.*?</\1\s*>", re.I | re.S)
_TAG = re.compile(r"<[^>]*>")


class FetchError(Exception):
    """Content fetch failed (network error, timeout or non-2xx status)."""
    def __init__(self, message: str, url: str, status: int | None = None):
        super().__init__(message)
        self.url = url
        self.status = status


def html_to_text(raw: str, max_chars: int | None = None) -> str:
    """Normalize HTML to plain text.

    Script/style blocks are removed, block-level elements end with a
    newline, runs of whitespace are collapsed and the result is truncated.
    """
    max_chars = max_chars or get_app_config().max_content_chars
    if not raw or not raw.strip():
        return ""
    # lxml refuses str input that carries an encoding declaration
    raw = _XML_DECL.sub("", raw, count=1)
    try:
        tree = lxml_html.fromstring(raw)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return _collapse(_TAG.sub(" ", _SCRIPT_STYLE.sub(" ", raw)))[:max_chars]

    etree.strip_elements(tree, "script", "style", etree.Comment, with_tail=False)
    for el in tree.iter():
        if isinstance(el.tag, str) and el.tag.lower() in _BLOCK_TAGS:
            el.tail = "\n" + (el.tail or "")
    return _collapse(tree.text_content())[:max_chars]


def _collapse(text: str) -> str:
    text = text.replace("\xa0", " ").replace("\r", "")
    text = re.sub(r"[ \t]{2,}", " ", text)
    text = re.sub(r"[ \t]*\n[ \t]*", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


@dataclass
class FetchOutcome:
    source_id: int
    url: str
    content: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SourceFetcher:
    """Fetches and normalizes page content with a hard per-call timeout."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
        concurrency: int | None = None,
    ):
        cfg = get_app_config()
        self._client = client
        self.timeout = timeout if timeout is not None else cfg.fetch_timeout_seconds
        self.concurrency = concurrency or cfg.fetch_concurrency

    async def fetch_raw(self, url: str) -> str:
        cfg = get_app_config()
        headers = {"User-Agent": cfg.user_agent, "Accept": _ACCEPT}
        try:
            if self._client is not None:
                resp = await asyncio.wait_for(self._client.get(url, headers=headers), self.timeout)
            else:
                async with httpx.AsyncClient(
                    follow_redirects=True,
                    timeout=httpx.Timeout(self.timeout),
                    headers=headers,
                ) as client:
                    resp = await asyncio.wait_for(client.get(url), self.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise FetchError(f"Timed out after {self.timeout:.0f}s", url) from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"{type(exc).__name__}: {exc}", url) from exc

        if resp.status_code >= 400:
            raise FetchError(f"HTTP {resp.status_code}", url, resp.status_code)
        content_type = resp.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                return json.dumps(resp.json())
            except ValueError:
                return resp.text
        return resp.text

    async def fetch_text(self, url: str) -> str:
        raw = await self.fetch_raw(url)
        return html_to_text(raw)

    async def fetch_many(self, targets: list[tuple[int, str]]) -> list[FetchOutcome]:
        """Fetch all *targets* concurrently; one outcome per target, in order."""
        sem = asyncio.Semaphore(self.concurrency)

        async def _one(source_id: int, url: str) -> FetchOutcome:
            async with sem:
                try:
                    text = await self.fetch_text(url)
                except FetchError as exc:
                    log.warning("Fetch failed %s: %s", url, exc)
                    return FetchOutcome(source_id, url, error=str(exc))
                return FetchOutcome(source_id, url, content=text)

        return list(await asyncio.gather(*(_one(sid, url) for sid, url in targets)))
