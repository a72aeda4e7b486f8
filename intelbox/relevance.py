"""Search-result relevance filter and run-wide URL de-duplication."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta

from intelbox.queries import QueryInputs
from intelbox.search import SearchResult
from intelbox.utils import as_utc, get_domain, normalize_url, parse_published_at, utcnow

log = logging.getLogger(__name__)

FALLBACK_RESULTS = 3
_NAME_SPLIT = re.compile(r"[\s/\-|]+")
_DESCRIPTION_SPLIT = re.compile(r"[\s,;.\-/]+")


def derived_description(inputs: QueryInputs) -> str:
    pieces = [inputs.description]
    if inputs.target_segments:
        pieces.append(f"Segments: {', '.join(inputs.target_segments)}")
    return " ".join(p for p in pieces if p)


def _split(value: str, pattern: re.Pattern[str], min_len: int) -> list[str]:
    return [t for t in (p.strip().lower() for p in pattern.split(value or "")) if len(t) > min_len]


def build_relevance_tokens(inputs: QueryInputs) -> set[str]:
    """Token set a result is scored against, built once per run."""
    tokens: set[str] = set()
    tokens.update(_split(inputs.product_name, _NAME_SPLIT, 2))
    tokens.update(_split(inputs.category, _NAME_SPLIT, 2))
    for keyword in inputs.keywords:
        tokens.update(_split(keyword, _NAME_SPLIT, 2))
    tokens.update(_split(derived_description(inputs), _DESCRIPTION_SPLIT, 3))
    for competitor in inputs.competitors:
        tokens.update(_split(competitor, _NAME_SPLIT, 2))
    tokens.update(s.lower() for s in inputs.target_segments if s)
    tokens.discard("")
    return tokens


def score_result(result: SearchResult, tokens: set[str], competitors: list[str]) -> int:
    body = f"{result.title or ''} {result.snippet or ''} {result.url or ''}".lower()
    if not tokens:
        score = 1
    else:
        score = 0
        for token in tokens:
            if len(token) < 3:
                continue
            if token in body:
                score += 2 if len(token) >= 6 else 1
    for name in competitors:
        name = name.strip().lower()
        if name and name in body:
            score += 2
    return score


@dataclass
class Discovered:
    url: str  # normalized
    title: str | None
    snippet: str | None
    domain: str | None
    published_at: datetime | None


class RelevanceFilter:
    """Selects results per query while de-duplicating URLs across the whole run."""

    def __init__(self, inputs: QueryInputs):
        self.tokens = build_relevance_tokens(inputs)
        self.competitors = [c for c in inputs.competitors if c and c.strip()]
        self.seen: set[str] = set()

    def select(self, results: list[SearchResult]) -> list[Discovered]:
        relevant: list[SearchResult] = []
        fallback: list[SearchResult] = []
        for r in results:
            url = normalize_url(r.url)
            if not url or url in self.seen:
                continue
            fallback.append(r)
            if score_result(r, self.tokens, self.competitors) > 0:
                relevant.append(r)

        selected = relevant or fallback[:FALLBACK_RESULTS]
        out: list[Discovered] = []
        for r in selected:
            url = normalize_url(r.url)
            if url in self.seen:
                continue
            self.seen.add(url)
            out.append(Discovered(
                url=url,
                title=r.title,
                snippet=r.snippet,
                domain=get_domain(url),
                published_at=parse_published_at(r.published_at),
            ))
        return out


def is_stale(published_at: datetime | None, staleness_days: int, now: datetime | None = None) -> bool:
    if published_at is None:
        return False
    now = now or utcnow()
    return now - as_utc(published_at) > timedelta(days=staleness_days)


def staleness_note(published_at: datetime | None, staleness_days: int, now: datetime | None = None) -> str | None:
    if not is_stale(published_at, staleness_days, now):
        return None
    return f"Stale source: published {as_utc(published_at).isoformat()}"
