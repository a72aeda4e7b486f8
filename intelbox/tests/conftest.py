from __future__ import annotations

import json

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from intelbox.db import bind_engine
from intelbox.fetcher import FetchOutcome
from intelbox.models import Base, Project, Run
from intelbox.search import SearchProvider, SearchResult


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    """In-memory SQLite shared by every session (StaticPool)."""
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    bind_engine(eng)
    return eng


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(session_factory):
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def project(session) -> Project:
    proj = Project(
        name="Acme Billing",
        category="billing software",
        industry="Fintech",
        sub_industry="payments",
        description="Usage-based billing for SaaS",
        keywords_json=json.dumps(["webhooks"]),
        competitors_json=json.dumps(["Stripe"]),
        target_segments_json=json.dumps(["startups"]),
    )
    session.add(proj)
    session.commit()
    return proj


@pytest.fixture()
def run(session, project) -> Run:
    r = Run(project_id=project.id)
    session.add(r)
    session.commit()
    return r


# ---------------------------------------------------------------------------
# Network fakes
# ---------------------------------------------------------------------------


class FakeSearch(SearchProvider):
    """Returns canned results per query; unknown queries return ``default``."""
    name = "fake"

    def __init__(self, results: dict[str, list[SearchResult]] | None = None,
                 default: list[SearchResult] | None = None, fail_on: set[str] | None = None):
        self.results = results or {}
        self.default = default or []
        self.fail_on = fail_on or set()
        self.queries: list[str] = []

    async def search(self, query, num=10, freshness_days=None):
        self.queries.append(query)
        if query in self.fail_on:
            raise RuntimeError("backend unavailable")
        return list(self.results.get(query, self.default))


class FakeFetcher:
    """Serves page text from a dict keyed by URL; missing URLs fail."""

    def __init__(self, pages: dict[str, str]):
        self.pages = pages
        self.requested: list[str] = []

    async def fetch_many(self, targets):
        out = []
        for source_id, url in targets:
            self.requested.append(url)
            if url in self.pages:
                out.append(FetchOutcome(source_id, url, content=self.pages[url]))
            else:
                out.append(FetchOutcome(source_id, url, error="HTTP 404"))
        return out


@pytest.fixture()
def fake_search():
    return FakeSearch


@pytest.fixture()
def fake_fetcher():
    return FakeFetcher
