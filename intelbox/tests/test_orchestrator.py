"""End-to-end tests for the run pipeline with injected search and fetch fakes."""
from __future__ import annotations

from datetime import UTC, datetime

import pytest
from sqlalchemy import select

from intelbox.config import Settings, SettingsCache, SettingsLoader
from intelbox.models import (
    Capability, Competitor, ComplianceItem, Feature, Finding, FindingKind, PricingPoint, Report, Run,
    RunLog, RunStatus, Source, SourceStatus,
)
from intelbox.orchestrator import Orchestrator, ProjectNotFoundError, RunNotFoundError
from intelbox.search import SearchResult

STRIPE_URL = "https://stripe.com/pricing"
CHARGEBEE_URL = "https://chargebee.com/"
MISSING_URL = "https://example.org/missing"

PAGES = {
    STRIPE_URL: (
        "Stripe pricing\n\n"
        "Starter - $0/mo + 2.9% per transaction\n"
        "Pro - $240/year\n\n"
        "Stripe integrates with Salesforce and supports webhooks, SSO and SOC 2."
    ),
    CHARGEBEE_URL: (
        "Chargebee integrates with Salesforce and Stripe. "
        "Webhooks and SSO included. GDPR ready."
    ),
}

RESULTS = [
    SearchResult(url=STRIPE_URL + "?ref=serp", title="Stripe | Pricing", snippet="Stripe pricing and fees"),
    SearchResult(url=CHARGEBEE_URL, title="Chargebee - Subscription billing", snippet="billing with webhooks"),
    SearchResult(url=MISSING_URL, title="Missing page", snippet="billing",
                 published_at="2020-01-01T00:00:00Z"),
]


def _loader(session_factory, **overrides) -> SettingsLoader:
    cache = SettingsCache()
    cache.put(Settings(**overrides))
    return SettingsLoader(cache, session_factory)


def _orchestrator(session_factory, search, fetcher) -> Orchestrator:
    return Orchestrator(
        session_factory=session_factory,
        settings_loader=_loader(session_factory),
        search=search,
        fetcher=fetcher,
    )


def _logs(session, run_id) -> list[str]:
    return list(session.execute(select(RunLog.line).where(RunLog.run_id == run_id).order_by(RunLog.id)).scalars())


def _all(session, model, run_id):
    return list(session.execute(select(model).where(model.run_id == run_id).order_by(model.id)).scalars())


class TestPipeline:
    @pytest.mark.asyncio
    async def test_full_run(self, session, session_factory, run, fake_search, fake_fetcher):
        search = fake_search(default=RESULTS)
        fetcher = fake_fetcher(PAGES)

        report_id = await _orchestrator(session_factory, search, fetcher).run(run.id)

        session.refresh(run)
        assert run.status == RunStatus.COMPLETE
        assert run.last_note == f"Report ready: {report_id}"
        assert run.started_at is not None and run.completed_at is not None

        assert "Acme Billing competitor analysis" in search.queries
        assert "Stripe features" in search.queries

        sources = _all(session, Source, run.id)
        assert [s.url for s in sources] == [STRIPE_URL, CHARGEBEE_URL, MISSING_URL]
        assert fetcher.requested == [STRIPE_URL, CHARGEBEE_URL, MISSING_URL]
        by_url = {s.url: s for s in sources}
        assert by_url[STRIPE_URL].status == SourceStatus.OK
        assert by_url[MISSING_URL].status == SourceStatus.ERROR
        assert by_url[MISSING_URL].notes.startswith("Stale source: published 2020-01-01")
        assert by_url[MISSING_URL].notes.endswith("HTTP 404")

        competitors = {c.name for c in _all(session, Competitor, run.id)}
        assert competitors == {"Stripe", "Chargebee"}

        stripe = session.execute(
            select(Competitor).where(Competitor.run_id == run.id, Competitor.name == "Stripe")
        ).scalar_one()
        plans = {p.plan_name: p for p in _all(session, PricingPoint, run.id)}
        assert set(plans) == {"Starter", "Pro"}
        assert plans["Pro"].price_monthly == 20.0
        assert plans["Starter"].transaction_fee == 2.9
        assert all(p.competitor_id == stripe.id for p in plans.values())

        caps = _all(session, Capability, run.id)
        assert {c.source_id for c in caps} == {by_url[STRIPE_URL].id, by_url[CHARGEBEE_URL].id}
        features = _all(session, Feature, run.id)
        assert len({f.normalized for f in features}) == len(features)
        frameworks = {c.framework for c in _all(session, ComplianceItem, run.id)}
        assert frameworks == {"SOC 2", "GDPR"}

        findings = _all(session, Finding, run.id)
        common = [f for f in findings if f.kind == FindingKind.COMMON_FEATURE]
        assert common
        assert all(f.citations_json != "[]" for f in common)
        recs = [f for f in findings if f.kind == FindingKind.RECOMMENDATION]
        assert len(recs) == 1
        assert recs[0].text.startswith("Compliance recommendation: PCI-DSS is expected")

        report = session.get(Report, report_id)
        assert report.run_id == run.id
        assert report.format == "MARKDOWN"
        assert report.headline == "Acme Billing: Competitive Landscape (FINTECH)"
        assert report.body.startswith("# Acme Billing: Competitive Landscape (FINTECH)")
        assert "## Sources" in report.body
        assert f"[S{by_url[STRIPE_URL].id}]" in report.body

        logs = _logs(session, run.id)
        assert logs[0].startswith("Generated ") and logs[0].endswith(" search queries")
        assert f"Warning: Stale source detected - {MISSING_URL} (Stale source: published 2020-01-01T00:00:00+00:00)" in logs
        assert f"Fetch failed {MISSING_URL}: HTTP 404" in logs
        assert logs[-1].startswith("Guardrails: ")
        assert "Low source count: Only 3 sources found" in logs[-1]

    @pytest.mark.asyncio
    async def test_search_errors_are_phase_local(self, session, session_factory, run, fake_search, fake_fetcher):
        search = fake_search(default=RESULTS[:1], fail_on={"Acme Billing competitor analysis"})
        await _orchestrator(session_factory, search, fake_fetcher(PAGES)).run(run.id)

        session.refresh(run)
        assert run.status == RunStatus.COMPLETE
        assert 'Search error "Acme Billing competitor analysis": backend unavailable' in _logs(session, run.id)

    @pytest.mark.asyncio
    async def test_malformed_result_url_is_skipped(self, session, session_factory, run, fake_search, fake_fetcher):
        bad = SearchResult(url="https://example.com:99999/x", title="Acme Billing webhooks", snippet="billing")
        fetcher = fake_fetcher(PAGES)
        await _orchestrator(session_factory, fake_search(default=[bad, *RESULTS]), fetcher).run(run.id)

        session.refresh(run)
        assert run.status == RunStatus.COMPLETE
        assert [s.url for s in _all(session, Source, run.id)] == [STRIPE_URL, CHARGEBEE_URL, MISSING_URL]
        assert "https://example.com:99999/x" not in fetcher.requested

    @pytest.mark.asyncio
    async def test_no_results_still_completes(self, session, session_factory, run, fake_search, fake_fetcher):
        report_id = await _orchestrator(session_factory, fake_search(), fake_fetcher({})).run(run.id)

        session.refresh(run)
        assert run.status == RunStatus.COMPLETE
        assert report_id is not None
        logs = _logs(session, run.id)
        assert "No capabilities extracted - sources may be sparse or parsing failed." in logs
        assert "Low source count: Only 0 sources found" in logs[-1]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_skipped_run_is_a_no_op(self, session, session_factory, run, fake_search, fake_fetcher):
        run.status = RunStatus.SKIPPED.value
        session.commit()
        search = fake_search(default=RESULTS)

        result = await _orchestrator(session_factory, search, fake_fetcher(PAGES)).run(run.id)

        session.refresh(run)
        assert result is None
        assert run.status == RunStatus.SKIPPED
        assert run.started_at is None
        assert _logs(session, run.id) == []
        assert search.queries == []

    @pytest.mark.asyncio
    async def test_completed_run_is_not_replayed(self, session, session_factory, run, fake_search, fake_fetcher):
        orchestrator = _orchestrator(session_factory, fake_search(default=RESULTS), fake_fetcher(PAGES))
        report_id = await orchestrator.run(run.id)
        session.refresh(run)
        note, log_count = run.last_note, len(_logs(session, run.id))

        assert await orchestrator.run(run.id) is None

        session.refresh(run)
        assert run.status == RunStatus.COMPLETE
        assert run.last_note == note == f"Report ready: {report_id}"
        assert len(_logs(session, run.id)) == log_count
        assert len(_all(session, Report, run.id)) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [RunStatus.ERROR, RunStatus.EXTRACTING])
    async def test_run_past_new_is_left_alone(self, session, session_factory, run, fake_search, fake_fetcher, status):
        run.status = status.value
        session.commit()
        search = fake_search(default=RESULTS)

        assert await _orchestrator(session_factory, search, fake_fetcher(PAGES)).run(run.id) is None

        session.refresh(run)
        assert run.status == status
        assert search.queries == []
        assert _all(session, Source, run.id) == []

    @pytest.mark.asyncio
    async def test_cancel_between_phases(self, session, session_factory, run, fake_search, fake_fetcher):
        run_id = run.id

        class CancellingSearch(fake_search):
            async def search(self, query, num=10, freshness_days=None):
                other = session_factory()
                try:
                    other.get(Run, run_id).status = RunStatus.SKIPPED.value
                    other.commit()
                finally:
                    other.close()
                return list(RESULTS)

        fetcher = fake_fetcher(PAGES)
        result = await _orchestrator(session_factory, CancellingSearch(), fetcher).run(run_id)

        session.refresh(run)
        assert result is None
        assert run.status == RunStatus.SKIPPED
        assert fetcher.requested == []
        assert _all(session, Report, run_id) == []

    @pytest.mark.asyncio
    async def test_missing_project_is_fatal(self, session, session_factory, fake_search, fake_fetcher):
        orphan = Run(project_id=999)
        session.add(orphan)
        session.commit()

        with pytest.raises(ProjectNotFoundError):
            await _orchestrator(session_factory, fake_search(), fake_fetcher({})).run(orphan.id)

        session.refresh(orphan)
        assert orphan.status == RunStatus.ERROR
        assert orphan.last_note == "Error: Project not found: 999"
        assert orphan.completed_at is not None
        (line,) = _logs(session, orphan.id)
        assert line.startswith("FATAL ERROR: Project not found: 999\n")
        assert "Traceback" in line

    @pytest.mark.asyncio
    async def test_unexpected_error_reraised(self, session, session_factory, run, fake_search):
        class BrokenFetcher:
            async def fetch_many(self, targets):
                raise RuntimeError("disk full")

        with pytest.raises(RuntimeError, match="disk full"):
            await _orchestrator(session_factory, fake_search(default=RESULTS), BrokenFetcher()).run(run.id)

        session.refresh(run)
        assert run.status == RunStatus.ERROR
        assert run.last_note == "Error: disk full"

    @pytest.mark.asyncio
    async def test_missing_run(self, session_factory, engine, fake_search, fake_fetcher):
        with pytest.raises(RunNotFoundError):
            await _orchestrator(session_factory, fake_search(), fake_fetcher({})).run(12345)


def test_naive_timestamps_compare_as_utc():
    # SQLite round-trips drop tzinfo; the pipeline treats them as UTC
    from intelbox.utils import as_utc
    assert as_utc(datetime(2024, 1, 1)) == datetime(2024, 1, 1, tzinfo=UTC)
