"""Run orchestrator: the discovery -> extraction -> synthesis -> QA pipeline.

Every phase transition is committed (status + note) before the phase does
any work, so observers always see the phase in progress. Search, fetch and
extractor failures are phase-local: they become run-log lines and the
pipeline continues. Anything else escaping a phase moves the run to ERROR,
records message and traceback, and is re-raised to the caller.
"""
from __future__ import annotations

import asyncio
import json
import logging
import traceback
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from intelbox.config import SettingsCache, SettingsLoader, get_app_config
from intelbox.db import get_session
from intelbox.extractors import (
    ExtractorRegistry, default_registry, extract_feature_description, guess_brand_name,
)
from intelbox.fetcher import SourceFetcher
from intelbox.guardrails import evaluate as evaluate_guardrails
from intelbox.models import (
    TERMINAL_STATUSES, Capability, Competitor, ComplianceItem, Feature, Finding, Integration,
    PricingPoint, Project, Report, Run, RunLog, RunStatus, Source, SourceStatus,
)
from intelbox.queries import QueryInputs, build_queries
from intelbox.relevance import Discovered, RelevanceFilter, staleness_note
from intelbox.report import REPORT_FORMAT, load_report_context, render_markdown, report_headline
from intelbox.schemas import dump_finding_meta
from intelbox.search import SearchProvider, SearchResult, make_search
from intelbox.synthesis import SynthesisInput, synthesize
from intelbox.utils import short_url, utcnow
from intelbox.verticals import VerticalProfile, infer_vertical

log = logging.getLogger(__name__)

SEARCH_CONCURRENCY = 4


class RunNotFoundError(Exception):
    def __init__(self, run_id: int):
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id


class ProjectNotFoundError(Exception):
    def __init__(self, project_id: int):
        super().__init__(f"Project not found: {project_id}")
        self.project_id = project_id


class _Cancelled(Exception):
    """Run was marked SKIPPED between phases."""


# ---------------------------------------------------------------------------
# Persistence helpers
# ---------------------------------------------------------------------------


def set_status(session: Session, run: Run, status: RunStatus, note: str | None = None) -> None:
    run.status = status.value
    run.last_note = note
    if status == RunStatus.DISCOVERING and run.started_at is None:
        run.started_at = utcnow()
    if status in TERMINAL_STATUSES:
        run.completed_at = utcnow()
    session.commit()


def append_log(session: Session, run_id: int, line: str) -> None:
    session.add(RunLog(run_id=run_id, line=line))
    session.commit()


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class Orchestrator:
    def __init__(
        self,
        session_factory: Callable[[], Session] = get_session,
        settings_loader: SettingsLoader | None = None,
        search: SearchProvider | None = None,
        fetcher: SourceFetcher | None = None,
        extractors: ExtractorRegistry | None = None,
    ):
        self._session_factory = session_factory
        self.settings_loader = settings_loader or SettingsLoader(SettingsCache(), session_factory)
        self._search = search
        self.fetcher = fetcher or SourceFetcher()
        self.extractors = extractors or default_registry()

    async def run(self, run_id: int) -> int | None:
        """Execute the pipeline for *run_id*; returns the new report id.

        Returns ``None`` when the run becomes SKIPPED, or when it was already
        past NEW on entry. Finished runs are never replayed; restart means a
        new Run.
        """
        session = self._session_factory()
        try:
            run = session.get(Run, run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            if run.status != RunStatus.NEW:
                log.info("Run %s is %s, exiting", run_id, run.status)
                return None
            try:
                return await self._pipeline(session, run)
            except _Cancelled:
                log.info("Run %s cancelled between phases", run_id)
                return None
            except Exception as exc:
                session.rollback()
                self._fail(session, run, exc)
                raise
        finally:
            session.close()

    def _fail(self, session: Session, run: Run, exc: Exception) -> None:
        log.exception("Run %s failed", run.id)
        message = str(exc) or type(exc).__name__
        set_status(session, run, RunStatus.ERROR, f"Error: {message}")
        append_log(session, run.id, f"FATAL ERROR: {message}\n{traceback.format_exc()}")

    def _check_cancelled(self, session: Session, run: Run) -> None:
        session.refresh(run)
        if run.status == RunStatus.SKIPPED:
            raise _Cancelled()

    async def _pipeline(self, session: Session, run: Run) -> int:
        project = session.get(Project, run.project_id)
        if project is None:
            raise ProjectNotFoundError(run.project_id)

        set_status(session, run, RunStatus.DISCOVERING, "Starting discovery...")
        settings = self.settings_loader.load()
        profile = infer_vertical(project.industry, project.sub_industry)
        inputs = QueryInputs.from_project(project)
        search = self._search or make_search(settings)

        sources = await self._discover(session, run, inputs, search, settings.staleness_days)

        self._check_cancelled(session, run)
        set_status(session, run, RunStatus.EXTRACTING, f"Discovered {len(sources)} sources; fetching content...")
        fetched = await self._fetch(session, run, sources)
        set_status(session, run, RunStatus.EXTRACTING, "Extracting capabilities, integrations, compliance, pricing...")
        self._extract(session, run, fetched)

        self._check_cancelled(session, run)
        set_status(session, run, RunStatus.SYNTHESIZING, "Synthesizing findings...")
        self._synthesize(session, run, inputs, profile)
        set_status(session, run, RunStatus.SYNTHESIZING, "Generating report...")
        headline = report_headline(project, profile)
        ctx = load_report_context(session, run, profile, headline)
        report = Report(
            project_id=run.project_id,
            run_id=run.id,
            headline=headline,
            body=render_markdown(ctx),
            format=REPORT_FORMAT,
        )
        session.add(report)
        session.commit()

        self._check_cancelled(session, run)
        set_status(session, run, RunStatus.QA, "Running guardrails...")
        guard = evaluate_guardrails(session, run.id, settings.staleness_days)
        append_log(session, run.id, guard.log_line)

        self._check_cancelled(session, run)
        set_status(session, run, RunStatus.COMPLETE, f"Report ready: {report.id}")
        log.info("Run %s complete (report %s)", run.id, report.id)
        return report.id

    # -- discovery ------------------------------------------------------------

    async def _discover(
        self,
        session: Session,
        run: Run,
        inputs: QueryInputs,
        search: SearchProvider,
        staleness_days: int,
    ) -> list[Source]:
        queries = build_queries(inputs)
        log.info("Run %s: %d queries via %s", run.id, len(queries), search.name)
        append_log(session, run.id, f"Generated {len(queries)} search queries")

        existing = {c.name for c in session.execute(select(Competitor).where(Competitor.run_id == run.id)).scalars()}
        for name in inputs.competitors:
            name = name.strip()
            if name and name not in existing:
                session.add(Competitor(run_id=run.id, name=name))
                existing.add(name)
        session.commit()

        sem = asyncio.Semaphore(SEARCH_CONCURRENCY)
        num = get_app_config().search_results_per_query

        async def _one(query: str) -> list[SearchResult] | Exception:
            async with sem:
                try:
                    return await search.search(query, num=num, freshness_days=staleness_days)
                except Exception as exc:
                    return exc

        outcomes = await asyncio.gather(*(_one(q) for q in queries))

        relevance = RelevanceFilter(inputs)
        discovered: list[Discovered] = []
        for query, outcome in zip(queries, outcomes):
            if isinstance(outcome, Exception):
                log.warning("Search error for %r: %s", query, outcome)
                append_log(session, run.id, f'Search error "{query}": {outcome}')
                continue
            discovered.extend(relevance.select(outcome))

        sources: list[Source] = []
        for d in discovered:
            note = staleness_note(d.published_at, staleness_days)
            if note:
                append_log(session, run.id, f"Warning: Stale source detected - {d.url} ({note})")
            source = Source(
                run_id=run.id,
                url=d.url,
                title=d.title,
                domain=d.domain,
                published_at=d.published_at,
                status=SourceStatus.OK.value,
                notes=note,
            )
            session.add(source)
            sources.append(source)
        session.commit()
        log.info("Run %s: %d unique sources discovered", run.id, len(sources))
        return sources

    # -- fetch ----------------------------------------------------------------

    async def _fetch(self, session: Session, run: Run, sources: list[Source]) -> list[Source]:
        by_id = {s.id: s for s in sources}
        outcomes = await self.fetcher.fetch_many([(s.id, s.url) for s in sources])
        fetched: list[Source] = []
        for outcome in outcomes:
            source = by_id[outcome.source_id]
            source.fetched_at = utcnow()
            if outcome.ok:
                source.content = outcome.content
                source.status = SourceStatus.OK.value
                fetched.append(source)
            else:
                source.status = SourceStatus.ERROR.value
                source.notes = "; ".join(n for n in (source.notes, outcome.error) if n)
                session.add(RunLog(run_id=run.id, line=f"Fetch failed {source.url}: {outcome.error}"))
        session.commit()
        return fetched

    # -- extraction -----------------------------------------------------------

    def _extract(self, session: Session, run: Run, fetched: list[Source]) -> None:
        competitor_ids: dict[str, int] = {
            c.name: c.id
            for c in session.execute(select(Competitor).where(Competitor.run_id == run.id)).scalars()
        }
        features: dict[str, Feature] = {}

        for source in fetched:
            text = source.content or ""
            result = self.extractors.run(source.title, text)

            for cap in result.capabilities:
                session.add(Capability(
                    run_id=run.id, source_id=source.id,
                    category=cap.category, name=cap.name, normalized=cap.normalized,
                ))
                if cap.normalized not in features:
                    features[cap.normalized] = Feature(
                        run_id=run.id, source_id=source.id, name=cap.name, normalized=cap.normalized,
                        description=extract_feature_description(text, cap.name) or f"Mentioned under {cap.category}",
                    )

            for hit in result.integrations:
                session.add(Integration(
                    run_id=run.id, name=hit.name, vendor=hit.vendor, category=hit.category, url=source.url,
                ))
            for hit in result.compliance:
                session.add(ComplianceItem(
                    run_id=run.id, framework=hit.framework, status="Claims",
                    notes=f"Mentioned at {short_url(source.url)}",
                ))

            brand = guess_brand_name(source.title, source.domain)
            if brand and brand not in competitor_ids:
                competitor = Competitor(
                    run_id=run.id, name=brand, website=f"https://{source.domain}" if source.domain else None,
                )
                session.add(competitor)
                session.flush()
                competitor_ids[brand] = competitor.id

            for name, error in result.errors.items():
                if name == "pricing":
                    append_log(session, run.id, f"Pricing parse failed {source.url}: {error}")
                else:
                    append_log(session, run.id, f"Extractor {name} failed {source.url}: {error}")

            competitor_id = competitor_ids.get(brand) if brand else None
            if result.pricing and competitor_id is not None:
                for row in result.pricing:
                    session.add(PricingPoint(
                        run_id=run.id,
                        competitor_id=competitor_id,
                        plan_name=row.plan_name,
                        price_monthly=row.price_monthly,
                        price_annual=row.price_annual,
                        transaction_fee=row.transaction_fee,
                        currency=row.currency or "USD",
                    ))

        session.add_all(features.values())
        session.commit()

    # -- synthesis ------------------------------------------------------------

    def _synthesize(self, session: Session, run: Run, inputs: QueryInputs, profile: VerticalProfile) -> None:
        def _all(model):
            return list(session.execute(select(model).where(model.run_id == run.id).order_by(model.id)).scalars())

        capabilities = _all(Capability)
        if not capabilities:
            append_log(session, run.id, "No capabilities extracted - sources may be sparse or parsing failed.")

        data = SynthesisInput(
            capabilities=capabilities,
            source_ids=[s.id for s in _all(Source)],
            competitor_count=len(_all(Competitor)),
            monthly_prices=[p.price_monthly for p in _all(PricingPoint) if p.price_monthly],
            integration_names=[i.name for i in _all(Integration)],
            frameworks=[c.framework for c in _all(ComplianceItem)],
            keywords=inputs.keywords,
        )
        drafts = synthesize(data, profile)
        for draft in drafts:
            session.add(Finding(
                run_id=run.id,
                kind=draft.kind.value,
                text=draft.text,
                confidence=draft.confidence,
                citations_json=json.dumps(draft.citations),
                meta_json=dump_finding_meta(draft.meta),
            ))
        session.commit()
        log.info("Run %s: %d findings synthesized", run.id, len(drafts))


async def run_orchestration(run_id: int, **kwargs) -> int | None:
    """Entry point used by the job worker and the scheduler."""
    return await Orchestrator(**kwargs).run(run_id)
