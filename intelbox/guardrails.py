"""Advisory quality checks run after synthesis.

Guardrails never change a run's status. Run-level issues are summarized in
a single run-log line; per-finding issues are exposed for review tooling.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from intelbox.models import Capability, Competitor, Finding, Source, SourceStatus
from intelbox.relevance import is_stale
from intelbox.utils import json_parse

MIN_SOURCES = 5
MIN_CAPABILITIES = 10
MAX_STALE_RATIO = 0.5
MAX_FAILURE_RATIO = 0.3
MIN_PRICING_CITATIONS = 2
MIN_CONFIDENCE = 0.5

_PRICING_TEXT = re.compile(r"price|pricing|fee|transaction", re.I)

Level = Literal["ERROR", "WARN"]


@dataclass
class GuardrailIssue:
    code: str
    level: Level
    message: str
    finding_id: int | None = None


@dataclass
class GuardrailReport:
    summary: str
    issues: list[GuardrailIssue] = field(default_factory=list)
    finding_issues: list[GuardrailIssue] = field(default_factory=list)

    @property
    def log_line(self) -> str:
        if not self.issues:
            return "Guardrails: All checks passed"
        return "Guardrails: " + "; ".join(i.message for i in self.issues)


def is_pricing_finding(text: str) -> bool:
    return bool(_PRICING_TEXT.search(text))


def check_findings(findings: Sequence[Finding], source_ids: set[int]) -> list[GuardrailIssue]:
    issues: list[GuardrailIssue] = []
    for f in findings:
        valid = [c for c in json_parse(f.citations_json, []) if c in source_ids]
        if not valid:
            issues.append(GuardrailIssue(
                "NO_CITATIONS", "ERROR", f'Finding "{f.text}" has no valid citations.', f.id,
            ))
        if is_pricing_finding(f.text) and len(valid) < MIN_PRICING_CITATIONS:
            issues.append(GuardrailIssue(
                "INSUFFICIENT_CITATIONS_PRICING", "ERROR",
                f'Pricing-related finding "{f.text}" requires at least {MIN_PRICING_CITATIONS} '
                f"citations ({len(valid)} found).",
                f.id,
            ))
        if (f.confidence or 0) < MIN_CONFIDENCE:
            issues.append(GuardrailIssue(
                "LOW_CONFIDENCE", "WARN",
                f'Finding "{f.text}" has low confidence ({(f.confidence or 0) * 100:.0f}%).',
                f.id,
            ))
    return issues


def check_run(
    sources: Sequence[Source],
    findings: Sequence[Finding],
    capability_count: int,
    competitor_count: int,
    staleness_days: int,
) -> list[GuardrailIssue]:
    issues: list[GuardrailIssue] = []
    total = len(sources)

    source_ids = {s.id for s in sources}
    uncited = [f for f in findings if not any(c in source_ids for c in json_parse(f.citations_json, []))]
    if uncited:
        issues.append(GuardrailIssue("NO_CITATIONS", "WARN", f"Findings without citations: {len(uncited)}"))

    if total < MIN_SOURCES:
        issues.append(GuardrailIssue(
            "LOW_SOURCE_COUNT", "WARN",
            f"Low source count: Only {total} sources found. Consider expanding search queries.",
        ))
    if capability_count < MIN_CAPABILITIES:
        issues.append(GuardrailIssue(
            "LOW_CAPABILITY_COUNT", "WARN",
            f"Low capability count: Only {capability_count} capabilities extracted. "
            "May indicate limited source content.",
        ))
    if competitor_count == 0:
        issues.append(GuardrailIssue(
            "NO_COMPETITORS", "WARN",
            "No competitors identified. Consider adding competitor names to project inputs.",
        ))

    stale = [s for s in sources if is_stale(s.published_at, staleness_days)]
    if total and len(stale) / total > MAX_STALE_RATIO:
        issues.append(GuardrailIssue(
            "STALE_SOURCES", "WARN",
            f"Stale sources detected: {len(stale)}/{total} sources are older than {staleness_days} days",
        ))

    failed = [s for s in sources if s.status == SourceStatus.ERROR]
    if total and len(failed) > total * MAX_FAILURE_RATIO:
        issues.append(GuardrailIssue(
            "HIGH_FETCH_FAILURE_RATE", "WARN",
            f"High source fetch failure rate: {len(failed)}/{total} sources failed to fetch",
        ))
    return issues


def evaluate(session: Session, run_id: int, staleness_days: int = 180) -> GuardrailReport:
    sources = list(session.execute(select(Source).where(Source.run_id == run_id)).scalars())
    findings = list(session.execute(select(Finding).where(Finding.run_id == run_id)).scalars())
    capability_count = session.execute(
        select(func.count()).select_from(Capability).where(Capability.run_id == run_id)
    ).scalar_one()
    competitor_count = session.execute(
        select(func.count()).select_from(Competitor).where(Competitor.run_id == run_id)
    ).scalar_one()

    issues = check_run(sources, findings, capability_count, competitor_count, staleness_days)
    return GuardrailReport(
        summary="Guardrails found issues" if issues else "All checks passed",
        issues=issues,
        finding_issues=check_findings(findings, {s.id for s in sources}),
    )
