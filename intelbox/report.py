"""Markdown report rendering.

``load_report_context`` gathers everything a run produced; ``render_markdown``
is a pure function of that context, driven by the vertical profile's section
list.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from intelbox.models import (
    Capability, Competitor, ComplianceItem, Finding, FindingKind, Integration, PricingPoint, Project,
    Run, Source,
)
from intelbox.utils import get_domain, group_by, json_parse, uniq
from intelbox.verticals import VerticalProfile

REPORT_FORMAT = "MARKDOWN"


@dataclass
class ReportFinding:
    kind: str
    text: str
    citations: list[int] = field(default_factory=list)


@dataclass
class ReportContext:
    headline: str
    profile: VerticalProfile
    findings: list[ReportFinding] = field(default_factory=list)
    competitors: list[Competitor] = field(default_factory=list)
    pricing: list[PricingPoint] = field(default_factory=list)
    capabilities: list[Capability] = field(default_factory=list)
    compliance: list[ComplianceItem] = field(default_factory=list)
    integrations: list[Integration] = field(default_factory=list)
    sources: dict[int, Source] = field(default_factory=dict)


def report_headline(project: Project, profile: VerticalProfile) -> str:
    return f"{project.name}: Competitive Landscape ({profile.key.replace('_', ' ')})"


def load_report_context(
    session: Session,
    run: Run,
    profile: VerticalProfile,
    headline: str,
    approved_only: bool = False,
) -> ReportContext:
    def _all(model):
        return list(session.execute(select(model).where(model.run_id == run.id).order_by(model.id)).scalars())

    findings = _all(Finding)
    if approved_only:
        findings = [f for f in findings if f.approved]
    return ReportContext(
        headline=headline,
        profile=profile,
        findings=[
            ReportFinding(f.kind, f.text, [int(c) for c in json_parse(f.citations_json, [])])
            for f in findings
        ],
        competitors=_all(Competitor),
        pricing=_all(PricingPoint),
        capabilities=_all(Capability),
        compliance=_all(ComplianceItem),
        integrations=_all(Integration),
        sources={s.id: s for s in _all(Source)},
    )


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _money(value: float | None) -> str:
    if value is None:
        return ""
    return f"{value:.2f}".removesuffix(".00")


def _currency_symbol(code: str | None) -> str:
    return {"USD": "$", "EUR": "€", "GBP": "£"}.get(code or "USD", "$")


class _Renderer:
    def __init__(self, ctx: ReportContext):
        self.ctx = ctx
        self.lines: list[str] = []
        self.cited: list[int] = []

    def emit(self, *lines: str) -> None:
        self.lines.extend(lines)

    def with_citations(self, finding: ReportFinding) -> str:
        refs = [c for c in finding.citations if c in self.ctx.sources]
        if not refs:
            return finding.text
        self.cited.extend(refs)
        return finding.text + " " + "".join(f"[S{c}]" for c in refs)

    def findings_of(self, kind: FindingKind) -> list[ReportFinding]:
        return [f for f in self.ctx.findings if f.kind == kind]

    # -- sections ---------------------------------------------------------

    def exec(self) -> None:
        ctx = self.ctx
        distinct = len({(c.category, c.normalized.lower()) for c in ctx.capabilities})
        self.emit("## Executive Summary", "")
        self.emit(
            f"This analysis identified **{len(ctx.competitors)} competitors** and "
            f"**{distinct} distinct capabilities** across the competitive landscape.",
            "",
        )
        for title, kind in (
            ("Key Gaps Identified", FindingKind.GAP),
            ("Potential Differentiators", FindingKind.DIFFERENTIATOR),
        ):
            items = self.findings_of(kind)
            if items:
                self.emit(f"### {title}", "")
                self.emit(*(f"- {self.with_citations(f)}" for f in items[:5]))
                self.emit("")
        common = self.findings_of(FindingKind.COMMON_FEATURE)
        if common:
            self.emit("### Common Features Across Market", "")
            self.emit(
                f"The analysis found {len(common)} capabilities that appear across multiple "
                "competitors, indicating market standards.",
                "",
            )
            self.emit(*(f"- {self.with_citations(f)}" for f in common))
            self.emit("")

    def market(self) -> None:
        ctx = self.ctx
        self.emit("## Market Overview", "")
        domains = uniq(s.domain for s in ctx.sources.values() if s.domain)
        self.emit(f"Analyzed **{len(ctx.sources)} sources** from **{len(domains)} domains**.", "")
        insights = self.findings_of(FindingKind.INSIGHT)
        if insights:
            self.emit(*(f"- {self.with_citations(f)}" for f in insights))
            self.emit("")
        risks = self.findings_of(FindingKind.RISK)
        if risks:
            self.emit("### Changes Since Previous Run", "")
            self.emit(*(f"- {self.with_citations(f)}" for f in risks))
            self.emit("")

    def competitors(self) -> None:
        ctx = self.ctx
        self.emit("## Competitor Landscape", "")
        if not ctx.competitors:
            self.emit("_No competitors identified in this analysis._", "")
            return
        self.emit(f"### Identified Competitors ({len(ctx.competitors)})", "")
        for c in ctx.competitors:
            self.emit(f"- **{c.name}**" + (f" - {c.website}" if c.website else ""))
        self.emit("")
        if len(ctx.competitors) > 1:
            priced = {p.competitor_id for p in ctx.pricing}
            self.emit("### Competitive Positioning", "")
            self.emit("| Competitor | Key Characteristics |", "|------------|-------------------|")
            for c in ctx.competitors[:10]:
                traits = []
                if c.id in priced:
                    traits.append("Pricing available")
                first_word = c.name.lower().split(" ")[0]
                related = [i for i in ctx.integrations if first_word and first_word in i.name.lower()]
                if related:
                    traits.append(f"{len(related)} integrations")
                self.emit(f"| {c.name} | {', '.join(traits) or 'Under analysis'} |")
            self.emit("")

    def capabilities(self) -> None:
        ctx = self.ctx
        self.emit("## Capability Matrix", "")
        if not ctx.capabilities:
            self.emit("_No capabilities identified in this analysis._", "")
            return
        by_cat = group_by(ctx.capabilities, lambda c: c.category)
        categories = sorted(by_cat, key=lambda k: len(by_cat[k]), reverse=True)
        self.emit(
            f"Found **{len(ctx.capabilities)} capability mentions** across **{len(categories)} categories**:",
            "",
        )
        self.emit(*(f"- **{cat}**: {len(by_cat[cat])} mentions" for cat in categories))
        self.emit("")
        for cat in categories:
            names = uniq(c.normalized for c in by_cat[cat])
            self.emit(f"### {cat}", "")
            self.emit(*(f"- {n}" for n in names[:30]))
            if len(names) > 30:
                self.emit(f"_... and {len(names) - 30} more_")
            self.emit("")
        if ctx.profile.must_have:
            self.emit("### Critical Capabilities for This Vertical", "")
            for wanted in ctx.profile.must_have:
                w = wanted.lower()
                found = any(w in c.normalized.lower() or w in c.category.lower() for c in ctx.capabilities)
                self.emit(f"- {wanted}: {'Found' if found else 'Not prominently featured'}")
            self.emit("")

    def pricing(self) -> None:
        ctx = self.ctx
        self.emit("## Pricing Comparison", "")
        if not ctx.pricing:
            self.emit("_No pricing information found in the analyzed sources._", "")
            return
        names = {c.id: c.name for c in ctx.competitors}
        by_comp = group_by(ctx.pricing, lambda p: names.get(p.competitor_id, "Unknown"))
        self.emit(
            f"Found pricing information for **{len(by_comp)} competitors** across "
            f"**{len(ctx.pricing)} pricing plans**.",
            "",
        )
        for comp, plans in by_comp.items():
            self.emit(f"#### {comp}", "")
            for p in plans[:5]:
                sym = _currency_symbol(p.currency)
                parts = [f"**{p.plan_name}**"]
                if p.price_monthly:
                    parts.append(f"{sym}{_money(p.price_monthly)}/mo")
                if p.price_annual:
                    parts.append(f"({sym}{_money(p.price_annual)}/yr)")
                if p.transaction_fee:
                    parts.append(f"+ {_money(p.transaction_fee)}% transaction fee")
                self.emit(f"- {' '.join(parts)}")
            self.emit("")
        monthly = [p.price_monthly for p in ctx.pricing if p.price_monthly and p.price_monthly > 0]
        if monthly:
            self.emit("### Pricing Analysis", "")
            self.emit(
                f"- **Average monthly price**: ${sum(monthly) / len(monthly):.2f}",
                f"- **Price range**: ${min(monthly):.2f} - ${max(monthly):.2f}",
                "",
            )

    def integrations(self) -> None:
        ctx = self.ctx
        self.emit("## Integrations Ecosystem", "")
        if not ctx.integrations:
            self.emit("_No integrations detected in the analyzed sources._", "")
            return
        unique = uniq(i.name for i in ctx.integrations)
        self.emit(f"Found **{len(unique)} unique integrations** mentioned across sources.", "")
        by_cat = group_by(ctx.integrations, lambda i: i.category or "Other Integrations")
        for cat in sorted(by_cat, key=lambda k: (k == "Other Integrations", -len(by_cat[k]))):
            names = uniq(i.name for i in by_cat[cat])
            self.emit(f"#### {cat}", "")
            self.emit(*(f"- {n}" for n in names[:20]))
            if len(names) > 20:
                self.emit(f"_... and {len(names) - 20} more_")
            self.emit("")

    def security(self) -> None:
        ctx = self.ctx
        self.emit("## Security & Compliance", "")
        if not ctx.compliance:
            self.emit("_No compliance frameworks or security claims detected in the analyzed sources._", "")
        else:
            by_fw = group_by(ctx.compliance, lambda c: c.framework)
            self.emit(f"Found mentions of **{len(by_fw)} compliance frameworks** across the competitive landscape.", "")
            for framework, items in by_fw.items():
                self.emit(f"#### {framework}", "")
                self.emit(*(f"- **Status**: {s}" for s in uniq(i.status or "Mentioned" for i in items)))
                notes = [i.notes for i in items if i.notes]
                if notes:
                    self.emit(f"- **Notes**: {notes[0]}")
                self.emit("")
        if ctx.profile.compliance:
            self.emit("### Required Compliance for This Vertical", "")
            for req in ctx.profile.compliance:
                found = any(req.lower() in c.framework.lower() for c in ctx.compliance)
                self.emit(f"- {req}: {'Mentioned' if found else 'Not found'}")
            self.emit("")

    def deployment(self) -> None:
        caps = self.ctx.capabilities
        self.emit("## Deployment & Performance", "")
        deploy = uniq(
            c.normalized for c in caps
            # match on the raw name; normalization strips the hyphen from "self-hosted"
            if c.category == "Performance" or any(k in c.name.lower() for k in ("deployment", "self-hosted", "cloud"))
        )
        if deploy:
            self.emit("### Deployment Options", "")
            self.emit(*(f"- {d}" for d in deploy))
            self.emit("")
        else:
            self.emit("_Deployment information not prominently featured in analyzed sources._", "")
        self.emit("### Performance & SLAs", "")
        perf = uniq(
            c.normalized for c in caps
            if c.category == "Performance" and any(k in c.normalized for k in ("sla", "latency", "uptime"))
        )
        if perf:
            self.emit(*(f"- {p}" for p in perf))
        else:
            self.emit("_Performance metrics and SLAs not explicitly mentioned in sources._")
        self.emit("")

    def gtm(self) -> None:
        self.emit("## GTM Motions & ICPs", "")
        gtm = uniq(
            c.normalized for c in self.ctx.capabilities
            if c.category == "Growth" or any(k in c.name.lower() for k in ("self-serve", "enterprise"))
        )
        if gtm:
            self.emit("### Go-to-Market Indicators", "")
            self.emit(*(f"- {g}" for g in gtm[:10]))
            self.emit("")
        else:
            self.emit("_No go-to-market signals detected in analyzed sources._", "")

    def roadmap(self) -> None:
        ctx = self.ctx
        self.emit("## Suggested Roadmap", "")
        gaps = self.findings_of(FindingKind.GAP)
        if gaps:
            self.emit("### Priority: Address Market Gaps", "")
            self.emit(*(f"1. {f.text}" for f in gaps[:5]))
            self.emit("")
        diffs = self.findings_of(FindingKind.DIFFERENTIATOR)
        if diffs:
            self.emit("### Opportunity: Leverage Differentiators", "")
            self.emit(*(f"- {f.text.removeprefix('Potential differentiator: ')}" for f in diffs[:5]))
            self.emit("")
        recs = self.findings_of(FindingKind.RECOMMENDATION)
        if recs:
            self.emit("### Compliance Requirements", "")
            self.emit(*(f"- {f.text}" for f in recs))
            self.emit("")

    def appendix(self) -> None:
        cited = uniq(self.cited)
        if not cited:
            return
        self.emit("## Sources", "")
        for sid in cited:
            s = self.ctx.sources[sid]
            self.emit(f"- [S{sid}] [{s.title or get_domain(s.url) or s.url}]({s.url})")
        self.emit("")


def render_markdown(ctx: ReportContext) -> str:
    r = _Renderer(ctx)
    r.emit(f"# {ctx.headline}", "")
    handlers: dict[str, Callable[[], None]] = {
        "exec": r.exec,
        "market": r.market,
        "competitors": r.competitors,
        "capabilities": r.capabilities,
        "pricing": r.pricing,
        "integrations": r.integrations,
        "security": r.security,
        "deployment": r.deployment,
        "gtm": r.gtm,
        "roadmap": r.roadmap,
    }
    for section in ctx.profile.sections:
        handler = handlers.get(section.id)
        if section.enabled and handler is not None:
            handler()
    r.appendix()
    return "\n".join(r.lines).rstrip() + "\n"
