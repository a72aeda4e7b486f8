"""Finding synthesis over all entities extracted in a run."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, Sequence

from intelbox.models import FindingKind
from intelbox.schemas import (
    CommonFeatureMeta, DifferentiatorMeta, FindingMeta, GapMeta, InsightMeta, RecommendationMeta,
)
from intelbox.utils import group_by, normalize_word, uniq
from intelbox.verticals import VerticalProfile

MAX_COMMON = 10
MAX_DIFFERENTIATORS = 10
MAX_COMMON_CITATIONS = 3
MIN_CAPS_FOR_DIFFERENTIATORS = 5
MIN_CAPS_FOR_GAPS = 3
PRICE_SPREAD_RATIO = 3
MANY_INTEGRATIONS = 20
CROWDED_MARKET = 10


class _Capability(Protocol):
    category: str
    normalized: str
    source_id: int | None


@dataclass
class FindingDraft:
    kind: FindingKind
    text: str
    confidence: float
    citations: list[int] = field(default_factory=list)
    meta: FindingMeta | None = None


@dataclass
class SynthesisInput:
    capabilities: Sequence[_Capability]
    source_ids: list[int]
    competitor_count: int = 0
    monthly_prices: list[float] = field(default_factory=list)
    integration_names: list[str] = field(default_factory=list)
    frameworks: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)


def capability_key(cap: _Capability) -> tuple[str, str]:
    return cap.category, cap.normalized.lower()


def common_confidence(occurrences: int) -> float:
    return min(0.9, 0.6 + occurrences * 0.05)


def _feature_findings(data: SynthesisInput) -> list[FindingDraft]:
    caps = list(data.capabilities)
    if not caps:
        return []
    first_source = data.source_ids[:1]
    groups = group_by(caps, capability_key)
    out: list[FindingDraft] = []

    ranked = sorted(groups.items(), key=lambda kv: len(kv[1]), reverse=True)
    for (category, norm), instances in [kv for kv in ranked if len(kv[1]) >= 2][:MAX_COMMON]:
        cited = uniq(c.source_id for c in instances if c.source_id is not None)[:MAX_COMMON_CITATIONS]
        out.append(FindingDraft(
            kind=FindingKind.COMMON_FEATURE,
            text=(
                f'{category}: "{norm}" appears across {len(instances)} sources, '
                "indicating this is a market standard."
            ),
            confidence=common_confidence(len(instances)),
            citations=cited or list(first_source),
            meta=CommonFeatureMeta(category=category, name=norm, occurrences=len(instances)),
        ))

    if len(caps) >= MIN_CAPS_FOR_DIFFERENTIATORS:
        rare = [kv for kv in groups.items() if len(kv[1]) == 1][:MAX_DIFFERENTIATORS]
        for (category, norm), (only,) in rare:
            out.append(FindingDraft(
                kind=FindingKind.DIFFERENTIATOR,
                text=(
                    f'Potential differentiator: {category}: "{norm}" appears uniquely in the market. '
                    "This could be a competitive advantage."
                ),
                confidence=0.6,
                citations=[only.source_id] if only.source_id is not None else list(first_source),
                meta=DifferentiatorMeta(category=category, name=norm),
            ))

    if data.keywords and len(caps) >= MIN_CAPS_FOR_GAPS:
        present = {normalize_word(c.normalized) for c in caps}
        for wanted in uniq(normalize_word(k) for k in data.keywords if k):
            if wanted and wanted not in present:
                out.append(FindingDraft(
                    kind=FindingKind.GAP,
                    text=(
                        f'Market gap: "{wanted}" was not found in competitor capabilities. '
                        "This could represent an opportunity or indicate it's not a priority for the market."
                    ),
                    confidence=0.65,
                    meta=GapMeta(keyword=wanted),
                ))
    return out


def _insights(data: SynthesisInput) -> list[FindingDraft]:
    out: list[FindingDraft] = []

    prices = [p for p in data.monthly_prices if p and p > 0]
    if prices:
        low, high = min(prices), max(prices)
        avg = sum(prices) / len(prices)
        if high / low > PRICE_SPREAD_RATIO:
            out.append(FindingDraft(
                kind=FindingKind.INSIGHT,
                text=(
                    f"Pricing analysis: Wide price range detected (${low:.0f} - ${high:.0f}/mo), "
                    f"suggesting multiple market segments. Average: ${avg:.0f}/mo."
                ),
                confidence=0.8,
                meta=InsightMeta(topic="pricing", statistics={
                    "min": low, "max": high, "avg": round(avg, 2), "plans": len(prices),
                }),
            ))

    unique_integrations = {n.lower() for n in data.integration_names}
    if len(unique_integrations) > MANY_INTEGRATIONS:
        out.append(FindingDraft(
            kind=FindingKind.INSIGHT,
            text=(
                f"Integration ecosystem: Found {len(unique_integrations)} unique integrations across "
                "competitors, indicating a mature integration market."
            ),
            confidence=0.75,
            meta=InsightMeta(topic="integrations", statistics={"unique": len(unique_integrations)}),
        ))

    frameworks = uniq(data.frameworks)
    if frameworks:
        out.append(FindingDraft(
            kind=FindingKind.INSIGHT,
            text=(
                f"Compliance landscape: {len(frameworks)} different compliance frameworks mentioned "
                f"({', '.join(frameworks)}), showing industry focus on security and compliance."
            ),
            confidence=0.8,
            meta=InsightMeta(topic="compliance", statistics={"frameworks": len(frameworks)}),
        ))

    if data.competitor_count > 0:
        density = (
            "indicating a crowded market" if data.competitor_count > CROWDED_MARKET
            else "suggesting moderate competition"
        )
        out.append(FindingDraft(
            kind=FindingKind.INSIGHT,
            text=f"Market landscape: Identified {data.competitor_count} competitors in this space, {density}.",
            confidence=0.7,
            meta=InsightMeta(topic="market", statistics={"competitors": data.competitor_count}),
        ))
    return out


def _recommendations(data: SynthesisInput, profile: VerticalProfile) -> list[FindingDraft]:
    mentioned = {f.lower() for f in data.frameworks}
    out = []
    for framework in profile.compliance:
        if any(framework.lower() in m for m in mentioned):
            continue
        out.append(FindingDraft(
            kind=FindingKind.RECOMMENDATION,
            text=(
                f"Compliance recommendation: {framework} is expected for "
                f"{profile.key.replace('_', ' ')} products but no analyzed source mentions it. "
                "Document your position on it early."
            ),
            confidence=0.5,
            meta=RecommendationMeta(framework=framework),
        ))
    return out


def synthesize(data: SynthesisInput, profile: VerticalProfile) -> list[FindingDraft]:
    """All findings for a run, in a stable order: features, insights, recommendations."""
    return _feature_findings(data) + _insights(data) + _recommendations(data, profile)
