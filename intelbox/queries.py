from __future__ import annotations

import re
from dataclasses import dataclass, field

from intelbox.models import Project
from intelbox.utils import json_parse
from intelbox.verticals import VerticalProfile, infer_vertical

MAX_QUERIES = 20
MAX_DESCRIPTION_TERMS = 3
MAX_ACCENTS = 5


@dataclass
class QueryInputs:
    product_name: str = ""
    category: str = ""
    industry: str = ""
    sub_industry: str = ""
    description: str = ""
    keywords: list[str] = field(default_factory=list)
    competitors: list[str] = field(default_factory=list)
    target_segments: list[str] = field(default_factory=list)
    regions: list[str] = field(default_factory=list)

    @classmethod
    def from_project(cls, project: Project) -> QueryInputs:
        return cls(
            product_name=project.name or "",
            category=project.category or "",
            industry=project.industry or "",
            sub_industry=project.sub_industry or "",
            description=project.description or "",
            keywords=_str_list(project.keywords_json),
            competitors=_str_list(project.competitors_json),
            target_segments=_str_list(project.target_segments_json),
            regions=_str_list(project.regions_json),
        )

    @property
    def profile(self) -> VerticalProfile:
        return infer_vertical(self.industry, self.sub_industry)


def _str_list(raw: str | None) -> list[str]:
    value = json_parse(raw, [])
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v]


def _clean(values: list[str]) -> list[str]:
    return [v.strip() for v in values if v and v.strip()]


def build_queries(inputs: QueryInputs, profile: VerticalProfile | None = None) -> list[str]:
    """Ordered, de-duplicated search queries for a project (at most 20)."""
    profile = profile or inputs.profile
    queries: dict[str, None] = {}

    def push(value: str) -> None:
        value = re.sub(r"\s+", " ", value).strip()
        if value:
            queries.setdefault(value, None)

    product = inputs.product_name.strip()
    category = inputs.category.strip()
    keywords = _clean(inputs.keywords)
    segments = _clean(inputs.target_segments)
    competitors = _clean(inputs.competitors)
    description_terms = [
        t.strip() for t in re.split(r"[,.;]", inputs.description or "") if len(t.strip()) > 3
    ][:MAX_DESCRIPTION_TERMS]

    if product:
        push(f"{product} competitor analysis")
        push(f"{product} vs alternatives")
        push(f"{product} pricing comparison")
        push(f"{product} feature comparison")
        push(f"{product} market positioning")

    base_terms = " ".join([t for t in [category, *keywords] if t])
    if base_terms:
        for suffix in ("alternatives", "competitors", "reviews", "best tools"):
            push(f"{base_terms} {suffix}")

    for term in description_terms:
        if product:
            push(f"{product} {term} competitors")
            push(f"{product} {term} use cases")
        if category:
            push(f"{category} {term} tools")

    for segment in segments:
        if product:
            push(f"{product} for {segment}")
        if category:
            push(f"{category} tools for {segment}")

    for competitor in competitors:
        push(f"{competitor} features")
        push(f"{competitor} pricing")
        push(f"{competitor} integrations")
        push(f"{competitor} reviews")
        push(f"{competitor} vs {product or 'alternatives'}")

    industry = inputs.industry.strip()
    sub_industry = inputs.sub_industry.strip()
    if industry:
        push(f"{industry} market analysis")
        push(f"{industry} software competitors")
    if sub_industry:
        push(f"{sub_industry} platforms comparison")

    for region in _clean(inputs.regions):
        if product:
            push(f"{product} adoption in {region}")
        if category:
            push(f"{category} tools {region}")

    for accent in profile.query_accents[:MAX_ACCENTS]:
        if product:
            push(f"{product} {accent}")
        if category:
            push(f"{category} {accent}")

    if not queries:
        subject = product or category or "software"
        push(f"{subject} competitor analysis")
        push(f"{subject} market overview")

    return list(queries)[:MAX_QUERIES]
