"""Pydantic request/response schemas and structured finding metadata."""
from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator


# ---------------------------------------------------------------------------
# Finding metadata (one payload type per finding kind)
# ---------------------------------------------------------------------------


class CommonFeatureMeta(BaseModel):
    kind: Literal["COMMON_FEATURE"] = "COMMON_FEATURE"
    category: str
    name: str
    occurrences: int


class DifferentiatorMeta(BaseModel):
    kind: Literal["DIFFERENTIATOR"] = "DIFFERENTIATOR"
    category: str
    name: str


class GapMeta(BaseModel):
    kind: Literal["GAP"] = "GAP"
    keyword: str


class InsightMeta(BaseModel):
    kind: Literal["INSIGHT"] = "INSIGHT"
    topic: Literal["pricing", "integrations", "compliance", "market"]
    statistics: dict[str, Any] = {}


class RecommendationMeta(BaseModel):
    kind: Literal["RECOMMENDATION"] = "RECOMMENDATION"
    framework: str


class RiskMeta(BaseModel):
    """Change-detection result stored against the newer run."""
    kind: Literal["RISK"] = "RISK"
    original_run_id: int
    severity: Literal["low", "medium", "high"]
    highlights: list[str] = []
    counts: dict[str, int] = {}


FindingMeta = Annotated[
    Union[CommonFeatureMeta, DifferentiatorMeta, GapMeta, InsightMeta, RecommendationMeta, RiskMeta],
    Field(discriminator="kind"),
]

_META_ADAPTER: TypeAdapter[Any] = TypeAdapter(FindingMeta)


def parse_finding_meta(raw: str | None) -> FindingMeta | None:
    if not raw or raw == "{}":
        return None
    try:
        return _META_ADAPTER.validate_json(raw)
    except ValidationError:
        return None


def dump_finding_meta(meta: FindingMeta | None) -> str:
    return meta.model_dump_json() if meta is not None else "{}"


# ---------------------------------------------------------------------------
# Projects & runs
# ---------------------------------------------------------------------------


class ProjectCreate(BaseModel):
    name: str
    category: str = ""
    industry: str = ""
    sub_industry: str = ""
    description: str = ""
    keywords: list[str] = []
    competitors: list[str] = []
    target_segments: list[str] = []
    regions: list[str] = []

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be empty")
        return v


class ProjectOut(BaseModel):
    id: int
    name: str
    category: str
    industry: str
    sub_industry: str
    description: str
    keywords: list[str] = []
    competitors: list[str] = []
    target_segments: list[str] = []
    regions: list[str] = []
    vertical: str
    created_at: str


class RunOut(BaseModel):
    id: int
    project_id: int
    status: str
    last_note: str | None = None
    created_at: str
    started_at: str | None = None
    completed_at: str | None = None


class RunLogOut(BaseModel):
    id: int
    line: str
    created_at: str


class SourceOut(BaseModel):
    id: int
    url: str
    title: str | None = None
    domain: str | None = None
    status: str
    published_at: str | None = None
    fetched_at: str | None = None
    notes: str | None = None


class FindingOut(BaseModel):
    id: int
    run_id: int
    kind: str
    text: str
    confidence: float
    citations: list[int] = []
    approved: bool
    reviewer_notes: str | None = None
    meta: dict[str, Any] | None = None


class FindingApprove(BaseModel):
    approved: bool = True
    reviewer_notes: str | None = None


class FindingCitationsUpdate(BaseModel):
    citations: list[int]


class ReportOut(BaseModel):
    id: int
    run_id: int
    project_id: int
    headline: str
    body: str
    format: str
    approved: bool
    created_at: str


class GuardrailIssueOut(BaseModel):
    code: str
    level: Literal["ERROR", "WARN"]
    message: str
    finding_id: int | None = None


class GuardrailReportOut(BaseModel):
    summary: str
    issues: list[GuardrailIssueOut] = []


class JobOut(BaseModel):
    id: int
    kind: str
    status: str
    run_id: int | None = None
    last_error: str | None = None


# ---------------------------------------------------------------------------
# Settings & scheduler
# ---------------------------------------------------------------------------


class SettingsIn(BaseModel):
    search_provider: str | None = None
    api_keys: dict[str, str] = {}
    staleness_days: int = Field(default=180, ge=1, le=3650)


class SettingsOut(BaseModel):
    search_provider: str | None = None
    configured_keys: list[str] = []
    staleness_days: int


class TaskCreate(BaseModel):
    type: Literal["AUTO_RERUN", "EMAIL_NOTIFICATION", "CLEANUP"]
    project_id: int | None = None
    scheduled_for: str | None = None  # ISO-8601, default now
    priority: int = 1
    data: dict[str, Any] = {}


class TaskOut(BaseModel):
    id: str
    type: str
    project_id: int | None = None
    scheduled_for: str
    priority: int
