"""Change detection between two runs of the same project."""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Literal

from sqlalchemy import select
from sqlalchemy.orm import Session

from intelbox.models import Finding, FindingKind, Source
from intelbox.schemas import RiskMeta, dump_finding_meta
from intelbox.utils import normalize_whitespace

log = logging.getLogger(__name__)

HASH_SAMPLE_CHARS = 2000
MAJOR_UPDATE_THRESHOLD = 5

Severity = Literal["low", "medium", "high"]


def content_hash(content: str | None) -> str:
    sample = normalize_whitespace((content or "")[:HASH_SAMPLE_CHARS])
    return hashlib.sha256(sample.encode("utf-8")).hexdigest()


@dataclass
class SourceRef:
    url: str
    title: str
    change_type: Literal["content", "title", "both"] | None = None


@dataclass
class SourceChanges:
    added: list[SourceRef] = field(default_factory=list)
    removed: list[SourceRef] = field(default_factory=list)
    modified: list[SourceRef] = field(default_factory=list)
    unchanged: list[SourceRef] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.added) + len(self.removed) + len(self.modified)

    def counts(self) -> dict[str, int]:
        return {
            "added": len(self.added),
            "removed": len(self.removed),
            "modified": len(self.modified),
            "unchanged": len(self.unchanged),
        }


@dataclass
class ChangeSummary:
    summary: str
    severity: Severity
    highlights: list[str]


@dataclass
class Alert:
    type: Literal["NEW_COMPETITOR", "COMPETITOR_REMOVED", "MAJOR_UPDATE"]
    message: str
    severity: Severity
    details: dict[str, Any] = field(default_factory=dict)


def _snapshots(session: Session, run_id: int) -> dict[str, tuple[str, str]]:
    rows = session.execute(select(Source).where(Source.run_id == run_id).order_by(Source.id)).scalars()
    return {s.url: (s.title or "", content_hash(s.content)) for s in rows}


def detect_source_changes(session: Session, original_run_id: int, new_run_id: int) -> SourceChanges:
    original = _snapshots(session, original_run_id)
    current = _snapshots(session, new_run_id)
    changes = SourceChanges()

    for url, (title, digest) in original.items():
        if url not in current:
            changes.removed.append(SourceRef(url, title))
            continue
        new_title, new_digest = current[url]
        title_changed = title != new_title
        content_changed = digest != new_digest
        if title_changed and content_changed:
            changes.modified.append(SourceRef(url, new_title, "both"))
        elif title_changed:
            changes.modified.append(SourceRef(url, new_title, "title"))
        elif content_changed:
            changes.modified.append(SourceRef(url, new_title, "content"))
        else:
            changes.unchanged.append(SourceRef(url, title))

    for url, (title, _) in current.items():
        if url not in original:
            changes.added.append(SourceRef(url, title))
    return changes


def _plural(n: int, word: str) -> str:
    return f"{n} {word}{'s' if n != 1 else ''}"


def generate_change_summary(changes: SourceChanges) -> ChangeSummary:
    total = changes.total
    if total == 0:
        return ChangeSummary("No changes detected in competitive landscape", "low", [])

    severity: Severity = "low"
    highlights: list[str] = []
    if changes.added:
        highlights.append(f"{_plural(len(changes.added), 'new competitor source')} found")
        severity = "medium"
    if changes.removed:
        highlights.append(f"{_plural(len(changes.removed), 'source')} removed")
        severity = "medium"
    if changes.modified:
        highlights.append(f"{_plural(len(changes.modified), 'source')} updated")
        severity = "high" if len(changes.modified) > MAJOR_UPDATE_THRESHOLD else "medium"

    if total > 10:
        severity = "high"
    elif total > 3:
        severity = "medium"

    summary = f"Detected {_plural(total, 'change')} in competitive intelligence"
    return ChangeSummary(summary, severity, highlights)


def store_change_detection(
    session: Session,
    original_run_id: int,
    new_run_id: int,
    changes: SourceChanges,
) -> Finding:
    """Persist the diff as a RISK finding on the newer run."""
    result = generate_change_summary(changes)
    finding = Finding(
        run_id=new_run_id,
        kind=FindingKind.RISK.value,
        text=result.summary,
        confidence=0.8,
        citations_json="[]",
        meta_json=dump_finding_meta(RiskMeta(
            original_run_id=original_run_id,
            severity=result.severity,
            highlights=result.highlights,
            counts=changes.counts(),
        )),
    )
    session.add(finding)
    session.commit()
    log.info("Stored change detection for run %s vs %s: %s", new_run_id, original_run_id, result.summary)
    return finding


def check_for_alerts(changes: SourceChanges) -> list[Alert]:
    alerts: list[Alert] = []
    if changes.added:
        n = len(changes.added)
        alerts.append(Alert(
            "NEW_COMPETITOR",
            f"{_plural(n, 'new competitor source')} detected",
            "high" if n > 3 else "medium",
            {"sources": [{"url": s.url, "title": s.title} for s in changes.added[:5]]},
        ))
    if changes.removed:
        alerts.append(Alert(
            "COMPETITOR_REMOVED",
            f"{_plural(len(changes.removed), 'competitor source')} no longer available",
            "medium",
            {"sources": [{"url": s.url, "title": s.title} for s in changes.removed[:5]]},
        ))
    if len(changes.modified) > MAJOR_UPDATE_THRESHOLD:
        alerts.append(Alert(
            "MAJOR_UPDATE",
            f"Significant activity detected: {len(changes.modified)} sources updated",
            "high",
            {
                "total_modified": len(changes.modified),
                "sample_sources": [{"url": s.url, "title": s.title} for s in changes.modified[:3]],
            },
        ))
    return alerts
