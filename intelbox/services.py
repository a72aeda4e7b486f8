"""Shared business logic for the IntelBox API, CLI and job worker."""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from intelbox.config import Settings
from intelbox.db import get_session
from intelbox.guardrails import GuardrailReport
from intelbox.models import (
    TERMINAL_STATUSES, Finding, Job, JobStatus, Project, Report, Run, RunLog, RunStatus, Source,
)
from intelbox.orchestrator import append_log, run_orchestration
from intelbox.report import REPORT_FORMAT, load_report_context, render_markdown
from intelbox.scheduler import ScheduledTask
from intelbox.schemas import ProjectCreate, parse_finding_meta
from intelbox.utils import json_parse, utcnow
from intelbox.verticals import infer_vertical

log = logging.getLogger(__name__)

ORCHESTRATE_RUN = "ORCHESTRATE_RUN"
REVIEWED_HEADLINE = "Reviewed Competitive Analysis"

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def project_summary(proj: Project) -> dict:
    return {
        "id": proj.id, "name": proj.name, "category": proj.category,
        "industry": proj.industry, "sub_industry": proj.sub_industry,
        "description": proj.description,
        "keywords": json_parse(proj.keywords_json, []),
        "competitors": json_parse(proj.competitors_json, []),
        "target_segments": json_parse(proj.target_segments_json, []),
        "regions": json_parse(proj.regions_json, []),
        "vertical": infer_vertical(proj.industry, proj.sub_industry).key,
        "created_at": _iso(proj.created_at),
    }


def run_summary(run: Run) -> dict:
    return {
        "id": run.id, "project_id": run.project_id, "status": run.status,
        "last_note": run.last_note,
        "created_at": _iso(run.created_at),
        "started_at": _iso(run.started_at),
        "completed_at": _iso(run.completed_at),
    }


def log_summary(entry: RunLog) -> dict:
    return {"id": entry.id, "line": entry.line, "created_at": _iso(entry.created_at)}


def source_summary(src: Source) -> dict:
    return {
        "id": src.id, "url": src.url, "title": src.title, "domain": src.domain,
        "status": src.status, "notes": src.notes,
        "published_at": _iso(src.published_at),
        "fetched_at": _iso(src.fetched_at),
    }


def finding_summary(finding: Finding) -> dict:
    meta = parse_finding_meta(finding.meta_json)
    return {
        "id": finding.id, "run_id": finding.run_id, "kind": finding.kind,
        "text": finding.text, "confidence": finding.confidence,
        "citations": [int(c) for c in json_parse(finding.citations_json, [])],
        "approved": bool(finding.approved),
        "reviewer_notes": finding.reviewer_notes,
        "meta": meta.model_dump() if meta is not None else None,
    }


def report_summary(report: Report) -> dict:
    return {
        "id": report.id, "run_id": report.run_id, "project_id": report.project_id,
        "headline": report.headline, "body": report.body, "format": report.format,
        "approved": bool(report.approved), "created_at": _iso(report.created_at),
    }


def job_summary(job: Job) -> dict:
    return {
        "id": job.id, "kind": job.kind, "status": job.status,
        "run_id": json_parse(job.payload_json, {}).get("run_id"),
        "last_error": job.last_error,
    }


def guardrail_summary(report: GuardrailReport) -> dict:
    issues = report.issues + report.finding_issues
    return {
        "summary": report.summary,
        "issues": [
            {"code": i.code, "level": i.level, "message": i.message, "finding_id": i.finding_id}
            for i in issues
        ],
    }


def settings_summary(settings: Settings) -> dict:
    return {
        "search_provider": settings.search_provider,
        "configured_keys": sorted(k for k, v in settings.api_keys.items() if v),
        "staleness_days": settings.staleness_days,
    }


def task_summary(task: ScheduledTask) -> dict:
    return {
        "id": task.id, "type": task.type, "project_id": task.project_id,
        "scheduled_for": task.scheduled_for.isoformat(), "priority": task.priority,
    }


# ---------------------------------------------------------------------------
# Projects & runs
# ---------------------------------------------------------------------------


def create_project(session: Session, body: ProjectCreate) -> Project:
    proj = Project(
        name=body.name,
        category=body.category,
        industry=body.industry,
        sub_industry=body.sub_industry,
        description=body.description,
        keywords_json=json.dumps(body.keywords),
        competitors_json=json.dumps(body.competitors),
        target_segments_json=json.dumps(body.target_segments),
        regions_json=json.dumps(body.regions),
    )
    session.add(proj)
    session.commit()
    log.info("Created project %s (%s)", proj.id, proj.name)
    return proj


def enqueue_run(session: Session, run_id: int) -> Job:
    job = Job(kind=ORCHESTRATE_RUN, payload_json=json.dumps({"run_id": run_id}))
    session.add(job)
    session.commit()
    log.info("Enqueued run %s as job %s", run_id, job.id)
    return job


def start_run(session: Session, proj: Project) -> tuple[Run, Job]:
    run = Run(project_id=proj.id, status=RunStatus.NEW.value)
    session.add(run)
    session.commit()
    return run, enqueue_run(session, run.id)


def cancel_run(session: Session, run: Run) -> bool:
    """Mark a NEW or in-flight run SKIPPED. Terminal runs are left alone."""
    if run.status in TERMINAL_STATUSES:
        return False
    run.status = RunStatus.SKIPPED.value
    run.last_note = "Cancelled"
    run.completed_at = utcnow()
    session.commit()
    append_log(session, run.id, "Run cancelled")
    return True


def rerun(session: Session, run: Run) -> tuple[Run, Job]:
    """Fresh Run for the same project; the prior run is never resumed."""
    proj = session.get(Project, run.project_id)
    new_run, job = start_run(session, proj)
    log.info("Re-running project %s: run %s -> %s", run.project_id, run.id, new_run.id)
    return new_run, job


# ---------------------------------------------------------------------------
# Job worker
# ---------------------------------------------------------------------------


async def process_next_job(
    session_factory: Callable[[], Session] = get_session,
    orchestrate: Callable[[int], Awaitable[Any]] = run_orchestration,
) -> dict | None:
    """Claim the oldest PENDING job and run it to DONE or ERROR."""
    session = session_factory()
    try:
        job = session.execute(
            select(Job).where(Job.status == JobStatus.PENDING.value).order_by(Job.created_at, Job.id)
        ).scalars().first()
        if job is None:
            return None
        job.status = JobStatus.RUNNING.value
        session.commit()

        run_id = json_parse(job.payload_json, {}).get("run_id")
        try:
            if job.kind != ORCHESTRATE_RUN or run_id is None:
                raise ValueError(f"Unsupported job: {job.kind}")
            await orchestrate(int(run_id))
        except Exception as exc:
            log.warning("Job %s failed: %s", job.id, exc)
            job.status = JobStatus.ERROR.value
            job.last_error = str(exc) or type(exc).__name__
        else:
            job.status = JobStatus.DONE.value
        session.commit()
        return job_summary(job)
    finally:
        session.close()


def list_jobs(session: Session, status: str | None = None, limit: int = 200) -> list[Job]:
    stmt = select(Job).order_by(Job.created_at.desc(), Job.id.desc()).limit(limit)
    if status:
        stmt = stmt.where(Job.status == status.upper())
    return list(session.execute(stmt).scalars())


def cancel_job(session: Session, job: Job) -> bool:
    """Only PENDING jobs can be cancelled; they become SKIPPED."""
    if job.status != JobStatus.PENDING:
        return False
    job.status = JobStatus.SKIPPED.value
    session.commit()
    log.info("Cancelled job %s", job.id)
    return True


def retry_job(session: Session, job: Job) -> Job | None:
    """Clone *job* into a new PENDING job. Returns ``None`` while it is RUNNING."""
    if job.status == JobStatus.RUNNING:
        return None
    clone = Job(kind=job.kind, payload_json=job.payload_json)
    session.add(clone)
    session.commit()
    log.info("Retrying job %s as job %s", job.id, clone.id)
    return clone


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------


def approve_finding(session: Session, finding: Finding, approved: bool = True, notes: str | None = None) -> Finding:
    finding.approved = approved
    if notes is not None:
        finding.reviewer_notes = notes
    session.commit()
    return finding


def set_citations(session: Session, finding: Finding, citations: list[int]) -> Finding:
    """Replace a finding's citations; every id must be a source of the same run."""
    valid = set(session.execute(select(Source.id).where(Source.run_id == finding.run_id)).scalars())
    unknown = [c for c in citations if c not in valid]
    if unknown:
        raise ValueError(f"Unknown source ids for run {finding.run_id}: {unknown}")
    finding.citations_json = json.dumps(list(dict.fromkeys(citations)))
    session.commit()
    return finding


def latest_report(session: Session, run_id: int) -> Report | None:
    return session.execute(
        select(Report).where(Report.run_id == run_id).order_by(Report.created_at.desc(), Report.id.desc())
    ).scalars().first()


def rebuild_report(session: Session, run: Run) -> Report:
    """Render approved findings into a new, approved report."""
    proj = session.get(Project, run.project_id)
    profile = infer_vertical(proj.industry, proj.sub_industry)
    ctx = load_report_context(session, run, profile, REVIEWED_HEADLINE, approved_only=True)
    report = Report(
        project_id=run.project_id,
        run_id=run.id,
        headline=REVIEWED_HEADLINE,
        body=render_markdown(ctx),
        format=REPORT_FORMAT,
        approved=True,
    )
    session.add(report)
    session.commit()
    log.info("Rebuilt report %s for run %s from %d approved findings", report.id, run.id, len(ctx.findings))
    return report
