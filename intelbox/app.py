from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Generator

from fastapi import Depends, FastAPI, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from intelbox import services
from intelbox.config import Settings, SettingsCache, SettingsLoader
from intelbox.db import get_session, init_db
from intelbox.guardrails import evaluate as evaluate_guardrails
from intelbox.models import Finding, Job, Project, Run, RunLog, Source
from intelbox.scheduler import ScheduledTask, TaskScheduler
from intelbox.schemas import (
    FindingApprove,
    FindingCitationsUpdate,
    FindingOut,
    GuardrailReportOut,
    JobOut,
    ProjectCreate,
    ProjectOut,
    ReportOut,
    RunLogOut,
    RunOut,
    SettingsIn,
    SettingsOut,
    SourceOut,
    TaskCreate,
    TaskOut,
)
from intelbox.utils import as_utc, utcnow

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not getattr(app.state, "skip_init_db", False):
        init_db()
    app.state.settings_loader = SettingsLoader(SettingsCache(), get_session)
    app.state.scheduler = TaskScheduler(session_factory=get_session)
    if getattr(app.state, "start_scheduler", True):
        app.state.scheduler.start()
    yield
    await app.state.scheduler.stop()


app = FastAPI(
    title="IntelBox",
    version="0.1.0",
    description=(
        "Competitive-intelligence run pipeline. Create projects, start runs, "
        "review findings and read the generated Markdown reports. "
        "All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Projects", "description": "Create and list analysis projects."},
        {"name": "Runs", "description": "Start, cancel, re-run and inspect pipeline runs."},
        {"name": "Review", "description": "Approve findings, fix citations and rebuild reports."},
        {"name": "Jobs", "description": "Submit-to-queue worker for orchestration jobs."},
        {"name": "Scheduler", "description": "In-memory task queue and project monitoring."},
        {"name": "Settings", "description": "Search provider, API keys and staleness threshold."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_scheduler(request: Request) -> TaskScheduler:
    return request.app.state.scheduler


def get_settings_loader(request: Request) -> SettingsLoader:
    return request.app.state.settings_loader


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


# ---------------------------------------------------------------------------
# Routes: Projects
# ---------------------------------------------------------------------------


@app.post("/api/projects", response_model=ProjectOut, status_code=201,
          tags=["Projects"], summary="Create a project")
async def create_project(body: ProjectCreate, session: Session = Depends(db_session)):
    return services.project_summary(services.create_project(session, body))


@app.get("/api/projects", response_model=list[ProjectOut],
         tags=["Projects"], summary="List projects")
async def list_projects(session: Session = Depends(db_session)):
    projects = session.execute(select(Project).order_by(Project.id)).scalars().all()
    return [services.project_summary(p) for p in projects]


@app.get("/api/projects/{project_id}", response_model=ProjectOut,
         tags=["Projects"], summary="Get a project")
async def get_project(project_id: int, session: Session = Depends(db_session)):
    return services.project_summary(_get_or_404(session, Project, project_id, "Project"))


@app.get("/api/projects/{project_id}/runs", response_model=list[RunOut],
         tags=["Runs"], summary="List runs of a project, newest first")
async def list_runs(project_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, Project, project_id, "Project")
    runs = session.execute(
        select(Run).where(Run.project_id == project_id).order_by(Run.id.desc())
    ).scalars().all()
    return [services.run_summary(r) for r in runs]


# ---------------------------------------------------------------------------
# Routes: Runs
# ---------------------------------------------------------------------------


@app.post("/api/projects/{project_id}/runs", response_model=RunOut, status_code=202,
          tags=["Runs"], summary="Create a run and enqueue it for the job worker")
async def start_run(project_id: int, session: Session = Depends(db_session)):
    proj = _get_or_404(session, Project, project_id, "Project")
    run, _ = services.start_run(session, proj)
    return services.run_summary(run)


@app.get("/api/runs/{run_id}", response_model=RunOut,
         tags=["Runs"], summary="Get run status")
async def get_run(run_id: int, session: Session = Depends(db_session)):
    return services.run_summary(_get_or_404(session, Run, run_id, "Run"))


@app.get("/api/runs/{run_id}/logs", response_model=list[RunLogOut],
         tags=["Runs"], summary="Run log lines in insertion order")
async def get_run_logs(run_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, Run, run_id, "Run")
    entries = session.execute(
        select(RunLog).where(RunLog.run_id == run_id).order_by(RunLog.id)
    ).scalars().all()
    return [services.log_summary(e) for e in entries]


@app.post("/api/runs/{run_id}/cancel", response_model=RunOut,
          tags=["Runs"], summary="Cancel a run (marks it SKIPPED)")
async def cancel_run(run_id: int, session: Session = Depends(db_session)):
    run = _get_or_404(session, Run, run_id, "Run")
    if not services.cancel_run(session, run):
        raise HTTPException(409, f"Run already {run.status}")
    return services.run_summary(run)


@app.post("/api/runs/{run_id}/rerun", response_model=RunOut, status_code=202,
          tags=["Runs"], summary="Start a fresh run for the same project")
async def rerun(run_id: int, session: Session = Depends(db_session)):
    run = _get_or_404(session, Run, run_id, "Run")
    new_run, _ = services.rerun(session, run)
    return services.run_summary(new_run)


@app.get("/api/runs/{run_id}/sources", response_model=list[SourceOut],
         tags=["Runs"], summary="Sources discovered by a run")
async def list_sources(run_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, Run, run_id, "Run")
    sources = session.execute(
        select(Source).where(Source.run_id == run_id).order_by(Source.id)
    ).scalars().all()
    return [services.source_summary(s) for s in sources]


@app.get("/api/runs/{run_id}/guardrails", response_model=GuardrailReportOut,
         tags=["Runs"], summary="Evaluate guardrails for a run")
async def run_guardrails(
    run_id: int,
    session: Session = Depends(db_session),
    loader: SettingsLoader = Depends(get_settings_loader),
):
    _get_or_404(session, Run, run_id, "Run")
    report = evaluate_guardrails(session, run_id, loader.load().staleness_days)
    return services.guardrail_summary(report)


# ---------------------------------------------------------------------------
# Routes: Review
# ---------------------------------------------------------------------------


@app.get("/api/runs/{run_id}/findings", response_model=list[FindingOut],
         tags=["Review"], summary="Findings of a run")
async def list_findings(run_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, Run, run_id, "Run")
    findings = session.execute(
        select(Finding).where(Finding.run_id == run_id).order_by(Finding.id)
    ).scalars().all()
    return [services.finding_summary(f) for f in findings]


@app.post("/api/findings/{finding_id}/approve", response_model=FindingOut,
          tags=["Review"], summary="Approve or un-approve a finding")
async def approve_finding(finding_id: int, body: FindingApprove, session: Session = Depends(db_session)):
    finding = _get_or_404(session, Finding, finding_id, "Finding")
    services.approve_finding(session, finding, body.approved, body.reviewer_notes)
    return services.finding_summary(finding)


@app.put("/api/findings/{finding_id}/citations", response_model=FindingOut,
         tags=["Review"], summary="Replace a finding's citations")
async def set_citations(finding_id: int, body: FindingCitationsUpdate, session: Session = Depends(db_session)):
    finding = _get_or_404(session, Finding, finding_id, "Finding")
    try:
        services.set_citations(session, finding, body.citations)
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    return services.finding_summary(finding)


@app.get("/api/runs/{run_id}/report", response_model=ReportOut,
         tags=["Review"], summary="Latest report of a run")
async def get_report(run_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, Run, run_id, "Run")
    report = services.latest_report(session, run_id)
    if report is None:
        raise HTTPException(404, "Report not found")
    return services.report_summary(report)


@app.post("/api/runs/{run_id}/report/rebuild", response_model=ReportOut, status_code=201,
          tags=["Review"], summary="Render a reviewed report from approved findings")
async def rebuild_report(run_id: int, session: Session = Depends(db_session)):
    run = _get_or_404(session, Run, run_id, "Run")
    return services.report_summary(services.rebuild_report(session, run))


# ---------------------------------------------------------------------------
# Routes: Jobs
# ---------------------------------------------------------------------------


@app.get("/api/jobs", response_model=list[JobOut],
         tags=["Jobs"], summary="List jobs, newest first")
async def list_jobs(status: str | None = None, session: Session = Depends(db_session)):
    return [services.job_summary(j) for j in services.list_jobs(session, status)]


@app.post("/api/jobs/process-next", response_model=JobOut | None,
          tags=["Jobs"], summary="Run the oldest pending job to completion")
async def process_next_job():
    return await services.process_next_job()


@app.post("/api/jobs/{job_id}/cancel", response_model=JobOut,
          tags=["Jobs"], summary="Cancel a pending job (marks it SKIPPED)")
async def cancel_job(job_id: int, session: Session = Depends(db_session)):
    job = _get_or_404(session, Job, job_id, "Job")
    if not services.cancel_job(session, job):
        raise HTTPException(400, "Only pending jobs can be cancelled")
    return services.job_summary(job)


@app.post("/api/jobs/{job_id}/retry", response_model=JobOut, status_code=201,
          tags=["Jobs"], summary="Re-enqueue a job's payload as a new pending job")
async def retry_job(job_id: int, session: Session = Depends(db_session)):
    job = _get_or_404(session, Job, job_id, "Job")
    clone = services.retry_job(session, job)
    if clone is None:
        raise HTTPException(400, "Job running")
    return services.job_summary(clone)


# ---------------------------------------------------------------------------
# Routes: Scheduler
# ---------------------------------------------------------------------------


@app.get("/api/scheduler/tasks", response_model=list[TaskOut],
         tags=["Scheduler"], summary="Pending scheduled tasks")
async def list_tasks(scheduler: TaskScheduler = Depends(get_scheduler)):
    return [services.task_summary(t) for t in scheduler.tasks()]


@app.post("/api/scheduler/tasks", response_model=TaskOut, status_code=201,
          tags=["Scheduler"], summary="Schedule a task")
async def schedule_task(body: TaskCreate, scheduler: TaskScheduler = Depends(get_scheduler)):
    if body.scheduled_for:
        try:
            when = as_utc(datetime.fromisoformat(body.scheduled_for.replace("Z", "+00:00")))
        except ValueError:
            raise HTTPException(400, "scheduled_for must be ISO-8601")
    else:
        when = utcnow()
    task = ScheduledTask(
        type=body.type, scheduled_for=when, priority=body.priority,
        project_id=body.project_id, data=body.data,
    )
    scheduler.schedule_task(task)
    return services.task_summary(task)


@app.delete("/api/scheduler/tasks/{task_id}",
            tags=["Scheduler"], summary="Cancel a scheduled task")
async def cancel_task(task_id: str, scheduler: TaskScheduler = Depends(get_scheduler)):
    if not scheduler.cancel_task(task_id):
        raise HTTPException(404, "Task not found")
    return {"ok": True}


@app.get("/api/scheduler/next",
         tags=["Scheduler"], summary="Time of the next scheduled task")
async def next_task_time(scheduler: TaskScheduler = Depends(get_scheduler)):
    when = scheduler.get_next_task_time()
    return {"next_task_time": when.isoformat() if when else None}


@app.post("/api/projects/{project_id}/monitoring", response_model=TaskOut, status_code=201,
          tags=["Scheduler"], summary="Enable weekly monitoring for a project")
async def enable_monitoring(
    project_id: int,
    session: Session = Depends(db_session),
    scheduler: TaskScheduler = Depends(get_scheduler),
):
    _get_or_404(session, Project, project_id, "Project")
    task_id = scheduler.schedule_project_monitoring(project_id)
    task = next(t for t in scheduler.tasks() if t.id == task_id)
    return services.task_summary(task)


@app.delete("/api/projects/{project_id}/monitoring",
            tags=["Scheduler"], summary="Disable monitoring for a project")
async def disable_monitoring(project_id: int, scheduler: TaskScheduler = Depends(get_scheduler)):
    return {"cancelled": scheduler.cancel_project_monitoring(project_id)}


# ---------------------------------------------------------------------------
# Routes: Settings
# ---------------------------------------------------------------------------


@app.get("/api/settings", response_model=SettingsOut,
         tags=["Settings"], summary="Current settings (API keys are never returned)")
async def get_settings(loader: SettingsLoader = Depends(get_settings_loader)):
    return services.settings_summary(loader.load())


@app.put("/api/settings", response_model=SettingsOut,
         tags=["Settings"], summary="Update settings")
async def update_settings(body: SettingsIn, loader: SettingsLoader = Depends(get_settings_loader)):
    settings = Settings(
        search_provider=(body.search_provider or "").lower() or None,
        api_keys=body.api_keys,
        staleness_days=body.staleness_days,
    )
    loader.save(settings)
    return services.settings_summary(loader.load())


def main():
    import uvicorn
    uvicorn.run("intelbox.app:app", host="127.0.0.1", port=8002, reload=True)


if __name__ == "__main__":
    main()
