"""In-memory task scheduler for monitoring re-runs, alerts and cleanup.

Tasks are kept in a heap ordered by ``(scheduled_for, -priority, seq)`` and
are lost on process restart. The poll loop drains ready tasks every
``poll_seconds`` and executes them in batches of ``concurrency``.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from intelbox.config import get_app_config
from intelbox.db import get_session
from intelbox.models import Run, RunLog, RunStatus
from intelbox.monitoring import check_for_alerts, detect_source_changes, store_change_detection
from intelbox.orchestrator import run_orchestration
from intelbox.utils import as_utc, utcnow

log = logging.getLogger(__name__)

AUTO_RERUN = "AUTO_RERUN"
EMAIL_NOTIFICATION = "EMAIL_NOTIFICATION"
CLEANUP = "CLEANUP"
TASK_TYPES = (AUTO_RERUN, EMAIL_NOTIFICATION, CLEANUP)

MIN_RERUN_INTERVAL = timedelta(days=7)
LOG_RETENTION = timedelta(days=30)
MONITORING_HOUR_UTC = 9

CreditGate = Callable[[int], Awaitable[bool]]
Notifier = Callable[[dict[str, Any]], Awaitable[None]]
Orchestrate = Callable[[int], Awaitable[Any]]


@dataclass
class ScheduledTask:
    type: str
    scheduled_for: datetime
    priority: int = 1
    project_id: int | None = None
    run_id: int | None = None
    data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"task_{uuid.uuid4().hex[:12]}")


async def allow_all(project_id: int) -> bool:
    return True


async def log_notifier(payload: dict[str, Any]) -> None:
    log.info(
        "Alert for project %s [%s/%s]: %s",
        payload.get("project_id"), payload.get("type"), payload.get("severity"), payload.get("message"),
    )


def next_monitoring_time(now: datetime) -> datetime:
    """09:00 UTC on the day after *now*."""
    return (as_utc(now) + timedelta(days=1)).replace(hour=MONITORING_HOUR_UTC, minute=0, second=0, microsecond=0)


class TaskScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session] = get_session,
        orchestrate: Orchestrate = run_orchestration,
        credit_gate: CreditGate = allow_all,
        notifier: Notifier = log_notifier,
        clock: Callable[[], datetime] = utcnow,
        poll_seconds: float | None = None,
        concurrency: int | None = None,
    ):
        cfg = get_app_config()
        self._session_factory = session_factory
        self._orchestrate = orchestrate
        self._credit_gate = credit_gate
        self._notifier = notifier
        self._clock = clock
        self.poll_seconds = poll_seconds if poll_seconds is not None else cfg.scheduler_poll_seconds
        self.concurrency = concurrency or cfg.scheduler_concurrency
        self._heap: list[tuple[datetime, int, int, ScheduledTask]] = []
        self._seq = itertools.count()
        self._loop_task: asyncio.Task | None = None
        self._running = False

    # -- queue --------------------------------------------------------------

    def schedule_task(self, task: ScheduledTask) -> str:
        if task.type not in TASK_TYPES:
            raise ValueError(f"Unknown task type: {task.type}")
        task.scheduled_for = as_utc(task.scheduled_for)
        heapq.heappush(self._heap, (task.scheduled_for, -task.priority, next(self._seq), task))
        log.info("Scheduled %s %s for %s", task.type, task.id, task.scheduled_for.isoformat())
        return task.id

    def cancel_task(self, task_id: str) -> bool:
        kept = [entry for entry in self._heap if entry[3].id != task_id]
        if len(kept) == len(self._heap):
            return False
        self._heap = kept
        heapq.heapify(self._heap)
        log.info("Cancelled task %s", task_id)
        return True

    def get_next_task_time(self) -> datetime | None:
        return self._heap[0][0] if self._heap else None

    def tasks(self) -> list[ScheduledTask]:
        return [entry[3] for entry in sorted(self._heap)]

    def __len__(self) -> int:
        return len(self._heap)

    def schedule_project_monitoring(self, project_id: int) -> str:
        return self.schedule_task(ScheduledTask(
            type=AUTO_RERUN,
            project_id=project_id,
            scheduled_for=next_monitoring_time(self._clock()),
            data={"recurring": True},
        ))

    def cancel_project_monitoring(self, project_id: int) -> int:
        ids = [t.id for t in self.tasks() if t.type == AUTO_RERUN and t.project_id == project_id]
        for task_id in ids:
            self.cancel_task(task_id)
        return len(ids)

    # -- processing -----------------------------------------------------------

    def _pop_ready(self) -> list[ScheduledTask]:
        now = as_utc(self._clock())
        ready: list[ScheduledTask] = []
        while self._heap and self._heap[0][0] <= now:
            ready.append(heapq.heappop(self._heap)[3])
        return ready

    async def tick(self) -> int:
        """Run every task that is due; returns the number executed."""
        ready = self._pop_ready()
        if ready:
            log.info("Processing %d ready tasks", len(ready))
        for i in range(0, len(ready), self.concurrency):
            batch = ready[i:i + self.concurrency]
            await asyncio.gather(*(self.execute_task(t) for t in batch))
        return len(ready)

    async def execute_task(self, task: ScheduledTask) -> None:
        log.info("Executing task %s (%s)", task.id, task.type)
        try:
            if task.type == AUTO_RERUN:
                await self._handle_auto_rerun(task)
            elif task.type == EMAIL_NOTIFICATION:
                await self._notifier({"project_id": task.project_id, "run_id": task.run_id, **task.data})
            elif task.type == CLEANUP:
                self.cleanup_old_logs()
        except Exception:
            log.exception("Task %s (%s) failed", task.id, task.type)

    async def _handle_auto_rerun(self, task: ScheduledTask) -> int | None:
        if task.project_id is None:
            return None
        project_id = task.project_id
        if task.data.get("recurring"):
            self.schedule_task(ScheduledTask(
                type=AUTO_RERUN,
                project_id=project_id,
                scheduled_for=as_utc(task.scheduled_for) + MIN_RERUN_INTERVAL,
                priority=task.priority,
                data=dict(task.data),
            ))

        if not await self._credit_gate(project_id):
            log.info("Insufficient credits for auto-rerun of project %s", project_id)
            return None

        session = self._session_factory()
        try:
            previous = session.execute(
                select(Run).where(Run.project_id == project_id).order_by(Run.created_at.desc(), Run.id.desc())
            ).scalars().first()
            if previous is None:
                return None
            age = as_utc(self._clock()) - as_utc(previous.created_at)
            if age < MIN_RERUN_INTERVAL:
                log.info(
                    "Skipping auto-rerun for project %s: last run was %.1f days ago",
                    project_id, age.total_seconds() / 86400,
                )
                return None
            new_run = Run(project_id=project_id, status=RunStatus.NEW.value)
            session.add(new_run)
            session.commit()
            previous_id, new_run_id = previous.id, new_run.id
        finally:
            session.close()

        log.info("Starting auto-rerun for project %s (run %s)", project_id, new_run_id)
        try:
            await self._orchestrate(new_run_id)
        except Exception:
            log.exception("Auto-rerun failed for project %s (run %s)", project_id, new_run_id)
            return new_run_id

        session = self._session_factory()
        try:
            changes = detect_source_changes(session, previous_id, new_run_id)
            store_change_detection(session, previous_id, new_run_id, changes)
            alerts = check_for_alerts(changes)
        finally:
            session.close()

        now = self._clock()
        for alert in alerts:
            self.schedule_task(ScheduledTask(
                type=EMAIL_NOTIFICATION,
                project_id=project_id,
                run_id=new_run_id,
                scheduled_for=now,
                priority=2 if alert.severity == "high" else 1,
                data={
                    "type": alert.type,
                    "message": alert.message,
                    "severity": alert.severity,
                    "details": alert.details,
                },
            ))
        return new_run_id

    def cleanup_old_logs(self) -> int:
        cutoff = as_utc(self._clock()) - LOG_RETENTION
        session = self._session_factory()
        try:
            # SQLite stores naive UTC values
            old_runs = select(Run.id).where(Run.created_at < cutoff.replace(tzinfo=None))
            result = session.execute(
                delete(RunLog).where(RunLog.run_id.in_(old_runs)).execution_options(synchronize_session=False)
            )
            session.commit()
        finally:
            session.close()
        log.info("Cleaned up %d old run logs", result.rowcount)
        return result.rowcount

    # -- loop -----------------------------------------------------------------

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.tick()
                await asyncio.sleep(self.poll_seconds)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Scheduler loop error")
                await asyncio.sleep(self.poll_seconds * 2)

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.get_running_loop().create_task(self._loop())
        log.info("Task scheduler started (poll=%.0fs)", self.poll_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        log.info("Task scheduler stopped")
