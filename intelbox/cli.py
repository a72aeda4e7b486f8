from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import nullcontext
from typing import Any

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from intelbox import services
from intelbox.db import get_session, init_db, session_scope
from intelbox.models import Project, Run
from intelbox.orchestrator import run_orchestration
from intelbox.scheduler import TaskScheduler

app = typer.Typer(help="IntelBox competitive-intelligence run pipeline")
console = Console()


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=False)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    db: str | None = typer.Option(None, "--db", help="SQLite database path (default: $INTELBOX_DB)."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    ctx.obj = {"json_output": json_output, "db": db}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _init(ctx: typer.Context) -> None:
    init_db(ctx.obj.get("db") if ctx.obj else None)


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for key, value in payload.items():
        table.add_row(key, "-" if value is None else str(value))
    console.print(Panel(table, title=title, border_style="cyan"))


@app.command("run")
def run_command(
    ctx: typer.Context,
    project_id: int = typer.Argument(..., help="Project to analyse."),
) -> None:
    """Create a run for PROJECT_ID and execute it in the foreground."""
    _init(ctx)
    with session_scope() as session:
        proj = session.get(Project, project_id)
        if proj is None:
            raise typer.BadParameter(f"No project with id {project_id}")
        run = Run(project_id=proj.id)
        session.add(run)
        session.commit()
        run_id = run.id

    spinner = nullcontext() if _wants_json(ctx) else console.status(
        f"[bold cyan]Running pipeline for run {run_id}[/bold cyan]", spinner="dots",
    )
    with spinner:
        report_id = asyncio.run(run_orchestration(run_id))

    with session_scope() as session:
        payload = services.run_summary(session.get(Run, run_id))
    payload["report_id"] = report_id
    _print(f"run {run_id}", payload, ctx)


@app.command("report")
def report_command(
    ctx: typer.Context,
    run_id: int = typer.Argument(..., help="Run whose latest report to print."),
) -> None:
    """Print the latest Markdown report of a run."""
    _init(ctx)
    with session_scope() as session:
        report = services.latest_report(session, run_id)
        if report is None:
            raise typer.BadParameter(f"No report for run {run_id}")
        body = report.body
    typer.echo(body)


@app.command("worker")
def worker_command(
    ctx: typer.Context,
    once: bool = typer.Option(False, "--once", help="Process at most one job and exit."),
    poll: float = typer.Option(5.0, help="Seconds to wait when the queue is empty."),
) -> None:
    """Drain the job queue."""
    _init(ctx)

    async def _loop() -> None:
        while True:
            job = await services.process_next_job(get_session)
            if job is not None:
                _print(f"job {job['id']}", job, ctx)
            if once:
                return
            if job is None:
                await asyncio.sleep(poll)

    asyncio.run(_loop())


@app.command("scheduler")
def scheduler_command(
    ctx: typer.Context,
    monitor: list[int] = typer.Option([], "--monitor", help="Project ids to enable weekly monitoring for."),
) -> None:
    """Run the in-memory task scheduler until interrupted."""
    _init(ctx)

    async def _main() -> None:
        scheduler = TaskScheduler(session_factory=get_session)
        for project_id in monitor:
            scheduler.schedule_project_monitoring(project_id)
        scheduler.start()
        try:
            await asyncio.Event().wait()
        finally:
            await scheduler.stop()

    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        console.print("[yellow]Scheduler stopped[/yellow]")


@app.command("serve")
def serve_command(
    ctx: typer.Context,
    host: str = typer.Option("127.0.0.1"),
    port: int = typer.Option(8002),
) -> None:
    """Serve the HTTP API."""
    import uvicorn
    if ctx.obj and ctx.obj.get("db"):
        os.environ["INTELBOX_DB"] = ctx.obj["db"]
    uvicorn.run("intelbox.app:app", host=host, port=port)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
