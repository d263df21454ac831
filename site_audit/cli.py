"""Typer CLI for the site audit pipeline.

Provides commands to start, restart, cancel and delete audits, poll their
progress, render reports, manage recurring schedules and run the queue
worker.
"""

import json
import logging
import time
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from site_audit.errors import AuditPipelineError

console = Console()
app = typer.Typer(
    name="site-audit",
    help="Site audit pipeline -- queued crawls, recurring schedules & progress.",
    add_completion=False,
    no_args_is_help=True,
)

STATUS_STYLES = {
    "pending": "[yellow]pending[/yellow]",
    "in_progress": "[cyan]in progress[/cyan]",
    "completed": "[green]✔ completed[/green]",
    "failed": "[red]✘ failed[/red]",
}


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging level and format."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _get_app(config: Optional[str] = None):
    """Lazy-import and return an initialised AuditPipelineApp."""
    from site_audit.app import AuditPipelineApp
    pipeline = AuditPipelineApp(config_path=config)
    pipeline.initialize()
    return pipeline


def _fail(exc: Exception) -> None:
    console.print(f"[red]✘ {exc}[/red]")
    raise typer.Exit(code=1)


def _print_progress(payload: dict) -> None:
    table = Table(title="Audit " + payload["auditId"], show_header=True, header_style="bold magenta")
    table.add_column("Field", style="cyan", min_width=18)
    table.add_column("Value", max_width=60)
    table.add_row("Status", STATUS_STYLES.get(payload["status"], payload["status"]))
    table.add_row("Progress", f"{payload['progress']}%")
    table.add_row("Pages discovered", str(payload["pagesDiscovered"]))
    table.add_row("Pages processed", str(payload["pagesProcessed"]))
    if payload.get("error"):
        table.add_row("Error", payload["error"])
    console.print(table)


ConfigOption = typer.Option(None, "--config", "-c", help="Path to settings.yaml.")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")


# ------------------------------------------------------------------
# init-db
# ------------------------------------------------------------------
@app.command("init-db")
def init_db_command(
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Create the database tables."""
    _setup_logging(verbose)
    _get_app(config)
    console.print("[green]✔[/green] Database ready.")


# ------------------------------------------------------------------
# project
# ------------------------------------------------------------------
@app.command("add-project")
def add_project(
    name: str = typer.Argument(..., help="Project name."),
    url: str = typer.Argument(..., help="Site URL (e.g. https://example.com)."),
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Register a project (website) to audit."""
    _setup_logging(verbose)
    pipeline = _get_app(config)
    project = pipeline.store.create_project(name, url)
    console.print(f"[green]✔[/green] Project [bold]{project.id}[/bold] created for {url}")


# ------------------------------------------------------------------
# start / restart / cancel / delete
# ------------------------------------------------------------------
@app.command()
def start(
    project_id: str = typer.Argument(..., help="Project to audit."),
    url: Optional[str] = typer.Option(None, "--url", help="Override the project's URL."),
    max_pages: int = typer.Option(100, "--max-pages", help="Maximum pages to crawl."),
    max_depth: int = typer.Option(3, "--max-depth", help="Maximum link depth."),
    single_url: bool = typer.Option(False, "--single-url", help="Only audit the given URL."),
    wait: bool = typer.Option(
        False, "--wait", "-w",
        help="Run the crawl in this process. Without it the audit stays pending until `site-audit worker` starts.",
    ),
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Start a new audit for a project.

    Jobs are held in memory, so without --wait the queued job ends with this
    command. The audit stays PENDING until `site-audit worker` starts and
    requeues pending audits.
    """
    _setup_logging(verbose)
    pipeline = _get_app(config)
    options = {"max_pages": max_pages, "max_depth": max_depth, "crawl_single_url": single_url}
    try:
        audit_id = pipeline.lifecycle.start_audit(project_id, options, site_url=url)
    except AuditPipelineError as exc:
        _fail(exc)
    console.print(f"[green]✔[/green] Audit [bold]{audit_id}[/bold] queued.")
    if wait:
        pipeline.queue.run_pending()
        _print_progress(pipeline.lifecycle.get_progress(audit_id).to_dict())


@app.command()
def restart(
    audit_id: str = typer.Argument(..., help="Audit to restart."),
    wait: bool = typer.Option(
        False, "--wait", "-w",
        help="Run the crawl in this process. Without it the audit stays pending until `site-audit worker` starts.",
    ),
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Reset a completed or failed audit to pending and queue it again."""
    _setup_logging(verbose)
    pipeline = _get_app(config)
    try:
        pipeline.lifecycle.restart_audit(audit_id)
    except AuditPipelineError as exc:
        _fail(exc)
    console.print(f"[green]✔[/green] Audit [bold]{audit_id}[/bold] restarted.")
    if wait:
        pipeline.queue.run_pending()
        _print_progress(pipeline.lifecycle.get_progress(audit_id).to_dict())


@app.command()
def cancel(
    audit_id: str = typer.Argument(..., help="Audit to cancel."),
    reason: str = typer.Option("Cancelled by operator", "--reason", "-r", help="Recorded error message."),
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Cancel a pending or running audit."""
    _setup_logging(verbose)
    pipeline = _get_app(config)
    try:
        pipeline.lifecycle.cancel_audit(audit_id, reason)
    except AuditPipelineError as exc:
        _fail(exc)
    console.print(f"[yellow]○[/yellow] Audit [bold]{audit_id}[/bold] cancelled.")


@app.command()
def delete(
    audit_id: str = typer.Argument(..., help="Audit to delete."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation."),
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Delete an audit and its history."""
    _setup_logging(verbose)
    if not yes:
        typer.confirm(f"Delete audit {audit_id}?", abort=True)
    pipeline = _get_app(config)
    try:
        pipeline.lifecycle.delete_audit(audit_id)
    except AuditPipelineError as exc:
        _fail(exc)
    console.print(f"[green]✔[/green] Audit [bold]{audit_id}[/bold] deleted.")


# ------------------------------------------------------------------
# progress / report
# ------------------------------------------------------------------
@app.command()
def progress(
    audit_id: str = typer.Argument(..., help="Audit to inspect."),
    as_json: bool = typer.Option(False, "--json", help="Print the raw progress payload."),
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Show an audit's progress."""
    _setup_logging(verbose)
    pipeline = _get_app(config)
    try:
        payload = pipeline.lifecycle.get_progress(audit_id).to_dict()
    except AuditPipelineError as exc:
        _fail(exc)
    if as_json:
        typer.echo(json.dumps(payload))
    else:
        _print_progress(payload)


@app.command()
def report(
    audit_id: str = typer.Argument(..., help="Completed audit to report on."),
    fmt: str = typer.Option("html", "--format", "-f", help="Report format: html or json."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the report to this file."),
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Render a report for a completed audit."""
    _setup_logging(verbose)
    pipeline = _get_app(config)
    try:
        job_id = pipeline.lifecycle.generate_report(audit_id, fmt)
    except AuditPipelineError as exc:
        _fail(exc)
    pipeline.queue.run_pending()
    job = pipeline.queue.get_job(job_id)
    if job is None or job.status != "completed":
        _fail(RuntimeError(f"Report job failed: {job.error if job else 'unknown'}"))

    if output is not None:
        from site_audit.reports import render_report
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(render_report(pipeline.lifecycle.get_audit(audit_id), fmt), encoding="utf-8")
        console.print(f"[green]✔[/green] Report written to {output}")
    elif job.result.get("path"):
        console.print(f"[green]✔[/green] Report written to {job.result['path']}")
    else:
        console.print(f"[green]✔[/green] Report ({fmt}) generated for audit {audit_id}.")


# ------------------------------------------------------------------
# scheduling
# ------------------------------------------------------------------
@app.command()
def schedule(
    project_id: str = typer.Argument(..., help="Project to audit on a schedule."),
    frequency: str = typer.Option("weekly", "--frequency", "-f", help="daily, weekly or monthly."),
    max_pages: int = typer.Option(100, "--max-pages", help="Maximum pages to crawl."),
    inactive: bool = typer.Option(False, "--inactive", help="Create the schedule paused."),
    schedule_id: Optional[str] = typer.Option(None, "--id", help="Update an existing schedule."),
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Create or update a recurring audit schedule."""
    _setup_logging(verbose)
    pipeline = _get_app(config)
    try:
        sched = pipeline.scheduler.save_schedule(
            project_id,
            frequency,
            {"max_pages": max_pages},
            is_active=not inactive,
            schedule_id=schedule_id,
        )
    except AuditPipelineError as exc:
        _fail(exc)
    console.print(
        f"[green]✔[/green] Schedule [bold]{sched.id}[/bold] ({sched.frequency}) "
        f"next run {sched.next_run_at.isoformat()}"
    )


@app.command()
def tick(
    wait: bool = typer.Option(
        False, "--wait", "-w",
        help="Run the created audits in this process. Without it they stay pending until `site-audit worker` starts.",
    ),
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Start audits for every due schedule now.

    Without --wait the created audits stay PENDING until `site-audit worker`
    starts and requeues them.
    """
    _setup_logging(verbose)
    pipeline = _get_app(config)
    created = pipeline.scheduler.tick()
    if not created:
        console.print("No schedules due.")
        return
    for audit_id in created:
        console.print(f"[green]✔[/green] Audit [bold]{audit_id}[/bold] queued.")
    if wait:
        pipeline.queue.run_pending()


# ------------------------------------------------------------------
# worker
# ------------------------------------------------------------------
@app.command()
def worker(
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Run the queue worker and schedule checks until interrupted."""
    _setup_logging(verbose)
    pipeline = _get_app(config)
    pipeline.start()
    console.print(Panel("[bold cyan]Audit worker running[/bold cyan] -- press Ctrl+C to stop"))
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("Stopping worker...")
    finally:
        pipeline.stop()


# ------------------------------------------------------------------
# status
# ------------------------------------------------------------------
@app.command()
def status(
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Show pipeline status: database, queue, scheduler, configuration."""
    _setup_logging(verbose)
    console.print(Panel("[bold cyan]System Status[/bold cyan]"))
    pipeline = _get_app(config)

    table = Table(title="Component Status", show_header=True, header_style="bold magenta")
    table.add_column("Component", style="cyan", min_width=15)
    table.add_column("Status", min_width=10)
    table.add_column("Details", max_width=60)
    for name, info in pipeline.get_status().items():
        if info["status"] == "ok":
            badge = "[green]✔ OK[/green]"
        elif info["status"] == "warning":
            badge = "[yellow]⚠ Warning[/yellow]"
        else:
            badge = "[red]✘ Error[/red]"
        table.add_row(name.title(), badge, info["details"])
    console.print(table)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
