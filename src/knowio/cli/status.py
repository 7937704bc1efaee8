"""knowio status / jobs / stats — inspect jobs and the knowledge base."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.panel import Panel
from rich.table import Table

from knowio.cli.common import DEFAULT_DB, console, load_settings, open_runtime
from knowio.cli.errors import err_invalid_request, err_job_not_found
from knowio.errors import JobNotFoundError
from knowio.jobs.models import JobStatus

_STATUS_STYLE = {
    JobStatus.QUEUED: "dim",
    JobStatus.RUNNING: "cyan",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
}


def status_cmd(
    job_id: Annotated[str, typer.Argument(help="Job id returned by knowio ingest.")],
    db: Annotated[Path, typer.Option("--db", help="Path to .knowio.db.")] = DEFAULT_DB,
) -> None:
    """Show the state and progress of one job."""
    cfg = load_settings()
    runtime = open_runtime(db, cfg)
    try:
        try:
            job = runtime.queue.get_status(job_id)
        except JobNotFoundError:
            console.print(err_job_not_found(job_id))
            raise typer.Exit(1)
    finally:
        runtime.close()

    p = job.progress
    style = _STATUS_STYLE[job.status]
    lines = [
        f"URL:        {job.url}",
        f"Status:     [{style}]{job.status.value}[/]",
        f"Progress:   {p.completion_rate:.0f}%  "
        f"({p.pages_processed}/{p.pages_discovered} pages)",
        f"Chunks:     {p.chunks_created} created, {p.chunks_embedded} stored",
        f"Options:    depth={job.options.max_depth} "
        f"follow_links={job.options.follow_links} robots={job.options.respect_robots}",
        f"Created:    {job.created_at}",
        f"Started:    {job.started_at or '—'}",
        f"Completed:  {job.completed_at or '—'}",
    ]
    if job.error_message:
        lines.append(f"Error:      [red]{job.error_message}[/]")
    console.print(Panel("\n".join(lines), title=f"[bold]Job {job.id}[/]", expand=False))


def jobs_cmd(
    status: Annotated[
        Optional[str],
        typer.Option("--status", help="Filter: queued, running, completed, failed."),
    ] = None,
    limit: Annotated[int, typer.Option("--limit", help="Rows to show.")] = 20,
    db: Annotated[Path, typer.Option("--db", help="Path to .knowio.db.")] = DEFAULT_DB,
) -> None:
    """List recent jobs, newest first."""
    status_filter: JobStatus | None = None
    if status is not None:
        try:
            status_filter = JobStatus(status.lower())
        except ValueError:
            console.print(err_invalid_request(f"Unknown status '{status}'."))
            raise typer.Exit(1)

    cfg = load_settings()
    runtime = open_runtime(db, cfg)
    try:
        jobs, total = runtime.queue.list_jobs(status=status_filter, limit=limit)
    finally:
        runtime.close()

    if not jobs:
        console.print("[dim]No jobs.[/]")
        return

    table = Table(title=f"Jobs ({len(jobs)} of {total})")
    table.add_column("Id", style="bold")
    table.add_column("Status")
    table.add_column("URL")
    table.add_column("Pages", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Created")
    for job in jobs:
        style = _STATUS_STYLE[job.status]
        table.add_row(
            job.id,
            f"[{style}]{job.status.value}[/]",
            job.url,
            f"{job.progress.pages_processed}/{job.progress.pages_discovered}",
            str(job.progress.chunks_embedded),
            job.created_at,
        )
    console.print(table)


def stats_cmd(
    db: Annotated[Path, typer.Option("--db", help="Path to .knowio.db.")] = DEFAULT_DB,
) -> None:
    """Show knowledge base and job queue statistics."""
    cfg = load_settings()
    runtime = open_runtime(db, cfg)
    try:
        healthy = runtime.store.health_check()
        store_stats = runtime.store.get_stats() if healthy else None
        queue_stats = runtime.queue.get_queue_stats()
    finally:
        runtime.close()

    health = "[green]ok[/]" if healthy else "[red]unavailable[/]"
    kb_lines = [f"Database:   {db}  ({health})"]
    if store_stats is not None:
        kb_lines += [
            f"Chunks:     {store_stats.total_chunks}",
            f"Sources:    {store_stats.unique_sources}",
            f"Avg tokens: {store_stats.average_token_count}",
            f"Updated:    {store_stats.last_updated or '—'}",
        ]
    console.print(Panel("\n".join(kb_lines), title="[bold]Knowledge Base[/]", expand=False))

    q = queue_stats
    console.print(
        Panel(
            f"Queued: {q.queued}  Running: {q.running}  "
            f"Completed: {q.completed}  Failed: {q.failed}  Total: {q.total}",
            title="[bold]Jobs[/]",
            expand=False,
        )
    )
