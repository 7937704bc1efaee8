"""knowio ingest / retry / resume — submit ingestion jobs and wait for them.

Usage:
  knowio ingest https://docs.example.com/guide
  knowio ingest https://docs.example.com/ --follow-links --max-depth 2
  knowio retry <job-id>
  knowio resume
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.progress import Progress, SpinnerColumn, TextColumn

from knowio.app import Runtime
from knowio.cli.common import DEFAULT_DB, console, load_settings, open_runtime
from knowio.cli.errors import (
    err_invalid_request,
    err_job_failed,
    err_job_not_found,
    err_job_state,
)
from knowio.errors import JobNotFoundError, JobStateError, UsageError
from knowio.jobs.models import JobStatus


def ingest_cmd(
    url: Annotated[str, typer.Argument(help="Page URL to ingest.")],
    max_depth: Annotated[
        int,
        typer.Option("--max-depth", help="Crawl depth when following links (1-10)."),
    ] = 3,
    follow_links: Annotated[
        bool,
        typer.Option("--follow-links", help="Follow same-host links from the page."),
    ] = False,
    ignore_robots: Annotated[
        bool,
        typer.Option("--ignore-robots", help="Do not consult robots.txt."),
    ] = False,
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .knowio.db (created if missing)."),
    ] = DEFAULT_DB,
) -> None:
    """Queue an ingestion job for URL and wait for it to finish."""
    cfg = load_settings()
    runtime = open_runtime(db, cfg, create=True)
    try:
        try:
            job_id = runtime.queue.submit(
                url,
                {
                    "max_depth": max_depth,
                    "follow_links": follow_links,
                    "respect_robots": not ignore_robots,
                },
            )
        except UsageError as exc:
            console.print(err_invalid_request(str(exc)))
            raise typer.Exit(1)

        console.print(f"[bold]→ {url}[/]  job {job_id}")
        _wait_and_report(runtime, [job_id])
    finally:
        runtime.close()


def retry_cmd(
    job_id: Annotated[str, typer.Argument(help="Id of a failed job.")],
    db: Annotated[Path, typer.Option("--db", help="Path to .knowio.db.")] = DEFAULT_DB,
) -> None:
    """Queue a new job with the same URL and options as a failed job."""
    cfg = load_settings()
    runtime = open_runtime(db, cfg)
    try:
        try:
            new_id = runtime.queue.retry_job(job_id)
        except JobNotFoundError:
            console.print(err_job_not_found(job_id))
            raise typer.Exit(1)
        except JobStateError as exc:
            console.print(err_job_state(str(exc)))
            raise typer.Exit(1)
        console.print(f"[bold]↻ Retrying {job_id}[/]  as job {new_id}")
        _wait_and_report(runtime, [new_id])
    finally:
        runtime.close()


def resume_cmd(
    db: Annotated[Path, typer.Option("--db", help="Path to .knowio.db.")] = DEFAULT_DB,
) -> None:
    """Fail jobs left running by a crashed process and run queued ones."""
    cfg = load_settings()
    runtime = open_runtime(db, cfg)
    try:
        job_ids = runtime.queue.recover()
        if not job_ids:
            console.print("[dim]No queued jobs.[/]")
            return
        console.print(f"Resuming {len(job_ids)} queued job(s)")
        _wait_and_report(runtime, job_ids)
    finally:
        runtime.close()


def _wait_and_report(runtime: Runtime, job_ids: list[str]) -> None:
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        transient=True,
        console=console,
    ) as prog:
        prog.add_task(f"Processing {len(job_ids)} job(s)…", total=None)
        runtime.queue.wait(job_ids)

    failed = False
    for job_id in job_ids:
        job = runtime.queue.get_status(job_id)
        p = job.progress
        if job.status is JobStatus.COMPLETED:
            console.print(
                f"  [green]✓[/] {job.url}: {p.pages_processed}/{p.pages_discovered} pages, "
                f"{p.chunks_embedded} chunks stored"
            )
        else:
            failed = True
            console.print(err_job_failed(job_id, job.error_message))
    if failed:
        raise typer.Exit(1)
