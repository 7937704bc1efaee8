"""knowio remove / purge — delete stored content and old job records.

Usage:
  knowio remove --source https://docs.example.com/guide
  knowio remove --source https://docs.example.com/guide --yes
  knowio purge --older-than-days 7
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from knowio.cli.common import DEFAULT_DB, console, load_settings, open_runtime
from knowio.cli.errors import err_source_not_found


def remove_cmd(
    source: Annotated[
        str,
        typer.Option("--source", "-s", help="Source URL to remove."),
    ],
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .knowio.db."),
    ] = DEFAULT_DB,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompt."),
    ] = False,
) -> None:
    """Remove every stored chunk of a source URL."""
    cfg = load_settings()
    runtime = open_runtime(db, cfg)
    try:
        existing = runtime.store.get_chunks_by_source(source, page=1, page_size=1)
        if existing.total == 0:
            console.print(err_source_not_found(source))
            raise typer.Exit(0)

        console.print(f"\nRemove source: [bold]{source}[/]")
        console.print(f"  Chunks: {existing.total}")

        if not yes:
            if not typer.confirm("Confirm removal?", default=False):
                console.print("[dim]Cancelled.[/]")
                raise typer.Exit(0)

        removed = runtime.store.delete_by_source(source)
        console.print(f"\n[green]✓[/] Removed: {source}")
        console.print(f"  {removed} chunks deleted")
    finally:
        runtime.close()


def purge_cmd(
    older_than_days: Annotated[
        int,
        typer.Option("--older-than-days", help="Delete finished jobs older than this."),
    ] = 30,
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .knowio.db."),
    ] = DEFAULT_DB,
) -> None:
    """Delete completed and failed job records older than N days."""
    if older_than_days < 0:
        console.print("[red]Error:[/] --older-than-days must be >= 0.")
        raise typer.Exit(1)

    cfg = load_settings()
    runtime = open_runtime(db, cfg)
    try:
        removed = runtime.queue.cleanup_old_jobs(older_than_days)
    finally:
        runtime.close()
    console.print(f"[green]✓[/] Purged {removed} job(s) older than {older_than_days} days")
