"""knowio sources / chunks — browse stored content by source URL."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.table import Table

from knowio.cli.common import DEFAULT_DB, console, load_settings, open_runtime
from knowio.cli.errors import err_source_not_found

_PREVIEW_CHARS = 120


def sources_cmd(
    db: Annotated[Path, typer.Option("--db", help="Path to .knowio.db.")] = DEFAULT_DB,
) -> None:
    """List ingested source URLs with chunk counts."""
    cfg = load_settings()
    runtime = open_runtime(db, cfg)
    try:
        sources = runtime.store.list_sources()
    finally:
        runtime.close()

    if not sources:
        console.print("[dim]No sources ingested yet.[/]  Run:  knowio ingest <url>")
        return

    table = Table(title=f"Sources ({len(sources)})")
    table.add_column("URL", style="bold")
    table.add_column("Title")
    table.add_column("Chunks", justify="right")
    table.add_column("Updated")
    for s in sources:
        table.add_row(s.source_url, s.title, str(s.chunk_count), s.last_updated or "—")
    console.print(table)


def chunks_cmd(
    source: Annotated[str, typer.Option("--source", "-s", help="Source URL.")],
    page: Annotated[int, typer.Option("--page", help="1-based page number.")] = 1,
    page_size: Annotated[int, typer.Option("--page-size", help="Chunks per page.")] = 50,
    db: Annotated[Path, typer.Option("--db", help="Path to .knowio.db.")] = DEFAULT_DB,
) -> None:
    """Show the stored chunks of one source in order."""
    if page < 1 or page_size < 1:
        console.print("[red]Error:[/] --page and --page-size must be >= 1.")
        raise typer.Exit(1)

    cfg = load_settings()
    runtime = open_runtime(db, cfg)
    try:
        result = runtime.store.get_chunks_by_source(source, page=page, page_size=page_size)
    finally:
        runtime.close()

    if result.total == 0:
        console.print(err_source_not_found(source))
        return

    table = Table(title=f"{source} — page {page} ({result.total} chunks)")
    table.add_column("#", justify="right")
    table.add_column("Section")
    table.add_column("Text")
    for chunk in result.chunks:
        text = chunk.content.replace("\n", " ")
        if len(text) > _PREVIEW_CHARS:
            text = text[:_PREVIEW_CHARS] + "…"
        table.add_row(
            str(chunk.chunk_index),
            chunk.section or "",
            text,
        )
    console.print(table)
    if result.has_more:
        console.print(f"[dim]More:  knowio chunks --source {source} --page {page + 1}[/]")
