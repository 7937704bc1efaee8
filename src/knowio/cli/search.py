"""knowio search — similarity search over the knowledge base."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.table import Table

from knowio.cli.common import DEFAULT_DB, console, load_settings, open_runtime
from knowio.cli.errors import err_embedding, err_storage
from knowio.errors import EmbeddingError, StorageError

_PREVIEW_CHARS = 160


def search_cmd(
    query: Annotated[str, typer.Argument(help="Natural-language query.")],
    limit: Annotated[
        Optional[int], typer.Option("--limit", "-n", help="Maximum results.")
    ] = None,
    threshold: Annotated[
        Optional[float],
        typer.Option("--threshold", "-t", help="Minimum cosine similarity (exclusive)."),
    ] = None,
    db: Annotated[Path, typer.Option("--db", help="Path to .knowio.db.")] = DEFAULT_DB,
) -> None:
    """Embed QUERY and list the most similar chunks."""
    cfg = load_settings()
    limit = limit if limit is not None else cfg.search.limit
    threshold = threshold if threshold is not None else cfg.search.threshold
    if limit < 1:
        console.print("[red]Error:[/] --limit must be >= 1.")
        raise typer.Exit(1)

    runtime = open_runtime(db, cfg)
    try:
        try:
            vector = runtime.embedder.embed_query(query)
        except EmbeddingError as exc:
            console.print(err_embedding(str(exc)))
            raise typer.Exit(1)
        try:
            results = runtime.store.search(
                vector, limit=limit, threshold=threshold, include_metadata=False
            )
        except StorageError as exc:
            console.print(err_storage(str(exc)))
            raise typer.Exit(1)
    finally:
        runtime.close()

    if not results:
        console.print(f"[dim]No chunks above similarity {threshold}.[/]")
        return

    table = Table(title=f"Results for '{query}'")
    table.add_column("Score", justify="right")
    table.add_column("Source")
    table.add_column("Section")
    table.add_column("Text")
    for r in results:
        text = r.content.replace("\n", " ")
        if len(text) > _PREVIEW_CHARS:
            text = text[:_PREVIEW_CHARS] + "…"
        table.add_row(
            f"{r.similarity:.3f}",
            r.source_url,
            r.section or "",
            text,
        )
    console.print(table)
