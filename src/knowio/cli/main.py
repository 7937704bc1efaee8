"""knowio CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from knowio.cli.ingest import ingest_cmd, resume_cmd, retry_cmd
from knowio.cli.init import init_cmd
from knowio.cli.remove import purge_cmd, remove_cmd
from knowio.cli.search import search_cmd
from knowio.cli.sources import chunks_cmd, sources_cmd
from knowio.cli.status import jobs_cmd, stats_cmd, status_cmd


def _installed_version() -> str:
    try:
        return importlib.metadata.version("knowio")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"knowio {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="knowio",
    help=(
        "knowio — ingest web documentation into a searchable vector store.\n\n"
        "  knowio ingest URL   Fetch, chunk, embed, and store a page (or a crawl).\n"
        "  knowio search TEXT  Find the most similar stored chunks."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """knowio — web documentation ingestion and vector search."""


app.command("init")(init_cmd)
app.command("ingest")(ingest_cmd)
app.command("retry")(retry_cmd)
app.command("resume")(resume_cmd)
app.command("status")(status_cmd)
app.command("jobs")(jobs_cmd)
app.command("stats")(stats_cmd)
app.command("search")(search_cmd)
app.command("sources")(sources_cmd)
app.command("chunks")(chunks_cmd)
app.command("remove")(remove_cmd)
app.command("purge")(purge_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed knowio version."""
    typer.echo(f"knowio {_installed_version()}")


if __name__ == "__main__":
    app()
