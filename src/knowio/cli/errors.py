"""knowio rich error messages — actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from knowio.cli.errors import err_no_db
    console.print(err_no_db(".knowio.db"))
    raise typer.Exit(1)
"""

from __future__ import annotations


def err_no_db(db_path: str = ".knowio.db") -> str:
    """No database found at *db_path*."""
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Run:  knowio init"
    )


def err_config(message: str) -> str:
    """Configuration file could not be loaded."""
    return (
        f"[red]Error:[/] Invalid configuration.\n"
        f"  {message}\n"
        "  Fix knowio.yaml (or ~/.knowio/config.yaml) and try again."
    )


def err_invalid_request(message: str) -> str:
    """Submission payload rejected before a job was created."""
    return (
        f"[red]Error:[/] {message}\n"
        "  Example:  knowio ingest https://docs.example.com/guide --max-depth 2"
    )


def err_job_not_found(job_id: str) -> str:
    """Unknown job id."""
    return (
        f"[red]Error:[/] Job '{job_id}' not found.\n"
        "  Run:  knowio jobs  to list recent jobs."
    )


def err_job_state(message: str) -> str:
    """Operation not allowed in the job's current state."""
    return f"[red]Error:[/] {message}"


def err_job_failed(job_id: str, message: str | None) -> str:
    """Job finished in FAILED state."""
    return (
        f"[red]✗ Job {job_id} failed:[/] {message or 'unknown error'}\n"
        f"  Retry with:  knowio retry {job_id}"
    )


def err_embedding(message: str) -> str:
    """Query embedding failed (usually a missing API key)."""
    return (
        f"[red]Error:[/] Could not embed the query: {message}\n"
        "  Check the embedding model in knowio.yaml and its API key, e.g.\n"
        "    export OPENAI_API_KEY=sk-..."
    )


def err_storage(message: str) -> str:
    """Vector store operation failed."""
    return (
        f"[red]Error:[/] {message}\n"
        "  If the embedding model changed, re-create the database:  knowio init --db <new-path>"
    )


def err_source_not_found(source: str) -> str:
    """Source not found in the vector store."""
    return (
        f"[yellow]Source not found:[/] '{source}' is not in the knowledge base.\n"
        "  Run:  knowio sources  to see all ingested sources."
    )
