"""knowio init — create the database and a starter knowio.yaml.

Creates:
  .knowio.db     — empty knowledge base with schema (dimensions recorded)
  knowio.yaml    — project config with the defaults spelled out (unless present)
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from knowio.cli.common import DEFAULT_DB, console, load_settings, open_runtime
from knowio.db.migrations import current_version

_CONFIG_TEMPLATE = """\
# knowio project configuration.
# NEVER store API keys here. Use environment variables:
#   export OPENAI_API_KEY=sk-...

embedding:
  model: {model}
  dimensions: {dimensions}

store:
  dimensions: {dimensions}
  batch_size: 25

search:
  limit: 10
  threshold: 0.7

queue:
  max_concurrent_jobs: 5
  max_retries: 3
  retry_delay: 5.0
  job_timeout: 300

chunker:
  max_tokens: 1000
  overlap_tokens: 100
"""


def init_cmd(
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to the database file to create."),
    ] = DEFAULT_DB,
    write_config: Annotated[
        bool,
        typer.Option("--config/--no-config", help="Write knowio.yaml if it does not exist."),
    ] = True,
) -> None:
    """Create the knowio database (idempotent)."""
    cfg = load_settings()
    existed = db.exists()

    runtime = open_runtime(db, cfg, create=True)
    try:
        version = current_version(runtime.db.connection())
    finally:
        runtime.close()

    verb = "Verified" if existed else "Created"
    console.print(
        f"[green]✓[/] {verb} {db} (schema v{version}, "
        f"{cfg.store.dimensions}-dimensional embeddings)"
    )

    config_path = Path("knowio.yaml")
    if write_config and not config_path.exists():
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                model=cfg.embedding.model, dimensions=cfg.embedding.dimensions
            ),
            encoding="utf-8",
        )
        console.print(f"[green]✓[/] {config_path}")
