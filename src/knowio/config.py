"""knowio configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site — not in this module)
  2. Environment variables  (KNOWIO_*)
  3. Per-project knowio.yaml  (next to .knowio.db)
  4. Global ~/.knowio/config.yaml  (defaults only — no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load() — never yaml.load().
"""

from __future__ import annotations

import math
import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml

from knowio.errors import ConfigError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".knowio"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "knowio.yaml"

# Key names that look like credentials; forbidden in the global config.
# Does NOT match legitimate keys like max_tokens or overlap_tokens.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["queue", "store", "search", "embedding", "chunker", "fetch", "logging"]
)

__all__ = [
    "ConfigError",
    "ChunkerCfg",
    "EmbeddingCfg",
    "FetchCfg",
    "KnowioConfig",
    "LoggingCfg",
    "QueueCfg",
    "SearchCfg",
    "StoreCfg",
    "load_config",
]


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class QueueCfg:
    """Job queue and worker pool (knowio.yaml: queue:).

    Attributes:
        max_concurrent_jobs: Worker pool size; jobs beyond it wait in FIFO order.
        max_retries: Retries for a retryable fetch failure (attempts = retries + 1).
        retry_delay: Base back-off delay in seconds; doubles per attempt.
        max_retry_delay: Upper bound for a single back-off sleep.
        job_timeout: Seconds a job may stay RUNNING before it is force-failed.
        fan_out: Concurrent page fetches per job while following links.
        max_pages: Hard cap on pages fetched by a single job.
    """

    max_concurrent_jobs: int = 5
    max_retries: int = 3
    retry_delay: float = 5.0
    max_retry_delay: float = 60.0
    job_timeout: float = 300.0
    fan_out: int = 4
    max_pages: int = 50


@dataclass
class StoreCfg:
    """Vector store (knowio.yaml: store:)."""

    batch_size: int = 25
    dimensions: int = 1536


@dataclass
class SearchCfg:
    """Similarity search defaults (knowio.yaml: search:)."""

    limit: int = 10
    threshold: float = 0.7


@dataclass
class EmbeddingCfg:
    """Embedding model configuration (knowio.yaml: embedding:)."""

    model: str = "openai/text-embedding-3-small"
    dimensions: int = 1536
    batch_size: int = 16
    max_input_chars: int = 8_000
    batch_delay: float = 0.1


@dataclass
class ChunkerCfg:
    """Chunk sizing (knowio.yaml: chunker:)."""

    max_tokens: int = 1_000
    overlap_tokens: int = 100


@dataclass
class FetchCfg:
    """Page fetching limits (knowio.yaml: fetch:)."""

    timeout: float = 30.0
    max_bytes: int = 5 * 1024 * 1024
    max_redirects: int = 3
    user_agent: str = "knowio-bot/0.1"


@dataclass
class LoggingCfg:
    """Log output (knowio.yaml: logging:)."""

    level: str = "WARNING"
    json: bool = False


@dataclass
class KnowioConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    queue: QueueCfg = field(default_factory=QueueCfg)
    store: StoreCfg = field(default_factory=StoreCfg)
    search: SearchCfg = field(default_factory=SearchCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    chunker: ChunkerCfg = field(default_factory=ChunkerCfg)
    fetch: FetchCfg = field(default_factory=FetchCfg)
    logging: LoggingCfg = field(default_factory=LoggingCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}' — ignored.",
                UserWarning,
                stacklevel=4,
            )


def _validate(cfg: KnowioConfig) -> None:
    """Raise ConfigError for values no component can work with."""
    positive = {
        "queue.max_concurrent_jobs": cfg.queue.max_concurrent_jobs,
        "queue.job_timeout": cfg.queue.job_timeout,
        "queue.fan_out": cfg.queue.fan_out,
        "queue.max_pages": cfg.queue.max_pages,
        "store.batch_size": cfg.store.batch_size,
        "store.dimensions": cfg.store.dimensions,
        "search.limit": cfg.search.limit,
        "embedding.dimensions": cfg.embedding.dimensions,
        "embedding.batch_size": cfg.embedding.batch_size,
        "embedding.max_input_chars": cfg.embedding.max_input_chars,
        "chunker.max_tokens": cfg.chunker.max_tokens,
        "fetch.timeout": cfg.fetch.timeout,
        "fetch.max_bytes": cfg.fetch.max_bytes,
    }
    for name, value in positive.items():
        if value <= 0:
            raise ConfigError(f"{name} must be > 0, got {value}")

    if cfg.queue.max_retries < 0:
        raise ConfigError(f"queue.max_retries must be >= 0, got {cfg.queue.max_retries}")
    if cfg.queue.retry_delay < 0:
        raise ConfigError(f"queue.retry_delay must be >= 0, got {cfg.queue.retry_delay}")
    if cfg.embedding.batch_delay < 0:
        raise ConfigError(
            f"embedding.batch_delay must be >= 0, got {cfg.embedding.batch_delay}"
        )
    if cfg.chunker.overlap_tokens < 0:
        raise ConfigError(
            f"chunker.overlap_tokens must be >= 0, got {cfg.chunker.overlap_tokens}"
        )
    if not math.isfinite(cfg.search.threshold):
        raise ConfigError(f"search.threshold must be finite, got {cfg.search.threshold}")
    if cfg.store.dimensions != cfg.embedding.dimensions:
        raise ConfigError(
            f"store.dimensions ({cfg.store.dimensions}) does not match "
            f"embedding.dimensions ({cfg.embedding.dimensions})"
        )


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _coerce(section: str, key: str, raw: Any, cast: Callable[[Any], Any]) -> Any:
    try:
        return cast(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{section}.{key}: invalid value {raw!r}") from exc


def _as_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str) and raw.strip().lower() in {"1", "true", "yes", "on"}:
        return True
    if isinstance(raw, str) and raw.strip().lower() in {"0", "false", "no", "off", ""}:
        return False
    raise ValueError(raw)


def _section(data: dict[str, Any], name: str, defaults: Any) -> Any:
    """Build a section dataclass from *data[name]*, casting by the default's type."""
    raw = data.get(name) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")
    values = {}
    for key, default in vars(defaults).items():
        if key not in raw:
            values[key] = default
            continue
        cast: Callable[[Any], Any]
        if isinstance(default, bool):
            cast = _as_bool
        else:
            cast = type(default)
        values[key] = _coerce(name, key, raw[key], cast)
    return type(defaults)(**values)


def _cfg_from_dict(data: dict[str, Any]) -> KnowioConfig:
    """Build a *KnowioConfig* from a merged raw YAML dict."""
    base = KnowioConfig()
    return KnowioConfig(
        queue=_section(data, "queue", base.queue),
        store=_section(data, "store", base.store),
        search=_section(data, "search", base.search),
        embedding=_section(data, "embedding", base.embedding),
        chunker=_section(data, "chunker", base.chunker),
        fetch=_section(data, "fetch", base.fetch),
        logging=_section(data, "logging", base.logging),
    )


# env var → (section, key)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "KNOWIO_MAX_CONCURRENT_JOBS": ("queue", "max_concurrent_jobs"),
    "KNOWIO_MAX_RETRIES": ("queue", "max_retries"),
    "KNOWIO_RETRY_DELAY": ("queue", "retry_delay"),
    "KNOWIO_JOB_TIMEOUT": ("queue", "job_timeout"),
    "KNOWIO_STORE_BATCH_SIZE": ("store", "batch_size"),
    "KNOWIO_SEARCH_THRESHOLD": ("search", "threshold"),
    "KNOWIO_SEARCH_LIMIT": ("search", "limit"),
    "KNOWIO_EMBEDDING_MODEL": ("embedding", "model"),
    "KNOWIO_LOG_LEVEL": ("logging", "level"),
}


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply KNOWIO_* environment variable overrides to the raw merged dict."""
    overrides: dict[str, Any] = {}
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        if value := os.environ.get(env_name):
            overrides.setdefault(section, {})[key] = value
    return _deep_merge(data, overrides)


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Could not parse '{path}': {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file '{path}' must contain a mapping at top level")
    return raw


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> KnowioConfig:
    """Load and return a merged *KnowioConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *knowio.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Raises:
        ConfigError: If the global config contains API-key-like fields, a value
            cannot be parsed, or a value is out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    if global_path.exists():
        raw_global = _read_yaml(global_path)
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = _read_yaml(project_cfg_path)
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    merged = _apply_env_overrides(merged)
    cfg = _cfg_from_dict(merged)
    _validate(cfg)
    return cfg
