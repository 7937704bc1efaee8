"""Root logger configuration for the CLI and long-running workers."""

from __future__ import annotations

import logging

from pythonjsonlogger import jsonlogger

_PLAIN_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Third-party loggers that are noisy at INFO.
_QUIET_LOGGERS = ("urllib3", "httpx", "httpcore", "LiteLLM", "litellm")


def configure_logging(level: str | int = "WARNING", *, json: bool = False) -> None:
    """Install a single stream handler on the root logger.

    Args:
        level: Log level name or number for the root logger.
        json: Emit one JSON object per record instead of plain text. Values
            passed through ``extra=`` become top-level JSON keys.
    """
    root = logging.getLogger()
    root.setLevel(level if isinstance(level, int) else level.upper())

    handler = logging.StreamHandler()
    if json:
        handler.setFormatter(jsonlogger.JsonFormatter(_JSON_FORMAT))
    else:
        handler.setFormatter(logging.Formatter(_PLAIN_FORMAT))
    root.handlers = [handler]

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
