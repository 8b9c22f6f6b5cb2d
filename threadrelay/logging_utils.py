"""Root logger configuration for the gateway process.

Gateway log lines carry their identifiers as `key=value` pairs in the
message text (`thread_id=... response_id=... run=...`). The JSON formatter
lifts those pairs into a `context` object so log pipelines can filter on a
thread or response without parsing messages.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any

from .config import LoggingConfig

LOG = logging.getLogger(__name__)

# Identifiers worth indexing when they appear in a message.
CONTEXT_KEYS = ("thread_id", "response_id", "run", "mode", "tool", "session")

# HTTP client, server and file-watcher libraries log through these trees.
LIBRARY_LOGGERS = ("httpcore", "httpx", "uvicorn", "watchdog")

_PAIR_RE = re.compile(r"\b([a-z_]+)=(\S+)")


def message_context(message: str) -> dict[str, str]:
    """Return the known `key=value` identifiers found in `message`."""
    found: dict[str, str] = {}
    for key, value in _PAIR_RE.findall(message):
        if key in CONTEXT_KEYS and key not in found:
            found[key] = value.rstrip(",")
    return found


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record, with gateway identifiers under `context`."""

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": message,
        }
        context = message_context(message)
        for key in CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                context[key] = str(value)
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def resolve_level(name: str) -> int:
    level = logging.getLevelName(name.strip().upper())
    if isinstance(level, int):
        return level
    LOG.warning("unknown log level %r, using INFO", name)
    return logging.INFO


def build_handler(cfg: LoggingConfig) -> logging.Handler:
    handler = logging.StreamHandler()
    if cfg.json_logs:
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    return handler


def _library_logger_names() -> list[str]:
    existing = [str(name) for name in logging.root.manager.loggerDict]
    names = list(LIBRARY_LOGGERS)
    names.extend(name for name in existing if name.split(".", 1)[0] in LIBRARY_LOGGERS and name not in names)
    return names


def setup_logging(cfg: LoggingConfig) -> None:
    """Install a single root handler and route library loggers through it.

    Called at startup and again after every config reload; library loggers
    that installed their own handlers are reset to propagate at the
    gateway's level.
    """
    level = resolve_level(cfg.level)
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(build_handler(cfg))
    root.setLevel(level)

    for name in _library_logger_names():
        library_logger = logging.getLogger(name)
        library_logger.handlers.clear()
        library_logger.setLevel(level)
        library_logger.propagate = True

    LOG.debug("logging configured level=%s json=%s", logging.getLevelName(level), cfg.json_logs)
