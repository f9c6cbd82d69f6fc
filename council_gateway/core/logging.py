"""Logging configuration with per-call gateway context.

Council runs and provider dispatches bind their identifiers with
``log_context``; ``GatewayContextFilter`` stamps them onto every record
emitted inside that scope, including records from asyncio tasks spawned
there (tasks copy the current context when created).
"""

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import IO

from council_gateway.core.config import settings

CONTEXT_FIELDS = ("council_id", "provider", "model")

_context_vars: dict[str, ContextVar[str | None]] = {
    name: ContextVar(f"council_gateway_{name}", default=None) for name in CONTEXT_FIELDS
}


def current_context() -> dict[str, str]:
    """Context fields bound in the current scope."""
    return {name: value for name, var in _context_vars.items() if (value := var.get()) is not None}


@contextmanager
def log_context(**fields: str | None) -> Iterator[None]:
    """Bind council_id / provider / model to log records for the duration of the block.

    Must be entered and exited in the same task; do not hold it across a
    ``yield`` in an async generator.
    """
    unknown = set(fields) - set(CONTEXT_FIELDS)
    if unknown:
        raise ValueError(f"unknown log context fields: {sorted(unknown)}")
    tokens = [(_context_vars[name], _context_vars[name].set(value)) for name, value in fields.items()]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class GatewayContextFilter(logging.Filter):
    """Copy bound context onto the record. Values passed via ``extra=`` win."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, value in current_context().items():
            if not hasattr(record, name):
                setattr(record, name, value)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_data[key] = value
        if record.exc_info and record.exc_info[1]:
            log_data["exception"] = self.formatException(record.exc_info)
        if record.levelno <= logging.DEBUG:
            log_data["source"] = f"{record.filename}:{record.lineno}"
        return json.dumps(log_data, ensure_ascii=False)


class ContextTextFormatter(logging.Formatter):
    """Human-readable lines with the bound context appended in brackets."""

    def __init__(self) -> None:
        super().__init__(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        bound = [f"{key}={getattr(record, key)}" for key in CONTEXT_FIELDS if getattr(record, key, None) is not None]
        if not bound:
            return line
        head, sep, tail = line.partition("\n")
        return f"{head} [{' '.join(bound)}]{sep}{tail}"


def setup_logging(
    level: str | None = None,
    json_output: bool | None = None,
    stream: IO[str] | None = None,
) -> logging.Handler:
    """Install a single root handler for the gateway process.

    Arguments default to ``settings.log_level`` / ``settings.log_json`` and
    stdout. Returns the installed handler.
    """
    level_name = (level or settings.log_level).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)
    use_json = settings.log_json if json_output is None else json_output

    root = logging.getLogger()
    root.setLevel(numeric_level)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(numeric_level)
    handler.addFilter(GatewayContextFilter())
    handler.setFormatter(JSONFormatter() if use_json else ContextTextFormatter())
    root.addHandler(handler)

    # Request lines from httpx would drown out provider-level logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    return handler
