"""
ai_gateway/utils/logger.py

Structured logging setup for the gateway using Loguru.

Design Decisions:
- JSON format outside development so log aggregators can index the
  bound fields (provider, scope, outcome, ...).
- Client identifiers and API keys are never logged verbatim. Use
  `redact()` to log a short stable digest instead.
- Correlation IDs (request_id) are injected via context var so every
  log line within a request shares the same trace.
"""

from __future__ import annotations

import hashlib
import json
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

from loguru import logger

# ── Context variable for per-request correlation ID ──────────
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")


def _json_serialiser(record: dict[str, Any]) -> str:
    """Format a record as one JSON line, injecting the correlation ID."""
    payload = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": record["level"].name,
        "logger": record["name"],
        "message": record["message"],
        "request_id": request_id_ctx.get(""),
        "module": record["module"],
        "function": record["function"],
        "line": record["line"],
    }
    if record.get("extra"):
        payload.update(record["extra"])

    # Loguru treats the returned string as a format template
    line = json.dumps(payload, default=str)
    return line.replace("{", "{{").replace("}", "}}") + "\n"


def setup_logging(
    level: str = "INFO",
    log_format: str = "json",
    log_file: str | None = None,
) -> None:
    """
    Configure application-wide logging.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_format: 'json' for structured output, 'text' for human-readable.
        log_file: Optional file path for persistent log storage.
    """
    logger.remove()

    if log_format == "json":
        logger.add(
            sys.stdout,
            format=_json_serialiser,  # type: ignore[arg-type]
            level=level.upper(),
            serialize=False,
            backtrace=False,
            diagnose=False,
        )
    else:
        logger.add(
            sys.stdout,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{name}</cyan>:<cyan>{line}</cyan> | "
                "<level>{message}</level>"
            ),
            level=level.upper(),
            colorize=True,
            backtrace=True,
            diagnose=False,
        )

    if log_file:
        logger.add(
            log_file,
            rotation="100 MB",
            retention="30 days",
            compression="gz",
            level=level.upper(),
            serialize=True,
        )

    logger.info("Logging initialised", level=level, format=log_format)


def get_logger(name: str) -> "logger":  # type: ignore[valid-type]
    """Return a module-specific logger bound with its name."""
    return logger.bind(logger_name=name)


def redact(value: str) -> str:
    """Short, stable digest of a sensitive value (identifier, API key) for logs."""
    if not value:
        return "anonymous"
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]


# ── Convenience: initialise from environment on import ───────
_level = os.getenv("LOG_LEVEL", "INFO")
_format = "text" if os.getenv("APP_ENV", "development") == "development" else "json"
setup_logging(level=_level, log_format=_format)
