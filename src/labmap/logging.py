"""Structured logging configuration for labmap.

Provides JSON-formatted logs for production and human-readable
logs for development.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from .config import get_settings

# Attributes every LogRecord carries; anything else came in through `extra`
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as JSON."""
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add extra fields
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_data[key] = value

        if record.funcName:
            log_data["function"] = record.funcName
        if record.lineno:
            log_data["line"] = record.lineno

        return json.dumps(log_data, default=str, ensure_ascii=False)


class TextFormatter(logging.Formatter):
    """Human-readable log formatter for development."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


def setup_logging() -> None:
    """Configure logging based on settings."""
    settings = get_settings()

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    if settings.log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(TextFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("anthropic").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    logger = get_logger(__name__)
    logger.debug(
        "Logging initialized",
        extra={
            "environment": settings.environment,
            "log_level": settings.log_level,
            "log_format": settings.log_format,
        },
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


class LoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds context to all log messages."""

    def process(
        self, msg: str, kwargs: dict[str, Any]
    ) -> tuple[str, dict[str, Any]]:
        """Process the logging message and add extra context."""
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def get_context_logger(name: str, **context: Any) -> LoggerAdapter:
    """Get a logger with additional context.

    Args:
        name: Logger name
        **context: Context fields to add to all log messages

    Returns:
        Logger adapter with context

    Usage:
        logger = get_context_logger(__name__, vocabulary="unit")
        logger.info("Resolving batch")  # Includes vocabulary
    """
    return LoggerAdapter(get_logger(name), context)


# =========================
# Convenience functions
# =========================


def log_alias_learned(
    vocabulary: str,
    key: str,
    code: str,
    source: str,
    confidence: float,
) -> None:
    """Log a newly written alias."""
    logger = get_logger("labmap.learning")
    logger.info(
        f"Learned {vocabulary} alias '{key}' -> {code}",
        extra={
            "vocabulary": vocabulary,
            "key": key,
            "code": code,
            "source": source,
            "confidence": confidence,
            "event": "alias_learned",
        },
    )


def log_review_action(
    item_id: str,
    action: str,
    reviewer: str | None = None,
    code: str | None = None,
) -> None:
    """Log an action taken on a review queue item.

    Args:
        item_id: Review item identifier
        action: Action taken (enqueued, approved, rejected, corrected)
        reviewer: Reviewer who acted on the item
        code: Canonical code involved, if any
    """
    logger = get_logger("labmap.review")
    logger.info(
        f"Review item {item_id} {action}",
        extra={
            "item_id": item_id,
            "action": action,
            "reviewer": reviewer,
            "code": code,
            "event": "review_action",
        },
    )


def log_semantic_call(
    vocabulary: str,
    batch_size: int,
    attempts: int,
    duration_ms: float,
    error_reason: str | None = None,
) -> None:
    """Log one Tier C backend call.

    Args:
        vocabulary: Vocabulary being resolved
        batch_size: Number of items in the call
        attempts: Number of attempts made (1 or 2)
        duration_ms: Wall time of the call including retries
        error_reason: Failure class if the call degraded
    """
    logger = get_logger("labmap.semantic")
    level = logging.INFO if error_reason is None else logging.WARNING
    logger.log(
        level,
        f"Semantic call for {batch_size} {vocabulary} item(s)"
        + (f" failed: {error_reason}" if error_reason else ""),
        extra={
            "vocabulary": vocabulary,
            "batch_size": batch_size,
            "attempts": attempts,
            "duration_ms": duration_ms,
            "error_reason": error_reason,
            "event": "semantic_call",
        },
    )
