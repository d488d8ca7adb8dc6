"""Structured logging configuration for license-sync.

Provides JSON-formatted logs for production and human-readable
logs for development.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from .config import get_settings

# Attributes present on every LogRecord; anything else arrived through ``extra``
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime"}


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

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add extra fields
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_data[key] = value

        # Add common fields from record
        if record.funcName:
            log_data["function"] = record.funcName
        if record.lineno:
            log_data["line"] = record.lineno

        return json.dumps(log_data, default=str)


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

    handler = logging.StreamHandler(sys.stdout)

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
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.WARNING)

    logger = get_logger(__name__)
    logger.info(
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
        extra = kwargs.get("extra", {})
        extra.update(self.extra)
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
        logger = get_context_logger(__name__, operation_id="sync_abc123")
        logger.info("Processing batch")  # Includes operation_id
    """
    return LoggerAdapter(get_logger(name), context)


# =========================
# Convenience functions
# =========================


def log_sync_start(operation_type: str, operation_id: str, **options: Any) -> None:
    """Log the start of a sync operation."""
    logger = get_logger("licsync.sync")
    logger.info(
        f"Sync operation started: {operation_type}",
        extra={
            "operation_type": operation_type,
            "operation_id": operation_id,
            "options": options,
            "event": "sync_start",
        },
    )


def log_sync_complete(
    operation_type: str,
    operation_id: str,
    totals: dict[str, int],
    duration_seconds: float,
) -> None:
    """Log the completion of a sync operation."""
    logger = get_logger("licsync.sync")
    logger.info(
        f"Sync operation completed: {operation_type}",
        extra={
            "operation_type": operation_type,
            "operation_id": operation_id,
            "totals": totals,
            "duration_seconds": duration_seconds,
            "event": "sync_complete",
        },
    )


def log_sync_error(operation_type: str, operation_id: str, error: str) -> None:
    """Log a fatal sync error."""
    logger = get_logger("licsync.sync")
    logger.error(
        f"Sync operation failed: {operation_type}: {error}",
        extra={
            "operation_type": operation_type,
            "operation_id": operation_id,
            "error": error,
            "event": "sync_error",
        },
    )


def log_sync_batch(
    operation_id: str,
    batch_number: int,
    records_in_batch: int,
    failed_in_batch: int,
    total_processed: int,
) -> None:
    """Log completion of a batch within a sync run.

    Args:
        operation_id: Sync operation identifier
        batch_number: Batch sequence number (1-based)
        records_in_batch: Records processed in this batch
        failed_in_batch: Records in this batch that failed
        total_processed: Total records processed so far
    """
    logger = get_logger("licsync.sync")
    logger.debug(
        f"Completed batch {batch_number}",
        extra={
            "operation_id": operation_id,
            "batch_number": batch_number,
            "records_in_batch": records_in_batch,
            "failed_in_batch": failed_in_batch,
            "total_processed": total_processed,
            "event": "batch_complete",
        },
    )


def log_sync_progress(
    operation_id: str,
    progress_percent: float,
    records_processed: int,
    records_total: int,
) -> None:
    """Log sync progress update."""
    logger = get_logger("licsync.sync")
    logger.info(
        f"Sync progress: {progress_percent:.1f}%",
        extra={
            "operation_id": operation_id,
            "progress_percent": progress_percent,
            "records_processed": records_processed,
            "records_total": records_total,
            "event": "sync_progress",
        },
    )


def log_duplicate_event(
    scope: str,
    members: list[str],
    confidence_score: float,
    routing: str,
) -> None:
    """Log a duplicate detection decision.

    Args:
        scope: Detection pass (external, internal, cross_system)
        members: Identifiers of the grouped records
        confidence_score: Group score (0-100)
        routing: auto_consolidate, manual_review or discard
    """
    logger = get_logger("licsync.duplicates")
    logger.debug(
        f"Duplicate candidate ({scope}) routed to {routing}",
        extra={
            "scope": scope,
            "members": members,
            "confidence_score": confidence_score,
            "routing": routing,
            "event": "duplicate_candidate",
        },
    )


def log_api_request(
    method: str,
    path: str,
    status_code: int | None,
    duration_ms: float,
) -> None:
    """Log an outbound external API request."""
    logger = get_logger("licsync.external")
    logger.debug(
        f"{method} {path} - {status_code}",
        extra={
            "method": method,
            "path": path,
            "status_code": status_code,
            "duration_ms": duration_ms,
            "event": "external_api_request",
        },
    )
