"""Structured logging configuration."""

import logging
import sys
from typing import Any

import structlog
from pythonjsonlogger import jsonlogger

from savor_save.config import get_settings


def setup_logging() -> None:
    """Configure structured logging for the application."""
    settings = get_settings()

    log_level = getattr(logging, settings.log_level)

    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format == "json":
        formatter = jsonlogger.JsonFormatter(
            fmt="%(timestamp)s %(level)s %(name)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "timestamp"},
        )
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer() if settings.log_format == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class LedgerLogger:
    """Logger for optimistic mutations against the store."""

    def __init__(self, component: str, owner_id: str | None = None):
        self.component = component
        self.owner_id = owner_id
        self.logger = get_logger(component)

    def log_mutation(
        self,
        operation: str,
        entity_id: str,
        phase: str,
        duration_ms: float | None = None,
        **kwargs: Any,
    ) -> None:
        """Log one phase (apply/commit/confirm) of a mutation."""
        log_data = {
            "component": self.component,
            "owner_id": self.owner_id,
            "operation": operation,
            "entity_id": entity_id,
            "phase": phase,
        }

        if duration_ms is not None:
            log_data["duration_ms"] = duration_ms

        log_data.update(kwargs)
        self.logger.info("ledger_mutation", **log_data)

    def log_reconcile(
        self,
        source: str,
        entity_id: str,
        action: str,
        **kwargs: Any,
    ) -> None:
        """Log a merge of remote state into the local collection."""
        self.logger.debug(
            "ledger_reconcile",
            component=self.component,
            owner_id=self.owner_id,
            source=source,
            entity_id=entity_id,
            action=action,
            **kwargs,
        )

    def log_compensation(
        self,
        operation: str,
        entity_id: str,
        action: str,
        error: str,
        **kwargs: Any,
    ) -> None:
        """Log the compensating action taken after a failed store call."""
        self.logger.warning(
            "ledger_compensation",
            component=self.component,
            owner_id=self.owner_id,
            operation=operation,
            entity_id=entity_id,
            action=action,
            error=error,
            **kwargs,
        )

    def log_error(
        self,
        error: str,
        operation: str,
        **kwargs: Any,
    ) -> None:
        """Log an error."""
        self.logger.error(
            "ledger_error",
            component=self.component,
            owner_id=self.owner_id,
            operation=operation,
            error=error,
            **kwargs,
        )
