"""Realtime change events and subscription fan-out."""

import inspect
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from savor_save.utils.logging import get_logger
from savor_save.utils.time import utcnow

logger = get_logger(__name__)


class EventType(str, Enum):
    """Kind of row change pushed by the store."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """A row change on one table."""

    table: str
    event_type: EventType
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None
    commit_timestamp: datetime = Field(default_factory=utcnow)

    @property
    def row(self) -> dict[str, Any]:
        """The row after the change, or before it for deletes."""
        if self.new is not None:
            return self.new
        return self.old or {}

    @property
    def row_id(self) -> str | None:
        return self.row.get("id")


ChangeHandler = Callable[[ChangeEvent], Awaitable[None] | None]


class Subscription:
    """Handle returned by subscribe; call unsubscribe() on teardown."""

    def __init__(self, feed: "ChangeFeed", table: str, handler: ChangeHandler):
        self.feed = feed
        self.table = table
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        """Stop receiving events."""
        if self.active:
            self.feed.remove(self.table, self.handler)
            self.active = False


class ChangeFeed:
    """In-process fan-out of change events to per-table handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[ChangeHandler]] = defaultdict(list)

    def subscribe(self, table: str, handler: ChangeHandler) -> Subscription:
        """Register a handler for one table."""
        self._handlers[table].append(handler)
        logger.debug("realtime_subscribed", table=table)
        return Subscription(self, table, handler)

    def remove(self, table: str, handler: ChangeHandler) -> None:
        """Remove a handler."""
        if handler in self._handlers[table]:
            self._handlers[table].remove(handler)
            logger.debug("realtime_unsubscribed", table=table)

    def has_subscribers(self, table: str | None = None) -> bool:
        if table is None:
            return any(self._handlers.values())
        return bool(self._handlers[table])

    async def publish(self, event: ChangeEvent) -> None:
        """Deliver an event to every handler registered for its table."""
        for handler in list(self._handlers[event.table]):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "realtime_handler_failed",
                    table=event.table,
                    event_type=event.event_type.value,
                    error=str(e),
                )
