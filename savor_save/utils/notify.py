"""User-visible notification channel."""

import asyncio
import inspect
from typing import Any, Awaitable, Callable

from savor_save.models.notification import Notification, NotificationLevel
from savor_save.utils.logging import get_logger

logger = get_logger(__name__)

NotificationHandler = Callable[[Notification], Awaitable[None] | None]


class Notifier:
    """Fire-and-forget fan-out of notifications to registered handlers."""

    def __init__(self, user_id: str | None = None) -> None:
        self.user_id = user_id
        self._handlers: list[NotificationHandler] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    def subscribe(self, handler: NotificationHandler) -> Callable[[], None]:
        """Register a handler and return a function that removes it."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def notify(
        self,
        level: NotificationLevel,
        message: str,
        description: str | None = None,
    ) -> Notification:
        """Deliver a notification to every handler."""
        notification = Notification(
            level=level,
            message=message,
            description=description,
            user_id=self.user_id,
        )

        logger.info(
            "notification_sent",
            level=level.value,
            message=message,
            user_id=self.user_id,
        )

        for handler in list(self._handlers):
            try:
                result = handler(notification)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
            except Exception as e:
                logger.warning("notification_handler_failed", error=str(e))

        return notification

    def success(self, message: str, description: str | None = None) -> Notification:
        return self.notify(NotificationLevel.SUCCESS, message, description)

    def info(self, message: str, description: str | None = None) -> Notification:
        return self.notify(NotificationLevel.INFO, message, description)

    def warning(self, message: str, description: str | None = None) -> Notification:
        return self.notify(NotificationLevel.WARNING, message, description)

    def error(self, message: str, description: str | None = None) -> Notification:
        return self.notify(NotificationLevel.ERROR, message, description)
