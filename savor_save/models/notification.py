"""User-visible notification models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from savor_save.utils.time import utcnow


class NotificationLevel(str, Enum):
    """Toast severity."""

    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class Notification(BaseModel):
    """A fire-and-forget message for the user."""

    level: NotificationLevel
    message: str
    description: str | None = None
    user_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
