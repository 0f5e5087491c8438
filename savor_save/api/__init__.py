"""HTTP and WebSocket surface."""

from savor_save.api.routes import router
from savor_save.api.websocket import manager

__all__ = ["manager", "router"]
