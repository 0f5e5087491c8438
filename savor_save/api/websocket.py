"""WebSocket relay for realtime changes and notifications."""

import json
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from savor_save.models.notification import Notification
from savor_save.models.session import SessionContext
from savor_save.state.realtime import ChangeEvent, Subscription
from savor_save.state.store import EXPENSES, ORDERS, Store
from savor_save.utils.logging import get_logger

logger = get_logger(__name__)

ANONYMOUS_KEY = "anonymous"

RELAYED_TABLES = (ORDERS, EXPENSES)


def owner_key(user_id: str | None) -> str:
    return user_id or ANONYMOUS_KEY


class WebSocketMessage(BaseModel):
    """WebSocket message format."""

    type: str  # "ping"
    content: str | None = None
    metadata: dict[str, Any] = {}


class ConnectionManager:
    """Manages WebSocket connections per owner."""

    def __init__(self) -> None:
        self.active_connections: dict[str, list[WebSocket]] = {}

    async def connect(self, key: str, websocket: WebSocket) -> None:
        """Accept and register a WebSocket connection."""
        await websocket.accept()
        self.active_connections.setdefault(key, []).append(websocket)
        logger.info("websocket_connected", owner=key)

    def disconnect(self, key: str, websocket: WebSocket) -> None:
        """Remove a WebSocket connection."""
        connections = self.active_connections.get(key, [])
        if websocket in connections:
            connections.remove(websocket)
            logger.info("websocket_disconnected", owner=key)
        if not connections:
            self.active_connections.pop(key, None)

    async def send_message(self, key: str, message: dict[str, Any]) -> None:
        """Send a message to every connection of an owner."""
        for websocket in list(self.active_connections.get(key, [])):
            try:
                await websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.warning("websocket_send_failed", owner=key, error=str(e))
                self.disconnect(key, websocket)

    async def send_notification(self, notification: Notification) -> None:
        """Forward a user-visible notification."""
        await self.send_message(
            owner_key(notification.user_id),
            {"type": "notification", **notification.model_dump(mode="json")},
        )


# Global connection manager
manager = ConnectionManager()


def relay_changes(
    store: Store,
    session: SessionContext,
    websocket: WebSocket,
) -> list[Subscription]:
    """Subscribe a socket to change events in its owner's partition."""
    key = owner_key(session.user_id)

    async def forward(event: ChangeEvent) -> None:
        row = event.row
        if not session.owns(row):
            return

        try:
            await websocket.send_json(
                {
                    "type": "change",
                    "table": event.table,
                    "event_type": event.event_type.value,
                    "row": row,
                }
            )
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.warning("websocket_relay_failed", owner=key, error=str(e))

    return [store.subscribe(table, forward) for table in RELAYED_TABLES]


async def handle_websocket_session(
    websocket: WebSocket,
    store: Store,
    session: SessionContext,
) -> None:
    """
    Relay changes and notifications to a client until it disconnects.

    Args:
        websocket: WebSocket connection
        store: Store whose change feed is relayed
        session: Owner the connection belongs to
    """
    key = owner_key(session.user_id)

    await manager.connect(key, websocket)
    subscriptions = relay_changes(store, session, websocket)

    await websocket.send_json(
        {
            "type": "connected",
            "user_id": session.user_id,
            "message": "Connected. Listening for order and expense updates.",
        }
    )

    try:
        while True:
            data = await websocket.receive_text()

            try:
                ws_message = WebSocketMessage(**json.loads(data))

                if ws_message.type == "ping":
                    await websocket.send_json({"type": "pong"})
                else:
                    await websocket.send_json(
                        {
                            "type": "error",
                            "message": f"Unsupported message type: {ws_message.type}",
                        }
                    )

            except (ValidationError, json.JSONDecodeError, TypeError) as e:
                await websocket.send_json(
                    {
                        "type": "error",
                        "message": "Invalid message format",
                        "details": str(e),
                    }
                )

    except WebSocketDisconnect:
        logger.info("websocket_client_disconnected", owner=key)

    finally:
        for subscription in subscriptions:
            subscription.unsubscribe()
        manager.disconnect(key, websocket)
