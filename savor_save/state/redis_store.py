"""Redis-backed store with pub/sub change events."""

import asyncio
import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterable, Iterator
from uuid import uuid4

from pydantic import ValidationError as SchemaError
from redis.asyncio.client import Pipeline, PubSub
from redis.exceptions import RedisError

from savor_save.config import get_settings
from savor_save.errors import RemoteUnavailableError
from savor_save.state.manager import StateManager
from savor_save.state.realtime import ChangeEvent, ChangeFeed, ChangeHandler, EventType, Subscription
from savor_save.state.store import ORDER_STATUS_HISTORY, ORDERS, Row, Store, select_rows
from savor_save.utils.logging import get_logger

logger = get_logger(__name__)

NULL_KEY = "__null__"
ORDER_SEQUENCE_TTL = 172800  # 2 days


@contextmanager
def _remote(operation: str) -> Iterator[None]:
    """Translate Redis failures into RemoteUnavailableError."""
    try:
        yield
    except (RedisError, OSError) as e:
        logger.error("store_call_failed", operation=operation, error=str(e))
        raise RemoteUnavailableError(operation, str(e)) from e


class RedisStore(Store):
    """Store tables as Redis hashes keyed by row id.

    Each table lives in ``table:<name>``; upsert keys are indexed in
    ``index:<table>:<column>``. Every mutation is published as a JSON
    ChangeEvent on ``<prefix>:<table>``.
    """

    def __init__(self, state_manager: StateManager, channel_prefix: str | None = None):
        self.state = state_manager
        self.channel_prefix = channel_prefix or get_settings().realtime_channel_prefix
        self.feed = ChangeFeed()
        self._listener: asyncio.Task[None] | None = None
        self._pubsub: PubSub | None = None

    def _table_key(self, table: str) -> str:
        return f"table:{table}"

    def _index_key(self, table: str, column: str) -> str:
        return f"index:{table}:{column}"

    def _channel(self, table: str) -> str:
        return f"{self.channel_prefix}:{table}"

    async def insert(self, table: str, row: Row) -> Row:
        stored = {**row, "id": str(uuid4())}
        with _remote("insert"):
            await self.state.hset(self._table_key(table), stored["id"], stored)
            await self._emit(table, EventType.INSERT, new=stored)
        return stored

    async def insert_order(self, row: Row, now: datetime) -> Row:
        prefix = now.strftime("%Y%m%d")
        with _remote("insert_order"):
            sequence = await self.state.increment(
                f"order_seq:{prefix}", ttl=ORDER_SEQUENCE_TTL
            )
        logger.debug("order_number_assigned", order_number=f"{prefix}{sequence:04d}")
        return await self.insert(ORDERS, {**row, "order_number": f"{prefix}{sequence:04d}"})

    async def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        with _remote("select"):
            rows = await self.state.hgetall(self._table_key(table))
        return select_rows(rows.values(), filters, order_by, descending, limit)

    async def get(self, table: str, row_id: str) -> Row | None:
        with _remote("get"):
            return await self.state.hget(self._table_key(table), row_id)

    async def update(
        self,
        table: str,
        row_id: str,
        fields: Row,
        only_if: dict[str, Iterable[Any]] | None = None,
    ) -> Row | None:
        key = self._table_key(table)
        allowed = {k: list(v) for k, v in (only_if or {}).items()}

        async def apply(pipe: Pipeline) -> tuple[Row, Row] | None:
            raw = await pipe.hget(key, row_id)
            pipe.multi()
            if raw is None:
                return None
            old = json.loads(raw)
            if any(old.get(k) not in v for k, v in allowed.items()):
                return None
            updated = {**old, **fields, "id": row_id}
            pipe.hset(key, row_id, json.dumps(updated))
            return old, updated

        with _remote("update"):
            result = await self.state.transaction(apply, key)
            if result is None:
                return None
            old, updated = result
            await self._emit(table, EventType.UPDATE, new=updated, old=old)
        return updated

    async def delete(self, table: str, row_id: str) -> bool:
        key = self._table_key(table)

        async def apply(pipe: Pipeline) -> Row | None:
            raw = await pipe.hget(key, row_id)
            pipe.multi()
            if raw is None:
                return None
            pipe.hdel(key, row_id)
            return json.loads(raw)

        with _remote("delete"):
            old = await self.state.transaction(apply, key)
            if old is None:
                return False
            await self._emit(table, EventType.DELETE, old=old)
        return True

    async def upsert(self, table: str, row: Row, key: str) -> Row:
        table_key = self._table_key(table)
        index_key = self._index_key(table, key)
        marker = NULL_KEY if row.get(key) is None else str(row[key])

        async def apply(pipe: Pipeline) -> tuple[Row | None, Row]:
            existing_id = await pipe.hget(index_key, marker)
            raw = await pipe.hget(table_key, existing_id) if existing_id else None
            pipe.multi()
            if raw is not None:
                old = json.loads(raw)
                stored = {**old, **row, "id": old["id"]}
            else:
                old = None
                stored = {**row, "id": str(uuid4())}
                pipe.hset(index_key, marker, stored["id"])
            pipe.hset(table_key, stored["id"], json.dumps(stored))
            return old, stored

        with _remote("upsert"):
            old, stored = await self.state.transaction(apply, index_key, table_key)
            event_type = EventType.INSERT if old is None else EventType.UPDATE
            await self._emit(table, event_type, new=stored, old=old)
        return stored

    async def transition_order(
        self,
        order_id: str,
        status: str,
        timestamp_field: str,
        at: datetime,
        message: str | None = None,
        location: Row | None = None,
    ) -> bool:
        orders_key = self._table_key(ORDERS)
        history_key = self._table_key(ORDER_STATUS_HISTORY)
        stamp = at.isoformat()
        history = {
            "id": str(uuid4()),
            "order_id": order_id,
            "status": status,
            "message": message,
            "location": location,
            "created_at": stamp,
        }

        async def apply(pipe: Pipeline) -> tuple[Row | None, Row | None]:
            raw = await pipe.hget(orders_key, order_id)
            pipe.multi()
            if raw is None:
                old = updated = None
            else:
                old = json.loads(raw)
                updated = {**old, "status": status, "updated_at": stamp}
                if updated.get(timestamp_field) is None:
                    updated[timestamp_field] = stamp
                pipe.hset(orders_key, order_id, json.dumps(updated))
            pipe.hset(history_key, history["id"], json.dumps(history))
            return old, updated

        with _remote("transition_order"):
            old, updated = await self.state.transaction(apply, orders_key)
            if updated is not None:
                await self._emit(ORDERS, EventType.UPDATE, new=updated, old=old)
            await self._emit(ORDER_STATUS_HISTORY, EventType.INSERT, new=history)
        return updated is not None

    def subscribe(self, table: str, handler: ChangeHandler) -> Subscription:
        subscription = self.feed.subscribe(table, handler)
        if self._listener is None:
            self._listener = asyncio.create_task(self._listen())
        return subscription

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        await self.state.disconnect()

    async def _listen(self) -> None:
        """Forward published change events to local subscribers."""
        try:
            self._pubsub = await self.state.pubsub(f"{self.channel_prefix}:*")
            async for message in self._pubsub.listen():
                if message.get("type") != "pmessage":
                    continue
                try:
                    event = ChangeEvent.model_validate_json(message["data"])
                except SchemaError as e:
                    logger.warning("realtime_event_rejected", error_count=e.error_count())
                    continue
                await self.feed.publish(event)
        except (RedisError, OSError) as e:
            logger.error("realtime_listener_failed", error=str(e))

    async def _emit(
        self,
        table: str,
        event_type: EventType,
        new: Row | None = None,
        old: Row | None = None,
    ) -> None:
        event = ChangeEvent(table=table, event_type=event_type, new=new, old=old)
        await self.state.publish(self._channel(table), event.model_dump_json())
