"""In-process store used for development and tests."""

import asyncio
import copy
from collections import defaultdict
from datetime import datetime
from typing import Any, Iterable
from uuid import uuid4

from savor_save.state.realtime import ChangeEvent, ChangeFeed, ChangeHandler, EventType, Subscription
from savor_save.state.store import (
    ORDER_STATUS_HISTORY,
    ORDERS,
    Row,
    Store,
    select_rows,
)
from savor_save.utils.logging import get_logger

logger = get_logger(__name__)


class MemoryStore(Store):
    """Dict-backed store with the same contract as the remote backends."""

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, Row]] = defaultdict(dict)
        self._lock = asyncio.Lock()
        self.feed = ChangeFeed()

    async def insert(self, table: str, row: Row) -> Row:
        async with self._lock:
            stored = self._insert_locked(table, row)
        await self._emit(table, EventType.INSERT, new=stored)
        return copy.deepcopy(stored)

    async def insert_order(self, row: Row, now: datetime) -> Row:
        prefix = now.strftime("%Y%m%d")
        async with self._lock:
            count = sum(
                1
                for existing in self._tables[ORDERS].values()
                if str(existing.get("order_number", "")).startswith(prefix)
            )
            stored = self._insert_locked(
                ORDERS, {**row, "order_number": f"{prefix}{count + 1:04d}"}
            )
        logger.debug("order_number_assigned", order_number=stored["order_number"])
        await self._emit(ORDERS, EventType.INSERT, new=stored)
        return copy.deepcopy(stored)

    async def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        rows = select_rows(self._tables[table].values(), filters, order_by, descending, limit)
        return copy.deepcopy(rows)

    async def update(
        self,
        table: str,
        row_id: str,
        fields: Row,
        only_if: dict[str, Iterable[Any]] | None = None,
    ) -> Row | None:
        async with self._lock:
            row = self._tables[table].get(row_id)
            if row is None:
                return None
            if only_if and any(row.get(k) not in list(v) for k, v in only_if.items()):
                return None
            old = copy.deepcopy(row)
            row.update(copy.deepcopy(fields))
            row["id"] = row_id
            updated = copy.deepcopy(row)
        await self._emit(table, EventType.UPDATE, new=updated, old=old)
        return updated

    async def delete(self, table: str, row_id: str) -> bool:
        async with self._lock:
            old = self._tables[table].pop(row_id, None)
        if old is None:
            return False
        await self._emit(table, EventType.DELETE, old=old)
        return True

    async def upsert(self, table: str, row: Row, key: str) -> Row:
        async with self._lock:
            existing = next(
                (r for r in self._tables[table].values() if r.get(key) == row.get(key)),
                None,
            )
            if existing is None:
                stored = self._insert_locked(table, row)
                event_type, old = EventType.INSERT, None
            else:
                old = copy.deepcopy(existing)
                existing.update({k: v for k, v in copy.deepcopy(row).items() if k != "id"})
                stored = copy.deepcopy(existing)
                event_type = EventType.UPDATE
        await self._emit(table, event_type, new=stored, old=old)
        return copy.deepcopy(stored)

    async def transition_order(
        self,
        order_id: str,
        status: str,
        timestamp_field: str,
        at: datetime,
        message: str | None = None,
        location: Row | None = None,
    ) -> bool:
        stamp = at.isoformat()
        async with self._lock:
            row = self._tables[ORDERS].get(order_id)
            found = row is not None
            old = None
            if found:
                old = copy.deepcopy(row)
                row["status"] = status
                if row.get(timestamp_field) is None:
                    row[timestamp_field] = stamp
                row["updated_at"] = stamp
                updated = copy.deepcopy(row)
            history = self._insert_locked(
                ORDER_STATUS_HISTORY,
                {
                    "order_id": order_id,
                    "status": status,
                    "message": message,
                    "location": location,
                    "created_at": stamp,
                },
            )

        if found:
            await self._emit(ORDERS, EventType.UPDATE, new=updated, old=old)
        await self._emit(ORDER_STATUS_HISTORY, EventType.INSERT, new=history)
        return found

    def subscribe(self, table: str, handler: ChangeHandler) -> Subscription:
        return self.feed.subscribe(table, handler)

    def _insert_locked(self, table: str, row: Row) -> Row:
        stored = copy.deepcopy(row)
        stored["id"] = str(uuid4())
        self._tables[table][stored["id"]] = stored
        return stored

    async def _emit(
        self,
        table: str,
        event_type: EventType,
        new: Row | None = None,
        old: Row | None = None,
    ) -> None:
        event = ChangeEvent(
            table=table,
            event_type=event_type,
            new=copy.deepcopy(new),
            old=copy.deepcopy(old),
        )
        await self.feed.publish(event)
