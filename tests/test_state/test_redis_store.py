"""Tests for the Redis-backed store. Skipped when no Redis is reachable."""

import asyncio
from datetime import datetime, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from redis.exceptions import RedisError

from savor_save.errors import RemoteUnavailableError
from savor_save.state.manager import StateManager
from savor_save.state.realtime import ChangeEvent, EventType
from savor_save.state.redis_store import RedisStore
from savor_save.state.store import BUDGETS, EXPENSES, ORDER_STATUS_HISTORY, ORDERS

TEST_REDIS_URL = "redis://localhost:6379/15"

AT = datetime(2024, 6, 12, 6, 30, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def redis_store() -> AsyncGenerator[RedisStore, None]:
    """Create a Redis store on a scratch database."""
    manager = StateManager(TEST_REDIS_URL)
    try:
        await manager.ping()
    except (RedisError, OSError):
        await manager.disconnect()
        pytest.skip("Redis is not available")

    await manager.redis_client.flushdb()
    store = RedisStore(manager, channel_prefix="test-realtime")
    yield store
    await manager.redis_client.flushdb()
    await store.close()


@pytest.mark.asyncio
async def test_insert_select_get(redis_store: RedisStore) -> None:
    first = await redis_store.insert(EXPENSES, {"user_id": "user-1", "date": "2024-06-01T10:00:00Z"})
    second = await redis_store.insert(EXPENSES, {"user_id": "user-1", "date": "2024-06-02T10:00:00Z"})
    await redis_store.insert(EXPENSES, {"user_id": None, "date": "2024-06-03T10:00:00Z"})

    rows = await redis_store.select(
        EXPENSES, {"user_id": "user-1"}, order_by="date", descending=True
    )

    assert [r["id"] for r in rows] == [second["id"], first["id"]]
    assert await redis_store.get(EXPENSES, first["id"]) == first
    assert len(await redis_store.select(EXPENSES, {"user_id": None})) == 1


@pytest.mark.asyncio
async def test_update_is_partial_and_conditional(redis_store: RedisStore) -> None:
    row = await redis_store.insert(EXPENSES, {"status": "completed", "notes": "spicy"})

    updated = await redis_store.update(EXPENSES, row["id"], {"status": "cancelled"})
    assert updated == {**row, "status": "cancelled"}

    refused = await redis_store.update(
        EXPENSES, row["id"], {"status": "pending"}, only_if={"status": ["completed"]}
    )
    assert refused is None
    assert await redis_store.update(EXPENSES, "missing", {"notes": "x"}) is None


@pytest.mark.asyncio
async def test_delete(redis_store: RedisStore) -> None:
    row = await redis_store.insert(EXPENSES, {"description": "Jalebi"})

    assert await redis_store.delete(EXPENSES, row["id"]) is True
    assert await redis_store.delete(EXPENSES, row["id"]) is False
    assert await redis_store.get(EXPENSES, row["id"]) is None


@pytest.mark.asyncio
async def test_upsert_keyed_by_owner(redis_store: RedisStore) -> None:
    first = await redis_store.upsert(BUDGETS, {"user_id": "user-1", "monthly": "1"}, key="user_id")
    second = await redis_store.upsert(BUDGETS, {"user_id": "user-1", "monthly": "2"}, key="user_id")
    guest = await redis_store.upsert(BUDGETS, {"user_id": None, "monthly": "3"}, key="user_id")

    assert second["id"] == first["id"]
    assert guest["id"] != first["id"]
    assert len(await redis_store.select(BUDGETS)) == 2


@pytest.mark.asyncio
async def test_order_numbers_and_transitions(redis_store: RedisStore) -> None:
    first = await redis_store.insert_order({"status": "placed", "confirmed_at": None}, AT)
    second = await redis_store.insert_order({"status": "placed"}, AT)

    assert first["order_number"] == "202406120001"
    assert second["order_number"] == "202406120002"

    assert await redis_store.transition_order(first["id"], "confirmed", "confirmed_at", AT)
    assert await redis_store.transition_order(
        first["id"], "confirmed", "confirmed_at", AT.replace(hour=9)
    )
    assert not await redis_store.transition_order("missing", "confirmed", "confirmed_at", AT)

    row = await redis_store.get(ORDERS, first["id"])
    assert row["confirmed_at"] == AT.isoformat()
    history = await redis_store.select(ORDER_STATUS_HISTORY)
    assert len(history) == 3


@pytest.mark.asyncio
async def test_change_events_arrive_through_pubsub(redis_store: RedisStore) -> None:
    received: asyncio.Queue[ChangeEvent] = asyncio.Queue()
    redis_store.subscribe(EXPENSES, received.put_nowait)

    for _ in range(50):
        if redis_store._pubsub is not None:
            break
        await asyncio.sleep(0.02)

    row = await redis_store.insert(EXPENSES, {"description": "Rasmalai"})

    event = await asyncio.wait_for(received.get(), timeout=2)
    assert event.event_type == EventType.INSERT
    assert event.row_id == row["id"]


@pytest.mark.asyncio
async def test_unreachable_redis_raises_remote_unavailable() -> None:
    store = RedisStore(StateManager("redis://127.0.0.1:1/0"), channel_prefix="test-realtime")

    with pytest.raises(RemoteUnavailableError):
        await store.insert(EXPENSES, {"description": "Halwa"})
    with pytest.raises(RemoteUnavailableError):
        await store.select(EXPENSES)

    await store.close()
