"""State management modules."""

from savor_save.state.manager import StateManager
from savor_save.state.memory_store import MemoryStore
from savor_save.state.realtime import ChangeEvent, ChangeFeed, EventType, Subscription
from savor_save.state.redis_store import RedisStore
from savor_save.state.store import BUDGETS, EXPENSES, ORDER_STATUS_HISTORY, ORDERS, Store

__all__ = [
    "Store",
    "MemoryStore",
    "RedisStore",
    "StateManager",
    "ChangeEvent",
    "ChangeFeed",
    "EventType",
    "Subscription",
    "ORDERS",
    "ORDER_STATUS_HISTORY",
    "EXPENSES",
    "BUDGETS",
]
