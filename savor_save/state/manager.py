"""Redis connection manager shared by the Redis-backed store."""

import json
from typing import Any, Awaitable, Callable

import redis.asyncio as redis
from redis.asyncio.client import PubSub, Pipeline

from savor_save.config import get_settings
from savor_save.utils.logging import get_logger

logger = get_logger(__name__)


def _decode(value: Any) -> Any:
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return value


class StateManager:
    """Thin async wrapper around a Redis client with JSON values."""

    def __init__(self, redis_url: str | None = None) -> None:
        settings = get_settings()
        self.redis_client: redis.Redis | None = None
        self.redis_url = redis_url or settings.redis_url

    async def connect(self) -> None:
        """Establish Redis connection."""
        if self.redis_client is None:
            self.redis_client = await redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("redis_connected", url=self.redis_url)

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None
            logger.info("redis_disconnected")

    async def ping(self) -> bool:
        """Check the server answers."""
        if not self.redis_client:
            await self.connect()

        return bool(await self.redis_client.ping())

    async def hset(self, key: str, field: str, value: Any) -> None:
        """Set a hash field."""
        if not self.redis_client:
            await self.connect()

        if isinstance(value, (dict, list)):
            value = json.dumps(value)

        await self.redis_client.hset(key, field, value)

    async def hget(self, key: str, field: str) -> Any:
        """Get a hash field."""
        if not self.redis_client:
            await self.connect()

        value = await self.redis_client.hget(key, field)

        if value:
            return _decode(value)

        return None

    async def hgetall(self, key: str) -> dict[str, Any]:
        """Get all hash fields."""
        if not self.redis_client:
            await self.connect()

        data = await self.redis_client.hgetall(key)

        return {field: _decode(value) for field, value in data.items()}

    async def hdel(self, key: str, field: str) -> bool:
        """Delete a hash field; False when it did not exist."""
        if not self.redis_client:
            await self.connect()

        removed = await self.redis_client.hdel(key, field)
        logger.debug("state_deleted", key=key, field=field)
        return bool(removed)

    async def increment(self, key: str, amount: int = 1, ttl: int | None = None) -> int:
        """Increment a counter, optionally refreshing its TTL."""
        if not self.redis_client:
            await self.connect()

        value = await self.redis_client.incrby(key, amount)

        if ttl:
            await self.redis_client.expire(key, ttl)

        return value

    async def transaction(
        self,
        func: Callable[[Pipeline], Awaitable[Any]],
        *watches: str,
    ) -> Any:
        """Run func under WATCH on the given keys, retrying on conflict.

        func reads through the pipeline in immediate mode, calls
        ``pipe.multi()`` and queues its writes; its return value is returned.
        """
        if not self.redis_client:
            await self.connect()

        return await self.redis_client.transaction(
            func, *watches, value_from_callable=True
        )

    async def publish(self, channel: str, message: str) -> None:
        """Publish a message to a channel."""
        if not self.redis_client:
            await self.connect()

        await self.redis_client.publish(channel, message)
        logger.debug("message_published", channel=channel)

    async def pubsub(self, pattern: str) -> PubSub:
        """Open a pub/sub connection subscribed to a channel pattern."""
        if not self.redis_client:
            await self.connect()

        pubsub = self.redis_client.pubsub(ignore_subscribe_messages=True)
        await pubsub.psubscribe(pattern)
        logger.debug("pubsub_subscribed", pattern=pattern)
        return pubsub


# Global state manager instance
_state_manager: StateManager | None = None


async def get_state_manager() -> StateManager:
    """Get the global state manager instance."""
    global _state_manager
    if _state_manager is None:
        _state_manager = StateManager()
        await _state_manager.connect()
    return _state_manager
