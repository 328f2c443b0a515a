"""Redis transport for cross-process messaging."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import TaskMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[str]):
    """Redis-based transport for distributed messaging.

    Due messages live in the list ``agentchain:{topic}``. Delayed retries are
    parked in the sorted set ``agentchain:{topic}:delayed`` scored by their
    ``available_at`` timestamp and moved over once due.
    """

    supports_delay = True

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    @staticmethod
    def queue_name(topic: str) -> str:
        return f"agentchain:{topic}"

    @classmethod
    def delayed_name(cls, topic: str) -> str:
        return f"{cls.queue_name(topic)}:delayed"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, message: TaskMessage) -> None:
        """Publish message to Redis list, or to the delayed set if not yet due."""
        if not self._redis:
            await self.connect()

        message_json = message.to_json()
        if message.is_due():
            await self._redis.lpush(self.queue_name(topic), message_json)
        else:
            await self._redis.zadd(
                self.delayed_name(topic),
                {message_json: message.available_at.timestamp()},
            )

    async def _promote_due(self, topic: str) -> None:
        now = datetime.now(timezone.utc).timestamp()
        delayed = self.delayed_name(topic)
        due = await self._redis.zrangebyscore(delayed, "-inf", now)
        for message_json in due:
            # Only the worker that removes the entry promotes it.
            if await self._redis.zrem(delayed, message_json):
                await self._redis.lpush(self.queue_name(topic), message_json)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, TaskMessage]]:
        """Subscribe to messages from Redis queue."""
        if not self._redis:
            await self.connect()

        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            await self._promote_due(topic)
            result = await self._redis.brpop(self.queue_name(topic), timeout=1)

            if result:
                _, message_json = result
                try:
                    message = TaskMessage.from_json(message_json)
                except ValidationError as e:
                    logger.error(f"Dropping unparseable message on {topic}: {e}")
                    continue
                yield message_json, message

            await asyncio.sleep(0.01)

    async def ack(self, raw_message: str) -> None:
        """No-op acknowledgment for Redis transport (message already consumed)."""
        pass
