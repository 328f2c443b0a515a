"""In-memory transport for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import TaskMessage
from .base import BaseTransport

# (topic, message)
RawMessage = Tuple[str, TaskMessage]


class InMemoryTransport(BaseTransport[RawMessage]):
    """Simple in-process queue honouring ``available_at``."""

    supports_delay = True

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[TaskMessage]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.poll_interval = poll_interval

    async def publish(self, topic: str, message: TaskMessage) -> None:
        """Publish message to in-memory queue."""
        async with self._lock:
            self._queues[topic].append(message)

    def pending(self, topic: str) -> List[TaskMessage]:
        """Messages still queued on ``topic``, due or not."""
        return list(self._queues[topic])

    async def _pop_due(self, topic: str) -> Optional[TaskMessage]:
        now = datetime.now(timezone.utc)
        async with self._lock:
            queue = self._queues[topic]
            for message in queue:
                if message.is_due(now):
                    queue.remove(message)
                    return message
        return None

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessage, TaskMessage]]:
        """Subscribe to due messages from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break
            message = await self._pop_due(topic)
            if message is not None:
                yield (topic, message), message
                continue
            await asyncio.sleep(self.poll_interval)

    async def ack(self, raw_message: RawMessage) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def nack(self, raw_message: RawMessage, requeue: bool = True) -> None:
        if requeue:
            topic, message = raw_message
            async with self._lock:
                self._queues[topic].appendleft(message)
