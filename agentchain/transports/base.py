"""Base transport interface for durable task messages."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import TaskMessage

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract base transport for message brokers.

    Messages carrying an ``available_at`` in the future must not be yielded
    before that time; backends without native delays leave it to the worker.
    """

    supports_delay: bool = False

    async def connect(self) -> None:
        """Open the broker connection; in-process backends need none."""
        pass

    async def disconnect(self) -> None:
        """Release the broker connection."""
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, message: TaskMessage) -> None:
        """Append ``message`` to ``topic``, honouring ``available_at`` if supported."""
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, TaskMessage]]:
        """Yield (raw message, TaskMessage) pairs until ``lifespan`` runs out.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Remove a handled message from the broker."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Hand a message back; backends without redelivery just drop it."""
        await self.ack(raw_message)
