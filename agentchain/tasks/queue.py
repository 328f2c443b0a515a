"""Durable task queue on top of a transport."""

from __future__ import annotations

import logging
from collections import deque
from datetime import timedelta
from typing import Any, Deque, Dict, List, Optional

from ..config import TaskConfig
from ..constants import CANCELLED_BATCH_HISTORY, DEFAULT_TASK_TOPIC
from ..contracts import TaskMessage
from ..transports.base import BaseTransport
from ..utils.retry import compute_backoff
from .batch import Batch

logger = logging.getLogger(__name__)


class TaskQueue:
    """Publish task messages and keep track of live batches."""

    def __init__(
        self,
        transport: BaseTransport,
        topic: str = DEFAULT_TASK_TOPIC,
        config: Optional[TaskConfig] = None,
    ) -> None:
        self.transport = transport
        self.topic = topic
        self.config = config or TaskConfig()
        self._batches: Dict[str, Batch] = {}
        self._cancelled: Deque[str] = deque(maxlen=CANCELLED_BATCH_HISTORY)

    async def enqueue(
        self,
        task_type: str,
        payload: Dict[str, Any],
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        batch_id: Optional[str] = None,
        delay_seconds: float = 0,
    ) -> TaskMessage:
        """Publish a new task; the standard retry policy applies unless overridden."""
        message = TaskMessage(
            task_type=task_type,
            payload=payload,
            max_attempts=max_attempts or self.config.max_attempts,
            backoff_seconds=(
                self.config.backoff_seconds if backoff_seconds is None else backoff_seconds
            ),
            batch_id=batch_id,
        )
        if delay_seconds:
            message = message.model_copy(
                update={"available_at": message.timestamp + timedelta(seconds=delay_seconds)}
            )
        await self.transport.publish(self.topic, message)
        logger.info(
            f"Enqueued {task_type} message_id={message.message_id}"
            + (f" batch_id={batch_id}" if batch_id else "")
        )
        return message

    async def retry(self, message: TaskMessage, error: str) -> TaskMessage:
        """Republish ``message`` as its next attempt after the backoff delay."""
        delay = compute_backoff(message.attempt, message.backoff_seconds)
        retry_message = message.next_attempt(delay, error)
        await self.transport.publish(self.topic, retry_message)
        logger.info(
            f"Scheduled retry {retry_message.attempt}/{retry_message.max_attempts} "
            f"of {message.task_type} in {delay:.0f}s"
        )
        return retry_message

    async def requeue(self, message: TaskMessage) -> None:
        """Hand an unchanged message back to the queue."""
        await self.transport.publish(self.topic, message)

    # ------------------------------------------------------------------
    def batch(self, name: str = "", owner_id: Optional[str] = None) -> Batch:
        batch = Batch(self, name=name, owner_id=owner_id)
        self._batches[batch.id] = batch
        return batch

    def get_batch(self, batch_id: Optional[str]) -> Optional[Batch]:
        if batch_id is None:
            return None
        return self._batches.get(batch_id)

    def batches_for(self, owner_id: str) -> List[Batch]:
        return [b for b in self._batches.values() if b.owner_id == owner_id]

    def forget_batches(self, owner_id: str) -> List[Batch]:
        """Stop tracking the batches of ``owner_id``, returning them."""
        batches = self.batches_for(owner_id)
        for batch in batches:
            del self._batches[batch.id]
        return batches

    def cancel_batches(self, owner_id: str) -> int:
        """Cancel every batch owned by ``owner_id``; returns how many were live.

        Cancelled batches are no longer tracked; only their ids are kept so
        that messages still on the transport are dropped.
        """
        live = [b for b in self.forget_batches(owner_id) if not b.cancelled()]
        for batch in live:
            batch.cancel()
            self._cancelled.append(batch.id)
        return len(live)

    def is_cancelled(self, batch_id: Optional[str]) -> bool:
        if batch_id is None:
            return False
        if batch_id in self._cancelled:
            return True
        batch = self.get_batch(batch_id)
        return batch is not None and batch.cancelled()
