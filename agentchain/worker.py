"""Worker consuming task messages from the queue."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Deque, Optional

from .constants import PROCESSED_HISTORY
from .contracts import TaskMessage
from .errors import AgentChainError
from .tasks.base import BaseTask, TaskOutcome, TaskResult
from .tasks.jobs import TaskRegistry

if TYPE_CHECKING:
    from .runtime import AgentRuntime

logger = logging.getLogger(__name__)

MAX_REQUEUE_SLEEP = 1.0


def classify(exc: BaseException) -> TaskResult:
    """Map an exception raised by a task to a retry or permanent result."""
    if isinstance(exc, AgentChainError):
        if exc.retryable:
            return TaskResult.retry(exc.summary())
        return TaskResult.permanent(exc.summary())
    return TaskResult.retry(str(exc) or type(exc).__name__)


class TaskWorker:
    """Executes durable tasks by listening to transport messages."""

    def __init__(
        self,
        runtime: "AgentRuntime",
        registry: Optional[TaskRegistry] = None,
        history: int = PROCESSED_HISTORY,
    ) -> None:
        if runtime.queue is None:
            raise ValueError("A worker needs a runtime with a task queue")
        self.runtime = runtime
        self.queue = runtime.queue
        self.registry = registry or TaskRegistry()
        # most recent results only; processed_count keeps the running total
        self.processed: Deque[TaskResult] = deque(maxlen=history)
        self.processed_count = 0

    async def _give_up(self, task: BaseTask, message: TaskMessage, error: str) -> None:
        logger.error(
            f"Task {message.task_type} message_id={message.message_id} failed permanently "
            f"after attempt {message.attempt}/{message.max_attempts}: {error}"
        )
        try:
            await task.failed(message.payload, error)
        except Exception:
            logger.exception(f"Failure handler of {message.task_type} raised")

    async def process(self, message: TaskMessage) -> TaskResult:
        """Run one message and apply the retry policy to its result."""
        task_cls = self.registry.get(message.task_type)
        if task_cls is None:
            logger.error(f"Unknown task type {message.task_type}; dropping message")
            return TaskResult.permanent(f"Unknown task type {message.task_type}")
        if self.queue.is_cancelled(message.batch_id):
            logger.info(
                f"Dropping {message.task_type} message_id={message.message_id}: batch cancelled"
            )
            return TaskResult.success(skipped=True)

        task = task_cls(self.runtime)
        logger.info(
            f"Running {message.task_type} message_id={message.message_id} "
            f"attempt {message.attempt}/{message.max_attempts}"
        )
        try:
            result = await task.handle(message.payload, message)
        except Exception as exc:
            result = classify(exc)
            logger.warning(f"Task {message.task_type} raised {type(exc).__name__}: {exc}")

        if result.outcome == TaskOutcome.RETRY:
            if message.is_final_attempt():
                await self._give_up(task, message, result.error or "unknown error")
            else:
                await self.queue.retry(message, result.error or "unknown error")
        elif result.outcome == TaskOutcome.PERMANENT:
            await self._give_up(task, message, result.error or "unknown error")
        return result

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume the task topic until ``lifespan`` seconds have passed."""
        transport = self.queue.transport
        async for raw_message, message in transport.subscribe(self.queue.topic, lifespan=lifespan):
            if not message.is_due():
                # Backends without delayed delivery hand early retries back.
                await transport.ack(raw_message)
                await self.queue.requeue(message)
                remaining = (message.available_at - datetime.now(timezone.utc)).total_seconds()
                await asyncio.sleep(max(0.0, min(remaining, MAX_REQUEUE_SLEEP)))
                continue
            result = await self.process(message)
            self.processed.append(result)
            self.processed_count += 1
            await transport.ack(raw_message)
