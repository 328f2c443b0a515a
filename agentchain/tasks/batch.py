"""Named groups of tasks that can be cancelled together."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..contracts import TaskMessage
from ..persistence.models import utcnow

if TYPE_CHECKING:
    from .queue import TaskQueue

logger = logging.getLogger(__name__)


class Batch:
    """A cancellable group of task messages or in-process members.

    Members are either messages enqueued through ``add`` or arbitrary
    identifiers registered with ``track`` (parallel chain steps run in the
    same process). Cancellation is local to the process that owns the batch.
    """

    def __init__(
        self,
        queue: Optional["TaskQueue"] = None,
        batch_id: Optional[str] = None,
        name: str = "",
        owner_id: Optional[str] = None,
    ) -> None:
        self.queue = queue
        self.id = batch_id or str(uuid.uuid4())
        self.name = name
        self.owner_id = owner_id
        self.members: List[Any] = []
        self.created_at: datetime = utcnow()
        self.cancelled_at: Optional[datetime] = None

    async def add(
        self, task_type: str, payload: Dict[str, Any], **kwargs: Any
    ) -> TaskMessage:
        """Enqueue a task belonging to this batch."""
        if self.queue is None:
            raise RuntimeError(f"Batch {self.name or self.id} has no queue to enqueue on")
        message = await self.queue.enqueue(task_type, payload, batch_id=self.id, **kwargs)
        self.members.append(message.message_id)
        return message

    def track(self, member: Any) -> None:
        self.members.append(member)

    def cancel(self) -> None:
        if self.cancelled_at is None:
            self.cancelled_at = utcnow()
            logger.info(
                f"Batch {self.name or self.id} cancelled ({len(self.members)} members)"
            )

    def cancelled(self) -> bool:
        return self.cancelled_at is not None

    def __repr__(self) -> str:
        return f"Batch(id={self.id!r}, name={self.name!r}, members={len(self.members)})"
