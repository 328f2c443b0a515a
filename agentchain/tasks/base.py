"""Task contract: typed results instead of exceptions deciding retries."""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Dict, Optional

from pydantic import BaseModel, Field

from ..contracts import TaskMessage

if TYPE_CHECKING:
    from ..runtime import AgentRuntime

logger = logging.getLogger(__name__)


class TaskOutcome(str, Enum):
    SUCCESS = "success"
    RETRY = "retry"
    PERMANENT = "permanent"


class TaskResult(BaseModel):
    outcome: TaskOutcome
    data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def success(cls, **data: Any) -> "TaskResult":
        return cls(outcome=TaskOutcome.SUCCESS, data=data)

    @classmethod
    def retry(cls, error: str) -> "TaskResult":
        return cls(outcome=TaskOutcome.RETRY, error=error)

    @classmethod
    def permanent(cls, error: str) -> "TaskResult":
        return cls(outcome=TaskOutcome.PERMANENT, error=error)

    @property
    def ok(self) -> bool:
        return self.outcome == TaskOutcome.SUCCESS


class BaseTask:
    """One durable unit of work.

    ``handle`` returns a TaskResult or raises; the worker turns exceptions
    into results. ``failed`` runs once after the final attempt or a
    permanent failure and records the error on the owning record.
    """

    task_type: ClassVar[str] = ""

    def __init__(self, runtime: "AgentRuntime") -> None:
        self.runtime = runtime

    async def handle(self, payload: Dict[str, Any], message: TaskMessage) -> TaskResult:
        raise NotImplementedError

    async def failed(self, payload: Dict[str, Any], error: str) -> None:
        logger.error(f"{self.task_type} task failed: {error}")
