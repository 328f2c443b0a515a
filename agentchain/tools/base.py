"""Tool result envelope and registry."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple

from pydantic import BaseModel, Field

from ..constants import OUTBOX_LIMIT

CATEGORY_CAPABILITIES: Dict[str, Tuple[str, ...]] = {
    "tasks": ("can_modify_tasks",),
    "work_orders": ("can_create_work_orders",),
    "client_data": ("can_access_client_data",),
    "email": ("can_send_emails",),
}


class ToolStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    DENIED = "denied"


class ToolResult(BaseModel):
    """Outcome of one gateway invocation. Never raised, always returned."""

    status: ToolStatus
    data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    execution_time_ms: Optional[float] = None

    @classmethod
    def success(cls, data: Dict[str, Any], execution_time_ms: Optional[float] = None) -> "ToolResult":
        return cls(status=ToolStatus.SUCCESS, data=data, execution_time_ms=execution_time_ms)

    @classmethod
    def failure(cls, error: str, execution_time_ms: Optional[float] = None) -> "ToolResult":
        return cls(status=ToolStatus.FAILED, error=error, execution_time_ms=execution_time_ms)

    @classmethod
    def denied(cls, reason: str) -> "ToolResult":
        return cls(status=ToolStatus.DENIED, error=reason)

    @property
    def ok(self) -> bool:
        return self.status == ToolStatus.SUCCESS


@dataclass
class ToolContext:
    """What a tool handler may touch while running for an agent."""

    team_id: str
    agent_id: str
    entities: Any
    # newest OUTBOX_LIMIT messages; older ones are dropped unless drained
    outbox: Deque[Dict[str, Any]] = field(default_factory=lambda: deque(maxlen=OUTBOX_LIMIT))


ToolHandler = Callable[[ToolContext, Dict[str, Any]], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    category: str
    handler: ToolHandler
    required_capabilities: Tuple[str, ...] = ()

    def capabilities(self) -> Tuple[str, ...]:
        return self.required_capabilities or CATEGORY_CAPABILITIES.get(self.category, ())


class ToolRegistry:
    """Named tools available to agents."""

    def __init__(self) -> None:
        self._tools: Dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> None:
        self._tools[spec.name] = spec

    def tool(
        self, name: str, category: str, description: str = ""
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator registering an async handler under ``name``."""

        def decorator(func: ToolHandler) -> ToolHandler:
            self.register(
                ToolSpec(
                    name=name,
                    description=description or (func.__doc__ or "").strip(),
                    category=category,
                    handler=func,
                )
            )
            return func

        return decorator

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def all(self) -> Dict[str, ToolSpec]:
        return dict(self._tools)
