"""Core contracts: chain definitions, triggers, events and the task envelope."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .constants import DEFAULT_BACKOFF_SECONDS, DEFAULT_MAX_ATTEMPTS


class StepCondition(BaseModel):
    """Branching rule evaluated after a step completes.

    ``condition`` uses dot paths into the chain context, e.g.
    ``steps.0.output.recommendation == "approved"``. A rule without a
    condition always matches.
    """

    condition: Optional[str] = None
    action: Literal["continue", "skip", "terminate"] = "continue"


class StepConfig(BaseModel):
    """One step of a chain."""

    agent_id: str
    workflow_type: str
    parallel_group: Optional[str] = None
    name: Optional[str] = None
    estimated_cost: Optional[float] = None
    next_step_conditions: List[StepCondition] = Field(default_factory=list)


class Chain(BaseModel):
    """Ordered list of steps, immutable per version."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    team_id: Optional[str] = None
    version: int = 1
    enabled: bool = True
    steps: List[StepConfig] = Field(default_factory=list)

    model_config = {"frozen": True}

    def group_indices(self, group: str) -> List[int]:
        """Indices of every step in ``group``, ascending."""
        return [i for i, step in enumerate(self.steps) if step.parallel_group == group]


class Trigger(BaseModel):
    """Maps an entity status transition to a chain. ``None`` statuses match any."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    chain_id: str
    team_id: Optional[str] = None
    entity_type: str
    status_from: Optional[str] = None
    status_to: Optional[str] = None
    enabled: bool = True
    priority: int = 0
    conditions: Dict[str, Any] = Field(default_factory=dict)
    deduplication_window_minutes: Optional[int] = None
    last_triggered_at: Optional[datetime] = None

    def matches_transition(self, from_status: Optional[str], to_status: Optional[str]) -> bool:
        from_matches = self.status_from is None or self.status_from == from_status
        to_matches = self.status_to is None or self.status_to == to_status
        return from_matches and to_matches


class ActingUser(BaseModel):
    user_id: str
    name: Optional[str] = None
    email: Optional[str] = None


class TaskMessage(BaseModel):
    """
    Envelope exchanged over the queue. Carries the task type, its payload and
    the retry bookkeeping.
    """

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    task_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    attempt: int = 1
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS
    batch_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    available_at: Optional[datetime] = None
    last_error: Optional[str] = None
    spec_version: str = "1.0"

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "TaskMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)

    def is_due(self, now: Optional[datetime] = None) -> bool:
        if self.available_at is None:
            return True
        return (now or datetime.now(timezone.utc)) >= self.available_at

    def is_final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts

    def next_attempt(self, delay_seconds: float, error: str) -> "TaskMessage":
        """Copy of this message scheduled for the next attempt."""
        return self.model_copy(
            update={
                "message_id": str(uuid.uuid4()),
                "attempt": self.attempt + 1,
                "available_at": datetime.now(timezone.utc)
                + timedelta(seconds=delay_seconds),
                "last_error": error,
            }
        )
