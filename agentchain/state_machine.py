"""
Status transition tables for workflow states, chain executions and steps.

Workflow state:
    pending  → running
    running  → paused | completed | failed | rejected
    paused   → running   (explicit resume with approval data)
    paused   → rejected | failed

Chain execution:
    running  → paused | completed | failed | cancelled
    paused   → running | failed | cancelled

Chain execution step:
    pending  → running | failed
    running  → completed | failed
    failed   → running   (retry while the owning execution is still running)

Terminal records never transition again; invalid transitions raise
InvalidTransitionError.
"""

from __future__ import annotations

from enum import Enum

from .errors import InvalidTransitionError


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"


class ChainStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


WORKFLOW_TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.PENDING: frozenset([WorkflowStatus.RUNNING]),
    WorkflowStatus.RUNNING: frozenset([
        WorkflowStatus.PAUSED,
        WorkflowStatus.COMPLETED,
        WorkflowStatus.FAILED,
        WorkflowStatus.REJECTED,
    ]),
    WorkflowStatus.PAUSED: frozenset([
        WorkflowStatus.RUNNING,
        WorkflowStatus.REJECTED,
        WorkflowStatus.FAILED,
    ]),
    WorkflowStatus.COMPLETED: frozenset(),
    WorkflowStatus.FAILED: frozenset(),
    WorkflowStatus.REJECTED: frozenset(),
}

CHAIN_TRANSITIONS: dict[ChainStatus, frozenset[ChainStatus]] = {
    ChainStatus.RUNNING: frozenset([
        ChainStatus.PAUSED,
        ChainStatus.COMPLETED,
        ChainStatus.FAILED,
        ChainStatus.CANCELLED,
    ]),
    ChainStatus.PAUSED: frozenset([
        ChainStatus.RUNNING,
        ChainStatus.FAILED,
        ChainStatus.CANCELLED,
    ]),
    ChainStatus.COMPLETED: frozenset(),
    ChainStatus.FAILED: frozenset(),
    ChainStatus.CANCELLED: frozenset(),
}

STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset([StepStatus.RUNNING, StepStatus.FAILED]),
    StepStatus.RUNNING: frozenset([StepStatus.COMPLETED, StepStatus.FAILED]),
    StepStatus.FAILED: frozenset([StepStatus.RUNNING]),
    StepStatus.COMPLETED: frozenset(),
}

WORKFLOW_TERMINAL = frozenset(
    [WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.REJECTED]
)
CHAIN_TERMINAL = frozenset(
    [ChainStatus.COMPLETED, ChainStatus.FAILED, ChainStatus.CANCELLED]
)
STEP_TERMINAL = frozenset([StepStatus.COMPLETED, StepStatus.FAILED])

_TABLES = {
    "workflow": WORKFLOW_TRANSITIONS,
    "chain": CHAIN_TRANSITIONS,
    "step": STEP_TRANSITIONS,
}


def can_transition(kind: str, from_status: Enum, to_status: Enum) -> bool:
    """Return True if ``from_status`` → ``to_status`` is valid for ``kind``."""
    return to_status in _TABLES[kind].get(from_status, frozenset())


def validate_transition(
    kind: str, from_status: Enum, to_status: Enum, record_id: str | None = None
) -> None:
    """Raise InvalidTransitionError unless the transition is allowed."""
    if not can_transition(kind, from_status, to_status):
        raise InvalidTransitionError(
            kind, from_status.value, to_status.value, record_id
        )


def is_terminal(status: Enum) -> bool:
    return (
        status in WORKFLOW_TERMINAL
        or status in CHAIN_TERMINAL
        or status in STEP_TERMINAL
    )
