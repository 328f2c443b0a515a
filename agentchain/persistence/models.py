"""Data models for persisted workflow and chain state."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..state_machine import ChainStatus, StepStatus, WorkflowStatus

WORKFLOW_STATE_SCHEMA_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class ApprovalRequirement(BaseModel):
    """Why a workflow paused and what the approver is asked to confirm."""

    reason: str
    action_description: str
    proposed: dict[str, Any] = Field(default_factory=dict)
    requested_at: datetime = Field(default_factory=utcnow)


class ErrorInfo(BaseModel):
    """Error captured from a failed invocation."""

    type: str
    message: str
    occurred_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorInfo":
        return cls(type=type(exc).__name__, message=str(exc) or type(exc).__name__)


class Rejection(BaseModel):
    reason: str
    rejected_by: Optional[str] = None
    rejected_at: datetime = Field(default_factory=utcnow)


class WorkflowStateData(BaseModel):
    """Typed payload stored on a workflow state."""

    schema_version: int = WORKFLOW_STATE_SCHEMA_VERSION
    input: dict[str, Any] = Field(default_factory=dict)
    inherited_context: dict[str, Any] = Field(default_factory=dict)
    output: Optional[dict[str, Any]] = None
    approval: Optional[ApprovalRequirement] = None
    approval_data: dict[str, Any] = Field(default_factory=dict)
    error: Optional[ErrorInfo] = None
    rejection: Optional[Rejection] = None
    progress: dict[str, Any] = Field(default_factory=dict)


class WorkflowState(BaseModel):
    """Durable record of one agent invocation."""

    id: str = Field(default_factory=new_id)
    team_id: str
    agent_id: str
    workflow_type: str
    status: WorkflowStatus = WorkflowStatus.PENDING
    state_data: WorkflowStateData = Field(default_factory=WorkflowStateData)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    paused_at: Optional[datetime] = None
    resumed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def is_paused(self) -> bool:
        return self.status == WorkflowStatus.PAUSED

    def is_terminal(self) -> bool:
        return self.status in (
            WorkflowStatus.COMPLETED,
            WorkflowStatus.FAILED,
            WorkflowStatus.REJECTED,
        )

    def summary(self) -> str:
        """Actionable one-line description for progress and approval views."""
        data = self.state_data
        if self.status == WorkflowStatus.PAUSED and data.approval is not None:
            return f"Approval required: {data.approval.action_description}"
        if self.status == WorkflowStatus.FAILED and data.error is not None:
            return f"Failed: {data.error.message}"
        if self.status == WorkflowStatus.REJECTED and data.rejection is not None:
            return f"Rejected: {data.rejection.reason}"
        return self.status.value.capitalize()


class EntityRef(BaseModel):
    """Type + key pair pointing at a business entity."""

    entity_type: str
    key: str


class ChainExecution(BaseModel):
    """One run of a chain."""

    id: str = Field(default_factory=new_id)
    chain_id: str
    chain_version: int = 1
    team_id: str
    triggering_entity: Optional[EntityRef] = None
    dispatch_key: Optional[str] = None
    status: ChainStatus = ChainStatus.RUNNING
    chain_context: dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def is_running(self) -> bool:
        return self.status == ChainStatus.RUNNING

    def is_paused(self) -> bool:
        return self.status == ChainStatus.PAUSED

    def is_terminal(self) -> bool:
        return self.status in (
            ChainStatus.COMPLETED,
            ChainStatus.FAILED,
            ChainStatus.CANCELLED,
        )


class ChainExecutionStep(BaseModel):
    """Per-step record, unique per (chain_execution_id, step_index)."""

    id: str = Field(default_factory=new_id)
    chain_execution_id: str
    step_index: int
    status: StepStatus = StepStatus.PENDING
    output_data: dict[str, Any] = Field(default_factory=dict)
    workflow_state_id: Optional[str] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def is_terminal(self) -> bool:
        return self.status in (StepStatus.COMPLETED, StepStatus.FAILED)


class AgentConfiguration(BaseModel):
    """Per (team, agent) limits, spend counters and capability flags."""

    team_id: str
    agent_id: str
    enabled: bool = True
    daily_run_limit: Optional[int] = 50
    monthly_budget_cap: Optional[float] = 100.0
    runs_today: int = 0
    usage_date: Optional[date] = None
    daily_spend: float = 0.0
    current_month_spend: float = 0.0
    spend_month: Optional[str] = None
    can_create_work_orders: bool = False
    can_modify_tasks: bool = False
    can_access_client_data: bool = False
    can_send_emails: bool = False
    requires_approval: bool = True
    tool_permissions: dict[str, bool] = Field(default_factory=dict)

    def has_capability(self, flag: str) -> bool:
        return bool(getattr(self, flag, False))


class QuotaDecision(BaseModel):
    """Outcome of an atomic quota check."""

    granted: bool
    reason: Optional[str] = None  # missing, disabled, rate_limited, over_budget
    configuration: Optional[AgentConfiguration] = None
