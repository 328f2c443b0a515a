from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel


class WorkflowStateRow(SQLModel, table=True):
    """Represents one agent invocation."""

    __tablename__ = "agent_workflow_states"

    id: str = Field(primary_key=True)
    team_id: str = Field(index=True)
    agent_id: str
    workflow_type: str
    status: str = Field(default="pending", index=True)
    state_data: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime
    updated_at: datetime
    paused_at: Optional[datetime] = None
    resumed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ChainRow(SQLModel, table=True):
    """Chain definition with its steps stored as JSON."""

    __tablename__ = "agent_chains"

    id: str = Field(primary_key=True)
    name: str
    team_id: Optional[str] = None
    version: int = 1
    enabled: bool = True
    steps: list = Field(default_factory=list, sa_column=Column(JSON))


class ChainExecutionRow(SQLModel, table=True):
    """Tracks one run of a chain."""

    __tablename__ = "agent_chain_executions"

    id: str = Field(primary_key=True)
    chain_id: str = Field(index=True)
    chain_version: int = 1
    team_id: str = Field(index=True)
    entity_type: Optional[str] = None
    entity_key: Optional[str] = None
    dispatch_key: Optional[str] = Field(default=None, unique=True)
    status: str = Field(default="running", index=True)
    chain_context: dict = Field(default_factory=dict, sa_column=Column(JSON))
    error_message: Optional[str] = None
    started_at: datetime
    updated_at: datetime
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ChainExecutionStepRow(SQLModel, table=True):
    """Per-step record, one row per (execution, step index)."""

    __tablename__ = "agent_chain_execution_steps"
    __table_args__ = (
        UniqueConstraint(
            "chain_execution_id", "step_index", name="uq_chain_execution_step"
        ),
    )

    id: str = Field(primary_key=True)
    chain_execution_id: str = Field(foreign_key="agent_chain_executions.id", index=True)
    step_index: int
    status: str = Field(default="pending")
    output_data: dict = Field(default_factory=dict, sa_column=Column(JSON))
    workflow_state_id: Optional[str] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class AgentConfigurationRow(SQLModel, table=True):
    """Limits, counters and capability flags for one (team, agent) pair."""

    __tablename__ = "agent_configurations"

    team_id: str = Field(primary_key=True)
    agent_id: str = Field(primary_key=True)
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
    tool_permissions: dict = Field(default_factory=dict, sa_column=Column(JSON))


class TriggerRow(SQLModel, table=True):
    """Entity status transition mapped to a chain."""

    __tablename__ = "agent_chain_triggers"

    id: str = Field(primary_key=True)
    name: str = ""
    chain_id: str
    team_id: Optional[str] = None
    entity_type: str = Field(index=True)
    status_from: Optional[str] = None
    status_to: Optional[str] = None
    enabled: bool = True
    priority: int = 0
    conditions: dict = Field(default_factory=dict, sa_column=Column(JSON))
    deduplication_window_minutes: Optional[int] = None
    last_triggered_at: Optional[datetime] = None
