"""Workflow contract: what the state manager runs for one agent invocation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Literal, Optional

from pydantic import BaseModel, Field

from ..config import LLMConfig
from ..directory import TeamDirectory
from ..entities import EntityRegistry
from ..persistence.models import AgentConfiguration, ApprovalRequirement, WorkflowState
from ..routing import RoutingDecisionEngine
from ..tools.gateway import ToolGateway


class WorkflowResult(BaseModel):
    """What a workflow run or continuation asks the manager to do next."""

    outcome: Literal["completed", "needs_approval", "rejected"]
    output: Dict[str, Any] = Field(default_factory=dict)
    approval: Optional[ApprovalRequirement] = None
    reason: Optional[str] = None

    @classmethod
    def completed(cls, output: Optional[Dict[str, Any]] = None) -> "WorkflowResult":
        return cls(outcome="completed", output=output or {})

    @classmethod
    def needs_approval(
        cls,
        reason: str,
        action_description: str,
        proposed: Optional[Dict[str, Any]] = None,
        output: Optional[Dict[str, Any]] = None,
    ) -> "WorkflowResult":
        return cls(
            outcome="needs_approval",
            output=output or {},
            approval=ApprovalRequirement(
                reason=reason,
                action_description=action_description,
                proposed=proposed or {},
            ),
        )

    @classmethod
    def rejected(cls, reason: str) -> "WorkflowResult":
        return cls(outcome="rejected", reason=reason)


@dataclass
class WorkflowServices:
    """Collaborators shared by every workflow run."""

    directory: TeamDirectory
    entities: EntityRegistry
    routing: RoutingDecisionEngine
    llm: LLMConfig = field(default_factory=LLMConfig)


@dataclass
class WorkflowContext:
    state: WorkflowState
    configuration: AgentConfiguration
    gateway: ToolGateway
    services: WorkflowServices

    @property
    def input(self) -> Dict[str, Any]:
        return self.state.state_data.input

    @property
    def inherited_context(self) -> Dict[str, Any]:
        return self.state.state_data.inherited_context

    @property
    def approval_data(self) -> Dict[str, Any]:
        return self.state.state_data.approval_data

    @property
    def team_id(self) -> str:
        return self.state.team_id

    def triggering_entity(self) -> Dict[str, Any]:
        return self.input.get("triggering_entity") or self.input.get("entity") or {}


class BaseWorkflow:
    """Subclasses implement ``run`` and, when they pause, ``resume``."""

    workflow_type: ClassVar[str] = ""
    description: ClassVar[str] = ""
    estimated_cost: ClassVar[Optional[float]] = None

    async def run(self, ctx: WorkflowContext) -> WorkflowResult:
        raise NotImplementedError

    async def resume(self, ctx: WorkflowContext, payload: Dict[str, Any]) -> WorkflowResult:
        """Continue after approval. ``approved: false`` rejects."""
        if payload.get("approved") is False:
            return WorkflowResult.rejected(payload.get("reason") or "Rejected by approver")
        return WorkflowResult.completed(ctx.state.state_data.output or {})
