"""Workflow state manager: runs one agent invocation through its lifecycle.

    pending → running → (paused ⇄ running)* → completed | failed | rejected

Every transition is validated against ``state_machine`` and persisted before
the next one is attempted.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from .constants import OUTBOX_LIMIT
from .errors import NotFoundError
from .limiter import BudgetLimiter
from .persistence.models import (
    AgentConfiguration,
    ErrorInfo,
    Rejection,
    WorkflowState,
    WorkflowStateData,
    utcnow,
)
from .persistence.repository import AgentRepository
from .state_machine import WorkflowStatus, validate_transition
from .tools import ToolContext, ToolGateway, ToolRegistry, default_registry
from .workflows.base import BaseWorkflow, WorkflowContext, WorkflowResult, WorkflowServices
from .workflows.registry import WorkflowRegistry

logger = logging.getLogger(__name__)


class WorkflowStateManager:
    """Create, run, pause, resume and finish workflow states."""

    def __init__(
        self,
        repository: AgentRepository,
        workflows: WorkflowRegistry,
        limiter: BudgetLimiter,
        services: WorkflowServices,
        tools: Optional[ToolRegistry] = None,
    ) -> None:
        self.repository = repository
        self.workflows = workflows
        self.limiter = limiter
        self.services = services
        self.tools = tools or default_registry()
        self.outbox: Deque[Dict[str, Any]] = deque(maxlen=OUTBOX_LIMIT)

    def drain_outbox(self) -> List[Dict[str, Any]]:
        """Hand over the queued emails, oldest first, and empty the outbox."""
        messages = list(self.outbox)
        self.outbox.clear()
        return messages

    # ------------------------------------------------------------------
    async def _transition(self, state: WorkflowState, status: WorkflowStatus) -> WorkflowState:
        validate_transition("workflow", state.status, status, state.id)
        now = utcnow()
        state.status = status
        if status == WorkflowStatus.PAUSED:
            state.paused_at = now
        elif status == WorkflowStatus.RUNNING and state.paused_at is not None:
            state.resumed_at = now
        elif state.is_terminal():
            state.completed_at = now
        await self.repository.update_workflow_state(state)
        logger.debug(f"Workflow state {state.id} -> {status.value}")
        return state

    def _context(self, state: WorkflowState, configuration: AgentConfiguration) -> WorkflowContext:
        gateway = ToolGateway(
            self.tools,
            configuration,
            ToolContext(
                team_id=state.team_id,
                agent_id=state.agent_id,
                entities=self.services.entities,
                outbox=self.outbox,
            ),
        )
        return WorkflowContext(
            state=state, configuration=configuration, gateway=gateway, services=self.services
        )

    async def _apply(self, state: WorkflowState, result: WorkflowResult) -> WorkflowState:
        data = state.state_data
        if result.outcome == "needs_approval":
            data.approval = result.approval
            data.output = result.output or None
            await self._transition(state, WorkflowStatus.PAUSED)
            logger.info(f"Workflow state {state.id} paused: {state.summary()}")
        elif result.outcome == "rejected":
            data.rejection = Rejection(reason=result.reason or "Rejected")
            await self._transition(state, WorkflowStatus.REJECTED)
            logger.info(f"Workflow state {state.id} rejected: {data.rejection.reason}")
        else:
            data.output = result.output
            await self._transition(state, WorkflowStatus.COMPLETED)
            logger.info(f"Workflow state {state.id} completed")
        return state

    async def _fail(self, state: WorkflowState, exc: BaseException) -> WorkflowState:
        state.state_data.error = ErrorInfo.from_exception(exc)
        await self._transition(state, WorkflowStatus.FAILED)
        logger.error(f"Workflow state {state.id} ({state.workflow_type}) failed: {exc}")
        return state

    # ------------------------------------------------------------------
    async def execute(
        self,
        workflow_type: str,
        input: Dict[str, Any],
        team_id: str,
        agent_id: str,
        inherited_context: Optional[Dict[str, Any]] = None,
        estimated_cost: Optional[float] = None,
    ) -> WorkflowState:
        """Admit, create and run a workflow.

        Limit violations raise before any state exists. Errors raised by the
        workflow itself end in ``failed`` and are not re-raised.
        """
        workflow: BaseWorkflow = self.workflows.get(workflow_type)
        cost = estimated_cost if estimated_cost is not None else workflow.estimated_cost
        configuration = await self.limiter.acquire(team_id, agent_id, cost)

        state = WorkflowState(
            team_id=team_id,
            agent_id=agent_id,
            workflow_type=workflow_type,
            state_data=WorkflowStateData(
                input=dict(input), inherited_context=dict(inherited_context or {})
            ),
        )
        await self.repository.create_workflow_state(state)
        logger.info(
            f"Workflow state {state.id} started: {workflow_type} for "
            f"team_id={team_id} agent_id={agent_id}"
        )
        await self._transition(state, WorkflowStatus.RUNNING)

        try:
            result = await workflow.run(self._context(state, configuration))
        except Exception as exc:
            return await self._fail(state, exc)
        return await self._apply(state, result)

    async def resume(
        self, state: WorkflowState, approval_payload: Optional[Dict[str, Any]] = None
    ) -> WorkflowState:
        """Continue a paused workflow; anything else is returned untouched."""
        current = await self.repository.get_workflow_state(state.id) or state
        if not current.is_paused():
            logger.info(
                f"Ignoring resume of workflow state {current.id} in status {current.status.value}"
            )
            return current

        payload = dict(approval_payload or {})
        workflow = self.workflows.get(current.workflow_type)
        configuration = await self.repository.get_agent_configuration(
            current.team_id, current.agent_id
        ) or AgentConfiguration(team_id=current.team_id, agent_id=current.agent_id)

        current.state_data.approval_data = {**current.state_data.approval_data, **payload}
        await self._transition(current, WorkflowStatus.RUNNING)
        logger.info(f"Workflow state {current.id} resumed")

        try:
            result = await workflow.resume(self._context(current, configuration), payload)
        except Exception as exc:
            return await self._fail(current, exc)
        return await self._apply(current, result)

    async def reject(
        self, state: WorkflowState, reason: str, rejected_by: Optional[str] = None
    ) -> WorkflowState:
        """Reject a paused workflow without running its continuation."""
        current = await self.repository.get_workflow_state(state.id) or state
        if not current.is_paused():
            logger.info(
                f"Ignoring reject of workflow state {current.id} in status {current.status.value}"
            )
            return current
        current.state_data.rejection = Rejection(reason=reason, rejected_by=rejected_by)
        await self._transition(current, WorkflowStatus.REJECTED)
        logger.info(f"Workflow state {current.id} rejected by {rejected_by or 'unknown'}")
        return current

    async def get(self, state_id: str) -> WorkflowState:
        state = await self.repository.get_workflow_state(state_id)
        if state is None:
            raise NotFoundError(f"Workflow state {state_id} not found", state_id=state_id)
        return state

    async def pending_approvals(self, team_id: str) -> List[WorkflowState]:
        return await self.repository.list_workflow_states(
            team_id=team_id, status=WorkflowStatus.PAUSED
        )
