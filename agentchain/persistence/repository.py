"""Repository abstraction for workflow and chain state persistence."""

from __future__ import annotations

from datetime import date
from typing import Any, Optional, Protocol

from ..contracts import Chain, Trigger
from ..state_machine import ChainStatus
from .models import (
    AgentConfiguration,
    ChainExecution,
    ChainExecutionStep,
    QuotaDecision,
    WorkflowState,
)


class AgentRepository(Protocol):
    """Protocol for persistence backends.

    Besides plain find/create/update, two operations must be atomic per
    natural key: ``upsert_step`` on (chain_execution_id, step_index) and
    ``consume_quota`` on (team_id, agent_id).
    """

    # Workflow states ---------------------------------------------------
    async def create_workflow_state(self, state: WorkflowState) -> WorkflowState:
        """Persist a new workflow state."""

    async def update_workflow_state(self, state: WorkflowState) -> WorkflowState:
        """Persist changes to an existing workflow state."""

    async def get_workflow_state(self, state_id: str) -> WorkflowState | None:
        """Retrieve a workflow state by id."""

    async def list_workflow_states(
        self, team_id: str | None = None, status: str | None = None
    ) -> list[WorkflowState]:
        """Return workflow states, optionally filtered."""

    # Chains ------------------------------------------------------------
    async def save_chain(self, chain: Chain) -> Chain:
        """Insert or replace a chain definition."""

    async def get_chain(self, chain_id: str) -> Chain | None:
        """Retrieve a chain definition by id."""

    # Executions --------------------------------------------------------
    async def create_execution(self, execution: ChainExecution) -> ChainExecution:
        """Persist a new chain execution."""

    async def update_execution(self, execution: ChainExecution) -> ChainExecution:
        """Persist status/context changes of a chain execution."""

    async def get_execution(self, execution_id: str) -> ChainExecution | None:
        """Retrieve a chain execution by id."""

    async def find_execution_by_dispatch_key(
        self, dispatch_key: str
    ) -> ChainExecution | None:
        """Look up the execution created for a trigger delivery."""

    async def list_executions(
        self, team_id: str | None = None, status: ChainStatus | None = None
    ) -> list[ChainExecution]:
        """Return chain executions, optionally filtered."""

    async def merge_execution_metadata(
        self, execution_id: str, metadata: dict[str, Any]
    ) -> ChainExecution | None:
        """Atomically merge keys into ``chain_context['metadata']``."""

    # Steps -------------------------------------------------------------
    async def upsert_step(
        self, chain_execution_id: str, step_index: int, **fields: Any
    ) -> tuple[ChainExecutionStep, bool]:
        """Create or update the step keyed by (execution, index).

        Returns the stored step and whether it was created.
        """

    async def get_step(
        self, chain_execution_id: str, step_index: int
    ) -> ChainExecutionStep | None:
        """Retrieve one step record."""

    async def list_steps(self, chain_execution_id: str) -> list[ChainExecutionStep]:
        """Return the steps of an execution ordered by step_index."""

    # Agent configuration -----------------------------------------------
    async def save_agent_configuration(
        self, config: AgentConfiguration
    ) -> AgentConfiguration:
        """Insert or replace the configuration for (team, agent)."""

    async def get_agent_configuration(
        self, team_id: str, agent_id: str
    ) -> AgentConfiguration | None:
        """Retrieve the configuration for (team, agent)."""

    async def consume_quota(
        self, team_id: str, agent_id: str, cost: float, today: date
    ) -> QuotaDecision:
        """Atomically check limits and, when within them, count one run.

        A refused decision must leave the configuration untouched.
        """

    # Triggers ----------------------------------------------------------
    async def save_trigger(self, trigger: Trigger) -> Trigger:
        """Insert or replace a trigger."""

    async def get_trigger(self, trigger_id: str) -> Trigger | None:
        """Retrieve a trigger by id."""

    async def find_triggers(
        self, entity_type: str, from_status: Optional[str], to_status: Optional[str]
    ) -> list[Trigger]:
        """Enabled triggers whose transition matches, highest priority first."""
