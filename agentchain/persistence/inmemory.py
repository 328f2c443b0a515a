"""In-memory implementation of the agent repository."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import date
from typing import Any, Dict, Optional, Tuple

from ..contracts import Chain, Trigger
from ..state_machine import ChainStatus
from .models import (
    AgentConfiguration,
    ChainExecution,
    ChainExecutionStep,
    QuotaDecision,
    WorkflowState,
    utcnow,
)
from .quota import apply_quota, evaluate_quota
from .repository import AgentRepository


class InMemoryAgentRepository(AgentRepository):
    """Store workflow and chain state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._states: Dict[str, WorkflowState] = {}
        self._chains: Dict[str, Chain] = {}
        self._executions: Dict[str, ChainExecution] = {}
        self._steps: Dict[Tuple[str, int], ChainExecutionStep] = {}
        self._configs: Dict[Tuple[str, str], AgentConfiguration] = {}
        self._triggers: Dict[str, Trigger] = {}
        self._key_locks: Dict[Any, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    async def create_workflow_state(self, state: WorkflowState) -> WorkflowState:
        self._states[state.id] = state.model_copy(deep=True)
        return state

    async def update_workflow_state(self, state: WorkflowState) -> WorkflowState:
        state.updated_at = utcnow()
        self._states[state.id] = state.model_copy(deep=True)
        return state

    async def get_workflow_state(self, state_id: str) -> WorkflowState | None:
        state = self._states.get(state_id)
        return state.model_copy(deep=True) if state else None

    async def list_workflow_states(
        self, team_id: str | None = None, status: str | None = None
    ) -> list[WorkflowState]:
        return [
            s.model_copy(deep=True)
            for s in self._states.values()
            if (team_id is None or s.team_id == team_id)
            and (status is None or s.status == status)
        ]

    # ------------------------------------------------------------------
    async def save_chain(self, chain: Chain) -> Chain:
        self._chains[chain.id] = chain
        return chain

    async def get_chain(self, chain_id: str) -> Chain | None:
        return self._chains.get(chain_id)

    # ------------------------------------------------------------------
    async def create_execution(self, execution: ChainExecution) -> ChainExecution:
        self._executions[execution.id] = execution.model_copy(deep=True)
        return execution

    async def update_execution(self, execution: ChainExecution) -> ChainExecution:
        execution.updated_at = utcnow()
        self._executions[execution.id] = execution.model_copy(deep=True)
        return execution

    async def get_execution(self, execution_id: str) -> ChainExecution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def find_execution_by_dispatch_key(
        self, dispatch_key: str
    ) -> ChainExecution | None:
        for execution in self._executions.values():
            if execution.dispatch_key == dispatch_key:
                return execution.model_copy(deep=True)
        return None

    async def list_executions(
        self, team_id: str | None = None, status: ChainStatus | None = None
    ) -> list[ChainExecution]:
        return [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if (team_id is None or e.team_id == team_id)
            and (status is None or e.status == status)
        ]

    async def merge_execution_metadata(
        self, execution_id: str, metadata: dict[str, Any]
    ) -> ChainExecution | None:
        async with self._key_locks[("execution", execution_id)]:
            execution = self._executions.get(execution_id)
            if execution is None:
                return None
            context = dict(execution.chain_context)
            context["metadata"] = {**context.get("metadata", {}), **metadata}
            execution.chain_context = context
            execution.updated_at = utcnow()
            return execution.model_copy(deep=True)

    # ------------------------------------------------------------------
    async def upsert_step(
        self, chain_execution_id: str, step_index: int, **fields: Any
    ) -> tuple[ChainExecutionStep, bool]:
        key = (chain_execution_id, step_index)
        async with self._key_locks[("step",) + key]:
            existing = self._steps.get(key)
            if existing is None:
                step = ChainExecutionStep(
                    chain_execution_id=chain_execution_id,
                    step_index=step_index,
                    **fields,
                )
                self._steps[key] = step
                return step.model_copy(deep=True), True
            updated = existing.model_copy(update=fields, deep=True)
            self._steps[key] = updated
            return updated.model_copy(deep=True), False

    async def get_step(
        self, chain_execution_id: str, step_index: int
    ) -> ChainExecutionStep | None:
        step = self._steps.get((chain_execution_id, step_index))
        return step.model_copy(deep=True) if step else None

    async def list_steps(self, chain_execution_id: str) -> list[ChainExecutionStep]:
        steps = [
            s.model_copy(deep=True)
            for (exec_id, _), s in self._steps.items()
            if exec_id == chain_execution_id
        ]
        return sorted(steps, key=lambda s: s.step_index)

    # ------------------------------------------------------------------
    async def save_agent_configuration(
        self, config: AgentConfiguration
    ) -> AgentConfiguration:
        self._configs[(config.team_id, config.agent_id)] = config.model_copy(deep=True)
        return config

    async def get_agent_configuration(
        self, team_id: str, agent_id: str
    ) -> AgentConfiguration | None:
        config = self._configs.get((team_id, agent_id))
        return config.model_copy(deep=True) if config else None

    async def consume_quota(
        self, team_id: str, agent_id: str, cost: float, today: date
    ) -> QuotaDecision:
        key = (team_id, agent_id)
        async with self._key_locks[("quota",) + key]:
            config = self._configs.get(key)
            decision = evaluate_quota(config, cost, today)
            if not decision.granted:
                return decision
            updated = apply_quota(config, cost, today)
            self._configs[key] = updated
            return QuotaDecision(granted=True, configuration=updated.model_copy(deep=True))

    # ------------------------------------------------------------------
    async def save_trigger(self, trigger: Trigger) -> Trigger:
        self._triggers[trigger.id] = trigger.model_copy(deep=True)
        return trigger

    async def get_trigger(self, trigger_id: str) -> Trigger | None:
        trigger = self._triggers.get(trigger_id)
        return trigger.model_copy(deep=True) if trigger else None

    async def find_triggers(
        self, entity_type: str, from_status: Optional[str], to_status: Optional[str]
    ) -> list[Trigger]:
        matches = [
            t.model_copy(deep=True)
            for t in self._triggers.values()
            if t.enabled
            and t.entity_type == entity_type
            and t.matches_transition(from_status, to_status)
        ]
        return sorted(matches, key=lambda t: t.priority, reverse=True)
