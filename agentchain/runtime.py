"""Wire repository, transport, workflows and orchestrators together."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .chains import ChainOrchestrator
from .config import AgentChainConfig, load_config
from .constants import EXECUTE_CHAIN_STEP
from .directory import TeamDirectory
from .entities import EntityRegistry
from .errors import AgentChainError, SafetyBoundExceeded
from .limiter import BudgetLimiter
from .orchestrator import WorkflowStateManager
from .persistence import get_repository
from .persistence.models import WorkflowState
from .persistence.repository import AgentRepository
from .routing import RoutingDecisionEngine
from .tasks.queue import TaskQueue
from .tools import ToolRegistry, default_registry
from .transports import BaseTransport, get_transport
from .triggers import TriggerDispatcher
from .workflows import WorkflowRegistry, WorkflowServices, default_workflow_registry

logger = logging.getLogger(__name__)


@dataclass
class AgentRuntime:
    config: AgentChainConfig
    repository: AgentRepository
    directory: TeamDirectory
    entities: EntityRegistry
    routing: RoutingDecisionEngine
    limiter: BudgetLimiter
    manager: WorkflowStateManager
    chains: ChainOrchestrator
    triggers: TriggerDispatcher
    queue: Optional[TaskQueue] = None

    async def continue_chain_of(self, state: WorkflowState) -> None:
        """Let the chain owning ``state`` (if any) pick up after a decision."""
        execution_id = state.state_data.input.get("chain_execution_id")
        if not execution_id:
            return
        execution = await self.chains.get_execution(execution_id)
        await self.chains.resume(execution, state.state_data.approval_data)
        if self.queue is not None:
            await self.queue.enqueue(
                EXECUTE_CHAIN_STEP,
                {"chain_execution_id": execution_id, "auto_progress": True},
            )
            return
        try:
            await self.chains.advance(execution)
        except SafetyBoundExceeded:
            logger.info(f"Chain execution {execution_id} left running for follow-up")
        except AgentChainError as exc:
            logger.warning(f"Chain execution {execution_id} stopped after approval: {exc}")

    async def resume_approval(
        self, state_id: str, payload: Optional[Dict[str, Any]] = None
    ) -> WorkflowState:
        """Resume a paused workflow and continue its chain."""
        state = await self.manager.resume(await self.manager.get(state_id), payload)
        await self.continue_chain_of(state)
        return state

    async def reject_approval(
        self, state_id: str, reason: str, rejected_by: Optional[str] = None
    ) -> WorkflowState:
        state = await self.manager.reject(await self.manager.get(state_id), reason, rejected_by)
        await self.continue_chain_of(state)
        return state


def build_runtime(
    config: Optional[AgentChainConfig] = None,
    repository: Optional[AgentRepository] = None,
    transport: Optional[BaseTransport] = None,
    directory: Optional[TeamDirectory] = None,
    entities: Optional[EntityRegistry] = None,
    workflows: Optional[WorkflowRegistry] = None,
    tools: Optional[ToolRegistry] = None,
    use_queue: bool = True,
) -> AgentRuntime:
    """Build every collaborator from configuration.

    With ``use_queue=False`` triggers and approvals run inline in the caller.
    """
    config = config or load_config()
    repository = repository or get_repository(config=config)
    if directory is None:
        directory = TeamDirectory(config.teams)
    if entities is None:
        entities = EntityRegistry()
    routing = RoutingDecisionEngine(directory, config.routing)
    limiter = BudgetLimiter(repository, default_cost=config.limits.default_invocation_cost)
    services = WorkflowServices(
        directory=directory, entities=entities, routing=routing, llm=config.llm
    )
    manager = WorkflowStateManager(
        repository,
        workflows or default_workflow_registry(),
        limiter,
        services,
        tools=tools or default_registry(),
    )

    queue = None
    if use_queue:
        queue = TaskQueue(
            transport or get_transport(config=config),
            topic=config.transport.topic,
            config=config.tasks,
        )

    chains = ChainOrchestrator(
        repository,
        manager,
        entities,
        queue=queue,
        max_auto_iterations=config.orchestration.max_auto_iterations,
    )
    triggers = TriggerDispatcher(repository, chains, directory=directory, queue=queue)
    return AgentRuntime(
        config=config,
        repository=repository,
        directory=directory,
        entities=entities,
        routing=routing,
        limiter=limiter,
        manager=manager,
        chains=chains,
        triggers=triggers,
        queue=queue,
    )
