"""The durable tasks run by workers."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Type

from ..constants import EXECUTE_CHAIN_STEP
from ..contracts import ActingUser, TaskMessage
from ..entities import Note, WorkOrder
from ..errors import NotFoundError, SafetyBoundExceeded
from ..persistence.models import EntityRef, utcnow
from ..triggers import PROCESS_CHAIN_TRIGGER
from .base import BaseTask, TaskResult

if TYPE_CHECKING:
    from ..runtime import AgentRuntime

logger = logging.getLogger(__name__)

PROCESS_DISPATCHER_MENTION = "process_dispatcher_mention"
PROCESS_DISPATCHER_ROUTING = "process_dispatcher_routing"
PROCESS_PLAN_GENERATION = "process_plan_generation"


def resolve_work_order(runtime: "AgentRuntime", payload: Dict[str, Any]) -> WorkOrder:
    """The work order named by ``payload``.

    Falls back to the ``work_order`` snapshot carried in the payload when
    this process has no stored record, and keeps it for metadata updates.
    """
    key = str(payload.get("work_order_id") or (payload.get("work_order") or {}).get("id"))
    stored = runtime.entities.get(WorkOrder.entity_type, key)
    if stored is not None:
        return stored
    snapshot = payload.get("work_order")
    if not snapshot:
        raise NotFoundError(
            f"{WorkOrder.entity_type} {key} not found", entity_type=WorkOrder.entity_type, key=key
        )
    work_order = runtime.entities.load(WorkOrder.entity_type, {**snapshot, "id": key})
    return runtime.entities.save(work_order)


class ProcessChainTriggerTask(BaseTask):
    """Run the chain of a matched trigger for one entity."""

    task_type = PROCESS_CHAIN_TRIGGER

    async def handle(self, payload: Dict[str, Any], message: TaskMessage) -> TaskResult:
        trigger = await self.runtime.repository.get_trigger(payload["trigger_id"])
        if trigger is None:
            raise NotFoundError(
                f"Trigger {payload['trigger_id']} not found", trigger_id=payload["trigger_id"]
            )
        entity = self.runtime.entities.load(payload["entity_type"], payload.get("entity") or {})
        acting_user = (
            ActingUser.model_validate(payload["acting_user"]) if payload.get("acting_user") else None
        )
        execution = await self.runtime.triggers.process(
            trigger, entity, acting_user, payload.get("dispatch_key")
        )
        if execution is None:
            return TaskResult.success(skipped=True)
        return TaskResult.success(
            chain_execution_id=execution.id, status=execution.status.value
        )

    async def failed(self, payload: Dict[str, Any], error: str) -> None:
        logger.error(
            f"process_chain_trigger failed for trigger_id={payload.get('trigger_id')}: {error}"
        )
        dispatch_key = payload.get("dispatch_key")
        execution = (
            await self.runtime.repository.find_execution_by_dispatch_key(dispatch_key)
            if dispatch_key
            else None
        )
        if execution is not None:
            await self.runtime.chains.fail(execution, error)
            return
        entity = payload.get("entity") or {}
        if entity.get("id"):
            self.runtime.entities.merge_metadata(
                EntityRef(entity_type=payload["entity_type"], key=str(entity["id"])),
                chain_trigger_error={
                    "trigger_id": payload.get("trigger_id"),
                    "error_message": error,
                    "failed_at": utcnow().isoformat(),
                },
            )


class ExecuteChainStepTask(BaseTask):
    """Run (or retry) one step of an execution, optionally continuing after it."""

    task_type = EXECUTE_CHAIN_STEP

    async def handle(self, payload: Dict[str, Any], message: TaskMessage) -> TaskResult:
        chains = self.runtime.chains
        execution_id = payload["chain_execution_id"]
        execution = await self.runtime.repository.get_execution(execution_id)
        if execution is None:
            logger.warning(f"Chain execution {execution_id} not found for step execution")
            return TaskResult.success(skipped=True)
        if execution.is_terminal():
            logger.info(
                f"Chain execution {execution_id} already {execution.status.value}, skipping step"
            )
            return TaskResult.success(skipped=True)

        step_index: Optional[int] = payload.get("step_index")
        batch = self.runtime.queue.get_batch(message.batch_id) if self.runtime.queue else None
        if step_index is None:
            step = await chains.execute_step(execution)
        else:
            step = await chains.run_step(execution, step_index, batch=batch)

        if payload.get("auto_progress"):
            try:
                execution = await chains.advance(execution)
            except SafetyBoundExceeded:
                return TaskResult.success(chain_execution_id=execution_id, halted=True)
        return TaskResult.success(
            chain_execution_id=execution_id,
            step_index=step.step_index if step else None,
        )

    async def failed(self, payload: Dict[str, Any], error: str) -> None:
        execution_id = payload["chain_execution_id"]
        logger.error(
            f"execute_chain_step failed for chain_execution_id={execution_id} "
            f"step_index={payload.get('step_index')}: {error}"
        )
        execution = await self.runtime.repository.get_execution(execution_id)
        if execution is None:
            return
        step_index = payload.get("step_index")
        if step_index is not None:
            await self.runtime.chains.record_step_failure(execution_id, step_index, error)
        await self.runtime.chains.fail(execution, error)


class ProcessDispatcherMentionTask(BaseTask):
    """Answer a mention of the dispatcher agent in a work order thread."""

    task_type = PROCESS_DISPATCHER_MENTION

    async def handle(self, payload: Dict[str, Any], message: TaskMessage) -> TaskResult:
        try:
            work_order = resolve_work_order(self.runtime, payload)
        except NotFoundError:
            logger.warning(f"No work order found for thread {payload.get('thread_id')}")
            return TaskResult.success(skipped=True)

        team_id = work_order.team_id()
        agent_id = payload["agent_id"]
        configuration = await self.runtime.repository.get_agent_configuration(team_id, agent_id)
        if configuration is None or not configuration.enabled:
            logger.info(f"Dispatcher agent not configured or disabled for team_id={team_id}")
            return TaskResult.success(skipped=True)

        state = await self.runtime.manager.execute(
            "dispatcher",
            {
                "message": payload.get("message", ""),
                "thread_id": payload.get("thread_id"),
                "work_order_id": work_order.key(),
                "triggering_entity": work_order.snapshot(),
            },
            team_id,
            agent_id,
        )
        output = state.state_data.output or {}
        response = {
            "type": "dispatcher_analysis",
            "status": state.status.value,
            "summary": state.summary(),
            "requirements": output.get("requirements"),
            "routing_candidates": (output.get("routing") or {}).get("candidates", []),
        }
        note = self.runtime.entities.save(
            Note(
                team_id=team_id,
                subject_type=WorkOrder.entity_type,
                subject_id=work_order.key(),
                content=json.dumps(response, indent=2, default=str),
                author=agent_id,
            )
        )
        logger.info(
            f"Dispatcher response posted for thread {payload.get('thread_id')}: "
            f"workflow_state_id={state.id}"
        )
        return TaskResult.success(workflow_state_id=state.id, note_id=note.id)

    async def failed(self, payload: Dict[str, Any], error: str) -> None:
        logger.error(
            f"process_dispatcher_mention failed for thread {payload.get('thread_id')} "
            f"agent_id={payload.get('agent_id')}: {error}"
        )


class ProcessDispatcherRoutingTask(BaseTask):
    """Store routing recommendations on a newly created work order."""

    task_type = PROCESS_DISPATCHER_ROUTING

    async def handle(self, payload: Dict[str, Any], message: TaskMessage) -> TaskResult:
        work_order = resolve_work_order(self.runtime, payload)
        team_id = work_order.team_id()
        agent_id = payload["agent_id"]
        configuration = await self.runtime.repository.get_agent_configuration(team_id, agent_id)
        if configuration is None or not configuration.enabled:
            logger.info(f"Dispatcher agent not configured or disabled for team_id={team_id}")
            return TaskResult.success(skipped=True)

        state = await self.runtime.manager.execute(
            "dispatcher",
            {
                "work_order_id": work_order.key(),
                "title": work_order.title,
                "description": work_order.description,
                "estimated_hours": work_order.estimated_hours,
                "priority": work_order.priority,
                "required_skills": work_order.required_skills,
                "triggering_entity": work_order.snapshot(),
            },
            team_id,
            agent_id,
        )
        output = state.state_data.output or {}
        candidates: List[Dict[str, Any]] = (output.get("routing") or {}).get("candidates", [])
        metadata: Dict[str, Any] = {
            "routing_recommendations": {
                "generated_at": utcnow().isoformat(),
                "workflow_state_id": state.id,
                "candidates": candidates,
                "top_candidate_id": candidates[0]["user_id"] if candidates else None,
                "confidence": candidates[0]["confidence"] if candidates else "low",
            }
        }
        if output.get("requirements"):
            metadata["extracted_requirements"] = output["requirements"]
        self.runtime.entities.merge_metadata(work_order.ref(), **metadata)
        logger.info(
            f"Routing recommendations stored for work order {work_order.key()} "
            f"({len(candidates)} candidates)"
        )
        return TaskResult.success(workflow_state_id=state.id, candidates=len(candidates))

    async def failed(self, payload: Dict[str, Any], error: str) -> None:
        logger.error(
            f"process_dispatcher_routing failed for work order {payload.get('work_order_id')}: {error}"
        )
        self.runtime.entities.merge_metadata(
            EntityRef(entity_type=WorkOrder.entity_type, key=str(payload.get("work_order_id"))),
            routing_recommendations={
                "error": True,
                "error_message": "Failed to generate routing recommendations",
                "failed_at": utcnow().isoformat(),
            },
        )


class ProcessPlanGenerationTask(BaseTask):
    """Generate a plan for a work order with the PM copilot workflow."""

    task_type = PROCESS_PLAN_GENERATION

    async def handle(self, payload: Dict[str, Any], message: TaskMessage) -> TaskResult:
        work_order = resolve_work_order(self.runtime, payload)
        state = await self.runtime.manager.execute(
            "pm_copilot",
            {
                "work_order": work_order.snapshot(),
                "mode": payload.get("mode", "staged"),
                "triggering_entity": work_order.snapshot(),
            },
            work_order.team_id(),
            payload["agent_id"],
        )
        self.runtime.entities.merge_metadata(
            work_order.ref(),
            plan_generation={
                "workflow_state_id": state.id,
                "status": state.status.value,
                "summary": state.summary(),
                "generated_at": utcnow().isoformat(),
            },
        )
        return TaskResult.success(workflow_state_id=state.id, status=state.status.value)

    async def failed(self, payload: Dict[str, Any], error: str) -> None:
        logger.error(
            f"process_plan_generation failed for work order {payload.get('work_order_id')}: {error}"
        )
        self.runtime.entities.merge_metadata(
            EntityRef(entity_type=WorkOrder.entity_type, key=str(payload.get("work_order_id"))),
            plan_generation={
                "error": True,
                "error_message": error,
                "failed_at": utcnow().isoformat(),
            },
        )


BUILTIN_TASKS: List[Type[BaseTask]] = [
    ProcessChainTriggerTask,
    ExecuteChainStepTask,
    ProcessDispatcherMentionTask,
    ProcessDispatcherRoutingTask,
    ProcessPlanGenerationTask,
]


class TaskRegistry:
    """Map task types to task classes."""

    def __init__(self, tasks: Optional[List[Type[BaseTask]]] = None) -> None:
        self._tasks: Dict[str, Type[BaseTask]] = {}
        for task_cls in tasks if tasks is not None else BUILTIN_TASKS:
            self.register(task_cls)

    def register(self, task_cls: Type[BaseTask]) -> None:
        self._tasks[task_cls.task_type] = task_cls

    def get(self, task_type: str) -> Optional[Type[BaseTask]]:
        return self._tasks.get(task_type)

    def types(self) -> List[str]:
        return sorted(self._tasks)
