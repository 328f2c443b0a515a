"""Chain orchestrator: runs the steps of a chain execution.

Steps run in ascending index order. Steps sharing a ``parallel_group`` run
together as a batch and must all reach a terminal status before the chain
moves past the group. Every step record is written through the repository's
upsert keyed by (chain_execution_id, step_index), so redelivered work
updates the existing row instead of adding one.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Union

from .constants import EXECUTE_CHAIN_STEP, MAX_AUTO_ITERATIONS
from .context import ChainContext
from .contracts import Chain
from .entities import BaseEntity, EntityRegistry
from .errors import (
    AgentChainError,
    ConfigurationError,
    NotFoundError,
    SafetyBoundExceeded,
    TransientExecutionError,
)
from .orchestrator import WorkflowStateManager
from .persistence.models import (
    ChainExecution,
    ChainExecutionStep,
    EntityRef,
    WorkflowState,
    utcnow,
)
from .persistence.repository import AgentRepository
from .state_machine import ChainStatus, StepStatus, WorkflowStatus, validate_transition
from .tasks.batch import Batch
from .tasks.queue import TaskQueue

logger = logging.getLogger(__name__)


def is_awaiting_approval(step: Optional[ChainExecutionStep]) -> bool:
    """True when the step's workflow is paused at an approval gate."""
    return (
        step is not None
        and step.status == StepStatus.RUNNING
        and bool(step.output_data.get("awaiting_approval"))
    )


def is_dispatched(step: Optional[ChainExecutionStep]) -> bool:
    """True for the placeholder returned while a parallel group runs on workers."""
    return step is not None and step.status == StepStatus.PENDING


class ChainOrchestrator:
    """Create chain executions and drive them step by step."""

    def __init__(
        self,
        repository: AgentRepository,
        manager: WorkflowStateManager,
        entities: EntityRegistry,
        queue: Optional[TaskQueue] = None,
        max_auto_iterations: int = MAX_AUTO_ITERATIONS,
    ) -> None:
        self.repository = repository
        self.manager = manager
        self.entities = entities
        self.queue = queue
        self.max_auto_iterations = max_auto_iterations
        self._batches: Dict[str, List[Batch]] = defaultdict(list)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    async def register_chain(self, chain: Chain) -> Chain:
        return await self.repository.save_chain(chain)

    async def get_execution(self, execution_id: str) -> ChainExecution:
        execution = await self.repository.get_execution(execution_id)
        if execution is None:
            raise NotFoundError(
                f"Chain execution {execution_id} not found",
                chain_execution_id=execution_id,
            )
        return execution

    async def _chain(self, execution: ChainExecution) -> Chain:
        chain = await self.repository.get_chain(execution.chain_id)
        if chain is None:
            raise NotFoundError(
                f"Chain {execution.chain_id} not found",
                chain_id=execution.chain_id,
                chain_execution_id=execution.id,
            )
        return chain

    async def context_for(
        self, execution: ChainExecution, steps: Optional[List[ChainExecutionStep]] = None
    ) -> ChainContext:
        """Accumulated context: seeded data plus every completed step output."""
        chain = await self._chain(execution)
        if steps is None:
            steps = await self.repository.list_steps(execution.id)
        agent_ids = {index: step.agent_id for index, step in enumerate(chain.steps)}
        return ChainContext.build(execution.chain_context, steps, agent_ids)

    def _entity_snapshot(self, execution: ChainExecution, context: ChainContext) -> Dict[str, Any]:
        if execution.triggering_entity is not None:
            try:
                return self.entities.resolve(execution.triggering_entity).snapshot()
            except NotFoundError:
                logger.debug(
                    f"Triggering entity of chain_execution_id={execution.id} not in registry; "
                    "using seeded snapshot"
                )
        entity = context.initial.get("entity") or {}
        return dict(entity.get("attributes") or {})

    @staticmethod
    def _next_index(chain: Chain, steps: List[ChainExecutionStep]) -> Optional[int]:
        done = {step.step_index for step in steps if step.status == StepStatus.COMPLETED}
        for index in range(len(chain.steps)):
            if index not in done:
                return index
        return None

    # ------------------------------------------------------------------
    # Execution lifecycle
    # ------------------------------------------------------------------
    async def execute_chain(
        self,
        chain: Chain,
        team_id: str,
        triggering_entity: Union[BaseEntity, EntityRef, None] = None,
        initial_context: Optional[Dict[str, Any]] = None,
        dispatch_key: Optional[str] = None,
    ) -> ChainExecution:
        """Create a running execution of ``chain`` for ``team_id``.

        With a ``dispatch_key`` an execution already created for the same
        delivery is returned instead of starting a second one.
        """
        if dispatch_key:
            existing = await self.repository.find_execution_by_dispatch_key(dispatch_key)
            if existing is not None:
                logger.info(
                    f"Reusing chain_execution_id={existing.id} for dispatch_key={dispatch_key}"
                )
                return existing
        if not chain.enabled:
            raise ConfigurationError(f"Chain '{chain.name}' is disabled", chain_id=chain.id)

        if isinstance(triggering_entity, BaseEntity):
            entity_ref: Optional[EntityRef] = triggering_entity.ref()
        else:
            entity_ref = triggering_entity

        context = ChainContext(
            initial=dict(initial_context or {}),
            metadata={"chain_name": chain.name, "started_at": utcnow().isoformat()},
        )
        execution = ChainExecution(
            chain_id=chain.id,
            chain_version=chain.version,
            team_id=team_id,
            triggering_entity=entity_ref,
            dispatch_key=dispatch_key,
            chain_context=context.to_storage(),
        )
        await self.repository.create_execution(execution)
        logger.info(
            f"Chain execution started: chain_execution_id={execution.id} "
            f"chain_id={chain.id} ({chain.name}) team_id={team_id}"
        )
        return execution

    async def _set_status(
        self,
        execution: ChainExecution,
        status: ChainStatus,
        metadata: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> ChainExecution:
        if metadata:
            await self.repository.merge_execution_metadata(execution.id, metadata)
        current = await self.get_execution(execution.id)
        validate_transition("chain", current.status, status, current.id)
        now = utcnow()
        current.status = status
        if status == ChainStatus.PAUSED:
            current.paused_at = now
        elif current.is_terminal():
            current.completed_at = now
        if error_message is not None:
            current.error_message = error_message
        return await self.repository.update_execution(current)

    def _cancel_batches(self, execution_id: str) -> None:
        for batch in self._batches.pop(execution_id, []):
            batch.cancel()
        if self.queue is not None:
            self.queue.cancel_batches(execution_id)

    async def complete(
        self, execution: ChainExecution, result: Optional[Dict[str, Any]] = None
    ) -> ChainExecution:
        current = await self.get_execution(execution.id)
        if current.is_terminal():
            return current
        current = await self._set_status(
            current,
            ChainStatus.COMPLETED,
            {"completed_at": utcnow().isoformat(), "result": result or {}},
        )
        self._batches.pop(current.id, None)
        if self.queue is not None:
            self.queue.forget_batches(current.id)
        steps = await self.repository.list_steps(current.id)
        logger.info(
            f"Chain execution completed: chain_execution_id={current.id} total_steps={len(steps)}"
        )
        return current

    async def fail(self, execution: ChainExecution, error_message: str) -> ChainExecution:
        """Fail the execution and every step still running."""
        current = await self.get_execution(execution.id)
        if current.is_terminal():
            return current
        for step in await self.repository.list_steps(current.id):
            if step.status == StepStatus.RUNNING:
                await self.record_step_failure(current.id, step.step_index, error_message)
        self._cancel_batches(current.id)
        current = await self._set_status(
            current,
            ChainStatus.FAILED,
            {"failed_at": utcnow().isoformat(), "error": error_message},
            error_message=error_message,
        )
        logger.error(f"Chain execution failed: chain_execution_id={current.id}: {error_message}")
        return current

    async def cancel(
        self, execution: ChainExecution, reason: Optional[str] = None
    ) -> ChainExecution:
        """Cancel the execution and its in-flight parallel batches."""
        current = await self.get_execution(execution.id)
        if current.is_terminal():
            return current
        self._cancel_batches(current.id)
        current = await self._set_status(
            current,
            ChainStatus.CANCELLED,
            {"cancelled_at": utcnow().isoformat(), "cancel_reason": reason},
        )
        logger.info(f"Chain execution cancelled: chain_execution_id={current.id}")
        return current

    async def pause(self, execution: ChainExecution, reason: str) -> ChainExecution:
        current = await self.get_execution(execution.id)
        if current.is_terminal() or current.is_paused():
            return current
        current = await self._set_status(
            current,
            ChainStatus.PAUSED,
            {"pause_reason": reason, "paused_at": utcnow().isoformat()},
        )
        logger.info(f"Chain execution paused: chain_execution_id={current.id} reason={reason}")
        return current

    async def resume(
        self, execution: ChainExecution, resume_data: Optional[Dict[str, Any]] = None
    ) -> ChainExecution:
        """Resume a paused execution; anything else is returned untouched."""
        current = await self.get_execution(execution.id)
        if not current.is_paused():
            return current
        current = await self._set_status(
            current,
            ChainStatus.RUNNING,
            {"resume_data": resume_data or {}, "resumed_at": utcnow().isoformat()},
        )
        logger.info(f"Chain execution resumed: chain_execution_id={current.id}")
        return current

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------
    async def record_step_failure(
        self, execution_id: str, step_index: int, error_message: str
    ) -> ChainExecutionStep:
        existing = await self.repository.get_step(execution_id, step_index)
        if existing is not None and existing.status == StepStatus.COMPLETED:
            return existing
        if existing is not None and existing.status != StepStatus.FAILED:
            validate_transition("step", existing.status, StepStatus.FAILED, existing.id)
        output = dict(existing.output_data) if existing else {}
        output.pop("awaiting_approval", None)
        output["error"] = error_message
        step, _ = await self.repository.upsert_step(
            execution_id,
            step_index,
            status=StepStatus.FAILED,
            output_data=output,
            completed_at=utcnow(),
        )
        return step

    async def _start_step(
        self, execution: ChainExecution, step_index: int, existing: Optional[ChainExecutionStep]
    ) -> ChainExecutionStep:
        if existing is not None and existing.status != StepStatus.RUNNING:
            validate_transition("step", existing.status, StepStatus.RUNNING, existing.id)
        step, created = await self.repository.upsert_step(
            execution.id,
            step_index,
            status=StepStatus.RUNNING,
            started_at=utcnow(),
            completed_at=None,
            attempts=(existing.attempts if existing else 0) + 1,
        )
        logger.info(
            f"Chain step started: chain_execution_id={execution.id} step_index={step_index}"
            + ("" if created else f" (attempt {step.attempts})")
        )
        return step

    async def _finish_step(
        self, execution: ChainExecution, chain: Chain, step_index: int, state: WorkflowState
    ) -> ChainExecutionStep:
        step, _ = await self.repository.upsert_step(
            execution.id,
            step_index,
            status=StepStatus.COMPLETED,
            output_data=dict(state.state_data.output or {}),
            workflow_state_id=state.id,
            completed_at=utcnow(),
        )
        logger.info(
            f"Chain step completed: chain_execution_id={execution.id} step_index={step_index} "
            f"workflow_state_id={state.id}"
        )
        group = chain.steps[step_index].parallel_group
        if group:
            await self._record_group_if_complete(execution, chain, group)
        await self._apply_branching(execution, chain, step_index)
        return step

    async def _reject_step(
        self, execution: ChainExecution, step_index: int, state: WorkflowState
    ) -> ChainExecutionStep:
        reason = state.summary()
        step = await self.record_step_failure(execution.id, step_index, reason)
        await self.fail(execution, f"Step {step_index} {reason[0].lower()}{reason[1:]}")
        return step

    async def _apply_branching(
        self, execution: ChainExecution, chain: Chain, step_index: int
    ) -> None:
        conditions = chain.steps[step_index].next_step_conditions
        next_index = step_index + 1
        if not conditions or next_index >= len(chain.steps):
            return
        context = await self.context_for(execution)
        for rule in conditions:
            if rule.condition is not None and not context.evaluate_condition(rule.condition):
                continue
            logger.info(
                f"Chain branching decision for chain_execution_id={execution.id}: "
                f"condition={rule.condition!r} action={rule.action}"
            )
            if rule.action == "skip":
                existing = await self.repository.get_step(execution.id, next_index)
                if existing is None or not existing.is_terminal():
                    await self.repository.upsert_step(
                        execution.id,
                        next_index,
                        status=StepStatus.COMPLETED,
                        output_data={"skipped": True, "skipped_by_step": step_index},
                        completed_at=utcnow(),
                    )
            elif rule.action == "terminate":
                await self.complete(execution, {"terminated_by_step": step_index})
            return

    async def run_step(
        self, execution: ChainExecution, step_index: int, batch: Optional[Batch] = None
    ) -> Optional[ChainExecutionStep]:
        """Run or settle one step. Safe to call again for the same index.

        Returns None when the batch was cancelled or the execution is not
        running. Failures are stored on the step before they propagate.
        """
        if batch is not None and batch.cancelled():
            logger.info(
                f"Skipping step {step_index} of chain_execution_id={execution.id}: batch cancelled"
            )
            return None

        current = await self.get_execution(execution.id)
        if not current.is_running():
            logger.info(
                f"Skipping step {step_index} of chain_execution_id={current.id}: "
                f"execution is {current.status.value}"
            )
            return None
        chain = await self._chain(current)
        if step_index >= len(chain.steps):
            logger.warning(
                f"Step index {step_index} out of bounds for chain_execution_id={current.id} "
                f"({len(chain.steps)} steps)"
            )
            return None
        step_config = chain.steps[step_index]

        existing = await self.repository.get_step(current.id, step_index)
        if existing is not None and existing.status == StepStatus.COMPLETED:
            return existing
        if existing is not None and existing.workflow_state_id is not None:
            state = await self.repository.get_workflow_state(existing.workflow_state_id)
            if state is not None:
                if state.is_paused():
                    return existing
                if state.status == WorkflowStatus.COMPLETED:
                    return await self._finish_step(current, chain, step_index, state)
                if state.status == WorkflowStatus.REJECTED:
                    return await self._reject_step(current, step_index, state)

        try:
            await self._start_step(current, step_index, existing)
            context = await self.context_for(current)
            agent_input = context.agent_input(
                current.id, step_index, self._entity_snapshot(current, context)
            )
            state = await self.manager.execute(
                step_config.workflow_type,
                agent_input,
                current.team_id,
                step_config.agent_id,
                inherited_context=context.accumulated(),
                estimated_cost=step_config.estimated_cost,
            )
            step, _ = await self.repository.upsert_step(
                current.id, step_index, workflow_state_id=state.id
            )

            if state.is_paused():
                step, _ = await self.repository.upsert_step(
                    current.id,
                    step_index,
                    output_data={"awaiting_approval": True, "approval": state.summary()},
                )
                logger.info(
                    f"Chain step awaiting approval: chain_execution_id={current.id} "
                    f"step_index={step_index} workflow_state_id={state.id}"
                )
                return step
            if state.status == WorkflowStatus.FAILED:
                error = state.state_data.error
                raise TransientExecutionError(
                    f"Workflow {state.workflow_type} failed: "
                    f"{error.message if error is not None else 'no error recorded'}",
                    step_index=step_index,
                    workflow_state_id=state.id,
                )
            if state.status == WorkflowStatus.REJECTED:
                return await self._reject_step(current, step_index, state)
            return await self._finish_step(current, chain, step_index, state)
        except Exception as exc:
            await self.record_step_failure(current.id, step_index, str(exc) or type(exc).__name__)
            logger.warning(
                f"Chain step failed: chain_execution_id={current.id} step_index={step_index}: {exc}"
            )
            if isinstance(exc, AgentChainError):
                raise
            raise TransientExecutionError(str(exc), step_index=step_index) from exc

    def _new_batch(self, execution: ChainExecution, group: str) -> Batch:
        name = f"chain-execution-{execution.id}-parallel-group-{group}"
        if self.queue is not None:
            return self.queue.batch(name=name, owner_id=execution.id)
        batch = Batch(name=name, owner_id=execution.id)
        self._batches[execution.id].append(batch)
        return batch

    def _drop_batch(self, execution_id: str, batch: Batch) -> None:
        live = self._batches.get(execution_id)
        if live and batch in live:
            live.remove(batch)
        if not live:
            self._batches.pop(execution_id, None)

    async def _record_group_if_complete(
        self, execution: ChainExecution, chain: Chain, group: str
    ) -> None:
        indices = chain.group_indices(group)
        records = {s.step_index: s for s in await self.repository.list_steps(execution.id)}
        members = [records[i] for i in indices if i in records]
        if len(members) != len(indices) or any(
            m.status != StepStatus.COMPLETED for m in members
        ):
            return
        await self.repository.merge_execution_metadata(
            execution.id,
            {
                f"parallel_group_{group}": {
                    "outputs": {str(m.step_index): m.output_data for m in members},
                    "completed_at": utcnow().isoformat(),
                }
            },
        )
        logger.info(f"Parallel group completed: chain_execution_id={execution.id} group={group}")

    async def _dispatch_group(
        self, execution: ChainExecution, group: str, pending: List[int]
    ) -> ChainExecutionStep:
        """Enqueue one step task per unfinished member, all in one batch."""
        batch = self._new_batch(execution, group)
        for index in pending:
            await batch.add(
                EXECUTE_CHAIN_STEP,
                {"chain_execution_id": execution.id, "step_index": index, "auto_progress": True},
            )
        await self.repository.merge_execution_metadata(
            execution.id,
            {
                f"parallel_group_{group}_batch": {
                    "batch_id": batch.id,
                    "members": pending,
                    "dispatched_at": utcnow().isoformat(),
                }
            },
        )
        logger.info(
            f"Parallel step group enqueued: chain_execution_id={execution.id} "
            f"group={group} steps={pending} batch_id={batch.id}"
        )
        return ChainExecutionStep(
            chain_execution_id=execution.id, step_index=min(pending), status=StepStatus.PENDING
        )

    async def run_parallel_group(
        self, execution: ChainExecution, group: str
    ) -> Optional[ChainExecutionStep]:
        """Run every unfinished member of ``group``.

        With a task queue the members are enqueued as one batch and a pending
        placeholder step is returned; each worker continues the chain once
        its member is done. Without one they run concurrently in process.
        """
        chain = await self._chain(execution)
        indices = chain.group_indices(group)
        records = {s.step_index: s for s in await self.repository.list_steps(execution.id)}
        for index in indices:
            if is_awaiting_approval(records.get(index)):
                return records[index]
        pending = [
            i for i in indices if i not in records or records[i].status != StepStatus.COMPLETED
        ]

        if self.queue is not None:
            if not pending:
                return records.get(max(indices))
            current = await self.get_execution(execution.id)
            if f"parallel_group_{group}_batch" in current.chain_context.get("metadata", {}):
                # members are already on the queue; their workers settle the group
                return ChainExecutionStep(
                    chain_execution_id=execution.id,
                    step_index=min(pending),
                    status=StepStatus.PENDING,
                )
            return await self._dispatch_group(execution, group, pending)

        batch = self._new_batch(execution, group)
        for index in pending:
            batch.track(index)
        logger.info(
            f"Parallel step group dispatched: chain_execution_id={execution.id} "
            f"group={group} steps={pending}"
        )
        try:
            results = await asyncio.gather(
                *(self.run_step(execution, index, batch=batch) for index in pending),
                return_exceptions=True,
            )
        finally:
            self._drop_batch(execution.id, batch)
        for result in results:
            if isinstance(result, BaseException):
                raise result

        records = {s.step_index: s for s in await self.repository.list_steps(execution.id)}
        for index in indices:
            if is_awaiting_approval(records.get(index)):
                return records[index]
        return records.get(max(indices))

    async def _settle_resumed(self, execution: ChainExecution) -> bool:
        """Finalise steps whose paused workflow has since been resumed."""
        settled = False
        for step in await self.repository.list_steps(execution.id):
            if not is_awaiting_approval(step) or step.workflow_state_id is None:
                continue
            state = await self.repository.get_workflow_state(step.workflow_state_id)
            if state is None or state.is_paused():
                continue
            await self.run_step(execution, step.step_index)
            settled = True
        return settled

    async def execute_step(self, execution: ChainExecution) -> Optional[ChainExecutionStep]:
        """Run the next step (or parallel group) of the execution.

        Returns None when the execution is not running or no step is left;
        the caller then completes the execution.
        """
        current = await self.get_execution(execution.id)
        if not current.is_running():
            logger.warning(
                f"Attempted to execute step on {current.status.value} "
                f"chain_execution_id={current.id}"
            )
            return None

        if await self._settle_resumed(current):
            current = await self.get_execution(current.id)
            if not current.is_running():
                return None

        chain = await self._chain(current)
        index = self._next_index(chain, await self.repository.list_steps(current.id))
        if index is None:
            return None
        group = chain.steps[index].parallel_group
        if group:
            return await self.run_parallel_group(current, group)
        return await self.run_step(current, index)

    async def advance(
        self, execution: ChainExecution, max_iterations: Optional[int] = None
    ) -> ChainExecution:
        """Keep executing steps until the chain stops, under an iteration cap.

        Stops when the execution leaves ``running``, when a step waits for
        approval or on workers, or when no step is left (the execution is
        completed). On reaching the cap the execution is left running for
        manual follow-up.
        """
        limit = self.max_auto_iterations if max_iterations is None else max_iterations
        for _ in range(limit):
            current = await self.get_execution(execution.id)
            if not current.is_running():
                return current
            step = await self.execute_step(current)
            if step is None:
                return await self.complete(current)
            if is_awaiting_approval(step):
                logger.info(
                    f"Auto-progression waiting for approval: chain_execution_id={current.id} "
                    f"step_index={step.step_index}"
                )
                return await self.get_execution(current.id)
            if is_dispatched(step):
                logger.info(
                    f"Auto-progression handed to workers: chain_execution_id={current.id} "
                    f"step_index={step.step_index}"
                )
                return await self.get_execution(current.id)

        logger.warning(
            f"Auto-progression halted after {limit} iterations for "
            f"chain_execution_id={execution.id}; manual follow-up required"
        )
        await self.repository.merge_execution_metadata(
            execution.id,
            {
                "auto_progression_halted": {
                    "iterations": limit,
                    "halted_at": utcnow().isoformat(),
                    "message": "Automatic progression stopped; review the execution and "
                    "continue it manually",
                }
            },
        )
        raise SafetyBoundExceeded(execution.id, limit)

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------
    async def awaiting_steps(self, execution: ChainExecution) -> List[ChainExecutionStep]:
        return [
            step
            for step in await self.repository.list_steps(execution.id)
            if is_awaiting_approval(step)
        ]

    async def resume_step(
        self,
        execution: ChainExecution,
        approval_payload: Optional[Dict[str, Any]] = None,
        step_index: Optional[int] = None,
    ) -> WorkflowState:
        """Resume the paused workflow behind an awaiting step.

        The step itself is settled by the next ``execute_step``.
        """
        steps = await self.awaiting_steps(execution)
        if step_index is not None:
            steps = [s for s in steps if s.step_index == step_index]
        if not steps:
            raise NotFoundError(
                f"No step awaiting approval in chain_execution_id={execution.id}",
                chain_execution_id=execution.id,
                step_index=step_index,
            )
        state = await self.manager.get(steps[0].workflow_state_id)
        state = await self.manager.resume(state, approval_payload)
        await self.resume(execution, approval_payload)
        return state

    async def pending_approvals(self, team_id: str) -> List[ChainExecution]:
        """Executions of a team that are paused or have a step awaiting approval."""
        pending = []
        for execution in await self.repository.list_executions(team_id=team_id):
            if execution.is_paused() or (
                execution.is_running() and await self.awaiting_steps(execution)
            ):
                pending.append(execution)
        return pending
