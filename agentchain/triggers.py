"""Trigger dispatcher: turn entity status changes into chain executions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from .chains import ChainOrchestrator
from .contracts import ActingUser, Trigger
from .directory import TeamDirectory
from .entities import BaseEntity
from .errors import (
    AgentChainError,
    ConfigurationError,
    NotFoundError,
    SafetyBoundExceeded,
    TransientExecutionError,
)
from .persistence.models import ChainExecution
from .persistence.repository import AgentRepository
from .tasks.queue import TaskQueue

logger = logging.getLogger(__name__)

PROCESS_CHAIN_TRIGGER = "process_chain_trigger"


class StatusChangeEvent(BaseModel):
    """An entity moved from one status to another."""

    entity: BaseEntity
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    acting_user: Optional[ActingUser] = None


def conditions_match(trigger: Trigger, entity: BaseEntity) -> bool:
    """Every known condition must hold; unknown keys are ignored."""
    for condition, value in trigger.conditions.items():
        if condition == "deduplication_window_minutes":
            continue
        if condition == "budget_greater_than":
            if not entity.budget() > float(value):
                return False
        elif condition == "budget_less_than":
            if not entity.budget() < float(value):
                return False
        elif condition == "has_tags":
            tags = value if isinstance(value, list) else [value]
            if not entity.has_tags(tags):
                return False
        elif condition == "entity_field_equals":
            for field, expected in dict(value).items():
                if entity.field_value(field) != expected:
                    return False
    return True


def passes_deduplication(trigger: Trigger, now: Optional[datetime] = None) -> bool:
    window = trigger.deduplication_window_minutes
    if window is None:
        window = trigger.conditions.get("deduplication_window_minutes")
    if window is None or trigger.last_triggered_at is None:
        return True
    now = now or datetime.now(timezone.utc)
    return trigger.last_triggered_at < now - timedelta(minutes=int(window))


def build_initial_context(
    trigger: Trigger, entity: BaseEntity, acting_user: Optional[ActingUser]
) -> Dict[str, Any]:
    """Snapshot handed to the first step: trigger, entity attributes, acting user."""
    context: Dict[str, Any] = {
        "trigger": {
            "id": trigger.id,
            "name": trigger.name,
            "entity_type": trigger.entity_type,
            "status_from": trigger.status_from,
            "status_to": trigger.status_to,
        },
        "entity": {
            "type": entity.entity_type,
            "id": entity.key(),
            "attributes": entity.snapshot(),
        },
    }
    if acting_user is not None:
        context["triggered_by"] = {
            "user_id": acting_user.user_id,
            "user_name": acting_user.name,
            "user_email": acting_user.email,
        }
    return context


class TriggerDispatcher:
    """Match triggers for a status change and run their chains.

    With a queue each matching trigger becomes a ``process_chain_trigger``
    task; without one the chain is processed inline.
    """

    def __init__(
        self,
        repository: AgentRepository,
        chains: ChainOrchestrator,
        directory: Optional[TeamDirectory] = None,
        queue: Optional[TaskQueue] = None,
    ) -> None:
        self.repository = repository
        self.chains = chains
        self.directory = directory
        self.queue = queue

    async def matching_triggers(self, event: StatusChangeEvent) -> List[Trigger]:
        entity = event.entity
        team_id = entity.team_id()
        candidates = await self.repository.find_triggers(
            entity.entity_type, event.from_status, event.to_status
        )
        matches = []
        for trigger in candidates:
            if trigger.team_id is not None and team_id is not None and trigger.team_id != team_id:
                continue
            if not conditions_match(trigger, entity):
                continue
            if not passes_deduplication(trigger):
                logger.debug(f"Trigger {trigger.id} suppressed by deduplication window")
                continue
            matches.append(trigger)
        return matches

    async def handle_status_change(self, event: StatusChangeEvent) -> List[Trigger]:
        """Dispatch every matching trigger, highest priority first."""
        entity = event.entity
        triggers = await self.matching_triggers(event)
        if not triggers:
            logger.debug(
                f"No matching triggers for {entity.entity_type} {entity.key()} "
                f"({event.from_status} -> {event.to_status})"
            )
            return []

        logger.info(
            f"Found {len(triggers)} matching triggers for {entity.entity_type} {entity.key()}"
        )
        for trigger in triggers:
            trigger.last_triggered_at = datetime.now(timezone.utc)
            await self.repository.save_trigger(trigger)
            dispatch_key = f"{trigger.id}:{entity.entity_type}:{entity.key()}:{uuid.uuid4()}"
            logger.info(
                f"Dispatching chain trigger {trigger.id} ({trigger.name}) "
                f"chain_id={trigger.chain_id} priority={trigger.priority}"
            )
            if self.queue is not None:
                await self.queue.enqueue(
                    PROCESS_CHAIN_TRIGGER,
                    {
                        "trigger_id": trigger.id,
                        "entity_type": entity.entity_type,
                        "entity": entity.snapshot(),
                        "acting_user": (
                            event.acting_user.model_dump() if event.acting_user else None
                        ),
                        "dispatch_key": dispatch_key,
                    },
                )
            else:
                await self.process(trigger, entity, event.acting_user, dispatch_key)
        return triggers

    def resolve_team(self, trigger: Trigger, entity: BaseEntity) -> Optional[str]:
        """Trigger's team when set, else the entity's; None if it does not resolve."""
        team_id = trigger.team_id if trigger.team_id is not None else entity.team_id()
        if team_id is None:
            return None
        if self.directory is not None and self.directory.get_team(team_id) is None:
            return None
        return team_id

    async def process(
        self,
        trigger: Trigger,
        entity: BaseEntity,
        acting_user: Optional[ActingUser] = None,
        dispatch_key: Optional[str] = None,
    ) -> Optional[ChainExecution]:
        """Start the trigger's chain and drive it as far as it goes on its own.

        An unresolved chain or team is a logged no-op.
        """
        chain = await self.repository.get_chain(trigger.chain_id)
        if chain is None or not chain.enabled:
            logger.warning(
                f"Chain {trigger.chain_id} of trigger {trigger.id} not found or disabled; skipping"
            )
            return None
        team_id = self.resolve_team(trigger, entity)
        if team_id is None:
            logger.warning(
                f"No team for trigger {trigger.id} and {entity.entity_type} {entity.key()}; skipping"
            )
            return None

        try:
            execution = await self.chains.execute_chain(
                chain,
                team_id,
                entity,
                build_initial_context(trigger, entity, acting_user),
                dispatch_key=dispatch_key,
            )
        except (ConfigurationError, NotFoundError) as exc:
            logger.warning(f"Skipping trigger {trigger.id}: {exc}")
            return None

        logger.info(
            f"Chain execution started by trigger {trigger.id}: chain_execution_id={execution.id}"
        )
        return await self.drive(execution)

    async def drive(self, execution: ChainExecution) -> ChainExecution:
        """Auto-progress ``execution`` and route step failures to the retry path.

        With a task queue a transient step failure propagates, so the
        trigger task that called this is retried under the standard policy
        and picks the same execution up again through its dispatch key.
        """
        try:
            return await self.chains.advance(execution)
        except SafetyBoundExceeded as exc:
            logger.info(f"Chain execution {exc.chain_execution_id} left running for follow-up")
        except TransientExecutionError as exc:
            if self.queue is not None and execution.dispatch_key:
                logger.info(
                    f"Step {exc.step_index} of chain_execution_id={execution.id} failed; "
                    "leaving it to the trigger task retry"
                )
                raise
            await self.chains.fail(execution, exc.summary())
        except AgentChainError as exc:
            await self.chains.fail(execution, exc.summary())
        return await self.chains.get_execution(execution.id)
