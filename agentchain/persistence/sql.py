"""SQL implementation of the agent repository (SQLModel on SQLAlchemy async)."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, AsyncIterator, Optional

from sqlalchemy import and_, case, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession

from ..contracts import Chain, Trigger
from ..db.models import (
    AgentConfigurationRow,
    ChainExecutionRow,
    ChainExecutionStepRow,
    ChainRow,
    TriggerRow,
    WorkflowStateRow,
)
from ..state_machine import ChainStatus
from .models import (
    AgentConfiguration,
    ChainExecution,
    ChainExecutionStep,
    EntityRef,
    QuotaDecision,
    WorkflowState,
    utcnow,
)
from .quota import evaluate_quota, month_key
from .repository import AgentRepository

logger = logging.getLogger(__name__)

_QUOTA_ATTEMPTS = 3


def async_database_url(database_url: str) -> str:
    """Map plain ``sqlite://``/``postgres://`` URLs onto their async drivers."""
    if database_url.startswith("sqlite://") and "+" not in database_url.split("://")[0]:
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    for prefix in ("postgres://", "postgresql://"):
        if database_url.startswith(prefix):
            return database_url.replace(prefix, "postgresql+asyncpg://", 1)
    return database_url


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands datetimes back without tzinfo
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SQLAgentRepository(AgentRepository):
    """Persist workflow and chain state with SQLModel tables."""

    def __init__(self, database_url: str) -> None:
        url = async_database_url(database_url)
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine = create_async_engine(
            url, echo=False, future=True, connect_args=connect_args
        )
        self._initialized = False

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        self._initialized = True

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if not self._initialized:
            await self.init_db()
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    async def close(self) -> None:
        await self.engine.dispose()

    # Conversions -------------------------------------------------------
    @staticmethod
    def _state_from_row(row: WorkflowStateRow) -> WorkflowState:
        return WorkflowState(
            id=row.id,
            team_id=row.team_id,
            agent_id=row.agent_id,
            workflow_type=row.workflow_type,
            status=row.status,
            state_data=row.state_data or {},
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
            paused_at=_aware(row.paused_at),
            resumed_at=_aware(row.resumed_at),
            completed_at=_aware(row.completed_at),
        )

    @staticmethod
    def _state_values(state: WorkflowState) -> dict[str, Any]:
        return {
            "team_id": state.team_id,
            "agent_id": state.agent_id,
            "workflow_type": state.workflow_type,
            "status": state.status.value,
            "state_data": state.state_data.model_dump(mode="json"),
            "created_at": state.created_at,
            "updated_at": state.updated_at,
            "paused_at": state.paused_at,
            "resumed_at": state.resumed_at,
            "completed_at": state.completed_at,
        }

    @staticmethod
    def _execution_from_row(row: ChainExecutionRow) -> ChainExecution:
        entity = None
        if row.entity_type and row.entity_key:
            entity = EntityRef(entity_type=row.entity_type, key=row.entity_key)
        return ChainExecution(
            id=row.id,
            chain_id=row.chain_id,
            chain_version=row.chain_version,
            team_id=row.team_id,
            triggering_entity=entity,
            dispatch_key=row.dispatch_key,
            status=row.status,
            chain_context=row.chain_context or {},
            error_message=row.error_message,
            started_at=_aware(row.started_at),
            updated_at=_aware(row.updated_at),
            paused_at=_aware(row.paused_at),
            completed_at=_aware(row.completed_at),
        )

    @staticmethod
    def _execution_values(execution: ChainExecution) -> dict[str, Any]:
        entity = execution.triggering_entity
        return {
            "chain_id": execution.chain_id,
            "chain_version": execution.chain_version,
            "team_id": execution.team_id,
            "entity_type": entity.entity_type if entity else None,
            "entity_key": entity.key if entity else None,
            "dispatch_key": execution.dispatch_key,
            "status": execution.status.value,
            "chain_context": execution.chain_context,
            "error_message": execution.error_message,
            "started_at": execution.started_at,
            "updated_at": execution.updated_at,
            "paused_at": execution.paused_at,
            "completed_at": execution.completed_at,
        }

    @staticmethod
    def _step_from_row(row: ChainExecutionStepRow) -> ChainExecutionStep:
        return ChainExecutionStep(
            id=row.id,
            chain_execution_id=row.chain_execution_id,
            step_index=row.step_index,
            status=row.status,
            output_data=row.output_data or {},
            workflow_state_id=row.workflow_state_id,
            attempts=row.attempts,
            started_at=_aware(row.started_at),
            completed_at=_aware(row.completed_at),
        )

    @staticmethod
    def _config_from_row(row: AgentConfigurationRow) -> AgentConfiguration:
        return AgentConfiguration.model_validate(row.model_dump())

    @staticmethod
    def _trigger_from_row(row: TriggerRow) -> Trigger:
        data = row.model_dump()
        data["last_triggered_at"] = _aware(row.last_triggered_at)
        return Trigger.model_validate(data)

    # Workflow states ---------------------------------------------------
    async def create_workflow_state(self, state: WorkflowState) -> WorkflowState:
        async with self.session() as session:
            session.add(WorkflowStateRow(id=state.id, **self._state_values(state)))
            await session.commit()
        return state

    async def update_workflow_state(self, state: WorkflowState) -> WorkflowState:
        state.updated_at = utcnow()
        async with self.session() as session:
            row = await session.get(WorkflowStateRow, state.id)
            if row is None:
                session.add(WorkflowStateRow(id=state.id, **self._state_values(state)))
            else:
                for key, value in self._state_values(state).items():
                    setattr(row, key, value)
            await session.commit()
        return state

    async def get_workflow_state(self, state_id: str) -> WorkflowState | None:
        async with self.session() as session:
            row = await session.get(WorkflowStateRow, state_id)
            return self._state_from_row(row) if row else None

    async def list_workflow_states(
        self, team_id: str | None = None, status: str | None = None
    ) -> list[WorkflowState]:
        query = select(WorkflowStateRow)
        if team_id is not None:
            query = query.where(WorkflowStateRow.team_id == team_id)
        if status is not None:
            query = query.where(WorkflowStateRow.status == str(getattr(status, "value", status)))
        query = query.order_by(WorkflowStateRow.created_at)
        async with self.session() as session:
            rows = (await session.exec(query)).all()
            return [self._state_from_row(row) for row in rows]

    # Chains ------------------------------------------------------------
    async def save_chain(self, chain: Chain) -> Chain:
        async with self.session() as session:
            row = ChainRow(
                id=chain.id,
                name=chain.name,
                team_id=chain.team_id,
                version=chain.version,
                enabled=chain.enabled,
                steps=[step.model_dump(mode="json") for step in chain.steps],
            )
            await session.merge(row)
            await session.commit()
        return chain

    async def get_chain(self, chain_id: str) -> Chain | None:
        async with self.session() as session:
            row = await session.get(ChainRow, chain_id)
            if row is None:
                return None
            return Chain.model_validate(row.model_dump())

    # Executions --------------------------------------------------------
    async def create_execution(self, execution: ChainExecution) -> ChainExecution:
        async with self.session() as session:
            session.add(
                ChainExecutionRow(id=execution.id, **self._execution_values(execution))
            )
            await session.commit()
        return execution

    async def update_execution(self, execution: ChainExecution) -> ChainExecution:
        execution.updated_at = utcnow()
        values = self._execution_values(execution)
        async with self.session() as session:
            row = await session.get(ChainExecutionRow, execution.id)
            if row is None:
                session.add(ChainExecutionRow(id=execution.id, **values))
            else:
                for key, value in values.items():
                    setattr(row, key, value)
            await session.commit()
        return execution

    async def get_execution(self, execution_id: str) -> ChainExecution | None:
        async with self.session() as session:
            row = await session.get(ChainExecutionRow, execution_id)
            return self._execution_from_row(row) if row else None

    async def find_execution_by_dispatch_key(
        self, dispatch_key: str
    ) -> ChainExecution | None:
        query = select(ChainExecutionRow).where(
            ChainExecutionRow.dispatch_key == dispatch_key
        )
        async with self.session() as session:
            row = (await session.exec(query)).first()
            return self._execution_from_row(row) if row else None

    async def list_executions(
        self, team_id: str | None = None, status: ChainStatus | None = None
    ) -> list[ChainExecution]:
        query = select(ChainExecutionRow)
        if team_id is not None:
            query = query.where(ChainExecutionRow.team_id == team_id)
        if status is not None:
            query = query.where(ChainExecutionRow.status == ChainStatus(status).value)
        query = query.order_by(ChainExecutionRow.started_at)
        async with self.session() as session:
            rows = (await session.exec(query)).all()
            return [self._execution_from_row(row) for row in rows]

    async def merge_execution_metadata(
        self, execution_id: str, metadata: dict[str, Any]
    ) -> ChainExecution | None:
        query = (
            select(ChainExecutionRow)
            .where(ChainExecutionRow.id == execution_id)
            .with_for_update()
        )
        async with self.session() as session:
            row = (await session.exec(query)).first()
            if row is None:
                return None
            context = dict(row.chain_context or {})
            context["metadata"] = {**context.get("metadata", {}), **metadata}
            row.chain_context = context
            row.updated_at = utcnow()
            await session.commit()
            return self._execution_from_row(row)

    # Steps -------------------------------------------------------------
    @staticmethod
    def _step_query(chain_execution_id: str, step_index: int):
        return select(ChainExecutionStepRow).where(
            ChainExecutionStepRow.chain_execution_id == chain_execution_id,
            ChainExecutionStepRow.step_index == step_index,
        )

    @staticmethod
    def _step_values(fields: dict[str, Any]) -> dict[str, Any]:
        values = dict(fields)
        if "status" in values:
            values["status"] = getattr(values["status"], "value", values["status"])
        return values

    async def upsert_step(
        self, chain_execution_id: str, step_index: int, **fields: Any
    ) -> tuple[ChainExecutionStep, bool]:
        values = self._step_values(fields)
        query = self._step_query(chain_execution_id, step_index).with_for_update()
        async with self.session() as session:
            row = (await session.exec(query)).first()
            if row is None:
                draft = ChainExecutionStep(
                    chain_execution_id=chain_execution_id,
                    step_index=step_index,
                    **fields,
                )
                row = ChainExecutionStepRow(
                    **draft.model_dump(exclude={"status"}), status=draft.status.value
                )
                session.add(row)
                try:
                    await session.commit()
                    return self._step_from_row(row), True
                except IntegrityError:
                    # another worker inserted the same (execution, index) first
                    await session.rollback()
                    logger.debug(
                        f"Concurrent insert for step {step_index} of "
                        f"chain_execution_id={chain_execution_id}; updating instead"
                    )
                    row = (await session.exec(query)).one()
            for key, value in values.items():
                setattr(row, key, value)
            await session.commit()
            return self._step_from_row(row), False

    async def get_step(
        self, chain_execution_id: str, step_index: int
    ) -> ChainExecutionStep | None:
        async with self.session() as session:
            row = (await session.exec(self._step_query(chain_execution_id, step_index))).first()
            return self._step_from_row(row) if row else None

    async def list_steps(self, chain_execution_id: str) -> list[ChainExecutionStep]:
        query = (
            select(ChainExecutionStepRow)
            .where(ChainExecutionStepRow.chain_execution_id == chain_execution_id)
            .order_by(ChainExecutionStepRow.step_index)
        )
        async with self.session() as session:
            rows = (await session.exec(query)).all()
            return [self._step_from_row(row) for row in rows]

    # Agent configuration -----------------------------------------------
    async def save_agent_configuration(
        self, config: AgentConfiguration
    ) -> AgentConfiguration:
        async with self.session() as session:
            await session.merge(AgentConfigurationRow(**config.model_dump()))
            await session.commit()
        return config

    async def get_agent_configuration(
        self, team_id: str, agent_id: str
    ) -> AgentConfiguration | None:
        async with self.session() as session:
            row = await session.get(AgentConfigurationRow, (team_id, agent_id))
            return self._config_from_row(row) if row else None

    async def consume_quota(
        self, team_id: str, agent_id: str, cost: float, today: date
    ) -> QuotaDecision:
        """Single conditional UPDATE; counters from a past day or month restart."""
        table = AgentConfigurationRow
        month = month_key(today)
        same_day = table.usage_date == today
        same_month = table.spend_month == month
        month_spend = case((same_month, table.current_month_spend), else_=0.0)
        statement = (
            update(table)
            .where(
                table.team_id == team_id,
                table.agent_id == agent_id,
                table.enabled.is_(True),
                or_(
                    table.daily_run_limit.is_(None),
                    table.usage_date.is_(None),
                    table.usage_date != today,
                    table.runs_today < table.daily_run_limit,
                ),
                or_(
                    table.monthly_budget_cap.is_(None),
                    month_spend + cost <= table.monthly_budget_cap,
                ),
            )
            .values(
                runs_today=case((same_day, table.runs_today + 1), else_=1),
                daily_spend=case((same_day, table.daily_spend + cost), else_=cost),
                usage_date=today,
                current_month_spend=month_spend + cost,
                spend_month=month,
            )
            .execution_options(synchronize_session=False)
        )

        for _ in range(_QUOTA_ATTEMPTS):
            async with self.session() as session:
                result = await session.execute(statement)
                await session.commit()
                row = await session.get(
                    AgentConfigurationRow, (team_id, agent_id), populate_existing=True
                )
                config = self._config_from_row(row) if row else None
            if result.rowcount == 1:
                return QuotaDecision(granted=True, configuration=config)
            decision = evaluate_quota(config, cost, today)
            if not decision.granted:
                return decision
            # counters changed between the update and the read; try again
        return QuotaDecision(granted=False, reason="rate_limited", configuration=config)

    # Triggers ----------------------------------------------------------
    async def save_trigger(self, trigger: Trigger) -> Trigger:
        async with self.session() as session:
            await session.merge(TriggerRow(**trigger.model_dump()))
            await session.commit()
        return trigger

    async def get_trigger(self, trigger_id: str) -> Trigger | None:
        async with self.session() as session:
            row = await session.get(TriggerRow, trigger_id)
            return self._trigger_from_row(row) if row else None

    async def find_triggers(
        self, entity_type: str, from_status: Optional[str], to_status: Optional[str]
    ) -> list[Trigger]:
        query = (
            select(TriggerRow)
            .where(
                TriggerRow.entity_type == entity_type,
                TriggerRow.enabled.is_(True),
                and_(
                    or_(TriggerRow.status_from.is_(None), TriggerRow.status_from == from_status),
                    or_(TriggerRow.status_to.is_(None), TriggerRow.status_to == to_status),
                ),
            )
            .order_by(TriggerRow.priority.desc())
        )
        async with self.session() as session:
            rows = (await session.exec(query)).all()
            return [self._trigger_from_row(row) for row in rows]
