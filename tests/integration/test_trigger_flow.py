"""Status changes flowing through triggers, the task queue and the worker."""

from datetime import datetime, timedelta, timezone

import pytest

from agentchain.config import AgentChainConfig
from agentchain.contracts import ActingUser, TaskMessage, Trigger
from agentchain.entities import WorkOrder
from agentchain.runtime import build_runtime
from agentchain.state_machine import ChainStatus, StepStatus
from agentchain.tasks.base import TaskOutcome
from agentchain.tasks.jobs import PROCESS_DISPATCHER_ROUTING, PROCESS_PLAN_GENERATION
from agentchain.triggers import PROCESS_CHAIN_TRIGGER, StatusChangeEvent
from agentchain.worker import TaskWorker


async def _setup(runtime, make_chain, *steps, **trigger_fields):
    chain = await runtime.chains.register_chain(make_chain(*steps, name="intake"))
    trigger = await runtime.repository.save_trigger(
        Trigger(
            name="on approval",
            chain_id=chain.id,
            entity_type="work_order",
            status_to="approved",
            **trigger_fields,
        )
    )
    work_order = runtime.entities.save(
        WorkOrder(team_id="team-1", title="Landing page", status="approved")
    )
    return chain, trigger, work_order


def _approved(work_order, acting_user=None):
    return StatusChangeEvent(
        entity=work_order, from_status="draft", to_status="approved", acting_user=acting_user
    )


@pytest.mark.asyncio
async def test_status_change_runs_chain_through_worker(
    queued_runtime, transport, repository, configure, make_chain
):
    await configure()
    chain, trigger, work_order = await _setup(queued_runtime, make_chain, "echo", "echo")
    user = ActingUser(user_id="u-owner", name="Olive")

    dispatched = await queued_runtime.triggers.handle_status_change(_approved(work_order, user))

    assert [t.id for t in dispatched] == [trigger.id]
    pending = transport.pending(queued_runtime.queue.topic)
    assert [m.task_type for m in pending] == [PROCESS_CHAIN_TRIGGER]
    assert pending[0].payload["entity"]["id"] == work_order.id

    await TaskWorker(queued_runtime).start(lifespan=0.3)

    [execution] = await repository.list_executions(team_id="team-1")
    assert execution.status == ChainStatus.COMPLETED
    assert execution.chain_id == chain.id
    assert execution.triggering_entity.key == work_order.id
    assert execution.chain_context["initial"]["trigger"]["id"] == trigger.id
    assert execution.chain_context["initial"]["triggered_by"]["user_id"] == "u-owner"
    steps = await repository.list_steps(execution.id)
    assert steps[0].output_data["entity_id"] == work_order.id
    assert (await repository.get_trigger(trigger.id)).last_triggered_at is not None


@pytest.mark.asyncio
async def test_deduplication_window_suppresses_repeat(queued_runtime, transport, configure, make_chain):
    await configure()
    _, _, work_order = await _setup(
        queued_runtime, make_chain, "echo", deduplication_window_minutes=10
    )

    first = await queued_runtime.triggers.handle_status_change(_approved(work_order))
    second = await queued_runtime.triggers.handle_status_change(_approved(work_order))

    assert len(first) == 1
    assert second == []
    assert len(transport.pending(queued_runtime.queue.topic)) == 1


@pytest.mark.asyncio
async def test_other_transitions_do_not_dispatch(queued_runtime, transport, make_chain):
    _, _, work_order = await _setup(queued_runtime, make_chain, "echo")

    event = StatusChangeEvent(entity=work_order, from_status="draft", to_status="rejected")

    assert await queued_runtime.triggers.handle_status_change(event) == []
    assert transport.pending(queued_runtime.queue.topic) == []


@pytest.mark.asyncio
async def test_failed_step_is_retried_by_worker(
    queued_runtime, transport, repository, configure, make_chain
):
    await configure()
    _, _, work_order = await _setup(queued_runtime, make_chain, "flaky", "echo")

    await queued_runtime.triggers.handle_status_change(_approved(work_order))
    worker = TaskWorker(queued_runtime)
    await worker.start(lifespan=0.2)

    assert [r.outcome for r in worker.processed] == [TaskOutcome.RETRY]
    [execution] = await repository.list_executions()
    assert execution.status == ChainStatus.RUNNING
    assert (await repository.get_step(execution.id, 0)).status == StepStatus.FAILED

    [retry] = transport.pending(queued_runtime.queue.topic)
    assert retry.task_type == PROCESS_CHAIN_TRIGGER
    assert retry.attempt == 2
    assert retry.available_at >= datetime.now(timezone.utc) + timedelta(seconds=59)

    result = await worker.process(retry)

    assert result.ok
    assert result.data["chain_execution_id"] == execution.id
    assert [e.id for e in await repository.list_executions()] == [execution.id]
    finished = await repository.get_execution(execution.id)
    assert finished.status == ChainStatus.COMPLETED
    first = await repository.get_step(execution.id, 0)
    assert first.status == StepStatus.COMPLETED
    assert first.attempts == 2


@pytest.mark.asyncio
async def test_step_failing_every_attempt_fails_execution(
    queued_runtime, transport, repository, configure, make_chain
):
    await configure()
    _, _, work_order = await _setup(queued_runtime, make_chain, "boom", "echo")

    await queued_runtime.triggers.handle_status_change(_approved(work_order))
    worker = TaskWorker(queued_runtime)
    await worker.start(lifespan=0.2)
    [second] = transport.pending(queued_runtime.queue.topic)
    await worker.process(second)
    third = transport.pending(queued_runtime.queue.topic)[-1]
    assert third.attempt == third.max_attempts == 3

    result = await worker.process(third)

    assert result.outcome == TaskOutcome.RETRY
    assert [m.attempt for m in transport.pending(queued_runtime.queue.topic)] == [2, 3]
    [execution] = await repository.list_executions()
    assert execution.status == ChainStatus.FAILED
    assert "Workflow boom failed: boom" in execution.error_message
    assert "Failed: boom" not in execution.error_message
    step = await repository.get_step(execution.id, 0)
    assert step.status == StepStatus.FAILED
    assert step.attempts == 3
    assert len(await repository.list_workflow_states(team_id="team-1")) == 3
    assert await repository.get_step(execution.id, 1) is None


@pytest.mark.asyncio
async def test_missing_trigger_records_error_on_entity(queued_runtime, make_chain):
    _, _, work_order = await _setup(queued_runtime, make_chain, "echo")
    message = TaskMessage(
        task_type=PROCESS_CHAIN_TRIGGER,
        payload={
            "trigger_id": "gone",
            "entity_type": "work_order",
            "entity": work_order.snapshot(),
        },
    )

    result = await TaskWorker(queued_runtime).process(message)

    assert result.outcome == TaskOutcome.PERMANENT
    error = work_order.metadata["chain_trigger_error"]
    assert error["trigger_id"] == "gone"
    assert "not found" in error["error_message"]


@pytest.mark.asyncio
async def test_inline_dispatch_fails_execution_on_step_error(runtime, repository, configure, make_chain):
    await configure()
    _, _, work_order = await _setup(runtime, make_chain, "echo", "boom")

    await runtime.triggers.handle_status_change(_approved(work_order))

    [execution] = await repository.list_executions()
    assert execution.status == ChainStatus.FAILED
    assert "boom" in execution.error_message
    assert (await repository.get_step(execution.id, 1)).status == StepStatus.FAILED


@pytest.mark.asyncio
async def test_trigger_for_unknown_team_is_skipped(runtime, repository, configure, make_chain):
    await configure()
    await _setup(runtime, make_chain, "echo")
    stranger = runtime.entities.save(WorkOrder(team_id="team-9", title="Elsewhere"))

    await runtime.triggers.handle_status_change(_approved(stranger))

    assert await repository.list_executions() == []


@pytest.mark.asyncio
async def test_routing_task_stores_recommendations(queued_runtime, configure):
    await configure("dispatcher-agent", can_create_work_orders=True)
    work_order = queued_runtime.entities.save(
        WorkOrder(team_id="team-1", title="React page", required_skills=["react"], estimated_hours=6)
    )
    message = TaskMessage(
        task_type=PROCESS_DISPATCHER_ROUTING,
        payload={"work_order_id": work_order.id, "agent_id": "dispatcher-agent"},
    )

    result = await TaskWorker(queued_runtime).process(message)

    assert result.ok
    recommendations = work_order.metadata["routing_recommendations"]
    assert recommendations["top_candidate_id"] == "u-alice"
    assert recommendations["candidates"][0]["user_id"] == "u-alice"


@pytest.mark.asyncio
async def test_routing_task_failure_is_recorded(queued_runtime, transport, configure):
    await configure("dispatcher-agent", daily_run_limit=0)
    work_order = queued_runtime.entities.save(WorkOrder(team_id="team-1", title="React page"))
    message = TaskMessage(
        task_type=PROCESS_DISPATCHER_ROUTING,
        payload={"work_order_id": work_order.id, "agent_id": "dispatcher-agent"},
    )

    result = await TaskWorker(queued_runtime).process(message)

    assert result.outcome == TaskOutcome.PERMANENT
    assert transport.pending(queued_runtime.queue.topic) == []
    assert work_order.metadata["routing_recommendations"]["error"] is True


@pytest.fixture
def team_config_file(tmp_path, monkeypatch):
    for name in ("AGENTCHAIN_DATABASE_URL", "DATABASE_URL", "AGENTCHAIN_TRANSPORT"):
        monkeypatch.delenv(name, raising=False)
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
teams:
  - id: team-1
    name: Studio
    members:
      - user_id: u-alice
        name: Alice
"""
    )
    monkeypatch.setenv("AGENTCHAIN_CONFIG", str(config_path))
    return config_path


@pytest.mark.asyncio
async def test_worker_runtime_from_config_runs_triggered_chain(
    team_config_file, repository, workflows, transport, configure, make_chain
):
    # built the way `agentchain worker run` builds it: no directory handed in
    runtime = build_runtime(repository=repository, transport=transport, workflows=workflows)
    assert runtime.directory.get_team("team-1") is not None
    await configure()
    _, _, work_order = await _setup(runtime, make_chain, "echo")

    await runtime.triggers.handle_status_change(_approved(work_order))
    await TaskWorker(runtime).start(lifespan=0.3)

    [execution] = await repository.list_executions(team_id="team-1")
    assert execution.status == ChainStatus.COMPLETED


@pytest.mark.asyncio
async def test_routing_task_rebuilds_work_order_from_snapshot(
    team, repository, workflows, transport, configure
):
    await configure("dispatcher-agent", can_create_work_orders=True)
    runtime = build_runtime(
        config=AgentChainConfig(teams=[team]),
        repository=repository,
        transport=transport,
        workflows=workflows,
    )
    snapshot = WorkOrder(
        team_id="team-1", title="React page", required_skills=["react"], estimated_hours=6
    ).snapshot()
    message = TaskMessage(
        task_type=PROCESS_DISPATCHER_ROUTING,
        payload={
            "work_order_id": snapshot["id"],
            "work_order": snapshot,
            "agent_id": "dispatcher-agent",
        },
    )

    result = await TaskWorker(runtime).process(message)

    assert result.ok
    stored = runtime.entities.get("work_order", snapshot["id"])
    assert stored.title == "React page"
    assert stored.metadata["routing_recommendations"]["top_candidate_id"] == "u-alice"


@pytest.mark.asyncio
async def test_plan_task_without_record_or_snapshot_is_permanent(queued_runtime, transport):
    message = TaskMessage(
        task_type=PROCESS_PLAN_GENERATION,
        payload={"work_order_id": "wo-unknown", "agent_id": "pm"},
    )

    result = await TaskWorker(queued_runtime).process(message)

    assert result.outcome == TaskOutcome.PERMANENT
    assert "not found" in result.error
    assert transport.pending(queued_runtime.queue.topic) == []
