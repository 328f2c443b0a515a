"""Chain orchestration end to end on the in-memory stack."""

import logging

import pytest

from agentchain.contracts import StepCondition
from agentchain.entities import WorkOrder
from agentchain.errors import (
    ConfigurationError,
    NotFoundError,
    RateLimitExceeded,
    SafetyBoundExceeded,
    TransientExecutionError,
)
from agentchain.persistence.models import ChainExecutionStep
from agentchain.state_machine import ChainStatus, StepStatus


async def _start(runtime, chain, entity=None, initial=None):
    await runtime.chains.register_chain(chain)
    return await runtime.chains.execute_chain(chain, "team-1", entity, initial or {})


@pytest.mark.asyncio
async def test_sequential_chain_runs_each_step_then_completes(runtime, repository, configure, make_chain):
    await configure()
    execution = await _start(runtime, make_chain("echo", "echo", "echo"))

    indices = []
    while True:
        step = await runtime.chains.execute_step(execution)
        if step is None:
            break
        indices.append(step.step_index)

    assert indices == [0, 1, 2]
    completed = await runtime.chains.complete(execution)
    assert completed.status == ChainStatus.COMPLETED
    assert completed.completed_at is not None

    steps = await repository.list_steps(execution.id)
    assert [s.status for s in steps] == [StepStatus.COMPLETED] * 3
    assert steps[2].output_data["previous"] == [0, 1]
    assert all(s.workflow_state_id for s in steps)


@pytest.mark.asyncio
async def test_advance_completes_and_passes_entity(runtime, configure, make_chain):
    await configure()
    work_order = runtime.entities.save(WorkOrder(team_id="team-1", title="Site"))

    execution = await _start(runtime, make_chain("echo", "echo"), entity=work_order)
    finished = await runtime.chains.advance(execution)

    assert finished.status == ChainStatus.COMPLETED
    context = await runtime.chains.context_for(finished)
    assert context.output_for_step(0)["entity_id"] == work_order.id
    assert finished.chain_context["metadata"]["chain_name"] == "test chain"


@pytest.mark.asyncio
async def test_run_step_is_idempotent(runtime, repository, configure, make_chain):
    await configure()
    execution = await _start(runtime, make_chain("echo", "echo"))

    first = await runtime.chains.run_step(execution, 0)
    second = await runtime.chains.run_step(execution, 0)

    assert first.id == second.id
    assert first.workflow_state_id == second.workflow_state_id
    assert len(await repository.list_steps(execution.id)) == 1
    assert len(await repository.list_workflow_states(team_id="team-1")) == 1


@pytest.mark.asyncio
async def test_out_of_range_step_is_a_logged_no_op(runtime, configure, make_chain, caplog):
    await configure()
    execution = await _start(runtime, make_chain("echo"))

    with caplog.at_level(logging.WARNING):
        assert await runtime.chains.run_step(execution, 7) is None
    assert "out of bounds" in caplog.text


@pytest.mark.asyncio
async def test_execute_step_on_finished_execution_returns_none(runtime, configure, make_chain, caplog):
    await configure()
    execution = await _start(runtime, make_chain("echo"))
    await runtime.chains.cancel(execution, reason="duplicate")

    with caplog.at_level(logging.WARNING):
        assert await runtime.chains.execute_step(execution) is None
    assert "cancelled" in caplog.text
    stored = await runtime.chains.get_execution(execution.id)
    assert stored.chain_context["metadata"]["cancel_reason"] == "duplicate"


@pytest.mark.asyncio
async def test_disabled_chain_is_refused(runtime, make_chain):
    with pytest.raises(ConfigurationError):
        await _start(runtime, make_chain("echo", enabled=False))


@pytest.mark.asyncio
async def test_dispatch_key_reuses_execution(runtime, repository, make_chain):
    chain = await runtime.chains.register_chain(make_chain("echo"))

    first = await runtime.chains.execute_chain(chain, "team-1", dispatch_key="k-1")
    second = await runtime.chains.execute_chain(chain, "team-1", dispatch_key="k-1")

    assert first.id == second.id
    assert len(await repository.list_executions()) == 1


@pytest.mark.asyncio
async def test_unknown_execution(runtime):
    with pytest.raises(NotFoundError):
        await runtime.chains.get_execution("missing")


@pytest.mark.asyncio
async def test_skip_branch_marks_next_step_skipped(runtime, repository, configure, make_chain):
    await configure()
    chain = make_chain(
        {
            "workflow_type": "echo",
            "next_step_conditions": [StepCondition(condition="steps.0.output.step == 0", action="skip")],
        },
        "boom",
        "echo",
    )

    finished = await runtime.chains.advance(await _start(runtime, chain))

    assert finished.status == ChainStatus.COMPLETED
    steps = await repository.list_steps(finished.id)
    assert steps[1].output_data == {"skipped": True, "skipped_by_step": 0}
    assert steps[1].workflow_state_id is None
    assert steps[2].output_data["previous"] == [0, 1]


@pytest.mark.asyncio
async def test_terminate_branch_completes_early(runtime, repository, configure, make_chain):
    await configure()
    chain = make_chain(
        {"workflow_type": "echo", "next_step_conditions": [StepCondition(action="terminate")]},
        "echo",
    )

    finished = await runtime.chains.advance(await _start(runtime, chain))

    assert finished.status == ChainStatus.COMPLETED
    assert finished.chain_context["metadata"]["result"] == {"terminated_by_step": 0}
    assert len(await repository.list_steps(finished.id)) == 1


@pytest.mark.asyncio
async def test_unmatched_condition_continues(runtime, repository, configure, make_chain):
    await configure()
    chain = make_chain(
        {
            "workflow_type": "echo",
            "next_step_conditions": [
                StepCondition(condition="steps.0.output.step > 5", action="terminate")
            ],
        },
        "echo",
    )

    finished = await runtime.chains.advance(await _start(runtime, chain))

    assert finished.status == ChainStatus.COMPLETED
    assert len(await repository.list_steps(finished.id)) == 2


@pytest.mark.asyncio
async def test_failed_step_is_recorded_and_raised(runtime, repository, configure, make_chain):
    await configure()
    execution = await _start(runtime, make_chain("echo", "boom"))

    with pytest.raises(TransientExecutionError) as exc_info:
        await runtime.chains.advance(execution)

    assert exc_info.value.step_index == 1
    step = await repository.get_step(execution.id, 1)
    assert step.status == StepStatus.FAILED
    assert step.output_data["error"] == "Workflow boom failed: boom"
    # the execution stays running so the step can be retried
    assert (await runtime.chains.get_execution(execution.id)).status == ChainStatus.RUNNING


@pytest.mark.asyncio
async def test_failed_step_is_retried_on_next_run(runtime, repository, configure, make_chain):
    await configure()
    execution = await _start(runtime, make_chain("flaky", "echo"))

    with pytest.raises(TransientExecutionError):
        await runtime.chains.advance(execution)
    finished = await runtime.chains.advance(execution)

    assert finished.status == ChainStatus.COMPLETED
    step = await repository.get_step(execution.id, 0)
    assert step.status == StepStatus.COMPLETED
    assert step.attempts == 2
    assert step.output_data == {"calls": 2}


@pytest.mark.asyncio
async def test_limit_violation_fails_step_without_workflow_state(runtime, repository, configure, make_chain):
    await configure(daily_run_limit=1)
    execution = await _start(runtime, make_chain("echo", "echo"))

    with pytest.raises(RateLimitExceeded) as exc_info:
        await runtime.chains.advance(execution)

    assert (await repository.get_step(execution.id, 1)).status == StepStatus.FAILED
    assert len(await repository.list_workflow_states(team_id="team-1")) == 1

    failed = await runtime.chains.fail(execution, exc_info.value.summary())
    assert failed.status == ChainStatus.FAILED
    assert failed.error_message.startswith("Daily run limit")


@pytest.mark.asyncio
async def test_safety_bound_halts_auto_progression(runtime, configure, make_chain, monkeypatch, caplog):
    await configure()
    execution = await _start(runtime, make_chain("echo"))
    calls = []

    async def never_finishes(current):
        calls.append(current.id)
        return ChainExecutionStep(
            chain_execution_id=current.id, step_index=0, status=StepStatus.RUNNING
        )

    monkeypatch.setattr(runtime.chains, "execute_step", never_finishes)

    with caplog.at_level(logging.WARNING, logger="agentchain.chains"):
        with pytest.raises(SafetyBoundExceeded) as exc_info:
            await runtime.chains.advance(execution)

    assert len(calls) == 100
    assert exc_info.value.iterations == 100
    warnings = [r for r in caplog.records if "halted" in r.getMessage()]
    assert len(warnings) == 1
    stored = await runtime.chains.get_execution(execution.id)
    assert stored.status == ChainStatus.RUNNING
    assert stored.chain_context["metadata"]["auto_progression_halted"]["iterations"] == 100


@pytest.mark.asyncio
async def test_zero_iterations_halts_before_any_step(runtime, repository, configure, make_chain):
    await configure()
    execution = await _start(runtime, make_chain("echo"))

    with pytest.raises(SafetyBoundExceeded) as exc_info:
        await runtime.chains.advance(execution, max_iterations=0)

    assert exc_info.value.iterations == 0
    assert await repository.list_steps(execution.id) == []
    stored = await runtime.chains.get_execution(execution.id)
    assert stored.status == ChainStatus.RUNNING


@pytest.mark.asyncio
async def test_pause_and_resume_execution(runtime, configure, make_chain):
    await configure()
    execution = await _start(runtime, make_chain("echo", "echo"))

    paused = await runtime.chains.pause(execution, "waiting on client")
    assert paused.status == ChainStatus.PAUSED
    assert await runtime.chains.execute_step(paused) is None

    resumed = await runtime.chains.resume(paused, {"by": "u-owner"})
    assert resumed.status == ChainStatus.RUNNING
    assert resumed.chain_context["metadata"]["resume_data"] == {"by": "u-owner"}
    assert (await runtime.chains.advance(resumed)).status == ChainStatus.COMPLETED
