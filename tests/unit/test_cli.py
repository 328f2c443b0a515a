import asyncio

import pytest
from typer.testing import CliRunner

import agentchain.persistence as persistence
from agentchain.cli import app
from agentchain.state_machine import ChainStatus, WorkflowStatus

runner = CliRunner()


@pytest.fixture
def cli_repo(repository, monkeypatch):
    for name in ("AGENTCHAIN_CONFIG", "AGENTCHAIN_DATABASE_URL", "DATABASE_URL", "AGENTCHAIN_TRANSPORT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(persistence, "_repository_instance", repository)
    monkeypatch.setattr(persistence, "_repository_url", None)
    return repository


def _run_chain(runtime, make_chain, *steps):
    async def _go():
        chain = await runtime.chains.register_chain(make_chain(*steps))
        execution = await runtime.chains.execute_chain(chain, "team-1")
        return await runtime.chains.advance(execution)

    return asyncio.run(_go())


def test_execution_list_and_filters(cli_repo, runtime, configure, make_chain):
    asyncio.run(configure())
    execution = _run_chain(runtime, make_chain, "echo")

    result = runner.invoke(app, ["execution", "list"])
    assert result.exit_code == 0, result.stdout
    assert execution.id in result.stdout
    assert "completed" in result.stdout

    filtered = runner.invoke(app, ["execution", "list", "--status", "failed"])
    assert filtered.exit_code == 0
    assert "No executions found" in filtered.stdout


def test_execution_show_and_missing(cli_repo, runtime, configure, make_chain):
    asyncio.run(configure())
    execution = _run_chain(runtime, make_chain, "echo", "echo")

    result = runner.invoke(app, ["execution", "show", execution.id])
    assert result.exit_code == 0, result.stdout
    assert f"Execution {execution.id}: completed" in result.stdout
    assert "- step 1: completed" in result.stdout

    missing = runner.invoke(app, ["execution", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "Execution not found" in missing.stdout


def test_execution_show_warns_when_halted(cli_repo, runtime, make_chain):
    async def _halted():
        chain = await runtime.chains.register_chain(make_chain("echo"))
        execution = await runtime.chains.execute_chain(chain, "team-1")
        await cli_repo.merge_execution_metadata(
            execution.id,
            {"auto_progression_halted": {"iterations": 100, "message": "Continue it manually"}},
        )
        return execution

    execution = asyncio.run(_halted())

    result = runner.invoke(app, ["execution", "show", execution.id])
    assert result.exit_code == 0
    assert "Warning: Continue it manually" in result.stdout


def test_approvals_list_and_resume(cli_repo, runtime, configure):
    asyncio.run(configure("pm", can_modify_tasks=True))
    state = asyncio.run(
        runtime.manager.execute(
            "pm_copilot", {"work_order": {"id": "wo-1", "title": "Site"}}, "team-1", "pm"
        )
    )
    assert state.status == WorkflowStatus.PAUSED

    listed = runner.invoke(app, ["approvals", "list", "team-1"])
    assert listed.exit_code == 0
    assert state.id in listed.stdout
    assert "Approval required" in listed.stdout

    resumed = runner.invoke(app, ["approvals", "resume", state.id, "--data", "note=\"ok\""])
    assert resumed.exit_code == 0, resumed.stdout
    assert f"Workflow state {state.id}: completed" in resumed.stdout
    stored = asyncio.run(cli_repo.get_workflow_state(state.id))
    assert stored.state_data.approval_data == {"approved": True, "note": "ok"}


def test_approvals_reject_fails_chain(cli_repo, runtime, configure, make_chain):
    asyncio.run(configure())
    execution = _run_chain(runtime, make_chain, "echo", "gate")
    step = asyncio.run(runtime.chains.awaiting_steps(execution))[0]

    result = runner.invoke(
        app, ["approvals", "reject", step.workflow_state_id, "--reason", "Off brand"]
    )
    assert result.exit_code == 0, result.stdout
    assert "rejected" in result.stdout

    # the CLI runtime queues the continuation; settle it here
    stored = asyncio.run(runtime.chains.advance(execution))
    assert stored.status == ChainStatus.FAILED
    assert "rejected: Off brand" in stored.error_message


def test_approvals_resume_unknown_state(cli_repo):
    result = runner.invoke(app, ["approvals", "resume", "missing"])
    assert result.exit_code == 1
    assert "not found" in result.stdout


def test_approvals_list_empty(cli_repo):
    result = runner.invoke(app, ["approvals", "list", "team-1"])
    assert result.exit_code == 0
    assert "No pending approvals" in result.stdout


def test_worker_run_loads_teams_from_config(cli_repo, tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("teams:\n  - id: team-1\n    name: Studio\n")
    monkeypatch.setenv("AGENTCHAIN_CONFIG", str(config_path))

    result = runner.invoke(app, ["worker", "run", "--lifespan", "0"])

    assert result.exit_code == 0, result.stdout
    assert "with 1 team(s)" in result.stdout
    assert "No teams configured" not in result.stdout


def test_worker_run_warns_without_teams(cli_repo, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    result = runner.invoke(app, ["worker", "run", "--lifespan", "0"])

    assert result.exit_code == 0, result.stdout
    assert "No teams configured" in result.stdout
