"""Command line interface for agentchain workers and operators."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import List, Optional

import typer

from .errors import NotFoundError
from .runtime import build_runtime
from .state_machine import ChainStatus
from .worker import TaskWorker

app = typer.Typer(help="CLI for agentchain workflows and chains")

worker_app = typer.Typer(help="Commands for running task workers")
execution_app = typer.Typer(help="Commands for inspecting chain executions")
approvals_app = typer.Typer(help="Commands for handling approval gates")

app.add_typer(worker_app, name="worker")
app.add_typer(execution_app, name="execution")
app.add_typer(approvals_app, name="approvals")


@app.callback()
def main(
    config: Optional[str] = typer.Option(None, help="Path to a YAML config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
) -> None:
    """agentchain CLI entry point."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if config:
        os.environ["AGENTCHAIN_CONFIG"] = config


@worker_app.command("run")
def worker_run(
    lifespan: Optional[float] = typer.Option(
        None, help="Worker lifetime in seconds (default: run indefinitely)"
    ),
) -> None:
    """
    Run a worker consuming durable tasks.

    Example:
        agentchain worker run
        agentchain worker run --lifespan 300
    """
    runtime = build_runtime()
    worker = TaskWorker(runtime)
    if not runtime.config.teams:
        typer.secho(
            "No teams configured; triggers and routing will skip every team",
            fg=typer.colors.YELLOW,
        )
    typer.echo(
        f"Starting worker on topic {runtime.queue.topic} "
        f"with {len(runtime.config.teams)} team(s)"
    )
    asyncio.run(worker.start(lifespan=lifespan))


@execution_app.command("list")
def execution_list(
    team_id: Optional[str] = typer.Option(None, help="Only executions of this team"),
    status: Optional[ChainStatus] = typer.Option(None, help="Only executions in this status"),
) -> None:
    """List chain executions with their status."""
    runtime = build_runtime(use_queue=False)
    executions = asyncio.run(runtime.repository.list_executions(team_id=team_id, status=status))
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(
            f"{execution.id}\t{execution.status.value}\t{execution.chain_id}\t{execution.team_id}"
        )


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """
    Show a chain execution and its step history.

    Example:
        agentchain execution show 1f0c...
        # Output: Execution 1f0c...: running
        #         - step 0: completed (workflow 9ab2...)
        #         - step 1: running (Approval required: Send 'Update' to ...)
    """
    runtime = build_runtime(use_queue=False)

    async def _load():
        execution = await runtime.repository.get_execution(execution_id)
        steps = await runtime.repository.list_steps(execution_id) if execution else []
        return execution, steps

    execution, steps = asyncio.run(_load())
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    typer.echo(f"Execution {execution.id}: {execution.status.value}")
    if execution.error_message:
        typer.echo(f"Error: {execution.error_message}")
    metadata = execution.chain_context.get("metadata") or {}
    halted = metadata.get("auto_progression_halted")
    if halted:
        typer.secho(f"Warning: {halted.get('message')}", fg=typer.colors.YELLOW)
    for step in steps:
        detail = step.output_data.get("approval") or step.output_data.get("error")
        typer.echo(
            f"- step {step.step_index}: {step.status.value}"
            + (f" (workflow {step.workflow_state_id})" if step.workflow_state_id else "")
            + (f" - {detail}" if detail else "")
        )


@approvals_app.command("list")
def approvals_list(team_id: str) -> None:
    """List workflow states of a team waiting for approval."""
    runtime = build_runtime(use_queue=False)
    states = asyncio.run(runtime.manager.pending_approvals(team_id))
    if not states:
        typer.echo("No pending approvals")
        return
    for state in states:
        typer.echo(f"{state.id}\t{state.workflow_type}\t{state.agent_id}\t{state.summary()}")


def _parse_payload(values: List[str]) -> dict:
    payload = {}
    for item in values:
        key, sep, raw = item.partition("=")
        if not sep:
            raise typer.BadParameter(f"Expected key=value, got '{item}'")
        try:
            payload[key] = json.loads(raw)
        except json.JSONDecodeError:
            payload[key] = raw
    return payload


@approvals_app.command("resume")
def approvals_resume(
    state_id: str,
    data: List[str] = typer.Option(
        [], "--data", "-d", help="Approval data as key=value (values parsed as JSON)"
    ),
) -> None:
    """Approve a paused workflow and continue its chain."""
    runtime = build_runtime()
    payload = {"approved": True, **_parse_payload(data)}
    try:
        state = asyncio.run(runtime.resume_approval(state_id, payload))
    except NotFoundError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Workflow state {state.id}: {state.status.value}")


@approvals_app.command("reject")
def approvals_reject(
    state_id: str,
    reason: str = typer.Option(..., help="Why the proposed action is rejected"),
    rejected_by: Optional[str] = typer.Option(None, help="User id of the approver"),
) -> None:
    """Reject a paused workflow."""
    runtime = build_runtime()
    try:
        state = asyncio.run(runtime.reject_approval(state_id, reason, rejected_by))
    except NotFoundError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Workflow state {state.id}: {state.status.value}")


if __name__ == "__main__":
    app()
