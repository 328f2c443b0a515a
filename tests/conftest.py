"""Shared fixtures: a small team, test workflows and runtimes wired in memory."""

import asyncio

import pytest

from agentchain.config import AgentChainConfig
from agentchain.contracts import Chain, StepConfig
from agentchain.directory import Skill, Team, TeamDirectory, TeamMember
from agentchain.persistence.inmemory import InMemoryAgentRepository
from agentchain.persistence.models import AgentConfiguration
from agentchain.runtime import build_runtime
from agentchain.transports.inmemory import InMemoryTransport
from agentchain.workflows import BUILTIN_WORKFLOWS, WorkflowRegistry
from agentchain.workflows.base import BaseWorkflow, WorkflowResult

TEAM_ID = "team-1"
AGENT_ID = "assistant"


class EchoWorkflow(BaseWorkflow):
    """Completes immediately, reporting what it was given."""

    workflow_type = "echo"

    async def run(self, ctx):
        return WorkflowResult.completed(
            {
                "step": ctx.input.get("step_index"),
                "previous": sorted(ctx.input.get("previous_outputs", {})),
                "entity_id": ctx.triggering_entity().get("id"),
            }
        )


class GateWorkflow(BaseWorkflow):
    workflow_type = "gate"

    async def run(self, ctx):
        return WorkflowResult.needs_approval(
            reason="Summary goes to the client",
            action_description="Publish summary",
            proposed={"summary": "v1"},
            output={"draft": "v1"},
        )


class BoomWorkflow(BaseWorkflow):
    workflow_type = "boom"

    async def run(self, ctx):
        raise RuntimeError("boom")


class FlakyWorkflow(BaseWorkflow):
    """Fails on its first call only."""

    workflow_type = "flaky"
    calls = 0

    async def run(self, ctx):
        FlakyWorkflow.calls += 1
        if FlakyWorkflow.calls == 1:
            raise RuntimeError("temporary outage")
        return WorkflowResult.completed({"calls": FlakyWorkflow.calls})


class SlowWorkflow(BaseWorkflow):
    workflow_type = "slow"

    async def run(self, ctx):
        await asyncio.sleep(0.01)
        return WorkflowResult.completed({"member": ctx.input.get("step_index")})


TEST_WORKFLOWS = [EchoWorkflow, GateWorkflow, BoomWorkflow, FlakyWorkflow, SlowWorkflow]


@pytest.fixture(autouse=True)
def reset_flaky():
    FlakyWorkflow.calls = 0
    yield
    FlakyWorkflow.calls = 0


@pytest.fixture
def team():
    return Team(
        id=TEAM_ID,
        name="Studio",
        owner_id="u-owner",
        members=[
            TeamMember(
                user_id="u-alice",
                name="Alice",
                current_workload_hours=10,
                skills=[Skill(name="Python", proficiency=3), Skill(name="React", proficiency=2)],
            ),
            TeamMember(
                user_id="u-bob",
                name="Bob",
                capacity_hours_per_week=60,
                current_workload_hours=30,
                skills=[Skill(name="Python", proficiency=3), Skill(name="React", proficiency=2)],
            ),
            TeamMember(
                user_id="u-carol",
                name="Carol",
                current_workload_hours=5,
                skills=[Skill(name="Figma", proficiency=2)],
            ),
        ],
    )


@pytest.fixture
def repository():
    return InMemoryAgentRepository()


@pytest.fixture
def directory(team):
    return TeamDirectory([team])


@pytest.fixture
def workflows():
    return WorkflowRegistry(BUILTIN_WORKFLOWS + TEST_WORKFLOWS)


@pytest.fixture
def runtime(repository, directory, workflows):
    """Runtime without a queue: triggers and approvals run inline."""
    return build_runtime(
        config=AgentChainConfig(),
        repository=repository,
        directory=directory,
        workflows=workflows,
        use_queue=False,
    )


@pytest.fixture
def transport():
    return InMemoryTransport(poll_interval=0.01)


@pytest.fixture
def queued_runtime(repository, directory, workflows, transport):
    return build_runtime(
        config=AgentChainConfig(),
        repository=repository,
        directory=directory,
        workflows=workflows,
        transport=transport,
        use_queue=True,
    )


@pytest.fixture
def configure(repository):
    """Save an enabled configuration for each agent id."""

    async def _configure(*agent_ids, team_id=TEAM_ID, **overrides):
        overrides.setdefault("requires_approval", False)
        configs = []
        for agent_id in agent_ids or (AGENT_ID,):
            config = AgentConfiguration(team_id=team_id, agent_id=agent_id, **overrides)
            configs.append(await repository.save_agent_configuration(config))
        return configs

    return _configure


@pytest.fixture
def make_chain():
    """Build a chain from workflow types; dicts are taken as step overrides."""

    def _make(*steps, name="test chain", **kwargs):
        configs = []
        for step in steps:
            if isinstance(step, str):
                step = {"workflow_type": step}
            configs.append(StepConfig(agent_id=step.pop("agent_id", AGENT_ID), **step))
        return Chain(name=name, team_id=TEAM_ID, steps=configs, **kwargs)

    return _make
