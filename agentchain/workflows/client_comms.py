"""Client communication workflow: draft with an LLM agent, send after approval."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic_ai import Agent, RunContext

from .base import BaseWorkflow, WorkflowContext, WorkflowResult

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You draft short, friendly status updates for clients of a project team. "
    "Use the chain context tool to learn what happened so far. Never promise "
    "dates that are not in the context."
)


@dataclass
class CommsDeps:
    entity: Dict[str, Any]
    previous_outputs: Dict[Any, Any]


async def _chain_context(ctx: RunContext[CommsDeps]) -> str:
    """Return what earlier steps produced and the entity being discussed."""
    return json.dumps(
        {"entity": ctx.deps.entity, "previous_outputs": ctx.deps.previous_outputs},
        default=str,
    )


def build_drafting_agent(model: str) -> Agent:
    agent = Agent(
        model,
        deps_type=CommsDeps,
        output_type=str,
        system_prompt=SYSTEM_PROMPT,
        name="client_comms_drafter",
    )
    agent.tool(_chain_context)
    return agent


class ClientCommsWorkflow(BaseWorkflow):
    """Draft a client update and send it once a human approves it.

    Input keys: ``to`` (recipient address), optional ``subject`` and
    ``purpose``. Sending goes through the tool gateway, so an agent without
    ``can_send_emails`` ends with a denied send result instead of an error.
    """

    workflow_type = "client_comms"
    description = "Draft and send a client communication"
    estimated_cost = 0.02

    def __init__(self, agent: Optional[Agent] = None) -> None:
        self._agent = agent

    async def draft(self, ctx: WorkflowContext, subject: str, purpose: str) -> str:
        agent = self._agent or build_drafting_agent(ctx.services.llm.model)
        deps = CommsDeps(
            entity=ctx.triggering_entity(),
            previous_outputs=ctx.input.get("previous_outputs", {}),
        )
        result = await agent.run(f"Subject: {subject}\nPurpose: {purpose}", deps=deps)
        return str(result.output)

    async def run(self, ctx: WorkflowContext) -> WorkflowResult:
        entity = ctx.triggering_entity()
        recipient = ctx.input.get("to") or entity.get("client_email")
        subject = ctx.input.get("subject") or f"Update: {entity.get('title', 'your project')}"
        purpose = ctx.input.get("purpose") or f"Status is now {entity.get('status', 'updated')}"
        body = await self.draft(ctx, subject, purpose)
        email = {"to": recipient, "subject": subject, "body": body}
        logger.info(f"Drafted client update for workflow_state_id={ctx.state.id}")
        return WorkflowResult.needs_approval(
            reason="Client communications are reviewed before sending",
            action_description=f"Send '{subject}' to {recipient or 'an unknown recipient'}",
            proposed={"email": email},
            output={"draft": email},
        )

    async def resume(self, ctx: WorkflowContext, payload: Dict[str, Any]) -> WorkflowResult:
        if payload.get("approved") is False:
            return WorkflowResult.rejected(payload.get("reason") or "Draft rejected")
        output = dict(ctx.state.state_data.output or {})
        email = {**output.get("draft", {}), **payload.get("edits", {})}
        sent = await ctx.gateway.invoke("send_email", email)
        note = await ctx.gateway.invoke(
            "create_note",
            {
                "subject_type": ctx.triggering_entity().get("entity_type"),
                "subject_id": ctx.triggering_entity().get("id"),
                "content": f"Client update '{email.get('subject')}': {sent.status.value}",
            },
        )
        output.update(
            {
                "email": email,
                "send": sent.model_dump(mode="json"),
                "note": note.model_dump(mode="json"),
            }
        )
        return WorkflowResult.completed(output)
