"""Dispatcher workflow: turn a request into a routed draft work order."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from ..routing import RELATED_SKILLS
from .base import BaseWorkflow, WorkflowContext, WorkflowResult

logger = logging.getLogger(__name__)

_HOURS_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(?:hours?|hrs?|h)\b", re.IGNORECASE)
_TITLE_RE = re.compile(r"^title:\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_HIGH_PRIORITY = ("urgent", "asap", "critical", "immediately")
_LOW_PRIORITY = ("whenever", "low priority", "no rush")


def extract_requirements(message: str) -> Dict[str, Any]:
    """Pull title, estimate, priority and skills out of a free-text request."""
    text = message.strip()
    lowered = text.lower()

    title_match = _TITLE_RE.search(text)
    if title_match:
        title = title_match.group(1).strip()
    else:
        first_sentence = re.split(r"(?<=[.!?])\s+|\n", text, maxsplit=1)[0].strip()
        title = first_sentence[:100].rstrip(".!?")

    hours_match = _HOURS_RE.search(text)
    estimated_hours = float(hours_match.group(1)) if hours_match else None

    if any(word in lowered for word in _HIGH_PRIORITY):
        priority = "high"
    elif any(word in lowered for word in _LOW_PRIORITY):
        priority = "low"
    else:
        priority = "medium"

    words = set(re.findall(r"[a-z0-9.+#/-]+", lowered))
    skills = sorted(skill for skill in RELATED_SKILLS if " " not in skill and skill in words)
    skills += sorted(skill for skill in RELATED_SKILLS if " " in skill and skill in lowered)

    return {
        "title": title or "Untitled request",
        "description": text,
        "estimated_hours": estimated_hours,
        "priority": priority,
        "required_skills": skills,
    }


class DispatcherWorkflow(BaseWorkflow):
    """Route incoming work to the best-fitting team member.

    Input keys: ``message`` (free text) or explicit ``title``,
    ``required_skills``, ``estimated_hours``; optionally ``project_id`` and
    ``require_approval_for_routing``. The draft work order is created right
    away unless the agent configuration (or the input) requires approval.
    """

    workflow_type = "dispatcher"
    description = "Extract requirements, rank assignees and draft a work order"
    estimated_cost = 0.05

    def _requirements(self, ctx: WorkflowContext) -> Dict[str, Any]:
        data = dict(ctx.input)
        entity = ctx.triggering_entity()
        extracted = extract_requirements(data["message"]) if data.get("message") else {}
        requirements = {
            "title": data.get("title") or entity.get("title") or extracted.get("title"),
            "description": data.get("description")
            or entity.get("description")
            or extracted.get("description"),
            "estimated_hours": data.get("estimated_hours")
            or entity.get("estimated_hours")
            or extracted.get("estimated_hours"),
            "priority": data.get("priority") or extracted.get("priority", "medium"),
            "required_skills": data.get("required_skills")
            or entity.get("required_skills")
            or extracted.get("required_skills", []),
            "project_id": data.get("project_id") or entity.get("project_id"),
        }
        return requirements

    @staticmethod
    def _draft_params(
        requirements: Dict[str, Any], decision: Dict[str, Any], responsible_id: Optional[str]
    ) -> Dict[str, Any]:
        top: List[Dict[str, Any]] = decision["candidates"][:1]
        return {
            "title": requirements["title"],
            "description": requirements["description"],
            "project_id": requirements["project_id"],
            "priority": requirements["priority"],
            "estimated_hours": requirements["estimated_hours"],
            "required_skills": requirements["required_skills"],
            "responsible_id": responsible_id or (top[0]["user_id"] if top else None),
            "routing_reasoning": top[0]["reasoning"] if top else {},
        }

    async def run(self, ctx: WorkflowContext) -> WorkflowResult:
        requirements = self._requirements(ctx)
        decision = ctx.services.routing.decision(
            ctx.team_id,
            requirements["required_skills"],
            float(requirements["estimated_hours"] or 0),
        )
        output = {"requirements": requirements, "routing": decision}
        draft = self._draft_params(requirements, decision, None)

        if ctx.configuration.requires_approval or ctx.input.get("require_approval_for_routing"):
            logger.info(
                f"Routing for workflow_state_id={ctx.state.id} awaits approval: "
                f"{decision['recommendation_summary']}"
            )
            return WorkflowResult.needs_approval(
                reason="Routing decision requires approval",
                action_description=f"Create draft work order '{draft['title']}' "
                f"assigned to {draft['responsible_id'] or 'nobody'}",
                proposed={"work_order": draft},
                output=output,
            )

        result = await ctx.gateway.invoke("create_draft_work_order", draft)
        output["work_order"] = result.model_dump(mode="json")
        return WorkflowResult.completed(output)

    async def resume(self, ctx: WorkflowContext, payload: Dict[str, Any]) -> WorkflowResult:
        if payload.get("approved") is False:
            return WorkflowResult.rejected(payload.get("reason") or "Routing rejected")
        output = dict(ctx.state.state_data.output or {})
        approval = ctx.state.state_data.approval
        draft = dict(approval.proposed.get("work_order", {})) if approval else {}
        if payload.get("responsible_id"):
            draft["responsible_id"] = payload["responsible_id"]
        result = await ctx.gateway.invoke("create_draft_work_order", draft)
        output["work_order"] = result.model_dump(mode="json")
        return WorkflowResult.completed(output)
