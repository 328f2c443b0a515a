"""Plan generation workflow: deliverables and task breakdown for a work order."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from .base import BaseWorkflow, WorkflowContext, WorkflowResult

logger = logging.getLogger(__name__)

# (phase, share of the estimate)
PHASES = [
    ("Discovery and requirements", 0.2),
    ("Implementation", 0.6),
    ("Review and handoff", 0.2),
]
DEFAULT_ESTIMATE_HOURS = 8.0


def build_plan(work_order: Dict[str, Any]) -> Dict[str, Any]:
    """Deterministic plan skeleton derived from the work order fields."""
    title = work_order.get("title") or "Work order"
    estimate = float(work_order.get("estimated_hours") or DEFAULT_ESTIMATE_HOURS)
    deliverables = [
        {
            "name": title,
            "description": work_order.get("description") or "",
            "type": "primary",
        }
    ]
    for criterion in work_order.get("acceptance_criteria") or []:
        deliverables.append({"name": str(criterion), "description": "", "type": "criterion"})

    tasks = [
        {
            "title": f"{phase}: {title}",
            "estimated_hours": round(estimate * share, 2),
            "deliverable": title,
        }
        for phase, share in PHASES
    ]
    confidence = "high" if work_order.get("description") and work_order.get("estimated_hours") else "low"
    return {"deliverables": deliverables, "tasks": tasks, "confidence": confidence}


class PlanGenerationWorkflow(BaseWorkflow):
    """Propose deliverables and tasks for a work order.

    ``mode`` is ``staged`` (default, pauses for plan approval) or ``full``
    (creates the tasks straight away).
    """

    workflow_type = "pm_copilot"
    description = "Generate deliverables and a task breakdown"
    estimated_cost = 0.10

    @staticmethod
    def _work_order(ctx: WorkflowContext) -> Dict[str, Any]:
        return ctx.input.get("work_order") or ctx.triggering_entity()

    async def _create_tasks(
        self, ctx: WorkflowContext, work_order: Dict[str, Any], tasks: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        created = []
        for task in tasks:
            result = await ctx.gateway.invoke(
                "create_task",
                {
                    "title": task["title"],
                    "estimated_hours": task["estimated_hours"],
                    "work_order_id": work_order.get("id"),
                    "project_id": work_order.get("project_id"),
                },
            )
            created.append(result.model_dump(mode="json"))
        return created

    async def run(self, ctx: WorkflowContext) -> WorkflowResult:
        work_order = self._work_order(ctx)
        if not work_order:
            raise ValueError("Plan generation needs a work order")
        plan = build_plan(work_order)
        output = {"work_order_id": work_order.get("id"), "plan": plan}

        if ctx.input.get("mode", "staged") == "staged":
            return WorkflowResult.needs_approval(
                reason="Plan requires review before tasks are created",
                action_description=f"Create {len(plan['tasks'])} tasks for "
                f"'{work_order.get('title', 'work order')}'",
                proposed=plan,
                output=output,
            )

        output["tasks"] = await self._create_tasks(ctx, work_order, plan["tasks"])
        return WorkflowResult.completed(output)

    async def resume(self, ctx: WorkflowContext, payload: Dict[str, Any]) -> WorkflowResult:
        if payload.get("approved") is False:
            return WorkflowResult.rejected(payload.get("reason") or "Plan rejected")
        output = dict(ctx.state.state_data.output or {})
        plan = output.get("plan", {})
        approved = payload.get("approved_deliverables")
        tasks = [
            task
            for task in plan.get("tasks", [])
            if approved is None or task["deliverable"] in approved
        ]
        logger.info(
            f"Creating {len(tasks)} approved tasks for workflow_state_id={ctx.state.id}"
        )
        output["tasks"] = await self._create_tasks(ctx, self._work_order(ctx), tasks)
        return WorkflowResult.completed(output)
