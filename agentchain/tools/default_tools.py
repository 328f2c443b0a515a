from __future__ import annotations

from typing import Any, Dict

from ..entities import Note, Task, WorkOrder
from .base import ToolContext, ToolRegistry


def _require(params: Dict[str, Any], *names: str) -> None:
    missing = [name for name in names if not params.get(name)]
    if missing:
        raise ValueError(f"Missing required parameters: {', '.join(missing)}")


async def _create_draft_work_order(ctx: ToolContext, params: Dict[str, Any]) -> Dict[str, Any]:
    """Create a work order in draft status, optionally pre-assigned."""
    _require(params, "title")
    work_order = WorkOrder(
        team_id=ctx.team_id,
        status="draft",
        title=params["title"],
        project_id=params.get("project_id"),
        description=params.get("description"),
        priority=params.get("priority", "medium"),
        estimated_hours=params.get("estimated_hours"),
        required_skills=params.get("required_skills", []),
        assigned_to_id=params.get("responsible_id"),
        created_by_id=params.get("created_by_id"),
        metadata={"routing_reasoning": params.get("routing_reasoning", {})},
    )
    ctx.entities.save(work_order)
    return {"work_order": work_order.snapshot()}


async def _create_task(ctx: ToolContext, params: Dict[str, Any]) -> Dict[str, Any]:
    """Create a task, usually under a work order."""
    _require(params, "title")
    task = Task(
        team_id=ctx.team_id,
        status="todo",
        title=params["title"],
        work_order_id=params.get("work_order_id"),
        project_id=params.get("project_id"),
        description=params.get("description"),
        estimated_hours=params.get("estimated_hours"),
        assigned_to_id=params.get("assigned_to_id"),
    )
    ctx.entities.save(task)
    return {"task": task.snapshot()}


async def _create_note(ctx: ToolContext, params: Dict[str, Any]) -> Dict[str, Any]:
    """Attach a note to an entity."""
    _require(params, "content")
    note = Note(
        team_id=ctx.team_id,
        subject_type=params.get("subject_type"),
        subject_id=params.get("subject_id"),
        content=params["content"],
        author=ctx.agent_id,
    )
    ctx.entities.save(note)
    return {"note": note.snapshot()}


async def _send_email(ctx: ToolContext, params: Dict[str, Any]) -> Dict[str, Any]:
    """Queue an email in the outbox."""
    _require(params, "to", "subject", "body")
    message = {
        "to": params["to"],
        "subject": params["subject"],
        "body": params["body"],
        "team_id": ctx.team_id,
        "agent_id": ctx.agent_id,
    }
    ctx.outbox.append(message)
    return {"queued": True, "to": params["to"]}


def default_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.tool("create_draft_work_order", category="work_orders")(_create_draft_work_order)
    registry.tool("create_task", category="tasks")(_create_task)
    registry.tool("create_note", category="notes")(_create_note)
    registry.tool("send_email", category="email")(_send_email)
    return registry
