from datetime import datetime, timedelta, timezone

import pytest

from agentchain.contracts import ActingUser, Trigger
from agentchain.entities import WorkOrder
from agentchain.triggers import (
    StatusChangeEvent,
    build_initial_context,
    conditions_match,
    passes_deduplication,
)


def _trigger(**kwargs):
    kwargs.setdefault("chain_id", "chain-1")
    kwargs.setdefault("entity_type", "work_order")
    return Trigger(name="intake", **kwargs)


def _work_order(**kwargs):
    kwargs.setdefault("team_id", "team-1")
    return WorkOrder(title="Website", **kwargs)


def test_transition_matching_treats_none_as_wildcard():
    trigger = _trigger(status_from=None, status_to="approved")

    assert trigger.matches_transition("draft", "approved")
    assert trigger.matches_transition(None, "approved")
    assert not trigger.matches_transition("draft", "rejected")


def test_budget_conditions():
    entity = _work_order(budget_cost=5000)

    assert conditions_match(_trigger(conditions={"budget_greater_than": 1000}), entity)
    assert not conditions_match(_trigger(conditions={"budget_greater_than": 5000}), entity)
    assert conditions_match(_trigger(conditions={"budget_less_than": 10000}), entity)
    assert not conditions_match(_trigger(conditions={"budget_less_than": 100}), _work_order(budget_cost=100))
    # missing budget counts as zero
    assert not conditions_match(_trigger(conditions={"budget_greater_than": 0}), _work_order())


def test_tag_and_field_conditions():
    entity = _work_order(tags=["vip", "web"], priority="high")

    assert conditions_match(_trigger(conditions={"has_tags": ["vip", "web"]}), entity)
    assert not conditions_match(_trigger(conditions={"has_tags": ["vip", "print"]}), entity)
    assert conditions_match(_trigger(conditions={"has_tags": "vip"}), entity)
    assert conditions_match(_trigger(conditions={"entity_field_equals": {"priority": "high"}}), entity)
    assert not conditions_match(
        _trigger(conditions={"entity_field_equals": {"priority": "low"}}), entity
    )
    # unknown keys and the deduplication window are not conditions
    assert conditions_match(
        _trigger(conditions={"deduplication_window_minutes": 5, "mystery": 1}), entity
    )


def test_deduplication_window():
    now = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)

    assert passes_deduplication(_trigger(deduplication_window_minutes=10), now)
    recent = _trigger(deduplication_window_minutes=10, last_triggered_at=now - timedelta(minutes=5))
    assert not passes_deduplication(recent, now)
    old = _trigger(deduplication_window_minutes=10, last_triggered_at=now - timedelta(minutes=11))
    assert passes_deduplication(old, now)
    via_conditions = _trigger(
        conditions={"deduplication_window_minutes": 10},
        last_triggered_at=now - timedelta(minutes=5),
    )
    assert not passes_deduplication(via_conditions, now)


def test_initial_context_excludes_audit_fields():
    trigger = _trigger(status_from="draft", status_to="approved")
    entity = _work_order(budget_cost=10)
    user = ActingUser(user_id="u-owner", name="Olive", email="olive@example.com")

    context = build_initial_context(trigger, entity, user)

    assert context["trigger"]["id"] == trigger.id
    assert context["trigger"]["status_to"] == "approved"
    assert context["entity"]["type"] == "work_order"
    assert context["entity"]["id"] == entity.id
    attributes = context["entity"]["attributes"]
    assert attributes["team_id"] == "team-1"
    assert attributes["budget_cost"] == 10
    assert "created_at" not in attributes
    assert "updated_at" not in attributes
    assert context["triggered_by"] == {
        "user_id": "u-owner",
        "user_name": "Olive",
        "user_email": "olive@example.com",
    }
    assert "triggered_by" not in build_initial_context(trigger, entity, None)


def test_team_resolution(runtime):
    dispatcher = runtime.triggers
    entity = _work_order()

    assert dispatcher.resolve_team(_trigger(), entity) == "team-1"
    assert dispatcher.resolve_team(_trigger(team_id="team-1"), _work_order(team_id=None)) == "team-1"
    # a trigger team that does not resolve is not replaced by the entity's
    assert dispatcher.resolve_team(_trigger(team_id="ghost-team"), entity) is None
    assert dispatcher.resolve_team(_trigger(), _work_order(team_id=None)) is None


@pytest.mark.asyncio
async def test_matching_triggers_filters_team_and_orders_by_priority(runtime, repository):
    low = await repository.save_trigger(_trigger(status_to="approved", priority=1))
    high = await repository.save_trigger(_trigger(status_to="approved", priority=9, team_id="team-1"))
    await repository.save_trigger(_trigger(status_to="approved", team_id="team-2"))
    await repository.save_trigger(_trigger(status_to="approved", enabled=False))
    await repository.save_trigger(_trigger(status_to="done"))

    event = StatusChangeEvent(entity=_work_order(), from_status="draft", to_status="approved")
    matches = await runtime.triggers.matching_triggers(event)

    assert [t.id for t in matches] == [high.id, low.id]
