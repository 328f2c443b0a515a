import asyncio
from datetime import date, timedelta

import pytest

from agentchain.errors import BudgetExceeded, ConfigurationError, RateLimitExceeded
from agentchain.limiter import BudgetLimiter

TODAY = date(2026, 3, 14)


@pytest.fixture
def clock():
    current = {"day": TODAY}
    return current


@pytest.fixture
def limiter(repository, clock):
    return BudgetLimiter(repository, today=lambda: clock["day"])


@pytest.mark.asyncio
async def test_run_after_daily_limit_is_refused_without_counting(limiter, repository, configure):
    await configure(daily_run_limit=2)

    await limiter.acquire("team-1", "assistant")
    await limiter.acquire("team-1", "assistant")
    with pytest.raises(RateLimitExceeded):
        await limiter.acquire("team-1", "assistant")

    config = await repository.get_agent_configuration("team-1", "assistant")
    assert config.runs_today == 2
    assert config.usage_date == TODAY


@pytest.mark.asyncio
async def test_budget_cap_refuses_costly_run(limiter, repository, configure):
    await configure(monthly_budget_cap=1.0)

    await limiter.acquire("team-1", "assistant", estimated_cost=0.6)
    with pytest.raises(BudgetExceeded) as exc_info:
        await limiter.acquire("team-1", "assistant", estimated_cost=0.6)

    assert exc_info.value.details["monthly_budget_cap"] == 1.0
    config = await repository.get_agent_configuration("team-1", "assistant")
    assert config.current_month_spend == pytest.approx(0.6)
    assert config.runs_today == 1


@pytest.mark.asyncio
async def test_missing_or_disabled_agent(limiter, configure):
    with pytest.raises(ConfigurationError, match="not configured"):
        await limiter.acquire("team-1", "assistant")

    await configure(enabled=False)
    with pytest.raises(ConfigurationError, match="disabled"):
        await limiter.acquire("team-1", "assistant")


@pytest.mark.asyncio
async def test_counters_reset_on_a_new_day_and_month(limiter, repository, clock, configure):
    await configure(daily_run_limit=1, monthly_budget_cap=1.0)
    await limiter.acquire("team-1", "assistant", estimated_cost=0.9)

    clock["day"] = TODAY + timedelta(days=1)
    config = await limiter.acquire("team-1", "assistant", estimated_cost=0.05)
    assert config.runs_today == 1
    assert config.current_month_spend == pytest.approx(0.95)

    clock["day"] = date(2026, 4, 1)
    config = await limiter.acquire("team-1", "assistant", estimated_cost=0.9)
    assert config.current_month_spend == pytest.approx(0.9)
    assert config.spend_month == "2026-04"


@pytest.mark.asyncio
async def test_concurrent_callers_cannot_share_the_last_slot(limiter, repository, configure):
    await configure(daily_run_limit=3)

    results = await asyncio.gather(
        *(limiter.acquire("team-1", "assistant") for _ in range(5)),
        return_exceptions=True,
    )

    admitted = [r for r in results if not isinstance(r, Exception)]
    refused = [r for r in results if isinstance(r, RateLimitExceeded)]
    assert len(admitted) == 3
    assert len(refused) == 2
    config = await repository.get_agent_configuration("team-1", "assistant")
    assert config.runs_today == 3


@pytest.mark.asyncio
async def test_check_does_not_mutate(limiter, repository, configure):
    await configure(daily_run_limit=1)

    decision = await limiter.check("team-1", "assistant")
    assert decision.granted
    config = await repository.get_agent_configuration("team-1", "assistant")
    assert config.runs_today == 0
