"""Quota arithmetic shared by repository backends."""

from __future__ import annotations

from datetime import date

from .models import AgentConfiguration, QuotaDecision


def month_key(day: date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


def evaluate_quota(
    config: AgentConfiguration | None, cost: float, today: date
) -> QuotaDecision:
    """Decide whether one more run fits, counting stale counters as zero."""
    if config is None:
        return QuotaDecision(granted=False, reason="missing")
    if not config.enabled:
        return QuotaDecision(granted=False, reason="disabled", configuration=config)

    runs_today = config.runs_today if config.usage_date == today else 0
    month_spend = (
        config.current_month_spend if config.spend_month == month_key(today) else 0.0
    )
    if config.daily_run_limit is not None and runs_today >= config.daily_run_limit:
        return QuotaDecision(granted=False, reason="rate_limited", configuration=config)
    if (
        config.monthly_budget_cap is not None
        and month_spend + cost > config.monthly_budget_cap
    ):
        return QuotaDecision(granted=False, reason="over_budget", configuration=config)
    return QuotaDecision(granted=True, configuration=config)


def apply_quota(config: AgentConfiguration, cost: float, today: date) -> AgentConfiguration:
    """Counters after one granted run."""
    same_day = config.usage_date == today
    same_month = config.spend_month == month_key(today)
    return config.model_copy(
        update={
            "runs_today": (config.runs_today if same_day else 0) + 1,
            "daily_spend": (config.daily_spend if same_day else 0.0) + cost,
            "usage_date": today,
            "current_month_spend": (config.current_month_spend if same_month else 0.0)
            + cost,
            "spend_month": month_key(today),
        }
    )
