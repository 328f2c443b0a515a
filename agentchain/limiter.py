"""Budget and rate-limit gate for agent invocations."""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Callable, Optional

from .errors import BudgetExceeded, ConfigurationError, RateLimitExceeded
from .persistence.models import AgentConfiguration, QuotaDecision
from .persistence.quota import evaluate_quota
from .persistence.repository import AgentRepository

logger = logging.getLogger(__name__)


def _today() -> date:
    return datetime.now(timezone.utc).date()


class BudgetLimiter:
    """Admit or refuse invocations for a (team, agent) pair.

    Admission is a single atomic compare-and-increment in the repository, so
    two concurrent callers can never both take the last slot.
    """

    def __init__(
        self,
        repository: AgentRepository,
        default_cost: float = 0.0,
        today: Callable[[], date] = _today,
    ) -> None:
        self.repository = repository
        self.default_cost = default_cost
        self._today = today

    def _raise_for(self, decision: QuotaDecision, team_id: str, agent_id: str, cost: float) -> None:
        config = decision.configuration
        if decision.reason == "missing":
            raise ConfigurationError(
                f"Agent '{agent_id}' is not configured for team '{team_id}'",
                team_id=team_id,
                agent_id=agent_id,
            )
        if decision.reason == "disabled":
            raise ConfigurationError(
                f"Agent '{agent_id}' is disabled for team '{team_id}'",
                team_id=team_id,
                agent_id=agent_id,
            )
        if decision.reason == "rate_limited":
            raise RateLimitExceeded(
                f"Daily run limit of {config.daily_run_limit} reached for agent '{agent_id}'",
                team_id=team_id,
                agent_id=agent_id,
                daily_run_limit=config.daily_run_limit,
            )
        raise BudgetExceeded(
            f"Monthly budget cap of {config.monthly_budget_cap} would be exceeded "
            f"by agent '{agent_id}' (cost {cost})",
            team_id=team_id,
            agent_id=agent_id,
            monthly_budget_cap=config.monthly_budget_cap,
            estimated_cost=cost,
        )

    async def acquire(
        self, team_id: str, agent_id: str, estimated_cost: Optional[float] = None
    ) -> AgentConfiguration:
        """Count one run against the limits or raise without mutating anything."""
        cost = self.default_cost if estimated_cost is None else estimated_cost
        decision = await self.repository.consume_quota(team_id, agent_id, cost, self._today())
        if not decision.granted:
            logger.info(
                f"Invocation refused for team_id={team_id} agent_id={agent_id}: {decision.reason}"
            )
            self._raise_for(decision, team_id, agent_id, cost)
        logger.debug(
            f"Invocation admitted for team_id={team_id} agent_id={agent_id} "
            f"(runs_today={decision.configuration.runs_today})"
        )
        return decision.configuration

    async def check(
        self, team_id: str, agent_id: str, estimated_cost: Optional[float] = None
    ) -> QuotaDecision:
        """Read-only preview of what ``acquire`` would decide."""
        cost = self.default_cost if estimated_cost is None else estimated_cost
        config = await self.repository.get_agent_configuration(team_id, agent_id)
        return evaluate_quota(config, cost, self._today())
