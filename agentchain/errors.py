"""Error taxonomy for agent workflows and chains."""

from __future__ import annotations

from typing import Any, Optional


class AgentChainError(Exception):
    """Base class for all agentchain errors.

    ``retryable`` tells the task layer whether another attempt may succeed.
    """

    retryable: bool = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def summary(self) -> str:
        """Short human-readable description for activity views."""
        return self.message


class ConfigurationError(AgentChainError):
    """Agent is missing, disabled or the workflow type is unknown."""


class RateLimitExceeded(AgentChainError):
    """Daily invocation count for (team, agent) reached ``daily_run_limit``."""


class BudgetExceeded(AgentChainError):
    """Invocation would push monthly spend over ``monthly_budget_cap``."""


class NotFoundError(AgentChainError):
    """Chain, team, execution or entity could not be resolved."""


class TransientExecutionError(AgentChainError):
    """Any failure while invoking a workflow or executing a step."""

    retryable = True

    def __init__(
        self, message: str, step_index: Optional[int] = None, **details: Any
    ) -> None:
        super().__init__(message, **details)
        self.step_index = step_index


class SafetyBoundExceeded(AgentChainError):
    """Auto-progression reached the iteration cap."""

    def __init__(self, chain_execution_id: str, iterations: int) -> None:
        super().__init__(
            f"Auto-progression halted after {iterations} iterations; "
            "manual follow-up required",
            chain_execution_id=chain_execution_id,
            iterations=iterations,
        )
        self.chain_execution_id = chain_execution_id
        self.iterations = iterations


class InvalidTransitionError(AgentChainError, ValueError):
    """Raised when a status transition is not allowed by the state machine."""

    def __init__(
        self, kind: str, from_status: str, to_status: str, record_id: str | None = None
    ) -> None:
        record_info = f" ({kind} id={record_id})" if record_id is not None else ""
        super().__init__(
            f"Invalid {kind} transition{record_info}: '{from_status}' -> '{to_status}'"
        )
        self.kind = kind
        self.from_status = from_status
        self.to_status = to_status
        self.record_id = record_id


__all__ = [
    "AgentChainError",
    "ConfigurationError",
    "RateLimitExceeded",
    "BudgetExceeded",
    "NotFoundError",
    "TransientExecutionError",
    "SafetyBoundExceeded",
    "InvalidTransitionError",
]
