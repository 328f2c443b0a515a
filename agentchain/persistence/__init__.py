"""Persistence layer for agent workflows and chains."""

from __future__ import annotations

import os
from typing import Optional

from ..config import AgentChainConfig, load_config
from .inmemory import InMemoryAgentRepository
from .models import (
    AgentConfiguration,
    ApprovalRequirement,
    ChainExecution,
    ChainExecutionStep,
    EntityRef,
    ErrorInfo,
    QuotaDecision,
    Rejection,
    WorkflowState,
    WorkflowStateData,
)
from .repository import AgentRepository
from .sql import SQLAgentRepository


_repository_instance: AgentRepository | None = None
_repository_url: str | None = None

_SQL_PREFIXES = ("sqlite", "postgres://", "postgresql")


def get_repository(
    database_url: Optional[str] = None, config: Optional[AgentChainConfig] = None
) -> AgentRepository:
    """Factory function to obtain an agent repository.

    The backend is selected from ``database_url`` which can be provided
    explicitly, via environment variable ``AGENTCHAIN_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned. The instance is reused
    for as long as the resolved URL stays the same.
    """

    global _repository_instance, _repository_url
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("AGENTCHAIN_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )
    if _repository_instance is not None and database_url == _repository_url:
        return _repository_instance

    if not database_url:
        _repository_instance = InMemoryAgentRepository()
    elif database_url.startswith(_SQL_PREFIXES):
        _repository_instance = SQLAgentRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")
    _repository_url = database_url

    return _repository_instance


__all__ = [
    "AgentConfiguration",
    "AgentRepository",
    "ApprovalRequirement",
    "ChainExecution",
    "ChainExecutionStep",
    "EntityRef",
    "ErrorInfo",
    "InMemoryAgentRepository",
    "QuotaDecision",
    "Rejection",
    "SQLAgentRepository",
    "WorkflowState",
    "WorkflowStateData",
    "get_repository",
]
