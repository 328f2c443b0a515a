"""Agentchain: durable agent workflows and chains for team automation."""

from .chains import ChainOrchestrator
from .contracts import Chain, StepCondition, StepConfig, TaskMessage, Trigger
from .orchestrator import WorkflowStateManager
from .persistence import get_repository
from .runtime import AgentRuntime, build_runtime
from .transports import get_transport
from .triggers import StatusChangeEvent, TriggerDispatcher

__version__ = "0.1.0"
__all__ = [
    "AgentRuntime",
    "Chain",
    "ChainOrchestrator",
    "StatusChangeEvent",
    "StepCondition",
    "StepConfig",
    "TaskMessage",
    "Trigger",
    "TriggerDispatcher",
    "WorkflowStateManager",
    "build_runtime",
    "get_repository",
    "get_transport",
]
