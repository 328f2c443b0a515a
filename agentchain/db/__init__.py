from .models import (
    AgentConfigurationRow,
    ChainExecutionRow,
    ChainExecutionStepRow,
    ChainRow,
    TriggerRow,
    WorkflowStateRow,
)

__all__ = [
    "AgentConfigurationRow",
    "ChainExecutionRow",
    "ChainExecutionStepRow",
    "ChainRow",
    "TriggerRow",
    "WorkflowStateRow",
]
