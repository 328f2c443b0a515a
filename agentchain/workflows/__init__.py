from .base import BaseWorkflow, WorkflowContext, WorkflowResult, WorkflowServices
from .client_comms import ClientCommsWorkflow
from .dispatcher import DispatcherWorkflow, extract_requirements
from .planning import PlanGenerationWorkflow
from .registry import WorkflowRegistry

BUILTIN_WORKFLOWS = [DispatcherWorkflow, PlanGenerationWorkflow, ClientCommsWorkflow]


def default_workflow_registry() -> WorkflowRegistry:
    return WorkflowRegistry(BUILTIN_WORKFLOWS)


__all__ = [
    "BUILTIN_WORKFLOWS",
    "BaseWorkflow",
    "ClientCommsWorkflow",
    "DispatcherWorkflow",
    "PlanGenerationWorkflow",
    "WorkflowContext",
    "WorkflowRegistry",
    "WorkflowResult",
    "WorkflowServices",
    "default_workflow_registry",
    "extract_requirements",
]
