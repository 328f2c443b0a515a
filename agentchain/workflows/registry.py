from __future__ import annotations

from typing import Dict, List, Optional, Type

from ..errors import ConfigurationError
from .base import BaseWorkflow


class WorkflowRegistry:
    """Map of workflow type names to workflow implementations."""

    def __init__(self, workflows: Optional[List[Type[BaseWorkflow]]] = None) -> None:
        self._workflows: Dict[str, Type[BaseWorkflow]] = {}
        for workflow in workflows or []:
            self.register(workflow)

    def register(self, workflow: Type[BaseWorkflow]) -> Type[BaseWorkflow]:
        if not workflow.workflow_type:
            raise ValueError(f"{workflow.__name__} does not declare a workflow_type")
        self._workflows[workflow.workflow_type] = workflow
        return workflow

    def get(self, workflow_type: str) -> BaseWorkflow:
        workflow = self._workflows.get(workflow_type)
        if workflow is None:
            raise ConfigurationError(
                f"Unknown workflow type '{workflow_type}'", workflow_type=workflow_type
            )
        return workflow()

    def __contains__(self, workflow_type: str) -> bool:
        return workflow_type in self._workflows

    def types(self) -> List[str]:
        return sorted(self._workflows)
