"""Single entry point through which agents invoke tools."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from ..persistence.models import AgentConfiguration, utcnow
from .base import ToolContext, ToolRegistry, ToolResult, ToolSpec

logger = logging.getLogger(__name__)


class ToolGateway:
    """Enforce capability flags before delegating to a tool.

    Tools never check permissions themselves. A refused call returns a
    ``denied`` result so the calling workflow can carry on.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        configuration: AgentConfiguration,
        context: ToolContext,
    ) -> None:
        self.registry = registry
        self.configuration = configuration
        self.context = context
        self.activity: List[Dict[str, Any]] = []

    def has_permission(self, tool: ToolSpec | str) -> bool:
        spec = self.registry.get(tool) if isinstance(tool, str) else tool
        if spec is None:
            return False
        for capability in spec.capabilities():
            if not self.configuration.has_capability(capability):
                return False
        permissions = self.configuration.tool_permissions
        if spec.name in permissions:
            return bool(permissions[spec.name])
        return True

    def available_tools(self) -> Dict[str, ToolSpec]:
        return {
            name: spec
            for name, spec in self.registry.all().items()
            if self.has_permission(spec)
        }

    async def invoke(self, tool_name: str, params: Optional[Dict[str, Any]] = None) -> ToolResult:
        params = params or {}
        spec = self.registry.get(tool_name)
        if spec is None:
            result = ToolResult.failure(f"Tool '{tool_name}' not found")
        elif not self.has_permission(spec):
            result = ToolResult.denied(
                f"Permission denied: agent '{self.configuration.agent_id}' may not use '{tool_name}'"
            )
        else:
            started = time.perf_counter()
            try:
                data = await spec.handler(self.context, params)
                result = ToolResult.success(
                    data, execution_time_ms=(time.perf_counter() - started) * 1000
                )
            except Exception as exc:
                logger.error(
                    f"Tool '{tool_name}' failed for agent_id={self.configuration.agent_id}: {exc}"
                )
                result = ToolResult.failure(
                    str(exc) or type(exc).__name__,
                    execution_time_ms=(time.perf_counter() - started) * 1000,
                )
        self._record(tool_name, params, result)
        return result

    def _record(self, tool_name: str, params: Dict[str, Any], result: ToolResult) -> None:
        self.activity.append(
            {
                "tool": tool_name,
                "team_id": self.context.team_id,
                "agent_id": self.configuration.agent_id,
                "params": params,
                "status": result.status.value,
                "error": result.error,
                "at": utcnow().isoformat(),
            }
        )
        logger.info(
            f"Tool '{tool_name}' for agent_id={self.configuration.agent_id}: {result.status.value}"
        )
