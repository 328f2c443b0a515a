from .base import ToolContext, ToolRegistry, ToolResult, ToolSpec, ToolStatus
from .default_tools import default_registry
from .gateway import ToolGateway

__all__ = [
    "ToolContext",
    "ToolGateway",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
    "ToolStatus",
    "default_registry",
]
