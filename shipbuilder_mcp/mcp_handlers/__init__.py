# shipbuilder_mcp/mcp_handlers/__init__.py
from .context import ExecutionContext
from .dispatcher import DispatchResult, JsonRpcError, McpDispatcher
from .tool_registry import ToolArgumentsError, ToolError, ToolRegistry

__all__ = [
    "ExecutionContext",
    "DispatchResult",
    "JsonRpcError",
    "McpDispatcher",
    "ToolArgumentsError",
    "ToolError",
    "ToolRegistry",
]
