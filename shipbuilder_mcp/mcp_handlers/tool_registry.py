# shipbuilder_mcp/mcp_handlers/tool_registry.py
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union, overload

from .context import ExecutionContext

logger = logging.getLogger(__name__)

ToolHandler = Callable[[ExecutionContext, Dict[str, Any]], Awaitable[Dict[str, Any]]]
F = TypeVar("F", bound=ToolHandler)


class ToolError(Exception):
    """A tool ran but could not produce a result."""


class ToolArgumentsError(ToolError):
    """The arguments supplied to a tool do not match its input schema."""


class RegisteredTool:
    def __init__(self, name: str, description: str, input_schema: Dict[str, Any], handler: ToolHandler):
        self.name = name
        self.description = description
        self.input_schema = input_schema
        self.handler = handler

    def describe(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}

    def check_arguments(self, arguments: Dict[str, Any]) -> None:
        missing = [key for key in self.input_schema.get("required", []) if key not in arguments]
        if missing:
            raise ToolArgumentsError(f"Missing required argument(s) for '{self.name}': {', '.join(missing)}")
        properties = self.input_schema.get("properties", {})
        for key, value in arguments.items():
            allowed = properties.get(key, {}).get("enum")
            if allowed is not None and value is not None and value not in allowed:
                raise ToolArgumentsError(
                    f"Invalid value for '{key}': {value!r}. Expected one of {', '.join(map(str, allowed))}."
                )


class ToolRegistry:
    """Holds the tools exposed through tools/list and tools/call."""

    def __init__(self):
        self._tools: Dict[str, RegisteredTool] = {}

    @overload
    def tool(self, func: F) -> F: ...

    @overload
    def tool(
        self, *, name: Optional[str] = None, description: Optional[str] = None,
        input_schema: Optional[Dict[str, Any]] = None,
    ) -> Callable[[F], F]: ...

    def tool(
        self,
        func: Optional[F] = None,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        input_schema: Optional[Dict[str, Any]] = None,
    ) -> Union[Callable[[F], F], F]:
        """
        Decorator registering an async handler as a tool.

        Args:
            func: The handler, when the decorator is used without arguments
            name: Tool name, defaults to the function name
            description: Defaults to the first line of the docstring
            input_schema: JSON schema for the tool arguments
        """
        def decorator(fn: F) -> F:
            effective_name = name or fn.__name__
            if effective_name in self._tools:
                raise ValueError(f"Tool '{effective_name}' is already registered.")
            effective_description = description or (fn.__doc__ or "").strip().split("\n")[0]
            self._tools[effective_name] = RegisteredTool(
                name=effective_name,
                description=effective_description,
                input_schema=input_schema or {"type": "object", "properties": {}},
                handler=fn,
            )
            logger.info(f"ToolRegistry registered '{effective_name}'.")
            return fn

        if func is not None:
            return decorator(func)
        return decorator

    def has(self, name: str) -> bool:
        return name in self._tools

    def list_tools(self) -> List[Dict[str, Any]]:
        return [tool.describe() for tool in self._tools.values()]

    async def call(self, name: str, arguments: Dict[str, Any], ctx: ExecutionContext) -> Dict[str, Any]:
        tool = self._tools.get(name)
        if tool is None:
            raise KeyError(name)
        tool.check_arguments(arguments)
        logger.info(f"Calling tool '{name}' for {ctx!r}")
        return await tool.handler(ctx, arguments)
