# shipbuilder_mcp/mcp_handlers/dispatcher.py
import logging
from typing import Any, Dict, Optional

from ..mcp_auth.models import UserInfo
from ..sessions import McpSessionManager
from ..sessions.session_data import default_server_capabilities
from .context import ExecutionContext
from .tool_registry import ToolArgumentsError, ToolRegistry

logger = logging.getLogger(__name__)

MCP_PROTOCOL_VERSION = "2025-03-26"
SERVER_INFO = {"name": "shipbuilder-mcp", "version": "1.0.0"}

# JSON-RPC 2.0 error codes
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class JsonRpcError(Exception):
    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def to_dict(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


class DispatchResult:
    """HTTP-level outcome of one JSON-RPC message."""

    def __init__(self, status_code: int, body: Optional[Dict[str, Any]], session_id: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        self.session_id = session_id


def error_envelope(message_id: Any, error: JsonRpcError) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": message_id, "error": error.to_dict()}


class McpDispatcher:
    """
    Resolves each JSON-RPC call to an execution context and answers it.

    Resolution order: the session named by the Mcp-Session-Id header, then
    the caller's own session or the user's most recent one, then a throwaway
    stateless context. A miss at any step falls through silently. Method
    handling does not depend on which step produced the context.
    """

    def __init__(self, session_manager: McpSessionManager, tool_registry: ToolRegistry):
        self.session_manager = session_manager
        self.tool_registry = tool_registry
        self._handlers = {
            "initialize": self._handle_initialize,
            "ping": self._handle_ping,
            "tools/list": self._handle_tools_list,
            "tools/call": self._handle_tools_call,
            "prompts/list": self._handle_prompts_list,
            "resources/list": self._handle_resources_list,
        }

    async def resolve_context(
        self, token: str, user: UserInfo, session_id: Optional[str] = None
    ) -> ExecutionContext:
        sm = self.session_manager
        if session_id:
            found = await sm.find_by_connection_id(user.user_id, session_id)
            if found is not None:
                key, session = found
                return ExecutionContext(user, session, key, resolved_via="session_id")
            logger.info(f"Mcp-Session-Id {session_id} not found for user '{user.user_id}'; falling back.")

        key = sm.session_key(token)
        session = await sm.get_by_key(key)
        if session is not None:
            return ExecutionContext(user, session, key, resolved_via="token")

        found = await sm.find_for_user(user.user_id)
        if found is not None:
            key, session = found
            return ExecutionContext(user, session, key, resolved_via="user")

        # Nothing on this context is persisted after the call.
        return ExecutionContext.stateless(user)

    async def dispatch(
        self, message: Any, token: str, user: UserInfo, session_id: Optional[str] = None
    ) -> DispatchResult:
        if not isinstance(message, dict):
            return DispatchResult(400, error_envelope(None, JsonRpcError(INVALID_REQUEST, "Invalid Request")))

        message_id = message.get("id")
        method = message.get("method")
        if not method or not isinstance(method, str):
            return DispatchResult(
                400, error_envelope(message_id, JsonRpcError(INVALID_REQUEST, "Invalid Request: method is required"))
            )

        ctx = await self.resolve_context(token, user, session_id)
        logger.debug(f"Dispatching '{method}' on {ctx!r}")

        if method.startswith("notifications/"):
            return DispatchResult(204, None, session_id=ctx.connection_id)

        handler = self._handlers.get(method)
        params = message.get("params") or {}
        try:
            if handler is None:
                raise JsonRpcError(METHOD_NOT_FOUND, f"Method not found: {method}")
            if not isinstance(params, dict):
                raise JsonRpcError(INVALID_PARAMS, "params must be an object")
            result = await handler(params, ctx)
        except JsonRpcError as e:
            return DispatchResult(200, error_envelope(message_id, e), session_id=ctx.connection_id)

        return DispatchResult(
            200, {"jsonrpc": "2.0", "id": message_id, "result": result}, session_id=ctx.connection_id
        )

    async def _handle_initialize(self, params: Dict[str, Any], ctx: ExecutionContext) -> Dict[str, Any]:
        if ctx.is_stateful and isinstance(params.get("capabilities"), dict):
            await self.session_manager.set_client_capabilities_by_key(ctx.session_key, params["capabilities"])
        return {
            "protocolVersion": MCP_PROTOCOL_VERSION,
            "capabilities": default_server_capabilities(),
            "serverInfo": dict(SERVER_INFO),
        }

    async def _handle_ping(self, params: Dict[str, Any], ctx: ExecutionContext) -> Dict[str, Any]:
        return {}

    async def _handle_tools_list(self, params: Dict[str, Any], ctx: ExecutionContext) -> Dict[str, Any]:
        return {"tools": self.tool_registry.list_tools()}

    async def _handle_prompts_list(self, params: Dict[str, Any], ctx: ExecutionContext) -> Dict[str, Any]:
        return {"prompts": []}

    async def _handle_resources_list(self, params: Dict[str, Any], ctx: ExecutionContext) -> Dict[str, Any]:
        return {"resources": []}

    async def _handle_tools_call(self, params: Dict[str, Any], ctx: ExecutionContext) -> Dict[str, Any]:
        name = params.get("name")
        arguments = params.get("arguments") or {}
        if not name or not isinstance(name, str):
            raise JsonRpcError(INVALID_PARAMS, "Tool name is required")
        if not isinstance(arguments, dict):
            raise JsonRpcError(INVALID_PARAMS, "Tool arguments must be an object")
        if not self.tool_registry.has(name):
            raise JsonRpcError(METHOD_NOT_FOUND, f"Unknown tool: {name}")

        if ctx.is_stateful:
            await self.session_manager.next_event_sequence_by_key(ctx.session_key)

        try:
            result = await self.tool_registry.call(name, arguments, ctx)
        except ToolArgumentsError as e:
            raise JsonRpcError(INVALID_PARAMS, str(e))
        except Exception as e:
            logger.error(f"Tool '{name}' failed for user '{ctx.user.user_id}': {e}", exc_info=True)
            raise JsonRpcError(INTERNAL_ERROR, f"Tool execution failed: {e}")

        if ctx.is_stateful and ctx.context != ctx.session.context:
            await self.session_manager.replace_context_by_key(ctx.session_key, ctx.context)
        return result
