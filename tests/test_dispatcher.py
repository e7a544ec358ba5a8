import pytest

from shipbuilder_mcp.mcp_handlers import McpDispatcher, ToolError, ToolRegistry
from shipbuilder_mcp.mcp_handlers.dispatcher import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    MCP_PROTOCOL_VERSION,
)
from shipbuilder_mcp.sessions import InMemorySessionStore, McpSessionManager

from conftest import TEST_USER, FakeClock


def _build_registry() -> ToolRegistry:
    registry = ToolRegistry()

    @registry.tool(
        input_schema={
            "type": "object",
            "properties": {"step": {"type": "string", "enum": ["start", "next"]}},
            "required": ["step"],
        }
    )
    async def wizard(ctx, arguments):
        """Multi-step tool that remembers how far it got."""
        count = ctx.context.get("count", 0) + 1
        ctx.context["count"] = count
        return {"content": [{"type": "text", "text": f"{arguments['step']}:{count}"}]}

    @registry.tool
    async def broken(ctx, arguments):
        """Always fails."""
        raise ToolError("Main application API is unreachable")

    @registry.tool
    async def flow(ctx, arguments):
        """Advances a nested step counter."""
        state = ctx.context.setdefault("flow", {"step": 0})
        state["step"] += 1
        return {"content": [{"type": "text", "text": str(state["step"])}]}

    @registry.tool
    async def finish(ctx, arguments):
        """Drops the flow state."""
        ctx.context.pop("flow", None)
        return {"content": [{"type": "text", "text": "done"}]}

    return registry


@pytest.fixture
def session_manager(clock: FakeClock) -> McpSessionManager:
    return McpSessionManager(InMemorySessionStore(clock=clock), secret="dispatch-secret", clock=clock)


@pytest.fixture
def dispatcher(session_manager) -> McpDispatcher:
    return McpDispatcher(session_manager, _build_registry())


def _call(method: str, params=None, message_id=1):
    message = {"jsonrpc": "2.0", "id": message_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def _tool_text(result) -> str:
    return result.body["result"]["content"][0]["text"]


@pytest.mark.asyncio
async def test_initialize_is_identical_with_and_without_session(dispatcher, session_manager):
    stateless = await dispatcher.dispatch(_call("initialize", {"capabilities": {}}), "token-a", TEST_USER)

    await session_manager.get_or_create("token-a", TEST_USER)
    stateful = await dispatcher.dispatch(_call("initialize", {"capabilities": {}}), "token-a", TEST_USER)

    assert stateless.status_code == stateful.status_code == 200
    assert stateless.body == stateful.body
    assert stateless.body["result"]["protocolVersion"] == MCP_PROTOCOL_VERSION
    assert stateless.session_id is None
    assert stateful.session_id.startswith("conn_")


@pytest.mark.asyncio
async def test_initialize_records_client_capabilities(dispatcher, session_manager):
    await session_manager.get_or_create("token-a", TEST_USER)
    await dispatcher.dispatch(_call("initialize", {"capabilities": {"roots": {}}}), "token-a", TEST_USER)
    assert (await session_manager.get("token-a")).client_capabilities == {"roots": {}}


@pytest.mark.asyncio
async def test_simple_methods(dispatcher):
    assert (await dispatcher.dispatch(_call("ping"), "t", TEST_USER)).body["result"] == {}
    assert (await dispatcher.dispatch(_call("prompts/list"), "t", TEST_USER)).body["result"] == {"prompts": []}
    assert (await dispatcher.dispatch(_call("resources/list"), "t", TEST_USER)).body["result"] == {"resources": []}

    tools = (await dispatcher.dispatch(_call("tools/list"), "t", TEST_USER)).body["result"]["tools"]
    assert [tool["name"] for tool in tools] == ["wizard", "broken", "flow", "finish"]
    assert tools[0]["description"] == "Multi-step tool that remembers how far it got."


@pytest.mark.asyncio
async def test_notifications_get_no_body(dispatcher):
    result = await dispatcher.dispatch(
        {"jsonrpc": "2.0", "method": "notifications/initialized"}, "t", TEST_USER
    )
    assert result.status_code == 204
    assert result.body is None


@pytest.mark.asyncio
async def test_invalid_requests(dispatcher):
    not_an_object = await dispatcher.dispatch(["batch"], "t", TEST_USER)
    assert not_an_object.status_code == 400
    assert not_an_object.body["error"]["code"] == INVALID_REQUEST

    no_method = await dispatcher.dispatch({"jsonrpc": "2.0", "id": 7}, "t", TEST_USER)
    assert no_method.status_code == 400
    assert no_method.body["id"] == 7
    assert no_method.body["error"]["code"] == INVALID_REQUEST


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "message, code",
    [
        (_call("sampling/createMessage"), METHOD_NOT_FOUND),
        (_call("tools/call", {"name": "nope"}), METHOD_NOT_FOUND),
        (_call("tools/call", {}), INVALID_PARAMS),
        (_call("tools/call", {"name": "wizard", "arguments": "start"}), INVALID_PARAMS),
        (_call("tools/call", {"name": "wizard", "arguments": {}}), INVALID_PARAMS),
        (_call("tools/call", {"name": "wizard", "arguments": {"step": "jump"}}), INVALID_PARAMS),
        (_call("tools/call", {"name": "broken"}), INTERNAL_ERROR),
        (_call("ping", ["not", "an", "object"]), INVALID_PARAMS),
    ],
)
async def test_error_codes(dispatcher, message, code):
    result = await dispatcher.dispatch(message, "t", TEST_USER)
    assert result.status_code == 200
    assert result.body["id"] == 1
    assert result.body["error"]["code"] == code


@pytest.mark.asyncio
async def test_tool_failure_message(dispatcher):
    result = await dispatcher.dispatch(_call("tools/call", {"name": "broken"}), "t", TEST_USER)
    assert "Main application API is unreachable" in result.body["error"]["message"]


@pytest.mark.asyncio
async def test_stateful_tool_calls_keep_context(dispatcher, session_manager):
    await session_manager.get_or_create("token-a", TEST_USER)
    call = _call("tools/call", {"name": "wizard", "arguments": {"step": "start"}})

    assert _tool_text(await dispatcher.dispatch(call, "token-a", TEST_USER)) == "start:1"
    assert _tool_text(await dispatcher.dispatch(call, "token-a", TEST_USER)) == "start:2"

    session = await session_manager.get("token-a")
    assert session.context == {"count": 2}
    assert session.event_sequence == 2


@pytest.mark.asyncio
async def test_nested_context_changes_are_saved(dispatcher, session_manager):
    await session_manager.get_or_create("token-a", TEST_USER)
    call = _call("tools/call", {"name": "flow"})

    steps = [_tool_text(await dispatcher.dispatch(call, "token-a", TEST_USER)) for _ in range(3)]
    assert steps == ["1", "2", "3"]
    assert (await session_manager.get("token-a")).context == {"flow": {"step": 3}}


@pytest.mark.asyncio
async def test_keys_removed_by_a_tool_are_dropped(dispatcher, session_manager):
    await session_manager.get_or_create("token-a", TEST_USER)
    await dispatcher.dispatch(_call("tools/call", {"name": "flow"}), "token-a", TEST_USER)
    await dispatcher.dispatch(_call("tools/call", {"name": "wizard", "arguments": {"step": "start"}}), "token-a", TEST_USER)

    assert _tool_text(await dispatcher.dispatch(_call("tools/call", {"name": "finish"}), "token-a", TEST_USER)) == "done"
    assert (await session_manager.get("token-a")).context == {"count": 1}


@pytest.mark.asyncio
async def test_stateless_tool_calls_start_fresh(dispatcher, session_manager):
    call = _call("tools/call", {"name": "wizard", "arguments": {"step": "start"}})

    assert _tool_text(await dispatcher.dispatch(call, "token-a", TEST_USER)) == "start:1"
    assert _tool_text(await dispatcher.dispatch(call, "token-a", TEST_USER)) == "start:1"
    assert await session_manager.sessions_for_user("u1") == []


@pytest.mark.asyncio
async def test_resolution_by_session_id_header(dispatcher, session_manager):
    session = await session_manager.get_or_create("token-a", TEST_USER)
    call = _call("tools/call", {"name": "wizard", "arguments": {"step": "next"}})

    # A different token for the same user reaches the session named in the header
    result = await dispatcher.dispatch(call, "token-b", TEST_USER, session_id=session.connection_id)
    assert result.session_id == session.connection_id
    assert (await session_manager.get("token-a")).context == {"count": 1}


@pytest.mark.asyncio
async def test_resolution_falls_back_to_users_latest_session(dispatcher, session_manager):
    session = await session_manager.get_or_create("token-a", TEST_USER)

    ctx = await dispatcher.resolve_context("token-b", TEST_USER, session_id="conn_stale")
    assert ctx.resolved_via == "user"
    assert ctx.connection_id == session.connection_id

    ctx = await dispatcher.resolve_context("token-a", TEST_USER)
    assert ctx.resolved_via == "token"


@pytest.mark.asyncio
async def test_unknown_session_id_for_new_user_is_stateless(dispatcher):
    ctx = await dispatcher.resolve_context("token-z", TEST_USER, session_id="conn_unknown")
    assert not ctx.is_stateful
    assert ctx.resolved_via == "stateless"
