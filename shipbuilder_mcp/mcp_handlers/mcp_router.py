# shipbuilder_mcp/mcp_handlers/mcp_router.py
import asyncio
import json
import logging
import secrets
from typing import Annotated, Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from redis.exceptions import RedisError

from ..dependencies import Services, get_token_claims, require_bearer_token
from ..mcp_auth import TokenClaims
from ..oauth.errors import ServerError
from ..sessions import McpSession, McpSessionManager, RequestMeta
from ..sessions.session_data import default_server_capabilities
from .dispatcher import INVALID_REQUEST, MCP_PROTOCOL_VERSION, SERVER_INFO, JsonRpcError, error_envelope

logger = logging.getLogger(__name__)
router = APIRouter()

SESSION_ID_HEADER = "Mcp-Session-Id"


def format_sse(event: str, data: str, event_id: Optional[int] = None) -> str:
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event}")
    lines.extend(f"data: {line}" for line in data.splitlines() or [""])
    return "\n".join(lines) + "\n\n"


async def session_event_stream(
    session_manager: McpSessionManager,
    token: str,
    session: McpSession,
    endpoint_url: str,
    keepalive_seconds: float,
    is_disconnected: Callable[[], Awaitable[bool]],
) -> AsyncIterator[str]:
    """
    Server-sent events for one stateful connection: an endpoint event, then
    numbered keep-alive pings until the client goes away. The stream is
    registered on the session for as long as it is open.
    """
    stream_id = f"stream_{secrets.token_hex(8)}"
    await session_manager.add_active_stream(token, stream_id)
    logger.info(f"Stream {stream_id} opened on connection {session.connection_id}.")
    try:
        sequence = await session_manager.next_event_sequence(token)
        yield format_sse("endpoint", endpoint_url, event_id=sequence)
        while not await is_disconnected():
            await asyncio.sleep(keepalive_seconds)
            if await is_disconnected():
                break
            sequence = await session_manager.next_event_sequence(token)
            yield format_sse(
                "ping",
                json.dumps({"connectionId": session.connection_id, "sequence": sequence}),
                event_id=sequence,
            )
    finally:
        await session_manager.remove_active_stream(token, stream_id)
        logger.info(f"Stream {stream_id} closed on connection {session.connection_id}.")


def server_info(base_url: str) -> Dict[str, Any]:
    return {
        "name": SERVER_INFO["name"],
        "version": SERVER_INFO["version"],
        "description": "Read-only access to Shipbuilder projects and tasks over MCP",
        "protocol_version": MCP_PROTOCOL_VERSION,
        "capabilities": default_server_capabilities(),
        "server_info": dict(SERVER_INFO),
        "authentication": {
            "type": "oauth",
            "oauth_version": "2.1",
            "authorization_endpoint": f"{base_url}/api/auth/authorize",
            "token_endpoint": f"{base_url}/token",
            "registration_endpoint": f"{base_url}/register",
            "discovery_endpoint": f"{base_url}/.well-known/oauth-authorization-server",
            "pkce_required": True,
            "response_types_supported": ["code"],
        },
    }


def _wants_event_stream(request: Request) -> bool:
    return "text/event-stream" in request.headers.get("accept", "")


@router.post("/mcp", name="mcp_post")
@router.post("/", name="mcp_post_root", include_in_schema=False)
async def mcp_post(
    request: Request,
    services: Services,
    token: Annotated[str, Depends(require_bearer_token)],
    claims: Annotated[TokenClaims, Depends(get_token_claims)],
    mcp_session_id: Annotated[Optional[str], Header(alias=SESSION_ID_HEADER)] = None,
):
    """
    Handles one JSON-RPC message. This route never creates a session, not
    even for `initialize`: sessions are only opened by GET /mcp with an
    event-stream Accept header. A client that only POSTs is served
    statelessly unless it already has a session from such a stream.
    """
    try:
        message = await request.json()
    except json.JSONDecodeError:
        return JSONResponse(
            status_code=400, content=error_envelope(None, JsonRpcError(INVALID_REQUEST, "Parse error"))
        )

    try:
        result = await services.dispatcher.dispatch(
            message, token, claims.to_user_info(), session_id=mcp_session_id
        )
    except (RedisError, OSError) as e:
        logger.error(f"Session backend failure while dispatching for user '{claims.user_id}': {e}", exc_info=True)
        raise ServerError("Session storage is unavailable.")

    headers = {SESSION_ID_HEADER: result.session_id} if result.session_id else None
    if result.body is None:
        return Response(status_code=result.status_code, headers=headers)
    return JSONResponse(status_code=result.status_code, content=result.body, headers=headers)


@router.get("/mcp", name="mcp_get")
@router.get("/", name="mcp_root", include_in_schema=False)
async def mcp_get(request: Request, services: Services):
    """Server info for plain requests; the session event stream for event-stream clients."""
    base_url = services.settings.public_base_url.rstrip("/")
    if not _wants_event_stream(request):
        return server_info(base_url)

    token = await require_bearer_token(request.headers.get("authorization"))
    user = services.token_manager.verify_mcp_token(token).to_user_info()
    session_manager = services.session_manager
    try:
        session = await session_manager.get_or_create(token, user, RequestMeta(
            user_agent=request.headers.get("user-agent"),
            client_version=request.headers.get("mcp-protocol-version"),
        ))
    except (RedisError, OSError) as e:
        logger.error(f"Session backend failure opening stream for user '{user.user_id}': {e}", exc_info=True)
        raise ServerError("Session storage is unavailable.")

    return StreamingResponse(
        session_event_stream(
            session_manager,
            token,
            session,
            endpoint_url=f"{base_url}/mcp",
            keepalive_seconds=services.settings.sse_keepalive_seconds,
            is_disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            SESSION_ID_HEADER: session.connection_id,
        },
    )


@router.delete("/mcp", status_code=204, name="mcp_delete")
async def mcp_delete(
    services: Services,
    token: Annotated[str, Depends(require_bearer_token)],
    claims: Annotated[TokenClaims, Depends(get_token_claims)],
):
    try:
        await services.session_manager.remove(token)
    except (RedisError, OSError) as e:
        logger.error(f"Session backend failure removing session for user '{claims.user_id}': {e}", exc_info=True)
        raise ServerError("Session storage is unavailable.")
    logger.info(f"Session closed by user '{claims.user_id}'.")
    return Response(status_code=204)


@router.get("/sessions/stats", name="session_stats")
async def session_stats(
    services: Services,
    claims: Annotated[TokenClaims, Depends(get_token_claims)],
) -> Dict[str, Any]:
    session_manager = services.session_manager
    try:
        return {
            "global": await session_manager.stats(),
            "user": await session_manager.stats_for_user(claims.user_id),
        }
    except (RedisError, OSError) as e:
        logger.error(f"Session backend failure reading stats: {e}", exc_info=True)
        raise ServerError("Session storage is unavailable.")
