# shipbuilder_mcp/dependencies.py
import logging
from typing import Annotated, Any, List, Optional

import httpx
import redis.asyncio as aioredis
from fastapi import Depends, Header, Request

from .external_services import ShipbuilderApiClient
from .mcp_auth import AbstractUserDirectory, HttpUserDirectory, McpTokenManager, TokenClaims
from .mcp_handlers.dispatcher import McpDispatcher
from .mcp_handlers.tool_registry import ToolRegistry
from .oauth.client_registry import ClientRegistry
from .oauth.code_store import AuthorizationCodeStore, create_auth_code_store
from .oauth.errors import InvalidTokenError, ServerError
from .oauth.pending_auth import PendingAuthorizationStore, create_pending_auth_store
from .oauth.provider import McpOAuthProvider
from .sessions import McpSessionManager, create_session_store
from .sessions.session_manager import janitor_interval_for
from .settings import Settings
from .storage import build_redis_client
from .tool_modules import register_project_tools
from .utils import Clock, system_clock

logger = logging.getLogger(__name__)


class ServiceContainer:
    """
    Every long-lived service the routes use, built once per application.
    startup() brings them up in dependency order and shutdown() reverses it.
    """

    def __init__(
        self,
        settings: Settings,
        token_manager: McpTokenManager,
        code_store: AuthorizationCodeStore,
        pending_store: PendingAuthorizationStore,
        user_directory: AbstractUserDirectory,
        session_manager: McpSessionManager,
        tool_registry: ToolRegistry,
        dispatcher: McpDispatcher,
        client_registry: ClientRegistry,
        oauth_provider: McpOAuthProvider,
        api_client: ShipbuilderApiClient,
        redis_client: Optional[aioredis.Redis] = None,
    ):
        self.settings = settings
        self.token_manager = token_manager
        self.code_store = code_store
        self.pending_store = pending_store
        self.user_directory = user_directory
        self.session_manager = session_manager
        self.tool_registry = tool_registry
        self.dispatcher = dispatcher
        self.client_registry = client_registry
        self.oauth_provider = oauth_provider
        self.api_client = api_client
        self.redis_client = redis_client
        self._started: List[Any] = []

    async def startup(self) -> None:
        steps = [
            (self.user_directory, self.user_directory.initialize),
            (self.api_client, self.api_client.initialize),
            (self.code_store, self.code_store.start),
            (self.pending_store, self.pending_store.initialize),
            (self.session_manager, self.session_manager.start),
        ]
        for component, start in steps:
            await start()
            self._started.append(component)
            logger.info(f"{type(component).__name__} started.")

    async def shutdown(self) -> None:
        for component in reversed(self._started):
            try:
                await component.shutdown()
            except Exception as e:
                logger.error(f"Shutdown error in {type(component).__name__}: {e}", exc_info=True)
        self._started.clear()
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
        logger.info("All services shut down.")


def build_service_container(
    settings: Settings,
    clock: Clock = system_clock,
    redis_client: Optional[aioredis.Redis] = None,
    user_directory: Optional[AbstractUserDirectory] = None,
    api_http_client: Optional[httpx.AsyncClient] = None,
) -> ServiceContainer:
    """
    Wires the services for the configured backends. Backend choice is read
    from settings here and nowhere else.

    Args:
        redis_client: Shared client for every Redis backend. Built from
            settings when a backend needs Redis and none is given; only a
            client built here is closed on shutdown.
        user_directory: Overrides the HTTP directory backed by the main API
        api_http_client: httpx client for the main application's REST API
    """
    session_backend = settings.storage_backend
    pending_backend = settings.effective_pending_auth_backend
    code_backend = settings.effective_auth_code_backend

    owned_redis: Optional[aioredis.Redis] = None
    if redis_client is None and "redis" in (session_backend, pending_backend, code_backend):
        redis_client = owned_redis = build_redis_client(settings)

    token_manager = McpTokenManager(
        secret=settings.jwt_secret,
        issuer=settings.jwt_issuer,
        mcp_token_ttl_seconds=settings.mcp_token_ttl_seconds,
        api_token_ttl_seconds=settings.api_token_ttl_seconds,
        clock=clock,
    )
    code_store = create_auth_code_store(code_backend, settings, redis_client=redis_client, clock=clock)
    pending_store = create_pending_auth_store(pending_backend, settings, redis_client=redis_client, clock=clock)
    session_manager = McpSessionManager(
        store=create_session_store(session_backend, settings, redis_client=redis_client, clock=clock),
        secret=settings.effective_session_secret,
        session_ttl_seconds=settings.session_ttl_seconds,
        heartbeat_seconds=settings.session_heartbeat_seconds,
        janitor_interval_seconds=janitor_interval_for(
            session_backend,
            settings.memory_janitor_interval_seconds,
            settings.redis_janitor_interval_seconds,
        ),
        clock=clock,
    )
    if user_directory is None:
        user_directory = HttpUserDirectory(settings.api_base_url, settings.service_token)

    api_client = ShipbuilderApiClient(settings.api_base_url, token_manager, client=api_http_client)
    tool_registry = ToolRegistry()
    register_project_tools(tool_registry, api_client)

    return ServiceContainer(
        settings=settings,
        token_manager=token_manager,
        code_store=code_store,
        pending_store=pending_store,
        user_directory=user_directory,
        session_manager=session_manager,
        tool_registry=tool_registry,
        dispatcher=McpDispatcher(session_manager, tool_registry),
        client_registry=ClientRegistry(clock=clock),
        oauth_provider=McpOAuthProvider(
            code_store=code_store,
            pending_store=pending_store,
            token_manager=token_manager,
            user_directory=user_directory,
            frontend_base_url=settings.frontend_base_url,
        ),
        api_client=api_client,
        redis_client=owned_redis,
    )


# --- FastAPI dependencies ---

def get_services(request: Request) -> ServiceContainer:
    services: Optional[ServiceContainer] = getattr(request.app.state, "services", None)
    if services is None:
        logger.error("CRITICAL: ServiceContainer not initialized on app.state.")
        raise ServerError("Service container unavailable.")
    return services


Services = Annotated[ServiceContainer, Depends(get_services)]


def get_oauth_provider(services: Services) -> McpOAuthProvider:
    return services.oauth_provider


def get_client_registry(services: Services) -> ClientRegistry:
    return services.client_registry


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_optional_bearer_token(
    authorization: Annotated[Optional[str], Header()] = None,
) -> Optional[str]:
    return extract_bearer_token(authorization)


async def require_bearer_token(
    authorization: Annotated[Optional[str], Header()] = None,
) -> str:
    token = extract_bearer_token(authorization)
    if token is None:
        logger.warning("MCP request without a usable Authorization header.")
        raise InvalidTokenError("Authorization header is required for MCP access")
    return token


async def get_token_claims(
    services: Services,
    token: Annotated[str, Depends(require_bearer_token)],
) -> TokenClaims:
    """Verifies the bearer as an MCP access token."""
    return services.token_manager.verify_mcp_token(token)
