# shipbuilder_mcp/main.py
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

load_dotenv()

from .dependencies import ServiceContainer, Services, build_service_container
from .mcp_handlers.mcp_router import router as mcp_router
from .oauth.endpoints import oauth_router
from .oauth.errors import OAuthError
from .settings import Settings, settings as default_settings
from .sessions import RedisSessionStore

# Configure logging based on debug mode setting
if not logging.getLogger().hasHandlers():
    logging.basicConfig(
        level="DEBUG" if default_settings.debug_mode else default_settings.log_level.upper(),
        format='%(asctime)s - %(name)s [%(levelname)s] - %(message)s'
    )

logger = logging.getLogger(__name__)


async def oauth_error_handler(request: Request, exc: OAuthError) -> JSONResponse:
    """Renders OAuth errors as a flat {error, error_description} body."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers)


def create_app(
    app_settings: Optional[Settings] = None,
    services: Optional[ServiceContainer] = None,
) -> FastAPI:
    """
    Builds the application. Services are wired from settings at startup
    unless a ready container is passed in.
    """
    app_settings = app_settings or default_settings

    @asynccontextmanager
    async def lifespan(app_instance: FastAPI):
        logger.info("Application startup initiated.")
        container = services or build_service_container(app_settings)
        app_instance.state.services = container
        try:
            await container.startup()
        except Exception as e:
            logger.error(f"Error during service startup: {e}", exc_info=True)
            await container.shutdown()
            raise
        logger.info(f"{app_settings.app_name} ready (storage backend: {app_settings.storage_backend}).")
        try:
            yield
        finally:
            logger.info("Application shutdown initiated.")
            await container.shutdown()
            app_instance.state.services = None

    app = FastAPI(
        title=app_settings.app_name,
        debug=app_settings.debug_mode,
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_exception_handler(OAuthError, oauth_error_handler)

    @app.get("/health")
    async def health_api(services: Services) -> Dict[str, Any]:
        """Health check that validates storage backend connectivity."""
        store_statuses: Dict[str, str] = {}
        all_healthy = True

        session_store = services.session_manager.store
        if isinstance(session_store, RedisSessionStore):
            try:
                redis_client = session_store._get_client()
                await redis_client.ping()
                store_statuses["session_store_redis"] = "healthy"
            except Exception as e:
                store_statuses["session_store_redis"] = f"unhealthy: {e}"
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "degraded",
            "service": app_settings.app_name,
            "storage_backend": app_settings.storage_backend,
            "pending_authorizations": await services.pending_store.stats(),
            "details": store_statuses,
        }

    app.include_router(oauth_router, tags=["OAuth 2.1"])
    app.include_router(mcp_router, tags=["MCP"])
    return app


app = create_app()
