# shipbuilder_mcp/settings.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

# settings.py lives at <project>/shipbuilder_mcp/settings.py
PROJECT_ROOT = Path(__file__).parent.parent.resolve()
DOTENV_PATH = PROJECT_ROOT / ".env"

if DOTENV_PATH.exists():
    logger.info(f"SETTINGS.PY: .env file FOUND at explicit path: {DOTENV_PATH}")
else:
    logger.debug(
        f"SETTINGS.PY: .env file NOT FOUND at explicit path: {DOTENV_PATH}. "
        "Will rely on OS env vars or defaults."
    )


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    app_name: str = "Shipbuilder MCP Service"
    debug_mode: bool = False
    log_level: str = "INFO"

    # Public addresses used to build redirects and discovery metadata
    public_base_url: str = "http://localhost:3002"
    frontend_base_url: str = "http://localhost:5173"
    api_base_url: str = "http://localhost:3001"

    # Shared with the main application for service-to-service calls
    service_token: Optional[str] = Field(
        default=None,
        description="Token sent as X-Service-Token when resolving users through the main API."
    )

    # Token signing
    jwt_secret: str = Field(
        default="change-me-in-production",
        description="Symmetric key used to sign and verify HS256 bearer tokens."
    )
    jwt_issuer: str = "shipbuilder-mcp"
    session_secret: Optional[str] = Field(
        default=None,
        description="Key for deriving session keys from bearer tokens. Defaults to jwt_secret."
    )

    # Backend selection: "memory" or "redis"
    storage_backend: str = "memory"
    pending_auth_backend: Optional[str] = None
    auth_code_backend: Optional[str] = None

    # Redis configuration
    redis_url: Optional[str] = None
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None
    redis_ssl: bool = False

    # Lifetimes, in seconds
    auth_code_ttl_seconds: int = 600
    auth_code_sweep_interval_seconds: int = 300
    pending_auth_ttl_seconds: int = 300
    session_ttl_seconds: int = 8 * 60 * 60
    session_heartbeat_seconds: int = 5 * 60
    memory_janitor_interval_seconds: int = 10 * 60
    redis_janitor_interval_seconds: int = 30 * 60
    mcp_token_ttl_seconds: int = 30 * 24 * 60 * 60
    api_token_ttl_seconds: int = 60 * 60
    sse_keepalive_seconds: float = 30.0

    model_config = SettingsConfigDict(
        env_file=DOTENV_PATH if DOTENV_PATH.exists() else None,
        extra="ignore",
        env_file_encoding='utf-8'
    )

    @property
    def effective_session_secret(self) -> str:
        return self.session_secret or self.jwt_secret

    @property
    def effective_pending_auth_backend(self) -> str:
        return self.pending_auth_backend or self.storage_backend

    @property
    def effective_auth_code_backend(self) -> str:
        return self.auth_code_backend or self.storage_backend


settings = Settings()

logger.debug(
    f"SETTINGS.PY: Post-Settings() settings.jwt_secret: "
    f"{'********' if settings.jwt_secret else 'None'}"
)
logger.debug(
    f"SETTINGS.PY: Post-Settings() settings.storage_backend: '{settings.storage_backend}'"
)
logger.debug(
    f"SETTINGS.PY: Post-Settings() settings.service_token: "
    f"{'********' if settings.service_token else 'None'}"
)
