# shipbuilder_mcp/mcp_auth/user_directory.py
import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional

import httpx

from .models import UserInfo

logger = logging.getLogger(__name__)


class AbstractUserDirectory(ABC):
    """Resolves user ids bound to authorization codes into full identities."""

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserInfo]:
        pass

    async def initialize(self) -> None:
        pass

    async def shutdown(self) -> None:
        pass


class InMemoryUserDirectory(AbstractUserDirectory):
    def __init__(self, users: Iterable[UserInfo] = ()):
        self._users: Dict[str, UserInfo] = {user.user_id: user for user in users}

    def add(self, user: UserInfo) -> None:
        self._users[user.user_id] = user

    async def get_user(self, user_id: str) -> Optional[UserInfo]:
        return self._users.get(user_id)


class HttpUserDirectory(AbstractUserDirectory):
    """
    Looks users up through the main application's service-to-service
    endpoint, GET /api/auth/service/user/{id}, authenticated with the shared
    X-Service-Token header.
    """

    def __init__(
        self,
        api_base_url: str,
        service_token: Optional[str],
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.api_base_url = api_base_url.rstrip("/")
        self._service_token = service_token
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    async def initialize(self) -> None:
        if not self._service_token:
            logger.warning("HttpUserDirectory: SERVICE_TOKEN is not configured; user lookups will be rejected.")
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.api_base_url, timeout=self._timeout)

    async def shutdown(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def get_user(self, user_id: str) -> Optional[UserInfo]:
        if self._client is None:
            raise RuntimeError("HttpUserDirectory not initialized. Call initialize() first.")

        url = f"{self.api_base_url}/api/auth/service/user/{user_id}"
        logger.info(f"Service-to-service user lookup for '{user_id}'.")
        response = await self._client.get(
            url,
            headers={"X-Service-Token": self._service_token or "", "Content-Type": "application/json"},
        )

        if response.status_code == 401:
            logger.error(
                "SERVICE TOKEN MISMATCH: SERVICE_TOKEN must be set to the same value "
                "in both the main application and the MCP service."
            )
            return None
        if response.is_error:
            logger.warning(f"User '{user_id}' not found via API (status {response.status_code}).")
            return None

        user = response.json().get("user") or {}
        if not user.get("id"):
            logger.warning(f"User lookup for '{user_id}' returned no user object.")
            return None
        email = user.get("email") or ""
        return UserInfo(user_id=str(user["id"]), email=email, name=user.get("name") or email)
