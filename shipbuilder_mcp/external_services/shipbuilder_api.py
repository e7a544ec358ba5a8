# shipbuilder_mcp/external_services/shipbuilder_api.py
import logging
from typing import Any, Dict, List, Optional

import httpx

from ..mcp_auth.models import UserInfo
from ..mcp_auth.token_manager import McpTokenManager
from ..mcp_handlers.tool_registry import ToolError

logger = logging.getLogger(__name__)


class ShipbuilderApiClient:
    """
    Thin client for the main application's REST API. Each call carries a
    short-lived API token minted for the user the tool runs on behalf of.
    """

    def __init__(
        self,
        api_base_url: str,
        token_manager: McpTokenManager,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.api_base_url = api_base_url.rstrip("/")
        self.token_manager = token_manager
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    async def initialize(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.api_base_url, timeout=self._timeout)

    async def shutdown(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _headers(self, user: UserInfo) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token_manager.issue_api_token(user)}",
            "Content-Type": "application/json",
        }

    async def _get(self, path: str, user: UserInfo) -> httpx.Response:
        if self._client is None:
            raise RuntimeError("ShipbuilderApiClient not initialized. Call initialize() first.")
        try:
            return await self._client.get(f"{self.api_base_url}{path}", headers=self._headers(user))
        except httpx.HTTPError as e:
            logger.error(f"Request to main API {path} failed for user '{user.user_id}': {e}")
            raise ToolError("Main application API is unreachable") from e

    async def list_projects(self, user: UserInfo) -> List[Dict[str, Any]]:
        response = await self._get("/api/projects", user)
        if response.is_error:
            logger.error(f"Failed to get projects for user '{user.user_id}': HTTP {response.status_code}")
            raise ToolError("Failed to retrieve projects")
        return response.json()

    async def get_project(self, user: UserInfo, project_id: str) -> Optional[Dict[str, Any]]:
        response = await self._get(f"/api/projects/{project_id}", user)
        if response.status_code == 404:
            return None
        if response.is_error:
            logger.error(f"Failed to get project '{project_id}': HTTP {response.status_code}")
            raise ToolError("Failed to retrieve project")
        return response.json()
