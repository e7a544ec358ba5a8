# shipbuilder_mcp/mcp_auth/__init__.py
from .models import TokenClaims, UserInfo
from .token_manager import MCP_TOKEN_TYPE, McpTokenManager
from .user_directory import AbstractUserDirectory, HttpUserDirectory, InMemoryUserDirectory

__all__ = [
    "TokenClaims",
    "UserInfo",
    "MCP_TOKEN_TYPE",
    "McpTokenManager",
    "AbstractUserDirectory",
    "HttpUserDirectory",
    "InMemoryUserDirectory",
]
