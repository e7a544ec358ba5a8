# shipbuilder_mcp/sessions/__init__.py
"""
Session management for MCP connections: data model, storage backends and
the manager that ties them to bearer tokens.
"""

from .session_data import McpSession, RequestMeta
from .session_store import (
    AbstractSessionStore,
    InMemorySessionStore,
    RedisSessionStore,
    create_session_store,
)
from .session_manager import McpSessionManager

__all__ = [
    "McpSession",
    "RequestMeta",
    "AbstractSessionStore",
    "InMemorySessionStore",
    "RedisSessionStore",
    "create_session_store",
    "McpSessionManager",
]
