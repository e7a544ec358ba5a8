# shipbuilder_mcp/sessions/session_data.py
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional, Set


def default_server_capabilities() -> Dict[str, Any]:
    return {"tools": {"listChanged": False}, "resources": {}, "prompts": {}, "logging": {}}


class RequestMeta(BaseModel):
    """Transport details captured when a session is first created."""
    user_agent: Optional[str] = None
    client_version: Optional[str] = None


class McpSession(BaseModel):
    """
    Server-held protocol state for one authenticated connection.

    Stored under a key derived from the bearer token, never under the token
    itself. Timestamps are epoch seconds.
    """

    user_id: str = Field(description="Owner of the session.")
    email: str = ""
    name: str = ""
    connection_id: str = Field(description="Identifier handed to the client as Mcp-Session-Id.")

    created_at: float
    last_activity: float

    # Never decreases for the lifetime of the session
    event_sequence: int = 0

    client_capabilities: Dict[str, Any] = Field(default_factory=dict)
    server_capabilities: Dict[str, Any] = Field(default_factory=default_server_capabilities)

    # Scratch space for multi-step tool flows
    context: Dict[str, Any] = Field(default_factory=dict)

    active_streams: Set[str] = Field(default_factory=set)

    user_agent: Optional[str] = None
    client_version: Optional[str] = None

    class Config:
        validate_assignment = True

    def touch(self, now: float) -> None:
        self.last_activity = now
