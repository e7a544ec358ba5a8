# shipbuilder_mcp/mcp_auth/models.py
from typing import Optional

from pydantic import BaseModel, Field


class UserInfo(BaseModel):
    """Identity of a Shipbuilder user as seen by the MCP service."""
    user_id: str
    email: str
    name: str


class TokenClaims(BaseModel):
    """Verified claims of an MCP bearer token."""
    user_id: str = Field(description="Token subject.")
    email: str
    name: str
    token_type: str
    scope: str
    audience: Optional[str] = Field(default=None, description="Client id the token was issued to.")
    issuer: Optional[str] = None
    issued_at: int
    expires_at: int

    def to_user_info(self) -> UserInfo:
        return UserInfo(user_id=self.user_id, email=self.email, name=self.name)
