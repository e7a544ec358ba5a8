# shipbuilder_mcp/mcp_auth/token_manager.py
import logging
from typing import Any, Dict, Optional

import jwt

from ..oauth.errors import ExpiredTokenError, InvalidTokenError, WrongTokenTypeError
from ..oauth.models import DEFAULT_SCOPE
from ..utils import Clock, system_clock
from .models import TokenClaims, UserInfo

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
MCP_TOKEN_TYPE = "mcp"
MCP_TOKEN_LIFETIME_SECONDS = 30 * 24 * 60 * 60  # 30 days
API_TOKEN_LIFETIME_SECONDS = 60 * 60
API_TOKEN_AUDIENCE = "project-management-app"
API_TOKEN_ISSUER = "auth-service"


class McpTokenManager:
    """
    Mints and verifies HS256 bearer tokens.

    MCP tokens carry type "mcp"; verify_mcp_token() rejects any other type
    even when the signature is good. verify_any_token() accepts the main
    application's session tokens and is used for consent and direct exchange.
    """

    def __init__(
        self,
        secret: str,
        issuer: str,
        mcp_token_ttl_seconds: int = MCP_TOKEN_LIFETIME_SECONDS,
        api_token_ttl_seconds: int = API_TOKEN_LIFETIME_SECONDS,
        clock: Clock = system_clock,
    ):
        if not secret:
            raise ValueError("McpTokenManager requires a non-empty signing secret.")
        self._secret = secret
        self.issuer = issuer
        self.mcp_token_ttl_seconds = mcp_token_ttl_seconds
        self.api_token_ttl_seconds = api_token_ttl_seconds
        self._clock = clock

    def issue_mcp_token(self, user: UserInfo, client_id: Optional[str] = None) -> str:
        now = int(self._clock())
        payload: Dict[str, Any] = {
            "sub": user.user_id,
            "userId": user.user_id,
            "email": user.email,
            "name": user.name,
            "type": MCP_TOKEN_TYPE,
            "scope": DEFAULT_SCOPE,
            "iss": self.issuer,
            "iat": now,
            "exp": now + self.mcp_token_ttl_seconds,
        }
        if client_id:
            payload["aud"] = client_id
        logger.info(f"Issuing MCP token for user '{user.user_id}' (audience: {client_id or 'none'}).")
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)

    def issue_api_token(self, user: UserInfo) -> str:
        """Short-lived token accepted by the main application's REST API."""
        now = int(self._clock())
        payload = {
            "userId": user.user_id,
            "email": user.email,
            "name": user.name,
            "provider": "mcp-service",
            "aud": API_TOKEN_AUDIENCE,
            "iss": API_TOKEN_ISSUER,
            "iat": now,
            "exp": now + self.api_token_ttl_seconds,
        }
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)

    def _decode(self, token: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            return jwt.decode(token, self._secret, algorithms=[JWT_ALGORITHM], **kwargs)
        except jwt.ExpiredSignatureError:
            logger.info("Bearer token rejected: expired.")
            raise ExpiredTokenError()
        except jwt.InvalidTokenError as e:
            logger.warning(f"Bearer token rejected: {e}")
            raise InvalidTokenError()

    def verify_mcp_token(self, token: str, audience: Optional[str] = None) -> TokenClaims:
        claims = self._decode(
            token,
            audience=audience,
            issuer=self.issuer,
            options={"verify_aud": audience is not None, "require": ["exp", "iat", "iss"]},
        )
        if claims.get("type") != MCP_TOKEN_TYPE:
            logger.warning(f"Bearer token rejected: type '{claims.get('type')}' is not '{MCP_TOKEN_TYPE}'.")
            raise WrongTokenTypeError()

        user_id = claims.get("userId") or claims.get("sub")
        if not user_id:
            raise InvalidTokenError(error_description="The access token has no subject.")
        email = claims.get("email") or ""
        return TokenClaims(
            user_id=str(user_id),
            email=email,
            name=claims.get("name") or email,
            token_type=claims["type"],
            scope=claims.get("scope", ""),
            audience=claims.get("aud"),
            issuer=claims.get("iss"),
            issued_at=int(claims["iat"]),
            expires_at=int(claims["exp"]),
        )

    def verify_any_token(self, token: str) -> UserInfo:
        """Verifies a token of any type (main application, MCP or service)."""
        claims = self._decode(token, options={"verify_aud": False})
        user_id = claims.get("userId") or claims.get("sub")
        if not user_id:
            raise InvalidTokenError(error_description="The token has no subject.")
        email = claims.get("email") or ""
        return UserInfo(user_id=str(user_id), email=email, name=claims.get("name") or email)
