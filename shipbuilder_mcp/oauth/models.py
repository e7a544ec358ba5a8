# shipbuilder_mcp/oauth/models.py
import enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .pkce import PkceMethod

MCP_OAUTH_SCOPES: List[str] = ["projects:read", "tasks:read"]
DEFAULT_SCOPE = " ".join(MCP_OAUTH_SCOPES)
JWT_BEARER_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:jwt-bearer"


class CodeStatus(str, enum.Enum):
    PENDING = "pending"
    USED = "used"


class AuthorizationCodeParams(BaseModel):
    """Parameters captured when an authorization code is issued."""
    client_id: str
    redirect_uri: str
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    scope: Optional[str] = None
    state: Optional[str] = None


class AuthorizationCodeEntry(BaseModel):
    """
    A short-lived authorization code. Transitions pending -> used once on
    consent approval and is deleted on redemption or expiry.
    """
    code: str
    client_id: str
    redirect_uri: str
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[PkceMethod] = None
    scope: Optional[str] = None
    state: Optional[str] = None
    created_at: float
    expires_at: float = Field(description="Epoch seconds after which the code is dead.")
    status: CodeStatus = CodeStatus.PENDING
    user_id: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class CodeRedemptionParams(BaseModel):
    code: str
    client_id: str
    redirect_uri: str
    code_verifier: Optional[str] = None


class CodeFailureReason(str, enum.Enum):
    UNKNOWN_CODE = "unknown_code"
    EXPIRED = "expired"
    NOT_APPROVED = "not_approved"
    CLIENT_MISMATCH = "client_mismatch"
    REDIRECT_URI_MISMATCH = "redirect_uri_mismatch"
    MISSING_VERIFIER = "missing_verifier"
    INVALID_VERIFIER = "invalid_verifier"


# Public descriptions. Client, redirect and PKCE failures share one message.
_REASON_DESCRIPTIONS: Dict[CodeFailureReason, str] = {
    CodeFailureReason.UNKNOWN_CODE: "Invalid or expired authorization code",
    CodeFailureReason.EXPIRED: "Authorization code expired",
    CodeFailureReason.NOT_APPROVED: "Authorization code not yet approved by user",
    CodeFailureReason.CLIENT_MISMATCH: "Authorization code is not valid for this request",
    CodeFailureReason.REDIRECT_URI_MISMATCH: "Authorization code is not valid for this request",
    CodeFailureReason.MISSING_VERIFIER: "Authorization code is not valid for this request",
    CodeFailureReason.INVALID_VERIFIER: "Authorization code is not valid for this request",
}


class CodeValidationResult(BaseModel):
    valid: bool
    user_id: Optional[str] = None
    client_id: Optional[str] = None
    scope: Optional[str] = None
    reason: Optional[CodeFailureReason] = Field(
        default=None, description="Internal failure reason, for logs only."
    )
    error: Optional[str] = None
    error_description: Optional[str] = None

    @classmethod
    def failure(cls, reason: CodeFailureReason) -> "CodeValidationResult":
        return cls(
            valid=False,
            reason=reason,
            error="invalid_grant",
            error_description=_REASON_DESCRIPTIONS[reason],
        )


class PendingAuthorizationParams(BaseModel):
    client_id: str
    redirect_uri: str
    scope: str = DEFAULT_SCOPE
    state: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None


class PendingAuthorization(PendingAuthorizationParams):
    """An authorization request parked while the user logs in and consents."""
    id: str
    created_at: float
    expires_at: float
    user_id: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def public_view(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"code_challenge"})


class TokenRequest(BaseModel):
    grant_type: Optional[str] = None
    code: Optional[str] = None
    redirect_uri: Optional[str] = None
    client_id: Optional[str] = None
    code_verifier: Optional[str] = None
    assertion: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    scope: str = DEFAULT_SCOPE


class ConsentRequest(BaseModel):
    auth_id: str
    action: Literal["approve", "deny"]
    main_app_token: str


class ConsentResponse(BaseModel):
    success: bool
    redirect_uri: str


class ClientRegistrationRequest(BaseModel):
    """Dynamic client registration request (RFC 7591 - Section 2)."""
    client_name: Optional[str] = None
    redirect_uris: Optional[List[str]] = None
    grant_types: List[str] = Field(default_factory=lambda: ["authorization_code"])
    response_types: List[str] = Field(default_factory=lambda: ["code"])
    scope: Optional[str] = None
    token_endpoint_auth_method: str = "none"


class RegisteredClient(BaseModel):
    client_id: str
    client_secret: Optional[str] = None
    client_name: str
    redirect_uris: List[str]
    grant_types: List[str]
    response_types: List[str] = Field(default_factory=lambda: ["code"])
    token_endpoint_auth_method: str
    scope: str = DEFAULT_SCOPE
    client_id_issued_at: int
    client_secret_expires_at: int = 0
    require_auth_time: bool = False
    require_pushed_authorization_requests: bool = False
    code_challenge_methods_supported: Optional[List[str]] = None

    @property
    def is_public(self) -> bool:
        return self.token_endpoint_auth_method == "none"


class AuthorizationServerMetadata(BaseModel):
    """RFC 8414 authorization server metadata."""
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: str
    response_types_supported: List[str] = Field(default_factory=lambda: ["code"])
    grant_types_supported: List[str] = Field(
        default_factory=lambda: ["authorization_code", JWT_BEARER_GRANT_TYPE]
    )
    code_challenge_methods_supported: List[str] = Field(
        default_factory=lambda: [m.value for m in PkceMethod]
    )
    require_pkce: bool = True
    scopes_supported: List[str] = Field(default_factory=lambda: list(MCP_OAUTH_SCOPES))
    token_endpoint_auth_methods_supported: List[str] = Field(
        default_factory=lambda: ["none", "client_secret_basic", "client_secret_post"]
    )
    authorization_response_iss_parameter_supported: bool = True
    request_parameter_supported: bool = False
    request_uri_parameter_supported: bool = False


class ProtectedResourceMetadata(BaseModel):
    """OAuth 2.0 protected resource metadata (RFC 9728)."""
    resource: str
    authorization_servers: List[str]
    bearer_methods_supported: List[str] = Field(default_factory=lambda: ["header"])
    scopes_supported: List[str] = Field(default_factory=lambda: list(MCP_OAUTH_SCOPES))
    resource_documentation: Optional[str] = None
    mcp_endpoint: str
