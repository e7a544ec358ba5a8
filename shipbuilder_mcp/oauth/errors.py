# shipbuilder_mcp/oauth/errors.py
from fastapi import HTTPException, status
from typing import Dict, Optional


class OAuthError(HTTPException):
    """Base class for OAuth 2.1 errors that properly formats error responses."""

    def __init__(
        self,
        status_code: int,
        error: str,
        error_description: str | None = None,
        error_uri: str | None = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.error = error
        self.error_description = error_description
        self.error_uri = error_uri

        detail = {"error": error}
        if error_description:
            detail["error_description"] = error_description
        if error_uri:
            detail["error_uri"] = error_uri

        super().__init__(
            status_code=status_code,
            detail=detail,
            headers=headers or {"WWW-Authenticate": "Bearer"},
        )

    def to_dict(self) -> Dict[str, str]:
        return dict(self.detail)  # type: ignore[arg-type]


class InvalidRequestError(OAuthError):
    """
    The request is missing a required parameter, includes an
    unsupported parameter value (other than grant type),
    repeats a parameter, or is otherwise malformed.
    (RFC 6749 - Section 5.2)
    """

    def __init__(self, error_description: str | None = None, error_uri: str | None = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="invalid_request",
            error_description=error_description,
            error_uri=error_uri
        )


class InvalidGrantError(OAuthError):
    """
    The provided authorization grant is invalid, expired, revoked,
    does not match the redirection URI used in the authorization
    request, or was issued to another client.
    (RFC 6749 - Section 5.2)
    """

    def __init__(
        self,
        error_description: str | None = "Invalid or expired authorization code.",
        error_uri: str | None = None
    ):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="invalid_grant",
            error_description=error_description,
            error_uri=error_uri
        )


class UnsupportedGrantTypeError(OAuthError):
    """
    The authorization grant type is not supported by the
    authorization server.
    (RFC 6749 - Section 5.2)
    """

    def __init__(self, error_description: str | None = None, error_uri: str | None = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="unsupported_grant_type",
            error_description=error_description,
            error_uri=error_uri
        )


class UnsupportedResponseTypeError(OAuthError):
    """
    The authorization server does not support obtaining an
    authorization code using this method.
    (RFC 6749 - Section 4.1.2.1)
    """

    def __init__(self, error_description: str | None = "Only response_type=code is supported."):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="unsupported_response_type",
            error_description=error_description,
        )


class InvalidRedirectUriError(OAuthError):
    """
    The value of one or more redirection URIs is invalid.
    (RFC 7591 - Section 3.2.2)
    """

    def __init__(self, error_description: str | None = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="invalid_redirect_uri",
            error_description=error_description,
        )


class NotFoundError(OAuthError):
    """Lookup of a staged authorization or code found nothing live."""

    def __init__(self, error_description: str | None = "Resource not found or expired."):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            error="not_found",
            error_description=error_description,
        )


def _bearer_challenge(realm: str, error: str, error_description: str | None) -> Dict[str, str]:
    header = f'Bearer realm="{realm}", error="{error}"'
    if error_description:
        header += f', error_description="{error_description}"'
    return {"WWW-Authenticate": header}


class InvalidTokenError(OAuthError):
    """
    The access token provided is revoked, malformed, or invalid for
    other reasons. The resource SHOULD respond with the HTTP 401
    (Unauthorized) status code.
    (RFC 6750 - Section 3.1)
    """

    def __init__(
        self,
        error_description: str | None = "The access token is invalid.",
        realm: str | None = None
    ):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            error="invalid_token",
            error_description=error_description,
            headers=_bearer_challenge(realm or "shipbuilder_mcp", "invalid_token", error_description),
        )


class WrongTokenTypeError(InvalidTokenError):
    """A validly signed token whose type marker is not the MCP marker."""

    def __init__(self, error_description: str | None = "Wrong token type.", realm: str | None = None):
        super().__init__(error_description=error_description, realm=realm)


class ExpiredTokenError(OAuthError):
    """
    The access token's lifetime has elapsed. Reported separately from
    invalid_token so clients know to re-authorize instead of giving up.
    """

    def __init__(
        self,
        error_description: str | None = "The access token has expired.",
        realm: str | None = None
    ):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            error="expired_token",
            error_description=error_description,
            headers=_bearer_challenge(realm or "shipbuilder_mcp", "invalid_token", error_description),
        )


class ServerError(OAuthError):
    """
    The authorization server encountered an unexpected
    condition that prevented it from fulfilling the request.
    (RFC 6749 - Section 4.1.2.1)
    """

    def __init__(
        self,
        error_description: str | None = "The authorization server encountered an internal error.",
        error_uri: str | None = None
    ):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error="server_error",
            error_description=error_description,
            error_uri=error_uri
        )
