# shipbuilder_mcp/oauth/__init__.py
from .errors import (
    OAuthError,
    InvalidRequestError,
    InvalidGrantError,
    UnsupportedGrantTypeError,
    UnsupportedResponseTypeError,
    InvalidRedirectUriError,
    NotFoundError,
    InvalidTokenError,
    WrongTokenTypeError,
    ExpiredTokenError,
    ServerError,
)
from .pkce import PkceMethod, verify_code_verifier

__all__ = [
    "OAuthError",
    "InvalidRequestError",
    "InvalidGrantError",
    "UnsupportedGrantTypeError",
    "UnsupportedResponseTypeError",
    "InvalidRedirectUriError",
    "NotFoundError",
    "InvalidTokenError",
    "WrongTokenTypeError",
    "ExpiredTokenError",
    "ServerError",
    "PkceMethod",
    "verify_code_verifier",
]
