# shipbuilder_mcp/oauth/client_registry.py
import logging
import re
import secrets
import string
from typing import Dict, Optional
from urllib.parse import urlsplit

from ..utils import Clock, system_clock
from .errors import InvalidRedirectUriError, InvalidRequestError
from .models import DEFAULT_SCOPE, ClientRegistrationRequest, RegisteredClient
from .pkce import PkceMethod

logger = logging.getLogger(__name__)

ALLOWED_GRANT_TYPES = {"authorization_code", "refresh_token"}
_LOCALHOST_PATTERN = re.compile(r"^(localhost|127\.0\.0\.1|\[::1\]|::1)$")
_ID_ALPHABET = string.ascii_lowercase + string.digits


def _random_suffix(length: int) -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def validate_redirect_uri(uri: str) -> None:
    """
    OAuth 2.1 redirect URI rules: https, except for loopback hosts and custom
    app schemes. Fragments are never allowed.
    """
    try:
        parsed = urlsplit(uri)
        hostname = parsed.hostname or ""
    except ValueError:
        raise InvalidRedirectUriError(f"Invalid redirect URI format: {uri}")
    if not parsed.scheme:
        raise InvalidRedirectUriError(f"Invalid redirect URI format: {uri}")

    is_custom_scheme = parsed.scheme not in ("http", "https")
    is_localhost = bool(_LOCALHOST_PATTERN.match(hostname))
    if parsed.scheme != "https" and not is_localhost and not is_custom_scheme:
        raise InvalidRedirectUriError(
            "OAuth 2.1 requires HTTPS for redirect URIs "
            f"(except localhost and custom app schemes): {uri}"
        )
    if parsed.fragment or uri.endswith("#"):
        raise InvalidRedirectUriError(f"OAuth 2.1 prohibits fragments in redirect URIs: {uri}")


class ClientRegistry:
    """Dynamic client registrations (RFC 7591), held for the life of the process."""

    def __init__(self, clock: Clock = system_clock):
        self._clients: Dict[str, RegisteredClient] = {}
        self._clock = clock

    async def register(self, request: ClientRegistrationRequest) -> RegisteredClient:
        if not request.client_name:
            raise InvalidRequestError("client_name is required")
        if not request.redirect_uris:
            raise InvalidRequestError("redirect_uris must be a non-empty array")
        if any(grant not in ALLOWED_GRANT_TYPES for grant in request.grant_types):
            raise InvalidRequestError(
                "Only authorization_code and refresh_token grant types are supported (OAuth 2.1 requirement)"
            )
        for uri in request.redirect_uris:
            validate_redirect_uri(uri)

        now = int(self._clock())
        is_public = request.token_endpoint_auth_method == "none"
        client = RegisteredClient(
            client_id=f"mcp_{now * 1000}_{_random_suffix(9)}",
            client_secret=None if is_public else f"secret_{now * 1000}_{secrets.token_urlsafe(16)}",
            client_name=request.client_name,
            redirect_uris=list(request.redirect_uris),
            grant_types=list(request.grant_types),
            token_endpoint_auth_method="none" if is_public else "client_secret_basic",
            scope=request.scope or DEFAULT_SCOPE,
            client_id_issued_at=now,
            code_challenge_methods_supported=[PkceMethod.S256.value] if is_public else None,
        )
        self._clients[client.client_id] = client
        logger.info(
            f"Registered OAuth client '{client.client_name}' as '{client.client_id}' "
            f"(public: {client.is_public}, redirect_uris: {client.redirect_uris})."
        )
        return client

    async def get_client(self, client_id: str) -> Optional[RegisteredClient]:
        return self._clients.get(client_id)
