# shipbuilder_mcp/oauth/endpoints.py
import json
import logging
from typing import Annotated, Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import ValidationError as PydanticValidationError

from ..dependencies import (
    Services,
    get_client_registry,
    get_oauth_provider,
    get_optional_bearer_token,
)
from .client_registry import ClientRegistry
from .errors import InvalidRequestError, OAuthError, ServerError
from .models import (
    AuthorizationServerMetadata,
    ClientRegistrationRequest,
    ConsentRequest,
    ConsentResponse,
    ProtectedResourceMetadata,
    TokenRequest,
    TokenResponse,
)
from .provider import McpOAuthProvider

logger = logging.getLogger(__name__)
oauth_router = APIRouter()

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _validation_message(exc: PydanticValidationError) -> str:
    return "; ".join(
        f"{err['loc'][-1] if err.get('loc') else 'param'}: {err['msg']}" for err in exc.errors()
    )


async def _read_body(request: Request) -> Dict[str, Any]:
    """Accepts either a JSON object or a urlencoded form."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except json.JSONDecodeError:
            raise InvalidRequestError("Request body is not valid JSON.")
        if not isinstance(body, dict):
            raise InvalidRequestError("Request body must be a JSON object.")
        return body
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


# --- Authorization ---

@oauth_router.get("/api/auth/authorize", name="oauth_authorize", response_class=RedirectResponse)
async def authorize(
    oauth_provider: Annotated[McpOAuthProvider, Depends(get_oauth_provider)],
    bearer_token: Annotated[Optional[str], Depends(get_optional_bearer_token)],
    response_type: Annotated[Optional[str], Query()] = None,
    client_id: Annotated[Optional[str], Query()] = None,
    redirect_uri: Annotated[Optional[str], Query()] = None,
    scope: Annotated[Optional[str], Query()] = None,
    state: Annotated[Optional[str], Query()] = None,
    code_challenge: Annotated[Optional[str], Query()] = None,
    code_challenge_method: Annotated[Optional[str], Query()] = None,
):
    """OAuth authorization endpoint. Hands the request to the frontend for login and consent."""
    logger.info(f"Authorization request from client '{client_id}' (redirect_uri: {redirect_uri}).")
    target = await oauth_provider.start_authorization(
        response_type=response_type,
        client_id=client_id,
        redirect_uri=redirect_uri,
        scope=scope,
        state=state,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        bearer_token=bearer_token,
    )
    return RedirectResponse(url=target, status_code=302)


@oauth_router.post("/api/auth/consent", response_model=ConsentResponse, name="oauth_consent")
async def consent(
    request: Request,
    oauth_provider: Annotated[McpOAuthProvider, Depends(get_oauth_provider)],
):
    body = await _read_body(request)
    if not body.get("auth_id") or not body.get("action"):
        raise InvalidRequestError("auth_id and action are required")
    if body["action"] not in ("approve", "deny"):
        raise InvalidRequestError('action must be "approve" or "deny"')
    if not body.get("main_app_token"):
        raise InvalidRequestError("main_app_token is required")
    try:
        consent_request = ConsentRequest.model_validate(body)
    except PydanticValidationError as e:
        raise InvalidRequestError(f"Invalid consent request: {_validation_message(e)}")

    logger.info(f"Consent '{consent_request.action}' received for pending authorization {consent_request.auth_id}.")
    try:
        return await oauth_provider.handle_consent(consent_request)
    except OAuthError:
        raise
    except Exception as e:
        logger.error(f"Unexpected error during consent: {e}", exc_info=True)
        raise ServerError("Failed to process consent")


@oauth_router.get("/api/auth/pending/{auth_id}", name="oauth_pending")
async def pending_details(
    auth_id: str,
    oauth_provider: Annotated[McpOAuthProvider, Depends(get_oauth_provider)],
) -> Dict[str, Any]:
    pending = await oauth_provider.get_pending(auth_id)
    logger.info(f"Retrieved pending authorization {auth_id} (has user: {bool(pending.user_id)}).")
    return pending.public_view()


@oauth_router.get("/api/auth/code/{code}", name="oauth_code_details")
async def code_details(
    code: str,
    oauth_provider: Annotated[McpOAuthProvider, Depends(get_oauth_provider)],
) -> Dict[str, Any]:
    """Non-consuming read of an authorization code for the consent screen."""
    entry = await oauth_provider.get_code_details(code)
    return {
        "client_id": entry.client_id,
        "redirect_uri": entry.redirect_uri,
        "scope": entry.scope,
        "status": entry.status.value,
        "expires_at": entry.expires_at,
    }


# --- Token ---

@oauth_router.post("/token", response_model=TokenResponse, name="oauth_token")
async def token(
    request: Request,
    oauth_provider: Annotated[McpOAuthProvider, Depends(get_oauth_provider)],
):
    """OAuth token endpoint. Accepts form-encoded or JSON bodies."""
    body = await _read_body(request)
    try:
        token_request = TokenRequest.model_validate(body)
    except PydanticValidationError as e:
        logger.warning(f"Token request parameter validation failed: {e.errors()}")
        raise InvalidRequestError(f"Invalid token request parameters: {_validation_message(e)}")

    logger.info(f"Token endpoint called. Grant type: '{token_request.grant_type}' Client ID: {token_request.client_id}")
    try:
        token_response = await oauth_provider.handle_token_request(token_request)
    except OAuthError as e:
        logger.error(f"Token endpoint OAuthError: {e.error} - {e.error_description}")
        raise
    except Exception as e:
        logger.error(f"Unexpected error during /token: {e}", exc_info=True)
        raise ServerError("Internal server error during token exchange")
    return JSONResponse(content=token_response.model_dump(), headers=NO_STORE_HEADERS)


# --- Dynamic client registration ---

@oauth_router.post("/register", status_code=201, name="oauth_register")
async def register_client(
    request: Request,
    client_registry: Annotated[ClientRegistry, Depends(get_client_registry)],
):
    body = await _read_body(request)
    try:
        registration = ClientRegistrationRequest.model_validate(body)
    except PydanticValidationError as e:
        raise InvalidRequestError(f"Invalid client metadata: {_validation_message(e)}")

    client = await client_registry.register(registration)
    return JSONResponse(
        status_code=201,
        content=client.model_dump(exclude_none=True),
        headers=NO_STORE_HEADERS,
    )


# --- Discovery ---

@oauth_router.get(
    "/.well-known/oauth-authorization-server",
    response_model=AuthorizationServerMetadata,
    name="oauth_metadata",
)
async def authorization_server_metadata(services: Services) -> AuthorizationServerMetadata:
    base_url = services.settings.public_base_url.rstrip("/")
    return AuthorizationServerMetadata(
        issuer=base_url,
        authorization_endpoint=f"{base_url}/api/auth/authorize",
        token_endpoint=f"{base_url}/token",
        registration_endpoint=f"{base_url}/register",
    )


@oauth_router.get(
    "/.well-known/oauth-protected-resource",
    response_model=ProtectedResourceMetadata,
    name="oauth_protected_resource",
)
async def protected_resource_metadata(services: Services) -> ProtectedResourceMetadata:
    base_url = services.settings.public_base_url.rstrip("/")
    return ProtectedResourceMetadata(
        resource=base_url,
        authorization_servers=[base_url],
        resource_documentation=base_url,
        mcp_endpoint=f"{base_url}/mcp",
    )
