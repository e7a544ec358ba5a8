# shipbuilder_mcp/oauth/provider.py
import logging
from typing import Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from ..mcp_auth import AbstractUserDirectory, McpTokenManager, UserInfo
from .code_store import AuthorizationCodeStore
from .errors import (
    InvalidGrantError,
    InvalidRequestError,
    InvalidTokenError,
    NotFoundError,
    OAuthError,
    ServerError,
    UnsupportedGrantTypeError,
    UnsupportedResponseTypeError,
)
from .models import (
    DEFAULT_SCOPE,
    JWT_BEARER_GRANT_TYPE,
    AuthorizationCodeEntry,
    AuthorizationCodeParams,
    CodeRedemptionParams,
    ConsentRequest,
    ConsentResponse,
    PendingAuthorization,
    PendingAuthorizationParams,
    TokenRequest,
    TokenResponse,
)
from .pending_auth import PendingAuthorizationStore
from .pkce import PkceMethod

logger = logging.getLogger(__name__)


def append_query_params(uri: str, params: Dict[str, Optional[str]]) -> str:
    """Adds params to uri, keeping any query it already carries."""
    split_url = urlsplit(uri)
    query = parse_qsl(split_url.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items() if value is not None)
    return urlunsplit(split_url._replace(query=urlencode(query)))


class McpOAuthProvider:
    """
    Authorization server logic behind the /api/auth and /token routes.

    An authorization request is parked in the pending store and handed to the
    frontend. The frontend logs the user in and posts the consent decision
    back, which is when the authorization code is minted and approved.
    """

    def __init__(
        self,
        code_store: AuthorizationCodeStore,
        pending_store: PendingAuthorizationStore,
        token_manager: McpTokenManager,
        user_directory: AbstractUserDirectory,
        frontend_base_url: str,
    ):
        self.code_store = code_store
        self.pending_store = pending_store
        self.token_manager = token_manager
        self.user_directory = user_directory
        self.frontend_base_url = frontend_base_url.rstrip("/")
        logger.info("McpOAuthProvider initialized.")

    async def start_authorization(
        self,
        response_type: Optional[str],
        client_id: Optional[str],
        redirect_uri: Optional[str],
        scope: Optional[str] = None,
        state: Optional[str] = None,
        code_challenge: Optional[str] = None,
        code_challenge_method: Optional[str] = None,
        bearer_token: Optional[str] = None,
    ) -> str:
        """
        Validates an authorization request, stages it and returns the
        frontend URL the user agent should be sent to.

        Args:
            bearer_token: The main application's token, when the user is
                already signed in there

        Raises:
            UnsupportedResponseTypeError: response_type is not "code"
            InvalidRequestError: Missing client, redirect or PKCE parameters
        """
        if response_type != "code":
            logger.warning(f"Unsupported response_type: {response_type}")
            raise UnsupportedResponseTypeError()
        if not client_id or not redirect_uri:
            raise InvalidRequestError("Missing required parameters: client_id and redirect_uri")
        if not code_challenge or not code_challenge_method:
            raise InvalidRequestError("PKCE code_challenge and code_challenge_method are required.")
        try:
            PkceMethod.parse(code_challenge_method)
        except ValueError as e:
            raise InvalidRequestError(str(e))

        auth_id = await self.pending_store.create(PendingAuthorizationParams(
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=scope or DEFAULT_SCOPE,
            state=state,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
        ))

        user = self._user_from_token(bearer_token) if bearer_token else None
        if user is None:
            logger.info(f"Pending authorization {auth_id}: no signed-in user, redirecting to login.")
            return f"{self.frontend_base_url}/?{urlencode({'mcp_auth_id': auth_id, 'mcp_login': 'true'})}"

        await self.pending_store.update(auth_id, user.user_id)
        logger.info(f"Pending authorization {auth_id}: user '{user.user_id}' signed in, redirecting to consent.")
        return f"{self.frontend_base_url}/mcp-consent?{urlencode({'auth_id': auth_id})}"

    def _user_from_token(self, token: str) -> Optional[UserInfo]:
        try:
            return self.token_manager.verify_any_token(token)
        except OAuthError as e:
            logger.info(f"Ignoring unusable bearer token on authorize: {e.error}")
            return None

    async def get_pending(self, auth_id: str) -> PendingAuthorization:
        pending = await self.pending_store.get(auth_id)
        if pending is None:
            raise NotFoundError("Authorization request not found or expired")
        return pending

    async def get_code_details(self, code: str) -> AuthorizationCodeEntry:
        entry = await self.code_store.details(code)
        if entry is None:
            raise NotFoundError("Authorization code not found or expired")
        return entry

    async def handle_consent(self, consent: ConsentRequest) -> ConsentResponse:
        pending = await self.pending_store.get(consent.auth_id)
        if pending is None:
            logger.error(f"Consent for unknown or expired pending authorization {consent.auth_id}.")
            raise InvalidRequestError("Invalid or expired authorization request")

        try:
            user = self.token_manager.verify_any_token(consent.main_app_token)
        except OAuthError:
            raise InvalidTokenError("Invalid or expired authentication token. Please log in again.")

        if not pending.user_id:
            await self.pending_store.update(consent.auth_id, user.user_id)

        if consent.action == "approve":
            code = await self.code_store.generate(AuthorizationCodeParams(
                client_id=pending.client_id,
                redirect_uri=pending.redirect_uri,
                code_challenge=pending.code_challenge,
                code_challenge_method=pending.code_challenge_method,
                scope=pending.scope,
                state=pending.state,
            ))
            if not await self.code_store.approve(code, user.user_id):
                raise ServerError("Failed to approve authorization")
            await self.pending_store.delete(consent.auth_id)
            logger.info(
                f"Authorization {consent.auth_id} approved by user '{user.user_id}' "
                f"for client '{pending.client_id}'."
            )
            return ConsentResponse(
                success=True,
                redirect_uri=append_query_params(pending.redirect_uri, {"code": code, "state": pending.state}),
            )

        await self.pending_store.delete(consent.auth_id)
        logger.info(
            f"Authorization {consent.auth_id} denied by user '{user.user_id}' for client '{pending.client_id}'."
        )
        return ConsentResponse(
            success=False,
            redirect_uri=append_query_params(pending.redirect_uri, {
                "error": "access_denied",
                "error_description": "User denied authorization",
                "state": pending.state,
            }),
        )

    async def handle_token_request(self, token_request: TokenRequest) -> TokenResponse:
        grant_type = token_request.grant_type
        logger.info(f"Handling token request for grant_type '{grant_type}'.")

        if not grant_type:
            raise InvalidRequestError("Missing required parameter: grant_type")
        if grant_type == "authorization_code":
            user, client_id = await self._redeem_authorization_code(token_request)
        elif grant_type == JWT_BEARER_GRANT_TYPE:
            user, client_id = self._exchange_assertion(token_request), None
        else:
            raise UnsupportedGrantTypeError(f"Grant type '{grant_type}' is not supported")

        access_token = self.token_manager.issue_mcp_token(user, client_id)
        return TokenResponse(
            access_token=access_token,
            expires_in=self.token_manager.mcp_token_ttl_seconds,
            scope=DEFAULT_SCOPE,
        )

    async def _redeem_authorization_code(self, token_request: TokenRequest):
        if not token_request.code:
            raise InvalidRequestError("Missing required parameter: code")
        if not token_request.client_id or not token_request.redirect_uri:
            raise InvalidRequestError("Missing required parameters: client_id and redirect_uri")

        result = await self.code_store.validate_and_consume(CodeRedemptionParams(
            code=token_request.code,
            client_id=token_request.client_id,
            redirect_uri=token_request.redirect_uri,
            code_verifier=token_request.code_verifier,
        ))
        if not result.valid:
            raise InvalidGrantError(result.error_description)

        user = await self.user_directory.get_user(result.user_id)
        if user is None:
            logger.error(f"User '{result.user_id}' from a redeemed code could not be resolved.")
            raise ServerError("Failed to retrieve user information")
        return user, token_request.client_id

    def _exchange_assertion(self, token_request: TokenRequest) -> UserInfo:
        if not token_request.assertion:
            raise InvalidRequestError("Missing assertion parameter for JWT bearer grant")
        try:
            return self.token_manager.verify_any_token(token_request.assertion)
        except OAuthError:
            raise InvalidGrantError("Invalid JWT assertion")
