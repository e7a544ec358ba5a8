# shipbuilder_mcp/oauth/code_store.py
import logging
import secrets
from typing import Dict, List, Optional

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import WatchError

from ..settings import Settings
from ..storage import RedisBackedStore
from ..utils import Clock, PeriodicTask, system_clock
from .errors import InvalidRequestError
from .models import (
    AuthorizationCodeEntry,
    AuthorizationCodeParams,
    CodeFailureReason,
    CodeRedemptionParams,
    CodeStatus,
    CodeValidationResult,
)
from .pkce import PkceMethod, verify_code_verifier
from .storage_interfaces import AbstractAuthCodeBackend

logger = logging.getLogger(__name__)

AUTH_CODE_LIFETIME_SECONDS = 600  # 10 minutes
AUTH_CODE_SWEEP_INTERVAL_SECONDS = 300  # 5 minutes


class InMemoryAuthCodeBackend(AbstractAuthCodeBackend):
    """Process-local code storage. Codes do not survive restarts or cross instances."""

    def __init__(self):
        self._entries: Dict[str, AuthorizationCodeEntry] = {}

    async def initialize(self) -> None:
        logger.info("InMemoryAuthCodeBackend initialized.")

    async def shutdown(self) -> None:
        logger.info(f"InMemoryAuthCodeBackend shutting down with {len(self._entries)} live codes.")
        self._entries.clear()

    async def save(self, entry: AuthorizationCodeEntry, ttl_seconds: int) -> None:
        self._entries[entry.code] = entry.model_copy()

    async def load(self, code: str) -> Optional[AuthorizationCodeEntry]:
        entry = self._entries.get(code)
        return entry.model_copy() if entry else None

    async def replace_if_status(
        self, code: str, expected: CodeStatus, entry: AuthorizationCodeEntry
    ) -> bool:
        current = self._entries.get(code)
        if current is None or current.status != expected:
            return False
        self._entries[code] = entry.model_copy()
        return True

    async def delete(self, code: str) -> bool:
        return self._entries.pop(code, None) is not None

    async def codes(self) -> List[str]:
        return list(self._entries)


class RedisAuthCodeBackend(RedisBackedStore, AbstractAuthCodeBackend):
    """
    Redis-backed code storage so any instance can redeem a code issued by
    another. Entries carry a native TTL; status changes go through an
    optimistic WATCH/MULTI transaction.
    """

    store_name = "RedisAuthCodeBackend"
    KEY_PREFIX = "mcp:oauth:auth_code:"

    def _get_key(self, code: str) -> str:
        return f"{self.KEY_PREFIX}{code}"

    async def save(self, entry: AuthorizationCodeEntry, ttl_seconds: int) -> None:
        client = self._get_client()
        await client.set(
            self._get_key(entry.code),
            entry.model_dump_json().encode("utf-8"),
            ex=max(1, int(ttl_seconds)),
        )

    async def load(self, code: str) -> Optional[AuthorizationCodeEntry]:
        client = self._get_client()
        data_bytes = await client.get(self._get_key(code))
        if not data_bytes:
            return None
        try:
            return AuthorizationCodeEntry.model_validate_json(data_bytes)
        except ValidationError as e:
            logger.error(f"Corrupt authorization code entry under {code[:8]}...: {e}")
            return None

    async def replace_if_status(
        self, code: str, expected: CodeStatus, entry: AuthorizationCodeEntry
    ) -> bool:
        client = self._get_client()
        key = self._get_key(code)
        async with client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                raw = await pipe.get(key)
                if raw is None:
                    return False
                current = AuthorizationCodeEntry.model_validate_json(raw)
                if current.status != expected:
                    return False
                pipe.multi()
                pipe.set(key, entry.model_dump_json().encode("utf-8"), keepttl=True)
                await pipe.execute()
                return True
            except WatchError:
                logger.warning(f"Authorization code {code[:8]}... changed concurrently; update refused.")
                return False

    async def delete(self, code: str) -> bool:
        client = self._get_client()
        return (await client.delete(self._get_key(code))) > 0

    async def codes(self) -> List[str]:
        client = self._get_client()
        prefix_len = len(self.KEY_PREFIX)
        return [
            key.decode("utf-8")[prefix_len:]
            async for key in client.scan_iter(match=f"{self.KEY_PREFIX}*", count=100)
        ]


class AuthorizationCodeStore:
    """
    Issues, approves and one-time-consumes authorization codes.

    State machine: pending -> used (consent approval, binds the user) ->
    removed (redemption), or pending -> removed (expiry). Nothing moves a
    code back to pending.
    """

    def __init__(
        self,
        backend: AbstractAuthCodeBackend,
        ttl_seconds: int = AUTH_CODE_LIFETIME_SECONDS,
        sweep_interval_seconds: float = AUTH_CODE_SWEEP_INTERVAL_SECONDS,
        clock: Clock = system_clock,
    ):
        if not isinstance(backend, AbstractAuthCodeBackend):
            raise TypeError("AuthorizationCodeStore requires an instance of AbstractAuthCodeBackend.")
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sweeper = PeriodicTask("auth-code-sweep", sweep_interval_seconds, self.sweep)
        logger.info(
            f"AuthorizationCodeStore initialized with backend {type(backend).__name__}. "
            f"TTL: {ttl_seconds}s"
        )

    async def start(self) -> None:
        await self.backend.initialize()
        self._sweeper.start()

    async def shutdown(self) -> None:
        await self._sweeper.stop()
        await self.backend.shutdown()

    async def generate(self, params: AuthorizationCodeParams) -> str:
        method: Optional[PkceMethod] = None
        if params.code_challenge is not None or params.code_challenge_method is not None:
            if not params.code_challenge:
                raise InvalidRequestError(
                    error_description="code_challenge is required when code_challenge_method is supplied."
                )
            try:
                method = PkceMethod.parse(params.code_challenge_method)
            except ValueError as e:
                raise InvalidRequestError(error_description=str(e))

        code = secrets.token_hex(32)
        now = self._clock()
        entry = AuthorizationCodeEntry(
            code=code,
            client_id=params.client_id,
            redirect_uri=params.redirect_uri,
            code_challenge=params.code_challenge,
            code_challenge_method=method,
            scope=params.scope,
            state=params.state,
            created_at=now,
            expires_at=now + self.ttl_seconds,
        )
        await self.backend.save(entry, self.ttl_seconds)
        logger.info(
            f"Authorization code {code[:8]}... issued for client '{params.client_id}' "
            f"(PKCE: {method.value if method else 'none'})."
        )
        return code

    async def approve(self, code: str, user_id: str) -> bool:
        entry = await self.backend.load(code)
        if entry is None:
            logger.warning(f"approve: unknown authorization code {code[:8]}...")
            return False
        if entry.is_expired(self._clock()):
            await self.backend.delete(code)
            logger.warning(f"approve: authorization code {code[:8]}... has expired.")
            return False
        if entry.status is not CodeStatus.PENDING:
            logger.warning(f"approve: authorization code {code[:8]}... is already '{entry.status.value}'.")
            return False

        updated = entry.model_copy(update={"status": CodeStatus.USED, "user_id": user_id})
        approved = await self.backend.replace_if_status(code, CodeStatus.PENDING, updated)
        if approved:
            logger.info(f"Authorization code {code[:8]}... approved for user '{user_id}'.")
        return approved

    async def validate_and_consume(self, params: CodeRedemptionParams) -> CodeValidationResult:
        code = params.code
        entry = await self.backend.load(code)
        if entry is None:
            return self._fail(code, CodeFailureReason.UNKNOWN_CODE)
        if entry.is_expired(self._clock()):
            await self.backend.delete(code)
            return self._fail(code, CodeFailureReason.EXPIRED)
        if entry.status is not CodeStatus.USED or not entry.user_id:
            return self._fail(code, CodeFailureReason.NOT_APPROVED)
        if entry.client_id != params.client_id:
            return self._fail(code, CodeFailureReason.CLIENT_MISMATCH)
        if entry.redirect_uri != params.redirect_uri:
            return self._fail(code, CodeFailureReason.REDIRECT_URI_MISMATCH)
        if entry.code_challenge:
            if not params.code_verifier:
                return self._fail(code, CodeFailureReason.MISSING_VERIFIER)
            if entry.code_challenge_method is None:
                return self._fail(code, CodeFailureReason.INVALID_VERIFIER)
            if not verify_code_verifier(entry.code_challenge_method, entry.code_challenge, params.code_verifier):
                return self._fail(code, CodeFailureReason.INVALID_VERIFIER)

        # Only the caller whose delete removes the entry gets the grant.
        if not await self.backend.delete(code):
            return self._fail(code, CodeFailureReason.UNKNOWN_CODE)

        logger.info(
            f"Authorization code {code[:8]}... consumed by client '{entry.client_id}' "
            f"for user '{entry.user_id}'."
        )
        return CodeValidationResult(
            valid=True, user_id=entry.user_id, client_id=entry.client_id, scope=entry.scope
        )

    def _fail(self, code: str, reason: CodeFailureReason) -> CodeValidationResult:
        logger.warning(f"Authorization code {code[:8]}... rejected: {reason.value}")
        return CodeValidationResult.failure(reason)

    async def details(self, code: str) -> Optional[AuthorizationCodeEntry]:
        """Non-consuming read for the consent step."""
        entry = await self.backend.load(code)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            await self.backend.delete(code)
            return None
        return entry

    async def sweep(self) -> int:
        """Removes every entry past its expiry, whatever its status."""
        now = self._clock()
        removed = 0
        for code in await self.backend.codes():
            entry = await self.backend.load(code)
            if entry is not None and entry.is_expired(now) and await self.backend.delete(code):
                removed += 1
        if removed:
            logger.info(f"Authorization code sweep removed {removed} expired codes.")
        return removed


def create_auth_code_store(
    backend: str,
    settings: Settings,
    redis_client: Optional[aioredis.Redis] = None,
    clock: Clock = system_clock,
) -> AuthorizationCodeStore:
    """Builds the code store for an explicitly chosen backend ("memory" or "redis")."""
    if backend == "memory":
        code_backend: AbstractAuthCodeBackend = InMemoryAuthCodeBackend()
    elif backend == "redis":
        code_backend = RedisAuthCodeBackend(client=redis_client, settings=settings)
    else:
        raise ValueError(f"Unsupported auth code backend: {backend}")
    return AuthorizationCodeStore(
        code_backend,
        ttl_seconds=settings.auth_code_ttl_seconds,
        sweep_interval_seconds=settings.auth_code_sweep_interval_seconds,
        clock=clock,
    )
