# shipbuilder_mcp/oauth/pending_auth.py
"""
Staging store for authorization requests waiting on the external consent UI.

A request is parked here when /api/auth/authorize is hit, picks up a user id
once the person logs in, and is removed when consent is given or denied, or
after five minutes. Redis is used when configured; if Redis becomes
unreachable the store keeps working from process memory, which is acceptable
because entries only live for minutes.
"""
import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError

from ..settings import Settings
from ..storage import RedisBackedStore
from ..utils import Clock, system_clock
from .models import PendingAuthorization, PendingAuthorizationParams
from .storage_interfaces import AbstractPendingAuthBackend

logger = logging.getLogger(__name__)

PENDING_AUTH_TTL_SECONDS = 300  # 5 minutes

T = TypeVar("T")


class InMemoryPendingAuthBackend(AbstractPendingAuthBackend):
    """Process-local staging map. Each entry owns a timer that removes it on expiry."""

    def __init__(self):
        self._entries: Dict[str, PendingAuthorization] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    async def initialize(self) -> None:
        logger.debug("InMemoryPendingAuthBackend initialized.")

    async def shutdown(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._entries.clear()

    async def save(self, entry: PendingAuthorization, ttl_seconds: int) -> None:
        self._cancel_timer(entry.id)
        self._entries[entry.id] = entry.model_copy()
        loop = asyncio.get_running_loop()
        self._timers[entry.id] = loop.call_later(max(0, ttl_seconds), self._expire, entry.id)

    async def load(self, auth_id: str) -> Optional[PendingAuthorization]:
        entry = self._entries.get(auth_id)
        return entry.model_copy() if entry else None

    async def delete(self, auth_id: str) -> None:
        self._cancel_timer(auth_id)
        self._entries.pop(auth_id, None)

    async def ids(self) -> List[str]:
        return list(self._entries)

    def _expire(self, auth_id: str) -> None:
        self._timers.pop(auth_id, None)
        if self._entries.pop(auth_id, None) is not None:
            logger.debug(f"Pending authorization {auth_id} expired (timer).")

    def _cancel_timer(self, auth_id: str) -> None:
        handle = self._timers.pop(auth_id, None)
        if handle is not None:
            handle.cancel()


class RedisPendingAuthBackend(RedisBackedStore, AbstractPendingAuthBackend):
    store_name = "RedisPendingAuthBackend"
    KEY_PREFIX = "mcp_auth:"

    def _get_key(self, auth_id: str) -> str:
        return f"{self.KEY_PREFIX}{auth_id}"

    async def save(self, entry: PendingAuthorization, ttl_seconds: int) -> None:
        client = self._get_client()
        await client.setex(
            self._get_key(entry.id), max(1, int(ttl_seconds)), entry.model_dump_json().encode("utf-8")
        )

    async def load(self, auth_id: str) -> Optional[PendingAuthorization]:
        client = self._get_client()
        data_bytes = await client.get(self._get_key(auth_id))
        if not data_bytes:
            return None
        try:
            return PendingAuthorization.model_validate_json(data_bytes)
        except ValidationError as e:
            logger.error(f"Corrupt pending authorization {auth_id}: {e}")
            return None

    async def delete(self, auth_id: str) -> None:
        client = self._get_client()
        await client.delete(self._get_key(auth_id))

    async def ids(self) -> List[str]:
        client = self._get_client()
        prefix_len = len(self.KEY_PREFIX)
        return [
            key.decode("utf-8")[prefix_len:]
            async for key in client.scan_iter(match=f"{self.KEY_PREFIX}*", count=100)
        ]


class PendingAuthorizationStore:
    """
    Callers see identical semantics whichever backend is active. When the
    primary backend is Redis, a process-local backend catches operations
    that fail with a Redis error.
    """

    def __init__(
        self,
        backend: AbstractPendingAuthBackend,
        ttl_seconds: int = PENDING_AUTH_TTL_SECONDS,
        clock: Clock = system_clock,
        fallback: Optional[AbstractPendingAuthBackend] = None,
    ):
        self.backend = backend
        self.fallback = fallback
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        logger.info(
            f"PendingAuthorizationStore initialized with backend {type(backend).__name__}"
            f"{' (in-memory fallback enabled)' if fallback else ''}. TTL: {ttl_seconds}s"
        )

    async def initialize(self) -> None:
        if self.fallback is not None:
            await self.fallback.initialize()
            try:
                await self.backend.initialize()
            except (RedisError, OSError) as e:
                logger.warning(
                    f"Pending authorization backend unavailable at startup ({e}); "
                    "serving from in-memory fallback until it recovers."
                )
        else:
            await self.backend.initialize()

    async def shutdown(self) -> None:
        await self.backend.shutdown()
        if self.fallback is not None:
            await self.fallback.shutdown()

    async def _call(
        self, op_name: str, op: Callable[[AbstractPendingAuthBackend], Awaitable[T]]
    ) -> Tuple[T, AbstractPendingAuthBackend]:
        try:
            return await op(self.backend), self.backend
        except (RedisError, OSError, RuntimeError) as e:
            if self.fallback is None:
                raise
            logger.warning(f"Pending authorization {op_name} failed on primary backend ({e}); using in-memory fallback.")
            return await op(self.fallback), self.fallback

    async def create(self, params: PendingAuthorizationParams) -> str:
        now = self._clock()
        entry = PendingAuthorization(
            id=str(uuid.uuid4()),
            created_at=now,
            expires_at=now + self.ttl_seconds,
            **params.model_dump(),
        )
        await self._call("create", lambda b: b.save(entry, self.ttl_seconds))
        logger.info(f"Pending authorization {entry.id} created for client '{entry.client_id}'.")
        return entry.id

    async def _locate(self, auth_id: str) -> Tuple[Optional[PendingAuthorization], AbstractPendingAuthBackend]:
        entry, backend = await self._call("get", lambda b: b.load(auth_id))
        if entry is None and self.fallback is not None and backend is not self.fallback:
            # Entries written during an outage live only in the fallback.
            fallback_entry = await self.fallback.load(auth_id)
            if fallback_entry is not None:
                return fallback_entry, self.fallback
        return entry, backend

    async def get(self, auth_id: str) -> Optional[PendingAuthorization]:
        entry, backend = await self._locate(auth_id)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            await backend.delete(auth_id)
            logger.info(f"Pending authorization {auth_id} expired on read.")
            return None
        return entry

    async def update(self, auth_id: str, user_id: str) -> bool:
        entry, backend = await self._locate(auth_id)
        if entry is None:
            return False
        remaining = entry.expires_at - self._clock()
        if remaining <= 0:
            await backend.delete(auth_id)
            return False
        updated = entry.model_copy(update={"user_id": user_id})
        ttl = int(remaining) or 1
        if backend is self.backend:
            await self._call("update", lambda b: b.save(updated, ttl))
        else:
            await backend.save(updated, ttl)
        logger.info(f"Pending authorization {auth_id} bound to user '{user_id}'.")
        return True

    async def delete(self, auth_id: str) -> None:
        await self._call("delete", lambda b: b.delete(auth_id))
        if self.fallback is not None:
            await self.fallback.delete(auth_id)

    async def _all_entries(self) -> List[Tuple[str, Optional[PendingAuthorization], AbstractPendingAuthBackend]]:
        backends = [self.backend] + ([self.fallback] if self.fallback is not None else [])
        results = []
        for backend in backends:
            try:
                ids = await backend.ids()
            except (RedisError, OSError, RuntimeError) as e:
                logger.warning(f"Could not enumerate pending authorizations on {type(backend).__name__}: {e}")
                continue
            for auth_id in ids:
                results.append((auth_id, await backend.load(auth_id), backend))
        return results

    async def cleanup(self) -> int:
        now = self._clock()
        removed = 0
        for auth_id, entry, backend in await self._all_entries():
            if entry is None or entry.is_expired(now):
                await backend.delete(auth_id)
                removed += 1
        if removed:
            logger.info(f"Pending authorization cleanup removed {removed} entries.")
        return removed

    async def stats(self) -> Dict[str, int]:
        now = self._clock()
        live = [entry for _, entry, _ in await self._all_entries() if entry and not entry.is_expired(now)]
        return {"total": len(live), "withUser": sum(1 for entry in live if entry.user_id)}


def create_pending_auth_store(
    backend: str,
    settings: Settings,
    redis_client: Optional[aioredis.Redis] = None,
    clock: Clock = system_clock,
) -> PendingAuthorizationStore:
    """Builds the staging store for an explicitly chosen backend ("memory" or "redis")."""
    if backend == "memory":
        return PendingAuthorizationStore(
            InMemoryPendingAuthBackend(), ttl_seconds=settings.pending_auth_ttl_seconds, clock=clock
        )
    if backend == "redis":
        return PendingAuthorizationStore(
            RedisPendingAuthBackend(client=redis_client, settings=settings),
            ttl_seconds=settings.pending_auth_ttl_seconds,
            clock=clock,
            fallback=InMemoryPendingAuthBackend(),
        )
    raise ValueError(f"Unsupported pending auth backend: {backend}")
