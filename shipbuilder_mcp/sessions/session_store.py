# shipbuilder_mcp/sessions/session_store.py
import fnmatch
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Set, Tuple

import redis.asyncio as aioredis
from pydantic import ValidationError

from ..settings import Settings
from ..storage import RedisBackedStore
from ..utils import Clock, system_clock
from .session_data import McpSession

logger = logging.getLogger(__name__)


class AbstractSessionStore(ABC):
    """
    Interface for session storage. Both implementations honour the same
    contract: entries vanish once their TTL passes without a set(), and every
    session key is reachable from its owner's user index.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[McpSession]:
        """Load a live session. Does not extend its TTL."""
        pass

    @abstractmethod
    async def set(self, key: str, session: McpSession, ttl_seconds: int) -> None:
        """Store a session and (re)start its TTL."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    @abstractmethod
    async def keys(self, pattern: str = "*") -> List[str]:
        """Live session keys matching a glob pattern."""
        pass

    @abstractmethod
    async def user_keys(self, user_id: str) -> List[str]:
        """Live session keys owned by a user, read from the per-user index."""
        pass

    @abstractmethod
    async def cleanup(self) -> int:
        """Removes expired or orphaned entries. Returns how many were removed."""
        pass

    @abstractmethod
    async def stats(self) -> Dict[str, int]:
        """Returns {"totalSessions": ..., "activeUsers": ...}."""
        pass

    @abstractmethod
    async def initialize(self) -> None:
        pass

    @abstractmethod
    async def shutdown(self) -> None:
        pass


class InMemorySessionStore(AbstractSessionStore):
    """Process-local store. Expiry is checked lazily on read and swept by cleanup()."""

    def __init__(self, clock: Clock = system_clock):
        self._clock = clock
        self._sessions: Dict[str, Tuple[McpSession, float]] = {}
        self._user_sessions: Dict[str, Set[str]] = {}

    async def initialize(self) -> None:
        logger.info("InMemorySessionStore initialized.")

    async def shutdown(self) -> None:
        logger.info(f"InMemorySessionStore shutting down with {len(self._sessions)} sessions.")
        self._sessions.clear()
        self._user_sessions.clear()

    def _live(self, key: str) -> Optional[McpSession]:
        item = self._sessions.get(key)
        if item is None:
            return None
        session, expires_at = item
        if self._clock() >= expires_at:
            self._remove(key)
            return None
        return session

    def _remove(self, key: str) -> bool:
        item = self._sessions.pop(key, None)
        if item is None:
            return False
        user_id = item[0].user_id
        keys = self._user_sessions.get(user_id)
        if keys is not None:
            keys.discard(key)
            if not keys:
                del self._user_sessions[user_id]
        return True

    async def get(self, key: str) -> Optional[McpSession]:
        session = self._live(key)
        # Copies keep callers from mutating stored state without set()
        return session.model_copy(deep=True) if session else None

    async def set(self, key: str, session: McpSession, ttl_seconds: int) -> None:
        previous = self._sessions.get(key)
        if previous is not None and previous[0].user_id != session.user_id:
            self._remove(key)
        self._sessions[key] = (session.model_copy(deep=True), self._clock() + ttl_seconds)
        self._user_sessions.setdefault(session.user_id, set()).add(key)

    async def delete(self, key: str) -> None:
        self._remove(key)

    async def keys(self, pattern: str = "*") -> List[str]:
        return [key for key in list(self._sessions) if self._live(key) and fnmatch.fnmatchcase(key, pattern)]

    async def user_keys(self, user_id: str) -> List[str]:
        return [key for key in list(self._user_sessions.get(user_id, ())) if self._live(key)]

    async def cleanup(self) -> int:
        now = self._clock()
        expired = [key for key, (_, expires_at) in list(self._sessions.items()) if now >= expires_at]
        for key in expired:
            self._remove(key)
        if expired:
            logger.info(f"InMemorySessionStore cleanup removed {len(expired)} expired sessions.")
        return len(expired)

    async def stats(self) -> Dict[str, int]:
        await self.cleanup()
        return {"totalSessions": len(self._sessions), "activeUsers": len(self._user_sessions)}


class RedisSessionStore(RedisBackedStore, AbstractSessionStore):
    """
    Redis store with native per-key expiry. The per-user index is a set that
    is written in the same transaction as the session and given the same TTL.

    Redis failures are not caught here. A silent fallback would let replicas
    disagree about session state, so errors propagate to the caller.
    """

    store_name = "RedisSessionStore"
    SESSION_PREFIX = "mcp:session:"
    USER_PREFIX = "mcp:user:"

    def _session_key(self, key: str) -> str:
        return f"{self.SESSION_PREFIX}{key}"

    def _user_key(self, user_id: str) -> str:
        return f"{self.USER_PREFIX}{user_id}"

    async def get(self, key: str) -> Optional[McpSession]:
        client = self._get_client()
        data_bytes = await client.get(self._session_key(key))
        if not data_bytes:
            return None
        try:
            return McpSession.model_validate_json(data_bytes)
        except ValidationError as e:
            logger.error(f"Corrupt session under key {key[:12]}...: {e}. Deleting it.")
            await client.delete(self._session_key(key))
            return None

    async def set(self, key: str, session: McpSession, ttl_seconds: int) -> None:
        client = self._get_client()
        user_key = self._user_key(session.user_id)
        async with client.pipeline(transaction=True) as pipe:
            pipe.setex(self._session_key(key), ttl_seconds, session.model_dump_json().encode("utf-8"))
            pipe.sadd(user_key, key)
            pipe.expire(user_key, ttl_seconds)
            await pipe.execute()

    async def delete(self, key: str) -> None:
        client = self._get_client()
        session = await self.get(key)
        async with client.pipeline(transaction=True) as pipe:
            pipe.delete(self._session_key(key))
            if session is not None:
                pipe.srem(self._user_key(session.user_id), key)
            await pipe.execute()

    async def keys(self, pattern: str = "*") -> List[str]:
        client = self._get_client()
        prefix_len = len(self.SESSION_PREFIX)
        return [
            raw.decode("utf-8")[prefix_len:]
            async for raw in client.scan_iter(match=f"{self.SESSION_PREFIX}{pattern}", count=100)
        ]

    async def user_keys(self, user_id: str) -> List[str]:
        client = self._get_client()
        members = [m.decode("utf-8") for m in await client.smembers(self._user_key(user_id))]
        if not members:
            return []
        async with client.pipeline(transaction=False) as pipe:
            for key in members:
                pipe.exists(self._session_key(key))
            exists_flags = await pipe.execute()
        live = [key for key, flag in zip(members, exists_flags) if flag]
        stale = [key for key, flag in zip(members, exists_flags) if not flag]
        if stale:
            await client.srem(self._user_key(user_id), *stale)
        return live

    async def cleanup(self) -> int:
        """
        Session keys expire natively; this removes index members that point at
        expired sessions and deletes index sets left empty.
        """
        client = self._get_client()
        user_set_keys = [raw async for raw in client.scan_iter(match=f"{self.USER_PREFIX}*", count=100)]
        removed = 0
        for user_set_key in user_set_keys:
            members = list(await client.smembers(user_set_key))
            if not members:
                await client.delete(user_set_key)
                continue
            async with client.pipeline(transaction=False) as pipe:
                for member in members:
                    pipe.exists(self._session_key(member.decode("utf-8")))
                exists_flags = await pipe.execute()
            orphans = [member for member, flag in zip(members, exists_flags) if not flag]
            if orphans:
                await client.srem(user_set_key, *orphans)
                removed += len(orphans)
            if len(orphans) == len(members):
                await client.delete(user_set_key)
        if removed:
            logger.info(f"RedisSessionStore cleanup removed {removed} orphaned index entries.")
        return removed

    async def stats(self) -> Dict[str, int]:
        client = self._get_client()
        total_sessions = 0
        async for _ in client.scan_iter(match=f"{self.SESSION_PREFIX}*", count=100):
            total_sessions += 1
        active_users = 0
        async for user_set_key in client.scan_iter(match=f"{self.USER_PREFIX}*", count=100):
            if await client.scard(user_set_key) > 0:
                active_users += 1
        return {"totalSessions": total_sessions, "activeUsers": active_users}


def create_session_store(
    backend: str,
    settings: Settings,
    redis_client: Optional[aioredis.Redis] = None,
    clock: Clock = system_clock,
) -> AbstractSessionStore:
    """Builds a session store for an explicitly chosen backend ("memory" or "redis")."""
    if backend == "memory":
        return InMemorySessionStore(clock=clock)
    if backend == "redis":
        return RedisSessionStore(client=redis_client, settings=settings)
    raise ValueError(f"Unsupported session store backend: {backend}")
