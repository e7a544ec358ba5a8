# shipbuilder_mcp/sessions/session_manager.py
import asyncio
import hashlib
import hmac
import logging
import secrets
from typing import Any, Dict, List, Optional, Tuple

from ..mcp_auth.models import UserInfo
from ..utils import Clock, PeriodicTask, system_clock
from .session_data import McpSession, RequestMeta
from .session_store import AbstractSessionStore

logger = logging.getLogger(__name__)

SESSION_TIMEOUT_SECONDS = 8 * 60 * 60  # 8 hours, sliding
HEARTBEAT_TIMEOUT_SECONDS = 5 * 60  # reporting only
JANITOR_INTERVAL_SECONDS = 10 * 60


class McpSessionManager:
    """
    Manages session lifecycle on top of an AbstractSessionStore.

    Sessions are keyed by an HMAC-SHA256 of the bearer token under a
    server-held secret, so neither the store nor the logs ever see a reusable
    credential. Every access rewrites the session with a fresh TTL. Every
    read-modify-write, including the expiry slide, runs under one lock so a
    stale copy never overwrites a newer one.
    """

    def __init__(
        self,
        store: AbstractSessionStore,
        secret: str,
        session_ttl_seconds: int = SESSION_TIMEOUT_SECONDS,
        heartbeat_seconds: int = HEARTBEAT_TIMEOUT_SECONDS,
        janitor_interval_seconds: float = JANITOR_INTERVAL_SECONDS,
        clock: Clock = system_clock,
    ):
        if not isinstance(store, AbstractSessionStore):
            raise TypeError("McpSessionManager requires an instance of AbstractSessionStore.")
        if not secret:
            raise ValueError("McpSessionManager requires a non-empty key derivation secret.")
        self.store = store
        self._secret = secret.encode("utf-8")
        self.session_ttl_seconds = session_ttl_seconds
        self.heartbeat_seconds = heartbeat_seconds
        self._clock = clock
        self._mutation_lock = asyncio.Lock()
        self._janitor = PeriodicTask("session-janitor", janitor_interval_seconds, self.store.cleanup)
        logger.info(
            f"McpSessionManager initialized with store: {type(store).__name__}. "
            f"TTL: {session_ttl_seconds}s, heartbeat: {heartbeat_seconds}s, "
            f"janitor every {janitor_interval_seconds}s"
        )

    async def start(self) -> None:
        await self.store.initialize()
        self._janitor.start()

    async def shutdown(self) -> None:
        await self._janitor.stop()
        await self.store.shutdown()

    def session_key(self, token: str) -> str:
        return hmac.new(self._secret, token.encode("utf-8"), hashlib.sha256).hexdigest()

    def _new_connection_id(self) -> str:
        return f"conn_{int(self._clock() * 1000)}_{secrets.token_hex(6)}"

    async def _persist(self, key: str, session: McpSession) -> None:
        await self.store.set(key, session, self.session_ttl_seconds)

    async def _load_and_touch(self, key: str) -> Optional[McpSession]:
        # Caller holds _mutation_lock.
        session = await self.store.get(key)
        if session is None:
            return None
        session.touch(self._clock())
        await self._persist(key, session)
        return session

    async def get_by_key(self, key: str) -> Optional[McpSession]:
        """Loads a session and slides its expiry."""
        async with self._mutation_lock:
            return await self._load_and_touch(key)

    async def get(self, token: str) -> Optional[McpSession]:
        return await self.get_by_key(self.session_key(token))

    async def get_or_create(
        self, token: str, user: UserInfo, request_meta: Optional[RequestMeta] = None
    ) -> McpSession:
        key = self.session_key(token)
        async with self._mutation_lock:
            existing = await self._load_and_touch(key)
            if existing is not None:
                logger.debug(f"get_or_create: reusing session {existing.connection_id} for user '{user.user_id}'.")
                return existing

            meta = request_meta or RequestMeta()
            now = self._clock()
            session = McpSession(
                user_id=user.user_id,
                email=user.email,
                name=user.name,
                connection_id=self._new_connection_id(),
                created_at=now,
                last_activity=now,
                user_agent=meta.user_agent,
                client_version=meta.client_version,
            )
            await self._persist(key, session)
        logger.info(f"get_or_create: new session {session.connection_id} for user '{user.user_id}'.")
        return session

    async def _user_sessions(self, user_id: str) -> List[Tuple[str, McpSession]]:
        found = []
        for key in await self.store.user_keys(user_id):
            session = await self.store.get(key)
            if session is not None and session.user_id == user_id:
                found.append((key, session))
        return found

    async def find_by_connection_id(
        self, user_id: str, connection_id: str
    ) -> Optional[Tuple[str, McpSession]]:
        """Finds one of the user's sessions by the id the client was handed."""
        for key, session in await self._user_sessions(user_id):
            if secrets.compare_digest(session.connection_id, connection_id):
                refreshed = await self.get_by_key(key)
                return (key, refreshed) if refreshed else None
        return None

    async def find_for_user(self, user_id: str) -> Optional[Tuple[str, McpSession]]:
        """Most recently active session owned by the user, if any."""
        sessions = await self._user_sessions(user_id)
        if not sessions:
            return None
        key, _ = max(sessions, key=lambda item: item[1].last_activity)
        refreshed = await self.get_by_key(key)
        return (key, refreshed) if refreshed else None

    async def update_context_by_key(self, key: str, partial: Dict[str, Any]) -> bool:
        async with self._mutation_lock:
            session = await self.store.get(key)
            if session is None:
                return False
            session.context = {**session.context, **partial}
            session.touch(self._clock())
            await self._persist(key, session)
            return True

    async def replace_context_by_key(self, key: str, context: Dict[str, Any]) -> bool:
        """Overwrites the whole context map, so keys a tool removed are dropped too."""
        async with self._mutation_lock:
            session = await self.store.get(key)
            if session is None:
                return False
            session.context = dict(context)
            session.touch(self._clock())
            await self._persist(key, session)
            return True

    async def update_context(self, token: str, partial: Dict[str, Any]) -> bool:
        return await self.update_context_by_key(self.session_key(token), partial)

    async def next_event_sequence_by_key(self, key: str) -> int:
        async with self._mutation_lock:
            session = await self.store.get(key)
            if session is None:
                # No session: the caller is stateless and every sequence starts over.
                return 1
            session.event_sequence += 1
            session.touch(self._clock())
            await self._persist(key, session)
            return session.event_sequence

    async def next_event_sequence(self, token: str) -> int:
        return await self.next_event_sequence_by_key(self.session_key(token))

    async def set_client_capabilities_by_key(self, key: str, capabilities: Dict[str, Any]) -> bool:
        async with self._mutation_lock:
            session = await self.store.get(key)
            if session is None:
                return False
            session.client_capabilities = dict(capabilities)
            session.touch(self._clock())
            await self._persist(key, session)
            return True

    async def _mutate_streams(self, token: str, stream_id: str, add: bool) -> bool:
        key = self.session_key(token)
        async with self._mutation_lock:
            session = await self.store.get(key)
            if session is None:
                return False
            if add:
                session.active_streams.add(stream_id)
            else:
                session.active_streams.discard(stream_id)
            session.touch(self._clock())
            await self._persist(key, session)
            return True

    async def add_active_stream(self, token: str, stream_id: str) -> bool:
        return await self._mutate_streams(token, stream_id, add=True)

    async def remove_active_stream(self, token: str, stream_id: str) -> bool:
        return await self._mutate_streams(token, stream_id, add=False)

    async def remove(self, token: str) -> None:
        key = self.session_key(token)
        await self.store.delete(key)
        logger.info(f"Session {key[:12]}... removed.")

    async def sessions_for_user(self, user_id: str) -> List[McpSession]:
        return [session for _, session in await self._user_sessions(user_id)]

    async def stats_for_user(self, user_id: str) -> Dict[str, Any]:
        sessions = await self.sessions_for_user(user_id)
        return {
            "sessions": len(sessions),
            "connections": [
                {
                    "connectionId": s.connection_id,
                    "createdAt": s.created_at,
                    "lastActivity": s.last_activity,
                    "activeStreams": len(s.active_streams),
                    "userAgent": s.user_agent,
                }
                for s in sessions
            ],
        }

    async def stats(self) -> Dict[str, Any]:
        """
        totalSessions counts every live session. activeSessions only counts
        those seen within the heartbeat window; the window never deletes.
        """
        now = self._clock()
        sessions = [s for s in [await self.store.get(k) for k in await self.store.keys()] if s is not None]
        durations = [s.last_activity - s.created_at for s in sessions]
        return {
            "totalSessions": len(sessions),
            "activeSessions": sum(1 for s in sessions if now - s.last_activity < self.heartbeat_seconds),
            "totalUsers": len({s.user_id for s in sessions}),
            "avgSessionDurationSeconds": (sum(durations) / len(durations)) if durations else 0.0,
        }


def janitor_interval_for(backend: str, memory_interval: float, redis_interval: float) -> float:
    return redis_interval if backend == "redis" else memory_interval
