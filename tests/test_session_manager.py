import asyncio

import pytest

from shipbuilder_mcp.mcp_auth import UserInfo
from shipbuilder_mcp.sessions import InMemorySessionStore, McpSessionManager, RedisSessionStore, RequestMeta

from conftest import TEST_USER, FakeClock

SESSION_SECRET = "session-key-secret"


@pytest.fixture
def manager(clock: FakeClock) -> McpSessionManager:
    return McpSessionManager(InMemorySessionStore(clock=clock), secret=SESSION_SECRET, clock=clock)


@pytest.mark.asyncio
async def test_get_or_create_reuses_session(manager):
    first = await manager.get_or_create("token-a", TEST_USER, RequestMeta(user_agent="claude-desktop/1.0"))
    second = await manager.get_or_create("token-a", TEST_USER)

    assert first.connection_id == second.connection_id
    assert first.connection_id.startswith("conn_")
    assert second.user_agent == "claude-desktop/1.0"
    assert second.email == "ada@example.com"


@pytest.mark.asyncio
async def test_session_key_never_contains_token(manager):
    key = manager.session_key("very-secret-bearer-token")
    assert "very-secret-bearer-token" not in key
    assert key == manager.session_key("very-secret-bearer-token")
    assert key != manager.session_key("another-token")

    await manager.get_or_create("very-secret-bearer-token", TEST_USER)
    assert await manager.store.keys() == [key]


@pytest.mark.asyncio
async def test_sliding_expiry(manager, clock):
    session = await manager.get_or_create("token-a", TEST_USER)

    # Accessed every seven hours, the session outlives its eight-hour TTL
    for _ in range(3):
        clock.advance(7 * 3600)
        assert (await manager.get("token-a")).connection_id == session.connection_id

    clock.advance(8 * 3600 + 1)
    assert await manager.get("token-a") is None


@pytest.mark.asyncio
async def test_idle_session_expires_and_is_replaced(manager, clock):
    # Created, idle past the TTL, then a new session under the same token
    original = await manager.get_or_create("token-a", TEST_USER)
    clock.advance(8 * 3600 + 1)
    assert await manager.get("token-a") is None

    replacement = await manager.get_or_create("token-a", TEST_USER)
    assert replacement.connection_id != original.connection_id
    assert replacement.event_sequence == 0


@pytest.mark.asyncio
async def test_event_sequence_is_monotonic_per_session(manager):
    await manager.get_or_create("token-a", TEST_USER)
    await manager.get_or_create("token-b", TEST_USER)

    assert [await manager.next_event_sequence("token-a") for _ in range(3)] == [1, 2, 3]
    assert await manager.next_event_sequence("token-b") == 1
    assert await manager.next_event_sequence("token-a") == 4
    # No session behind the token: nothing to count against
    assert await manager.next_event_sequence("token-unknown") == 1
    assert await manager.next_event_sequence("token-unknown") == 1


class YieldingSessionStore(InMemorySessionStore):
    """Suspends on every read and write, the way a network-backed store does."""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)

    async def set(self, key, session, ttl_seconds):
        await asyncio.sleep(0)
        await super().set(key, session, ttl_seconds)


@pytest.mark.asyncio
async def test_concurrent_access_never_rewinds_session(clock):
    manager = McpSessionManager(YieldingSessionStore(clock=clock), secret=SESSION_SECRET, clock=clock)
    await manager.get_or_create("token-a", TEST_USER)
    key = manager.session_key("token-a")
    for _ in range(3):
        await manager.next_event_sequence_by_key(key)

    sequence, _ = await asyncio.gather(manager.next_event_sequence_by_key(key), manager.get_by_key(key))
    assert sequence == 4
    assert await manager.next_event_sequence_by_key(key) == 5

    await asyncio.gather(
        manager.update_context_by_key(key, {"step": 1}),
        manager.get_or_create("token-a", TEST_USER),
        manager.add_active_stream("token-a", "stream-1"),
        manager.get_by_key(key),
    )
    session = await manager.get_by_key(key)
    assert session.context == {"step": 1}
    assert session.active_streams == {"stream-1"}
    assert session.event_sequence == 5


@pytest.mark.asyncio
async def test_update_context_merges(manager):
    await manager.get_or_create("token-a", TEST_USER)
    assert await manager.update_context("token-a", {"step": 1, "project": "photoshare"})
    assert await manager.update_context("token-a", {"step": 2})
    assert (await manager.get("token-a")).context == {"step": 2, "project": "photoshare"}
    assert not await manager.update_context("token-missing", {"step": 1})


@pytest.mark.asyncio
async def test_replace_context_drops_missing_keys(manager):
    await manager.get_or_create("token-a", TEST_USER)
    key = manager.session_key("token-a")
    assert await manager.update_context_by_key(key, {"step": 1, "project": "photoshare"})
    assert await manager.replace_context_by_key(key, {"step": 2})
    assert (await manager.get("token-a")).context == {"step": 2}
    assert not await manager.replace_context_by_key("missing", {})


@pytest.mark.asyncio
async def test_find_by_connection_id_is_scoped_to_user(manager):
    session = await manager.get_or_create("token-a", TEST_USER)
    other = UserInfo(user_id="u2", email="grace@example.com", name="Grace Hopper")

    key, found = await manager.find_by_connection_id("u1", session.connection_id)
    assert key == manager.session_key("token-a")
    assert found.connection_id == session.connection_id
    assert await manager.find_by_connection_id(other.user_id, session.connection_id) is None
    assert await manager.find_by_connection_id("u1", "conn_unknown") is None


@pytest.mark.asyncio
async def test_find_for_user_prefers_most_recent(manager, clock):
    await manager.get_or_create("token-old", TEST_USER)
    clock.advance(60)
    recent = await manager.get_or_create("token-new", TEST_USER)

    key, session = await manager.find_for_user("u1")
    assert key == manager.session_key("token-new")
    assert session.connection_id == recent.connection_id
    assert await manager.find_for_user("nobody") is None


@pytest.mark.asyncio
async def test_active_streams(manager):
    await manager.get_or_create("token-a", TEST_USER)
    assert await manager.add_active_stream("token-a", "stream-1")
    assert await manager.add_active_stream("token-a", "stream-2")
    assert (await manager.get("token-a")).active_streams == {"stream-1", "stream-2"}

    assert await manager.remove_active_stream("token-a", "stream-1")
    assert (await manager.get("token-a")).active_streams == {"stream-2"}
    assert not await manager.add_active_stream("token-missing", "stream-1")


@pytest.mark.asyncio
async def test_stats(manager, clock):
    await manager.get_or_create("token-a", TEST_USER)
    await manager.get_or_create("token-b", UserInfo(user_id="u2", email="g@example.com", name="Grace"))
    clock.advance(600)
    await manager.get("token-a")

    stats = await manager.stats()
    assert stats["totalSessions"] == 2
    assert stats["totalUsers"] == 2
    # Outside the heartbeat window but still alive
    assert stats["activeSessions"] == 1
    assert stats["avgSessionDurationSeconds"] == 300

    user_stats = await manager.stats_for_user("u1")
    assert user_stats["sessions"] == 1
    assert user_stats["connections"][0]["activeStreams"] == 0


@pytest.mark.asyncio
async def test_remove(manager):
    await manager.get_or_create("token-a", TEST_USER)
    await manager.remove("token-a")
    assert await manager.get("token-a") is None
    assert await manager.sessions_for_user("u1") == []


@pytest.mark.asyncio
async def test_redis_backed_manager(fake_redis):
    clock = FakeClock()
    manager = McpSessionManager(RedisSessionStore(client=fake_redis), secret=SESSION_SECRET, clock=clock)
    await manager.start()
    try:
        session = await manager.get_or_create("token-a", TEST_USER)
        assert await manager.next_event_sequence("token-a") == 1
        assert await manager.update_context("token-a", {"step": 1})

        # A second manager on the same Redis sees the same state
        replica = McpSessionManager(RedisSessionStore(client=fake_redis), secret=SESSION_SECRET, clock=clock)
        loaded = await replica.get("token-a")
        assert loaded.connection_id == session.connection_id
        assert loaded.event_sequence == 1
        assert loaded.context == {"step": 1}
    finally:
        await manager.shutdown()


def test_rejects_missing_secret(clock):
    with pytest.raises(ValueError):
        McpSessionManager(InMemorySessionStore(clock=clock), secret="", clock=clock)
