import fakeredis
import pytest
import pytest_asyncio
from redis.exceptions import RedisError

from shipbuilder_mcp.oauth.models import PendingAuthorizationParams
from shipbuilder_mcp.oauth.pending_auth import (
    InMemoryPendingAuthBackend,
    PendingAuthorizationStore,
    RedisPendingAuthBackend,
)

from conftest import FakeClock


def _params(**overrides) -> PendingAuthorizationParams:
    values = dict(
        client_id="mcp_client",
        redirect_uri="http://localhost:8080/callback",
        state="xyz",
        code_challenge="challenge-value",
        code_challenge_method="S256",
    )
    values.update(overrides)
    return PendingAuthorizationParams(**values)


@pytest_asyncio.fixture
async def store(clock: FakeClock):
    pending = PendingAuthorizationStore(InMemoryPendingAuthBackend(), ttl_seconds=300, clock=clock)
    await pending.initialize()
    yield pending
    await pending.shutdown()


@pytest.mark.asyncio
async def test_create_and_get(store):
    auth_id = await store.create(_params())
    entry = await store.get(auth_id)
    assert entry.id == auth_id
    assert entry.client_id == "mcp_client"
    assert entry.scope == "projects:read tasks:read"
    assert entry.user_id is None
    assert entry.expires_at - entry.created_at == 300


@pytest.mark.asyncio
async def test_public_view_hides_code_challenge(store):
    auth_id = await store.create(_params())
    view = (await store.get(auth_id)).public_view()
    assert "code_challenge" not in view
    assert view["redirect_uri"] == "http://localhost:8080/callback"


@pytest.mark.asyncio
async def test_update_binds_user_without_extending_expiry(store, clock):
    auth_id = await store.create(_params())
    clock.advance(100)
    assert await store.update(auth_id, "u1")

    entry = await store.get(auth_id)
    assert entry.user_id == "u1"
    clock.advance(201)
    assert await store.get(auth_id) is None


@pytest.mark.asyncio
async def test_expiry_is_idempotent(store, clock):
    auth_id = await store.create(_params())
    clock.advance(301)
    assert await store.get(auth_id) is None
    assert await store.get(auth_id) is None
    assert not await store.update(auth_id, "u1")


@pytest.mark.asyncio
async def test_unknown_id(store):
    assert await store.get("does-not-exist") is None
    assert not await store.update("does-not-exist", "u1")


@pytest.mark.asyncio
async def test_delete_and_stats(store):
    first = await store.create(_params())
    second = await store.create(_params())
    await store.update(second, "u1")
    assert await store.stats() == {"total": 2, "withUser": 1}

    await store.delete(first)
    assert await store.get(first) is None
    assert await store.stats() == {"total": 1, "withUser": 1}


@pytest.mark.asyncio
async def test_cleanup_removes_expired(store, clock):
    await store.create(_params())
    clock.advance(200)
    live = await store.create(_params())
    clock.advance(150)

    assert await store.cleanup() == 1
    assert await store.get(live) is not None


@pytest.mark.asyncio
async def test_redis_backend_uses_setex(fake_redis, clock):
    store = PendingAuthorizationStore(RedisPendingAuthBackend(client=fake_redis), ttl_seconds=300, clock=clock)
    await store.initialize()
    auth_id = await store.create(_params())

    key = f"{RedisPendingAuthBackend.KEY_PREFIX}{auth_id}"
    assert 0 < await fake_redis.ttl(key) <= 300
    assert await store.update(auth_id, "u1")
    assert (await store.get(auth_id)).user_id == "u1"

    await store.delete(auth_id)
    assert await fake_redis.get(key) is None


@pytest.mark.asyncio
async def test_redis_outage_falls_back_to_memory(clock):
    server = fakeredis.FakeServer()
    redis_client = fakeredis.aioredis.FakeRedis(server=server)
    store = PendingAuthorizationStore(
        RedisPendingAuthBackend(client=redis_client),
        ttl_seconds=300,
        clock=clock,
        fallback=InMemoryPendingAuthBackend(),
    )
    server.connected = False
    await store.initialize()

    auth_id = await store.create(_params())
    assert (await store.get(auth_id)).client_id == "mcp_client"
    assert await store.update(auth_id, "u1")
    assert (await store.get(auth_id)).user_id == "u1"

    # Entries written during the outage stay reachable once Redis is back
    server.connected = True
    assert (await store.get(auth_id)).user_id == "u1"
    await store.delete(auth_id)
    assert await store.get(auth_id) is None
    await store.shutdown()


@pytest.mark.asyncio
async def test_redis_outage_without_fallback_propagates(clock):
    server = fakeredis.FakeServer()
    store = PendingAuthorizationStore(
        RedisPendingAuthBackend(client=fakeredis.aioredis.FakeRedis(server=server)), clock=clock
    )
    server.connected = False
    with pytest.raises(RedisError):
        await store.create(_params())
