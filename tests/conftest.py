"""Shared test fixtures: controllable clock, fake Redis, wired app client."""

import time
from typing import Any, Dict, List

import fakeredis
import httpx
import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from shipbuilder_mcp.dependencies import build_service_container
from shipbuilder_mcp.main import create_app
from shipbuilder_mcp.mcp_auth import InMemoryUserDirectory, UserInfo
from shipbuilder_mcp.settings import Settings

TEST_JWT_SECRET = "test-secret-for-shipbuilder-mcp"
TEST_USER = UserInfo(user_id="u1", email="ada@example.com", name="Ada Lovelace")

PROJECTS: List[Dict[str, Any]] = [
    {
        "id": "photoshare",
        "name": "PhotoShare",
        "description": "Photo sharing app",
        "status": "active",
        "createdAt": "2025-01-01T00:00:00Z",
        "updatedAt": "2025-01-02T00:00:00Z",
        "tasks": [
            {"id": "t1", "title": "Upload flow", "status": "in_progress", "priority": "high", "details": "S3"},
            {"id": "t2", "title": "Albums", "status": "backlog", "priority": "low", "details": None},
        ],
    },
    {
        "id": "ledger",
        "name": "Ledger",
        "description": "Bookkeeping",
        "status": "archived",
        "tasks": [],
    },
]


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = None):
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_main_app_token(user: UserInfo = TEST_USER, secret: str = TEST_JWT_SECRET, **extra: Any) -> str:
    """A session token as the main application would issue it."""
    now = int(time.time())
    payload = {"userId": user.user_id, "email": user.email, "name": user.name, "iat": now, "exp": now + 3600}
    payload.update(extra)
    return jwt.encode(payload, secret, algorithm="HS256")


def main_api_handler(request: httpx.Request) -> httpx.Response:
    """Stands in for the main application's project API."""
    if not request.headers.get("authorization", "").startswith("Bearer "):
        return httpx.Response(401, json={"error": "unauthorized"})
    if request.url.path == "/api/projects":
        return httpx.Response(200, json=PROJECTS)
    project_id = request.url.path.rsplit("/", 1)[-1]
    for project in PROJECTS:
        if project["id"] == project_id:
            return httpx.Response(200, json=project)
    return httpx.Response(404, json={"error": "not found"})


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis():
    return fakeredis.aioredis.FakeRedis()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        jwt_secret=TEST_JWT_SECRET,
        storage_backend="memory",
        public_base_url="http://testserver",
        frontend_base_url="http://frontend.test",
        api_base_url="http://api.test",
        sse_keepalive_seconds=0.01,
    )


@pytest_asyncio.fixture
async def services(test_settings: Settings):
    api_http_client = httpx.AsyncClient(transport=httpx.MockTransport(main_api_handler))
    container = build_service_container(
        test_settings,
        user_directory=InMemoryUserDirectory([TEST_USER]),
        api_http_client=api_http_client,
    )
    await container.startup()
    yield container
    await container.shutdown()
    await api_http_client.aclose()


@pytest_asyncio.fixture
async def client(test_settings: Settings, services) -> AsyncClient:
    """httpx AsyncClient against an app whose services are already running."""
    app = create_app(test_settings, services=services)
    app.state.services = services
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
