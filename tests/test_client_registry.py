import pytest

from shipbuilder_mcp.oauth.client_registry import ClientRegistry, validate_redirect_uri
from shipbuilder_mcp.oauth.errors import InvalidRedirectUriError, InvalidRequestError
from shipbuilder_mcp.oauth.models import ClientRegistrationRequest


@pytest.fixture
def registry(clock) -> ClientRegistry:
    return ClientRegistry(clock=clock)


@pytest.mark.parametrize(
    "uri",
    [
        "https://app.example.com/callback",
        "http://localhost:8080/callback",
        "http://127.0.0.1/cb",
        "http://[::1]:3000/cb",
        "cursor://anysphere.cursor-retrieval/oauth/callback",
    ],
)
def test_redirect_uri_accepted(uri):
    validate_redirect_uri(uri)


@pytest.mark.parametrize(
    "uri",
    [
        "http://app.example.com/callback",
        "https://app.example.com/callback#section",
        "https://app.example.com/callback#",
        "/relative/callback",
    ],
)
def test_redirect_uri_rejected(uri):
    with pytest.raises(InvalidRedirectUriError):
        validate_redirect_uri(uri)


@pytest.mark.asyncio
async def test_public_client_registration(registry, clock):
    client = await registry.register(
        ClientRegistrationRequest(client_name="Claude", redirect_uris=["http://localhost:6274/callback"])
    )
    assert client.client_id.startswith(f"mcp_{int(clock()) * 1000}_")
    assert client.client_secret is None
    assert client.token_endpoint_auth_method == "none"
    assert client.code_challenge_methods_supported == ["S256"]
    assert client.scope == "projects:read tasks:read"
    assert await registry.get_client(client.client_id) == client


@pytest.mark.asyncio
async def test_confidential_client_gets_secret(registry):
    client = await registry.register(
        ClientRegistrationRequest(
            client_name="Backend",
            redirect_uris=["https://backend.example.com/cb"],
            grant_types=["authorization_code", "refresh_token"],
            token_endpoint_auth_method="client_secret_post",
            scope="projects:read",
        )
    )
    assert client.client_secret.startswith("secret_")
    assert client.token_endpoint_auth_method == "client_secret_basic"
    assert client.code_challenge_methods_supported is None
    assert client.scope == "projects:read"


@pytest.mark.asyncio
async def test_client_ids_are_unique(registry):
    request = ClientRegistrationRequest(client_name="Claude", redirect_uris=["http://localhost/cb"])
    first = await registry.register(request)
    second = await registry.register(request)
    assert first.client_id != second.client_id


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "request_fields, description",
    [
        ({"redirect_uris": ["http://localhost/cb"]}, "client_name is required"),
        ({"client_name": "Claude"}, "redirect_uris must be a non-empty array"),
        ({"client_name": "Claude", "redirect_uris": []}, "redirect_uris must be a non-empty array"),
    ],
)
async def test_invalid_metadata(registry, request_fields, description):
    with pytest.raises(InvalidRequestError) as exc_info:
        await registry.register(ClientRegistrationRequest(**request_fields))
    assert exc_info.value.error_description == description


@pytest.mark.asyncio
async def test_implicit_grant_rejected(registry):
    with pytest.raises(InvalidRequestError):
        await registry.register(
            ClientRegistrationRequest(
                client_name="Legacy", redirect_uris=["http://localhost/cb"], grant_types=["implicit"]
            )
        )
    assert await registry.get_client("mcp_unknown") is None
