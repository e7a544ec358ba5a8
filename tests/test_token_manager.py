import time

import jwt
import pytest

from shipbuilder_mcp.mcp_auth import McpTokenManager
from shipbuilder_mcp.mcp_auth.token_manager import API_TOKEN_AUDIENCE, API_TOKEN_ISSUER
from shipbuilder_mcp.oauth.errors import ExpiredTokenError, InvalidTokenError, WrongTokenTypeError

from conftest import TEST_JWT_SECRET, TEST_USER, FakeClock, make_main_app_token


@pytest.fixture
def manager() -> McpTokenManager:
    return McpTokenManager(secret=TEST_JWT_SECRET, issuer="shipbuilder-mcp")


def test_mcp_token_claims(manager):
    token = manager.issue_mcp_token(TEST_USER, client_id="mcp_client")
    raw = jwt.decode(token, TEST_JWT_SECRET, algorithms=["HS256"], audience="mcp_client")
    assert raw["sub"] == "u1"
    assert raw["userId"] == "u1"
    assert raw["type"] == "mcp"
    assert raw["scope"] == "projects:read tasks:read"
    assert raw["iss"] == "shipbuilder-mcp"
    assert raw["exp"] - raw["iat"] == 30 * 24 * 60 * 60

    claims = manager.verify_mcp_token(token)
    assert claims.user_id == "u1"
    assert claims.email == "ada@example.com"
    assert claims.audience == "mcp_client"
    assert claims.to_user_info() == TEST_USER


def test_audience_checked_when_requested(manager):
    token = manager.issue_mcp_token(TEST_USER, client_id="mcp_client")
    assert manager.verify_mcp_token(token, audience="mcp_client").user_id == "u1"
    with pytest.raises(InvalidTokenError):
        manager.verify_mcp_token(token, audience="another_client")


def test_main_app_token_is_wrong_type_for_mcp(manager):
    token = make_main_app_token(iss="shipbuilder-mcp")
    with pytest.raises(WrongTokenTypeError) as exc_info:
        manager.verify_mcp_token(token)
    assert exc_info.value.error == "invalid_token"
    assert exc_info.value.error_description == "Wrong token type."


def test_expired_token_is_distinguished(manager):
    issued_long_ago = McpTokenManager(
        secret=TEST_JWT_SECRET,
        issuer="shipbuilder-mcp",
        clock=FakeClock(time.time() - 31 * 24 * 60 * 60),
    )
    token = issued_long_ago.issue_mcp_token(TEST_USER)
    with pytest.raises(ExpiredTokenError) as exc_info:
        manager.verify_mcp_token(token)
    assert exc_info.value.error == "expired_token"
    assert exc_info.value.status_code == 401


def test_bad_signature_and_garbage(manager):
    foreign = McpTokenManager(secret="some-other-secret", issuer="shipbuilder-mcp")
    with pytest.raises(InvalidTokenError):
        manager.verify_mcp_token(foreign.issue_mcp_token(TEST_USER))
    with pytest.raises(InvalidTokenError):
        manager.verify_mcp_token("not-a-jwt")


def test_verify_any_token_accepts_main_app_tokens(manager):
    user = manager.verify_any_token(make_main_app_token())
    assert user == TEST_USER
    assert manager.verify_any_token(manager.issue_mcp_token(TEST_USER, "mcp_client")).user_id == "u1"


def test_api_token_targets_main_application(manager):
    token = manager.issue_api_token(TEST_USER)
    raw = jwt.decode(
        token, TEST_JWT_SECRET, algorithms=["HS256"], audience=API_TOKEN_AUDIENCE, issuer=API_TOKEN_ISSUER
    )
    assert raw["userId"] == "u1"
    assert raw["provider"] == "mcp-service"
    assert raw["exp"] - raw["iat"] == 3600


def test_empty_secret_rejected():
    with pytest.raises(ValueError):
        McpTokenManager(secret="", issuer="shipbuilder-mcp")
