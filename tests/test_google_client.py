from __future__ import annotations

import time
from typing import Any, Dict, Optional
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from bff.auth.errors import ExchangeFailed, ProfileFetchFailed
from bff.auth.google import TOKEN_ENDPOINT, USERINFO_ENDPOINT, GoogleOAuthClient
from bff.auth.models import ProviderToken
from conftest import make_config


def _resp(status_code: int, payload: Optional[Any] = None, text: str = "") -> MagicMock:
    r = MagicMock()
    r.status_code = status_code
    if payload is None:
        r.json.side_effect = ValueError("no json")
    else:
        r.json.return_value = payload
    r.text = text
    return r


def _client(http: MagicMock) -> GoogleOAuthClient:
    return GoogleOAuthClient(
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="http://localhost:8080/auth/callback",
        timeout_seconds=2.0,
        http=http,
    )


def test_authorization_url_carries_oauth_params() -> None:
    url = _client(MagicMock()).build_authorization_url("xyz")
    parsed = urlparse(url)
    qs = parse_qs(parsed.query)
    assert parsed.netloc == "accounts.google.com"
    assert qs["client_id"] == ["client-id"]
    assert qs["redirect_uri"] == ["http://localhost:8080/auth/callback"]
    assert qs["response_type"] == ["code"]
    assert qs["scope"] == ["openid email profile"]
    assert qs["access_type"] == ["offline"]
    assert qs["prompt"] == ["consent"]
    assert qs["state"] == ["xyz"]


def test_from_config() -> None:
    c = GoogleOAuthClient.from_config(make_config(google_scopes=["openid", "email"]))
    qs = parse_qs(urlparse(c.build_authorization_url("s")).query)
    assert qs["scope"] == ["openid email"]
    assert qs["client_id"] == ["client-id"]


@pytest.mark.asyncio
async def test_exchange_code_posts_form_and_parses_token() -> None:
    http = MagicMock()
    http.post.return_value = _resp(
        200, {"access_token": "ya29.abc", "expires_in": 3599, "token_type": "Bearer", "scope": "openid"}
    )
    token = await _client(http).exchange_code("the-code")
    assert token.access_token == "ya29.abc"
    assert token.expires_in == 3599

    args, kwargs = http.post.call_args
    assert args[0] == TOKEN_ENDPOINT
    assert kwargs["timeout"] == 2.0
    data: Dict[str, str] = kwargs["data"]
    assert data["code"] == "the-code"
    assert data["grant_type"] == "authorization_code"
    assert data["client_secret"] == "client-secret"


@pytest.mark.asyncio
async def test_exchange_rejected_by_provider_is_client_error() -> None:
    http = MagicMock()
    http.post.return_value = _resp(400, {"error": "invalid_grant", "error_description": "Bad Request"})
    with pytest.raises(ExchangeFailed) as ei:
        await _client(http).exchange_code("used-code")
    assert ei.value.status_code == 400
    assert "invalid_grant" in (ei.value.detail or "")


@pytest.mark.asyncio
async def test_exchange_provider_outage_is_bad_gateway() -> None:
    http = MagicMock()
    http.post.return_value = _resp(503, None, text="unavailable")
    with pytest.raises(ExchangeFailed) as ei:
        await _client(http).exchange_code("code")
    assert ei.value.status_code == 502


@pytest.mark.asyncio
async def test_exchange_network_error_is_bad_gateway() -> None:
    http = MagicMock()
    http.post.side_effect = requests.ConnectionError("refused")
    with pytest.raises(ExchangeFailed) as ei:
        await _client(http).exchange_code("code")
    assert ei.value.status_code == 502
    assert "ConnectionError" in (ei.value.detail or "")


@pytest.mark.asyncio
async def test_exchange_timeout() -> None:
    http = MagicMock()
    http.post.side_effect = requests.Timeout("slow")
    with pytest.raises(ExchangeFailed):
        await _client(http).exchange_code("code")


@pytest.mark.asyncio
async def test_exchange_response_without_access_token() -> None:
    http = MagicMock()
    http.post.return_value = _resp(200, {"token_type": "Bearer"})
    with pytest.raises(ExchangeFailed):
        await _client(http).exchange_code("code")


@pytest.mark.asyncio
@pytest.mark.parametrize("expires_in", [[3599], {"seconds": 3599}, "soon"])
async def test_exchange_malformed_expires_in_is_bad_gateway(expires_in) -> None:
    http = MagicMock()
    http.post.return_value = _resp(200, {"access_token": "ya29.abc", "expires_in": expires_in})
    with pytest.raises(ExchangeFailed) as ei:
        await _client(http).exchange_code("code")
    assert ei.value.status_code == 502
    assert "invalid token response" in (ei.value.detail or "")


@pytest.mark.asyncio
async def test_fetch_profile_sends_bearer_and_parses_userinfo() -> None:
    http = MagicMock()
    http.get.return_value = _resp(
        200,
        {
            "id": "1234567890",
            "email": "ada@example.com",
            "verified_email": True,
            "name": "Ada Lovelace",
            "picture": "https://example.com/ada.png",
        },
    )
    profile = await _client(http).fetch_profile(ProviderToken(access_token="ya29.abc"))
    assert profile.id == "1234567890"
    assert profile.name == "Ada Lovelace"
    assert profile.verified_email is True

    args, kwargs = http.get.call_args
    assert args[0] == USERINFO_ENDPOINT
    assert kwargs["headers"]["Authorization"] == "Bearer ya29.abc"


@pytest.mark.asyncio
async def test_fetch_profile_accepts_oidc_sub() -> None:
    http = MagicMock()
    http.get.return_value = _resp(200, {"sub": "abc", "email": "a@example.com", "email_verified": True})
    profile = await _client(http).fetch_profile(ProviderToken(access_token="t"))
    assert profile.id == "abc"
    assert profile.name is None


@pytest.mark.asyncio
async def test_fetch_profile_revoked_token() -> None:
    http = MagicMock()
    http.get.return_value = _resp(401, {"error": {"code": 401, "message": "Invalid Credentials", "status": "UNAUTHENTICATED"}})
    with pytest.raises(ProfileFetchFailed) as ei:
        await _client(http).fetch_profile(ProviderToken(access_token="t"))
    assert ei.value.status_code == 400
    assert "UNAUTHENTICATED" in (ei.value.detail or "")


@pytest.mark.asyncio
async def test_fetch_profile_missing_id() -> None:
    http = MagicMock()
    http.get.return_value = _resp(200, {"email": "a@example.com"})
    with pytest.raises(ProfileFetchFailed) as ei:
        await _client(http).fetch_profile(ProviderToken(access_token="t"))
    assert ei.value.status_code == 502


@pytest.mark.asyncio
async def test_hung_provider_call_is_bounded() -> None:
    http = MagicMock()
    http.post.side_effect = lambda *a, **kw: time.sleep(1.5)
    client = GoogleOAuthClient(
        client_id="id", client_secret="s", redirect_uri="http://x/cb", timeout_seconds=0.01, http=http
    )
    with pytest.raises(ExchangeFailed) as ei:
        await client.exchange_code("code")
    assert "timed out" in (ei.value.detail or "")


@pytest.mark.asyncio
async def test_fetch_profile_non_object_payload() -> None:
    http = MagicMock()
    http.get.return_value = _resp(200, ["not", "an", "object"])
    with pytest.raises(ProfileFetchFailed) as ei:
        await _client(http).fetch_profile(ProviderToken(access_token="t"))
    assert ei.value.status_code == 502
