from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from bff.auth.credentials import SessionCredentialIssuer, TokenCredentialIssuer
from bff.auth.deps import OPTIONAL, REQUIRED, AuthMiddleware, AuthOptions, extract_credential
from bff.auth.errors import CredentialInvalid, CredentialMissing, StoreUnavailable, Unauthenticated
from bff.auth.orchestrator import AuthOrchestrator
from bff.auth.tokens import TokenCodec
from conftest import TEST_SECRET, StubOAuthClient, make_identity


class _DownStore:
    async def get(self, session_id):
        raise StoreUnavailable(detail="down")


def _orch(clock) -> AuthOrchestrator:
    codec = TokenCodec(TEST_SECRET, clock=clock)
    return AuthOrchestrator(
        oauth=StubOAuthClient(), issuer=TokenCredentialIssuer(codec, 3600), frontend_base_url="http://x"
    )


def _down_orch(clock) -> AuthOrchestrator:
    issuer = SessionCredentialIssuer(_DownStore(), 3600, clock=clock)
    return AuthOrchestrator(oauth=StubOAuthClient(), issuer=issuer, frontend_base_url="http://x")


def _mw(orch, options=REQUIRED, fail_open=False) -> AuthMiddleware:
    return AuthMiddleware(orch, cookie_name="authToken", header_name="X-Auth-Token", options=options, fail_open=fail_open)


def _request(cookies=None, headers=None) -> MagicMock:
    req = MagicMock()
    req.cookies = cookies or {}
    req.headers = {k.lower(): v for k, v in (headers or {}).items()}
    return req


def test_extract_credential_precedence() -> None:
    kw = dict(cookie_name="authToken", header_name="x-auth-token")
    assert extract_credential(_request({"authToken": "c"}, {"Authorization": "Bearer b", "X-Auth-Token": "h"}), **kw) == "c"
    assert extract_credential(_request({}, {"Authorization": "Bearer b", "X-Auth-Token": "h"}), **kw) == "b"
    assert extract_credential(_request({}, {"Authorization": "Basic abc", "X-Auth-Token": "h"}), **kw) == "h"
    assert extract_credential(_request({"authToken": "  "}, {"Authorization": "Bearer "}), **kw) is None


@pytest.mark.asyncio
async def test_required_without_credential(clock) -> None:
    with pytest.raises(Unauthenticated):
        await _mw(_orch(clock)).authenticate(None)


@pytest.mark.asyncio
async def test_optional_guest_without_credential(clock) -> None:
    assert await _mw(_orch(clock), OPTIONAL).authenticate(None) is None


@pytest.mark.asyncio
async def test_not_required_but_no_guest(clock) -> None:
    with pytest.raises(CredentialMissing):
        await _mw(_orch(clock), AuthOptions(required=False, allow_guest=False)).authenticate(None)


@pytest.mark.asyncio
async def test_invalid_credential(clock) -> None:
    with pytest.raises(CredentialInvalid):
        await _mw(_orch(clock)).authenticate("garbage")
    assert await _mw(_orch(clock), OPTIONAL).authenticate("garbage") is None


@pytest.mark.asyncio
async def test_valid_credential(clock) -> None:
    token = TokenCodec(TEST_SECRET, clock=clock).issue(make_identity())
    ident = await _mw(_orch(clock)).authenticate(token)
    assert ident.id == "google-123"


@pytest.mark.asyncio
@pytest.mark.parametrize("fail_open", [False, True])
async def test_store_outage_on_required_route_fails_closed(clock, fail_open) -> None:
    with pytest.raises(StoreUnavailable):
        await _mw(_down_orch(clock), REQUIRED, fail_open=fail_open).authenticate("sid")


@pytest.mark.asyncio
async def test_store_outage_on_guest_route(clock) -> None:
    with pytest.raises(StoreUnavailable):
        await _mw(_down_orch(clock), OPTIONAL, fail_open=False).authenticate("sid")
    assert await _mw(_down_orch(clock), OPTIONAL, fail_open=True).authenticate("sid") is None


@pytest.mark.asyncio
async def test_call_attaches_identity_to_request(clock) -> None:
    token = TokenCodec(TEST_SECRET, clock=clock).issue(make_identity())
    req = _request(headers={"Authorization": f"Bearer {token}"})
    ident = await _mw(_orch(clock))(req)
    assert req.state.identity == ident
    assert req.state.credential == token


@pytest.mark.asyncio
async def test_call_guest_has_no_credential(clock) -> None:
    req = _request(cookies={"authToken": "garbage"})
    assert await _mw(_orch(clock), OPTIONAL)(req) is None
    assert req.state.identity is None
    assert req.state.credential is None
