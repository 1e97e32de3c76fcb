"""
Pytest config.

Pins the repo root on sys.path so `import bff` works under a global `pytest`
entrypoint, and provides the shared fakes used across the auth tests.
"""

from __future__ import annotations

import fnmatch
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

from bff.auth.config import AuthConfig, load_auth_config  # noqa: E402
from bff.auth.errors import ExchangeFailed, ProfileFetchFailed  # noqa: E402
from bff.auth.models import Identity, ProviderProfile, ProviderToken  # noqa: E402

TEST_SECRET = "test-secret-key-for-testing-purposes-only"


class FakeClock:
    """Whole-second UTC clock that tests advance by hand."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class StubOAuthClient:
    """In-process stand-in for Google: scripted token/profile responses, calls recorded."""

    def __init__(self, profile: Optional[ProviderProfile] = None):
        self.profile = profile or ProviderProfile(
            id="google-123",
            email="ada@example.com",
            verified_email=True,
            name="Ada Lovelace",
            picture="https://example.com/ada.png",
        )
        self.exchange_error: Optional[Exception] = None
        self.profile_error: Optional[Exception] = None
        self.exchanged: List[str] = []
        self.profile_calls = 0

    def build_authorization_url(self, state: str) -> str:
        return f"https://accounts.example.com/auth?state={state}"

    async def exchange_code(self, code: str) -> ProviderToken:
        self.exchanged.append(code)
        if self.exchange_error is not None:
            raise self.exchange_error
        return ProviderToken(access_token=f"access-{code}", expires_in=3599, scope="openid email profile")

    async def fetch_profile(self, token: ProviderToken) -> ProviderProfile:
        self.profile_calls += 1
        if self.profile_error is not None:
            raise self.profile_error
        return self.profile

    def fail_exchange(self, status_code: int = 502) -> None:
        self.exchange_error = ExchangeFailed(detail="scripted", status_code=status_code)

    def fail_profile(self, status_code: int = 502) -> None:
        self.profile_error = ProfileFetchFailed(detail="scripted", status_code=status_code)


class FakePipeline:
    def __init__(self, client: "FakeRedis"):
        self._client = client
        self._ops: List[Tuple[str, tuple, dict]] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc) -> None:
        return None

    def __getattr__(self, name: str):
        def _queue(*args, **kwargs):
            self._ops.append((name, args, kwargs))
            return self

        return _queue

    async def execute(self) -> List[Any]:
        results = []
        for name, args, kwargs in self._ops:
            results.append(await getattr(self._client, name)(*args, **kwargs))
        self._ops = []
        return results


class FakeRedis:
    """Just enough of redis.asyncio for the session and login-state stores, with PX expiry driven by the test clock."""

    def __init__(self, clock):
        self._clock = clock
        self.strings: Dict[str, Tuple[str, Optional[Any]]] = {}
        self.sets: Dict[str, Set[str]] = {}
        self.closed = False

    def _alive(self, key: str) -> bool:
        entry = self.strings.get(key)
        if entry is None:
            return False
        _, expires = entry
        if expires is not None and self._clock() >= expires:
            del self.strings[key]
            return False
        return True

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def get(self, key: str) -> Optional[str]:
        return self.strings[key][0] if self._alive(key) else None

    async def set(self, key: str, value: str, px: Optional[int] = None, nx: bool = False, xx: bool = False):
        exists = self._alive(key)
        if (nx and exists) or (xx and not exists):
            return None
        expires = self._clock() + timedelta(milliseconds=px) if px else None
        self.strings[key] = (value, expires)
        return True

    async def delete(self, *keys: str) -> int:
        n = 0
        for k in keys:
            if self._alive(k):
                del self.strings[k]
                n += 1
            elif k in self.sets:
                del self.sets[k]
                n += 1
        return n

    async def exists(self, key: str) -> int:
        return 1 if self._alive(key) else 0

    async def sadd(self, key: str, *members: str) -> int:
        s = self.sets.setdefault(key, set())
        before = len(s)
        s.update(members)
        return len(s) - before

    async def srem(self, key: str, *members: str) -> int:
        s = self.sets.get(key, set())
        n = len(s & set(members))
        s.difference_update(members)
        if not s:
            self.sets.pop(key, None)
        return n

    async def smembers(self, key: str) -> Set[str]:
        return set(self.sets.get(key, set()))

    async def scan_iter(self, match: str = "*"):
        keys = [k for k in list(self.strings) if self._alive(k)] + list(self.sets)
        for k in keys:
            if fnmatch.fnmatch(k, match):
                yield k

    async def aclose(self) -> None:
        self.closed = True


def make_config(**overrides) -> AuthConfig:
    values = dict(
        google_client_id="client-id",
        google_client_secret="client-secret",
        google_callback_url="http://localhost:8080/auth/callback",
        google_scopes=["openid", "email", "profile"],
        oauth_timeout_seconds=10.0,
        credential_mode="token",
        secret_key=TEST_SECRET,
        credential_ttl_seconds=3600,
        token_issuer="bff-service",
        token_audience="backend-api",
        cookie_name="authToken",
        cookie_domain=None,
        cookie_secure=False,
        header_name="X-Auth-Token",
        session_store_type="memory",
        redis_url=None,
        store_failure_policy="closed",
        session_sweep_seconds=0,
        session_rotate_on_refresh=True,
        frontend_base_url="http://localhost:3000",
        cors_origins=["http://localhost:3000"],
        environment="test",
    )
    if overrides.get("credential_mode") == "session" and "cookie_name" not in overrides:
        values["cookie_name"] = "sessionId"
    values.update(overrides)
    return AuthConfig(**values)


def make_identity(user_id: str = "google-123", **kw) -> Identity:
    ts = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    return Identity(
        id=user_id,
        email=kw.get("email", "ada@example.com"),
        display_name=kw.get("display_name", "Ada Lovelace"),
        picture_url=kw.get("picture_url", "https://example.com/ada.png"),
        created_at=kw.get("created_at", ts),
        updated_at=kw.get("updated_at", ts),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def oauth() -> StubOAuthClient:
    return StubOAuthClient()


@pytest.fixture(autouse=True)
def _clear_config_cache():
    load_auth_config.cache_clear()
    yield
    load_auth_config.cache_clear()
