"""
Server-side record of in-flight logins.

`start_login` puts one entry per attempt, keyed by a server nonce that the browser only
holds inside the signed state cookie. The callback takes the entry back out. `take` is
an atomic read-and-delete, so each entry answers exactly one callback.
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, Optional, Protocol

import redis.asyncio as redis
from redis import exceptions as redis_exceptions

from bff.auth.errors import StoreUnavailable
from bff.auth.models import _iso, _parse_dt, utcnow

logger = logging.getLogger(__name__)

LOGIN_STATE_TTL_SECONDS = 10 * 60

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class PendingLogin:
    nonce: str
    state: str
    redirect_url: str
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nonce": self.nonce,
            "state": self.state,
            "redirectUrl": self.redirect_url,
            "expiresAt": _iso(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingLogin":
        return cls(
            nonce=str(data["nonce"]),
            state=str(data["state"]),
            redirect_url=str(data["redirectUrl"]),
            expires_at=_parse_dt(data["expiresAt"]),
        )


class LoginStateStore(Protocol):
    async def put(self, pending: PendingLogin) -> None:
        ...

    async def take(self, nonce: str) -> Optional[PendingLogin]:
        ...

    async def close(self) -> None:
        ...


class InMemoryLoginStateStore:
    def __init__(self, *, clock: Optional[Clock] = None):
        self._clock = clock or utcnow
        self._lock = threading.Lock()
        self._pending: Dict[str, PendingLogin] = {}

    async def put(self, pending: PendingLogin) -> None:
        now = self._clock()
        with self._lock:
            # Abandoned logins are pruned here; there is no separate sweep.
            for nonce in [n for n, p in self._pending.items() if p.expires_at <= now]:
                del self._pending[nonce]
            self._pending[pending.nonce] = pending

    async def take(self, nonce: str) -> Optional[PendingLogin]:
        if not nonce:
            return None
        with self._lock:
            pending = self._pending.pop(nonce, None)
        if pending is None or pending.expires_at <= self._clock():
            return None
        return pending

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    async def close(self) -> None:
        return None


class RedisLoginStateStore:
    """`{prefix}:login:{nonce}` -> JSON, with a native TTL. Shared by every instance behind the balancer."""

    def __init__(self, client: Any, *, prefix: str = "bff", clock: Optional[Clock] = None):
        self._client = client
        self._prefix = prefix
        self._clock = clock or utcnow

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisLoginStateStore":
        client = redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        return cls(client, **kwargs)

    def _key(self, nonce: str) -> str:
        return f"{self._prefix}:login:{nonce}"

    @contextmanager
    def _guard(self, op: str) -> Iterator[None]:
        try:
            yield
        except redis_exceptions.RedisError as e:
            logger.warning("Login state store %s failed: %s", op, str(e))
            raise StoreUnavailable(detail=f"redis login-state {op}: {e}") from e

    async def put(self, pending: PendingLogin) -> None:
        ttl_ms = max(1, int((pending.expires_at - self._clock()).total_seconds() * 1000))
        payload = json.dumps(pending.to_dict(), separators=(",", ":"), sort_keys=True)
        with self._guard("put"):
            await self._client.set(self._key(pending.nonce), payload, px=ttl_ms, nx=True)

    async def take(self, nonce: str) -> Optional[PendingLogin]:
        if not nonce:
            return None
        key = self._key(nonce)
        with self._guard("take"):
            # GET + DEL in one MULTI: two concurrent callbacks cannot both read the entry.
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.get(key)
                pipe.delete(key)
                raw, _ = await pipe.execute()
        if raw is None:
            return None
        try:
            pending = PendingLogin.from_dict(json.loads(raw))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Discarding unreadable login state: %s", str(e))
            return None
        if pending.expires_at <= self._clock():
            return None
        return pending

    async def close(self) -> None:
        with self._guard("close"):
            await self._client.aclose()


def build_login_state_store(store_type: str, *, redis_url: Optional[str] = None, clock: Optional[Clock] = None):
    if store_type == "redis":
        if not redis_url:
            raise ValueError("REDIS_URL is required when SESSION_STORE_TYPE=redis")
        return RedisLoginStateStore.from_url(redis_url, clock=clock)
    return InMemoryLoginStateStore(clock=clock)
