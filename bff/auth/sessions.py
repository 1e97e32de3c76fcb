from __future__ import annotations

import asyncio
import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, Optional, Protocol, Set

import redis.asyncio as redis
from redis import exceptions as redis_exceptions

from bff.auth.errors import StoreUnavailable
from bff.auth.models import Identity, Session, utcnow
from bff.auth.util import random_token

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def new_session_id() -> str:
    return random_token(32)


class SessionStore(Protocol):
    """
    Server-side session lifecycle.

    Expired entries are indistinguishable from missing ones. Networked backends raise
    StoreUnavailable when they cannot be reached; they never report that as "not found".
    """

    async def create(self, owner_id: str, expires_at: datetime, *, identity: Optional[Identity] = None) -> Session:
        ...

    async def get(self, session_id: str) -> Optional[Session]:
        ...

    async def update(self, session_id: str, fields: Dict[str, Any]) -> Optional[Session]:
        ...

    async def delete(self, session_id: str) -> bool:
        ...

    async def delete_all_for_owner(self, owner_id: str) -> bool:
        ...

    async def sweep_expired(self) -> int:
        ...

    async def count(self) -> int:
        ...

    async def close(self) -> None:
        ...


class InMemorySessionStore:
    """
    Process-local store for dev and single-instance deployments.

    Every mutation runs under one lock with no await inside, so a single call is
    atomic even when handlers run on worker threads.
    """

    def __init__(self, *, clock: Optional[Clock] = None):
        self._clock = clock or utcnow
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}
        self._by_owner: Dict[str, Set[str]] = {}

    async def create(self, owner_id: str, expires_at: datetime, *, identity: Optional[Identity] = None) -> Session:
        session = Session(
            session_id=new_session_id(),
            owner_id=owner_id,
            expires_at=expires_at,
            created_at=self._clock(),
            identity=identity,
        )
        with self._lock:
            self._sessions[session.session_id] = session
            self._by_owner.setdefault(owner_id, set()).add(session.session_id)
        return session

    async def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._live(session_id)

    async def update(self, session_id: str, fields: Dict[str, Any]) -> Optional[Session]:
        with self._lock:
            current = self._live(session_id)
            if current is None:
                return None
            updated = current.merged(fields)
            self._sessions[session_id] = updated
            return updated

    async def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._remove(session_id)

    async def delete_all_for_owner(self, owner_id: str) -> bool:
        with self._lock:
            ids = self._by_owner.pop(owner_id, None)
            if not ids:
                return False
            for sid in ids:
                self._sessions.pop(sid, None)
            return True

    async def sweep_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
            for sid in expired:
                self._remove(sid)
        return len(expired)

    async def count(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for s in self._sessions.values() if not s.is_expired(now))

    async def close(self) -> None:
        return None

    # Callers must hold self._lock.
    def _live(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if session.is_expired(self._clock()):
            self._remove(session_id)
            return None
        return session

    def _remove(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        owned = self._by_owner.get(session.owner_id)
        if owned is not None:
            owned.discard(session_id)
            if not owned:
                del self._by_owner[session.owner_id]
        return True


class RedisSessionStore:
    """
    Redis-backed store.

    Layout:
    - `{prefix}:session:{id}` -> JSON record, with a native TTL matching expiresAt
    - `{prefix}:owner:{owner_id}` -> set of session ids (index for delete_all_for_owner)
    """

    def __init__(self, client: Any, *, prefix: str = "bff", clock: Optional[Clock] = None):
        self._client = client
        self._prefix = prefix
        self._clock = clock or utcnow

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisSessionStore":
        client = redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        return cls(client, **kwargs)

    def _key(self, session_id: str) -> str:
        return f"{self._prefix}:session:{session_id}"

    def _owner_key(self, owner_id: str) -> str:
        return f"{self._prefix}:owner:{owner_id}"

    def _ttl_ms(self, expires_at: datetime) -> int:
        # Redis rejects non-positive expiries; an already-expired record lives for 1ms.
        return max(1, int((expires_at - self._clock()).total_seconds() * 1000))

    @contextmanager
    def _guard(self, op: str) -> Iterator[None]:
        try:
            yield
        except redis_exceptions.RedisError as e:
            logger.warning("Session store %s failed: %s", op, str(e))
            raise StoreUnavailable(detail=f"redis {op}: {e}") from e

    def _decode(self, raw: Any) -> Optional[Session]:
        try:
            return Session.from_dict(json.loads(raw))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Discarding unreadable session record: %s", str(e))
            return None

    async def create(self, owner_id: str, expires_at: datetime, *, identity: Optional[Identity] = None) -> Session:
        session = Session(
            session_id=new_session_id(),
            owner_id=owner_id,
            expires_at=expires_at,
            created_at=self._clock(),
            identity=identity,
        )
        payload = json.dumps(session.to_dict(), separators=(",", ":"), sort_keys=True)
        with self._guard("create"):
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.set(self._key(session.session_id), payload, px=self._ttl_ms(expires_at), nx=True)
                pipe.sadd(self._owner_key(owner_id), session.session_id)
                await pipe.execute()
        return session

    async def get(self, session_id: str) -> Optional[Session]:
        if not session_id:
            return None
        with self._guard("get"):
            raw = await self._client.get(self._key(session_id))
        if raw is None:
            return None
        session = self._decode(raw)
        if session is None or session.session_id != session_id:
            return None
        if session.is_expired(self._clock()):
            await self.delete(session_id)
            return None
        return session

    async def update(self, session_id: str, fields: Dict[str, Any]) -> Optional[Session]:
        current = await self.get(session_id)
        if current is None:
            return None
        updated = current.merged(fields)
        payload = json.dumps(updated.to_dict(), separators=(",", ":"), sort_keys=True)
        with self._guard("update"):
            # XX: never resurrect a record deleted concurrently (logout wins over refresh).
            ok = await self._client.set(self._key(session_id), payload, px=self._ttl_ms(updated.expires_at), xx=True)
        return updated if ok else None

    async def delete(self, session_id: str) -> bool:
        if not session_id:
            return False
        key = self._key(session_id)
        with self._guard("delete"):
            raw = await self._client.get(key)
            if raw is None:
                return False
            session = self._decode(raw)
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                if session is not None:
                    pipe.srem(self._owner_key(session.owner_id), session_id)
                results = await pipe.execute()
        return bool(results and results[0])

    async def delete_all_for_owner(self, owner_id: str) -> bool:
        owner_key = self._owner_key(owner_id)
        with self._guard("delete_all_for_owner"):
            members = await self._client.smembers(owner_key)
            if not members:
                return False
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.delete(*[self._key(sid) for sid in members])
                pipe.delete(owner_key)
                await pipe.execute()
        return True

    async def sweep_expired(self) -> int:
        """
        Records expire natively in Redis; this prunes owner-index entries that point at
        records which are gone. Returns the number of pruned entries.
        """
        pruned = 0
        with self._guard("sweep"):
            async for owner_key in self._client.scan_iter(match=f"{self._prefix}:owner:*"):
                members = await self._client.smembers(owner_key)
                for sid in members:
                    if not await self._client.exists(self._key(sid)):
                        await self._client.srem(owner_key, sid)
                        pruned += 1
        return pruned

    async def count(self) -> int:
        n = 0
        with self._guard("count"):
            async for _ in self._client.scan_iter(match=f"{self._prefix}:session:*"):
                n += 1
        return n

    async def close(self) -> None:
        with self._guard("close"):
            await self._client.aclose()


class SessionSweeper:
    """Periodically removes expired sessions. Reads also expire lazily, so this only bounds memory."""

    def __init__(self, store: SessionStore, interval_seconds: float):
        self._store = store
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._interval <= 0 or self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("Session sweeper started (interval=%ss)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Session sweeper stopped")

    async def run_once(self) -> int:
        try:
            removed = await self._store.sweep_expired()
        except StoreUnavailable as e:
            logger.warning("Session sweep skipped: %s", e.detail or e.message)
            return 0
        if removed:
            logger.info("Session sweep removed %d expired entries", removed)
        return removed

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Session sweep failed")


def build_session_store(store_type: str, *, redis_url: Optional[str] = None, clock: Optional[Clock] = None):
    if store_type == "redis":
        if not redis_url:
            raise ValueError("REDIS_URL is required when SESSION_STORE_TYPE=redis")
        return RedisSessionStore.from_url(redis_url, clock=clock)
    return InMemorySessionStore(clock=clock)
