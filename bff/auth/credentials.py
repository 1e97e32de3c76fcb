from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from bff.auth.config import AuthConfig
from bff.auth.errors import CredentialInvalid, InvalidToken
from bff.auth.models import Identity, IssuedCredential, utcnow
from bff.auth.sessions import SessionStore
from bff.auth.tokens import TokenCodec

logger = logging.getLogger(__name__)


class CredentialIssuer(Protocol):
    """
    The one credential model active in this deployment.

    `resolve`/`refresh` raise CredentialInvalid for anything that does not map to an
    identity. Store outages surface as StoreUnavailable, never as CredentialInvalid.
    """

    kind: str
    ttl_seconds: int

    async def issue(self, identity: Identity) -> IssuedCredential:
        ...

    async def resolve(self, credential: str) -> Identity:
        ...

    async def refresh(self, credential: str) -> IssuedCredential:
        ...

    async def revoke(self, credential: str) -> bool:
        ...

    async def revoke_all(self, owner_id: str) -> bool:
        ...


class TokenCredentialIssuer:
    """Stateless JWT credentials. Revocation is not possible; logout only clears the cookie."""

    kind = "token"

    def __init__(self, codec: TokenCodec, ttl_seconds: int):
        self._codec = codec
        self.ttl_seconds = ttl_seconds

    def _credential(self, token: str) -> IssuedCredential:
        claims = self._codec.verify(token)
        return IssuedCredential(kind=self.kind, value=token, expires_at=claims.expires_at, max_age=self.ttl_seconds)

    async def issue(self, identity: Identity) -> IssuedCredential:
        return self._credential(self._codec.issue(identity, self.ttl_seconds))

    async def resolve(self, credential: str) -> Identity:
        try:
            return self._codec.verify(credential).identity
        except InvalidToken as e:
            logger.debug("Token rejected (%s)", e.reason)
            raise CredentialInvalid() from e

    async def refresh(self, credential: str) -> IssuedCredential:
        try:
            token = self._codec.refresh(credential, self.ttl_seconds)
        except InvalidToken as e:
            logger.debug("Token refresh rejected (%s)", e.reason)
            raise CredentialInvalid() from e
        return self._credential(token)

    async def revoke(self, credential: str) -> bool:
        return False

    async def revoke_all(self, owner_id: str) -> bool:
        return False


class SessionCredentialIssuer:
    """Opaque session ids backed by a SessionStore. Revocation is immediate."""

    kind = "session"

    def __init__(
        self,
        store: SessionStore,
        ttl_seconds: int,
        *,
        rotate_on_refresh: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self.ttl_seconds = ttl_seconds
        self._rotate = rotate_on_refresh
        self._clock = clock or utcnow

    def _expiry(self) -> datetime:
        return self._clock() + timedelta(seconds=self.ttl_seconds)

    async def issue(self, identity: Identity) -> IssuedCredential:
        session = await self._store.create(identity.id, self._expiry(), identity=identity)
        return IssuedCredential(
            kind=self.kind, value=session.session_id, expires_at=session.expires_at, max_age=self.ttl_seconds
        )

    async def resolve(self, credential: str) -> Identity:
        session = await self._store.get(credential) if credential else None
        if session is None or session.identity is None:
            raise CredentialInvalid()
        return session.identity

    async def refresh(self, credential: str) -> IssuedCredential:
        session = await self._store.get(credential) if credential else None
        if session is None or session.identity is None:
            raise CredentialInvalid()
        if self._rotate:
            if not await self._store.delete(session.session_id):
                # Lost a race with logout or another refresh.
                raise CredentialInvalid()
            renewed = await self._store.create(session.owner_id, self._expiry(), identity=session.identity)
        else:
            renewed = await self._store.update(session.session_id, {"expires_at": self._expiry()})
            if renewed is None:
                raise CredentialInvalid()
        return IssuedCredential(
            kind=self.kind, value=renewed.session_id, expires_at=renewed.expires_at, max_age=self.ttl_seconds
        )

    async def revoke(self, credential: str) -> bool:
        if not credential:
            return False
        return await self._store.delete(credential)

    async def revoke_all(self, owner_id: str) -> bool:
        return await self._store.delete_all_for_owner(owner_id)


def build_credential_issuer(
    cfg: AuthConfig,
    *,
    session_store: Optional[SessionStore] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> CredentialIssuer:
    """Pick the deployment's credential model once, at startup."""
    if cfg.credential_mode == "session":
        if session_store is None:
            raise ValueError("session credential mode requires a session store")
        return SessionCredentialIssuer(
            session_store,
            cfg.credential_ttl_seconds,
            rotate_on_refresh=cfg.session_rotate_on_refresh,
            clock=clock,
        )
    codec = TokenCodec(
        cfg.secret_key,
        default_ttl=cfg.credential_ttl_seconds,
        issuer=cfg.token_issuer,
        audience=cfg.token_audience,
        clock=clock,
    )
    return TokenCredentialIssuer(codec, cfg.credential_ttl_seconds)
