from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from bff.auth.credentials import CredentialIssuer
from bff.auth.errors import (
    AuthError,
    CredentialInvalid,
    MissingCode,
    StateMismatch,
    StoreUnavailable,
    Unauthenticated,
    UpstreamError,
)
from bff.auth.google import OAuthClient
from bff.auth.login_state import LOGIN_STATE_TTL_SECONDS, InMemoryLoginStateStore, LoginStateStore, PendingLogin
from bff.auth.models import (
    AuthStatus,
    Identity,
    IssuedCredential,
    LoginAttempt,
    LoginPhase,
    LoginResult,
    ProviderProfile,
    utcnow,
)
from bff.auth.users import UserDirectory, identity_from_profile
from bff.auth.util import join_redirect, random_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LogoutResult:
    # False for stateless tokens: the token stays valid until it expires.
    revoked: bool


class AuthOrchestrator:
    """
    Drives the Google login and the credential lifecycle.

    Login attempt phases:
        STARTED -> AWAITING_CALLBACK -> EXCHANGED -> IDENTITY_RESOLVED -> CREDENTIAL_ISSUED
    with FAILED reachable from any step after AWAITING_CALLBACK. The pending login recorded
    at start is consumed by the first completion, successful or not.
    """

    def __init__(
        self,
        *,
        oauth: OAuthClient,
        issuer: CredentialIssuer,
        frontend_base_url: str,
        users: Optional[UserDirectory] = None,
        states: Optional[LoginStateStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._oauth = oauth
        self._issuer = issuer
        self._users = users
        self._clock = clock or utcnow
        self._states = states if states is not None else InMemoryLoginStateStore(clock=self._clock)
        self._frontend_base_url = frontend_base_url.rstrip("/") or "/"

    @property
    def credential_kind(self) -> str:
        return self._issuer.kind

    @property
    def credential_ttl(self) -> int:
        return self._issuer.ttl_seconds

    async def start_login(
        self, requested_state: Optional[str] = None, redirect_path: Optional[str] = None
    ) -> LoginAttempt:
        state = (requested_state or "").strip() or random_token(24)
        attempt = LoginAttempt(
            state=state,
            redirect_url=join_redirect(self._frontend_base_url, redirect_path),
            nonce=random_token(16),
        )
        attempt.authorization_url = self._oauth.build_authorization_url(state)
        await self._states.put(
            PendingLogin(
                nonce=attempt.nonce,
                state=attempt.state,
                redirect_url=attempt.redirect_url,
                expires_at=self._clock() + timedelta(seconds=LOGIN_STATE_TTL_SECONDS),
            )
        )
        attempt.phase = LoginPhase.AWAITING_CALLBACK
        logger.info("OAuth login started")
        return attempt

    def resume_login(self, nonce: Optional[str]) -> LoginAttempt:
        """Rebuild an attempt from the nonce carried back by the browser; the rest is recorded server-side."""
        return LoginAttempt(
            state="",
            redirect_url=self._frontend_base_url,
            nonce=nonce or "",
            phase=LoginPhase.AWAITING_CALLBACK,
        )

    async def complete_login(self, attempt: LoginAttempt, code: Optional[str], state: Optional[str]) -> LoginResult:
        if attempt.phase != LoginPhase.AWAITING_CALLBACK:
            # Already consumed (replayed callback).
            raise StateMismatch(detail=f"attempt in phase {attempt.phase.value}")
        try:
            # Taken before anything else so every outcome consumes it.
            pending = await self._states.take(attempt.nonce) if attempt.nonce else None
            if pending is not None:
                attempt.state = pending.state
                attempt.redirect_url = pending.redirect_url
            if not code:
                raise MissingCode()
            if pending is None:
                raise StateMismatch(detail="no pending login for this browser")
            if attempt.state != (state or ""):
                raise StateMismatch()

            token = await self._oauth.exchange_code(code)
            attempt.phase = LoginPhase.EXCHANGED

            profile = await self._oauth.fetch_profile(token)
            identity = await self._resolve_identity(profile)
            attempt.phase = LoginPhase.IDENTITY_RESOLVED

            credential = await self._issuer.issue(identity)
            attempt.phase = LoginPhase.CREDENTIAL_ISSUED
        except AuthError as e:
            attempt.phase = LoginPhase.FAILED
            attempt.error_code = e.code
            if isinstance(e, UpstreamError):
                logger.warning("OAuth callback failed: code=%s detail=%s", e.code, e.detail)
            else:
                logger.info("OAuth callback rejected: code=%s", e.code)
            raise
        except Exception:
            attempt.phase = LoginPhase.FAILED
            attempt.error_code = "INTERNAL_ERROR"
            raise

        logger.info("OAuth login completed for user %s (credential=%s)", identity.id, credential.kind)
        return LoginResult(identity=identity, credential=credential, redirect_url=attempt.redirect_url)

    async def current_user(self, credential: Optional[str]) -> Identity:
        if not credential:
            raise Unauthenticated()
        return await self._issuer.resolve(credential)

    async def refresh(self, credential: Optional[str]) -> IssuedCredential:
        if not credential:
            raise CredentialInvalid()
        return await self._issuer.refresh(credential)

    async def logout(self, credential: Optional[str], *, everywhere: bool = False) -> LogoutResult:
        if not credential:
            return LogoutResult(revoked=False)
        if everywhere:
            identity = await self._issuer.resolve(credential)
            revoked = await self._issuer.revoke_all(identity.id)
            logger.info("Revoked all sessions for user %s (revoked=%s)", identity.id, revoked)
            return LogoutResult(revoked=revoked)
        return LogoutResult(revoked=await self._issuer.revoke(credential))

    async def status(self, credential: Optional[str]) -> AuthStatus:
        """Never raises: absent, invalid or unverifiable credentials all read as unauthenticated."""
        if not credential:
            return AuthStatus(authenticated=False)
        try:
            identity = await self._issuer.resolve(credential)
        except StoreUnavailable as e:
            logger.warning("Auth status degraded, session store unavailable: %s", e.detail)
            return AuthStatus(authenticated=False)
        except AuthError:
            return AuthStatus(authenticated=False)
        except Exception:
            logger.exception("Auth status check failed")
            return AuthStatus(authenticated=False)
        return AuthStatus(authenticated=True, identity=identity)

    async def _resolve_identity(self, profile: ProviderProfile) -> Identity:
        if self._users is None:
            return identity_from_profile(profile)
        try:
            return await self._users.resolve(profile)
        except Exception as e:
            # Named fallback: login proceeds with an identity built from provider fields.
            logger.warning("User directory unavailable, using provider profile for %s: %s", profile.id, str(e))
            return identity_from_profile(profile)
