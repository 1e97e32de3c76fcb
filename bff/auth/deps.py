import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from bff.auth.errors import AuthenticationError, CredentialInvalid, CredentialMissing, StoreUnavailable, Unauthenticated
from bff.auth.models import Identity
from bff.auth.orchestrator import AuthOrchestrator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthOptions:
    required: bool = True
    allow_guest: bool = False


REQUIRED = AuthOptions(required=True, allow_guest=False)
OPTIONAL = AuthOptions(required=False, allow_guest=True)


def extract_credential(request: Request, *, cookie_name: str, header_name: str) -> Optional[str]:
    """Cookie, then `Authorization: Bearer`, then the custom header. First non-empty value wins."""
    cookie = (request.cookies.get(cookie_name) or "").strip()
    if cookie:
        return cookie
    auth = (request.headers.get("authorization") or "").strip()
    if auth[:7].lower() == "bearer ":
        bearer = auth[7:].strip()
        if bearer:
            return bearer
    custom = (request.headers.get(header_name) or "").strip()
    return custom or None


class AuthMiddleware:
    """
    Per-route authentication gate, used as a FastAPI dependency.

    On success the identity is attached as `request.state.identity` (None for guests)
    and the credential that proved it as `request.state.credential`.
    """

    def __init__(
        self,
        orchestrator: AuthOrchestrator,
        *,
        cookie_name: str,
        header_name: str,
        options: AuthOptions = REQUIRED,
        fail_open: bool = False,
    ):
        self._orchestrator = orchestrator
        self._cookie_name = cookie_name
        self._header_name = header_name
        self.options = options
        self._fail_open = fail_open

    @property
    def _guest_ok(self) -> bool:
        return not self.options.required and self.options.allow_guest

    async def authenticate(self, credential: Optional[str]) -> Optional[Identity]:
        if not credential:
            if self.options.required:
                raise Unauthenticated()
            if self.options.allow_guest:
                return None
            raise CredentialMissing()

        try:
            return await self._orchestrator.current_user(credential)
        except StoreUnavailable:
            if self._fail_open and self._guest_ok:
                logger.warning("Session store unavailable; continuing as guest (fail-open)")
                return None
            raise
        except AuthenticationError:
            if self._guest_ok:
                return None
            raise CredentialInvalid()

    async def __call__(self, request: Request) -> Optional[Identity]:
        credential = extract_credential(request, cookie_name=self._cookie_name, header_name=self._header_name)
        identity = await self.authenticate(credential)
        request.state.identity = identity
        request.state.credential = credential if identity is not None else None
        return identity
