from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional, Protocol
from urllib.parse import urlencode

import requests

from bff.auth.config import AuthConfig
from bff.auth.errors import ExchangeFailed, ProfileFetchFailed
from bff.auth.models import ProviderProfile, ProviderToken

logger = logging.getLogger(__name__)

AUTHORIZATION_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
USERINFO_ENDPOINT = "https://www.googleapis.com/oauth2/v2/userinfo"


class OAuthClient(Protocol):
    def build_authorization_url(self, state: str) -> str:
        ...

    async def exchange_code(self, code: str) -> ProviderToken:
        ...

    async def fetch_profile(self, token: ProviderToken) -> ProviderProfile:
        ...


def _error_detail(r: requests.Response) -> str:
    """Provider error body, for logs only."""
    try:
        data = r.json()
    except ValueError:
        return f"status={r.status_code} body={(r.text or '')[:200]!r}"
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            # userinfo errors: {"error": {"code": 401, "message": "...", "status": "..."}}
            return f"status={r.status_code} error={err.get('status')} description={err.get('message')}"
        return f"status={r.status_code} error={err} description={data.get('error_description')}"
    return f"status={r.status_code}"


def _status_for(r: requests.Response) -> int:
    # Provider said no (bad/used code, revoked token): client-side problem. Anything else: upstream.
    return 400 if 400 <= r.status_code < 500 else 502


class GoogleOAuthClient:
    """
    Google OAuth 2.0 authorization-code client.

    Calls are blocking `requests` calls run in a worker thread and bounded by a timeout.
    Nothing is retried: authorization codes are single-use.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: Optional[List[str]] = None,
        timeout_seconds: float = 10.0,
        http: Optional[requests.Session] = None,
        authorization_endpoint: str = AUTHORIZATION_ENDPOINT,
        token_endpoint: str = TOKEN_ENDPOINT,
        userinfo_endpoint: str = USERINFO_ENDPOINT,
    ):
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._scopes = list(scopes or ["openid", "email", "profile"])
        self._timeout = timeout_seconds
        self._http = http or requests.Session()
        self._authorization_endpoint = authorization_endpoint
        self._token_endpoint = token_endpoint
        self._userinfo_endpoint = userinfo_endpoint

    @classmethod
    def from_config(cls, cfg: AuthConfig) -> "GoogleOAuthClient":
        return cls(
            client_id=cfg.google_client_id or "",
            client_secret=cfg.google_client_secret or "",
            redirect_uri=cfg.google_callback_url or "",
            scopes=cfg.google_scopes,
            timeout_seconds=cfg.oauth_timeout_seconds,
        )

    def build_authorization_url(self, state: str) -> str:
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "response_type": "code",
            "scope": " ".join(self._scopes),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{self._authorization_endpoint}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> ProviderToken:
        payload = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self._redirect_uri,
        }
        r = await self._call(ExchangeFailed, "token exchange", self._http.post, self._token_endpoint, data=payload)
        if r.status_code >= 400:
            raise ExchangeFailed(detail=_error_detail(r), status_code=_status_for(r))
        try:
            data = r.json()
            if not isinstance(data, dict):
                raise ValueError("token response is not an object")
            token = ProviderToken.from_response(data)
        except (TypeError, ValueError) as e:
            raise ExchangeFailed(detail=f"invalid token response: {e}") from e
        logger.debug("Token exchange succeeded (scope=%s)", token.scope)
        return token

    async def fetch_profile(self, token: ProviderToken) -> ProviderProfile:
        headers = {"Authorization": f"Bearer {token.access_token}"}
        r = await self._call(
            ProfileFetchFailed, "userinfo", self._http.get, self._userinfo_endpoint, headers=headers
        )
        if r.status_code >= 400:
            raise ProfileFetchFailed(detail=_error_detail(r), status_code=_status_for(r))
        try:
            data = r.json()
            if not isinstance(data, dict):
                raise ValueError("userinfo is not an object")
            return ProviderProfile.from_userinfo(data)
        except (TypeError, ValueError) as e:
            raise ProfileFetchFailed(detail=f"invalid userinfo response: {e}") from e

    async def _call(
        self,
        error_cls: type,
        what: str,
        fn: Callable[..., requests.Response],
        url: str,
        **kwargs: Any,
    ) -> requests.Response:
        try:
            # requests' timeout bounds each socket phase; wait_for bounds the whole call.
            return await asyncio.wait_for(
                asyncio.to_thread(fn, url, timeout=self._timeout, **kwargs),
                timeout=self._timeout + 1,
            )
        except asyncio.TimeoutError as e:
            raise error_cls(detail=f"{what} timed out after {self._timeout}s") from e
        except requests.RequestException as e:
            raise error_cls(detail=f"{what} request failed: {e.__class__.__name__}") from e

