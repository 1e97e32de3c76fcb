from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional

from bff.auth.util import parse_ttl, random_token

logger = logging.getLogger(__name__)

CREDENTIAL_MODES = ("token", "session")
STORE_TYPES = ("memory", "redis")
STORE_FAILURE_POLICIES = ("closed", "open")

_DEFAULT_SCOPES = ["openid", "email", "profile"]


@dataclass(frozen=True)
class AuthConfig:
    # Google OAuth client
    google_client_id: Optional[str]
    google_client_secret: Optional[str]
    google_callback_url: Optional[str]
    google_scopes: List[str]
    oauth_timeout_seconds: float

    # Credential issuance
    credential_mode: str  # token|session
    secret_key: str
    credential_ttl_seconds: int
    token_issuer: str
    token_audience: str

    # Cookie / header transport
    cookie_name: str
    cookie_domain: Optional[str]
    cookie_secure: bool
    header_name: str

    # Session store
    session_store_type: str  # memory|redis
    redis_url: Optional[str]
    store_failure_policy: str  # closed|open
    session_sweep_seconds: int
    session_rotate_on_refresh: bool

    # Deployment
    frontend_base_url: str
    cors_origins: List[str]
    environment: str

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def google_enabled(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret and self.google_callback_url)

    @property
    def fail_open(self) -> bool:
        return self.store_failure_policy == "open"


def _env(name: str, default: str = "") -> str:
    return (os.getenv(name, "") or "").strip() or default


def _parse_bool(value: str, default: bool) -> bool:
    v = (value or "").strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    return default


def _parse_list(value: str) -> List[str]:
    items = [x.strip() for x in (value or "").replace(",", " ").split()]
    return [x for x in items if x]


def _choice(name: str, value: str, choices: tuple, default: str) -> str:
    v = (value or "").strip().lower()
    if not v:
        return default
    if v not in choices:
        logger.warning("Unknown %s=%r; falling back to %r", name, value, default)
        return default
    return v


def _parse_number(name: str, value: str, default: float) -> float:
    try:
        n = float(value)
    except ValueError:
        n = math.nan
    if not math.isfinite(n):
        logger.warning("Invalid %s=%r; falling back to %r", name, value, default)
        return default
    return n


@lru_cache(maxsize=1)
def load_auth_config() -> AuthConfig:
    """
    Load BFF authentication configuration from environment variables.

    The credential model (token or session) is fixed here, once per process.
    """
    environment = _env("APP_ENV", _env("NODE_ENV", "development")).lower()
    is_production = environment == "production"

    credential_mode = _choice("AUTH_CREDENTIAL_MODE", _env("AUTH_CREDENTIAL_MODE"), CREDENTIAL_MODES, "token")

    secret_key = _env("AUTH_SECRET_KEY")
    if not secret_key:
        if is_production:
            raise ValueError("AUTH_SECRET_KEY is required in production")
        # Dev only: credentials will not survive a restart.
        logger.warning("AUTH_SECRET_KEY not set; using a random per-process key")
        secret_key = random_token(32)

    timeout = _parse_number("AUTH_OAUTH_TIMEOUT_SECONDS", _env("AUTH_OAUTH_TIMEOUT_SECONDS", "10"), 10.0)
    if timeout <= 0:
        timeout = 10.0

    sweep = int(_parse_number("AUTH_SESSION_SWEEP_SECONDS", _env("AUTH_SESSION_SWEEP_SECONDS", "300"), 300))
    if sweep < 0:
        sweep = 0

    default_cookie = "sessionId" if credential_mode == "session" else "authToken"
    frontend_base_url = _env("FRONTEND_BASE_URL", "http://localhost:3000").rstrip("/")

    return AuthConfig(
        google_client_id=_env("GOOGLE_CLIENT_ID") or None,
        google_client_secret=_env("GOOGLE_CLIENT_SECRET") or None,
        google_callback_url=_env("GOOGLE_CALLBACK_URL") or None,
        google_scopes=_parse_list(_env("GOOGLE_SCOPES")) or list(_DEFAULT_SCOPES),
        oauth_timeout_seconds=timeout,
        credential_mode=credential_mode,
        secret_key=secret_key,
        credential_ttl_seconds=parse_ttl(_env("AUTH_CREDENTIAL_TTL")),
        token_issuer=_env("AUTH_TOKEN_ISSUER", "bff-service"),
        token_audience=_env("AUTH_TOKEN_AUDIENCE", "backend-api"),
        cookie_name=_env("AUTH_COOKIE_NAME", default_cookie),
        cookie_domain=_env("AUTH_COOKIE_DOMAIN") or None,
        cookie_secure=_parse_bool(_env("AUTH_COOKIE_SECURE"), is_production),
        header_name=_env("AUTH_HEADER_NAME", "X-Auth-Token"),
        session_store_type=_choice("SESSION_STORE_TYPE", _env("SESSION_STORE_TYPE"), STORE_TYPES, "memory"),
        redis_url=_env("REDIS_URL") or None,
        store_failure_policy=_choice(
            "AUTH_STORE_FAILURE_POLICY", _env("AUTH_STORE_FAILURE_POLICY"), STORE_FAILURE_POLICIES, "closed"
        ),
        session_sweep_seconds=sweep,
        session_rotate_on_refresh=_parse_bool(_env("AUTH_SESSION_ROTATE_ON_REFRESH"), True),
        frontend_base_url=frontend_base_url,
        cors_origins=_parse_list(_env("CORS_ORIGIN")) or [frontend_base_url],
        environment=environment,
    )
