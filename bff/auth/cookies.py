from __future__ import annotations

from typing import Optional

from itsdangerous import BadData, URLSafeTimedSerializer

from bff.auth.config import AuthConfig
from bff.auth.login_state import LOGIN_STATE_TTL_SECONDS
from bff.auth.models import IssuedCredential, LoginAttempt

STATE_COOKIE_NAME = "bff_oauth_state"
STATE_COOKIE_PATH = "/auth"
STATE_TTL_SECONDS = LOGIN_STATE_TTL_SECONDS
STATE_SALT = "bff-oauth-state-v1"


def credential_cookie_kwargs(cfg: AuthConfig, credential: IssuedCredential) -> dict:
    kwargs = {
        "key": cfg.cookie_name,
        "value": credential.value,
        "max_age": credential.max_age,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }
    if cfg.cookie_domain:
        kwargs["domain"] = cfg.cookie_domain
    return kwargs


def clear_credential_cookie_kwargs(cfg: AuthConfig) -> dict:
    kwargs = {
        "key": cfg.cookie_name,
        "value": "",
        "max_age": 0,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }
    if cfg.cookie_domain:
        kwargs["domain"] = cfg.cookie_domain
    return kwargs


# ---- Pre-login state (CSRF) cookie ----
# Carries only the signed nonce of the pending login. State and redirect live server-side.


def _serializer(cfg: AuthConfig) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(secret_key=cfg.secret_key, salt=STATE_SALT)


def encode_state(cfg: AuthConfig, attempt: LoginAttempt) -> str:
    return _serializer(cfg).dumps(attempt.nonce)


def decode_state(cfg: AuthConfig, value: Optional[str]) -> Optional[str]:
    """The nonce, or None for missing, tampered, or stale (older than STATE_TTL_SECONDS) cookies."""
    if not value:
        return None
    try:
        nonce = _serializer(cfg).loads(value, max_age=STATE_TTL_SECONDS)
    except BadData:
        return None
    if not isinstance(nonce, str) or not nonce:
        return None
    return nonce


def state_cookie_kwargs(cfg: AuthConfig, value: str) -> dict:
    return {
        "key": STATE_COOKIE_NAME,
        "value": value,
        "max_age": STATE_TTL_SECONDS,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": STATE_COOKIE_PATH,
    }


def clear_state_cookie_kwargs(cfg: AuthConfig) -> dict:
    return {
        "key": STATE_COOKIE_NAME,
        "value": "",
        "max_age": 0,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": STATE_COOKIE_PATH,
    }
