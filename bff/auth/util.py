from __future__ import annotations

import base64
import re
import secrets

DEFAULT_TTL_SECONDS = 3600

_TTL_RE = re.compile(r"^(\d+)([smhd])$")
_TTL_UNITS = {"s": 1, "m": 60, "h": 60 * 60, "d": 24 * 60 * 60}


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def random_token(nbytes: int = 32) -> str:
    return b64url(secrets.token_bytes(nbytes))


def parse_ttl(value: str | int | None, default: int = DEFAULT_TTL_SECONDS) -> int:
    """
    Parse a duration like `30s`, `15m`, `1h`, `7d` into seconds.

    Bare integers are seconds. Anything else (including zero or negative values)
    yields `default`.
    """
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value if value > 0 else default
    raw = (value or "").strip()
    if raw.isdigit():
        n = int(raw)
        return n if n > 0 else default
    m = _TTL_RE.match(raw)
    if not m:
        return default
    seconds = int(m.group(1)) * _TTL_UNITS[m.group(2)]
    return seconds if seconds > 0 else default


def sanitize_next_path(next_path: str | None) -> str:
    """
    Prevent open-redirects: allow only relative paths like `/inbox`.
    """
    p = (next_path or "").strip()
    if not p:
        return "/"
    if not p.startswith("/"):
        return "/"
    # Disallow scheme-relative: `//evil.com` and `/\evil.com`
    if p.startswith("//") or p.startswith("/\\"):
        return "/"
    p = p.replace("\r", "").replace("\n", "")
    return p or "/"


def join_redirect(base_url: str, next_path: str | None) -> str:
    """Append a sanitized relative path to the frontend base URL; no path means the base itself."""
    if not next_path:
        return base_url
    safe = sanitize_next_path(next_path)
    if safe == "/":
        return base_url
    return base_url.rstrip("/") + safe
