from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_dt(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    raw = str(value or "").strip()
    if not raw:
        raise ValueError("missing timestamp")
    dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class Provider(str, Enum):
    GOOGLE = "google"


@dataclass(frozen=True)
class Identity:
    """Authenticated person, as minted for one login."""

    id: str
    email: str
    display_name: str
    picture_url: Optional[str] = None
    provider: Provider = Provider.GOOGLE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.display_name,
            "picture": self.picture_url,
            "provider": self.provider.value,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Identity":
        ident = str(data.get("id") or "").strip()
        if not ident:
            raise ValueError("identity id is required")
        return cls(
            id=ident,
            email=str(data.get("email") or ""),
            display_name=str(data.get("name") or ""),
            picture_url=str(data["picture"]) if data.get("picture") else None,
            provider=Provider(str(data.get("provider") or Provider.GOOGLE.value)),
            created_at=_parse_dt(data.get("createdAt")),
            updated_at=_parse_dt(data.get("updatedAt")),
        )


@dataclass(frozen=True)
class ProviderToken:
    """Token response from the provider's token endpoint."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    scope: Optional[str] = None
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "ProviderToken":
        access_token = str(data.get("access_token") or "")
        if not access_token:
            raise ValueError("token response missing access_token")
        expires_in = data.get("expires_in")
        return cls(
            access_token=access_token,
            token_type=str(data.get("token_type") or "Bearer"),
            expires_in=int(expires_in) if expires_in is not None else None,
            scope=data.get("scope"),
            refresh_token=data.get("refresh_token"),
            id_token=data.get("id_token"),
        )


@dataclass(frozen=True)
class ProviderProfile:
    """Google userinfo (v2) payload."""

    id: str
    email: str
    verified_email: bool = False
    name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    picture: Optional[str] = None
    locale: Optional[str] = None

    @classmethod
    def from_userinfo(cls, data: Dict[str, Any]) -> "ProviderProfile":
        # v2 uses `id`, the OIDC userinfo endpoint uses `sub`.
        ident = str(data.get("id") or data.get("sub") or "")
        if not ident:
            raise ValueError("userinfo missing id")
        return cls(
            id=ident,
            email=str(data.get("email") or ""),
            verified_email=bool(data.get("verified_email") or data.get("email_verified") or False),
            name=data.get("name") or None,
            given_name=data.get("given_name") or None,
            family_name=data.get("family_name") or None,
            picture=data.get("picture") or None,
            locale=data.get("locale") or None,
        )


@dataclass(frozen=True)
class Session:
    """Server-side session record."""

    session_id: str
    owner_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    # Snapshot of the identity minted at login; sessions resolve to it without a user lookup.
    identity: Optional[Identity] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def merged(self, fields: Dict[str, Any]) -> "Session":
        allowed = {"expires_at", "identity"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"cannot update session fields: {sorted(unknown)}")
        return replace(self, **fields)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "ownerId": self.owner_id,
            "expiresAt": _iso(self.expires_at),
            "createdAt": _iso(self.created_at),
            "identity": self.identity.to_dict() if self.identity else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        identity = data.get("identity")
        return cls(
            session_id=str(data["sessionId"]),
            owner_id=str(data["ownerId"]),
            expires_at=_parse_dt(data["expiresAt"]),
            created_at=_parse_dt(data["createdAt"]),
            identity=Identity.from_dict(identity) if isinstance(identity, dict) else None,
        )


@dataclass(frozen=True)
class IssuedCredential:
    """A freshly minted credential plus what the cookie layer needs to set it."""

    kind: str  # token|session
    value: str
    expires_at: datetime
    max_age: int


@dataclass(frozen=True)
class TokenClaims:
    identity: Identity
    issued_at: datetime
    expires_at: datetime
    token_id: Optional[str] = None


class LoginPhase(str, Enum):
    STARTED = "started"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGED = "exchanged"
    IDENTITY_RESOLVED = "identity_resolved"
    CREDENTIAL_ISSUED = "credential_issued"
    FAILED = "failed"


@dataclass
class LoginAttempt:
    """One in-flight OAuth login. Single use: any completion moves it out of AWAITING_CALLBACK."""

    state: str
    redirect_url: str
    authorization_url: Optional[str] = None
    nonce: str = ""
    phase: LoginPhase = LoginPhase.STARTED
    error_code: Optional[str] = None


@dataclass(frozen=True)
class LoginResult:
    identity: Identity
    credential: IssuedCredential
    redirect_url: str


@dataclass(frozen=True)
class AuthStatus:
    authenticated: bool
    identity: Optional[Identity] = None
