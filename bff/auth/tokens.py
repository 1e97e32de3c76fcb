from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union

import jwt  # PyJWT

from bff.auth.errors import InvalidSignature, InvalidToken, MalformedToken, TokenExpired
from bff.auth.models import Identity, TokenClaims, utcnow
from bff.auth.util import DEFAULT_TTL_SECONDS, parse_ttl, random_token

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

Clock = Callable[[], datetime]


def _ts(dt: datetime) -> int:
    return int(dt.timestamp())


class TokenCodec:
    """
    Signed, expiring identity tokens (HS256 JWT).

    Pure over the shared secret: no storage, no network. Tokens cannot be revoked
    before they expire.
    """

    def __init__(
        self,
        secret: str,
        *,
        default_ttl: Union[int, str] = DEFAULT_TTL_SECONDS,
        issuer: str = "bff-service",
        audience: str = "backend-api",
        clock: Optional[Clock] = None,
    ):
        if not secret:
            raise ValueError("token secret is required")
        self._secret = secret
        self._issuer = issuer
        self._audience = audience
        self._clock = clock or utcnow
        self.default_ttl = parse_ttl(default_ttl)

    def issue(self, identity: Identity, ttl: Union[int, str, None] = None) -> str:
        lifetime = parse_ttl(ttl, default=self.default_ttl)
        iat = _ts(self._clock())
        return self._encode(identity, iat=iat, exp=iat + lifetime)

    def verify(self, token: Optional[str]) -> TokenClaims:
        """
        Verify signature first, then expiry.

        Raises InvalidSignature, TokenExpired or MalformedToken. Callers outside the
        credential layer should treat all three the same.
        """
        if not token or not isinstance(token, str):
            raise MalformedToken("empty token")
        try:
            claims = jwt.decode(
                token,
                key=self._secret,
                algorithms=[ALGORITHM],
                audience=self._audience,
                issuer=self._issuer,
                options={
                    # Expiry is checked against our own clock below.
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "require": ["sub", "iat", "exp"],
                },
            )
        except jwt.InvalidSignatureError as e:
            raise InvalidSignature(str(e)) from e
        except jwt.InvalidTokenError as e:
            raise MalformedToken(str(e)) from e

        try:
            iat = int(claims["iat"])
            exp = int(claims["exp"])
        except (TypeError, ValueError) as e:
            raise MalformedToken("non-numeric iat/exp") from e

        if _ts(self._clock()) >= exp:
            raise TokenExpired(f"expired at {exp}")

        try:
            identity = _identity_from_claims(claims)
        except (KeyError, ValueError) as e:
            raise MalformedToken(f"bad identity claims: {e}") from e

        return TokenClaims(
            identity=identity,
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
            token_id=claims.get("jti"),
        )

    def refresh(self, token: Optional[str], ttl: Union[int, str, None] = None) -> str:
        """
        Re-issue a still-valid token for the same identity.

        The new expiry is always strictly later than the old one. Keeps the original
        lifetime unless `ttl` is given.
        """
        current = self.verify(token)
        if ttl is not None:
            lifetime = parse_ttl(ttl, default=self.default_ttl)
        else:
            lifetime = _ts(current.expires_at) - _ts(current.issued_at)
            if lifetime <= 0:
                lifetime = self.default_ttl
        iat = _ts(self._clock())
        exp = max(iat + lifetime, _ts(current.expires_at) + 1)
        return self._encode(current.identity, iat=iat, exp=exp)

    def time_to_live(self, token: Optional[str]) -> int:
        """Seconds until expiry; 0 for invalid or expired tokens."""
        try:
            claims = self.verify(token)
        except InvalidToken:
            return 0
        return max(0, _ts(claims.expires_at) - _ts(self._clock()))

    def _encode(self, identity: Identity, *, iat: int, exp: int) -> str:
        payload: Dict[str, Any] = {
            "sub": identity.id,
            "email": identity.email,
            "name": identity.display_name,
            "picture": identity.picture_url,
            "provider": identity.provider.value,
            "createdAt": identity.to_dict()["createdAt"],
            "updatedAt": identity.to_dict()["updatedAt"],
            "iat": iat,
            "exp": exp,
            "iss": self._issuer,
            "aud": self._audience,
            "jti": random_token(12),
        }
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)


def _identity_from_claims(claims: Dict[str, Any]) -> Identity:
    return Identity.from_dict(
        {
            "id": claims["sub"],
            "email": claims.get("email"),
            "name": claims.get("name"),
            "picture": claims.get("picture"),
            "provider": claims.get("provider"),
            "createdAt": claims.get("createdAt"),
            "updatedAt": claims.get("updatedAt"),
        }
    )
