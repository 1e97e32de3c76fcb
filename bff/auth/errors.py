"""
Error taxonomy for the auth flow.

Every error carries a stable machine-readable `code` for client-side branching and a
safe `message`. `detail` is for logs only and is never rendered to the client.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class AuthError(Exception):
    code = "AUTH_ERROR"
    status_code = 500
    default_message = "Authentication error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        detail: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message or self.default_message
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "code": self.code}


class ClientInputError(AuthError):
    code = "BAD_REQUEST"
    status_code = 400
    default_message = "Invalid request"


class MissingCode(ClientInputError):
    code = "MISSING_CODE"
    default_message = "Authorization code is required"


class StateMismatch(ClientInputError):
    code = "INVALID_STATE"
    default_message = "Invalid state parameter"


class AuthenticationError(ClientInputError):
    code = "UNAUTHORIZED"
    status_code = 401
    default_message = "Unauthorized"


class Unauthenticated(AuthenticationError):
    code = "AUTH_REQUIRED"
    default_message = "Authentication required"


class CredentialMissing(AuthenticationError):
    code = "CREDENTIAL_MISSING"
    default_message = "Credential not found"


class CredentialInvalid(AuthenticationError):
    code = "CREDENTIAL_INVALID"
    default_message = "Invalid or expired credential"


class UpstreamError(AuthError):
    code = "UPSTREAM_ERROR"
    status_code = 502
    default_message = "Upstream service failed"


class ExchangeFailed(UpstreamError):
    code = "TOKEN_EXCHANGE_FAILED"
    default_message = "Failed to exchange code for token"


class ProfileFetchFailed(UpstreamError):
    code = "USER_INFO_FETCH_FAILED"
    default_message = "Failed to fetch user information"


class StoreUnavailable(AuthError):
    code = "STORE_UNAVAILABLE"
    status_code = 503
    default_message = "Session store unavailable"


class InternalError(AuthError):
    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "Internal Server Error"


# Token-level failures. These never cross the credential issuer boundary: callers see
# CredentialInvalid regardless of which one occurred.
class InvalidToken(Exception):
    reason = "invalid"


class InvalidSignature(InvalidToken):
    reason = "signature"


class TokenExpired(InvalidToken):
    reason = "expired"


class MalformedToken(InvalidToken):
    reason = "malformed"
