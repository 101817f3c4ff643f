"""
auth/errors.py -- Exception taxonomy for the session and authorization core.

Internally every failure is specific (ErrorKind) so logs and tests can tell
an expired token from a forged one. Externally the transport collapses them
into three shapes: authentication failure (401), authorization failure (403)
and a retryable unavailable signal (503). Nothing here renders a response --
api/main.py owns that mapping.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_DISABLED = "account_disabled"
    MALFORMED = "malformed"
    BAD_SIGNATURE = "bad_signature"
    EXPIRED = "expired"
    WRONG_TYPE = "wrong_type"
    REVOKED = "revoked"
    FORBIDDEN = "forbidden"
    UNAVAILABLE = "unavailable"


class DenyReason(str, Enum):
    WRONG_TENANT = "wrong_tenant"
    NOT_OWNER = "not_owner"
    TENANT_INACTIVE = "tenant_inactive"
    INSUFFICIENT_ROLE = "insufficient_role"


class PortalError(Exception):
    """Base class. `kind` is for logs and tests, never for response bodies."""

    kind: ErrorKind

    def __init__(self, kind: ErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind


class AuthFailure(PortalError):
    """Credential verification failed (login)."""

    def __init__(self, kind: ErrorKind = ErrorKind.INVALID_CREDENTIALS) -> None:
        if kind not in (ErrorKind.INVALID_CREDENTIALS, ErrorKind.ACCOUNT_DISABLED):
            raise ValueError(f"not a credential failure kind: {kind!r}")
        super().__init__(kind)


class TokenError(PortalError):
    """A presented token cannot be trusted."""

    _KINDS = frozenset(
        {
            ErrorKind.MALFORMED,
            ErrorKind.BAD_SIGNATURE,
            ErrorKind.EXPIRED,
            ErrorKind.WRONG_TYPE,
            ErrorKind.REVOKED,
        }
    )

    def __init__(self, kind: ErrorKind) -> None:
        if kind not in self._KINDS:
            raise ValueError(f"not a token failure kind: {kind!r}")
        super().__init__(kind)


class Forbidden(PortalError):
    """Authenticated, but the policy denied the request."""

    def __init__(self, reason: DenyReason) -> None:
        super().__init__(ErrorKind.FORBIDDEN, reason.value)
        self.reason = reason


class Unavailable(PortalError):
    """A downstream store timed out or failed. Safe to retry."""

    def __init__(self, message: str = "") -> None:
        super().__init__(ErrorKind.UNAVAILABLE, message)


class PasswordPolicyError(ValueError):
    """A new password does not satisfy the password policy."""
