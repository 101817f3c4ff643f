"""
auth/tokens.py -- Token codec: issue and parse signed access / refresh tokens.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry a
       token-type discriminator (`typ`), the account's sequence number
       (`seq`), a unique id (`jti`), issued-at and expiry.

  Access tokens carry the full Identity (email, display name, role, tenant,
       tenant status) so the authorization policy never needs a credential
       store round trip for routine requests.

  Refresh tokens carry only sub / typ / seq / jti / iat / exp. A decoded
       refresh token is useless against any resource.

  Parsing order: structure -> algorithm -> signature -> claims -> expiry ->
       type -> sequence. The signature is verified before a single claim is
       read, so an unsigned or re-signed token cannot inject claims. An `alg`
       other than HS256 (including "none") is a signature failure.

  Clock skew: `now > exp + leeway` is the expiry rule. The leeway absorbs
       drift between issuer and verifier clocks.

parse() raises TokenError with a specific kind. Callers map every kind to the
same external 401; the kind exists for logs and tests.

Layer rule: no imports from api/ or cache/. Import from core/ is allowed.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from jose import JWTError, jws, jwt
from jose.exceptions import JWSError

from auth.errors import ErrorKind, TokenError
from auth.models import Claims, Identity, Role, TokenPair, TokenType

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("tenantportal.auth")

_ALGORITHM = "HS256"

# Looks up the current stored sequence number for a user id. None means the
# account no longer exists.
SequenceLookup = Callable[[str], "int | None"]


class TokenCodec:
    """Creates and verifies signed, self-contained tokens.

    Usage:
        codec = TokenCodec(secret_key, access_ttl=900, refresh_ttl=7 * 86400)
        pair = codec.issue_pair(identity, sequence=account.token_sequence)
        claims = codec.parse(pair.access_token, expected=TokenType.ACCESS)
    """

    def __init__(
        self,
        secret_key: str,
        *,
        access_ttl: int = 15 * 60,
        refresh_ttl: int = 7 * 24 * 3600,
        leeway: int = 30,
        issuer: str = "tenant-portal",
    ) -> None:
        if len(secret_key) < 32:
            raise ValueError("secret_key must be at least 32 characters.")
        if refresh_ttl <= access_ttl:
            raise ValueError("refresh_ttl must exceed access_ttl.")
        self._secret_key = secret_key
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.leeway = leeway
        self.issuer = issuer

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenCodec:
        return cls(
            settings.secret_key,
            access_ttl=settings.access_token_expire_seconds,
            refresh_ttl=settings.refresh_token_expire_seconds,
            leeway=settings.clock_skew_seconds,
            issuer=settings.token_issuer,
        )

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, identity: Identity, kind: TokenType, now: float | None = None, *, sequence: int = 0) -> str:
        """Encode a signed token of the given kind for identity."""
        issued_at = int(time.time() if now is None else now)
        ttl = self.access_ttl if kind is TokenType.ACCESS else self.refresh_ttl
        payload: dict[str, Any] = {
            "iss": self.issuer,
            "sub": identity.user_id,
            "typ": kind.value,
            "seq": sequence,
            "jti": uuid.uuid4().hex,
            "iat": issued_at,
            "exp": issued_at + ttl,
        }
        if kind is TokenType.ACCESS:
            payload.update(identity_claims(identity))
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def issue_pair(self, identity: Identity, now: float | None = None, *, sequence: int = 0) -> TokenPair:
        """Issue a fresh access + refresh token pair from the same instant."""
        issued_at = int(time.time() if now is None else now)
        return TokenPair(
            access_token=self.issue(identity, TokenType.ACCESS, issued_at, sequence=sequence),
            refresh_token=self.issue(identity, TokenType.REFRESH, issued_at, sequence=sequence),
            access_expires_at=issued_at + self.access_ttl,
            refresh_expires_at=issued_at + self.refresh_ttl,
        )

    # ------------------------------------------------------------------
    # Parse
    # ------------------------------------------------------------------

    def parse(
        self,
        token: str,
        now: float | None = None,
        *,
        expected: TokenType | None = None,
        sequence_of: SequenceLookup | None = None,
    ) -> Claims:
        """Verify token and return its claims, or raise TokenError.

        Args:
            token:       The encoded token.
            now:         Verification time (UNIX seconds). Defaults to time.time().
            expected:    Required token type; a mismatch raises WRONG_TYPE.
            sequence_of: Optional lookup of the account's current sequence
                         number. A missing account or a different value
                         raises REVOKED.
        """
        if not isinstance(token, str) or token.count(".") != 2:
            raise TokenError(ErrorKind.MALFORMED)
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise TokenError(ErrorKind.MALFORMED) from exc
        if header.get("alg") != _ALGORITHM:
            raise TokenError(ErrorKind.BAD_SIGNATURE)
        try:
            raw = jws.verify(token, self._secret_key, algorithms=[_ALGORITHM])
        except JWSError as exc:
            raise TokenError(ErrorKind.BAD_SIGNATURE) from exc

        try:
            payload = json.loads(raw)
        except ValueError as exc:
            raise TokenError(ErrorKind.MALFORMED) from exc
        if not isinstance(payload, dict) or payload.get("iss") != self.issuer:
            raise TokenError(ErrorKind.MALFORMED)
        claims = claims_from_payload(payload)

        current = time.time() if now is None else now
        if current > claims.expires_at + self.leeway:
            raise TokenError(ErrorKind.EXPIRED)
        if expected is not None and claims.token_type is not expected:
            raise TokenError(ErrorKind.WRONG_TYPE)
        if sequence_of is not None:
            stored = sequence_of(claims.user_id)
            if stored is None or stored != claims.sequence:
                raise TokenError(ErrorKind.REVOKED)
        return claims


# ---------------------------------------------------------------------------
# Claim mapping
# ---------------------------------------------------------------------------


def identity_claims(identity: Identity) -> dict[str, Any]:
    return {
        "email": identity.email,
        "name": identity.display_name,
        "role": identity.role.value,
        "tenant_id": identity.tenant_id,
        "tenant_active": identity.tenant_active,
    }


def identity_from_claims(payload: dict[str, Any]) -> Identity:
    """Rebuild an Identity from access-token claims. Raises ValueError if incomplete."""
    try:
        role = Role(payload["role"])
        identity = Identity(
            user_id=payload["sub"],
            email=payload["email"],
            display_name=payload["name"],
            role=role,
            tenant_id=payload.get("tenant_id"),
            tenant_active=payload.get("tenant_active", True),
        )
    except KeyError as exc:
        raise ValueError(f"missing identity claim: {exc}") from exc
    if not isinstance(identity.user_id, str) or not isinstance(identity.email, str):
        raise ValueError("identity claims have the wrong type")
    if not isinstance(identity.tenant_active, bool):
        raise ValueError("tenant_active must be a boolean")
    if role is Role.ADMIN:
        if identity.tenant_id is not None:
            raise ValueError("admin identities carry no tenant")
    elif not isinstance(identity.tenant_id, str) or not identity.tenant_id:
        raise ValueError("tenant-scoped identities require a tenant_id")
    return identity


def claims_from_payload(payload: dict[str, Any]) -> Claims:
    """Validate the registered claims of a decoded payload. Raises TokenError(MALFORMED)."""
    try:
        token_type = TokenType(payload["typ"])
        user_id = payload["sub"]
        sequence = payload["seq"]
        issued_at = payload["iat"]
        expires_at = payload["exp"]
        token_id = payload["jti"]
    except (KeyError, ValueError) as exc:
        raise TokenError(ErrorKind.MALFORMED) from exc
    for value in (sequence, issued_at, expires_at):
        # bool is an int subclass; a forged `true` must not pass as 1.
        if not isinstance(value, int) or isinstance(value, bool):
            raise TokenError(ErrorKind.MALFORMED)
    if not isinstance(user_id, str) or not user_id or not isinstance(token_id, str):
        raise TokenError(ErrorKind.MALFORMED)

    identity: Identity | None = None
    if token_type is TokenType.ACCESS:
        try:
            identity = identity_from_claims(payload)
        except ValueError as exc:
            raise TokenError(ErrorKind.MALFORMED) from exc
    return Claims(
        token_type=token_type,
        user_id=user_id,
        sequence=sequence,
        issued_at=issued_at,
        expires_at=expires_at,
        token_id=token_id,
        identity=identity,
    )


def peek_claims(token: str) -> Claims:
    """Decode claims WITHOUT verifying the signature.

    For the client side only, which never holds the signing key and only
    needs to display the identity and schedule refreshes. Never use the
    result for an authorization decision.
    """
    try:
        payload = jwt.get_unverified_claims(token)
    except JWTError as exc:
        raise TokenError(ErrorKind.MALFORMED) from exc
    return claims_from_payload(payload)
