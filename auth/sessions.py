"""
auth/sessions.py -- Session manager: login, refresh, logout, revocation.

SessionManager is the server-side orchestrator. It is an explicit object
(held on app.state and handed to request handlers), not a module singleton,
so tests can build one around an isolated store and a fake clock.

Session is the per-session state machine used by callers that hold a token
pair (the UI side, scripts, tests):

    Unauthenticated -> Authenticating -> Active -> Refreshing -> Active
                                                             \\-> Expired -> Unauthenticated

Refresh semantics:
  - The refresh token is parsed as refresh-kind; any TokenError ends the
    session (Expired) and requires a fresh login.
  - The account is re-read from the store: role, tenant and tenant status
    come from the store, never from the previous access token.
  - The account's sequence number must still equal the token's `seq`.
  - With rotation on, the old refresh token is consumed (single use) and a new
    pair is issued. A second use of the same refresh token fails with REVOKED.

Concurrent-refresh race:
  Refreshes of the same refresh token inside this process are coalesced --
  the first caller does the rotation and every concurrent caller receives the
  same grant. Across processes the store's atomic consume lets exactly one
  rotation succeed; the loser gets REVOKED. Never two divergent pairs.

Store I/O:
  Every credential / token store call runs on a worker thread and is bounded
  by store_timeout seconds. A timeout or database error becomes Unavailable.
  refresh() retries once after a short backoff; login() never retries, so a
  flaky store can not mask bad credentials as transient errors.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import AuthFailure, ErrorKind, PortalError, TokenError, Unavailable
from auth.models import Claims, Identity, Role, SessionGrant, TokenPair, TokenType
from auth.passwords import DEFAULT_MIN_LENGTH, check_password_policy, hash_password, verify_password
from auth.store import CredentialStore, TokenStore
from auth.tokens import TokenCodec
from auth.verifier import CredentialVerifier, identity_for

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("tenantportal.sessions")
audit = logging.getLogger("tenantportal.audit")

R = TypeVar("R")


class PortalStoreLike(CredentialStore, TokenStore, Protocol):
    """The store shape SessionManager needs: both collaborator protocols."""


# ---------------------------------------------------------------------------
# Refresh coalescing
# ---------------------------------------------------------------------------


class _RefreshCoalescer:
    """Shares one in-progress refresh among concurrent callers.

    Keyed by the refresh token's jti. Entries live only while the refresh is
    running; a caller that arrives after completion goes through the normal
    path and hits the consumed token (REVOKED).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._inflight: dict[str, Future] = {}

    def run(self, key: str, work: Callable[[], R], wait_timeout: float) -> R:
        with self._lock:
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[key] = future
        if not owner:
            try:
                return future.result(timeout=wait_timeout)
            except FutureTimeout as exc:
                raise Unavailable("timed out waiting for a concurrent refresh") from exc

        try:
            result = work()
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._lock:
                self._inflight.pop(key, None)


# ---------------------------------------------------------------------------
# Session manager
# ---------------------------------------------------------------------------


class SessionManager:
    """Issues, refreshes and revokes sessions.

    Usage:
        manager = SessionManager(store, TokenCodec(secret))
        grant = manager.login("user@acme.test", "Correct-Horse-1")
        identity = manager.authenticate(grant.tokens.access_token)
        grant = manager.refresh(grant.tokens.refresh_token)
        manager.logout(grant.tokens.refresh_token)
        manager.close()
    """

    def __init__(
        self,
        store: PortalStoreLike,
        codec: TokenCodec,
        *,
        clock: Callable[[], float] = time.time,
        store_timeout: float = 5.0,
        rotate_refresh_tokens: bool = True,
        retry_backoff: float = 0.25,
        password_min_length: int = DEFAULT_MIN_LENGTH,
        max_workers: int = 8,
    ) -> None:
        self._store = store
        self._codec = codec
        self._verifier = CredentialVerifier(store)
        self._clock = clock
        self._store_timeout = store_timeout
        self._rotate = rotate_refresh_tokens
        self._retry_backoff = retry_backoff
        self._password_min_length = password_min_length
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="portal-store")
        self._coalescer = _RefreshCoalescer()

    @classmethod
    def from_settings(cls, store: PortalStoreLike, settings: Settings, codec: TokenCodec | None = None) -> SessionManager:
        return cls(
            store,
            codec or TokenCodec.from_settings(settings),
            store_timeout=settings.store_timeout_seconds,
            rotate_refresh_tokens=settings.rotate_refresh_tokens,
            retry_backoff=settings.refresh_retry_backoff_seconds,
            password_min_length=settings.password_min_length,
        )

    @property
    def codec(self) -> TokenCodec:
        return self._codec

    # ------------------------------------------------------------------
    # Store access
    # ------------------------------------------------------------------

    def call(self, fn: Callable[..., R], *args: Any, **kwargs: Any) -> R:
        """Run a blocking store call on a worker thread, bounded by store_timeout.

        A timeout or database error becomes Unavailable. IntegrityError is
        passed through unchanged: it reports a constraint the caller asked
        about (duplicate email, duplicate key), not an unhealthy store.
        """
        future = self._executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self._store_timeout)
        except FutureTimeout as exc:
            future.cancel()
            logger.warning("store call %s timed out after %.1fs", getattr(fn, "__name__", fn), self._store_timeout)
            raise Unavailable("credential store timed out") from exc
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            logger.error("store call %s failed: %s", getattr(fn, "__name__", fn), exc.__class__.__name__)
            raise Unavailable("credential store error") from exc

    def _sequence_of(self, user_id: str) -> int | None:
        return self.call(self._store.get_token_sequence, user_id)

    # ------------------------------------------------------------------
    # Login / refresh / logout
    # ------------------------------------------------------------------

    def login(self, email: str, password: str) -> SessionGrant:
        """Verify credentials and issue a fresh token pair. Raises AuthFailure or Unavailable."""
        identity = self.call(self._verifier.verify, email, password)
        sequence = self._sequence_of(identity.user_id)
        if sequence is None:
            # Deleted between verification and issue.
            raise AuthFailure(ErrorKind.INVALID_CREDENTIALS)
        tokens = self._codec.issue_pair(identity, self._clock(), sequence=sequence)
        self.call(self._store.update_last_login, identity.user_id)
        audit.info("login ok user=%s role=%s tenant=%s", identity.user_id, identity.role.value, identity.tenant_id)
        return SessionGrant(identity=identity, tokens=tokens)

    def refresh(self, refresh_token: str) -> SessionGrant:
        """Exchange a refresh token for a new grant. Raises TokenError or Unavailable."""
        claims = self._codec.parse(refresh_token, self._clock(), expected=TokenType.REFRESH)
        return self._coalescer.run(
            claims.token_id,
            lambda: self._refresh_with_retry(claims, refresh_token),
            wait_timeout=self._store_timeout * 3 + self._retry_backoff,
        )

    def _refresh_with_retry(self, claims: Claims, refresh_token: str) -> SessionGrant:
        # Both attempts share one consumer tag: a consume that committed before
        # the first attempt timed out is recognised as ours on the retry.
        consumer = uuid.uuid4().hex
        try:
            return self._rotate_session(claims, refresh_token, consumer)
        except Unavailable:
            logger.warning("refresh hit an unavailable store; retrying once in %.2fs", self._retry_backoff)
            time.sleep(self._retry_backoff)
            return self._rotate_session(claims, refresh_token, consumer)

    def _rotate_session(self, claims: Claims, refresh_token: str, consumer: str | None = None) -> SessionGrant:
        account = self.call(self._store.get_account, claims.user_id)
        if account is None or not account.is_active:
            raise TokenError(ErrorKind.REVOKED)
        if account.token_sequence != claims.sequence:
            raise TokenError(ErrorKind.REVOKED)
        if account.role is not Role.ADMIN and not account.tenant_id:
            raise TokenError(ErrorKind.REVOKED)
        identity = self.call(identity_for, self._store, account)

        now = self._clock()
        if not self._rotate:
            access = self._codec.issue(identity, TokenType.ACCESS, now, sequence=account.token_sequence)
            tokens = TokenPair(
                access_token=access,
                refresh_token=refresh_token,
                access_expires_at=int(now) + self._codec.access_ttl,
                refresh_expires_at=claims.expires_at,
            )
            return SessionGrant(identity=identity, tokens=tokens)

        consumed = self.call(
            self._store.consume_refresh_token, claims.token_id, claims.user_id, claims.expires_at, consumer
        )
        if not consumed:
            audit.warning("refresh token reuse user=%s jti=%s", claims.user_id, claims.token_id)
            raise TokenError(ErrorKind.REVOKED)
        tokens = self._codec.issue_pair(identity, now, sequence=account.token_sequence)
        logger.info("refreshed session user=%s", identity.user_id)
        return SessionGrant(identity=identity, tokens=tokens)

    def logout(self, refresh_token: str | None) -> None:
        """End the session that owns refresh_token. Idempotent; never raises.

        Consumes the current sequence number (compare-and-increment from the
        token's own `seq`), so the captured access and refresh tokens of this
        session are rejected from now on. Invalid or already-revoked tokens
        make this a no-op.
        """
        if not refresh_token:
            return
        try:
            claims = self._codec.parse(refresh_token, self._clock(), expected=TokenType.REFRESH)
        except TokenError as exc:
            logger.info("logout with unusable refresh token (%s); nothing to revoke", exc.kind.value)
            return
        try:
            bumped = self.call(self._store.increment_token_sequence, claims.user_id, claims.sequence)
            if self._rotate:
                self.call(self._store.consume_refresh_token, claims.token_id, claims.user_id, claims.expires_at)
        except Unavailable:
            logger.error("logout could not reach the store; user=%s tokens stay valid until expiry", claims.user_id)
            return
        if bumped is not None:
            audit.info("logout user=%s sequence=%d", claims.user_id, bumped)

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    def authenticate(self, access_token: str) -> Identity:
        """Validate a bearer access token and return its Identity.

        Role and tenant come from the signed claims; the only store read is
        the sequence-number comparison.
        """
        claims = self._codec.parse(
            access_token,
            self._clock(),
            expected=TokenType.ACCESS,
            sequence_of=self._sequence_of,
        )
        return claims.identity

    # ------------------------------------------------------------------
    # Revocation and password change
    # ------------------------------------------------------------------

    def revoke_sessions(self, user_id: str) -> int | None:
        """Invalidate every token issued to user_id. Returns the new sequence number."""
        sequence = self.call(self._store.increment_token_sequence, user_id)
        if sequence is not None:
            audit.info("sessions revoked user=%s sequence=%d", user_id, sequence)
        return sequence

    def change_password(self, identity: Identity, current_password: str, new_password: str) -> SessionGrant:
        """Replace the password, revoke every older token, return a fresh grant.

        Raises AuthFailure if current_password is wrong and
        PasswordPolicyError if new_password breaks the policy.
        """
        check_password_policy(new_password, self._password_min_length)
        account = self.call(self._store.get_account, identity.user_id)
        if account is None or account.hashed_password is None:
            raise AuthFailure(ErrorKind.INVALID_CREDENTIALS)
        if not verify_password(current_password, account.hashed_password):
            audit.info("password change refused user=%s", identity.user_id)
            raise AuthFailure(ErrorKind.INVALID_CREDENTIALS)
        self.call(self._store.update_account, identity.user_id, hashed_password=hash_password(new_password))
        sequence = self.call(self._store.increment_token_sequence, identity.user_id)
        if sequence is None:
            raise AuthFailure(ErrorKind.INVALID_CREDENTIALS)
        account.token_sequence = sequence
        fresh = self.call(identity_for, self._store, account)
        audit.info("password changed user=%s sequence=%d", identity.user_id, sequence)
        return SessionGrant(identity=fresh, tokens=self._codec.issue_pair(fresh, self._clock(), sequence=sequence))

    def purge_consumed_tokens(self) -> int:
        """Drop consumed-token records no longer needed to reject reuse.

        A refresh token still parses until exp + leeway, so its record is kept
        until that instant has passed.
        """
        return self.call(self._store.purge_consumed_tokens, self._clock() - self._codec.leeway)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


# ---------------------------------------------------------------------------
# Per-session state machine
# ---------------------------------------------------------------------------


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    ACTIVE = "active"
    REFRESHING = "refreshing"
    EXPIRED = "expired"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.UNAUTHENTICATED: frozenset({SessionState.AUTHENTICATING}),
    SessionState.AUTHENTICATING: frozenset({SessionState.ACTIVE, SessionState.UNAUTHENTICATED}),
    SessionState.ACTIVE: frozenset({SessionState.REFRESHING, SessionState.UNAUTHENTICATED}),
    SessionState.REFRESHING: frozenset({SessionState.ACTIVE, SessionState.EXPIRED}),
    SessionState.EXPIRED: frozenset({SessionState.UNAUTHENTICATED}),
}


class InvalidTransition(RuntimeError):
    pass


class TokenCache(Protocol):
    """What Session needs from a client-side token cache (see cache/session.py)."""

    @property
    def tokens(self) -> TokenPair | None: ...

    def current(self) -> Identity | None: ...

    def is_expiring_soon(self, now: float | None = None, window: float | None = None) -> bool: ...

    def set(self, tokens: TokenPair, identity: Identity | None = None) -> None: ...

    def clear(self) -> None: ...


class Session:
    """One caller's session, driving SessionManager and a token cache.

    Operations are issued sequentially by the owner of the session, so the
    state machine itself is not locked. Concurrent refreshes across sessions
    sharing a refresh token are handled by SessionManager.
    """

    def __init__(self, manager: SessionManager, cache: TokenCache) -> None:
        self._manager = manager
        self._cache = cache
        self.state = SessionState.ACTIVE if cache.current() is not None else SessionState.UNAUTHENTICATED

    def _transition(self, target: SessionState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {target.value}")
        self.state = target

    @property
    def identity(self) -> Identity | None:
        return self._cache.current() if self.state is SessionState.ACTIVE else None

    def authorization_header(self) -> dict[str, str]:
        tokens = self._cache.tokens
        if self.state is not SessionState.ACTIVE or tokens is None:
            return {}
        return {"Authorization": f"Bearer {tokens.access_token}"}

    def login(self, email: str, password: str) -> Identity:
        if self.state is SessionState.EXPIRED:
            self._transition(SessionState.UNAUTHENTICATED)
        self._transition(SessionState.AUTHENTICATING)
        try:
            grant = self._manager.login(email, password)
        except PortalError:
            self._transition(SessionState.UNAUTHENTICATED)
            raise
        self._cache.set(grant.tokens, grant.identity)
        self._transition(SessionState.ACTIVE)
        return grant.identity

    def refresh(self) -> Identity:
        tokens = self._cache.tokens
        self._transition(SessionState.REFRESHING)
        if tokens is None:
            self._expire()
            raise TokenError(ErrorKind.MALFORMED)
        try:
            grant = self._manager.refresh(tokens.refresh_token)
        except TokenError:
            self._expire()
            raise
        except Unavailable:
            # Transient: keep the current pair and let the caller retry.
            self.state = SessionState.ACTIVE
            raise
        self._cache.set(grant.tokens, grant.identity)
        self._transition(SessionState.ACTIVE)
        return grant.identity

    def ensure_fresh(self, now: float | None = None) -> bool:
        """Refresh proactively when the access token is about to expire.

        Returns True if a refresh happened.
        """
        if self.state is SessionState.ACTIVE and self._cache.is_expiring_soon(now):
            self.refresh()
            return True
        return False

    def logout(self) -> None:
        tokens = self._cache.tokens
        if tokens is not None:
            self._manager.logout(tokens.refresh_token)
        self._cache.clear()
        self.state = SessionState.UNAUTHENTICATED

    def _expire(self) -> None:
        self._cache.clear()
        self._transition(SessionState.EXPIRED)
