"""
cache/session.py -- Client-side session cache.

Holds the current TokenPair and the Identity decoded from its access token,
in memory plus a durable local copy (TokenSlots). The durable copy only
survives restarts of the client process; the server never trusts it.

The Identity shown here is decoded WITHOUT signature verification (the client
does not hold the signing key). It is for display and refresh scheduling
only. Every authorization decision happens server-side on the verified token.

Layer rule: imports auth/ models and token helpers (and core/ settings) only.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from auth.errors import TokenError
from auth.models import Identity, TokenPair
from auth.tokens import peek_claims
from cache.store import TokenSlots

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("tenantportal.cache")

DEFAULT_LEAD_SECONDS = 60


class SessionCache:
    """In-memory token pair with an optional durable local copy.

    Usage:
        cache = SessionCache(TokenSlots())
        cache.set(grant.tokens)
        cache.current()                # Identity or None
        if cache.is_expiring_soon():
            session.refresh()
        cache.clear()
    """

    def __init__(self, slots: TokenSlots | None = None, lead_seconds: int = DEFAULT_LEAD_SECONDS) -> None:
        self._slots = slots
        self.lead_seconds = lead_seconds
        self._tokens: TokenPair | None = None
        self._identity: Identity | None = None
        if slots is not None:
            self._restore()

    @classmethod
    def from_settings(cls, settings: Settings, slots: TokenSlots | None = None) -> SessionCache:
        return cls(slots, lead_seconds=settings.refresh_lead_seconds)

    @property
    def tokens(self) -> TokenPair | None:
        return self._tokens

    def current(self) -> Identity | None:
        """Return the cached Identity, or None when signed out."""
        return self._identity

    def is_expiring_soon(self, now: float | None = None, window: float | None = None) -> bool:
        """True when less than `window` seconds (default lead_seconds) remain on the access token.

        An empty cache is never "expiring soon"; there is nothing to refresh.
        """
        if self._tokens is None:
            return False
        current = time.time() if now is None else now
        lead = self.lead_seconds if window is None else window
        return self._tokens.access_expires_at - current < lead

    def set(self, tokens: TokenPair, identity: Identity | None = None) -> None:
        """Store a new pair. Without `identity`, it is decoded from the access token."""
        if identity is None:
            identity = peek_claims(tokens.access_token).identity
        self._tokens = tokens
        self._identity = identity
        if self._slots is not None:
            self._slots.set_many(
                {
                    "access_token": tokens.access_token,
                    "refresh_token": tokens.refresh_token,
                    "access_expires_at": str(tokens.access_expires_at),
                    "refresh_expires_at": str(tokens.refresh_expires_at),
                }
            )

    def clear(self) -> None:
        self._tokens = None
        self._identity = None
        if self._slots is not None:
            self._slots.clear()

    def _restore(self) -> None:
        access = self._slots.get("access_token")
        refresh = self._slots.get("refresh_token")
        access_exp = self._slots.get("access_expires_at")
        refresh_exp = self._slots.get("refresh_expires_at")
        if not (access and refresh and access_exp and refresh_exp):
            return
        try:
            tokens = TokenPair(
                access_token=access,
                refresh_token=refresh,
                access_expires_at=int(access_exp),
                refresh_expires_at=int(refresh_exp),
            )
            identity = peek_claims(access).identity
        except (ValueError, TokenError):
            logger.warning("discarding unreadable cached session")
            self.clear()
            return
        if tokens.refresh_expires_at <= time.time():
            logger.info("cached session has expired; signed out")
            self.clear()
            return
        self._tokens = tokens
        self._identity = identity
