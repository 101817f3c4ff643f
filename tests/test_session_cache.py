"""
tests/test_session_cache.py -- Client-side session cache and its durable slots.

Covers:
  - set / current / clear, with the Identity decoded from the access token
  - Restore across instances from the same slot file
  - Expired or unreadable durable copies are discarded on restore
  - is_expiring_soon boundaries; an empty cache never asks for a refresh
"""

from __future__ import annotations

import time

import pytest

from auth.models import Identity, Role, TokenPair, TokenType
from auth.tokens import TokenCodec
from cache.session import SessionCache
from cache.store import TokenSlots

SECRET = "c" * 40

USER = Identity(user_id="u1", email="u1@acme.test", display_name="User One", role=Role.USER, tenant_id="t1")


@pytest.fixture
def codec() -> TokenCodec:
    return TokenCodec(SECRET)


@pytest.fixture
def slot_path(tmp_path):
    return tmp_path / "session_cache.db"


def _pair(codec: TokenCodec, now: float | None = None) -> TokenPair:
    return codec.issue_pair(USER, time.time() if now is None else now)


class TestTokenSlots:
    def test_set_get_clear(self) -> None:
        slots = TokenSlots(":memory:")
        assert slots.get("access_token") is None
        slots.set_many({"access_token": "a", "refresh_token": "r"})
        assert slots.get("access_token") == "a"
        slots.set_many({"access_token": "b"})
        assert slots.get("access_token") == "b"
        assert slots.get("refresh_token") == "r"
        slots.clear()
        assert slots.get("refresh_token") is None
        slots.close()

    def test_unknown_slot_is_rejected_without_partial_write(self) -> None:
        slots = TokenSlots(":memory:")
        with pytest.raises(ValueError):
            slots.set_many({"access_token": "a", "role": "admin"})
        assert slots.get("access_token") is None
        slots.close()


class TestSessionCache:
    def test_empty_cache(self) -> None:
        cache = SessionCache()
        assert cache.tokens is None
        assert cache.current() is None
        assert cache.is_expiring_soon() is False

    def test_set_decodes_identity_from_access_token(self, codec) -> None:
        cache = SessionCache()
        pair = _pair(codec)
        cache.set(pair)
        assert cache.tokens == pair
        assert cache.current() == USER

    def test_clear(self, codec) -> None:
        cache = SessionCache()
        cache.set(_pair(codec))
        cache.clear()
        assert cache.tokens is None
        assert cache.current() is None

    def test_restores_across_instances(self, codec, slot_path) -> None:
        pair = _pair(codec)
        first = SessionCache(TokenSlots(slot_path))
        first.set(pair, USER)

        second = SessionCache(TokenSlots(slot_path))
        assert second.tokens == pair
        assert second.current() == USER

    def test_clear_removes_durable_copy(self, codec, slot_path) -> None:
        first = SessionCache(TokenSlots(slot_path))
        first.set(_pair(codec))
        first.clear()
        assert SessionCache(TokenSlots(slot_path)).tokens is None

    def test_expired_durable_copy_is_discarded(self, codec, slot_path) -> None:
        stale = _pair(codec, now=time.time() - codec.refresh_ttl - 10)
        SessionCache(TokenSlots(slot_path)).set(stale)

        restored = SessionCache(TokenSlots(slot_path))
        assert restored.tokens is None
        assert TokenSlots(slot_path).get("refresh_token") is None

    def test_unreadable_durable_copy_is_discarded(self, codec, slot_path) -> None:
        pair = _pair(codec)
        TokenSlots(slot_path).set_many(
            {
                "access_token": "not-a-token",
                "refresh_token": pair.refresh_token,
                "access_expires_at": str(pair.access_expires_at),
                "refresh_expires_at": "soon",
            }
        )
        restored = SessionCache(TokenSlots(slot_path))
        assert restored.tokens is None
        assert TokenSlots(slot_path).get("access_token") is None


class TestExpiringSoon:
    @pytest.fixture
    def cache(self, codec) -> SessionCache:
        cache = SessionCache(lead_seconds=60)
        cache.set(codec.issue_pair(USER, 1_700_000_000))
        return cache

    def test_outside_lead_window(self, cache) -> None:
        expires = cache.tokens.access_expires_at
        assert cache.is_expiring_soon(now=expires - 60) is False

    def test_inside_lead_window(self, cache) -> None:
        expires = cache.tokens.access_expires_at
        assert cache.is_expiring_soon(now=expires - 59) is True

    def test_already_expired(self, cache) -> None:
        assert cache.is_expiring_soon(now=cache.tokens.access_expires_at + 5) is True

    def test_explicit_window(self, cache) -> None:
        expires = cache.tokens.access_expires_at
        assert cache.is_expiring_soon(now=expires - 200, window=300) is True


def test_access_token_claims_match_pair(codec) -> None:
    cache = SessionCache()
    pair = _pair(codec)
    cache.set(pair)
    claims = codec.parse(cache.tokens.access_token, expected=TokenType.ACCESS)
    assert claims.expires_at == pair.access_expires_at


def test_lead_window_from_settings() -> None:
    from core.config import Settings

    settings = Settings(debug=True, refresh_lead_seconds=120)
    assert SessionCache.from_settings(settings).lead_seconds == 120
