"""Tests for the dual-backend session revocation cache.

The shared backend is replaced by in-test fakes so the sticky mode selection,
the local shadow copy, bounded backend calls and the fail-open/fail-closed
behaviour can be exercised without a Redis server.
"""

import asyncio
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from ssocenter.service.revocation import RevocationCache, session_token_id


class FakeBackend:
    """Redis stand-in honouring TTLs and recording calls."""

    def __init__(self, *, reachable=True):
        self.reachable = reachable
        self.entries = {}
        self.calls = []

    def verify_connection(self):
        self.calls.append(("ping",))
        if not self.reachable:
            raise ConnectionError("connection refused")

    async def blacklist(self, session_token_id, ttl_seconds):
        self.calls.append(("set", session_token_id, ttl_seconds))
        if not self.reachable:
            raise ConnectionError("connection reset")
        self.entries[session_token_id] = time.monotonic() + ttl_seconds

    async def is_blacklisted(self, session_token_id):
        self.calls.append(("get", session_token_id))
        if not self.reachable:
            raise ConnectionError("connection reset")
        deadline = self.entries.get(session_token_id)
        return deadline is not None and time.monotonic() < deadline


class HangingBackend(FakeBackend):
    async def blacklist(self, session_token_id, ttl_seconds):
        await asyncio.sleep(30)

    async def is_blacklisted(self, session_token_id):
        await asyncio.sleep(30)
        return False


def _in(seconds):
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


class TestModeSelection:
    """The backend is probed once at construction and the choice is sticky."""

    def test_without_backend_runs_locally(self):
        cache = RevocationCache(None)
        assert cache.mode == "local"

    def test_reachable_backend_is_primary(self):
        cache = RevocationCache(FakeBackend())
        assert cache.mode == "redis"

    def test_unreachable_backend_falls_back_to_local(self):
        cache = RevocationCache(FakeBackend(reachable=False))
        assert cache.mode == "local"

    async def test_mode_is_not_reprobed(self):
        backend = FakeBackend(reachable=False)
        cache = RevocationCache(backend)
        backend.reachable = True

        await cache.add("u1:s1", _in(60))

        assert cache.mode == "local"
        assert backend.calls == [("ping",)]
        assert await cache.is_revoked("u1:s1") is True


class TestLocalMode:
    """Fallback correctness with no shared backend."""

    async def test_add_then_check(self):
        cache = RevocationCache(FakeBackend(reachable=False))
        await cache.add("u1:s1", _in(60))

        assert await cache.is_revoked("u1:s1") is True
        assert await cache.is_revoked("u1:s2") is False

    async def test_past_expiry_is_noop(self):
        cache = RevocationCache(None)
        await cache.add("u1:s1", _in(-1))
        await cache.add("u1:s2", datetime.now(timezone.utc))

        assert cache.local_size == 0
        assert await cache.is_revoked("u1:s1") is False

    async def test_ttl_round_trip(self):
        """Revoked until expiry, then forgotten and purged on read."""
        cache = RevocationCache(None)
        start = datetime.now(timezone.utc)
        cache._now = lambda: start
        await cache.add("u1:s1", start + timedelta(seconds=2))
        assert await cache.is_revoked("u1:s1") is True

        cache._now = lambda: start + timedelta(seconds=2)
        assert await cache.is_revoked("u1:s1") is False
        assert cache.local_size == 0

    async def test_later_expiry_wins(self):
        cache = RevocationCache(None)
        start = datetime.now(timezone.utc)
        cache._now = lambda: start
        await cache.add("u1:s1", start + timedelta(seconds=60))
        await cache.add("u1:s1", start + timedelta(seconds=5))

        cache._now = lambda: start + timedelta(seconds=30)
        assert await cache.is_revoked("u1:s1") is True

    async def test_naive_expiry_is_read_as_utc(self):
        cache = RevocationCache(None)
        naive = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(minutes=5)
        await cache.add("u1:s1", naive)
        assert await cache.is_revoked("u1:s1") is True

    async def test_revoke_session_uses_composite_id(self):
        cache = RevocationCache(None)
        await cache.revoke_session("42", "abc", _in(60))

        assert await cache.is_revoked(session_token_id("42", "abc")) is True
        assert await cache.is_revoked("42:abc") is True
        assert await cache.is_revoked("42") is False


class TestPurge:
    async def test_purge_removes_only_expired(self):
        cache = RevocationCache(None)
        start = datetime.now(timezone.utc)
        cache._now = lambda: start
        await cache.add("old", start + timedelta(seconds=1))
        await cache.add("older", start + timedelta(seconds=2))
        await cache.add("live", start + timedelta(hours=1))

        cache._now = lambda: start + timedelta(seconds=2)
        assert cache.purge_expired() == 2
        assert cache.local_size == 1
        assert await cache.is_revoked("live") is True

    def test_purge_on_empty_cache(self):
        assert RevocationCache(None).purge_expired() == 0


class TestPrimaryMode:
    """Redis as primary with a local shadow copy."""

    async def test_add_writes_backend_with_ceiling_ttl(self):
        backend = FakeBackend()
        cache = RevocationCache(backend)
        start = datetime.now(timezone.utc)
        cache._now = lambda: start

        await cache.add("u1:s1", start + timedelta(seconds=90, milliseconds=200))

        assert ("set", "u1:s1", 91) in backend.calls
        assert cache.local_size == 1

    async def test_backend_hit(self):
        backend = FakeBackend()
        cache = RevocationCache(backend)
        backend.entries["u9:s9"] = time.monotonic() + 60

        assert await cache.is_revoked("u9:s9") is True

    async def test_backend_miss_consults_local_shadow(self):
        """An entry written while Redis was failing is still honoured."""
        backend = FakeBackend()
        cache = RevocationCache(backend)
        backend.reachable = False
        await cache.add("u1:s1", _in(60))
        backend.reachable = True

        assert "u1:s1" not in backend.entries
        assert await cache.is_revoked("u1:s1") is True

    async def test_backend_outage_fails_open_to_local(self):
        backend = FakeBackend()
        cache = RevocationCache(backend)
        await cache.add("u1:s1", _in(60))
        backend.reachable = False

        assert await cache.is_revoked("u1:s1") is True
        assert await cache.is_revoked("u2:s2") is False

    async def test_backend_outage_fail_closed(self):
        backend = FakeBackend()
        cache = RevocationCache(backend, fail_closed=True)
        backend.reachable = False

        assert await cache.is_revoked("u2:s2") is True

    async def test_hanging_backend_is_bounded(self):
        cache = RevocationCache(HangingBackend(), timeout_seconds=0.05)
        started = time.monotonic()

        await cache.add("u1:s1", _in(60))
        assert await cache.is_revoked("u1:s1") is True
        assert await cache.is_revoked("u2:s2") is False

        assert time.monotonic() - started < 5


def test_concurrent_local_access_is_safe():
    cache = RevocationCache(None)
    errors = []

    def worker(idx):
        try:
            for n in range(50):
                asyncio.run(cache.add(f"u{idx}:s{n}", _in(60)))
                cache.purge_expired()
                assert asyncio.run(cache.is_revoked(f"u{idx}:s{n}")) is True
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert cache.local_size == 8 * 50


@pytest.mark.parametrize("user_id,session_id", [("42", "abc"), ("u-1", "s:2")])
def test_session_token_id(user_id, session_id):
    assert session_token_id(user_id, session_id) == f"{user_id}:{session_id}"
