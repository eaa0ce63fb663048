"""Tests for per-user locking."""

import threading
import time

import pytest
import redis

from fraud import locks
from fraud.errors import TransientStoreError
from fraud.locks import KeyedLock, RedisKeyedLock


class FakeRedisLock:
    def __init__(self, held: set, name: str, expire_on_release: bool = False):
        self.held = held
        self.name = name
        self.expire_on_release = expire_on_release

    def acquire(self):
        if self.name in self.held:
            return False
        self.held.add(self.name)
        return True

    def release(self):
        self.held.discard(self.name)
        if self.expire_on_release:
            raise redis.exceptions.LockNotOwnedError("lock expired")


class FakeRedis:
    def __init__(self, expire_on_release: bool = False):
        self.held = set()
        self.calls = []
        self.expire_on_release = expire_on_release

    def lock(self, name, timeout=None, blocking_timeout=None):
        self.calls.append((name, timeout, blocking_timeout))
        return FakeRedisLock(self.held, name, self.expire_on_release)


class TestKeyedLock:
    def test_serialises_same_key(self):
        """Two threads holding the same key never overlap."""
        lock = KeyedLock()
        inside = []
        overlaps = []

        def work():
            with lock.hold("u1"):
                if inside:
                    overlaps.append(1)
                inside.append(1)
                time.sleep(0.01)
                inside.pop()

        threads = [threading.Thread(target=work) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlaps == []

    def test_entries_are_dropped_after_release(self):
        lock = KeyedLock()
        with lock.hold("a"), lock.hold("b"):
            assert len(lock) == 2

        assert len(lock) == 0


class TestRedisKeyedLock:
    def test_lock_name_and_timeouts(self):
        client = FakeRedis()
        with RedisKeyedLock(client, timeout=12, blocking_timeout=3).hold("u1"):
            assert client.held == {"fraud:user-lock:u1"}

        assert client.calls == [("fraud:user-lock:u1", 12, 3)]
        assert client.held == set()

    def test_busy_lock_is_transient(self):
        """Failing to get the lock in time is a retryable error."""
        client = FakeRedis()
        client.held.add("fraud:user-lock:u1")

        with pytest.raises(TransientStoreError):
            with RedisKeyedLock(client).hold("u1"):
                pass

    def test_expired_lock_on_release_is_tolerated(self):
        with RedisKeyedLock(FakeRedis(expire_on_release=True)).hold("u1"):
            pass


class TestLocksFromEnv:
    def test_in_process_by_default(self, monkeypatch):
        monkeypatch.delenv("FRAUD_REDIS_LOCKS", raising=False)

        assert locks.locks_from_env() is locks.user_locks

    def test_redis_when_enabled(self, monkeypatch):
        monkeypatch.setenv("FRAUD_REDIS_LOCKS", "true")
        monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")

        assert isinstance(locks.locks_from_env(), RedisKeyedLock)
