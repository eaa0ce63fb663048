"""Narrow per-user locking.

Only the read-modify-write of one user's score/badge rows is serialised.
``KeyedLock`` covers threads inside one process; ``RedisKeyedLock`` extends the
same guarantee across the API and worker processes. Either way the code paths
also take ``SELECT ... FOR UPDATE`` on the rows themselves.
"""

from __future__ import annotations

import os
import threading
from contextlib import contextmanager
from typing import Iterator, Optional, Protocol

import redis
import structlog

from fraud.errors import TransientStoreError

log = structlog.get_logger(__name__)


class UserLocks(Protocol):
    def hold(self, key: str): ...


class KeyedLock:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._refs: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._refs[key] = self._refs.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._refs[key] -= 1
                if self._refs[key] == 0:
                    del self._refs[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class RedisKeyedLock:
    """Per-key lock held in Redis.

    ``timeout`` bounds how long a crashed holder can block others;
    ``blocking_timeout`` bounds how long we wait before giving up with a
    retryable error.
    """

    def __init__(self, client, prefix: str = "fraud:user-lock:", timeout: float = 30.0, blocking_timeout: float = 10.0):
        self._client = client
        self._prefix = prefix
        self._timeout = timeout
        self._blocking_timeout = blocking_timeout

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisKeyedLock":
        return cls(redis.Redis.from_url(url), **kwargs)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        name = f"{self._prefix}{key}"
        lock = self._client.lock(name, timeout=self._timeout, blocking_timeout=self._blocking_timeout)
        if not lock.acquire():
            raise TransientStoreError("user lock busy", user_id=key)
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError:
                # expired while held; the row locks still kept the write consistent
                log.warning("user_lock_expired", user_id=key)


# process-wide registry shared by the scorer, the review workflow and batch workers
user_locks = KeyedLock()


def locks_from_env() -> UserLocks:
    """Redis-backed locks when ``FRAUD_REDIS_LOCKS`` is on, else the in-process registry."""
    enabled = os.getenv("FRAUD_REDIS_LOCKS", "false").lower() in {"1", "true", "yes", "on"}
    url: Optional[str] = os.getenv("REDIS_URL")
    if enabled and url:
        return RedisKeyedLock.from_url(url)
    return user_locks
