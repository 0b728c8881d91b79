"""
Keyed locks for per-order / per-agent serialization.

Callers acquire the order key first, then agent keys in sorted order, so two
units can never wait on each other in a cycle. Waits are bounded: a lock that
cannot be taken in time fails the unit with ConflictError and nothing is written.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from dispatch_core.config import DISPATCH_LOCK_TIMEOUT_SECONDS, DISPATCH_LOCK_TTL_SECONDS
from dispatch_core.errors import ConflictError

logger = logging.getLogger(__name__)

LOCK_PREFIX = "lock:"


def order_key(order_id: str) -> str:
    return f"order:{order_id}"


def agent_key(agent_id: str) -> str:
    return f"agent:{agent_id}"


def _dedupe(keys) -> list[str]:
    seen = set()
    out = []
    for k in keys:
        if k not in seen:
            seen.add(k)
            out.append(k)
    return out


def _busy(key: str) -> ConflictError:
    logger.warning("Lock wait timed out for %s.", key)
    return ConflictError("Resource is busy with a concurrent update; retry the request")


class KeyedLocks:
    """In-process locks, one per key, dropped when nobody holds or waits on them."""

    def __init__(self, timeout: float = DISPATCH_LOCK_TIMEOUT_SECONDS):
        self.timeout = timeout
        self._guard = threading.Lock()
        self._entries: dict[str, list] = {}  # key -> [lock, refcount]

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = [threading.Lock(), 0]
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._entries[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._entries[key]

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        held: list[tuple[str, threading.Lock]] = []
        try:
            for key in _dedupe(keys):
                lock = self._checkout(key)
                if not lock.acquire(timeout=self.timeout):
                    self._checkin(key)
                    raise _busy(key)
                held.append((key, lock))
            yield
        finally:
            for key, lock in reversed(held):
                lock.release()
                self._checkin(key)


class RedisLocks:
    """Cross-process locks on top of redis-py's Lock (SET NX PX + Lua release)."""

    def __init__(
        self,
        client,
        timeout: float = DISPATCH_LOCK_TIMEOUT_SECONDS,
        ttl: float = DISPATCH_LOCK_TTL_SECONDS,
    ):
        self._client = client
        self.timeout = timeout
        self.ttl = ttl

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        from redis.exceptions import LockError

        held = []
        try:
            for key in _dedupe(keys):
                lock = self._client.lock(f"{LOCK_PREFIX}{key}", timeout=self.ttl, blocking_timeout=self.timeout)
                if not lock.acquire():
                    raise _busy(key)
                held.append((key, lock))
            yield
        finally:
            for key, lock in reversed(held):
                try:
                    lock.release()
                except LockError:
                    logger.error("Lock %s expired before release; unit outlived DISPATCH_LOCK_TTL_SECONDS.", key)
