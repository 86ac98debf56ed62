"""
Per-account mutual exclusion.

All reconciliation for one account runs inside ``locks.hold(account_id)``.
Different accounts never contend.
"""

import logging
import threading
from contextlib import contextmanager

import redis

from subsync.config import ConfigurationError
from subsync.errors import LockTimeout, StorageFailure

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "subsync:account-lock"


class RedisAccountLocks:
    """Cross-process lock backed by redis-py's Lock (SET NX PX + token release)."""

    def __init__(self, client, ttl: int = 30, wait: float = 5.0):
        self.client = client
        self.ttl = ttl
        self.wait = wait

    def key(self, account_id: str) -> str:
        return f"{LOCK_KEY_PREFIX}:{account_id}"

    @contextmanager
    def hold(self, account_id: str):
        lock = self.client.lock(self.key(account_id), timeout=self.ttl, blocking_timeout=self.wait)
        try:
            acquired = lock.acquire()
        except redis.RedisError as e:
            raise StorageFailure(f"Lock backend unavailable for account {account_id}") from e

        if not acquired:
            raise LockTimeout(f"Timed out after {self.wait}s waiting for account {account_id}")

        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError:
                # TTL ran out while we held it; the unit of work already finished
                logger.warning(f"Account lock for {account_id} expired before release")


class LocalAccountLocks:
    """In-process keyed locks for development, tests and single-worker deploys."""

    def __init__(self, wait: float = 5.0):
        self.wait = wait
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}  # account_id -> [lock, refcount]

    def _checkout(self, account_id):
        with self._guard:
            entry = self._locks.setdefault(account_id, [threading.Lock(), 0])
            entry[1] += 1
            return entry

    def _checkin(self, account_id, entry):
        with self._guard:
            entry[1] -= 1
            if entry[1] == 0:
                self._locks.pop(account_id, None)

    def active_keys(self):
        with self._guard:
            return set(self._locks)

    @contextmanager
    def hold(self, account_id: str):
        entry = self._checkout(account_id)
        try:
            if not entry[0].acquire(timeout=self.wait):
                raise LockTimeout(f"Timed out after {self.wait}s waiting for account {account_id}")
            try:
                yield
            finally:
                entry[0].release()
        finally:
            self._checkin(account_id, entry)


def build_account_locks(config, redis_client=None):
    backend = config.get("LOCK_BACKEND", "redis")
    if backend == "redis":
        if redis_client is None:
            raise ConfigurationError("LOCK_BACKEND=redis but no Redis client is available")
        return RedisAccountLocks(
            redis_client,
            ttl=config.get("ACCOUNT_LOCK_TTL", 30),
            wait=config.get("ACCOUNT_LOCK_WAIT", 5.0),
        )
    return LocalAccountLocks(wait=config.get("ACCOUNT_LOCK_WAIT", 5.0))
