"""
Leader lease: keeps exactly one active poller across processes.

A process holds the lease while its last renewal is younger than the TTL.
Acquire and renew are the same single conditional write; a stale record
may be overwritten by anyone. Store failures count as "not acquired" and
never propagate.
"""

import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

import redis

from .exceptions import StoreError
from .metrics import metrics
from .store import CoordStore

logger = logging.getLogger(__name__)

LEASE_KEY = "poller_lease"


@dataclass
class LeaseInfo:
    holder: str
    renewed_at: Optional[float]
    age_s: Optional[float]
    fresh: bool


class PollerLeaseBase(ABC):
    """Common contract for lease backends."""

    def __init__(self, ttl_ms: int = 30000):
        self.ttl_ms = ttl_ms
        self._held = False

    @abstractmethod
    def try_acquire_or_renew(self, self_id: str) -> bool:
        pass

    @abstractmethod
    def release(self, self_id: str) -> bool:
        pass

    @abstractmethod
    def holder(self) -> Optional[LeaseInfo]:
        pass

    def _track(self, self_id: str, held: bool) -> bool:
        if held and not self._held:
            logger.info(f"Poller lease acquired by {self_id}")
        elif not held and self._held:
            logger.warning(f"Poller lease lost by {self_id}")
        self._held = held
        metrics.set_lease_held(held)
        return held


class PollerLease(PollerLeaseBase):
    """Lease stored as a row in the shared SQLite ``kv_store`` table."""

    def __init__(
        self,
        store: CoordStore,
        ttl_ms: int = 30000,
        clock: Callable[[], float] = time.time,
        key: str = LEASE_KEY
    ):
        super().__init__(ttl_ms)
        self.store = store
        self.clock = clock
        self.key = key

    def try_acquire_or_renew(self, self_id: str) -> bool:
        now = self.clock()
        stale_before = now - self.ttl_ms / 1000.0
        try:
            with self.store.connect() as conn:
                cursor = conn.execute(
                    '''
                    INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    WHERE kv_store.value = excluded.value OR kv_store.updated_at <= ?
                    ''',
                    (self.key, self_id, now, stale_before)
                )
                acquired = cursor.rowcount == 1
        except StoreError as e:
            logger.warning(f"Lease check failed, skipping this cycle: {e}")
            return self._track(self_id, False)
        return self._track(self_id, acquired)

    def release(self, self_id: str) -> bool:
        try:
            with self.store.connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM kv_store WHERE key = ? AND value = ?",
                    (self.key, self_id)
                )
                released = cursor.rowcount == 1
        except StoreError as e:
            logger.warning(f"Lease release failed: {e}")
            return False

        if released:
            logger.info(f"Poller lease released by {self_id}")
        self._held = False
        metrics.set_lease_held(False)
        return released

    def holder(self) -> Optional[LeaseInfo]:
        with self.store.connect() as conn:
            row = conn.execute(
                "SELECT value, updated_at FROM kv_store WHERE key = ?",
                (self.key,)
            ).fetchone()
        if not row:
            return None
        age = self.clock() - row["updated_at"]
        return LeaseInfo(
            holder=row["value"],
            renewed_at=row["updated_at"],
            age_s=age,
            fresh=age < self.ttl_ms / 1000.0
        )


class RedisPollerLease(PollerLeaseBase):
    """
    Lease stored as a Redis key with a PX expiry.

    Acquire is ``SET NX PX``; renew re-sets the key under WATCH only while
    this process still owns it; release deletes under the same check.
    """

    def __init__(self, redis_client, ttl_ms: int = 30000, key: str = "lease:poller"):
        super().__init__(ttl_ms)
        self.redis = redis_client
        self.key = key

    def _owned_write(self, self_id: str, renew: bool) -> bool:
        with self.redis.pipeline() as pipe:
            pipe.watch(self.key)
            if pipe.get(self.key) != self_id:
                pipe.unwatch()
                return False
            pipe.multi()
            if renew:
                pipe.set(self.key, self_id, px=self.ttl_ms)
            else:
                pipe.delete(self.key)
            pipe.execute()
            return True

    def try_acquire_or_renew(self, self_id: str) -> bool:
        try:
            if self.redis.set(self.key, self_id, nx=True, px=self.ttl_ms):
                return self._track(self_id, True)
            return self._track(self_id, self._owned_write(self_id, renew=True))
        except redis.WatchError:
            return self._track(self_id, False)
        except redis.RedisError as e:
            logger.warning(f"Lease check failed, skipping this cycle: {e}")
            return self._track(self_id, False)

    def release(self, self_id: str) -> bool:
        try:
            released = self._owned_write(self_id, renew=False)
        except (redis.WatchError, redis.RedisError) as e:
            logger.warning(f"Lease release failed: {e}")
            return False

        if released:
            logger.info(f"Poller lease released by {self_id}")
        else:
            logger.warning(f"Poller lease no longer owned by {self_id}. Did not release.")
        self._held = False
        metrics.set_lease_held(False)
        return released

    def holder(self) -> Optional[LeaseInfo]:
        with self.redis.pipeline() as pipe:
            pipe.get(self.key)
            pipe.pttl(self.key)
            value, pttl = pipe.execute()
        if value is None:
            return None
        age = None
        if pttl is not None and pttl >= 0:
            age = (self.ttl_ms - pttl) / 1000.0
        return LeaseInfo(holder=value, renewed_at=None, age_s=age, fresh=True)
