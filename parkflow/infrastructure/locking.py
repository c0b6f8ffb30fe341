# File: parkflow/infrastructure/locking.py
"""
Per-plate mutual exclusion

Entry and exit processing read the current session, decide, then write.
Two captures for the same plate racing through that sequence could open
duplicate sessions or lose a transition, so every read-decide-write for a
plate runs inside a lock keyed by the normalized plate number.

Implementations:
- InMemoryPlateLockManager - threading locks, for a single process
- RedisPlateLockManager - redis locks with a lease, for several workers
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterator, Optional
import logging
import threading

import redis

from ..domain.models import normalize_plate_no


class PlateLockTimeoutError(RuntimeError):
    """Raised when a plate lock could not be acquired in time"""
    pass


class PlateLockManager(ABC):
    """Hands out a mutual-exclusion scope per normalized plate number"""

    @abstractmethod
    @contextmanager
    def lock(self, plate_no: str) -> Iterator[str]:
        """Hold the lock for a plate; yields the normalized plate"""
        pass


class InMemoryPlateLockManager(PlateLockManager):
    """
    Process-local plate locks.
    Locks are reference counted and dropped once nobody holds or waits
    for them, so the registry does not grow with every plate ever seen.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self._locks: Dict[str, threading.Lock] = {}
        self._waiters: Dict[str, int] = {}
        self._registry_lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def _checkout(self, key: str) -> threading.Lock:
        with self._registry_lock:
            plate_lock = self._locks.setdefault(key, threading.Lock())
            self._waiters[key] = self._waiters.get(key, 0) + 1
            return plate_lock

    def _release(self, key: str) -> None:
        with self._registry_lock:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    @contextmanager
    def lock(self, plate_no: str) -> Iterator[str]:
        key = normalize_plate_no(plate_no)
        plate_lock = self._checkout(key)
        try:
            acquired = plate_lock.acquire(timeout=self.timeout if self.timeout is not None else -1)
            if not acquired:
                raise PlateLockTimeoutError(f"Timed out waiting for lock on plate {key}")
            try:
                self._logger.debug(f"Acquired lock for plate {key}")
                yield key
            finally:
                plate_lock.release()
        finally:
            self._release(key)

    @property
    def active_locks(self) -> int:
        with self._registry_lock:
            return len(self._locks)


class RedisPlateLockManager(PlateLockManager):
    """Distributed plate locks backed by redis"""

    def __init__(
        self,
        redis_client: redis.Redis,
        timeout: float = 10.0,
        blocking_timeout: Optional[float] = None,
        key_prefix: str = "parkflow:plate-lock:"
    ):
        self.redis_client = redis_client
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout if blocking_timeout is not None else timeout
        self.key_prefix = key_prefix
        self._logger = logging.getLogger(self.__class__.__name__)

    @classmethod
    def from_url(cls, redis_url: str, **kwargs) -> 'RedisPlateLockManager':
        return cls(redis.Redis.from_url(redis_url), **kwargs)

    @contextmanager
    def lock(self, plate_no: str) -> Iterator[str]:
        key = normalize_plate_no(plate_no)
        plate_lock = self.redis_client.lock(
            f"{self.key_prefix}{key}",
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout,
        )
        if not plate_lock.acquire():
            raise PlateLockTimeoutError(f"Timed out waiting for redis lock on plate {key}")
        try:
            self._logger.debug(f"Acquired redis lock for plate {key}")
            yield key
        finally:
            try:
                plate_lock.release()
            except redis.exceptions.LockError as e:
                # Lease expired while the transition was running
                self._logger.error(f"Lock for plate {key} was lost before release: {e}")
