"""
TTL-aware key-value store used for rate-limiter timestamps, failed-URL markers
and daily discovery counters. Components receive a store explicitly; there is
no ambient cache.
"""

import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Optional


class KeyValueStore(ABC):
    """
    Abstract interface for a shared TTL cache.
    increment() MUST be atomic: concurrent callers never lose an update.
    """

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """Return the live value for key, or default when absent/expired."""
        pass

    @abstractmethod
    def put(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        """Store value; ttl_seconds=None keeps it until deleted."""
        pass

    @abstractmethod
    def increment(self, key: str, amount: int = 1, ttl_seconds: Optional[float] = None) -> int:
        """
        Atomically add amount to an integer counter and return the new value.
        A missing/expired counter starts from 0 and gets ttl_seconds.
        """
        pass

    @abstractmethod
    def reserve_slot(self, key: str, interval: float, ttl_seconds: Optional[float] = None) -> float:
        """
        Atomically claim the next time slot under key and return the seconds until it.
        The slot is max(now, last + interval); it is stored as the new last value and
        expires ttl_seconds after the slot itself. The stored value never moves backwards.
        """
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    def has(self, key: str) -> bool:
        return self.get(key) is not None


class MemoryKeyValueStore(KeyValueStore):
    """In-process store guarded by a single lock. Shared by threads, not processes."""

    def __init__(self, clock=time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._data = {}  # key -> (value, expires_at or None)

    def _live(self, key):
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def _expiry(self, ttl_seconds):
        return None if ttl_seconds is None else self._clock() + ttl_seconds

    def get(self, key, default=None):
        with self._lock:
            entry = self._live(key)
            return default if entry is None else entry[0]

    def put(self, key, value, ttl_seconds=None):
        with self._lock:
            self._data[key] = (value, self._expiry(ttl_seconds))

    def increment(self, key, amount=1, ttl_seconds=None):
        with self._lock:
            entry = self._live(key)
            if entry is None:
                value, expires_at = 0, self._expiry(ttl_seconds)
            else:
                value, expires_at = entry
            value = int(value) + amount
            self._data[key] = (value, expires_at)
            return value

    def reserve_slot(self, key, interval, ttl_seconds=None):
        with self._lock:
            now = self._clock()
            entry = self._live(key)
            slot = now if entry is None else max(now, float(entry[0]) + interval)
            self._data[key] = (slot, None if ttl_seconds is None else slot + ttl_seconds)
            return slot - now

    def delete(self, key):
        with self._lock:
            self._data.pop(key, None)
