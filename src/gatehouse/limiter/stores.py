"""
Rate-limit stores.

A store owns the counters. Its one job is an atomic, windowed
increment-and-read: two concurrent requests for the same identity must
never both observe the same count.

    InMemoryRateStore: single process; one lock per identity, so requests
                       for different identities never contend
    RedisRateStore:    shared between gateway instances; INCR and EXPIREAT
                       run in one MULTI/EXEC transaction
"""

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import redis.asyncio as aioredis

from gatehouse.schema import UsageCounter


@dataclass(frozen=True)
class WindowSpan:
    """
    A fixed counting window.

    Attributes:
        start: Inclusive start (UTC)
        end: Exclusive end (UTC); when the counter resets
    """

    start: datetime
    end: datetime


class RateStore(Protocol):
    """Windowed atomic counter."""

    async def increment_and_get(self, identity_id: str, window: WindowSpan) -> int: ...


class InMemoryRateStore:
    """
    Process-local rate store.

    Keeps only the current window per identity. The first increment seen
    for a later window resets the counter. An identity that stops calling
    keeps its entry until ``prune`` drops it; long-running gateways call
    ``prune`` with the current window start now and then.
    """

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._counters: dict[str, UsageCounter] = {}

    def _lock_for(self, identity_id: str) -> threading.Lock:
        lock = self._locks.get(identity_id)
        if lock is None:
            # setdefault is atomic, so racing creators agree on one lock
            lock = self._locks.setdefault(identity_id, threading.Lock())
        return lock

    async def increment_and_get(self, identity_id: str, window: WindowSpan) -> int:
        """Increment the identity's counter for ``window`` and return it."""
        while True:
            lock = self._lock_for(identity_id)
            with lock:
                # prune() may have retired this lock while we waited for it
                if self._locks.get(identity_id) is not lock:
                    continue
                current = self._counters.get(identity_id)
                if current is None or window.start > current.window_start:
                    count = 1
                    window_start = window.start
                else:
                    count = current.count + 1
                    window_start = current.window_start
                self._counters[identity_id] = UsageCounter(
                    identity_id=identity_id,
                    window_start=window_start,
                    count=count,
                )
                return count

    def prune(self, before: datetime) -> int:
        """
        Drop identities whose counter belongs to a window starting before ``before``.

        Returns:
            Number of identities dropped
        """
        dropped = 0
        for identity_id in list(self._counters):
            lock = self._locks.get(identity_id)
            if lock is None:
                continue
            with lock:
                current = self._counters.get(identity_id)
                if current is None or current.window_start >= before:
                    continue
                del self._counters[identity_id]
                del self._locks[identity_id]
                dropped += 1
        return dropped

    def get(self, identity_id: str) -> UsageCounter | None:
        """Return the identity's current counter, if any."""
        return self._counters.get(identity_id)

    def reset(self, identity_id: str | None = None) -> None:
        """Clear one identity's counter, or all of them."""
        if identity_id is None:
            self._counters.clear()
        else:
            self._counters.pop(identity_id, None)


class RedisRateStore:
    """
    Redis-backed rate store shared by several gateway instances.

    Keys look like ``<namespace>:<identity>:<window start epoch>`` and expire
    shortly after their window ends.
    """

    def __init__(
        self,
        client: Any,
        namespace: str = "gatehouse:usage",
        expiry_slack_seconds: int = 60,
    ) -> None:
        self.client = client
        self.namespace = namespace
        self.expiry_slack_seconds = expiry_slack_seconds

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisRateStore":
        """Connect to Redis by URL (redis://host:6379/0)."""
        return cls(aioredis.from_url(url), **kwargs)

    def key_for(self, identity_id: str, window: WindowSpan) -> str:
        """Build the counter key for an identity and window."""
        return f"{self.namespace}:{identity_id}:{int(window.start.timestamp())}"

    async def increment_and_get(self, identity_id: str, window: WindowSpan) -> int:
        """Atomically increment the window counter and set its expiry."""
        key = self.key_for(identity_id, window)
        expire_at = int(window.end.timestamp()) + self.expiry_slack_seconds
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expireat(key, expire_at)
            count, _ = await pipe.execute()
        return int(count)

    async def close(self) -> None:
        """Close the underlying connection pool."""
        await self.client.aclose()
