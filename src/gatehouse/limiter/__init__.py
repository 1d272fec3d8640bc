"""
Usage limiting for Gatehouse.

Fixed-window per-identity request ceilings with a pluggable counter store.
See limiter.py for the fail-open / fail-closed switch and stores.py for the
in-process and Redis backends.
"""

from gatehouse.limiter.limiter import UsageLimiter, window_for
from gatehouse.limiter.stores import (
    InMemoryRateStore,
    RateStore,
    RedisRateStore,
    WindowSpan,
)

__all__ = [
    "UsageLimiter",
    "window_for",
    "InMemoryRateStore",
    "RateStore",
    "RedisRateStore",
    "WindowSpan",
]
