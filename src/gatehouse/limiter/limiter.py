"""
Usage Limiter for Gatehouse.

Counts every evaluated request per identity in fixed calendar windows
(UTC minute, hour, day or month) and compares the count against a ceiling.
Denied requests count too, so probing for allowed actions costs quota.

The limiter runs before the decision engine. It is cheap, and a request
rejected here never costs a full rule evaluation.

Over-limit behaviour is one configuration switch (LimitMode):
    - fail_open (default): let the request through and log a warning
    - fail_closed: raise RateLimitExceeded

The same switch decides what happens when the rate store itself fails.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from gatehouse.config import LimitMode, UsageConfig, UsageWindow
from gatehouse.errors import RateLimitExceeded, RateStoreUnavailable
from gatehouse.limiter.stores import InMemoryRateStore, RateStore, WindowSpan
from gatehouse.schema import Identity, TrustTier, UsageResult

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Current time in UTC."""
    return datetime.now(UTC)


def window_for(window: UsageWindow, now: datetime) -> WindowSpan:
    """
    Compute the calendar window containing ``now``.

    Examples:
        MINUTE, 12:34:56 -> [12:34:00, 12:35:00)
        MONTH, 2024-12-15 -> [2024-12-01, 2025-01-01)
    """
    now = now.astimezone(UTC)
    if window == UsageWindow.MINUTE:
        start = now.replace(second=0, microsecond=0)
        return WindowSpan(start, start + timedelta(minutes=1))
    if window == UsageWindow.HOUR:
        start = now.replace(minute=0, second=0, microsecond=0)
        return WindowSpan(start, start + timedelta(hours=1))
    if window == UsageWindow.DAY:
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return WindowSpan(start, start + timedelta(days=1))

    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return WindowSpan(start, end)


class UsageLimiter:
    """
    Per-identity fixed-window usage ceiling.

    Usage:
        limiter = UsageLimiter(config.usage)
        result = await limiter.check_and_increment("agent-7")
        result = await limiter.enforce(identity)  # raises in fail-closed mode

    Attributes:
        config: Limit, window and mode
        store: Counter backend
    """

    def __init__(
        self,
        config: UsageConfig | None = None,
        store: RateStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config or UsageConfig()
        self.store = store if store is not None else InMemoryRateStore()
        self._clock = clock

    @property
    def fail_closed(self) -> bool:
        """Whether over-limit requests are rejected."""
        return self.config.mode == LimitMode.FAIL_CLOSED

    async def check_and_increment(
        self,
        identity_id: str,
        trust_tier: TrustTier | None = None,
    ) -> UsageResult:
        """
        Count one request and report whether it is within the ceiling.

        Raises:
            RateStoreUnavailable: If the store could not be incremented
        """
        window = window_for(self.config.window, self._clock())
        limit = self.config.limit_for(trust_tier)
        try:
            count = await self.store.increment_and_get(identity_id, window)
        except Exception as e:
            raise RateStoreUnavailable(
                identity_id=identity_id,
                underlying_error=f"{type(e).__name__}: {e}",
            ) from e

        return UsageResult(
            within_limit=count <= limit,
            remaining=max(limit - count, 0),
            limit=limit,
            count=count,
            window_start=window.start,
            reset_at=window.end,
        )

    async def enforce(self, identity: Identity) -> UsageResult | None:
        """
        Count a request for an identity and apply the configured mode.

        Returns:
            The usage result, or None when the store failed in fail-open mode

        Raises:
            RateLimitExceeded: Over the ceiling in fail-closed mode
            RateStoreUnavailable: Store failure in fail-closed mode
        """
        try:
            result = await self.check_and_increment(identity.id, identity.trust_tier)
        except RateStoreUnavailable as e:
            if self.fail_closed:
                raise
            logger.warning("Rate store unavailable, allowing %s (fail-open): %s",
                           identity.id, e.underlying_error)
            return None

        if result.within_limit:
            return result

        if self.fail_closed:
            raise RateLimitExceeded(
                identity_id=identity.id,
                count=result.count,
                limit=result.limit,
                reset_at=result.reset_at.isoformat(),
            )

        logger.warning(
            "Identity %s over usage limit (%d/%d), allowing (fail-open)",
            identity.id,
            result.count,
            result.limit,
        )
        return result
