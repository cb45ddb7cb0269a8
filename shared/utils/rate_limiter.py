"""
Rate Limiter - sliding-window request ceilings and a usage ledger for routing.

Provides:
- SlidingWindowRateLimiter: requests-per-window counter with an injectable clock
- UsageLedger: single serialization point for the provider router's global
  rate window, per-provider rate windows and cumulative cost
- RateLimitExceeded / CostCeilingExceeded: structured rejection reasons

Usage:
    ledger = UsageLedger()

    async def call_provider():
        reservation = await ledger.reserve("openai", 60, estimated_cost, None, 5.0, now)
        try:
            return await client.complete(request)
        except ProviderError:
            await ledger.release(reservation)
            raise
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 60.0


class RateLimitExceeded(Exception):
    """
    Raised when a request ceiling is exceeded.

    Attributes:
        retry_after: Seconds until the window has room again
        provider: Name of the rate-limited provider (optional)
        reason: Short machine-readable reason
    """

    def __init__(self, retry_after: float, provider: Optional[str] = None, reason: str = "rate limit exceeded"):
        self.retry_after = retry_after
        self.provider = provider
        self.reason = reason
        msg = f"Rate limit exceeded ({reason}). Retry after {retry_after:.2f}s"
        if provider:
            msg = f"[{provider}] {msg}"
        super().__init__(msg)

    def to_dict(self) -> Dict:
        """Convert to dictionary for API responses."""
        return {
            "error": "rate_limit_exceeded",
            "reason": self.reason,
            "retry_after": self.retry_after,
            "provider": self.provider,
        }


class CostCeilingExceeded(Exception):
    """
    Raised when a request's estimated cost would breach the cost ceiling.

    Attributes:
        ceiling: Configured ceiling in USD
        spent: Cost already recorded
        estimated: Estimated cost of the rejected request
        provider: Provider that was considered
    """

    reason = "cost ceiling exceeded"

    def __init__(self, ceiling: float, spent: float, estimated: float, provider: Optional[str] = None):
        self.ceiling = ceiling
        self.spent = spent
        self.estimated = estimated
        self.provider = provider
        super().__init__(
            f"Cost ceiling exceeded: spent ${spent:.4f} + estimated ${estimated:.4f} > ${ceiling:.4f}"
        )

    def to_dict(self) -> Dict:
        return {
            "error": "cost_ceiling_exceeded",
            "ceiling": self.ceiling,
            "spent": self.spent,
            "estimated": self.estimated,
            "provider": self.provider,
        }


@dataclass
class SlidingWindowRateLimiter:
    """
    Counts request timestamps inside a trailing window.

    Timestamps strictly older than ``now - window_seconds`` are pruned, so
    a request recorded exactly one window ago still counts.

    Attributes:
        limit: Maximum requests per window (None = unlimited)
        window_seconds: Window length
        name: Optional name for logging
    """

    limit: Optional[int]
    window_seconds: float = DEFAULT_WINDOW_SECONDS
    name: str = ""
    _timestamps: Deque[float] = field(init=False, default_factory=deque)

    def prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._timestamps and self._timestamps[0] < cutoff:
            self._timestamps.popleft()

    def is_saturated(self, now: float) -> bool:
        if self.limit is None or self.limit < 0:
            return False
        self.prune(now)
        return len(self._timestamps) >= self.limit

    def record(self, now: float) -> None:
        self._timestamps.append(now)

    def release(self, timestamp: float) -> None:
        try:
            self._timestamps.remove(timestamp)
        except ValueError:
            logger.debug(f"[{self.name}] Timestamp {timestamp} already pruned")

    def retry_after(self, now: float) -> float:
        self.prune(now)
        if not self._timestamps:
            return 0.0
        return max(0.0, self._timestamps[0] + self.window_seconds - now)

    @property
    def count(self) -> int:
        return len(self._timestamps)


@dataclass(frozen=True)
class Reservation:
    """Usage recorded ahead of a provider call, refundable on failure."""

    provider_id: str
    timestamp: float
    cost_usd: float


class UsageLedger:
    """
    Owner of every routing counter.

    All checks and mutations happen under one asyncio lock so two concurrent
    requests can never both pass a ceiling that only one of them fits under.

    Example:
        >>> ledger = UsageLedger()
        >>> reservation = await ledger.reserve("a", 10, 0.01, None, 5.0, now=0.0)
        >>> await ledger.release(reservation)  # refund after a failed call
    """

    def __init__(self, window_seconds: float = DEFAULT_WINDOW_SECONDS):
        self.window_seconds = window_seconds
        self._global = SlidingWindowRateLimiter(limit=None, window_seconds=window_seconds, name="global")
        self._providers: Dict[str, SlidingWindowRateLimiter] = {}
        self._spent_cost = 0.0
        self._lock: Optional[asyncio.Lock] = None  # created lazily inside the event loop

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def _provider_limiter(self, provider_id: str, limit: Optional[int]) -> SlidingWindowRateLimiter:
        limiter = self._providers.get(provider_id)
        if limiter is None:
            limiter = SlidingWindowRateLimiter(limit=limit, window_seconds=self.window_seconds, name=provider_id)
            self._providers[provider_id] = limiter
        limiter.limit = limit
        return limiter

    @property
    def spent_cost(self) -> float:
        return self._spent_cost

    def request_count(self, provider_id: Optional[str] = None) -> int:
        if provider_id is None:
            return self._global.count
        limiter = self._providers.get(provider_id)
        return limiter.count if limiter else 0

    async def reserve(
        self,
        provider_id: str,
        provider_limit: Optional[int],
        estimated_cost: float,
        global_limit: Optional[int],
        cost_ceiling: Optional[float],
        now: float,
    ) -> Reservation:
        """
        Atomically check every ceiling and record the request.

        Check order: global rate, provider rate, cost.

        Raises:
            RateLimitExceeded: Global or provider window saturated
            CostCeilingExceeded: Estimated cost would breach the ceiling
        """
        async with self._get_lock():
            self._global.limit = global_limit
            limiter = self._provider_limiter(provider_id, provider_limit)

            if self._global.is_saturated(now):
                raise RateLimitExceeded(
                    self._global.retry_after(now), provider_id, "global rate ceiling exceeded"
                )
            if limiter.is_saturated(now):
                raise RateLimitExceeded(
                    limiter.retry_after(now), provider_id, "provider rate ceiling exceeded"
                )
            if cost_ceiling is not None and self._spent_cost + estimated_cost > cost_ceiling:
                raise CostCeilingExceeded(cost_ceiling, self._spent_cost, estimated_cost, provider_id)

            self._global.record(now)
            limiter.record(now)
            self._spent_cost += estimated_cost
            logger.debug(
                f"Reserved {provider_id}: global={self._global.count} "
                f"provider={limiter.count} spent=${self._spent_cost:.4f}"
            )
            return Reservation(provider_id=provider_id, timestamp=now, cost_usd=estimated_cost)

    async def release(self, reservation: Reservation) -> None:
        """Refund a reservation whose provider never produced a response."""
        async with self._get_lock():
            self._global.release(reservation.timestamp)
            limiter = self._providers.get(reservation.provider_id)
            if limiter is not None:
                limiter.release(reservation.timestamp)
            self._spent_cost = max(0.0, self._spent_cost - reservation.cost_usd)
            logger.debug(f"Released reservation for {reservation.provider_id}")
