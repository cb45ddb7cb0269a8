"""
Unit tests for the sliding-window rate limiter and the usage ledger.
"""

import asyncio

import pytest

from shared.utils.rate_limiter import (
    CostCeilingExceeded,
    RateLimitExceeded,
    SlidingWindowRateLimiter,
    UsageLedger,
)


class TestSlidingWindowRateLimiter:

    def test_unlimited_is_never_saturated(self):
        limiter = SlidingWindowRateLimiter(limit=None)
        for i in range(100):
            limiter.record(float(i))
        assert not limiter.is_saturated(100.0)

    def test_saturates_at_limit(self):
        limiter = SlidingWindowRateLimiter(limit=2)
        limiter.record(0.0)
        assert not limiter.is_saturated(0.0)
        limiter.record(1.0)
        assert limiter.is_saturated(1.0)

    def test_entries_exactly_one_window_old_still_count(self):
        limiter = SlidingWindowRateLimiter(limit=1, window_seconds=60)
        limiter.record(0.0)
        assert limiter.is_saturated(60.0)
        assert not limiter.is_saturated(60.001)

    def test_retry_after(self):
        limiter = SlidingWindowRateLimiter(limit=1, window_seconds=60)
        limiter.record(10.0)
        assert limiter.retry_after(40.0) == pytest.approx(30.0)

    def test_release_removes_timestamp(self):
        limiter = SlidingWindowRateLimiter(limit=1)
        limiter.record(5.0)
        limiter.release(5.0)
        assert limiter.count == 0
        limiter.release(5.0)  # already gone
        assert limiter.count == 0


class TestUsageLedger:
    """Tests for shared/utils/rate_limiter.UsageLedger"""

    @pytest.mark.asyncio
    async def test_reserve_records_everything(self):
        ledger = UsageLedger()
        await ledger.reserve("a", None, 0.25, None, None, now=0.0)
        assert ledger.request_count() == 1
        assert ledger.request_count("a") == 1
        assert ledger.request_count("b") == 0
        assert ledger.spent_cost == pytest.approx(0.25)

    @pytest.mark.asyncio
    async def test_global_ceiling_checked_first(self):
        ledger = UsageLedger()
        await ledger.reserve("a", None, 0.0, 1, None, now=0.0)
        with pytest.raises(RateLimitExceeded) as exc_info:
            await ledger.reserve("b", 0, 0.0, 1, None, now=1.0)
        assert exc_info.value.reason == "global rate ceiling exceeded"
        assert exc_info.value.to_dict()["provider"] == "b"

    @pytest.mark.asyncio
    async def test_provider_ceiling(self):
        ledger = UsageLedger()
        await ledger.reserve("a", 1, 0.0, None, None, now=0.0)
        with pytest.raises(RateLimitExceeded, match="provider rate ceiling exceeded"):
            await ledger.reserve("a", 1, 0.0, None, None, now=1.0)
        await ledger.reserve("b", 1, 0.0, None, None, now=1.0)

    @pytest.mark.asyncio
    async def test_cost_ceiling(self):
        ledger = UsageLedger()
        await ledger.reserve("a", None, 0.6, None, 1.0, now=0.0)
        with pytest.raises(CostCeilingExceeded) as exc_info:
            await ledger.reserve("a", None, 0.6, None, 1.0, now=1.0)
        error = exc_info.value
        assert error.reason == "cost ceiling exceeded"
        assert error.spent == pytest.approx(0.6)
        assert error.estimated == pytest.approx(0.6)

    @pytest.mark.asyncio
    async def test_release_refunds(self):
        ledger = UsageLedger()
        reservation = await ledger.reserve("a", 1, 0.5, 1, 1.0, now=0.0)
        await ledger.release(reservation)
        assert ledger.request_count() == 0
        assert ledger.request_count("a") == 0
        assert ledger.spent_cost == 0.0
        await ledger.reserve("a", 1, 0.5, 1, 1.0, now=0.0)

    @pytest.mark.asyncio
    async def test_concurrent_reservations_respect_ceiling(self):
        ledger = UsageLedger()
        results = await asyncio.gather(
            *(ledger.reserve("a", None, 0.4, None, 1.0, now=0.0) for _ in range(5)),
            return_exceptions=True,
        )
        granted = [r for r in results if not isinstance(r, Exception)]
        assert len(granted) == 2
        assert ledger.spent_cost == pytest.approx(0.8)
