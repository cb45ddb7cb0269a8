from .rate_limiter import (
    CostCeilingExceeded,
    RateLimitExceeded,
    Reservation,
    SlidingWindowRateLimiter,
    UsageLedger,
)

__all__ = [
    'CostCeilingExceeded',
    'RateLimitExceeded',
    'Reservation',
    'SlidingWindowRateLimiter',
    'UsageLedger',
]
