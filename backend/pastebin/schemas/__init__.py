from pastebin.schemas.rate_limit import (
    AbusePattern,
    AbuserSummary,
    ActionMetrics,
    CleanupResult,
    DailyMetrics,
    RateLimitErrorBody,
    RateLimitEvent,
    RateLimitMetrics,
    RateLimitResult,
    RateLimitStatus,
)

__all__ = [
    "AbusePattern",
    "AbuserSummary",
    "ActionMetrics",
    "CleanupResult",
    "DailyMetrics",
    "RateLimitErrorBody",
    "RateLimitEvent",
    "RateLimitMetrics",
    "RateLimitResult",
    "RateLimitStatus",
]
