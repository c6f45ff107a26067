"""
Infrastructure package.

Retry helpers, read throttling and logging configuration.
"""

from lpkeeper.infra.async_execution import call_with_retry
from lpkeeper.infra.logging_cfg import build_logger
from lpkeeper.infra.rate_limiter import AsyncRateLimiter, ReadThrottle, ReadThrottleConfig

__all__ = [
    "call_with_retry",
    "build_logger",
    "AsyncRateLimiter",
    "ReadThrottle",
    "ReadThrottleConfig",
]
