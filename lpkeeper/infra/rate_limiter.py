"""
Read-side rate limiting for ledger and feed calls.

AsyncRateLimiter is a sliding-window limiter: at most `max_requests` calls are
admitted in any `time_window` seconds. ReadThrottle layers a concurrency bound,
a per-read stagger delay and a per-call timeout on top of it, so a cycle's
position reads fan out in a controlled trickle instead of a burst.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Sequence, TypeVar

from lpkeeper.core.errors import TransientError

T = TypeVar("T")


@dataclass
class RateLimitConfig:
    """Configuration for rate limiting."""

    max_requests: int  # Maximum number of requests
    time_window: float  # Time window in seconds
    burst_size: Optional[int] = None  # defaults to max_requests

    def __post_init__(self) -> None:
        if self.burst_size is None:
            self.burst_size = self.max_requests


class RateLimitExceeded(TransientError):
    """Raised when rate limit would be exceeded."""

    def __init__(self, message: str, retry_after: float) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class AsyncRateLimiter:
    """
    Sliding-window rate limiter for async clients.

    Example:
        limiter = AsyncRateLimiter(RateLimitConfig(max_requests=10, time_window=1.0))
        await limiter.acquire()
    """

    def __init__(
        self,
        config: RateLimitConfig,
        time_provider: Optional[Callable[[], float]] = None,
    ) -> None:
        self.config = config
        self._time_provider = time_provider or time.monotonic
        self._timestamps: deque = deque()
        self._lock = asyncio.Lock()

    @property
    def _capacity(self) -> int:
        return self.config.burst_size or self.config.max_requests

    async def acquire(self, *, blocking: bool = True) -> bool:
        """
        Acquire permission to make a request.

        Raises:
            RateLimitExceeded: When blocking=False and the window is full
        """
        while True:
            async with self._lock:
                current_time = self._time_provider()
                self._cleanup_old_timestamps(current_time)

                if len(self._timestamps) < self._capacity:
                    self._timestamps.append(current_time)
                    return True

                wait_time = self._calculate_retry_after(current_time)
                if not blocking:
                    raise RateLimitExceeded(
                        f"Rate limit exceeded: {self.config.max_requests} requests "
                        f"per {self.config.time_window}s",
                        retry_after=wait_time,
                    )

            await asyncio.sleep(max(wait_time, 0.001))

    def _cleanup_old_timestamps(self, current_time: float) -> None:
        cutoff = current_time - self.config.time_window
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def _calculate_retry_after(self, current_time: float) -> float:
        if not self._timestamps:
            return 0.0
        return max(0.0, self._timestamps[0] + self.config.time_window - current_time)

    async def get_current_usage(self) -> tuple:
        """(current_requests, max_requests)"""
        async with self._lock:
            self._cleanup_old_timestamps(self._time_provider())
            return len(self._timestamps), self.config.max_requests

    async def reset(self) -> None:
        async with self._lock:
            self._timestamps.clear()


@dataclass
class ReadThrottleConfig:
    max_reads: int = 10          # per window
    window_sec: float = 1.0
    max_concurrent: int = 4      # outstanding reads
    stagger_sec: float = 0.05    # delay between successive launches
    timeout_sec: float = 10.0    # per read


class ReadThrottle:
    """
    Bounded, staggered, timed-out reads.

    Usage:
        throttle = ReadThrottle(ReadThrottleConfig(max_concurrent=2))
        reading = await throttle.run("read:pool-1", lambda: adapter.read_position(...))
        results = await throttle.map(positions, lambda p: adapter.read_position(...))
    """

    def __init__(
        self,
        config: Optional[ReadThrottleConfig] = None,
        limiter: Optional[AsyncRateLimiter] = None,
    ) -> None:
        self.config = config or ReadThrottleConfig()
        self.limiter = limiter or AsyncRateLimiter(
            RateLimitConfig(max_requests=self.config.max_reads, time_window=self.config.window_sec)
        )
        self._sem = asyncio.Semaphore(max(1, self.config.max_concurrent))

    async def run(self, label: str, call: Callable[[], Awaitable[T]]) -> T:
        """One read under the throttle; timeouts surface as TransientError."""
        async with self._sem:
            await self.limiter.acquire()
            try:
                return await asyncio.wait_for(call(), timeout=self.config.timeout_sec)
            except asyncio.TimeoutError as exc:
                raise TransientError(f"{label} timed out after {self.config.timeout_sec}s") from exc

    async def map(
        self,
        items: Sequence[Any],
        call: Callable[[Any], Awaitable[T]],
        label: Callable[[Any], str] = str,
    ) -> List[Any]:
        """
        Run `call(item)` for every item, staggered; results keep input order.

        Failures are returned in place as exception objects so one bad read
        never hides the others.
        """

        async def _one(index: int, item: Any) -> T:
            if index and self.config.stagger_sec > 0:
                await asyncio.sleep(index * self.config.stagger_sec)
            return await self.run(label(item), lambda: call(item))

        tasks = [_one(i, item) for i, item in enumerate(items)]
        return list(await asyncio.gather(*tasks, return_exceptions=True))
