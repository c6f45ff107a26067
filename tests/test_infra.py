"""
Tests for retry, read throttling and logging helpers.
"""

import asyncio
import json
import logging

import pytest

from lpkeeper.core.errors import LedgerUnavailable, StateCorruption, TransientError
from lpkeeper.infra.async_execution import call_with_retry
from lpkeeper.infra.logging_cfg import JsonFormatter, ThrottledFilter
from lpkeeper.infra.rate_limiter import (
    AsyncRateLimiter,
    RateLimitConfig,
    RateLimitExceeded,
    ReadThrottle,
    ReadThrottleConfig,
)


async def _no_sleep(_):
    return None


class TestCallWithRetry:
    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise LedgerUnavailable("rpc down")
            return "ok"

        assert await call_with_retry(flaky, retries=2, sleep=_no_sleep) == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_exhausted_reraises_last_error(self):
        async def down():
            raise LedgerUnavailable("rpc down")

        with pytest.raises(LedgerUnavailable):
            await call_with_retry(down, retries=1, sleep=_no_sleep)

    @pytest.mark.asyncio
    async def test_non_transient_not_retried(self):
        calls = []

        async def corrupt():
            calls.append(1)
            raise StateCorruption("bad document")

        with pytest.raises(StateCorruption):
            await call_with_retry(corrupt, retries=3, sleep=_no_sleep)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_timeout_becomes_transient(self):
        async def hang():
            await asyncio.sleep(10)

        with pytest.raises(TransientError, match="timed out"):
            await call_with_retry(hang, retries=0, timeout=0.01, label="slow")


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_non_blocking_limit(self):
        now = [100.0]
        limiter = AsyncRateLimiter(RateLimitConfig(max_requests=2, time_window=1.0), time_provider=lambda: now[0])

        await limiter.acquire(blocking=False)
        await limiter.acquire(blocking=False)
        with pytest.raises(RateLimitExceeded) as exc_info:
            await limiter.acquire(blocking=False)
        assert exc_info.value.retry_after == pytest.approx(1.0)

        now[0] += 1.01
        await limiter.acquire(blocking=False)
        assert await limiter.get_current_usage() == (1, 2)


class TestReadThrottle:
    @pytest.mark.asyncio
    async def test_map_keeps_order_and_returns_failures_in_place(self):
        throttle = ReadThrottle(ReadThrottleConfig(stagger_sec=0.0, max_reads=100))

        async def read(item):
            if item == "bad":
                raise LedgerUnavailable("nope")
            return item.upper()

        results = await throttle.map(["a", "bad", "c"], read)

        assert results[0] == "A" and results[2] == "C"
        assert isinstance(results[1], LedgerUnavailable)

    @pytest.mark.asyncio
    async def test_concurrency_bound(self):
        throttle = ReadThrottle(ReadThrottleConfig(stagger_sec=0.0, max_reads=100, max_concurrent=2))
        active = {"now": 0, "max": 0}

        async def read(item):
            active["now"] += 1
            active["max"] = max(active["max"], active["now"])
            await asyncio.sleep(0.01)
            active["now"] -= 1
            return item

        await throttle.map(list(range(6)), read)
        assert active["max"] == 2

    @pytest.mark.asyncio
    async def test_timeout(self):
        throttle = ReadThrottle(ReadThrottleConfig(timeout_sec=0.01))

        async def hang():
            await asyncio.sleep(10)

        with pytest.raises(TransientError):
            await throttle.run("read:pool-1", hang)


def _record(msg):
    return logging.LogRecord("lpkeeper", logging.WARNING, __file__, 1, msg, None, None)


class TestLogging:
    def test_json_formatter(self):
        line = JsonFormatter().format(_record('{"event": "cycle_start"}'))
        payload = json.loads(line)
        assert payload["level"] == "WARNING"
        assert payload["msg"] == '{"event": "cycle_start"}'

    def test_throttled_filter_per_pool(self):
        f = ThrottledFilter(cooldown_sec=60.0)
        degraded = _record(json.dumps({"event": "position_unreadable", "pool": "p1"}))
        other_pool = _record(json.dumps({"event": "position_unreadable", "pool": "p2"}))

        assert f.filter(degraded)
        assert not f.filter(degraded)
        assert f.filter(other_pool)
        assert f.filter(_record(json.dumps({"event": "cycle_start"})))
        assert f.filter(_record("plain text"))
