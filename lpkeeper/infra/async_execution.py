"""
Retry with exponential backoff and jitter for async external calls.
Only transient failures are retried; everything else propagates at once.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from lpkeeper.core.errors import TransientError

log = logging.getLogger("lpkeeper")

T = TypeVar("T")


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    retries: int = 2,
    backoff: float = 0.2,
    timeout: Optional[float] = None,
    retry_on: Tuple[Type[BaseException], ...] = (TransientError,),
    label: str = "",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Await `fn()` up to `retries + 1` times.

    A timeout counts as a transient failure. The last error is re-raised
    once attempts are exhausted (timeouts as TransientError).
    """
    for attempt in range(retries + 1):
        try:
            if timeout is not None:
                return await asyncio.wait_for(fn(), timeout=timeout)
            return await fn()
        except asyncio.TimeoutError as exc:
            if attempt >= retries:
                raise TransientError(f"{label or 'call'} timed out after {timeout}s") from exc
            err: BaseException = exc
        except retry_on as exc:
            if attempt >= retries:
                raise
            err = exc
        delay = backoff + random.uniform(0, backoff * 0.5)
        log.debug(json.dumps({"event": "retry_backoff", "label": label, "attempt": attempt + 1,
                              "delay_sec": round(delay, 3), "err": str(err)}))
        await sleep(delay)
        backoff *= 2
    raise AssertionError("unreachable")
