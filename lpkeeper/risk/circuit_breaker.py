"""
FailureBreaker: trips when too many intents fail inside one window.

A window is one monitoring cycle. Unlike a cooldown breaker this one never
resets itself: once tripped, autonomy stays paused until an operator resumes
it, and the breaker is reset by that resume.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

log = logging.getLogger("lpkeeper")


@dataclass
class FailureBreakerConfig:
    failure_threshold: int = 2  # failures per window that trip the breaker


class FailureBreaker:
    """
    Usage:
        breaker = FailureBreaker(FailureBreakerConfig(), on_trip=pause_autonomy)
        breaker.start_window()
        if breaker.record_failure("pool-1:withdraw", err):
            ...  # tripped; stop executing
    """

    def __init__(
        self,
        config: Optional[FailureBreakerConfig] = None,
        on_trip: Optional[Callable[[str], None]] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.config = config or FailureBreakerConfig()
        self.window_failures: List[str] = []
        self._tripped = False
        self._trip_count = 0
        self._on_trip = on_trip
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.warning(json.dumps({"event": event, **kwargs}))

    @property
    def is_tripped(self) -> bool:
        return self._tripped

    @property
    def failures(self) -> int:
        return len(self.window_failures)

    def start_window(self) -> None:
        """New cycle: forget last cycle's failures (a trip persists)."""
        self.window_failures = []

    def record_failure(self, where: str, error: Optional[str] = None) -> bool:
        """Returns True if this failure tripped the breaker."""
        self.window_failures.append(where)
        self._log_event("intent_failure_recorded", where=where, err=error, failures=self.failures)
        if self.failures >= self.config.failure_threshold and not self._tripped:
            self._tripped = True
            self._trip_count += 1
            self._log_event("failure_breaker_tripped", failures=self.failures, where=self.window_failures,
                            trip_count=self._trip_count)
            if self._on_trip:
                self._on_trip("failures")
            return True
        return False

    def reset(self) -> None:
        if self._tripped:
            self._log_event("failure_breaker_reset", trip_count=self._trip_count)
        self._tripped = False
        self.window_failures = []

    def get_state(self) -> dict:
        return {
            "tripped": self._tripped,
            "window_failures": list(self.window_failures),
            "trip_count": self._trip_count,
        }
