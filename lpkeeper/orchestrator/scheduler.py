"""
MonitorScheduler: drives the fixed-interval monitoring cycle.

One cycle:
    1. Honor stop/pause (checked before the cycle starts)
    2. Refresh the ranking feed and classify it (fresh / stale / unusable)
    3. Reconcile every tracked position against the ledger
    4. Plan and execute decisions (rotation only on a usable snapshot)
    5. Persist the snapshot, publish metrics and the cycle summary

Cycles never overlap: the loop awaits each cycle to completion and a lock
guards run_cycle against concurrent callers (the command surface's dry run).
A cycle that overruns its interval is followed immediately by the next.

Usage:
    scheduler = MonitorScheduler(store, feed, reconciler, engine, notifier, metrics)
    await scheduler.run()          # until stopped
    await scheduler.tick(3)        # three back-to-back cycles (tests)
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

from lpkeeper.core.errors import FatalError
from lpkeeper.core.models import EngineState, PositionStatus, StatusReports, StrategyConfig, now_ms
from lpkeeper.market_data.ranking_feed import FeedHealth
from lpkeeper.orchestrator.decision_engine import DecisionRecord, ExecutionSummary, RecordStatus

if TYPE_CHECKING:
    from lpkeeper.execution.reconciliation_service import ReconciliationEngine
    from lpkeeper.market_data.ranking_feed import RankingFeed
    from lpkeeper.monitoring.alerting import NotificationSink
    from lpkeeper.monitoring.metrics_rich import RichMetrics
    from lpkeeper.orchestrator.decision_engine import RebalanceDecisionEngine
    from lpkeeper.state.position_store import PositionStore

log = logging.getLogger("lpkeeper")


class CycleMode(Enum):
    FULL = "full"
    HEALTH_ONLY = "health_only"  # rotation suppressed
    SKIPPED = "skipped"
    DRY_RUN = "dry_run"


@dataclass
class CycleResult:
    """Result of a single monitoring cycle."""
    cycle: int
    mode: CycleMode
    feed_health: Optional[FeedHealth] = None
    reason: Optional[str] = None
    records: List[DecisionRecord] = field(default_factory=list)
    intents: List[Dict[str, Any]] = field(default_factory=list)  # dry run only
    reconcile_counts: Dict[str, int] = field(default_factory=dict)
    paused_reason: Optional[str] = None
    error: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def executed(self) -> int:
        return sum(1 for r in self.records if r.status == RecordStatus.EXECUTED)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.records if r.status == RecordStatus.FAILED)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.records if r.status == RecordStatus.SKIPPED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle": self.cycle,
            "mode": self.mode.value,
            "feed_health": self.feed_health.value if self.feed_health else None,
            "reason": self.reason,
            "executed": self.executed,
            "failed": self.failed,
            "skipped": self.skipped,
            "records": [r.to_dict() for r in self.records],
            "intents": list(self.intents),
            "reconcile": dict(self.reconcile_counts),
            "paused_reason": self.paused_reason,
            "error": self.error,
            "duration_ms": round(self.duration_ms, 1),
        }


@dataclass
class SchedulerConfig:
    # Interval used when no strategy is active
    default_interval_sec: float = 600.0

    # Consecutive unusable-feed cycles before the whole cycle is skipped
    feed_pause_after_cycles: int = 3

    # Logging callback
    log_event_callback: Optional[Callable[..., None]] = None


class MonitorScheduler:
    """Single thread of control for monitoring cycles."""

    def __init__(
        self,
        store: "PositionStore",
        feed: "RankingFeed",
        reconciler: "ReconciliationEngine",
        decision_engine: "RebalanceDecisionEngine",
        notifier: Optional["NotificationSink"] = None,
        metrics: Optional["RichMetrics"] = None,
        config: Optional[SchedulerConfig] = None,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_cycle: Optional[Callable[[CycleResult], None]] = None,
    ) -> None:
        self.store = store
        self.feed = feed
        self.reconciler = reconciler
        self.engine = decision_engine
        self.notifier = notifier
        self.metrics = metrics
        self.config = config or SchedulerConfig()
        self.clock = clock
        self.sleep = sleep
        self.on_cycle = on_cycle

        self._lock = asyncio.Lock()
        self._cycle_count = 0
        self._unusable_cycles = 0
        self._running = False
        self._wake = asyncio.Event()
        self.last_result: Optional[CycleResult] = None
        self._log_event = self.config.log_event_callback or self._default_log

        self.feed.restore(self.store.snapshot().last_snapshot)

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = kwargs.pop("level", logging.INFO)
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    # ========== Control ==========

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    def interval_sec(self, state: Optional[EngineState] = None) -> float:
        state = state or self.store.snapshot()
        if state.strategy is not None:
            return state.strategy.check_interval_sec
        return self.config.default_interval_sec

    def wake(self) -> None:
        """Cut the current sleep short (a command changed control state)."""
        self._wake.set()

    async def request_pause(self, reason: str = "operator") -> None:
        """Takes effect before the next cycle or queued intent; in-flight intents finish."""
        at = self.clock()

        def _fold(draft: EngineState) -> None:
            draft.control.paused = True
            draft.control.pause_reason = reason
            draft.control.updated_ms = at

        await self.store.commit(_fold, reason=f"pause:{reason}")
        self._log_event("pause_requested", reason=reason)
        if self.metrics:
            self.metrics.autonomy_paused.set(1)

    def stop(self) -> None:
        self._running = False
        self._wake.set()
        self._log_event("scheduler_stop")

    # ========== Loop ==========

    async def run(self) -> None:
        self._running = True
        self._log_event("scheduler_start", interval_sec=self.interval_sec())
        while self._running:
            control = self.store.snapshot().control
            if control.stopped:
                self._log_event("scheduler_stopped_by_control")
                break
            started = time.monotonic()
            result = await self.run_cycle()
            if result.mode == CycleMode.SKIPPED and result.reason == "fatal":
                break
            interval = self.interval_sec()
            elapsed = time.monotonic() - started
            if elapsed >= interval:
                self._log_event("cycle_overrun", level=logging.WARNING, elapsed_sec=round(elapsed, 1),
                                interval_sec=interval)
                if self.metrics:
                    self.metrics.cycle_overruns.inc()
                continue
            await self._sleep_until_wake(interval - elapsed)
        self._running = False

    async def _sleep_until_wake(self, seconds: float) -> None:
        self._wake.clear()
        sleeper = asyncio.ensure_future(self.sleep(seconds))
        waker = asyncio.ensure_future(self._wake.wait())
        try:
            await asyncio.wait({sleeper, waker}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waker):
                if not task.done():
                    task.cancel()

    async def tick(self, n: int = 1, dry_run: bool = False) -> List[CycleResult]:
        """Run n cycles back to back without sleeping."""
        results = []
        for _ in range(n):
            results.append(await self.run_cycle(dry_run=dry_run))
        return results

    # ========== Cycle ==========

    async def run_cycle(self, dry_run: bool = False) -> CycleResult:
        async with self._lock:
            self._cycle_count += 1
            started = time.perf_counter()
            try:
                result = await self._cycle(self._cycle_count, dry_run)
            except FatalError as exc:
                result = await self._on_fatal(self._cycle_count, exc)
            except Exception as exc:
                result = self._on_cycle_error(self._cycle_count, exc, dry_run)
            result.duration_ms = (time.perf_counter() - started) * 1000
            self.last_result = result
            self._finish(result, dry_run)
            if self.on_cycle is not None and not dry_run:
                self.on_cycle(result)
            return result

    async def _cycle(self, cycle: int, dry_run: bool) -> CycleResult:
        state = self.store.snapshot()
        control = state.control
        if control.stopped and not dry_run:
            return CycleResult(cycle, CycleMode.SKIPPED, reason="stopped")
        if control.paused and not dry_run:
            return CycleResult(cycle, CycleMode.SKIPPED, reason="paused", paused_reason=control.pause_reason)

        now = self.clock()
        self._log_event("cycle_start", cycle=cycle, dry_run=dry_run)
        if not dry_run:
            refreshed = await self.feed.refresh(now)
            if refreshed is None and self.metrics:
                self.metrics.feed_errors.labels(error_type="refresh_failed").inc()
            elif refreshed is not None and self.metrics and refreshed.dropped_entries:
                self.metrics.feed_dropped_entries.inc(refreshed.dropped_entries)

        health = self.feed.health(now)
        age = self.feed.age_sec(now)
        if self.metrics:
            self.metrics.feed_health.set(health.gauge_value)
            if age is not None:
                self.metrics.feed_age_sec.set(age)

        rotation_allowed = self._rotation_allowed(state, health)
        if health == FeedHealth.UNUSABLE:
            if not dry_run:
                self._unusable_cycles += 1
            if self._unusable_cycles >= self.config.feed_pause_after_cycles:
                self._log_event("feed_unusable_cycle_skipped", level=logging.ERROR,
                                consecutive=self._unusable_cycles, age_sec=age)
                if self.notifier and not dry_run:
                    self.notifier.autonomy_paused("feed_unusable", consecutive_cycles=self._unusable_cycles,
                                                  age_sec=age)
                return CycleResult(cycle, CycleMode.SKIPPED, feed_health=health, reason="feed_unusable")
        else:
            self._unusable_cycles = 0

        if not rotation_allowed and state.strategy is not None:
            self._log_event("feed_degraded", level=logging.WARNING, health=health.value, age_sec=age,
                            last_error=self.feed.last_error)
            if self.notifier and not dry_run:
                self.notifier.feed_degraded(health.value, age, last_error=self.feed.last_error)

        # a dry run reconciles into a private copy and leaves the store untouched
        report = await self.reconciler.reconcile(now, persist=not dry_run)
        state = self.store.snapshot() if report.persisted else report.state
        plan = self.engine.plan(state, report, self.feed.snapshot, rotation_allowed, now)
        summary: ExecutionSummary = await self.engine.execute(plan, now, dry_run=dry_run)

        if not dry_run and self.feed.snapshot is not None:
            snapshot = self.feed.snapshot
            if state.last_snapshot is None or state.last_snapshot.source_ts_ms != snapshot.source_ts_ms:
                def _keep_snapshot(draft: EngineState) -> None:
                    draft.last_snapshot = snapshot

                await self.store.commit(_keep_snapshot, reason="ranking_snapshot")

        if dry_run:
            mode = CycleMode.DRY_RUN
        else:
            mode = CycleMode.FULL if rotation_allowed else CycleMode.HEALTH_ONLY
        return CycleResult(
            cycle,
            mode,
            feed_health=health,
            records=summary.records,
            intents=[{**i.summary(), "params": i.params} for i in summary.intents],
            reconcile_counts=report.counts(),
            paused_reason=summary.paused_reason,
        )

    def _rotation_allowed(self, state: EngineState, health: FeedHealth) -> bool:
        if health == FeedHealth.FRESH:
            return True
        if health == FeedHealth.STALE:
            snapshot = self.feed.snapshot
            ack = state.control.stale_ack_source_ms
            return snapshot is not None and ack is not None and ack == snapshot.source_ts_ms
        return False

    async def _on_fatal(self, cycle: int, exc: FatalError) -> CycleResult:
        self._log_event("fatal_error", level=logging.CRITICAL, err=str(exc), error_type=type(exc).__name__)
        at = self.clock()

        def _fold(draft: EngineState) -> None:
            draft.control.stopped = True
            draft.control.paused = True
            draft.control.pause_reason = "fatal"
            draft.control.updated_ms = at

        try:
            await self.store.commit(_fold, reason="fatal")
        except FatalError as commit_exc:
            # state cannot be written; stopping the loop is all that is left
            self._log_event("fatal_stop_not_persisted", level=logging.CRITICAL, err=str(commit_exc))
        if self.notifier:
            self.notifier.fatal(str(exc), error_type=type(exc).__name__)
        if self.metrics:
            self.metrics.autonomy_paused.set(1)
        self._running = False
        return CycleResult(cycle, CycleMode.SKIPPED, reason="fatal", error=str(exc))

    def _on_cycle_error(self, cycle: int, exc: Exception, dry_run: bool) -> CycleResult:
        """An unexpected error fails this cycle only; the loop carries on at the next interval."""
        self._log_event("cycle_error", level=logging.ERROR, cycle=cycle, err=str(exc),
                        error_type=type(exc).__name__)
        log.debug("cycle %d traceback", cycle, exc_info=exc)
        if self.metrics:
            self.metrics.cycle_errors.labels(error_type=type(exc).__name__).inc()
        if self.notifier and not dry_run:
            self.notifier.cycle_error(cycle, str(exc), error_type=type(exc).__name__)
        return CycleResult(cycle, CycleMode.SKIPPED, reason="cycle_error", error=f"{type(exc).__name__}: {exc}")

    # ========== Reporting ==========

    def _finish(self, result: CycleResult, dry_run: bool) -> None:
        state = self.store.snapshot()
        self._log_event("cycle_complete", **{k: v for k, v in result.to_dict().items()
                                             if k not in ("records", "intents")})
        if self.metrics:
            self.metrics.cycles_total.labels(mode=result.mode.value).inc()
            self.metrics.cycle_duration_ms.observe(result.duration_ms)
            self.metrics.cycle_failures.set(result.failed)
            self._publish_state(state)
        if dry_run or result.mode == CycleMode.SKIPPED or not self.notifier:
            return
        strategy = state.strategy or StrategyConfig()
        acted = any(r.status != RecordStatus.PLANNED for r in result.records)
        if strategy.status_reports == StatusReports.EVERY_CYCLE or acted:
            self.notifier.cycle_summary(
                result.cycle,
                mode=result.mode.value,
                executed=result.executed,
                failed=result.failed,
                skipped=result.skipped,
                positions=len(state.active_positions()),
                value_usd=round(sum(p.value_usd for p in state.active_positions()), 2),
                gas_24h_usd=round(state.gas_24h(self.clock()), 4),
                paused=result.paused_reason,
            )

    def _publish_state(self, state: EngineState) -> None:
        counts = {s.value: 0 for s in PositionStatus}
        for pos in state.positions.values():
            counts[pos.status.value] += 1
        for status, n in counts.items():
            self.metrics.positions.labels(status=status).set(n)
        self.metrics.gas_spent_24h_usd.set(state.gas_24h(self.clock()))
        self.metrics.autonomy_paused.set(1 if state.control.paused or state.control.stopped else 0)
