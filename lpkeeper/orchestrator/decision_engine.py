"""
RebalanceDecisionEngine: decides what to do with reconciled positions and
carries it out one intent at a time.

The engine works in two phases per cycle:

plan()     Pure. From the reconciled state, the ReconcileReport and the
           ranking snapshot it produces the ordered action queue, a skip
           record for every decision point that will not act, and the next
           rotation counters. Nothing is read or written.

execute()  Runs the queue sequentially through the ExecutionGateway. Each
           intent's terminal TxRecord is committed before the next intent
           starts. Multi-step actions (withdraw then deposit) stop at the
           first failed leg.

Action classes (queue order):
    ROTATE, DEPLOY, REDEPLOY, EPOCH_WITHDRAW    rotation class, first
    REBALANCE                                    plain rebalances, last
Within a class actions run by position USD value, largest first.

Safety:
- Cooldown: a position rebalanced within its cooldown is skipped.
- Economic gate: a rotation or deploy whose estimated cost is not below the
  expected yield differential over the horizon is skipped and its counters
  reset.
- Gas cap: actions whose estimated cost would cross the rolling 24h cap are
  skipped and autonomy pauses with reason "gas_cap".
- Failures: a failed withdraw marks the position error and its deposit is
  never attempted; the FailureBreaker pauses autonomy with reason
  "failures" at the threshold.
- Balance re-check: before every capital-consuming deposit the wallet is
  read again; a shortfall is reported and the position held.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, TYPE_CHECKING

from lpkeeper.config.per_pool_config import PoolOverride, for_pool
from lpkeeper.core.errors import PolicyViolation, TransientError
from lpkeeper.core.models import (
    CapitalSource,
    EngineState,
    Intent,
    IntentKind,
    Position,
    PositionStatus,
    ProtocolVariant,
    RankedPool,
    RankingSnapshot,
    RebalanceTrigger,
    EpochBehavior,
    RotationCounter,
    StrategyConfig,
    TokenInfo,
    TxOutcome,
    TxRecord,
    make_position_id,
    new_correlation_id,
    now_ms,
)
from lpkeeper.execution.adapters import AdapterRegistry, PoolState, SubmitReceipt
from lpkeeper.execution.execution_gateway import ExecutionGateway, ExecutionResult
from lpkeeper.execution.reconciliation_service import ReconcileOutcome, ReconcileReport
from lpkeeper.infra.async_execution import call_with_retry
from lpkeeper.risk.circuit_breaker import FailureBreaker
from lpkeeper.risk.gas_budget import GasBudget, GasBudgetStatus, GasEstimator, passes_economic_gate
from lpkeeper.strategy.allocation import (
    ActiveSplitPolicy,
    DepositPlan,
    active_base_fraction,
    allocation_for_pool,
    plan_bucketed_deposit,
    plan_simple_deposit,
    range_center,
    target_range,
    total_budget,
)
from lpkeeper.strategy.distribution import DistributionBuilder, WeightShape
from lpkeeper.strategy.rotation import RotationTracker

if TYPE_CHECKING:
    from lpkeeper.monitoring.alerting import NotificationSink
    from lpkeeper.monitoring.metrics_rich import RichMetrics
    from lpkeeper.state.position_store import PositionStore

log = logging.getLogger("lpkeeper")

# A withdraw returns slightly less than the recorded value (fees, price moves)
WITHDRAW_SLIPPAGE = 0.01


class ActionType(Enum):
    ROTATE = "rotate"
    DEPLOY = "deploy"
    REDEPLOY = "redeploy"
    EPOCH_WITHDRAW = "epoch-withdraw"
    REBALANCE = "rebalance"

    @property
    def is_rotation_class(self) -> bool:
        return self != ActionType.REBALANCE


class RecordStatus(Enum):
    EXECUTED = "executed"
    FAILED = "failed"
    SKIPPED = "skipped"
    PLANNED = "planned"  # dry run


@dataclass
class PlannedAction:
    action: ActionType
    pool_id: str
    variant: ProtocolVariant
    value_usd: float
    reason: str
    position_id: Optional[str] = None
    entry: Optional[RankedPool] = None
    estimated_cost_usd: float = 0.0
    metric_out: Optional[float] = None
    correlation_id: str = field(default_factory=new_correlation_id)

    @property
    def sort_key(self) -> Tuple[int, float]:
        return (0 if self.action.is_rotation_class else 1, -self.value_usd)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "pool": self.pool_id,
            "position": self.position_id,
            "variant": self.variant.value,
            "value_usd": round(self.value_usd, 2),
            "reason": self.reason,
            "entry_pool": self.entry.pool_id if self.entry else None,
            "estimated_cost_usd": round(self.estimated_cost_usd, 4),
            "correlation_id": self.correlation_id,
        }


@dataclass
class DecisionRecord:
    """What happened at one decision point, and why."""
    action: str
    pool_id: Optional[str]
    status: RecordStatus
    reason: str
    position_id: Optional[str] = None
    intent_ids: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "pool": self.pool_id,
            "position": self.position_id,
            "status": self.status.value,
            "reason": self.reason,
            "intents": list(self.intent_ids),
            "details": dict(self.details),
        }


@dataclass
class DecisionPlan:
    at_ms: int
    actions: List[PlannedAction] = field(default_factory=list)
    skips: List[DecisionRecord] = field(default_factory=list)
    counters: Optional[Dict[str, RotationCounter]] = None  # None leaves stored counters untouched
    position_metrics: Dict[str, float] = field(default_factory=dict)
    epoch_handled_ms: Optional[int] = None
    initial_deploy_done: bool = False
    pause_reason: Optional[str] = None
    gas: Optional[GasBudgetStatus] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "at_ms": self.at_ms,
            "actions": [a.to_dict() for a in self.actions],
            "skips": [s.to_dict() for s in self.skips],
            "pause_reason": self.pause_reason,
            "gas_spent_24h_usd": self.gas.spent_usd if self.gas else None,
            "gas_cap_usd": self.gas.cap_usd if self.gas else None,
        }


@dataclass
class ExecutionSummary:
    dry_run: bool
    records: List[DecisionRecord] = field(default_factory=list)
    intents: List[Intent] = field(default_factory=list)
    paused_reason: Optional[str] = None

    def count(self, status: RecordStatus) -> int:
        return sum(1 for r in self.records if r.status == status)

    @property
    def executed(self) -> int:
        return self.count(RecordStatus.EXECUTED)

    @property
    def failed(self) -> int:
        return self.count(RecordStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self.count(RecordStatus.SKIPPED)

    @property
    def acted(self) -> bool:
        """An intent was executed or a decision point was skipped."""
        return any(r.status != RecordStatus.PLANNED for r in self.records)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "executed": self.executed,
            "failed": self.failed,
            "skipped": self.skipped,
            "paused_reason": self.paused_reason,
            "records": [r.to_dict() for r in self.records],
            "intents": [i.summary() for i in self.intents],
        }


@dataclass
class DecisionEngineConfig:
    active_split_policy: ActiveSplitPolicy = ActiveSplitPolicy.MIRROR_COMPOSITION
    read_retries: int = 2
    retry_backoff_sec: float = 0.5

    # Logging callback
    log_event_callback: Optional[Callable[..., None]] = None


# State folds that run inside the gateway's commit
Fold = Callable[[EngineState, TxRecord, Optional[SubmitReceipt]], None]


class RebalanceDecisionEngine:
    """
    Usage:
        engine = RebalanceDecisionEngine(store, registry, gateway, owner)
        plan = engine.plan(store.snapshot(), report, feed.snapshot, rotation_allowed=True, now_ms=now)
        summary = await engine.execute(plan, now)
    """

    def __init__(
        self,
        store: "PositionStore",
        registry: AdapterRegistry,
        gateway: ExecutionGateway,
        owner: str,
        estimator: Optional[GasEstimator] = None,
        overrides: Optional[Dict[str, PoolOverride]] = None,
        breaker: Optional[FailureBreaker] = None,
        builder: Optional[DistributionBuilder] = None,
        metrics: Optional["RichMetrics"] = None,
        notifier: Optional["NotificationSink"] = None,
        config: Optional[DecisionEngineConfig] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.registry = registry
        self.gateway = gateway
        self.owner = owner
        self.estimator = estimator or GasEstimator()
        self.overrides = overrides or {}
        self.breaker = breaker or FailureBreaker()
        self.builder = builder or DistributionBuilder()
        self.metrics = metrics
        self.notifier = notifier
        self.config = config or DecisionEngineConfig()
        self.clock = clock
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = kwargs.pop("level", logging.INFO)
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    # ========== Policy helpers ==========

    def cooldown_sec(self, pos: Position, strategy: StrategyConfig) -> float:
        if pos.cooldown_sec is not None:
            return float(pos.cooldown_sec)
        override = for_pool(self.overrides, pos.pool_id)
        if override.cooldown_sec is not None:
            return override.cooldown_sec
        return strategy.cooldown_sec

    def cooldown_remaining_sec(self, pos: Position, strategy: StrategyConfig, at_ms: int) -> float:
        if not pos.last_rebalance_ms:
            return 0.0
        until = pos.last_rebalance_ms + self.cooldown_sec(pos, strategy) * 1000
        return max(0.0, (until - at_ms) / 1000.0)

    def range_for_new(self, pool_id: str, strategy: StrategyConfig) -> Tuple[float, float]:
        override = for_pool(self.overrides, pool_id)
        lo = override.range_min_pct if override.range_min_pct is not None else strategy.range_min_pct
        hi = override.range_max_pct if override.range_max_pct is not None else strategy.range_max_pct
        return lo, hi

    def allocation(self, strategy: StrategyConfig, pool_id: str, budget_usd: float) -> float:
        override = for_pool(self.overrides, pool_id)
        if override.allocation_pct is not None:
            return budget_usd * override.allocation_pct / 100.0
        return allocation_for_pool(strategy, pool_id, budget_usd)

    @staticmethod
    def rebalance_reason(pos: Position, pool: PoolState, strategy: StrategyConfig) -> Optional[str]:
        """Why this position needs a rebalance now, or None."""
        if pos.variant == ProtocolVariant.SHARE_VAULT:
            return None
        if pos.rebalance_requested:
            return "operator_request"
        trigger = strategy.rebalance_trigger
        if trigger == RebalanceTrigger.NONE:
            return None
        if not pool.in_range(pos.lower_id, pos.upper_id):
            return "out_of_range"
        if (
            trigger == RebalanceTrigger.EVERY_CHECK
            and pos.lower_id is not None
            and pos.upper_id is not None
            and pool.active_id != range_center(pos.lower_id, pos.upper_id)
        ):
            return "recenter"
        return None

    # ========== Plan ==========

    def plan(
        self,
        state: EngineState,
        report: ReconcileReport,
        snapshot: Optional[RankingSnapshot],
        rotation_allowed: bool,
        now_ms: int,
    ) -> DecisionPlan:
        strategy = state.strategy or StrategyConfig()
        out = DecisionPlan(at_ms=now_ms)

        if state.control.trust_chain or report.trust_chain_rebuilt:
            out.skips.append(DecisionRecord("cycle", None, RecordStatus.SKIPPED, "trust_chain_rebuild"))
            return out

        claimed: Set[str] = set()
        if state.strategy is not None:
            if rotation_allowed and snapshot is not None:
                claimed = self._plan_rotation(state, report, snapshot, now_ms, out)
            else:
                out.skips.append(DecisionRecord("rotation", None, RecordStatus.SKIPPED, "rotation_suppressed"))

        self._plan_rebalances(state, report, strategy, now_ms, claimed, out)
        out.actions.sort(key=lambda a: a.sort_key)
        self._apply_gas_cap(state, strategy, now_ms, out)
        return out

    def _plan_rebalances(
        self,
        state: EngineState,
        report: ReconcileReport,
        strategy: StrategyConfig,
        now_ms: int,
        claimed: Set[str],
        out: DecisionPlan,
    ) -> None:
        for pos in sorted(state.positions.values(), key=lambda p: p.position_id):
            if pos.position_id in claimed:
                continue
            if pos.status in (PositionStatus.MIGRATED, PositionStatus.REMOVED_PENDING_REDEPLOY):
                continue
            check = report.checks.get(pos.position_id)
            if not report.is_readable(pos.position_id):
                if check is not None and check.outcome == ReconcileOutcome.UNREADABLE:
                    out.skips.append(DecisionRecord(
                        ActionType.REBALANCE.value, pos.pool_id, RecordStatus.SKIPPED, "unreadable",
                        position_id=pos.position_id, details={"error": check.error},
                    ))
                continue
            pool = report.pool_states.get(pos.pool_id)
            if pool is None:
                continue
            reason = self.rebalance_reason(pos, pool, strategy)
            if reason is None:
                continue
            if pos.is_held or pos.status != PositionStatus.ACTIVE:
                out.skips.append(DecisionRecord(
                    ActionType.REBALANCE.value, pos.pool_id, RecordStatus.SKIPPED, "held",
                    position_id=pos.position_id,
                    details={"status": pos.status.value, "hold_reason": pos.hold_reason, "trigger": reason},
                ))
                continue
            remaining = self.cooldown_remaining_sec(pos, strategy, now_ms)
            if remaining > 0:
                out.skips.append(DecisionRecord(
                    ActionType.REBALANCE.value, pos.pool_id, RecordStatus.SKIPPED, "cooldown",
                    position_id=pos.position_id, details={"remaining_sec": round(remaining, 1), "trigger": reason},
                ))
                continue
            out.actions.append(PlannedAction(
                action=ActionType.REBALANCE,
                pool_id=pos.pool_id,
                variant=pos.variant,
                value_usd=pos.value_usd,
                reason=reason,
                position_id=pos.position_id,
                estimated_cost_usd=self.estimator.rebalance_cost(state),
            ))

    def _plan_rotation(
        self,
        state: EngineState,
        report: ReconcileReport,
        snapshot: RankingSnapshot,
        now_ms: int,
        out: DecisionPlan,
    ) -> Set[str]:
        """Plan rotations, deploys, redeploys and epoch handling. Returns the position ids claimed."""
        s = state.strategy
        metric = s.ranking_metric
        strat = [
            p for p in state.positions.values()
            if p.source == CapitalSource.STRATEGY and p.status != PositionStatus.MIGRATED
        ]
        actionable = [
            p for p in strat
            if p.status == PositionStatus.ACTIVE and not p.is_held and report.is_readable(p.position_id)
        ]
        by_pool = {p.pool_id: p for p in actionable}
        held_metrics: Dict[str, float] = {}
        for p in actionable:
            ranked = snapshot.find(p.pool_id)
            if ranked is not None:
                held_metrics[p.pool_id] = ranked.metric(metric)
            else:
                held_metrics[p.pool_id] = p.metric if p.metric is not None else 0.0
            out.position_metrics[p.position_id] = held_metrics[p.pool_id]

        occupied = {p.pool_id for p in state.positions.values() if p.status != PositionStatus.MIGRATED}
        occupied -= set(held_metrics)
        occupied |= {c.pool_id for c in state.candidates.values()}
        vacancies = max(0, s.target_pool_count - len(strat))
        budget = self._budget(state, report, s)

        # Epoch end
        epoch = snapshot.epoch_ends_at_ms
        epoch_due = epoch is not None and now_ms >= epoch and state.control.last_epoch_handled_ms != epoch
        if epoch_due:
            out.epoch_handled_ms = epoch
            self._log_event("epoch_end", behavior=s.epoch_behavior.value, epoch_ends_at_ms=epoch)
            if s.epoch_behavior == EpochBehavior.WITHDRAW:
                for p in actionable:
                    out.actions.append(PlannedAction(
                        action=ActionType.EPOCH_WITHDRAW,
                        pool_id=p.pool_id,
                        variant=p.variant,
                        value_usd=p.value_usd,
                        reason="epoch_end",
                        position_id=p.position_id,
                        estimated_cost_usd=self.estimator.intent_cost(IntentKind.WITHDRAW, state),
                    ))
                out.counters = {}
                return {p.position_id for p in actionable}
            if s.epoch_behavior == EpochBehavior.REMAIN:
                out.skips.append(DecisionRecord("epoch", None, RecordStatus.SKIPPED, "epoch_remain",
                                                details={"epoch_ends_at_ms": epoch}))
        redeploy_now = epoch_due and s.epoch_behavior == EpochBehavior.REDEPLOY

        # Cleared pending-redeploy positions go back into their pool
        for p in strat:
            if p.status != PositionStatus.REMOVED_PENDING_REDEPLOY or p.hold_reason is not None:
                continue
            value = self.allocation(s, p.pool_id, budget)
            if value <= 0:
                out.skips.append(DecisionRecord(ActionType.REDEPLOY.value, p.pool_id, RecordStatus.SKIPPED,
                                                "no_capital", position_id=p.position_id))
                continue
            out.actions.append(PlannedAction(
                action=ActionType.REDEPLOY,
                pool_id=p.pool_id,
                variant=p.variant,
                value_usd=value,
                reason="redeploy",
                position_id=p.position_id,
                estimated_cost_usd=self.estimator.deposit_cost(state),
            ))

        tracker = RotationTracker(s)
        ev = tracker.evaluate(
            state.rotation,
            held_metrics,
            snapshot,
            vacancies=vacancies,
            occupied=occupied,
            bypass_checks=state.control.initial_deploy_pending or redeploy_now,
        )
        counters = dict(ev.counters)
        exits = list(ev.exits)
        if redeploy_now:
            n = s.target_pool_count
            outside = [(m, pid) for pid, m in held_metrics.items() if ev.ranks.get(pid) is None or ev.ranks[pid] >= n]
            exits = [pid for _, pid in sorted(outside)]

        entries = []
        for e in ev.entries:
            if self.registry.supports(e.pool.variant):
                entries.append(e)
            else:
                out.skips.append(DecisionRecord(ActionType.DEPLOY.value, e.pool.pool_id, RecordStatus.SKIPPED,
                                                "unsupported_protocol", details={"variant": e.pool.variant.value}))

        claimed: Set[str] = set()
        for pid in exits:
            pos = by_pool[pid]
            remaining = self.cooldown_remaining_sec(pos, s, now_ms)
            if remaining > 0:
                out.skips.append(DecisionRecord(ActionType.ROTATE.value, pid, RecordStatus.SKIPPED, "cooldown",
                                                position_id=pos.position_id,
                                                details={"remaining_sec": round(remaining, 1)}))
                continue
            # vacancy-only candidates never replace a held pool
            entry = next((e for e in entries if e.beats_margin), None)
            if entry is None:
                out.skips.append(DecisionRecord(ActionType.ROTATE.value, pid, RecordStatus.SKIPPED,
                                                "no_entry_candidate", position_id=pos.position_id))
                continue
            entries.remove(entry)
            cost = self.estimator.rotation_cost(pos.value_usd, state)
            if not passes_economic_gate(cost, entry.metric, held_metrics[pid], pos.value_usd, s.yield_horizon_days):
                out.skips.append(DecisionRecord(
                    ActionType.ROTATE.value, pid, RecordStatus.SKIPPED, "economic_gate",
                    position_id=pos.position_id,
                    details={"entry_pool": entry.pool.pool_id, "cost_usd": round(cost, 4),
                             "metric_in": entry.metric, "metric_out": held_metrics[pid]},
                ))
                counters[pid] = RotationCounter()
                counters[entry.pool.pool_id] = RotationCounter()
                continue
            out.actions.append(PlannedAction(
                action=ActionType.ROTATE,
                pool_id=pid,
                variant=pos.variant,
                value_usd=pos.value_usd,
                reason="ranked_out",
                position_id=pos.position_id,
                entry=entry.pool,
                estimated_cost_usd=cost,
                metric_out=held_metrics[pid],
            ))
            claimed.add(pos.position_id)

        reason = "initial_deploy" if state.control.initial_deploy_pending else "vacancy"
        for entry in entries[:vacancies]:
            value = self.allocation(s, entry.pool.pool_id, budget)
            if value <= 0:
                out.skips.append(DecisionRecord(ActionType.DEPLOY.value, entry.pool.pool_id, RecordStatus.SKIPPED,
                                                "no_capital"))
                continue
            cost = self.estimator.deposit_cost(state)
            if not passes_economic_gate(cost, entry.metric, 0.0, value, s.yield_horizon_days):
                out.skips.append(DecisionRecord(
                    ActionType.DEPLOY.value, entry.pool.pool_id, RecordStatus.SKIPPED, "economic_gate",
                    details={"cost_usd": round(cost, 4), "metric_in": entry.metric, "value_usd": round(value, 2)},
                ))
                counters[entry.pool.pool_id] = RotationCounter()
                continue
            out.actions.append(PlannedAction(
                action=ActionType.DEPLOY,
                pool_id=entry.pool.pool_id,
                variant=entry.pool.variant,
                value_usd=value,
                reason=reason,
                entry=entry.pool,
                estimated_cost_usd=cost,
            ))

        if state.control.initial_deploy_pending:
            out.initial_deploy_done = True
        out.counters = counters
        return claimed

    def _budget(self, state: EngineState, report: ReconcileReport, strategy: StrategyConfig) -> float:
        wallet = report.wallet.value_usd if report.wallet else 0.0
        deployed = sum(
            p.value_usd for p in state.positions.values()
            if p.source == CapitalSource.STRATEGY and p.status == PositionStatus.ACTIVE
        )
        return total_budget(strategy, wallet + deployed)

    def _apply_gas_cap(self, state: EngineState, strategy: StrategyConfig, now_ms: int, out: DecisionPlan) -> None:
        fallback = max((a.value_usd for a in out.actions), default=0.0)
        status = GasBudget(strategy.gas_budget_fraction).status(state, now_ms, fallback)
        out.gas = status
        kept: List[PlannedAction] = []
        committed = 0.0
        for a in out.actions:
            if out.pause_reason is None and status.allows(committed + a.estimated_cost_usd):
                committed += a.estimated_cost_usd
                kept.append(a)
                continue
            out.pause_reason = "gas_cap"
            out.skips.append(DecisionRecord(
                a.action.value, a.pool_id, RecordStatus.SKIPPED, "gas_cap", position_id=a.position_id,
                details={"spent_24h_usd": round(status.spent_usd, 4), "cap_usd": status.cap_usd,
                         "estimate_usd": round(a.estimated_cost_usd, 4)},
            ))
        out.actions = kept

    # ========== Execute ==========

    async def execute(self, plan: DecisionPlan, now_ms: int, dry_run: bool = False) -> ExecutionSummary:
        summary = ExecutionSummary(dry_run=dry_run)
        if not dry_run:
            await self._commit_plan(plan)
            control = self.store.snapshot().control
            if self.breaker.is_tripped and control.autonomous:
                # autonomy was resumed since the last trip
                self.breaker.reset()
            self.breaker.start_window()
            if self.metrics and plan.gas is not None and plan.gas.cap_usd is not None:
                self.metrics.gas_cap_usd.set(plan.gas.cap_usd)

        for record in plan.skips:
            self._report(record, summary)
        for action in plan.actions:
            self._log_event("action_planned", dry_run=dry_run, **action.to_dict())
            if self.metrics and not dry_run:
                self.metrics.actions_planned.labels(action=action.action.value).inc()

        for i, action in enumerate(plan.actions):
            if not dry_run:
                halt = self._halt_reason()
                if halt is not None:
                    for rest in plan.actions[i:]:
                        self._report(DecisionRecord(rest.action.value, rest.pool_id, RecordStatus.SKIPPED, halt,
                                                    position_id=rest.position_id), summary)
                    break
            record = await self._run_action(action, now_ms, dry_run, summary)
            self._report(record, summary)
            if dry_run:
                continue
            if self.breaker.is_tripped and summary.paused_reason is None:
                await self._pause("failures", summary, failures=self.breaker.failures)
            elif summary.paused_reason is None:
                state = self.store.snapshot()
                strategy = state.strategy or StrategyConfig()
                gas = GasBudget(strategy.gas_budget_fraction).status(state, self.clock())
                if gas.exhausted:
                    await self._pause("gas_cap", summary, spent_24h_usd=gas.spent_usd, cap_usd=gas.cap_usd)

        if not dry_run and plan.pause_reason and summary.paused_reason is None:
            await self._pause(plan.pause_reason, summary)
        self._log_event("decision_cycle_done", dry_run=dry_run, executed=summary.executed, failed=summary.failed,
                        skipped=summary.skipped, paused=summary.paused_reason)
        return summary

    def _halt_reason(self) -> Optional[str]:
        control = self.store.snapshot().control
        if control.stopped:
            return "stopped"
        if control.paused:
            return "paused"
        if control.trust_chain:
            return "trust_chain_rebuild"
        return None

    async def _commit_plan(self, plan: DecisionPlan) -> None:
        def _fold(draft: EngineState) -> None:
            if plan.counters is not None:
                draft.rotation = {k: RotationCounter(v.below_count, v.above_count) for k, v in plan.counters.items()}
            for pid, metric in plan.position_metrics.items():
                if pid in draft.positions:
                    draft.positions[pid].metric = metric
            if plan.epoch_handled_ms is not None:
                draft.control.last_epoch_handled_ms = plan.epoch_handled_ms
            if plan.initial_deploy_done:
                draft.control.initial_deploy_pending = False

        await self.store.commit(_fold, reason="decision_plan")

    async def _pause(self, reason: str, summary: ExecutionSummary, **details: Any) -> None:
        at = self.clock()

        def _fold(draft: EngineState) -> None:
            if not draft.control.paused:
                draft.control.paused = True
                draft.control.pause_reason = reason
                draft.control.updated_ms = at

        await self.store.commit(_fold, reason=f"pause:{reason}")
        summary.paused_reason = reason
        self._log_event("autonomy_paused", level=logging.WARNING, reason=reason, **details)
        if self.metrics:
            self.metrics.autonomy_paused.set(1)
        if self.notifier:
            self.notifier.autonomy_paused(reason, **details)

    async def _hold(self, position_id: str, reason: str) -> None:
        def _fold(draft: EngineState) -> None:
            pos = draft.positions.get(position_id)
            if pos is not None:
                pos.hold_reason = reason

        await self.store.commit(_fold, reason=f"hold:{reason}")

    def _report(self, record: DecisionRecord, summary: ExecutionSummary) -> None:
        summary.records.append(record)
        level = logging.WARNING if record.status == RecordStatus.FAILED else logging.INFO
        self._log_event("decision", level=level, **record.to_dict())
        if summary.dry_run:
            return
        if record.status == RecordStatus.SKIPPED:
            if self.metrics:
                self.metrics.skips_total.labels(reason=record.reason).inc()
            if self.notifier:
                self.notifier.action_skipped(record.action, record.reason, pool=record.pool_id,
                                             position=record.position_id, **record.details)

    # ========== Action runners ==========

    async def _run_action(
        self,
        action: PlannedAction,
        now_ms: int,
        dry_run: bool,
        summary: ExecutionSummary,
    ) -> DecisionRecord:
        runners = {
            ActionType.REBALANCE: self._rebalance,
            ActionType.ROTATE: self._rotate,
            ActionType.DEPLOY: self._deploy,
            ActionType.REDEPLOY: self._redeploy,
            ActionType.EPOCH_WITHDRAW: self._epoch_withdraw,
        }
        try:
            return await runners[action.action](action, now_ms, dry_run, summary)
        except PolicyViolation as exc:
            return self._skip(action, "policy_violation", error=str(exc))
        except ValueError as exc:
            return self._skip(action, "invalid_parameters", error=str(exc))

    def _skip(self, action: PlannedAction, reason: str, intents: Optional[List[Intent]] = None,
              **details: Any) -> DecisionRecord:
        return DecisionRecord(
            action.action.value, action.pool_id, RecordStatus.SKIPPED, reason,
            position_id=action.position_id,
            intent_ids=[i.intent_id for i in intents or []],
            details=details,
        )

    def _done(self, action: PlannedAction, results: List[ExecutionResult], reason: str,
              **details: Any) -> DecisionRecord:
        last = results[-1]
        status = RecordStatus.EXECUTED if last.success else RecordStatus.FAILED
        return DecisionRecord(
            action.action.value, action.pool_id, status, reason,
            position_id=action.position_id,
            intent_ids=[r.intent.intent_id for r in results],
            details={"outcome": last.outcome.value, "error": last.record.error, **details},
        )

    def _planned(self, action: PlannedAction, intents: List[Intent], summary: ExecutionSummary) -> DecisionRecord:
        summary.intents.extend(intents)
        return DecisionRecord(
            action.action.value, action.pool_id, RecordStatus.PLANNED, "dry_run",
            position_id=action.position_id,
            intent_ids=[i.intent_id for i in intents],
            details={"intents": [{"kind": i.kind.value, **i.params} for i in intents]},
        )

    def _on_failure(self, action: PlannedAction, result: ExecutionResult) -> None:
        if not result.success:
            self.breaker.record_failure(f"{action.pool_id}:{result.intent.kind.value}", result.record.error)

    async def _read_pool(self, variant: ProtocolVariant, pool_id: str) -> PoolState:
        adapter = self.registry.get(variant)
        return await call_with_retry(
            lambda: adapter.read_pool(pool_id),
            retries=self.config.read_retries,
            backoff=self.config.retry_backoff_sec,
            label=f"pool:{pool_id}",
        )

    async def _wallet_usd(self) -> float:
        wallet = await call_with_retry(
            lambda: self.registry.wallet_balance(self.owner),
            retries=self.config.read_retries,
            backoff=self.config.retry_backoff_sec,
            label="wallet",
        )
        return wallet.value_usd

    async def _check_balance(self, action: PlannedAction, required_usd: float, done: List[Intent],
                             tolerance: float = 0.0) -> Tuple[float, Optional[DecisionRecord]]:
        """
        Re-read the wallet before a deposit.

        Returns (fundable_usd, None) when the wallet covers required_usd, or
        covers it within `tolerance` (fraction), else (0, skip record).
        """
        try:
            available = await self._wallet_usd()
        except TransientError as exc:
            return 0.0, self._skip(action, "balance_unreadable", intents=done, error=str(exc))
        if available + 1e-9 >= required_usd:
            return required_usd, None
        if available >= required_usd * (1.0 - tolerance):
            return available, None
        return 0.0, self._skip(action, "insufficient_balance", intents=done,
                               required_usd=round(required_usd, 2), available_usd=round(available, 2),
                               shortfall_usd=round(required_usd - available, 2))

    def deposit_plan(
        self,
        variant: ProtocolVariant,
        pool: PoolState,
        token_a: Optional[TokenInfo],
        token_b: Optional[TokenInfo],
        value_usd: float,
        min_pct: float,
        max_pct: float,
        strategy: StrategyConfig,
        bin_step_bps: Optional[float] = None,
        tick_spacing: Optional[int] = None,
    ) -> DepositPlan:
        token_a = token_a or pool.token_a
        token_b = token_b or pool.token_b
        if token_a is None or token_b is None:
            raise ValueError(f"token metadata missing for pool {pool.pool_id}")
        bin_step = bin_step_bps or pool.bin_step_bps
        spacing = tick_spacing or pool.tick_spacing
        lower, upper = target_range(variant, pool.active_id, min_pct, max_pct, bin_step, spacing)
        if variant == ProtocolVariant.BUCKETED_BOOK:
            price_raw = pool.price * (10 ** token_b.decimals) / (10 ** token_a.decimals)
            fraction = active_base_fraction(self.config.active_split_policy, pool.reserve_a_raw,
                                            pool.reserve_b_raw, price_raw)
            return plan_bucketed_deposit(
                self.builder, value_usd, lower, upper, pool.active_id,
                pool.price_a_usd, pool.price_b_usd, token_a.decimals, token_b.decimals,
                shape=WeightShape(strategy.weight_shape), active_fraction=fraction,
            )
        return plan_simple_deposit(
            variant, value_usd, pool.price_a_usd, pool.price_b_usd, token_a.decimals, token_b.decimals,
            lower_id=lower, upper_id=upper, active_id=pool.active_id,
        )

    @staticmethod
    def _withdraw_params(pos: Position) -> Dict[str, Any]:
        return {
            "variant": pos.variant.value,
            "shares": str(pos.shares),
            "amount_a": str(pos.amount_a_raw),
            "amount_b": str(pos.amount_b_raw),
            "lower_id": pos.lower_id,
            "upper_id": pos.upper_id,
            "value_usd": pos.value_usd,
            "full": True,
        }

    def _current(self, action: PlannedAction) -> Optional[Position]:
        """The action's position, if it is still in the state the plan saw."""
        pos = self.store.snapshot().positions.get(action.position_id or "")
        if pos is None:
            return None
        if action.action == ActionType.REDEPLOY:
            ok = pos.status == PositionStatus.REMOVED_PENDING_REDEPLOY and pos.hold_reason is None
        else:
            ok = pos.status == PositionStatus.ACTIVE and not pos.is_held
        return pos if ok else None

    # ----- state folds -----

    @staticmethod
    def _apply_deposit(pos: Position, plan: DepositPlan, receipt: Optional[SubmitReceipt]) -> None:
        reading = receipt.position if receipt is not None else None
        if reading is not None and reading.has_balance:
            pos.shares = reading.shares
            pos.amount_a_raw = reading.amount_a_raw
            pos.amount_b_raw = reading.amount_b_raw
            pos.value_usd = reading.value_usd
            pos.lower_id = reading.lower_id if reading.lower_id is not None else plan.lower_id
            pos.upper_id = reading.upper_id if reading.upper_id is not None else plan.upper_id
        else:
            pos.amount_a_raw = plan.amount_a_raw
            pos.amount_b_raw = plan.amount_b_raw
            pos.value_usd = plan.value_usd
            pos.lower_id = plan.lower_id
            pos.upper_id = plan.upper_id

    @staticmethod
    def _withdraw_fold(position_id: str, hold_on_success: Optional[str]) -> Fold:
        def _fold(state: EngineState, record: TxRecord, receipt: Optional[SubmitReceipt]) -> None:
            pos = state.positions.get(position_id)
            if pos is None:
                return
            if record.is_success:
                pos.status = PositionStatus.REMOVED_PENDING_REDEPLOY
                pos.shares = pos.amount_a_raw = pos.amount_b_raw = 0
                pos.value_usd = 0.0
                pos.hold_reason = hold_on_success
            elif record.outcome == TxOutcome.PENDING:
                pos.status = PositionStatus.CRITICAL
                pos.error_reason = record.error or "withdraw outcome unknown"
            else:
                pos.status = PositionStatus.ERROR
                pos.error_reason = record.error or f"withdraw {record.outcome.value}"
        return _fold

    @staticmethod
    def _redeposit_fold(position_id: str, plan: DepositPlan, hold_on_failure: str) -> Fold:
        def _fold(state: EngineState, record: TxRecord, receipt: Optional[SubmitReceipt]) -> None:
            pos = state.positions.get(position_id)
            if pos is None:
                return
            if record.is_success:
                pos.status = PositionStatus.ACTIVE
                pos.hold_reason = None
                pos.error_reason = None
                pos.rebalance_requested = False
                pos.last_rebalance_ms = record.timestamp_ms
                RebalanceDecisionEngine._apply_deposit(pos, plan, receipt)
            elif record.outcome == TxOutcome.PENDING:
                pos.status = PositionStatus.CRITICAL
                pos.hold_reason = None
                pos.error_reason = record.error or "deposit outcome unknown"
            else:
                pos.hold_reason = hold_on_failure
                pos.error_reason = record.error or f"deposit {record.outcome.value}"
        return _fold

    def _new_position_fold(self, template: Position, plan: DepositPlan,
                           replaces: Optional[str] = None) -> Fold:
        def _fold(state: EngineState, record: TxRecord, receipt: Optional[SubmitReceipt]) -> None:
            old = state.positions.get(replaces) if replaces else None
            if record.is_success or record.outcome == TxOutcome.PENDING:
                pos = Position.from_dict(template.to_dict())
                pos.status = PositionStatus.ACTIVE if record.is_success else PositionStatus.CRITICAL
                pos.created_ms = pos.last_rebalance_ms = record.timestamp_ms
                self._apply_deposit(pos, plan, receipt)
                state.positions[pos.position_id] = pos
                state.rotation.pop(pos.pool_id, None)
                if old is not None:
                    old.status = PositionStatus.MIGRATED
                    old.hold_reason = None
                    state.history.append(state.positions.pop(old.position_id))
                    state.rotation.pop(old.pool_id, None)
            elif old is not None:
                old.hold_reason = "rotate_enter_failed"
                old.error_reason = record.error or f"enter {record.outcome.value}"
        return _fold

    def _template(self, entry: RankedPool, pool: PoolState, strategy: StrategyConfig,
                  min_pct: float, max_pct: float) -> Position:
        token_a = entry.token_a or pool.token_a
        token_b = entry.token_b or pool.token_b
        return Position(
            position_id=make_position_id(entry.pool_id, self.owner),
            pool_id=entry.pool_id,
            owner=self.owner,
            variant=entry.variant,
            token_a=token_a,
            token_b=token_b,
            protocol=entry.protocol,
            bin_step_bps=entry.bin_step_bps or pool.bin_step_bps,
            tick_spacing=entry.tick_spacing or pool.tick_spacing,
            source=CapitalSource.STRATEGY,
            entry_price=pool.price or None,
            metric=entry.metric(strategy.ranking_metric),
            range_min_pct=min_pct,
            range_max_pct=max_pct,
        )

    # ----- runners -----

    async def _rebalance(self, action: PlannedAction, now_ms: int, dry_run: bool,
                         summary: ExecutionSummary) -> DecisionRecord:
        pos = self._current(action)
        if pos is None:
            return self._skip(action, "state_changed")
        strategy = self.store.snapshot().strategy or StrategyConfig()
        try:
            pool = await self._read_pool(pos.variant, pos.pool_id)
            deposit = self.deposit_plan(pos.variant, pool, pos.token_a, pos.token_b, pos.value_usd,
                                        pos.range_min_pct, pos.range_max_pct, strategy,
                                        pos.bin_step_bps, pos.tick_spacing)
        except TransientError as exc:
            return self._skip(action, "pool_unreadable", error=str(exc))
        except ValueError as exc:
            return self._skip(action, "invalid_parameters", error=str(exc))

        cid = action.correlation_id
        withdraw = Intent.create(IntentKind.WITHDRAW, cid, 0, pos.pool_id, pos.position_id,
                                 params=self._withdraw_params(pos), reason=action.reason, created_ms=now_ms)
        redeposit = Intent.create(IntentKind.REBALANCE, cid, 1, pos.pool_id, pos.position_id,
                                  params=deposit.to_params(), predecessor=withdraw, reason=action.reason,
                                  created_ms=now_ms)
        if dry_run:
            return self._planned(action, [withdraw, redeposit], summary)

        first = await self.gateway.execute(withdraw, pos.variant,
                                           apply=self._withdraw_fold(pos.position_id, "rebalance_in_progress"))
        if not first.success:
            self._on_failure(action, first)
            return self._done(action, [first], "withdraw_failed")

        funded, short = await self._check_balance(action, pos.value_usd, [withdraw], tolerance=WITHDRAW_SLIPPAGE)
        if short is not None:
            await self._hold(pos.position_id, short.reason)
            return short
        if funded < deposit.value_usd:
            deposit = self.deposit_plan(pos.variant, pool, pos.token_a, pos.token_b, funded,
                                        pos.range_min_pct, pos.range_max_pct, strategy,
                                        pos.bin_step_bps, pos.tick_spacing)
            redeposit = replace(redeposit, params=deposit.to_params())

        second = await self.gateway.execute(redeposit, pos.variant,
                                            apply=self._redeposit_fold(pos.position_id, deposit, "redeposit_failed"))
        self._on_failure(action, second)
        return self._done(action, [first, second], action.reason if second.success else "redeposit_failed",
                          lower_id=deposit.lower_id, upper_id=deposit.upper_id)

    async def _rotate(self, action: PlannedAction, now_ms: int, dry_run: bool,
                      summary: ExecutionSummary) -> DecisionRecord:
        pos = self._current(action)
        if pos is None:
            return self._skip(action, "state_changed")
        entry = action.entry
        strategy = self.store.snapshot().strategy or StrategyConfig()
        min_pct, max_pct = self.range_for_new(entry.pool_id, strategy)
        try:
            pool = await self._read_pool(entry.variant, entry.pool_id)
            deposit = self.deposit_plan(entry.variant, pool, entry.token_a, entry.token_b, pos.value_usd,
                                        min_pct, max_pct, strategy, entry.bin_step_bps, entry.tick_spacing)
        except TransientError as exc:
            return self._skip(action, "pool_unreadable", error=str(exc), entry_pool=entry.pool_id)
        except ValueError as exc:
            return self._skip(action, "invalid_parameters", error=str(exc), entry_pool=entry.pool_id)

        template = self._template(entry, pool, strategy, min_pct, max_pct)
        cid = action.correlation_id
        exit_intent = Intent.create(IntentKind.ROTATE_EXIT, cid, 0, pos.pool_id, pos.position_id,
                                    params={**self._withdraw_params(pos), "to_pool": entry.pool_id},
                                    reason="rotation", created_ms=now_ms)
        enter_intent = Intent.create(IntentKind.ROTATE_ENTER, cid, 1, entry.pool_id, template.position_id,
                                     params={**deposit.to_params(), "from_pool": pos.pool_id},
                                     predecessor=exit_intent, reason="rotation", created_ms=now_ms)
        if dry_run:
            return self._planned(action, [exit_intent, enter_intent], summary)

        first = await self.gateway.execute(exit_intent, pos.variant,
                                           apply=self._withdraw_fold(pos.position_id, "rotation_in_progress"))
        if not first.success:
            self._on_failure(action, first)
            return self._done(action, [first], "exit_failed", entry_pool=entry.pool_id)

        funded, short = await self._check_balance(action, pos.value_usd, [exit_intent], tolerance=WITHDRAW_SLIPPAGE)
        if short is not None:
            await self._hold(pos.position_id, short.reason)
            return short
        if funded < deposit.value_usd:
            deposit = self.deposit_plan(entry.variant, pool, entry.token_a, entry.token_b, funded,
                                        min_pct, max_pct, strategy, entry.bin_step_bps, entry.tick_spacing)
            enter_intent = replace(enter_intent, params={**deposit.to_params(), "from_pool": pos.pool_id})

        second = await self.gateway.execute(enter_intent, entry.variant,
                                            apply=self._new_position_fold(template, deposit, replaces=pos.position_id))
        self._on_failure(action, second)
        return self._done(action, [first, second], "rotated" if second.success else "enter_failed",
                          entry_pool=entry.pool_id, metric_in=template.metric, metric_out=action.metric_out)

    async def _deploy(self, action: PlannedAction, now_ms: int, dry_run: bool,
                      summary: ExecutionSummary) -> DecisionRecord:
        entry = action.entry
        strategy = self.store.snapshot().strategy or StrategyConfig()
        min_pct, max_pct = self.range_for_new(entry.pool_id, strategy)
        if not dry_run:
            _, short = await self._check_balance(action, action.value_usd, [])
            if short is not None:
                return short
        try:
            pool = await self._read_pool(entry.variant, entry.pool_id)
            deposit = self.deposit_plan(entry.variant, pool, entry.token_a, entry.token_b, action.value_usd,
                                        min_pct, max_pct, strategy, entry.bin_step_bps, entry.tick_spacing)
        except TransientError as exc:
            return self._skip(action, "pool_unreadable", error=str(exc))
        except ValueError as exc:
            return self._skip(action, "invalid_parameters", error=str(exc))

        template = self._template(entry, pool, strategy, min_pct, max_pct)
        intent = Intent.create(IntentKind.DEPOSIT, action.correlation_id, 0, entry.pool_id, template.position_id,
                               params=deposit.to_params(), reason=action.reason, created_ms=now_ms)
        if dry_run:
            return self._planned(action, [intent], summary)

        result = await self.gateway.execute(intent, entry.variant, apply=self._new_position_fold(template, deposit))
        self._on_failure(action, result)
        return self._done(action, [result], action.reason if result.success else "deposit_failed",
                          value_usd=round(action.value_usd, 2))

    async def _redeploy(self, action: PlannedAction, now_ms: int, dry_run: bool,
                        summary: ExecutionSummary) -> DecisionRecord:
        pos = self._current(action)
        if pos is None:
            return self._skip(action, "state_changed")
        strategy = self.store.snapshot().strategy or StrategyConfig()
        if not dry_run:
            _, short = await self._check_balance(action, action.value_usd, [])
            if short is not None:
                await self._hold(pos.position_id, short.reason)
                return short
        try:
            pool = await self._read_pool(pos.variant, pos.pool_id)
            deposit = self.deposit_plan(pos.variant, pool, pos.token_a, pos.token_b, action.value_usd,
                                        pos.range_min_pct, pos.range_max_pct, strategy,
                                        pos.bin_step_bps, pos.tick_spacing)
        except TransientError as exc:
            return self._skip(action, "pool_unreadable", error=str(exc))
        except ValueError as exc:
            return self._skip(action, "invalid_parameters", error=str(exc))

        intent = Intent.create(IntentKind.DEPOSIT, action.correlation_id, 0, pos.pool_id, pos.position_id,
                               params=deposit.to_params(), reason=action.reason, created_ms=now_ms)
        if dry_run:
            return self._planned(action, [intent], summary)

        result = await self.gateway.execute(intent, pos.variant,
                                            apply=self._redeposit_fold(pos.position_id, deposit, "redeploy_failed"))
        self._on_failure(action, result)
        return self._done(action, [result], "redeployed" if result.success else "redeploy_failed")

    async def _epoch_withdraw(self, action: PlannedAction, now_ms: int, dry_run: bool,
                              summary: ExecutionSummary) -> DecisionRecord:
        pos = self._current(action)
        if pos is None:
            return self._skip(action, "state_changed")
        intent = Intent.create(IntentKind.WITHDRAW, action.correlation_id, 0, pos.pool_id, pos.position_id,
                               params=self._withdraw_params(pos), reason="epoch_end", created_ms=now_ms)
        if dry_run:
            return self._planned(action, [intent], summary)
        result = await self.gateway.execute(intent, pos.variant, apply=self._withdraw_fold(pos.position_id, "epoch"))
        self._on_failure(action, result)
        return self._done(action, [result], "epoch_end" if result.success else "withdraw_failed")
