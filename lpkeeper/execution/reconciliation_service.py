"""
ReconciliationEngine: corrects stored belief to match the ledger.

Runs at the start of every cycle, before any decision is made. For each
stored position in a reconciled status (active, critical, error) it reads the
authoritative balance and range and classifies the difference:

    match       numeric fields agree            -> only last_reconciled_ms advances
    drift       both present, values differ     -> numeric fields overwritten,
                                                   policy fields preserved
    orphan      stored, but zero on the ledger  -> removed-pending-redeploy or
                                                   moved to history (policy)
    unreadable  the read failed after retries   -> excluded from this cycle

Positions present on the ledger with no stored record are "untracked": they
are listed in state.candidates and never adopted automatically.

In trust-chain mode (the state file could not be recovered) discovery is the
source of truth: every discovered position is imported as adopted/active and
the cycle makes no decisions.

All outcomes of one pass are applied in a single PositionStore commit.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from lpkeeper.core.errors import LpKeeperError, TransientError, UnsupportedProtocol
from lpkeeper.core.models import (
    RECONCILED_STATUSES,
    CapitalSource,
    EngineState,
    Position,
    PositionStatus,
    make_position_id,
)
from lpkeeper.execution.adapters import AdapterRegistry, LedgerReading, PoolState, WalletBalance
from lpkeeper.infra.async_execution import call_with_retry
from lpkeeper.infra.rate_limiter import ReadThrottle

if TYPE_CHECKING:
    from lpkeeper.monitoring.metrics_rich import RichMetrics
    from lpkeeper.state.position_store import PositionStore

log = logging.getLogger("lpkeeper")

ORPHAN_PENDING_REDEPLOY = "pending-redeploy"
ORPHAN_REMOVE = "remove"


class ReconcileOutcome(Enum):
    MATCH = "match"
    DRIFT = "drift"
    ORPHAN = "orphan"
    UNREADABLE = "unreadable"
    UNTRACKED = "untracked"


@dataclass
class ReconciliationConfig:
    orphan_policy: str = ORPHAN_PENDING_REDEPLOY
    read_retries: int = 2
    retry_backoff_sec: float = 0.5
    value_tolerance_pct: float = 1.0  # USD value moves below this are not drift
    discover: bool = True

    # Logging callback
    log_event_callback: Optional[Callable[..., None]] = None

    def __post_init__(self) -> None:
        if self.orphan_policy not in (ORPHAN_PENDING_REDEPLOY, ORPHAN_REMOVE):
            raise ValueError(f"unknown orphan policy {self.orphan_policy!r}")


@dataclass
class PositionCheck:
    position_id: str
    pool_id: str
    outcome: ReconcileOutcome
    reading: Optional[LedgerReading] = None
    error: Optional[str] = None


@dataclass
class ReconcileReport:
    """What the ledger said this cycle; the decision engine works only from this."""
    at_ms: int
    checks: Dict[str, PositionCheck] = field(default_factory=dict)
    pool_states: Dict[str, PoolState] = field(default_factory=dict)
    untracked: List[LedgerReading] = field(default_factory=list)
    wallet: Optional[WalletBalance] = None
    trust_chain_rebuilt: bool = False
    discovery_failed: bool = False
    duration_ms: float = 0.0
    # reconciled state; not yet in the store when the pass was not persisted
    state: Optional[EngineState] = None
    persisted: bool = True

    def is_readable(self, position_id: str) -> bool:
        check = self.checks.get(position_id)
        return check is not None and check.outcome in (ReconcileOutcome.MATCH, ReconcileOutcome.DRIFT)

    @property
    def excluded(self) -> List[str]:
        return [pid for pid, c in self.checks.items() if c.outcome == ReconcileOutcome.UNREADABLE]

    def counts(self) -> Dict[str, int]:
        out: Dict[str, int] = {o.value: 0 for o in ReconcileOutcome}
        for c in self.checks.values():
            out[c.outcome.value] += 1
        out[ReconcileOutcome.UNTRACKED.value] = len(self.untracked)
        return out


def position_from_reading(reading: LedgerReading, source: CapitalSource, at_ms: int) -> Optional[Position]:
    """Build a tracked Position from a discovery reading; None if identity is incomplete."""
    if reading.variant is None or reading.token_a is None or reading.token_b is None:
        return None
    return Position(
        position_id=make_position_id(reading.pool_id, reading.owner),
        pool_id=reading.pool_id,
        owner=reading.owner,
        variant=reading.variant,
        token_a=reading.token_a,
        token_b=reading.token_b,
        protocol=reading.protocol,
        bin_step_bps=reading.bin_step_bps,
        tick_spacing=reading.tick_spacing,
        lower_id=reading.lower_id,
        upper_id=reading.upper_id,
        shares=reading.shares,
        amount_a_raw=reading.amount_a_raw,
        amount_b_raw=reading.amount_b_raw,
        value_usd=reading.value_usd,
        source=source,
        status=PositionStatus.ACTIVE,
        created_ms=at_ms,
        last_reconciled_ms=at_ms,
    )


class ReconciliationEngine:
    """
    Usage:
        engine = ReconciliationEngine(store, registry, owner="0xabc...")
        report = await engine.reconcile(now_ms())
    """

    def __init__(
        self,
        store: "PositionStore",
        registry: AdapterRegistry,
        owner: str,
        throttle: Optional[ReadThrottle] = None,
        config: Optional[ReconciliationConfig] = None,
        metrics: Optional["RichMetrics"] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.owner = owner
        self.throttle = throttle or ReadThrottle()
        self.config = config or ReconciliationConfig()
        self.metrics = metrics
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = kwargs.pop("level", logging.INFO)
        log.log(level, json.dumps({"event": event, **kwargs}))

    async def _read(self, label: str, call) -> Any:
        return await call_with_retry(
            lambda: self.throttle.run(label, call),
            retries=self.config.read_retries,
            backoff=self.config.retry_backoff_sec,
            label=label,
        )

    async def reconcile(self, now_ms: int, persist: bool = True) -> ReconcileReport:
        """
        Read the ledger and fold the outcomes into state.

        With persist=False (dry runs) the outcomes are applied to a private copy
        returned as `report.state` and the store is left untouched.
        """
        started = time.monotonic()
        state = self.store.snapshot()
        report = ReconcileReport(at_ms=now_ms)
        trust_chain = state.control.trust_chain

        targets = [] if trust_chain else [
            p for p in state.positions.values() if p.status in RECONCILED_STATUSES
        ]
        results = await self.throttle.map(targets, self._check_position, label=lambda p: p.position_id)
        for pos, result in zip(targets, results):
            if isinstance(result, BaseException):
                if not isinstance(result, (LpKeeperError, ValueError, KeyError)):
                    raise result
                report.checks[pos.position_id] = PositionCheck(
                    pos.position_id, pos.pool_id, ReconcileOutcome.UNREADABLE, error=str(result)
                )
                self._log_event("position_unreadable", level=logging.WARNING, position=pos.position_id,
                                pool=pos.pool_id, err=str(result))
                continue
            check, pool_state = result
            report.checks[pos.position_id] = check
            if pool_state is not None:
                report.pool_states[pos.pool_id] = pool_state

        if self.config.discover or trust_chain:
            discovered = await self._discover(report)
            known = set(state.positions)
            report.untracked = [r for r in discovered if make_position_id(r.pool_id, r.owner) not in known]

        try:
            report.wallet = await self._read("wallet", lambda: self.registry.wallet_balance(self.owner))
        except (TransientError, UnsupportedProtocol) as exc:
            self._log_event("wallet_unreadable", level=logging.WARNING, err=str(exc))

        def _apply(draft: EngineState) -> None:
            self._apply(draft, report)

        if persist:
            report.state = await self.store.commit(_apply, reason="reconcile")
        else:
            preview = self.store.snapshot()
            _apply(preview)
            report.state = preview
            report.persisted = False

        report.duration_ms = (time.monotonic() - started) * 1000
        counts = report.counts()
        self._log_event("reconcile_complete", duration_ms=round(report.duration_ms, 1),
                        trust_chain_rebuilt=report.trust_chain_rebuilt, **counts)
        if self.metrics:
            for outcome, n in counts.items():
                if n:
                    self.metrics.reconcile_outcomes.labels(outcome=outcome).inc(n)
            self.metrics.reconcile_duration_ms.observe(report.duration_ms)
            self.metrics.untracked_candidates.set(len(report.untracked))
        return report

    async def _check_position(self, pos: Position):
        adapter = self.registry.get(pos.variant)
        reading = await call_with_retry(
            lambda: adapter.read_position(pos.pool_id, pos.owner),
            retries=self.config.read_retries,
            backoff=self.config.retry_backoff_sec,
            label=f"read:{pos.position_id}",
        )
        if not reading.has_balance:
            return PositionCheck(pos.position_id, pos.pool_id, ReconcileOutcome.ORPHAN, reading=reading), None

        pool_state = await call_with_retry(
            lambda: adapter.read_pool(pos.pool_id),
            retries=self.config.read_retries,
            backoff=self.config.retry_backoff_sec,
            label=f"pool:{pos.pool_id}",
        )
        outcome = ReconcileOutcome.DRIFT if self._differs(pos, reading) else ReconcileOutcome.MATCH
        return PositionCheck(pos.position_id, pos.pool_id, outcome, reading=reading), pool_state

    def _differs(self, pos: Position, r: LedgerReading) -> bool:
        if pos.status == PositionStatus.CRITICAL:
            return True
        if (pos.shares, pos.amount_a_raw, pos.amount_b_raw) != (r.shares, r.amount_a_raw, r.amount_b_raw):
            return True
        if r.lower_id is not None and (pos.lower_id, pos.upper_id) != (r.lower_id, r.upper_id):
            return True
        base = max(abs(pos.value_usd), 1e-9)
        return abs(r.value_usd - pos.value_usd) / base * 100.0 > self.config.value_tolerance_pct

    async def _discover(self, report: ReconcileReport) -> List[LedgerReading]:
        found: List[LedgerReading] = []
        for adapter in self.registry.all():
            try:
                readings = await self._read(
                    f"discover:{adapter.variant.value}", lambda a=adapter: a.discover_positions(self.owner)
                )
            except TransientError as exc:
                report.discovery_failed = True
                self._log_event("discovery_failed", level=logging.WARNING, variant=adapter.variant.value, err=str(exc))
                continue
            for r in readings:
                if r.variant is None:
                    r.variant = adapter.variant
                if r.has_balance:
                    found.append(r)
        return found

    def _apply(self, draft: EngineState, report: ReconcileReport) -> None:
        now = report.at_ms

        for pid, check in report.checks.items():
            pos = draft.positions.get(pid)
            if pos is None:
                continue
            if check.outcome == ReconcileOutcome.MATCH:
                pos.last_reconciled_ms = now
            elif check.outcome == ReconcileOutcome.DRIFT:
                self._apply_drift(pos, check.reading, now)
            elif check.outcome == ReconcileOutcome.ORPHAN:
                self._apply_orphan(draft, pos, now)

        if draft.control.trust_chain:
            if report.discovery_failed:
                self._log_event("trust_chain_rebuild_deferred", level=logging.WARNING)
            else:
                self._rebuild_from_chain(draft, report)
            return

        if not report.discovery_failed and (self.config.discover or report.untracked):
            draft.candidates = {}
            for r in report.untracked:
                candidate = position_from_reading(r, CapitalSource.ADOPTED, now)
                if candidate is None:
                    self._log_event("untracked_incomplete", level=logging.WARNING, pool=r.pool_id)
                    continue
                draft.candidates[candidate.position_id] = candidate
                self._log_event("untracked_position", pool=r.pool_id, value_usd=r.value_usd)

    def _apply_drift(self, pos: Position, r: LedgerReading, now: int) -> None:
        self._log_event(
            "position_drift",
            position=pos.position_id,
            pool=pos.pool_id,
            stored={"shares": str(pos.shares), "a": str(pos.amount_a_raw), "b": str(pos.amount_b_raw),
                    "range": [pos.lower_id, pos.upper_id], "value_usd": pos.value_usd},
            chain={"shares": str(r.shares), "a": str(r.amount_a_raw), "b": str(r.amount_b_raw),
                   "range": [r.lower_id, r.upper_id], "value_usd": r.value_usd},
        )
        pos.shares = r.shares
        pos.amount_a_raw = r.amount_a_raw
        pos.amount_b_raw = r.amount_b_raw
        pos.value_usd = r.value_usd
        if r.lower_id is not None:
            pos.lower_id, pos.upper_id = r.lower_id, r.upper_id
        pos.last_reconciled_ms = now
        if pos.status == PositionStatus.CRITICAL:
            pos.status = PositionStatus.ACTIVE
            self._log_event("position_critical_resolved", position=pos.position_id)

    def _apply_orphan(self, draft: EngineState, pos: Position, now: int) -> None:
        self._log_event("position_orphaned", level=logging.WARNING, position=pos.position_id, pool=pos.pool_id,
                        policy=self.config.orphan_policy, prior_status=pos.status.value)
        pos.status = PositionStatus.REMOVED_PENDING_REDEPLOY
        pos.shares = pos.amount_a_raw = pos.amount_b_raw = 0
        pos.value_usd = 0.0
        pos.hold_reason = "orphan"
        pos.last_reconciled_ms = now
        if self.config.orphan_policy == ORPHAN_REMOVE:
            draft.history.append(draft.positions.pop(pos.position_id))

    def _rebuild_from_chain(self, draft: EngineState, report: ReconcileReport) -> None:
        imported = 0
        for r in report.untracked:
            pos = position_from_reading(r, CapitalSource.ADOPTED, report.at_ms)
            if pos is None:
                self._log_event("trust_chain_position_incomplete", level=logging.WARNING, pool=r.pool_id)
                continue
            draft.positions[pos.position_id] = pos
            imported += 1
        draft.candidates = {}
        draft.control.trust_chain = False
        report.trust_chain_rebuilt = True
        report.untracked = []
        self._log_event("trust_chain_rebuilt", level=logging.WARNING, imported=imported)
