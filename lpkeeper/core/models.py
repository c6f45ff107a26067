"""
Data model for the liquidity engine.

All persisted types follow the same pattern: a dataclass with `to_dict()`
and a `from_dict()` classmethod. Raw integer token amounts are written as
decimal strings (see json_utils.encode_int).

Position lifecycle:

    ACTIVE ──────┬──────> REMOVED_PENDING_REDEPLOY ──> ACTIVE (redeploy / clear)
      │  ▲       │                 │
      │  │       ├──────> MIGRATED (terminal, rotated out)
      ▼  │       │
    CRITICAL ────┴──────> ERROR ──> ACTIVE (operator clear)
"""

from __future__ import annotations

import copy
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from lpkeeper.core.errors import StateCorruption
from lpkeeper.core.json_utils import decode_int, encode_int

STATE_VERSION = 1
GAS_WINDOW_MS = 24 * 60 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


class ProtocolVariant(Enum):
    BUCKETED_BOOK = "bucketed-book"
    TICK_RANGE = "tick-range"
    SHARE_VAULT = "share-vault"


class CapitalSource(Enum):
    MANUAL = "manual"
    STRATEGY = "strategy"
    ADOPTED = "adopted"


class PositionStatus(Enum):
    ACTIVE = "active"
    REMOVED_PENDING_REDEPLOY = "removed-pending-redeploy"
    MIGRATED = "migrated"
    CRITICAL = "critical"
    ERROR = "error"


VALID_STATUS_TRANSITIONS: Dict[PositionStatus, List[PositionStatus]] = {
    PositionStatus.ACTIVE: [
        PositionStatus.ACTIVE,                    # rebalance / drift repair
        PositionStatus.REMOVED_PENDING_REDEPLOY,  # orphan, epoch withdraw, failed redeposit
        PositionStatus.MIGRATED,                  # rotated out
        PositionStatus.CRITICAL,                  # tx outcome unknown
        PositionStatus.ERROR,                     # withdraw failed
    ],
    PositionStatus.CRITICAL: [
        PositionStatus.ACTIVE,
        PositionStatus.REMOVED_PENDING_REDEPLOY,
        PositionStatus.ERROR,
    ],
    PositionStatus.ERROR: [
        PositionStatus.ACTIVE,
        PositionStatus.REMOVED_PENDING_REDEPLOY,
    ],
    PositionStatus.REMOVED_PENDING_REDEPLOY: [
        PositionStatus.ACTIVE,
        PositionStatus.MIGRATED,
        PositionStatus.CRITICAL,                  # redeposit outcome unknown
    ],
    PositionStatus.MIGRATED: [],
}

# Statuses whose on-chain balance is still read every cycle
RECONCILED_STATUSES = (PositionStatus.ACTIVE, PositionStatus.CRITICAL, PositionStatus.ERROR)


class RankingMetric(Enum):
    APR = "apr"
    REAL_RETURN = "real-return"


class SizingMode(Enum):
    FIXED = "fixed"
    FRACTION = "fraction"


class DistributionMode(Enum):
    EQUAL = "equal"
    WEIGHTED = "weighted"


class RebalanceTrigger(Enum):
    EVERY_CHECK = "every-check"
    OUT_OF_RANGE = "out-of-range"
    NONE = "none"


class EpochBehavior(Enum):
    WITHDRAW = "withdraw"
    REDEPLOY = "redeploy"
    REMAIN = "remain"


class StatusReports(Enum):
    EVERY_CYCLE = "every-cycle"
    ON_ACTION = "on-action"


class IntentKind(Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    ROTATE_EXIT = "rotate-exit"
    ROTATE_ENTER = "rotate-enter"
    REBALANCE = "rebalance"  # redeposit leg of a rebalance


class TxOutcome(Enum):
    SUCCESS = "success"
    REVERTED = "reverted"
    PENDING = "pending"    # still unresolved when confirmation timed out
    DROPPED = "dropped"


def make_position_id(pool_id: str, owner: str) -> str:
    return f"{pool_id}:{owner.lower()}"


@dataclass
class TokenInfo:
    address: str
    symbol: str
    decimals: int

    def to_dict(self) -> Dict[str, Any]:
        return {"address": self.address, "symbol": self.symbol, "decimals": self.decimals}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TokenInfo":
        return cls(address=str(d["address"]), symbol=str(d.get("symbol", "")), decimals=int(d["decimals"]))


@dataclass
class Position:
    """One tracked liquidity deployment."""
    position_id: str
    pool_id: str
    owner: str
    variant: ProtocolVariant
    token_a: TokenInfo
    token_b: TokenInfo
    protocol: str = ""
    bin_step_bps: Optional[float] = None
    tick_spacing: Optional[int] = None

    # On-chain numeric state (overwritten by reconciliation)
    lower_id: Optional[int] = None
    upper_id: Optional[int] = None
    shares: int = 0
    amount_a_raw: int = 0
    amount_b_raw: int = 0
    value_usd: float = 0.0

    # Lifecycle
    source: CapitalSource = CapitalSource.MANUAL
    status: PositionStatus = PositionStatus.ACTIVE
    entry_price: Optional[float] = None
    created_ms: int = 0
    last_reconciled_ms: int = 0
    last_rebalance_ms: int = 0
    gas_spent: List[Tuple[int, float]] = field(default_factory=list)
    hold_reason: Optional[str] = None
    error_reason: Optional[str] = None
    metric: Optional[float] = None

    # Policy (preserved across reconciliation)
    range_min_pct: float = -50.0
    range_max_pct: float = 50.0
    cooldown_sec: Optional[float] = None
    rebalance_requested: bool = False

    @property
    def has_liquidity(self) -> bool:
        return self.shares > 0 or self.amount_a_raw > 0 or self.amount_b_raw > 0

    @property
    def is_held(self) -> bool:
        """Excluded from automatic action until an operator clears it."""
        return self.status == PositionStatus.ERROR or self.hold_reason is not None

    def gas_24h(self, at_ms: int) -> float:
        cutoff = at_ms - GAS_WINDOW_MS
        return sum(usd for ts, usd in self.gas_spent if ts > cutoff)

    def record_gas(self, at_ms: int, usd: float) -> None:
        cutoff = at_ms - GAS_WINDOW_MS
        self.gas_spent = [(ts, v) for ts, v in self.gas_spent if ts > cutoff]
        if usd > 0:
            self.gas_spent.append((at_ms, usd))

    def can_transition(self, new_status: PositionStatus) -> bool:
        return new_status in VALID_STATUS_TRANSITIONS.get(self.status, [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.position_id,
            "pool": self.pool_id,
            "owner": self.owner,
            "variant": self.variant.value,
            "token_a": self.token_a.to_dict(),
            "token_b": self.token_b.to_dict(),
            "protocol": self.protocol,
            "bin_step_bps": self.bin_step_bps,
            "tick_spacing": self.tick_spacing,
            "lower_id": self.lower_id,
            "upper_id": self.upper_id,
            "shares": encode_int(self.shares),
            "amount_a": encode_int(self.amount_a_raw),
            "amount_b": encode_int(self.amount_b_raw),
            "value_usd": self.value_usd,
            "source": self.source.value,
            "status": self.status.value,
            "entry_price": self.entry_price,
            "created_ms": self.created_ms,
            "last_reconciled_ms": self.last_reconciled_ms,
            "last_rebalance_ms": self.last_rebalance_ms,
            "gas_spent": [[ts, usd] for ts, usd in self.gas_spent],
            "hold_reason": self.hold_reason,
            "error_reason": self.error_reason,
            "metric": self.metric,
            "range_min_pct": self.range_min_pct,
            "range_max_pct": self.range_max_pct,
            "cooldown_sec": self.cooldown_sec,
            "rebalance_requested": self.rebalance_requested,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Position":
        return cls(
            position_id=str(d["id"]),
            pool_id=str(d["pool"]),
            owner=str(d["owner"]),
            variant=ProtocolVariant(d["variant"]),
            token_a=TokenInfo.from_dict(d["token_a"]),
            token_b=TokenInfo.from_dict(d["token_b"]),
            protocol=str(d.get("protocol", "")),
            bin_step_bps=d.get("bin_step_bps"),
            tick_spacing=d.get("tick_spacing"),
            lower_id=d.get("lower_id"),
            upper_id=d.get("upper_id"),
            shares=decode_int(d.get("shares")),
            amount_a_raw=decode_int(d.get("amount_a")),
            amount_b_raw=decode_int(d.get("amount_b")),
            value_usd=float(d.get("value_usd", 0.0)),
            source=CapitalSource(d.get("source", "manual")),
            status=PositionStatus(d.get("status", "active")),
            entry_price=d.get("entry_price"),
            created_ms=int(d.get("created_ms", 0)),
            last_reconciled_ms=int(d.get("last_reconciled_ms", 0)),
            last_rebalance_ms=int(d.get("last_rebalance_ms", 0)),
            gas_spent=[(int(ts), float(usd)) for ts, usd in d.get("gas_spent", [])],
            hold_reason=d.get("hold_reason"),
            error_reason=d.get("error_reason"),
            metric=d.get("metric"),
            range_min_pct=float(d.get("range_min_pct", -50.0)),
            range_max_pct=float(d.get("range_max_pct", 50.0)),
            cooldown_sec=d.get("cooldown_sec"),
            rebalance_requested=bool(d.get("rebalance_requested", False)),
        )


@dataclass
class StrategyConfig:
    """Global policy for autonomous management. Replaced only by commands."""
    target_pool_count: int = 3
    ranking_metric: RankingMetric = RankingMetric.REAL_RETURN
    sizing_mode: SizingMode = SizingMode.FRACTION
    fixed_amount_usd: float = 0.0
    balance_fraction: float = 1.0
    distribution_mode: DistributionMode = DistributionMode.EQUAL
    pool_allocations: Dict[str, float] = field(default_factory=dict)  # pool_id -> percent
    range_min_pct: float = -50.0
    range_max_pct: float = 50.0
    weight_shape: str = "uniform"
    check_interval_sec: float = 600.0
    rebalance_trigger: RebalanceTrigger = RebalanceTrigger.OUT_OF_RANGE
    rotation_buffer: int = 2
    rotation_consecutive_checks: int = 3
    rotation_margin_pct: float = 10.0
    gas_budget_fraction: float = 0.02
    epoch_behavior: EpochBehavior = EpochBehavior.REMAIN
    status_reports: StatusReports = StatusReports.EVERY_CYCLE
    cooldown_sec: float = 3600.0
    yield_horizon_days: float = 7.0
    min_tvl_usd: float = 0.0

    def validate(self) -> None:
        if self.target_pool_count < 1:
            raise ValueError("target_pool_count must be >= 1")
        if self.sizing_mode == SizingMode.FIXED and self.fixed_amount_usd <= 0:
            raise ValueError("fixed sizing needs fixed_amount_usd > 0")
        if not 0 < self.balance_fraction <= 1:
            raise ValueError("balance_fraction must be in (0, 1]")
        if self.range_min_pct <= -100 or self.range_min_pct > 0:
            raise ValueError("range_min_pct must be in (-100, 0]")
        if self.range_max_pct < 0:
            raise ValueError("range_max_pct must be >= 0")
        if self.check_interval_sec <= 0:
            raise ValueError("check_interval_sec must be > 0")
        if self.rotation_consecutive_checks < 1:
            raise ValueError("rotation_consecutive_checks must be >= 1")
        if self.rotation_buffer < 0:
            raise ValueError("rotation_buffer must be >= 0")
        if self.rotation_margin_pct < 0:
            raise ValueError("rotation_margin_pct must be >= 0")
        if not 0 < self.gas_budget_fraction <= 1:
            raise ValueError("gas_budget_fraction must be in (0, 1]")
        if self.cooldown_sec < 0:
            raise ValueError("cooldown_sec must be >= 0")
        if self.yield_horizon_days <= 0:
            raise ValueError("yield_horizon_days must be > 0")
        if self.weight_shape not in ("uniform", "linear-decay"):
            raise ValueError(f"unknown weight_shape {self.weight_shape!r}")
        if self.distribution_mode == DistributionMode.WEIGHTED:
            total = sum(self.pool_allocations.values())
            if not self.pool_allocations or any(v < 0 for v in self.pool_allocations.values()):
                raise ValueError("weighted distribution needs non-negative pool_allocations")
            if abs(total - 100.0) > 1e-6:
                raise ValueError(f"pool_allocations must sum to 100, got {total}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_pool_count": self.target_pool_count,
            "ranking_metric": self.ranking_metric.value,
            "sizing_mode": self.sizing_mode.value,
            "fixed_amount_usd": self.fixed_amount_usd,
            "balance_fraction": self.balance_fraction,
            "distribution_mode": self.distribution_mode.value,
            "pool_allocations": dict(self.pool_allocations),
            "range_min_pct": self.range_min_pct,
            "range_max_pct": self.range_max_pct,
            "weight_shape": self.weight_shape,
            "check_interval_sec": self.check_interval_sec,
            "rebalance_trigger": self.rebalance_trigger.value,
            "rotation_buffer": self.rotation_buffer,
            "rotation_consecutive_checks": self.rotation_consecutive_checks,
            "rotation_margin_pct": self.rotation_margin_pct,
            "gas_budget_fraction": self.gas_budget_fraction,
            "epoch_behavior": self.epoch_behavior.value,
            "status_reports": self.status_reports.value,
            "cooldown_sec": self.cooldown_sec,
            "yield_horizon_days": self.yield_horizon_days,
            "min_tvl_usd": self.min_tvl_usd,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "StrategyConfig":
        base = cls()
        return cls(
            target_pool_count=int(d.get("target_pool_count", base.target_pool_count)),
            ranking_metric=RankingMetric(d.get("ranking_metric", base.ranking_metric.value)),
            sizing_mode=SizingMode(d.get("sizing_mode", base.sizing_mode.value)),
            fixed_amount_usd=float(d.get("fixed_amount_usd", base.fixed_amount_usd)),
            balance_fraction=float(d.get("balance_fraction", base.balance_fraction)),
            distribution_mode=DistributionMode(d.get("distribution_mode", base.distribution_mode.value)),
            pool_allocations={str(k): float(v) for k, v in (d.get("pool_allocations") or {}).items()},
            range_min_pct=float(d.get("range_min_pct", base.range_min_pct)),
            range_max_pct=float(d.get("range_max_pct", base.range_max_pct)),
            weight_shape=str(d.get("weight_shape", base.weight_shape)),
            check_interval_sec=float(d.get("check_interval_sec", base.check_interval_sec)),
            rebalance_trigger=RebalanceTrigger(d.get("rebalance_trigger", base.rebalance_trigger.value)),
            rotation_buffer=int(d.get("rotation_buffer", base.rotation_buffer)),
            rotation_consecutive_checks=int(d.get("rotation_consecutive_checks", base.rotation_consecutive_checks)),
            rotation_margin_pct=float(d.get("rotation_margin_pct", base.rotation_margin_pct)),
            gas_budget_fraction=float(d.get("gas_budget_fraction", base.gas_budget_fraction)),
            epoch_behavior=EpochBehavior(d.get("epoch_behavior", base.epoch_behavior.value)),
            status_reports=StatusReports(d.get("status_reports", base.status_reports.value)),
            cooldown_sec=float(d.get("cooldown_sec", base.cooldown_sec)),
            yield_horizon_days=float(d.get("yield_horizon_days", base.yield_horizon_days)),
            min_tvl_usd=float(d.get("min_tvl_usd", base.min_tvl_usd)),
        )


@dataclass
class RotationCounter:
    """Anti-thrash counters for one pool."""
    below_count: int = 0
    above_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"below": self.below_count, "above": self.above_count}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RotationCounter":
        return cls(below_count=int(d.get("below", 0)), above_count=int(d.get("above", 0)))


@dataclass
class RankedPool:
    pool_id: str
    address: str
    protocol: str
    variant: ProtocolVariant
    pair: str
    apr: float
    real_return: float
    tvl_usd: float
    liquidity_usd: float = 0.0
    token_a: Optional[TokenInfo] = None
    token_b: Optional[TokenInfo] = None
    bin_step_bps: Optional[float] = None
    tick_spacing: Optional[int] = None
    supported: bool = True

    def metric(self, kind: RankingMetric) -> float:
        return self.apr if kind == RankingMetric.APR else self.real_return

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.pool_id,
            "address": self.address,
            "protocol": self.protocol,
            "variant": self.variant.value,
            "pair": self.pair,
            "apr": self.apr,
            "realReturn": self.real_return,
            "tvlUsd": self.tvl_usd,
            "liquidityUsd": self.liquidity_usd,
            "tokenA": self.token_a.to_dict() if self.token_a else None,
            "tokenB": self.token_b.to_dict() if self.token_b else None,
            "binStep": self.bin_step_bps,
            "tickSpacing": self.tick_spacing,
            "supported": self.supported,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RankedPool":
        return cls(
            pool_id=str(d["id"]),
            address=str(d.get("address", "")),
            protocol=str(d.get("protocol", "")),
            variant=ProtocolVariant(d["variant"]),
            pair=str(d.get("pair", "")),
            apr=float(d.get("apr", 0.0)),
            real_return=float(d.get("realReturn", 0.0)),
            tvl_usd=float(d.get("tvlUsd", 0.0)),
            liquidity_usd=float(d.get("liquidityUsd", 0.0)),
            token_a=TokenInfo.from_dict(d["tokenA"]) if d.get("tokenA") else None,
            token_b=TokenInfo.from_dict(d["tokenB"]) if d.get("tokenB") else None,
            bin_step_bps=d.get("binStep"),
            tick_spacing=d.get("tickSpacing"),
            supported=bool(d.get("supported", True)),
        )


@dataclass
class RankingSnapshot:
    """Timestamped view of externally ranked pools."""
    fetched_at_ms: int
    source_ts_ms: int
    pools: List[RankedPool] = field(default_factory=list)
    epoch_ends_at_ms: Optional[int] = None
    dropped_entries: int = 0

    def age_ms(self, at_ms: int) -> int:
        return max(0, at_ms - self.source_ts_ms)

    def ranked(self, metric: RankingMetric, min_tvl_usd: float = 0.0) -> List[RankedPool]:
        """Supported pools ordered by metric, best first (ties by TVL, then id)."""
        eligible = [p for p in self.pools if p.supported and p.tvl_usd >= min_tvl_usd]
        return sorted(eligible, key=lambda p: (-p.metric(metric), -p.tvl_usd, p.pool_id))

    def find(self, pool_id: str) -> Optional[RankedPool]:
        for p in self.pools:
            if p.pool_id == pool_id:
                return p
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fetched_at_ms": self.fetched_at_ms,
            "source_ts_ms": self.source_ts_ms,
            "epoch_ends_at_ms": self.epoch_ends_at_ms,
            "dropped": self.dropped_entries,
            "pools": [p.to_dict() for p in self.pools],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RankingSnapshot":
        return cls(
            fetched_at_ms=int(d["fetched_at_ms"]),
            source_ts_ms=int(d["source_ts_ms"]),
            pools=[RankedPool.from_dict(p) for p in d.get("pools", [])],
            epoch_ends_at_ms=d.get("epoch_ends_at_ms"),
            dropped_entries=int(d.get("dropped", 0)),
        )


def new_correlation_id() -> str:
    return secrets.token_hex(8)


@dataclass(frozen=True)
class Intent:
    """Immutable request for one state change."""
    intent_id: str
    kind: IntentKind
    correlation_id: str
    pool_id: str
    position_id: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    predecessor_id: Optional[str] = None
    created_ms: int = 0
    reason: str = ""

    @classmethod
    def create(
        cls,
        kind: IntentKind,
        correlation_id: str,
        step: int,
        pool_id: str,
        position_id: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        predecessor: Optional["Intent"] = None,
        reason: str = "",
        created_ms: Optional[int] = None,
    ) -> "Intent":
        """Intent ids are derived from the correlation id so a retried plan reuses them."""
        return cls(
            intent_id=f"{correlation_id}-{step}-{kind.value}",
            kind=kind,
            correlation_id=correlation_id,
            pool_id=pool_id,
            position_id=position_id,
            params=dict(params or {}),
            predecessor_id=predecessor.intent_id if predecessor else None,
            created_ms=created_ms if created_ms is not None else now_ms(),
            reason=reason,
        )

    def summary(self) -> Dict[str, Any]:
        """Loggable view without large numeric payloads."""
        return {
            "intent_id": self.intent_id,
            "kind": self.kind.value,
            "correlation_id": self.correlation_id,
            "pool": self.pool_id,
            "position": self.position_id,
            "predecessor": self.predecessor_id,
            "reason": self.reason,
        }


@dataclass
class TxRecord:
    """Terminal log entry for one intent that reached an adapter."""
    intent_id: str
    correlation_id: str
    kind: IntentKind
    pool_id: str
    outcome: TxOutcome
    timestamp_ms: int
    position_id: Optional[str] = None
    gas_cost_usd: float = 0.0
    tx_hash: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.outcome == TxOutcome.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent_id": self.intent_id,
            "correlation_id": self.correlation_id,
            "kind": self.kind.value,
            "pool": self.pool_id,
            "position": self.position_id,
            "outcome": self.outcome.value,
            "gas_usd": self.gas_cost_usd,
            "tx_hash": self.tx_hash,
            "error": self.error,
            "ts": self.timestamp_ms,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TxRecord":
        return cls(
            intent_id=str(d["intent_id"]),
            correlation_id=str(d["correlation_id"]),
            kind=IntentKind(d["kind"]),
            pool_id=str(d["pool"]),
            position_id=d.get("position"),
            outcome=TxOutcome(d["outcome"]),
            gas_cost_usd=float(d.get("gas_usd", 0.0)),
            tx_hash=d.get("tx_hash"),
            error=d.get("error"),
            timestamp_ms=int(d["ts"]),
        )


@dataclass
class ControlState:
    """Operator-facing switches; changed by commands and by safety trips."""
    paused: bool = False
    pause_reason: Optional[str] = None
    stopped: bool = False
    trust_chain: bool = False
    initial_deploy_pending: bool = False
    stale_ack_source_ms: Optional[int] = None
    last_epoch_handled_ms: Optional[int] = None
    updated_ms: int = 0

    @property
    def autonomous(self) -> bool:
        return not (self.paused or self.stopped or self.trust_chain)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "paused": self.paused,
            "pause_reason": self.pause_reason,
            "stopped": self.stopped,
            "trust_chain": self.trust_chain,
            "initial_deploy_pending": self.initial_deploy_pending,
            "stale_ack_source_ms": self.stale_ack_source_ms,
            "last_epoch_handled_ms": self.last_epoch_handled_ms,
            "updated_ms": self.updated_ms,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ControlState":
        return cls(
            paused=bool(d.get("paused", False)),
            pause_reason=d.get("pause_reason"),
            stopped=bool(d.get("stopped", False)),
            trust_chain=bool(d.get("trust_chain", False)),
            initial_deploy_pending=bool(d.get("initial_deploy_pending", False)),
            stale_ack_source_ms=d.get("stale_ack_source_ms"),
            last_epoch_handled_ms=d.get("last_epoch_handled_ms"),
            updated_ms=int(d.get("updated_ms", 0)),
        )


@dataclass
class EngineState:
    """The whole persisted document."""
    version: int = STATE_VERSION
    seq: int = 0
    updated_ms: int = 0
    positions: Dict[str, Position] = field(default_factory=dict)
    strategy: Optional[StrategyConfig] = None
    rotation: Dict[str, RotationCounter] = field(default_factory=dict)
    control: ControlState = field(default_factory=ControlState)
    tx_log: List[TxRecord] = field(default_factory=list)
    history: List[Position] = field(default_factory=list)
    candidates: Dict[str, Position] = field(default_factory=dict)
    last_snapshot: Optional[RankingSnapshot] = None

    def copy(self) -> "EngineState":
        return copy.deepcopy(self)

    def active_positions(self) -> List[Position]:
        return [p for p in self.positions.values() if p.status == PositionStatus.ACTIVE]

    def has_tx_record(self, intent_id: str) -> bool:
        return any(r.intent_id == intent_id for r in self.tx_log)

    def find_tx_record(self, intent_id: str) -> Optional[TxRecord]:
        for r in reversed(self.tx_log):
            if r.intent_id == intent_id:
                return r
        return None

    def gas_24h(self, at_ms: int) -> float:
        live = sum(p.gas_24h(at_ms) for p in self.positions.values())
        return live + sum(p.gas_24h(at_ms) for p in self.history)

    def counter(self, pool_id: str) -> RotationCounter:
        if pool_id not in self.rotation:
            self.rotation[pool_id] = RotationCounter()
        return self.rotation[pool_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "seq": self.seq,
            "updated_ms": self.updated_ms,
            "positions": {k: p.to_dict() for k, p in self.positions.items()},
            "strategy": self.strategy.to_dict() if self.strategy else None,
            "rotation": {k: c.to_dict() for k, c in self.rotation.items()},
            "control": self.control.to_dict(),
            "tx_log": [r.to_dict() for r in self.tx_log],
            "history": [p.to_dict() for p in self.history],
            "candidates": {k: p.to_dict() for k, p in self.candidates.items()},
            "last_snapshot": self.last_snapshot.to_dict() if self.last_snapshot else None,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "EngineState":
        """Deserialize, raising StateCorruption on any structural problem."""
        try:
            if not isinstance(d, dict):
                raise TypeError(f"state document must be an object, got {type(d).__name__}")
            version = int(d["version"])
            if version > STATE_VERSION:
                raise ValueError(f"unsupported state version {version}")
            return cls(
                version=version,
                seq=int(d["seq"]),
                updated_ms=int(d.get("updated_ms", 0)),
                positions={k: Position.from_dict(v) for k, v in d["positions"].items()},
                strategy=StrategyConfig.from_dict(d["strategy"]) if d.get("strategy") else None,
                rotation={k: RotationCounter.from_dict(v) for k, v in d.get("rotation", {}).items()},
                control=ControlState.from_dict(d.get("control", {})),
                tx_log=[TxRecord.from_dict(r) for r in d.get("tx_log", [])],
                history=[Position.from_dict(p) for p in d.get("history", [])],
                candidates={k: Position.from_dict(v) for k, v in d.get("candidates", {}).items()},
                last_snapshot=RankingSnapshot.from_dict(d["last_snapshot"]) if d.get("last_snapshot") else None,
            )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise StateCorruption(f"invalid state document: {exc}") from exc
