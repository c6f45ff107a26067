"""
Rolling 24h gas budget and per-intent cost estimates.

The cap is `gas_budget_fraction` of the smallest active position value.
With no active position yet, the value of the deposit being considered is
used instead. Spend is the sum of gas recorded on live and archived
positions inside the last 24 hours.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

from lpkeeper.core.models import EngineState, IntentKind, PositionStatus

DEFAULT_INTENT_GAS_USD: Dict[IntentKind, float] = {
    IntentKind.DEPOSIT: 0.50,
    IntentKind.WITHDRAW: 0.30,
    IntentKind.ROTATE_EXIT: 0.30,
    IntentKind.ROTATE_ENTER: 0.50,
    IntentKind.REBALANCE: 0.50,
}


@dataclass
class GasBudgetStatus:
    spent_usd: float
    cap_usd: Optional[float]

    @property
    def exhausted(self) -> bool:
        return self.cap_usd is not None and self.spent_usd >= self.cap_usd

    @property
    def remaining_usd(self) -> Optional[float]:
        if self.cap_usd is None:
            return None
        return max(0.0, self.cap_usd - self.spent_usd)

    def allows(self, cost_usd: float) -> bool:
        if self.cap_usd is None:
            return True
        return self.spent_usd + cost_usd <= self.cap_usd


class GasBudget:
    def __init__(self, fraction: float) -> None:
        if not 0 < fraction <= 1:
            raise ValueError("gas budget fraction must be in (0, 1]")
        self.fraction = fraction

    def cap_usd(self, state: EngineState, fallback_value_usd: float = 0.0) -> Optional[float]:
        values = [
            p.value_usd for p in state.positions.values()
            if p.status == PositionStatus.ACTIVE and p.value_usd > 0
        ]
        base = min(values) if values else fallback_value_usd
        if base <= 0:
            return None
        return base * self.fraction

    def status(self, state: EngineState, now_ms: int, fallback_value_usd: float = 0.0) -> GasBudgetStatus:
        return GasBudgetStatus(spent_usd=state.gas_24h(now_ms), cap_usd=self.cap_usd(state, fallback_value_usd))


@dataclass
class GasEstimator:
    """
    Cost per intent kind: the larger of a configured floor and the mean of
    recent confirmed spends of that kind.
    """
    defaults: Dict[IntentKind, float] = field(default_factory=lambda: dict(DEFAULT_INTENT_GAS_USD))
    swap_cost_pct: float = 0.3   # rotation consolidation cost, percent of value moved
    sample_size: int = 10

    def intent_cost(self, kind: IntentKind, state: Optional[EngineState] = None) -> float:
        floor = self.defaults.get(kind, 0.0)
        if state is None:
            return floor
        recent = [r.gas_cost_usd for r in reversed(state.tx_log) if r.kind == kind and r.is_success]
        recent = recent[: self.sample_size]
        if not recent:
            return floor
        return max(floor, sum(recent) / len(recent))

    def rotation_cost(self, value_usd: float, state: Optional[EngineState] = None) -> float:
        return (
            self.intent_cost(IntentKind.ROTATE_EXIT, state)
            + self.intent_cost(IntentKind.ROTATE_ENTER, state)
            + value_usd * self.swap_cost_pct / 100.0
        )

    def rebalance_cost(self, state: Optional[EngineState] = None) -> float:
        return self.intent_cost(IntentKind.WITHDRAW, state) + self.intent_cost(IntentKind.REBALANCE, state)

    def deposit_cost(self, state: Optional[EngineState] = None) -> float:
        return self.intent_cost(IntentKind.DEPOSIT, state)


def passes_economic_gate(
    cost_usd: float,
    metric_in: float,
    metric_out: float,
    value_usd: float,
    horizon_days: float,
) -> bool:
    """
    Rotation is worth it only if its cost is below the extra yield expected
    over the horizon: (metric_in - metric_out)% per year on value_usd.
    """
    gain = (metric_in - metric_out) / 100.0 * value_usd * horizon_days / 365.0
    return cost_usd < gain
