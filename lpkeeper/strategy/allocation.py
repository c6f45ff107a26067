"""
Capital sizing and deposit planning.

Turns a USD budget into per-pool allocations, a percentage range into
concrete bucket/tick bounds, and a USD amount into raw token amounts for a
deposit, including how value is split across the active bucket.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Sequence, Tuple

from lpkeeper.core.models import DistributionMode, ProtocolVariant, SizingMode, StrategyConfig
from lpkeeper.core.price_model import (
    bucket_range_for_percent,
    tick_range_for_percent,
    to_raw_amount,
)
from lpkeeper.strategy.distribution import Distribution, DistributionBuilder, WeightShape


class ActiveSplitPolicy(Enum):
    """How deposit value is split inside the active bucket."""
    MIRROR_COMPOSITION = "mirror-composition"  # match on-chain ratio, avoids composition fee
    FIFTY_FIFTY = "fifty-fifty"


@dataclass
class DepositPlan:
    """Concrete numeric parameters for one deposit intent."""
    variant: ProtocolVariant
    amount_a_raw: int
    amount_b_raw: int
    value_usd: float
    lower_id: Optional[int] = None
    upper_id: Optional[int] = None
    active_id: Optional[int] = None
    distribution: Optional[Distribution] = None

    def to_params(self) -> Dict[str, object]:
        params: Dict[str, object] = {
            "variant": self.variant.value,
            "amount_a": str(self.amount_a_raw),
            "amount_b": str(self.amount_b_raw),
            "value_usd": self.value_usd,
            "lower_id": self.lower_id,
            "upper_id": self.upper_id,
            "active_id": self.active_id,
        }
        if self.distribution is not None:
            params["distribution"] = self.distribution.to_params()
        return params


def total_budget(strategy: StrategyConfig, wallet_usd: float) -> float:
    if strategy.sizing_mode == SizingMode.FIXED:
        return min(strategy.fixed_amount_usd, wallet_usd) if wallet_usd >= 0 else strategy.fixed_amount_usd
    return max(0.0, wallet_usd) * strategy.balance_fraction


def allocation_for_pool(strategy: StrategyConfig, pool_id: str, budget_usd: float) -> float:
    """USD allocated to one pool slot out of the whole strategy budget."""
    if strategy.distribution_mode == DistributionMode.WEIGHTED:
        return budget_usd * strategy.pool_allocations.get(pool_id, 0.0) / 100.0
    return budget_usd / strategy.target_pool_count


def target_range(
    variant: ProtocolVariant,
    active_id: Optional[int],
    min_pct: float,
    max_pct: float,
    bin_step_bps: Optional[float] = None,
    tick_spacing: Optional[int] = None,
) -> Tuple[Optional[int], Optional[int]]:
    """Bounds for a fresh deposit; share vaults have none."""
    if variant == ProtocolVariant.SHARE_VAULT:
        return None, None
    if active_id is None:
        raise ValueError("active id required for ranged pools")
    if variant == ProtocolVariant.BUCKETED_BOOK:
        if not bin_step_bps:
            raise ValueError("bucketed pool without bin step")
        return bucket_range_for_percent(active_id, bin_step_bps, min_pct, max_pct)
    return tick_range_for_percent(active_id, int(tick_spacing or 1), min_pct, max_pct)


def range_center(lower_id: int, upper_id: int) -> int:
    return (lower_id + upper_id) // 2


def active_base_fraction(
    policy: ActiveSplitPolicy,
    reserve_a_raw: int = 0,
    reserve_b_raw: int = 0,
    price_raw: float = 0.0,
) -> float:
    """
    Fraction of the active bucket's deposit value to supply as base token.

    `price_raw` is the bucket price in raw quote units per raw base unit.
    """
    if policy == ActiveSplitPolicy.FIFTY_FIFTY:
        return 0.5
    value_a = reserve_a_raw * price_raw
    value_b = float(reserve_b_raw)
    if value_a + value_b <= 0:
        return 0.5
    return value_a / (value_a + value_b)


def base_value_share(raw_weights: Sequence[int], offsets: Sequence[int], active_fraction: float) -> float:
    """Share of total deposit value that must be supplied as base token."""
    total = float(sum(raw_weights))
    if total <= 0:
        return 0.0
    base = 0.0
    for o, w in zip(offsets, raw_weights):
        if o > 0:
            base += w
        elif o == 0:
            base += w * active_fraction
    return base / total


def plan_bucketed_deposit(
    builder: DistributionBuilder,
    value_usd: float,
    lower_id: int,
    upper_id: int,
    active_id: int,
    price_a_usd: float,
    price_b_usd: float,
    decimals_a: int,
    decimals_b: int,
    shape: WeightShape = WeightShape.UNIFORM,
    active_fraction: float = 0.5,
) -> DepositPlan:
    """Token amounts plus weights for a bucketed-book deposit."""
    if price_a_usd <= 0 or price_b_usd <= 0:
        raise ValueError("token USD prices must be > 0")
    offsets = [b - active_id for b in range(lower_id, upper_id + 1)]
    raw = builder.raw_weights(offsets, shape, None)
    share = base_value_share(raw, offsets, active_fraction)
    amount_a = to_raw_amount(value_usd * share / price_a_usd, decimals_a)
    amount_b = to_raw_amount(value_usd * (1 - share) / price_b_usd, decimals_b)
    dist = builder.build_range(
        lower_id,
        upper_id,
        active_id,
        shape=shape,
        deposit_base=amount_a > 0,
        deposit_quote=amount_b > 0,
    )
    return DepositPlan(
        variant=ProtocolVariant.BUCKETED_BOOK,
        amount_a_raw=amount_a,
        amount_b_raw=amount_b,
        value_usd=value_usd,
        lower_id=lower_id,
        upper_id=upper_id,
        active_id=active_id,
        distribution=dist,
    )


def plan_simple_deposit(
    variant: ProtocolVariant,
    value_usd: float,
    price_a_usd: float,
    price_b_usd: float,
    decimals_a: int,
    decimals_b: int,
    lower_id: Optional[int] = None,
    upper_id: Optional[int] = None,
    active_id: Optional[int] = None,
) -> DepositPlan:
    """Tick-range and vault deposits: value split evenly, adapter does the fine ratio."""
    if price_a_usd <= 0 or price_b_usd <= 0:
        raise ValueError("token USD prices must be > 0")
    half = value_usd / 2.0
    return DepositPlan(
        variant=variant,
        amount_a_raw=to_raw_amount(half / price_a_usd, decimals_a),
        amount_b_raw=to_raw_amount(half / price_b_usd, decimals_b),
        value_usd=value_usd,
        lower_id=lower_id,
        upper_id=upper_id,
        active_id=active_id,
    )

