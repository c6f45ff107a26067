"""
DistributionBuilder - per-bucket deposit weights for bucketed pools.

Builds two independent integer weight vectors (base token, quote token) over
an ordered set of bucket offsets relative to the active bucket:

- offset < 0 (below active): quote token only
- offset == 0 (active):      either or both
- offset > 0 (above active): base token only

Each non-empty vector sums to exactly `total_weight`. Integer division
leaves a remainder, which is added to the last non-zero element of that
vector.

This is a pure calculation module with no side effects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence

from lpkeeper.core.errors import CompositionViolation, DistributionSumError

# 100% expressed in 18-decimal fixed point
WEIGHT_UNIT = 100 * 10 ** 18
# Float weights are scaled to integers with this precision before normalizing
FLOAT_WEIGHT_SCALE = 10 ** 12


class WeightShape(Enum):
    UNIFORM = "uniform"
    LINEAR_DECAY = "linear-decay"
    CUSTOM = "custom"


class SideRule(Enum):
    QUOTE_ONLY = "quote-only"
    BOTH = "both"
    BASE_ONLY = "base-only"

    @property
    def allows_base(self) -> bool:
        return self in (SideRule.BASE_ONLY, SideRule.BOTH)

    @property
    def allows_quote(self) -> bool:
        return self in (SideRule.QUOTE_ONLY, SideRule.BOTH)


def protocol_rule(offset: int) -> SideRule:
    """The side rule the protocol enforces for a bucket at `offset`."""
    if offset < 0:
        return SideRule.QUOTE_ONLY
    if offset > 0:
        return SideRule.BASE_ONLY
    return SideRule.BOTH


def check_rule(offset: int, rule: SideRule) -> None:
    if offset < 0 and rule.allows_base:
        raise CompositionViolation(f"bucket at offset {offset} is below active and may not receive base token")
    if offset > 0 and rule.allows_quote:
        raise CompositionViolation(f"bucket at offset {offset} is above active and may not receive quote token")


@dataclass
class Distribution:
    """Per-bucket weights ready to be attached to a deposit intent."""
    offsets: List[int]
    base_weights: List[int]
    quote_weights: List[int]
    total_weight: int = WEIGHT_UNIT
    bucket_ids: List[int] = field(default_factory=list)

    def validate(self) -> None:
        """Re-check every invariant; raises before anything is submitted."""
        n = len(self.offsets)
        if len(self.base_weights) != n or len(self.quote_weights) != n:
            raise DistributionSumError("weight vectors do not match the bucket count")
        for offset, b, q in zip(self.offsets, self.base_weights, self.quote_weights):
            if b < 0 or q < 0:
                raise DistributionSumError(f"negative weight at offset {offset}")
            if offset < 0 and b:
                raise CompositionViolation(f"base weight {b} assigned below active (offset {offset})")
            if offset > 0 and q:
                raise CompositionViolation(f"quote weight {q} assigned above active (offset {offset})")
        for name, vec in (("base", self.base_weights), ("quote", self.quote_weights)):
            total = sum(vec)
            if total and total != self.total_weight:
                raise DistributionSumError(f"{name} weights sum to {total}, expected {self.total_weight}")

    @property
    def has_base(self) -> bool:
        return any(self.base_weights)

    @property
    def has_quote(self) -> bool:
        return any(self.quote_weights)

    def to_params(self) -> Dict[str, object]:
        """Intent parameter form; weights as strings (wider than 64 bits)."""
        return {
            "offsets": list(self.offsets),
            "bucket_ids": list(self.bucket_ids),
            "base_weights": [str(w) for w in self.base_weights],
            "quote_weights": [str(w) for w in self.quote_weights],
            "total_weight": str(self.total_weight),
        }

    @classmethod
    def from_params(cls, params: Mapping[str, object]) -> "Distribution":
        return cls(
            offsets=[int(o) for o in params["offsets"]],
            base_weights=[int(w) for w in params["base_weights"]],
            quote_weights=[int(w) for w in params["quote_weights"]],
            total_weight=int(params.get("total_weight", WEIGHT_UNIT)),
            bucket_ids=[int(b) for b in params.get("bucket_ids", [])],
        )


def normalize_exact(raw: Sequence[int], total: int) -> List[int]:
    """
    Scale `raw` so it sums to exactly `total`.

    shares[i] = total * raw[i] // sum(raw); the remainder goes to the last
    element whose raw weight is non-zero. All-zero input yields all zeros.
    """
    denom = sum(raw)
    if denom == 0:
        return [0] * len(raw)
    shares = [total * w // denom for w in raw]
    remainder = total - sum(shares)
    if remainder:
        last = max(i for i, w in enumerate(raw) if w > 0)
        shares[last] += remainder
    return shares


class DistributionBuilder:
    """
    Builds deposit weight vectors honoring side rules and exact sums.

    Usage:
        builder = DistributionBuilder()
        dist = builder.build(range(-5, 6), WeightShape.LINEAR_DECAY, active_id=8388608)
    """

    def __init__(self, total_weight: int = WEIGHT_UNIT) -> None:
        if total_weight <= 0:
            raise ValueError("total_weight must be > 0")
        self.total_weight = int(total_weight)

    def build(
        self,
        offsets: Sequence[int],
        shape: WeightShape = WeightShape.UNIFORM,
        custom_weights: Optional[Sequence[float]] = None,
        rules: Optional[Mapping[int, SideRule]] = None,
        deposit_base: bool = True,
        deposit_quote: bool = True,
        active_id: Optional[int] = None,
    ) -> Distribution:
        offsets = [int(o) for o in offsets]
        if not offsets:
            raise ValueError("at least one bucket offset is required")
        if any(b <= a for a, b in zip(offsets, offsets[1:])):
            raise ValueError("bucket offsets must be strictly increasing")

        # Rule table first: nothing is weighted if any rule breaks the protocol invariant
        table = {o: protocol_rule(o) for o in offsets}
        if rules:
            for offset, rule in rules.items():
                if offset not in table:
                    raise ValueError(f"rule given for unknown offset {offset}")
                check_rule(offset, rule)
                table[offset] = rule

        raw = self.raw_weights(offsets, shape, custom_weights)

        base_raw = [w if deposit_base and table[o].allows_base else 0 for o, w in zip(offsets, raw)]
        quote_raw = [w if deposit_quote and table[o].allows_quote else 0 for o, w in zip(offsets, raw)]

        dist = Distribution(
            offsets=offsets,
            base_weights=normalize_exact(base_raw, self.total_weight),
            quote_weights=normalize_exact(quote_raw, self.total_weight),
            total_weight=self.total_weight,
            bucket_ids=[active_id + o for o in offsets] if active_id is not None else [],
        )
        dist.validate()
        return dist

    def build_range(
        self,
        lower_id: int,
        upper_id: int,
        active_id: int,
        shape: WeightShape = WeightShape.UNIFORM,
        deposit_base: bool = True,
        deposit_quote: bool = True,
    ) -> Distribution:
        """Distribution over the inclusive absolute range [lower_id, upper_id]."""
        if upper_id < lower_id:
            raise ValueError(f"upper_id {upper_id} < lower_id {lower_id}")
        offsets = [b - active_id for b in range(lower_id, upper_id + 1)]
        return self.build(
            offsets,
            shape=shape,
            deposit_base=deposit_base,
            deposit_quote=deposit_quote,
            active_id=active_id,
        )

    @staticmethod
    def raw_weights(
        offsets: Sequence[int],
        shape: WeightShape,
        custom_weights: Optional[Sequence[float]],
    ) -> List[int]:
        if shape == WeightShape.UNIFORM:
            return [1] * len(offsets)
        if shape == WeightShape.LINEAR_DECAY:
            reach = max(abs(o) for o in offsets)
            return [reach + 1 - abs(o) for o in offsets]
        if custom_weights is None or len(custom_weights) != len(offsets):
            raise ValueError("custom weights must match the number of buckets")
        out: List[int] = []
        for w in custom_weights:
            if w < 0:
                raise ValueError(f"negative custom weight {w}")
            out.append(w if isinstance(w, int) else int(round(w * FLOAT_WEIGHT_SCALE)))
        return out
