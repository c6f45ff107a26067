"""
RotationTracker - anti-thrash evaluation of strategy pool membership.

Each monitoring cycle compares the held strategy pools with the latest usable
ranking snapshot:

- A held pool is "below" when it is missing from the ranking or ranked at or
  beyond target_pool_count + rotation_buffer. Its below counter grows while
  that holds and resets to zero the first cycle it does not.
- A candidate in the top target_pool_count is "above" when its metric beats
  the worst held metric by rotation_margin_pct (or a slot is vacant). Its
  above counter behaves the same way.

A pool only qualifies for exit/entry once its counter reaches
rotation_consecutive_checks, so a rank that oscillates faster than that
never triggers a rotation. Counters for pools that are neither held nor in
the top set are dropped, so nothing accumulates one way forever.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Collection, Dict, List, Mapping

from lpkeeper.core.models import RankedPool, RankingSnapshot, RotationCounter, StrategyConfig


@dataclass
class EntryCandidate:
    pool: RankedPool
    rank: int
    metric: float
    beats_margin: bool


@dataclass
class RotationEvaluation:
    """Outcome of one cycle's counter update."""
    exits: List[str] = field(default_factory=list)             # held pool ids, worst first
    entries: List[EntryCandidate] = field(default_factory=list)  # best first
    counters: Dict[str, RotationCounter] = field(default_factory=dict)
    ranks: Dict[str, int] = field(default_factory=dict)
    worst_held_metric: float = 0.0


def exceeds_margin(candidate_metric: float, reference_metric: float, margin_pct: float) -> bool:
    """candidate beats reference by at least margin_pct of the reference's magnitude."""
    if candidate_metric <= reference_metric:
        return False
    return candidate_metric - reference_metric >= abs(reference_metric) * margin_pct / 100.0


class RotationTracker:
    """
    Pure counter bookkeeping; the caller persists `counters` via the store.

    Usage:
        tracker = RotationTracker(strategy)
        ev = tracker.evaluate(state.rotation, held_metrics, snapshot, vacancies=1)
    """

    def __init__(self, strategy: StrategyConfig) -> None:
        self.strategy = strategy

    def evaluate(
        self,
        counters: Mapping[str, RotationCounter],
        held_metrics: Mapping[str, float],
        snapshot: RankingSnapshot,
        vacancies: int = 0,
        occupied: Collection[str] = (),
        bypass_checks: bool = False,
    ) -> RotationEvaluation:
        """
        Args:
            counters: counters from the previous cycle (not mutated)
            held_metrics: pool_id -> current metric for held, actionable strategy pools
            snapshot: usable ranking snapshot
            vacancies: open strategy slots
            occupied: pool ids that hold capital but are not actionable (never entry candidates)
            bypass_checks: skip the consecutive-check requirement (initial deployment)
        """
        s = self.strategy
        metric = s.ranking_metric
        need = s.rotation_consecutive_checks
        ranked = snapshot.ranked(metric, s.min_tvl_usd)
        ranks = {p.pool_id: i for i, p in enumerate(ranked)}
        out = RotationEvaluation(ranks=ranks)

        worst = min(held_metrics.values()) if held_metrics else 0.0
        out.worst_held_metric = worst

        exit_threshold = s.target_pool_count + s.rotation_buffer
        exits_with_metric = []
        for pool_id, pool_metric in held_metrics.items():
            prev = counters.get(pool_id, RotationCounter())
            rank = ranks.get(pool_id)
            below = rank is None or rank >= exit_threshold
            counter = RotationCounter(below_count=prev.below_count + 1 if below else 0, above_count=0)
            out.counters[pool_id] = counter
            if counter.below_count >= need:
                exits_with_metric.append((pool_metric, pool_id))
        out.exits = [pid for _, pid in sorted(exits_with_metric)]

        for rank, pool in enumerate(ranked[: s.target_pool_count]):
            if pool.pool_id in held_metrics or pool.pool_id in occupied:
                continue
            prev = counters.get(pool.pool_id, RotationCounter())
            pool_metric = pool.metric(metric)
            beats = (not held_metrics) or exceeds_margin(pool_metric, worst, s.rotation_margin_pct)
            above = beats or vacancies > 0
            counter = RotationCounter(below_count=0, above_count=prev.above_count + 1 if above else 0)
            if counter.above_count:
                out.counters[pool.pool_id] = counter
            if above and (bypass_checks or counter.above_count >= need):
                out.entries.append(EntryCandidate(pool=pool, rank=rank, metric=pool_metric, beats_margin=beats))

        return out
