"""
Strategy package - distribution shapes, allocation and rotation ranking.
"""

from lpkeeper.strategy.allocation import ActiveSplitPolicy, DepositPlan
from lpkeeper.strategy.distribution import Distribution, DistributionBuilder
from lpkeeper.strategy.rotation import RotationEvaluation, RotationTracker

__all__ = [
    "ActiveSplitPolicy",
    "DepositPlan",
    "Distribution",
    "DistributionBuilder",
    "RotationEvaluation",
    "RotationTracker",
]
