"""
Risk package: failure breaker and gas budget.
"""

from lpkeeper.risk.circuit_breaker import FailureBreaker, FailureBreakerConfig
from lpkeeper.risk.gas_budget import GasBudget, GasEstimator, passes_economic_gate

__all__ = [
    "FailureBreaker",
    "FailureBreakerConfig",
    "GasBudget",
    "GasEstimator",
    "passes_economic_gate",
]
