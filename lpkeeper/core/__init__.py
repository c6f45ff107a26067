"""
Core package.

Domain model, error taxonomy, price math and JSON helpers.
"""

from lpkeeper.core.errors import (
    FatalError,
    InconsistencyError,
    LpKeeperError,
    PartialFailure,
    PolicyViolation,
    TransientError,
)
from lpkeeper.core.models import (
    EngineState,
    Intent,
    IntentKind,
    Position,
    PositionStatus,
    ProtocolVariant,
    RankedPool,
    RankingSnapshot,
    StrategyConfig,
    TxRecord,
    now_ms,
)

__all__ = [
    "FatalError",
    "InconsistencyError",
    "LpKeeperError",
    "PartialFailure",
    "PolicyViolation",
    "TransientError",
    "EngineState",
    "Intent",
    "IntentKind",
    "Position",
    "PositionStatus",
    "ProtocolVariant",
    "RankedPool",
    "RankingSnapshot",
    "StrategyConfig",
    "TxRecord",
    "now_ms",
]
