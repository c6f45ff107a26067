"""
Execution layer: protocol adapters, the intent gateway and reconciliation.

- ExecutionAdapter / AdapterRegistry: per-variant ledger access
- ExecutionGateway: idempotent intent submission and tx log bookkeeping
- ReconciliationEngine: ledger vs. local record comparison
"""

from lpkeeper.execution.adapters import AdapterRegistry, ExecutionAdapter, LedgerReading, PoolState
from lpkeeper.execution.execution_gateway import ExecutionGateway, ExecutionGatewayConfig, ExecutionResult
from lpkeeper.execution.http_adapter import HttpExecutionAdapter
from lpkeeper.execution.reconciliation_service import (
    ReconcileOutcome,
    ReconcileReport,
    ReconciliationConfig,
    ReconciliationEngine,
)

__all__ = [
    "AdapterRegistry",
    "ExecutionAdapter",
    "LedgerReading",
    "PoolState",
    "ExecutionGateway",
    "ExecutionGatewayConfig",
    "ExecutionResult",
    "HttpExecutionAdapter",
    "ReconcileOutcome",
    "ReconcileReport",
    "ReconciliationConfig",
    "ReconciliationEngine",
]
