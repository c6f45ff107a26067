"""
Orchestrator package - cycle scheduling, decisions and operator commands.
"""

from lpkeeper.orchestrator.commands import Command, CommandHandler, CommandKind, CommandResult, parse_text_command
from lpkeeper.orchestrator.decision_engine import (
    ActionType,
    DecisionPlan,
    DecisionRecord,
    RebalanceDecisionEngine,
)
from lpkeeper.orchestrator.scheduler import CycleMode, CycleResult, MonitorScheduler, SchedulerConfig

__all__ = [
    "Command",
    "CommandHandler",
    "CommandKind",
    "CommandResult",
    "parse_text_command",
    "ActionType",
    "DecisionPlan",
    "DecisionRecord",
    "RebalanceDecisionEngine",
    "CycleMode",
    "CycleResult",
    "MonitorScheduler",
    "SchedulerConfig",
]
