"""
Operator command surface.

Commands are structured (kind, target, params) and validated at the
boundary. Free text is only a translation layer in front of them:

    parse_text_command("set range 0xpool -10 15")
    -> Command(CommandKind.SET_RANGE, target="0xpool", params={"min_pct": -10.0, "max_pct": 15.0})

All state changes go through PositionStore.commit, so commands and the
scheduler never race on the stored document.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

from lpkeeper.core.errors import CommandValidationError
from lpkeeper.core.models import (
    CapitalSource,
    EngineState,
    Position,
    PositionStatus,
    ProtocolVariant,
    StrategyConfig,
    now_ms,
)

if TYPE_CHECKING:
    from lpkeeper.monitoring.metrics_rich import RichMetrics
    from lpkeeper.orchestrator.scheduler import MonitorScheduler
    from lpkeeper.risk.circuit_breaker import FailureBreaker
    from lpkeeper.state.position_store import PositionStore

log = logging.getLogger("lpkeeper")


class CommandKind(Enum):
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"
    DRY_RUN = "dry-run"
    STATUS = "status"
    CLEAR = "clear"
    ADOPT = "adopt"
    SET_RANGE = "set-range"
    REBALANCE = "rebalance"
    ACK_STALE = "ack-stale"


TARGETED = {CommandKind.CLEAR, CommandKind.ADOPT, CommandKind.SET_RANGE, CommandKind.REBALANCE}
ADOPT_SOURCES = (CapitalSource.ADOPTED.value, CapitalSource.STRATEGY.value)


@dataclass(frozen=True)
class Command:
    kind: CommandKind
    target: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        """Raises CommandValidationError on a malformed command."""
        if self.kind in TARGETED and not self.target:
            raise CommandValidationError(f"{self.kind.value} needs a target position or pool")
        if self.kind == CommandKind.SET_RANGE:
            try:
                lo = float(self.params["min_pct"])
                hi = float(self.params["max_pct"])
            except (KeyError, TypeError, ValueError):
                raise CommandValidationError("set-range needs numeric min_pct and max_pct")
            if not -100 < lo <= 0:
                raise CommandValidationError("min_pct must be in (-100, 0]")
            if hi < 0:
                raise CommandValidationError("max_pct must be >= 0")
        if self.kind == CommandKind.START and "strategy" in self.params:
            if not isinstance(self.params["strategy"], dict):
                raise CommandValidationError("start strategy must be an object")
        if self.kind == CommandKind.ADOPT:
            source = self.params.get("source", CapitalSource.ADOPTED.value)
            if source not in ADOPT_SOURCES:
                raise CommandValidationError(f"adopt source must be one of {ADOPT_SOURCES}")

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Command":
        if not isinstance(d, dict):
            raise CommandValidationError("command must be an object")
        try:
            kind = CommandKind(d.get("kind"))
        except ValueError:
            raise CommandValidationError(f"unknown command kind {d.get('kind')!r}")
        params = d.get("params") or {}
        if not isinstance(params, dict):
            raise CommandValidationError("params must be an object")
        target = d.get("target")
        cmd = cls(kind=kind, target=str(target) if target else None, params=dict(params))
        cmd.validate()
        return cmd

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "target": self.target, "params": dict(self.params)}


@dataclass
class CommandResult:
    ok: bool
    kind: CommandKind
    message: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "kind": self.kind.value, "message": self.message, "data": self.data}


# ========== Free-text translation ==========

_NUM = r"(-?\d+(?:\.\d+)?)"
_TEXT_PATTERNS = [
    (re.compile(r"^start$", re.IGNORECASE), CommandKind.START),
    (re.compile(r"^pause$", re.IGNORECASE), CommandKind.PAUSE),
    (re.compile(r"^resume$", re.IGNORECASE), CommandKind.RESUME),
    (re.compile(r"^stop$", re.IGNORECASE), CommandKind.STOP),
    (re.compile(r"^(?:status|show status)$", re.IGNORECASE), CommandKind.STATUS),
    (re.compile(r"^dry[\s-]?run$", re.IGNORECASE), CommandKind.DRY_RUN),
    (re.compile(r"^(?:ack|acknowledge)[\s-]stale$", re.IGNORECASE), CommandKind.ACK_STALE),
    (re.compile(r"^clear\s+(\S+)$", re.IGNORECASE), CommandKind.CLEAR),
    (re.compile(r"^adopt\s+(\S+)(?:\s+as\s+(adopted|strategy))?$", re.IGNORECASE), CommandKind.ADOPT),
    (re.compile(r"^rebalance\s+(\S+)$", re.IGNORECASE), CommandKind.REBALANCE),
    (re.compile(rf"^set[\s-]range\s+(\S+)\s+{_NUM}%?\s+\+?{_NUM}%?$", re.IGNORECASE), CommandKind.SET_RANGE),
]


def parse_text_command(text: str) -> Command:
    """Translate operator free text into a Command."""
    normalized = " ".join((text or "").split())
    for pattern, kind in _TEXT_PATTERNS:
        m = pattern.match(normalized)
        if not m:
            continue
        groups = m.groups()
        if kind == CommandKind.SET_RANGE:
            cmd = Command(kind, target=groups[0], params={"min_pct": float(groups[1]), "max_pct": float(groups[2])})
        elif kind == CommandKind.ADOPT:
            params = {"source": groups[1].lower()} if groups[1] else {}
            cmd = Command(kind, target=groups[0], params=params)
        elif groups:
            cmd = Command(kind, target=groups[0])
        else:
            cmd = Command(kind)
        cmd.validate()
        return cmd
    raise CommandValidationError(f"unrecognized command: {text!r}")


# ========== Handler ==========

class CommandHandler:
    """
    Applies operator commands.

    Usage:
        handler = CommandHandler(store, scheduler=scheduler, breaker=breaker)
        result = await handler.handle(parse_text_command("pause"))
    """

    def __init__(
        self,
        store: "PositionStore",
        scheduler: Optional["MonitorScheduler"] = None,
        breaker: Optional["FailureBreaker"] = None,
        metrics: Optional["RichMetrics"] = None,
        on_start: Optional[Callable[[], Awaitable[None]]] = None,
        clock: Callable[[], int] = now_ms,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.breaker = breaker
        self.metrics = metrics
        self.on_start = on_start
        self.clock = clock
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = kwargs.pop("level", logging.INFO)
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    async def handle(self, command: Command) -> CommandResult:
        handlers = {
            CommandKind.START: self._start,
            CommandKind.PAUSE: self._pause,
            CommandKind.RESUME: self._resume,
            CommandKind.STOP: self._stop,
            CommandKind.DRY_RUN: self._dry_run,
            CommandKind.STATUS: self._status,
            CommandKind.CLEAR: self._clear,
            CommandKind.ADOPT: self._adopt,
            CommandKind.SET_RANGE: self._set_range,
            CommandKind.REBALANCE: self._rebalance,
            CommandKind.ACK_STALE: self._ack_stale,
        }
        try:
            command.validate()
            result = await handlers[command.kind](command)
        except CommandValidationError as exc:
            result = CommandResult(False, command.kind, str(exc))
        level = logging.INFO if result.ok else logging.WARNING
        self._log_event("command_handled", level=level, ok=result.ok, message=result.message, **command.to_dict())
        if self.metrics:
            self.metrics.commands_total.labels(kind=command.kind.value, ok=str(result.ok).lower()).inc()
        return result

    def _wake(self) -> None:
        if self.scheduler is not None:
            self.scheduler.wake()

    @staticmethod
    def _resolve(positions: Dict[str, Position], target: str) -> Position:
        """Find a position by id, or by pool id when exactly one position uses that pool."""
        if target in positions:
            return positions[target]
        matches = [p for p in positions.values() if p.pool_id.lower() == target.lower()]
        if len(matches) == 1:
            return matches[0]
        if not matches:
            raise CommandValidationError(f"no position matches {target!r}")
        raise CommandValidationError(f"{target!r} matches {len(matches)} positions; use a position id")

    # ----- lifecycle -----

    async def _start(self, command: Command) -> CommandResult:
        state = self.store.snapshot()
        raw = command.params.get("strategy")
        if raw is None and state.strategy is None:
            raise CommandValidationError("start needs a strategy the first time")
        if raw is not None:
            try:
                strategy = StrategyConfig.from_dict(raw)
                strategy.validate()
            except (KeyError, TypeError, ValueError) as exc:
                raise CommandValidationError(f"invalid strategy: {exc}")
        else:
            strategy = state.strategy
        at = self.clock()

        def _fold(draft: EngineState) -> None:
            if raw is not None:
                draft.strategy = strategy
                draft.rotation = {}
                draft.control.initial_deploy_pending = True
            draft.control.paused = False
            draft.control.pause_reason = None
            draft.control.stopped = False
            draft.control.updated_ms = at

        await self.store.commit(_fold, reason="command:start")
        if self.breaker is not None:
            self.breaker.reset()
        if self.metrics:
            self.metrics.autonomy_paused.set(0)
        if self.on_start is not None:
            await self.on_start()
        self._wake()
        return CommandResult(True, command.kind, "strategy started",
                             data={"strategy": strategy.to_dict(), "replaced": raw is not None})

    async def _pause(self, command: Command) -> CommandResult:
        reason = str(command.params.get("reason", "operator"))
        if self.scheduler is not None:
            await self.scheduler.request_pause(reason)
        else:
            at = self.clock()

            def _fold(draft: EngineState) -> None:
                draft.control.paused = True
                draft.control.pause_reason = reason
                draft.control.updated_ms = at

            await self.store.commit(_fold, reason="command:pause")
        return CommandResult(True, command.kind, "paused; takes effect before the next cycle or intent")

    async def _resume(self, command: Command) -> CommandResult:
        state = self.store.snapshot()
        if state.control.stopped:
            raise CommandValidationError("engine is stopped; use start")
        previous = state.control.pause_reason
        at = self.clock()

        def _fold(draft: EngineState) -> None:
            draft.control.paused = False
            draft.control.pause_reason = None
            draft.control.updated_ms = at

        await self.store.commit(_fold, reason="command:resume")
        if self.breaker is not None:
            self.breaker.reset()
        if self.metrics:
            self.metrics.autonomy_paused.set(0)
        self._wake()
        return CommandResult(True, command.kind, "resumed", data={"previous_reason": previous})

    async def _stop(self, command: Command) -> CommandResult:
        at = self.clock()

        def _fold(draft: EngineState) -> None:
            draft.control.stopped = True
            draft.control.updated_ms = at

        await self.store.commit(_fold, reason="command:stop")
        if self.scheduler is not None:
            self.scheduler.stop()
        return CommandResult(True, command.kind, "stopped; in-flight intents finish first")

    # ----- inspection -----

    async def _dry_run(self, command: Command) -> CommandResult:
        if self.scheduler is None:
            raise CommandValidationError("dry-run needs a running scheduler")
        result = await self.scheduler.run_cycle(dry_run=True)
        return CommandResult(True, command.kind, f"{len(result.intents)} intent(s) planned", data=result.to_dict())

    async def _status(self, command: Command) -> CommandResult:
        state = self.store.snapshot()
        at = self.clock()
        data: Dict[str, Any] = {
            "control": state.control.to_dict(),
            "strategy": state.strategy.to_dict() if state.strategy else None,
            "positions": [_position_summary(p, at) for p in state.positions.values()],
            "candidates": [_position_summary(p, at) for p in state.candidates.values()],
            "gas_24h_usd": round(state.gas_24h(at), 4),
            "rotation": {k: v.to_dict() for k, v in state.rotation.items()},
            "seq": state.seq,
        }
        if self.scheduler is not None:
            feed = self.scheduler.feed
            data["feed"] = {
                "health": feed.health(at).value,
                "age_sec": feed.age_sec(at),
                "last_error": feed.last_error,
            }
            last = self.scheduler.last_result
            data["last_cycle"] = last.to_dict() if last else None
        return CommandResult(True, command.kind, "ok", data=data)

    # ----- position commands -----

    async def _clear(self, command: Command) -> CommandResult:
        pos = self._resolve(self.store.snapshot().positions, command.target)
        pid = pos.position_id
        previous = {"status": pos.status.value, "hold_reason": pos.hold_reason, "error_reason": pos.error_reason}

        def _fold(draft: EngineState) -> None:
            p = draft.positions[pid]
            p.hold_reason = None
            p.error_reason = None
            if p.status == PositionStatus.ERROR:
                p.status = PositionStatus.ACTIVE if p.has_liquidity else PositionStatus.REMOVED_PENDING_REDEPLOY

        await self.store.commit(_fold, reason="command:clear")
        return CommandResult(True, command.kind, f"cleared {pid}", data={"position": pid, "previous": previous})

    async def _adopt(self, command: Command) -> CommandResult:
        state = self.store.snapshot()
        try:
            candidate = self._resolve(state.candidates, command.target)
        except CommandValidationError:
            raise CommandValidationError(f"no untracked position matches {command.target!r}")
        pid = candidate.position_id
        if pid in state.positions:
            raise CommandValidationError(f"{pid} is already tracked")
        source = CapitalSource(command.params.get("source", CapitalSource.ADOPTED.value))
        at = self.clock()

        def _fold(draft: EngineState) -> None:
            pos = draft.candidates.pop(pid)
            pos.source = source
            pos.status = PositionStatus.ACTIVE
            pos.last_reconciled_ms = at
            draft.positions[pid] = pos

        await self.store.commit(_fold, reason="command:adopt")
        return CommandResult(True, command.kind, f"adopted {pid}", data={"position": pid, "source": source.value})

    async def _set_range(self, command: Command) -> CommandResult:
        pos = self._resolve(self.store.snapshot().positions, command.target)
        pid = pos.position_id
        lo = float(command.params["min_pct"])
        hi = float(command.params["max_pct"])

        def _fold(draft: EngineState) -> None:
            p = draft.positions[pid]
            p.range_min_pct = lo
            p.range_max_pct = hi
            p.rebalance_requested = True

        await self.store.commit(_fold, reason="command:set-range")
        return CommandResult(True, command.kind, f"range for {pid} set to {lo}%/+{hi}%; rebalance requested",
                             data={"position": pid, "min_pct": lo, "max_pct": hi})

    async def _rebalance(self, command: Command) -> CommandResult:
        pos = self._resolve(self.store.snapshot().positions, command.target)
        if pos.status != PositionStatus.ACTIVE or pos.is_held:
            raise CommandValidationError(
                f"{pos.position_id} is {pos.status.value}" + (f" (held: {pos.hold_reason})" if pos.hold_reason else "")
                + "; clear it first"
            )
        if pos.variant == ProtocolVariant.SHARE_VAULT:
            raise CommandValidationError(f"{pos.position_id} is a share vault; it has no range to rebalance")
        pid = pos.position_id

        def _fold(draft: EngineState) -> None:
            draft.positions[pid].rebalance_requested = True

        await self.store.commit(_fold, reason="command:rebalance")
        self._wake()
        return CommandResult(True, command.kind, f"rebalance of {pid} requested for the next cycle",
                             data={"position": pid})

    async def _ack_stale(self, command: Command) -> CommandResult:
        source_ts = command.params.get("source_ts_ms")
        if source_ts is None:
            snapshot = self.scheduler.feed.snapshot if self.scheduler is not None else None
            if snapshot is None:
                snapshot = self.store.snapshot().last_snapshot
            if snapshot is None:
                raise CommandValidationError("no ranking snapshot to acknowledge")
            source_ts = snapshot.source_ts_ms
        try:
            source_ts = int(source_ts)
        except (TypeError, ValueError):
            raise CommandValidationError("source_ts_ms must be an integer")
        at = self.clock()

        def _fold(draft: EngineState) -> None:
            draft.control.stale_ack_source_ms = source_ts
            draft.control.updated_ms = at

        await self.store.commit(_fold, reason="command:ack-stale")
        return CommandResult(True, command.kind, "stale snapshot acknowledged; rotation may use it",
                             data={"source_ts_ms": source_ts})


def _position_summary(p: Position, at_ms: int) -> Dict[str, Any]:
    return {
        "position_id": p.position_id,
        "pool": p.pool_id,
        "protocol": p.protocol,
        "variant": p.variant.value,
        "pair": f"{p.token_a.symbol}/{p.token_b.symbol}",
        "status": p.status.value,
        "source": p.source.value,
        "value_usd": round(p.value_usd, 2),
        "range": [p.lower_id, p.upper_id],
        "range_pct": [p.range_min_pct, p.range_max_pct],
        "hold_reason": p.hold_reason,
        "error_reason": p.error_reason,
        "gas_24h_usd": round(p.gas_24h(at_ms), 4),
        "last_rebalance_ms": p.last_rebalance_ms,
    }


def list_kinds() -> List[str]:
    return [k.value for k in CommandKind]
