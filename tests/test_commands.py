"""
Tests for the operator command surface: free-text translation, validation
and the CommandHandler state changes.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from lpkeeper.core.errors import CommandValidationError
from lpkeeper.core.models import CapitalSource, PositionStatus, ProtocolVariant
from lpkeeper.orchestrator.commands import (
    Command,
    CommandHandler,
    CommandKind,
    list_kinds,
    parse_text_command,
)
from lpkeeper.risk.circuit_breaker import FailureBreaker

from conftest import make_position, make_snapshot, seed

STRATEGY = {"target_pool_count": 2, "check_interval_sec": 300}


class TestTextCommands:
    """Free text is translated into structured commands."""

    @pytest.mark.parametrize("text,kind", [
        ("start", CommandKind.START),
        ("PAUSE", CommandKind.PAUSE),
        ("  resume ", CommandKind.RESUME),
        ("stop", CommandKind.STOP),
        ("show status", CommandKind.STATUS),
        ("dry-run", CommandKind.DRY_RUN),
        ("dry run", CommandKind.DRY_RUN),
        ("ack stale", CommandKind.ACK_STALE),
    ])
    def test_plain_commands(self, text, kind):
        assert parse_text_command(text).kind == kind

    def test_set_range_with_percent_signs(self):
        cmd = parse_text_command("set range 0xpool -10% +15%")
        assert cmd == Command(CommandKind.SET_RANGE, target="0xpool", params={"min_pct": -10.0, "max_pct": 15.0})

    def test_adopt_as_strategy(self):
        cmd = parse_text_command("adopt 0xpool as strategy")
        assert cmd.target == "0xpool"
        assert cmd.params == {"source": "strategy"}

    def test_targeted_commands(self):
        assert parse_text_command("clear pool-1") == Command(CommandKind.CLEAR, target="pool-1")
        assert parse_text_command("rebalance pool-1").kind == CommandKind.REBALANCE

    def test_unrecognized_text_rejected(self):
        with pytest.raises(CommandValidationError):
            parse_text_command("withdraw everything now")

    def test_invalid_range_rejected(self):
        with pytest.raises(CommandValidationError):
            parse_text_command("set range 0xpool 10 15")

    def test_list_kinds(self):
        assert "set-range" in list_kinds()
        assert len(list_kinds()) == len(CommandKind)


class TestStructuredCommands:
    def test_from_dict(self):
        cmd = Command.from_dict({"kind": "clear", "target": "pool-1"})
        assert cmd.kind == CommandKind.CLEAR

    @pytest.mark.parametrize("payload", [
        {"kind": "explode"},
        {"kind": "clear"},
        {"kind": "pause", "params": "now"},
        {"kind": "adopt", "target": "x", "params": {"source": "manual"}},
        {"kind": "set-range", "target": "x", "params": {"min_pct": "a", "max_pct": 1}},
        {"kind": "start", "params": {"strategy": "fast"}},
        ["pause"],
    ])
    def test_malformed_rejected(self, payload):
        with pytest.raises(CommandValidationError):
            Command.from_dict(payload)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_first_start_needs_strategy(self, store):
        result = await CommandHandler(store).handle(Command(CommandKind.START))
        assert not result.ok
        assert "strategy" in result.message

    @pytest.mark.asyncio
    async def test_start_installs_strategy_and_requests_deploy(self, store):
        on_start = AsyncMock()
        scheduler = MagicMock()
        breaker = FailureBreaker()
        breaker.record_failure("a")
        breaker.record_failure("b")
        handler = CommandHandler(store, scheduler=scheduler, breaker=breaker, on_start=on_start)

        result = await handler.handle(Command(CommandKind.START, params={"strategy": STRATEGY}))

        assert result.ok
        state = store.snapshot()
        assert state.strategy.target_pool_count == 2
        assert state.control.initial_deploy_pending
        assert not state.control.paused and not state.control.stopped
        assert not breaker.is_tripped
        on_start.assert_awaited_once()
        scheduler.wake.assert_called_once()

    @pytest.mark.asyncio
    async def test_invalid_strategy_rejected(self, store):
        bad = {"target_pool_count": 0}
        result = await CommandHandler(store).handle(Command(CommandKind.START, params={"strategy": bad}))
        assert not result.ok
        assert store.snapshot().strategy is None

    @pytest.mark.asyncio
    async def test_pause_then_resume(self, store):
        scheduler = MagicMock()
        scheduler.request_pause = AsyncMock()
        handler = CommandHandler(store, scheduler=scheduler)

        await handler.handle(Command(CommandKind.PAUSE))
        scheduler.request_pause.assert_awaited_once_with("operator")

        await seed(store, paused=True, pause_reason="failures")
        result = await handler.handle(Command(CommandKind.RESUME))
        assert result.ok
        assert result.data["previous_reason"] == "failures"
        assert not store.snapshot().control.paused

    @pytest.mark.asyncio
    async def test_pause_without_scheduler_commits(self, store):
        await CommandHandler(store).handle(Command(CommandKind.PAUSE, params={"reason": "maintenance"}))
        assert store.snapshot().control.pause_reason == "maintenance"

    @pytest.mark.asyncio
    async def test_resume_rejected_while_stopped(self, store):
        scheduler = MagicMock()
        handler = CommandHandler(store, scheduler=scheduler)
        await handler.handle(Command(CommandKind.STOP))
        scheduler.stop.assert_called_once()

        result = await handler.handle(Command(CommandKind.RESUME))
        assert not result.ok
        assert store.snapshot().control.stopped

    @pytest.mark.asyncio
    async def test_dry_run_needs_scheduler(self, store):
        result = await CommandHandler(store).handle(Command(CommandKind.DRY_RUN))
        assert not result.ok


class TestPositionCommands:
    @pytest.mark.asyncio
    async def test_clear_error_position(self, store):
        pos = make_position(status=PositionStatus.ERROR, error_reason="withdraw reverted", hold_reason="x")
        await seed(store, pos)

        result = await CommandHandler(store).handle(Command(CommandKind.CLEAR, target="pool-1"))

        assert result.ok
        stored = store.snapshot().positions[pos.position_id]
        assert stored.status == PositionStatus.ACTIVE
        assert stored.hold_reason is None and stored.error_reason is None
        assert result.data["previous"]["status"] == "error"

    @pytest.mark.asyncio
    async def test_clear_unknown_target(self, store):
        result = await CommandHandler(store).handle(Command(CommandKind.CLEAR, target="nope"))
        assert not result.ok

    @pytest.mark.asyncio
    async def test_adopt_candidate(self, store):
        candidate = make_position("pool-9", source=CapitalSource.MANUAL)

        def _fold(draft):
            draft.candidates[candidate.position_id] = candidate

        await store.commit(_fold, reason="test_seed")
        cmd = Command(CommandKind.ADOPT, target="pool-9", params={"source": "strategy"})

        result = await CommandHandler(store).handle(cmd)

        assert result.ok
        state = store.snapshot()
        assert candidate.position_id not in state.candidates
        assert state.positions[candidate.position_id].source == CapitalSource.STRATEGY

    @pytest.mark.asyncio
    async def test_set_range_requests_rebalance(self, store):
        pos = make_position()
        await seed(store, pos)
        cmd = parse_text_command("set range pool-1 -10 20")

        result = await CommandHandler(store).handle(cmd)

        assert result.ok
        stored = store.snapshot().positions[pos.position_id]
        assert (stored.range_min_pct, stored.range_max_pct) == (-10.0, 20.0)
        assert stored.rebalance_requested

    @pytest.mark.asyncio
    async def test_rebalance_rejects_held_and_vault_positions(self, store):
        held = make_position("pool-1", hold_reason="orphan")
        vault = make_position("vault-1", variant=ProtocolVariant.SHARE_VAULT, lower_id=None, upper_id=None)
        await seed(store, held, vault)
        handler = CommandHandler(store)

        assert not (await handler.handle(Command(CommandKind.REBALANCE, target="pool-1"))).ok
        assert not (await handler.handle(Command(CommandKind.REBALANCE, target="vault-1"))).ok

    @pytest.mark.asyncio
    async def test_rebalance_flags_position(self, store):
        pos = make_position()
        await seed(store, pos)
        result = await CommandHandler(store).handle(Command(CommandKind.REBALANCE, target=pos.position_id))
        assert result.ok
        assert store.snapshot().positions[pos.position_id].rebalance_requested


class TestStatusAndAck:
    @pytest.mark.asyncio
    async def test_status_lists_positions(self, store):
        await seed(store, make_position(), make_position("pool-2"))
        result = await CommandHandler(store).handle(Command(CommandKind.STATUS))
        assert result.ok
        assert {p["pool"] for p in result.data["positions"]} == {"pool-1", "pool-2"}
        assert result.data["strategy"] is None

    @pytest.mark.asyncio
    async def test_ack_stale_uses_stored_snapshot(self, store):
        snapshot = make_snapshot([], 1_700_000_000_000)

        def _fold(draft):
            draft.last_snapshot = snapshot

        await store.commit(_fold, reason="test_seed")
        result = await CommandHandler(store).handle(Command(CommandKind.ACK_STALE))

        assert result.ok
        assert store.snapshot().control.stale_ack_source_ms == 1_700_000_000_000

    @pytest.mark.asyncio
    async def test_ack_stale_without_snapshot(self, store):
        result = await CommandHandler(store).handle(Command(CommandKind.ACK_STALE))
        assert not result.ok
