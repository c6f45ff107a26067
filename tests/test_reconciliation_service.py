"""
Tests for ReconciliationEngine outcomes: match, drift, orphan, unreadable,
untracked, and trust-chain rebuild.
"""

import pytest

from lpkeeper.core.errors import LedgerUnavailable
from lpkeeper.core.models import CapitalSource, PositionStatus, ProtocolVariant, make_position_id
from lpkeeper.execution.adapters import LedgerReading
from lpkeeper.execution.reconciliation_service import (
    ORPHAN_REMOVE,
    ReconcileOutcome,
    ReconciliationConfig,
    ReconciliationEngine,
)
from lpkeeper.infra.rate_limiter import ReadThrottle, ReadThrottleConfig

from conftest import OWNER, USDC, WETH, make_pool_state, make_position, reading_for, seed

NOW = 1_700_000_000_000


def _engine(store, registry, **cfg):
    return ReconciliationEngine(
        store, registry, OWNER,
        throttle=ReadThrottle(ReadThrottleConfig(stagger_sec=0.0)),
        config=ReconciliationConfig(read_retries=0, retry_backoff_sec=0.0, **cfg),
    )


def _discovered(pool_id="pool-9", value_usd=50.0):
    return LedgerReading(
        pool_id=pool_id, owner=OWNER, amount_a_raw=10 ** 16, amount_b_raw=25 * 10 ** 6, value_usd=value_usd,
        lower_id=1, upper_id=9, variant=ProtocolVariant.BUCKETED_BOOK, protocol="fakeswap",
        token_a=WETH, token_b=USDC, bin_step_bps=25,
    )


class TestMatchAndDrift:
    @pytest.mark.asyncio
    async def test_match_only_advances_timestamp(self, store, registry, adapter):
        pos = make_position()
        await seed(store, pos)
        adapter.readings["pool-1"] = reading_for(pos)
        adapter.pools["pool-1"] = make_pool_state()

        report = await _engine(store, registry).reconcile(NOW)

        assert report.checks[pos.position_id].outcome == ReconcileOutcome.MATCH
        assert report.is_readable(pos.position_id)
        assert "pool-1" in report.pool_states
        stored = store.snapshot().positions[pos.position_id]
        assert stored.last_reconciled_ms == NOW
        assert stored.amount_a_raw == pos.amount_a_raw

    @pytest.mark.asyncio
    async def test_small_value_move_is_not_drift(self, store, registry, adapter):
        pos = make_position(value_usd=1000.0)
        await seed(store, pos)
        adapter.readings["pool-1"] = reading_for(pos, value_usd=1005.0)
        adapter.pools["pool-1"] = make_pool_state()
        report = await _engine(store, registry).reconcile(NOW)
        assert report.checks[pos.position_id].outcome == ReconcileOutcome.MATCH

    @pytest.mark.asyncio
    async def test_drift_overwrites_numbers_and_keeps_policy(self, store, registry, adapter):
        pos = make_position(cooldown_sec=120.0, range_min_pct=-3.0)
        await seed(store, pos)
        adapter.readings["pool-1"] = reading_for(pos, amount_b_raw=700_000_000, value_usd=1200.0,
                                                 lower_id=95, upper_id=115)
        adapter.pools["pool-1"] = make_pool_state()

        report = await _engine(store, registry).reconcile(NOW)

        assert report.checks[pos.position_id].outcome == ReconcileOutcome.DRIFT
        stored = store.snapshot().positions[pos.position_id]
        assert stored.amount_b_raw == 700_000_000
        assert stored.value_usd == 1200.0
        assert (stored.lower_id, stored.upper_id) == (95, 115)
        assert stored.cooldown_sec == 120.0
        assert stored.range_min_pct == -3.0

    @pytest.mark.asyncio
    async def test_critical_position_resolved_by_reading(self, store, registry, adapter):
        pos = make_position(status=PositionStatus.CRITICAL)
        await seed(store, pos)
        adapter.readings["pool-1"] = reading_for(pos)
        adapter.pools["pool-1"] = make_pool_state()
        report = await _engine(store, registry).reconcile(NOW)
        assert report.checks[pos.position_id].outcome == ReconcileOutcome.DRIFT
        assert store.snapshot().positions[pos.position_id].status == PositionStatus.ACTIVE


class TestOrphan:
    """Stored active but zero on the ledger."""

    @pytest.mark.asyncio
    async def test_marked_pending_redeploy_and_held(self, store, registry, adapter):
        pos = make_position()
        await seed(store, pos)
        report = await _engine(store, registry).reconcile(NOW)
        assert report.checks[pos.position_id].outcome == ReconcileOutcome.ORPHAN
        stored = store.snapshot().positions[pos.position_id]
        assert stored.status == PositionStatus.REMOVED_PENDING_REDEPLOY
        assert stored.hold_reason == "orphan"
        assert stored.value_usd == 0.0

    @pytest.mark.asyncio
    async def test_remove_policy_moves_to_history(self, store, registry, adapter):
        pos = make_position()
        await seed(store, pos)
        await _engine(store, registry, orphan_policy=ORPHAN_REMOVE).reconcile(NOW)
        state = store.snapshot()
        assert pos.position_id not in state.positions
        assert [p.position_id for p in state.history] == [pos.position_id]

    @pytest.mark.asyncio
    async def test_unpersisted_pass_leaves_store_untouched(self, store, registry, adapter):
        pos = make_position()
        await seed(store, pos)
        seq = store.snapshot().seq

        report = await _engine(store, registry).reconcile(NOW, persist=False)

        assert not report.persisted
        assert report.state.positions[pos.position_id].status == PositionStatus.REMOVED_PENDING_REDEPLOY
        state = store.snapshot()
        assert state.seq == seq
        assert state.positions[pos.position_id].status == PositionStatus.ACTIVE

    def test_unknown_policy_rejected(self):
        with pytest.raises(ValueError):
            ReconciliationConfig(orphan_policy="delete")


class TestUnreadable:
    @pytest.mark.asyncio
    async def test_excluded_and_untouched(self, store, registry, adapter):
        pos = make_position()
        await seed(store, pos)
        adapter.read_errors["pool-1"] = LedgerUnavailable("rpc down")

        report = await _engine(store, registry).reconcile(NOW)

        check = report.checks[pos.position_id]
        assert check.outcome == ReconcileOutcome.UNREADABLE
        assert "rpc down" in check.error
        assert not report.is_readable(pos.position_id)
        assert report.excluded == [pos.position_id]
        stored = store.snapshot().positions[pos.position_id]
        assert stored.status == PositionStatus.ACTIVE
        assert stored.value_usd == pos.value_usd

    @pytest.mark.asyncio
    async def test_one_bad_read_does_not_hide_others(self, store, registry, adapter):
        good, bad = make_position("pool-1"), make_position("pool-2")
        await seed(store, good, bad)
        adapter.readings["pool-1"] = reading_for(good)
        adapter.pools["pool-1"] = make_pool_state()
        adapter.read_errors["pool-2"] = LedgerUnavailable("timeout")
        report = await _engine(store, registry).reconcile(NOW)
        assert report.counts()["match"] == 1
        assert report.counts()["unreadable"] == 1


class TestUntracked:
    @pytest.mark.asyncio
    async def test_listed_as_candidate_not_adopted(self, store, registry, adapter):
        adapter.discovered = [_discovered(), _discovered("pool-empty", 0.0)]
        adapter.discovered[1].amount_a_raw = adapter.discovered[1].amount_b_raw = 0

        report = await _engine(store, registry).reconcile(NOW)

        assert [r.pool_id for r in report.untracked] == ["pool-9"]
        state = store.snapshot()
        assert state.positions == {}
        candidate = state.candidates[make_position_id("pool-9", OWNER)]
        assert candidate.source == CapitalSource.ADOPTED
        assert report.counts()["untracked"] == 1

    @pytest.mark.asyncio
    async def test_tracked_positions_are_not_untracked(self, store, registry, adapter):
        pos = make_position("pool-9")
        await seed(store, pos)
        adapter.readings["pool-9"] = reading_for(pos)
        adapter.pools["pool-9"] = make_pool_state("pool-9")
        adapter.discovered = [_discovered()]
        report = await _engine(store, registry).reconcile(NOW)
        assert report.untracked == []

    @pytest.mark.asyncio
    async def test_discovery_failure_keeps_previous_candidates(self, store, registry, adapter):
        adapter.discovered = [_discovered()]
        await _engine(store, registry).reconcile(NOW)
        adapter.discover_error = LedgerUnavailable("indexer down")
        report = await _engine(store, registry).reconcile(NOW + 1)
        assert report.discovery_failed
        assert len(store.snapshot().candidates) == 1

    @pytest.mark.asyncio
    async def test_wallet_in_report(self, store, registry, adapter):
        adapter.wallet.value_usd = 1234.0
        report = await _engine(store, registry).reconcile(NOW)
        assert report.wallet.value_usd == 1234.0


class TestTrustChain:
    """After unrecoverable state loss the ledger is the source of truth."""

    @pytest.mark.asyncio
    async def test_rebuild_from_discovery(self, store, registry, adapter):
        await seed(store, trust_chain=True)
        adapter.discovered = [_discovered()]

        report = await _engine(store, registry).reconcile(NOW)

        assert report.trust_chain_rebuilt
        state = store.snapshot()
        assert not state.control.trust_chain
        pos = state.positions[make_position_id("pool-9", OWNER)]
        assert pos.source == CapitalSource.ADOPTED
        assert pos.status == PositionStatus.ACTIVE
        assert pos.value_usd == 50.0
        assert state.candidates == {}

    @pytest.mark.asyncio
    async def test_rebuild_deferred_while_discovery_fails(self, store, registry, adapter):
        await seed(store, trust_chain=True)
        adapter.discover_error = LedgerUnavailable("indexer down")
        report = await _engine(store, registry).reconcile(NOW)
        assert not report.trust_chain_rebuilt
        assert store.snapshot().control.trust_chain
