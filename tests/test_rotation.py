"""
Tests for RotationTracker anti-thrash counters and the economic gate.
"""

import pytest

from lpkeeper.core.models import RankingMetric, RotationCounter, StrategyConfig
from lpkeeper.risk.gas_budget import passes_economic_gate
from lpkeeper.strategy.rotation import RotationTracker, exceeds_margin

from conftest import make_ranked, make_snapshot

NOW = 1_700_000_000_000


@pytest.fixture
def strategy():
    return StrategyConfig(
        target_pool_count=2,
        ranking_metric=RankingMetric.APR,
        rotation_buffer=1,
        rotation_consecutive_checks=2,
        rotation_margin_pct=10.0,
    )


@pytest.fixture
def snapshot():
    return make_snapshot(
        [make_ranked("p1", 50.0), make_ranked("p2", 40.0), make_ranked("p3", 30.0),
         make_ranked("p4", 20.0), make_ranked("p5", 5.0)],
        NOW,
    )


class TestExitCounters:
    """A held pool must stay below the threshold for consecutive checks."""

    def test_first_below_does_not_exit(self, strategy, snapshot):
        ev = RotationTracker(strategy).evaluate({}, {"p5": 5.0}, snapshot)
        assert ev.counters["p5"].below_count == 1
        assert ev.exits == []

    def test_second_consecutive_below_exits(self, strategy, snapshot):
        tracker = RotationTracker(strategy)
        first = tracker.evaluate({}, {"p5": 5.0}, snapshot)
        second = tracker.evaluate(first.counters, {"p5": 5.0}, snapshot)
        assert second.counters["p5"].below_count == 2
        assert second.exits == ["p5"]

    def test_counter_resets_when_condition_stops(self, strategy, snapshot):
        # p3 ranks 2, inside target + buffer
        ev = RotationTracker(strategy).evaluate({"p3": RotationCounter(below_count=1)}, {"p3": 30.0}, snapshot)
        assert ev.counters["p3"].below_count == 0
        assert ev.exits == []

    def test_missing_from_ranking_counts_as_below(self, strategy, snapshot):
        ev = RotationTracker(strategy).evaluate({"gone": RotationCounter(below_count=1)}, {"gone": 1.0}, snapshot)
        assert ev.exits == ["gone"]

    def test_exits_worst_first(self, strategy, snapshot):
        counters = {"p4": RotationCounter(below_count=1), "p5": RotationCounter(below_count=1)}
        ev = RotationTracker(strategy).evaluate(counters, {"p4": 20.0, "p5": 5.0}, snapshot)
        assert ev.exits == ["p5", "p4"]

    def test_oscillating_rank_never_exits(self, strategy):
        tracker = RotationTracker(strategy)
        low = make_snapshot([make_ranked(f"x{i}", 100.0 - i) for i in range(4)] + [make_ranked("p", 1.0)], NOW)
        high = make_snapshot([make_ranked("p", 200.0)] + [make_ranked(f"x{i}", 100.0 - i) for i in range(4)], NOW)
        counters = {}
        for snap in (low, high, low, high, low):
            ev = tracker.evaluate(counters, {"p": 1.0}, snap)
            assert ev.exits == []
            counters = ev.counters


class TestEntryCounters:
    def test_entry_needs_consecutive_checks(self, strategy, snapshot):
        tracker = RotationTracker(strategy)
        first = tracker.evaluate({}, {"p5": 5.0}, snapshot)
        assert first.entries == []
        assert first.counters["p1"].above_count == 1
        second = tracker.evaluate(first.counters, {"p5": 5.0}, snapshot)
        assert [e.pool.pool_id for e in second.entries] == ["p1", "p2"]

    def test_bypass_for_initial_deploy(self, strategy, snapshot):
        ev = RotationTracker(strategy).evaluate({}, {}, snapshot, vacancies=2, bypass_checks=True)
        assert [e.pool.pool_id for e in ev.entries] == ["p1", "p2"]

    def test_margin_not_met_without_vacancy(self, strategy):
        snap = make_snapshot([make_ranked("a", 10.5), make_ranked("held", 10.0)], NOW)
        counters = {"a": RotationCounter(above_count=5)}
        ev = RotationTracker(strategy).evaluate(counters, {"held": 10.0}, snap)
        assert ev.entries == []
        assert "a" not in ev.counters

    def test_occupied_pools_are_not_candidates(self, strategy, snapshot):
        ev = RotationTracker(strategy).evaluate({}, {}, snapshot, vacancies=2, occupied={"p1"}, bypass_checks=True)
        assert [e.pool.pool_id for e in ev.entries] == ["p2"]

    def test_unsupported_and_small_pools_ignored(self):
        s = StrategyConfig(target_pool_count=1, ranking_metric=RankingMetric.APR, min_tvl_usd=1000.0,
                           rotation_consecutive_checks=1)
        snap = make_snapshot([make_ranked("curve", 90.0, supported=False), make_ranked("tiny", 80.0, tvl_usd=10.0),
                              make_ranked("ok", 5.0)], NOW)
        ev = RotationTracker(s).evaluate({}, {}, snap, vacancies=1)
        assert [e.pool.pool_id for e in ev.entries] == ["ok"]


class TestMarginAndGate:
    def test_exceeds_margin(self):
        assert exceeds_margin(11.0, 10.0, 10.0)
        assert not exceeds_margin(10.5, 10.0, 10.0)
        assert not exceeds_margin(9.0, 10.0, 0.0)

    def test_economic_gate(self):
        # 10% per year on 1000 USD over 36.5 days is 10 USD
        assert passes_economic_gate(1.0, 20.0, 10.0, 1000.0, 36.5)
        assert not passes_economic_gate(10.0, 20.0, 10.0, 1000.0, 36.5)
        assert not passes_economic_gate(0.01, 10.0, 12.0, 1000.0, 7.0)
