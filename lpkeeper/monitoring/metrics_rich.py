"""
Prometheus metrics for the liquidity engine.

Organized into: cycle, execution, decisions, reconciliation, risk, feed.
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from typing import Optional


class RichMetrics:
    """Metrics for engine observability, on a private registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Cycle Metrics ===
        self.cycles_total = Counter(
            'lpk_cycles_total',
            'Monitoring cycles run',
            labelnames=['mode'],  # full, health_only, skipped, dry_run
            registry=reg
        )
        self.cycle_duration_ms = Histogram(
            'lpk_cycle_duration_ms',
            'Wall time of one monitoring cycle (milliseconds)',
            buckets=[100, 500, 1000, 5000, 15000, 60000, 300000],
            registry=reg
        )
        self.cycle_overruns = Counter(
            'lpk_cycle_overruns_total',
            'Cycles that took longer than the check interval',
            registry=reg
        )
        self.cycle_errors = Counter(
            'lpk_cycle_errors_total',
            'Cycles aborted by an unexpected error',
            labelnames=['error_type'],
            registry=reg
        )

        # === Execution Metrics ===
        self.intents_total = Counter(
            'lpk_intents_total',
            'Intents that reached an adapter, by terminal outcome',
            labelnames=['kind', 'outcome'],
            registry=reg
        )
        self.intent_latency_ms = Histogram(
            'lpk_intent_latency_ms',
            'Submit to terminal receipt (milliseconds)',
            labelnames=['kind'],
            buckets=[500, 1000, 5000, 15000, 30000, 60000, 120000],
            registry=reg
        )
        self.duplicate_intents = Counter(
            'lpk_duplicate_intents_total',
            'Intents not resubmitted because a terminal record already existed',
            registry=reg
        )

        # === Decision Metrics ===
        self.actions_planned = Counter(
            'lpk_actions_planned_total',
            'Actions queued by the decision engine',
            labelnames=['action'],
            registry=reg
        )
        self.skips_total = Counter(
            'lpk_skips_total',
            'Actions skipped, by reason',
            labelnames=['reason'],
            registry=reg
        )

        # === Reconciliation Metrics ===
        self.reconcile_outcomes = Counter(
            'lpk_reconcile_outcomes_total',
            'Per-position reconciliation outcomes',
            labelnames=['outcome'],
            registry=reg
        )
        self.reconcile_duration_ms = Histogram(
            'lpk_reconcile_duration_ms',
            'Reconciliation pass duration (milliseconds)',
            buckets=[100, 500, 1000, 2000, 5000, 10000, 30000],
            registry=reg
        )
        self.positions = Gauge(
            'lpk_positions',
            'Tracked positions by status',
            labelnames=['status'],
            registry=reg
        )
        self.untracked_candidates = Gauge(
            'lpk_untracked_candidates',
            'On-chain positions found with no stored record',
            registry=reg
        )

        # === Risk Metrics ===
        self.gas_spent_24h_usd = Gauge(
            'lpk_gas_spent_24h_usd',
            'Rolling 24h gas spend (USD)',
            registry=reg
        )
        self.gas_cap_usd = Gauge(
            'lpk_gas_cap_usd',
            'Current rolling 24h gas cap (USD)',
            registry=reg
        )
        self.autonomy_paused = Gauge(
            'lpk_autonomy_paused',
            'Autonomous action paused (1=paused, 0=running)',
            registry=reg
        )
        self.cycle_failures = Gauge(
            'lpk_cycle_failures',
            'Failed intents in the last cycle',
            registry=reg
        )

        # === Feed Metrics ===
        self.feed_age_sec = Gauge(
            'lpk_feed_age_sec',
            'Age of the ranking snapshot in use (seconds)',
            registry=reg
        )
        self.feed_health = Gauge(
            'lpk_feed_health',
            'Ranking feed health (0=fresh, 1=stale, 2=unusable)',
            registry=reg
        )
        self.feed_dropped_entries = Counter(
            'lpk_feed_dropped_entries_total',
            'Ranking entries dropped by validation',
            registry=reg
        )
        self.feed_errors = Counter(
            'lpk_feed_errors_total',
            'Ranking feed fetch or validation failures',
            labelnames=['error_type'],
            registry=reg
        )

        # === Lifecycle ===
        self.engine_started = Counter(
            'lpk_engine_started_total',
            'Engine instances started',
            registry=reg
        )
        self.commands_total = Counter(
            'lpk_commands_total',
            'Operator commands handled',
            labelnames=['kind', 'ok'],
            registry=reg
        )

        self.registry = reg

    def get_registry(self):
        """Return the Prometheus registry for export."""
        return self.registry
