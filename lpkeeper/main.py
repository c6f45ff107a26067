"""
Entry point wiring all components.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from typing import Optional

from lpkeeper.config.config import Settings
from lpkeeper.config.config_validator import validate_and_log
from lpkeeper.config.per_pool_config import load_per_pool_overrides
from lpkeeper.core.errors import FatalError
from lpkeeper.core.models import IntentKind, ProtocolVariant
from lpkeeper.execution.adapters import AdapterRegistry
from lpkeeper.execution.execution_gateway import ExecutionGateway, ExecutionGatewayConfig
from lpkeeper.execution.http_adapter import HttpExecutionAdapter
from lpkeeper.execution.reconciliation_service import ReconciliationConfig, ReconciliationEngine
from lpkeeper.infra.logging_cfg import build_logger
from lpkeeper.infra.rate_limiter import ReadThrottle, ReadThrottleConfig
from lpkeeper.market_data.ranking_feed import FeedHealth, RankingFeed, RankingFeedConfig
from lpkeeper.monitoring.alerting import NotifierConfig, configure_notifications
from lpkeeper.monitoring.metrics_rich import RichMetrics
from lpkeeper.monitoring.server import HealthChecker, start_metrics_server
from lpkeeper.orchestrator.commands import CommandHandler
from lpkeeper.orchestrator.decision_engine import DecisionEngineConfig, RebalanceDecisionEngine
from lpkeeper.orchestrator.scheduler import CycleMode, CycleResult, MonitorScheduler, SchedulerConfig
from lpkeeper.risk.circuit_breaker import FailureBreaker, FailureBreakerConfig
from lpkeeper.risk.gas_budget import GasEstimator
from lpkeeper.state.archive import TxArchive
from lpkeeper.state.position_store import PositionStore, PositionStoreConfig
from lpkeeper.strategy.allocation import ActiveSplitPolicy

log = build_logger("lpkeeper")


async def main() -> None:
    cfg = Settings.load()

    if not validate_and_log(cfg, log):
        log.error("Configuration validation failed, exiting")
        sys.exit(1)
    build_logger("lpkeeper", level=getattr(logging, cfg.log_level, logging.INFO), file_path=cfg.log_file)

    try:
        owner = cfg.resolve_owner()
    except FatalError as exc:
        log.error(json.dumps({"event": "identity_mismatch", "error": str(exc)}))
        sys.exit(1)

    notifier = configure_notifications(NotifierConfig(
        webhook_url=cfg.alert_webhook_url,
        webhook_type=cfg.alert_webhook_type,
        telegram_bot_token=cfg.telegram_bot_token,
        telegram_chat_id=cfg.telegram_chat_id,
        rate_limit_seconds=cfg.alert_rate_limit_sec,
        enabled=cfg.alert_enabled,
    ))

    health_checker = HealthChecker()
    health_checker.set_component_health("config", True, "Configuration validated")
    metrics = RichMetrics()

    store = PositionStore(
        cfg.state_dir,
        archive=TxArchive(cfg.state_dir, s3_bucket=cfg.archive_s3_bucket),
        config=PositionStoreConfig(
            recovery_points=cfg.recovery_points,
            tx_log_max=cfg.tx_log_max,
            history_max=cfg.history_max,
        ),
    )
    await store.load()
    health_checker.set_component_health("store", True)

    registry = AdapterRegistry()
    for name in cfg.variants:
        registry.register(HttpExecutionAdapter(
            ProtocolVariant(name),
            cfg.adapter_url,
            timeout=cfg.http_timeout,
            submit_timeout=cfg.submit_timeout,
            auth_token=cfg.adapter_token,
        ))

    throttle = ReadThrottle(ReadThrottleConfig(
        max_reads=cfg.read_max_per_window,
        window_sec=cfg.read_window_sec,
        max_concurrent=cfg.read_concurrency,
        stagger_sec=cfg.read_stagger_sec,
        timeout_sec=cfg.read_timeout_sec,
    ))
    feed = RankingFeed(cfg.ranking_url, config=RankingFeedConfig(
        stale_after_sec=cfg.feed_stale_after_sec,
        unusable_after_sec=cfg.feed_unusable_after_sec,
        timeout_sec=cfg.http_timeout,
        unsupported_protocols=frozenset(cfg.unsupported_protocols),
        vault_protocols=frozenset(cfg.vault_protocols),
    ))
    reconciler = ReconciliationEngine(
        store, registry, owner, throttle=throttle,
        config=ReconciliationConfig(orphan_policy=cfg.orphan_policy, read_retries=cfg.read_retries),
        metrics=metrics,
    )
    gateway = ExecutionGateway(
        store, registry, metrics, notifier,
        config=ExecutionGatewayConfig(submit_retries=cfg.submit_retries),
    )
    breaker = FailureBreaker(FailureBreakerConfig(failure_threshold=cfg.failure_threshold))
    estimator = GasEstimator(
        defaults={
            IntentKind.DEPOSIT: cfg.gas_deposit_usd,
            IntentKind.REBALANCE: cfg.gas_deposit_usd,
            IntentKind.ROTATE_ENTER: cfg.gas_deposit_usd,
            IntentKind.WITHDRAW: cfg.gas_withdraw_usd,
            IntentKind.ROTATE_EXIT: cfg.gas_withdraw_usd,
        },
        swap_cost_pct=cfg.swap_cost_pct,
    )
    engine = RebalanceDecisionEngine(
        store, registry, gateway, owner,
        estimator=estimator,
        overrides=load_per_pool_overrides(cfg.per_pool_config),
        breaker=breaker,
        metrics=metrics,
        notifier=notifier,
        config=DecisionEngineConfig(
            active_split_policy=ActiveSplitPolicy(cfg.active_split_policy),
            read_retries=cfg.read_retries,
        ),
    )

    def on_cycle(result: CycleResult) -> None:
        health_checker.heartbeat()
        if result.feed_health is not None:
            health_checker.set_component_health(
                "feed", result.feed_health != FeedHealth.UNUSABLE, result.feed_health.value
            )
        if result.mode == CycleMode.SKIPPED and result.reason == "fatal":
            health_checker.set_component_health("store", False, result.error)
        health_checker.set_component_health("cycle", result.reason != "cycle_error", result.error)

    scheduler = MonitorScheduler(
        store, feed, reconciler, engine, notifier, metrics,
        config=SchedulerConfig(
            default_interval_sec=cfg.default_check_interval_sec,
            feed_pause_after_cycles=cfg.feed_pause_after_cycles,
        ),
        on_cycle=on_cycle,
    )

    run_task: Optional[asyncio.Task] = None

    def on_run_done(task: asyncio.Task) -> None:
        health_checker.set_ready(False)
        if task.cancelled() or task.exception() is None:
            return
        exc = task.exception()
        log.critical(json.dumps({"event": "scheduler_crashed", "err": str(exc), "error_type": type(exc).__name__}))
        health_checker.set_component_health("cycle", False, str(exc))
        notifier.fatal(f"scheduler crashed: {exc}", error_type=type(exc).__name__)

    def launch() -> None:
        nonlocal run_task
        if run_task is None or run_task.done():
            run_task = asyncio.create_task(scheduler.run())
            run_task.add_done_callback(on_run_done)
            health_checker.set_ready(True)

    async def on_start() -> None:
        launch()

    handler = CommandHandler(store, scheduler=scheduler, breaker=breaker, metrics=metrics, on_start=on_start)
    srv = await start_metrics_server(
        metrics, cfg.metrics_port, handler, auth_token=cfg.metrics_token, health_checker=health_checker
    )

    log.info(json.dumps({"event": "startup", "owner": owner, "variants": cfg.variants}))
    metrics.engine_started.inc()
    notifier.startup(owner, variants=cfg.variants, state_dir=cfg.state_dir)

    stopping = asyncio.Event()
    loop = asyncio.get_running_loop()

    def stop_all() -> None:
        scheduler.stop()
        stopping.set()

    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_all)
        except NotImplementedError:
            pass

    launch()
    try:
        await stopping.wait()
        log.info("Shutdown signal received, cleaning up...")
        notifier.shutdown("signal_received")
    except (asyncio.CancelledError, KeyboardInterrupt):
        notifier.shutdown("cancelled")
    finally:
        health_checker.set_ready(False)
        if run_task is not None and not run_task.done():
            # The in-flight cycle finishes before the loop exits
            await run_task
        log.info("Closing servers and connections...")
        srv.close()
        await srv.wait_closed()
        await registry.close()
        await feed.close()
        await notifier.close()
        log.info("Shutdown complete")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nlpkeeper stopped by user")
    sys.exit(0)


if __name__ == "__main__":
    run()
