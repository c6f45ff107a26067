"""
ExecutionGateway: single path by which an Intent reaches an adapter.

Every intent goes through the same steps:
- Idempotency: an intent id that already has a terminal TxRecord is never
  resubmitted. The adapter is asked (lookup) before each attempt, so a
  submission that landed before a crash or a lost response is picked up
  rather than repeated.
- Pre-submission policy checks: distribution weights are re-validated; an
  intent known to break an invariant is rejected before it leaves.
- Submission with bounded retries on transient errors.
- Exactly one terminal TxRecord per intent that reached the adapter,
  committed in the same PositionStore transaction as the caller's position
  update.

Thread Safety:
    Callers execute intents one at a time; writes are serialized through
    PositionStore.commit.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, TYPE_CHECKING

from lpkeeper.core.errors import LpKeeperError, TransientError
from lpkeeper.core.models import EngineState, Intent, ProtocolVariant, TxOutcome, TxRecord, now_ms
from lpkeeper.execution.adapters import AdapterRegistry, SubmitReceipt
from lpkeeper.infra.async_execution import call_with_retry
from lpkeeper.strategy.distribution import Distribution

if TYPE_CHECKING:
    from lpkeeper.monitoring.alerting import NotificationSink
    from lpkeeper.monitoring.metrics_rich import RichMetrics
    from lpkeeper.state.position_store import PositionStore

log = logging.getLogger("lpkeeper")

# Folds an intent's terminal record into state, inside the same commit
ApplyOutcome = Callable[[EngineState, TxRecord, Optional[SubmitReceipt]], None]


@dataclass
class ExecutionResult:
    """Terminal result of one intent."""
    intent: Intent
    record: TxRecord
    receipt: Optional[SubmitReceipt] = None
    duplicate: bool = False  # a terminal record already existed; nothing was sent

    @property
    def success(self) -> bool:
        return self.record.is_success

    @property
    def outcome(self) -> TxOutcome:
        return self.record.outcome


@dataclass
class ExecutionGatewayConfig:
    submit_retries: int = 2
    retry_backoff_sec: float = 0.5
    lookup_retries: int = 2

    # Logging callback
    log_event_callback: Optional[Callable[..., None]] = None


class ExecutionGateway:
    """
    Usage:
        gateway = ExecutionGateway(store, registry)
        result = await gateway.execute(intent, ProtocolVariant.BUCKETED_BOOK, apply=fold_fn)
    """

    def __init__(
        self,
        store: "PositionStore",
        registry: AdapterRegistry,
        metrics: Optional["RichMetrics"] = None,
        notifier: Optional["NotificationSink"] = None,
        config: Optional[ExecutionGatewayConfig] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.registry = registry
        self.metrics = metrics
        self.notifier = notifier
        self.config = config or ExecutionGatewayConfig()
        self.clock = clock
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = kwargs.pop("level", logging.INFO)
        log.log(level, json.dumps({"event": event, **kwargs}))

    @staticmethod
    def validate(intent: Intent) -> None:
        """Policy checks that must pass before anything is submitted."""
        dist = intent.params.get("distribution")
        if dist is not None:
            Distribution.from_params(dist).validate()

    async def execute(
        self,
        intent: Intent,
        variant: ProtocolVariant,
        apply: Optional[ApplyOutcome] = None,
    ) -> ExecutionResult:
        """
        Submit `intent` and commit its terminal TxRecord.

        Raises:
            PolicyViolation: the intent breaks an invariant (nothing submitted, no record)
            UnsupportedProtocol: no adapter for `variant` (nothing submitted, no record)
            StateCommitError: the record could not be persisted (fatal)
        """
        existing = self.store.snapshot().find_tx_record(intent.intent_id)
        if existing is not None:
            self._log_event("intent_duplicate_skipped", intent_id=intent.intent_id, outcome=existing.outcome.value)
            if self.metrics:
                self.metrics.duplicate_intents.inc()
            return ExecutionResult(intent=intent, record=existing, duplicate=True)

        self.validate(intent)
        adapter = self.registry.get(variant)

        self._log_event("intent_submit", **intent.summary())
        started = time.monotonic()
        receipt = await self._submit_once(adapter, intent)
        latency_ms = (time.monotonic() - started) * 1000

        record = TxRecord(
            intent_id=intent.intent_id,
            correlation_id=intent.correlation_id,
            kind=intent.kind,
            pool_id=intent.pool_id,
            position_id=intent.position_id,
            outcome=receipt.outcome,
            gas_cost_usd=receipt.gas_cost_usd,
            tx_hash=receipt.tx_hash,
            error=receipt.error,
            timestamp_ms=self.clock(),
        )

        def _fold(state: EngineState) -> None:
            state.tx_log.append(record)
            if apply is not None:
                apply(state, record, receipt)
            self._charge_gas(state, record)

        await self.store.commit(_fold, reason=f"intent:{intent.kind.value}:{receipt.outcome.value}")

        level = logging.INFO if record.is_success else logging.ERROR
        self._log_event("intent_terminal", level=level, intent_id=intent.intent_id, kind=intent.kind.value,
                        pool=intent.pool_id, outcome=record.outcome.value, gas_usd=record.gas_cost_usd,
                        tx_hash=record.tx_hash, err=record.error)
        if self.metrics:
            self.metrics.intents_total.labels(kind=intent.kind.value, outcome=record.outcome.value).inc()
            self.metrics.intent_latency_ms.labels(kind=intent.kind.value).observe(latency_ms)
        if self.notifier:
            if record.is_success:
                self.notifier.intent_executed(intent.intent_id, intent.kind.value, intent.pool_id,
                                              tx_hash=record.tx_hash, gas_usd=record.gas_cost_usd)
            else:
                self.notifier.intent_failed(intent.intent_id, intent.kind.value, intent.pool_id,
                                            record.outcome.value, record.error)
        return ExecutionResult(intent=intent, record=record, receipt=receipt)

    async def _submit_once(self, adapter, intent: Intent) -> SubmitReceipt:
        """
        Submit with retries, asking the adapter first whether the intent id
        already landed. A transport failure that leaves the outcome unknown
        resolves to PENDING, never to a silent resubmission.
        """
        last_error: Optional[LpKeeperError] = None
        for attempt in range(self.config.submit_retries + 1):
            try:
                prior = await self._lookup(adapter, intent)
            except TransientError as exc:
                if attempt > 0:
                    # An earlier attempt may have landed; do not send again
                    return SubmitReceipt(outcome=TxOutcome.PENDING, error=f"outcome unknown: {exc}")
                prior = None
            if prior is not None:
                self._log_event("intent_found_by_lookup", intent_id=intent.intent_id, outcome=prior.outcome.value)
                return prior
            try:
                return await adapter.submit(intent)
            except TransientError as exc:
                last_error = exc
                self._log_event("intent_submit_retry", level=logging.WARNING, intent_id=intent.intent_id,
                                attempt=attempt + 1, err=str(exc))
                if attempt < self.config.submit_retries:
                    await asyncio.sleep(self.config.retry_backoff_sec * (2 ** attempt))

        # Exhausted: a final lookup decides between DROPPED and unknown
        try:
            prior = await self._lookup(adapter, intent)
        except TransientError as exc:
            return SubmitReceipt(outcome=TxOutcome.PENDING, error=f"outcome unknown: {exc}")
        if prior is not None:
            return prior
        return SubmitReceipt(outcome=TxOutcome.DROPPED, error=str(last_error) if last_error else "dropped")

    async def _lookup(self, adapter, intent: Intent) -> Optional[SubmitReceipt]:
        return await call_with_retry(
            lambda: adapter.lookup(intent.intent_id),
            retries=self.config.lookup_retries,
            backoff=self.config.retry_backoff_sec,
            label=f"lookup:{intent.intent_id}",
        )

    def _charge_gas(self, state: EngineState, record: TxRecord) -> None:
        if record.gas_cost_usd <= 0 or not record.position_id:
            return
        pos = state.positions.get(record.position_id)
        if pos is None:
            for archived in reversed(state.history):
                if archived.position_id == record.position_id:
                    pos = archived
                    break
        if pos is not None:
            pos.record_gas(record.timestamp_ms, record.gas_cost_usd)
        else:
            self._log_event("gas_unattributed", level=logging.WARNING, intent_id=record.intent_id,
                            gas_usd=record.gas_cost_usd)
