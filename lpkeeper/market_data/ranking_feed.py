"""
Ranking feed client: fetch, validate and age-classify the external pool ranking.

The payload is untrusted. Each entry is validated on its own and dropped if
malformed; a payload is rejected as a whole only when nothing usable is left
or its timestamp lies in the future beyond the skew allowance. A rejected or
failed fetch never replaces the last good snapshot, which is what degraded
mode runs on.

Health by snapshot age:
    fresh     age <= stale_after_sec
    stale     stale_after_sec < age <= unusable_after_sec
    unusable  older than that, or no snapshot at all
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple

import httpx

from lpkeeper.core.errors import FeedUnavailable, FeedValidationError, TransientError
from lpkeeper.core.models import ProtocolVariant, RankedPool, RankingSnapshot, TokenInfo
from lpkeeper.infra.async_execution import call_with_retry

log = logging.getLogger("lpkeeper")

DEFAULT_UNSUPPORTED_PROTOCOLS = frozenset({"curve"})
DEFAULT_VAULT_PROTOCOLS = frozenset({"kuru"})


class FeedHealth(Enum):
    FRESH = "fresh"
    STALE = "stale"
    UNUSABLE = "unusable"

    @property
    def gauge_value(self) -> int:
        return {"fresh": 0, "stale": 1, "unusable": 2}[self.value]


@dataclass
class RankingFeedConfig:
    stale_after_sec: float = 1800.0
    unusable_after_sec: float = 7200.0
    timeout_sec: float = 15.0
    retries: int = 2
    retry_backoff_sec: float = 1.0
    future_skew_sec: float = 300.0
    unsupported_protocols: FrozenSet[str] = field(default_factory=lambda: DEFAULT_UNSUPPORTED_PROTOCOLS)
    vault_protocols: FrozenSet[str] = field(default_factory=lambda: DEFAULT_VAULT_PROTOCOLS)

    # Logging callback
    log_event_callback: Optional[Callable[..., None]] = None


def _finite_non_negative(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number")
    v = float(value)
    if not math.isfinite(v) or v < 0:
        raise ValueError(f"{name} must be finite and >= 0")
    return v


def _finite(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number")
    v = float(value)
    if not math.isfinite(v):
        raise ValueError(f"{name} must be finite")
    return v


def _to_ms(ts: Any) -> int:
    if isinstance(ts, bool) or not isinstance(ts, (int, float)) or not math.isfinite(ts) or ts <= 0:
        raise FeedValidationError(f"invalid timestamp {ts!r}")
    # seconds vs milliseconds
    return int(ts * 1000) if ts < 1e12 else int(ts)


class RankingFeed:
    """
    Usage:
        feed = RankingFeed("https://rankings.example/pools")
        await feed.refresh(now_ms())
        if feed.health(now_ms()) == FeedHealth.FRESH:
            ranked = feed.snapshot.ranked(RankingMetric.REAL_RETURN)
    """

    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        config: Optional[RankingFeedConfig] = None,
    ) -> None:
        self.url = url
        self.config = config or RankingFeedConfig()
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(http2=True, timeout=self.config.timeout_sec)
            self._owns_client = True
        self.snapshot: Optional[RankingSnapshot] = None
        self.consecutive_failures = 0
        self.last_error: Optional[str] = None
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = kwargs.pop("level", logging.INFO)
        log.log(level, json.dumps({"event": event, **kwargs}))

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def restore(self, snapshot: Optional[RankingSnapshot]) -> None:
        """Seed the last good snapshot from persisted state."""
        if snapshot is not None and (self.snapshot is None or snapshot.source_ts_ms > self.snapshot.source_ts_ms):
            self.snapshot = snapshot

    # ========== Fetch ==========

    async def refresh(self, now_ms: int) -> Optional[RankingSnapshot]:
        """
        Fetch and validate a new snapshot.

        Returns the new snapshot, or None when the fetch or validation failed
        (the previous snapshot stays in place).
        """
        try:
            payload = await call_with_retry(
                self._fetch,
                retries=self.config.retries,
                backoff=self.config.retry_backoff_sec,
                timeout=self.config.timeout_sec,
                label="ranking_feed",
            )
            snapshot = self.parse(payload, now_ms)
        except (TransientError, FeedValidationError) as exc:
            self.consecutive_failures += 1
            self.last_error = str(exc)
            self._log_event("feed_refresh_failed", level=logging.WARNING, err=str(exc),
                            error_type=type(exc).__name__, consecutive=self.consecutive_failures)
            return None

        self.snapshot = snapshot
        self.consecutive_failures = 0
        self.last_error = None
        self._log_event("feed_refreshed", pools=len(snapshot.pools), dropped=snapshot.dropped_entries,
                        source_ts_ms=snapshot.source_ts_ms)
        return snapshot

    async def _fetch(self) -> Any:
        try:
            resp = await self.client.get(self.url)
        except httpx.TransportError as exc:
            raise FeedUnavailable(f"ranking feed unreachable: {exc}") from exc
        if resp.status_code == 429 or resp.status_code >= 500:
            raise FeedUnavailable(f"ranking feed HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise FeedValidationError(f"ranking feed HTTP {resp.status_code}")
        try:
            return resp.json()
        except ValueError as exc:
            raise FeedValidationError(f"ranking feed returned invalid JSON: {exc}") from exc

    # ========== Validation ==========

    def parse(self, payload: Any, now_ms: int) -> RankingSnapshot:
        if not isinstance(payload, dict):
            raise FeedValidationError("payload must be an object")
        source_ts = _to_ms(payload.get("timestamp"))
        if source_ts - now_ms > self.config.future_skew_sec * 1000:
            raise FeedValidationError(f"payload timestamp {source_ts} is in the future")
        entries = payload.get("pools")
        if not isinstance(entries, list):
            raise FeedValidationError("payload.pools must be a list")

        epoch_raw = payload.get("epochEndsAt")
        epoch_ms = _to_ms(epoch_raw) if epoch_raw is not None else None

        pools = []
        dropped = 0
        seen = set()
        for entry in entries:
            try:
                pool = self._parse_entry(entry)
            except (ValueError, TypeError, KeyError) as exc:
                dropped += 1
                self._log_event("feed_entry_dropped", level=logging.DEBUG, err=str(exc))
                continue
            if pool.pool_id in seen:
                dropped += 1
                continue
            seen.add(pool.pool_id)
            pools.append(pool)

        if not pools:
            raise FeedValidationError(f"no valid pool entries ({dropped} dropped)")
        return RankingSnapshot(
            fetched_at_ms=now_ms,
            source_ts_ms=source_ts,
            pools=pools,
            epoch_ends_at_ms=epoch_ms,
            dropped_entries=dropped,
        )

    def _parse_entry(self, d: Any) -> RankedPool:
        if not isinstance(d, dict):
            raise ValueError("entry must be an object")
        address = d.get("address")
        pool_id = d.get("id", address)
        if not isinstance(pool_id, str) or not pool_id:
            raise ValueError("id must be a non-empty string")
        if address is not None and not isinstance(address, str):
            raise ValueError("address must be a string")
        protocol = d.get("protocol", d.get("protocolName"))
        if not isinstance(protocol, str) or not protocol:
            raise ValueError("protocol must be a non-empty string")

        apr = _finite(d.get("apr", d.get("combinedAPR")), "apr")
        real_return = _finite(d.get("realReturn", apr), "realReturn")
        tvl = _finite_non_negative(d.get("tvlUsd", d.get("tvl")), "tvlUsd")
        liquidity = _finite_non_negative(d.get("liquidityUsd", 0.0), "liquidityUsd")

        variant, bin_step, tick_spacing = self._variant_of(d, protocol)
        return RankedPool(
            pool_id=pool_id,
            address=address or pool_id,
            protocol=protocol,
            variant=variant,
            pair=str(d.get("pair", "")),
            apr=apr,
            real_return=real_return,
            tvl_usd=tvl,
            liquidity_usd=liquidity,
            token_a=self._token(d.get("tokenA")),
            token_b=self._token(d.get("tokenB")),
            bin_step_bps=bin_step,
            tick_spacing=tick_spacing,
            supported=protocol.lower() not in self.config.unsupported_protocols,
        )

    def _variant_of(self, d: Dict[str, Any], protocol: str) -> Tuple[ProtocolVariant, Optional[float], Optional[int]]:
        if protocol.lower() in self.config.vault_protocols:
            return ProtocolVariant.SHARE_VAULT, None, None
        declared = d.get("variant")
        bin_step = d.get("binStep")
        tick_spacing = d.get("tickSpacing")
        if declared is not None:
            variant = ProtocolVariant(declared)
        elif bin_step is not None:
            variant = ProtocolVariant.BUCKETED_BOOK
        elif tick_spacing is not None:
            variant = ProtocolVariant.TICK_RANGE
        else:
            raise ValueError("cannot infer protocol variant")

        if variant == ProtocolVariant.BUCKETED_BOOK:
            if isinstance(bin_step, bool) or not isinstance(bin_step, int) or bin_step <= 0:
                raise ValueError("binStep must be a positive integer")
            return variant, float(bin_step), None
        if variant == ProtocolVariant.TICK_RANGE:
            if isinstance(tick_spacing, bool) or not isinstance(tick_spacing, int) or tick_spacing <= 0:
                raise ValueError("tickSpacing must be a positive integer")
            return variant, None, tick_spacing
        return variant, None, None

    @staticmethod
    def _token(d: Any) -> Optional[TokenInfo]:
        if d is None:
            return None
        if not isinstance(d, dict):
            raise ValueError("token must be an object")
        decimals = d.get("decimals")
        if isinstance(decimals, bool) or not isinstance(decimals, int) or not 0 <= decimals <= 36:
            raise ValueError("token decimals must be an integer in [0, 36]")
        return TokenInfo(address=str(d.get("address", "")), symbol=str(d.get("symbol", "")), decimals=decimals)

    # ========== Health ==========

    def age_sec(self, now_ms: int) -> Optional[float]:
        if self.snapshot is None:
            return None
        return self.snapshot.age_ms(now_ms) / 1000.0

    def health(self, now_ms: int) -> FeedHealth:
        age = self.age_sec(now_ms)
        if age is None or age > self.config.unusable_after_sec:
            return FeedHealth.UNUSABLE
        if age > self.config.stale_after_sec:
            return FeedHealth.STALE
        return FeedHealth.FRESH
