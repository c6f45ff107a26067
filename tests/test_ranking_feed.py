"""
Tests for the ranking feed: entry validation, variant mapping, health and
degraded-mode snapshot retention.
"""

import httpx
import pytest

from lpkeeper.core.errors import FeedValidationError
from lpkeeper.core.models import ProtocolVariant
from lpkeeper.market_data.ranking_feed import FeedHealth, RankingFeed, RankingFeedConfig

NOW = 1_700_000_000_000


def _entry(pool_id="0xpool1", **overrides):
    entry = {
        "id": pool_id,
        "protocol": "fakeswap",
        "apr": 42.0,
        "realReturn": 30.0,
        "tvlUsd": 1_000_000,
        "binStep": 25,
        "tokenA": {"address": "0xweth", "symbol": "WETH", "decimals": 18},
        "tokenB": {"address": "0xusdc", "symbol": "USDC", "decimals": 6},
    }
    entry.update(overrides)
    return entry


def _payload(*entries, ts=NOW // 1000, **extra):
    return {"timestamp": ts, "pools": list(entries), **extra}


def _feed(handler=None, **cfg):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler)) if handler else None
    config = RankingFeedConfig(retries=0, retry_backoff_sec=0.0, **cfg)
    return RankingFeed("https://rankings.test/pools", client=client, config=config)


class TestParse:
    def test_valid_entry(self):
        snap = _feed().parse(_payload(_entry()), NOW)
        pool = snap.pools[0]
        assert pool.pool_id == "0xpool1"
        assert pool.variant == ProtocolVariant.BUCKETED_BOOK
        assert pool.bin_step_bps == 25.0
        assert pool.apr == 42.0 and pool.real_return == 30.0
        assert pool.token_a.decimals == 18
        assert snap.source_ts_ms == NOW

    def test_alternate_field_names(self):
        entry = {"address": "0xalt", "protocolName": "fakeswap", "combinedAPR": 12.5, "tvl": 10.0,
                 "tickSpacing": 60}
        pool = _feed().parse(_payload(entry), NOW).pools[0]
        assert pool.pool_id == "0xalt"
        assert pool.variant == ProtocolVariant.TICK_RANGE
        assert pool.real_return == 12.5

    def test_millisecond_timestamp(self):
        snap = _feed().parse(_payload(_entry(), ts=NOW - 5000), NOW)
        assert snap.source_ts_ms == NOW - 5000

    def test_bad_entries_dropped(self):
        entries = [
            _entry("ok"),
            _entry("neg-tvl", tvlUsd=-1),
            _entry("nan", apr=float("nan")),
            _entry("str-apr", apr="12"),
            _entry("bad-decimals", tokenA={"address": "x", "decimals": 99}),
            _entry("no-variant", binStep=None),
            "not-an-object",
            _entry("ok"),  # duplicate
        ]
        snap = _feed().parse(_payload(*entries), NOW)
        assert [p.pool_id for p in snap.pools] == ["ok"]
        assert snap.dropped_entries == 7

    def test_no_valid_entries_rejects_payload(self):
        with pytest.raises(FeedValidationError):
            _feed().parse(_payload(_entry(tvlUsd="lots")), NOW)

    def test_future_timestamp_rejected(self):
        with pytest.raises(FeedValidationError):
            _feed().parse(_payload(_entry(), ts=NOW + 301_000), NOW)

    def test_small_future_skew_allowed(self):
        snap = _feed().parse(_payload(_entry(), ts=NOW + 60_000), NOW)
        assert snap.source_ts_ms == NOW + 60_000

    @pytest.mark.parametrize("payload", [[], {"pools": []}, {"timestamp": NOW, "pools": "x"}])
    def test_malformed_payload(self, payload):
        with pytest.raises(FeedValidationError):
            _feed().parse(payload, NOW)

    def test_vault_and_unsupported_protocols(self):
        snap = _feed().parse(_payload(_entry("v", protocol="Kuru"), _entry("c", protocol="curve")), NOW)
        by_id = {p.pool_id: p for p in snap.pools}
        assert by_id["v"].variant == ProtocolVariant.SHARE_VAULT
        assert by_id["c"].supported is False

    def test_epoch_end(self):
        snap = _feed().parse(_payload(_entry(), epochEndsAt=NOW // 1000 + 3600), NOW)
        assert snap.epoch_ends_at_ms == NOW + 3_600_000


class TestHealth:
    def test_no_snapshot_is_unusable(self):
        feed = _feed()
        assert feed.health(NOW) == FeedHealth.UNUSABLE
        assert feed.age_sec(NOW) is None

    def test_age_bands(self):
        feed = _feed(stale_after_sec=60, unusable_after_sec=120)
        feed.snapshot = feed.parse(_payload(_entry()), NOW)
        assert feed.health(NOW + 60_000) == FeedHealth.FRESH
        assert feed.health(NOW + 61_000) == FeedHealth.STALE
        assert feed.health(NOW + 120_000) == FeedHealth.STALE
        assert feed.health(NOW + 121_000) == FeedHealth.UNUSABLE
        assert FeedHealth.UNUSABLE.gauge_value == 2

    def test_restore_keeps_newer(self):
        feed = _feed()
        older = feed.parse(_payload(_entry(), ts=NOW - 10_000), NOW)
        newer = feed.parse(_payload(_entry()), NOW)
        feed.restore(newer)
        feed.restore(older)
        assert feed.snapshot is newer


class TestRefresh:
    @pytest.mark.asyncio
    async def test_success(self):
        feed = _feed(lambda request: httpx.Response(200, json=_payload(_entry())))
        snap = await feed.refresh(NOW)
        assert snap is feed.snapshot
        assert feed.consecutive_failures == 0
        await feed.client.aclose()

    @pytest.mark.asyncio
    async def test_failure_keeps_last_good_snapshot(self):
        responses = [httpx.Response(200, json=_payload(_entry())), httpx.Response(503),
                     httpx.Response(200, json=_payload("junk"))]
        feed = _feed(lambda request: responses.pop(0))
        good = await feed.refresh(NOW)
        assert await feed.refresh(NOW + 1000) is None
        assert await feed.refresh(NOW + 2000) is None
        assert feed.snapshot is good
        assert feed.consecutive_failures == 2
        assert "no valid pool entries" in feed.last_error
        await feed.client.aclose()

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def boom(request):
            raise httpx.ConnectError("refused")

        feed = _feed(boom)
        assert await feed.refresh(NOW) is None
        assert feed.last_error.startswith("ranking feed unreachable")
        await feed.client.aclose()
