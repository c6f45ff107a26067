"""
Tests for HttpExecutionAdapter status mapping and payload decoding,
against an httpx.MockTransport.
"""

import json

import httpx
import pytest

from lpkeeper.core.errors import LedgerUnavailable, StaleLedgerRead
from lpkeeper.core.models import Intent, IntentKind, ProtocolVariant, TxOutcome
from lpkeeper.execution.http_adapter import HttpExecutionAdapter


def _adapter(handler, variant=ProtocolVariant.TICK_RANGE):
    client = httpx.AsyncClient(base_url="http://adapter", transport=httpx.MockTransport(handler))
    return HttpExecutionAdapter(variant, "http://adapter", client=client)


class TestReads:
    @pytest.mark.asyncio
    async def test_read_pool_unwraps_response(self):
        seen = []

        def handler(request):
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={"status": "ok", "response": {
                "pool_id": "p1", "variant": "tick-range", "active_id": 120, "price": 2000.5,
                "reserve_a": "1000000000000000000000000", "tick_spacing": 10,
            }})

        pool = await _adapter(handler).read_pool("p1")

        assert seen == [("/tick-range/pool", {"pool_id": "p1"})]
        assert pool.active_id == 120
        assert pool.reserve_a_raw == 10 ** 24

    @pytest.mark.asyncio
    async def test_discover_accepts_list_or_object(self):
        reading = {"pool_id": "p1", "owner": "0xabc", "amount_a": "5", "variant": "tick-range"}

        as_list = await _adapter(lambda r: httpx.Response(200, json=[reading])).discover_positions("0xabc")
        as_object = await _adapter(
            lambda r: httpx.Response(200, json={"positions": [reading]})).discover_positions("0xabc")

        assert as_list[0].amount_a_raw == 5
        assert as_object[0].variant == ProtocolVariant.TICK_RANGE

    @pytest.mark.asyncio
    async def test_lookup_not_found(self):
        assert await _adapter(lambda r: httpx.Response(200, json={"found": False})).lookup("i-1") is None


class TestStatusMapping:
    @pytest.mark.asyncio
    async def test_conflict_is_stale_read(self):
        with pytest.raises(StaleLedgerRead):
            await _adapter(lambda r: httpx.Response(409, text="block behind")).read_position("p1", "0xabc")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 503, 404])
    async def test_errors_are_ledger_unavailable(self, status):
        with pytest.raises(LedgerUnavailable):
            await _adapter(lambda r: httpx.Response(status)).wallet_balance("0xabc")

    @pytest.mark.asyncio
    async def test_reading_missing_identity_is_ledger_unavailable(self):
        adapter = _adapter(lambda r: httpx.Response(200, json={"positions": [{"pool_id": "p"}]}))
        with pytest.raises(LedgerUnavailable, match="malformed"):
            await adapter.discover_positions("0xabc")

    @pytest.mark.asyncio
    async def test_undecodable_body_is_ledger_unavailable(self):
        adapter = _adapter(lambda r: httpx.Response(200, text="<html>gateway</html>"))
        with pytest.raises(LedgerUnavailable, match="undecodable"):
            await adapter.wallet_balance("0xabc")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method, body", [
        ("wallet_balance", [1, 2]),
        ("wallet_balance", {"owner": "0xabc", "value_usd": "lots"}),
        ("discover_positions", {"positions": 3}),
    ])
    async def test_wrong_shapes_are_ledger_unavailable(self, method, body):
        adapter = _adapter(lambda r: httpx.Response(200, json=body))
        with pytest.raises(LedgerUnavailable):
            await getattr(adapter, method)("0xabc")

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(LedgerUnavailable):
            await _adapter(handler).read_pool("p1")


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_payload_and_receipt(self):
        captured = {}

        def handler(request):
            captured.update(json.loads(request.content))
            return httpx.Response(200, json={"outcome": "success", "tx_hash": "0x1", "gas_usd": 0.42,
                                             "position": {"pool_id": "p1", "owner": "0xabc", "shares": "7"}})

        intent = Intent.create(IntentKind.WITHDRAW, "c1", 0, "p1", "pos-1", params={"full": True})
        receipt = await _adapter(handler).submit(intent)

        assert captured["intent_id"] == "c1-0-withdraw"
        assert captured["kind"] == "withdraw"
        assert captured["params"] == {"full": True}
        assert receipt.outcome == TxOutcome.SUCCESS
        assert receipt.gas_cost_usd == 0.42
        assert receipt.position.shares == 7
