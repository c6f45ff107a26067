"""
Tests for the HTTP endpoint: probes, auth, command and status routes.
"""

import json

import httpx
import pytest

from lpkeeper.core.errors import CommandValidationError
from lpkeeper.monitoring.metrics_rich import RichMetrics
from lpkeeper.monitoring.server import HealthChecker, parse_command_body, start_metrics_server
from lpkeeper.orchestrator.commands import CommandHandler, CommandKind

from conftest import make_position, seed

TOKEN = "s3cret"


class TestParseCommandBody:
    def test_structured(self):
        cmd = parse_command_body(b'{"kind": "clear", "target": "pool-1"}')
        assert cmd.kind == CommandKind.CLEAR

    def test_text(self):
        cmd = parse_command_body(json.dumps({"text": "set range pool-1 -5 5"}).encode())
        assert cmd.kind == CommandKind.SET_RANGE
        assert cmd.params == {"min_pct": -5.0, "max_pct": 5.0}

    def test_not_json(self):
        with pytest.raises(CommandValidationError):
            parse_command_body(b"pause please")


class TestHealthChecker:
    def test_ready_needs_healthy_components(self):
        checker = HealthChecker()
        assert checker.is_healthy()
        assert not checker.is_ready()

        checker.set_ready(True)
        checker.set_component_health("feed", False, "timeout")
        assert not checker.is_ready()
        assert checker.to_dict()["details"] == {"feed": "timeout"}

        checker.set_component_health("feed", True)
        assert checker.is_ready()

    def test_callbacks_fire_on_change_only(self):
        checker = HealthChecker()
        changes = []
        checker.register_callback(lambda name, ok: changes.append((name, ok)))
        checker.set_component_health("store", True)
        checker.set_component_health("store", True)
        checker.set_component_health("store", False)
        assert changes == [("store", True), ("store", False)]


class TestRoutes:
    @pytest.mark.asyncio
    async def test_routes(self, store):
        await seed(store, make_position())
        checker = HealthChecker()
        metrics = RichMetrics()
        handler = CommandHandler(store, metrics=metrics)
        server = await start_metrics_server(metrics, 0, handler=handler, auth_token=TOKEN,
                                            health_checker=checker, host="127.0.0.1")
        port = server.sockets[0].getsockname()[1]
        auth = {"Authorization": f"Bearer {TOKEN}"}
        try:
            async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{port}") as client:
                assert (await client.get("/health")).status_code == 200
                assert (await client.get("/ready")).status_code == 503
                checker.set_ready(True)
                assert (await client.get("/ready")).status_code == 200

                assert (await client.get("/status")).status_code == 401
                status = await client.get("/status", headers=auth)
                assert status.status_code == 200
                assert status.json()["positions"][0]["pool"] == "pool-1"

                assert (await client.get("/command", headers=auth)).status_code == 405
                bad = await client.post("/command", headers=auth, json={"kind": "explode"})
                assert bad.status_code == 400
                assert "pause" in bad.json()["kinds"]

                paused = await client.post(f"/command?token={TOKEN}", json={"text": "pause"})
                assert paused.status_code == 200
                assert paused.json()["ok"] is True
                assert store.snapshot().control.paused

                rejected = await client.post("/command", headers=auth, json={"kind": "clear", "target": "nope"})
                assert rejected.status_code == 409

                exported = await client.get("/metrics", headers=auth)
                assert exported.status_code == 200
                assert "lpk_commands_total" in exported.text

                assert (await client.get("/nowhere", headers=auth)).status_code == 404
        finally:
            server.close()
            await server.wait_closed()
