"""
HTTP endpoint for metrics, status, health and operator commands.

- GET  /metrics  Prometheus exposition (auth if token set)
- GET  /status   engine status JSON (auth if token set)
- GET  /health   liveness, no auth
- GET  /ready    readiness, no auth
- POST /command  {"kind": ..., "target": ..., "params": {...}} or {"text": "pause"}
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, TYPE_CHECKING
from urllib.parse import parse_qs, urlparse

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from lpkeeper.core.errors import CommandValidationError
from lpkeeper.orchestrator.commands import Command, CommandKind, list_kinds, parse_text_command

if TYPE_CHECKING:
    from lpkeeper.monitoring.metrics_rich import RichMetrics
    from lpkeeper.orchestrator.commands import CommandHandler

log = logging.getLogger("lpkeeper")

MAX_BODY_BYTES = 64 * 1024


@dataclass
class HealthStatus:
    healthy: bool = True
    ready: bool = False  # cycles running
    last_heartbeat_ms: int = 0
    components: Dict[str, bool] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)


class HealthChecker:
    """
    Component health for liveness and readiness probes.

    Components: "store", "feed", "adapters", "scheduler".
    """

    def __init__(self) -> None:
        self._components: Dict[str, bool] = {}
        self._details: Dict[str, Any] = {}
        self._ready = False
        self._last_heartbeat = int(time.time() * 1000)
        self._callbacks: List[Callable[[str, bool], None]] = []

    def set_component_health(self, name: str, healthy: bool, detail: Optional[str] = None) -> None:
        changed = self._components.get(name) != healthy
        self._components[name] = healthy
        if detail:
            self._details[name] = detail
        else:
            self._details.pop(name, None)
        self._last_heartbeat = int(time.time() * 1000)
        if changed:
            for cb in self._callbacks:
                cb(name, healthy)

    def set_ready(self, ready: bool) -> None:
        self._ready = ready
        self._last_heartbeat = int(time.time() * 1000)

    def heartbeat(self) -> None:
        self._last_heartbeat = int(time.time() * 1000)

    def register_callback(self, callback: Callable[[str, bool], None]) -> None:
        self._callbacks.append(callback)

    def is_healthy(self) -> bool:
        if not self._components:
            return True
        return all(self._components.values())

    def is_ready(self) -> bool:
        return self._ready and self.is_healthy()

    def get_status(self) -> HealthStatus:
        return HealthStatus(
            healthy=self.is_healthy(),
            ready=self.is_ready(),
            last_heartbeat_ms=self._last_heartbeat,
            components=dict(self._components),
            details=dict(self._details),
        )

    def to_dict(self) -> Dict[str, Any]:
        status = self.get_status()
        return {
            "healthy": status.healthy,
            "ready": status.ready,
            "last_heartbeat_ms": status.last_heartbeat_ms,
            "components": status.components,
            "details": status.details,
        }


def _response(status: str, body: bytes, content_type: str = "application/json") -> bytes:
    return (
        f"HTTP/1.1 {status}\r\n"
        f"Content-Type: {content_type}\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Connection: close\r\n\r\n"
    ).encode() + body


def _json_response(status: str, payload: Any) -> bytes:
    return _response(status, json.dumps(payload, default=str).encode())


def parse_command_body(body: bytes) -> Command:
    """Decode a POST /command body into a validated Command."""
    try:
        payload = json.loads(body.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CommandValidationError(f"body is not JSON: {exc}")
    if isinstance(payload, dict) and "text" in payload:
        return parse_text_command(str(payload["text"]))
    return Command.from_dict(payload)


async def _read_request(reader: asyncio.StreamReader) -> Tuple[str, str, Dict[bytes, bytes], bytes]:
    head = await reader.readuntil(b"\r\n\r\n")
    lines = head.split(b"\r\n")
    parts = lines[0].split(b" ")
    method = parts[0].decode("ascii", errors="ignore") if parts else "GET"
    path = parts[1].decode("utf-8", errors="ignore") if len(parts) > 1 else "/"
    headers: Dict[bytes, bytes] = {}
    for line in lines[1:]:
        if b":" in line:
            k, v = line.split(b":", 1)
            headers[k.strip().lower()] = v.strip()
    length = int(headers.get(b"content-length", b"0") or 0)
    if length > MAX_BODY_BYTES:
        raise ValueError("request body too large")
    body = await reader.readexactly(length) if length else b""
    return method, path, headers, body


async def start_metrics_server(
    metrics: "RichMetrics",
    port: int,
    handler: Optional["CommandHandler"] = None,
    auth_token: Optional[str] = None,
    health_checker: Optional[HealthChecker] = None,
    host: str = "0.0.0.0",
) -> asyncio.AbstractServer:
    """Start the HTTP server; the caller owns closing it."""

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            try:
                method, path, headers, body = await _read_request(reader)
            except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, ValueError) as exc:
                writer.write(_json_response("400 Bad Request", {"error": str(exc)}))
                return
            writer.write(await _route(method, path, headers, body))
        finally:
            await writer.drain()
            writer.close()

    async def _route(method: str, path: str, headers: Dict[bytes, bytes], body: bytes) -> bytes:
        parsed = urlparse(path)
        query = parse_qs(parsed.query)

        # Probes - no auth for load balancers
        if parsed.path == "/health":
            healthy = health_checker.is_healthy() if health_checker else True
            payload = health_checker.to_dict() if health_checker else {"healthy": True, "ready": True}
            return _json_response("200 OK" if healthy else "503 Service Unavailable", payload)
        if parsed.path == "/ready":
            ready = health_checker.is_ready() if health_checker else True
            return _json_response("200 OK" if ready else "503 Service Unavailable", {"ready": ready})

        if auth_token:
            header_auth = headers.get(b"authorization", b"").decode("utf-8", errors="ignore")
            if header_auth != f"Bearer {auth_token}" and query.get("token", [""])[0] != auth_token:
                return _json_response("401 Unauthorized", {"error": "unauthorized"})

        if parsed.path == "/command":
            if method != "POST":
                return _json_response("405 Method Not Allowed", {"error": "POST only"})
            if handler is None:
                return _json_response("503 Service Unavailable", {"error": "commands unavailable"})
            try:
                command = parse_command_body(body)
            except CommandValidationError as exc:
                return _json_response("400 Bad Request", {"ok": False, "error": str(exc), "kinds": list_kinds()})
            result = await handler.handle(command)
            return _json_response("200 OK" if result.ok else "409 Conflict", result.to_dict())

        if parsed.path == "/status":
            if handler is None:
                return _json_response("503 Service Unavailable", {"error": "status unavailable"})
            result = await handler.handle(Command(CommandKind.STATUS))
            return _json_response("200 OK", result.data)

        if parsed.path in ("/", "/metrics"):
            return _response("200 OK", generate_latest(metrics.get_registry()), CONTENT_TYPE_LATEST)

        return _json_response("404 Not Found", {"error": f"no route {parsed.path}"})

    server = await asyncio.start_server(handle, host, port)
    log.info(json.dumps({"event": "metrics_server_started", "host": host, "port": port,
                         "auth": bool(auth_token)}))
    return server
