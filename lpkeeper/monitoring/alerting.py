"""
Notification sink for engine events.

- Webhook delivery (generic JSON, Slack, Discord, Telegram Bot API)
- Rate limiting for alert-type events; intent and skip records always go out
- Batching of events raised within a short window
- Non-blocking: notify() queues and returns, delivery runs in a background task
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Deque, Dict, List, Optional

import aiohttp

logger = logging.getLogger("lpkeeper")

TELEGRAM_MAX_CHARS = 4096
TELEGRAM_TOKEN_RE = re.compile(r"^\d+:[A-Za-z0-9_-]+$")
TELEGRAM_CHAT_ID_RE = re.compile(r"^-?\d+$")


class Severity(Enum):
    """Notification severity levels."""
    CRITICAL = auto()  # Immediate attention required
    WARNING = auto()   # Potential issue
    INFO = auto()      # Informational


class EventType(Enum):
    INTENT_EXECUTED = "intent_executed"
    INTENT_FAILED = "intent_failed"
    ACTION_SKIPPED = "action_skipped"
    CYCLE_SUMMARY = "cycle_summary"
    FEED_DEGRADED = "feed_degraded"
    AUTONOMY_PAUSED = "autonomy_paused"
    CYCLE_ERROR = "cycle_error"
    FATAL = "fatal"
    STARTUP = "startup"
    SHUTDOWN = "shutdown"


# Per-action records are never rate limited: every executed or skipped action is reported
RATE_LIMIT_EXEMPT = {EventType.INTENT_EXECUTED, EventType.INTENT_FAILED, EventType.ACTION_SKIPPED}


@dataclass
class Notification:
    event_type: EventType
    severity: Severity
    title: str
    message: str
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    details: Dict[str, Any] = field(default_factory=dict)
    pool: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event_type.value,
            "severity": self.severity.name,
            "title": self.title,
            "message": self.message,
            "timestamp_ms": self.timestamp_ms,
            "timestamp_iso": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.timestamp_ms / 1000)),
            "details": self.details,
            "pool": self.pool,
        }

    def to_text(self, include_details: bool = True) -> str:
        lines = [f"[{self.severity.name}] {self.title}", self.message]
        if self.pool:
            lines.append(f"pool: {self.pool}")
        if include_details:
            for key, value in self.details.items():
                lines.append(f"{key}: {value}")
        return "\n".join(lines)


@dataclass
class NotifierConfig:
    webhook_url: Optional[str] = None
    webhook_type: str = "generic"  # generic, slack, discord, telegram
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    min_severity: Severity = Severity.INFO
    rate_limit_seconds: int = 60  # Min seconds between same event type
    batch_window_ms: int = 2000
    enabled: bool = True
    include_details: bool = True
    engine_name: str = "lpkeeper"
    history_size: int = 200

    def validate(self) -> None:
        if self.webhook_type not in ("generic", "slack", "discord", "telegram"):
            raise ValueError(f"unknown webhook_type {self.webhook_type!r}")
        if self.webhook_type == "telegram":
            if not self.telegram_bot_token or not TELEGRAM_TOKEN_RE.match(self.telegram_bot_token):
                raise ValueError("telegram bot token must look like '<digits>:<secret>'")
            if not self.telegram_chat_id or not TELEGRAM_CHAT_ID_RE.match(self.telegram_chat_id):
                raise ValueError("telegram chat id must be an integer")

    @property
    def target_url(self) -> Optional[str]:
        if self.webhook_type == "telegram" and self.telegram_bot_token:
            return f"https://api.telegram.org/bot{self.telegram_bot_token}/sendMessage"
        return self.webhook_url


def truncate_telegram(text: str) -> str:
    if len(text) <= TELEGRAM_MAX_CHARS:
        return text
    return text[: TELEGRAM_MAX_CHARS - 3] + "..."


class WebhookFormatter:
    """Formats notifications for different webhook types."""

    @staticmethod
    def format_generic(n: Notification, config: NotifierConfig) -> Dict[str, Any]:
        return n.to_dict()

    @staticmethod
    def format_slack(n: Notification, config: NotifierConfig) -> Dict[str, Any]:
        color = {
            Severity.CRITICAL: "#FF0000",
            Severity.WARNING: "#FFA500",
            Severity.INFO: "#0000FF",
        }.get(n.severity, "#808080")

        fields = []
        if n.pool:
            fields.append({"title": "Pool", "value": n.pool, "short": True})
        fields.append({"title": "Event", "value": n.event_type.value, "short": True})
        if config.include_details and n.details:
            for key, value in list(n.details.items())[:5]:
                fields.append({"title": key, "value": str(value), "short": True})

        return {
            "username": config.engine_name,
            "attachments": [{
                "color": color,
                "title": n.title,
                "text": n.message,
                "fields": fields,
                "footer": f"{config.engine_name} | {n.severity.name}",
                "ts": n.timestamp_ms // 1000,
            }]
        }

    @staticmethod
    def format_discord(n: Notification, config: NotifierConfig) -> Dict[str, Any]:
        color = {
            Severity.CRITICAL: 0xFF0000,
            Severity.WARNING: 0xFFA500,
            Severity.INFO: 0x0000FF,
        }.get(n.severity, 0x808080)

        fields = []
        if n.pool:
            fields.append({"name": "Pool", "value": n.pool, "inline": True})
        fields.append({"name": "Event", "value": n.event_type.value, "inline": True})
        if config.include_details and n.details:
            for key, value in list(n.details.items())[:5]:
                fields.append({"name": key, "value": str(value), "inline": True})

        return {
            "username": config.engine_name,
            "embeds": [{
                "title": n.title,
                "description": n.message,
                "color": color,
                "fields": fields,
                "footer": {"text": f"{config.engine_name} | {n.severity.name}"},
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(n.timestamp_ms / 1000)),
            }]
        }

    @staticmethod
    def format_telegram(n: Notification, config: NotifierConfig) -> Dict[str, Any]:
        return {
            "chat_id": config.telegram_chat_id,
            "text": truncate_telegram(n.to_text(config.include_details)),
            "disable_web_page_preview": True,
        }


class NotificationSink:
    """
    Delivers engine events without ever blocking the caller.

    Usage:
        sink = NotificationSink(NotifierConfig(webhook_url=url, webhook_type="slack"))
        sink.intent_executed(record)      # returns immediately
        await sink.close()                # flush on shutdown
    """

    def __init__(self, config: Optional[NotifierConfig] = None) -> None:
        self.config = config or NotifierConfig()
        self.config.validate()
        self._last_sent: Dict[EventType, int] = {}
        self._pending: List[Notification] = []
        self._batch_task: Optional[asyncio.Task] = None
        self.history: Deque[Notification] = deque(maxlen=self.config.history_size)
        self.delivered = 0
        self.failed = 0

    def notify(self, n: Notification) -> bool:
        """
        Queue a notification. Returns True if it was queued for delivery,
        False if filtered (disabled, below severity, rate limited, no target).
        """
        self.history.append(n)
        if not self.config.enabled or not self.config.target_url:
            return False
        if n.severity.value > self.config.min_severity.value:
            return False

        now_ms = int(time.time() * 1000)
        if n.event_type not in RATE_LIMIT_EXEMPT:
            last = self._last_sent.get(n.event_type, 0)
            if now_ms - last < self.config.rate_limit_seconds * 1000:
                logger.debug(f"notification rate limited: {n.event_type.value}")
                return False
            self._last_sent[n.event_type] = now_ms

        self._pending.append(n)
        if self._batch_task is None or self._batch_task.done():
            self._batch_task = asyncio.get_running_loop().create_task(self._batch_deliver())
        return True

    async def _batch_deliver(self) -> None:
        await asyncio.sleep(self.config.batch_window_ms / 1000)
        # notifications queued while a batch is in flight go out in the next pass
        while self._pending:
            batch, self._pending = self._pending, []
            for payload in self._payloads(batch):
                if await self._http_post(payload):
                    self.delivered += 1
                else:
                    self.failed += 1

    def _payloads(self, batch: List[Notification]) -> List[Dict[str, Any]]:
        kind = self.config.webhook_type
        if len(batch) == 1:
            return [self._format(batch[0])]
        if kind == "slack":
            payload = self._format(batch[0])
            for n in batch[1:]:
                payload["attachments"].extend(self._format(n)["attachments"])
            return [payload]
        if kind == "discord":
            # Discord caps embeds per message at 10
            out = []
            for i in range(0, len(batch), 10):
                payload = self._format(batch[i])
                for n in batch[i + 1:i + 10]:
                    payload["embeds"].extend(self._format(n)["embeds"])
                out.append(payload)
            return out
        if kind == "telegram":
            text = "\n\n".join(n.to_text(self.config.include_details) for n in batch)
            return [{"chat_id": self.config.telegram_chat_id, "text": truncate_telegram(text),
                     "disable_web_page_preview": True}]
        return [{"events": [n.to_dict() for n in batch]}]

    def _format(self, n: Notification) -> Dict[str, Any]:
        formatters = {
            "generic": WebhookFormatter.format_generic,
            "slack": WebhookFormatter.format_slack,
            "discord": WebhookFormatter.format_discord,
            "telegram": WebhookFormatter.format_telegram,
        }
        return formatters.get(self.config.webhook_type, WebhookFormatter.format_generic)(n, self.config)

    async def _http_post(self, payload: Dict[str, Any], retries: int = 2) -> bool:
        url = self.config.target_url
        if not url:
            return False
        async with aiohttp.ClientSession() as session:
            for attempt in range(retries + 1):
                try:
                    async with session.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=10)) as resp:
                        if resp.status < 300:
                            return True
                        logger.warning(f"notification delivery failed: HTTP {resp.status}")
                except asyncio.TimeoutError:
                    logger.warning(f"notification delivery timeout (attempt {attempt + 1})")
                except aiohttp.ClientError as e:
                    logger.warning(f"notification delivery error: {e}")
                if attempt < retries:
                    await asyncio.sleep(1 * (attempt + 1))
        return False

    async def close(self) -> None:
        """Wait for queued notifications to go out."""
        while self._batch_task is not None and not self._batch_task.done():
            await self._batch_task
        if self._pending:
            await self._batch_deliver()

    # ─────────────────────────────────────────────────────────────────────
    # Event helpers
    # ─────────────────────────────────────────────────────────────────────

    def intent_executed(self, intent_id: str, kind: str, pool: str, **details) -> bool:
        return self.notify(Notification(
            event_type=EventType.INTENT_EXECUTED,
            severity=Severity.INFO,
            title="Intent executed",
            message=f"{kind} on {pool} confirmed",
            pool=pool,
            details={"intent_id": intent_id, "kind": kind, **details},
        ))

    def intent_failed(self, intent_id: str, kind: str, pool: str, outcome: str, error: Optional[str] = None,
                      **details) -> bool:
        return self.notify(Notification(
            event_type=EventType.INTENT_FAILED,
            severity=Severity.WARNING,
            title="Intent failed",
            message=f"{kind} on {pool} ended {outcome}" + (f": {error}" if error else ""),
            pool=pool,
            details={"intent_id": intent_id, "kind": kind, "outcome": outcome, **details},
        ))

    def action_skipped(self, action: str, reason: str, pool: Optional[str] = None, **details) -> bool:
        return self.notify(Notification(
            event_type=EventType.ACTION_SKIPPED,
            severity=Severity.INFO,
            title="Action skipped",
            message=f"{action} skipped: {reason}",
            pool=pool,
            details={"action": action, "reason": reason, **details},
        ))

    def cycle_summary(self, cycle: int, **details) -> bool:
        return self.notify(Notification(
            event_type=EventType.CYCLE_SUMMARY,
            severity=Severity.INFO,
            title=f"Cycle {cycle} summary",
            message=", ".join(f"{k}={v}" for k, v in details.items()),
            details={"cycle": cycle, **details},
        ))

    def feed_degraded(self, health: str, age_sec: Optional[float], **details) -> bool:
        return self.notify(Notification(
            event_type=EventType.FEED_DEGRADED,
            severity=Severity.WARNING,
            title="Ranking feed degraded",
            message=f"feed {health}; rotation suspended, health checks continue",
            details={"health": health, "age_sec": age_sec, **details},
        ))

    def autonomy_paused(self, reason: str, **details) -> bool:
        return self.notify(Notification(
            event_type=EventType.AUTONOMY_PAUSED,
            severity=Severity.CRITICAL,
            title="Autonomous action paused",
            message=f"paused: {reason}; explicit resume required",
            details={"reason": reason, **details},
        ))

    def cycle_error(self, cycle: int, error: str, **details) -> bool:
        return self.notify(Notification(
            event_type=EventType.CYCLE_ERROR,
            severity=Severity.CRITICAL,
            title=f"Cycle {cycle} failed",
            message=f"{error}; retrying next interval",
            details={"cycle": cycle, **details},
        ))

    def fatal(self, error: str, **details) -> bool:
        return self.notify(Notification(
            event_type=EventType.FATAL,
            severity=Severity.CRITICAL,
            title="Engine stopped",
            message=error,
            details=details,
        ))

    def startup(self, owner: str, **details) -> bool:
        return self.notify(Notification(
            event_type=EventType.STARTUP,
            severity=Severity.INFO,
            title="Engine started",
            message=f"{self.config.engine_name} managing positions for {owner}",
            details={"owner": owner, **details},
        ))

    def shutdown(self, reason: str = "normal", **details) -> bool:
        return self.notify(Notification(
            event_type=EventType.SHUTDOWN,
            severity=Severity.INFO if reason == "normal" else Severity.WARNING,
            title="Engine shutdown",
            message=f"{self.config.engine_name} shutting down: {reason}",
            details=details,
        ))


_sink: Optional[NotificationSink] = None


def get_notifier() -> NotificationSink:
    """Get the process-wide notification sink."""
    global _sink
    if _sink is None:
        _sink = NotificationSink()
    return _sink


def configure_notifications(config: NotifierConfig) -> NotificationSink:
    """Replace the process-wide notification sink."""
    global _sink
    _sink = NotificationSink(config)
    return _sink
