"""
Environment-driven configuration with validation.

All variables use the LPK_ prefix. A `.env` file in the working directory is
loaded first; real environment variables win over it.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import List, Optional

from dotenv import load_dotenv

from lpkeeper.core.errors import IdentityMismatch

load_dotenv()

log = logging.getLogger("lpkeeper")


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


def _list_env(key: str, default: str) -> List[str]:
    raw = os.getenv(key, default)
    return [v.strip() for v in raw.split(",") if v.strip()]


@dataclass(frozen=True)
class Settings:
    # Endpoints
    adapter_url: str
    adapter_token: Optional[str]
    variants: List[str]
    ranking_url: str
    http_timeout: float
    submit_timeout: float
    # Identity
    private_key: Optional[str]
    owner_address: Optional[str]
    # State
    state_dir: str
    recovery_points: int
    tx_log_max: int
    history_max: int
    archive_s3_bucket: Optional[str]
    # Reconciliation
    orphan_policy: str
    read_retries: int
    read_max_per_window: int
    read_window_sec: float
    read_concurrency: int
    read_stagger_sec: float
    read_timeout_sec: float
    # Ranking feed
    feed_stale_after_sec: float
    feed_unusable_after_sec: float
    feed_pause_after_cycles: int
    unsupported_protocols: List[str]
    vault_protocols: List[str]
    # Execution and risk
    submit_retries: int
    failure_threshold: int
    active_split_policy: str
    gas_deposit_usd: float
    gas_withdraw_usd: float
    swap_cost_pct: float
    default_check_interval_sec: float
    per_pool_config: str
    # Observability
    metrics_port: int
    metrics_token: Optional[str]
    log_level: str
    log_file: Optional[str]
    # Notifications
    alert_webhook_url: Optional[str]
    alert_webhook_type: str  # generic, slack, discord, telegram
    alert_enabled: bool
    alert_rate_limit_sec: int
    telegram_bot_token: Optional[str]
    telegram_chat_id: Optional[str]

    def dump(self) -> dict:
        """Settings as a dict with secrets masked, for logging."""
        out = self.__dict__.copy()
        for key in ("private_key", "adapter_token", "metrics_token", "telegram_bot_token"):
            if out.get(key):
                out[key] = "***"
        return out

    @classmethod
    def load(cls) -> "Settings":
        cfg = cls(
            adapter_url=os.getenv("LPK_ADAPTER_URL", "http://127.0.0.1:8700"),
            adapter_token=os.getenv("LPK_ADAPTER_TOKEN"),
            variants=_list_env("LPK_VARIANTS", "bucketed-book,tick-range,share-vault"),
            ranking_url=os.getenv("LPK_RANKING_URL", "http://127.0.0.1:8701/pools"),
            http_timeout=_float_env("LPK_HTTP_TIMEOUT", 10.0),
            submit_timeout=_float_env("LPK_SUBMIT_TIMEOUT", 180.0),
            private_key=os.getenv("LPK_PRIVATE_KEY"),
            owner_address=os.getenv("LPK_OWNER_ADDRESS"),
            state_dir=os.getenv("LPK_STATE_DIR", "state"),
            recovery_points=_int_env("LPK_RECOVERY_POINTS", 5),
            tx_log_max=_int_env("LPK_TX_LOG_MAX", 500),
            history_max=_int_env("LPK_HISTORY_MAX", 200),
            archive_s3_bucket=os.getenv("LPK_ARCHIVE_S3_BUCKET"),
            orphan_policy=os.getenv("LPK_ORPHAN_POLICY", "pending-redeploy"),
            read_retries=_int_env("LPK_READ_RETRIES", 2),
            read_max_per_window=_int_env("LPK_READ_MAX_PER_WINDOW", 10),
            read_window_sec=_float_env("LPK_READ_WINDOW_SEC", 1.0),
            read_concurrency=_int_env("LPK_READ_CONCURRENCY", 4),
            read_stagger_sec=_float_env("LPK_READ_STAGGER_SEC", 0.05),
            read_timeout_sec=_float_env("LPK_READ_TIMEOUT_SEC", 10.0),
            feed_stale_after_sec=_float_env("LPK_FEED_STALE_AFTER_SEC", 1800.0),
            feed_unusable_after_sec=_float_env("LPK_FEED_UNUSABLE_AFTER_SEC", 7200.0),
            feed_pause_after_cycles=_int_env("LPK_FEED_PAUSE_AFTER_CYCLES", 6),
            unsupported_protocols=[p.lower() for p in _list_env("LPK_UNSUPPORTED_PROTOCOLS", "curve")],
            vault_protocols=[p.lower() for p in _list_env("LPK_VAULT_PROTOCOLS", "kuru")],
            submit_retries=_int_env("LPK_SUBMIT_RETRIES", 2),
            failure_threshold=_int_env("LPK_FAILURE_THRESHOLD", 2),
            active_split_policy=os.getenv("LPK_ACTIVE_SPLIT_POLICY", "mirror-composition"),
            gas_deposit_usd=_float_env("LPK_GAS_DEPOSIT_USD", 0.5),
            gas_withdraw_usd=_float_env("LPK_GAS_WITHDRAW_USD", 0.3),
            swap_cost_pct=_float_env("LPK_SWAP_COST_PCT", 0.3),
            default_check_interval_sec=_float_env("LPK_CHECK_INTERVAL_SEC", 600.0),
            per_pool_config=os.getenv("LPK_PER_POOL_CONFIG", "configs/per_pool.yaml"),
            metrics_port=_int_env("LPK_METRICS_PORT", 9095),
            metrics_token=os.getenv("LPK_METRICS_TOKEN"),
            log_level=os.getenv("LPK_LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("LPK_LOG_FILE", "lpkeeper.log") or None,
            alert_webhook_url=os.getenv("LPK_ALERT_WEBHOOK_URL"),
            alert_webhook_type=os.getenv("LPK_ALERT_WEBHOOK_TYPE", "generic"),
            alert_enabled=env_bool("LPK_ALERT_ENABLED", True),
            alert_rate_limit_sec=_int_env("LPK_ALERT_RATE_LIMIT_SEC", 60),
            telegram_bot_token=os.getenv("LPK_TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=os.getenv("LPK_TELEGRAM_CHAT_ID"),
        )
        _sanity_check(cfg)
        cfg._validate()
        return cfg

    def resolve_owner(self) -> str:
        """
        Owner address of the managed positions.

        When both a key and an explicit address are configured they must
        agree; a mismatch means the engine would sign for someone else.
        """
        derived: Optional[str] = None
        if self.private_key:
            from eth_account import Account

            derived = Account.from_key(self.private_key).address
        if derived and self.owner_address and derived.lower() != self.owner_address.lower():
            raise IdentityMismatch(
                f"LPK_PRIVATE_KEY resolves to {derived}, LPK_OWNER_ADDRESS is {self.owner_address}"
            )
        owner = derived or self.owner_address
        if not owner:
            raise RuntimeError("Missing LPK_OWNER_ADDRESS or LPK_PRIVATE_KEY")
        return owner

    def _validate(self) -> None:
        from lpkeeper.core.models import ProtocolVariant

        for v in self.variants:
            ProtocolVariant(v)
        if not self.variants:
            raise ValueError("LPK_VARIANTS must name at least one protocol variant")
        if self.recovery_points < 1:
            raise ValueError("LPK_RECOVERY_POINTS must be >= 1")
        if self.tx_log_max < 1:
            raise ValueError("LPK_TX_LOG_MAX must be >= 1")
        if self.orphan_policy not in ("pending-redeploy", "remove"):
            raise ValueError("LPK_ORPHAN_POLICY must be 'pending-redeploy' or 'remove'")
        if self.read_concurrency < 1 or self.read_max_per_window < 1:
            raise ValueError("read concurrency and rate must be >= 1")
        if self.read_timeout_sec <= 0 or self.http_timeout <= 0:
            raise ValueError("timeouts must be > 0")
        if self.feed_stale_after_sec <= 0 or self.feed_unusable_after_sec < self.feed_stale_after_sec:
            raise ValueError("LPK_FEED_UNUSABLE_AFTER_SEC must be >= LPK_FEED_STALE_AFTER_SEC > 0")
        if self.feed_pause_after_cycles < 1:
            raise ValueError("LPK_FEED_PAUSE_AFTER_CYCLES must be >= 1")
        if self.failure_threshold < 1:
            raise ValueError("LPK_FAILURE_THRESHOLD must be >= 1")
        if self.active_split_policy not in ("mirror-composition", "fifty-fifty"):
            raise ValueError("LPK_ACTIVE_SPLIT_POLICY must be 'mirror-composition' or 'fifty-fifty'")
        if self.default_check_interval_sec <= 0:
            raise ValueError("LPK_CHECK_INTERVAL_SEC must be > 0")
        if self.alert_webhook_type not in ("generic", "slack", "discord", "telegram"):
            raise ValueError("LPK_ALERT_WEBHOOK_TYPE must be generic, slack, discord or telegram")

        if self.failure_threshold > 3:
            log.warning(
                f"WARNING: LPK_FAILURE_THRESHOLD is {self.failure_threshold}. "
                "Autonomy keeps acting through that many failed intents per cycle."
            )
        if not self.metrics_token and self.metrics_port:
            log.warning(
                "WARNING: LPK_METRICS_TOKEN not set. POST /command on the metrics port is unauthenticated."
            )


def _sanity_check(cfg: Settings) -> None:
    """Log the key settings once at startup so overrides are obvious."""
    payload = {
        "event": "config_loaded",
        "adapter_url": cfg.adapter_url,
        "ranking_url": cfg.ranking_url,
        "variants": cfg.variants,
        "state_dir": cfg.state_dir,
        "orphan_policy": cfg.orphan_policy,
        "feed_stale_after_sec": cfg.feed_stale_after_sec,
    }
    log.info(json.dumps(payload))
