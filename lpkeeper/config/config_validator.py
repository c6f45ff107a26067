"""
Configuration validation for production safety.

- Range checks for numeric parameters
- Required endpoints and identity
- Warnings for risky but legal settings
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger("lpkeeper")


class ValidationSeverity(Enum):
    """Severity levels for validation issues."""
    ERROR = auto()    # Blocks startup
    WARNING = auto()  # Logs warning but allows startup
    INFO = auto()


@dataclass
class ValidationIssue:
    field: str
    message: str
    severity: ValidationSeverity
    value: Any = None
    suggestion: Optional[str] = None


@dataclass
class ValidationResult:
    valid: bool
    issues: List[ValidationIssue] = field(default_factory=list)

    def get_errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.ERROR]

    def get_warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.WARNING]


class ConfigValidator:
    """
    Validates Settings beyond the hard checks in Settings._validate.

    Checks:
    - Required fields are present
    - Numeric values are within safe ranges
    - Risky configurations
    """

    # (min, max)
    NUMERIC_RANGES: Dict[str, Tuple[float, float]] = {
        "http_timeout": (1.0, 120.0),
        "submit_timeout": (5.0, 900.0),
        "recovery_points": (1, 100),
        "tx_log_max": (10, 100_000),
        "history_max": (1, 100_000),
        "read_retries": (0, 10),
        "read_max_per_window": (1, 1000),
        "read_window_sec": (0.05, 60.0),
        "read_concurrency": (1, 64),
        "read_stagger_sec": (0.0, 10.0),
        "read_timeout_sec": (0.5, 120.0),
        "feed_stale_after_sec": (60.0, 7 * 86400.0),
        "feed_unusable_after_sec": (60.0, 30 * 86400.0),
        "feed_pause_after_cycles": (1, 1000),
        "submit_retries": (0, 10),
        "failure_threshold": (1, 20),
        "gas_deposit_usd": (0.0, 1000.0),
        "gas_withdraw_usd": (0.0, 1000.0),
        "swap_cost_pct": (0.0, 10.0),
        "default_check_interval_sec": (10.0, 86400.0),
        "metrics_port": (0, 65535),
    }

    REQUIRED_STRINGS: List[str] = [
        "adapter_url",
        "ranking_url",
        "state_dir",
    ]

    def __init__(self) -> None:
        self._custom_validators: List[Callable[[Any], List[ValidationIssue]]] = []

    def register_validator(self, validator: Callable[[Any], List[ValidationIssue]]) -> None:
        self._custom_validators.append(validator)

    def validate(self, cfg) -> ValidationResult:
        issues: List[ValidationIssue] = []
        issues.extend(self._validate_required_strings(cfg))
        issues.extend(self._validate_numeric_ranges(cfg))
        issues.extend(self._validate_identity(cfg))
        issues.extend(self._validate_notifications(cfg))
        issues.extend(self._check_risky_configs(cfg))
        for validator in self._custom_validators:
            issues.extend(validator(cfg) or [])
        has_errors = any(i.severity == ValidationSeverity.ERROR for i in issues)
        return ValidationResult(valid=not has_errors, issues=issues)

    def _validate_required_strings(self, cfg) -> List[ValidationIssue]:
        issues = []
        for field_name in self.REQUIRED_STRINGS:
            value = getattr(cfg, field_name, None)
            if not value or (isinstance(value, str) and not value.strip()):
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"Required field '{field_name}' is missing or empty",
                    severity=ValidationSeverity.ERROR,
                    value=value,
                ))
        return issues

    def _validate_numeric_ranges(self, cfg) -> List[ValidationIssue]:
        issues = []
        for field_name, (min_val, max_val) in self.NUMERIC_RANGES.items():
            value = getattr(cfg, field_name, None)
            if value is None:
                continue
            try:
                num_value = float(value)
            except (TypeError, ValueError):
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' has invalid numeric value: {value}",
                    severity=ValidationSeverity.ERROR,
                    value=value,
                ))
                continue
            if num_value < min_val:
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' value {num_value} is below minimum {min_val}",
                    severity=ValidationSeverity.ERROR,
                    value=num_value,
                    suggestion=f"Set to at least {min_val}",
                ))
            elif num_value > max_val:
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' value {num_value} is above maximum {max_val}",
                    severity=ValidationSeverity.ERROR,
                    value=num_value,
                    suggestion=f"Set to at most {max_val}",
                ))
        return issues

    def _validate_identity(self, cfg) -> List[ValidationIssue]:
        if getattr(cfg, "private_key", None) or getattr(cfg, "owner_address", None):
            return []
        return [ValidationIssue(
            field="owner_address",
            message="No owner configured (owner_address or private_key)",
            severity=ValidationSeverity.ERROR,
            suggestion="Set LPK_OWNER_ADDRESS or LPK_PRIVATE_KEY",
        )]

    def _validate_notifications(self, cfg) -> List[ValidationIssue]:
        issues = []
        if getattr(cfg, "alert_webhook_type", "generic") == "telegram":
            for name in ("telegram_bot_token", "telegram_chat_id"):
                if not getattr(cfg, name, None):
                    issues.append(ValidationIssue(
                        field=name,
                        message=f"Telegram notifications need '{name}'",
                        severity=ValidationSeverity.ERROR,
                    ))
        elif getattr(cfg, "alert_enabled", False) and not getattr(cfg, "alert_webhook_url", None):
            issues.append(ValidationIssue(
                field="alert_webhook_url",
                message="Notifications enabled but no webhook URL set; events are only logged",
                severity=ValidationSeverity.WARNING,
            ))
        return issues

    def _check_risky_configs(self, cfg) -> List[ValidationIssue]:
        issues = []

        if getattr(cfg, "orphan_policy", "pending-redeploy") == "remove":
            issues.append(ValidationIssue(
                field="orphan_policy",
                message="Orphaned positions are moved to history and will not be redeployed",
                severity=ValidationSeverity.WARNING,
            ))

        stale = getattr(cfg, "feed_stale_after_sec", 1800.0)
        interval = getattr(cfg, "default_check_interval_sec", 600.0)
        if stale < interval:
            issues.append(ValidationIssue(
                field="feed_stale_after_sec",
                message=f"Feed goes stale ({stale}s) faster than the check interval ({interval}s)",
                severity=ValidationSeverity.WARNING,
                suggestion="Rotation will be suppressed on most cycles",
            ))

        if getattr(cfg, "read_concurrency", 4) > getattr(cfg, "read_max_per_window", 10):
            issues.append(ValidationIssue(
                field="read_concurrency",
                message="Read concurrency exceeds the per-window read budget",
                severity=ValidationSeverity.WARNING,
            ))

        if getattr(cfg, "metrics_port", 0) and not getattr(cfg, "metrics_token", None):
            issues.append(ValidationIssue(
                field="metrics_token",
                message="Command endpoint is unauthenticated",
                severity=ValidationSeverity.WARNING,
                suggestion="Set LPK_METRICS_TOKEN",
            ))
        return issues


def validate_config(cfg) -> ValidationResult:
    return ConfigValidator().validate(cfg)


def validate_and_log(cfg, logger_instance=None) -> bool:
    """
    Validate config and log all issues.

    Returns:
        True if config is valid (no errors), False otherwise
    """
    log = logger_instance or logger
    result = validate_config(cfg)

    for issue in result.get_errors():
        msg = f"CONFIG ERROR: {issue.message}"
        if issue.suggestion:
            msg += f" (suggestion: {issue.suggestion})"
        log.error(msg)

    for issue in result.get_warnings():
        msg = f"CONFIG WARNING: {issue.message}"
        if issue.suggestion:
            msg += f" (suggestion: {issue.suggestion})"
        log.warning(msg)

    if result.valid:
        log.info("Configuration validation passed")
    else:
        log.error(f"Configuration validation failed with {len(result.get_errors())} error(s)")
    return result.valid
