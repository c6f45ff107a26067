"""
Configuration package.

This package contains configuration loading, validation, and per-pool overrides.
"""

from lpkeeper.config.config import Settings
from lpkeeper.config.config_validator import ConfigValidator, validate_and_log
from lpkeeper.config.per_pool_config import load_per_pool_overrides

__all__ = [
    "Settings",
    "ConfigValidator",
    "validate_and_log",
    "load_per_pool_overrides",
]
