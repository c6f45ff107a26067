"""Tests for environment settings, config validation and per-pool overrides."""

import dataclasses

import pytest

from lpkeeper.config.config import Settings, env_bool
from lpkeeper.config.config_validator import ConfigValidator, ValidationSeverity, validate_and_log
from lpkeeper.config.per_pool_config import PoolOverride, for_pool, load_per_pool_overrides
from lpkeeper.core.errors import IdentityMismatch

# Well-known development key (never funded)
DEV_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
DEV_ADDRESS = "0x2c7536E3605D9C16a7a3D7b1898e529396a65c23"


@pytest.fixture
def clean_env(monkeypatch):
    import os

    for key in list(os.environ):
        if key.startswith("LPK_"):
            monkeypatch.delenv(key)
    return monkeypatch


class TestSettings:
    def test_defaults(self, clean_env):
        cfg = Settings.load()
        assert cfg.variants == ["bucketed-book", "tick-range", "share-vault"]
        assert cfg.orphan_policy == "pending-redeploy"
        assert cfg.feed_stale_after_sec == 1800.0

    def test_env_overrides(self, clean_env):
        clean_env.setenv("LPK_VARIANTS", "tick-range")
        clean_env.setenv("LPK_UNSUPPORTED_PROTOCOLS", "Curve, Balancer")
        clean_env.setenv("LPK_ALERT_ENABLED", "no")
        cfg = Settings.load()
        assert cfg.variants == ["tick-range"]
        assert cfg.unsupported_protocols == ["curve", "balancer"]
        assert cfg.alert_enabled is False

    @pytest.mark.parametrize("key,value", [
        ("LPK_VARIANTS", "order-book"),
        ("LPK_ORPHAN_POLICY", "ignore"),
        ("LPK_FEED_UNUSABLE_AFTER_SEC", "60"),
        ("LPK_ACTIVE_SPLIT_POLICY", "random"),
        ("LPK_ALERT_WEBHOOK_TYPE", "pager"),
    ])
    def test_invalid_values_rejected(self, clean_env, key, value):
        clean_env.setenv(key, value)
        with pytest.raises(ValueError):
            Settings.load()

    def test_dump_masks_secrets(self, clean_env):
        clean_env.setenv("LPK_PRIVATE_KEY", DEV_KEY)
        dumped = Settings.load().dump()
        assert dumped["private_key"] == "***"
        assert dumped["adapter_token"] is None

    def test_env_bool(self, clean_env):
        clean_env.setenv("LPK_FLAG", "Yes")
        assert env_bool("LPK_FLAG", False) is True
        assert env_bool("LPK_MISSING", True) is True


class TestOwnerResolution:
    def test_explicit_address(self, clean_env):
        clean_env.setenv("LPK_OWNER_ADDRESS", DEV_ADDRESS)
        assert Settings.load().resolve_owner() == DEV_ADDRESS

    def test_key_derives_owner(self, clean_env):
        clean_env.setenv("LPK_PRIVATE_KEY", DEV_KEY)
        assert Settings.load().resolve_owner().lower() == DEV_ADDRESS.lower()

    def test_mismatch_is_fatal(self, clean_env):
        clean_env.setenv("LPK_PRIVATE_KEY", DEV_KEY)
        clean_env.setenv("LPK_OWNER_ADDRESS", "0x0000000000000000000000000000000000000001")
        with pytest.raises(IdentityMismatch):
            Settings.load().resolve_owner()

    def test_missing_owner(self, clean_env):
        with pytest.raises(RuntimeError):
            Settings.load().resolve_owner()


class TestValidator:
    def test_missing_owner_is_error(self, clean_env):
        result = ConfigValidator().validate(Settings.load())
        assert not result.valid
        assert "owner_address" in [i.field for i in result.get_errors()]

    def test_valid_with_warnings(self, clean_env):
        clean_env.setenv("LPK_OWNER_ADDRESS", DEV_ADDRESS)
        clean_env.setenv("LPK_ORPHAN_POLICY", "remove")
        result = ConfigValidator().validate(Settings.load())
        assert result.valid
        warned = {i.field for i in result.get_warnings()}
        assert {"orphan_policy", "metrics_token"} <= warned

    def test_numeric_range(self, clean_env):
        clean_env.setenv("LPK_OWNER_ADDRESS", DEV_ADDRESS)
        cfg = dataclasses.replace(Settings.load(), read_concurrency=500)
        errors = ConfigValidator().validate(cfg).get_errors()
        assert [i.field for i in errors] == ["read_concurrency"]
        assert errors[0].severity == ValidationSeverity.ERROR

    def test_telegram_needs_credentials(self, clean_env):
        clean_env.setenv("LPK_OWNER_ADDRESS", DEV_ADDRESS)
        clean_env.setenv("LPK_ALERT_WEBHOOK_TYPE", "telegram")
        fields = {i.field for i in ConfigValidator().validate(Settings.load()).get_errors()}
        assert fields == {"telegram_bot_token", "telegram_chat_id"}

    def test_custom_validator(self, clean_env):
        clean_env.setenv("LPK_OWNER_ADDRESS", DEV_ADDRESS)
        from lpkeeper.config.config_validator import ValidationIssue

        validator = ConfigValidator()
        validator.register_validator(lambda cfg: [ValidationIssue("x", "nope", ValidationSeverity.ERROR)])
        assert not validator.validate(Settings.load()).valid

    def test_validate_and_log(self, clean_env, caplog):
        assert validate_and_log(Settings.load()) is False
        assert "CONFIG ERROR" in caplog.text


class TestPerPool:
    def test_load(self, tmp_path):
        path = tmp_path / "per_pool.yaml"
        path.write_text("0xPool:\n  range_min_pct: -10\n  range_max_pct: 15\n  cooldown_sec: 7200\n")
        overrides = load_per_pool_overrides(str(path))
        assert overrides["0xPool"] == PoolOverride(range_min_pct=-10.0, range_max_pct=15.0, cooldown_sec=7200.0)
        assert for_pool(overrides, "0xPool").cooldown_sec == 7200.0
        assert for_pool(overrides, "other") == PoolOverride()

    def test_missing_file(self, tmp_path):
        assert load_per_pool_overrides(str(tmp_path / "none.yaml")) == {}

    @pytest.mark.parametrize("body", [
        "p:\n  spread_bps: 5\n",
        "p:\n  range_min_pct: 5\n",
        "p:\n  allocation_pct: 150\n",
        "- p\n",
    ])
    def test_invalid(self, tmp_path, body):
        path = tmp_path / "per_pool.yaml"
        path.write_text(body)
        with pytest.raises(ValueError):
            load_per_pool_overrides(str(path))
