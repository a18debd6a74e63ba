"""Tests for sync_config.yaml loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from fitdash.wearables.config_loader import (
    ConfigValidationError,
    ProviderConfig,
    SyncConfig,
    _validate_and_build,
    get_sync_config,
    load_sync_config,
    reload_sync_config,
)


class TestConfigLoading:
    """Tests for loading the bundled sync_config.yaml."""

    def test_load_default_config(self, sync_config: SyncConfig) -> None:
        assert sync_config.version == "1.0"
        assert set(sync_config.providers) == {"whoop", "oura", "fitbit", "garmin"}

    def test_refresh_margin(self, sync_config: SyncConfig) -> None:
        assert sync_config.tokens.refresh_margin_seconds == 300

    def test_sync_defaults(self, sync_config: SyncConfig) -> None:
        assert sync_config.sync.default_lookback_days == 30
        assert sync_config.sync.max_range_days == 365
        assert sync_config.sync.default_lookback_days <= sync_config.sync.max_range_days

    def test_provider_token_ttls(self, sync_config: SyncConfig) -> None:
        """Fallback lifetimes used when a token response omits expires_in."""
        assert sync_config.provider("whoop").default_token_ttl_seconds == 3600
        assert sync_config.provider("fitbit").default_token_ttl_seconds == 28800
        assert sync_config.provider("oura").default_token_ttl_seconds == 86400

    def test_whoop_page_size_within_api_limit(self, sync_config: SyncConfig) -> None:
        assert sync_config.provider("whoop").page_size <= 25

    def test_garmin_uses_one_day_windows(self, sync_config: SyncConfig) -> None:
        assert sync_config.provider("garmin").window_days == 1

    def test_unknown_provider_gets_defaults(self, sync_config: SyncConfig) -> None:
        assert sync_config.provider("polar") == ProviderConfig()

    def test_get_sync_config_is_cached(self) -> None:
        assert get_sync_config() is get_sync_config()


class TestConfigValidation:
    """Tests for config validation logic."""

    def test_valid_minimal_config(self) -> None:
        config = _validate_and_build({"version": "1.0"})
        assert config.version == "1.0"
        assert config.providers == {}
        assert config.tokens.refresh_margin_seconds == 300

    def test_zero_margin_allowed(self) -> None:
        config = _validate_and_build({"tokens": {"refresh_margin_seconds": 0}})
        assert config.tokens.refresh_margin_seconds == 0

    def test_negative_margin_raises(self) -> None:
        with pytest.raises(ConfigValidationError, match="refresh_margin_seconds"):
            _validate_and_build({"tokens": {"refresh_margin_seconds": -5}})

    def test_non_numeric_timeout_raises(self) -> None:
        with pytest.raises(ConfigValidationError, match="provider_timeout_seconds"):
            _validate_and_build({"sync": {"provider_timeout_seconds": "slow"}})

    def test_lookback_longer_than_max_range_raises(self) -> None:
        raw = {"sync": {"default_lookback_days": 400, "max_range_days": 365}}
        with pytest.raises(ConfigValidationError, match="default_lookback_days"):
            _validate_and_build(raw)

    def test_provider_must_be_mapping(self) -> None:
        with pytest.raises(ConfigValidationError, match="providers.whoop"):
            _validate_and_build({"providers": {"whoop": 25}})

    def test_zero_page_size_raises(self) -> None:
        with pytest.raises(ConfigValidationError, match="page_size"):
            _validate_and_build({"providers": {"whoop": {"page_size": 0}}})

    def test_errors_are_collected(self) -> None:
        raw = {
            "sync": {"max_concurrent_providers": 0},
            "http": {"timeout_seconds": -1},
        }
        with pytest.raises(ConfigValidationError, match="2 validation error"):
            _validate_and_build(raw)

    def test_hot_reload(self, tmp_path: Path) -> None:
        """reload_sync_config() should replace the global singleton."""
        config_file = tmp_path / "sync_config.yaml"
        config_file.write_text(
            'version: "2.0-test"\n'
            "tokens:\n"
            "  refresh_margin_seconds: 60\n"
            "providers:\n"
            "  whoop:\n"
            "    default_token_ttl_seconds: 1800\n"
        )
        try:
            new_config = reload_sync_config(path=config_file)
            assert new_config.version == "2.0-test"
            assert get_sync_config() is new_config
            assert get_sync_config().provider("whoop").default_token_ttl_seconds == 1800
        finally:
            reload_sync_config()

    def test_failed_reload_keeps_old_config(self, tmp_path: Path) -> None:
        before = get_sync_config()
        config_file = tmp_path / "sync_config.yaml"
        config_file.write_text("tokens:\n  refresh_margin_seconds: -1\n")
        with pytest.raises(ConfigValidationError):
            reload_sync_config(path=config_file)
        assert get_sync_config() is before

    def test_malformed_yaml_raises(self, tmp_path: Path) -> None:
        config_file = tmp_path / "sync_config.yaml"
        config_file.write_text("tokens: [unclosed\n")
        with pytest.raises(ConfigValidationError, match="YAML parse error"):
            load_sync_config(path=config_file)

    def test_load_nonexistent_file_raises(self) -> None:
        with pytest.raises(FileNotFoundError):
            load_sync_config(path=Path("/nonexistent/path/config.yaml"))
