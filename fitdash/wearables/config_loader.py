"""Load, validate, and hot-reload the wearable sync configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk after an operator edit; no restart required.

Usage::

    from fitdash.wearables.config_loader import get_sync_config

    config = get_sync_config()
    margin = config.tokens.refresh_margin_seconds      # 300
    ttl = config.provider("fitbit").default_token_ttl_seconds  # 28800
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("fitdash.wearables.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class SyncSettings:
    """Orchestrator-level settings."""

    default_lookback_days: int = 30
    max_range_days: int = 365
    provider_timeout_seconds: float = 90.0
    max_concurrent_providers: int = 4


@dataclass
class TokenSettings:
    """Refresh Manager settings."""

    refresh_margin_seconds: int = 300


@dataclass
class ProviderConfig:
    """Per-provider fetch and token settings."""

    default_token_ttl_seconds: int = 3600
    page_size: int = 25
    max_pages: int = 100
    window_days: int = 30


@dataclass
class SyncConfig:
    """Complete, validated sync configuration.

    Attributes:
        version:              Config schema version string.
        sync:                 Orchestrator settings.
        tokens:               Token refresh settings.
        http_timeout_seconds: Default timeout for provider HTTP calls.
        providers:            Provider slug -> ProviderConfig.
    """

    version: str
    sync: SyncSettings
    tokens: TokenSettings
    http_timeout_seconds: float
    providers: dict[str, ProviderConfig]
    _raw: dict = field(default_factory=dict, repr=False)

    def provider(self, slug: str) -> ProviderConfig:
        """Return the settings for a provider, falling back to defaults."""
        return self.providers.get(slug, ProviderConfig())


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            data = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigValidationError(f"{path} must contain a mapping at the top level")
    return data


def _positive(
    section: dict, key: str, default: Any, cast: type, where: str, errors: list[str]
) -> Any:
    value = section.get(key, default)
    try:
        converted = cast(value)
    except (TypeError, ValueError):
        errors.append(f"{where}.{key} must be a number, got {value!r}")
        return default
    if converted <= 0:
        errors.append(f"{where}.{key} must be > 0, got {converted}")
        return default
    return converted


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Raises:
        ConfigValidationError: If any value is missing its expected type or range.
    """
    errors: list[str] = []

    version = str(raw.get("version", "1.0"))

    # ── Orchestrator ──
    s_raw = raw.get("sync") or {}
    sync = SyncSettings(
        default_lookback_days=_positive(s_raw, "default_lookback_days", 30, int, "sync", errors),
        max_range_days=_positive(s_raw, "max_range_days", 365, int, "sync", errors),
        provider_timeout_seconds=_positive(
            s_raw, "provider_timeout_seconds", 90.0, float, "sync", errors
        ),
        max_concurrent_providers=_positive(
            s_raw, "max_concurrent_providers", 4, int, "sync", errors
        ),
    )
    if sync.default_lookback_days > sync.max_range_days:
        errors.append("sync.default_lookback_days may not exceed sync.max_range_days")

    # ── Tokens ──
    t_raw = raw.get("tokens") or {}
    margin = t_raw.get("refresh_margin_seconds", 300)
    try:
        margin = int(margin)
        if margin < 0:
            errors.append("tokens.refresh_margin_seconds must be >= 0")
    except (TypeError, ValueError):
        errors.append(f"tokens.refresh_margin_seconds must be a number, got {margin!r}")
        margin = 300
    tokens = TokenSettings(refresh_margin_seconds=margin)

    # ── HTTP ──
    h_raw = raw.get("http") or {}
    http_timeout = _positive(h_raw, "timeout_seconds", 20.0, float, "http", errors)

    # ── Providers ──
    providers: dict[str, ProviderConfig] = {}
    p_raw = raw.get("providers") or {}
    if not isinstance(p_raw, dict):
        errors.append("'providers' must be a mapping of provider -> settings")
        p_raw = {}
    for slug, cfg in p_raw.items():
        if not isinstance(cfg, dict):
            errors.append(f"providers.{slug} must be a mapping")
            continue
        where = f"providers.{slug}"
        defaults = ProviderConfig()
        providers[slug] = ProviderConfig(
            default_token_ttl_seconds=_positive(
                cfg, "default_token_ttl_seconds", defaults.default_token_ttl_seconds,
                int, where, errors,
            ),
            page_size=_positive(cfg, "page_size", defaults.page_size, int, where, errors),
            max_pages=_positive(cfg, "max_pages", defaults.max_pages, int, where, errors),
            window_days=_positive(cfg, "window_days", defaults.window_days, int, where, errors),
        )

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        sync=sync,
        tokens=tokens,
        http_timeout_seconds=http_timeout,
        providers=providers,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig, loading it on first call.

    Thread-safe.  Use ``reload_sync_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
