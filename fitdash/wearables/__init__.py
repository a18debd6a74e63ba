"""Fitdash wearable integrations.

Connects users to Whoop, Oura, Fitbit and Garmin over OAuth, keeps their
tokens fresh, and pulls recovery, sleep and activity data into one
normalized table.

Subpackages:
    adapters/ — Provider-specific API adapters (Whoop, Oura, Fitbit, Garmin)
    sync/     — Sync orchestrator and upsert/dedup helpers

Core modules:
    base          — ProviderAdapter ABC and canonical data models
    errors        — Sync error taxonomy and HTTP error classification
    lifecycle     — Credential state machine
    oauth         — Per-provider OAuth client (authorize, exchange, refresh, revoke)
    store         — asyncpg-backed credential, metric and sync-status stores
    tokens        — Token Refresh Manager (single-flight refresh)
    connections   — Connect / disconnect / connection status
    config_loader — Load and validate sync_config.yaml
"""

from fitdash.wearables.base import (
    Credential,
    DateRange,
    MetricType,
    NormalizedMetricRecord,
    OAuthTokens,
    Provider,
    ProviderAdapter,
    SyncStatusRecord,
)
from fitdash.wearables.config_loader import SyncConfig, get_sync_config
from fitdash.wearables.errors import SyncErrorKind, WearableError

__all__ = [
    "ProviderAdapter",
    "Provider",
    "MetricType",
    "DateRange",
    "Credential",
    "OAuthTokens",
    "NormalizedMetricRecord",
    "SyncStatusRecord",
    "SyncErrorKind",
    "WearableError",
    "SyncConfig",
    "get_sync_config",
]
