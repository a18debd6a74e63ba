"""Wire the wearable services together from settings and shared resources.

Nothing in the wearable core is a module-level singleton: the database
handle, HTTP client and clock are created by the app lifespan and passed in
here, which makes every collaborator replaceable in tests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import httpx

from fitdash.config import Settings
from fitdash.services.database import Database
from fitdash.wearables.adapters import get_adapter
from fitdash.wearables.base import Provider, ProviderAdapter
from fitdash.wearables.config_loader import SyncConfig, get_sync_config, load_sync_config
from fitdash.wearables.connections import IntegrationService
from fitdash.wearables.oauth import ProviderOAuthClient
from fitdash.wearables.store import CredentialStore, MetricStore, SyncStatusStore
from fitdash.wearables.sync.orchestrator import SyncOrchestrator
from fitdash.wearables.tokens import TokenManager

logger = logging.getLogger("fitdash.wearables.container")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class WearableServices:
    """Every wearable service, built once per process."""

    config: SyncConfig
    credentials: CredentialStore
    metrics: MetricStore
    statuses: SyncStatusStore
    tokens: TokenManager
    orchestrator: SyncOrchestrator
    integrations: IntegrationService


def resolve_sync_config(settings: Settings) -> SyncConfig:
    if settings.sync_config_path:
        return load_sync_config(Path(settings.sync_config_path))
    return get_sync_config()


def build_oauth_clients(
    settings: Settings,
    config: SyncConfig,
    http_client: httpx.AsyncClient | None,
    clock: Callable[[], datetime],
) -> dict[Provider, ProviderOAuthClient]:
    clients: dict[Provider, ProviderOAuthClient] = {}
    for provider in Provider:
        client_id, client_secret = settings.client_credentials(provider.value)
        if not (client_id and client_secret):
            logger.info("%s OAuth client not configured", provider.value)
        clients[provider] = ProviderOAuthClient(
            provider,
            client_id,
            client_secret,
            settings.redirect_uri(provider.value),
            http_client=http_client,
            default_ttl_seconds=config.provider(provider.value).default_token_ttl_seconds,
            timeout_seconds=config.http_timeout_seconds,
            clock=clock,
        )
    return clients


def adapter_factory(
    config: SyncConfig, http_client: httpx.AsyncClient | None
) -> Callable[[Provider], ProviderAdapter]:
    """Return a callable that builds a configured adapter for a provider."""

    def build(provider: Provider) -> ProviderAdapter:
        tuning = config.provider(provider.value)
        return get_adapter(provider)(
            http_client,
            page_size=tuning.page_size,
            max_pages=tuning.max_pages,
            window_days=tuning.window_days,
            timeout_seconds=config.http_timeout_seconds,
        )

    return build


def build_wearable_services(
    settings: Settings,
    db: Database,
    http_client: httpx.AsyncClient | None,
    *,
    config: SyncConfig | None = None,
    clock: Callable[[], datetime] = _utcnow,
) -> WearableServices:
    config = config or resolve_sync_config(settings)
    credentials = CredentialStore(db)
    metrics = MetricStore(db)
    statuses = SyncStatusStore(db)
    oauth_clients = build_oauth_clients(settings, config, http_client, clock)

    tokens = TokenManager(
        credentials,
        oauth_clients,
        refresh_margin_seconds=config.tokens.refresh_margin_seconds,
        clock=clock,
    )
    orchestrator = SyncOrchestrator(
        credentials,
        metrics,
        statuses,
        tokens,
        adapter_factory=adapter_factory(config, http_client),
        default_lookback_days=config.sync.default_lookback_days,
        max_range_days=config.sync.max_range_days,
        provider_timeout_seconds=config.sync.provider_timeout_seconds,
        max_concurrent_providers=config.sync.max_concurrent_providers,
        clock=clock,
    )
    integrations = IntegrationService(credentials, oauth_clients, clock=clock)
    return WearableServices(
        config=config,
        credentials=credentials,
        metrics=metrics,
        statuses=statuses,
        tokens=tokens,
        orchestrator=orchestrator,
        integrations=integrations,
    )
