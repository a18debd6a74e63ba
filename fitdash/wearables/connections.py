"""User-initiated credential operations: connect, disconnect, status.

These are the only wearable operations allowed to fail hard; every failure
surfaces as ``IntegrationError`` so the HTTP layer can report it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Mapping
from uuid import UUID

from fitdash.wearables.base import Credential, Provider
from fitdash.wearables.errors import (
    IntegrationError,
    PersistenceError,
    WearableError,
)
from fitdash.wearables.lifecycle import CredentialState, ensure_transition
from fitdash.wearables.oauth import ProviderOAuthClient
from fitdash.wearables.store import CredentialStore

logger = logging.getLogger("fitdash.wearables.connections")

USER_DISCONNECT = "user_disconnect"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AuthorizationRequest:
    """Everything the HTTP layer needs to send the user to the consent page.

    ``state`` and ``code_verifier`` must be kept (cookie) until the callback.
    """

    provider: Provider
    url: str
    state: str
    code_verifier: str | None = None


@dataclass
class ConnectionInfo:
    provider: Provider
    display_name: str
    connected: bool
    connected_at: datetime | None = None
    last_sync_at: datetime | None = None
    token_expires_at: datetime | None = None
    provider_user_id: str | None = None


class IntegrationService:
    """Connect and disconnect providers for a user."""

    def __init__(
        self,
        credentials: CredentialStore,
        oauth_clients: Mapping[Provider, ProviderOAuthClient],
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._credentials = credentials
        self._clients = oauth_clients
        self._clock = clock

    def _client(self, provider: Provider) -> ProviderOAuthClient:
        client = self._clients.get(provider)
        if client is None or not client.configured:
            raise IntegrationError(f"{provider.display_name} integration is not configured")
        return client

    def begin_connection(self, provider: Provider) -> AuthorizationRequest:
        """Build the authorization URL with a fresh state (and PKCE verifier)."""
        client = self._client(provider)
        state = client.new_state()
        verifier = client.new_code_verifier() if client.endpoints.use_pkce else None
        url = client.authorization_url(state, verifier)
        logger.info("Starting %s authorization", provider.value)
        return AuthorizationRequest(provider=provider, url=url, state=state, code_verifier=verifier)

    async def complete_connection(
        self,
        user_id: UUID,
        provider: Provider,
        code: str,
        code_verifier: str | None = None,
    ) -> Credential:
        """Exchange the callback code and store a new active credential.

        Raises:
            IntegrationError: Exchange or storage failed.
        """
        client = self._client(provider)
        if client.endpoints.use_pkce and not code_verifier:
            raise IntegrationError(f"{provider.display_name} callback is missing its PKCE verifier")

        try:
            tokens = await client.exchange_code(code, code_verifier)
        except WearableError as exc:
            logger.warning("%s code exchange failed for user %s: %s", provider.value, user_id, exc)
            raise IntegrationError(
                f"Could not complete {provider.display_name} authorization"
            ) from exc

        provider_user_id = None
        try:
            provider_user_id = await client.fetch_profile_id(tokens.access_token)
        except WearableError as exc:
            # Best-effort: the connection is usable without the provider's account id
            logger.warning("%s profile lookup failed for user %s: %s", provider.value, user_id, exc)

        ensure_transition(CredentialState.DISCONNECTED, CredentialState.CONNECTED)
        try:
            credential = await self._credentials.save_connection(
                user_id,
                provider,
                tokens,
                provider_user_id=provider_user_id,
                now=self._clock(),
            )
        except PersistenceError as exc:
            raise IntegrationError(f"Could not save {provider.display_name} connection") from exc
        logger.info("Connected %s for user %s", provider.value, user_id)
        return credential

    async def disconnect(self, user_id: UUID, provider: Provider) -> bool:
        """Revoke (where supported) and soft-delete the active credential.

        Returns False when nothing was connected.

        Raises:
            IntegrationError: The credential could not be deactivated.
        """
        try:
            credential = await self._credentials.get_active(user_id, provider)
        except PersistenceError as exc:
            raise IntegrationError(f"Could not load {provider.display_name} connection") from exc
        if credential is None:
            return False

        ensure_transition(credential.state, CredentialState.DISCONNECTED)
        client = self._clients.get(provider)
        if client is not None and client.supports_revocation and client.configured:
            try:
                await client.revoke(credential.access_token)
            except WearableError as exc:
                logger.warning(
                    "%s token revocation failed for user %s: %s", provider.value, user_id, exc
                )

        try:
            deactivated = await self._credentials.deactivate(
                credential, reason=USER_DISCONNECT, now=self._clock()
            )
        except PersistenceError as exc:
            raise IntegrationError(f"Could not disconnect {provider.display_name}") from exc
        logger.info("Disconnected %s for user %s", provider.value, user_id)
        return deactivated

    async def connection_status(self, user_id: UUID) -> list[ConnectionInfo]:
        """One entry per supported provider, connected or not."""
        active = await self._credentials.list_active(user_id)
        out = []
        for provider in Provider:
            credential = active.get(provider)
            if credential is None:
                out.append(ConnectionInfo(provider, provider.display_name, connected=False))
                continue
            out.append(
                ConnectionInfo(
                    provider=provider,
                    display_name=provider.display_name,
                    connected=True,
                    connected_at=credential.connected_at,
                    last_sync_at=credential.last_sync_at,
                    token_expires_at=credential.token_expires_at,
                    provider_user_id=credential.provider_user_id,
                )
            )
        return out
