"""Token Refresh Manager.

Hands out a currently-valid access token for a (user, provider) pair,
refreshing through the provider's token endpoint when the stored token is
inside the refresh margin.  The manager is the only writer of token fields
and never touches ``last_sync_at``.

Concurrency:
    - Within a process, refreshes for the same (user, provider) are
      single-flighted by a per-key ``asyncio.Lock``.  The credential is
      re-read inside the lock so a waiter reuses the winner's token.
    - Across processes, ``CredentialStore.update_tokens`` is a conditional
      update.  A lost update re-reads and returns the committed token.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Mapping
from uuid import UUID

from fitdash.wearables.base import Credential, Provider
from fitdash.wearables.errors import (
    PersistenceError,
    ProviderConfigurationError,
    SyncErrorKind,
    TokenExpiredUnrecoverable,
    WearableError,
)
from fitdash.wearables.lifecycle import CredentialState, ensure_transition
from fitdash.wearables.oauth import ProviderOAuthClient
from fitdash.wearables.store import CredentialStore

logger = logging.getLogger("fitdash.wearables.tokens")

REFRESH_FAILED = "refresh_failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TokenResult:
    """Typed outcome of ``TokenManager.acquire``.

    Exactly one of ``access_token`` / ``error_kind`` is set.
    """

    access_token: str | None = None
    credential: Credential | None = None
    error_kind: SyncErrorKind | None = None
    detail: str | None = None
    refreshed: bool = False

    @property
    def ok(self) -> bool:
        return self.access_token is not None

    @classmethod
    def success(cls, credential: Credential, *, refreshed: bool = False) -> "TokenResult":
        return cls(
            access_token=credential.access_token, credential=credential, refreshed=refreshed
        )

    @classmethod
    def failure(
        cls,
        kind: SyncErrorKind,
        detail: str | None = None,
        credential: Credential | None = None,
    ) -> "TokenResult":
        return cls(error_kind=kind, detail=detail or kind.value, credential=credential)


class TokenManager:
    """Supply valid access tokens, refreshing and invalidating as needed.

    Args:
        credentials:            The Token Store.
        oauth_clients:          Provider -> token-endpoint client.
        refresh_margin_seconds: Refresh this long before the stored expiry.
        clock:                  Returns the current aware UTC time.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        oauth_clients: Mapping[Provider, ProviderOAuthClient],
        *,
        refresh_margin_seconds: int = 300,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._credentials = credentials
        self._clients = oauth_clients
        self._margin = refresh_margin_seconds
        self._clock = clock
        self._locks: weakref.WeakValueDictionary[tuple[UUID, Provider], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    async def get_valid_token(self, user_id: UUID, provider: Provider) -> str | None:
        """Return a valid access token, or None when the provider cannot be used."""
        result = await self.acquire(user_id, provider)
        return result.access_token

    async def acquire(
        self,
        user_id: UUID,
        provider: Provider,
        rejected_token: str | None = None,
    ) -> TokenResult:
        """Return a valid token or the reason there is none.

        Args:
            user_id:        Internal Fitdash user UUID.
            provider:       Provider to acquire for.
            rejected_token: A token a data API just answered 401 to.  A stored
                            token equal to it is treated as stale.

        Raises:
            ProviderConfigurationError: Client credentials are missing or refused.
        """
        try:
            credential = await self._credentials.get_active(user_id, provider)
        except PersistenceError as exc:
            return TokenResult.failure(SyncErrorKind.PERSISTENCE, str(exc))
        if credential is None:
            return TokenResult.failure(SyncErrorKind.NOT_CONNECTED)
        if not self._is_stale(credential, rejected_token):
            return TokenResult.success(credential)

        # Shielded: the provider may have rotated the pair before it is committed
        return await asyncio.shield(self._refresh_locked(user_id, provider, rejected_token))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _refresh_locked(
        self, user_id: UUID, provider: Provider, rejected_token: str | None
    ) -> TokenResult:
        async with self._lock_for(user_id, provider):
            # Another task may have refreshed while we waited
            try:
                credential = await self._credentials.get_active(user_id, provider)
            except PersistenceError as exc:
                return TokenResult.failure(SyncErrorKind.PERSISTENCE, str(exc))
            if credential is None:
                return TokenResult.failure(SyncErrorKind.NOT_CONNECTED)
            if not self._is_stale(credential, rejected_token):
                return TokenResult.success(credential)
            return await self._refresh(credential)

    def _lock_for(self, user_id: UUID, provider: Provider) -> asyncio.Lock:
        key = (user_id, provider)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _is_stale(self, credential: Credential, rejected_token: str | None) -> bool:
        if rejected_token is not None and credential.access_token == rejected_token:
            return True
        return credential.needs_refresh(self._clock(), self._margin)

    async def _refresh(self, credential: Credential) -> TokenResult:
        provider = credential.provider
        state = ensure_transition(credential.state, CredentialState.REFRESHING)

        if not credential.refresh_token:
            logger.warning(
                "%s token for user %s expired with no refresh token",
                provider.value, credential.user_id,
            )
            ensure_transition(state, CredentialState.DISCONNECTED)
            return await self._invalidate(credential, "no refresh token stored")

        client = self._clients.get(provider)
        if client is None:
            raise ProviderConfigurationError(
                f"No OAuth client configured for {provider.value}", provider=provider.value
            )

        logger.info("Refreshing %s token for user %s", provider.value, credential.user_id)
        try:
            tokens = await client.refresh(credential.refresh_token)
        except TokenExpiredUnrecoverable as exc:
            ensure_transition(state, CredentialState.DISCONNECTED)
            return await self._invalidate(credential, str(exc))
        except ProviderConfigurationError:
            raise
        except WearableError as exc:
            # Transient, rate-limited or malformed: leave the credential as is
            logger.warning(
                "%s token refresh for user %s failed (%s), credential untouched",
                provider.value, credential.user_id, exc.kind.value,
            )
            return TokenResult.failure(exc.kind, str(exc), credential)

        ensure_transition(state, CredentialState.CONNECTED)
        try:
            updated = await self._credentials.update_tokens(credential, tokens)
        except PersistenceError as exc:
            return TokenResult.failure(SyncErrorKind.PERSISTENCE, str(exc), credential)

        if updated is None:
            # Lost the conditional update: another writer committed first
            logger.info(
                "%s refresh for user %s lost to a concurrent writer, using committed token",
                provider.value, credential.user_id,
            )
            try:
                winner = await self._credentials.get_active(credential.user_id, provider)
            except PersistenceError as exc:
                return TokenResult.failure(SyncErrorKind.PERSISTENCE, str(exc))
            if winner is None:
                return TokenResult.failure(SyncErrorKind.NOT_CONNECTED)
            return TokenResult.success(winner)

        logger.info(
            "Refreshed %s token for user %s (expires %s)",
            provider.value, credential.user_id, updated.token_expires_at,
        )
        return TokenResult.success(updated, refreshed=True)

    async def _invalidate(self, credential: Credential, detail: str) -> TokenResult:
        try:
            await self._credentials.deactivate(
                credential, reason=REFRESH_FAILED, now=self._clock()
            )
        except PersistenceError:
            logger.error(
                "Could not deactivate %s credential %s after refresh failure",
                credential.provider.value, credential.id,
            )
        return TokenResult.failure(
            SyncErrorKind.TOKEN_EXPIRED_UNRECOVERABLE, detail, credential
        )
