"""Sync Orchestrator: pull every connected provider for one user.

Workflow per sync call:
1. Discover the user's active credentials
2. Per provider, concurrently and under its own timeout:
   a. Acquire a valid token (refreshing if needed)
   b. Fetch and normalize recovery / sleep / activity
   c. On a 401 from the data API, re-acquire once and retry
   d. Upsert the normalized rows and touch ``last_sync_at``
3. Write one Sync Status Record per provider
4. Return the per-provider outcome map

Providers never share a transaction; one provider failing or timing out
cannot roll back or abort another.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable
from uuid import UUID

from fitdash.wearables.adapters import get_adapter
from fitdash.wearables.base import (
    DateRange,
    FETCH_FAMILIES,
    FetchResult,
    Provider,
    ProviderAdapter,
    SyncStatusRecord,
)
from fitdash.wearables.errors import PersistenceError, SyncErrorKind, WearableError
from fitdash.wearables.store import CredentialStore, MetricStore, SyncStatusStore
from fitdash.wearables.tokens import TokenManager, TokenResult

logger = logging.getLogger("fitdash.wearables.sync.orchestrator")

SUCCESS = "success"
PARTIAL = "partial"
SKIPPED = "skipped"
FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _label(status: str, kind: SyncErrorKind | None) -> str:
    if status in (SUCCESS, PARTIAL):
        return status
    if kind is SyncErrorKind.NOT_CONNECTED:
        return "skipped: not connected"
    if kind is SyncErrorKind.TOKEN_EXPIRED_UNRECOVERABLE:
        return "failed: reconnect required"
    if kind is not None and kind.retryable:
        return "failed: retryable"
    return "failed"


@dataclass
class ProviderOutcome:
    """Result of syncing one provider.

    Attributes:
        provider:       Provider enum.
        status:         'success' | 'partial' | 'skipped' | 'failed'.
        label:          Caller-facing label, e.g. 'failed: retryable'.
        error_kind:     Classified error for anything short of success.
        retryable:      True when a later sync cycle may succeed unchanged.
        records_synced: Rows upserted for this provider.
        detail:         Short human-readable detail (never contains tokens).
    """

    provider: Provider
    status: str
    label: str
    error_kind: SyncErrorKind | None = None
    retryable: bool = False
    records_synced: int = 0
    detail: str | None = None

    @classmethod
    def build(
        cls,
        provider: Provider,
        status: str,
        *,
        kind: SyncErrorKind | None = None,
        records: int = 0,
        detail: str | None = None,
    ) -> "ProviderOutcome":
        return cls(
            provider=provider,
            status=status,
            label=_label(status, kind),
            error_kind=kind,
            retryable=bool(kind and kind.retryable),
            records_synced=records,
            detail=detail,
        )

    @classmethod
    def failed(
        cls, provider: Provider, kind: SyncErrorKind, detail: str | None = None
    ) -> "ProviderOutcome":
        status = SKIPPED if kind is SyncErrorKind.NOT_CONNECTED else FAILED
        return cls.build(provider, status, kind=kind, detail=detail or kind.value)

    def to_status_record(self, now: datetime) -> SyncStatusRecord:
        if self.status in (SUCCESS, PARTIAL):
            outcome = self.status
        else:
            outcome = "failure"
        return SyncStatusRecord(
            provider=self.provider,
            last_attempt_at=now,
            outcome=outcome,
            last_success_at=now if self.status == SUCCESS else None,
            error_kind=self.error_kind.value if self.error_kind else None,
            error_detail=self.detail,
            records_synced=self.records_synced,
        )


def _default_adapter_factory(provider: Provider) -> ProviderAdapter:
    return get_adapter(provider)()


class SyncOrchestrator:
    """Sync every connected provider for a user.

    Usage::

        orchestrator = SyncOrchestrator(credentials, metrics, statuses, tokens)
        outcomes = await orchestrator.sync_all_data_for_user(user_id)
        outcomes[Provider.WHOOP].label  # "success"
    """

    def __init__(
        self,
        credentials: CredentialStore,
        metrics: MetricStore,
        statuses: SyncStatusStore,
        tokens: TokenManager,
        *,
        adapter_factory: Callable[[Provider], ProviderAdapter] = _default_adapter_factory,
        default_lookback_days: int = 30,
        max_range_days: int = 365,
        provider_timeout_seconds: float = 90.0,
        max_concurrent_providers: int = 4,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._credentials = credentials
        self._metrics = metrics
        self._statuses = statuses
        self._tokens = tokens
        self._adapter_factory = adapter_factory
        self._lookback = default_lookback_days
        self._max_range_days = max_range_days
        self._timeout = provider_timeout_seconds
        self._max_concurrent = max_concurrent_providers
        self._clock = clock

    def default_range(self) -> DateRange:
        return DateRange.trailing(self._lookback, self._clock().date())

    def validate_range(self, date_range: DateRange) -> None:
        """Raise ValueError when a requested range is larger than allowed."""
        if date_range.days() > self._max_range_days:
            raise ValueError(
                f"date range spans {date_range.days()} days; the maximum is {self._max_range_days}"
            )

    async def sync_status(self, user_id: UUID) -> list[SyncStatusRecord]:
        return await self._statuses.for_user(user_id)

    async def sync_all_data_for_user(
        self, user_id: UUID, date_range: DateRange | None = None
    ) -> dict[Provider, ProviderOutcome]:
        """Sync every connected provider and return the per-provider outcome map.

        Never raises for provider failures; each becomes that provider's outcome.

        Raises:
            ValueError: If ``date_range`` exceeds the configured maximum.
            PersistenceError: If the connected providers cannot be listed.
        """
        date_range = date_range or self.default_range()
        self.validate_range(date_range)

        credentials = await self._credentials.list_active(user_id)

        providers = list(credentials)
        if not providers:
            logger.info("Sync for user %s: no connected providers", user_id)
            return {}

        logger.info(
            "Sync for user %s: %s over %s..%s",
            user_id, [p.value for p in providers], date_range.start, date_range.end,
        )
        semaphore = asyncio.Semaphore(self._max_concurrent)
        results = await asyncio.gather(
            *(self._run_provider(user_id, p, date_range, semaphore) for p in providers),
            return_exceptions=True,
        )

        outcomes: dict[Provider, ProviderOutcome] = {}
        for provider, result in zip(providers, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Sync for user %s/%s raised %s: %s",
                    user_id, provider.value, result.__class__.__name__, result,
                )
                result = ProviderOutcome.failed(
                    provider, SyncErrorKind.PROVIDER_ERROR, f"unexpected {result.__class__.__name__}"
                )
            outcomes[provider] = result

        await self._record_statuses(user_id, outcomes)

        logger.info(
            "Sync for user %s complete: %s",
            user_id, {p.value: o.label for p, o in outcomes.items()},
        )
        return outcomes

    # ------------------------------------------------------------------
    # Per provider
    # ------------------------------------------------------------------

    async def _run_provider(
        self,
        user_id: UUID,
        provider: Provider,
        date_range: DateRange,
        semaphore: asyncio.Semaphore,
    ) -> ProviderOutcome:
        async with semaphore:
            try:
                return await asyncio.wait_for(
                    self._sync_provider(user_id, provider, date_range), self._timeout
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Sync for user %s/%s timed out after %.0fs",
                    user_id, provider.value, self._timeout,
                )
                return ProviderOutcome.failed(
                    provider,
                    SyncErrorKind.TRANSIENT_NETWORK,
                    f"timed out after {self._timeout:.0f}s",
                )
            except WearableError as exc:
                logger.warning(
                    "Sync for user %s/%s failed: %s", user_id, provider.value, exc.kind.value
                )
                return ProviderOutcome.failed(provider, exc.kind, str(exc))

    async def _sync_provider(
        self, user_id: UUID, provider: Provider, date_range: DateRange
    ) -> ProviderOutcome:
        token = await self._tokens.acquire(user_id, provider)
        if not token.ok:
            return self._token_outcome(provider, token)

        adapter = self._adapter_factory(provider)
        result = await adapter.fetch_all(token.access_token, date_range)

        if result.auth_rejected:
            logger.info(
                "%s rejected the token for user %s, re-acquiring once",
                provider.value, user_id,
            )
            token = await self._tokens.acquire(
                user_id, provider, rejected_token=token.access_token
            )
            if not token.ok:
                return self._token_outcome(provider, token)
            result = await adapter.fetch_all(token.access_token, date_range)

        try:
            written = await self._metrics.upsert_many(
                user_id, result.records, synced_at=self._clock()
            )
        except PersistenceError as exc:
            return ProviderOutcome.failed(provider, SyncErrorKind.PERSISTENCE, str(exc))

        outcome = self._fetch_outcome(provider, result, written)
        if outcome.status in (SUCCESS, PARTIAL) and token.credential is not None:
            try:
                await self._credentials.touch_last_sync(token.credential, self._clock())
            except PersistenceError:
                # rows are committed; a stale last_sync_at is cosmetic
                logger.warning("Could not touch last_sync_at for user %s/%s", user_id, provider.value)
        return outcome

    @staticmethod
    def _token_outcome(provider: Provider, token: TokenResult) -> ProviderOutcome:
        kind = token.error_kind or SyncErrorKind.PROVIDER_ERROR
        return ProviderOutcome.failed(provider, kind, token.detail)

    @staticmethod
    def _fetch_outcome(provider: Provider, result: FetchResult, written: int) -> ProviderOutcome:
        if result.complete:
            return ProviderOutcome.build(provider, SUCCESS, records=written)

        error = result.halted
        if error is None:
            error = next(
                (result.failures[f] for f in FETCH_FAMILIES if f in result.failures), None
            )
        kind = error.kind if error is not None else SyncErrorKind.MALFORMED_PAYLOAD
        parts = [f"{family}: {result.failures[family].kind.value}" for family in result.failures]
        if result.skipped:
            parts.append(f"{result.skipped} payload item(s) skipped")
        detail = "; ".join(parts)

        if result.completed or written:
            return ProviderOutcome.build(
                provider, PARTIAL, kind=kind, records=written, detail=detail
            )
        return ProviderOutcome.failed(provider, kind, detail)

    async def _record_statuses(
        self, user_id: UUID, outcomes: dict[Provider, ProviderOutcome]
    ) -> None:
        now = self._clock()
        for provider, outcome in outcomes.items():
            try:
                await self._statuses.upsert(user_id, outcome.to_status_record(now))
            except PersistenceError as exc:
                logger.error(
                    "Could not record sync status for user %s/%s: %s",
                    user_id, provider.value, exc,
                )
