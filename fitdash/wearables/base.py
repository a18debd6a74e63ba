"""Base classes and canonical data models for the Fitdash wearable sync core.

Every provider adapter must subclass ProviderAdapter and return canonical
NormalizedMetricRecord rows.  These types are the single source of truth
consumed by the token manager, the sync orchestrator, the stores and the API
layer.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Iterator, Mapping
from uuid import UUID

import httpx

from fitdash.wearables.errors import (
    MalformedProviderPayload,
    ProviderAuthRejected,
    RateLimited,
    WearableError,
    classify_transport_error,
    raise_for_data_response,
)
from fitdash.wearables.lifecycle import CredentialState

logger = logging.getLogger("fitdash.wearables")


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Provider(str, Enum):
    """Supported wearable providers."""

    WHOOP = "whoop"
    OURA = "oura"
    FITBIT = "fitbit"
    GARMIN = "garmin"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES = {
    Provider.WHOOP: "WHOOP",
    Provider.OURA: "Oura Ring",
    Provider.FITBIT: "Fitbit",
    Provider.GARMIN: "Garmin Connect",
}


class MetricType(str, Enum):
    RECOVERY = "recovery"
    SLEEP = "sleep"
    ACTIVITY = "activity"
    WORKOUT = "workout"


#: record_key used by the once-per-day metric types.
DAILY_RECORD_KEY = "daily"

#: Fetch families, in the order fetch_all runs them.
FETCH_FAMILIES: tuple[str, ...] = ("recovery", "sleep", "activity")


# ---------------------------------------------------------------------------
# Date ranges
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DateRange:
    """Inclusive range of calendar dates (UTC)."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"end_date {self.end} is before start_date {self.start}")

    @classmethod
    def trailing(cls, days: int, today: date) -> "DateRange":
        """Return the ``days``-long range ending on ``today`` (inclusive)."""
        if days < 1:
            raise ValueError("days must be >= 1")
        return cls(start=today - timedelta(days=days - 1), end=today)

    def days(self) -> int:
        return (self.end - self.start).days + 1

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def iter_dates(self) -> Iterator[date]:
        current = self.start
        while current <= self.end:
            yield current
            current += timedelta(days=1)

    def chunks(self, max_days: int) -> list["DateRange"]:
        """Split into consecutive sub-ranges of at most ``max_days`` days.

        Providers with bounded range endpoints (Fitbit HRV: 30 days,
        Garmin uploads: 24 hours) walk these in order.
        """
        if max_days < 1:
            raise ValueError("max_days must be >= 1")
        out: list[DateRange] = []
        cursor = self.start
        while cursor <= self.end:
            chunk_end = min(cursor + timedelta(days=max_days - 1), self.end)
            out.append(DateRange(cursor, chunk_end))
            cursor = chunk_end + timedelta(days=1)
        return out

    @property
    def start_datetime(self) -> datetime:
        """UTC midnight at the start of the first day."""
        return datetime.combine(self.start, time.min, tzinfo=timezone.utc)

    @property
    def end_datetime(self) -> datetime:
        """UTC midnight after the last day (exclusive upper bound)."""
        return datetime.combine(self.end + timedelta(days=1), time.min, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# OAuth / credentials
# ---------------------------------------------------------------------------


@dataclass
class OAuthTokens:
    """OAuth token pair returned after authorization or refresh.

    Attributes:
        access_token:  Bearer token for API calls.
        refresh_token: Long-lived token used to obtain a new access_token.
        expires_at:    UTC datetime when the access_token expires (None = never).
        token_type:    Token type, typically "Bearer".
        scope:         Granted OAuth scopes, space separated.
        extra:         Any additional fields returned by the provider (e.g. user_id).
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    scope: str | None = None
    extra: dict = field(default_factory=dict)

    def __repr__(self) -> str:  # never print secrets
        return (
            f"OAuthTokens(expires_at={self.expires_at!r}, "
            f"has_refresh_token={self.refresh_token is not None})"
        )


@dataclass
class Credential:
    """One row of ``user_integrations``.

    Attributes:
        id:                Row UUID.
        user_id:           Internal Fitdash user UUID.
        provider:          Provider enum.
        access_token:      Current bearer token.
        refresh_token:     Refresh token, if the provider issued one.
        token_expires_at:  Access token expiry (UTC). None = does not expire.
        provider_user_id:  The provider's own account id.
        scope:             Granted scopes.
        connected_at:      When the OAuth callback stored this credential.
        last_sync_at:      Last time a data fetch used this credential.
        is_active:         False once disconnected or after an unrecoverable refresh.
        disconnect_reason: 'user_disconnect' | 'refresh_failed' | 'replaced'.
    """

    id: UUID
    user_id: UUID
    provider: Provider
    access_token: str
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    provider_user_id: str | None = None
    scope: str | None = None
    connected_at: datetime | None = None
    last_sync_at: datetime | None = None
    is_active: bool = True
    disconnected_at: datetime | None = None
    disconnect_reason: str | None = None

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "Credential":
        """Build from an asyncpg Record (or any mapping with the table's columns)."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            provider=Provider(row["provider"]),
            access_token=row["access_token"],
            refresh_token=row.get("refresh_token"),
            token_expires_at=_as_utc(row.get("token_expires_at")),
            provider_user_id=row.get("provider_user_id"),
            scope=row.get("scope"),
            connected_at=_as_utc(row.get("connected_at")),
            last_sync_at=_as_utc(row.get("last_sync_at")),
            is_active=row.get("is_active", True),
            disconnected_at=_as_utc(row.get("disconnected_at")),
            disconnect_reason=row.get("disconnect_reason"),
        )

    @property
    def state(self) -> CredentialState:
        return CredentialState.CONNECTED if self.is_active else CredentialState.DISCONNECTED

    def needs_refresh(self, now: datetime, margin_seconds: int) -> bool:
        """True when ``now`` is inside the refresh margin before expiry."""
        if self.token_expires_at is None:
            return False
        return now >= self.token_expires_at - timedelta(seconds=margin_seconds)

    def __repr__(self) -> str:
        return (
            f"Credential(id={self.id}, user_id={self.user_id}, provider={self.provider.value}, "
            f"expires_at={self.token_expires_at!r}, is_active={self.is_active})"
        )


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Canonical record
# ---------------------------------------------------------------------------

#: Canonical numeric / descriptive fields.  A None value for any of these
#: means "unknown" and the field name is listed in ``missing_fields``.
METRIC_FIELDS: tuple[str, ...] = (
    "recovery_score",
    "hrv_rmssd_ms",
    "resting_hr_bpm",
    "spo2_pct",
    "skin_temp_c",
    "respiratory_rate",
    "total_sleep_minutes",
    "deep_sleep_minutes",
    "rem_sleep_minutes",
    "light_sleep_minutes",
    "awake_minutes",
    "sleep_efficiency_pct",
    "sleep_score",
    "strain",
    "calories_kcal",
    "steps",
    "distance_m",
    "duration_seconds",
    "avg_hr_bpm",
    "max_hr_bpm",
    "hr_zone_minutes",
    "sleep_start",
    "sleep_end",
    "start_time",
    "end_time",
    "activity_type",
)


@dataclass
class NormalizedMetricRecord:
    """Canonical metric row derived from any provider payload.

    All fields use metric units and UTC timestamps.  Unit conversion happens
    in the adapter, never downstream.

    Attributes:
        provider:          Provider enum.
        metric_type:       recovery | sleep | activity | workout.
        metric_date:       Calendar date the record belongs to.  Sleep uses
                           the wake date (morning of).
        record_key:        "daily" for once-per-day types, the provider's
                           workout id for workouts.
        source_record_id:  Provider's native id, when it has one.
        missing_fields:    Canonical fields the payload lacked or carried in
                           an unusable form.
        raw_payload:       Original API object for audit/reprocessing.
    """

    provider: Provider
    metric_type: MetricType
    metric_date: date
    record_key: str = DAILY_RECORD_KEY
    source_record_id: str | None = None
    recovery_score: float | None = None
    hrv_rmssd_ms: float | None = None
    resting_hr_bpm: float | None = None
    spo2_pct: float | None = None
    skin_temp_c: float | None = None
    respiratory_rate: float | None = None
    total_sleep_minutes: float | None = None
    deep_sleep_minutes: float | None = None
    rem_sleep_minutes: float | None = None
    light_sleep_minutes: float | None = None
    awake_minutes: float | None = None
    sleep_efficiency_pct: float | None = None
    sleep_score: float | None = None
    strain: float | None = None
    calories_kcal: float | None = None
    steps: int | None = None
    distance_m: float | None = None
    duration_seconds: int | None = None
    avg_hr_bpm: float | None = None
    max_hr_bpm: float | None = None
    hr_zone_minutes: dict[str, float] | None = None
    sleep_start: datetime | None = None
    sleep_end: datetime | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    activity_type: str | None = None
    missing_fields: list[str] = field(default_factory=list)
    raw_payload: dict = field(default_factory=dict)

    @property
    def natural_key(self) -> tuple[str, str, str, str]:
        """(provider, metric_date, metric_type, record_key); the user id completes it."""
        return (
            self.provider.value,
            self.metric_date.isoformat(),
            self.metric_type.value,
            self.record_key,
        )

    def is_unknown(self, field_name: str) -> bool:
        return field_name in self.missing_fields


@dataclass
class SyncStatusRecord:
    """Latest sync attempt for one (user, provider).

    Attributes:
        provider:         Provider enum.
        last_attempt_at:  When the attempt finished.
        outcome:          'success' | 'partial' | 'failure'.
        last_success_at:  Only set (and only moves) on a 'success' outcome.
        error_kind:       SyncErrorKind value for non-success outcomes.
        error_detail:     Short human-readable detail.
        records_synced:   Rows upserted by the attempt.
    """

    provider: Provider
    last_attempt_at: datetime
    outcome: str
    last_success_at: datetime | None = None
    error_kind: str | None = None
    error_detail: str | None = None
    records_synced: int = 0

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "SyncStatusRecord":
        return cls(
            provider=Provider(row["provider"]),
            last_attempt_at=_as_utc(row["last_attempt_at"]),
            outcome=row["outcome"],
            last_success_at=_as_utc(row.get("last_success_at")),
            error_kind=row.get("error_kind"),
            error_detail=row.get("error_detail"),
            records_synced=row.get("records_synced") or 0,
        )


@dataclass
class FetchResult:
    """Typed outcome of ``ProviderAdapter.fetch_all``.

    Attributes:
        records:   Normalized rows from every family that succeeded.
        completed: Families that fetched without error.
        failures:  Family -> classified error for families that failed.
        skipped:   Payload items that were not objects or had no usable date.
        halted:    The error that stopped the remaining families, if any.
    """

    records: list[NormalizedMetricRecord] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    failures: dict[str, WearableError] = field(default_factory=dict)
    skipped: int = 0
    halted: WearableError | None = None

    @property
    def complete(self) -> bool:
        return not self.failures and self.skipped == 0

    @property
    def auth_rejected(self) -> bool:
        return isinstance(self.halted, ProviderAuthRejected)


# ---------------------------------------------------------------------------
# Abstract base adapter
# ---------------------------------------------------------------------------


class ProviderAdapter(ABC):
    """Abstract base class for all provider adapters.

    An adapter owns its provider's endpoint URLs, pagination and field
    mapping.  It is handed a valid access token and never reads or mutates
    credential state.

    Subclasses must implement:
        - fetch_recovery()
        - fetch_sleep()
        - fetch_activity()   (daily activity totals and workouts)
    """

    #: Provider this adapter serves.
    PROVIDER: Provider

    #: Human-readable name for logging.
    DISPLAY_NAME: str = "Unknown Provider"

    #: Base URL for the provider's data API.
    API_BASE: str = ""

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        page_size: int = 25,
        max_pages: int = 100,
        window_days: int = 30,
        timeout_seconds: float = 20.0,
    ) -> None:
        """Initialize the adapter.

        Args:
            http_client:     Shared httpx client.  A short-lived client is
                             opened per request when omitted.
            page_size:       Page size requested from paginated endpoints.
            max_pages:       Hard stop for cursor loops.
            window_days:     Maximum days per range request.
            timeout_seconds: Per-request timeout.
        """
        self._http_client = http_client
        self._page_size = page_size
        self._max_pages = max_pages
        self._window_days = window_days
        self._timeout = timeout_seconds
        self._skipped = 0

    @abstractmethod
    async def fetch_recovery(
        self, access_token: str, date_range: DateRange
    ) -> list[NormalizedMetricRecord]:
        """Fetch recovery / readiness / HRV rows for the range."""

    @abstractmethod
    async def fetch_sleep(
        self, access_token: str, date_range: DateRange
    ) -> list[NormalizedMetricRecord]:
        """Fetch one main-sleep row per wake date in the range."""

    @abstractmethod
    async def fetch_activity(
        self, access_token: str, date_range: DateRange
    ) -> list[NormalizedMetricRecord]:
        """Fetch daily activity totals and individual workouts for the range."""

    async def fetch_all(self, access_token: str, date_range: DateRange) -> FetchResult:
        """Run every fetch family in order and collect a typed result.

        A rate limit or rejected token stops the remaining families for this
        provider; any other classified failure is recorded and the next
        family still runs.
        """
        result = FetchResult()
        families = {
            "recovery": self.fetch_recovery,
            "sleep": self.fetch_sleep,
            "activity": self.fetch_activity,
        }
        self._skipped = 0
        for family in FETCH_FAMILIES:
            try:
                records = await families[family](access_token, date_range)
            except (RateLimited, ProviderAuthRejected) as exc:
                result.failures[family] = exc
                result.halted = exc
                logger.warning(
                    "%s: %s stopped remaining fetches: %s",
                    self.DISPLAY_NAME, exc.kind.value, exc,
                )
                break
            except WearableError as exc:
                result.failures[family] = exc
                logger.warning("%s: %s fetch failed: %s", self.DISPLAY_NAME, family, exc)
                continue
            except (ValueError, TypeError, OverflowError) as exc:
                # A normalizer choked on a payload value the helpers did not catch
                logger.exception("%s: %s payload could not be normalized", self.DISPLAY_NAME, family)
                result.failures[family] = MalformedProviderPayload(
                    f"{self.PROVIDER.value}: {family} payload could not be normalized: {exc}",
                    provider=self.PROVIDER.value,
                )
                continue
            result.records.extend(records)
            result.completed.append(family)
        result.skipped = self._skipped
        logger.info(
            "%s: fetched %d records (%d families ok, %d failed, %d skipped)",
            self.DISPLAY_NAME,
            len(result.records),
            len(result.completed),
            len(result.failures),
            result.skipped,
        )
        return result

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    @staticmethod
    def _headers(access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

    async def _get_json(
        self,
        url: str,
        access_token: str,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """GET a JSON document, classifying every failure into the taxonomy."""
        provider = self.PROVIDER.value
        try:
            if self._http_client is not None:
                response = await self._http_client.get(
                    url, params=params, headers=self._headers(access_token),
                    timeout=self._timeout,
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(
                        url, params=params, headers=self._headers(access_token)
                    )
        except httpx.HTTPError as exc:
            raise classify_transport_error(exc, provider) from exc

        raise_for_data_response(response, provider)
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedProviderPayload(
                f"{provider}: response from {url} is not JSON", provider=provider
            ) from exc

    async def _collect_pages(
        self,
        url: str,
        access_token: str,
        params: dict[str, Any],
        *,
        items_key: str,
        next_key: str,
        cursor_param: str,
    ) -> list:
        """Follow a cursor-paginated collection, returning items in page order."""
        items: list = []
        cursor: str | None = None
        for _ in range(self._max_pages):
            page_params = dict(params)
            if cursor:
                page_params[cursor_param] = cursor
            payload = await self._get_json(url, access_token, page_params)
            items.extend(self._items(payload, items_key))
            cursor = payload.get(next_key) if isinstance(payload, dict) else None
            if not cursor:
                break
        else:
            logger.warning(
                "%s: stopped paginating %s after %d pages", self.DISPLAY_NAME, url, self._max_pages
            )
        return items

    @staticmethod
    def _items(payload: Any, key: str | None) -> list:
        """Return the list under ``key`` (or the payload itself when it is a list)."""
        if key is None:
            items = payload
        elif isinstance(payload, dict):
            items = payload.get(key)
        else:
            items = None
        if items is None:
            return []
        if not isinstance(items, list):
            raise MalformedProviderPayload(f"expected a list under {key!r}")
        return items

    def _skip(self, item: Any, reason: str) -> None:
        self._skipped += 1
        logger.warning("%s: skipping payload item (%s): %.120r", self.DISPLAY_NAME, reason, item)

    # ------------------------------------------------------------------
    # Record construction
    # ------------------------------------------------------------------

    def _record(
        self,
        metric_type: MetricType,
        metric_date: date,
        raw: dict,
        *,
        record_key: str = DAILY_RECORD_KEY,
        source_record_id: str | None = None,
        **fields: Any,
    ) -> NormalizedMetricRecord:
        """Build a record; any canonical field passed as None is marked missing."""
        unknown = [k for k in fields if k not in METRIC_FIELDS]
        if unknown:
            raise TypeError(f"Not canonical metric fields: {unknown}")
        missing = [name for name, value in fields.items() if value is None]
        return NormalizedMetricRecord(
            provider=self.PROVIDER,
            metric_type=metric_type,
            metric_date=metric_date,
            record_key=record_key,
            source_record_id=source_record_id,
            missing_fields=missing,
            raw_payload=raw,
            **fields,
        )

    # ------------------------------------------------------------------
    # Shared helpers available to all adapters
    # ------------------------------------------------------------------

    @staticmethod
    def _safe_int(value: object) -> int | None:
        """Safely coerce a value to int, returning None on failure."""
        if value is None or isinstance(value, bool):
            return None
        try:
            return int(round(float(value)))
        except (TypeError, ValueError, OverflowError):
            return None

    @staticmethod
    def _safe_id(value: object) -> str | None:
        return None if value is None or value == "" else str(value)

    @staticmethod
    def _safe_float(value: object) -> float | None:
        """Safely coerce a value to float, returning None on failure."""
        if value is None or isinstance(value, bool):
            return None
        try:
            result = float(value)
        except (TypeError, ValueError):
            return None
        if result != result or result in (float("inf"), float("-inf")):
            return None
        return result

    @staticmethod
    def _minutes_from_ms(value: object) -> float | None:
        ms = ProviderAdapter._safe_float(value)
        return None if ms is None else round(ms / 60000.0, 1)

    @staticmethod
    def _minutes_from_seconds(value: object) -> float | None:
        seconds = ProviderAdapter._safe_float(value)
        return None if seconds is None else round(seconds / 60.0, 1)

    @staticmethod
    def _parse_iso_datetime(value: object) -> datetime | None:
        """Parse an ISO-8601 datetime string to an aware UTC datetime.

        Naive strings are assumed to be UTC.  Returns None if the value is
        None or unparseable.
        """
        if not value or not isinstance(value, str):
            return None
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Could not parse datetime string: %r", value)
            return None
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)

    @staticmethod
    def _parse_date(value: object) -> date | None:
        """Parse 'YYYY-MM-DD' (or the date part of an ISO timestamp)."""
        if not value or not isinstance(value, str):
            return None
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None

    @staticmethod
    def _from_epoch(value: object) -> datetime | None:
        """Convert epoch seconds to an aware UTC datetime."""
        seconds = ProviderAdapter._safe_float(value)
        if seconds is None:
            return None
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            logger.warning("Epoch value out of range: %r", value)
            return None

    @staticmethod
    def _after(start: datetime | None, seconds: int | None) -> datetime | None:
        """``start`` shifted by ``seconds``, or None when either is unusable."""
        if start is None or seconds is None:
            return None
        try:
            return start + timedelta(seconds=seconds)
        except OverflowError:
            return None

    @staticmethod
    def _fixed_offset(seconds: int | None) -> timezone | None:
        """A UTC offset of ``seconds``; None unless strictly inside +/-24h."""
        if seconds is None or abs(seconds) >= 86400:
            return None
        return timezone(timedelta(seconds=seconds))
