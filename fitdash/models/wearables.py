"""Pydantic models for the wearable sync and integration endpoints."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any

from pydantic import Field, model_validator

from fitdash.models.base import FitdashBase


# ---------- Sync ----------

class SyncRequest(FitdashBase):
    """Optional explicit range for an on-demand sync; both ends inclusive."""

    start_date: date | None = None
    end_date: date | None = None

    @model_validator(mode="after")
    def _check_range(self) -> "SyncRequest":
        if (self.start_date is None) != (self.end_date is None):
            raise ValueError("start_date and end_date must be given together")
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class ProviderOutcomeRead(FitdashBase):
    status: str
    label: str
    error_kind: str | None = None
    retryable: bool = False
    records_synced: int = 0
    detail: str | None = None


class SyncResponse(FitdashBase):
    message: str
    results: dict[str, ProviderOutcomeRead] = Field(default_factory=dict)


class SyncStatusRead(FitdashBase):
    provider: str
    last_attempt_at: datetime
    outcome: str
    last_success_at: datetime | None = None
    error_kind: str | None = None
    error_detail: str | None = None
    records_synced: int = 0


# ---------- Metrics ----------

class MetricRead(FitdashBase):
    user_id: uuid.UUID
    provider: str
    metric_date: date
    metric_type: str
    record_key: str
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
    hr_zone_minutes: dict[str, Any] | None = None
    sleep_start: datetime | None = None
    sleep_end: datetime | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    activity_type: str | None = None
    missing_fields: list[str] = Field(default_factory=list)
    raw_payload: dict[str, Any] = Field(default_factory=dict)
    synced_at: datetime | None = None


# ---------- Integrations ----------

class ConnectionRead(FitdashBase):
    provider: str
    display_name: str
    connected: bool
    connected_at: datetime | None = None
    last_sync_at: datetime | None = None
    token_expires_at: datetime | None = None
    provider_user_id: str | None = None


class ConnectUrlResponse(FitdashBase):
    provider: str
    authorization_url: str
