"""Garmin Health API adapter (OAuth 2.0 bearer tokens).

API base: https://apis.garmin.com/wellness-api/rest

Endpoints used:
    /dailies     — Daily summaries: steps, calories, distance, resting/avg/max HR
    /hrv         — Overnight HRV summaries
    /sleeps      — Sleep summaries with stage durations and sleep score
    /activities  — Activity (workout) summaries

The Health API is queried by *upload* time, in windows of at most 24 hours.
Summaries are keyed on their ``calendarDate``; a summary re-uploaded in a
later window replaces the earlier copy.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta, timezone
from typing import Any

from fitdash.wearables.base import (
    DateRange,
    MetricType,
    NormalizedMetricRecord,
    Provider,
    ProviderAdapter,
)

logger = logging.getLogger("fitdash.wearables.garmin")

_MAX_WINDOW_SECONDS = 86400


class GarminAdapter(ProviderAdapter):
    """Garmin Health API adapter.

    Garmin publishes no recovery score through the Health API; the recovery
    row carries last-night HRV and the day's resting heart rate.
    """

    PROVIDER = Provider.GARMIN
    DISPLAY_NAME = "Garmin Connect"
    API_BASE = "https://apis.garmin.com/wellness-api/rest"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        # dailies feed both recovery and activity
        self._dailies_cache: dict[tuple[str, DateRange], list] = {}

    def _upload_windows(self, date_range: DateRange) -> list[tuple[int, int]]:
        windows = []
        cursor = date_range.start_datetime
        end = date_range.end_datetime
        while cursor < end and len(windows) < self._max_pages:
            window_end = min(cursor + timedelta(seconds=_MAX_WINDOW_SECONDS), end)
            windows.append((int(cursor.timestamp()), int(window_end.timestamp())))
            cursor = window_end
        if cursor < end:
            logger.warning("Garmin: upload windows capped at %d", self._max_pages)
        return windows

    async def _summaries(self, resource: str, access_token: str, date_range: DateRange) -> list:
        items: list = []
        for start, end in self._upload_windows(date_range):
            payload = await self._get_json(
                f"{self.API_BASE}/{resource}",
                access_token,
                {"uploadStartTimeInSeconds": start, "uploadEndTimeInSeconds": end},
            )
            items.extend(self._items(payload, None))
        return items

    async def _dailies(self, access_token: str, date_range: DateRange) -> list:
        key = (access_token, date_range)
        if key not in self._dailies_cache:
            self._dailies_cache[key] = await self._summaries("dailies", access_token, date_range)
        return self._dailies_cache[key]

    def _by_calendar_date(
        self, items: list, what: str, date_range: DateRange, count: bool = True
    ) -> dict[date, dict]:
        out: dict[date, dict] = {}
        for item in items:
            if not isinstance(item, dict):
                if count:
                    self._skip(item, f"{what} is not an object")
                continue
            day = self._parse_date(item.get("calendarDate"))
            if day is None:
                if count:
                    self._skip(item, f"{what} has no calendarDate")
                continue
            if date_range.contains(day):
                out[day] = item
        return out

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def fetch_recovery(
        self, access_token: str, date_range: DateRange
    ) -> list[NormalizedMetricRecord]:
        hrv = self._by_calendar_date(
            await self._summaries("hrv", access_token, date_range), "hrv", date_range
        )
        # dailies are counted as skipped by fetch_activity
        dailies = self._by_calendar_date(
            await self._dailies(access_token, date_range), "daily", date_range, count=False
        )
        return [
            self.normalize_recovery(day, hrv.get(day), dailies.get(day))
            for day in sorted(set(hrv) | set(dailies))
        ]

    def normalize_recovery(
        self, day: date, hrv: dict | None, daily: dict | None
    ) -> NormalizedMetricRecord:
        hrv = hrv or {}
        daily = daily or {}
        return self._record(
            MetricType.RECOVERY,
            day,
            {"hrv": hrv or None, "daily_summary_id": daily.get("summaryId")},
            source_record_id=self._safe_id(hrv.get("summaryId")),
            hrv_rmssd_ms=self._safe_float(hrv.get("lastNightAvg")),
            resting_hr_bpm=self._safe_float(daily.get("restingHeartRateInBeatsPerMinute")),
        )

    # ------------------------------------------------------------------
    # Sleep
    # ------------------------------------------------------------------

    async def fetch_sleep(
        self, access_token: str, date_range: DateRange
    ) -> list[NormalizedMetricRecord]:
        sleeps = self._by_calendar_date(
            await self._summaries("sleeps", access_token, date_range), "sleep", date_range
        )
        return [self.normalize_sleep(raw, day) for day, raw in sorted(sleeps.items())]

    def normalize_sleep(self, raw: dict, day: date) -> NormalizedMetricRecord:
        start = self._from_epoch(raw.get("startTimeInSeconds"))
        duration = self._safe_int(raw.get("durationInSeconds"))
        end = self._after(start, duration)

        deep = self._minutes_from_seconds(raw.get("deepSleepDurationInSeconds"))
        light = self._minutes_from_seconds(raw.get("lightSleepDurationInSeconds"))
        rem = self._minutes_from_seconds(raw.get("remSleepInSeconds"))
        awake = self._minutes_from_seconds(raw.get("awakeDurationInSeconds"))
        total = None
        if deep is not None and light is not None and rem is not None:
            total = round(deep + light + rem, 1)

        efficiency = None
        if total is not None and duration:
            efficiency = round(total * 60.0 / duration * 100.0, 1)

        score = raw.get("overallSleepScore")
        return self._record(
            MetricType.SLEEP,
            day,
            raw,
            source_record_id=self._safe_id(raw.get("summaryId")),
            sleep_start=start,
            sleep_end=end,
            total_sleep_minutes=total,
            deep_sleep_minutes=deep,
            rem_sleep_minutes=rem,
            light_sleep_minutes=light,
            awake_minutes=awake,
            sleep_efficiency_pct=efficiency,
            sleep_score=self._safe_float(score.get("value")) if isinstance(score, dict) else None,
            spo2_pct=self._safe_float(raw.get("averageSpO2Value")),
        )

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    async def fetch_activity(
        self, access_token: str, date_range: DateRange
    ) -> list[NormalizedMetricRecord]:
        dailies = self._by_calendar_date(
            await self._dailies(access_token, date_range), "daily", date_range
        )
        records = [self.normalize_daily(raw, day) for day, raw in sorted(dailies.items())]

        for raw in await self._summaries("activities", access_token, date_range):
            record = self.normalize_activity(raw)
            if record is not None and date_range.contains(record.metric_date):
                records.append(record)
        return records

    def normalize_daily(self, raw: dict, day: date) -> NormalizedMetricRecord:
        active = self._safe_float(raw.get("activeKilocalories"))
        bmr = self._safe_float(raw.get("bmrKilocalories"))
        calories = active + bmr if active is not None and bmr is not None else active
        return self._record(
            MetricType.ACTIVITY,
            day,
            raw,
            source_record_id=self._safe_id(raw.get("summaryId")),
            steps=self._safe_int(raw.get("steps")),
            calories_kcal=calories,
            distance_m=self._safe_float(raw.get("distanceInMeters")),
            avg_hr_bpm=self._safe_float(raw.get("averageHeartRateInBeatsPerMinute")),
            max_hr_bpm=self._safe_float(raw.get("maxHeartRateInBeatsPerMinute")),
        )

    def normalize_activity(self, raw: Any) -> NormalizedMetricRecord | None:
        if not isinstance(raw, dict):
            self._skip(raw, "activity is not an object")
            return None
        activity_id = raw.get("activityId") or raw.get("summaryId")
        start = self._from_epoch(raw.get("startTimeInSeconds"))
        if activity_id is None or start is None:
            self._skip(raw, "activity has no id or start time")
            return None

        # Local calendar day from the device's offset
        tz = self._fixed_offset(self._safe_int(raw.get("startTimeOffsetInSeconds")))
        local_day = start.astimezone(tz or timezone.utc).date()

        duration = self._safe_int(raw.get("durationInSeconds"))
        activity_type = raw.get("activityType")
        return self._record(
            MetricType.WORKOUT,
            local_day,
            raw,
            record_key=str(activity_id),
            source_record_id=str(activity_id),
            start_time=start,
            end_time=self._after(start, duration),
            duration_seconds=duration,
            activity_type=(
                activity_type.lower() if isinstance(activity_type, str) and activity_type else None
            ),
            calories_kcal=self._safe_float(raw.get("activeKilocalories")),
            distance_m=self._safe_float(raw.get("distanceInMeters")),
            avg_hr_bpm=self._safe_float(raw.get("averageHeartRateInBeatsPerMinute")),
            max_hr_bpm=self._safe_float(raw.get("maxHeartRateInBeatsPerMinute")),
        )
