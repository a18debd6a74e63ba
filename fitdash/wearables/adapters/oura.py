"""Oura Ring API v2 adapter.

API base: https://api.ouraring.com

Endpoints used:
    /v2/usercollection/daily_readiness  — Oura readiness score (recovery)
    /v2/usercollection/sleep            — Detailed sleep periods (stages, HRV, HR)
    /v2/usercollection/daily_sleep      — Nightly sleep score
    /v2/usercollection/daily_activity   — Daily steps / calories / distance
    /v2/usercollection/workout          — Workouts

Collections are paginated with ``next_token``.  ``end_date`` is treated as
exclusive by some collections, so requests ask for one extra day and the
result is filtered back to the requested range.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any

from fitdash.wearables.base import (
    DateRange,
    MetricType,
    NormalizedMetricRecord,
    Provider,
    ProviderAdapter,
)

logger = logging.getLogger("fitdash.wearables.oura")

# Oura sleep period types, most to least "main sleep"
_SLEEP_TYPE_RANK = {"long_sleep": 0, "sleep": 1, "late_nap": 2, "rest": 3}


class OuraAdapter(ProviderAdapter):
    """Oura Ring API v2 adapter.

    The ring's finger-based PPG gives the most reliable consumer HRV and
    sleep staging; readiness is Oura's proprietary recovery score.
    """

    PROVIDER = Provider.OURA
    DISPLAY_NAME = "Oura Ring"
    API_BASE = "https://api.ouraring.com"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        # sleep periods feed both recovery and sleep
        self._sleep_cache: dict[tuple[str, DateRange], list] = {}

    async def _collection(self, name: str, access_token: str, date_range: DateRange) -> list:
        return await self._collect_pages(
            f"{self.API_BASE}/v2/usercollection/{name}",
            access_token,
            {
                "start_date": date_range.start.isoformat(),
                "end_date": (date_range.end + timedelta(days=1)).isoformat(),
            },
            items_key="data",
            next_key="next_token",
            cursor_param="next_token",
        )

    async def _sleep_periods(self, access_token: str, date_range: DateRange) -> list:
        key = (access_token, date_range)
        if key not in self._sleep_cache:
            self._sleep_cache[key] = await self._collection("sleep", access_token, date_range)
        return self._sleep_cache[key]

    def _day(self, item: Any, what: str, count: bool = True) -> date | None:
        if not isinstance(item, dict):
            if count:
                self._skip(item, f"{what} is not an object")
            return None
        day = self._parse_date(item.get("day"))
        if day is None and count:
            self._skip(item, f"{what} has no day")
        return day

    # ------------------------------------------------------------------
    # Recovery: readiness + the night's HRV / resting HR
    # ------------------------------------------------------------------

    async def fetch_recovery(
        self, access_token: str, date_range: DateRange
    ) -> list[NormalizedMetricRecord]:
        readiness = await self._collection("daily_readiness", access_token, date_range)
        sleeps = await self._sleep_periods(access_token, date_range)
        # sleep items are counted as skipped by fetch_sleep, not here
        main_sleeps = self.select_main_sleeps(sleeps, count=False)

        records = []
        for item in readiness:
            day = self._day(item, "readiness")
            if day is None or not date_range.contains(day):
                continue
            records.append(self.normalize_readiness(item, day, main_sleeps.get(day)))
        return records

    def normalize_readiness(
        self, raw: dict, day: date, sleep: dict | None
    ) -> NormalizedMetricRecord:
        sleep = sleep or {}
        return self._record(
            MetricType.RECOVERY,
            day,
            {"readiness": raw, "sleep_id": sleep.get("id")},
            source_record_id=self._safe_id(raw.get("id")),
            recovery_score=self._safe_float(raw.get("score")),
            hrv_rmssd_ms=self._safe_float(sleep.get("average_hrv")),
            resting_hr_bpm=self._safe_float(sleep.get("lowest_heart_rate")),
        )

    # ------------------------------------------------------------------
    # Sleep
    # ------------------------------------------------------------------

    async def fetch_sleep(
        self, access_token: str, date_range: DateRange
    ) -> list[NormalizedMetricRecord]:
        sleeps = await self._sleep_periods(access_token, date_range)
        daily = await self._collection("daily_sleep", access_token, date_range)

        scores: dict[date, Any] = {}
        for item in daily:
            if isinstance(item, dict):
                day = self._parse_date(item.get("day"))
                if day is not None:
                    scores[day] = item.get("score")

        records = []
        for day, raw in self.select_main_sleeps(sleeps).items():
            if date_range.contains(day):
                records.append(self.normalize_sleep(raw, day, scores.get(day)))
        return records

    def select_main_sleeps(self, items: list, count: bool = True) -> dict[date, dict]:
        """Pick the main sleep period per day: long_sleep first, then longest."""
        best: dict[date, dict] = {}
        for item in items:
            day = self._day(item, "sleep", count)
            if day is None:
                continue
            current = best.get(day)
            if current is None or self._sleep_rank(item) < self._sleep_rank(current):
                best[day] = item
        return best

    def _sleep_rank(self, item: dict) -> tuple[int, float]:
        kind = _SLEEP_TYPE_RANK.get(item.get("type"), len(_SLEEP_TYPE_RANK))
        duration = self._safe_float(item.get("total_sleep_duration")) or 0.0
        return (kind, -duration)

    def normalize_sleep(self, raw: dict, day: date, score: Any) -> NormalizedMetricRecord:
        return self._record(
            MetricType.SLEEP,
            day,
            raw,
            source_record_id=self._safe_id(raw.get("id")),
            sleep_start=self._parse_iso_datetime(raw.get("bedtime_start")),
            sleep_end=self._parse_iso_datetime(raw.get("bedtime_end")),
            total_sleep_minutes=self._minutes_from_seconds(raw.get("total_sleep_duration")),
            deep_sleep_minutes=self._minutes_from_seconds(raw.get("deep_sleep_duration")),
            rem_sleep_minutes=self._minutes_from_seconds(raw.get("rem_sleep_duration")),
            light_sleep_minutes=self._minutes_from_seconds(raw.get("light_sleep_duration")),
            awake_minutes=self._minutes_from_seconds(raw.get("awake_time")),
            sleep_efficiency_pct=self._safe_float(raw.get("efficiency")),
            sleep_score=self._safe_float(score),
            respiratory_rate=self._safe_float(raw.get("average_breath")),
        )

    # ------------------------------------------------------------------
    # Activity + workouts
    # ------------------------------------------------------------------

    async def fetch_activity(
        self, access_token: str, date_range: DateRange
    ) -> list[NormalizedMetricRecord]:
        daily = await self._collection("daily_activity", access_token, date_range)
        workouts = await self._collection("workout", access_token, date_range)

        records = []
        for item in daily:
            day = self._day(item, "daily_activity")
            if day is not None and date_range.contains(day):
                records.append(self.normalize_daily_activity(item, day))
        for item in workouts:
            record = self.normalize_workout(item)
            if record is not None and date_range.contains(record.metric_date):
                records.append(record)
        return records

    def normalize_daily_activity(self, raw: dict, day: date) -> NormalizedMetricRecord:
        return self._record(
            MetricType.ACTIVITY,
            day,
            raw,
            source_record_id=self._safe_id(raw.get("id")),
            steps=self._safe_int(raw.get("steps")),
            calories_kcal=self._safe_float(raw.get("total_calories")),
            distance_m=self._safe_float(raw.get("equivalent_walking_distance")),
        )

    def normalize_workout(self, raw: Any) -> NormalizedMetricRecord | None:
        day = self._day(raw, "workout")
        if day is None:
            return None
        workout_id = raw.get("id")
        if not workout_id:
            self._skip(raw, "workout has no id")
            return None
        start = self._parse_iso_datetime(raw.get("start_datetime"))
        end = self._parse_iso_datetime(raw.get("end_datetime"))
        activity = raw.get("activity")
        return self._record(
            MetricType.WORKOUT,
            day,
            raw,
            record_key=str(workout_id),
            source_record_id=str(workout_id),
            start_time=start,
            end_time=end,
            duration_seconds=int((end - start).total_seconds()) if start and end else None,
            activity_type=activity.lower() if isinstance(activity, str) and activity else None,
            calories_kcal=self._safe_float(raw.get("calories")),
            distance_m=self._safe_float(raw.get("distance")),
        )
