"""WHOOP Developer API v2 adapter.

API base: https://api.prod.whoop.com/developer

Endpoints used:
    /v2/recovery          — Recovery score, HRV, resting HR, SpO2, skin temp
    /v2/activity/sleep    — Sleep sessions with stage summary
    /v2/cycle             — Physiological cycles (day strain, energy)
    /v2/activity/workout  — Workouts

Every collection is paginated with a ``nextToken`` cursor (max 25 per page).
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

logger = logging.getLogger("fitdash.wearables.whoop")

_KJ_PER_KCAL = 4.184

# zone_durations keys in heart-rate zone order
_ZONE_KEYS = (
    "zone_zero_milli",
    "zone_one_milli",
    "zone_two_milli",
    "zone_three_milli",
    "zone_four_milli",
    "zone_five_milli",
)


def _offset(value: Any) -> timezone | None:
    """Parse a WHOOP ``timezone_offset`` such as '-05:00'."""
    if not isinstance(value, str) or len(value) != 6 or value[0] not in "+-":
        return None
    try:
        hours, minutes = int(value[1:3]), int(value[4:6])
    except ValueError:
        return None
    delta = timedelta(hours=hours, minutes=minutes)
    if delta >= timedelta(hours=24):
        return None
    return timezone(-delta if value[0] == "-" else delta)


class WhoopAdapter(ProviderAdapter):
    """WHOOP API v2 adapter.

    WHOOP focuses on strain, recovery and HRV.  Recovery is keyed on the
    date it was scored (the morning of), sleep on the local wake date, and
    cycle strain on the local date the cycle started.
    """

    PROVIDER = Provider.WHOOP
    DISPLAY_NAME = "WHOOP"
    API_BASE = "https://api.prod.whoop.com/developer"

    def _window_params(self, date_range: DateRange) -> dict[str, Any]:
        # Cycles and sleeps begin the evening before the wake date
        start = date_range.start_datetime - timedelta(days=1)
        return {
            "start": start.isoformat().replace("+00:00", "Z"),
            "end": date_range.end_datetime.isoformat().replace("+00:00", "Z"),
            "limit": min(self._page_size, 25),
        }

    async def _collection(self, path: str, access_token: str, date_range: DateRange) -> list:
        return await self._collect_pages(
            f"{self.API_BASE}{path}",
            access_token,
            self._window_params(date_range),
            items_key="records",
            next_key="next_token",
            cursor_param="nextToken",
        )

    def _local_date(self, timestamp: Any, offset: Any) -> date | None:
        dt = self._parse_iso_datetime(timestamp)
        if dt is None:
            return None
        tz = _offset(offset)
        return dt.astimezone(tz).date() if tz else dt.date()

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def fetch_recovery(
        self, access_token: str, date_range: DateRange
    ) -> list[NormalizedMetricRecord]:
        items = await self._collection("/v2/recovery", access_token, date_range)
        records = []
        for item in items:
            record = self.normalize_recovery(item)
            if record is not None and date_range.contains(record.metric_date):
                records.append(record)
        return records

    def normalize_recovery(self, raw: Any) -> NormalizedMetricRecord | None:
        if not isinstance(raw, dict):
            self._skip(raw, "recovery is not an object")
            return None
        metric_date = self._local_date(raw.get("created_at"), None)
        if metric_date is None:
            self._skip(raw, "recovery has no created_at")
            return None
        score = raw.get("score") if isinstance(raw.get("score"), dict) else {}
        return self._record(
            MetricType.RECOVERY,
            metric_date,
            raw,
            source_record_id=str(raw["cycle_id"]) if raw.get("cycle_id") is not None else None,
            recovery_score=self._safe_float(score.get("recovery_score")),
            hrv_rmssd_ms=self._safe_float(score.get("hrv_rmssd_milli")),
            resting_hr_bpm=self._safe_float(score.get("resting_heart_rate")),
            spo2_pct=self._safe_float(score.get("spo2_percentage")),
            skin_temp_c=self._safe_float(score.get("skin_temp_celsius")),
        )

    # ------------------------------------------------------------------
    # Sleep
    # ------------------------------------------------------------------

    async def fetch_sleep(
        self, access_token: str, date_range: DateRange
    ) -> list[NormalizedMetricRecord]:
        items = await self._collection("/v2/activity/sleep", access_token, date_range)
        main_sleeps = self.select_main_sleeps(items)
        records = []
        for wake_date, raw in main_sleeps.items():
            if date_range.contains(wake_date):
                records.append(self.normalize_sleep(raw, wake_date))
        return records

    def select_main_sleeps(self, items: list) -> dict[date, dict]:
        """Longest non-nap session per local wake date."""
        best: dict[date, tuple[float, dict]] = {}
        for item in items:
            if not isinstance(item, dict):
                self._skip(item, "sleep is not an object")
                continue
            if item.get("nap"):
                continue
            wake_date = self._local_date(item.get("end"), item.get("timezone_offset"))
            if wake_date is None:
                self._skip(item, "sleep has no end time")
                continue
            start = self._parse_iso_datetime(item.get("start"))
            end = self._parse_iso_datetime(item.get("end"))
            length = (end - start).total_seconds() if start and end else 0.0
            current = best.get(wake_date)
            if current is None or length > current[0]:
                best[wake_date] = (length, item)
        return {day: item for day, (_, item) in best.items()}

    def normalize_sleep(self, raw: dict, wake_date: date) -> NormalizedMetricRecord:
        score = raw.get("score") if isinstance(raw.get("score"), dict) else {}
        stages = score.get("stage_summary") if isinstance(score.get("stage_summary"), dict) else {}

        light = self._minutes_from_ms(stages.get("total_light_sleep_time_milli"))
        deep = self._minutes_from_ms(stages.get("total_slow_wave_sleep_time_milli"))
        rem = self._minutes_from_ms(stages.get("total_rem_sleep_time_milli"))
        total = None
        if light is not None and deep is not None and rem is not None:
            total = round(light + deep + rem, 1)

        return self._record(
            MetricType.SLEEP,
            wake_date,
            raw,
            source_record_id=str(raw["id"]) if raw.get("id") is not None else None,
            sleep_start=self._parse_iso_datetime(raw.get("start")),
            sleep_end=self._parse_iso_datetime(raw.get("end")),
            total_sleep_minutes=total,
            deep_sleep_minutes=deep,
            rem_sleep_minutes=rem,
            light_sleep_minutes=light,
            awake_minutes=self._minutes_from_ms(stages.get("total_awake_time_milli")),
            sleep_efficiency_pct=self._safe_float(score.get("sleep_efficiency_percentage")),
            sleep_score=self._safe_float(score.get("sleep_performance_percentage")),
            respiratory_rate=self._safe_float(score.get("respiratory_rate")),
        )

    # ------------------------------------------------------------------
    # Activity: daily cycle strain + workouts
    # ------------------------------------------------------------------

    async def fetch_activity(
        self, access_token: str, date_range: DateRange
    ) -> list[NormalizedMetricRecord]:
        cycles = await self._collection("/v2/cycle", access_token, date_range)
        workouts = await self._collection("/v2/activity/workout", access_token, date_range)

        records = []
        for raw in cycles:
            record = self.normalize_cycle(raw)
            if record is not None and date_range.contains(record.metric_date):
                records.append(record)
        for raw in workouts:
            record = self.normalize_workout(raw)
            if record is not None and date_range.contains(record.metric_date):
                records.append(record)
        return records

    def normalize_cycle(self, raw: Any) -> NormalizedMetricRecord | None:
        if not isinstance(raw, dict):
            self._skip(raw, "cycle is not an object")
            return None
        metric_date = self._local_date(raw.get("start"), raw.get("timezone_offset"))
        if metric_date is None:
            self._skip(raw, "cycle has no start")
            return None
        score = raw.get("score") if isinstance(raw.get("score"), dict) else {}
        kilojoule = self._safe_float(score.get("kilojoule"))
        return self._record(
            MetricType.ACTIVITY,
            metric_date,
            raw,
            source_record_id=str(raw["id"]) if raw.get("id") is not None else None,
            strain=self._safe_float(score.get("strain")),
            calories_kcal=round(kilojoule / _KJ_PER_KCAL, 1) if kilojoule is not None else None,
            avg_hr_bpm=self._safe_float(score.get("average_heart_rate")),
            max_hr_bpm=self._safe_float(score.get("max_heart_rate")),
        )

    def normalize_workout(self, raw: Any) -> NormalizedMetricRecord | None:
        if not isinstance(raw, dict):
            self._skip(raw, "workout is not an object")
            return None
        workout_id = raw.get("id")
        metric_date = self._local_date(raw.get("start"), raw.get("timezone_offset"))
        if workout_id is None or metric_date is None:
            self._skip(raw, "workout has no id or start")
            return None

        score = raw.get("score") if isinstance(raw.get("score"), dict) else {}
        start = self._parse_iso_datetime(raw.get("start"))
        end = self._parse_iso_datetime(raw.get("end"))
        kilojoule = self._safe_float(score.get("kilojoule"))

        zones_raw = score.get("zone_durations") or score.get("zone_duration")
        zones = None
        if isinstance(zones_raw, dict):
            zones = {}
            for index, key in enumerate(_ZONE_KEYS):
                minutes = self._minutes_from_ms(zones_raw.get(key))
                if minutes is not None:
                    zones[str(index)] = minutes
            zones = zones or None

        sport = raw.get("sport_name")
        return self._record(
            MetricType.WORKOUT,
            metric_date,
            raw,
            record_key=str(workout_id),
            source_record_id=str(workout_id),
            start_time=start,
            end_time=end,
            duration_seconds=int((end - start).total_seconds()) if start and end else None,
            activity_type=sport.lower() if isinstance(sport, str) and sport else None,
            strain=self._safe_float(score.get("strain")),
            calories_kcal=round(kilojoule / _KJ_PER_KCAL, 1) if kilojoule is not None else None,
            distance_m=self._safe_float(score.get("distance_meter")),
            avg_hr_bpm=self._safe_float(score.get("average_heart_rate")),
            max_hr_bpm=self._safe_float(score.get("max_heart_rate")),
            hr_zone_minutes=zones,
        )
