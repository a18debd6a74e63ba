"""Fitbit Web API adapter.

API base: https://api.fitbit.com

Endpoints used:
    /1/user/-/hrv/date/{start}/{end}.json               — Daily RMSSD (max 30 days)
    /1/user/-/activities/heart/date/{start}/{end}.json  — Resting HR, HR zones
    /1.2/user/-/sleep/date/{start}/{end}.json           — Sleep logs with stages
    /1/user/-/activities/{resource}/date/{start}/{end}.json — steps / calories / distance
    /1/user/-/activities/list.json                      — Activity log, ``pagination.next``

Range endpoints are walked in ``window_days`` chunks, oldest first.  No
Accept-Language header is sent, so distances come back in kilometres.
Fitbit sleep timestamps carry no offset and are stored as UTC.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

from fitdash.wearables.base import (
    DateRange,
    MetricType,
    NormalizedMetricRecord,
    Provider,
    ProviderAdapter,
)

logger = logging.getLogger("fitdash.wearables.fitbit")

_MILES_TO_METERS = 1609.344


class FitbitAdapter(ProviderAdapter):
    """Fitbit Web API adapter.

    Fitbit has no recovery score; the recovery row carries daily RMSSD and
    resting heart rate.
    """

    PROVIDER = Provider.FITBIT
    DISPLAY_NAME = "Fitbit"
    API_BASE = "https://api.fitbit.com"

    async def _range_series(
        self, path: str, key: str, access_token: str, date_range: DateRange
    ) -> list:
        """Fetch a ``{start}/{end}`` endpoint chunk by chunk, in date order."""
        items: list = []
        for chunk in date_range.chunks(self._window_days):
            url = f"{self.API_BASE}{path.format(start=chunk.start, end=chunk.end)}"
            payload = await self._get_json(url, access_token)
            items.extend(self._items(payload, key))
        return items

    def _by_date(self, items: list, what: str, date_key: str = "dateTime") -> dict[date, dict]:
        out: dict[date, dict] = {}
        for item in items:
            if not isinstance(item, dict):
                self._skip(item, f"{what} is not an object")
                continue
            day = self._parse_date(item.get(date_key))
            if day is None:
                self._skip(item, f"{what} has no date")
                continue
            out[day] = item
        return out

    # ------------------------------------------------------------------
    # Recovery: HRV + resting heart rate
    # ------------------------------------------------------------------

    async def fetch_recovery(
        self, access_token: str, date_range: DateRange
    ) -> list[NormalizedMetricRecord]:
        hrv = self._by_date(
            await self._range_series(
                "/1/user/-/hrv/date/{start}/{end}.json", "hrv", access_token, date_range
            ),
            "hrv",
        )
        heart = self._by_date(
            await self._range_series(
                "/1/user/-/activities/heart/date/{start}/{end}.json",
                "activities-heart",
                access_token,
                date_range,
            ),
            "heart",
        )
        records = []
        for day in sorted(set(hrv) | set(heart)):
            if date_range.contains(day):
                records.append(self.normalize_recovery(day, hrv.get(day), heart.get(day)))
        return records

    def normalize_recovery(
        self, day: date, hrv: dict | None, heart: dict | None
    ) -> NormalizedMetricRecord:
        hrv_value = (hrv or {}).get("value")
        heart_value = (heart or {}).get("value")
        hrv_value = hrv_value if isinstance(hrv_value, dict) else {}
        heart_value = heart_value if isinstance(heart_value, dict) else {}
        return self._record(
            MetricType.RECOVERY,
            day,
            {"hrv": hrv, "heart": heart},
            hrv_rmssd_ms=self._safe_float(hrv_value.get("dailyRmssd")),
            resting_hr_bpm=self._safe_float(heart_value.get("restingHeartRate")),
        )

    # ------------------------------------------------------------------
    # Sleep
    # ------------------------------------------------------------------

    async def fetch_sleep(
        self, access_token: str, date_range: DateRange
    ) -> list[NormalizedMetricRecord]:
        logs = await self._range_series(
            "/1.2/user/-/sleep/date/{start}/{end}.json", "sleep", access_token, date_range
        )
        main: dict[date, dict] = {}
        for item in logs:
            if not isinstance(item, dict):
                self._skip(item, "sleep log is not an object")
                continue
            day = self._parse_date(item.get("dateOfSleep"))
            if day is None:
                self._skip(item, "sleep log has no dateOfSleep")
                continue
            current = main.get(day)
            if current is None or self._sleep_rank(item) > self._sleep_rank(current):
                main[day] = item
        return [
            self.normalize_sleep(raw, day)
            for day, raw in sorted(main.items())
            if date_range.contains(day)
        ]

    def _sleep_rank(self, item: dict) -> tuple[bool, float]:
        return (bool(item.get("isMainSleep")), self._safe_float(item.get("duration")) or 0.0)

    def normalize_sleep(self, raw: dict, day: date) -> NormalizedMetricRecord:
        levels = raw.get("levels") if isinstance(raw.get("levels"), dict) else {}
        summary = levels.get("summary") if isinstance(levels.get("summary"), dict) else {}

        def stage(name: str) -> float | None:
            entry = summary.get(name)
            return self._safe_float(entry.get("minutes")) if isinstance(entry, dict) else None

        # "classic" logs (short naps, no HR) only have asleep/restless/awake
        awake = stage("wake")
        if awake is None:
            awake = self._safe_float(raw.get("minutesAwake"))

        return self._record(
            MetricType.SLEEP,
            day,
            raw,
            source_record_id=str(raw["logId"]) if raw.get("logId") is not None else None,
            sleep_start=self._parse_iso_datetime(raw.get("startTime")),
            sleep_end=self._parse_iso_datetime(raw.get("endTime")),
            total_sleep_minutes=self._safe_float(raw.get("minutesAsleep")),
            deep_sleep_minutes=stage("deep"),
            rem_sleep_minutes=stage("rem"),
            light_sleep_minutes=stage("light"),
            awake_minutes=awake,
            sleep_efficiency_pct=self._safe_float(raw.get("efficiency")),
        )

    # ------------------------------------------------------------------
    # Activity: daily time series + activity log
    # ------------------------------------------------------------------

    async def fetch_activity(
        self, access_token: str, date_range: DateRange
    ) -> list[NormalizedMetricRecord]:
        series: dict[str, dict[date, dict]] = {}
        for resource in ("steps", "calories", "distance"):
            items = await self._range_series(
                f"/1/user/-/activities/{resource}/date/{{start}}/{{end}}.json",
                f"activities-{resource}",
                access_token,
                date_range,
            )
            series[resource] = self._by_date(items, resource)

        records = []
        days = sorted(set().union(*(s.keys() for s in series.values())))
        for day in days:
            if date_range.contains(day):
                records.append(
                    self.normalize_daily_activity(
                        day,
                        series["steps"].get(day),
                        series["calories"].get(day),
                        series["distance"].get(day),
                    )
                )

        for raw in await self._activity_log(access_token, date_range):
            record = self.normalize_workout(raw)
            if record is not None and date_range.contains(record.metric_date):
                records.append(record)
        return records

    def normalize_daily_activity(
        self, day: date, steps: dict | None, calories: dict | None, distance: dict | None
    ) -> NormalizedMetricRecord:
        km = self._safe_float((distance or {}).get("value"))
        return self._record(
            MetricType.ACTIVITY,
            day,
            {"steps": steps, "calories": calories, "distance": distance},
            steps=self._safe_int((steps or {}).get("value")),
            calories_kcal=self._safe_float((calories or {}).get("value")),
            distance_m=round(km * 1000.0, 1) if km is not None else None,
        )

    async def _activity_log(self, access_token: str, date_range: DateRange) -> list:
        """Walk the activity log oldest-first until past the range end."""
        url: str | None = f"{self.API_BASE}/1/user/-/activities/list.json"
        params: dict[str, Any] | None = {
            "afterDate": date_range.start.isoformat(),
            "sort": "asc",
            "offset": 0,
            "limit": min(self._page_size, 100),
        }
        items: list = []
        for _ in range(self._max_pages):
            payload = await self._get_json(url, access_token, params)
            page = self._items(payload, "activities")
            items.extend(page)
            pagination = payload.get("pagination") if isinstance(payload, dict) else None
            url = pagination.get("next") if isinstance(pagination, dict) else None
            params = None  # the next link carries its own query string
            if not url or self._past_range(page, date_range):
                break
        return items

    def _past_range(self, page: list, date_range: DateRange) -> bool:
        if not page or not isinstance(page[-1], dict):
            return False
        last = self._parse_date(page[-1].get("startTime"))
        return last is not None and last > date_range.end

    def normalize_workout(self, raw: Any) -> NormalizedMetricRecord | None:
        if not isinstance(raw, dict):
            self._skip(raw, "activity is not an object")
            return None
        log_id = raw.get("logId")
        # startTime keeps the user's local offset; its date part is the local day
        day = self._parse_date(raw.get("startTime"))
        if log_id is None or day is None:
            self._skip(raw, "activity has no logId or startTime")
            return None

        start = self._parse_iso_datetime(raw.get("startTime"))
        duration_ms = self._safe_float(raw.get("activeDuration") or raw.get("duration"))
        distance = self._safe_float(raw.get("distance"))
        if distance is not None:
            unit = str(raw.get("distanceUnit") or "Kilometer").lower()
            distance = distance * _MILES_TO_METERS if unit.startswith("mile") else distance * 1000.0
            distance = round(distance, 1)

        zones = None
        zones_raw = raw.get("heartRateZones")
        if isinstance(zones_raw, list) and zones_raw:
            zones = {}
            for index, zone in enumerate(zones_raw):
                minutes = self._safe_float(zone.get("minutes")) if isinstance(zone, dict) else None
                if minutes is not None:
                    zones[str(index)] = minutes
            zones = zones or None

        name = raw.get("activityName")
        return self._record(
            MetricType.WORKOUT,
            day,
            raw,
            record_key=str(log_id),
            source_record_id=str(log_id),
            start_time=start,
            duration_seconds=int(duration_ms / 1000) if duration_ms is not None else None,
            activity_type=name.lower() if isinstance(name, str) and name else None,
            calories_kcal=self._safe_float(raw.get("calories")),
            distance_m=distance,
            avg_hr_bpm=self._safe_float(raw.get("averageHeartRate")),
            hr_zone_minutes=zones,
        )
