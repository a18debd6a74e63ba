"""Tests for natural-key deduplication and upsert query building."""

from __future__ import annotations

from datetime import date, datetime, timezone

from fitdash.wearables.base import MetricType, NormalizedMetricRecord, Provider
from fitdash.wearables.sync.dedup import (
    METRIC_COLUMNS,
    UPSERT_METRIC_SQL,
    build_upsert_query,
    collapse_duplicates,
    metric_row,
)
from fitdash.wearables.tests.conftest import TEST_DATE, TEST_USER_ID


def _sleep(day: date, minutes: float, provider: Provider = Provider.OURA) -> NormalizedMetricRecord:
    return NormalizedMetricRecord(
        provider=provider,
        metric_type=MetricType.SLEEP,
        metric_date=day,
        total_sleep_minutes=minutes,
    )


class TestCollapseDuplicates:
    def test_later_copy_wins(self) -> None:
        records = [_sleep(TEST_DATE, 400), _sleep(TEST_DATE, 420)]
        result = collapse_duplicates(records)
        assert len(result) == 1
        assert result[0].total_sleep_minutes == 420

    def test_first_seen_order_kept(self) -> None:
        day2 = date(2026, 2, 24)
        records = [_sleep(TEST_DATE, 400), _sleep(day2, 380), _sleep(TEST_DATE, 410)]
        result = collapse_duplicates(records)
        assert [r.metric_date for r in result] == [TEST_DATE, day2]

    def test_different_providers_not_merged(self) -> None:
        records = [_sleep(TEST_DATE, 400), _sleep(TEST_DATE, 400, Provider.WHOOP)]
        assert len(collapse_duplicates(records)) == 2

    def test_workouts_keyed_by_record_key(self) -> None:
        a = NormalizedMetricRecord(
            Provider.WHOOP, MetricType.WORKOUT, TEST_DATE, record_key="w-1"
        )
        b = NormalizedMetricRecord(
            Provider.WHOOP, MetricType.WORKOUT, TEST_DATE, record_key="w-2"
        )
        assert len(collapse_duplicates([a, b])) == 2

    def test_empty(self) -> None:
        assert collapse_duplicates([]) == []


class TestMetricRow:
    def test_row_matches_columns(self) -> None:
        synced = datetime(2026, 2, 23, 12, tzinfo=timezone.utc)
        record = _sleep(TEST_DATE, 400)
        record.missing_fields = ["sleep_score"]
        row = metric_row(TEST_USER_ID, record, synced)
        assert len(row) == len(METRIC_COLUMNS)
        values = dict(zip(METRIC_COLUMNS, row))
        assert values["user_id"] == TEST_USER_ID
        assert values["provider"] == "oura"
        assert values["metric_type"] == "sleep"
        assert values["record_key"] == "daily"
        assert values["total_sleep_minutes"] == 400
        assert values["missing_fields"] == ["sleep_score"]
        assert values["synced_at"] == synced


class TestBuildUpsertQuery:
    def test_basic_upsert(self) -> None:
        sql = build_upsert_query("t", ["a", "b", "c"], ["a"])
        assert sql.startswith("INSERT INTO t (a, b, c) VALUES ($1, $2, $3)")
        assert "ON CONFLICT (a) DO UPDATE SET b = EXCLUDED.b, c = EXCLUDED.c" in sql
        assert sql.endswith("updated_at = NOW()")

    def test_update_expression_override(self) -> None:
        sql = build_upsert_query(
            "t", ["a", "b"], ["a"], update_expressions={"b": "COALESCE(EXCLUDED.b, t.b)"}
        )
        assert "b = COALESCE(EXCLUDED.b, t.b)" in sql

    def test_all_key_columns_do_nothing(self) -> None:
        sql = build_upsert_query("t", ["a"], ["a"])
        assert sql.endswith("ON CONFLICT (a) DO NOTHING")

    def test_returning(self) -> None:
        sql = build_upsert_query("t", ["a", "b"], ["a"], returning="id")
        assert sql.endswith("RETURNING id")

    def test_metric_upsert_targets_natural_key(self) -> None:
        assert (
            "ON CONFLICT (user_id, provider, metric_date, metric_type, record_key)"
            in UPSERT_METRIC_SQL
        )
        assert "user_id = EXCLUDED.user_id" not in UPSERT_METRIC_SQL
        assert f"${len(METRIC_COLUMNS)})" in UPSERT_METRIC_SQL
