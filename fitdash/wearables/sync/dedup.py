"""Deduplication and upsert helpers for normalized metric writes.

Re-syncing a window must overwrite, never duplicate.  The authoritative
mechanism is the UNIQUE constraint on wearable_metrics:

    (user_id, provider, metric_date, metric_type, record_key)

``record_key`` is "daily" for recovery, sleep and activity, and the
provider's workout id for workouts.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable
from uuid import UUID

from fitdash.wearables.base import NormalizedMetricRecord

logger = logging.getLogger("fitdash.wearables.sync.dedup")

METRIC_KEY_COLUMNS: list[str] = [
    "user_id",
    "provider",
    "metric_date",
    "metric_type",
    "record_key",
]

METRIC_VALUE_COLUMNS: list[str] = [
    "source_record_id",
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
    "missing_fields",
    "raw_payload",
    "synced_at",
]

METRIC_COLUMNS: list[str] = METRIC_KEY_COLUMNS + METRIC_VALUE_COLUMNS


def collapse_duplicates(
    records: Iterable[NormalizedMetricRecord],
) -> list[NormalizedMetricRecord]:
    """Keep the last record per natural key, preserving first-seen order.

    Pages are applied in order, so a later page's copy of the same key wins.
    """
    by_key: dict[tuple, NormalizedMetricRecord] = {}
    for record in records:
        key = record.natural_key
        if key in by_key:
            logger.debug("Duplicate metric key in batch, keeping latest: %s", key)
        by_key[key] = record
    return list(by_key.values())


def metric_row(user_id: UUID, record: NormalizedMetricRecord, synced_at: datetime) -> tuple:
    """Flatten a record into the positional argument tuple for METRIC_COLUMNS."""
    key_values = (
        user_id,
        record.provider.value,
        record.metric_date,
        record.metric_type.value,
        record.record_key,
    )
    values = []
    for column in METRIC_VALUE_COLUMNS:
        if column == "synced_at":
            values.append(synced_at)
        elif column == "missing_fields":
            values.append(list(record.missing_fields))
        else:
            values.append(getattr(record, column))
    return key_values + tuple(values)


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
    update_expressions: dict[str, str] | None = None,
    returning: str | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    Generates idempotent writes — safe to call multiple times with the same
    data.  On conflict, updates the non-key columns.

    Args:
        table:              Target table name.
        columns:            All columns to insert.
        conflict_columns:   Columns that define the UNIQUE constraint.
        update_columns:     Columns to update on conflict (defaults to non-key columns).
        update_expressions: Column -> SQL expression overriding ``EXCLUDED.col``.
        returning:          Optional RETURNING clause body.

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]
    update_expressions = update_expressions or {}

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(
            f"{col} = {update_expressions.get(col, f'EXCLUDED.{col}')}"
            for col in update_columns
        )
        update_set += ", updated_at = NOW()"
        do_clause = f"DO UPDATE SET {update_set}"
    else:
        do_clause = "DO NOTHING"

    query = (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )
    if returning:
        query += f" RETURNING {returning}"
    return query


UPSERT_METRIC_SQL = build_upsert_query(
    "wearable_metrics", METRIC_COLUMNS, METRIC_KEY_COLUMNS
)
