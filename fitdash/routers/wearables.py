"""Wearable sync endpoints: on-demand sync, sync status, normalized metrics."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from fitdash.dependencies import CurrentUser, Services
from fitdash.models.wearables import (
    MetricRead,
    ProviderOutcomeRead,
    SyncRequest,
    SyncResponse,
    SyncStatusRead,
)
from fitdash.wearables.base import DateRange, MetricType, Provider
from fitdash.wearables.errors import PersistenceError

router = APIRouter(prefix="/wearables", tags=["wearables"])
logger = logging.getLogger("fitdash.routers.wearables")


# ---------- Sync ----------

@router.post("/sync", response_model=SyncResponse)
async def sync_wearables(
    user: CurrentUser, services: Services, body: SyncRequest | None = None
) -> Any:
    """Sync every connected provider for the caller.

    Provider failures never fail the request; each one is reported in
    ``results`` under its provider slug.
    """
    date_range = None
    if body is not None and body.start_date is not None and body.end_date is not None:
        date_range = DateRange(body.start_date, body.end_date)
    try:
        outcomes = await services.orchestrator.sync_all_data_for_user(user.user_id, date_range)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=503, detail="Sync is unavailable") from exc

    results = {
        provider.value: ProviderOutcomeRead(
            status=outcome.status,
            label=outcome.label,
            error_kind=outcome.error_kind.value if outcome.error_kind else None,
            retryable=outcome.retryable,
            records_synced=outcome.records_synced,
            detail=outcome.detail,
        )
        for provider, outcome in outcomes.items()
    }
    if not results:
        message = "No connected wearables to sync"
    else:
        synced = sum(1 for r in results.values() if r.status in ("success", "partial"))
        message = f"Synced {synced} of {len(results)} connected wearables"
    return SyncResponse(message=message, results=results)


@router.get("/sync/status", response_model=list[SyncStatusRead])
async def sync_status(user: CurrentUser, services: Services) -> Any:
    try:
        records = await services.orchestrator.sync_status(user.user_id)
    except PersistenceError as exc:
        raise HTTPException(status_code=503, detail="Sync status is unavailable") from exc
    return [
        SyncStatusRead(
            provider=r.provider.value,
            last_attempt_at=r.last_attempt_at,
            outcome=r.outcome,
            last_success_at=r.last_success_at,
            error_kind=r.error_kind,
            error_detail=r.error_detail,
            records_synced=r.records_synced,
        )
        for r in records
    ]


# ---------- Metrics ----------

@router.get("/metrics", response_model=list[MetricRead])
async def list_metrics(
    user: CurrentUser,
    services: Services,
    metric_type: MetricType | None = Query(default=None),
    provider: Provider | None = Query(default=None),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
) -> Any:
    if start_date and end_date and end_date < start_date:
        raise HTTPException(status_code=422, detail="end_date must not be before start_date")
    try:
        return await services.metrics.query(
            user.user_id,
            metric_type=metric_type,
            provider=provider,
            start=start_date,
            end=end_date,
            limit=limit,
        )
    except PersistenceError as exc:
        raise HTTPException(status_code=503, detail="Metrics are unavailable") from exc
