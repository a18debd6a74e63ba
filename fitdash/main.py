"""Fitdash API — FastAPI application entry point.

Run locally:
    uvicorn fitdash.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fitdash.config import get_settings
from fitdash.routers import health, integrations, wearables
from fitdash.services.database import Database
from fitdash.wearables.container import build_wearable_services

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("fitdash")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting Fitdash API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    db = await Database.connect(settings)
    if settings.database_apply_schema:
        await db.apply_schema()
    http_client = httpx.AsyncClient(
        headers={"User-Agent": f"fitdash/{settings.app_version}"},
        follow_redirects=False,
    )
    app.state.db = db
    app.state.http_client = http_client
    app.state.wearables = build_wearable_services(settings, db, http_client)
    yield
    await http_client.aclose()
    await db.close()
    logger.info("Fitdash API shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Fitdash API",
        description=(
            "Wearable aggregation backend — OAuth connections and normalized "
            "recovery, sleep and activity data from Whoop, Oura, Fitbit and Garmin."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # CORS: the frontend calls the API with cookies for the OAuth state
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- Health check (outside the v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(wearables.router, prefix=v1_prefix)
    app.include_router(integrations.router, prefix=v1_prefix)

    return app


app = create_app()
