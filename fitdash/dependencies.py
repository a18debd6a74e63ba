"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request

from fitdash.config import Settings, get_settings
from fitdash.wearables.container import WearableServices


@dataclass(frozen=True)
class AuthContext:
    """Authenticated caller, resolved upstream of this service.

    An auth layer in front of the API (gateway or middleware) sets
    ``request.state.auth``; the wearable core only ever sees ``user_id``.
    """

    user_id: uuid.UUID
    email: str | None = None
    session_id: str | None = None


async def get_current_user(request: Request) -> AuthContext:
    """Extract the authenticated user from the request state."""
    auth: AuthContext | None = getattr(request.state, "auth", None)
    if auth is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return auth


def get_wearable_services(request: Request) -> WearableServices:
    services: WearableServices | None = getattr(request.app.state, "wearables", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Wearable services are not ready")
    return services


# Annotated shortcuts for route signatures
CurrentUser = Annotated[AuthContext, Depends(get_current_user)]
AppSettings = Annotated[Settings, Depends(get_settings)]
Services = Annotated[WearableServices, Depends(get_wearable_services)]
