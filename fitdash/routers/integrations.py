"""Provider connection endpoints: list, connect (OAuth), callback, disconnect."""

from __future__ import annotations

import logging
import secrets
from typing import Any
from urllib.parse import urlencode

from fastapi import APIRouter, HTTPException, Request, Response
from fastapi.responses import RedirectResponse

from fitdash.dependencies import AppSettings, CurrentUser, Services
from fitdash.models.wearables import ConnectionRead, ConnectUrlResponse
from fitdash.wearables.base import Provider
from fitdash.wearables.errors import IntegrationError, PersistenceError

router = APIRouter(prefix="/integrations", tags=["integrations"])
logger = logging.getLogger("fitdash.routers.integrations")

# state + verifier survive the round trip to the provider's consent page
OAUTH_COOKIE_MAX_AGE = 600


def _state_cookie(provider: Provider) -> str:
    return f"{provider.value}_oauth_state"


def _verifier_cookie(provider: Provider) -> str:
    return f"{provider.value}_code_verifier"


def _provider_or_404(slug: str) -> Provider:
    try:
        return Provider(slug.lower())
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {slug}") from None


def _frontend_redirect(frontend_url: str, **params: str) -> RedirectResponse:
    return RedirectResponse(f"{frontend_url.rstrip('/')}/?{urlencode(params)}", status_code=302)


@router.get("", response_model=list[ConnectionRead])
async def list_integrations(user: CurrentUser, services: Services) -> Any:
    try:
        connections = await services.integrations.connection_status(user.user_id)
    except PersistenceError as exc:
        raise HTTPException(status_code=503, detail="Integrations are unavailable") from exc
    return [
        ConnectionRead(
            provider=c.provider.value,
            display_name=c.display_name,
            connected=c.connected,
            connected_at=c.connected_at,
            last_sync_at=c.last_sync_at,
            token_expires_at=c.token_expires_at,
            provider_user_id=c.provider_user_id,
        )
        for c in connections
    ]


@router.get("/{provider}/connect", response_model=ConnectUrlResponse)
async def connect_provider(
    provider: str,
    user: CurrentUser,
    services: Services,
    settings: AppSettings,
    response: Response,
) -> Any:
    """Start the OAuth flow. The frontend navigates to ``authorization_url``."""
    slug = _provider_or_404(provider)
    try:
        auth = services.integrations.begin_connection(slug)
    except IntegrationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    secure = settings.environment != "development"
    response.set_cookie(
        _state_cookie(slug),
        auth.state,
        max_age=OAUTH_COOKIE_MAX_AGE,
        httponly=True,
        secure=secure,
        samesite="lax",
    )
    if auth.code_verifier:
        response.set_cookie(
            _verifier_cookie(slug),
            auth.code_verifier,
            max_age=OAUTH_COOKIE_MAX_AGE,
            httponly=True,
            secure=secure,
            samesite="lax",
        )
    logger.info("User %s starting %s connection", user.user_id, slug.value)
    return ConnectUrlResponse(provider=slug.value, authorization_url=auth.url)


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    request: Request,
    user: CurrentUser,
    services: Services,
    settings: AppSettings,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
) -> RedirectResponse:
    """Provider redirect target. Always answers with a redirect to the frontend."""
    slug = _provider_or_404(provider)
    frontend = settings.frontend_url

    if error:
        logger.info("%s authorization denied for user %s: %s", slug.value, user.user_id, error)
        result = _frontend_redirect(frontend, error=f"{slug.value}_auth_denied")
    elif not code or not state:
        result = _frontend_redirect(frontend, error=f"{slug.value}_auth_failed")
    else:
        stored_state = request.cookies.get(_state_cookie(slug))
        if not stored_state or not secrets.compare_digest(stored_state, state):
            logger.warning("%s callback state mismatch for user %s", slug.value, user.user_id)
            result = _frontend_redirect(frontend, error=f"{slug.value}_auth_invalid_state")
        else:
            try:
                await services.integrations.complete_connection(
                    user.user_id,
                    slug,
                    code,
                    request.cookies.get(_verifier_cookie(slug)),
                )
            except IntegrationError as exc:
                logger.warning("%s connection failed for user %s: %s", slug.value, user.user_id, exc)
                result = _frontend_redirect(frontend, error=f"{slug.value}_auth_failed")
            else:
                result = _frontend_redirect(frontend, **{f"{slug.value}_connected": "true"})

    result.delete_cookie(_state_cookie(slug))
    result.delete_cookie(_verifier_cookie(slug))
    return result


@router.delete("/{provider}", status_code=204)
async def disconnect_provider(provider: str, user: CurrentUser, services: Services) -> None:
    slug = _provider_or_404(provider)
    try:
        disconnected = await services.integrations.disconnect(user.user_id, slug)
    except IntegrationError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    if not disconnected:
        raise HTTPException(status_code=404, detail=f"{slug.display_name} is not connected")
