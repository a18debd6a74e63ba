"""OAuth 2.0 clients for the wearable providers.

One ``ProviderOAuthClient`` per provider handles the authorization URL,
code exchange, token refresh, revocation and the profile lookup used to
record the provider's own account id.  Token-endpoint failures are
classified with ``raise_for_token_response`` so callers only ever see
taxonomy errors.

Authorization URLs and PKCE material are built with authlib.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx
from authlib.common.security import generate_token
from authlib.oauth2.rfc6749.parameters import prepare_grant_uri
from authlib.oauth2.rfc7636 import create_s256_code_challenge

from fitdash.wearables.base import OAuthTokens, Provider
from fitdash.wearables.errors import (
    MalformedProviderPayload,
    ProviderConfigurationError,
    classify_transport_error,
    raise_for_data_response,
    raise_for_token_response,
)

logger = logging.getLogger("fitdash.wearables.oauth")


@dataclass(frozen=True)
class OAuthEndpoints:
    """Static OAuth description of one provider.

    Attributes:
        authorize_url:   User-facing consent page.
        token_url:       Code exchange and refresh endpoint.
        scopes:          Scopes requested at authorization time.
        revoke_url:      Token revocation endpoint, if the provider has one.
        basic_auth:      Send client credentials as HTTP Basic (Fitbit) instead of form fields.
        use_pkce:        Authorization code flow requires PKCE S256 (Garmin).
        profile_url:     Endpoint returning the provider's account id.
        profile_id_path: Dotted path to the id inside the profile JSON.
        refresh_scope:   Scope sent with refresh requests (Whoop wants "offline").
    """

    authorize_url: str
    token_url: str
    scopes: tuple[str, ...]
    revoke_url: str | None = None
    basic_auth: bool = False
    use_pkce: bool = False
    profile_url: str | None = None
    profile_id_path: str = "id"
    refresh_scope: str | None = None


PROVIDER_ENDPOINTS: dict[Provider, OAuthEndpoints] = {
    Provider.WHOOP: OAuthEndpoints(
        authorize_url="https://api.prod.whoop.com/oauth/oauth2/auth",
        token_url="https://api.prod.whoop.com/oauth/oauth2/token",
        scopes=(
            "offline", "read:recovery", "read:sleep", "read:workout",
            "read:cycles", "read:profile",
        ),
        profile_url="https://api.prod.whoop.com/developer/v2/user/profile/basic",
        profile_id_path="user_id",
        refresh_scope="offline",
    ),
    Provider.OURA: OAuthEndpoints(
        authorize_url="https://cloud.ouraring.com/oauth/authorize",
        token_url="https://api.ouraring.com/oauth/token",
        scopes=("personal", "daily", "session", "heartrate", "workout"),
        profile_url="https://api.ouraring.com/v2/usercollection/personal_info",
        profile_id_path="id",
    ),
    Provider.FITBIT: OAuthEndpoints(
        authorize_url="https://www.fitbit.com/oauth2/authorize",
        token_url="https://api.fitbit.com/oauth2/token",
        scopes=("activity", "heartrate", "sleep", "profile", "oxygen_saturation"),
        revoke_url="https://api.fitbit.com/oauth2/revoke",
        basic_auth=True,
        profile_url="https://api.fitbit.com/1/user/-/profile.json",
        profile_id_path="user.encodedId",
    ),
    Provider.GARMIN: OAuthEndpoints(
        authorize_url="https://connect.garmin.com/oauth2Confirm",
        token_url="https://diauth.garmin.com/di-oauth2-service/oauth/token",
        scopes=(),
        use_pkce=True,
        profile_url="https://apis.garmin.com/wellness-api/rest/user/id",
        profile_id_path="userId",
    ),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dig(payload: Any, dotted: str) -> Any:
    for part in dotted.split("."):
        if not isinstance(payload, dict):
            return None
        payload = payload.get(part)
    return payload


class ProviderOAuthClient:
    """Token-endpoint client for one provider.

    Usage::

        client = ProviderOAuthClient(Provider.FITBIT, "id", "secret", redirect_uri)
        url = client.authorization_url(state)
        tokens = await client.exchange_code(code)
        tokens = await client.refresh(tokens.refresh_token)
    """

    def __init__(
        self,
        provider: Provider,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        endpoints: OAuthEndpoints | None = None,
        http_client: httpx.AsyncClient | None = None,
        default_ttl_seconds: int = 3600,
        timeout_seconds: float = 20.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.provider = provider
        self.endpoints = endpoints or PROVIDER_ENDPOINTS[provider]
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._http_client = http_client
        self._default_ttl = default_ttl_seconds
        self._timeout = timeout_seconds
        self._clock = clock

    @property
    def configured(self) -> bool:
        return bool(self._client_id and self._client_secret)

    @property
    def supports_revocation(self) -> bool:
        return self.endpoints.revoke_url is not None

    def _require_configured(self) -> None:
        if not self.configured:
            raise ProviderConfigurationError(
                f"{self.provider.value}: client id/secret are not configured",
                provider=self.provider.value,
            )

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    @staticmethod
    def new_state() -> str:
        return generate_token(32)

    @staticmethod
    def new_code_verifier() -> str:
        # RFC 7636: 43-128 characters from the unreserved set
        return generate_token(64)

    def authorization_url(self, state: str, code_verifier: str | None = None) -> str:
        """Build the consent-page URL for this provider."""
        self._require_configured()
        extra: dict[str, str] = {}
        if self.endpoints.use_pkce:
            if not code_verifier:
                raise ValueError(f"{self.provider.value} requires a PKCE code_verifier")
            extra["code_challenge"] = create_s256_code_challenge(code_verifier)
            extra["code_challenge_method"] = "S256"
        return prepare_grant_uri(
            self.endpoints.authorize_url,
            self._client_id,
            "code",
            redirect_uri=self._redirect_uri,
            scope=list(self.endpoints.scopes) or None,
            state=state,
            **extra,
        )

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    async def exchange_code(self, code: str, code_verifier: str | None = None) -> OAuthTokens:
        """Exchange an authorization code for a token pair."""
        self._require_configured()
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._redirect_uri,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier
        body = await self._post_token(data)
        logger.info("%s: authorization code exchanged", self.provider.value)
        return self._tokens_from(body, previous_refresh_token=None)

    async def refresh(self, refresh_token: str) -> OAuthTokens:
        """Trade a refresh token for a new token pair.

        Providers that do not rotate refresh tokens keep the old one.
        """
        self._require_configured()
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        if self.endpoints.refresh_scope:
            data["scope"] = self.endpoints.refresh_scope
        body = await self._post_token(data)
        return self._tokens_from(body, previous_refresh_token=refresh_token)

    async def revoke(self, token: str) -> bool:
        """Revoke a token where the provider supports it.

        Returns False when the provider has no revocation endpoint.
        """
        if not self.supports_revocation:
            return False
        self._require_configured()
        response = await self._send(
            "POST",
            self.endpoints.revoke_url,
            data={"token": token},
            auth=self._basic_auth(),
        )
        raise_for_token_response(response, self.provider.value)
        logger.info("%s: token revoked", self.provider.value)
        return True

    async def fetch_profile_id(self, access_token: str) -> str | None:
        """Return the provider's own id for the account behind ``access_token``."""
        if not self.endpoints.profile_url:
            return None
        response = await self._send(
            "GET",
            self.endpoints.profile_url,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )
        raise_for_data_response(response, self.provider.value)
        try:
            value = _dig(response.json(), self.endpoints.profile_id_path)
        except ValueError as exc:
            raise MalformedProviderPayload(
                f"{self.provider.value}: profile response is not JSON",
                provider=self.provider.value,
            ) from exc
        return None if value is None else str(value)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _basic_auth(self) -> tuple[str, str] | None:
        if self.endpoints.basic_auth:
            return (self._client_id, self._client_secret)
        return None

    async def _post_token(self, data: dict[str, str]) -> dict:
        auth = self._basic_auth()
        form = dict(data)
        form["client_id"] = self._client_id
        if auth is None:
            form["client_secret"] = self._client_secret
        response = await self._send("POST", self.endpoints.token_url, data=form, auth=auth)
        raise_for_token_response(response, self.provider.value)
        try:
            body = response.json()
        except ValueError as exc:
            raise MalformedProviderPayload(
                f"{self.provider.value}: token response is not JSON",
                provider=self.provider.value,
            ) from exc
        if not isinstance(body, dict) or not body.get("access_token"):
            raise MalformedProviderPayload(
                f"{self.provider.value}: token response has no access_token",
                provider=self.provider.value,
            )
        return body

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        kwargs = {k: v for k, v in kwargs.items() if v is not None}
        try:
            if self._http_client is not None:
                return await self._http_client.request(
                    method, url, timeout=self._timeout, **kwargs
                )
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                return await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise classify_transport_error(exc, self.provider.value) from exc

    def _tokens_from(self, body: dict, previous_refresh_token: str | None) -> OAuthTokens:
        expires_in = body.get("expires_in")
        try:
            ttl = int(expires_in) if expires_in is not None else self._default_ttl
        except (TypeError, ValueError):
            ttl = self._default_ttl
        known = {"access_token", "refresh_token", "expires_in", "token_type", "scope"}
        return OAuthTokens(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or previous_refresh_token,
            expires_at=self._clock() + timedelta(seconds=ttl),
            token_type=body.get("token_type", "Bearer"),
            scope=body.get("scope"),
            extra={k: v for k, v in body.items() if k not in known},
        )
