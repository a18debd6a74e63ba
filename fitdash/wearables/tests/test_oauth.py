"""Tests for the provider OAuth clients against a mocked token endpoint."""

from __future__ import annotations

import base64
import hashlib
from datetime import timedelta
from urllib.parse import parse_qsl

import httpx
import pytest

from fitdash.wearables.base import Provider
from fitdash.wearables.errors import (
    MalformedProviderPayload,
    ProviderAuthRejected,
    ProviderConfigurationError,
    TokenExpiredUnrecoverable,
    TransientNetworkError,
)
from fitdash.wearables.oauth import ProviderOAuthClient
from fitdash.wearables.tests.conftest import T0, FakeClock, RecordingHandler, mock_client

REDIRECT = "https://app.example.com/api/v1/integrations/cb"
TOKEN_PATHS = {
    Provider.WHOOP: "/oauth/oauth2/token",
    Provider.OURA: "/oauth/token",
    Provider.FITBIT: "/oauth2/token",
    Provider.GARMIN: "/di-oauth2-service/oauth/token",
}


def _client(
    provider: Provider,
    http: httpx.AsyncClient | None = None,
    *,
    secret: str = "secret",
) -> ProviderOAuthClient:
    return ProviderOAuthClient(
        provider, "cid", secret, REDIRECT, http_client=http, clock=FakeClock()
    )


def _form(request: httpx.Request) -> dict[str, str]:
    return dict(parse_qsl(request.content.decode()))


def _token_route(provider: Provider, body, status: int = 200) -> RecordingHandler:
    return RecordingHandler({TOKEN_PATHS[provider]: httpx.Response(status, json=body)})


# ---------------------------------------------------------------------------
# Authorization URL
# ---------------------------------------------------------------------------


class TestAuthorizationUrl:
    def test_includes_state_scope_and_redirect(self) -> None:
        url = httpx.URL(_client(Provider.WHOOP).authorization_url("state-123"))
        assert url.host == "api.prod.whoop.com"
        assert url.params["response_type"] == "code"
        assert url.params["client_id"] == "cid"
        assert url.params["state"] == "state-123"
        assert url.params["redirect_uri"] == REDIRECT
        assert url.params["scope"].split(" ")[0] == "offline"
        assert "code_challenge" not in url.params

    def test_garmin_uses_pkce(self) -> None:
        verifier = ProviderOAuthClient.new_code_verifier()
        url = httpx.URL(_client(Provider.GARMIN).authorization_url("s", verifier))
        expected = (
            base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest())
            .rstrip(b"=")
            .decode()
        )
        assert url.params["code_challenge"] == expected
        assert url.params["code_challenge_method"] == "S256"
        # Garmin takes no scope parameter
        assert "scope" not in url.params

    def test_garmin_without_verifier_rejected(self) -> None:
        with pytest.raises(ValueError):
            _client(Provider.GARMIN).authorization_url("s")

    def test_unconfigured_client(self) -> None:
        client = _client(Provider.OURA, secret="")
        assert not client.configured
        with pytest.raises(ProviderConfigurationError):
            client.authorization_url("s")

    def test_state_and_verifier_are_random(self) -> None:
        assert ProviderOAuthClient.new_state() != ProviderOAuthClient.new_state()
        assert 43 <= len(ProviderOAuthClient.new_code_verifier()) <= 128


# ---------------------------------------------------------------------------
# Token endpoint
# ---------------------------------------------------------------------------


class TestTokenEndpoint:
    @pytest.mark.asyncio
    async def test_refresh_keeps_refresh_token_when_not_rotated(self) -> None:
        handler = _token_route(Provider.OURA, {"access_token": "new", "expires_in": 7200})
        async with mock_client(handler) as http:
            tokens = await _client(Provider.OURA, http).refresh("refresh-old")

        assert tokens.access_token == "new"
        assert tokens.refresh_token == "refresh-old"
        assert tokens.expires_at == T0 + timedelta(seconds=7200)
        form = _form(handler.requests[0])
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "refresh-old"
        assert form["client_secret"] == "secret"

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_and_default_ttl(self) -> None:
        handler = _token_route(
            Provider.OURA, {"access_token": "new", "refresh_token": "refresh-new"}
        )
        async with mock_client(handler) as http:
            tokens = await _client(Provider.OURA, http).refresh("refresh-old")

        assert tokens.refresh_token == "refresh-new"
        assert tokens.expires_at == T0 + timedelta(seconds=3600)

    @pytest.mark.asyncio
    async def test_fitbit_uses_basic_auth(self) -> None:
        handler = _token_route(
            Provider.FITBIT, {"access_token": "a", "refresh_token": "r", "user_id": "ABC"}
        )
        async with mock_client(handler) as http:
            tokens = await _client(Provider.FITBIT, http).refresh("r0")

        request = handler.requests[0]
        expected = base64.b64encode(b"cid:secret").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"
        assert "client_secret" not in _form(request)
        assert tokens.extra == {"user_id": "ABC"}

    @pytest.mark.asyncio
    async def test_whoop_refresh_requests_offline_scope(self) -> None:
        handler = _token_route(Provider.WHOOP, {"access_token": "a", "expires_in": 3600})
        async with mock_client(handler) as http:
            await _client(Provider.WHOOP, http).refresh("r0")
        assert _form(handler.requests[0])["scope"] == "offline"

    @pytest.mark.asyncio
    async def test_exchange_code_sends_verifier(self) -> None:
        handler = _token_route(Provider.GARMIN, {"access_token": "a", "refresh_token": "r"})
        async with mock_client(handler) as http:
            tokens = await _client(Provider.GARMIN, http).exchange_code("code-1", "verifier-1")

        form = _form(handler.requests[0])
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "code-1"
        assert form["code_verifier"] == "verifier-1"
        assert form["redirect_uri"] == REDIRECT
        assert tokens.refresh_token == "r"

    @pytest.mark.asyncio
    async def test_invalid_grant_is_unrecoverable(self) -> None:
        handler = _token_route(Provider.OURA, {"error": "invalid_grant"}, status=400)
        async with mock_client(handler) as http:
            with pytest.raises(TokenExpiredUnrecoverable):
                await _client(Provider.OURA, http).refresh("r0")

    @pytest.mark.asyncio
    async def test_fitbit_error_list_is_read(self) -> None:
        body = {"errors": [{"errorType": "invalid_grant", "message": "Refresh token invalid"}]}
        handler = _token_route(Provider.FITBIT, body, status=400)
        async with mock_client(handler) as http:
            with pytest.raises(TokenExpiredUnrecoverable):
                await _client(Provider.FITBIT, http).refresh("r0")

    @pytest.mark.asyncio
    async def test_invalid_client_is_configuration(self) -> None:
        handler = _token_route(Provider.WHOOP, {"error": "invalid_client"}, status=401)
        async with mock_client(handler) as http:
            with pytest.raises(ProviderConfigurationError):
                await _client(Provider.WHOOP, http).refresh("r0")

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self) -> None:
        handler = _token_route(Provider.WHOOP, {}, status=503)
        async with mock_client(handler) as http:
            with pytest.raises(TransientNetworkError):
                await _client(Provider.WHOOP, http).refresh("r0")

    @pytest.mark.asyncio
    async def test_transport_failure_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            with pytest.raises(TransientNetworkError):
                await _client(Provider.OURA, http).refresh("r0")

    @pytest.mark.asyncio
    async def test_missing_access_token_is_malformed(self) -> None:
        handler = _token_route(Provider.OURA, {"token_type": "Bearer"})
        async with mock_client(handler) as http:
            with pytest.raises(MalformedProviderPayload):
                await _client(Provider.OURA, http).refresh("r0")

    @pytest.mark.asyncio
    async def test_unconfigured_refresh_makes_no_request(self) -> None:
        handler = _token_route(Provider.OURA, {"access_token": "a"})
        async with mock_client(handler) as http:
            with pytest.raises(ProviderConfigurationError):
                await _client(Provider.OURA, http, secret="").refresh("r0")
        assert handler.requests == []


# ---------------------------------------------------------------------------
# Revocation and profile
# ---------------------------------------------------------------------------


class TestRevokeAndProfile:
    @pytest.mark.asyncio
    async def test_fitbit_revoke(self) -> None:
        handler = RecordingHandler({"/oauth2/revoke": {}})
        async with mock_client(handler) as http:
            assert await _client(Provider.FITBIT, http).revoke("access-1") is True
        assert _form(handler.requests[0])["token"] == "access-1"

    @pytest.mark.asyncio
    async def test_revoke_unsupported(self) -> None:
        handler = RecordingHandler({})
        async with mock_client(handler) as http:
            assert await _client(Provider.OURA, http).revoke("access-1") is False
        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_profile_id_dotted_path(self) -> None:
        handler = RecordingHandler(
            {"/1/user/-/profile.json": {"user": {"encodedId": "7QX2KD", "age": 40}}}
        )
        async with mock_client(handler) as http:
            assert await _client(Provider.FITBIT, http).fetch_profile_id("a") == "7QX2KD"
        assert handler.requests[0].headers["Authorization"] == "Bearer a"

    @pytest.mark.asyncio
    async def test_numeric_profile_id_is_stringified(self) -> None:
        handler = RecordingHandler({"/developer/v2/user/profile/basic": {"user_id": 10129}})
        async with mock_client(handler) as http:
            assert await _client(Provider.WHOOP, http).fetch_profile_id("a") == "10129"

    @pytest.mark.asyncio
    async def test_profile_rejected(self) -> None:
        handler = RecordingHandler(
            {"/v2/usercollection/personal_info": httpx.Response(401, json={})}
        )
        async with mock_client(handler) as http:
            with pytest.raises(ProviderAuthRejected):
                await _client(Provider.OURA, http).fetch_profile_id("a")
