"""Error taxonomy for the wearable sync core.

Provider-specific failures (httpx exceptions, HTTP status codes, OAuth error
bodies) are classified here and re-raised as ``WearableError`` subclasses.
Nothing above the adapter / OAuth client boundary ever sees a raw ``httpx``
exception.
"""

from __future__ import annotations

import logging
from enum import Enum

import httpx

logger = logging.getLogger("fitdash.wearables.errors")

# OAuth error codes that mean the grant itself is dead (RFC 6749 section 5.2)
_DEAD_GRANT_CODES = {"invalid_grant", "invalid_token", "unauthorized_client", "access_denied"}
_MISCONFIGURED_CODES = {"invalid_client", "unsupported_grant_type"}


class SyncErrorKind(str, Enum):
    """Classification every orchestrator decision is based on."""

    NOT_CONNECTED = "not_connected"
    TOKEN_EXPIRED_UNRECOVERABLE = "token_expired_unrecoverable"
    TRANSIENT_NETWORK = "transient_network"
    RATE_LIMITED = "rate_limited"
    MALFORMED_PAYLOAD = "malformed_payload"
    PERSISTENCE = "persistence"
    AUTH_REJECTED = "auth_rejected"
    PROVIDER_ERROR = "provider_error"
    CONFIGURATION = "configuration"

    @property
    def retryable(self) -> bool:
        return self in (SyncErrorKind.TRANSIENT_NETWORK, SyncErrorKind.RATE_LIMITED)


class WearableError(Exception):
    """Base class for all classified wearable failures."""

    kind: SyncErrorKind = SyncErrorKind.PROVIDER_ERROR

    def __init__(self, message: str = "", *, provider: str | None = None) -> None:
        super().__init__(message or self.kind.value)
        self.provider = provider

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class TokenExpiredUnrecoverable(WearableError):
    """The refresh grant is invalid or revoked; the user must reconnect."""

    kind = SyncErrorKind.TOKEN_EXPIRED_UNRECOVERABLE


class TransientNetworkError(WearableError):
    kind = SyncErrorKind.TRANSIENT_NETWORK


class RateLimited(WearableError):
    kind = SyncErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str = "",
        *,
        provider: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, provider=provider)
        self.retry_after = retry_after


class MalformedProviderPayload(WearableError):
    kind = SyncErrorKind.MALFORMED_PAYLOAD


class PersistenceError(WearableError):
    kind = SyncErrorKind.PERSISTENCE


class ProviderAuthRejected(WearableError):
    """A data endpoint rejected the access token (401/403)."""

    kind = SyncErrorKind.AUTH_REJECTED


class ProviderRequestError(WearableError):
    kind = SyncErrorKind.PROVIDER_ERROR


class ProviderConfigurationError(WearableError):
    """Client id/secret missing or refused by the provider."""

    kind = SyncErrorKind.CONFIGURATION


class IntegrationError(Exception):
    """A user-initiated connect/disconnect failed; surfaced to the caller."""


# ---------------------------------------------------------------------------
# HTTP classification
# ---------------------------------------------------------------------------


def _retry_after(response: httpx.Response) -> float | None:
    for header in ("Retry-After", "fitbit-rate-limit-reset", "X-RateLimit-Reset"):
        value = response.headers.get(header)
        if value is None:
            continue
        try:
            return max(float(value), 0.0)
        except ValueError:
            continue
    return None


def _oauth_error_code(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    code = body.get("error")
    if isinstance(code, str):
        return code
    # Fitbit: {"errors": [{"errorType": "invalid_grant", ...}]}
    errors = body.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        error_type = errors[0].get("errorType")
        if isinstance(error_type, str):
            return error_type
    return None


def raise_for_data_response(response: httpx.Response, provider: str) -> None:
    """Raise the taxonomy error matching a non-2xx data API response."""
    status = response.status_code
    if status < 400:
        return
    try:
        where = f"{provider} {response.request.method} {response.request.url.path} -> {status}"
    except RuntimeError:  # response built without a request
        where = f"{provider} -> {status}"
    if status == 429:
        raise RateLimited(where, provider=provider, retry_after=_retry_after(response))
    if status >= 500:
        raise TransientNetworkError(where, provider=provider)
    if status in (401, 403):
        raise ProviderAuthRejected(where, provider=provider)
    raise ProviderRequestError(where, provider=provider)


def raise_for_token_response(response: httpx.Response, provider: str) -> None:
    """Raise the taxonomy error matching a failed token-endpoint response."""
    status = response.status_code
    if status < 400:
        return
    code = _oauth_error_code(response)
    where = f"{provider} token endpoint -> {status}" + (f" ({code})" if code else "")
    if status == 429:
        raise RateLimited(where, provider=provider, retry_after=_retry_after(response))
    if status >= 500:
        raise TransientNetworkError(where, provider=provider)
    if code in _MISCONFIGURED_CODES:
        raise ProviderConfigurationError(where, provider=provider)
    if code in _DEAD_GRANT_CODES or status in (400, 401):
        raise TokenExpiredUnrecoverable(where, provider=provider)
    raise ProviderRequestError(where, provider=provider)


def classify_transport_error(exc: httpx.HTTPError, provider: str) -> WearableError:
    """Map an httpx transport failure (timeout, DNS, reset) to the taxonomy."""
    logger.warning("%s transport error: %s", provider, exc.__class__.__name__)
    return TransientNetworkError(f"{provider}: {exc.__class__.__name__}: {exc}", provider=provider)
