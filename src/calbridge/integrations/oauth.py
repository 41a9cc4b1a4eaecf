"""OAuth 2.0 client for the Google token endpoints.

Covers the four calls the integration lifecycle needs:

- ``authorization_url(state)`` — consent URL with offline access and forced
  consent so a refresh token is always issued.
- ``exchange_code_for_tokens(code)`` — authorization-code grant.
- ``refresh(refresh_token)`` — refresh-token grant.
- ``revoke(token)`` — token revocation.

Token endpoint failures are mapped onto the calbridge error taxonomy.  Raw
response bodies are never included in raised messages or log lines.

``OAuthStateStore`` holds the one-time CSRF ``state`` tokens that bind a
callback to the user who started the flow.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Protocol
from urllib.parse import urlencode

import httpx

from calbridge.config import OAuthClientConfig
from calbridge.errors import (
    InternalError,
    InvalidGrant,
    ProviderRateLimited,
    ProviderUnavailable,
    ValidationError,
)
from calbridge.integrations.models import TokenSet

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"

_DEFAULT_TIMEOUT_SECONDS = 15.0

# Token-endpoint error codes meaning the refresh token is permanently unusable.
_INVALID_GRANT_ERRORS = frozenset({"invalid_grant", "unauthorized_client"})


class OAuthClient(Protocol):
    """Provider token-endpoint capability used by the token vault."""

    provider: str

    def authorization_url(self, state: str) -> str: ...

    async def exchange_code_for_tokens(self, code: str) -> TokenSet: ...

    async def refresh(self, refresh_token: str) -> TokenSet: ...

    async def revoke(self, token: str) -> None: ...


def _token_error_code(response: httpx.Response) -> str | None:
    """Return the OAuth ``error`` field of a token endpoint response, if any."""
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, str) and error.strip():
            return error.strip()
    return None


def _retry_after_seconds(response: httpx.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


class GoogleOAuthClient:
    """Google OAuth client bound to one app registration.

    Parameters
    ----------
    config:
        Client id/secret, redirect URI and scopes.
    http_client:
        Shared ``httpx.AsyncClient``; the caller owns its lifecycle.
    clock:
        Returns the current UTC time; used to turn ``expires_in`` into an
        absolute expiry.
    """

    provider = "google"

    def __init__(
        self,
        config: OAuthClientConfig,
        http_client: httpx.AsyncClient,
        *,
        clock: Callable[[], datetime] | None = None,
        timeout: float = _DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._config = config
        self._http_client = http_client
        self._clock = clock or (lambda: datetime.now(UTC))
        self._timeout = timeout

    def __repr__(self) -> str:
        return f"GoogleOAuthClient(client_id={self._config.client_id!r})"

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self._config.client_id,
            "redirect_uri": self._config.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self._config.scopes),
            "access_type": "offline",
            "prompt": "consent",  # Force refresh token to be returned
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def exchange_code_for_tokens(self, code: str) -> TokenSet:
        """Exchange an authorization code for a :class:`TokenSet`.

        Raises
        ------
        ValidationError
            If Google rejects the code (expired, reused, redirect mismatch).
        ProviderUnavailable
            On transport errors or a 5xx from the token endpoint.
        """
        if not code.strip():
            raise ValidationError("Authorization code is missing")

        response = await self._post_token(
            {
                "code": code,
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
                "redirect_uri": self._config.redirect_uri,
                "grant_type": "authorization_code",
            },
            operation="code exchange",
        )

        if response.status_code != 200:
            error_code = _token_error_code(response)
            logger.warning(
                "Google OAuth code exchange failed: status=%d error=%s",
                response.status_code,
                error_code,
            )
            raise ValidationError(
                "Failed to exchange authorization code for tokens. "
                "The code may have expired or already been used. Please restart the OAuth flow."
            )

        return self._parse_token_set(response, operation="code exchange")

    async def refresh(self, refresh_token: str) -> TokenSet:
        """Run the refresh-token grant.

        Raises
        ------
        InvalidGrant
            If the refresh token was revoked or expired.
        ProviderRateLimited
            If the token endpoint throttles the request.
        ProviderUnavailable
            On transport errors or a 5xx from the token endpoint.
        InternalError
            On any other rejection (e.g. misconfigured client credentials).
        """
        response = await self._post_token(
            {
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            operation="token refresh",
        )

        if response.status_code == 200:
            return self._parse_token_set(response, operation="token refresh")

        error_code = _token_error_code(response)
        logger.warning(
            "Google OAuth token refresh failed: status=%d error=%s",
            response.status_code,
            error_code,
        )
        if error_code in _INVALID_GRANT_ERRORS:
            raise InvalidGrant()
        if response.status_code == 429:
            raise ProviderRateLimited(retry_after=_retry_after_seconds(response))
        if response.status_code >= 500:
            raise ProviderUnavailable(
                f"Google OAuth token endpoint returned HTTP {response.status_code}"
            )
        raise InternalError(
            f"Google OAuth token refresh was rejected (HTTP {response.status_code}, "
            f"error={error_code or 'unknown'})"
        )

    async def revoke(self, token: str) -> None:
        """Revoke *token* at Google.

        A 400 means the token is already invalid, which counts as revoked.

        Raises
        ------
        ProviderUnavailable
            On transport errors or a 5xx.
        """
        try:
            response = await self._http_client.post(
                GOOGLE_REVOKE_URL,
                data={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            raise ProviderUnavailable(
                f"Google OAuth revoke request failed: {type(exc).__name__}"
            ) from exc

        if response.status_code >= 500:
            raise ProviderUnavailable(f"Google OAuth revoke returned HTTP {response.status_code}")
        if response.status_code != 200:
            logger.info(
                "Google OAuth revoke returned HTTP %d; treating token as already revoked",
                response.status_code,
            )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _post_token(self, data: dict[str, str], *, operation: str) -> httpx.Response:
        try:
            return await self._http_client.post(
                GOOGLE_TOKEN_URL,
                data=data,
                headers={"Accept": "application/json"},
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable(f"Google OAuth {operation} timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailable(
                f"Google OAuth {operation} request failed: {type(exc).__name__}"
            ) from exc

    def _parse_token_set(self, response: httpx.Response, *, operation: str) -> TokenSet:
        try:
            payload: Any = response.json()
        except ValueError as exc:
            raise InternalError(f"Google OAuth {operation} returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise InternalError(f"Google OAuth {operation} returned a non-object payload")
        try:
            return TokenSet.from_token_response(payload, now=self._clock())
        except ValueError as exc:
            raise InternalError(f"Google OAuth {operation} response is malformed: {exc}") from exc


# ---------------------------------------------------------------------------
# CSRF state store
# ---------------------------------------------------------------------------

STATE_TTL_SECONDS = 600.0  # 10 minutes


class OAuthStateStore:
    """One-time CSRF state tokens, each bound to the user who started the flow.

    Process-local: run a single worker process, or state issued by one
    worker will not validate on another.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = STATE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}

    def issue(self, user_id: str) -> str:
        """Generate and remember a state token for *user_id*."""
        self._evict_expired()
        state = secrets.token_urlsafe(32)
        self._entries[state] = (user_id, self._clock() + self._ttl)
        return state

    def consume(self, state: str) -> str | None:
        """Validate and consume *state*; returns the bound user id or ``None``."""
        self._evict_expired()
        entry = self._entries.pop(state, None)
        if entry is None:
            return None
        user_id, expires_at = entry
        if self._clock() >= expires_at:
            return None
        return user_id

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [state for state, (_, expires_at) in self._entries.items() if now >= expires_at]
        for state in expired:
            del self._entries[state]

    def __len__(self) -> int:
        return len(self._entries)
