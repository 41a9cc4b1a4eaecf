"""Token vault — lifecycle of one encrypted credential set per (user, provider).

The vault is the only component that reads or writes persisted credentials.
Callers ask it for a usable access token and never see ciphertext or refresh
tokens.

State machine (per user, provider)::

    NotConnected ──connect──▶ Connected(valid) ──time──▶ Connected(expiring soon)
          ▲                         ▲                            │
          │                         └──────── refresh ◀──────────┘
          └──────── invalid grant / revoke ─────────────────────┘

Refreshes are single-flight: an in-process ``asyncio.Lock`` per
(user, provider) collapses concurrent callers onto one refresh grant, and
the store write is a compare-and-swap on ``version`` so two processes can
never both persist a "latest" token.  The CAS loser adopts the winner's
token.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime, timedelta

from calbridge.cipher import TokenCipher, TokenCipherError
from calbridge.core.telemetry import provider_span
from calbridge.errors import AuthExpired, CalbridgeError, InvalidGrant, NotFound, ValidationError
from calbridge.integrations.models import (
    DEFAULT_CALENDAR_IDS,
    TOKEN_REFRESH_THRESHOLD,
    ConnectionState,
    Integration,
    IntegrationStatus,
    TokenSet,
)
from calbridge.integrations.oauth import OAuthClient
from calbridge.integrations.store import IntegrationStore
from calbridge.retry import RetryPolicy, retry_unavailable

logger = logging.getLogger(__name__)


class TokenVault:
    """Encrypted credential storage with refresh-on-demand.

    Parameters
    ----------
    store:
        Durable integration storage.
    cipher:
        Encrypts token material before it reaches *store*.
    oauth_clients:
        Token-endpoint clients keyed by provider name.
    retry_policy:
        Applied to transient refresh failures only.
    clock:
        Returns the current UTC time.
    """

    def __init__(
        self,
        store: IntegrationStore,
        cipher: TokenCipher,
        oauth_clients: Mapping[str, OAuthClient],
        *,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
        refresh_threshold: timedelta = TOKEN_REFRESH_THRESHOLD,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._cipher = cipher
        self._oauth_clients = dict(oauth_clients)
        self._retry_policy = retry_policy or RetryPolicy()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._refresh_threshold = refresh_threshold
        self._sleep = sleep
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def __repr__(self) -> str:
        return f"TokenVault(providers={sorted(self._oauth_clients)!r})"

    # ------------------------------------------------------------------
    # Token access
    # ------------------------------------------------------------------

    async def get_valid_access_token(self, user_id: str, provider: str) -> str:
        """Return an access token valid for at least the refresh threshold.

        Raises
        ------
        AuthExpired
            If there is no integration, no refresh token, or the refresh
            token was rejected (the integration is deleted in that case).
        ProviderUnavailable
            If refreshing kept failing transiently.
        """
        integration = await self._require(user_id, provider)
        if not integration.expires_within(self._refresh_threshold, now=self._clock()):
            return self._decrypt(integration.access_token)
        return await self._refresh_single_flight(user_id, provider, force=False)

    async def refresh(self, user_id: str, provider: str, *, stale_token: str | None = None) -> str:
        """Force a refresh and return the new access token.

        When *stale_token* is given and the stored token already differs from
        it, another caller refreshed in the meantime and that token is
        returned without a second grant.
        """
        return await self._refresh_single_flight(
            user_id, provider, force=True, stale_token=stale_token
        )

    async def _refresh_single_flight(
        self,
        user_id: str,
        provider: str,
        *,
        force: bool,
        stale_token: str | None = None,
    ) -> str:
        lock = self._lock_for(user_id, provider)
        async with lock:
            # Re-read under the lock; a concurrent caller may have refreshed.
            integration = await self._require(user_id, provider)
            expiring = integration.expires_within(self._refresh_threshold, now=self._clock())
            if not expiring:
                if not force:
                    return self._decrypt(integration.access_token)
                if stale_token is not None:
                    current = self._decrypt(integration.access_token)
                    if current != stale_token:
                        return current
            return await self._perform_refresh(integration)

    async def _perform_refresh(self, integration: Integration) -> str:
        user_id, provider = integration.user_id, integration.provider
        if integration.refresh_token is None:
            logger.warning(
                "No refresh token stored; user must reconnect: user_id=%r provider=%r",
                user_id,
                provider,
            )
            raise AuthExpired("No refresh token available. Please reconnect your account.")

        refresh_token = self._decrypt(integration.refresh_token)
        client = self._client_for(provider)

        with provider_span("token_refresh", provider=provider):
            try:
                token_set = await retry_unavailable(
                    lambda: client.refresh(refresh_token),
                    policy=self._retry_policy,
                    operation_name=f"{provider} token refresh",
                    sleep=self._sleep,
                )
            except InvalidGrant:
                if await self._store.delete_if_version(user_id, provider, integration.version):
                    logger.warning(
                        "Refresh token rejected by provider; integration removed: "
                        "user_id=%r provider=%r",
                        user_id,
                        provider,
                    )
                    raise
                current = await self._store.get(user_id, provider)
                if current is None:
                    raise
                logger.info(
                    "Refresh token rejected but integration was rewritten concurrently; "
                    "adopting stored credentials: user_id=%r provider=%r",
                    user_id,
                    provider,
                )
                if not current.expires_within(self._refresh_threshold, now=self._clock()):
                    return self._decrypt(current.access_token)
                return await self._perform_refresh(current)

        # Providers may omit the refresh token on refresh; keep the current one.
        new_refresh = token_set.refresh_token or refresh_token
        updated = await self._store.compare_and_swap_tokens(
            user_id,
            provider,
            expected_version=integration.version,
            access_token=self._cipher.encrypt(token_set.access_token),
            refresh_token=self._cipher.encrypt(new_refresh),
            token_expiry=token_set.expires_at,
            scope=token_set.scope,
        )
        if updated is None:
            winner = await self._store.get(user_id, provider)
            if winner is None:
                raise AuthExpired()
            logger.info(
                "Concurrent refresh won elsewhere; adopting stored token: user_id=%r provider=%r",
                user_id,
                provider,
            )
            return self._decrypt(winner.access_token)

        logger.info(
            "Access token refreshed: user_id=%r provider=%r expires_at=%s",
            user_id,
            provider,
            token_set.expires_at.isoformat(),
        )
        return token_set.access_token

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self, user_id: str, provider: str, token_set: TokenSet) -> IntegrationStatus:
        """Create or replace the integration from a completed OAuth flow.

        An existing refresh token is kept when the provider omits one on
        re-consent; existing calendar selections are preserved.

        Raises
        ------
        ValidationError
            If no refresh token was issued and none is already stored.
        """
        self._client_for(provider)
        existing = await self._store.get(user_id, provider)

        if token_set.refresh_token:
            refresh_ciphertext = self._cipher.encrypt(token_set.refresh_token)
        elif existing is not None and existing.refresh_token:
            refresh_ciphertext = existing.refresh_token
        else:
            raise ValidationError(
                "The provider did not return a refresh token. Ensure offline access "
                "is requested with prompt=consent and restart the OAuth flow."
            )

        stored = await self._store.upsert(
            Integration(
                user_id=user_id,
                provider=provider,
                access_token=self._cipher.encrypt(token_set.access_token),
                refresh_token=refresh_ciphertext,
                token_expiry=token_set.expires_at,
                selected_calendar_ids=(
                    list(existing.selected_calendar_ids)
                    if existing is not None
                    else list(DEFAULT_CALENDAR_IDS)
                ),
                scope=token_set.scope or (existing.scope if existing is not None else None),
                last_sync_at=existing.last_sync_at if existing is not None else None,
            )
        )
        logger.info("Integration connected: user_id=%r provider=%r", user_id, provider)
        return self._status_of(stored)

    async def revoke(self, user_id: str, provider: str) -> bool:
        """Revoke at the provider (best effort) and delete the integration.

        Returns ``False`` when there was nothing to revoke.
        """
        integration = await self._store.get(user_id, provider)
        if integration is None:
            return False

        try:
            token = self._cipher.decrypt(integration.refresh_token or integration.access_token)
            await self._client_for(provider).revoke(token)
        except (CalbridgeError, TokenCipherError) as exc:
            logger.warning(
                "Provider revocation failed; deleting integration anyway: "
                "user_id=%r provider=%r error=%s",
                user_id,
                provider,
                type(exc).__name__,
            )

        await self._store.delete(user_id, provider)
        logger.info("Integration revoked: user_id=%r provider=%r", user_id, provider)
        return True

    # ------------------------------------------------------------------
    # Integration resource helpers
    # ------------------------------------------------------------------

    async def status(self, user_id: str, provider: str) -> IntegrationStatus:
        integration = await self._store.get(user_id, provider)
        if integration is None:
            return IntegrationStatus(provider=provider, state=ConnectionState.NOT_CONNECTED)
        return self._status_of(integration)

    async def selected_calendar_ids(self, user_id: str, provider: str) -> list[str]:
        """Calendars to aggregate, defaulting to ``["primary"]``.

        Raises
        ------
        AuthExpired
            If the user has no integration for *provider*.
        """
        integration = await self._require(user_id, provider)
        return integration.calendar_ids

    async def set_selected_calendars(
        self, user_id: str, provider: str, calendar_ids: list[str]
    ) -> IntegrationStatus:
        """Replace the selected calendar ids.

        Ids are stripped and de-duplicated in order.

        Raises
        ------
        ValidationError
            If no non-empty id is given.
        NotFound
            If the user has no integration for *provider*.
        """
        cleaned: list[str] = []
        for calendar_id in calendar_ids:
            normalized = calendar_id.strip()
            if normalized and normalized not in cleaned:
                cleaned.append(normalized)
        if not cleaned:
            raise ValidationError("At least one calendar must be selected")

        updated = await self._store.set_selected_calendars(user_id, provider, cleaned)
        if updated is None:
            raise NotFound(f"No {provider} integration is connected")
        return self._status_of(updated)

    async def mark_synced(self, user_id: str, provider: str) -> datetime:
        """Record a completed sync and return its timestamp."""
        synced_at = self._clock()
        if not await self._store.mark_synced(user_id, provider, synced_at):
            raise NotFound(f"No {provider} integration is connected")
        return synced_at

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _lock_for(self, user_id: str, provider: str) -> asyncio.Lock:
        key = (user_id, provider)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _client_for(self, provider: str) -> OAuthClient:
        client = self._oauth_clients.get(provider)
        if client is None:
            raise ValidationError(f"Unsupported calendar provider: {provider!r}")
        return client

    async def _require(self, user_id: str, provider: str) -> Integration:
        integration = await self._store.get(user_id, provider)
        if integration is None:
            raise AuthExpired(f"No {provider} calendar is connected. Please connect your account.")
        return integration

    def _decrypt(self, ciphertext: str) -> str:
        try:
            return self._cipher.decrypt(ciphertext)
        except TokenCipherError as exc:
            raise AuthExpired(
                "Stored credentials could not be read. Please reconnect your account."
            ) from exc

    def _status_of(self, integration: Integration) -> IntegrationStatus:
        return IntegrationStatus(
            provider=integration.provider,
            state=integration.connection_state(now=self._clock()),
            selected_calendar_ids=integration.calendar_ids,
            token_expiry=integration.token_expiry,
            last_sync_at=integration.last_sync_at,
            scope=integration.scope,
        )
