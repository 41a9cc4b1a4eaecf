"""Shared fixtures for the calbridge test suite.

Provides in-memory doubles for the collaborators the vault, providers and
API depend on, so unit tests never touch PostgreSQL or the network:

- ``FakeClock``                — settable UTC clock
- ``InMemoryIntegrationStore`` — IntegrationStore with the same version/CAS rules
- ``FakeOAuthClient``          — scripted token endpoint with call counters
- ``FakeCalendarProvider``     — scripted per-calendar events and failures
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest

from calbridge.cipher import AesGcmTokenCipher
from calbridge.errors import Unauthorized
from calbridge.integrations.models import Integration, TokenSet
from calbridge.integrations.store import IntegrationStore
from calbridge.integrations.vault import TokenVault
from calbridge.providers.base import (
    CalendarProvider,
    CalendarRef,
    EventCreate,
    EventUpdate,
    NormalizedEvent,
)
from calbridge.retry import RetryPolicy

TEST_ENCRYPTION_KEY = "0123456789abcdef" * 4
NOW = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class InMemoryIntegrationStore(IntegrationStore):
    """Dict-backed store honouring the version bump and CAS contract."""

    def __init__(self) -> None:
        self.rows: dict[tuple[str, str], Integration] = {}
        self.cas_attempts = 0
        self.deleted: list[tuple[str, str]] = []

    async def get(self, user_id: str, provider: str) -> Integration | None:
        row = self.rows.get((user_id, provider))
        return dataclasses.replace(row) if row is not None else None

    async def upsert(self, integration: Integration) -> Integration:
        key = (integration.user_id, integration.provider)
        existing = self.rows.get(key)
        stored = dataclasses.replace(
            integration,
            version=existing.version + 1 if existing is not None else 1,
            created_at=existing.created_at if existing is not None else integration.created_at,
        )
        self.rows[key] = stored
        return dataclasses.replace(stored)

    async def compare_and_swap_tokens(
        self,
        user_id: str,
        provider: str,
        *,
        expected_version: int,
        access_token: str,
        refresh_token: str | None,
        token_expiry: datetime,
        scope: str | None,
    ) -> Integration | None:
        self.cas_attempts += 1
        row = self.rows.get((user_id, provider))
        if row is None or row.version != expected_version:
            return None
        updated = dataclasses.replace(
            row,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expiry=token_expiry,
            scope=scope or row.scope,
            version=row.version + 1,
        )
        self.rows[(user_id, provider)] = updated
        return dataclasses.replace(updated)

    async def delete(self, user_id: str, provider: str) -> bool:
        self.deleted.append((user_id, provider))
        return self.rows.pop((user_id, provider), None) is not None

    async def delete_if_version(self, user_id: str, provider: str, expected_version: int) -> bool:
        row = self.rows.get((user_id, provider))
        if row is None or row.version != expected_version:
            return False
        return await self.delete(user_id, provider)

    async def set_selected_calendars(
        self, user_id: str, provider: str, calendar_ids: list[str]
    ) -> Integration | None:
        row = self.rows.get((user_id, provider))
        if row is None:
            return None
        row.selected_calendar_ids = list(calendar_ids)
        return dataclasses.replace(row)

    async def mark_synced(self, user_id: str, provider: str, synced_at: datetime) -> bool:
        row = self.rows.get((user_id, provider))
        if row is None:
            return False
        row.last_sync_at = synced_at
        return True


# ---------------------------------------------------------------------------
# OAuth client
# ---------------------------------------------------------------------------


class FakeOAuthClient:
    """Scripted token endpoint.

    ``refresh_results`` is consumed in order; each entry is a ``TokenSet`` or
    an exception instance to raise.  When exhausted, a fresh token set is
    minted from the clock.
    """

    provider = "google"

    def __init__(self, clock: FakeClock) -> None:
        self._clock = clock
        self.refresh_results: list[TokenSet | Exception] = []
        self.refresh_calls: list[str] = []
        self.revoked: list[str] = []
        self.revoke_error: Exception | None = None
        self.exchange_result: TokenSet | Exception | None = None
        self.refresh_delay = 0.0

    def authorization_url(self, state: str) -> str:
        return f"https://accounts.example.com/auth?state={state}"

    async def exchange_code_for_tokens(self, code: str) -> TokenSet:
        result = self.exchange_result or TokenSet(
            access_token=f"access-{code}",
            refresh_token=f"refresh-{code}",
            expires_at=self._clock() + timedelta(hours=1),
            scope="https://www.googleapis.com/auth/calendar",
        )
        if isinstance(result, Exception):
            raise result
        return result

    async def refresh(self, refresh_token: str) -> TokenSet:
        self.refresh_calls.append(refresh_token)
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_results:
            result = self.refresh_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return TokenSet(
            access_token=f"refreshed-{len(self.refresh_calls)}",
            expires_at=self._clock() + timedelta(hours=1),
        )

    async def revoke(self, token: str) -> None:
        self.revoked.append(token)
        if self.revoke_error is not None:
            raise self.revoke_error


# ---------------------------------------------------------------------------
# Calendar provider
# ---------------------------------------------------------------------------


class FakeCalendarProvider(CalendarProvider):
    """Per-calendar scripted events, failures and delays.

    ``unauthorized_tokens`` lists access tokens the provider rejects with
    :class:`Unauthorized`, mimicking a token revoked before its expiry.
    """

    name = "google"

    def __init__(self) -> None:
        self.events: dict[str, list[NormalizedEvent]] = {}
        self.failures: dict[str, Exception] = {}
        self.delays: dict[str, float] = {}
        self.calendars: list[CalendarRef] = [
            CalendarRef(id="primary", display_name="Me", access_role="owner", is_primary=True)
        ]
        self.unauthorized_tokens: set[str] = set()
        self.seen_tokens: list[str] = []
        self.list_event_calls: list[tuple[str, datetime, datetime]] = []
        self.created: list[tuple[str, EventCreate]] = []
        self.updated: list[tuple[str, str, EventUpdate]] = []
        self.deleted: list[tuple[str, str]] = []

    def _check(self, access_token: str) -> None:
        self.seen_tokens.append(access_token)
        if access_token in self.unauthorized_tokens:
            raise Unauthorized()

    async def list_calendars(self, access_token: str) -> list[CalendarRef]:
        self._check(access_token)
        return list(self.calendars)

    async def list_events(
        self,
        access_token: str,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> list[NormalizedEvent]:
        self._check(access_token)
        self.list_event_calls.append((calendar_id, time_min, time_max))
        if calendar_id in self.delays:
            await asyncio.sleep(self.delays[calendar_id])
        if calendar_id in self.failures:
            raise self.failures[calendar_id]
        return [e for e in self.events.get(calendar_id, []) if e.overlaps(time_min, time_max)]

    async def create_event(
        self, access_token: str, calendar_id: str, event: EventCreate
    ) -> NormalizedEvent:
        self._check(access_token)
        self.created.append((calendar_id, event))
        return NormalizedEvent(
            id=f"evt-{len(self.created)}",
            calendar_id=calendar_id,
            title=event.title,
            start=event.start,
            end=event.end,
            all_day=event.all_day,
            description=event.description,
            location=event.location,
            attendees=list(event.attendees),
        )

    async def update_event(
        self, access_token: str, calendar_id: str, event_id: str, update: EventUpdate
    ) -> NormalizedEvent:
        self._check(access_token)
        self.updated.append((calendar_id, event_id, update))
        return NormalizedEvent(
            id=event_id,
            calendar_id=calendar_id,
            title=update.title or "Updated",
            start=update.start or NOW,
            end=update.end or NOW + timedelta(hours=1),
        )

    async def delete_event(self, access_token: str, calendar_id: str, event_id: str) -> None:
        self._check(access_token)
        self.deleted.append((calendar_id, event_id))


def make_event(
    event_id: str,
    start: datetime,
    end: datetime,
    *,
    calendar_id: str = "primary",
    title: str | None = None,
) -> NormalizedEvent:
    return NormalizedEvent(
        id=event_id,
        calendar_id=calendar_id,
        title=title or event_id,
        start=start,
        end=end,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryIntegrationStore:
    return InMemoryIntegrationStore()


@pytest.fixture
def cipher() -> AesGcmTokenCipher:
    return AesGcmTokenCipher(TEST_ENCRYPTION_KEY)


@pytest.fixture
def oauth_client(clock: FakeClock) -> FakeOAuthClient:
    return FakeOAuthClient(clock)


@pytest.fixture
def fake_provider() -> FakeCalendarProvider:
    return FakeCalendarProvider()


@pytest.fixture
def event_factory() -> Callable[..., NormalizedEvent]:
    return make_event


@pytest.fixture
def vault(
    store: InMemoryIntegrationStore,
    cipher: AesGcmTokenCipher,
    oauth_client: FakeOAuthClient,
    clock: FakeClock,
) -> TokenVault:
    return TokenVault(
        store,
        cipher,
        {"google": oauth_client},
        retry_policy=RetryPolicy(max_attempts=3, jitter_factor=0.0),
        clock=clock,
        sleep=AsyncMock(),
    )


@pytest.fixture
def seed_integration(
    store: InMemoryIntegrationStore, cipher: AesGcmTokenCipher, clock: FakeClock
) -> Callable[..., Any]:
    """Store an encrypted integration directly, bypassing the OAuth flow."""

    def _seed(
        user_id: str = "user-1",
        *,
        access_token: str = "access-initial",
        refresh_token: str | None = "refresh-initial",
        expires_in: timedelta = timedelta(hours=1),
        selected_calendar_ids: list[str] | None = None,
    ) -> Integration:
        integration = Integration(
            user_id=user_id,
            provider="google",
            access_token=cipher.encrypt(access_token),
            refresh_token=cipher.encrypt(refresh_token) if refresh_token else None,
            token_expiry=clock() + expires_in,
            selected_calendar_ids=selected_calendar_ids or ["primary"],
            version=1,
        )
        store.rows[(user_id, "google")] = integration
        return integration

    return _seed
