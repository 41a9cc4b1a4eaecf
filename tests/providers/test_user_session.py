"""Tests for calbridge.providers.session.UserCalendarClient.

Covers:
- calls carry the vault's current access token
- one Unauthorized forces a refresh and a single retry
- a second Unauthorized surfaces as AuthExpired
- no integration surfaces AuthExpired before any provider call
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from calbridge.errors import AuthExpired, NotFound
from calbridge.providers.base import EventCreate
from calbridge.providers.session import UserCalendarClient

pytestmark = pytest.mark.unit

_DAY_START = datetime(2026, 3, 2, tzinfo=UTC)
_DAY_END = _DAY_START + timedelta(days=1)


@pytest.fixture
def client(vault, fake_provider) -> UserCalendarClient:
    return UserCalendarClient(vault, fake_provider, "user-1")


class TestUserCalendarClient:
    async def test_uses_current_token(self, client, seed_integration, fake_provider):
        seed_integration()
        calendars = await client.list_calendars()
        assert [c.id for c in calendars] == ["primary"]
        assert fake_provider.seen_tokens == ["access-initial"]
        assert client.provider_name == "google"

    async def test_unauthorized_refreshes_and_retries_once(
        self, client, seed_integration, fake_provider, oauth_client
    ):
        seed_integration(expires_in=timedelta(hours=1))
        fake_provider.unauthorized_tokens = {"access-initial"}

        await client.list_events("primary", _DAY_START, _DAY_END)

        assert fake_provider.seen_tokens == ["access-initial", "refreshed-1"]
        assert len(oauth_client.refresh_calls) == 1

    async def test_second_unauthorized_is_auth_expired(
        self, client, seed_integration, fake_provider, oauth_client
    ):
        seed_integration()
        fake_provider.unauthorized_tokens = {"access-initial", "refreshed-1"}

        with pytest.raises(AuthExpired, match="reconnect"):
            await client.delete_event("primary", "evt-1")
        assert len(oauth_client.refresh_calls) == 1
        assert fake_provider.deleted == []

    async def test_not_connected(self, client, fake_provider):
        with pytest.raises(AuthExpired):
            await client.create_event(
                "primary", EventCreate(title="x", start=_DAY_START, end=_DAY_END)
            )
        assert fake_provider.seen_tokens == []

    async def test_ensure_token(self, client, seed_integration):
        with pytest.raises(AuthExpired):
            await client.ensure_token()
        seed_integration()
        await client.ensure_token()

    async def test_other_errors_propagate(self, client, seed_integration, fake_provider):
        seed_integration()
        fake_provider.failures["gone"] = NotFound()
        with pytest.raises(NotFound):
            await client.list_events("gone", _DAY_START, _DAY_END)
        assert fake_provider.seen_tokens == ["access-initial"]
