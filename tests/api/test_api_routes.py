"""Tests for the calbridge HTTP API.

Exercises the routers through ``create_app(services=...)`` with in-memory
collaborators, using httpx.ASGITransport.

Covers:
- identity header handling
- integration status, calendar selection, revocation, calendar list and sync
- OAuth authorize/callback flow bound to the CSRF state
- event list/create/update/delete
- availability suggestions
"""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock

import httpx
import pytest

from calbridge.aggregation import AggregationService
from calbridge.api.app import create_app
from calbridge.api.deps import Services
from calbridge.availability import AvailabilityEngine
from calbridge.errors import ProviderRateLimited, ProviderUnavailable
from calbridge.integrations.models import TokenSet
from calbridge.integrations.oauth import OAuthStateStore

pytestmark = pytest.mark.unit

_HEADERS = {"X-User-Id": "user-1"}


def _utc(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, 2, hour, minute, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def services(vault, fake_provider, oauth_client, clock) -> Services:
    aggregation = AggregationService(vault, fake_provider, calendar_timeout_seconds=0.5)
    return Services(
        vault=vault,
        aggregation=aggregation,
        availability=AvailabilityEngine(aggregation, clock=clock),
        oauth_clients={"google": oauth_client},
        state_store=OAuthStateStore(),
    )


@pytest.fixture
def app(services):
    return create_app(services=services)


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client


# ---------------------------------------------------------------------------
# Identity and health
# ---------------------------------------------------------------------------


class TestIdentity:
    async def test_health(self, client):
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    async def test_missing_user_header(self, client):
        resp = await client.get("/api/integrations/google")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "UNAUTHENTICATED"

    async def test_blank_user_header(self, client):
        resp = await client.get(
            "/api/events",
            headers={"X-User-Id": "   "},
            params={"start": "2026-03-02T00:00:00Z", "end": "2026-03-03T00:00:00Z"},
        )
        assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Integration resource
# ---------------------------------------------------------------------------


class TestIntegrationResource:
    async def test_status_not_connected(self, client):
        resp = await client.get("/api/integrations/google", headers=_HEADERS)

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["connected"] is False
        assert data["state"] == "not_connected"

    async def test_status_never_exposes_tokens(self, client, seed_integration):
        seeded = seed_integration()

        resp = await client.get("/api/integrations/google", headers=_HEADERS)

        data = resp.json()["data"]
        assert data["connected"] is True
        assert data["selected_calendar_ids"] == ["primary"]
        assert "access-initial" not in resp.text
        assert "refresh-initial" not in resp.text
        assert seeded.access_token not in resp.text

    async def test_update_selection(self, client, seed_integration, store):
        seed_integration()

        resp = await client.put(
            "/api/integrations/google",
            headers=_HEADERS,
            json={"selectedCalendarIds": ["work", " primary ", "work"]},
        )

        assert resp.status_code == 200
        assert resp.json()["data"]["selected_calendar_ids"] == ["work", "primary"]
        assert store.rows[("user-1", "google")].selected_calendar_ids == ["work", "primary"]

    async def test_empty_selection_rejected(self, client, seed_integration):
        seed_integration()
        resp = await client.put(
            "/api/integrations/google", headers=_HEADERS, json={"selectedCalendarIds": [" "]}
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_update_selection_not_connected(self, client):
        resp = await client.put(
            "/api/integrations/google", headers=_HEADERS, json={"selectedCalendarIds": ["a"]}
        )
        assert resp.status_code == 404

    async def test_delete_revokes_and_removes(self, client, seed_integration, store, oauth_client):
        seed_integration()

        resp = await client.delete("/api/integrations/google", headers=_HEADERS)

        assert resp.status_code == 200
        assert resp.json()["data"] == {"provider": "google", "deleted": True}
        assert oauth_client.revoked == ["refresh-initial"]
        assert ("user-1", "google") not in store.rows

    async def test_delete_survives_revocation_failure(
        self, client, seed_integration, store, oauth_client
    ):
        seed_integration()
        oauth_client.revoke_error = ProviderUnavailable()

        resp = await client.delete("/api/integrations/google", headers=_HEADERS)

        assert resp.status_code == 200
        assert ("user-1", "google") not in store.rows

    async def test_delete_when_absent(self, client):
        resp = await client.delete("/api/integrations/google", headers=_HEADERS)
        assert resp.json()["data"]["deleted"] is False

    async def test_list_calendars(self, client, seed_integration):
        seed_integration()

        resp = await client.get("/api/integrations/google/calendars", headers=_HEADERS)

        assert resp.status_code == 200
        assert [c["id"] for c in resp.json()["data"]] == ["primary"]

    async def test_rate_limit_surfaces_retry_after(self, client, seed_integration, fake_provider):
        seed_integration()
        fake_provider.list_calendars = AsyncMock(side_effect=ProviderRateLimited(retry_after=7))

        resp = await client.get("/api/integrations/google/calendars", headers=_HEADERS)

        assert resp.status_code == 429
        assert resp.headers["retry-after"] == "7"
        assert resp.json()["error"]["code"] == "RATE_LIMITED"

    async def test_sync_records_last_sync(
        self, client, seed_integration, fake_provider, event_factory, store, clock
    ):
        seed_integration()
        fake_provider.events = {"primary": [event_factory("e-1", _utc(9), _utc(10))]}

        resp = await client.post(
            "/api/integrations/google/sync",
            headers=_HEADERS,
            json={"timeMin": "2026-03-02T00:00:00Z", "timeMax": "2026-03-03T00:00:00Z"},
        )

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["calendars_found"] == 1
        assert data["events_fetched"] == 1
        assert data["failed_calendar_ids"] == []
        assert store.rows[("user-1", "google")].last_sync_at == clock()

    async def test_sync_without_body_uses_default_window(self, client, seed_integration):
        seed_integration()
        resp = await client.post("/api/integrations/google/sync", headers=_HEADERS)
        assert resp.status_code == 200


# ---------------------------------------------------------------------------
# OAuth flow
# ---------------------------------------------------------------------------


class TestOAuthFlow:
    async def test_authorize_redirects(self, client):
        resp = await client.get("/api/integrations/google/authorize", headers=_HEADERS)

        assert resp.status_code == 302
        assert resp.headers["location"].startswith("https://accounts.example.com/auth?state=")

    async def test_full_flow_connects_user_bound_to_state(self, client, store):
        start = await client.get(
            "/api/integrations/google/authorize",
            headers=_HEADERS,
            params={"redirect": "false"},
        )
        state = start.json()["data"]["state"]
        assert state in start.json()["data"]["authorization_url"]

        callback = await client.get(
            "/api/integrations/google/callback", params={"code": "abc", "state": state}
        )

        assert callback.status_code == 200
        assert callback.json()["success"] is True
        assert ("user-1", "google") in store.rows
        assert "access-abc" not in callback.text

    async def test_state_is_single_use(self, client):
        start = await client.get(
            "/api/integrations/google/authorize",
            headers=_HEADERS,
            params={"redirect": "false"},
        )
        state = start.json()["data"]["state"]

        await client.get("/api/integrations/google/callback", params={"code": "a", "state": state})
        replay = await client.get(
            "/api/integrations/google/callback", params={"code": "a", "state": state}
        )

        assert replay.status_code == 400
        assert replay.json()["error_code"] == "invalid_state"

    async def test_unknown_state_rejected(self, client, store):
        resp = await client.get(
            "/api/integrations/google/callback", params={"code": "abc", "state": "forged"}
        )

        assert resp.status_code == 400
        assert resp.json()["error_code"] == "invalid_state"
        assert store.rows == {}

    async def test_missing_code(self, client):
        resp = await client.get("/api/integrations/google/callback", params={"state": "s"})
        assert resp.json()["error_code"] == "missing_code"

    async def test_provider_error_is_sanitized(self, client):
        resp = await client.get(
            "/api/integrations/google/callback",
            params={"error": "<script>alert(1)</script>"},
        )

        assert resp.status_code == 400
        body = resp.json()
        assert body["error_code"] == "provider_error"
        assert "<script>" not in body["message"]

    async def test_failure_redirects_to_dashboard(self, client, services):
        services.dashboard_url = "https://dash.example.com/settings"

        resp = await client.get(
            "/api/integrations/google/callback", params={"error": "access_denied"}
        )

        assert resp.status_code == 302
        assert resp.headers["location"] == "https://dash.example.com/settings?oauth_error=provider_error"

    async def test_missing_refresh_token_fails_callback(self, client, oauth_client, clock):
        oauth_client.exchange_result = TokenSet(access_token="a", expires_at=clock())
        start = await client.get(
            "/api/integrations/google/authorize",
            headers=_HEADERS,
            params={"redirect": "false"},
        )
        state = start.json()["data"]["state"]

        resp = await client.get(
            "/api/integrations/google/callback", params={"code": "abc", "state": state}
        )

        assert resp.status_code == 400
        assert resp.json()["error_code"] == "token_exchange_failed"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class TestEvents:
    async def test_list_merged_events(self, client, seed_integration, fake_provider, event_factory):
        seed_integration(selected_calendar_ids=["primary", "work"])
        fake_provider.events = {
            "primary": [event_factory("late", _utc(15), _utc(16))],
            "work": [event_factory("early", _utc(9), _utc(10), calendar_id="work")],
        }

        resp = await client.get(
            "/api/events",
            headers=_HEADERS,
            params={"start": "2026-03-02T00:00:00Z", "end": "2026-03-03T00:00:00Z"},
        )

        assert resp.status_code == 200
        body = resp.json()
        assert [e["id"] for e in body["data"]] == ["early", "late"]
        assert body["meta"]["count"] == 2

    async def test_calendar_filter(self, client, seed_integration, fake_provider):
        seed_integration()

        await client.get(
            "/api/events",
            headers=_HEADERS,
            params=[
                ("start", "2026-03-02T00:00:00Z"),
                ("end", "2026-03-03T00:00:00Z"),
                ("calendarId", "team"),
            ],
        )

        assert [call[0] for call in fake_provider.list_event_calls] == ["team"]

    async def test_inverted_window_rejected(self, client, seed_integration):
        seed_integration()
        resp = await client.get(
            "/api/events",
            headers=_HEADERS,
            params={"start": "2026-03-03T00:00:00Z", "end": "2026-03-02T00:00:00Z"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_not_connected(self, client):
        resp = await client.get(
            "/api/events",
            headers=_HEADERS,
            params={"start": "2026-03-02T00:00:00Z", "end": "2026-03-03T00:00:00Z"},
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "AUTH_EXPIRED"

    async def test_create_event(self, client, seed_integration, fake_provider):
        seed_integration()

        resp = await client.post(
            "/api/events",
            headers=_HEADERS,
            json={
                "title": "  Planning  ",
                "start": "2026-03-02T09:00:00Z",
                "end": "2026-03-02T10:00:00Z",
                "calendarId": "work",
            },
        )

        assert resp.status_code == 201
        assert resp.json()["data"]["id"] == "evt-1"
        calendar_id, payload = fake_provider.created[0]
        assert calendar_id == "work"
        assert payload.title == "Planning"

    async def test_create_event_rejects_inverted_times(self, client, seed_integration):
        seed_integration()
        resp = await client.post(
            "/api/events",
            headers=_HEADERS,
            json={"title": "x", "start": "2026-03-02T10:00:00Z", "end": "2026-03-02T09:00:00Z"},
        )
        assert resp.status_code == 400

    async def test_update_event(self, client, seed_integration, fake_provider):
        seed_integration()

        resp = await client.patch(
            "/api/events/evt-9",
            headers=_HEADERS,
            params={"calendarId": "work"},
            json={"title": "Renamed"},
        )

        assert resp.status_code == 200
        assert resp.json()["data"]["title"] == "Renamed"
        assert fake_provider.updated[0][:2] == ("work", "evt-9")

    async def test_empty_update_rejected(self, client, seed_integration, fake_provider):
        seed_integration()
        resp = await client.patch("/api/events/evt-9", headers=_HEADERS, json={})
        assert resp.status_code == 400
        assert fake_provider.updated == []

    async def test_delete_event(self, client, seed_integration, fake_provider):
        seed_integration()

        resp = await client.delete("/api/events/evt-9", headers=_HEADERS)

        assert resp.status_code == 200
        assert resp.json()["data"] == {"event_id": "evt-9", "calendar_id": "primary", "deleted": True}
        assert fake_provider.deleted == [("primary", "evt-9")]


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------


class TestAvailability:
    async def test_morning_suggestions(self, client, seed_integration, fake_provider, event_factory):
        seed_integration()
        fake_provider.events = {"primary": [event_factory("standup", _utc(10), _utc(11))]}

        resp = await client.post(
            "/api/availability",
            headers=_HEADERS,
            json={"duration": 30, "preferredDate": "2026-03-02", "timePreference": "morning"},
        )

        assert resp.status_code == 200
        body = resp.json()
        starts = [datetime.fromisoformat(s["start"]) for s in body["data"]]
        assert starts == [_utc(9), _utc(11)]
        assert all(s["score"] == 1.0 for s in body["data"])
        assert body["meta"]["time_preference"] == "morning"

    @pytest.mark.parametrize("duration", [0, -5, 1441])
    async def test_invalid_duration(self, client, seed_integration, fake_provider, duration):
        seed_integration()

        resp = await client.post("/api/availability", headers=_HEADERS, json={"duration": duration})

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"
        assert fake_provider.list_event_calls == []

    async def test_unknown_preference(self, client):
        resp = await client.post(
            "/api/availability",
            headers=_HEADERS,
            json={"duration": 30, "timePreference": "midnight"},
        )
        assert resp.status_code == 400

    async def test_unreachable_calendars_return_503(self, client, seed_integration, fake_provider):
        seed_integration()
        fake_provider.failures = {"primary": ProviderUnavailable()}

        resp = await client.post("/api/availability", headers=_HEADERS, json={"duration": 30})

        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "PROVIDER_UNAVAILABLE"
