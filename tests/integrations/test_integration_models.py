"""Tests for calbridge.integrations.models.

Covers:
- TokenSet.from_token_response(): expiry math, defaults, malformed payloads
- Integration / TokenSet repr never exposes token material
- Integration.connection_state() around the refresh threshold
- Integration.calendar_ids fallback
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from calbridge.integrations.models import (
    DEFAULT_TOKEN_LIFETIME,
    TOKEN_REFRESH_THRESHOLD,
    ConnectionState,
    Integration,
    IntegrationStatus,
    TokenSet,
)

pytestmark = pytest.mark.unit

_NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


def _integration(**overrides) -> Integration:
    defaults = {
        "user_id": "user-1",
        "provider": "google",
        "access_token": "v1:cipher-access",
        "refresh_token": "v1:cipher-refresh",
        "token_expiry": _NOW + timedelta(hours=1),
    }
    defaults.update(overrides)
    return Integration(**defaults)


class TestTokenSetFromResponse:
    def test_expires_in_becomes_absolute(self) -> None:
        token_set = TokenSet.from_token_response(
            {"access_token": "ya29.a", "expires_in": 3599, "refresh_token": "1//r", "scope": "s"},
            now=_NOW,
        )
        assert token_set.access_token == "ya29.a"
        assert token_set.refresh_token == "1//r"
        assert token_set.expires_at == _NOW + timedelta(seconds=3599)
        assert token_set.scope == "s"

    def test_missing_expires_in_uses_default_lifetime(self) -> None:
        token_set = TokenSet.from_token_response({"access_token": "ya29.a"}, now=_NOW)
        assert token_set.expires_at == _NOW + DEFAULT_TOKEN_LIFETIME
        assert token_set.refresh_token is None

    def test_empty_refresh_token_is_none(self) -> None:
        token_set = TokenSet.from_token_response(
            {"access_token": "ya29.a", "refresh_token": ""}, now=_NOW
        )
        assert token_set.refresh_token is None

    @pytest.mark.parametrize(
        "payload",
        [{}, {"access_token": ""}, {"access_token": 123}, {"access_token": "a", "expires_in": "x"}],
    )
    def test_malformed_payloads(self, payload: dict) -> None:
        with pytest.raises(ValueError):
            TokenSet.from_token_response(payload, now=_NOW)

    def test_repr_redacts_tokens(self) -> None:
        token_set = TokenSet(access_token="ya29.secret", refresh_token="1//secret", expires_at=_NOW)
        text = repr(token_set)
        assert "ya29.secret" not in text
        assert "1//secret" not in text
        assert "<REDACTED>" in text


class TestIntegration:
    def test_repr_and_str_redact_tokens(self) -> None:
        integration = _integration()
        for text in (repr(integration), str(integration)):
            assert "cipher-access" not in text
            assert "cipher-refresh" not in text

    def test_calendar_ids_fallback_to_primary(self) -> None:
        assert _integration(selected_calendar_ids=[]).calendar_ids == ["primary"]
        assert _integration(selected_calendar_ids=["a", "b"]).calendar_ids == ["a", "b"]

    def test_connected_when_outside_threshold(self) -> None:
        integration = _integration(token_expiry=_NOW + TOKEN_REFRESH_THRESHOLD + timedelta(seconds=1))
        assert integration.connection_state(now=_NOW) is ConnectionState.CONNECTED

    def test_expiring_soon_at_threshold(self) -> None:
        integration = _integration(token_expiry=_NOW + TOKEN_REFRESH_THRESHOLD)
        assert integration.connection_state(now=_NOW) is ConnectionState.EXPIRING_SOON

    def test_expired_counts_as_expiring(self) -> None:
        integration = _integration(token_expiry=_NOW - timedelta(minutes=1))
        assert integration.expires_within(timedelta(0), now=_NOW)
        assert integration.connection_state(now=_NOW) is ConnectionState.EXPIRING_SOON


class TestIntegrationStatus:
    def test_connected_flag(self) -> None:
        assert not IntegrationStatus(provider="google", state=ConnectionState.NOT_CONNECTED).connected
        assert IntegrationStatus(provider="google", state=ConnectionState.EXPIRING_SOON).connected
