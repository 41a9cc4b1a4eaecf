"""Integration records and OAuth token sets.

Token fields on :class:`Integration` hold ciphertext (see
:mod:`calbridge.cipher`); :class:`TokenSet` holds plaintext and only lives for
the duration of an exchange or refresh.  Neither ever shows token material in
``repr()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

# Tokens expiring inside this window are refreshed before use.
TOKEN_REFRESH_THRESHOLD = timedelta(minutes=5)

# Applied when the token endpoint omits ``expires_in``.
DEFAULT_TOKEN_LIFETIME = timedelta(seconds=3600)

DEFAULT_CALENDAR_IDS: tuple[str, ...] = ("primary",)


class Provider(StrEnum):
    GOOGLE = "google"


class ConnectionState(StrEnum):
    """Observable state of a (user, provider) credential set."""

    NOT_CONNECTED = "not_connected"
    CONNECTED = "connected"
    EXPIRING_SOON = "expiring_soon"


@dataclass(frozen=True)
class TokenSet:
    """Plaintext result of a code exchange or refresh grant."""

    access_token: str
    expires_at: datetime
    refresh_token: str | None = None
    scope: str | None = None

    def __repr__(self) -> str:
        return (
            f"TokenSet(access_token=<REDACTED>, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expires_at={self.expires_at.isoformat()!r}, scope={self.scope!r})"
        )

    @classmethod
    def from_token_response(cls, payload: dict[str, Any], *, now: datetime) -> TokenSet:
        """Build a TokenSet from a token endpoint JSON response.

        Raises
        ------
        ValueError
            If ``access_token`` is missing or ``expires_in`` is not numeric.
        """
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise ValueError("token response is missing access_token")

        expires_in = payload.get("expires_in")
        if expires_in is None:
            lifetime = DEFAULT_TOKEN_LIFETIME
        else:
            try:
                lifetime = timedelta(seconds=int(expires_in))
            except (TypeError, ValueError) as exc:
                raise ValueError("token response has a non-numeric expires_in") from exc

        refresh_token = payload.get("refresh_token")
        scope = payload.get("scope")
        return cls(
            access_token=access_token,
            expires_at=now + lifetime,
            refresh_token=refresh_token if isinstance(refresh_token, str) and refresh_token else None,
            scope=scope if isinstance(scope, str) and scope else None,
        )


@dataclass
class Integration:
    """One stored credential set per (user, provider).

    Attributes
    ----------
    access_token / refresh_token:
        Ciphertext produced by the configured ``TokenCipher``.
    version:
        Bumped on every token write; refreshes compare-and-swap on it.
    """

    user_id: str
    provider: str
    access_token: str
    token_expiry: datetime
    refresh_token: str | None = None
    selected_calendar_ids: list[str] = field(default_factory=lambda: list(DEFAULT_CALENDAR_IDS))
    scope: str | None = None
    last_sync_at: datetime | None = None
    version: int = 1
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __repr__(self) -> str:
        return (
            f"Integration(user_id={self.user_id!r}, provider={self.provider!r}, "
            f"access_token=<REDACTED>, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"token_expiry={self.token_expiry.isoformat()!r}, version={self.version!r})"
        )

    __str__ = __repr__

    @property
    def calendar_ids(self) -> list[str]:
        """Selected calendars, falling back to the primary calendar."""
        return list(self.selected_calendar_ids) or list(DEFAULT_CALENDAR_IDS)

    def expires_within(self, window: timedelta, *, now: datetime) -> bool:
        return self.token_expiry <= now + window

    def connection_state(self, *, now: datetime) -> ConnectionState:
        if self.expires_within(TOKEN_REFRESH_THRESHOLD, now=now):
            return ConnectionState.EXPIRING_SOON
        return ConnectionState.CONNECTED


@dataclass(frozen=True)
class IntegrationStatus:
    """Token-free view of an integration for the API."""

    provider: str
    state: ConnectionState
    selected_calendar_ids: list[str] = field(default_factory=list)
    token_expiry: datetime | None = None
    last_sync_at: datetime | None = None
    scope: str | None = None

    @property
    def connected(self) -> bool:
        return self.state is not ConnectionState.NOT_CONNECTED
