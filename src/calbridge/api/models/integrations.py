"""Pydantic models for the Google integration endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from calbridge.integrations.models import ConnectionState, IntegrationStatus
from calbridge.providers.base import CalendarRef


class AuthorizeResponse(BaseModel):
    """Authorization URL returned when ``?redirect=false``."""

    authorization_url: str
    state: str


class OAuthCallbackSuccess(BaseModel):
    success: bool = True
    message: str = "Google Calendar connected."
    provider: str = "google"
    scope: str | None = None


class OAuthCallbackError(BaseModel):
    """Error payload for a failed callback.

    Messages are actionable but never include provider error bodies.
    """

    success: bool = False
    error_code: str
    message: str
    provider: str = "google"


class IntegrationStatusResponse(BaseModel):
    connected: bool
    state: ConnectionState
    provider: str
    selected_calendar_ids: list[str] = Field(default_factory=list)
    token_expiry: datetime | None = None
    last_sync_at: datetime | None = None
    scope: str | None = None

    @classmethod
    def from_status(cls, status: IntegrationStatus) -> IntegrationStatusResponse:
        return cls(
            connected=status.connected,
            state=status.state,
            provider=status.provider,
            selected_calendar_ids=list(status.selected_calendar_ids),
            token_expiry=status.token_expiry,
            last_sync_at=status.last_sync_at,
            scope=status.scope,
        )


class SelectedCalendarsUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    selected_calendar_ids: list[str] = Field(alias="selectedCalendarIds")


class SyncRequest(BaseModel):
    """Optional sync window; defaults are applied by the endpoint."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    time_min: datetime | None = Field(default=None, alias="timeMin")
    time_max: datetime | None = Field(default=None, alias="timeMax")


class SyncResponse(BaseModel):
    synced_at: datetime
    calendars_found: int
    events_fetched: int
    failed_calendar_ids: list[str] = Field(default_factory=list)
    calendars: list[CalendarRef] = Field(default_factory=list)
