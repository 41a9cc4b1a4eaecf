"""Request/response models for event and availability endpoints."""

from __future__ import annotations

from datetime import date

from pydantic import BaseModel, ConfigDict, Field

from calbridge.availability import AvailabilityRequest, TimePreference
from calbridge.providers.base import EventCreate


class EventCreateRequest(EventCreate):
    """Event creation body; ``calendar_id`` defaults to the primary calendar."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    calendar_id: str = Field(default="primary", alias="calendarId", min_length=1)


class EventDeleted(BaseModel):
    event_id: str
    calendar_id: str
    deleted: bool = True


class AvailabilityRequestBody(BaseModel):
    """``{duration, preferredDate?, timePreference?}``.

    The duration range is enforced by the availability engine so the error
    is reported the same way for every caller.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    duration: int
    preferred_date: date | None = Field(default=None, alias="preferredDate")
    time_preference: TimePreference = Field(default=TimePreference.ANY, alias="timePreference")

    def to_request(self) -> AvailabilityRequest:
        return AvailabilityRequest(
            duration_minutes=self.duration,
            preferred_date=self.preferred_date,
            time_preference=self.time_preference,
        )
