"""Provider-neutral calendar shapes and the ``CalendarProvider`` contract."""

from __future__ import annotations

import abc
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _as_utc(value: datetime) -> datetime:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC)


class CalendarRef(BaseModel):
    """A remote calendar the user can read; fetched live, never persisted."""

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    access_role: str
    is_primary: bool = False
    description: str | None = None
    time_zone: str | None = None


class NormalizedEvent(BaseModel):
    """Canonical event shape; ``start``/``end`` are always UTC and ``start < end``."""

    model_config = ConfigDict(frozen=True)

    id: str
    calendar_id: str
    title: str
    start: datetime
    end: datetime
    all_day: bool = False
    description: str | None = None
    location: str | None = None
    attendees: list[str] = Field(default_factory=list)
    html_link: str | None = None

    @field_validator("start", "end")
    @classmethod
    def _normalize_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _check_order(self) -> NormalizedEvent:
        if self.start >= self.end:
            raise ValueError("event start must be before end")
        return self

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and end > self.start


class EventCreate(BaseModel):
    """Payload for creating an event on a remote calendar."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1, max_length=1024)
    start: datetime
    end: datetime
    all_day: bool = False
    description: str | None = None
    location: str | None = None
    attendees: list[str] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("title must not be blank")
        return stripped

    @field_validator("start", "end")
    @classmethod
    def _normalize_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _check_order(self) -> EventCreate:
        if self.start >= self.end:
            raise ValueError("start must be before end")
        return self


class EventUpdate(BaseModel):
    """Partial event update; at least one field must be set."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1, max_length=1024)
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool | None = None
    description: str | None = None
    location: str | None = None
    attendees: list[str] | None = None

    @field_validator("start", "end")
    @classmethod
    def _normalize_utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _check_fields(self) -> EventUpdate:
        if not self.model_fields_set:
            raise ValueError("at least one field must be provided")
        if self.start is not None and self.end is not None and self.start >= self.end:
            raise ValueError("start must be before end")
        if ("start" in self.model_fields_set) != ("end" in self.model_fields_set):
            raise ValueError("start and end must be updated together")
        return self


class CalendarProvider(abc.ABC):
    """Authenticated façade over one remote calendar API.

    Implementations only translate: they shape inputs (RFC 3339 timestamps,
    encoded ids) and map responses and failures onto calbridge types.  Every
    method takes the bearer token explicitly; token lifecycle belongs to the
    vault.
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider name, e.g. ``"google"``."""

    @abc.abstractmethod
    async def list_calendars(self, access_token: str) -> list[CalendarRef]: ...

    @abc.abstractmethod
    async def list_events(
        self,
        access_token: str,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> list[NormalizedEvent]: ...

    @abc.abstractmethod
    async def create_event(
        self, access_token: str, calendar_id: str, event: EventCreate
    ) -> NormalizedEvent: ...

    @abc.abstractmethod
    async def update_event(
        self, access_token: str, calendar_id: str, event_id: str, update: EventUpdate
    ) -> NormalizedEvent: ...

    @abc.abstractmethod
    async def delete_event(self, access_token: str, calendar_id: str, event_id: str) -> None: ...
