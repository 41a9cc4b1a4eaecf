"""Event endpoints over the user's connected calendars.

Endpoints:
  GET    /api/events?start=&end=&calendarId=  — merged events, sorted by start
  POST   /api/events                          — create an event
  PATCH  /api/events/{event_id}?calendarId=   — update an event
  DELETE /api/events/{event_id}?calendarId=   — delete an event
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Query

from calbridge.aggregation import TimeRange
from calbridge.api.deps import Services, get_services, get_user_id
from calbridge.api.models import ApiMeta, ApiResponse
from calbridge.api.models.events import EventCreateRequest, EventDeleted
from calbridge.providers.base import EventCreate, EventUpdate, NormalizedEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/events", tags=["events"])


def _ensure_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


@router.get("", response_model=ApiResponse[list[NormalizedEvent]])
async def list_events(
    start: datetime = Query(..., description="Window start (RFC 3339)."),
    end: datetime = Query(..., description="Window end, exclusive (RFC 3339)."),
    calendar_id: list[str] | None = Query(
        default=None,
        alias="calendarId",
        description="Restrict to these calendars; defaults to the selected set.",
    ),
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
) -> ApiResponse[list[NormalizedEvent]]:
    time_range = TimeRange(start=_ensure_utc(start), end=_ensure_utc(end))
    events = await services.aggregation.fetch_events(user_id, time_range, calendar_ids=calendar_id)
    return ApiResponse[list[NormalizedEvent]](
        data=events,
        meta=ApiMeta(count=len(events), start=time_range.start, end=time_range.end),
    )


@router.post("", status_code=201, response_model=ApiResponse[NormalizedEvent])
async def create_event(
    body: EventCreateRequest,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
) -> ApiResponse[NormalizedEvent]:
    event = EventCreate.model_validate(body.model_dump(exclude={"calendar_id"}))
    created = await services.aggregation.client_for(user_id).create_event(body.calendar_id, event)
    logger.info("Event created: calendar_id=%s event_id=%s", body.calendar_id, created.id)
    return ApiResponse[NormalizedEvent](data=created)


@router.patch("/{event_id}", response_model=ApiResponse[NormalizedEvent])
async def update_event(
    event_id: str,
    body: EventUpdate,
    calendar_id: str = Query(default="primary", alias="calendarId", min_length=1),
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
) -> ApiResponse[NormalizedEvent]:
    updated = await services.aggregation.client_for(user_id).update_event(
        calendar_id, event_id, body
    )
    return ApiResponse[NormalizedEvent](data=updated)


@router.delete("/{event_id}", response_model=ApiResponse[EventDeleted])
async def delete_event(
    event_id: str,
    calendar_id: str = Query(default="primary", alias="calendarId", min_length=1),
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
) -> ApiResponse[EventDeleted]:
    await services.aggregation.client_for(user_id).delete_event(calendar_id, event_id)
    logger.info("Event deleted: calendar_id=%s event_id=%s", calendar_id, event_id)
    return ApiResponse[EventDeleted](data=EventDeleted(event_id=event_id, calendar_id=calendar_id))
