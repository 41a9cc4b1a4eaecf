"""Google Calendar implementation of :class:`CalendarProvider`.

Error taxonomy mapping:

- 401 → ``Unauthorized``
- 429, and 403 with reason ``rateLimitExceeded``/``userRateLimitExceeded``
  → ``ProviderRateLimited`` (``Retry-After`` honoured when present)
- 404 / 410 → ``NotFound``
- 5xx, timeouts, transport errors → ``ProviderUnavailable``
- any other 4xx → ``ValidationError``
- malformed success payloads → ``InternalError``

Provider response bodies are never forwarded: raised messages carry only the
status code and Google's machine-readable reason.

Only idempotent reads and deletes are retried on ``ProviderUnavailable``;
writes fail fast so a retried POST can never create a duplicate event.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import ValidationError as PydanticValidationError

from calbridge.core.telemetry import provider_span
from calbridge.errors import (
    CalbridgeError,
    InternalError,
    NotFound,
    ProviderRateLimited,
    ProviderUnavailable,
    Unauthorized,
    ValidationError,
)
from calbridge.providers.base import (
    CalendarProvider,
    CalendarRef,
    EventCreate,
    EventUpdate,
    NormalizedEvent,
)
from calbridge.providers.cache import ResponseCache, cache_key
from calbridge.retry import NO_RETRY, RetryPolicy, retry_unavailable

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

_RATE_LIMIT_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded"})
_IDEMPOTENT_METHODS = frozenset({"GET", "DELETE"})
_PAGE_SIZE = 250
_MAX_PAGES = 40
_DEFAULT_TIMEOUT_SECONDS = 30.0


# ---------------------------------------------------------------------------
# Formatting / parsing helpers
# ---------------------------------------------------------------------------


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    parsed = parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _parse_google_date(value: str) -> datetime:
    try:
        parsed = date.fromisoformat(value.strip())
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid date: {value}") from exc
    return datetime(parsed.year, parsed.month, parsed.day, tzinfo=UTC)


def _parse_event_boundary(payload: Any, *, event_id: str) -> tuple[datetime, bool]:
    """Return ``(instant_utc, all_day)`` for a Google start/end object.

    All-day boundaries (``date``) become UTC midnight.
    """
    if not isinstance(payload, dict):
        raise ValueError(f"Google Calendar event '{event_id}' is missing start/end payloads")
    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return _parse_google_datetime(date_time), False
    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        return _parse_google_date(date_value), True
    raise ValueError(f"Google Calendar event '{event_id}' has neither dateTime nor date")


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _extract_attendee_emails(payload: Any) -> list[str]:
    if not isinstance(payload, list):
        return []
    emails: list[str] = []
    for entry in payload:
        if isinstance(entry, dict):
            email = _normalize_optional_text(entry.get("email"))
            if email is not None:
                emails.append(email)
    return emails


def google_event_to_normalized(payload: dict[str, Any], *, calendar_id: str) -> NormalizedEvent | None:
    """Convert a Google event resource into a :class:`NormalizedEvent`.

    Returns ``None`` for cancelled events and for zero-length events that
    cannot satisfy ``start < end``.

    Raises
    ------
    ValueError
        If the payload is structurally malformed.
    """
    status = payload.get("status")
    if isinstance(status, str) and status.lower() == "cancelled":
        return None

    event_id = _normalize_optional_text(payload.get("id"))
    if event_id is None:
        raise ValueError("Google Calendar event payload is missing a non-empty id")

    start, start_all_day = _parse_event_boundary(payload.get("start"), event_id=event_id)
    end, _ = _parse_event_boundary(payload.get("end"), event_id=event_id)
    if end <= start:
        logger.debug(
            "Skipping zero-length Google event: calendar_id=%s event_id=%s", calendar_id, event_id
        )
        return None

    return NormalizedEvent(
        id=event_id,
        calendar_id=calendar_id,
        title=_normalize_optional_text(payload.get("summary")) or "(untitled)",
        start=start,
        end=end,
        all_day=start_all_day,
        description=_normalize_optional_text(payload.get("description")),
        location=_normalize_optional_text(payload.get("location")),
        attendees=_extract_attendee_emails(payload.get("attendees")),
        html_link=_normalize_optional_text(payload.get("htmlLink")),
    )


def google_calendar_to_ref(payload: dict[str, Any]) -> CalendarRef:
    calendar_id = _normalize_optional_text(payload.get("id"))
    if calendar_id is None:
        raise ValueError("Google calendarList entry is missing a non-empty id")
    return CalendarRef(
        id=calendar_id,
        display_name=(
            _normalize_optional_text(payload.get("summaryOverride"))
            or _normalize_optional_text(payload.get("summary"))
            or calendar_id
        ),
        access_role=_normalize_optional_text(payload.get("accessRole")) or "reader",
        is_primary=payload.get("primary") is True,
        description=_normalize_optional_text(payload.get("description")),
        time_zone=_normalize_optional_text(payload.get("timeZone")),
    )


def _event_boundary_body(value: datetime, *, all_day: bool) -> dict[str, str]:
    if all_day:
        return {"date": value.astimezone(UTC).date().isoformat()}
    return {"dateTime": _google_rfc3339(value), "timeZone": "UTC"}


def _build_google_event_body(event: EventCreate | EventUpdate) -> dict[str, Any]:
    """Translate a create/update payload into a Google event body.

    For updates only the fields the caller set are included.
    """
    fields = event.model_fields_set if isinstance(event, EventUpdate) else None

    def _wants(name: str) -> bool:
        return fields is None or name in fields

    body: dict[str, Any] = {}
    if _wants("title") and event.title is not None:
        body["summary"] = event.title
    # Explicit nulls clear a field on update; creates omit unset text.
    if _wants("description") and (fields is not None or event.description is not None):
        body["description"] = event.description
    if _wants("location") and (fields is not None or event.location is not None):
        body["location"] = event.location
    if _wants("attendees") and event.attendees is not None:
        body["attendees"] = [{"email": email} for email in event.attendees]

    all_day = bool(event.all_day)
    if event.start is not None and _wants("start"):
        body["start"] = _event_boundary_body(event.start, all_day=all_day)
    if event.end is not None and _wants("end"):
        body["end"] = _event_boundary_body(event.end, all_day=all_day)
    return body


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def _google_error_reasons(response: httpx.Response) -> set[str]:
    try:
        payload = response.json()
    except ValueError:
        return set()
    if not isinstance(payload, dict):
        return set()
    error_payload = payload.get("error")
    if not isinstance(error_payload, dict):
        return set()
    reasons: set[str] = set()
    for entry in error_payload.get("errors") or []:
        if isinstance(entry, dict) and isinstance(entry.get("reason"), str):
            reasons.add(entry["reason"])
    status = error_payload.get("status")
    if isinstance(status, str):
        reasons.add(status)
    return reasons


def _retry_after_seconds(response: httpx.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def map_google_error(response: httpx.Response) -> CalbridgeError:
    """Map a non-2xx Google Calendar response onto the error taxonomy."""
    status = response.status_code
    reasons = _google_error_reasons(response)
    reason_label = ",".join(sorted(reasons)) or "none"

    if status == 401:
        return Unauthorized()
    if status == 429 or (status == 403 and reasons & _RATE_LIMIT_REASONS):
        return ProviderRateLimited(retry_after=_retry_after_seconds(response))
    if status in (404, 410):
        return NotFound("Calendar or event not found")
    if status >= 500:
        return ProviderUnavailable(f"Google Calendar returned HTTP {status}")
    if 400 <= status < 500:
        return ValidationError(f"Google Calendar rejected the request (HTTP {status}, reason={reason_label})")
    return InternalError(f"Google Calendar returned unexpected HTTP {status}")


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar v3 client over a shared ``httpx.AsyncClient``.

    Parameters
    ----------
    http_client:
        Shared client; the caller owns its lifecycle.
    cache:
        Optional response cache used for calendar-list reads.
    retry_policy:
        Retry policy for idempotent requests that fail transiently.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        cache: ResponseCache | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout: float = _DEFAULT_TIMEOUT_SECONDS,
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._http_client = http_client
        self._cache = cache
        self._retry_policy = retry_policy or RetryPolicy()
        self._timeout = timeout
        self._base_url = base_url.rstrip("/")
        self._sleep = sleep

    @property
    def name(self) -> str:
        return "google"

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_calendars(self, access_token: str) -> list[CalendarRef]:
        path = "/users/me/calendarList"
        key = cache_key("GET", path, None, access_token)
        if self._cache is not None:
            cached = self._cache.get(key)
            if cached is not None:
                return list(cached)

        with provider_span("list_calendars", provider=self.name):
            items = await self._collect_pages(path, access_token, params={"maxResults": _PAGE_SIZE})

        calendars: list[CalendarRef] = []
        for item in items:
            try:
                calendars.append(google_calendar_to_ref(item))
            except (ValueError, PydanticValidationError) as exc:
                raise InternalError("Google calendar list contained a malformed entry") from exc

        if self._cache is not None:
            self._cache.set(key, tuple(calendars))
        return calendars

    async def list_events(
        self,
        access_token: str,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> list[NormalizedEvent]:
        params: dict[str, Any] = {
            "singleEvents": "true",
            "showDeleted": "false",
            "orderBy": "startTime",
            "maxResults": _PAGE_SIZE,
            "timeMin": _google_rfc3339(time_min),
            "timeMax": _google_rfc3339(time_max),
        }
        path = f"/calendars/{quote(calendar_id, safe='')}/events"

        with provider_span("list_events", provider=self.name, calendar_id=calendar_id):
            items = await self._collect_pages(path, access_token, params=params)

        events: list[NormalizedEvent] = []
        for item in items:
            try:
                event = google_event_to_normalized(item, calendar_id=calendar_id)
            except (ValueError, PydanticValidationError) as exc:
                raise InternalError("Google Calendar returned a malformed event") from exc
            if event is not None:
                events.append(event)
        return events

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_event(
        self, access_token: str, calendar_id: str, event: EventCreate
    ) -> NormalizedEvent:
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        with provider_span("create_event", provider=self.name, calendar_id=calendar_id):
            payload = await self._request_json(
                "POST", path, access_token, json_body=_build_google_event_body(event)
            )
        return self._written_event(payload, calendar_id=calendar_id)

    async def update_event(
        self, access_token: str, calendar_id: str, event_id: str, update: EventUpdate
    ) -> NormalizedEvent:
        path = (
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(self._event_id(event_id), safe='')}"
        )
        with provider_span("update_event", provider=self.name, calendar_id=calendar_id):
            payload = await self._request_json(
                "PATCH", path, access_token, json_body=_build_google_event_body(update)
            )
        return self._written_event(payload, calendar_id=calendar_id)

    async def delete_event(self, access_token: str, calendar_id: str, event_id: str) -> None:
        path = (
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(self._event_id(event_id), safe='')}"
        )
        with provider_span("delete_event", provider=self.name, calendar_id=calendar_id):
            await self._request_json("DELETE", path, access_token)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _event_id(event_id: str) -> str:
        normalized = event_id.strip()
        if not normalized:
            raise ValidationError("event_id must be a non-empty string")
        return normalized

    @staticmethod
    def _written_event(payload: dict[str, Any], *, calendar_id: str) -> NormalizedEvent:
        try:
            event = google_event_to_normalized(payload, calendar_id=calendar_id)
        except (ValueError, PydanticValidationError) as exc:
            raise InternalError("Google Calendar returned a malformed event") from exc
        if event is None:
            raise InternalError("Google Calendar returned an unusable event after a write")
        return event

    async def _collect_pages(
        self, path: str, access_token: str, *, params: dict[str, Any]
    ) -> list[dict[str, Any]]:
        """Follow ``nextPageToken`` and return every ``items`` entry."""
        collected: list[dict[str, Any]] = []
        page_params = dict(params)
        for _ in range(_MAX_PAGES):
            payload = await self._request_json("GET", path, access_token, params=page_params)
            items = payload.get("items", [])
            if not isinstance(items, list):
                raise InternalError("Google Calendar response is missing an items array")
            collected.extend(item for item in items if isinstance(item, dict))

            next_page = payload.get("nextPageToken")
            if not isinstance(next_page, str) or not next_page:
                return collected
            page_params = {**params, "pageToken": next_page}

        logger.warning("Google Calendar paging stopped after %d pages: path=%s", _MAX_PAGES, path)
        return collected

    async def _request_json(
        self,
        method: str,
        path: str,
        access_token: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        policy = self._retry_policy if method in _IDEMPOTENT_METHODS else NO_RETRY
        return await retry_unavailable(
            lambda: self._request_once(
                method, path, access_token, params=params, json_body=json_body
            ),
            policy=policy,
            operation_name=f"Google Calendar {method}",
            sleep=self._sleep,
        )

    async def _request_once(
        self,
        method: str,
        path: str,
        access_token: str,
        *,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
    ) -> dict[str, Any]:
        url = f"{self._base_url}{path if path.startswith('/') else f'/{path}'}"
        try:
            response = await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable("Google Calendar request timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailable(
                f"Google Calendar request failed: {type(exc).__name__}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            error = map_google_error(response)
            logger.debug(
                "Google Calendar %s %s failed: status=%d error=%s",
                method,
                path,
                response.status_code,
                error.code,
            )
            raise error

        if response.status_code == 204 or not response.content:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise InternalError("Google Calendar returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise InternalError("Google Calendar returned an unexpected JSON payload shape")
        return payload
