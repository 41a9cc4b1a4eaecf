"""Multi-calendar event aggregation with per-calendar failure isolation.

Every selected calendar is fetched concurrently, each under its own timeout.
A failing or slow calendar is logged and left out of the merged result; it
never fails the request while at least one calendar answered.  When every
calendar failed, the result would be indistinguishable from an empty day, so
the most severe cause is raised instead: ``AuthExpired`` (the user has to
reconnect), else ``ProviderRateLimited``, else ``ProviderUnavailable``.

The read path never writes.  ``sync()`` is the explicit write path that
records ``last_sync_at``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from calbridge.errors import (
    AuthExpired,
    CalbridgeError,
    ProviderRateLimited,
    ProviderUnavailable,
    ValidationError,
)
from calbridge.integrations.vault import TokenVault
from calbridge.providers.base import CalendarProvider, CalendarRef, NormalizedEvent
from calbridge.providers.session import UserCalendarClient

logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class TimeRange:
    """Half-open ``[start, end)`` window with timezone-aware bounds."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValidationError("time range bounds must be timezone-aware")
        if self.start >= self.end:
            raise ValidationError("time range start must be before end")


@dataclass
class FetchOutcome:
    """Merged events plus the calendars that were omitted."""

    events: list[NormalizedEvent] = field(default_factory=list)
    failed_calendar_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SyncResult:
    calendars: list[CalendarRef]
    event_count: int
    failed_calendar_ids: list[str]
    synced_at: datetime


def _event_sort_key(event: NormalizedEvent) -> tuple[datetime, datetime, str]:
    return (event.start, event.end, event.id)


def _total_failure(errors: list[Exception]) -> CalbridgeError:
    """Pick the error to raise when no calendar could be fetched.

    Precedence: ``AuthExpired``, then ``ProviderRateLimited`` (longest
    ``retry_after``), then ``ProviderUnavailable``.
    """
    for error in errors:
        if isinstance(error, AuthExpired):
            return AuthExpired()

    rate_limited = [e for e in errors if isinstance(e, ProviderRateLimited)]
    if rate_limited:
        hints = [e.retry_after for e in rate_limited if e.retry_after is not None]
        return ProviderRateLimited(retry_after=max(hints) if hints else None)

    return ProviderUnavailable()


class AggregationService:
    """Fetches and merges events across a user's calendars.

    Parameters
    ----------
    vault:
        Resolves selected calendars and usable access tokens.
    provider:
        Remote calendar API client.
    calendar_timeout_seconds:
        Independent timeout applied to each calendar's fetch.
    """

    def __init__(
        self,
        vault: TokenVault,
        provider: CalendarProvider,
        *,
        calendar_timeout_seconds: float = DEFAULT_CALENDAR_TIMEOUT_SECONDS,
    ) -> None:
        self._vault = vault
        self._provider = provider
        self._timeout = calendar_timeout_seconds

    @property
    def provider_name(self) -> str:
        return self._provider.name

    def client_for(self, user_id: str) -> UserCalendarClient:
        return UserCalendarClient(self._vault, self._provider, user_id)

    async def list_calendars(self, user_id: str) -> list[CalendarRef]:
        return await self.client_for(user_id).list_calendars()

    async def fetch_events(
        self,
        user_id: str,
        time_range: TimeRange,
        *,
        calendar_ids: list[str] | None = None,
    ) -> list[NormalizedEvent]:
        """Return events from all selected calendars, sorted by start.

        Raises
        ------
        AuthExpired
            If the user has no usable credential, or every calendar failed
            and at least one failure was ``AuthExpired``.
        ProviderRateLimited
            If every calendar failed and one was throttled; carries the
            longest ``retry_after`` seen.
        ProviderUnavailable
            If every calendar failed for any other reason, timeouts included.
        """
        outcome = await self._fetch(user_id, time_range, calendar_ids=calendar_ids)
        return outcome.events

    async def sync(self, user_id: str, time_range: TimeRange) -> SyncResult:
        """Fetch calendars and events, then record ``last_sync_at``."""
        calendars = await self.list_calendars(user_id)
        outcome = await self._fetch(user_id, time_range)
        synced_at = await self._vault.mark_synced(user_id, self.provider_name)
        logger.info(
            "Calendar sync complete: user_id=%r calendars=%d events=%d failed=%d",
            user_id,
            len(calendars),
            len(outcome.events),
            len(outcome.failed_calendar_ids),
        )
        return SyncResult(
            calendars=calendars,
            event_count=len(outcome.events),
            failed_calendar_ids=outcome.failed_calendar_ids,
            synced_at=synced_at,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _fetch(
        self,
        user_id: str,
        time_range: TimeRange,
        *,
        calendar_ids: list[str] | None = None,
    ) -> FetchOutcome:
        if calendar_ids:
            targets = list(dict.fromkeys(cid.strip() for cid in calendar_ids if cid.strip()))
        else:
            targets = await self._vault.selected_calendar_ids(user_id, self.provider_name)

        client = self.client_for(user_id)
        # Aggregation-level auth failure propagates before any fan-out.
        await client.ensure_token()

        results = await asyncio.gather(
            *(self._fetch_one(client, calendar_id, time_range) for calendar_id in targets),
            return_exceptions=True,
        )

        outcome = FetchOutcome()
        errors: list[Exception] = []
        for calendar_id, result in zip(targets, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                errors.append(result)
                outcome.failed_calendar_ids.append(calendar_id)
                logger.warning(
                    "Calendar fetch failed; omitting from results: calendar_id=%s error_type=%s",
                    calendar_id,
                    type(result).__name__,
                    extra={"calendar_id": calendar_id, "error_type": type(result).__name__},
                )
                continue
            outcome.events.extend(result)

        if targets and len(errors) == len(targets):
            raise _total_failure(errors)

        outcome.events.sort(key=_event_sort_key)
        return outcome

    async def _fetch_one(
        self, client: UserCalendarClient, calendar_id: str, time_range: TimeRange
    ) -> list[NormalizedEvent]:
        try:
            return await asyncio.wait_for(
                client.list_events(calendar_id, time_range.start, time_range.end),
                timeout=self._timeout,
            )
        except TimeoutError:
            logger.debug(
                "Calendar fetch timed out after %.1fs: calendar_id=%s", self._timeout, calendar_id
            )
            raise
