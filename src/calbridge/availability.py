"""Meeting time-slot suggestions.

Candidates start at fixed hourly anchors in the engine timezone:

- morning: 09:00, 10:00, 11:00
- afternoon: 13:00, 14:00, 15:00, 16:00
- evening: 17:00, 18:00, 19:00

A candidate survives only if ``[start, start + duration)`` does not intersect
any event of the target day.  Scoring: base 0.7, +0.2 when the candidate's
bucket matches an explicit preference, +0.1 for a start before noon, capped at
1.0.  Results are sorted by score (desc) then start (asc) and capped at 5.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from calbridge.aggregation import AggregationService, TimeRange
from calbridge.errors import ValidationError
from calbridge.providers.base import NormalizedEvent

logger = logging.getLogger(__name__)

MAX_DURATION_MINUTES = 24 * 60
MAX_SUGGESTIONS = 5

BASE_SCORE = 0.7
PREFERENCE_BONUS = 0.2
MORNING_BONUS = 0.1


class TimePreference(StrEnum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    ANY = "any"


BUCKET_ANCHORS: dict[TimePreference, tuple[int, ...]] = {
    TimePreference.MORNING: (9, 10, 11),
    TimePreference.AFTERNOON: (13, 14, 15, 16),
    TimePreference.EVENING: (17, 18, 19),
}


class AvailabilityRequest(BaseModel):
    duration_minutes: int
    preferred_date: date | None = None
    time_preference: TimePreference = TimePreference.ANY


class TimeSlotCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime
    score: float = Field(ge=0.0, le=1.0)
    bucket: TimePreference


def validate_duration(duration_minutes: int) -> None:
    if isinstance(duration_minutes, bool) or not 0 < duration_minutes <= MAX_DURATION_MINUTES:
        raise ValidationError(
            f"duration must be between 1 and {MAX_DURATION_MINUTES} minutes"
        )


def resolve_target_date(preferred: date | None, today: date) -> date:
    """Preferred date (or today); a strictly past date rolls forward to tomorrow."""
    target = preferred or today
    if target < today:
        return today + timedelta(days=1)
    return target


def day_window(target: date, tz: tzinfo) -> TimeRange:
    """``[startOfDay, endOfDay)`` of *target* in *tz*."""
    return TimeRange(
        start=datetime.combine(target, time.min, tzinfo=tz),
        end=datetime.combine(target + timedelta(days=1), time.min, tzinfo=tz),
    )


def _anchors_for(preference: TimePreference) -> list[tuple[TimePreference, int]]:
    if preference is TimePreference.ANY:
        return [(bucket, hour) for bucket, hours in BUCKET_ANCHORS.items() for hour in hours]
    return [(preference, hour) for hour in BUCKET_ANCHORS[preference]]


def score_candidate(bucket: TimePreference, preference: TimePreference, local_hour: int) -> float:
    score = BASE_SCORE
    if preference is not TimePreference.ANY and bucket is preference:
        score += PREFERENCE_BONUS
    if local_hour < 12:
        score += MORNING_BONUS
    return min(1.0, round(score, 6))


def suggest_slots(
    target: date,
    events: Iterable[NormalizedEvent],
    *,
    duration_minutes: int,
    preference: TimePreference,
    tz: tzinfo,
    limit: int = MAX_SUGGESTIONS,
) -> list[TimeSlotCandidate]:
    """Rank conflict-free anchor slots on *target* against *events*."""
    validate_duration(duration_minutes)
    busy = list(events)
    duration = timedelta(minutes=duration_minutes)

    candidates: list[TimeSlotCandidate] = []
    for bucket, hour in _anchors_for(preference):
        local_start = datetime.combine(target, time(hour=hour), tzinfo=tz)
        # End is computed in UTC.
        start = local_start.astimezone(UTC)
        end = start + duration
        if any(event.overlaps(start, end) for event in busy):
            continue
        candidates.append(
            TimeSlotCandidate(
                start=start,
                end=end,
                score=score_candidate(bucket, preference, local_start.hour),
                bucket=bucket,
            )
        )

    candidates.sort(key=lambda slot: (-slot.score, slot.start))
    return candidates[:limit]


class AvailabilityEngine:
    """Suggests meeting slots from a user's aggregated calendars.

    Parameters
    ----------
    aggregation:
        Source of the target day's events.
    timezone:
        Timezone the anchors and day boundaries are laid out in.
    clock:
        Returns the current time; defaults to ``datetime.now(UTC)``.
    """

    def __init__(
        self,
        aggregation: AggregationService,
        *,
        timezone: tzinfo = UTC,
        clock: Callable[[], datetime] | None = None,
        max_results: int = MAX_SUGGESTIONS,
    ) -> None:
        self._aggregation = aggregation
        self._tz = timezone
        self._clock = clock or (lambda: datetime.now(UTC))
        self._max_results = max_results

    def today(self) -> date:
        return self._clock().astimezone(self._tz).date()

    async def suggest(self, user_id: str, request: AvailabilityRequest) -> list[TimeSlotCandidate]:
        """Return up to five ranked, conflict-free slots.

        Raises
        ------
        ValidationError
            If the duration is out of range; raised before any fetch.
        AuthExpired, ProviderRateLimited, ProviderUnavailable
            If no calendar of the target day could be fetched; a day with
            unknown events is never reported as free.
        """
        validate_duration(request.duration_minutes)

        target = resolve_target_date(request.preferred_date, self.today())
        events = await self._aggregation.fetch_events(user_id, day_window(target, self._tz))

        slots = suggest_slots(
            target,
            events,
            duration_minutes=request.duration_minutes,
            preference=request.time_preference,
            tz=self._tz,
            limit=self._max_results,
        )
        logger.debug(
            "Availability computed: user_id=%r date=%s events=%d suggestions=%d",
            user_id,
            target.isoformat(),
            len(events),
            len(slots),
        )
        return slots
