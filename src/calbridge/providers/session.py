"""Per-user calendar session: a provider bound to the vault for one user.

``UserCalendarClient`` fetches the bearer token from the vault before each
call.  When the provider answers ``Unauthorized`` it forces one refresh and
retries once; a second ``Unauthorized`` means the grant is no longer usable
and surfaces as ``AuthExpired``.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TypeVar

from calbridge.errors import AuthExpired, Unauthorized
from calbridge.integrations.vault import TokenVault
from calbridge.providers.base import (
    CalendarProvider,
    CalendarRef,
    EventCreate,
    EventUpdate,
    NormalizedEvent,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class UserCalendarClient:
    """Calendar operations for one user through *provider*."""

    def __init__(self, vault: TokenVault, provider: CalendarProvider, user_id: str) -> None:
        self._vault = vault
        self._provider = provider
        self.user_id = user_id

    @property
    def provider_name(self) -> str:
        return self._provider.name

    async def _call(self, operation: Callable[[str], Awaitable[T]]) -> T:
        token = await self._vault.get_valid_access_token(self.user_id, self.provider_name)
        try:
            return await operation(token)
        except Unauthorized:
            logger.info(
                "Provider rejected access token; refreshing once: user_id=%r provider=%r",
                self.user_id,
                self.provider_name,
            )

        token = await self._vault.refresh(self.user_id, self.provider_name, stale_token=token)
        try:
            return await operation(token)
        except Unauthorized as exc:
            raise AuthExpired(
                "The calendar provider keeps rejecting this connection. Please reconnect your account."
            ) from exc

    async def ensure_token(self) -> None:
        """Fail fast with ``AuthExpired`` if no usable credential exists."""
        await self._vault.get_valid_access_token(self.user_id, self.provider_name)

    async def list_calendars(self) -> list[CalendarRef]:
        return await self._call(lambda token: self._provider.list_calendars(token))

    async def list_events(
        self, calendar_id: str, time_min: datetime, time_max: datetime
    ) -> list[NormalizedEvent]:
        return await self._call(
            lambda token: self._provider.list_events(token, calendar_id, time_min, time_max)
        )

    async def create_event(self, calendar_id: str, event: EventCreate) -> NormalizedEvent:
        return await self._call(lambda token: self._provider.create_event(token, calendar_id, event))

    async def update_event(
        self, calendar_id: str, event_id: str, update: EventUpdate
    ) -> NormalizedEvent:
        return await self._call(
            lambda token: self._provider.update_event(token, calendar_id, event_id, update)
        )

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        await self._call(lambda token: self._provider.delete_event(token, calendar_id, event_id))
