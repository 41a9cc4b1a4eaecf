"""Durable storage for :class:`Integration` rows.

``IntegrationStore`` is the storage contract the token vault depends on;
``PostgresIntegrationStore`` implements it over an asyncpg pool against the
``calendar_integrations`` table.

Token columns only ever receive ciphertext.  Nothing in this module logs a
token value, encrypted or not.
"""

from __future__ import annotations

import abc
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from calbridge.integrations.models import Integration

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_TABLE = "calendar_integrations"

_INTEGRATIONS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_TABLE} (
    user_id               TEXT NOT NULL,
    provider              TEXT NOT NULL,
    access_token          TEXT NOT NULL,
    refresh_token         TEXT,
    token_expiry          TIMESTAMPTZ NOT NULL,
    selected_calendar_ids TEXT[] NOT NULL DEFAULT ARRAY['primary'],
    scope                 TEXT,
    last_sync_at          TIMESTAMPTZ,
    version               BIGINT NOT NULL DEFAULT 1,
    created_at            TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at            TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (user_id, provider)
)
"""

_COLUMNS = (
    "user_id, provider, access_token, refresh_token, token_expiry, "
    "selected_calendar_ids, scope, last_sync_at, version, created_at, updated_at"
)


def _affected(result: str | None) -> bool:
    # asyncpg returns a status string like "UPDATE 1" or "DELETE 0"
    return result.split()[-1] != "0" if result else False


def _row_to_integration(row: Any) -> Integration:
    return Integration(
        user_id=row["user_id"],
        provider=row["provider"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        token_expiry=row["token_expiry"],
        selected_calendar_ids=list(row["selected_calendar_ids"] or []),
        scope=row["scope"],
        last_sync_at=row["last_sync_at"],
        version=row["version"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class IntegrationStore(abc.ABC):
    """Storage contract for encrypted integration rows."""

    @abc.abstractmethod
    async def get(self, user_id: str, provider: str) -> Integration | None:
        """Return the integration for (*user_id*, *provider*), or ``None``."""

    @abc.abstractmethod
    async def upsert(self, integration: Integration) -> Integration:
        """Insert or replace the integration and return the stored row.

        Replacing an existing row bumps its ``version``.
        """

    @abc.abstractmethod
    async def compare_and_swap_tokens(
        self,
        user_id: str,
        provider: str,
        *,
        expected_version: int,
        access_token: str,
        refresh_token: str | None,
        token_expiry: datetime,
        scope: str | None,
    ) -> Integration | None:
        """Write new token columns only if the stored version still matches.

        Returns the updated row on success, ``None`` when another writer got
        there first (or the row no longer exists).
        """

    @abc.abstractmethod
    async def delete(self, user_id: str, provider: str) -> bool:
        """Delete the integration; ``True`` if a row was removed."""

    @abc.abstractmethod
    async def delete_if_version(self, user_id: str, provider: str, expected_version: int) -> bool:
        """Delete the integration only if the stored version still matches.

        ``False`` means the row is gone or was rewritten by another writer.
        """

    @abc.abstractmethod
    async def set_selected_calendars(
        self, user_id: str, provider: str, calendar_ids: list[str]
    ) -> Integration | None:
        """Replace the selected calendar ids; ``None`` if no row exists."""

    @abc.abstractmethod
    async def mark_synced(self, user_id: str, provider: str, synced_at: datetime) -> bool:
        """Record a successful sync; ``True`` if a row was updated."""


class PostgresIntegrationStore(IntegrationStore):
    """asyncpg-backed :class:`IntegrationStore`.

    Parameters
    ----------
    pool:
        An asyncpg connection pool.  Each operation acquires a connection for
        the duration of the call.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def ensure_schema(self) -> None:
        """Create the integrations table if it does not exist."""
        async with self.pool.acquire() as conn:
            await conn.execute(_INTEGRATIONS_TABLE_DDL)
        logger.debug("Ensured %s table exists", _TABLE)

    async def get(self, user_id: str, provider: str) -> Integration | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM {_TABLE} WHERE user_id = $1 AND provider = $2",
                user_id,
                provider,
            )
        return _row_to_integration(row) if row is not None else None

    async def upsert(self, integration: Integration) -> Integration:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO {_TABLE}
                    (user_id, provider, access_token, refresh_token, token_expiry,
                     selected_calendar_ids, scope, last_sync_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (user_id, provider) DO UPDATE SET
                    access_token          = EXCLUDED.access_token,
                    refresh_token         = EXCLUDED.refresh_token,
                    token_expiry          = EXCLUDED.token_expiry,
                    selected_calendar_ids = EXCLUDED.selected_calendar_ids,
                    scope                 = EXCLUDED.scope,
                    last_sync_at          = EXCLUDED.last_sync_at,
                    version               = {_TABLE}.version + 1,
                    updated_at            = now()
                RETURNING {_COLUMNS}
                """,
                integration.user_id,
                integration.provider,
                integration.access_token,
                integration.refresh_token,
                integration.token_expiry,
                list(integration.selected_calendar_ids),
                integration.scope,
                integration.last_sync_at,
            )
        logger.info(
            "Integration stored: user_id=%r provider=%r",
            integration.user_id,
            integration.provider,
        )
        return _row_to_integration(row)

    async def compare_and_swap_tokens(
        self,
        user_id: str,
        provider: str,
        *,
        expected_version: int,
        access_token: str,
        refresh_token: str | None,
        token_expiry: datetime,
        scope: str | None,
    ) -> Integration | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE {_TABLE} SET
                    access_token  = $4,
                    refresh_token = $5,
                    token_expiry  = $6,
                    scope         = COALESCE($7, scope),
                    version       = version + 1,
                    updated_at    = now()
                WHERE user_id = $1 AND provider = $2 AND version = $3
                RETURNING {_COLUMNS}
                """,
                user_id,
                provider,
                expected_version,
                access_token,
                refresh_token,
                token_expiry,
                scope,
            )
        if row is None:
            logger.debug(
                "Token compare-and-swap lost: user_id=%r provider=%r expected_version=%d",
                user_id,
                provider,
                expected_version,
            )
            return None
        return _row_to_integration(row)

    async def delete(self, user_id: str, provider: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                f"DELETE FROM {_TABLE} WHERE user_id = $1 AND provider = $2",
                user_id,
                provider,
            )
        deleted = _affected(result)
        if deleted:
            logger.info("Integration deleted: user_id=%r provider=%r", user_id, provider)
        return deleted

    async def delete_if_version(self, user_id: str, provider: str, expected_version: int) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                f"DELETE FROM {_TABLE} WHERE user_id = $1 AND provider = $2 AND version = $3",
                user_id,
                provider,
                expected_version,
            )
        deleted = _affected(result)
        if deleted:
            logger.info("Integration deleted: user_id=%r provider=%r", user_id, provider)
        else:
            logger.debug(
                "Conditional delete skipped: user_id=%r provider=%r expected_version=%d",
                user_id,
                provider,
                expected_version,
            )
        return deleted

    async def set_selected_calendars(
        self, user_id: str, provider: str, calendar_ids: list[str]
    ) -> Integration | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE {_TABLE} SET
                    selected_calendar_ids = $3,
                    updated_at            = now()
                WHERE user_id = $1 AND provider = $2
                RETURNING {_COLUMNS}
                """,
                user_id,
                provider,
                list(calendar_ids),
            )
        return _row_to_integration(row) if row is not None else None

    async def mark_synced(self, user_id: str, provider: str, synced_at: datetime) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                f"UPDATE {_TABLE} SET last_sync_at = $3 WHERE user_id = $1 AND provider = $2",
                user_id,
                provider,
                synced_at,
            )
        return _affected(result)
