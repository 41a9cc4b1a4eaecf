"""Service wiring and FastAPI dependencies.

``Services`` bundles the long-lived objects a request needs.  The lifespan
handler builds it from configuration (see :func:`build_services`); tests pass
a prebuilt bundle to ``create_app``.

User identity is owned by an upstream collaborator.  ``get_user_id`` reads
it from the ``X-User-Id`` header and can be swapped with
``app.dependency_overrides``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import httpx
from fastapi import Header, HTTPException, Request

from calbridge.aggregation import AggregationService
from calbridge.availability import AvailabilityEngine
from calbridge.cipher import AesGcmTokenCipher
from calbridge.core.logging import set_user_context
from calbridge.db import Database
from calbridge.integrations.oauth import GoogleOAuthClient, OAuthClient, OAuthStateStore
from calbridge.integrations.store import PostgresIntegrationStore
from calbridge.integrations.vault import TokenVault
from calbridge.providers.cache import TTLResponseCache
from calbridge.providers.google import GoogleCalendarProvider

if TYPE_CHECKING:
    from calbridge.config import ServiceConfig

logger = logging.getLogger(__name__)

_MAX_USER_ID_LENGTH = 255


@dataclass
class Services:
    """Long-lived collaborators shared by every request."""

    vault: TokenVault
    aggregation: AggregationService
    availability: AvailabilityEngine
    oauth_clients: dict[str, OAuthClient]
    state_store: OAuthStateStore = field(default_factory=OAuthStateStore)
    dashboard_url: str | None = None
    http_client: httpx.AsyncClient | None = None
    database: Database | None = None

    def oauth_client(self, provider: str) -> OAuthClient:
        client = self.oauth_clients.get(provider)
        if client is None:
            raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")
        return client

    async def close(self) -> None:
        if self.http_client is not None:
            await self.http_client.aclose()
        if self.database is not None:
            await self.database.close()


async def build_services(config: ServiceConfig) -> Services:
    """Create the HTTP client, database pool and services from *config*."""
    http_client = httpx.AsyncClient(timeout=30.0)
    database = Database(config.database)
    try:
        pool = await database.connect()
        store = PostgresIntegrationStore(pool)
        await store.ensure_schema()
    except Exception:
        await http_client.aclose()
        await database.close()
        raise

    clock = lambda: datetime.now(UTC)  # noqa: E731
    google_oauth = GoogleOAuthClient(config.google, http_client, clock=clock)
    oauth_clients: dict[str, OAuthClient] = {google_oauth.provider: google_oauth}

    vault = TokenVault(
        store,
        AesGcmTokenCipher(config.encryption_key),
        oauth_clients,
        retry_policy=config.retry,
        clock=clock,
    )
    provider = GoogleCalendarProvider(
        http_client,
        cache=TTLResponseCache(
            config.cache.calendar_list_ttl_seconds,
            max_entries=config.cache.max_entries,
        ),
        retry_policy=config.retry,
    )
    aggregation = AggregationService(
        vault,
        provider,
        calendar_timeout_seconds=config.aggregation.calendar_timeout_seconds,
    )
    availability = AvailabilityEngine(aggregation, timezone=config.tzinfo, clock=clock)

    logger.info(
        "Services initialized: providers=%s timezone=%s",
        sorted(oauth_clients),
        config.timezone,
    )
    return Services(
        vault=vault,
        aggregation=aggregation,
        availability=availability,
        oauth_clients=oauth_clients,
        dashboard_url=config.dashboard_url,
        http_client=http_client,
        database=database,
    )


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service is still starting up")
    return services


def get_user_id(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
    """Resolve the acting user from the ``X-User-Id`` header."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing user identity")
    if len(user_id) > _MAX_USER_ID_LENGTH:
        raise HTTPException(status_code=400, detail="User identity is too long")
    set_user_context(user_id)
    return user_id
