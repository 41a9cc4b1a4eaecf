"""Google Calendar integration endpoints.

Endpoints:
  GET    /api/integrations/google/authorize  — begin OAuth (redirect or JSON)
  GET    /api/integrations/google/callback   — finish OAuth, store the integration
  GET    /api/integrations/google            — connection status
  PUT    /api/integrations/google            — replace selected calendars
  DELETE /api/integrations/google            — revoke and remove
  GET    /api/integrations/google/calendars  — live calendar list
  POST   /api/integrations/google/sync       — explicit sync, records last_sync_at

The callback identifies the user through the CSRF ``state`` it was issued
with, so it works as a plain browser redirect without the identity header.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import JSONResponse, RedirectResponse, Response

from calbridge.aggregation import TimeRange
from calbridge.api.deps import Services, get_services, get_user_id
from calbridge.api.models import ApiResponse
from calbridge.api.models.integrations import (
    AuthorizeResponse,
    IntegrationStatusResponse,
    OAuthCallbackError,
    OAuthCallbackSuccess,
    SelectedCalendarsUpdate,
    SyncRequest,
    SyncResponse,
)
from calbridge.core.logging import set_user_context
from calbridge.errors import CalbridgeError
from calbridge.integrations.models import Provider
from calbridge.providers.base import CalendarRef

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/integrations", tags=["integrations"])

_PROVIDER = Provider.GOOGLE.value
DEFAULT_SYNC_WINDOW = timedelta(days=30)

_KNOWN_PROVIDER_ERRORS: dict[str, str] = {
    "access_denied": "The user denied access. OAuth flow cancelled.",
    "invalid_request": "The OAuth request was malformed. Please restart the flow.",
    "unauthorized_client": "This application is not authorized to use Google OAuth. "
    "Check your OAuth app configuration.",
    "invalid_scope": "One or more requested OAuth scopes are invalid or not permitted.",
    "server_error": "Google encountered an internal error. Please try again.",
    "temporarily_unavailable": "Google OAuth is temporarily unavailable. Please try again later.",
}


def _sanitize_provider_error(error: str) -> str:
    """Map a provider error code to a safe message; unknown codes get a generic one."""
    return _KNOWN_PROVIDER_ERRORS.get(
        error,
        "The OAuth authorization failed. Please restart the flow.",
    )


def _callback_failure(
    services: Services, error_code: str, message: str, *, status_code: int = 400
) -> Response:
    if services.dashboard_url:
        return RedirectResponse(
            url=f"{services.dashboard_url}?oauth_error={error_code}", status_code=302
        )
    payload = OAuthCallbackError(error_code=error_code, message=message)
    return JSONResponse(status_code=status_code, content=payload.model_dump())


# ---------------------------------------------------------------------------
# OAuth flow
# ---------------------------------------------------------------------------


@router.get(
    "/google/authorize",
    responses={
        200: {"model": ApiResponse[AuthorizeResponse], "description": "JSON (redirect=false)"},
        302: {"description": "Redirect to the Google consent screen"},
    },
)
async def authorize_google(
    redirect: bool = Query(
        default=True,
        description="Redirect to Google (default) or return the URL as JSON.",
    ),
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
) -> Response:
    """Begin the Google OAuth authorization flow for the current user."""
    oauth_client = services.oauth_client(_PROVIDER)
    state = services.state_store.issue(user_id)
    authorization_url = oauth_client.authorization_url(state)

    logger.info("Google OAuth flow started (state=%s...)", state[:8])

    if redirect:
        return RedirectResponse(url=authorization_url, status_code=302)
    body = ApiResponse[AuthorizeResponse](
        data=AuthorizeResponse(authorization_url=authorization_url, state=state)
    )
    return JSONResponse(content=body.model_dump(mode="json"))


@router.get("/google/callback")
async def google_callback(
    code: str | None = Query(default=None, description="Authorization code from Google."),
    state: str | None = Query(default=None, description="CSRF state token."),
    error: str | None = Query(default=None, description="OAuth error code from Google."),
    services: Services = Depends(get_services),
) -> Response:
    """Validate state, exchange the code and store the integration."""
    if error:
        logger.warning("Google OAuth provider error: %s", error)
        if state:
            services.state_store.consume(state)
        return _callback_failure(services, "provider_error", _sanitize_provider_error(error))

    if not code:
        return _callback_failure(
            services, "missing_code", "Authorization code is missing from the callback."
        )
    if not state:
        return _callback_failure(
            services,
            "missing_state",
            "State parameter is missing from the callback. Possible CSRF attempt.",
        )

    user_id = services.state_store.consume(state)
    if user_id is None:
        logger.warning("OAuth callback received invalid or expired state token")
        return _callback_failure(
            services,
            "invalid_state",
            "State parameter is invalid or expired. Please restart the OAuth flow.",
        )
    set_user_context(user_id)

    try:
        token_set = await services.oauth_client(_PROVIDER).exchange_code_for_tokens(code)
        status = await services.vault.connect(user_id, _PROVIDER, token_set)
    except CalbridgeError as exc:
        logger.warning("Google OAuth callback failed: code=%s", exc.code)
        return _callback_failure(
            services,
            "token_exchange_failed",
            exc.message,
            status_code=exc.status_code if exc.status_code < 500 else 502,
        )

    logger.info("Google Calendar connected: user_id=%r scope=%s", user_id, status.scope)

    if services.dashboard_url:
        return RedirectResponse(url=f"{services.dashboard_url}?oauth_success=true", status_code=302)
    return JSONResponse(content=OAuthCallbackSuccess(scope=status.scope).model_dump())


# ---------------------------------------------------------------------------
# Integration resource
# ---------------------------------------------------------------------------


@router.get("/google", response_model=ApiResponse[IntegrationStatusResponse])
async def get_google_integration(
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
) -> ApiResponse[IntegrationStatusResponse]:
    status = await services.vault.status(user_id, _PROVIDER)
    return ApiResponse[IntegrationStatusResponse](
        data=IntegrationStatusResponse.from_status(status)
    )


@router.put("/google", response_model=ApiResponse[IntegrationStatusResponse])
async def update_google_integration(
    body: SelectedCalendarsUpdate,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
) -> ApiResponse[IntegrationStatusResponse]:
    """Replace the calendars aggregated for this user."""
    status = await services.vault.set_selected_calendars(
        user_id, _PROVIDER, body.selected_calendar_ids
    )
    return ApiResponse[IntegrationStatusResponse](
        data=IntegrationStatusResponse.from_status(status)
    )


@router.delete("/google", response_model=ApiResponse[dict])
async def delete_google_integration(
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
) -> ApiResponse[dict]:
    """Revoke the grant at Google (best effort) and delete the integration."""
    deleted = await services.vault.revoke(user_id, _PROVIDER)
    return ApiResponse[dict](data={"provider": _PROVIDER, "deleted": deleted})


@router.get("/google/calendars", response_model=ApiResponse[list[CalendarRef]])
async def list_google_calendars(
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
) -> ApiResponse[list[CalendarRef]]:
    calendars = await services.aggregation.list_calendars(user_id)
    return ApiResponse[list[CalendarRef]](data=calendars)


@router.post("/google/sync", response_model=ApiResponse[SyncResponse])
async def sync_google_calendar(
    body: SyncRequest | None = Body(default=None),
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
) -> ApiResponse[SyncResponse]:
    """Fetch calendars and events now and record ``last_sync_at``.

    Without an explicit window the next 30 days are synced.
    """
    request = body or SyncRequest()
    time_min = request.time_min or datetime.now(UTC)
    time_max = request.time_max or time_min + DEFAULT_SYNC_WINDOW
    time_range = TimeRange(start=_ensure_utc(time_min), end=_ensure_utc(time_max))

    result = await services.aggregation.sync(user_id, time_range)
    return ApiResponse[SyncResponse](
        data=SyncResponse(
            synced_at=result.synced_at,
            calendars_found=len(result.calendars),
            events_fetched=result.event_count,
            failed_calendar_ids=result.failed_calendar_ids,
            calendars=result.calendars,
        )
    )


def _ensure_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
