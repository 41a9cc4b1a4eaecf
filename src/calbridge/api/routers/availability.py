"""POST /api/availability — ranked meeting slot suggestions."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from calbridge.api.deps import Services, get_services, get_user_id
from calbridge.api.models import ApiMeta, ApiResponse
from calbridge.api.models.events import AvailabilityRequestBody
from calbridge.availability import TimeSlotCandidate

router = APIRouter(prefix="/api/availability", tags=["availability"])


@router.post("", response_model=ApiResponse[list[TimeSlotCandidate]])
async def suggest_availability(
    body: AvailabilityRequestBody,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
) -> ApiResponse[list[TimeSlotCandidate]]:
    slots = await services.availability.suggest(user_id, body.to_request())
    return ApiResponse[list[TimeSlotCandidate]](
        data=slots,
        meta=ApiMeta(count=len(slots), time_preference=body.time_preference),
    )
