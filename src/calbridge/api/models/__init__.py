"""Shared Pydantic response models for the calbridge API.

All successful responses follow ``{"data": T, "meta": {...}}`` and all
errors follow ``{"error": {"code": ..., "message": ..., "details": ...}}``.
"""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Base response wrappers
# ---------------------------------------------------------------------------


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


class ApiResponse(BaseModel, Generic[T]):
    """Generic API response wrapper."""

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail
