from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from admission_gate.adapters.rate_limit.base import AbstractRateLimiter, RateLimitStatus
from admission_gate.core.rate_limit import (
    client_identifier,
    enforce_rate_limit,
    get_rate_limiter,
)

router = APIRouter(tags=["Admission"])


class AdmissionResponse(BaseModel):
    admitted: bool = Field(..., description="Always true; rejections return 429")
    remaining: int = Field(..., ge=0, description="Quota left in the current window")


class QuotaResponse(BaseModel):
    limit: int = Field(..., ge=1)
    window_ms: int = Field(..., ge=1)
    remaining: int = Field(..., ge=0)
    retry_after_seconds: int = Field(..., ge=0)
    backend: str


@router.post(
    "/admission",
    response_model=AdmissionResponse,
    dependencies=[Depends(enforce_rate_limit)],
)
async def admit(
    request: Request,
    limiter: Annotated[AbstractRateLimiter, Depends(get_rate_limiter)],
) -> AdmissionResponse:
    """Admission gate for expensive work.

    Callers (e.g. an inference proxy) hit this before starting the work; a
    429 means the caller's window is full.
    """
    decision: RateLimitStatus | None = getattr(request.state, "rate_limit_status", None)
    if decision is None:
        # admission control disabled; report the quota without recording
        decision = await limiter.get_status(client_identifier(request))
    return AdmissionResponse(admitted=True, remaining=decision.remaining)


@router.get("/admission/quota", response_model=QuotaResponse)
async def quota(
    request: Request,
    limiter: Annotated[AbstractRateLimiter, Depends(get_rate_limiter)],
) -> QuotaResponse:
    """Report the caller's quota without consuming any of it."""
    quota_status = await limiter.get_status(client_identifier(request))
    return QuotaResponse(
        limit=limiter.config.max_requests,
        window_ms=limiter.config.window_ms,
        remaining=quota_status.remaining,
        retry_after_seconds=quota_status.retry_after,
        backend=limiter.backend_name,
    )
