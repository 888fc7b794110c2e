from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from admission_gate.adapters.rate_limit.base import AbstractRateLimiter
from admission_gate.core.rate_limit import get_rate_limiter

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check(
    limiter: Annotated[AbstractRateLimiter, Depends(get_rate_limiter)],
) -> dict:
    """Health check endpoint.

    Reports liveness and which rate limit backend the process selected at
    startup ("memory" or "redis").
    """

    return {"status": "ok", "rate_limiter": limiter.backend_name}
