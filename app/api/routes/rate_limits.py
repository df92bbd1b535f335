from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, status

from app.adapters.rate_limit.base import AbstractRateLimiter
from app.core.auth import verify_api_key
from app.core.errors import NotFoundAppError
from app.core.rate_limit import admin_ip_rate_limit, api_rate_limit, get_rate_limiter
from app.schemas.rate_limit import AdmissionStatusResponse, SweepResponse, TrackedKeysResponse

router = APIRouter(
    prefix="/rate-limits",
    tags=["Rate limits"],
    dependencies=[
        Depends(admin_ip_rate_limit),
        Depends(verify_api_key),
        Depends(api_rate_limit),
    ],
)

Limiter = Annotated[AbstractRateLimiter, Depends(get_rate_limiter)]


@router.get("", response_model=TrackedKeysResponse)
def tracked_keys(limiter: Limiter) -> TrackedKeysResponse:
    """Number of keys currently tracked, for capacity monitoring."""

    return TrackedKeysResponse(tracked_keys=limiter.size())


@router.post("/sweep", response_model=SweepResponse)
def sweep(limiter: Limiter) -> SweepResponse:
    """Run a reaper pass now instead of waiting for the next interval."""

    evicted = limiter.sweep()
    return SweepResponse(evicted=evicted, tracked_keys=limiter.size())


@router.get("/{key:path}", response_model=AdmissionStatusResponse)
def key_status(key: str, limiter: Limiter) -> AdmissionStatusResponse:
    """Read-only snapshot of one key.

    Raises:
        NotFoundAppError: 404 when the key is not tracked.
    """

    record = limiter.get_status(key)
    if record is None:
        raise NotFoundAppError(
            code="key_not_tracked",
            message="No admission record for this key",
            details={"key": key},
        )
    return AdmissionStatusResponse.from_record(key, record)


@router.delete("/{key:path}", status_code=status.HTTP_204_NO_CONTENT)
def reset_key(key: str, limiter: Limiter) -> None:
    """Restore full quota for one key. Unknown keys are not an error."""

    limiter.reset(key)


@router.delete("", status_code=status.HTTP_204_NO_CONTENT)
def reset_all(limiter: Limiter) -> None:
    """Forget every tracked key."""

    limiter.reset_all()
