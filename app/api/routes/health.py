from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check(request: Request) -> dict:
    """Liveness check, not subject to admission control.

    Returns:
        dict: ``status`` plus whether the admission engine is attached.
    """

    limiter = getattr(request.app.state, "rate_limiter", None)
    return {"status": "ok", "rate_limiter": "up" if limiter is not None else "down"}
