"""Pydantic schemas for the rate limit administration endpoints."""

from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field

from app.adapters.rate_limit.base import AdmissionRecord


class TrackedKeysResponse(BaseModel):
    """Capacity view of the key store."""

    tracked_keys: int = Field(..., description="Number of keys currently tracked.")


class SweepResponse(BaseModel):
    """Outcome of an on-demand reaper pass."""

    evicted: int = Field(..., description="Keys evicted by this sweep.")
    tracked_keys: int = Field(..., description="Keys still tracked after the sweep.")


class AdmissionStatusResponse(BaseModel):
    """Diagnostic snapshot of one key. Timestamps are epoch milliseconds."""

    key: str
    window_requests: List[int] = Field(
        default_factory=list,
        description="Admitted request timestamps, oldest first; not pruned on read.",
    )
    in_window: int = Field(..., description="Length of window_requests.")
    window_reset_at: int = Field(
        ..., description="When the newest admitted request leaves the window."
    )
    total_count: int = Field(
        ..., description="Requests admitted since the key was first seen."
    )

    @classmethod
    def from_record(cls, key: str, record: AdmissionRecord) -> AdmissionStatusResponse:
        return cls(
            key=key,
            window_requests=list(record.window_requests),
            in_window=record.in_window,
            window_reset_at=record.window_reset_at,
            total_count=record.total_count,
        )
