"""Admin schemas for rate-limit violations and IP blocks."""
from typing import Optional

from pydantic import BaseModel, Field


class BlockResponse(BaseModel):
    identifier: str
    blocked_at: float
    expires_at: float
    violations: int
    reason: str
    remaining_seconds: int


class ViolationResponse(BaseModel):
    identifier: str
    count: int
    last_violation: Optional[float] = None
    endpoints: list[str] = []


class ManualBlockRequest(BaseModel):
    """Block an identifier outside the violation-count path."""

    identifier: str = Field(..., min_length=1, max_length=255)
    duration_seconds: int = Field(3600, ge=1, le=30 * 24 * 3600)
    reason: str = Field(..., min_length=1, max_length=500)
