"""Provider trust API schemas."""

from typing import Optional

from pydantic import BaseModel, Field


class TrustCheckResponse(BaseModel):
    """Response schema for a provider trust check."""

    hostname: Optional[str] = Field(default=None, description="Normalized hostname")
    status: str = Field(..., description="Compliance status: green, yellow or red")
    can_proceed: bool
    requires_consent: bool
    reason: str
    parent_explanation: str
    confidence: float
    relationship_status: Optional[str] = None
    automation_allowed: bool = Field(..., description="Whether the requested automation type is allowed")
    automation_reason: str
