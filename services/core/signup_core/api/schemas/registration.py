"""Registration run API schemas."""

from typing import Any, Optional

from pydantic import BaseModel, Field


class IntentSchema(BaseModel):
    """What the parent is looking for."""

    date: Optional[str] = Field(default=None, description="Week-of date (YYYY-MM-DD)")
    title_contains: Optional[str] = Field(default=None, description="Case-insensitive title filter")
    location: Optional[str] = Field(default=None, description="Location hint")
    quantity: Optional[int] = Field(default=None, ge=1, description="Seats requested")
    priority: bool = Field(default=False, description="Early-registration priority")


class RunRegistrationRequest(BaseModel):
    """Request schema for starting a registration run."""

    canonical_url: str = Field(..., description="Provider registration URL")
    user_id: str = Field(..., description="Parent user ID")
    session_id: str = Field(..., description="Camp session ID on our side")
    child_token: Optional[str] = Field(default=None, description="Vault reference to the child profile")
    registration_id: Optional[str] = Field(default=None, description="Stable registration key")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Vault refs, consent, timezone")
    intent: Optional[IntentSchema] = Field(default=None, description="Session filters")
    accept_waitlist: bool = Field(default=False, description="Finalize even when waitlisted")
    background: bool = Field(default=False, description="Queue the run on the worker instead")


class CandidateResponse(BaseModel):
    id: str
    url: str
    title: str
    start_at: Optional[str] = None
    end_at: Optional[str] = None
    capacity: Optional[int] = None
    provider_id: Optional[str] = None


class RegistrationOutcomeResponse(BaseModel):
    """Response schema for a finished (or parked) registration run."""

    status: str = Field(..., description="Outcome status")
    reason: Optional[str] = Field(default=None, description="Human-readable reason")
    fixable_by_parent: bool = Field(default=False, description="Whether the parent can fix this")
    platform: Optional[str] = Field(default=None, description="Detected platform")
    candidate: Optional[CandidateResponse] = Field(default=None, description="Selected session")
    confirmation_id: Optional[str] = Field(default=None, description="Provider confirmation ID")
    workflow_id: Optional[int] = Field(default=None, description="Assistance workflow, when parked")


class QueuedRunResponse(BaseModel):
    """Response schema when a run was handed to the worker."""

    queued: bool = True
    task_id: Optional[str] = None
