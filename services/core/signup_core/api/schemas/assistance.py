"""Assistance workflow API schemas."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class AssistanceRequestResponse(BaseModel):
    """Response schema for one assistance request."""

    id: int
    workflow_id: int
    position: int
    request_type: str
    stage: str
    status: str
    priority: str
    context_json: dict[str, Any] = Field(default_factory=dict)
    estimated_duration: float
    actual_duration: Optional[float] = None
    parent_response_json: Optional[dict[str, Any]] = None
    notification_id: Optional[int] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WorkflowProgressResponse(BaseModel):
    total: int
    completed: int
    failed: int
    active_request_id: Optional[int] = None
    percent_complete: float
    estimated_minutes_remaining: float
    can_auto_resume: bool


class WorkflowResponse(BaseModel):
    """Response schema for an assistance workflow."""

    id: int
    user_id: str
    registration_id: Optional[str] = None
    status: str
    created_at: datetime
    completed_at: Optional[datetime] = None
    requests: list[AssistanceRequestResponse] = Field(default_factory=list)
    progress: WorkflowProgressResponse


class CompleteRequestBody(BaseModel):
    """What the parent supplied to resolve a request."""

    response: dict[str, Any] = Field(
        default_factory=dict,
        description="Parent answer (captcha_token, payment_authorized, vault refs, child_token)",
    )


class FailRequestBody(BaseModel):
    error: str = Field(..., min_length=1, description="Why the request could not be completed")
