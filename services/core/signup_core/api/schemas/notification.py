"""Notification API schemas."""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


class NotificationEventRequest(BaseModel):
    """Parent engagement reported by a channel or the app."""

    action: Literal["opened", "clicked", "completed"] = Field(..., description="Engagement action")
    at: Optional[datetime] = Field(default=None, description="When it happened (UTC)")


class NotificationResponse(BaseModel):
    id: int
    user_id: str
    notification_type: str
    title: str
    priority: str
    delivery_method: str
    status: str
    escalation_count: int
    sent_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    clicked_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DeliveryMetricsResponse(BaseModel):
    total: int
    sent: int
    failed: int
    opened: int
    clicked: int
    completed: int
    delivery_rate: float
    engagement_rate: float
    avg_response_seconds: Optional[float] = None
