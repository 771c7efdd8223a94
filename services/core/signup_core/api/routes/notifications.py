"""Notification engagement and metrics API routes."""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status

from signup_core.api.deps import Services
from signup_core.api.schemas.notification import (
    DeliveryMetricsResponse,
    NotificationEventRequest,
    NotificationResponse,
)
from signup_core.domain.services.notifications import NotificationNotFoundError

router = APIRouter(prefix="/notifications", tags=["notifications"])


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@router.post("/{notification_id}/events", response_model=NotificationResponse)
async def record_notification_event(
    notification_id: int,
    event: NotificationEventRequest,
    services: Services,
):
    """Record that the parent opened, clicked or completed a notification.

    Opening stops any pending escalation for the notification.
    """
    at = _naive_utc(event.at)
    try:
        record = services.notifications.record_response(notification_id, event.action, at=at)
    except NotificationNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return NotificationResponse.model_validate(record)


@router.get("/metrics", response_model=DeliveryMetricsResponse)
async def get_delivery_metrics(
    services: Services,
    user_id: Optional[str] = Query(None, description="Restrict to one parent"),
    since: Optional[datetime] = Query(None, description="Only notifications created after this time"),
):
    """Delivery and engagement rates for parent notifications."""
    metrics = services.notifications.get_delivery_metrics(
        user_id=user_id,
        since=_naive_utc(since),
    )
    return DeliveryMetricsResponse(**vars(metrics))
