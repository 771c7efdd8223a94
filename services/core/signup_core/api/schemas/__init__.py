"""API schemas."""

from signup_core.api.schemas.assistance import (
    AssistanceRequestResponse,
    CompleteRequestBody,
    FailRequestBody,
    WorkflowProgressResponse,
    WorkflowResponse,
)
from signup_core.api.schemas.notification import (
    DeliveryMetricsResponse,
    NotificationEventRequest,
    NotificationResponse,
)
from signup_core.api.schemas.registration import (
    IntentSchema,
    QueuedRunResponse,
    RegistrationOutcomeResponse,
    RunRegistrationRequest,
)
from signup_core.api.schemas.trust import TrustCheckResponse

__all__ = [
    # Assistance schemas
    "AssistanceRequestResponse",
    "CompleteRequestBody",
    "FailRequestBody",
    "WorkflowProgressResponse",
    "WorkflowResponse",
    # Notification schemas
    "DeliveryMetricsResponse",
    "NotificationEventRequest",
    "NotificationResponse",
    # Registration schemas
    "IntentSchema",
    "QueuedRunResponse",
    "RegistrationOutcomeResponse",
    "RunRegistrationRequest",
    # Trust schemas
    "TrustCheckResponse",
]
