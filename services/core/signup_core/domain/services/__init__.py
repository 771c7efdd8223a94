"""Domain services for the camp signup core."""

from signup_core.domain.services.assistance_workflow import AssistanceWorkflowService
from signup_core.domain.services.audit import AuditService
from signup_core.domain.services.jobs import JobService
from signup_core.domain.services.notifications import NotificationService
from signup_core.domain.services.orchestrator import (
    OutcomeStatus,
    RegistrationOrchestrator,
    RegistrationOutcome,
)
from signup_core.domain.services.provider_registry import ProviderRegistry
from signup_core.domain.services.registration_lock import RegistrationLockService
from signup_core.domain.services.scheduled_tasks import ScheduledTaskRunner
from signup_core.domain.services.trust_gate import ProviderTrustGate
from signup_core.domain.services.vault import VaultService

__all__ = [
    "AssistanceWorkflowService",
    "AuditService",
    "JobService",
    "NotificationService",
    "OutcomeStatus",
    "ProviderRegistry",
    "ProviderTrustGate",
    "RegistrationLockService",
    "RegistrationOrchestrator",
    "RegistrationOutcome",
    "ScheduledTaskRunner",
    "VaultService",
]
