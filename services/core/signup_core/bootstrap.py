"""Explicit construction of the service graph.

The API and the worker build services the same way: one ``ServiceContainer``
per database session. Process-wide state (provider profiles, the trust
cache, the adapter catalog) is created once and shared between containers.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache, partial
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from signup_core.config import Settings, get_settings
from signup_core.domain.models import utcnow
from signup_core.domain.services.assistance_workflow import AssistanceWorkflowService
from signup_core.domain.services.audit import AuditService
from signup_core.domain.services.jobs import JobService
from signup_core.domain.services.notifications import NotificationService
from signup_core.domain.services.orchestrator import CaptchaSolver, RegistrationOrchestrator
from signup_core.domain.services.provider_registry import (
    DatabaseProfileLoader,
    ProviderRegistry,
)
from signup_core.domain.services.registration_lock import RegistrationLockService
from signup_core.domain.services.scheduled_tasks import ScheduledTaskRunner
from signup_core.domain.services.trust_gate import (
    ProviderTrustGate,
    TosClassifier,
    TrustCache,
)
from signup_core.domain.services.vault import VaultService
from signup_core.infra.db import get_sync_session_factory
from signup_core.infrastructure.crypto import CryptoService
from signup_core.infrastructure.delivery import (
    HttpDeliveryGateway,
    LoggingDelivery,
    NotificationDelivery,
)
from signup_core.infrastructure.host_throttle import HostThrottle
from signup_core.providers.base import ProviderAdapter, ServiceFeeCharger
from signup_core.providers.catalog import AdapterCatalog
from signup_core.providers.jackrabbit.adapter import JackrabbitAdapter


# =============================================================================
# PROCESS-WIDE STATE
# =============================================================================


@lru_cache
def get_provider_registry() -> ProviderRegistry:
    """Profiles are loaded from the database on first detection."""
    return ProviderRegistry(DatabaseProfileLoader(get_sync_session_factory()))


@lru_cache
def get_trust_cache() -> TrustCache:
    settings = get_settings()
    return TrustCache(ttl=timedelta(hours=settings.trust_cache_ttl_hours))


@lru_cache
def get_delivery() -> NotificationDelivery:
    settings = get_settings()
    if settings.notification_gateway_url:
        return HttpDeliveryGateway(
            settings.notification_gateway_url,
            token=settings.notification_gateway_token,
        )
    return LoggingDelivery()


def reset_shared_state() -> None:
    """Drop the process-wide caches. Used by tests and after config changes."""
    get_provider_registry.cache_clear()
    get_trust_cache.cache_clear()
    get_delivery.cache_clear()


# =============================================================================
# PER-SESSION CONTAINER
# =============================================================================


@dataclass
class ServiceContainer:
    db: Session
    settings: Settings
    jobs: JobService
    audit: AuditService
    vault: VaultService
    notifications: NotificationService
    workflows: AssistanceWorkflowService
    trust_gate: ProviderTrustGate
    locks: RegistrationLockService
    registry: ProviderRegistry
    catalog: AdapterCatalog
    orchestrator: RegistrationOrchestrator
    scheduler: ScheduledTaskRunner


def build_catalog(
    vault: VaultService,
    fee_charger: Optional[ServiceFeeCharger] = None,
) -> AdapterCatalog:
    adapters: list[ProviderAdapter] = [JackrabbitAdapter(secrets=vault, fee_charger=fee_charger)]
    return AdapterCatalog(adapters)


def build_services(
    db: Session,
    settings: Optional[Settings] = None,
    *,
    registry: Optional[ProviderRegistry] = None,
    trust_cache: Optional[TrustCache] = None,
    delivery: Optional[NotificationDelivery] = None,
    catalog: Optional[AdapterCatalog] = None,
    redis_client: Optional[Any] = None,
    captcha_solver: Optional[CaptchaSolver] = None,
    fee_charger: Optional[ServiceFeeCharger] = None,
    clock: Callable[[], datetime] = utcnow,
) -> ServiceContainer:
    """Wire every service around one database session.

    Args:
        db: Session shared by all services; the caller owns commit/rollback.
        settings: Defaults to the cached application settings.
        registry: Provider registry (process-wide one by default).
        trust_cache: Trust profile cache (process-wide one by default).
        delivery: Notification channel backend.
        catalog: Adapter catalog. Built from the vault when omitted.
        redis_client: Async Redis client enabling the per-host throttle.
        captcha_solver: Optional verification backend.
        fee_charger: Charges the service fee for provider-collected payments.
        clock: Returns the current naive-UTC time.
    """
    settings = settings or get_settings()
    registry = registry or get_provider_registry()

    jobs = JobService(db, clock=clock)
    audit = AuditService(db)
    vault = VaultService(db, CryptoService(settings.encryption_key))
    notifications = NotificationService(
        db,
        delivery or get_delivery(),
        jobs=jobs,
        clock=clock,
        fallback_delay=timedelta(seconds=settings.notification_fallback_delay_seconds),
    )
    workflows = AssistanceWorkflowService(
        db,
        notifications=notifications,
        jobs=jobs,
        clock=clock,
        advance_delay=timedelta(seconds=settings.workflow_advance_delay_seconds),
        retry_delay=timedelta(seconds=settings.workflow_retry_delay_seconds),
        base_url=settings.base_url,
    )

    def platform_lookup(url: str) -> Optional[str]:
        profile = registry.detect_platform(url)
        return profile.platform if profile else None

    trust_gate = ProviderTrustGate(
        db,
        TosClassifier(settings.trusted_provider_domains, settings.blocked_provider_domains),
        trust_cache or get_trust_cache(),
        platform_lookup=platform_lookup,
        recheck_interval=timedelta(hours=settings.trust_recheck_hours),
        clock=clock,
    )
    locks = RegistrationLockService(
        db, ttl=timedelta(seconds=settings.registration_lock_ttl_seconds), clock=clock
    )
    catalog = catalog or build_catalog(vault, fee_charger)

    throttle_factory = partial(HostThrottle, redis_client) if redis_client is not None else None

    orchestrator = RegistrationOrchestrator(
        registry,
        catalog,
        trust_gate,
        workflows,
        locks,
        throttle_factory=throttle_factory,
        captcha_solver=captcha_solver,
    )
    scheduler = ScheduledTaskRunner(
        jobs,
        notifications,
        workflows,
        resume_registration=orchestrator.resume,
        batch_size=settings.scheduler_batch_size,
    )

    return ServiceContainer(
        db=db,
        settings=settings,
        jobs=jobs,
        audit=audit,
        vault=vault,
        notifications=notifications,
        workflows=workflows,
        trust_gate=trust_gate,
        locks=locks,
        registry=registry,
        catalog=catalog,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )
