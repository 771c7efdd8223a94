"""Provider trust gate.

Decides which automation categories may run against a provider hostname.

Two layers:

1. ``TosClassifier``: a static fast path. Hostnames under a curated trusted
   domain are ``green``, hostnames under a blocked domain are ``red`` and
   everything else is ``yellow``. No network calls are made. Unknown
   providers are allowed only with explicit parent consent, and every
   classification (including the fail-open ``yellow`` on an unreadable URL)
   is written to the audit log.

2. ``ProviderTrustGate``: the per-hostname trust record (relationship tier,
   capability flags, rolling metrics and derived adapter config), cached in
   a ``TrustCache`` for 6 hours and fully re-analyzed every 24 hours.
"""

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterable, Optional

from sqlalchemy.orm import Session

from signup_core.domain.models import (
    AuditActor,
    AuditResult,
    ComplianceStatus,
    ProviderPartnership,
    ProviderTrustRecord,
    RelationshipStatus,
    utcnow,
)
from signup_core.domain.services.audit import AuditService
from signup_core.domain.services.provider_registry import extract_hostname
from signup_core.observability.logging import get_logger
from signup_core.providers.base import AdapterConfig, Platform

logger = get_logger(__name__)

CACHE_TTL = timedelta(hours=6)
COMPLIANCE_RECHECK = timedelta(hours=24)

# Rolling metrics
SUCCESS_RATE_DECAY = 0.9
LOW_SUCCESS_THRESHOLD = 0.8
HIGH_SUCCESS_THRESHOLD = 0.95
MAX_RETRY_ATTEMPTS = 5
MAX_TIMEOUT_SECONDS = 60
TIMEOUT_STEP_SECONDS = 5

DEFAULT_SUCCESS_RATE = 0.85
DEFAULT_RESPONSE_MS = 2000.0
PARTNER_MAX_CONCURRENT = 10
DEFAULT_MAX_CONCURRENT = 3

COMPLIANCE_CONFIDENCE = {
    ComplianceStatus.GREEN: 0.9,
    ComplianceStatus.YELLOW: 0.6,
    ComplianceStatus.RED: 0.1,
}

# Platforms with known CAPTCHA and waiting-room flows
PLATFORMS_WITH_KNOWN_FLOWS = {Platform.JACKRABBIT_CLASS.value}

PARENT_EXPLANATIONS = {
    ComplianceStatus.GREEN: (
        "This camp uses a registration system we work with regularly. "
        "We'll register for you once you confirm."
    ),
    ComplianceStatus.YELLOW: (
        "We haven't verified this camp's registration site yet. We can still "
        "try to register for you, but only with your explicit permission."
    ),
    ComplianceStatus.RED: (
        "This camp's site doesn't allow automated registration. We'll guide "
        "you through registering yourself."
    ),
}


class AutomationType(str, Enum):
    """Automation categories gated per hostname."""

    FORM_FILL = "form_fill"
    CAPTCHA = "captcha"
    QUEUE = "queue"
    PAYMENT = "payment"


# =============================================================================
# RESULTS
# =============================================================================


@dataclass(frozen=True)
class TosCheckResult:
    status: str
    can_proceed: bool
    requires_consent: bool
    reason: str
    confidence: float
    check_duration_ms: float
    hostname: Optional[str] = None

    @property
    def parent_explanation(self) -> str:
        return PARENT_EXPLANATIONS[self.status]


@dataclass(frozen=True)
class AutomationCapabilities:
    form_automation: bool = True
    captcha_prevention: bool = False
    queue_management: bool = False
    payment_processing: bool = False

    def allows(self, automation_type: AutomationType) -> bool:
        return {
            AutomationType.FORM_FILL: self.form_automation,
            AutomationType.CAPTCHA: self.captcha_prevention,
            AutomationType.QUEUE: self.queue_management,
            AutomationType.PAYMENT: self.payment_processing,
        }[AutomationType(automation_type)]


@dataclass(frozen=True)
class TrustProfile:
    """Detached snapshot of a hostname's trust record."""

    hostname: str
    compliance_status: str
    relationship_status: str
    capabilities: AutomationCapabilities
    success_rate: float
    avg_response_ms: float
    attempts: int
    config: AdapterConfig
    confidence: float
    last_analyzed: datetime
    last_compliance_check: datetime

    @classmethod
    def from_record(cls, record: ProviderTrustRecord) -> "TrustProfile":
        return cls(
            hostname=record.hostname,
            compliance_status=record.compliance_status,
            relationship_status=record.relationship_status,
            capabilities=AutomationCapabilities(
                form_automation=record.can_automate_forms,
                captcha_prevention=record.can_prevent_captcha,
                queue_management=record.can_manage_queue,
                payment_processing=record.can_process_payment,
            ),
            success_rate=record.success_rate,
            avg_response_ms=record.avg_response_ms,
            attempts=record.attempts,
            config=AdapterConfig(
                retry_attempts=record.retry_attempts,
                timeout_seconds=record.timeout_seconds,
                max_concurrent=record.max_concurrent,
                aggressive_polling=record.aggressive_polling,
                preemptive_actions=record.preemptive_actions,
            ),
            confidence=record.confidence,
            last_analyzed=record.last_analyzed,
            last_compliance_check=record.last_compliance_check,
        )


@dataclass(frozen=True)
class AutomationDecision:
    allowed: bool
    reason: str
    confidence: float
    automation_type: AutomationType = AutomationType.FORM_FILL


# =============================================================================
# STATIC CLASSIFIER
# =============================================================================


def _normalize_domains(domains: Iterable[str]) -> frozenset[str]:
    return frozenset(d.strip().lower().lstrip(".") for d in domains if d and d.strip())


def domain_matches(hostname: str, domains: frozenset[str]) -> bool:
    """True when ``hostname`` is a listed domain or a subdomain of one."""
    labels = hostname.lower().rstrip(".").split(".")
    return any(".".join(labels[i:]) in domains for i in range(len(labels)))


class TosClassifier:
    """Terms-of-service fast path over curated domain lists."""

    def __init__(self, trusted_domains: Iterable[str], blocked_domains: Iterable[str] = ()):
        self.trusted = _normalize_domains(trusted_domains)
        self.blocked = _normalize_domains(blocked_domains)

    def classify(self, url: str) -> TosCheckResult:
        started = time.perf_counter()

        def result(status: str, reason: str, hostname: Optional[str]) -> TosCheckResult:
            return TosCheckResult(
                status=status,
                can_proceed=status != ComplianceStatus.RED,
                requires_consent=status != ComplianceStatus.RED,
                reason=reason,
                confidence=COMPLIANCE_CONFIDENCE[status],
                check_duration_ms=(time.perf_counter() - started) * 1000,
                hostname=hostname,
            )

        try:
            hostname = extract_hostname(url)
        except ValueError:
            hostname = None
        if not hostname:
            return result(
                ComplianceStatus.YELLOW,
                "classification_error: unreadable URL, defaulting to consent-required",
                None,
            )

        if domain_matches(hostname, self.blocked):
            return result(ComplianceStatus.RED, "blocked_provider", hostname)
        if domain_matches(hostname, self.trusted):
            return result(ComplianceStatus.GREEN, "trusted_provider", hostname)
        return result(ComplianceStatus.YELLOW, "unknown_provider", hostname)


# =============================================================================
# CACHE
# =============================================================================


@dataclass
class _CacheEntry:
    profile: TrustProfile
    stored_at: datetime


class TrustCache:
    """Hostname-keyed trust snapshots with a TTL. Last writer wins."""

    def __init__(self, ttl: timedelta = CACHE_TTL, clock: Callable[[], datetime] = utcnow):
        self.ttl = ttl
        self.clock = clock
        self._entries: dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, hostname: str) -> Optional[TrustProfile]:
        with self._lock:
            entry = self._entries.get(hostname)
        if entry is None or self.clock() - entry.stored_at >= self.ttl:
            return None
        return entry.profile

    def put(self, profile: TrustProfile) -> None:
        with self._lock:
            self._entries[profile.hostname] = _CacheEntry(profile, self.clock())

    def invalidate(self, hostname: Optional[str] = None) -> None:
        with self._lock:
            if hostname is None:
                self._entries.clear()
            else:
                self._entries.pop(hostname, None)


# =============================================================================
# TRUST GATE
# =============================================================================


class ProviderTrustGate:
    """Authorizes automation per hostname and keeps rolling provider metrics.

    Usage:
        gate = ProviderTrustGate(db, classifier, cache, platform_lookup=lookup)
        decision = gate.is_automation_allowed(url, AutomationType.PAYMENT)
    """

    def __init__(
        self,
        db: Session,
        classifier: TosClassifier,
        cache: TrustCache,
        platform_lookup: Optional[Callable[[str], Optional[str]]] = None,
        recheck_interval: timedelta = COMPLIANCE_RECHECK,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.classifier = classifier
        self.cache = cache
        self.platform_lookup = platform_lookup
        self.recheck_interval = recheck_interval
        self.clock = clock
        self.audit = AuditService(db)

    def check_tos(self, url: str, user_id: Optional[str] = None) -> TosCheckResult:
        """Run the static classifier and record the decision in the audit log."""
        check = self.classifier.classify(url)
        self.audit.create_entry(
            actor=AuditActor.SYSTEM,
            action_type="trust.classify",
            result=AuditResult.DENIED if check.status == ComplianceStatus.RED else AuditResult.OK,
            user_id=user_id,
            hostname=check.hostname,
            request_json={"url": url},
            response_json={
                "status": check.status,
                "can_proceed": check.can_proceed,
                "requires_consent": check.requires_consent,
                "reason": check.reason,
            },
        )
        return check

    def _relationship(self, hostname: str) -> str:
        partnerships = self.db.query(ProviderPartnership).all()
        for partnership in partnerships:
            if domain_matches(hostname, frozenset([partnership.hostname.lower()])):
                if partnership.status == "active":
                    return RelationshipStatus.PARTNER
                if partnership.status == "restricted":
                    return RelationshipStatus.RESTRICTED
        return RelationshipStatus.NEUTRAL

    def _platform(self, url: str) -> Optional[str]:
        if self.platform_lookup is None:
            return None
        return self.platform_lookup(url)

    def analyze_provider(self, url: str, force: bool = False) -> TrustProfile:
        """Return the trust profile for ``url``'s hostname.

        Served from cache when fresh. A record whose compliance check is
        older than the recheck interval (or a missing record) is fully
        re-analyzed; metrics survive re-analysis.
        """
        hostname = extract_hostname(url) or ""
        if not force:
            cached = self.cache.get(hostname)
            if cached is not None:
                return cached

        now = self.clock()
        record = self.db.get(ProviderTrustRecord, hostname)
        stale = record is None or now - record.last_compliance_check >= self.recheck_interval

        if stale or force:
            if record is None:
                record = ProviderTrustRecord(
                    hostname=hostname,
                    success_rate=DEFAULT_SUCCESS_RATE,
                    avg_response_ms=DEFAULT_RESPONSE_MS,
                    attempts=0,
                    retry_attempts=3,
                    timeout_seconds=30,
                    aggressive_polling=False,
                    preemptive_actions=False,
                )
                self.db.add(record)

            compliance = self.classifier.classify(url).status
            relationship = self._relationship(hostname)
            known_flows = self._platform(url) in PLATFORMS_WITH_KNOWN_FLOWS

            record.compliance_status = compliance
            record.relationship_status = relationship
            record.can_automate_forms = compliance != ComplianceStatus.RED
            record.can_prevent_captcha = known_flows
            record.can_manage_queue = known_flows
            record.can_process_payment = relationship == RelationshipStatus.PARTNER
            record.max_concurrent = (
                PARTNER_MAX_CONCURRENT
                if relationship == RelationshipStatus.PARTNER
                else DEFAULT_MAX_CONCURRENT
            )
            record.confidence = COMPLIANCE_CONFIDENCE[compliance]
            record.last_compliance_check = now
            logger.info(
                "Provider trust analyzed",
                hostname=hostname,
                compliance_status=compliance,
                relationship_status=relationship,
            )

        record.last_analyzed = now
        self.db.flush()

        profile = TrustProfile.from_record(record)
        self.cache.put(profile)
        return profile

    def is_automation_allowed(
        self,
        url: str,
        automation_type: AutomationType,
        user_id: Optional[str] = None,
    ) -> AutomationDecision:
        """Decide whether ``automation_type`` may run against ``url``.

        Denials are audited.
        """
        automation_type = AutomationType(automation_type)
        profile = self.analyze_provider(url)

        if profile.compliance_status == ComplianceStatus.RED:
            decision = AutomationDecision(
                False, "Provider terms prohibit automation", 1.0, automation_type
            )
        elif not profile.capabilities.allows(automation_type):
            decision = AutomationDecision(
                False,
                f"{automation_type.value} automation is not available for this provider",
                0.8,
                automation_type,
            )
        elif profile.relationship_status == RelationshipStatus.RESTRICTED:
            decision = AutomationDecision(
                False, "Provider relationship is restricted", 0.9, automation_type
            )
        elif profile.relationship_status == RelationshipStatus.PARTNER:
            decision = AutomationDecision(True, "Partner provider", 1.0, automation_type)
        elif profile.compliance_status == ComplianceStatus.YELLOW:
            decision = AutomationDecision(
                True, "Unverified provider, proceeding in caution mode", 0.6, automation_type
            )
        else:
            decision = AutomationDecision(True, "Trusted provider", 0.8, automation_type)

        if not decision.allowed:
            self.audit.create_entry(
                actor=AuditActor.SYSTEM,
                action_type="trust.authorize",
                result=AuditResult.DENIED,
                user_id=user_id,
                hostname=profile.hostname,
                request_json={"automation_type": automation_type.value},
                response_json={"reason": decision.reason, "confidence": decision.confidence},
            )
        return decision

    def record_attempt(self, url: str, success: bool, response_ms: float) -> TrustProfile:
        """Fold one automation attempt into the hostname's rolling metrics.

        Success rate is an exponential moving average; a rate below 0.8
        widens retry and timeout budgets, above 0.95 enables aggressive
        polling and preemptive actions.
        """
        self.analyze_provider(url)
        hostname = extract_hostname(url) or ""
        record = self.db.get(ProviderTrustRecord, hostname)

        record.success_rate = (
            SUCCESS_RATE_DECAY * record.success_rate
            + (1 - SUCCESS_RATE_DECAY) * (1.0 if success else 0.0)
        )
        record.avg_response_ms = (record.avg_response_ms + float(response_ms)) / 2
        record.attempts += 1

        if record.success_rate < LOW_SUCCESS_THRESHOLD:
            record.retry_attempts = min(record.retry_attempts + 1, MAX_RETRY_ATTEMPTS)
            record.timeout_seconds = min(
                record.timeout_seconds + TIMEOUT_STEP_SECONDS, MAX_TIMEOUT_SECONDS
            )
        elif record.success_rate > HIGH_SUCCESS_THRESHOLD:
            record.aggressive_polling = True
            record.preemptive_actions = True

        self.db.flush()
        profile = TrustProfile.from_record(record)
        self.cache.put(profile)
        return profile

    def get_provider_config(self, url: str) -> AdapterConfig:
        return self.analyze_provider(url).config
