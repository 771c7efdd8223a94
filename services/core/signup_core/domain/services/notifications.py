"""Notification escalation engine.

``send_notification`` persists a notification, picks a delivery method,
attempts delivery and schedules one durable escalation check per rule.
Escalation checks run later from the scheduled-job ledger and re-read the
notification first: an opened or expired notification is left alone. A
failed initial delivery schedules a single fallback delivery on the next
channel in ``FALLBACK_METHODS``.

Method selection walks the priority's channel list, drops channels the
parent opted out of, and prefers the first channel whose recent open rate is
at or above ``PERFORMANCE_FLOOR``. Channels without history count as
performing.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from signup_core.domain.models import (
    AssistanceType,
    DeliveryMethod,
    NotificationPreference,
    NotificationPriority,
    NotificationStatus,
    ParentNotification,
    utcnow,
)
from signup_core.domain.services.jobs import JobService
from signup_core.infrastructure.delivery import (
    DeliveryError,
    NotificationDelivery,
    OutboundNotification,
)
from signup_core.observability.logging import get_logger
from signup_core.observability.metrics import MetricsCollector, get_collector

logger = get_logger(__name__)

SCHEDULER_QUEUE = "scheduler"
ESCALATE_JOB = "notification.escalate"
FALLBACK_JOB = "notification.fallback"

METHODS_BY_PRIORITY = {
    NotificationPriority.CRITICAL: [DeliveryMethod.SMS, DeliveryMethod.PUSH, DeliveryMethod.EMAIL],
    NotificationPriority.HIGH: [DeliveryMethod.PUSH, DeliveryMethod.SMS, DeliveryMethod.EMAIL],
    NotificationPriority.MEDIUM: [DeliveryMethod.PUSH, DeliveryMethod.EMAIL],
    NotificationPriority.LOW: [DeliveryMethod.EMAIL, DeliveryMethod.PUSH],
}

FALLBACK_METHODS = {
    DeliveryMethod.SMS: DeliveryMethod.EMAIL,
    DeliveryMethod.EMAIL: DeliveryMethod.PUSH,
    DeliveryMethod.PUSH: DeliveryMethod.SMS,
    DeliveryMethod.IN_APP: DeliveryMethod.PUSH,
}

PERFORMANCE_FLOOR = 0.3
PERFORMANCE_WINDOW = 10
DEFAULT_FALLBACK_DELAY = timedelta(seconds=30)

# Engagement only moves forward
STATUS_RANK = {
    NotificationStatus.PENDING: 0,
    NotificationStatus.FAILED: 0,
    NotificationStatus.SENT: 1,
    NotificationStatus.OPENED: 2,
    NotificationStatus.CLICKED: 3,
    NotificationStatus.COMPLETED: 4,
}

# Notification types
CAPTCHA_ASSISTANCE = "captcha_assistance"
PAYMENT_AUTHORIZATION = "payment_authorization"
FORM_COMPLETION = "form_completion"
ACCOUNT_CREATION = "account_creation"
ERROR_ALERT = "error_alert"
SUCCESS_CONFIRMATION = "success_confirmation"


class NotificationError(Exception):
    """Base exception for notification operations."""


class NotificationNotFoundError(NotificationError):
    """Raised when a notification id does not exist."""


# =============================================================================
# OPTIONS AND RULES
# =============================================================================


@dataclass(frozen=True)
class EscalationRule:
    """Redeliver via ``method`` at ``priority`` if unopened after ``trigger_after``."""

    trigger_after: timedelta
    method: str
    priority: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger_after_seconds": int(self.trigger_after.total_seconds()),
            "method": self.method,
            "priority": self.priority,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EscalationRule":
        return cls(
            trigger_after=timedelta(seconds=data["trigger_after_seconds"]),
            method=data["method"],
            priority=data["priority"],
        )


@dataclass(frozen=True)
class NotificationTemplate:
    type: str
    title: str
    message: str
    urgency_level: str


@dataclass
class NotificationOptions:
    user_id: str
    template: NotificationTemplate
    priority: str
    action_url: Optional[str] = None
    escalation_rules: list[EscalationRule] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    expires_in: Optional[timedelta] = None


@dataclass(frozen=True)
class DeliveryMetrics:
    total: int
    sent: int
    failed: int
    opened: int
    clicked: int
    completed: int
    delivery_rate: float
    engagement_rate: float
    avg_response_seconds: Optional[float]


def _minutes(n: int) -> timedelta:
    return timedelta(minutes=n)


DEFAULT_EXPIRATIONS = {
    NotificationPriority.CRITICAL: _minutes(10),
    NotificationPriority.HIGH: _minutes(30),
    NotificationPriority.MEDIUM: _minutes(60),
    NotificationPriority.LOW: _minutes(240),
}

CAPTCHA_EXPIRATIONS = {
    NotificationPriority.CRITICAL: _minutes(5),
    NotificationPriority.HIGH: _minutes(10),
    NotificationPriority.MEDIUM: _minutes(20),
    NotificationPriority.LOW: _minutes(20),
}

TYPE_EXPIRATIONS = {
    PAYMENT_AUTHORIZATION: _minutes(30),
    FORM_COMPLETION: _minutes(120),
    ACCOUNT_CREATION: _minutes(120),
}

DEFAULT_ESCALATION_RULES = {
    NotificationPriority.CRITICAL: [
        EscalationRule(_minutes(2), DeliveryMethod.SMS, NotificationPriority.CRITICAL),
        EscalationRule(_minutes(5), DeliveryMethod.EMAIL, NotificationPriority.CRITICAL),
    ],
    NotificationPriority.HIGH: [
        EscalationRule(_minutes(5), DeliveryMethod.SMS, NotificationPriority.HIGH),
        EscalationRule(_minutes(15), DeliveryMethod.EMAIL, NotificationPriority.HIGH),
    ],
    NotificationPriority.MEDIUM: [
        EscalationRule(_minutes(15), DeliveryMethod.EMAIL, NotificationPriority.MEDIUM),
    ],
    NotificationPriority.LOW: [],
}

CAPTCHA_ESCALATION_RULES = {
    NotificationPriority.CRITICAL: [
        EscalationRule(_minutes(1), DeliveryMethod.SMS, NotificationPriority.CRITICAL),
        EscalationRule(_minutes(3), DeliveryMethod.EMAIL, NotificationPriority.CRITICAL),
    ],
    NotificationPriority.HIGH: [
        EscalationRule(_minutes(3), DeliveryMethod.SMS, NotificationPriority.CRITICAL),
        EscalationRule(_minutes(8), DeliveryMethod.EMAIL, NotificationPriority.CRITICAL),
    ],
    NotificationPriority.MEDIUM: [
        EscalationRule(_minutes(10), DeliveryMethod.SMS, NotificationPriority.HIGH),
    ],
    NotificationPriority.LOW: [],
}

PAYMENT_ESCALATION_RULES = [
    EscalationRule(_minutes(5), DeliveryMethod.SMS, NotificationPriority.HIGH),
    EscalationRule(_minutes(15), DeliveryMethod.EMAIL, NotificationPriority.CRITICAL),
]


def default_expiration(notification_type: str, priority: str) -> timedelta:
    if notification_type == CAPTCHA_ASSISTANCE:
        return CAPTCHA_EXPIRATIONS[priority]
    if notification_type in TYPE_EXPIRATIONS:
        return TYPE_EXPIRATIONS[notification_type]
    return DEFAULT_EXPIRATIONS[priority]


# =============================================================================
# TEMPLATES
# =============================================================================


def captcha_template(provider_name: str, priority: str) -> NotificationTemplate:
    return NotificationTemplate(
        type=CAPTCHA_ASSISTANCE,
        title="Quick verification needed",
        message=(
            f"{provider_name} is asking for a human check to hold your spot. "
            "It takes about 30 seconds."
        ),
        urgency_level=priority,
    )


def payment_template(provider_name: str, amount: Optional[str]) -> NotificationTemplate:
    amount_text = f" of {amount}" if amount else ""
    return NotificationTemplate(
        type=PAYMENT_AUTHORIZATION,
        title="Approve registration payment",
        message=f"Your spot at {provider_name} is held. Approve the payment{amount_text} to confirm it.",
        urgency_level=NotificationPriority.HIGH,
    )


def form_template(provider_name: str, missing: list[str]) -> NotificationTemplate:
    fields = ", ".join(missing) if missing else "a few details"
    return NotificationTemplate(
        type=FORM_COMPLETION,
        title="A few details are needed",
        message=f"{provider_name} needs {fields} before we can finish registering.",
        urgency_level=NotificationPriority.MEDIUM,
    )


def account_template(provider_name: str) -> NotificationTemplate:
    return NotificationTemplate(
        type=ACCOUNT_CREATION,
        title="Create your provider account",
        message=f"{provider_name} requires a parent account. Create one and we'll take it from there.",
        urgency_level=NotificationPriority.MEDIUM,
    )


# =============================================================================
# SERVICE
# =============================================================================


class NotificationService:
    """Delivers parent notifications and drives their escalation timers."""

    def __init__(
        self,
        db: Session,
        delivery: NotificationDelivery,
        jobs: Optional[JobService] = None,
        clock: Callable[[], datetime] = utcnow,
        fallback_delay: timedelta = DEFAULT_FALLBACK_DELAY,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.db = db
        self.delivery = delivery
        self.clock = clock
        self.jobs = jobs or JobService(db, clock=clock)
        self.fallback_delay = fallback_delay
        self.metrics = metrics or get_collector()

    # -------------------------------------------------------------------------
    # Method selection
    # -------------------------------------------------------------------------

    def _opted_out(self, user_id: str) -> set[str]:
        rows = (
            self.db.query(NotificationPreference)
            .filter(
                NotificationPreference.user_id == user_id,
                NotificationPreference.enabled.is_(False),
            )
            .all()
        )
        return {row.method for row in rows}

    def method_performance(self, user_id: str, method: str) -> Optional[float]:
        """Open rate over the parent's last few notifications on ``method``."""
        recent = (
            self.db.query(ParentNotification)
            .filter(
                ParentNotification.user_id == user_id,
                ParentNotification.delivery_method == method,
            )
            .order_by(ParentNotification.created_at.desc(), ParentNotification.id.desc())
            .limit(PERFORMANCE_WINDOW)
            .all()
        )
        if not recent:
            return None
        return sum(1 for n in recent if n.opened_at is not None) / len(recent)

    def select_delivery_method(self, user_id: str, priority: str) -> str:
        """Pick the channel for a new notification."""
        opted_out = self._opted_out(user_id)
        eligible = [m for m in METHODS_BY_PRIORITY[priority] if m not in opted_out]
        if not eligible:
            return DeliveryMethod.IN_APP

        for method in eligible:
            score = self.method_performance(user_id, method)
            if score is None or score >= PERFORMANCE_FLOOR:
                return method
        return eligible[0]

    def set_preference(self, user_id: str, method: str, enabled: bool) -> NotificationPreference:
        pref = (
            self.db.query(NotificationPreference)
            .filter(
                NotificationPreference.user_id == user_id,
                NotificationPreference.method == method,
            )
            .first()
        )
        if pref is None:
            pref = NotificationPreference(user_id=user_id, method=method, enabled=enabled)
            self.db.add(pref)
        else:
            pref.enabled = enabled
        self.db.flush()
        return pref

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    async def _deliver(self, record: ParentNotification, method: str, priority: str) -> bool:
        outbound = OutboundNotification(
            notification_id=record.id,
            user_id=record.user_id,
            method=method,
            title=record.title,
            message=record.message,
            priority=priority,
            action_url=record.action_url,
            metadata=dict(record.metadata_json or {}),
        )
        try:
            await self.delivery.deliver(outbound)
        except DeliveryError as e:
            record.last_error = str(e)
            self.metrics.increment(
                "notifications_delivered_total", labels={"method": method, "result": "failed"}
            )
            logger.warning(
                "Notification delivery failed",
                notification_id=record.id,
                method=method,
                error=str(e),
            )
            return False

        self.metrics.increment(
            "notifications_delivered_total", labels={"method": method, "result": "sent"}
        )
        return True

    async def send_notification(self, options: NotificationOptions) -> ParentNotification:
        """Persist, deliver and schedule escalations for a notification."""
        priority = options.priority
        method = self.select_delivery_method(options.user_id, priority)
        rules = sorted(options.escalation_rules, key=lambda r: r.trigger_after)
        now = self.clock()
        expires_in = options.expires_in or default_expiration(options.template.type, priority)

        record = ParentNotification(
            user_id=options.user_id,
            notification_type=options.template.type,
            title=options.template.title,
            message=options.template.message,
            urgency_level=options.template.urgency_level,
            priority=priority,
            action_url=options.action_url,
            metadata_json=dict(options.metadata),
            escalation_rules_json=[rule.to_dict() for rule in rules],
            delivery_method=method,
            status=NotificationStatus.PENDING,
            created_at=now,
            expires_at=now + expires_in,
        )
        self.db.add(record)
        self.db.flush()

        if await self._deliver(record, method, priority):
            record.status = NotificationStatus.SENT
            record.sent_at = self.clock()
        else:
            record.status = NotificationStatus.FAILED
            self.jobs.schedule(
                SCHEDULER_QUEUE,
                FALLBACK_JOB,
                {"notification_id": record.id, "method": FALLBACK_METHODS[method]},
                run_at=now + self.fallback_delay,
            )

        for index, rule in enumerate(rules):
            self.jobs.schedule(
                SCHEDULER_QUEUE,
                ESCALATE_JOB,
                {"notification_id": record.id, "rule_index": index},
                run_at=now + rule.trigger_after,
            )

        self.db.flush()
        logger.info(
            "Notification sent",
            notification_id=record.id,
            user_id=record.user_id,
            notification_type=record.notification_type,
            method=method,
            status=record.status,
            escalation_rules=len(rules),
        )
        return record

    def get_notification(self, notification_id: int) -> ParentNotification:
        record = self.db.get(ParentNotification, notification_id)
        if record is None:
            raise NotificationNotFoundError(f"Notification {notification_id} not found")
        return record

    def cancel_follow_ups(self, notification_id: int) -> int:
        """Cancel pending escalation and fallback deliveries for a notification."""
        match = {"notification_id": notification_id}
        cancelled = self.jobs.cancel_jobs(ESCALATE_JOB, match)
        cancelled += self.jobs.cancel_jobs(FALLBACK_JOB, match)
        if cancelled:
            logger.info(
                "Notification follow-ups cancelled",
                notification_id=notification_id,
                cancelled=cancelled,
            )
        return cancelled

    def _still_actionable(self, record: ParentNotification) -> bool:
        if record.opened_at is not None:
            return False
        if record.expires_at is not None and self.clock() >= record.expires_at:
            return False
        return True

    async def fire_escalation(self, notification_id: int, rule_index: int) -> bool:
        """Run one escalation rule. Returns True when a redelivery happened."""
        record = self.get_notification(notification_id)
        if not self._still_actionable(record):
            logger.debug(
                "Escalation skipped",
                notification_id=notification_id,
                rule_index=rule_index,
                opened=record.opened_at is not None,
            )
            return False

        rule = EscalationRule.from_dict((record.escalation_rules_json or [])[rule_index])
        delivered = await self._deliver(record, rule.method, rule.priority)
        record.escalation_count += 1
        if delivered and record.status in (NotificationStatus.PENDING, NotificationStatus.FAILED):
            record.status = NotificationStatus.SENT
            record.sent_at = self.clock()
        self.db.flush()
        logger.info(
            "Notification escalated",
            notification_id=notification_id,
            rule_index=rule_index,
            method=rule.method,
            priority=rule.priority,
            delivered=delivered,
        )
        return delivered

    async def fire_fallback(self, notification_id: int, method: str) -> bool:
        """Single retry of a failed initial delivery on the fallback channel."""
        record = self.get_notification(notification_id)
        if not self._still_actionable(record):
            return False

        # Fallbacks go out at high priority at least
        priority = (
            record.priority
            if record.priority == NotificationPriority.CRITICAL
            else NotificationPriority.HIGH
        )
        delivered = await self._deliver(record, method, priority)
        if delivered:
            record.status = NotificationStatus.SENT
            record.sent_at = self.clock()
        self.db.flush()
        return delivered

    # -------------------------------------------------------------------------
    # Engagement
    # -------------------------------------------------------------------------

    def record_response(
        self,
        notification_id: int,
        action: str,
        at: Optional[datetime] = None,
    ) -> ParentNotification:
        """Record that the parent opened, clicked or completed a notification.

        Clicking or completing implies opening. Status never moves backwards.

        Raises:
            NotificationNotFoundError: Unknown notification id.
            ValueError: ``action`` is not opened, clicked or completed.
        """
        if action not in (
            NotificationStatus.OPENED,
            NotificationStatus.CLICKED,
            NotificationStatus.COMPLETED,
        ):
            raise ValueError(f"Unknown notification action '{action}'")

        record = self.get_notification(notification_id)
        when = at or self.clock()

        if record.opened_at is None:
            record.opened_at = when
        if action == NotificationStatus.CLICKED and record.clicked_at is None:
            record.clicked_at = when
        if action == NotificationStatus.COMPLETED and record.completed_at is None:
            record.completed_at = when

        if STATUS_RANK[action] > STATUS_RANK[record.status]:
            record.status = action
        self.db.flush()
        return record

    def get_delivery_metrics(
        self,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> DeliveryMetrics:
        query = self.db.query(ParentNotification)
        if user_id:
            query = query.filter(ParentNotification.user_id == user_id)
        if since:
            query = query.filter(ParentNotification.created_at >= since)
        rows = query.all()

        total = len(rows)
        failed = sum(1 for n in rows if n.sent_at is None and n.status == NotificationStatus.FAILED)
        sent = sum(1 for n in rows if n.sent_at is not None)
        opened = sum(1 for n in rows if n.opened_at is not None)
        clicked = sum(1 for n in rows if n.clicked_at is not None)
        completed = sum(1 for n in rows if n.completed_at is not None)
        response_times = [
            (n.opened_at - n.sent_at).total_seconds()
            for n in rows
            if n.opened_at is not None and n.sent_at is not None
        ]

        return DeliveryMetrics(
            total=total,
            sent=sent,
            failed=failed,
            opened=opened,
            clicked=clicked,
            completed=completed,
            delivery_rate=sent / total if total else 0.0,
            engagement_rate=opened / sent if sent else 0.0,
            avg_response_seconds=(
                sum(response_times) / len(response_times) if response_times else None
            ),
        )

    # -------------------------------------------------------------------------
    # Typed senders
    # -------------------------------------------------------------------------

    async def send_captcha_assistance(
        self,
        user_id: str,
        provider_name: str,
        priority: str = NotificationPriority.HIGH,
        action_url: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ParentNotification:
        return await self.send_notification(
            NotificationOptions(
                user_id=user_id,
                template=captcha_template(provider_name, priority),
                priority=priority,
                action_url=action_url,
                escalation_rules=list(CAPTCHA_ESCALATION_RULES[priority]),
                metadata=metadata or {},
            )
        )

    async def send_payment_authorization(
        self,
        user_id: str,
        provider_name: str,
        amount: Optional[str] = None,
        action_url: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ParentNotification:
        return await self.send_notification(
            NotificationOptions(
                user_id=user_id,
                template=payment_template(provider_name, amount),
                priority=NotificationPriority.HIGH,
                action_url=action_url,
                escalation_rules=list(PAYMENT_ESCALATION_RULES),
                metadata=metadata or {},
            )
        )

    async def send_form_assistance(
        self,
        user_id: str,
        provider_name: str,
        missing_fields: Optional[list[str]] = None,
        priority: str = NotificationPriority.MEDIUM,
        action_url: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ParentNotification:
        return await self.send_notification(
            NotificationOptions(
                user_id=user_id,
                template=form_template(provider_name, missing_fields or []),
                priority=priority,
                action_url=action_url,
                escalation_rules=list(DEFAULT_ESCALATION_RULES[priority]),
                metadata=metadata or {},
            )
        )

    async def send_account_assistance(
        self,
        user_id: str,
        provider_name: str,
        priority: str = NotificationPriority.MEDIUM,
        action_url: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ParentNotification:
        return await self.send_notification(
            NotificationOptions(
                user_id=user_id,
                template=account_template(provider_name),
                priority=priority,
                action_url=action_url,
                escalation_rules=list(DEFAULT_ESCALATION_RULES[priority]),
                metadata=metadata or {},
            )
        )

    async def notify_assistance_needed(
        self,
        user_id: str,
        request_type: str,
        priority: str,
        context: dict[str, Any],
        action_url: Optional[str] = None,
    ) -> ParentNotification:
        """Route an assistance request to the matching typed sender."""
        provider_name = context.get("provider_name") or context.get("hostname") or "The camp"
        metadata = {"request_id": context.get("request_id"), "request_type": request_type}

        if request_type == AssistanceType.CAPTCHA:
            return await self.send_captcha_assistance(
                user_id, provider_name, priority, action_url, metadata
            )
        if request_type == AssistanceType.PAYMENT:
            return await self.send_payment_authorization(
                user_id, provider_name, context.get("amount"), action_url, metadata
            )
        if request_type == AssistanceType.ACCOUNT_CREATION:
            return await self.send_account_assistance(
                user_id, provider_name, priority, action_url, metadata
            )
        return await self.send_form_assistance(
            user_id, provider_name, context.get("missing_fields"), priority, action_url, metadata
        )
