"""Domain models for the camp signup core.

SQLAlchemy ORM models for everything the orchestration core persists:
provider profiles, per-hostname trust records, assistance workflows,
parent notifications, registration locks, vault secrets, the audit log
and the scheduled-job ledger. All timestamps are naive UTC.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


# =============================================================================
# ENUMS
# =============================================================================


class LoginType(str):
    """How a provider authenticates parents."""

    NONE = "none"
    EMAIL_PASSWORD = "email_password"
    ACCOUNT_REQUIRED = "account_required"


class ComplianceStatus(str):
    """Terms-of-service classification of a provider hostname."""

    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


class RelationshipStatus(str):
    """Business relationship tier with a provider."""

    PARTNER = "partner"
    NEUTRAL = "neutral"
    RESTRICTED = "restricted"


class WorkflowStatus(str):
    """Assistance workflow lifecycle values."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class AssistanceType(str):
    """Kinds of human input a registration run can block on."""

    ACCOUNT_CREATION = "account_creation"
    CAPTCHA = "captcha"
    PAYMENT = "payment"
    FORM_COMPLETION = "form_completion"


class AssistanceStatus(str):
    """Assistance request state machine values."""

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class AssistancePriority(str):
    """Assistance request priority values."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class NotificationPriority(str):
    """Notification urgency values."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DeliveryMethod(str):
    """Notification delivery channels."""

    SMS = "sms"
    EMAIL = "email"
    PUSH = "push"
    IN_APP = "in_app"


class NotificationStatus(str):
    """Notification delivery/engagement values."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    OPENED = "opened"
    CLICKED = "clicked"
    COMPLETED = "completed"


class JobStatus(str):
    """Job status values."""

    QUEUED = "queued"
    RUNNING = "running"
    RETRYING = "retrying"
    FAILED = "failed"
    DONE = "done"
    CANCELLED = "cancelled"


class AuditActor(str):
    """Audit actor values."""

    SYSTEM = "system"
    PARENT = "parent"
    ADAPTER = "adapter"


class AuditResult(str):
    """Audit result values."""

    OK = "ok"
    DENIED = "denied"
    ERROR = "error"


_PRIORITY_ENUM = ("low", "medium", "high", "critical")


# =============================================================================
# PROVIDERS
# =============================================================================


class ProviderProfileRecord(Base):
    """Platform routing rule: which hostnames belong to which registration system."""

    __tablename__ = "provider_profiles"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    platform: Mapped[str] = mapped_column(String(64), nullable=False)
    # List of glob strings, '*' is the only wildcard
    domain_patterns: Mapped[list] = mapped_column(JSON, nullable=False)
    login_type: Mapped[str] = mapped_column(
        Enum("none", "email_password", "account_required", name="login_type_enum"),
        nullable=False,
        default=LoginType.NONE,
    )
    captcha_expected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class ProviderTrustRecord(Base):
    """Per-hostname compliance, capability and performance record."""

    __tablename__ = "provider_trust"

    hostname: Mapped[str] = mapped_column(String(255), primary_key=True)
    compliance_status: Mapped[str] = mapped_column(
        Enum("green", "yellow", "red", name="compliance_status_enum"),
        nullable=False,
        default=ComplianceStatus.YELLOW,
    )
    relationship_status: Mapped[str] = mapped_column(
        Enum("partner", "neutral", "restricted", name="relationship_status_enum"),
        nullable=False,
        default=RelationshipStatus.NEUTRAL,
    )

    # Capability flags
    can_automate_forms: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    can_prevent_captcha: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_manage_queue: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_process_payment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Rolling metrics
    success_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.85)
    avg_response_ms: Mapped[float] = mapped_column(Float, nullable=False, default=2000.0)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Adapter configuration derived from metrics
    retry_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    max_concurrent: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    aggressive_polling: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    preemptive_actions: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.6)
    last_analyzed: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    last_compliance_check: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )


class ProviderPartnership(Base):
    """Contractual relationship with a provider organization."""

    __tablename__ = "provider_partnerships"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    hostname: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    # active | restricted | pending | ended
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


# =============================================================================
# ASSISTANCE WORKFLOWS
# =============================================================================


class AssistanceWorkflow(Base):
    """One run's queue of human-assistance requests."""

    __tablename__ = "assistance_workflows"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    registration_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(
        Enum(
            "pending", "running", "paused", "stopped", "completed", "abandoned",
            name="workflow_status_enum",
        ),
        nullable=False,
        default=WorkflowStatus.PENDING,
    )
    # Orchestrator state needed to continue the run once the parent is done
    resume_state_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    requests: Mapped[list["AssistanceRequestRecord"]] = relationship(
        back_populates="workflow",
        order_by="AssistanceRequestRecord.position",
    )

    __table_args__ = (
        Index("idx_workflow_registration", "registration_id", "status"),
    )


class AssistanceRequestRecord(Base):
    """A unit of required parent input. Never deleted, only terminal-stated."""

    __tablename__ = "assistance_requests"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    workflow_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("assistance_workflows.id"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    request_type: Mapped[str] = mapped_column(
        Enum(
            "account_creation", "captcha", "payment", "form_completion",
            name="assistance_type_enum",
        ),
        nullable=False,
    )
    stage: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    status: Mapped[str] = mapped_column(
        Enum(
            "queued", "active", "completed", "failed", "paused",
            name="assistance_status_enum",
        ),
        nullable=False,
        default=AssistanceStatus.QUEUED,
    )
    priority: Mapped[str] = mapped_column(
        Enum("low", "medium", "high", name="assistance_priority_enum"),
        nullable=False,
        default=AssistancePriority.MEDIUM,
    )
    context_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    # Minutes
    estimated_duration: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    actual_duration: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    parent_response_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    notification_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    workflow: Mapped["AssistanceWorkflow"] = relationship(back_populates="requests")

    __table_args__ = (
        UniqueConstraint("workflow_id", "position", name="uq_request_position"),
        Index("idx_request_status", "workflow_id", "status"),
    )


# =============================================================================
# NOTIFICATIONS
# =============================================================================


class ParentNotification(Base):
    """A request for parent attention and its delivery/engagement timeline.

    Content columns (type, title, message, priority, action_url, rules) are
    written once at creation; only the timeline columns change afterwards.
    """

    __tablename__ = "parent_notifications"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    urgency_level: Mapped[str] = mapped_column(
        Enum(*_PRIORITY_ENUM, name="notification_urgency_enum"), nullable=False
    )
    priority: Mapped[str] = mapped_column(
        Enum(*_PRIORITY_ENUM, name="notification_priority_enum"), nullable=False
    )
    action_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    metadata_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    escalation_rules_json: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    delivery_method: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        Enum(
            "pending", "sent", "failed", "opened", "clicked", "completed",
            name="notification_status_enum",
        ),
        nullable=False,
        default=NotificationStatus.PENDING,
    )
    escalation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    opened_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    clicked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_notification_user_method", "user_id", "delivery_method", "created_at"),
    )


class NotificationPreference(Base):
    """Per-user channel opt-in/opt-out."""

    __tablename__ = "notification_preferences"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    method: Mapped[str] = mapped_column(String(16), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("user_id", "method", name="uq_notification_preference"),
    )


# =============================================================================
# RUN COORDINATION
# =============================================================================


class RegistrationLock(Base):
    """Mutual-exclusion record for one registration run."""

    __tablename__ = "registration_locks"

    registration_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    locked_by: Mapped[str] = mapped_column(String(128), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (Index("idx_lock_expires", "expires_at"),)


class VaultSecret(Base):
    """Encrypted secret addressed by an opaque reference."""

    __tablename__ = "vault_secrets"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    ref: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    secret_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    rotated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (Index("idx_vault_user", "user_id", "kind"),)


class AuditLog(Base):
    """Append-only audit log."""

    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    ts: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    actor: Mapped[str] = mapped_column(
        Enum("system", "parent", "adapter", name="audit_actor_enum"), nullable=False
    )
    action_type: Mapped[str] = mapped_column(String(128), nullable=False)

    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    hostname: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    entity_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    entity_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    request_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    response_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    result: Mapped[str] = mapped_column(
        Enum("ok", "denied", "error", name="audit_result_enum"), nullable=False
    )
    error_detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_audit_ts", "ts"),
        Index("idx_audit_action", "action_type"),
        Index("idx_audit_hostname", "hostname"),
    )


class Job(Base):
    """Durable scheduled work: escalations, fallbacks, workflow advancement."""

    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    queue_name: Mapped[str] = mapped_column(String(64), nullable=False)
    job_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload_json: Mapped[dict] = mapped_column(JSON, nullable=False)

    status: Mapped[str] = mapped_column(
        Enum("queued", "running", "retrying", "failed", "done", "cancelled", name="job_status_enum"),
        nullable=False,
        default=JobStatus.QUEUED,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    next_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    dedupe_key: Mapped[Optional[str]] = mapped_column(String(256), nullable=True, unique=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (Index("idx_jobs_status", "status", "next_run_at"),)
