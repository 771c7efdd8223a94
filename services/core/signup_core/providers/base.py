"""Provider adapter contract and lifecycle DTOs.

Every registration platform is driven through the same four stages:

- precheck: read-only validation of the context (URL shape, vault
  references, required child fields)
- find_sessions: discovery of registrable sessions, filtered and ranked
  against the parent's intent
- reserve: the multi-step seat reservation
- finalize_payment: idempotent payment/confirmation

Stage results are tagged unions so illegal combinations (a successful
reservation that also needs a CAPTCHA) cannot be expressed:

- ReserveResult = Reserved | ReserveWaitlisted | NeedsCaptcha | ReserveFailed
- FinalizeResult = Finalized | FinalizeWaitlisted | FinalizeFailed

Adapters never raise for expected failures. Remote errors are converted to
the failure variant with a reason a parent can read, and
``fixable_by_parent`` tells the assistance layer whether asking the parent
can help.

Usage:
    class JackrabbitAdapter(ProviderAdapter):
        @property
        def platform(self) -> str:
            return Platform.JACKRABBIT_CLASS

        async def precheck(self, ctx: ProviderContext) -> PrecheckResult:
            ...
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, ClassVar, Optional, Protocol, Union
from urllib.parse import urlparse

from signup_core.domain.week_matcher import DEFAULT_TIMEZONE, rank_candidates, to_zoned


# =============================================================================
# ENUMS
# =============================================================================


class Platform(str, Enum):
    """Registration systems the core knows how to route to."""

    JACKRABBIT_CLASS = "jackrabbit_class"
    DAYSMART_RECREATION = "daysmart_recreation"
    SHOPIFY_PRODUCT = "shopify_product"
    PLAYMETRICS = "playmetrics"


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass(frozen=True)
class ProviderProfile:
    """Routing rule mapping hostnames to a registration platform."""

    platform: str
    domain_patterns: tuple[str, ...]
    login_type: str = "none"
    captcha_expected: bool = False


@dataclass(frozen=True)
class AdapterConfig:
    """Per-hostname tuning handed to adapters, derived from trust metrics."""

    retry_attempts: int = 3
    timeout_seconds: int = 30
    max_concurrent: int = 3
    aggressive_polling: bool = False
    preemptive_actions: bool = False


@dataclass
class ProviderContext:
    """Everything an adapter knows about the registration it is driving.

    ``child_token`` and the values of ``metadata["vault"]`` are vault
    references, never raw PII or secrets.
    """

    canonical_url: str
    user_id: str
    session_id: str
    child_token: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    registration_id: Optional[str] = None
    config: AdapterConfig = field(default_factory=AdapterConfig)

    @property
    def hostname(self) -> str:
        return (urlparse(self.canonical_url).hostname or "").lower()

    @property
    def registration_key(self) -> str:
        """Key used for the registration lock and workflow lookup."""
        if self.registration_id:
            return self.registration_id
        return f"{self.user_id}:{self.session_id}:{self.canonical_url}"

    @property
    def timezone(self) -> str:
        return self.metadata.get("timezone") or DEFAULT_TIMEZONE

    def vault_ref(self, name: str) -> Optional[str]:
        return (self.metadata.get("vault") or {}).get(name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "canonical_url": self.canonical_url,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "child_token": self.child_token,
            "metadata": self.metadata,
            "registration_id": self.registration_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProviderContext":
        return cls(
            canonical_url=data["canonical_url"],
            user_id=data["user_id"],
            session_id=data["session_id"],
            child_token=data.get("child_token"),
            metadata=data.get("metadata") or {},
            registration_id=data.get("registration_id"),
        )


@dataclass
class ProviderIntent:
    """What the parent is looking for. An empty intent means "everything, unranked"."""

    date: Union[str, date, None] = None
    title_contains: Optional[str] = None
    location: Optional[str] = None
    quantity: Optional[int] = None
    priority: bool = False

    @property
    def is_empty(self) -> bool:
        return (
            self.date is None
            and not self.title_contains
            and not self.location
            and self.quantity is None
            and not self.priority
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat() if isinstance(self.date, date) else self.date,
            "title_contains": self.title_contains,
            "location": self.location,
            "quantity": self.quantity,
            "priority": self.priority,
        }


@dataclass(frozen=True)
class ProviderSessionCandidate:
    """A discovered, not-yet-reserved registration slot.

    ``capacity`` is None when unknown and 0 when full. ``provider_id`` is
    filled in with the provider's confirmation id once reserved.
    """

    id: str
    url: str
    title: str
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    capacity: Optional[int] = None
    provider_id: Optional[str] = None

    def with_provider_id(self, provider_id: str) -> "ProviderSessionCandidate":
        return replace(self, provider_id=provider_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "start_at": self.start_at.isoformat() if self.start_at else None,
            "end_at": self.end_at.isoformat() if self.end_at else None,
            "capacity": self.capacity,
            "provider_id": self.provider_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProviderSessionCandidate":
        return cls(
            id=data["id"],
            url=data["url"],
            title=data["title"],
            start_at=datetime.fromisoformat(data["start_at"]) if data.get("start_at") else None,
            end_at=datetime.fromisoformat(data["end_at"]) if data.get("end_at") else None,
            capacity=data.get("capacity"),
            provider_id=data.get("provider_id"),
        )


@dataclass(frozen=True)
class PrecheckResult:
    ok: bool
    reason: Optional[str] = None
    fixable_by_parent: bool = False

    @classmethod
    def passed(cls) -> "PrecheckResult":
        return cls(ok=True)

    @classmethod
    def failed(cls, reason: str, fixable_by_parent: bool = True) -> "PrecheckResult":
        return cls(ok=False, reason=reason, fixable_by_parent=fixable_by_parent)


# =============================================================================
# RESERVE RESULTS
# =============================================================================


@dataclass(frozen=True)
class Reserved:
    """Seat held; ``candidate.provider_id`` carries the provider's confirmation id."""

    candidate: ProviderSessionCandidate
    outcome: ClassVar[str] = "reserved"
    success: ClassVar[bool] = True


@dataclass(frozen=True)
class ReserveWaitlisted:
    candidate: ProviderSessionCandidate
    position: Optional[int] = None
    outcome: ClassVar[str] = "waitlisted"
    success: ClassVar[bool] = False


@dataclass(frozen=True)
class NeedsCaptcha:
    """Provider demanded human verification before accepting the enrollment.

    ``provider`` names the verification system (recaptcha, hcaptcha, ...),
    ``challenge`` carries whatever a solver or the parent needs to answer it.
    """

    provider: str
    challenge: dict[str, Any] = field(default_factory=dict)
    outcome: ClassVar[str] = "needs_captcha"
    success: ClassVar[bool] = False


@dataclass(frozen=True)
class ReserveFailed:
    reason: str
    fixable_by_parent: bool = False
    outcome: ClassVar[str] = "failed"
    success: ClassVar[bool] = False


ReserveResult = Union[Reserved, ReserveWaitlisted, NeedsCaptcha, ReserveFailed]


# =============================================================================
# FINALIZE RESULTS
# =============================================================================


@dataclass(frozen=True)
class Finalized:
    confirmation_id: str
    provider_collects_payment: bool = False
    amount_charged_cents: int = 0
    outcome: ClassVar[str] = "finalized"
    success: ClassVar[bool] = True


@dataclass(frozen=True)
class FinalizeWaitlisted:
    """Provider deferred confirmation."""

    reason: Optional[str] = None
    outcome: ClassVar[str] = "waitlisted"
    success: ClassVar[bool] = False


@dataclass(frozen=True)
class FinalizeFailed:
    error: str
    fixable_by_parent: bool = False
    outcome: ClassVar[str] = "failed"
    success: ClassVar[bool] = False


FinalizeResult = Union[Finalized, FinalizeWaitlisted, FinalizeFailed]


# =============================================================================
# COLLABORATORS
# =============================================================================


class SecretResolver(Protocol):
    """Read-only view of the vault handed to adapters."""

    def exists(self, ref: Optional[str]) -> bool: ...

    def resolve_json(self, ref: str) -> dict[str, Any]: ...


class ServiceFeeCharger(Protocol):
    """Charges the internal service fee when the provider collects its own price."""

    async def charge_service_fee(self, user_id: str, idempotency_key: str) -> str: ...


def apply_intent(
    candidates: list[ProviderSessionCandidate],
    intent: Optional[ProviderIntent],
    tz: str = DEFAULT_TIMEZONE,
) -> list[ProviderSessionCandidate]:
    """Filter by ``title_contains`` then rank by ``date``, as every adapter must."""
    if intent is None:
        return list(candidates)

    result = list(candidates)
    if intent.title_contains:
        needle = intent.title_contains.lower()
        result = [c for c in result if needle in (c.title or "").lower()]
    if intent.date:
        result = rank_candidates(result, intent.date, tz)
    return result


def parse_provider_time(
    day: Optional[str], clock: Optional[str] = None, tz: str = DEFAULT_TIMEZONE
) -> Optional[datetime]:
    """Combine a provider's separate date and time strings into an aware datetime."""
    if not day:
        return None
    text = f"{day}T{clock}" if clock else day
    return to_zoned(text, tz)


# =============================================================================
# PROVIDER ADAPTER INTERFACE
# =============================================================================


class ProviderAdapter(ABC):
    """Abstract base class for registration platform adapters.

    Adapters must hold no per-registration state: one instance serves
    concurrent contexts.
    """

    @property
    @abstractmethod
    def platform(self) -> str:
        """Return the platform tag this adapter drives (e.g. 'jackrabbit_class')."""
        ...

    @abstractmethod
    async def precheck(self, ctx: ProviderContext) -> PrecheckResult:
        """Validate preconditions without network calls or side effects."""
        ...

    @abstractmethod
    async def find_sessions(
        self,
        ctx: ProviderContext,
        intent: Optional[ProviderIntent] = None,
    ) -> list[ProviderSessionCandidate]:
        """Discover sessions, then filter and rank them against ``intent``.

        Returns an empty list, not an error, when nothing matches.
        """
        ...

    @abstractmethod
    async def reserve(
        self,
        ctx: ProviderContext,
        candidate: ProviderSessionCandidate,
    ) -> ReserveResult:
        """Reserve a seat for ``candidate``."""
        ...

    @abstractmethod
    async def finalize_payment(
        self,
        ctx: ProviderContext,
        candidate: ProviderSessionCandidate,
    ) -> FinalizeResult:
        """Settle payment for a reserved candidate.

        Must be idempotent: calling it again for an already-finalized
        candidate returns the same confirmation without charging twice.
        """
        ...


class UnsupportedPlatformAdapter(ProviderAdapter):
    """Stand-in for platforms that are recognized but not yet automated."""

    def __init__(self, platform: str):
        self._platform = platform

    @property
    def platform(self) -> str:
        return self._platform

    def _reason(self) -> str:
        return f"Automation for platform '{self._platform}' is not implemented"

    async def precheck(self, ctx: ProviderContext) -> PrecheckResult:
        return PrecheckResult.failed(self._reason(), fixable_by_parent=False)

    async def find_sessions(self, ctx, intent=None) -> list[ProviderSessionCandidate]:
        return []

    async def reserve(self, ctx, candidate) -> ReserveResult:
        return ReserveFailed(self._reason())

    async def finalize_payment(self, ctx, candidate) -> FinalizeResult:
        return FinalizeFailed(self._reason())
