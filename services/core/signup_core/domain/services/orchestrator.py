"""Registration orchestrator.

Drives one registration through the provider pipeline::

    unresolved-assistance check -> detect platform -> terms/consent gate
    -> form automation gate -> precheck -> find_sessions
    -> registration lock -> reserve -> payment gate -> finalize_payment

Every adapter result is a structured variant and maps onto one
``OutcomeStatus``. Anything the adapter raises is treated as a bug: it is
logged with ``event="adapter_bug"`` and reported as ``adapter_error``,
separately from expected failures.

When the run needs the parent (a CAPTCHA, payment approval, a missing
account or child detail) the orchestrator opens an assistance workflow
holding everything needed to continue, and returns
``awaiting_assistance``. ``resume`` picks the run back up once that
workflow completes.
"""

import time
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from signup_core.domain.models import (
    AssistancePriority,
    AssistanceType,
    LoginType,
    WorkflowStatus,
)
from signup_core.domain.services.assistance_workflow import (
    AssistanceWorkflowService,
    InvalidTransitionError,
    NewAssistanceRequest,
)
from signup_core.domain.services.provider_registry import ProviderRegistry
from signup_core.domain.services.registration_lock import RegistrationLockService
from signup_core.domain.services.trust_gate import AutomationType, ProviderTrustGate
from signup_core.infrastructure.host_throttle import HostThrottle
from signup_core.observability.logging import RunContext, get_logger
from signup_core.observability.metrics import MetricsCollector, get_collector
from signup_core.providers.base import (
    Finalized,
    FinalizeFailed,
    FinalizeWaitlisted,
    NeedsCaptcha,
    ProviderAdapter,
    ProviderContext,
    ProviderIntent,
    ProviderProfile,
    ProviderSessionCandidate,
    Reserved,
    ReserveFailed,
    ReserveWaitlisted,
)
from signup_core.providers.catalog import AdapterCatalog

logger = get_logger(__name__)

STAGE_PRECHECK = "precheck"
STAGE_RESERVE = "reserve"
STAGE_FINALIZE = "finalize"


class OutcomeStatus(str, Enum):
    CONFIRMED = "confirmed"
    WAITLISTED = "waitlisted"
    AWAITING_ASSISTANCE = "awaiting_assistance"
    PRECHECK_FAILED = "precheck_failed"
    NO_SESSIONS = "no_sessions"
    PLATFORM_NOT_RECOGNIZED = "platform_not_recognized"
    NOT_AUTHORIZED = "not_authorized"
    RESERVATION_FAILED = "reservation_failed"
    PAYMENT_FAILED = "payment_failed"
    LOCKED = "locked"
    ADAPTER_ERROR = "adapter_error"


@dataclass
class RegistrationOutcome:
    status: OutcomeStatus
    reason: Optional[str] = None
    fixable_by_parent: bool = False
    profile: Optional[ProviderProfile] = None
    candidate: Optional[ProviderSessionCandidate] = None
    confirmation_id: Optional[str] = None
    workflow_id: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.status == OutcomeStatus.CONFIRMED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "reason": self.reason,
            "fixable_by_parent": self.fixable_by_parent,
            "platform": self.profile.platform if self.profile else None,
            "candidate": self.candidate.to_dict() if self.candidate else None,
            "confirmation_id": self.confirmation_id,
            "workflow_id": self.workflow_id,
        }


class CaptchaSolver(Protocol):
    """Optional verification backend tried before asking the parent."""

    async def solve(self, ctx: ProviderContext, challenge: NeedsCaptcha) -> Optional[str]: ...


class AdapterBug(Exception):
    """An adapter raised instead of returning a structured result."""

    def __init__(self, stage: str, cause: BaseException):
        super().__init__(f"Adapter raised during {stage}: {cause!r}")
        self.stage = stage
        self.cause = cause


@dataclass
class _Run:
    """Per-run state threaded through the pipeline steps."""

    ctx: ProviderContext
    intent: Optional[ProviderIntent]
    accept_waitlist: bool
    profile: ProviderProfile
    adapter: ProviderAdapter
    lock_owner: str
    log: RunContext
    lock_held: bool = False

    def resume_state(self, stage: str, candidate: Optional[ProviderSessionCandidate]) -> dict:
        return {
            "stage": stage,
            "context": self.ctx.to_dict(),
            "intent": self.intent.to_dict() if self.intent else None,
            "candidate": candidate.to_dict() if candidate else None,
            "accept_waitlist": self.accept_waitlist,
            "lock_owner": self.lock_owner,
        }


def _apply_parent_response(ctx: ProviderContext, response: dict[str, Any]) -> ProviderContext:
    """Fold what the parent supplied during assistance back into the context."""
    metadata = dict(ctx.metadata)
    if response.get("vault"):
        metadata["vault"] = {**(metadata.get("vault") or {}), **response["vault"]}
    for key in ("captcha_token", "payment_authorized", "automation_consent"):
        if key in response:
            metadata[key] = response[key]
    child_token = response.get("child_token") or ctx.child_token
    return replace(ctx, metadata=metadata, child_token=child_token)


class RegistrationOrchestrator:
    """Runs the reserve/finalize pipeline for one registration at a time."""

    def __init__(
        self,
        registry: ProviderRegistry,
        catalog: AdapterCatalog,
        trust_gate: ProviderTrustGate,
        workflows: AssistanceWorkflowService,
        locks: RegistrationLockService,
        throttle_factory: Optional[Callable[[str, int], HostThrottle]] = None,
        captcha_solver: Optional[CaptchaSolver] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        """Initialize the orchestrator.

        Args:
            registry: Hostname to platform classification.
            catalog: Platform to adapter lookup.
            trust_gate: Authorizes automation per hostname and records metrics.
            workflows: Assistance workflow engine for parent hand-offs.
            locks: Registration lock store.
            throttle_factory: Builds a per-hostname throttle from
                (hostname, max_concurrent). Without it calls are not throttled.
            captcha_solver: Tried once before a CAPTCHA goes to the parent.
            metrics: Metrics collector (process-wide one by default).
        """
        self.registry = registry
        self.catalog = catalog
        self.trust_gate = trust_gate
        self.workflows = workflows
        self.locks = locks
        self.throttle_factory = throttle_factory
        self.captcha_solver = captcha_solver
        self.metrics = metrics or get_collector()

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def run(
        self,
        ctx: ProviderContext,
        intent: Optional[ProviderIntent] = None,
        accept_waitlist: bool = False,
        lock_owner: Optional[str] = None,
    ) -> RegistrationOutcome:
        """Drive a registration from URL to confirmation or hand-off.

        Raises:
            ProfileLoadError: Provider profiles could not be loaded.
        """
        log = RunContext(
            user_id=ctx.user_id,
            session_id=ctx.session_id,
            registration_id=ctx.registration_key,
            hostname=ctx.hostname,
        )
        with self.metrics.timer("registration_run_seconds"):
            outcome = await self._run(ctx, intent, accept_waitlist, lock_owner, log)
        self._record(outcome, log)
        return outcome

    async def resume(self, workflow_id: int) -> RegistrationOutcome:
        """Continue a run whose assistance workflow has completed.

        Raises:
            WorkflowNotFoundError: Unknown workflow id.
            InvalidTransitionError: The workflow is unresolved or was already resumed.
        """
        workflow = self.workflows.get_workflow(workflow_id)
        if workflow.status != WorkflowStatus.COMPLETED:
            raise InvalidTransitionError(
                f"Workflow {workflow_id} is {workflow.status}, resume needs a completed workflow"
            )
        state = workflow.resume_state_json
        if not state:
            raise InvalidTransitionError(f"Workflow {workflow_id} has nothing to resume")

        ctx = ProviderContext.from_dict(state["context"])
        for request in self.workflows.list_requests(workflow_id):
            ctx = _apply_parent_response(ctx, request.parent_response_json or {})
        intent = ProviderIntent(**state["intent"]) if state.get("intent") else None
        accept_waitlist = bool(state.get("accept_waitlist"))

        log = RunContext(
            user_id=ctx.user_id,
            session_id=ctx.session_id,
            registration_id=ctx.registration_key,
            hostname=ctx.hostname,
            extra={"resumed_workflow_id": workflow_id, "stage": state["stage"]},
        )
        logger.info("Resuming registration", context=log)

        if state["stage"] == STAGE_PRECHECK:
            outcome = await self.run(
                ctx, intent, accept_waitlist, lock_owner=state.get("lock_owner")
            )
        else:
            with self.metrics.timer("registration_run_seconds"):
                outcome = await self._resume_stage(ctx, intent, accept_waitlist, state, log)
            self._record(outcome, log)

        # Cleared only once an outcome exists; a resume that raised stays resumable
        workflow.resume_state_json = None
        self.workflows.db.flush()
        return outcome

    # =========================================================================
    # PIPELINE
    # =========================================================================

    def _record(self, outcome: RegistrationOutcome, log: RunContext) -> None:
        self.metrics.increment(
            "registration_runs_total", labels={"outcome": outcome.status.value}
        )
        if outcome.status == OutcomeStatus.ADAPTER_ERROR:
            return
        logger.info(
            "Registration run finished",
            context=log,
            outcome=outcome.status.value,
            reason=outcome.reason,
            workflow_id=outcome.workflow_id,
        )

    async def _run(
        self,
        ctx: ProviderContext,
        intent: Optional[ProviderIntent],
        accept_waitlist: bool,
        lock_owner: Optional[str],
        log: RunContext,
    ) -> RegistrationOutcome:
        blocking = self.workflows.find_unresolved(ctx.registration_key)
        if blocking is not None:
            return RegistrationOutcome(
                OutcomeStatus.AWAITING_ASSISTANCE,
                reason="Waiting for the parent to finish a pending assistance request",
                fixable_by_parent=True,
                workflow_id=blocking.id,
            )

        profile = self.registry.detect_platform(ctx.canonical_url)
        if profile is None:
            return RegistrationOutcome(
                OutcomeStatus.PLATFORM_NOT_RECOGNIZED,
                reason=f"No registration platform recognized for {ctx.hostname or ctx.canonical_url}",
            )
        log.platform = profile.platform

        denial = self._authorize(ctx, profile)
        if denial is not None:
            return denial

        ctx = replace(ctx, config=self.trust_gate.get_provider_config(ctx.canonical_url))
        run = _Run(
            ctx=ctx,
            intent=intent,
            accept_waitlist=accept_waitlist,
            profile=profile,
            adapter=self.catalog.get(profile.platform),
            lock_owner=lock_owner or uuid.uuid4().hex,
            log=log,
        )

        try:
            precheck = await self._call(run, STAGE_PRECHECK, run.adapter.precheck(ctx))
            if not precheck.ok:
                if precheck.fixable_by_parent:
                    return await self._precheck_hand_off(run, precheck.reason)
                return RegistrationOutcome(
                    OutcomeStatus.PRECHECK_FAILED,
                    reason=precheck.reason,
                    profile=profile,
                )

            candidates = await self._call(run, "find_sessions", run.adapter.find_sessions(ctx, intent))
            if not candidates:
                return RegistrationOutcome(
                    OutcomeStatus.NO_SESSIONS,
                    reason="No sessions matched the request",
                    profile=profile,
                )

            candidate = candidates[0]
            if not self._acquire(run):
                return RegistrationOutcome(
                    OutcomeStatus.LOCKED,
                    reason="Another run is already registering this child",
                    profile=profile,
                    candidate=candidate,
                )
            return await self._reserve(run, candidate)

        except AdapterBug as bug:
            return self._adapter_error(run, bug)

    async def _resume_stage(
        self,
        ctx: ProviderContext,
        intent: Optional[ProviderIntent],
        accept_waitlist: bool,
        state: dict[str, Any],
        log: RunContext,
    ) -> RegistrationOutcome:
        profile = self.registry.detect_platform(ctx.canonical_url)
        if profile is None:
            return RegistrationOutcome(
                OutcomeStatus.PLATFORM_NOT_RECOGNIZED,
                reason=f"No registration platform recognized for {ctx.hostname}",
            )
        log.platform = profile.platform

        ctx = replace(ctx, config=self.trust_gate.get_provider_config(ctx.canonical_url))
        run = _Run(
            ctx=ctx,
            intent=intent,
            accept_waitlist=accept_waitlist,
            profile=profile,
            adapter=self.catalog.get(profile.platform),
            lock_owner=state.get("lock_owner") or uuid.uuid4().hex,
            log=log,
        )
        candidate = ProviderSessionCandidate.from_dict(state["candidate"])

        if not self._acquire(run):
            return RegistrationOutcome(
                OutcomeStatus.LOCKED,
                reason="Another run is already registering this child",
                profile=profile,
                candidate=candidate,
            )

        try:
            if state["stage"] == STAGE_FINALIZE:
                return await self._finalize(run, candidate)
            return await self._reserve(run, candidate, solver_tried=True)
        except AdapterBug as bug:
            return self._adapter_error(run, bug)

    def _authorize(
        self, ctx: ProviderContext, profile: ProviderProfile
    ) -> Optional[RegistrationOutcome]:
        tos = self.trust_gate.check_tos(ctx.canonical_url, user_id=ctx.user_id)
        if not tos.can_proceed:
            return RegistrationOutcome(
                OutcomeStatus.NOT_AUTHORIZED,
                reason=tos.parent_explanation,
                profile=profile,
            )
        if tos.requires_consent and not ctx.metadata.get("automation_consent"):
            return RegistrationOutcome(
                OutcomeStatus.NOT_AUTHORIZED,
                reason="Parent consent is required before registering on this site",
                fixable_by_parent=True,
                profile=profile,
            )

        decision = self.trust_gate.is_automation_allowed(
            ctx.canonical_url, AutomationType.FORM_FILL, user_id=ctx.user_id
        )
        if not decision.allowed:
            return RegistrationOutcome(
                OutcomeStatus.NOT_AUTHORIZED,
                reason=decision.reason,
                profile=profile,
            )
        return None

    # =========================================================================
    # STEPS
    # =========================================================================

    async def _call(self, run: _Run, stage: str, pending: Awaitable[Any]) -> Any:
        try:
            return await pending
        except Exception as e:
            logger.error(
                "Adapter raised instead of returning a result",
                context=run.log,
                exc_info=True,
                event="adapter_bug",
                stage=stage,
                platform=run.profile.platform,
            )
            raise AdapterBug(stage, e) from e

    async def _measured(
        self, run: _Run, stage: str, call: Callable[[], Awaitable[Any]]
    ) -> Any:
        """Run a reserve/finalize call under the host throttle and record its metrics."""
        started = time.monotonic()
        if self.throttle_factory is not None:
            throttle = self.throttle_factory(run.ctx.hostname, run.ctx.config.max_concurrent)
            async with throttle:
                result = await self._call(run, stage, call())
        else:
            result = await self._call(run, stage, call())

        elapsed_ms = (time.monotonic() - started) * 1000
        failed = isinstance(result, (ReserveFailed, FinalizeFailed))
        self.trust_gate.record_attempt(run.ctx.canonical_url, not failed, elapsed_ms)
        return result

    def _acquire(self, run: _Run) -> bool:
        run.lock_held = self.locks.acquire(run.ctx.registration_key, run.lock_owner)
        return run.lock_held

    def _release(self, run: _Run) -> None:
        if run.lock_held:
            self.locks.release(run.ctx.registration_key, run.lock_owner)
            run.lock_held = False

    def _adapter_error(self, run: _Run, bug: AdapterBug) -> RegistrationOutcome:
        self._release(run)
        return RegistrationOutcome(
            OutcomeStatus.ADAPTER_ERROR,
            reason=f"Internal error during {bug.stage}",
            profile=run.profile,
        )

    async def _reserve(
        self,
        run: _Run,
        candidate: ProviderSessionCandidate,
        solver_tried: bool = False,
    ) -> RegistrationOutcome:
        result = await self._measured(
            run, STAGE_RESERVE, lambda: run.adapter.reserve(run.ctx, candidate)
        )
        logger.info("Reserve finished", context=run.log, result=result.outcome)

        if isinstance(result, Reserved):
            return await self._finalize(run, result.candidate)

        if isinstance(result, ReserveWaitlisted):
            if run.accept_waitlist and result.candidate.provider_id:
                return await self._finalize(run, result.candidate)
            self._release(run)
            return RegistrationOutcome(
                OutcomeStatus.WAITLISTED,
                reason="Session is full; the child was placed on the waitlist",
                profile=run.profile,
                candidate=result.candidate,
            )

        if isinstance(result, NeedsCaptcha):
            answer = None
            if not solver_tried:
                answer = await self._try_solver(run, result)
            if answer:
                run.ctx = replace(run.ctx, metadata={**run.ctx.metadata, "captcha_token": answer})
                return await self._reserve(run, candidate, solver_tried=True)
            return await self._hand_off(
                run,
                AssistanceType.CAPTCHA,
                AssistancePriority.HIGH,
                stage=STAGE_RESERVE,
                candidate=candidate,
                context={
                    "captcha_provider": result.provider,
                    "challenge": result.challenge,
                    "candidate_title": candidate.title,
                },
                reason=f"Provider requires human verification ({result.provider})",
            )

        self._release(run)
        return RegistrationOutcome(
            OutcomeStatus.RESERVATION_FAILED,
            reason=result.reason,
            fixable_by_parent=result.fixable_by_parent,
            profile=run.profile,
            candidate=candidate,
        )

    async def _try_solver(self, run: _Run, challenge: NeedsCaptcha) -> Optional[str]:
        if self.captcha_solver is None:
            return None
        decision = self.trust_gate.is_automation_allowed(
            run.ctx.canonical_url, AutomationType.CAPTCHA, user_id=run.ctx.user_id
        )
        if not decision.allowed:
            return None
        try:
            return await self.captcha_solver.solve(run.ctx, challenge)
        except Exception:
            logger.warning(
                "CAPTCHA solver failed, escalating to parent",
                context=run.log,
                exc_info=True,
                captcha_provider=challenge.provider,
            )
            return None

    async def _finalize(
        self, run: _Run, candidate: ProviderSessionCandidate
    ) -> RegistrationOutcome:
        decision = self.trust_gate.is_automation_allowed(
            run.ctx.canonical_url, AutomationType.PAYMENT, user_id=run.ctx.user_id
        )
        if not decision.allowed and not run.ctx.metadata.get("payment_authorized"):
            return await self._hand_off(
                run,
                AssistanceType.PAYMENT,
                AssistancePriority.HIGH,
                stage=STAGE_FINALIZE,
                candidate=candidate,
                context={"candidate_title": candidate.title, "amount": run.ctx.metadata.get("amount")},
                reason="Seat reserved; waiting for the parent to approve payment",
            )

        result = await self._measured(
            run, STAGE_FINALIZE, lambda: run.adapter.finalize_payment(run.ctx, candidate)
        )
        self._release(run)

        if isinstance(result, Finalized):
            return RegistrationOutcome(
                OutcomeStatus.CONFIRMED,
                profile=run.profile,
                candidate=candidate,
                confirmation_id=result.confirmation_id,
            )
        if isinstance(result, FinalizeWaitlisted):
            return RegistrationOutcome(
                OutcomeStatus.WAITLISTED,
                reason=result.reason or "Provider has not confirmed the enrollment yet",
                profile=run.profile,
                candidate=candidate,
            )
        return RegistrationOutcome(
            OutcomeStatus.PAYMENT_FAILED,
            reason=result.error,
            fixable_by_parent=result.fixable_by_parent,
            profile=run.profile,
            candidate=candidate,
        )

    async def _precheck_hand_off(self, run: _Run, reason: Optional[str]) -> RegistrationOutcome:
        needs_account = (
            run.profile.login_type == LoginType.ACCOUNT_REQUIRED
            and not run.ctx.vault_ref("login")
        )
        return await self._hand_off(
            run,
            AssistanceType.ACCOUNT_CREATION if needs_account else AssistanceType.FORM_COMPLETION,
            AssistancePriority.MEDIUM,
            stage=STAGE_PRECHECK,
            candidate=None,
            context={"precheck_reason": reason},
            reason=reason,
        )

    async def _hand_off(
        self,
        run: _Run,
        request_type: str,
        priority: str,
        stage: str,
        candidate: Optional[ProviderSessionCandidate],
        context: dict[str, Any],
        reason: Optional[str],
    ) -> RegistrationOutcome:
        """Open an assistance workflow and park the run until it resolves."""
        workflow = self.workflows.create_workflow(
            user_id=run.ctx.user_id,
            registration_id=run.ctx.registration_key,
            requests=[
                NewAssistanceRequest(
                    request_type=request_type,
                    stage=stage,
                    priority=priority,
                    context={
                        "hostname": run.ctx.hostname,
                        "provider_name": run.ctx.metadata.get("provider_name") or run.ctx.hostname,
                        "platform": run.profile.platform,
                        **context,
                    },
                )
            ],
            resume_state=run.resume_state(stage, candidate),
        )
        await self.workflows.start(workflow.id)
        logger.info(
            "Registration handed off to parent",
            context=run.log,
            workflow_id=workflow.id,
            request_type=request_type,
            stage=stage,
        )
        return RegistrationOutcome(
            OutcomeStatus.AWAITING_ASSISTANCE,
            reason=reason,
            fixable_by_parent=True,
            profile=run.profile,
            candidate=candidate,
            workflow_id=workflow.id,
        )
