"""Unit tests for the registration orchestrator.

Tests cover:
- The CAPTCHA hand-off end to end: notification, escalation timers, the
  held lock, parent completion and scheduled resumption
- Gate outcomes (unrecognized platform, consent, blocked provider)
- Adapter result mapping (no sessions, waitlist, failures, adapter bugs)
- Payment and precheck hand-offs and their resumption
- Registration locks, optional CAPTCHA solver and per-host throttle
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from signup_core.bootstrap import build_services
from signup_core.domain.models import (
    AssistanceStatus,
    AssistanceType,
    JobStatus,
    NotificationStatus,
    ParentNotification,
    ProviderTrustRecord,
    WorkflowStatus,
)
from signup_core.domain.services.assistance_workflow import (
    RESUME_REGISTRATION_JOB,
    InvalidTransitionError,
)
from signup_core.domain.services.notifications import ESCALATE_JOB
from signup_core.domain.services.orchestrator import OutcomeStatus
from signup_core.domain.services.provider_registry import ProfileLoadError
from signup_core.domain.services.trust_gate import TrustCache
from signup_core.observability.metrics import get_collector
from signup_core.providers.base import (
    FinalizeFailed,
    FinalizeWaitlisted,
    NeedsCaptcha,
    PrecheckResult,
    ProviderContext,
    ProviderIntent,
    ReserveFailed,
    ReserveWaitlisted,
)
from signup_core.providers.catalog import AdapterCatalog


JACKRABBIT_URL = "https://app.jackrabbitclass.com/regv2.asp?id=ORG42"
REG = "reg-1"


def make_ctx(url=JACKRABBIT_URL, consent=True, **metadata):
    if consent:
        metadata["automation_consent"] = True
    return ProviderContext(
        canonical_url=url,
        user_id="parent-1",
        session_id="sess-1",
        metadata=metadata,
        registration_id=REG,
    )


INTENT = ProviderIntent(date="2024-06-10")


@pytest.fixture
def orchestrator(services):
    return services.orchestrator


def rebuild(db_session, settings, clock, static_registry, adapter, delivery, **overrides):
    """Service graph with extra wiring (solver, redis, settings overrides)."""
    return build_services(
        db_session,
        settings,
        registry=static_registry,
        trust_cache=TrustCache(clock=clock),
        delivery=delivery,
        catalog=AdapterCatalog([adapter]),
        clock=clock,
        **overrides,
    )


class TestCaptchaHandOff:
    """The reserve-stage CAPTCHA flow from detection to confirmation."""

    async def test_captcha_opens_high_priority_request(
        self, services, orchestrator, scripted_adapter, delivery, db_session, clock
    ):
        scripted_adapter.reserve_results = [NeedsCaptcha(provider="recaptcha")]

        outcome = await orchestrator.run(make_ctx(), INTENT)

        assert outcome.status == OutcomeStatus.AWAITING_ASSISTANCE
        assert outcome.fixable_by_parent is True
        assert outcome.candidate.title == "Robotics Camp - Week 2"

        requests = services.workflows.list_requests(outcome.workflow_id)
        assert len(requests) == 1
        request = requests[0]
        assert request.request_type == AssistanceType.CAPTCHA
        assert request.priority == "high"
        assert request.status == AssistanceStatus.ACTIVE
        assert request.context_json["captcha_provider"] == "recaptcha"

        # The parent is notified before any escalation timer fires
        assert len(delivery.sent) == 1
        notification = db_session.get(ParentNotification, request.notification_id)
        assert notification.status == NotificationStatus.SENT
        escalations = services.jobs.list_jobs(job_type=ESCALATE_JOB)
        assert [job.next_run_at - clock() for job in escalations] == [
            timedelta(minutes=3),
            timedelta(minutes=8),
        ]
        assert all(job.status == JobStatus.QUEUED for job in escalations)

        # The seat stays locked for this run
        assert services.locks.is_locked(REG) is True
        assert scripted_adapter.stages() == ["precheck", "find_sessions", "reserve"]

    async def test_completion_resumes_through_scheduler(
        self, services, orchestrator, scripted_adapter, delivery, partner_jackrabbit, clock
    ):
        scripted_adapter.reserve_results = [NeedsCaptcha(provider="recaptcha")]
        outcome = await orchestrator.run(make_ctx(), INTENT)
        request = services.workflows.list_requests(outcome.workflow_id)[0]

        services.workflows.complete_request(request.id, {"captcha_token": "solved-abc"})
        summary = await services.scheduler.run_due()

        assert summary.job_types == {RESUME_REGISTRATION_JOB: 1}
        assert summary.completed == 1
        assert scripted_adapter.stages() == [
            "precheck", "find_sessions", "reserve", "reserve", "finalize_payment",
        ]
        retried_ctx = scripted_adapter.calls[3][1]
        assert retried_ctx.metadata["captcha_token"] == "solved-abc"
        assert services.locks.is_locked(REG) is False
        assert get_collector().get(
            "registration_runs_total", labels={"outcome": "confirmed"}
        ) == 1

        # Escalations for the completed notification are no-ops
        clock.advance(minutes=10)
        await services.scheduler.run_due()
        assert len(delivery.sent) == 1

    async def test_failed_resume_is_retried(
        self, services, orchestrator, scripted_adapter, partner_jackrabbit, clock, monkeypatch
    ):
        scripted_adapter.reserve_results = [NeedsCaptcha(provider="recaptcha")]
        outcome = await orchestrator.run(make_ctx(), INTENT)
        request = services.workflows.list_requests(outcome.workflow_id)[0]
        services.workflows.complete_request(request.id, {"captcha_token": "solved-abc"})

        detect = orchestrator.registry.detect_platform
        calls = []

        def flaky_detect(url):
            calls.append(url)
            if len(calls) == 1:
                raise ProfileLoadError("provider profiles unavailable")
            return detect(url)

        monkeypatch.setattr(orchestrator.registry, "detect_platform", flaky_detect)

        first = await services.scheduler.run_due()
        assert first.failed == 1
        [job] = services.jobs.list_jobs(job_type=RESUME_REGISTRATION_JOB)
        assert job.status == JobStatus.RETRYING
        assert services.workflows.get_workflow(outcome.workflow_id).resume_state_json

        clock.advance(minutes=5)
        await services.scheduler.run_due()

        assert services.jobs.get_job(job.id).status == JobStatus.COMPLETED
        assert scripted_adapter.stages() == [
            "precheck", "find_sessions", "reserve", "reserve", "finalize_payment",
        ]
        assert services.workflows.get_workflow(outcome.workflow_id).resume_state_json is None

    async def test_resume_returns_confirmation_once(
        self, services, orchestrator, scripted_adapter, partner_jackrabbit
    ):
        scripted_adapter.reserve_results = [NeedsCaptcha(provider="hcaptcha")]
        outcome = await orchestrator.run(make_ctx(), INTENT)
        request = services.workflows.list_requests(outcome.workflow_id)[0]
        services.workflows.complete_request(request.id, {"captcha_token": "t"})

        resumed = await orchestrator.resume(outcome.workflow_id)

        assert resumed.status == OutcomeStatus.CONFIRMED
        assert resumed.confirmation_id == "PAY-ENR-1"
        with pytest.raises(InvalidTransitionError):
            await orchestrator.resume(outcome.workflow_id)

    async def test_resume_requires_completed_workflow(
        self, services, orchestrator, scripted_adapter
    ):
        scripted_adapter.reserve_results = [NeedsCaptcha(provider="recaptcha")]
        outcome = await orchestrator.run(make_ctx(), INTENT)

        with pytest.raises(InvalidTransitionError, match="completed"):
            await orchestrator.resume(outcome.workflow_id)

    async def test_pending_workflow_blocks_new_run(self, orchestrator, scripted_adapter):
        scripted_adapter.reserve_results = [NeedsCaptcha(provider="recaptcha")]
        first = await orchestrator.run(make_ctx(), INTENT)
        calls_before = len(scripted_adapter.calls)

        second = await orchestrator.run(make_ctx(), INTENT)

        assert second.status == OutcomeStatus.AWAITING_ASSISTANCE
        assert second.workflow_id == first.workflow_id
        assert len(scripted_adapter.calls) == calls_before

    async def test_solver_answer_avoids_hand_off(
        self, db_session, test_settings, clock, static_registry, scripted_adapter, delivery,
        partner_jackrabbit,
    ):
        solver = AsyncMock()
        solver.solve.return_value = "auto-token"
        services = rebuild(
            db_session, test_settings, clock, static_registry, scripted_adapter, delivery,
            captcha_solver=solver,
        )
        scripted_adapter.reserve_results = [NeedsCaptcha(provider="recaptcha")]

        outcome = await services.orchestrator.run(make_ctx(), INTENT)

        assert outcome.status == OutcomeStatus.CONFIRMED
        assert scripted_adapter.calls[3][1].metadata["captcha_token"] == "auto-token"
        assert delivery.sent == []

    async def test_solver_failure_escalates_to_parent(
        self, db_session, test_settings, clock, static_registry, scripted_adapter, delivery
    ):
        solver = AsyncMock()
        solver.solve.side_effect = RuntimeError("solver offline")
        services = rebuild(
            db_session, test_settings, clock, static_registry, scripted_adapter, delivery,
            captcha_solver=solver,
        )
        scripted_adapter.reserve_results = [NeedsCaptcha(provider="recaptcha")]

        outcome = await services.orchestrator.run(make_ctx(), INTENT)

        assert outcome.status == OutcomeStatus.AWAITING_ASSISTANCE
        assert len(delivery.sent) == 1


class TestGates:
    """Outcomes decided before any adapter call."""

    async def test_unrecognized_platform(self, orchestrator, scripted_adapter):
        outcome = await orchestrator.run(make_ctx(url="https://camp.example.org/register"))

        assert outcome.status == OutcomeStatus.PLATFORM_NOT_RECOGNIZED
        assert "camp.example.org" in outcome.reason
        assert scripted_adapter.calls == []

    async def test_consent_required(self, orchestrator, scripted_adapter):
        outcome = await orchestrator.run(make_ctx(consent=False))

        assert outcome.status == OutcomeStatus.NOT_AUTHORIZED
        assert outcome.fixable_by_parent is True
        assert scripted_adapter.calls == []

    async def test_blocked_provider(
        self, db_session, test_settings, clock, static_registry, scripted_adapter, delivery
    ):
        settings = test_settings.model_copy(
            update={"blocked_provider_domains": ["jackrabbitclass.com"]}
        )
        services = rebuild(
            db_session, settings, clock, static_registry, scripted_adapter, delivery
        )

        outcome = await services.orchestrator.run(make_ctx())

        assert outcome.status == OutcomeStatus.NOT_AUTHORIZED
        assert outcome.fixable_by_parent is False
        assert scripted_adapter.calls == []

    async def test_context_carries_trust_config(self, orchestrator, scripted_adapter):
        await orchestrator.run(make_ctx(), INTENT)

        assert scripted_adapter.calls[0][1].config.max_concurrent == 3


class TestAdapterResults:
    """Mapping adapter variants onto outcomes."""

    async def test_confirmed_with_partner(
        self, services, orchestrator, scripted_adapter, partner_jackrabbit, db_session
    ):
        outcome = await orchestrator.run(make_ctx(), INTENT)

        assert outcome.success is True
        assert outcome.confirmation_id == "PAY-ENR-1"
        assert outcome.to_dict()["platform"] == "jackrabbit_class"
        assert services.locks.get(REG) is None
        record = db_session.get(ProviderTrustRecord, "app.jackrabbitclass.com")
        assert record.attempts == 2

    async def test_no_sessions(self, services, orchestrator, scripted_adapter):
        scripted_adapter.sessions = []

        outcome = await orchestrator.run(make_ctx(), INTENT)

        assert outcome.status == OutcomeStatus.NO_SESSIONS
        assert services.locks.get(REG) is None

    async def test_precheck_failure_not_fixable(self, orchestrator, scripted_adapter):
        scripted_adapter.precheck_result = PrecheckResult.failed(
            "Platform is not supported", fixable_by_parent=False
        )

        outcome = await orchestrator.run(make_ctx(), INTENT)

        assert outcome.status == OutcomeStatus.PRECHECK_FAILED
        assert scripted_adapter.stages() == ["precheck"]

    async def test_waitlisted_releases_lock(self, services, orchestrator, scripted_adapter):
        candidate = scripted_adapter.sessions[0]
        scripted_adapter.reserve_results = [ReserveWaitlisted(candidate.with_provider_id("W-9"))]

        outcome = await orchestrator.run(make_ctx(), INTENT)

        assert outcome.status == OutcomeStatus.WAITLISTED
        assert services.locks.get(REG) is None
        assert "finalize_payment" not in scripted_adapter.stages()

    async def test_accepted_waitlist_is_finalized(
        self, orchestrator, scripted_adapter, partner_jackrabbit
    ):
        candidate = scripted_adapter.sessions[0]
        scripted_adapter.reserve_results = [ReserveWaitlisted(candidate.with_provider_id("W-9"))]

        outcome = await orchestrator.run(make_ctx(), INTENT, accept_waitlist=True)

        assert outcome.status == OutcomeStatus.CONFIRMED
        assert outcome.confirmation_id == "PAY-W-9"

    async def test_reservation_failed(self, services, orchestrator, scripted_adapter):
        scripted_adapter.reserve_results = [ReserveFailed("Session closed")]

        outcome = await orchestrator.run(make_ctx(), INTENT)

        assert outcome.status == OutcomeStatus.RESERVATION_FAILED
        assert outcome.reason == "Session closed"
        assert services.locks.get(REG) is None

    async def test_payment_failed(self, orchestrator, scripted_adapter, partner_jackrabbit):
        scripted_adapter.finalize_result = FinalizeFailed("Card declined", fixable_by_parent=True)

        outcome = await orchestrator.run(make_ctx(), INTENT)

        assert outcome.status == OutcomeStatus.PAYMENT_FAILED
        assert outcome.fixable_by_parent is True

    async def test_finalize_deferred(self, orchestrator, scripted_adapter, partner_jackrabbit):
        scripted_adapter.finalize_result = FinalizeWaitlisted()

        outcome = await orchestrator.run(make_ctx(), INTENT)

        assert outcome.status == OutcomeStatus.WAITLISTED

    async def test_adapter_exception_is_adapter_error(
        self, services, orchestrator, scripted_adapter
    ):
        scripted_adapter.raise_on = "reserve"

        outcome = await orchestrator.run(make_ctx(), INTENT)

        assert outcome.status == OutcomeStatus.ADAPTER_ERROR
        assert outcome.reason == "Internal error during reserve"
        assert services.locks.get(REG) is None
        assert get_collector().get(
            "registration_runs_total", labels={"outcome": "adapter_error"}
        ) == 1

    async def test_precheck_exception(self, orchestrator, scripted_adapter):
        scripted_adapter.raise_on = "precheck"

        outcome = await orchestrator.run(make_ctx(), INTENT)

        assert outcome.status == OutcomeStatus.ADAPTER_ERROR


class TestLocking:
    """Registration lock behaviour."""

    async def test_locked_by_other_run(self, services, orchestrator, scripted_adapter):
        services.locks.acquire(REG, "other-run")

        outcome = await orchestrator.run(make_ctx(), INTENT)

        assert outcome.status == OutcomeStatus.LOCKED
        assert scripted_adapter.stages() == ["precheck", "find_sessions"]
        assert services.locks.get(REG).locked_by == "other-run"

    async def test_expired_lock_does_not_block(
        self, services, orchestrator, scripted_adapter, partner_jackrabbit, clock
    ):
        services.locks.acquire(REG, "crashed-run")
        clock.advance(minutes=6)

        outcome = await orchestrator.run(make_ctx(), INTENT)

        assert outcome.status == OutcomeStatus.CONFIRMED


class TestPaymentAndPrecheckHandOff:
    """Hand-offs outside the CAPTCHA path."""

    async def test_payment_needs_parent_without_partnership(
        self, services, orchestrator, scripted_adapter
    ):
        outcome = await orchestrator.run(make_ctx(amount="$350.00"), INTENT)

        assert outcome.status == OutcomeStatus.AWAITING_ASSISTANCE
        request = services.workflows.list_requests(outcome.workflow_id)[0]
        assert request.request_type == AssistanceType.PAYMENT
        assert request.context_json["amount"] == "$350.00"
        assert "finalize_payment" not in scripted_adapter.stages()
        assert services.locks.is_locked(REG) is True

        services.workflows.complete_request(request.id, {"payment_authorized": True})
        resumed = await orchestrator.resume(outcome.workflow_id)

        assert resumed.status == OutcomeStatus.CONFIRMED
        assert scripted_adapter.stages().count("reserve") == 1
        assert services.locks.is_locked(REG) is False

    async def test_pre_authorized_payment_skips_hand_off(self, orchestrator, scripted_adapter):
        outcome = await orchestrator.run(make_ctx(payment_authorized=True), INTENT)

        assert outcome.status == OutcomeStatus.CONFIRMED

    async def test_fixable_precheck_asks_for_account(
        self, services, orchestrator, scripted_adapter, partner_jackrabbit
    ):
        scripted_adapter.precheck_result = PrecheckResult.failed("Parent account required")

        outcome = await orchestrator.run(make_ctx(), INTENT)

        assert outcome.status == OutcomeStatus.AWAITING_ASSISTANCE
        request = services.workflows.list_requests(outcome.workflow_id)[0]
        assert request.request_type == AssistanceType.ACCOUNT_CREATION
        assert services.locks.get(REG) is None

        scripted_adapter.precheck_result = PrecheckResult.passed()
        services.workflows.complete_request(
            request.id, {"vault": {"login": "vault:login:abc"}}
        )
        resumed = await orchestrator.resume(outcome.workflow_id)

        assert resumed.status == OutcomeStatus.CONFIRMED
        assert scripted_adapter.calls[-1][1].vault_ref("login") == "vault:login:abc"

    async def test_fixable_precheck_with_login_asks_for_form(
        self, services, orchestrator, scripted_adapter
    ):
        scripted_adapter.precheck_result = PrecheckResult.failed("Child birthdate missing")

        outcome = await orchestrator.run(make_ctx(vault={"login": "vault:login:xyz"}), INTENT)

        request = services.workflows.list_requests(outcome.workflow_id)[0]
        assert request.request_type == AssistanceType.FORM_COMPLETION

    async def test_abandoned_workflow_unblocks_new_run(
        self, services, orchestrator, scripted_adapter, partner_jackrabbit
    ):
        scripted_adapter.reserve_results = [NeedsCaptcha(provider="recaptcha")]
        first = await orchestrator.run(make_ctx(), INTENT)
        services.workflows.abandon(first.workflow_id)
        services.locks.release(REG, services.locks.get(REG).locked_by)

        second = await orchestrator.run(make_ctx(), INTENT)

        assert second.status == OutcomeStatus.CONFIRMED
        assert services.workflows.get_workflow(first.workflow_id).status == (
            WorkflowStatus.ABANDONED
        )


class TestThrottle:
    """Per-host throttle wiring."""

    async def test_calls_run_under_throttle(
        self, db_session, test_settings, clock, static_registry, scripted_adapter, delivery,
        partner_jackrabbit, mock_async_redis,
    ):
        services = rebuild(
            db_session, test_settings, clock, static_registry, scripted_adapter, delivery,
            redis_client=mock_async_redis,
        )

        outcome = await services.orchestrator.run(make_ctx(), INTENT)

        assert outcome.status == OutcomeStatus.CONFIRMED
        assert mock_async_redis.incr.await_count == 2
        assert mock_async_redis.store["throttle:app.jackrabbitclass.com:inflight"] == 0
