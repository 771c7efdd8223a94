"""Unit tests for registration tasks.

Tests cover:
- Task registration and delivery semantics
- Payload validation and context construction
- Retry on unavailable provider profiles
- Skipping workflows that cannot be resumed
"""

from unittest.mock import MagicMock, patch

import pytest
from celery.exceptions import Retry

from signup_core.domain.services.assistance_workflow import (
    InvalidTransitionError,
    WorkflowNotFoundError,
)
from signup_core.domain.services.provider_registry import ProfileLoadError
from signup_worker.tasks.registration import resume_registration, run_registration

RUNTIME = "signup_worker.tasks.registration.run_with_services"


def outcome(status="confirmed", **extra):
    result = MagicMock()
    result.to_dict.return_value = {"status": status, **extra}
    return result


class TestRunRegistrationTask:
    """Tests for registration.run."""

    def test_task_is_registered(self, mock_celery_app):
        assert run_registration.name == "registration.run"
        assert "registration.run" in mock_celery_app.tasks

    def test_task_acks_early(self, mock_celery_app):
        """A redelivered run could reserve the same seat twice."""
        assert run_registration.acks_late is False
        assert run_registration.max_retries == 3

    @pytest.mark.parametrize("missing", ["canonical_url", "user_id", "session_id"])
    def test_missing_required_field_returns_error(
        self, mock_celery_app, registration_payload, missing
    ):
        del registration_payload[missing]

        with patch(RUNTIME) as runtime:
            result = run_registration.apply(args=[registration_payload]).get()

        assert result["status"] == "error"
        assert missing in result["error"]
        runtime.assert_not_called()

    def test_runs_orchestrator_with_payload(
        self, mock_celery_app, registration_payload, mock_services, run_inline
    ):
        mock_services.orchestrator.run.return_value = outcome(confirmation_id="PAY-1")

        with patch(RUNTIME, side_effect=run_inline):
            result = run_registration.apply(args=[registration_payload]).get()

        assert result == {"status": "confirmed", "confirmation_id": "PAY-1"}
        ctx, intent, accept_waitlist = mock_services.orchestrator.run.await_args.args
        assert ctx.canonical_url == registration_payload["canonical_url"]
        assert ctx.registration_id == "reg-1"
        assert ctx.metadata == {"automation_consent": True}
        assert intent.date == "2024-06-10"
        assert intent.title_contains == "robotics"
        assert accept_waitlist is True

    def test_optional_fields_default(self, mock_celery_app, mock_services, run_inline):
        mock_services.orchestrator.run.return_value = outcome("no_sessions")
        payload = {
            "canonical_url": "https://app.jackrabbitclass.com/regv2.asp?id=ORG42",
            "user_id": "parent-1",
            "session_id": "sess-1",
        }

        with patch(RUNTIME, side_effect=run_inline):
            result = run_registration.apply(args=[payload]).get()

        assert result["status"] == "no_sessions"
        ctx, intent, accept_waitlist = mock_services.orchestrator.run.await_args.args
        assert ctx.metadata == {}
        assert ctx.child_token is None
        assert intent is None
        assert accept_waitlist is False

    def test_profile_load_error_retries(self, mock_celery_app, registration_payload):
        error = ProfileLoadError("profiles table unreachable")

        with patch(RUNTIME, side_effect=error), patch.object(
            run_registration, "retry", return_value=Retry("retrying")
        ) as retry:
            with pytest.raises(Retry):
                run_registration(registration_payload)

        retry.assert_called_once_with(exc=error, countdown=30)

    def test_other_errors_propagate(self, mock_celery_app, registration_payload):
        with patch(RUNTIME, side_effect=RuntimeError("db down")):
            with pytest.raises(RuntimeError, match="db down"):
                run_registration(registration_payload)


class TestResumeRegistrationTask:
    """Tests for registration.resume."""

    def test_task_is_registered(self, mock_celery_app):
        assert resume_registration.name == "registration.resume"
        assert resume_registration.max_retries == 0
        assert resume_registration.acks_late is False

    def test_resumes_workflow(self, mock_celery_app, mock_services, run_inline):
        mock_services.orchestrator.resume.return_value = outcome(workflow_id=None)

        with patch(RUNTIME, side_effect=run_inline):
            result = resume_registration.apply(args=[7]).get()

        assert result["status"] == "confirmed"
        mock_services.orchestrator.resume.assert_awaited_once_with(7)

    @pytest.mark.parametrize(
        "error",
        [
            WorkflowNotFoundError("Workflow 7 not found"),
            InvalidTransitionError("Workflow 7 is running, resume needs a completed workflow"),
        ],
    )
    def test_unresumable_workflow_is_skipped(self, mock_celery_app, error):
        with patch(RUNTIME, side_effect=error):
            result = resume_registration.apply(args=[7]).get()

        assert result == {"status": "skipped", "workflow_id": 7, "reason": str(error)}
