"""Dispatcher for due ``Job`` rows.

Escalation checks, fallback deliveries, workflow advancement and
registration resumption are all stored as jobs on the ``scheduler`` queue.
``ScheduledTaskRunner.run_due`` is invoked periodically (Celery beat in
production) and executes every job whose ``next_run_at`` has passed.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from signup_core.domain.models import Job
from signup_core.domain.services.assistance_workflow import (
    RESUME_REGISTRATION_JOB,
    START_NEXT_JOB,
    AssistanceWorkflowService,
)
from signup_core.domain.services.jobs import JobService
from signup_core.domain.services.notifications import (
    ESCALATE_JOB,
    FALLBACK_JOB,
    SCHEDULER_QUEUE,
    NotificationService,
)
from signup_core.observability.logging import get_logger

logger = get_logger(__name__)


class UnknownJobTypeError(Exception):
    """A job row names a type nothing handles."""


@dataclass
class DispatchSummary:
    """What one dispatcher pass did."""

    claimed: int = 0
    completed: int = 0
    failed: int = 0
    job_types: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "claimed": self.claimed,
            "completed": self.completed,
            "failed": self.failed,
            "job_types": dict(self.job_types),
        }


class ScheduledTaskRunner:
    """Claims due scheduler jobs and routes each to its handler."""

    def __init__(
        self,
        jobs: JobService,
        notifications: NotificationService,
        workflows: AssistanceWorkflowService,
        resume_registration: Optional[Callable[[int], Awaitable[Any]]] = None,
        batch_size: int = 25,
    ):
        """Initialize the runner.

        Args:
            jobs: Job ledger.
            notifications: Handles escalation and fallback jobs.
            workflows: Handles workflow advancement jobs.
            resume_registration: Continues a registration whose assistance
                workflow completed. Resume jobs fail (and retry) without it.
            batch_size: Maximum jobs claimed per pass.
        """
        self.jobs = jobs
        self.notifications = notifications
        self.workflows = workflows
        self.resume_registration = resume_registration
        self.batch_size = batch_size

    async def _dispatch(self, job: Job) -> None:
        payload = job.payload_json or {}

        if job.job_type == ESCALATE_JOB:
            await self.notifications.fire_escalation(
                payload["notification_id"], payload["rule_index"]
            )
        elif job.job_type == FALLBACK_JOB:
            await self.notifications.fire_fallback(payload["notification_id"], payload["method"])
        elif job.job_type == START_NEXT_JOB:
            await self.workflows.start_next(payload["workflow_id"])
        elif job.job_type == RESUME_REGISTRATION_JOB:
            if self.resume_registration is None:
                raise UnknownJobTypeError("No registration resumer configured")
            await self.resume_registration(payload["workflow_id"])
        else:
            raise UnknownJobTypeError(f"Unknown job type: {job.job_type}")

    async def run_due(self) -> DispatchSummary:
        """Execute every due job once. A failing job is retried with backoff."""
        summary = DispatchSummary()
        for job in self.jobs.claim_due_jobs(SCHEDULER_QUEUE, limit=self.batch_size):
            summary.claimed += 1
            summary.job_types[job.job_type] = summary.job_types.get(job.job_type, 0) + 1
            try:
                await self._dispatch(job)
            except Exception as e:
                logger.error(
                    "Scheduled job failed",
                    exc_info=True,
                    job_id=job.id,
                    job_type=job.job_type,
                    attempts=job.attempts,
                )
                self.jobs.fail_job(job.id, e)
                summary.failed += 1
            else:
                self.jobs.complete_job(job.id)
                summary.completed += 1

        if summary.claimed:
            logger.info("Scheduler pass finished", **summary.to_dict())
        return summary
