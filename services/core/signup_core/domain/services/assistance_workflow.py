"""Assistance workflow engine.

A workflow is an ordered queue of ``AssistanceRequestRecord`` rows for one
registration run. Request states::

    queued -> active -> completed | failed | paused
    paused -> active          (resume)
    failed -> queued          (explicit retry only)

At most one request per workflow is ``active``. Starting a workflow
activates the first queued request; completing a request schedules the next
one after a short settle delay through the job ledger; a failure stops
auto-advancing until the caller retries or abandons. Activating a request
notifies the parent.

Progress is derived on read, never stored.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from signup_core.domain.models import (
    AssistancePriority,
    AssistanceRequestRecord,
    AssistanceStatus,
    AssistanceType,
    AssistanceWorkflow,
    NotificationStatus,
    WorkflowStatus,
    utcnow,
)
from signup_core.domain.services.jobs import JobService
from signup_core.domain.services.notifications import SCHEDULER_QUEUE, NotificationService
from signup_core.observability.logging import get_logger

logger = get_logger(__name__)

START_NEXT_JOB = "workflow.start_next"
RESUME_REGISTRATION_JOB = "registration.resume"

DEFAULT_ADVANCE_DELAY = timedelta(seconds=2)
DEFAULT_RETRY_DELAY = timedelta(seconds=1)

# Minutes a parent typically needs per request type
DEFAULT_ESTIMATES = {
    AssistanceType.CAPTCHA: 2.0,
    AssistanceType.PAYMENT: 3.0,
    AssistanceType.FORM_COMPLETION: 5.0,
    AssistanceType.ACCOUNT_CREATION: 10.0,
}

VALID_TYPES = set(DEFAULT_ESTIMATES)
VALID_PRIORITIES = {AssistancePriority.LOW, AssistancePriority.MEDIUM, AssistancePriority.HIGH}
UNRESOLVED_STATUSES = (
    WorkflowStatus.PENDING,
    WorkflowStatus.RUNNING,
    WorkflowStatus.PAUSED,
    WorkflowStatus.STOPPED,
)


# ===== EXCEPTIONS =====


class WorkflowError(Exception):
    """Base exception for assistance workflow operations."""


class WorkflowNotFoundError(WorkflowError):
    """Raised when a workflow id does not exist."""


class RequestNotFoundError(WorkflowError):
    """Raised when an assistance request id does not exist."""


class InvalidTransitionError(WorkflowError):
    """Raised when a request or workflow is not in a state that allows the operation."""


# ===== RESULT TYPES =====


@dataclass
class NewAssistanceRequest:
    request_type: str
    stage: str = ""
    priority: str = AssistancePriority.MEDIUM
    context: dict[str, Any] = field(default_factory=dict)
    estimated_duration: Optional[float] = None


@dataclass
class WorkflowProgress:
    total: int
    completed: int
    failed: int
    active_request_id: Optional[int]
    percent_complete: float
    estimated_minutes_remaining: float
    can_auto_resume: bool


# ===== SERVICE =====


class AssistanceWorkflowService:
    """State machine over a run's assistance requests."""

    def __init__(
        self,
        db: Session,
        notifications: Optional[NotificationService] = None,
        jobs: Optional[JobService] = None,
        clock: Callable[[], datetime] = utcnow,
        advance_delay: timedelta = DEFAULT_ADVANCE_DELAY,
        retry_delay: timedelta = DEFAULT_RETRY_DELAY,
        base_url: Optional[str] = None,
    ):
        """Initialize the service.

        Args:
            db: SQLAlchemy database session.
            notifications: Notifies the parent when a request becomes active.
                Without it, requests activate silently.
            jobs: Job ledger for delayed advancement.
            clock: Returns the current naive-UTC time.
            advance_delay: Settle time before the next request activates.
            retry_delay: Delay before a retried request re-activates.
            base_url: Public URL used to build parent action links.
        """
        self.db = db
        self.notifications = notifications
        self.clock = clock
        self.jobs = jobs or JobService(db, clock=clock)
        self.advance_delay = advance_delay
        self.retry_delay = retry_delay
        self.base_url = (base_url or "").rstrip("/")

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get_workflow(self, workflow_id: int) -> AssistanceWorkflow:
        workflow = self.db.get(AssistanceWorkflow, workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        return workflow

    def get_request(self, request_id: int) -> AssistanceRequestRecord:
        request = self.db.get(AssistanceRequestRecord, request_id)
        if request is None:
            raise RequestNotFoundError(f"Assistance request {request_id} not found")
        return request

    def list_requests(self, workflow_id: int) -> list[AssistanceRequestRecord]:
        return (
            self.db.query(AssistanceRequestRecord)
            .filter(AssistanceRequestRecord.workflow_id == workflow_id)
            .order_by(AssistanceRequestRecord.position)
            .all()
        )

    def _first(self, workflow_id: int, status: str) -> Optional[AssistanceRequestRecord]:
        return (
            self.db.query(AssistanceRequestRecord)
            .filter(
                AssistanceRequestRecord.workflow_id == workflow_id,
                AssistanceRequestRecord.status == status,
            )
            .order_by(AssistanceRequestRecord.position)
            .first()
        )

    def _require_unresolved(self, workflow: AssistanceWorkflow) -> None:
        if workflow.status not in UNRESOLVED_STATUSES:
            raise InvalidTransitionError(f"Workflow {workflow.id} is {workflow.status}")

    def find_unresolved(self, registration_id: str) -> Optional[AssistanceWorkflow]:
        """The workflow still blocking ``registration_id``, if any."""
        return (
            self.db.query(AssistanceWorkflow)
            .filter(
                AssistanceWorkflow.registration_id == registration_id,
                AssistanceWorkflow.status.in_(UNRESOLVED_STATUSES),
            )
            .order_by(AssistanceWorkflow.id.desc())
            .first()
        )

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    def create_workflow(
        self,
        user_id: str,
        registration_id: Optional[str] = None,
        requests: Optional[list[NewAssistanceRequest]] = None,
        resume_state: Optional[dict[str, Any]] = None,
    ) -> AssistanceWorkflow:
        workflow = AssistanceWorkflow(
            user_id=user_id,
            registration_id=registration_id,
            status=WorkflowStatus.PENDING,
            resume_state_json=resume_state,
            created_at=self.clock(),
        )
        self.db.add(workflow)
        self.db.flush()

        for item in requests or []:
            self.enqueue_request(
                workflow.id,
                item.request_type,
                stage=item.stage,
                priority=item.priority,
                context=item.context,
                estimated_duration=item.estimated_duration,
            )
        return workflow

    def enqueue_request(
        self,
        workflow_id: int,
        request_type: str,
        stage: str = "",
        priority: str = AssistancePriority.MEDIUM,
        context: Optional[dict[str, Any]] = None,
        estimated_duration: Optional[float] = None,
    ) -> AssistanceRequestRecord:
        """Append a queued request to the end of the workflow.

        Raises:
            ValueError: Unknown request type or priority.
            InvalidTransitionError: The workflow is already resolved.
        """
        if request_type not in VALID_TYPES:
            raise ValueError(f"request_type must be one of {sorted(VALID_TYPES)}")
        if priority not in VALID_PRIORITIES:
            raise ValueError(f"priority must be one of {sorted(VALID_PRIORITIES)}")

        workflow = self.get_workflow(workflow_id)
        self._require_unresolved(workflow)

        position = len(self.list_requests(workflow_id))
        request = AssistanceRequestRecord(
            workflow_id=workflow_id,
            position=position,
            request_type=request_type,
            stage=stage,
            status=AssistanceStatus.QUEUED,
            priority=priority,
            context_json=dict(context or {}),
            estimated_duration=(
                estimated_duration
                if estimated_duration is not None
                else DEFAULT_ESTIMATES[request_type]
            ),
            created_at=self.clock(),
        )
        self.db.add(request)
        self.db.flush()
        return request

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def action_url(self, request: AssistanceRequestRecord) -> Optional[str]:
        if not self.base_url:
            return None
        return f"{self.base_url}/assist/{request.workflow_id}/requests/{request.id}"

    async def _activate(
        self, workflow: AssistanceWorkflow, request: AssistanceRequestRecord
    ) -> AssistanceRequestRecord:
        active = self._first(workflow.id, AssistanceStatus.ACTIVE)
        if active is not None and active.id != request.id:
            raise InvalidTransitionError(
                f"Request {active.id} is already active in workflow {workflow.id}"
            )

        request.status = AssistanceStatus.ACTIVE
        workflow.status = WorkflowStatus.RUNNING
        self.db.flush()

        if self.notifications is not None and request.notification_id is None:
            context = dict(request.context_json or {})
            context["request_id"] = request.id
            notification = await self.notifications.notify_assistance_needed(
                workflow.user_id,
                request.request_type,
                request.priority,
                context,
                action_url=self.action_url(request),
            )
            request.notification_id = notification.id
            self.db.flush()

        logger.info(
            "Assistance request activated",
            workflow_id=workflow.id,
            request_id=request.id,
            request_type=request.request_type,
            priority=request.priority,
        )
        return request

    async def start(self, workflow_id: int) -> Optional[AssistanceRequestRecord]:
        """Activate the first queued request if nothing is active or paused."""
        workflow = self.get_workflow(workflow_id)
        self._require_unresolved(workflow)

        current = self._first(workflow_id, AssistanceStatus.ACTIVE) or self._first(
            workflow_id, AssistanceStatus.PAUSED
        )
        if current is not None:
            return current

        queued = self._first(workflow_id, AssistanceStatus.QUEUED)
        if queued is None:
            self._complete_workflow_if_done(workflow)
            return None
        return await self._activate(workflow, queued)

    async def start_next(self, workflow_id: int) -> Optional[AssistanceRequestRecord]:
        """Scheduled advancement: only acts on a running workflow."""
        workflow = self.get_workflow(workflow_id)
        if workflow.status != WorkflowStatus.RUNNING:
            return None
        return await self.start(workflow_id)

    def _complete_workflow_if_done(self, workflow: AssistanceWorkflow) -> bool:
        requests = self.list_requests(workflow.id)
        if requests and all(r.status == AssistanceStatus.COMPLETED for r in requests):
            workflow.status = WorkflowStatus.COMPLETED
            workflow.completed_at = self.clock()
            self.db.flush()
            if workflow.resume_state_json:
                self.jobs.schedule(
                    SCHEDULER_QUEUE,
                    RESUME_REGISTRATION_JOB,
                    {"workflow_id": workflow.id},
                )
            logger.info("Assistance workflow completed", workflow_id=workflow.id)
            return True
        return False

    def complete_request(
        self,
        request_id: int,
        response: Optional[dict[str, Any]] = None,
    ) -> AssistanceRequestRecord:
        """Record the parent's answer and advance the queue.

        Raises:
            InvalidTransitionError: The request is not active.
        """
        request = self.get_request(request_id)
        if request.status != AssistanceStatus.ACTIVE:
            raise InvalidTransitionError(
                f"Request {request_id} is {request.status}, only active requests complete"
            )

        now = self.clock()
        request.status = AssistanceStatus.COMPLETED
        request.parent_response_json = dict(response or {})
        request.completed_at = now
        request.actual_duration = (now - request.created_at).total_seconds() / 60.0
        self.db.flush()

        if self.notifications is not None and request.notification_id is not None:
            self.notifications.record_response(
                request.notification_id, NotificationStatus.COMPLETED, at=now
            )

        workflow = self.get_workflow(request.workflow_id)
        if not self._complete_workflow_if_done(workflow):
            if self._first(workflow.id, AssistanceStatus.QUEUED) is not None:
                self.jobs.schedule(
                    SCHEDULER_QUEUE,
                    START_NEXT_JOB,
                    {"workflow_id": workflow.id, "after_request_id": request.id},
                    delay=self.advance_delay,
                )
        return request

    def fail_request(self, request_id: int, error: str) -> AssistanceRequestRecord:
        """Mark a request failed and stop the workflow from auto-advancing."""
        request = self.get_request(request_id)
        if request.status not in (AssistanceStatus.ACTIVE, AssistanceStatus.PAUSED):
            raise InvalidTransitionError(
                f"Request {request_id} is {request.status}, cannot fail it"
            )

        request.status = AssistanceStatus.FAILED
        request.completed_at = self.clock()
        request.parent_response_json = {"error": error}

        workflow = self.get_workflow(request.workflow_id)
        workflow.status = WorkflowStatus.STOPPED
        self.jobs.cancel_jobs(START_NEXT_JOB, {"workflow_id": workflow.id})
        self.db.flush()

        logger.warning(
            "Assistance request failed",
            workflow_id=workflow.id,
            request_id=request.id,
            error=error,
        )
        return request

    def retry_request(self, request_id: int) -> AssistanceRequestRecord:
        """Return a failed request to the queue and restart shortly after.

        Raises:
            InvalidTransitionError: The request is not failed or its
                workflow is already resolved.
        """
        request = self.get_request(request_id)
        if request.status != AssistanceStatus.FAILED:
            raise InvalidTransitionError(
                f"Request {request_id} is {request.status}, only failed requests retry"
            )
        workflow = self.get_workflow(request.workflow_id)
        self._require_unresolved(workflow)

        request.status = AssistanceStatus.QUEUED
        request.parent_response_json = None
        request.completed_at = None
        request.actual_duration = None
        request.notification_id = None

        workflow.status = WorkflowStatus.RUNNING
        self.db.flush()

        self.jobs.schedule(
            SCHEDULER_QUEUE,
            START_NEXT_JOB,
            {"workflow_id": workflow.id, "retry_request_id": request.id},
            delay=self.retry_delay,
            dedupe=False,
        )
        return request

    def pause(self, workflow_id: int) -> Optional[AssistanceRequestRecord]:
        """Pause the active request. No-op when nothing is active."""
        workflow = self.get_workflow(workflow_id)
        self._require_unresolved(workflow)
        active = self._first(workflow_id, AssistanceStatus.ACTIVE)
        if active is None:
            return None

        active.status = AssistanceStatus.PAUSED
        workflow.status = WorkflowStatus.PAUSED
        self.db.flush()
        return active

    def resume(self, workflow_id: int) -> Optional[AssistanceRequestRecord]:
        """Reactivate the previously paused request."""
        workflow = self.get_workflow(workflow_id)
        self._require_unresolved(workflow)
        paused = self._first(workflow_id, AssistanceStatus.PAUSED)
        if paused is None:
            return None

        paused.status = AssistanceStatus.ACTIVE
        workflow.status = WorkflowStatus.RUNNING
        self.db.flush()
        return paused

    def abandon(self, workflow_id: int) -> AssistanceWorkflow:
        """Give up on the run.

        The active or paused request is failed and its pending notification
        escalations are cancelled. Queued requests are left as they are.

        Raises:
            InvalidTransitionError: The workflow is already resolved.
        """
        workflow = self.get_workflow(workflow_id)
        self._require_unresolved(workflow)
        now = self.clock()

        for request in self.list_requests(workflow_id):
            if request.status not in (AssistanceStatus.ACTIVE, AssistanceStatus.PAUSED):
                continue
            request.status = AssistanceStatus.FAILED
            request.completed_at = now
            request.parent_response_json = {"error": "abandoned"}
            if self.notifications is not None and request.notification_id is not None:
                self.notifications.cancel_follow_ups(request.notification_id)

        workflow.status = WorkflowStatus.ABANDONED
        workflow.completed_at = now
        self.jobs.cancel_jobs(START_NEXT_JOB, {"workflow_id": workflow.id})
        self.db.flush()

        logger.info("Assistance workflow abandoned", workflow_id=workflow.id)
        return workflow

    # -------------------------------------------------------------------------
    # Progress
    # -------------------------------------------------------------------------

    def get_progress(self, workflow_id: int) -> WorkflowProgress:
        self.get_workflow(workflow_id)
        requests = self.list_requests(workflow_id)

        total = len(requests)
        completed = sum(1 for r in requests if r.status == AssistanceStatus.COMPLETED)
        failed = sum(1 for r in requests if r.status == AssistanceStatus.FAILED)
        active_index = next(
            (i for i, r in enumerate(requests) if r.status == AssistanceStatus.ACTIVE),
            None,
        )

        if active_index is not None:
            remaining = sum(r.estimated_duration for r in requests[active_index + 1:])
        else:
            remaining = sum(
                r.estimated_duration for r in requests if r.status == AssistanceStatus.QUEUED
            )

        return WorkflowProgress(
            total=total,
            completed=completed,
            failed=failed,
            active_request_id=requests[active_index].id if active_index is not None else None,
            percent_complete=(completed / total * 100.0) if total else 0.0,
            estimated_minutes_remaining=remaining,
            can_auto_resume=failed == 0 and completed > 0,
        )
