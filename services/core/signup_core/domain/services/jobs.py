"""Scheduled-job ledger.

Delayed work (escalation checks, fallback deliveries, workflow advancement)
is persisted as ``Job`` rows with a ``next_run_at``. A periodic dispatcher
claims due rows and executes them, so pending timers survive restarts.
"""

import hashlib
import json
import traceback
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Union

from sqlalchemy import or_
from sqlalchemy.orm import Session as DBSession

from signup_core.domain.models import Job, JobStatus, utcnow

# Statuses that can be claimed for execution
CLAIMABLE_STATUSES = {JobStatus.QUEUED, JobStatus.RETRYING}

MAX_ERROR_LENGTH = 5000

# Exponential retry backoff
BASE_BACKOFF_SECONDS = 30
MAX_BACKOFF_SECONDS = 1800
BACKOFF_MULTIPLIER = 2


class JobService:
    """Service for job ledger operations."""

    def __init__(self, db: DBSession, clock: Callable[[], datetime] = utcnow):
        """Initialize the job service.

        Args:
            db: SQLAlchemy database session.
            clock: Returns the current naive-UTC time.
        """
        self.db = db
        self.clock = clock

    def compute_dedupe_key(
        self,
        queue_name: str,
        job_type: str,
        payload: dict[str, Any],
    ) -> str:
        """Hash queue, type and payload into a stable key.

        Identical scheduling requests produce the same key, which keeps a
        retried caller from scheduling the same timer twice.
        """
        canonical = json.dumps(
            {"queue": queue_name, "type": job_type, "payload": payload},
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(canonical.encode()).hexdigest()[:64]

    def schedule(
        self,
        queue_name: str,
        job_type: str,
        payload: dict[str, Any],
        run_at: Optional[datetime] = None,
        delay: Optional[timedelta] = None,
        max_attempts: int = 5,
        dedupe: bool = True,
    ) -> tuple[Job, bool]:
        """Persist a job to run at ``run_at`` (or ``now + delay``).

        Returns:
            Tuple of (Job, created) where created is False for a dedupe hit.
        """
        if run_at is None and delay is not None:
            run_at = self.clock() + delay

        dedupe_key = None
        if dedupe:
            dedupe_key = self.compute_dedupe_key(queue_name, job_type, payload)
            existing = self.get_job_by_dedupe_key(dedupe_key)
            if existing is not None:
                return existing, False

        job = Job(
            queue_name=queue_name,
            job_type=job_type,
            payload_json=payload,
            status=JobStatus.QUEUED,
            attempts=0,
            max_attempts=max_attempts,
            next_run_at=run_at,
            dedupe_key=dedupe_key,
        )
        self.db.add(job)
        self.db.flush()
        return job, True

    def get_job(self, job_id: int) -> Optional[Job]:
        return self.db.query(Job).filter(Job.id == job_id).first()

    def get_job_by_dedupe_key(self, dedupe_key: str) -> Optional[Job]:
        return self.db.query(Job).filter(Job.dedupe_key == dedupe_key).first()

    def claim_job(self, job_id: int) -> bool:
        """Atomically move a job from queued/retrying to running.

        Only one worker can successfully claim a job.
        """
        claimed = (
            self.db.query(Job)
            .filter(Job.id == job_id, Job.status.in_(CLAIMABLE_STATUSES))
            .update(
                {
                    Job.status: JobStatus.RUNNING,
                    Job.attempts: Job.attempts + 1,
                    Job.updated_at: self.clock(),
                },
                synchronize_session=False,
            )
        )
        self.db.flush()
        return claimed > 0

    def claim_due_jobs(
        self,
        queue_name: Optional[str] = None,
        limit: int = 25,
    ) -> list[Job]:
        """Claim every job whose ``next_run_at`` has passed.

        Jobs come back in due-time order, then creation order, so rules
        scheduled for the same notification fire in trigger order.
        """
        now = self.clock()
        query = self.db.query(Job).filter(
            Job.status.in_(CLAIMABLE_STATUSES),
            or_(Job.next_run_at.is_(None), Job.next_run_at <= now),
        )
        if queue_name:
            query = query.filter(Job.queue_name == queue_name)

        query = query.order_by(Job.next_run_at.asc(), Job.created_at.asc(), Job.id.asc())

        claimed = []
        for job in query.limit(limit).all():
            if self.claim_job(job.id):
                self.db.refresh(job)
                claimed.append(job)
        return claimed

    def complete_job(self, job_id: int) -> None:
        """Mark a job done and release its dedupe key."""
        self.db.query(Job).filter(Job.id == job_id).update(
            {
                Job.status: JobStatus.DONE,
                Job.dedupe_key: None,
                Job.last_error: None,
                Job.updated_at: self.clock(),
            },
            synchronize_session=False,
        )
        self.db.flush()

    def cancel_jobs(self, job_type: str, match: dict[str, Any]) -> int:
        """Cancel pending jobs of ``job_type`` whose payload contains ``match``.

        Returns:
            Number of jobs cancelled.
        """
        pending = (
            self.db.query(Job)
            .filter(Job.job_type == job_type, Job.status.in_(CLAIMABLE_STATUSES))
            .all()
        )
        cancelled = 0
        for job in pending:
            payload = job.payload_json or {}
            if all(payload.get(key) == value for key, value in match.items()):
                job.status = JobStatus.CANCELLED
                job.dedupe_key = None
                cancelled += 1
        self.db.flush()
        return cancelled

    def fail_job(
        self,
        job_id: int,
        error: Union[str, Exception],
        include_traceback: bool = False,
    ) -> None:
        """Mark a job retrying with exponential backoff, or failed when out of attempts."""
        job = self.get_job(job_id)
        if job is None:
            return

        self.db.refresh(job)
        error_str = self.serialize_error(error, include_traceback)
        now = self.clock()

        if job.attempts < job.max_attempts:
            job.status = JobStatus.RETRYING
            job.next_run_at = now + timedelta(seconds=self._calculate_backoff(job.attempts))
        else:
            job.status = JobStatus.FAILED
            job.dedupe_key = None
        job.last_error = error_str
        job.updated_at = now
        self.db.flush()

    def _calculate_backoff(self, attempts: int) -> int:
        backoff = BASE_BACKOFF_SECONDS * (BACKOFF_MULTIPLIER ** (attempts - 1))
        return min(int(backoff), MAX_BACKOFF_SECONDS)

    def serialize_error(
        self,
        error: Union[str, Exception],
        include_traceback: bool = False,
    ) -> str:
        """Serialize an error for storage, truncated to MAX_ERROR_LENGTH."""
        if isinstance(error, str):
            error_str = error
        elif include_traceback:
            error_str = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )
        else:
            error_str = f"{type(error).__name__}: {error}"

        if len(error_str) > MAX_ERROR_LENGTH:
            error_str = error_str[: MAX_ERROR_LENGTH - 3] + "..."
        return error_str

    def list_jobs(
        self,
        job_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> list[Job]:
        """List jobs, oldest due first."""
        query = self.db.query(Job)
        if job_type:
            query = query.filter(Job.job_type == job_type)
        if status:
            query = query.filter(Job.status == status)
        return query.order_by(Job.next_run_at.asc(), Job.id.asc()).limit(limit).all()
