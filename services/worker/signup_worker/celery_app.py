"""Celery application configuration for the Camp Signup Worker."""

import os

from celery import Celery

# Celery configuration from environment
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/1")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/2")

app = Celery(
    "signup_worker",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=[
        "signup_worker.tasks.registration",
        "signup_worker.tasks.scheduler",
    ],
)

# Celery configuration
app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Task execution
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Time limits (seconds)
    task_soft_time_limit=300,  # 5 minutes
    task_time_limit=600,  # 10 minutes
    # Retry settings
    task_default_retry_delay=30,
    task_max_retries=5,
    # Queue routing
    task_routes={
        "scheduler.*": {"queue": "scheduler"},
        "registration.*": {"queue": "registrations"},
    },
    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,
)

# Beat schedule for periodic tasks
app.conf.beat_schedule = {
    # Escalations, fallbacks and workflow advancement are stored as due jobs
    "scheduler-dispatch-due": {
        "task": "scheduler.dispatch_due",
        "schedule": 5.0,
        "args": (),
    },
    "scheduler-purge-expired-locks": {
        "task": "scheduler.purge_expired_locks",
        "schedule": 600.0,  # 10 minutes
        "args": (),
    },
}


if __name__ == "__main__":
    app.start()
