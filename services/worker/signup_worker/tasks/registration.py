"""Registration tasks.

These tasks run the orchestrator outside the request cycle: queued runs
from the API and manual resumption of parked runs.
"""

import logging
from typing import Any

from signup_worker.celery_app import app
from signup_worker.util.runtime import run_with_services

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("canonical_url", "user_id", "session_id")


@app.task(
    name="registration.run",
    bind=True,
    max_retries=3,
    acks_late=False,  # A redelivered run could reserve twice
)
def run_registration(self, payload: dict[str, Any]) -> dict:
    """Drive one registration through the provider pipeline.

    Args:
        payload: Dictionary containing:
            - canonical_url: Provider registration URL
            - user_id: Parent user ID
            - session_id: Camp session ID
            - child_token: Vault reference to the child profile (optional)
            - registration_id: Stable registration key (optional)
            - metadata: Vault refs, consent flags, timezone (optional)
            - intent: Session filters (optional)
            - accept_waitlist: Finalize even when waitlisted (optional)

    Returns:
        The registration outcome as a dictionary.
    """
    # Import here to avoid circular imports
    from signup_core.domain.services.provider_registry import ProfileLoadError
    from signup_core.providers.base import ProviderContext, ProviderIntent

    missing = [name for name in REQUIRED_FIELDS if not payload.get(name)]
    if missing:
        return {
            "status": "error",
            "error": f"Missing required payload fields: {', '.join(missing)}",
        }

    ctx = ProviderContext(
        canonical_url=payload["canonical_url"],
        user_id=payload["user_id"],
        session_id=payload["session_id"],
        child_token=payload.get("child_token"),
        metadata=payload.get("metadata") or {},
        registration_id=payload.get("registration_id"),
    )
    intent = ProviderIntent(**payload["intent"]) if payload.get("intent") else None
    accept_waitlist = bool(payload.get("accept_waitlist"))

    async def work(services):
        return await services.orchestrator.run(ctx, intent, accept_waitlist)

    try:
        outcome = run_with_services(work)
    except ProfileLoadError as exc:
        logger.error(f"Provider profiles unavailable, retrying: {exc}")
        raise self.retry(exc=exc, countdown=30)

    return outcome.to_dict()


@app.task(name="registration.resume", bind=True, max_retries=0, acks_late=False)
def resume_registration(self, workflow_id: int) -> dict:
    """Continue a registration whose assistance workflow has completed."""
    from signup_core.domain.services.assistance_workflow import WorkflowError

    async def work(services):
        return await services.orchestrator.resume(workflow_id)

    try:
        outcome = run_with_services(work)
    except WorkflowError as exc:
        logger.info(f"Workflow {workflow_id} not resumable: {exc}")
        return {"status": "skipped", "workflow_id": workflow_id, "reason": str(exc)}

    return outcome.to_dict()
