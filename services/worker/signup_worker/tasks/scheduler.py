"""Scheduler tasks.

``dispatch_due`` runs on a short beat interval and executes every due job
on the ``scheduler`` queue: notification escalations and fallbacks,
assistance workflow advancement and registration resumption.
"""

import logging

from signup_worker.celery_app import app
from signup_worker.util.runtime import run_with_services

logger = logging.getLogger(__name__)


@app.task(name="scheduler.dispatch_due", bind=True, max_retries=0)
def dispatch_due(self) -> dict:
    """Execute all due scheduler jobs once.

    Failing jobs are retried by the job ledger's own backoff, so the task
    itself never retries.

    Returns:
        Dictionary with claimed/completed/failed counts.
    """

    async def work(services):
        return await services.scheduler.run_due()

    summary = run_with_services(work)
    if summary.failed:
        logger.warning(f"Scheduler pass had {summary.failed} failed job(s)")
    return {"status": "ok", **summary.to_dict()}


@app.task(name="scheduler.purge_expired_locks", bind=True, max_retries=0)
def purge_expired_locks(self) -> dict:
    """Delete registration locks whose TTL has passed."""

    async def work(services):
        return services.locks.purge_expired()

    purged = run_with_services(work)
    if purged:
        logger.info(f"Purged {purged} expired registration lock(s)")
    return {"status": "ok", "purged": purged}
