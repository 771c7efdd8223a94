"""Metrics API routes for operators."""

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter

from signup_core.observability.metrics import get_collector

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
async def get_metrics() -> dict[str, Any]:
    """Snapshot of in-process metrics.

    Includes registration run outcomes and durations and notification
    delivery counts by method and result.
    """
    return {
        "collected_at": datetime.now(timezone.utc).isoformat(),
        "application": get_collector().get_all(),
    }
