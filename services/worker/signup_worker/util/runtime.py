"""Run core coroutines from synchronous Celery tasks.

Each task gets its own database session and, inside the event loop that
``asyncio.run`` creates, its own Redis client for the host throttle.
"""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")


def run_with_services(work: Callable[[Any], Awaitable[T]]) -> T:
    """Build the service graph around a fresh session and run ``work`` on it.

    The session commits when ``work`` returns and rolls back if it raises.
    """
    # Import here to avoid loading the core at worker import time
    import redis.asyncio as aioredis

    from signup_core.bootstrap import build_services
    from signup_core.config import get_settings
    from signup_core.infra.db import session_scope

    settings = get_settings()

    async def _run(db) -> T:
        redis_client = aioredis.from_url(settings.redis_url)
        try:
            services = build_services(db, settings, redis_client=redis_client)
            return await work(services)
        finally:
            await redis_client.aclose()

    with session_scope() as db:
        return asyncio.run(_run(db))
