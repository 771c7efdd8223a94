"""API dependencies for dependency injection."""

from typing import Annotated

from celery import Celery
from fastapi import Depends, Request
from sqlalchemy.orm import Session

from signup_core.bootstrap import ServiceContainer, build_services
from signup_core.config import get_settings
from signup_core.infra.db import get_sync_session_factory


def get_db() -> Session:
    """Get a database session."""
    session_factory = get_sync_session_factory()
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_services(request: Request, db: Annotated[Session, Depends(get_db)]) -> ServiceContainer:
    """Build the service graph around the request's database session."""
    settings = getattr(request.app.state, "settings", None) or get_settings()
    return build_services(
        db,
        settings,
        redis_client=getattr(request.app.state, "redis", None),
    )


def get_task_queue() -> Celery:
    """Celery client used to hand work to the worker."""
    settings = get_settings()
    celery_app = Celery(
        "signup",
        broker=settings.celery_broker_url,
        backend=settings.celery_result_backend,
    )
    celery_app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
    )
    return celery_app


# Type aliases for cleaner route signatures
DBSession = Annotated[Session, Depends(get_db)]
Services = Annotated[ServiceContainer, Depends(get_services)]
TaskQueue = Annotated[Celery, Depends(get_task_queue)]
