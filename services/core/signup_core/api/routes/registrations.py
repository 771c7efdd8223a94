"""Registration run API routes."""

from typing import Union

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import JSONResponse

from signup_core.api.deps import Services, TaskQueue
from signup_core.api.schemas.registration import (
    QueuedRunResponse,
    RegistrationOutcomeResponse,
    RunRegistrationRequest,
)
from signup_core.domain.services.assistance_workflow import (
    InvalidTransitionError,
    WorkflowNotFoundError,
)
from signup_core.domain.services.provider_registry import ProfileLoadError
from signup_core.observability.logging import get_logger
from signup_core.providers.base import ProviderContext, ProviderIntent

logger = get_logger(__name__)

router = APIRouter(prefix="/registrations", tags=["registrations"])


@router.post(
    "/run",
    response_model=Union[RegistrationOutcomeResponse, QueuedRunResponse],
)
async def run_registration(request: RunRegistrationRequest, services: Services, tasks: TaskQueue):
    """Drive one registration through the provider pipeline.

    With ``background`` set the run is queued on the worker and a task id
    is returned with 202; otherwise the outcome is returned directly.
    """
    if request.background:
        task = tasks.send_task(
            "registration.run",
            kwargs={"payload": request.model_dump(exclude={"background"})},
            queue="registrations",
        )
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=QueuedRunResponse(task_id=task.id).model_dump(),
        )

    ctx = ProviderContext(
        canonical_url=request.canonical_url,
        user_id=request.user_id,
        session_id=request.session_id,
        child_token=request.child_token,
        metadata={"timezone": services.settings.default_timezone, **request.metadata},
        registration_id=request.registration_id,
    )
    intent = ProviderIntent(**request.intent.model_dump()) if request.intent else None

    try:
        outcome = await services.orchestrator.run(ctx, intent, request.accept_waitlist)
    except ProfileLoadError as e:
        logger.error("Provider profiles unavailable", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Provider profiles are unavailable",
        )

    return RegistrationOutcomeResponse(**outcome.to_dict())


@router.post("/workflows/{workflow_id}/resume", response_model=RegistrationOutcomeResponse)
async def resume_registration(workflow_id: int, services: Services):
    """Continue a registration whose assistance workflow has completed."""
    try:
        outcome = await services.orchestrator.resume(workflow_id)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return RegistrationOutcomeResponse(**outcome.to_dict())
