"""Assistance workflow API routes."""

from fastapi import APIRouter, HTTPException, status

from signup_core.api.deps import Services
from signup_core.api.schemas.assistance import (
    AssistanceRequestResponse,
    CompleteRequestBody,
    FailRequestBody,
    WorkflowProgressResponse,
    WorkflowResponse,
)
from signup_core.domain.services.assistance_workflow import (
    AssistanceWorkflowService,
    InvalidTransitionError,
    RequestNotFoundError,
    WorkflowNotFoundError,
)

router = APIRouter(prefix="/assistance", tags=["assistance"])


def _workflow_response(workflows: AssistanceWorkflowService, workflow_id: int) -> WorkflowResponse:
    workflow = workflows.get_workflow(workflow_id)
    progress = workflows.get_progress(workflow_id)
    return WorkflowResponse(
        id=workflow.id,
        user_id=workflow.user_id,
        registration_id=workflow.registration_id,
        status=workflow.status,
        created_at=workflow.created_at,
        completed_at=workflow.completed_at,
        requests=[
            AssistanceRequestResponse.model_validate(r)
            for r in workflows.list_requests(workflow_id)
        ],
        progress=WorkflowProgressResponse(**vars(progress)),
    )


def _not_found(e: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _conflict(e: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


# =============================================================================
# WORKFLOWS
# =============================================================================


@router.get("/workflows/{workflow_id}", response_model=WorkflowResponse)
async def get_workflow(workflow_id: int, services: Services):
    """Get a workflow with its requests and progress."""
    try:
        return _workflow_response(services.workflows, workflow_id)
    except WorkflowNotFoundError as e:
        raise _not_found(e)


@router.post("/workflows/{workflow_id}/pause", response_model=WorkflowResponse)
async def pause_workflow(workflow_id: int, services: Services):
    """Pause the active request. Pausing with nothing active is a no-op."""
    try:
        services.workflows.pause(workflow_id)
        return _workflow_response(services.workflows, workflow_id)
    except WorkflowNotFoundError as e:
        raise _not_found(e)
    except InvalidTransitionError as e:
        raise _conflict(e)


@router.post("/workflows/{workflow_id}/resume", response_model=WorkflowResponse)
async def resume_workflow(workflow_id: int, services: Services):
    """Reactivate the paused request."""
    try:
        services.workflows.resume(workflow_id)
        return _workflow_response(services.workflows, workflow_id)
    except WorkflowNotFoundError as e:
        raise _not_found(e)
    except InvalidTransitionError as e:
        raise _conflict(e)


# =============================================================================
# REQUESTS
# =============================================================================


@router.post("/requests/{request_id}/complete", response_model=AssistanceRequestResponse)
async def complete_request(request_id: int, body: CompleteRequestBody, services: Services):
    """Record the parent's answer; the next request activates shortly after."""
    try:
        request = services.workflows.complete_request(request_id, body.response)
    except RequestNotFoundError as e:
        raise _not_found(e)
    except InvalidTransitionError as e:
        raise _conflict(e)
    return AssistanceRequestResponse.model_validate(request)


@router.post("/requests/{request_id}/fail", response_model=AssistanceRequestResponse)
async def fail_request(request_id: int, body: FailRequestBody, services: Services):
    """Mark a request failed. The workflow stops until the request is retried."""
    try:
        request = services.workflows.fail_request(request_id, body.error)
    except RequestNotFoundError as e:
        raise _not_found(e)
    except InvalidTransitionError as e:
        raise _conflict(e)
    return AssistanceRequestResponse.model_validate(request)


@router.post("/requests/{request_id}/retry", response_model=AssistanceRequestResponse)
async def retry_request(request_id: int, services: Services):
    try:
        request = services.workflows.retry_request(request_id)
    except RequestNotFoundError as e:
        raise _not_found(e)
    except InvalidTransitionError as e:
        raise _conflict(e)
    return AssistanceRequestResponse.model_validate(request)
