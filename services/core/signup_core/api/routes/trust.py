"""Provider trust API routes."""

from typing import Optional

from fastapi import APIRouter, Query

from signup_core.api.deps import Services
from signup_core.api.schemas.trust import TrustCheckResponse
from signup_core.domain.services.trust_gate import AutomationType

router = APIRouter(prefix="/trust", tags=["trust"])


@router.get("/check", response_model=TrustCheckResponse)
async def check_provider(
    services: Services,
    url: str = Query(..., description="Provider registration URL"),
    automation_type: AutomationType = Query(AutomationType.FORM_FILL, description="Automation to authorize"),
    user_id: Optional[str] = Query(None, description="Parent asking, for the audit trail"),
):
    """Classify a provider and report whether automation is allowed."""
    gate = services.trust_gate
    check = gate.check_tos(url, user_id=user_id)

    if check.hostname:
        decision = gate.is_automation_allowed(url, automation_type, user_id=user_id)
        allowed, automation_reason = decision.allowed, decision.reason
        relationship = gate.analyze_provider(url).relationship_status
    else:
        allowed, automation_reason = False, "Provider URL could not be read"
        relationship = None

    return TrustCheckResponse(
        hostname=check.hostname,
        status=check.status,
        can_proceed=check.can_proceed,
        requires_consent=check.requires_consent,
        reason=check.reason,
        parent_explanation=check.parent_explanation,
        confidence=check.confidence,
        relationship_status=relationship,
        automation_allowed=allowed,
        automation_reason=automation_reason,
    )
