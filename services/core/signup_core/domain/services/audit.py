"""Audit log service.

Trust classifications and denied automation authorizations are recorded
here. Entries are append-only.
"""

from typing import Optional

from sqlalchemy.orm import Session as DBSession

from signup_core.domain.models import AuditActor, AuditLog, AuditResult, utcnow

VALID_ACTORS = {AuditActor.SYSTEM, AuditActor.PARENT, AuditActor.ADAPTER}
VALID_RESULTS = {AuditResult.OK, AuditResult.DENIED, AuditResult.ERROR}


class AuditService:
    """Service for audit log operations."""

    def __init__(self, db: DBSession):
        self.db = db

    def create_entry(
        self,
        actor: str,
        action_type: str,
        result: str,
        user_id: Optional[str] = None,
        hostname: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        request_json: Optional[dict] = None,
        response_json: Optional[dict] = None,
        error_detail: Optional[str] = None,
    ) -> AuditLog:
        """Create a new audit log entry.

        Args:
            actor: Who performed the action (system, parent, adapter).
            action_type: Dotted action name (e.g. "trust.classify").
            result: ok, denied or error.
            user_id: Parent the action was taken for.
            hostname: Provider hostname involved.
            entity_type: Optional entity type.
            entity_id: Optional entity ID.
            request_json: Optional request data.
            response_json: Optional response data.
            error_detail: Optional error details.

        Raises:
            ValueError: If actor or result is invalid.
        """
        if actor not in VALID_ACTORS:
            raise ValueError(f"actor must be one of {sorted(VALID_ACTORS)}, got '{actor}'")
        if result not in VALID_RESULTS:
            raise ValueError(f"result must be one of {sorted(VALID_RESULTS)}, got '{result}'")

        entry = AuditLog(
            ts=utcnow(),
            actor=actor,
            action_type=action_type,
            result=result,
            user_id=user_id,
            hostname=hostname,
            entity_type=entity_type,
            entity_id=entity_id,
            request_json=request_json,
            response_json=response_json,
            error_detail=error_detail,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def list_entries(
        self,
        action_type: Optional[str] = None,
        hostname: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[AuditLog]:
        """List the most recent entries, newest first."""
        query = self.db.query(AuditLog)
        if action_type:
            query = query.filter(AuditLog.action_type == action_type)
        if hostname:
            query = query.filter(AuditLog.hostname == hostname)
        if user_id:
            query = query.filter(AuditLog.user_id == user_id)
        return query.order_by(AuditLog.ts.desc(), AuditLog.id.desc()).limit(limit).all()
