"""
Append-only audit trail. Events are added to the caller's session and commit
with the change they describe.
"""

import json
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.petmemorial.models import AuditEvent, User


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> AuditEvent:
    in_request = has_request_context()
    ev = AuditEvent(
        request_id=getattr(g, "request_id", None) if in_request else None,
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        # Form values may carry dates; store them as their string form.
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=request.remote_addr if in_request else None,
    )
    s.add(ev)
    return ev


def entity_history(s: Session, entity_type: str, entity_id: str, *, limit: int = 10) -> list[AuditEvent]:
    """Newest first."""
    return (
        s.query(AuditEvent)
        .filter(AuditEvent.entity_type == entity_type)
        .filter(AuditEvent.entity_id == entity_id)
        .order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
        .limit(limit)
        .all()
    )
