import json
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.lims.models import AuditLog, User


def record_event(
    s: Session,
    *,
    actor: User | None,
    module: str,
    action: str,
    details: str | None = None,
    entity_type: str | None = None,
    entity_id: int | str | None = None,
    metadata: dict[str, Any] | None = None,
    lab_id: int | None = None,
    actor_name: str | None = None,
) -> AuditLog:
    """
    Append-only audit helper. The lab defaults to the actor's lab;
    pass lab_id/actor_name explicitly for portal or anonymous events.
    """
    rid = getattr(g, "request_id", None) if has_request_context() else None
    ev = AuditLog(
        request_id=rid,
        lab_id=lab_id if lab_id is not None else (actor.lab_id if actor else None),
        user_id=actor.id if actor else None,
        user_name=actor.name if actor else actor_name,
        module=module,
        action=action,
        details=details,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=request.remote_addr if has_request_context() else None,
    )
    s.add(ev)
    return ev
