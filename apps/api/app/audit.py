from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.models.audit import AuditLog, utcnow

audit_entries: list[dict[str, Any]] = []


def record(
    session: Session,
    workspace_id: uuid.UUID,
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> AuditLog:
    resolved_correlation_id = correlation_id or get_correlation_id()
    entry = AuditLog(
        id=uuid.uuid4(),
        workspace_id=workspace_id,
        actor_user_id=actor_user_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        before=before,
        after=after,
        correlation_id=resolved_correlation_id,
        occurred_at=utcnow(),
    )
    session.add(entry)
    audit_entries.append(
        {
            "id": str(entry.id),
            "workspace_id": str(workspace_id),
            "actor_user_id": actor_user_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action": action,
            "before": before,
            "after": after,
            "correlation_id": resolved_correlation_id,
            "occurred_at": entry.occurred_at.isoformat(),
        }
    )
    return entry
