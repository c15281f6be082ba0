# Overview: Append-only audit trail written inside the caller's transaction.

"""
Audit trail invariants

- Append-only: no update or delete path.
- No business logic here; callers decide what is worth recording.
- Events are flushed, never committed, so they share the fate of the
  state transition they describe.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from ..extensions import db
from ..models import AuditEvent
from cashdesk.time_utils import utcnow


def append_audit_event(
    *,
    event_type: str,
    entity_type: str,
    entity_id: int,
    actor: str | None = None,
    register_id: int | None = None,
    session_id: int | None = None,
    occurred_at: Optional[datetime] = None,
    payload: Optional[dict[str, Any]] = None,
) -> AuditEvent:
    ev = AuditEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        actor=actor,
        register_id=register_id,
        session_id=session_id,
        occurred_at=occurred_at or utcnow(),
        payload=payload,
    )
    db.session.add(ev)
    db.session.flush()  # ensures ev.id is assigned without committing
    return ev


def list_audit_events(
    *,
    entity_type: str | None = None,
    entity_id: int | None = None,
    session_id: int | None = None,
    limit: int = 100,
) -> list[AuditEvent]:
    query = db.session.query(AuditEvent)
    if entity_type:
        query = query.filter(AuditEvent.entity_type == entity_type)
    if entity_id is not None:
        query = query.filter(AuditEvent.entity_id == entity_id)
    if session_id is not None:
        query = query.filter(AuditEvent.session_id == session_id)
    return query.order_by(AuditEvent.occurred_at, AuditEvent.id).limit(limit).all()
