from __future__ import annotations

from ..extensions import db
from cashdesk.time_utils import to_utc_z


class AuditEvent(db.Model):
    """
    Append-only audit trail of cash state transitions.

    Written inside the same transaction as the change it records, so an
    event exists if and only if the change committed.
    """
    __tablename__ = "audit_events"
    __table_args__ = (
        db.Index("ix_audit_events_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(64), nullable=False, index=True)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)

    register_id = db.Column(db.Integer, nullable=True, index=True)
    session_id = db.Column(db.Integer, nullable=True, index=True)
    actor = db.Column(db.String(64), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    payload = db.Column(db.JSON, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "register_id": self.register_id,
            "session_id": self.session_id,
            "actor": self.actor,
            "occurred_at": to_utc_z(self.occurred_at),
            "payload": self.payload,
        }
