from __future__ import annotations

from ..extensions import db


class DocumentSequence(db.Model):
    """Next number per (scope, document type); bumped with an atomic UPDATE."""
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("scope", "document_type", name="uq_document_sequences_scope_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    scope = db.Column(db.String(64), nullable=False)
    document_type = db.Column(db.String(32), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
