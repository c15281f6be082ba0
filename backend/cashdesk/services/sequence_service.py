# Overview: Gap-free document numbering for credit notes.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from .concurrency import ConcurrentWriteConflict


def next_document_number(
    *,
    scope: str,
    document_type: str,
    prefix: str,
    pad: int = 6,
) -> str:
    """
    Allocate the next document number for (scope, document_type).

    Runs inside the caller's transaction: the UPDATE holds the sequence
    row until commit, and a rollback gives the number back. When two
    callers race to create the first row, the loser raises
    ConcurrentWriteConflict so the enclosing run_with_retry starts over.
    """
    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.scope == scope,
            DocumentSequence.document_type == document_type,
        )
        .values(next_number=DocumentSequence.next_number + 1)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        current = (
            db.session.query(DocumentSequence.next_number)
            .filter_by(scope=scope, document_type=document_type)
            .scalar()
        )
        next_num = current - 1
    else:
        seq = DocumentSequence(scope=scope, document_type=document_type, next_number=2)
        db.session.add(seq)
        try:
            db.session.flush()
        except IntegrityError as exc:
            raise ConcurrentWriteConflict(f"sequence {scope}/{document_type} created concurrently") from exc
        next_num = 1

    return f"{prefix}-{next_num:0{pad}d}"
