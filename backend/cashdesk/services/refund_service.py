"""
Refund proration engine

WHY: A refund must never give back more than was sold. Each credit note
consumes quantities of the original lines and part of the invoice's TTC
total; both budgets are recomputed from stored credit notes on every
request.

INVARIANTS:
- Σ refunded quantity per line <= original quantity
- Σ credit-note TTC per invoice <= invoice TTC
- Violations are rejected, never clamped
- Credit notes are written once and never modified

CONCURRENCY: the invoice row is locked and its refunded_total_cents
bumped in the refund transaction. The invoice version_id makes a refund
that computed its budget from stale data fail at flush and start over.
"""

from __future__ import annotations

import logging
from collections import OrderedDict

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..errors import (
    AmountExceedsRemainingError,
    InvalidRefundLineError,
    InvoiceNotFoundError,
    InvoiceNotRefundableError,
    MissingReasonError,
    NothingToRefundError,
    OverRefundError,
    UnpricedLineError,
    ValidationError,
)
from ..extensions import db
from ..models import CashRegister, CashSession, CreditNote, CreditNoteLine, Invoice
from ..models.registers import MOVEMENT_CASH_OUT, SESSION_STATUS_OPEN
from ..models.sales import INVOICE_STATUS_DRAFT, REFUND_TYPE_FULL, REFUND_TYPE_PARTIAL, REFUND_TYPES
from .audit_service import append_audit_event
from .concurrency import ConcurrentWriteConflict, lock_for_update, run_with_retry
from .hash_chain import GENESIS_HASH, compute_report_hash, verify_chain
from .ledger_service import append_movement
from .proration import prorate_line
from .sequence_service import next_document_number
from cashdesk.time_utils import to_utc_z, utcnow


logger = logging.getLogger(__name__)

CREDIT_NOTE_PREFIX = "AV"
NO_COMPANY = "-"


# =============================================================================
# CHAIN
# =============================================================================

def credit_note_chain_scope(company_id: str | None, year: int) -> str:
    return f"{company_id or NO_COMPANY}/{year}"


def _company_of(invoice: Invoice) -> str | None:
    register_id = invoice.register_id
    if register_id is None and invoice.session is not None:
        register_id = invoice.session.register_id
    if register_id is None:
        return None
    register = db.session.get(CashRegister, register_id)
    return register.company_id if register else None


def _credit_note_figures(note: CreditNote) -> dict:
    """Fields covered by the hash: the note, its lines and its chain position."""
    return {
        "number": note.number,
        "chain_scope": note.chain_scope,
        "sequence_number": note.sequence_number,
        "invoice_id": note.invoice_id,
        "session_id": note.session_id,
        "refund_type": note.refund_type,
        "refund_method": note.refund_method,
        "reason": note.reason,
        "total_ht_cents": note.total_ht_cents,
        "total_tva_cents": note.total_tva_cents,
        "total_ttc_cents": note.total_ttc_cents,
        "created_by": note.created_by,
        "created_at": to_utc_z(note.created_at),
        "lines": [
            {
                "original_item_index": line.original_item_index,
                "quantity": line.quantity,
                "total_ht_cents": line.total_ht_cents,
                "total_tva_cents": line.total_tva_cents,
                "total_ttc_cents": line.total_ttc_cents,
                "strategy": line.strategy,
            }
            for line in note.lines
        ],
    }


def _chain_credit_note(note: CreditNote, company_id: str | None, year: int) -> None:
    """Give ``note`` the next position of its company/year chain and seal it."""
    scope = credit_note_chain_scope(company_id, year)
    last = db.session.query(CreditNote).filter_by(
        chain_scope=scope
    ).order_by(CreditNote.sequence_number.desc()).first()

    note.chain_scope = scope
    note.sequence_number = (last.sequence_number + 1) if last else 1
    note.previous_hash = last.hash if last else GENESIS_HASH
    note.hash = compute_report_hash(_credit_note_figures(note), note.previous_hash)


def verify_credit_note_chain(company_id: str | None, year: int) -> dict:
    """Recompute every hash of a company's credit-note chain for a year."""
    scope = credit_note_chain_scope(company_id, year)
    notes = db.session.query(CreditNote).filter_by(
        chain_scope=scope
    ).order_by(CreditNote.sequence_number).all()

    result = verify_chain(notes, _credit_note_figures)
    if not result["valid"]:
        logger.warning(
            "Credit note chain %s broken at sequence %s (%s)", scope, result["broken_at"], result["reason"],
        )
    return {"chain_scope": scope, **result}


# =============================================================================
# STATE OF AN INVOICE
# =============================================================================

def _refunded_quantities(invoice_id: int) -> dict[int, int]:
    """Already refunded quantity per original line index."""
    rows = db.session.query(
        CreditNoteLine.original_item_index,
        func.coalesce(func.sum(CreditNoteLine.quantity), 0),
    ).join(
        CreditNote, CreditNote.id == CreditNoteLine.credit_note_id
    ).filter(
        CreditNote.invoice_id == invoice_id
    ).group_by(CreditNoteLine.original_item_index).all()
    return {int(index): int(qty or 0) for index, qty in rows}


def _credited_totals(invoice_id: int) -> tuple[int, int]:
    """(Σ TTC, Σ HT) of every credit note already issued against the invoice."""
    ttc, ht = db.session.query(
        func.coalesce(func.sum(CreditNote.total_ttc_cents), 0),
        func.coalesce(func.sum(CreditNote.total_ht_cents), 0),
    ).filter(CreditNote.invoice_id == invoice_id).one()
    return int(ttc or 0), int(ht or 0)


def _has_full_credit_note(invoice_id: int) -> bool:
    return db.session.query(CreditNote.id).filter_by(
        invoice_id=invoice_id, refund_type=REFUND_TYPE_FULL
    ).first() is not None


def _refundable_lines(invoice: Invoice, refunded: dict[int, int]) -> list[dict]:
    lines = []
    for item in invoice.items:
        original = item.quantity or 0
        done = refunded.get(item.position, 0)
        remaining = max(0, original - done)
        lines.append({
            "index": item.position,
            "name": item.name,
            "original_qty": original,
            "refunded_qty": done,
            "remaining_qty": remaining,
            "can_refund": remaining > 0,
        })
    return lines


def get_refundable_items(invoice_id: int) -> dict:
    """Remaining quantities per line plus the remaining refundable amount."""
    invoice = db.session.get(Invoice, invoice_id)
    if not invoice:
        raise InvoiceNotFoundError("Invoice not found", invoice_id=invoice_id)

    refunded = _refunded_quantities(invoice.id)
    credited_ttc, _ = _credited_totals(invoice.id)
    return {
        "invoice_id": invoice.id,
        "number": invoice.number,
        "total_ttc_cents": invoice.total_ttc_cents,
        "credit_notes_total_cents": credited_ttc,
        "remaining_amount_cents": max(0, invoice.total_ttc_cents - credited_ttc),
        "items": _refundable_lines(invoice, refunded),
    }


# =============================================================================
# REQUEST VALIDATION
# =============================================================================

def _normalize_lines(lines) -> "OrderedDict[int, dict]":
    """Requested lines keyed by index; duplicate indexes are summed."""
    if not isinstance(lines, list) or not lines:
        raise InvalidRefundLineError("A partial refund needs at least one line")

    requested: "OrderedDict[int, dict]" = OrderedDict()
    for position, raw in enumerate(lines):
        if not isinstance(raw, dict):
            raise InvalidRefundLineError("Each refund line must be an object", line=position)

        index = raw.get("original_item_index", raw.get("index"))
        quantity = raw.get("quantity")
        if isinstance(index, bool) or not isinstance(index, int) or index < 0:
            raise InvalidRefundLineError("Refund line index must be a non-negative integer", line=position, index=index)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidRefundLineError(
                "Refund line quantity must be a positive integer", line=position, index=index, quantity=quantity
            )

        entry = requested.setdefault(index, {"quantity": 0, "reason": None})
        entry["quantity"] += quantity
        line_reason = raw.get("reason")
        if line_reason and not entry["reason"]:
            entry["reason"] = str(line_reason).strip()[:255] or None
    return requested


# =============================================================================
# REFUND
# =============================================================================

def request_refund(
    invoice_id: int,
    mode: str,
    lines: list[dict] | None = None,
    refund_method: str | None = None,
    reason: str | None = None,
    actor: str | None = None,
) -> dict:
    """
    Issue a credit note against an invoice.

    Modes:
    - full: every remaining quantity, for exactly the remaining amount
    - partial: the requested lines, priced by the proration strategies

    When refunded in cash, a cash_out movement is appended to the
    register's open session in the same transaction. If no session is
    open the credit note is still issued and no movement is written: the
    cash then leaves the till with no ledger entry, and the next count
    of that till comes out short by the refund. The warning logged here
    is what explains that difference.

    Every note takes the next position of its company/year hash chain.

    Returns {"credit_note", "cash_movement", "refundable_items"}.
    """
    if mode not in REFUND_TYPES:
        raise ValidationError("mode must be 'full' or 'partial'", field="mode", value=mode)

    refund_method = refund_method or "other"
    allowed_methods = current_app.config.get("CASH_PAYMENT_METHODS", ())
    if refund_method not in allowed_methods:
        raise ValidationError(
            f"Unknown refund method '{refund_method}'", field="refund_method", allowed=list(allowed_methods)
        )

    reason = (reason or "").strip()
    if not reason:
        raise MissingReasonError("A reason is required for every refund", invoice_id=invoice_id)
    if len(reason) > 255:
        raise ValidationError("Refund reason exceeds 255 characters", length=len(reason))

    requested = _normalize_lines(lines) if mode == REFUND_TYPE_PARTIAL else None
    cash_method = current_app.config.get("CASH_PAYMENT_METHOD", "cash")
    actor = actor or "system"

    def _op():
        invoice = lock_for_update(db.session.query(Invoice).filter_by(id=invoice_id)).first()
        if not invoice:
            raise InvoiceNotFoundError("Invoice not found", invoice_id=invoice_id)
        if invoice.status == INVOICE_STATUS_DRAFT:
            raise InvoiceNotRefundableError("A draft invoice cannot be refunded", invoice_id=invoice.id)

        refunded = _refunded_quantities(invoice.id)
        credited_ttc, credited_ht = _credited_totals(invoice.id)
        remaining_amount = max(0, invoice.total_ttc_cents - credited_ttc)

        def _nothing_left():
            return NothingToRefundError(
                "Invoice is already fully refunded",
                invoice_id=invoice.id,
                total_ttc_cents=invoice.total_ttc_cents,
                credit_notes_total_cents=credited_ttc,
            )

        # Partial requests on a partially refunded invoice report the
        # exhausted line (OverRefund) before the exhausted balance.
        if remaining_amount == 0 and (mode == REFUND_TYPE_FULL or _has_full_credit_note(invoice.id)):
            raise _nothing_left()

        items_by_index = {item.position: item for item in invoice.items}
        credit_lines: list[CreditNoteLine] = []

        if mode == REFUND_TYPE_FULL:
            for item in invoice.items:
                done = refunded.get(item.position, 0)
                qty = max(0, (item.quantity or 0) - done)
                if qty == 0:
                    continue
                try:
                    amounts = prorate_line(item, qty, done)
                    ht, tva, ttc, strategy = (
                        amounts.total_ht_cents, amounts.total_tva_cents, amounts.total_ttc_cents, amounts.strategy
                    )
                except UnpricedLineError:
                    # Full refunds are priced on the invoice balance, not per line
                    ht, tva, ttc, strategy = 0, 0, 0, "unpriced"
                credit_lines.append(CreditNoteLine(
                    original_item_index=item.position,
                    name=item.name,
                    quantity=qty,
                    total_ht_cents=ht,
                    total_tva_cents=tva,
                    total_ttc_cents=ttc,
                    strategy=strategy,
                ))

            total_ttc = remaining_amount
            total_ht = min(max(0, invoice.total_ht_cents - credited_ht), total_ttc)
        else:
            total_ttc = 0
            total_ht = 0
            for index, entry in requested.items():
                item = items_by_index.get(index)
                if item is None:
                    raise InvalidRefundLineError(
                        f"Invoice has no line {index}", invoice_id=invoice.id, index=index
                    )
                done = refunded.get(index, 0)
                remaining_qty = max(0, (item.quantity or 0) - done)
                if entry["quantity"] > remaining_qty:
                    raise OverRefundError(
                        f"Cannot refund {entry['quantity']} of line {index}: only {remaining_qty} left",
                        index=index,
                        requested=entry["quantity"],
                        remaining=remaining_qty,
                    )

                amounts = prorate_line(item, entry["quantity"], done)
                credit_lines.append(CreditNoteLine(
                    original_item_index=index,
                    name=item.name,
                    quantity=entry["quantity"],
                    total_ht_cents=amounts.total_ht_cents,
                    total_tva_cents=amounts.total_tva_cents,
                    total_ttc_cents=amounts.total_ttc_cents,
                    strategy=amounts.strategy,
                    reason=entry["reason"],
                ))
                total_ttc += amounts.total_ttc_cents
                total_ht += amounts.total_ht_cents

            if remaining_amount == 0:
                raise _nothing_left()
            if total_ttc > remaining_amount:
                raise AmountExceedsRemainingError(
                    "Refund amount exceeds what remains refundable on the invoice",
                    invoice_id=invoice.id,
                    requested_cents=total_ttc,
                    remaining_cents=remaining_amount,
                )

        now = utcnow()
        year = now.year
        number = next_document_number(
            scope=f"{CREDIT_NOTE_PREFIX}-{year}",
            document_type="credit_note",
            prefix=f"{CREDIT_NOTE_PREFIX}-{year}",
        )

        credit_note = CreditNote(
            number=number,
            invoice_id=invoice.id,
            session_id=invoice.session_id,
            refund_type=mode,
            refund_method=refund_method,
            reason=reason,
            total_ht_cents=total_ht,
            total_tva_cents=total_ttc - total_ht,
            total_ttc_cents=total_ttc,
            created_by=actor,
            created_at=now,
        )
        credit_note.lines.extend(credit_lines)
        _chain_credit_note(credit_note, _company_of(invoice), year)
        db.session.add(credit_note)

        # Version bump on the invoice: a concurrent refund fails at flush
        invoice.refunded_total_cents = credited_ttc + total_ttc
        try:
            db.session.flush()
        except IntegrityError as exc:
            # Chain position or number taken by a refund on another invoice
            raise ConcurrentWriteConflict(f"credit note chain {credit_note.chain_scope} moved") from exc

        movement = None
        if refund_method == cash_method and total_ttc > 0:
            register_id = invoice.register_id
            if register_id is None and invoice.session is not None:
                register_id = invoice.session.register_id
            open_session = None
            if register_id is not None:
                open_session = lock_for_update(
                    db.session.query(CashSession).filter_by(register_id=register_id, status=SESSION_STATUS_OPEN)
                ).first()
            if open_session is not None:
                movement = append_movement(
                    open_session,
                    movement_type=MOVEMENT_CASH_OUT,
                    amount_cents=total_ttc,
                    reason=f"Refund {number} ({invoice.number})",
                    actor=actor,
                    invoice_id=invoice.id,
                    credit_note_id=credit_note.id,
                )
            else:
                logger.warning(
                    "Cash refund %s on invoice %s: no open session on register %s, no movement written",
                    number, invoice.number, register_id,
                )

        append_audit_event(
            event_type="credit_note.created",
            entity_type="credit_note",
            entity_id=credit_note.id,
            actor=actor,
            register_id=invoice.register_id,
            session_id=invoice.session_id,
            occurred_at=now,
            payload={
                "number": number,
                "invoice_id": invoice.id,
                "refund_type": mode,
                "refund_method": refund_method,
                "total_ttc_cents": total_ttc,
                "cash_movement_id": movement.id if movement else None,
            },
        )
        db.session.commit()
        return credit_note, movement

    credit_note, movement = run_with_retry(_op)
    logger.info(
        "Credit note %s issued on invoice %s (%s, %d cents, %s)",
        credit_note.number, invoice_id, mode, credit_note.total_ttc_cents, refund_method,
    )
    return {
        "credit_note": credit_note.to_dict(),
        "cash_movement": movement.to_dict() if movement else None,
        "refundable_items": get_refundable_items(invoice_id),
    }


# =============================================================================
# QUERIES
# =============================================================================

def list_credit_notes(invoice_id: int | None = None, session_id: int | None = None) -> list[CreditNote]:
    query = db.session.query(CreditNote)
    if invoice_id is not None:
        query = query.filter(CreditNote.invoice_id == invoice_id)
    if session_id is not None:
        query = query.filter(CreditNote.session_id == session_id)
    return query.order_by(CreditNote.created_at, CreditNote.id).all()


def summarize_session_refunds(session_id: int) -> dict:
    """Credit notes whose original invoice belongs to the session."""
    rows = db.session.query(
        CreditNote.refund_method,
        func.count(CreditNote.id),
        func.coalesce(func.sum(CreditNote.total_ttc_cents), 0),
    ).filter(
        CreditNote.session_id == session_id
    ).group_by(CreditNote.refund_method).all()

    by_method: dict[str, int] = {}
    count = 0
    total = 0
    for method, n, amount in rows:
        by_method[method] = int(amount or 0)
        count += int(n or 0)
        total += int(amount or 0)
    return {"refund_count": count, "refund_total_cents": total, "by_method": by_method}
