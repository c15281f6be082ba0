# Overview: Boundary adapter feeding sold invoices into the cash core's read model.

"""
Sales read model

The sales subsystem owns invoices; the cash core only keeps the fields it
reports and refunds on. Ingestion is the single entry point:

- Invoices may reference a register and a session. A session must be open
  to receive a new invoice.
- Cash sales are informational by default. When the register has
  ``journal_cash_sales`` enabled, a validated cash POS ticket also writes
  a ``cash_in`` movement so expected cash keeps equal to float + ledger.
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy import func

from ..errors import (
    InvoiceNotFoundError,
    RegisterNotFoundError,
    SessionClosedError,
    SessionNotFoundError,
    UnpricedLineError,
    ValidationError,
)
from ..extensions import db
from ..models import CashRegister, CashSession, Invoice, InvoiceItem
from ..models.registers import MOVEMENT_CASH_IN
from ..models.sales import INVOICE_STATUS_DRAFT, INVOICE_STATUS_VALIDATED
from ..validation import clean_text, coerce_bool, coerce_cents, coerce_int, require_json_object
from .audit_service import append_audit_event
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import append_movement
from .proration import prorate_line
from cashdesk.time_utils import parse_iso_datetime, utcnow


logger = logging.getLogger(__name__)

UNTAGGED_RATE = "untagged"


def _parse_item(raw, position: int) -> dict:
    if not isinstance(raw, dict):
        raise ValidationError("Each item must be an object", index=position)

    quantity = coerce_int(raw.get("quantity", 1), f"items[{position}].quantity")
    if quantity < 0:
        raise ValidationError("Item quantity cannot be negative", index=position, quantity=quantity)

    tax_rate_bps = raw.get("tax_rate_bps")
    if tax_rate_bps is not None:
        tax_rate_bps = coerce_int(tax_rate_bps, f"items[{position}].tax_rate_bps")
        if tax_rate_bps < 0:
            raise ValidationError("Tax rate cannot be negative", index=position, tax_rate_bps=tax_rate_bps)

    return dict(
        position=position,
        name=clean_text(raw.get("name"), max_length=255) or "",
        quantity=quantity,
        unit_price_cents=coerce_cents(raw.get("unit_price_cents"), f"items[{position}].unit_price_cents", required=False),
        tax_rate_bps=tax_rate_bps,
        total_ht_cents=coerce_cents(raw.get("total_ht_cents"), f"items[{position}].total_ht_cents", required=False),
        total_tva_cents=coerce_cents(raw.get("total_tva_cents"), f"items[{position}].total_tva_cents", required=False),
        total_ttc_cents=coerce_cents(raw.get("total_ttc_cents"), f"items[{position}].total_ttc_cents", required=False),
    )


def _should_journal(invoice: Invoice, register: CashRegister | None) -> bool:
    return bool(
        register is not None
        and register.journal_cash_sales
        and invoice.status == INVOICE_STATUS_VALIDATED
        and invoice.is_pos_ticket
        and invoice.payment_method == current_app.config.get("CASH_PAYMENT_METHOD", "cash")
        and invoice.total_ttc_cents > 0
    )


def ingest_invoice(payload: dict, *, actor: str | None = None) -> Invoice:
    """
    Validate and store one invoice with its items.

    Expected payload:
        {
            "number": "TIK-000123",
            "register_id": 1, "session_id": 7,
            "status": "validated", "payment_method": "cash",
            "is_pos_ticket": true,
            "total_ht_cents": 1000, "total_tva_cents": 200, "total_ttc_cents": 1200,
            "issued_at": "2024-05-01T10:00:00Z",
            "items": [{"name": "...", "quantity": 2, "unit_price_cents": 500, "tax_rate_bps": 2000, ...}]
        }
    """
    payload = require_json_object(payload)

    number = clean_text(payload.get("number"), max_length=64)
    if not number:
        raise ValidationError("number is required", field="number")

    status = payload.get("status") or INVOICE_STATUS_VALIDATED
    if status not in (INVOICE_STATUS_DRAFT, INVOICE_STATUS_VALIDATED):
        raise ValidationError("status must be 'draft' or 'validated'", field="status", value=status)

    payment_method = clean_text(payload.get("payment_method"), max_length=32)
    allowed_methods = current_app.config.get("CASH_PAYMENT_METHODS", ())
    if payment_method is not None and payment_method not in allowed_methods:
        raise ValidationError(
            f"Unknown payment method '{payment_method}'",
            field="payment_method",
            allowed=list(allowed_methods),
        )

    total_ttc = coerce_cents(payload.get("total_ttc_cents"), "total_ttc_cents")
    if total_ttc < 0:
        raise ValidationError("total_ttc_cents cannot be negative", field="total_ttc_cents")
    total_ht = coerce_cents(payload.get("total_ht_cents"), "total_ht_cents", required=False)
    total_tva = coerce_cents(payload.get("total_tva_cents"), "total_tva_cents", required=False)
    if total_ht is None and total_tva is None:
        total_ht, total_tva = total_ttc, 0
    elif total_ht is None:
        total_ht = total_ttc - total_tva
    elif total_tva is None:
        total_tva = total_ttc - total_ht

    raw_items = payload.get("items") or []
    if not isinstance(raw_items, list):
        raise ValidationError("items must be a list", field="items")
    items = [_parse_item(raw, position) for position, raw in enumerate(raw_items)]

    try:
        issued_at = parse_iso_datetime(payload.get("issued_at")) or utcnow()
    except ValueError:
        raise ValidationError("issued_at must be an ISO-8601 datetime", field="issued_at")

    register_id = payload.get("register_id")
    register_id = coerce_int(register_id, "register_id") if register_id is not None else None
    session_id = payload.get("session_id")
    session_id = coerce_int(session_id, "session_id") if session_id is not None else None

    is_pos_ticket = coerce_bool(payload.get("is_pos_ticket"), "is_pos_ticket", default=True)
    converted = coerce_bool(payload.get("converted_to_invoice"), "converted_to_invoice", default=False)

    def _op():
        if db.session.query(Invoice.id).filter_by(number=number).first():
            raise ValidationError(f"Invoice '{number}' already exists", field="number", number=number)

        session = None
        resolved_register_id = register_id
        if session_id is not None:
            session = lock_for_update(db.session.query(CashSession).filter_by(id=session_id)).first()
            if not session:
                raise SessionNotFoundError("Session not found", session_id=session_id)
            if not session.is_open:
                raise SessionClosedError(
                    f"Session {session.id} is {session.status}; it accepts no new invoices",
                    session_id=session.id,
                    status=session.status,
                )
            if resolved_register_id is None:
                resolved_register_id = session.register_id
            elif resolved_register_id != session.register_id:
                raise ValidationError(
                    "register_id does not match the session's register",
                    register_id=resolved_register_id,
                    session_register_id=session.register_id,
                )

        register = None
        if resolved_register_id is not None:
            register = db.session.get(CashRegister, resolved_register_id)
            if not register:
                raise RegisterNotFoundError("Register not found", register_id=resolved_register_id)

        invoice = Invoice(
            number=number,
            register_id=resolved_register_id,
            session_id=session_id,
            status=status,
            payment_method=payment_method,
            is_pos_ticket=is_pos_ticket,
            converted_to_invoice=converted,
            total_ht_cents=total_ht,
            total_tva_cents=total_tva,
            total_ttc_cents=total_ttc,
            refunded_total_cents=0,
            issued_at=issued_at,
        )
        for fields in items:
            invoice.items.append(InvoiceItem(**fields))
        db.session.add(invoice)
        if session is not None:
            # Version bump: a close that froze the session's sales in the
            # meantime makes this flush fail, and the retry sees it closed.
            session.attached_invoice_count = (session.attached_invoice_count or 0) + 1
        db.session.flush()

        if session is not None and _should_journal(invoice, register):
            append_movement(
                session,
                movement_type=MOVEMENT_CASH_IN,
                amount_cents=invoice.total_ttc_cents,
                reason=f"Cash sale {invoice.number}",
                actor=actor or "sales",
                invoice_id=invoice.id,
            )

        append_audit_event(
            event_type="invoice.ingested",
            entity_type="invoice",
            entity_id=invoice.id,
            actor=actor,
            register_id=resolved_register_id,
            session_id=session_id,
            payload={"number": number, "total_ttc_cents": total_ttc, "payment_method": payment_method},
        )
        db.session.commit()
        return invoice

    invoice = run_with_retry(_op)
    logger.info("Invoice %s ingested (session %s, %d cents)", invoice.number, invoice.session_id, invoice.total_ttc_cents)
    return invoice


def get_invoice(invoice_id: int) -> Invoice:
    invoice = db.session.get(Invoice, invoice_id)
    if not invoice:
        raise InvoiceNotFoundError("Invoice not found", invoice_id=invoice_id)
    return invoice


def list_invoices(
    *,
    session_id: int | None = None,
    register_id: int | None = None,
    status: str | None = None,
    pos_only: bool = False,
    limit: int = 100,
    offset: int = 0,
) -> list[Invoice]:
    query = db.session.query(Invoice)
    if session_id is not None:
        query = query.filter(Invoice.session_id == session_id)
    if register_id is not None:
        query = query.filter(Invoice.register_id == register_id)
    if status:
        query = query.filter(Invoice.status == status)
    if pos_only:
        query = query.filter(Invoice.is_pos_ticket.is_(True))
    return query.order_by(Invoice.issued_at, Invoice.id).offset(offset).limit(limit).all()


def _session_sales_filter(session_id: int):
    return (
        Invoice.session_id == session_id,
        Invoice.status == INVOICE_STATUS_VALIDATED,
        Invoice.is_pos_ticket.is_(True),
    )


def _vat_key(item, amounts) -> str:
    if item.tax_rate_bps is not None:
        return str(item.tax_rate_bps)
    return "0" if amounts.total_tva_cents == 0 else UNTAGGED_RATE


def merge_vat_breakdowns(breakdowns) -> dict:
    """Sum several {rate: {ht_cents, tva_cents, ttc_cents}} maps."""
    merged: dict[str, dict] = {}
    for breakdown in breakdowns:
        for rate, amounts in (breakdown or {}).items():
            bucket = merged.setdefault(rate, {"ht_cents": 0, "tva_cents": 0, "ttc_cents": 0})
            for key in bucket:
                bucket[key] += int(amounts.get(key) or 0)
    return merged


def summarize_session_vat(session_id: int) -> dict:
    """
    Stored line amounts of a session's validated POS tickets, per tax rate.

    Each line is priced whole through the refund proration strategies, so
    the breakdown reads the same historical shapes refunds do. Lines with
    no usable pricing are left out. Lines without a rate fall under "0"
    when they carry no tax, else under "untagged".
    """
    items = db.session.query(InvoiceItem).join(
        Invoice, Invoice.id == InvoiceItem.invoice_id
    ).filter(*_session_sales_filter(session_id)).all()

    breakdown: dict[str, dict] = {}
    for item in items:
        units = item.quantity if (item.quantity or 0) > 0 else 1
        try:
            amounts = prorate_line(item, units)
        except UnpricedLineError:
            continue
        bucket = breakdown.setdefault(_vat_key(item, amounts), {"ht_cents": 0, "tva_cents": 0, "ttc_cents": 0})
        bucket["ht_cents"] += amounts.total_ht_cents
        bucket["tva_cents"] += amounts.total_tva_cents
        bucket["ttc_cents"] += amounts.total_ttc_cents
    return breakdown


def summarize_session_sales(session_id: int) -> dict:
    """
    Validated POS tickets of a session: count, HT/TVA/TTC totals,
    per-method totals and the per-rate VAT breakdown.

    ``sales_cash_cents`` is the cash-method share; it is informational and
    never part of expected cash unless journaled as movements.
    """
    rows = db.session.query(
        Invoice.payment_method,
        func.count(Invoice.id),
        func.coalesce(func.sum(Invoice.total_ttc_cents), 0),
        func.coalesce(func.sum(Invoice.total_ht_cents), 0),
        func.coalesce(func.sum(Invoice.total_tva_cents), 0),
    ).filter(*_session_sales_filter(session_id)).group_by(Invoice.payment_method).all()

    cash_method = current_app.config.get("CASH_PAYMENT_METHOD", "cash")
    by_method: dict[str, int] = {}
    invoice_count = 0
    total = 0
    total_ht = 0
    total_tva = 0
    for method, count, amount, ht, tva in rows:
        key = method or "other"
        by_method[key] = by_method.get(key, 0) + int(amount or 0)
        invoice_count += int(count or 0)
        total += int(amount or 0)
        total_ht += int(ht or 0)
        total_tva += int(tva or 0)

    return {
        "invoice_count": invoice_count,
        "total_ht_cents": total_ht,
        "total_tva_cents": total_tva,
        "total_ttc_cents": total,
        "by_method": by_method,
        "vat_breakdown": summarize_session_vat(session_id),
        "sales_cash_cents": by_method.get(cash_method, 0),
    }
