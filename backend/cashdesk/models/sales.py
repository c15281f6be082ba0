from __future__ import annotations

from ..extensions import db
from cashdesk.time_utils import to_utc_z


INVOICE_STATUS_DRAFT = "draft"
INVOICE_STATUS_VALIDATED = "validated"

REFUND_TYPE_FULL = "full"
REFUND_TYPE_PARTIAL = "partial"
REFUND_TYPES = (REFUND_TYPE_FULL, REFUND_TYPE_PARTIAL)


class Invoice(db.Model):
    """
    Sale record as seen by the cash core (read model).

    Written by the sales adapter, read by reports and refunds. The only
    field the core itself updates is ``refunded_total_cents``, inside the
    refund transaction; bumping it changes ``version_id`` so two refunds
    that read the same state cannot both commit.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        db.UniqueConstraint("number", name="uq_invoices_number"),
        db.Index("ix_invoices_session_status", "session_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    number = db.Column(db.String(64), nullable=False)

    register_id = db.Column(db.Integer, db.ForeignKey("cash_registers.id"), nullable=True, index=True)
    session_id = db.Column(db.Integer, db.ForeignKey("cash_sessions.id"), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default=INVOICE_STATUS_VALIDATED)
    payment_method = db.Column(db.String(32), nullable=True)
    is_pos_ticket = db.Column(db.Boolean, nullable=False, default=True)
    converted_to_invoice = db.Column(db.Boolean, nullable=False, default=False)

    # Amounts (all in cents)
    total_ht_cents = db.Column(db.Integer, nullable=False, default=0)
    total_tva_cents = db.Column(db.Integer, nullable=False, default=0)
    total_ttc_cents = db.Column(db.Integer, nullable=False, default=0)
    refunded_total_cents = db.Column(db.Integer, nullable=False, default=0)

    issued_at = db.Column(db.DateTime(timezone=True), nullable=False)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "InvoiceItem",
        backref="invoice",
        lazy=True,
        order_by="InvoiceItem.position",
        cascade="all, delete-orphan",
    )
    session = db.relationship("CashSession", backref=db.backref("invoices", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def remaining_amount_cents(self) -> int:
        return max(0, self.total_ttc_cents - self.refunded_total_cents)

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "number": self.number,
            "register_id": self.register_id,
            "session_id": self.session_id,
            "status": self.status,
            "payment_method": self.payment_method,
            "is_pos_ticket": self.is_pos_ticket,
            "converted_to_invoice": self.converted_to_invoice,
            "total_ht_cents": self.total_ht_cents,
            "total_tva_cents": self.total_tva_cents,
            "total_ttc_cents": self.total_ttc_cents,
            "refunded_total_cents": self.refunded_total_cents,
            "remaining_amount_cents": self.remaining_amount_cents,
            "issued_at": to_utc_z(self.issued_at),
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class InvoiceItem(db.Model):
    """
    One sold line. Historical shapes differ: some lines carry their own
    totals, some only a unit price and a tax rate. Every pricing column is
    therefore nullable and the refund engine picks a proration strategy.

    Quantities are whole units. Fractional quantities (weighed goods) are
    not supported: the sales side has to send such a line as quantity 1
    with its line totals, and it is then refunded as a single unit.
    """
    __tablename__ = "invoice_items"
    __table_args__ = (
        db.UniqueConstraint("invoice_id", "position", name="uq_invoice_items_position"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)

    # Index in the original document; credit-note lines point back to it
    position = db.Column(db.Integer, nullable=False)
    name = db.Column(db.String(255), nullable=False, default="")
    quantity = db.Column(db.Integer, nullable=False, default=1)

    unit_price_cents = db.Column(db.Integer, nullable=True)  # HT
    tax_rate_bps = db.Column(db.Integer, nullable=True)  # 2000 = 20%
    total_ht_cents = db.Column(db.Integer, nullable=True)
    total_tva_cents = db.Column(db.Integer, nullable=True)
    total_ttc_cents = db.Column(db.Integer, nullable=True)

    def to_dict(self) -> dict:
        return {
            "index": self.position,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "total_ht_cents": self.total_ht_cents,
            "total_tva_cents": self.total_tva_cents,
            "total_ttc_cents": self.total_ttc_cents,
        }


class CreditNote(db.Model):
    """
    Refund document against one original invoice.

    Totals are stored positive. Many credit notes may reference one
    invoice; together they never exceed its quantities or its TTC total.
    Credit notes are written once and never modified.

    CHAIN: notes are chained per ``chain_scope`` (company and year).
    ``hash`` covers the note's figures and lines plus ``previous_hash``.
    """
    __tablename__ = "credit_notes"
    __table_args__ = (
        db.UniqueConstraint("number", name="uq_credit_notes_number"),
        db.Index("uq_credit_notes_chain_sequence", "chain_scope", "sequence_number", unique=True),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    number = db.Column(db.String(32), nullable=False)

    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)
    # Session of the original invoice (X/Z refund aggregates key on it)
    session_id = db.Column(db.Integer, db.ForeignKey("cash_sessions.id"), nullable=True, index=True)

    refund_type = db.Column(db.String(16), nullable=False)
    refund_method = db.Column(db.String(32), nullable=False)
    reason = db.Column(db.String(255), nullable=False)

    total_ht_cents = db.Column(db.Integer, nullable=False, default=0)
    total_tva_cents = db.Column(db.Integer, nullable=False, default=0)
    total_ttc_cents = db.Column(db.Integer, nullable=False, default=0)

    created_by = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)

    # Nullable only for rows written before chaining existed
    chain_scope = db.Column(db.String(96), nullable=True)
    sequence_number = db.Column(db.Integer, nullable=True)
    previous_hash = db.Column(db.String(64), nullable=True)
    hash = db.Column(db.String(64), nullable=True)

    invoice = db.relationship("Invoice", backref=db.backref("credit_notes", lazy=True))
    lines = db.relationship(
        "CreditNoteLine",
        backref="credit_note",
        lazy=True,
        order_by="CreditNoteLine.id",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "number": self.number,
            "type": "credit_note",
            "invoice_id": self.invoice_id,
            "session_id": self.session_id,
            "refund_type": self.refund_type,
            "refund_method": self.refund_method,
            "reason": self.reason,
            "total_ht_cents": self.total_ht_cents,
            "total_tva_cents": self.total_tva_cents,
            "total_ttc_cents": self.total_ttc_cents,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "chain_scope": self.chain_scope,
            "sequence_number": self.sequence_number,
            "previous_hash": self.previous_hash,
            "hash": self.hash,
            "is_locked": True,
            "lines": [line.to_dict() for line in self.lines],
        }


class CreditNoteLine(db.Model):
    __tablename__ = "credit_note_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    credit_note_id = db.Column(db.Integer, db.ForeignKey("credit_notes.id"), nullable=False, index=True)

    original_item_index = db.Column(db.Integer, nullable=False)
    name = db.Column(db.String(255), nullable=False, default="")
    quantity = db.Column(db.Integer, nullable=False)

    total_ht_cents = db.Column(db.Integer, nullable=False)
    total_tva_cents = db.Column(db.Integer, nullable=False)
    total_ttc_cents = db.Column(db.Integer, nullable=False)

    strategy = db.Column(db.String(32), nullable=False)
    reason = db.Column(db.String(255), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "original_item_index": self.original_item_index,
            "name": self.name,
            "quantity": self.quantity,
            "total_ht_cents": self.total_ht_cents,
            "total_tva_cents": self.total_tva_cents,
            "total_ttc_cents": self.total_ttc_cents,
            "strategy": self.strategy,
            "reason": self.reason,
        }
