from __future__ import annotations

from ..extensions import db
from cashdesk.time_utils import to_utc_z


SESSION_STATUS_OPEN = "open"
SESSION_STATUS_CLOSED = "closed"
SESSION_STATUS_CANCELED = "canceled"
SESSION_STATUSES = (SESSION_STATUS_OPEN, SESSION_STATUS_CLOSED, SESSION_STATUS_CANCELED)

MOVEMENT_CASH_IN = "cash_in"
MOVEMENT_CASH_OUT = "cash_out"
MOVEMENT_SAFE_DROP = "safe_drop"
MOVEMENT_ADJUSTMENT = "adjustment"
MOVEMENT_TYPES = (MOVEMENT_CASH_IN, MOVEMENT_CASH_OUT, MOVEMENT_SAFE_DROP, MOVEMENT_ADJUSTMENT)

DIRECTION_IN = "in"
DIRECTION_OUT = "out"

# Direction implied by type; adjustments carry an explicit one.
IMPLIED_DIRECTIONS = {
    MOVEMENT_CASH_IN: DIRECTION_IN,
    MOVEMENT_CASH_OUT: DIRECTION_OUT,
    MOVEMENT_SAFE_DROP: DIRECTION_OUT,
}


class CashRegister(db.Model):
    """
    Physical till.

    Registers are never deleted while sessions reference them; only the
    activation flag changes. ``journal_cash_sales`` decides whether cash
    POS tickets ingested for this register are written into the ledger as
    ``cash_in`` movements (off by default, sales stay informational).
    """
    __tablename__ = "cash_registers"
    __table_args__ = (
        db.UniqueConstraint("company_id", "code", name="uq_cash_registers_company_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.String(64), nullable=False, index=True)

    # Human-readable identifier (e.g., "REG-01", "FRONT")
    code = db.Column(db.String(32), nullable=False)
    name = db.Column(db.String(128), nullable=False)
    location = db.Column(db.String(128), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    journal_cash_sales = db.Column(db.Boolean, nullable=False, default=False)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<CashRegister id={self.id} code={self.code!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "code": self.code,
            "name": self.name,
            "location": self.location,
            "is_active": self.is_active,
            "journal_cash_sales": self.journal_cash_sales,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class CashSession(db.Model):
    """
    One open/close custody cycle on a register.

    LIFECYCLE:
    - open: accepting movements and sales
    - closed: counted and reconciled, figures frozen
    - canceled: opened by mistake, nothing ever referenced it

    Both terminal states are read-only. The partial unique index lets at
    most one row per register sit in ``open``. ``movement_count`` is bumped
    by every movement append so that the session version changes and a
    concurrent close sees a stale row instead of an incomplete ledger.
    ``attached_invoice_count`` plays the same role for invoice ingestion.
    """
    __tablename__ = "cash_sessions"
    __table_args__ = (
        db.Index(
            "uq_cash_sessions_open_register",
            "register_id",
            unique=True,
            sqlite_where=db.text("status = 'open'"),
            postgresql_where=db.text("status = 'open'"),
        ),
        db.Index("ix_cash_sessions_register_closed", "register_id", "status", "closed_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    register_id = db.Column(db.Integer, db.ForeignKey("cash_registers.id"), nullable=False, index=True)

    opened_by = db.Column(db.String(64), nullable=False)
    closed_by = db.Column(db.String(64), nullable=True)
    canceled_by = db.Column(db.String(64), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=SESSION_STATUS_OPEN, index=True)

    opened_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)

    # Cash tracking (all amounts in cents)
    opening_float_cents = db.Column(db.Integer, nullable=False, default=0)
    expected_cash_cents = db.Column(db.Integer, nullable=True)  # frozen at close
    counted_cash_cents = db.Column(db.Integer, nullable=True)
    cash_difference_cents = db.Column(db.Integer, nullable=True)  # counted - expected
    denominations = db.Column(db.JSON, nullable=True)  # {"2000": 3, "50": 4}
    difference_override = db.Column(db.Boolean, nullable=False, default=False)

    # Sales figures frozen at close
    invoice_count = db.Column(db.Integer, nullable=False, default=0)
    total_ht_cents = db.Column(db.Integer, nullable=False, default=0)
    total_tva_cents = db.Column(db.Integer, nullable=False, default=0)
    total_ttc_cents = db.Column(db.Integer, nullable=False, default=0)
    totals_by_method = db.Column(db.JSON, nullable=False, default=dict)
    vat_breakdown = db.Column(db.JSON, nullable=True)
    refund_count = db.Column(db.Integer, nullable=False, default=0)
    refund_total_cents = db.Column(db.Integer, nullable=False, default=0)

    movement_count = db.Column(db.Integer, nullable=False, default=0)
    attached_invoice_count = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text, nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    register = db.relationship("CashRegister", backref=db.backref("sessions", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_open(self) -> bool:
        return self.status == SESSION_STATUS_OPEN

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "register_id": self.register_id,
            "status": self.status,
            "opened_by": self.opened_by,
            "closed_by": self.closed_by,
            "canceled_by": self.canceled_by,
            "opened_at": to_utc_z(self.opened_at),
            "closed_at": to_utc_z(self.closed_at),
            "canceled_at": to_utc_z(self.canceled_at),
            "cancel_reason": self.cancel_reason,
            "opening_float_cents": self.opening_float_cents,
            "expected_cash_cents": self.expected_cash_cents,
            "counted_cash_cents": self.counted_cash_cents,
            "cash_difference_cents": self.cash_difference_cents,
            "denominations": self.denominations,
            "difference_override": self.difference_override,
            "invoice_count": self.invoice_count,
            "total_ht_cents": self.total_ht_cents,
            "total_tva_cents": self.total_tva_cents,
            "total_ttc_cents": self.total_ttc_cents,
            "totals_by_method": dict(self.totals_by_method or {}),
            "vat_breakdown": dict(self.vat_breakdown or {}),
            "refund_count": self.refund_count,
            "refund_total_cents": self.refund_total_cents,
            "movement_count": self.movement_count,
            "attached_invoice_count": self.attached_invoice_count,
            "notes": self.notes,
            "version_id": self.version_id,
        }


class CashMovement(db.Model):
    """
    Append-only cash ledger entry.

    Amounts are always positive; ``direction`` gives the sign. Rows are
    never updated or deleted; corrections are new ``adjustment`` entries.
    """
    __tablename__ = "cash_movements"
    __table_args__ = (
        db.Index("ix_cash_movements_session_created", "session_id", "created_at"),
        db.CheckConstraint("amount_cents > 0", name="ck_cash_movements_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey("cash_sessions.id"), nullable=False, index=True)

    movement_type = db.Column(db.String(16), nullable=False, index=True)
    direction = db.Column(db.String(3), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(255), nullable=False)

    created_by = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)

    # Provenance when the movement was written by the sales or refund flow
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=True)
    credit_note_id = db.Column(db.Integer, db.ForeignKey("credit_notes.id"), nullable=True)

    session = db.relationship("CashSession", backref=db.backref("movements", lazy=True))

    @property
    def signed_amount_cents(self) -> int:
        return self.amount_cents if self.direction == DIRECTION_IN else -self.amount_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "movement_type": self.movement_type,
            "direction": self.direction,
            "amount_cents": self.amount_cents,
            "signed_amount_cents": self.signed_amount_cents,
            "reason": self.reason,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "invoice_id": self.invoice_id,
            "credit_note_id": self.credit_note_id,
        }
