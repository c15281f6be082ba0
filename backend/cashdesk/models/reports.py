from __future__ import annotations

from ..extensions import db
from cashdesk.time_utils import to_utc_z


class ZReport(db.Model):
    """
    Locked end-of-day report for one register.

    At most one row per (register, report_date); the unique constraint is
    what makes concurrent generation safe. Rows are chained per register:
    ``hash`` covers the report figures plus ``previous_hash`` so a later
    edit of any locked report breaks the chain. No update path exists.
    """
    __tablename__ = "z_reports"
    __table_args__ = (
        db.UniqueConstraint("register_id", "report_date", name="uq_z_reports_register_date"),
        db.UniqueConstraint("register_id", "sequence_number", name="uq_z_reports_register_sequence"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    register_id = db.Column(db.Integer, db.ForeignKey("cash_registers.id"), nullable=False, index=True)
    report_date = db.Column(db.Date, nullable=False, index=True)

    number = db.Column(db.String(64), nullable=False)
    sequence_number = db.Column(db.Integer, nullable=False)

    session_ids = db.Column(db.JSON, nullable=False, default=list)
    sessions_count = db.Column(db.Integer, nullable=False, default=0)
    invoice_count = db.Column(db.Integer, nullable=False, default=0)
    total_ht_cents = db.Column(db.Integer, nullable=False, default=0)
    total_tva_cents = db.Column(db.Integer, nullable=False, default=0)
    total_ttc_cents = db.Column(db.Integer, nullable=False, default=0)
    totals_by_method = db.Column(db.JSON, nullable=False, default=dict)
    vat_breakdown = db.Column(db.JSON, nullable=True)  # {"2000": {"ht_cents", "tva_cents", "ttc_cents"}}
    refund_count = db.Column(db.Integer, nullable=False, default=0)
    refund_total_cents = db.Column(db.Integer, nullable=False, default=0)
    total_expected_cash_cents = db.Column(db.Integer, nullable=False, default=0)
    total_counted_cash_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cash_difference_cents = db.Column(db.Integer, nullable=False, default=0)
    sessions = db.Column(db.JSON, nullable=False, default=list)  # per-session detail

    previous_hash = db.Column(db.String(64), nullable=False)
    hash = db.Column(db.String(64), nullable=False)

    generated_by = db.Column(db.String(64), nullable=True)
    generated_at = db.Column(db.DateTime(timezone=True), nullable=False)

    register = db.relationship("CashRegister", backref=db.backref("z_reports", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "report_type": "z",
            "register_id": self.register_id,
            "date": self.report_date.isoformat(),
            "number": self.number,
            "sequence_number": self.sequence_number,
            "session_ids": list(self.session_ids or []),
            "sessions": list(self.sessions or []),
            "daily_totals": {
                "sessions_count": self.sessions_count,
                "invoice_count": self.invoice_count,
                "total_ht_cents": self.total_ht_cents,
                "total_tva_cents": self.total_tva_cents,
                "total_ttc_cents": self.total_ttc_cents,
                "by_method": dict(self.totals_by_method or {}),
                "vat_breakdown": dict(self.vat_breakdown or {}),
                "refund_count": self.refund_count,
                "refund_total_cents": self.refund_total_cents,
                "total_expected_cash_cents": self.total_expected_cash_cents,
                "total_counted_cash_cents": self.total_counted_cash_cents,
                "total_cash_difference_cents": self.total_cash_difference_cents,
            },
            "previous_hash": self.previous_hash,
            "hash": self.hash,
            "generated_by": self.generated_by,
            "generated_at": to_utc_z(self.generated_at),
            "is_locked": True,
        }
