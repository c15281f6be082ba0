"""Cash core schema: registers, sessions, ledger, invoices, credit notes, Z reports

Revision ID: 20261017_cash_core
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261017_cash_core"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "cash_registers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("company_id", sa.String(length=64), nullable=False),
        sa.Column("code", sa.String(length=32), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("location", sa.String(length=128), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("journal_cash_sales", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("company_id", "code", name="uq_cash_registers_company_code"),
    )
    op.create_index("ix_cash_registers_company_id", "cash_registers", ["company_id"], unique=False)
    op.create_index("ix_cash_registers_is_active", "cash_registers", ["is_active"], unique=False)

    op.create_table(
        "cash_sessions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("register_id", sa.Integer(), sa.ForeignKey("cash_registers.id"), nullable=False),
        sa.Column("opened_by", sa.String(length=64), nullable=False),
        sa.Column("closed_by", sa.String(length=64), nullable=True),
        sa.Column("canceled_by", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="open"),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.String(length=255), nullable=True),
        sa.Column("opening_float_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expected_cash_cents", sa.Integer(), nullable=True),
        sa.Column("counted_cash_cents", sa.Integer(), nullable=True),
        sa.Column("cash_difference_cents", sa.Integer(), nullable=True),
        sa.Column("denominations", sa.JSON(), nullable=True),
        sa.Column("difference_override", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("invoice_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_ttc_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("totals_by_method", sa.JSON(), nullable=False),
        sa.Column("refund_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("refund_total_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("movement_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index("ix_cash_sessions_register_id", "cash_sessions", ["register_id"], unique=False)
    op.create_index("ix_cash_sessions_status", "cash_sessions", ["status"], unique=False)
    op.create_index("ix_cash_sessions_opened_at", "cash_sessions", ["opened_at"], unique=False)
    op.create_index(
        "ix_cash_sessions_register_closed", "cash_sessions", ["register_id", "status", "closed_at"], unique=False
    )
    # At most one open session per register
    op.create_index(
        "uq_cash_sessions_open_register",
        "cash_sessions",
        ["register_id"],
        unique=True,
        sqlite_where=sa.text("status = 'open'"),
        postgresql_where=sa.text("status = 'open'"),
    )

    op.create_table(
        "invoices",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("number", sa.String(length=64), nullable=False),
        sa.Column("register_id", sa.Integer(), sa.ForeignKey("cash_registers.id"), nullable=True),
        sa.Column("session_id", sa.Integer(), sa.ForeignKey("cash_sessions.id"), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="validated"),
        sa.Column("payment_method", sa.String(length=32), nullable=True),
        sa.Column("is_pos_ticket", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("converted_to_invoice", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("total_ht_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_tva_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_ttc_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("refunded_total_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
        sa.UniqueConstraint("number", name="uq_invoices_number"),
    )
    op.create_index("ix_invoices_register_id", "invoices", ["register_id"], unique=False)
    op.create_index("ix_invoices_session_id", "invoices", ["session_id"], unique=False)
    op.create_index("ix_invoices_session_status", "invoices", ["session_id", "status"], unique=False)

    op.create_table(
        "invoice_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("invoice_id", sa.Integer(), sa.ForeignKey("invoices.id"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_price_cents", sa.Integer(), nullable=True),
        sa.Column("tax_rate_bps", sa.Integer(), nullable=True),
        sa.Column("total_ht_cents", sa.Integer(), nullable=True),
        sa.Column("total_tva_cents", sa.Integer(), nullable=True),
        sa.Column("total_ttc_cents", sa.Integer(), nullable=True),
        sa.UniqueConstraint("invoice_id", "position", name="uq_invoice_items_position"),
    )
    op.create_index("ix_invoice_items_invoice_id", "invoice_items", ["invoice_id"], unique=False)

    op.create_table(
        "credit_notes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("number", sa.String(length=32), nullable=False),
        sa.Column("invoice_id", sa.Integer(), sa.ForeignKey("invoices.id"), nullable=False),
        sa.Column("session_id", sa.Integer(), sa.ForeignKey("cash_sessions.id"), nullable=True),
        sa.Column("refund_type", sa.String(length=16), nullable=False),
        sa.Column("refund_method", sa.String(length=32), nullable=False),
        sa.Column("reason", sa.String(length=255), nullable=False),
        sa.Column("total_ht_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_tva_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_ttc_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("number", name="uq_credit_notes_number"),
    )
    op.create_index("ix_credit_notes_invoice_id", "credit_notes", ["invoice_id"], unique=False)
    op.create_index("ix_credit_notes_session_id", "credit_notes", ["session_id"], unique=False)

    op.create_table(
        "credit_note_lines",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("credit_note_id", sa.Integer(), sa.ForeignKey("credit_notes.id"), nullable=False),
        sa.Column("original_item_index", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("total_ht_cents", sa.Integer(), nullable=False),
        sa.Column("total_tva_cents", sa.Integer(), nullable=False),
        sa.Column("total_ttc_cents", sa.Integer(), nullable=False),
        sa.Column("strategy", sa.String(length=32), nullable=False),
        sa.Column("reason", sa.String(length=255), nullable=True),
    )
    op.create_index("ix_credit_note_lines_credit_note_id", "credit_note_lines", ["credit_note_id"], unique=False)

    op.create_table(
        "cash_movements",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("session_id", sa.Integer(), sa.ForeignKey("cash_sessions.id"), nullable=False),
        sa.Column("movement_type", sa.String(length=16), nullable=False),
        sa.Column("direction", sa.String(length=3), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=255), nullable=False),
        sa.Column("created_by", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("invoice_id", sa.Integer(), sa.ForeignKey("invoices.id"), nullable=True),
        sa.Column("credit_note_id", sa.Integer(), sa.ForeignKey("credit_notes.id"), nullable=True),
        sa.CheckConstraint("amount_cents > 0", name="ck_cash_movements_amount_positive"),
    )
    op.create_index("ix_cash_movements_session_id", "cash_movements", ["session_id"], unique=False)
    op.create_index("ix_cash_movements_movement_type", "cash_movements", ["movement_type"], unique=False)
    op.create_index("ix_cash_movements_session_created", "cash_movements", ["session_id", "created_at"], unique=False)

    op.create_table(
        "z_reports",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("register_id", sa.Integer(), sa.ForeignKey("cash_registers.id"), nullable=False),
        sa.Column("report_date", sa.Date(), nullable=False),
        sa.Column("number", sa.String(length=64), nullable=False),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        sa.Column("session_ids", sa.JSON(), nullable=False),
        sa.Column("sessions_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("invoice_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_ttc_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("totals_by_method", sa.JSON(), nullable=False),
        sa.Column("refund_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("refund_total_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_expected_cash_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_counted_cash_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_cash_difference_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sessions", sa.JSON(), nullable=False),
        sa.Column("previous_hash", sa.String(length=64), nullable=False),
        sa.Column("hash", sa.String(length=64), nullable=False),
        sa.Column("generated_by", sa.String(length=64), nullable=True),
        sa.Column("generated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("register_id", "report_date", name="uq_z_reports_register_date"),
        sa.UniqueConstraint("register_id", "sequence_number", name="uq_z_reports_register_sequence"),
    )
    op.create_index("ix_z_reports_register_id", "z_reports", ["register_id"], unique=False)
    op.create_index("ix_z_reports_report_date", "z_reports", ["report_date"], unique=False)

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("register_id", sa.Integer(), nullable=True),
        sa.Column("session_id", sa.Integer(), nullable=True),
        sa.Column("actor", sa.String(length=64), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
    )
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"], unique=False)
    op.create_index("ix_audit_events_entity", "audit_events", ["entity_type", "entity_id"], unique=False)
    op.create_index("ix_audit_events_register_id", "audit_events", ["register_id"], unique=False)
    op.create_index("ix_audit_events_session_id", "audit_events", ["session_id"], unique=False)
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"], unique=False)

    op.create_table(
        "document_sequences",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("scope", sa.String(length=64), nullable=False),
        sa.Column("document_type", sa.String(length=32), nullable=False),
        sa.Column("next_number", sa.Integer(), nullable=False, server_default="1"),
        sa.UniqueConstraint("scope", "document_type", name="uq_document_sequences_scope_type"),
    )


def downgrade():
    op.drop_table("document_sequences")
    op.drop_table("audit_events")
    op.drop_table("z_reports")
    op.drop_table("cash_movements")
    op.drop_table("credit_note_lines")
    op.drop_table("credit_notes")
    op.drop_table("invoice_items")
    op.drop_table("invoices")
    op.drop_index("uq_cash_sessions_open_register", table_name="cash_sessions")
    op.drop_table("cash_sessions")
    op.drop_table("cash_registers")
