"""HT/TVA totals and VAT breakdown on sessions and Z reports; credit note hash chain

Revision ID: 20261018_vat_chain
Revises: 20261017_cash_core
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018_vat_chain"
down_revision = "20261017_cash_core"
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table("cash_sessions", schema=None) as batch_op:
        batch_op.add_column(sa.Column("total_ht_cents", sa.Integer(), nullable=False, server_default="0"))
        batch_op.add_column(sa.Column("total_tva_cents", sa.Integer(), nullable=False, server_default="0"))
        batch_op.add_column(sa.Column("vat_breakdown", sa.JSON(), nullable=True))
        batch_op.add_column(sa.Column("attached_invoice_count", sa.Integer(), nullable=False, server_default="0"))

    with op.batch_alter_table("z_reports", schema=None) as batch_op:
        batch_op.add_column(sa.Column("total_ht_cents", sa.Integer(), nullable=False, server_default="0"))
        batch_op.add_column(sa.Column("total_tva_cents", sa.Integer(), nullable=False, server_default="0"))
        batch_op.add_column(sa.Column("vat_breakdown", sa.JSON(), nullable=True))

    with op.batch_alter_table("credit_notes", schema=None) as batch_op:
        batch_op.add_column(sa.Column("chain_scope", sa.String(length=96), nullable=True))
        batch_op.add_column(sa.Column("sequence_number", sa.Integer(), nullable=True))
        batch_op.add_column(sa.Column("previous_hash", sa.String(length=64), nullable=True))
        batch_op.add_column(sa.Column("hash", sa.String(length=64), nullable=True))

    op.create_index(
        "uq_credit_notes_chain_sequence",
        "credit_notes",
        ["chain_scope", "sequence_number"],
        unique=True,
    )


def downgrade():
    op.drop_index("uq_credit_notes_chain_sequence", table_name="credit_notes")

    with op.batch_alter_table("credit_notes", schema=None) as batch_op:
        batch_op.drop_column("hash")
        batch_op.drop_column("previous_hash")
        batch_op.drop_column("sequence_number")
        batch_op.drop_column("chain_scope")

    with op.batch_alter_table("z_reports", schema=None) as batch_op:
        batch_op.drop_column("vat_breakdown")
        batch_op.drop_column("total_tva_cents")
        batch_op.drop_column("total_ht_cents")

    # The table rebuild would not carry the partial WHERE clause over
    op.drop_index("uq_cash_sessions_open_register", table_name="cash_sessions")
    with op.batch_alter_table("cash_sessions", schema=None) as batch_op:
        batch_op.drop_column("attached_invoice_count")
        batch_op.drop_column("vat_breakdown")
        batch_op.drop_column("total_tva_cents")
        batch_op.drop_column("total_ht_cents")
    op.create_index(
        "uq_cash_sessions_open_register",
        "cash_sessions",
        ["register_id"],
        unique=True,
        sqlite_where=sa.text("status = 'open'"),
        postgresql_where=sa.text("status = 'open'"),
    )
