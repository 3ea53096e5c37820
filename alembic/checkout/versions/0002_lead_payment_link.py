"""link checkouts to leads and add the lead payment projection

Revision ID: 0002_lead_payment_link
Revises: 0001_checkout
Create Date: 2026-03-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_lead_payment_link"
down_revision = "0001_checkout"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("payment_checkouts", sa.Column("lead_id", sa.String(), nullable=True))
    op.create_foreign_key(
        "payment_checkouts_lead_id_fkey",
        "payment_checkouts",
        "lead_enrollments",
        ["lead_id"],
        ["id"],
    )
    op.create_index("ix_payment_checkouts_lead_id", "payment_checkouts", ["lead_id"])

    op.add_column(
        "lead_enrollments",
        sa.Column("payment_status", sa.String(), server_default="pending", nullable=False),
    )
    op.add_column("lead_enrollments", sa.Column("payment_reference", sa.String(), nullable=True))
    op.add_column("lead_enrollments", sa.Column("payment_tid", sa.String(), nullable=True))
    op.add_column("lead_enrollments", sa.Column("payment_return_code", sa.String(), nullable=True))
    op.add_column("lead_enrollments", sa.Column("payment_return_message", sa.Text(), nullable=True))
    op.add_column("lead_enrollments", sa.Column("payment_updated_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("lead_enrollments", sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True))
    op.create_index("ix_lead_enrollments_payment_status", "lead_enrollments", ["payment_status"])
    op.create_index("ix_lead_enrollments_payment_reference", "lead_enrollments", ["payment_reference"])


def downgrade() -> None:
    op.drop_index("ix_lead_enrollments_payment_reference", table_name="lead_enrollments")
    op.drop_index("ix_lead_enrollments_payment_status", table_name="lead_enrollments")
    for column in (
        "paid_at",
        "payment_updated_at",
        "payment_return_message",
        "payment_return_code",
        "payment_tid",
        "payment_reference",
        "payment_status",
    ):
        op.drop_column("lead_enrollments", column)
    op.drop_index("ix_payment_checkouts_lead_id", table_name="payment_checkouts")
    op.drop_constraint("payment_checkouts_lead_id_fkey", "payment_checkouts", type_="foreignkey")
    op.drop_column("payment_checkouts", "lead_id")
