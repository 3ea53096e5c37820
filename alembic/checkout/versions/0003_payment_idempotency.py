"""add checkout idempotency key with partial unique index

Revision ID: 0003_payment_idempotency
Revises: 0002_lead_payment_link
Create Date: 2026-04-07
"""

from alembic import op
import sqlalchemy as sa


revision = "0003_payment_idempotency"
down_revision = "0002_lead_payment_link"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("payment_checkouts", sa.Column("idempotency_key", sa.String(), nullable=True))
    op.create_index(
        "payment_checkouts_idempotency_key_uidx",
        "payment_checkouts",
        ["idempotency_key"],
        unique=True,
        postgresql_where=sa.text("idempotency_key IS NOT NULL"),
    )
    op.create_index("payment_checkouts_status_idx", "payment_checkouts", ["status"])


def downgrade() -> None:
    op.drop_index("payment_checkouts_status_idx", table_name="payment_checkouts")
    op.drop_index("payment_checkouts_idempotency_key_uidx", table_name="payment_checkouts")
    op.drop_column("payment_checkouts", "idempotency_key")
