"""initial checkout schema

Revision ID: 0001_checkout
Revises:
Create Date: 2026-03-02
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_checkout"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "courses",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_courses_slug", "courses", ["slug"], unique=True)

    op.create_table(
        "lead_enrollments",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("course_id", sa.String(), nullable=False),
        sa.Column("course_slug", sa.String(), nullable=False),
        sa.Column("course_name", sa.String(), nullable=False),
        sa.Column("course_price_cents", sa.Integer(), nullable=True),
        sa.Column("customer_name", sa.String(), nullable=False),
        sa.Column("customer_email", sa.String(), nullable=False),
        sa.Column("customer_phone", sa.String(), nullable=False),
        sa.Column("cpf", sa.String(), nullable=True),
        sa.Column("address", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["course_id"], ["courses.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_lead_enrollments_course_id", "lead_enrollments", ["course_id"])
    op.create_index("ix_lead_enrollments_course_slug", "lead_enrollments", ["course_slug"])
    op.create_index("ix_lead_enrollments_customer_email", "lead_enrollments", ["customer_email"])

    op.create_table(
        "payment_checkouts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("course_id", sa.String(), nullable=False),
        sa.Column("course_slug", sa.String(), nullable=False),
        sa.Column("course_name", sa.String(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("installments", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("reference", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("provider_http_status", sa.Integer(), nullable=True),
        sa.Column("provider_return_code", sa.String(), nullable=True),
        sa.Column("provider_return_message", sa.Text(), nullable=True),
        sa.Column("provider_tid", sa.String(), nullable=True),
        sa.Column("provider_authorization_code", sa.String(), nullable=True),
        sa.Column("provider_three_d_secure_url", sa.Text(), nullable=True),
        sa.Column("provider_response", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("customer_name", sa.String(), nullable=True),
        sa.Column("customer_email", sa.String(), nullable=True),
        sa.Column("customer_phone", sa.String(), nullable=True),
        sa.Column("customer_cpf", sa.String(), nullable=True),
        sa.Column("card_holder_name", sa.String(), nullable=True),
        sa.Column("card_last4", sa.String(length=4), nullable=True),
        sa.Column("card_bin", sa.String(length=6), nullable=True),
        sa.Column("brand_name", sa.String(), nullable=True),
        sa.Column("source_url", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["course_id"], ["courses.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_payment_checkouts_reference", "payment_checkouts", ["reference"])
    op.create_index("ix_payment_checkouts_provider_tid", "payment_checkouts", ["provider_tid"])
    op.create_index("ix_payment_checkouts_customer_email", "payment_checkouts", ["customer_email"])
    op.create_index("ix_payment_checkouts_created_at", "payment_checkouts", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_payment_checkouts_created_at", table_name="payment_checkouts")
    op.drop_index("ix_payment_checkouts_customer_email", table_name="payment_checkouts")
    op.drop_index("ix_payment_checkouts_provider_tid", table_name="payment_checkouts")
    op.drop_index("ix_payment_checkouts_reference", table_name="payment_checkouts")
    op.drop_table("payment_checkouts")
    op.drop_index("ix_lead_enrollments_customer_email", table_name="lead_enrollments")
    op.drop_index("ix_lead_enrollments_course_slug", table_name="lead_enrollments")
    op.drop_index("ix_lead_enrollments_course_id", table_name="lead_enrollments")
    op.drop_table("lead_enrollments")
    op.drop_index("ix_courses_slug", table_name="courses")
    op.drop_table("courses")
