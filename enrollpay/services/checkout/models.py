"""Checkout database models.

`payment_checkouts` is the append-and-update log of charge attempts; the
payment columns on `lead_enrollments` are a projection of the latest attempt.
Deployed databases may lag behind these definitions (see the alembic
revisions), so the store and lead repository query them column by column.
"""

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from enrollpay.common.db import Base

JsonDocument = JSON().with_variant(JSONB(), "postgresql")


class Course(Base):
    """Catalog entry; the only trusted source of a checkout amount."""

    __tablename__ = "courses"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    slug: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str] = mapped_column(String)
    price_cents: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class LeadEnrollment(Base):
    """Enrollment lead with its payment projection columns."""

    __tablename__ = "lead_enrollments"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    course_id: Mapped[str] = mapped_column(ForeignKey("courses.id"), index=True)
    course_slug: Mapped[str] = mapped_column(String, index=True)
    course_name: Mapped[str] = mapped_column(String)
    course_price_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    customer_name: Mapped[str] = mapped_column(String)
    customer_email: Mapped[str] = mapped_column(String, index=True)
    customer_phone: Mapped[str] = mapped_column(String)
    cpf: Mapped[str | None] = mapped_column(String, nullable=True)
    address: Mapped[dict[str, Any] | None] = mapped_column(JsonDocument, nullable=True)
    payment_status: Mapped[str] = mapped_column(String, default="pending", server_default="pending", index=True)
    payment_reference: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    payment_tid: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_return_code: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_return_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PaymentCheckout(Base):
    """One charge attempt and its provider outcome."""

    __tablename__ = "payment_checkouts"
    __table_args__ = (
        Index(
            "payment_checkouts_idempotency_key_uidx",
            "idempotency_key",
            unique=True,
            postgresql_where=text("idempotency_key IS NOT NULL"),
            sqlite_where=text("idempotency_key IS NOT NULL"),
        ),
        Index("payment_checkouts_status_idx", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # `lead_id` and `idempotency_key` carry no Python-side default: rows are
    # written column by column against databases that may not have them.
    lead_id: Mapped[str | None] = mapped_column(ForeignKey("lead_enrollments.id"), nullable=True, index=True)
    course_id: Mapped[str] = mapped_column(ForeignKey("courses.id"))
    course_slug: Mapped[str] = mapped_column(String)
    course_name: Mapped[str] = mapped_column(String)
    amount_cents: Mapped[int] = mapped_column(Integer)
    installments: Mapped[int] = mapped_column(Integer, server_default=text("1"))
    reference: Mapped[str] = mapped_column(String, index=True)
    idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String)
    provider_http_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    provider_return_code: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_return_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_tid: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    provider_authorization_code: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_three_d_secure_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_response: Mapped[dict[str, Any] | None] = mapped_column(JsonDocument, nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    customer_phone: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_cpf: Mapped[str | None] = mapped_column(String, nullable=True)
    card_holder_name: Mapped[str | None] = mapped_column(String, nullable=True)
    card_last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    card_bin: Mapped[str | None] = mapped_column(String(6), nullable=True)
    brand_name: Mapped[str | None] = mapped_column(String, nullable=True)
    source_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
