"""Read access to leads/courses and the lead payment projection writer."""

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, null, select, update
from sqlalchemy.exc import DBAPIError

from enrollpay.common.state_machine import APPROVED
from enrollpay.services.checkout.models import Course, LeadEnrollment
from enrollpay.services.checkout.store import MISSING_COLUMN, classify_db_error

leads = LeadEnrollment.__table__
courses = Course.__table__

PAYMENT_COLUMNS = (
    "payment_status",
    "payment_reference",
    "payment_tid",
    "payment_return_code",
    "payment_return_message",
)
LEAD_COLUMNS = (
    "id",
    "course_id",
    "course_slug",
    "course_name",
    "course_price_cents",
    "customer_name",
    "customer_email",
    "customer_phone",
    "cpf",
    "address",
)


@dataclass(frozen=True)
class LeadSnapshot:
    id: str
    course_id: str
    course_slug: str
    course_name: str
    course_price_cents: int | None
    customer_name: str
    customer_email: str
    customer_phone: str
    cpf: str | None = None
    city: str | None = None
    state: str | None = None
    payment_status: str | None = None
    payment_reference: str | None = None
    payment_tid: str | None = None
    payment_return_code: str | None = None
    payment_return_message: str | None = None


@dataclass(frozen=True)
class CourseSnapshot:
    id: str
    slug: str
    name: str
    price_cents: int


def _address_field(address, name: str) -> str | None:
    if not isinstance(address, dict):
        return None
    value = str(address.get(name) or "").strip()
    return value or None


class LeadPaymentRepository:
    """Narrow view of the lead/course tables used by the checkout flow."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def _load_lead_row(self, lead_id: str, with_payment: bool):
        columns = [leads.c[name] for name in LEAD_COLUMNS]
        columns += [leads.c[name] if with_payment else null().label(name) for name in PAYMENT_COLUMNS]
        with self.session_factory() as db:
            return db.execute(select(*columns).where(leads.c.id == lead_id).limit(1)).mappings().first()

    def load_lead(self, lead_id: str) -> LeadSnapshot | None:
        """Lead plus payment projection; projection reads as empty on older schemas."""

        try:
            row = self._load_lead_row(lead_id, with_payment=True)
        except DBAPIError as exc:
            if classify_db_error(exc) != MISSING_COLUMN:
                raise
            row = self._load_lead_row(lead_id, with_payment=False)
        if row is None:
            return None
        fields = {name: row[name] for name in LEAD_COLUMNS if name != "address"}
        fields.update({name: row[name] for name in PAYMENT_COLUMNS})
        return LeadSnapshot(
            **fields,
            city=_address_field(row["address"], "city"),
            state=_address_field(row["address"], "state"),
        )

    def load_course(self, course_id: str, slug: str) -> CourseSnapshot | None:
        with self.session_factory() as db:
            row = db.execute(
                select(courses.c.id, courses.c.slug, courses.c.name, courses.c.price_cents)
                .where(courses.c.id == course_id, courses.c.slug == slug)
                .limit(1)
            ).mappings().first()
        if row is None:
            return None
        return CourseSnapshot(id=row["id"], slug=row["slug"], name=row["name"], price_cents=row["price_cents"] or 0)

    def update_payment_projection(
        self,
        lead_id: str,
        status: str,
        reference: str,
        tid: str | None = None,
        return_code: str | None = None,
        return_message: str | None = None,
    ) -> None:
        """Mirror the latest attempt onto the lead; `paid_at` keeps the first approval."""

        now = datetime.now(timezone.utc)
        values = {
            "payment_status": status,
            "payment_reference": reference,
            "payment_tid": tid,
            "payment_return_code": return_code,
            "payment_return_message": return_message,
            "payment_updated_at": now,
        }
        if status == APPROVED:
            values["paid_at"] = func.coalesce(leads.c.paid_at, now)
        with self.session_factory() as db:
            db.execute(update(leads).where(leads.c.id == lead_id).values(**values))
            db.commit()
