"""Checkout request intent and response schemas.

Clients send the same logical field under several names (snake_case,
camelCase, nested `card`/`customer` objects). `FIELD_SOURCES` lists the
accepted paths per field in priority order; the body is resolved against it
once, at the HTTP boundary, into a `CheckoutIntent`.
"""

from dataclasses import dataclass
from typing import Any, Mapping

from pydantic import BaseModel

FIELD_SOURCES: dict[str, tuple[tuple[str, ...], ...]] = {
    "course_slug": (("course_slug",), ("courseSlug",), ("course",)),
    "lead_id": (("lead_id",), ("leadId",), ("lead",)),
    "customer_name": (("customer", "name"), ("name",)),
    "customer_email": (("customer", "email"), ("email",)),
    "customer_phone": (("customer", "phone"), ("phone",), ("telefone",)),
    "customer_cpf": (("customer", "cpf"), ("cpf",)),
    "card_holder_name": (("card", "holder_name"), ("card_holder_name",), ("cardHolderName",)),
    "card_number": (("card", "number"), ("card_number",), ("cardNumber",)),
    "card_cvv": (("card", "cvv"), ("card_cvv",), ("cardCvv",)),
    "card_exp_month": (("card", "exp_month"), ("card_expiration_month",), ("expirationMonth",)),
    "card_exp_year": (("card", "exp_year"), ("card_expiration_year",), ("expirationYear",)),
    "installments": (("installments",),),
    "reference": (("reference",),),
    "source_url": (("source_url",), ("sourceUrl",)),
    "idempotency_key": (("idempotency_key",), ("idempotencyKey",)),
}

IDEMPOTENCY_HEADER = "idempotency-key"


def resolve_path(body: Mapping[str, Any], path: tuple[str, ...]) -> Any:
    current: Any = body
    for part in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def resolve_field(body: Mapping[str, Any], name: str) -> Any:
    """First non-null value among the accepted paths for `name`."""

    for path in FIELD_SOURCES[name]:
        value = resolve_path(body, path)
        if value is not None:
            return value
    return None


@dataclass(frozen=True)
class CheckoutIntent:
    """Raw checkout request, one attribute per logical field."""

    course_slug: Any = None
    lead_id: Any = None
    customer_name: Any = None
    customer_email: Any = None
    customer_phone: Any = None
    customer_cpf: Any = None
    card_holder_name: Any = None
    card_number: Any = None
    card_cvv: Any = None
    card_exp_month: Any = None
    card_exp_year: Any = None
    installments: Any = None
    reference: Any = None
    source_url: Any = None
    idempotency_key: Any = None

    @classmethod
    def from_request(cls, body: Mapping[str, Any] | None, headers: Mapping[str, str]) -> "CheckoutIntent":
        body = body or {}
        fields = {name: resolve_field(body, name) for name in FIELD_SOURCES}
        header_key = (headers.get(IDEMPOTENCY_HEADER) or "").strip()
        if header_key:
            fields["idempotency_key"] = header_key
        if fields["source_url"] is None:
            fields["source_url"] = headers.get("referer")
        return cls(**fields)


class CustomerView(BaseModel):
    name: str
    email: str
    phone: str


class LeadView(BaseModel):
    id: str
    code: str
    city: str | None = None
    state: str | None = None


class CourseView(BaseModel):
    slug: str
    name: str
    price_cents: int


class CheckoutResponse(BaseModel):
    """Body returned for fresh charges and replays alike."""

    ok: bool
    approved: bool
    status: str
    checkout_id: str | None
    lead_id: str
    lead_code: str
    lead_already_paid: bool = False
    reference: str | None
    tid: str | None
    authorization_code: str | None
    return_code: str | None
    return_message: str | None
    amount_cents: int
    installments: int
    requires_action: bool
    redirect_url: str | None
    idempotency_key: str
    idempotent_reused: bool
    idempotency_persisted: bool
    provider_mode: str
    customer: CustomerView
    lead: LeadView
    course: CourseView
