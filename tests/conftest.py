"""Shared fixtures: throwaway SQLite databases, seeded leads and an orchestrator."""

import os
from uuid import uuid4

os.environ.setdefault("DATABASE_DSN", "sqlite://")

import pytest
from sqlalchemy import text

from enrollpay.common.config import CommonSettings
from enrollpay.common.db import Base, build_engine, build_session_factory
from enrollpay.services.checkout.models import Course, LeadEnrollment
from enrollpay.services.checkout.schemas import CheckoutIntent
from enrollpay.services.checkout.service import CheckoutOrchestrator
from enrollpay.services.checkout.store import CheckoutRecordStore, IdempotencySchemaCapability
from enrollpay.services.provider_adapter.service import GatewayUnavailableError, ProviderAdapterService

COURSE_ID = "course-python"
COURSE_SLUG = "python-bootcamp"
COURSE_PRICE_CENTS = 49_900
# 2026-05-28T00:00:00Z
FIXED_NOW = 1_779_926_400.0

APPROVED_CARD = "4242424242424242"
DECLINED_CARD = "4200000000000000"
THREE_DS_CARD = "4111111111111111"

LEGACY_CHECKOUT_COLUMNS = """
    id VARCHAR PRIMARY KEY,
    {lead_id}
    course_id VARCHAR NOT NULL,
    course_slug VARCHAR NOT NULL,
    course_name VARCHAR NOT NULL,
    amount_cents INTEGER NOT NULL,
    installments INTEGER NOT NULL DEFAULT 1,
    reference VARCHAR NOT NULL,
    status VARCHAR NOT NULL,
    provider_http_status INTEGER,
    provider_return_code VARCHAR,
    provider_return_message TEXT,
    provider_tid VARCHAR,
    provider_authorization_code VARCHAR,
    provider_three_d_secure_url TEXT,
    provider_response JSON,
    customer_name VARCHAR,
    customer_email VARCHAR,
    customer_phone VARCHAR,
    customer_cpf VARCHAR,
    card_holder_name VARCHAR,
    card_last4 VARCHAR(4),
    card_bin VARCHAR(6),
    brand_name VARCHAR,
    source_url TEXT,
    created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
"""


class RecordingGateway(ProviderAdapterService):
    """Real adapter that remembers every charge it was asked to make."""

    def __init__(self, transport=None) -> None:
        super().__init__(transport=transport, service_name="test")
        self.calls = []

    def charge(self, mode, config, request):
        self.calls.append(request)
        return super().charge(mode, config, request)


class UnavailableGateway(ProviderAdapterService):
    def __init__(self) -> None:
        super().__init__(service_name="test")
        self.calls = 0

    def charge(self, mode, config, request):
        self.calls += 1
        raise GatewayUnavailableError("ReadTimeout calling e.Rede")


def make_settings(**overrides) -> CommonSettings:
    values = {"database_dsn": "sqlite://", "service_name": "test", "payment_provider_mode": "mock"}
    values.update(overrides)
    return CommonSettings(**values)


def create_legacy_checkouts(engine, with_lead_id: bool) -> None:
    """`payment_checkouts` as deployed before the idempotency column existed."""

    Base.metadata.create_all(engine, tables=[Course.__table__, LeadEnrollment.__table__])
    lead_id = "lead_id VARCHAR," if with_lead_id else ""
    with engine.begin() as conn:
        conn.execute(text(f"CREATE TABLE payment_checkouts ({LEGACY_CHECKOUT_COLUMNS.format(lead_id=lead_id)})"))


def seed_course(session_factory) -> None:
    with session_factory() as db:
        db.add(Course(id=COURSE_ID, slug=COURSE_SLUG, name="Python Bootcamp", price_cents=COURSE_PRICE_CENTS))
        db.commit()


def seed_lead(session_factory, **overrides) -> str:
    values = {
        "id": str(uuid4()),
        "course_id": COURSE_ID,
        "course_slug": COURSE_SLUG,
        "course_name": "Python Bootcamp",
        "course_price_cents": COURSE_PRICE_CENTS,
        "customer_name": "Maria Souza",
        "customer_email": "maria@example.com",
        "customer_phone": "+55 81 99999-0000",
        "cpf": "123.456.789-09",
        "address": {"city": "Recife", "state": "PE"},
    }
    values.update(overrides)
    with session_factory() as db:
        db.add(LeadEnrollment(**values))
        db.commit()
    return values["id"]


def checkout_body(lead_id: str, card_number: str = APPROVED_CARD, **overrides) -> dict:
    body = {
        "courseSlug": COURSE_SLUG,
        "leadId": lead_id,
        "card": {
            "holder_name": "MARIA SOUZA",
            "number": card_number,
            "cvv": "123",
            "exp_month": "12",
            "exp_year": "2030",
        },
    }
    body.update(overrides)
    return body


def checkout_intent(lead_id: str, card_number: str = APPROVED_CARD, key: str | None = None, **overrides):
    headers = {"idempotency-key": key} if key else {}
    return CheckoutIntent.from_request(checkout_body(lead_id, card_number, **overrides), headers)


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'checkout.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    Base.metadata.create_all(engine)
    factory = build_session_factory(engine)
    seed_course(factory)
    return factory


@pytest.fixture
def lead_id(session_factory):
    return seed_lead(session_factory)


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def store(session_factory):
    return CheckoutRecordStore(
        session_factory,
        capability=IdempotencySchemaCapability(cooldown_seconds=300.0),
        auto_repair=True,
        service_name="test",
    )


@pytest.fixture
def orchestrator(session_factory, gateway, store):
    return CheckoutOrchestrator(
        session_factory,
        app_settings=make_settings(),
        gateway=gateway,
        store=store,
        clock=lambda: FIXED_NOW,
    )
