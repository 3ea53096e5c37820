"""Checkout orchestration: exactly-once charging, replays and settlement."""

import httpx
import pytest
from sqlalchemy import select

from enrollpay.common.db import build_session_factory
from enrollpay.common.errors import ClientInputError, ConfigurationError, StateConflictError, UpstreamError
from enrollpay.common.state_machine import PROVIDER_UNAVAILABLE
from enrollpay.services.checkout.models import LeadEnrollment, PaymentCheckout
from enrollpay.services.checkout.service import CheckoutOrchestrator, build_lead_code
from enrollpay.services.checkout.store import CheckoutRecordStore

from conftest import (
    COURSE_PRICE_CENTS,
    DECLINED_CARD,
    FIXED_NOW,
    THREE_DS_CARD,
    RecordingGateway,
    UnavailableGateway,
    checkout_intent,
    create_legacy_checkouts,
    make_settings,
    seed_course,
    seed_lead,
)


def checkout_rows(session_factory):
    with session_factory() as db:
        return db.execute(select(PaymentCheckout)).scalars().all()


def load_lead(session_factory, lead_id):
    with session_factory() as db:
        return db.get(LeadEnrollment, lead_id)


def test_approved_charge_settles_record_and_lead(orchestrator, gateway, session_factory, lead_id):
    outcome = orchestrator.checkout(checkout_intent(lead_id, key="client-key-0001"))

    body = outcome.body
    assert outcome.status_code == 200
    assert body.status == "approved"
    assert body.ok is True and body.approved is True
    assert body.amount_cents == COURSE_PRICE_CENTS
    assert body.idempotency_key == "client-key-0001"
    assert body.idempotent_reused is False
    assert body.idempotency_persisted is True
    assert body.provider_mode == "mock"
    assert body.lead.city == "Recife"
    assert body.lead_code == build_lead_code(lead_id)
    assert len(gateway.calls) == 1
    assert gateway.calls[0].amount == COURSE_PRICE_CENTS

    [record] = checkout_rows(session_factory)
    lead = load_lead(session_factory, lead_id)
    assert record.status == "approved"
    assert record.idempotency_key == "client-key-0001"
    assert record.card_last4 == "4242"
    assert lead.payment_status == "approved"
    assert lead.payment_reference == body.reference
    assert lead.paid_at is not None


def test_client_amount_is_ignored(orchestrator, gateway, lead_id):
    outcome = orchestrator.checkout(checkout_intent(lead_id, amount_cents=100, amount=1))

    assert outcome.body.amount_cents == COURSE_PRICE_CENTS
    assert gateway.calls[0].amount == COURSE_PRICE_CENTS


def test_same_key_replays_without_second_charge(orchestrator, gateway, session_factory, lead_id):
    first = orchestrator.checkout(checkout_intent(lead_id, DECLINED_CARD, key="client-key-0001"))
    second = orchestrator.checkout(checkout_intent(lead_id, DECLINED_CARD, key="client-key-0001"))

    assert first.body.status == "declined"
    assert second.body.status == "declined"
    assert second.body.idempotent_reused is True
    assert second.body.checkout_id == first.body.checkout_id
    assert second.body.return_code == "05"
    assert len(gateway.calls) == 1
    assert len(checkout_rows(session_factory)) == 1


def test_blind_retry_gets_same_automatic_key(orchestrator, gateway, lead_id):
    first = orchestrator.checkout(checkout_intent(lead_id, DECLINED_CARD))
    second = orchestrator.checkout(checkout_intent(lead_id, DECLINED_CARD))

    assert first.idempotency_key.startswith("auto-")
    assert second.idempotency_key == first.idempotency_key
    assert second.body.idempotent_reused is True
    assert len(gateway.calls) == 1


def test_key_owned_by_another_lead_conflicts(orchestrator, session_factory, lead_id):
    orchestrator.checkout(checkout_intent(lead_id, DECLINED_CARD, key="shared-key-0001"))
    other_lead = seed_lead(session_factory, customer_email="joao@example.com")

    with pytest.raises(StateConflictError) as exc_info:
        orchestrator.checkout(checkout_intent(other_lead, DECLINED_CARD, key="shared-key-0001"))

    assert exc_info.value.code == "idempotency_key_conflict"
    assert exc_info.value.headers == {"Idempotency-Key": "shared-key-0001"}


def test_already_paid_lead_is_not_charged_again(orchestrator, gateway, lead_id):
    orchestrator.checkout(checkout_intent(lead_id, key="client-key-0001"))

    outcome = orchestrator.checkout(checkout_intent(lead_id, key="client-key-0002"))

    assert outcome.status_code == 200
    assert outcome.body.lead_already_paid is True
    assert outcome.body.idempotency_key == "lead-already-paid"
    assert outcome.body.checkout_id is None
    assert len(gateway.calls) == 1


def test_in_flight_lead_is_rejected(orchestrator, session_factory, gateway):
    lead_id = seed_lead(session_factory, payment_status="processing", payment_reference="chk-running")

    with pytest.raises(StateConflictError) as exc_info:
        orchestrator.checkout(checkout_intent(lead_id))

    assert exc_info.value.code == "payment_in_progress"
    assert exc_info.value.fields["reference"] == "chk-running"
    assert gateway.calls == []


def test_three_d_secure_leaves_checkout_pending(orchestrator, session_factory, lead_id):
    outcome = orchestrator.checkout(checkout_intent(lead_id, THREE_DS_CARD))

    assert outcome.status_code == 200
    assert outcome.body.status == "pending_authentication"
    assert outcome.body.requires_action is True
    assert outcome.body.redirect_url.startswith("https://mock-gateway.local/3ds/")
    assert load_lead(session_factory, lead_id).payment_status == "pending_authentication"


def test_provider_unavailable_is_recorded_and_replayed(session_factory, store, lead_id):
    gateway = UnavailableGateway()
    orchestrator = CheckoutOrchestrator(
        session_factory, app_settings=make_settings(), gateway=gateway, store=store, clock=lambda: FIXED_NOW
    )

    with pytest.raises(UpstreamError) as exc_info:
        orchestrator.checkout(checkout_intent(lead_id, key="client-key-0001"))
    assert exc_info.value.code == "payment_provider_unavailable"
    assert exc_info.value.status_code == 502
    assert exc_info.value.fields["idempotency_key"] == "client-key-0001"

    [record] = checkout_rows(session_factory)
    assert record.status == PROVIDER_UNAVAILABLE
    assert load_lead(session_factory, lead_id).payment_status == PROVIDER_UNAVAILABLE

    replay = orchestrator.checkout(checkout_intent(lead_id, key="client-key-0001"))
    assert replay.status_code == 502
    assert replay.body.status == PROVIDER_UNAVAILABLE
    assert replay.body.idempotent_reused is True
    assert gateway.calls == 1


def test_legacy_schema_replays_by_reference(engine, gateway):
    create_legacy_checkouts(engine, with_lead_id=True)
    factory = build_session_factory(engine)
    seed_course(factory)
    lead_id = seed_lead(factory)
    orchestrator = CheckoutOrchestrator(
        factory,
        app_settings=make_settings(),
        gateway=gateway,
        store=CheckoutRecordStore(factory, auto_repair=False, service_name="test"),
        clock=lambda: FIXED_NOW,
    )

    first = orchestrator.checkout(checkout_intent(lead_id, DECLINED_CARD, key="client-key-0001"))
    second = orchestrator.checkout(checkout_intent(lead_id, DECLINED_CARD, key="client-key-0001"))

    assert first.body.idempotency_persisted is False
    assert second.body.idempotent_reused is True
    assert second.body.checkout_id == first.body.checkout_id
    assert len(gateway.calls) == 1


@pytest.mark.parametrize(
    ("overrides", "code"),
    [
        ({"courseSlug": ""}, "invalid_course"),
        ({"leadId": None}, "missing_lead_id"),
        ({"leadId": "lead-123"}, "invalid_lead_id"),
        ({"leadId": "3f1c8a52-9a4e-4c1b-8d2e-1a2b3c4d5e6f"}, "invalid_lead"),
        ({"courseSlug": "data-science"}, "lead_course_mismatch"),
        ({"email": "not-an-email"}, "invalid_customer_email"),
        ({"phone": "123"}, "invalid_customer_phone"),
        ({"cpf": "123"}, "invalid_customer_cpf"),
        ({"card": {"holder_name": "", "number": "4242424242424242"}}, "invalid_card_holder_name"),
        ({"card": {"holder_name": "MARIA", "number": "4242424242424241"}}, "invalid_card_number"),
        ({"card": {"holder_name": "MARIA", "number": "4242424242424242", "cvv": "1"}}, "invalid_card_cvv"),
        (
            {"card": {"holder_name": "MARIA", "number": "4242424242424242", "cvv": "123", "exp_month": "13"}},
            "invalid_card_expiration",
        ),
        (
            {
                "card": {
                    "holder_name": "MARIA",
                    "number": "4242424242424242",
                    "cvv": "123",
                    "exp_month": "01",
                    "exp_year": "2026",
                }
            },
            "expired_card",
        ),
        ({"idempotency_key": "@@@"}, "invalid_idempotency_key"),
    ],
)
def test_invalid_input_is_rejected_before_charging(orchestrator, gateway, lead_id, overrides, code):
    with pytest.raises(ClientInputError) as exc_info:
        orchestrator.checkout(checkout_intent(lead_id, **overrides))

    assert exc_info.value.code == code
    assert gateway.calls == []


def test_lead_pointing_at_missing_course(orchestrator, session_factory):
    lead_id = seed_lead(session_factory, course_id="missing-course")

    with pytest.raises(ClientInputError) as exc_info:
        orchestrator.checkout(checkout_intent(lead_id))

    assert exc_info.value.code == "unknown_course"


def test_invalid_provider_mode(session_factory, gateway, lead_id):
    orchestrator = CheckoutOrchestrator(session_factory, app_settings=make_settings(payment_provider_mode="paypal"))

    with pytest.raises(ConfigurationError) as exc_info:
        orchestrator.checkout(checkout_intent(lead_id))

    assert exc_info.value.code == "payment_provider_mode_invalid"


def test_live_mode_without_credentials(session_factory, gateway, store, lead_id):
    orchestrator = CheckoutOrchestrator(
        session_factory,
        app_settings=make_settings(payment_provider_mode="rede", rede_pv="", rede_token=""),
        gateway=gateway,
        store=store,
        clock=lambda: FIXED_NOW,
    )

    with pytest.raises(ConfigurationError) as exc_info:
        orchestrator.checkout(checkout_intent(lead_id, key="client-key-0001"))

    assert exc_info.value.code == "payment_provider_not_configured"
    assert gateway.calls == []
    assert checkout_rows(session_factory) == []


def test_production_runtime_requires_production_provider(session_factory, gateway, store, lead_id):
    orchestrator = CheckoutOrchestrator(
        session_factory,
        app_settings=make_settings(
            payment_provider_mode="rede", rede_pv="123", rede_token="tok", rede_env="sandbox", runtime_env="production"
        ),
        gateway=gateway,
        store=store,
        clock=lambda: FIXED_NOW,
    )

    with pytest.raises(ConfigurationError) as exc_info:
        orchestrator.checkout(checkout_intent(lead_id))

    assert exc_info.value.code == "payment_provider_environment_mismatch"
    assert exc_info.value.fields["current_env"] == "sandbox"


def test_rejected_live_credentials_surface_as_configuration_error(session_factory, store, lead_id):
    transport = httpx.MockTransport(
        lambda request: httpx.Response(401, json={"returnCode": "25", "returnMessage": "Invalid credentials"})
    )
    orchestrator = CheckoutOrchestrator(
        session_factory,
        app_settings=make_settings(payment_provider_mode="rede", rede_pv="123", rede_token="tok"),
        gateway=RecordingGateway(transport=transport),
        store=store,
        clock=lambda: FIXED_NOW,
    )

    with pytest.raises(ConfigurationError) as exc_info:
        orchestrator.checkout(checkout_intent(lead_id))

    assert exc_info.value.code == "payment_provider_credentials_invalid"
    [record] = checkout_rows(session_factory)
    assert record.status == "declined"
    assert record.provider_http_status == 401


def test_lead_code():
    assert build_lead_code("3f1c8a52-9a4e-4c1b") == "MAT-3F1C8A52"
    assert build_lead_code("") == ""
