"""Checkout orchestration.

One request walks `LOOKUP -> (REUSE | CREATE) -> CHARGE -> SETTLE`. An earlier
attempt under the same idempotency key (or, on older schemas, the same
reference) is replayed without touching the provider. Otherwise a
`processing` record is written before the provider call and settled exactly
once afterwards, so a retry always finds the outcome of the first attempt.
"""

import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from enrollpay.common.config import CommonSettings, settings
from enrollpay.common.errors import (
    ClientInputError,
    ConfigurationError,
    PersistenceError,
    StateConflictError,
    UpstreamError,
)
from enrollpay.common.logging import checkout_id_ctx, idempotency_key_ctx, logger, sanitize_error
from enrollpay.common.metrics import checkout_outcomes_total, checkout_replays_total
from enrollpay.common.state_machine import (
    APPROVED,
    DECLINED,
    IN_FLIGHT_LEAD_STATUSES,
    PENDING_AUTHENTICATION,
    PROCESSING,
    PROVIDER_UNAVAILABLE,
    checkout_http_status,
    validate_transition,
)
from enrollpay.common.tracing import checkout_span
from enrollpay.services.checkout.idempotency import (
    IdempotencyKeyResolver,
    InvalidIdempotencyKey,
    KeyFingerprint,
    build_reference_from_idempotency_key,
)
from enrollpay.services.checkout.leads import CourseSnapshot, LeadPaymentRepository, LeadSnapshot
from enrollpay.services.checkout.schemas import CheckoutIntent, CheckoutResponse, CourseView, CustomerView, LeadView
from enrollpay.services.checkout.store import (
    CheckoutDraft,
    CheckoutRecord,
    CheckoutRecordStore,
    CheckoutResult,
    CheckoutSchemaIncompatible,
    InsertOutcome,
)
from enrollpay.services.checkout.validators import (
    is_card_expired,
    is_uuid,
    is_valid_card_number,
    is_valid_email,
    is_valid_phone,
    normalize_month,
    normalize_year,
    only_digits,
    parse_installments,
    sanitize_string,
)
from enrollpay.services.provider_adapter.config import (
    MODE_REDE,
    ProviderConfigError,
    RedeConfig,
    get_rede_config,
    normalize_payment_provider_mode,
)
from enrollpay.services.provider_adapter.schemas import CreditChargeRequest, ProviderResult
from enrollpay.services.provider_adapter.service import ProviderAdapterService

CREDENTIAL_RETURN_CODES = frozenset({"25", "26"})
LEAD_ALREADY_PAID_KEY = "lead-already-paid"


def build_lead_code(lead_id: str | None) -> str:
    normalized = re.sub(r"[^a-zA-Z0-9]", "", lead_id or "").upper()
    return f"MAT-{normalized[:8]}" if normalized else ""


@dataclass(frozen=True)
class Customer:
    name: str
    email: str
    phone: str
    cpf: str | None


@dataclass(frozen=True)
class Card:
    holder_name: str
    number: str
    cvv: str
    exp_month: str
    exp_year: str

    @property
    def bin(self) -> str:
        return self.number[:6]

    @property
    def last4(self) -> str:
        return self.number[-4:]


@dataclass
class CheckoutContext:
    """Validated request state shared by every response of one checkout."""

    lead: LeadSnapshot
    course: CourseSnapshot
    customer: Customer
    amount_cents: int
    installments: int
    idempotency_key: str
    reference: str
    provider_mode: str
    idempotency_persisted: bool = True

    def error_fields(self) -> dict:
        return {
            "headers": {"Idempotency-Key": self.idempotency_key},
            "idempotency_key": self.idempotency_key,
            "idempotency_persisted": self.idempotency_persisted,
            "provider_mode": self.provider_mode,
        }


@dataclass(frozen=True)
class CheckoutOutcome:
    status_code: int
    body: CheckoutResponse
    idempotency_key: str


class CheckoutOrchestrator:
    """Runs one checkout request end to end."""

    def __init__(
        self,
        session_factory,
        app_settings: CommonSettings = settings,
        gateway: ProviderAdapterService | None = None,
        store: CheckoutRecordStore | None = None,
        leads: LeadPaymentRepository | None = None,
        resolver: IdempotencyKeyResolver | None = None,
        clock=time.time,
    ) -> None:
        self.settings = app_settings
        self.store = store or CheckoutRecordStore(session_factory)
        self.leads = leads or LeadPaymentRepository(session_factory)
        self.gateway = gateway or ProviderAdapterService()
        self.resolver = resolver or IdempotencyKeyResolver(clock)
        self.clock = clock
        self.service_name = app_settings.service_name

    def checkout(self, intent: CheckoutIntent) -> CheckoutOutcome:
        provider_mode = self._provider_mode()

        course_slug = sanitize_string(intent.course_slug, 120)
        if not course_slug:
            raise ClientInputError("invalid_course", "Course slug is required.")
        lead = self._load_lead(intent)
        if lead.course_slug != course_slug:
            raise ClientInputError("lead_course_mismatch", "Lead is enrolled in a different course.")

        if lead.payment_status == APPROVED:
            return self._already_paid(lead, provider_mode)
        if lead.payment_status in IN_FLIGHT_LEAD_STATUSES:
            raise StateConflictError(
                "payment_in_progress",
                "A payment for this lead is already in progress.",
                status=lead.payment_status,
                reference=lead.payment_reference,
                tid=lead.payment_tid,
            )

        customer = self._validate_customer(intent, lead)
        card = self._validate_card(intent)
        course = self._load_course(lead, course_slug)
        amount_cents = max(0, int(course.price_cents or 0))
        if amount_cents <= 0:
            raise ClientInputError("invalid_course_amount", "Course has no chargeable price.")
        installments = parse_installments(intent.installments)

        try:
            key = self.resolver.resolve(
                sanitize_string(intent.idempotency_key, 240),
                KeyFingerprint(
                    lead_id=lead.id,
                    course_slug=course.slug,
                    amount_cents=amount_cents,
                    installments=installments,
                    card_bin=card.bin,
                    card_last4=card.last4,
                    expiration_month=card.exp_month,
                    expiration_year=card.exp_year,
                ),
            )
        except InvalidIdempotencyKey as exc:
            raise ClientInputError("invalid_idempotency_key", str(exc)) from exc
        idempotency_key_ctx.set(key.value)

        ctx = CheckoutContext(
            lead=lead,
            course=course,
            customer=customer,
            amount_cents=amount_cents,
            installments=installments,
            idempotency_key=key.value,
            reference=sanitize_string(intent.reference, 80)
            or build_reference_from_idempotency_key(course.slug, key.value),
            provider_mode=provider_mode,
        )

        replay = self._lookup(ctx)
        if replay is not None:
            return replay

        rede_config = self._rede_config(ctx)
        inserted = self._create(ctx, card, sanitize_string(intent.source_url, 500))
        if inserted.reused is not None:
            return self._replay(ctx, inserted.reused, "insert_race")
        checkout_id_ctx.set(inserted.checkout_id)

        result = self._charge(ctx, inserted.checkout_id, card, rede_config)
        return self._settle(ctx, inserted.checkout_id, result)

    def _provider_mode(self) -> str:
        try:
            return normalize_payment_provider_mode(self.settings.payment_provider_mode)
        except ProviderConfigError as exc:
            logger.error("payment_provider_mode_invalid error=%s", sanitize_error(exc))
            raise ConfigurationError("payment_provider_mode_invalid", "Payment provider mode is invalid.") from exc

    def _load_lead(self, intent: CheckoutIntent) -> LeadSnapshot:
        lead_id = sanitize_string(intent.lead_id, 80)
        if not lead_id:
            raise ClientInputError("missing_lead_id", "Lead id is required.")
        if not is_uuid(lead_id):
            raise ClientInputError("invalid_lead_id", "Lead id must be a UUID.")
        try:
            lead = self.leads.load_lead(lead_id)
        except SQLAlchemyError as exc:
            logger.error("lead_fetch_failed error=%s", sanitize_error(exc))
            raise PersistenceError("lead_fetch_failed", "Could not load the lead.") from exc
        if lead is None:
            raise ClientInputError("invalid_lead", "Lead not found.")
        return lead

    def _load_course(self, lead: LeadSnapshot, course_slug: str) -> CourseSnapshot:
        try:
            course = self.leads.load_course(lead.course_id, course_slug)
        except SQLAlchemyError as exc:
            logger.error("courses_fetch_failed error=%s", sanitize_error(exc))
            raise PersistenceError("courses_fetch_failed", "Could not load the course.") from exc
        if course is None:
            raise ClientInputError("unknown_course", "Course not found.")
        return course

    def _validate_customer(self, intent: CheckoutIntent, lead: LeadSnapshot) -> Customer:
        name = sanitize_string(intent.customer_name, 160) or sanitize_string(lead.customer_name, 160)
        email = sanitize_string(intent.customer_email, 180) or sanitize_string(lead.customer_email, 180)
        phone = sanitize_string(intent.customer_phone, 40) or sanitize_string(lead.customer_phone, 40)
        cpf = only_digits(intent.customer_cpf if intent.customer_cpf is not None else lead.cpf)

        if not name:
            raise ClientInputError("invalid_customer_name", "Customer name is required.")
        if not is_valid_email(email):
            raise ClientInputError("invalid_customer_email", "Customer email is invalid.")
        if not is_valid_phone(phone):
            raise ClientInputError("invalid_customer_phone", "Customer phone is invalid.")
        if cpf and len(cpf) != 11:
            raise ClientInputError("invalid_customer_cpf", "Customer CPF must have 11 digits.")
        return Customer(name=name, email=email, phone=phone, cpf=cpf or None)

    def _validate_card(self, intent: CheckoutIntent) -> Card:
        holder_name = sanitize_string(intent.card_holder_name, 160)
        number = only_digits(intent.card_number)
        cvv = only_digits(intent.card_cvv)
        exp_month = normalize_month(intent.card_exp_month)
        exp_year = normalize_year(intent.card_exp_year)

        if not holder_name:
            raise ClientInputError("invalid_card_holder_name", "Card holder name is required.")
        if not is_valid_card_number(number):
            raise ClientInputError("invalid_card_number", "Card number is invalid.")
        if not 3 <= len(cvv) <= 4:
            raise ClientInputError("invalid_card_cvv", "Card security code is invalid.")
        if not exp_month or not exp_year:
            raise ClientInputError("invalid_card_expiration", "Card expiration is invalid.")
        if is_card_expired(exp_month, exp_year, datetime.fromtimestamp(self.clock(), timezone.utc)):
            raise ClientInputError("expired_card", "Card is expired.")
        return Card(holder_name=holder_name, number=number, cvv=cvv, exp_month=exp_month, exp_year=exp_year)

    def _lookup(self, ctx: CheckoutContext) -> CheckoutOutcome | None:
        try:
            lookup = self.store.lookup(ctx.idempotency_key, ctx.reference, ctx.lead.id)
        except SQLAlchemyError as exc:
            logger.error("payment_idempotency_lookup_failed error=%s", sanitize_error(exc))
            raise PersistenceError(
                "payment_idempotency_lookup_failed",
                "Could not check for an earlier attempt.",
                **ctx.error_fields(),
            ) from exc

        ctx.idempotency_persisted = lookup.available
        if lookup.checkout is None:
            return None
        return self._replay(ctx, lookup.checkout, "idempotency_key" if lookup.available else "reference")

    def _replay(self, ctx: CheckoutContext, record: CheckoutRecord, source: str) -> CheckoutOutcome:
        if record.lead_id and record.lead_id != ctx.lead.id:
            logger.warning("idempotency_key_conflict checkout_id=%s", record.id)
            raise StateConflictError(
                "idempotency_key_conflict",
                "Idempotency key already belongs to another lead.",
                **ctx.error_fields(),
            )
        checkout_replays_total.labels(service=self.service_name, lookup=source).inc()
        logger.info("checkout_replayed checkout_id=%s status=%s lookup=%s", record.id, record.status, source)
        return self._outcome(
            ctx,
            status=record.status,
            checkout_id=record.id,
            amount_cents=int(record.amount_cents or ctx.amount_cents),
            installments=int(record.installments or ctx.installments),
            reference=record.reference or None,
            tid=record.provider_tid,
            authorization_code=record.provider_authorization_code,
            return_code=record.provider_return_code,
            return_message=record.provider_return_message,
            redirect_url=record.provider_three_d_secure_url,
            reused=True,
        )

    def _rede_config(self, ctx: CheckoutContext) -> RedeConfig | None:
        if ctx.provider_mode != MODE_REDE:
            return None
        try:
            config = get_rede_config(self.settings)
        except ProviderConfigError as exc:
            logger.error("payment_provider_not_configured error=%s", sanitize_error(exc))
            raise ConfigurationError(
                "payment_provider_not_configured", "Payment provider is not configured.", **ctx.error_fields()
            ) from exc
        if self.settings.is_production_runtime and config.environment != "production":
            raise ConfigurationError(
                "payment_provider_environment_mismatch",
                "Production runtime requires production provider credentials.",
                expected_env="production",
                current_env=config.environment,
                **ctx.error_fields(),
            )
        return config

    def _create(self, ctx: CheckoutContext, card: Card, source_url: str | None) -> InsertOutcome:
        draft = CheckoutDraft(
            checkout_id=str(uuid4()),
            lead_id=ctx.lead.id,
            course_id=ctx.course.id,
            course_slug=ctx.course.slug,
            course_name=ctx.course.name,
            amount_cents=ctx.amount_cents,
            installments=ctx.installments,
            reference=ctx.reference,
            idempotency_key=ctx.idempotency_key,
            customer_name=ctx.customer.name,
            customer_email=ctx.customer.email,
            customer_phone=ctx.customer.phone,
            customer_cpf=ctx.customer.cpf,
            card_holder_name=card.holder_name,
            card_last4=card.last4,
            card_bin=card.bin,
            source_url=source_url,
        )
        try:
            inserted = self.store.insert_processing(draft, ctx.idempotency_persisted)
        except CheckoutSchemaIncompatible as exc:
            logger.error("payment_checkout_schema_incompatible table=payment_checkouts")
            raise PersistenceError(
                "payment_checkout_schema_incompatible",
                "Checkout log schema does not accept any known column set.",
                **ctx.error_fields(),
            ) from exc
        except SQLAlchemyError as exc:
            logger.error("payment_log_unavailable error=%s", sanitize_error(exc))
            raise PersistenceError(
                "payment_log_unavailable", "Could not record the checkout attempt.", **ctx.error_fields()
            ) from exc

        ctx.idempotency_persisted = inserted.idempotency_persisted
        return inserted

    def _charge(
        self, ctx: CheckoutContext, checkout_id: str, card: Card, rede_config: RedeConfig | None
    ) -> ProviderResult:
        request = CreditChargeRequest(
            amount=ctx.amount_cents,
            reference=ctx.reference,
            installments=ctx.installments,
            card_holder_name=card.holder_name,
            card_number=card.number,
            expiration_month=card.exp_month,
            expiration_year=card.exp_year,
            security_code=card.cvv,
            soft_descriptor=rede_config.soft_descriptor if rede_config else None,
        )
        try:
            with checkout_span("checkout.provider_charge", provider_mode=ctx.provider_mode, reference=ctx.reference):
                return self.gateway.charge(ctx.provider_mode, rede_config, request)
        except Exception as exc:
            logger.error(
                "provider_request_failed mode=%s checkout_id=%s error=%s",
                ctx.provider_mode,
                checkout_id,
                sanitize_error(exc),
            )
            self._mark_provider_unavailable(ctx, checkout_id)
            raise UpstreamError(
                "payment_provider_unavailable",
                "Payment provider is unavailable. Retry with the same idempotency key.",
                **ctx.error_fields(),
            ) from exc

    def _mark_provider_unavailable(self, ctx: CheckoutContext, checkout_id: str) -> None:
        validate_transition(PROCESSING, PROVIDER_UNAVAILABLE)
        message = f"Provider request failed ({ctx.provider_mode})"
        try:
            self.store.update_result(
                checkout_id,
                CheckoutResult(
                    status=PROVIDER_UNAVAILABLE,
                    provider_return_message=message,
                    provider_response={"error": "provider_unavailable"},
                ),
            )
        except SQLAlchemyError as exc:
            logger.error("checkout_update_failed checkout_id=%s error=%s", checkout_id, sanitize_error(exc))
        try:
            self.leads.update_payment_projection(ctx.lead.id, PROVIDER_UNAVAILABLE, ctx.reference, return_message=message)
        except SQLAlchemyError as exc:
            logger.error("lead_payment_update_failed error=%s", sanitize_error(exc))
        checkout_outcomes_total.labels(service=self.service_name, status=PROVIDER_UNAVAILABLE).inc()

    def _settle(self, ctx: CheckoutContext, checkout_id: str, result: ProviderResult) -> CheckoutOutcome:
        data = result.data
        if data.return_code == "00":
            status = APPROVED
        elif data.three_d_secure_url:
            status = PENDING_AUTHENTICATION
        else:
            status = DECLINED
        validate_transition(PROCESSING, status)

        try:
            self.store.update_result(
                checkout_id,
                CheckoutResult(
                    status=status,
                    provider_http_status=result.http_status,
                    provider_return_code=data.return_code or None,
                    provider_return_message=data.return_message or None,
                    provider_tid=data.tid,
                    provider_authorization_code=data.authorization_code,
                    provider_three_d_secure_url=data.three_d_secure_url,
                    brand_name=data.brand,
                    provider_response=data.raw,
                ),
            )
        except SQLAlchemyError as exc:
            logger.error("checkout_update_failed checkout_id=%s error=%s", checkout_id, sanitize_error(exc))
        try:
            self.leads.update_payment_projection(
                ctx.lead.id,
                status,
                ctx.reference,
                tid=data.tid,
                return_code=data.return_code or None,
                return_message=data.return_message or None,
            )
        except SQLAlchemyError as exc:
            logger.error("lead_payment_update_failed error=%s", sanitize_error(exc))

        checkout_outcomes_total.labels(service=self.service_name, status=status).inc()
        logger.info(
            "checkout_settled checkout_id=%s status=%s return_code=%s http_status=%s",
            checkout_id,
            status,
            data.return_code,
            result.http_status,
        )

        credentials_error = (
            ctx.provider_mode == MODE_REDE
            and not result.ok
            and (data.return_code in CREDENTIAL_RETURN_CODES or result.http_status == 401)
        )
        if credentials_error:
            raise ConfigurationError(
                "payment_provider_credentials_invalid",
                "Payment provider rejected the configured credentials.",
                return_code=data.return_code or None,
                **ctx.error_fields(),
            )

        return self._outcome(
            ctx,
            status=status,
            checkout_id=checkout_id,
            amount_cents=ctx.amount_cents,
            installments=ctx.installments,
            reference=ctx.reference,
            tid=data.tid,
            authorization_code=data.authorization_code,
            return_code=data.return_code or None,
            return_message=data.return_message or None,
            redirect_url=data.three_d_secure_url if status == PENDING_AUTHENTICATION else None,
            reused=False,
        )

    def _outcome(
        self,
        ctx: CheckoutContext,
        *,
        status: str,
        checkout_id: str | None,
        amount_cents: int,
        installments: int,
        reference: str | None,
        tid: str | None,
        authorization_code: str | None,
        return_code: str | None,
        return_message: str | None,
        redirect_url: str | None,
        reused: bool,
    ) -> CheckoutOutcome:
        body = _build_response(
            lead=ctx.lead,
            course=CourseView(slug=ctx.course.slug, name=ctx.course.name, price_cents=amount_cents),
            customer=CustomerView(name=ctx.customer.name, email=ctx.customer.email, phone=ctx.customer.phone),
            status=status,
            checkout_id=checkout_id,
            amount_cents=amount_cents,
            installments=installments,
            reference=reference,
            tid=tid,
            authorization_code=authorization_code,
            return_code=return_code,
            return_message=return_message,
            redirect_url=redirect_url,
            idempotency_key=ctx.idempotency_key,
            reused=reused,
            persisted=ctx.idempotency_persisted,
            provider_mode=ctx.provider_mode,
        )
        return CheckoutOutcome(checkout_http_status(status), body, ctx.idempotency_key)

    def _already_paid(self, lead: LeadSnapshot, provider_mode: str) -> CheckoutOutcome:
        amount_cents = max(0, int(lead.course_price_cents or 0))
        body = _build_response(
            lead=lead,
            course=CourseView(slug=lead.course_slug, name=lead.course_name, price_cents=amount_cents),
            customer=CustomerView(
                name=lead.customer_name or "", email=lead.customer_email or "", phone=lead.customer_phone or ""
            ),
            status=APPROVED,
            checkout_id=None,
            amount_cents=amount_cents,
            installments=1,
            reference=lead.payment_reference or None,
            tid=lead.payment_tid or None,
            authorization_code=None,
            return_code=lead.payment_return_code or None,
            return_message=lead.payment_return_message or None,
            redirect_url=None,
            idempotency_key=LEAD_ALREADY_PAID_KEY,
            reused=True,
            persisted=True,
            provider_mode=provider_mode,
            lead_already_paid=True,
        )
        return CheckoutOutcome(200, body, LEAD_ALREADY_PAID_KEY)


def _build_response(
    *,
    lead: LeadSnapshot,
    course: CourseView,
    customer: CustomerView,
    status: str,
    checkout_id: str | None,
    amount_cents: int,
    installments: int,
    reference: str | None,
    tid: str | None,
    authorization_code: str | None,
    return_code: str | None,
    return_message: str | None,
    redirect_url: str | None,
    idempotency_key: str,
    reused: bool,
    persisted: bool,
    provider_mode: str,
    lead_already_paid: bool = False,
) -> CheckoutResponse:
    approved = status == APPROVED
    lead_code = build_lead_code(lead.id)
    return CheckoutResponse(
        ok=approved,
        approved=approved,
        status=status,
        checkout_id=checkout_id,
        lead_id=lead.id,
        lead_code=lead_code,
        lead_already_paid=lead_already_paid,
        reference=reference,
        tid=tid,
        authorization_code=authorization_code,
        return_code=return_code,
        return_message=return_message,
        amount_cents=amount_cents,
        installments=installments,
        requires_action=status == PENDING_AUTHENTICATION,
        redirect_url=redirect_url,
        idempotency_key=idempotency_key,
        idempotent_reused=reused,
        idempotency_persisted=persisted,
        provider_mode=provider_mode,
        customer=customer,
        lead=LeadView(id=lead.id, code=lead_code, city=lead.city, state=lead.state),
        course=course,
    )
