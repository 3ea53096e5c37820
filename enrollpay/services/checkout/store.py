"""Schema-tolerant persistence of checkout attempts.

Databases in the field may predate the `idempotency_key` column (and, on the
oldest generation, `lead_id`). The store keeps working against all of them:

* key lookups report whether the key column exists at all, and the store
  remembers that answer in an `IdempotencySchemaCapability` with a cooldown;
* a missing column triggers one self-repair per cooldown window;
* without the column, an existing attempt is found by its deterministic
  `reference` instead;
* inserts walk an ordered list of column sets, narrowing until one fits.

Mutual exclusion between concurrent requests comes from the partial unique
index on `idempotency_key`, never from application locks.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import desc, inspect, insert, null, select, text, update
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.schema import CreateIndex

from enrollpay.common.config import settings
from enrollpay.common.logging import logger, sanitize_error, sanitize_meta
from enrollpay.common.metrics import schema_repair_attempts_total
from enrollpay.common.state_machine import PROCESSING
from enrollpay.services.checkout.models import PaymentCheckout

checkouts = PaymentCheckout.__table__

MISSING_COLUMN = "missing_column"
UNIQUE_VIOLATION = "unique_violation"
DUPLICATE_COLUMN = "duplicate_column"
DUPLICATE_OBJECT = "duplicate_object"

IDEMPOTENCY_INDEXES = ("payment_checkouts_idempotency_key_uidx", "payment_checkouts_status_idx")

_SQLSTATE_KINDS = {
    "42703": MISSING_COLUMN,
    "23505": UNIQUE_VIOLATION,
    "42701": DUPLICATE_COLUMN,
    "42P07": DUPLICATE_OBJECT,
}
_MESSAGE_KINDS = (
    ("no such column", MISSING_COLUMN),
    ("has no column named", MISSING_COLUMN),
    ("unique constraint failed", UNIQUE_VIOLATION),
    ("duplicate column name", DUPLICATE_COLUMN),
    ("already exists", DUPLICATE_OBJECT),
)

RECORD_COLUMNS = (
    "id",
    "lead_id",
    "reference",
    "status",
    "amount_cents",
    "installments",
    "provider_tid",
    "provider_return_code",
    "provider_return_message",
    "provider_authorization_code",
    "provider_three_d_secure_url",
)


def classify_db_error(exc: DBAPIError) -> str | None:
    """Map a driver error onto the few failure kinds the store reacts to."""

    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _SQLSTATE_KINDS:
        return _SQLSTATE_KINDS[sqlstate]
    message = str(orig if orig is not None else exc).lower()
    for fragment, kind in _MESSAGE_KINDS:
        if fragment in message:
            return kind
    return None


class CheckoutSchemaIncompatible(Exception):
    """No column set could be written to `payment_checkouts`."""


@dataclass(frozen=True)
class CheckoutRecord:
    id: str
    lead_id: str | None
    reference: str
    status: str
    amount_cents: int
    installments: int
    provider_tid: str | None = None
    provider_return_code: str | None = None
    provider_return_message: str | None = None
    provider_authorization_code: str | None = None
    provider_three_d_secure_url: str | None = None

    @classmethod
    def from_row(cls, row) -> "CheckoutRecord":
        return cls(**{name: row[name] for name in RECORD_COLUMNS})


@dataclass(frozen=True)
class InsertColumnSet:
    include_lead_id: bool
    include_idempotency: bool


def insert_attempts(idempotency_available: bool) -> list[InsertColumnSet]:
    """Column sets to try, widest first, without duplicates.

    Keeping the key outranks keeping `lead_id`: a row without its key can
    never be found again by a retry.
    """

    candidates = [
        InsertColumnSet(include_lead_id=True, include_idempotency=idempotency_available),
        InsertColumnSet(include_lead_id=False, include_idempotency=idempotency_available),
        InsertColumnSet(include_lead_id=True, include_idempotency=False),
        InsertColumnSet(include_lead_id=False, include_idempotency=False),
    ]
    return list(dict.fromkeys(candidates))


@dataclass(frozen=True)
class CheckoutDraft:
    """Everything written when an attempt enters `processing`."""

    checkout_id: str
    lead_id: str
    course_id: str
    course_slug: str
    course_name: str
    amount_cents: int
    installments: int
    reference: str
    idempotency_key: str
    customer_name: str
    customer_email: str
    customer_phone: str
    customer_cpf: str | None
    card_holder_name: str
    card_last4: str
    card_bin: str
    source_url: str | None = None

    def to_row(self, columns: InsertColumnSet) -> dict[str, Any]:
        row: dict[str, Any] = {"id": self.checkout_id}
        if columns.include_lead_id:
            row["lead_id"] = self.lead_id
        row.update(
            course_id=self.course_id,
            course_slug=self.course_slug,
            course_name=self.course_name,
            amount_cents=self.amount_cents,
            installments=self.installments,
            reference=self.reference,
            status=PROCESSING,
            customer_name=self.customer_name,
            customer_email=self.customer_email,
            customer_phone=self.customer_phone,
            customer_cpf=self.customer_cpf,
            card_holder_name=self.card_holder_name,
            card_last4=self.card_last4,
            card_bin=self.card_bin,
        )
        if columns.include_idempotency:
            row["idempotency_key"] = self.idempotency_key
        row["source_url"] = self.source_url
        row["provider_response"] = {"stage": "initiated", "lead_id": self.lead_id}
        return row


@dataclass(frozen=True)
class CheckoutResult:
    """Provider outcome written onto a `processing` record."""

    status: str
    provider_http_status: int | None = None
    provider_return_code: str | None = None
    provider_return_message: str | None = None
    provider_tid: str | None = None
    provider_authorization_code: str | None = None
    provider_three_d_secure_url: str | None = None
    brand_name: str | None = None
    provider_response: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IdempotencyLookup:
    available: bool
    checkout: CheckoutRecord | None


@dataclass(frozen=True)
class InsertOutcome:
    checkout_id: str
    reused: CheckoutRecord | None
    idempotency_persisted: bool


class IdempotencySchemaCapability:
    """Process-local memory of whether `payment_checkouts.idempotency_key` exists.

    `unavailable` suspends key lookups for `cooldown_seconds`; repairs are
    attempted at most once per cooldown and never by two threads at once.
    """

    UNKNOWN = "unknown"
    READY = "ready"
    UNAVAILABLE = "unavailable"

    def __init__(self, cooldown_seconds: float = 300.0, clock=time.monotonic) -> None:
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock
        self.state = self.UNKNOWN
        self.unavailable_since: float | None = None
        self.last_repair_at: float | None = None
        self._repair_in_flight = False
        self._lock = threading.Lock()

    def mark_ready(self) -> None:
        with self._lock:
            self.state = self.READY
            self.unavailable_since = None

    def mark_unavailable(self) -> None:
        with self._lock:
            if self.state != self.UNAVAILABLE:
                self.unavailable_since = self.clock()
            self.state = self.UNAVAILABLE

    def lookup_suspended(self) -> bool:
        with self._lock:
            if self.state != self.UNAVAILABLE or self.unavailable_since is None:
                return False
            if self.clock() - self.unavailable_since < self.cooldown_seconds:
                return True
            # Cooldown elapsed: probe the column again on the next lookup.
            self.state = self.UNKNOWN
            self.unavailable_since = None
            return False

    def begin_repair(self) -> bool:
        with self._lock:
            if self.state == self.READY or self._repair_in_flight:
                return False
            now = self.clock()
            if self.last_repair_at is not None and now - self.last_repair_at < self.cooldown_seconds:
                return False
            self._repair_in_flight = True
            self.last_repair_at = now
            return True

    def finish_repair(self, success: bool) -> None:
        with self._lock:
            self._repair_in_flight = False
            if success:
                self.state = self.READY
                self.unavailable_since = None
            elif self.state != self.UNAVAILABLE:
                self.state = self.UNAVAILABLE
                self.unavailable_since = self.clock()


class CheckoutRecordStore:
    """Creates, finds and settles `payment_checkouts` rows."""

    def __init__(
        self,
        session_factory,
        capability: IdempotencySchemaCapability | None = None,
        auto_repair: bool | None = None,
        service_name: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.capability = capability or IdempotencySchemaCapability(settings.idempotency_schema_cooldown_seconds)
        self.auto_repair = settings.idempotency_schema_auto_repair if auto_repair is None else auto_repair
        self.service_name = service_name or settings.service_name

    def _select_records(self, include_lead_id: bool = True):
        columns = [
            checkouts.c[name] if name != "lead_id" or include_lead_id else null().label("lead_id")
            for name in RECORD_COLUMNS
        ]
        return select(*columns).order_by(desc(checkouts.c.created_at)).limit(1)

    def find_by_idempotency_key(self, key: str) -> IdempotencyLookup:
        """Latest attempt for `key`; `available=False` when the column is missing."""

        # The missing column may be `lead_id` on the oldest tables, so retry without it.
        for include_lead_id in (True, False):
            try:
                with self.session_factory() as db:
                    row = db.execute(
                        self._select_records(include_lead_id).where(checkouts.c.idempotency_key == key)
                    ).mappings().first()
            except DBAPIError as exc:
                if classify_db_error(exc) != MISSING_COLUMN:
                    raise
                continue
            self.capability.mark_ready()
            return IdempotencyLookup(available=True, checkout=CheckoutRecord.from_row(row) if row else None)
        self.capability.mark_unavailable()
        return IdempotencyLookup(available=False, checkout=None)

    def find_by_reference(self, reference: str, lead_id: str | None) -> CheckoutRecord | None:
        """Latest attempt for `reference`, scoped to the lead when the column exists."""

        try:
            with self.session_factory() as db:
                row = db.execute(
                    self._select_records().where(
                        checkouts.c.reference == reference,
                        checkouts.c.lead_id == lead_id,
                    )
                ).mappings().first()
        except DBAPIError as exc:
            if classify_db_error(exc) != MISSING_COLUMN:
                raise
            with self.session_factory() as db:
                row = db.execute(
                    self._select_records(include_lead_id=False).where(checkouts.c.reference == reference)
                ).mappings().first()
        return CheckoutRecord.from_row(row) if row else None

    def ensure_idempotency_schema(self) -> bool:
        """Add the key column and its indexes if missing; once per cooldown."""

        if self.capability.state == IdempotencySchemaCapability.READY:
            return True
        if not self.auto_repair:
            self.capability.mark_unavailable()
            return False
        if not self.capability.begin_repair():
            return self.capability.state == IdempotencySchemaCapability.READY

        applied = False
        try:
            self._apply_idempotency_schema()
            applied = True
        except SQLAlchemyError as exc:
            logger.error("idempotency_schema_repair_failed error=%s", sanitize_error(exc))
            schema_repair_attempts_total.labels(service=self.service_name, result="failed").inc()
            return False
        finally:
            self.capability.finish_repair(applied)
        logger.info("idempotency_schema_ready table=%s", checkouts.name)
        schema_repair_attempts_total.labels(service=self.service_name, result="applied").inc()
        return True

    def _apply_idempotency_schema(self) -> None:
        column = checkouts.c.idempotency_key
        with self.session_factory() as db:
            conn = db.connection()
            existing = {col["name"] for col in inspect(conn).get_columns(checkouts.name)}
            if column.name not in existing:
                column_type = column.type.compile(dialect=conn.dialect)
                try:
                    db.execute(text(f"ALTER TABLE {checkouts.name} ADD COLUMN {column.name} {column_type}"))
                    db.commit()
                except DBAPIError as exc:
                    # Another instance added it between our check and the ALTER.
                    if classify_db_error(exc) != DUPLICATE_COLUMN:
                        raise
                    db.rollback()

        for index in checkouts.indexes:
            if index.name not in IDEMPOTENCY_INDEXES:
                continue
            with self.session_factory() as db:
                try:
                    db.connection().execute(CreateIndex(index, if_not_exists=True))
                    db.commit()
                except DBAPIError as exc:
                    if classify_db_error(exc) != DUPLICATE_OBJECT:
                        raise
                    db.rollback()

    def lookup(self, key: str, reference: str, lead_id: str) -> IdempotencyLookup:
        """Find an earlier attempt by key, repairing the schema or falling back to reference."""

        result = IdempotencyLookup(available=False, checkout=None)
        if not self.capability.lookup_suspended():
            result = self.find_by_idempotency_key(key)
        if not result.available and self.ensure_idempotency_schema():
            result = self.find_by_idempotency_key(key)
        if not result.available:
            return IdempotencyLookup(available=False, checkout=self.find_by_reference(reference, lead_id))
        return result

    def insert_processing(self, draft: CheckoutDraft, include_idempotency: bool) -> InsertOutcome:
        """Insert the `processing` row, narrowing columns until the schema accepts it.

        A unique-index collision means a concurrent request with the same key
        won the race; its record is returned instead of a new one.
        """

        for columns in insert_attempts(include_idempotency):
            row = draft.to_row(columns)
            try:
                with self.session_factory() as db:
                    db.execute(insert(checkouts).values(**row))
                    db.commit()
            except DBAPIError as exc:
                kind = classify_db_error(exc)
                if kind == UNIQUE_VIOLATION and columns.include_idempotency:
                    existing = self.find_by_idempotency_key(draft.idempotency_key)
                    if existing.checkout is not None:
                        logger.info("checkout_insert_race_lost reused_checkout_id=%s", existing.checkout.id)
                        return InsertOutcome(
                            checkout_id=existing.checkout.id,
                            reused=existing.checkout,
                            idempotency_persisted=True,
                        )
                if kind == MISSING_COLUMN:
                    logger.warning(
                        "checkout_insert_narrowed include_lead_id=%s include_idempotency=%s",
                        columns.include_lead_id,
                        columns.include_idempotency,
                    )
                    continue
                raise
            return InsertOutcome(
                checkout_id=draft.checkout_id,
                reused=None,
                idempotency_persisted=columns.include_idempotency,
            )
        raise CheckoutSchemaIncompatible("payment_checkout_schema_incompatible")

    def update_result(self, checkout_id: str, result: CheckoutResult) -> bool:
        """Settle a `processing` record; returns False if it was already settled."""

        with self.session_factory() as db:
            outcome = db.execute(
                update(checkouts)
                .where(checkouts.c.id == checkout_id, checkouts.c.status == PROCESSING)
                .values(
                    status=result.status,
                    provider_http_status=result.provider_http_status,
                    provider_return_code=result.provider_return_code,
                    provider_return_message=result.provider_return_message,
                    provider_tid=result.provider_tid,
                    provider_authorization_code=result.provider_authorization_code,
                    provider_three_d_secure_url=result.provider_three_d_secure_url,
                    brand_name=result.brand_name,
                    provider_response=sanitize_meta(result.provider_response),
                )
            )
            db.commit()
            return outcome.rowcount == 1
