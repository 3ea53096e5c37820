"""Add `payment_checkouts.idempotency_key` and its indexes on a lagging database.

The service repairs itself lazily on the first lookup; this lets an operator
do it ahead of traffic, or where the service account lacks DDL rights.
"""

import argparse

from enrollpay.common.config import settings
from enrollpay.common.db import build_engine, build_session_factory
from enrollpay.common.logging import configure_logging
from enrollpay.services.checkout.store import CheckoutRecordStore, IdempotencySchemaCapability


def run(dsn: str) -> bool:
    configure_logging()
    engine = build_engine(dsn)
    try:
        store = CheckoutRecordStore(
            build_session_factory(engine),
            capability=IdempotencySchemaCapability(cooldown_seconds=0.0),
            auto_repair=True,
        )
        return store.ensure_idempotency_schema()
    finally:
        engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--dsn", default=settings.database_dsn, help="defaults to DATABASE_DSN")
    args = parser.parse_args()
    ok = run(args.dsn)
    print(f"idempotency_schema_ready={ok}")
    if not ok:
        raise SystemExit(1)
