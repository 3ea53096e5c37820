"""Engine and session factories for the checkout database."""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from enrollpay.common.config import settings


def build_engine(dsn: str) -> Engine:
    """Engine for `dsn`; SQLite connections are shared across worker threads.

    Bound parameters carry customer and card data, so they are kept out of
    error messages.
    """

    connect_args = {"check_same_thread": False} if dsn.startswith("sqlite") else {}
    return create_engine(dsn, pool_pre_ping=True, hide_parameters=True, connect_args=connect_args)


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)


engine = build_engine(settings.database_dsn)
SessionLocal = build_session_factory(engine)


class Base(DeclarativeBase):
    """Declarative base for checkout models."""
