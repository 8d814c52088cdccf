from __future__ import annotations

from collections.abc import Generator
from functools import lru_cache
from typing import Any

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from app.core.config import Settings, get_settings


class Base(DeclarativeBase):
    pass


def engine_options(settings: Settings) -> dict[str, Any]:
    url = settings.database_url
    options: dict[str, Any] = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False, "timeout": settings.db_connect_timeout}
        return options

    options.update(
        {
            "pool_recycle": 1800,
            "pool_size": settings.db_pool_size,
            "max_overflow": settings.db_max_overflow,
            "pool_timeout": settings.db_pool_timeout,
        }
    )
    if url.startswith("postgresql"):
        options["connect_args"] = {
            "connect_timeout": settings.db_connect_timeout,
            "options": f"-c statement_timeout={settings.db_statement_timeout_ms}",
        }
    return options


@lru_cache
def get_engine() -> Engine:
    settings = get_settings()
    return create_engine(settings.database_url, **engine_options(settings))


@lru_cache
def get_sessionmaker() -> sessionmaker[Session]:
    return sessionmaker(bind=get_engine(), autocommit=False, autoflush=False, expire_on_commit=False)


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session, closed on every exit path."""
    session = get_sessionmaker()()
    try:
        yield session
    finally:
        session.close()


def create_tables(engine: Engine | None = None) -> None:
    # Registers the mapped tables on Base.metadata before create_all.
    from app.crm import models as crm_models  # noqa: F401
    from app.identity import models as identity_models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())
