from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from app.core.database import get_sessionmaker
from app.core.errors import TransientStoreError
from app.metrics import observe_transaction


logger = logging.getLogger("app.crm.tx")

T = TypeVar("T")

_ACTIVE_KEY = "crm.transaction_active"


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (OperationalError, PoolTimeoutError)):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


@contextmanager
def transaction(session: Session) -> Iterator[Session]:
    """Commit the work done inside the block, or roll all of it back.

    One transaction per session at a time; entering a second one on the same
    session raises instead of silently joining the outer one.
    """
    if session.info.get(_ACTIVE_KEY):
        raise RuntimeError("nested CRM transactions are not supported")

    session.info[_ACTIVE_KEY] = True
    try:
        yield session
        session.commit()
    except BaseException as exc:
        session.rollback()
        observe_transaction("rolled_back")
        if _is_transient(exc):
            logger.warning("transaction.transient_failure", extra={"error": type(exc).__name__})
            raise TransientStoreError("The data store is temporarily unavailable.") from exc
        raise
    else:
        observe_transaction("committed")
    finally:
        session.info.pop(_ACTIVE_KEY, None)


def run_in_transaction(
    unit_of_work: Callable[[Session], T],
    *,
    session_factory: Callable[[], Session] | None = None,
) -> T:
    """Run ``unit_of_work`` on a fresh session and release that session on every exit path."""
    factory = session_factory or get_sessionmaker()
    session = factory()
    try:
        with transaction(session):
            return unit_of_work(session)
    finally:
        session.close()
