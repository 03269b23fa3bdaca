from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from app.core.errors import ConcurrentUpdate
from app.core.settings import settings

logger = logging.getLogger(__name__)

SQLALCHEMY_DATABASE_URL = settings.database_url

connect_args: dict = {}
if SQLALCHEMY_DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False, "timeout": 30}

engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args=connect_args, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

T = TypeVar("T")

TRANSIENT_ERRORS = (OperationalError, DisconnectionError, ConcurrentUpdate)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def run_in_transaction(
    db: Session,
    work: Callable[[], T],
    *,
    attempts: int | None = None,
    delay_s: float | None = None,
) -> T:
    """Run ``work`` and commit it as one unit.

    Anything raised rolls the whole unit back. Transient storage failures and
    optimistic-lock misses re-run ``work`` from the start, so every
    precondition is checked again inside the new transaction.
    """
    attempts = int(attempts or settings.db_retry_attempts)
    delay_s = settings.db_retry_delay_s if delay_s is None else delay_s
    for attempt in range(1, attempts + 1):
        try:
            result = work()
            db.commit()
            return result
        except TRANSIENT_ERRORS as exc:
            db.rollback()
            if attempt >= attempts:
                logger.error("db.transaction.gave_up attempts=%s error=%s", attempt, type(exc).__name__)
                raise
            logger.warning("db.transaction.retry attempt=%s error=%s", attempt, type(exc).__name__)
            if delay_s:
                time.sleep(delay_s * attempt)
        except Exception:
            db.rollback()
            raise
    raise RuntimeError("unreachable")
