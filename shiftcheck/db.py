from __future__ import annotations

import logging
from collections.abc import Generator, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from shiftcheck.errors import TransactionAborted
from shiftcheck.settings import get_settings

logger = logging.getLogger("shiftcheck.db")


class Base(DeclarativeBase):
    pass


engine = create_engine(get_settings().database_url, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction_scope(db: Session, *, operation: str) -> Iterator[Session]:
    """Run a read-modify-write sequence as one unit of work.

    Commits when the block exits normally. Any exception rolls back every
    pending write; storage errors surface as TransactionAborted, domain
    errors propagate unchanged.
    """
    try:
        yield db
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("transaction_aborted", extra={"operation": operation})
        raise TransactionAborted() from exc
    except BaseException:
        db.rollback()
        raise
