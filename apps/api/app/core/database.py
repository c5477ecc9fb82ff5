from __future__ import annotations

import time
from collections.abc import Generator, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, text
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from app.core.config import get_settings


class Base(DeclarativeBase):
    pass


class TransactionTimeoutError(Exception):
    code = "transaction_timeout"

    def __init__(self, step: str, timeout_seconds: float) -> None:
        self.step = step
        self.timeout_seconds = timeout_seconds
        super().__init__(f"transaction exceeded {timeout_seconds:g}s budget at step '{step}'")


settings = get_settings()

engine = create_engine(settings.database_url, pool_pre_ping=True, future=True)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def get_db() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


class TransactionDeadline:
    """Wall-clock budget for one unit of work.

    The database enforces its own statement and lock timeouts where the dialect
    supports them; this covers time spent between statements as well.
    """

    def __init__(self, timeout_seconds: float | None) -> None:
        self.timeout_seconds = timeout_seconds
        self._started = time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._started

    def check(self, step: str) -> None:
        if self.timeout_seconds is None:
            return
        if self.elapsed > self.timeout_seconds:
            raise TransactionTimeoutError(step, self.timeout_seconds)


def _apply_dialect_timeouts(session: Session, timeout_seconds: float) -> None:
    bind = session.get_bind()
    if bind.dialect.name != "postgresql":
        return
    timeout_ms = max(int(timeout_seconds * 1000), 1)
    session.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))
    session.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))


@contextmanager
def transaction(session: Session, *, timeout_seconds: float | None = None) -> Iterator[TransactionDeadline]:
    """Run a block as one unit of work: commit on success, roll back on any error."""

    deadline = TransactionDeadline(timeout_seconds)
    try:
        if timeout_seconds is not None:
            _apply_dialect_timeouts(session, timeout_seconds)
        yield deadline
        deadline.check("commit")
        session.commit()
    except BaseException:
        session.rollback()
        raise
