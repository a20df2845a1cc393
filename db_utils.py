"""Database resilience and transaction helpers."""

from __future__ import annotations

import time
from typing import Callable, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, scoped_session

from app_logging import get_logger
from errors import StorageError

T = TypeVar("T")

_logger = get_logger("app.db")


def retry_with_backoff(
    func: Callable[[], T],
    attempts: int = 3,
    base_delay: float = 0.1,
    max_total_delay: float = 2.0,
) -> T:
    """Retry ``func`` with exponential backoff.

    Only used while bootstrapping the schema; request handlers never retry on
    their own and report :class:`errors.StorageError` instead.
    """

    last_exc: Exception | None = None
    total_delay = 0.0
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except SQLAlchemyError as exc:
            last_exc = exc
            _logger.warning(
                "transient operation failed", extra={"attempt": attempt, "error": str(exc)}
            )
            if attempt >= attempts or total_delay >= max_total_delay:
                break
            delay = min(base_delay * (2 ** (attempt - 1)), max_total_delay - total_delay)
            if delay <= 0:
                continue
            time.sleep(delay)
            total_delay += delay
    if last_exc:
        raise last_exc
    raise RuntimeError("retry_with_backoff failed without exception")


class UnitOfWork:
    """Explicit transaction boundary over a SQLAlchemy session.

    Every mutation made through ``session`` between :meth:`begin` and
    :meth:`commit` is persisted together or not at all. Callers roll back
    with :meth:`abort`; database failures during :meth:`flush` or
    :meth:`commit` are reported as :class:`errors.StorageError` after the
    rollback has already happened.
    """

    def __init__(self, session, name: str) -> None:
        # Flask-SQLAlchemy hands out a scoped_session proxy; work on the real one.
        self.session: Session = session() if isinstance(session, scoped_session) else session
        self.name = name
        self.active = False

    def begin(self) -> "UnitOfWork":
        # Earlier reads in the same request may already have opened one.
        if not self.session.in_transaction():
            self.session.begin()
        self.active = True
        return self

    def flush(self) -> None:
        try:
            self.session.flush()
        except SQLAlchemyError as exc:
            self.abort()
            raise StorageError(f"{self.name} failed: {exc.__class__.__name__}") from exc

    def commit(self) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.abort()
            raise StorageError(f"{self.name} could not be committed: {exc.__class__.__name__}") from exc
        self.active = False

    def abort(self) -> None:
        if not self.active:
            return
        self.session.rollback()
        self.active = False
        _logger.warning("transaction rolled back", extra={"unit_of_work": self.name})


__all__ = ["UnitOfWork", "retry_with_backoff"]
