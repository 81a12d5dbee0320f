"""Engine holder and write-transaction runner shared by all repositories."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

from sqlalchemy import update as sa_update
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, col

from content_factory.storage.alembic_runner import current_revision, upgrade_head
from content_factory.storage.common import (
    build_sqlite_engine,
    is_lock_contention,
    to_db_datetime,
    utc_now,
)
from content_factory.storage.sqlmodel_models import Task

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Database:
    """One SQLite engine plus the retry policy for contended writes."""

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        lock_retry_attempts: int = 5,
        lock_retry_backoff_seconds: float = 0.05,
    ) -> None:
        self.db_path = db_path
        self.lock_retry_attempts = max(1, lock_retry_attempts)
        self.lock_retry_backoff_seconds = lock_retry_backoff_seconds
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def init_schema(self) -> str | None:
        """Run schema migrations up to head and return the resulting revision."""

        return upgrade_head(self.db_path, self.engine)

    def schema_revision(self) -> str | None:
        return current_revision(self.engine)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def session(self) -> Session:
        return Session(self.engine)

    def write(self, operation: Callable[[Session], T]) -> T:
        """Run ``operation`` in one transaction, retrying on SQLite lock contention.

        The operation must not commit; the runner commits once it returns and
        rolls back on any exception. Lock contention is retried with linear
        backoff up to ``lock_retry_attempts`` times, other errors propagate.
        """

        attempt = 0
        while True:
            attempt += 1
            with Session(self.engine) as session:
                try:
                    result = operation(session)
                    session.commit()
                    return result
                except OperationalError as error:
                    session.rollback()
                    if not is_lock_contention(error) or attempt >= self.lock_retry_attempts:
                        raise
                    logger.warning(
                        "SQLite write contention (attempt %d/%d), retrying",
                        attempt,
                        self.lock_retry_attempts,
                    )
                except Exception:
                    session.rollback()
                    raise
            time.sleep(self.lock_retry_backoff_seconds * attempt)


def lock_task_row(session: Session, task_id: str) -> bool:
    """Take the SQLite write lock before reading a task row inside ``session``.

    A touch update as the first statement turns the transaction into a writer,
    so the subsequent read cannot race with a concurrent reconciliation of
    the same task. Returns False when the task does not exist.
    """

    result = session.exec(
        sa_update(Task)
        .where(col(Task.task_id) == task_id)
        .values(updated_at=to_db_datetime(utc_now())),
    )
    return result.rowcount == 1
