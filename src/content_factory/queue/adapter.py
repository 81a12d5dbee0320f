"""Durable SQLite-backed queue keyed by task id."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from content_factory.errors import DuplicateMessageConflict
from content_factory.queue.models import (
    DeliveryPolicy,
    PurgeSummary,
    QueueMessageStatus,
    QueueMessageView,
    StaleRecovery,
)
from content_factory.storage.common import (
    load_json,
    optional_utc,
    payload_hash,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from content_factory.storage.database import Database
from content_factory.storage.sqlmodel_models import QueueMessage

logger = logging.getLogger(__name__)


class QueueAdapter:
    """At-least-once transport with per-key deduplication.

    The adapter never looks inside payloads. A message key is the task id; a
    second enqueue with the same key and identical payload returns the stored
    message instead of creating another delivery.
    """

    def __init__(self, database: Database, *, policy: DeliveryPolicy | None = None) -> None:
        self.database = database
        self.policy = policy or DeliveryPolicy()

    def enqueue(
        self,
        task_id: str,
        payload: dict[str, Any],
        *,
        kind: str,
        run_after: datetime | None = None,
    ) -> QueueMessageView:
        """Submit a durable message keyed by ``task_id``."""

        try:
            return self.database.write(
                lambda session: self.enqueue_in(
                    session,
                    task_id=task_id,
                    payload=payload,
                    kind=kind,
                    run_after=run_after,
                ),
            )
        except IntegrityError:
            # Lost an insert race for the same key; the stored row decides.
            return self.database.write(
                lambda session: self.enqueue_in(
                    session,
                    task_id=task_id,
                    payload=payload,
                    kind=kind,
                    run_after=run_after,
                ),
            )

    def enqueue_in(
        self,
        session: Session,
        *,
        task_id: str,
        payload: dict[str, Any],
        kind: str,
        run_after: datetime | None = None,
    ) -> QueueMessageView:
        digest = payload_hash(payload)
        existing = session.get(QueueMessage, task_id)
        if existing is not None:
            if existing.payload_hash != digest:
                raise DuplicateMessageConflict(task_id)
            logger.info("Queue message %s already enqueued; skipping duplicate", task_id)
            return _to_message_view(existing)

        now = utc_now()
        row = QueueMessage(
            message_key=task_id,
            task_kind=kind,
            payload_json=json.dumps(payload, ensure_ascii=False, sort_keys=True),
            payload_hash=digest,
            status=QueueMessageStatus.QUEUED.value,
            attempt=0,
            max_attempts=self.policy.max_attempts,
            run_after=to_db_datetime(run_after or now),
            created_at=to_db_datetime(now),
            updated_at=to_db_datetime(now),
        )
        session.add(row)
        session.flush()
        return _to_message_view(row)

    def claim_next(self, *, worker_id: str) -> QueueMessageView | None:
        """Atomically move one ready message from queued to running."""

        while True:
            now = utc_now()
            with self.database.session() as session:
                candidate = session.exec(
                    select(QueueMessage)
                    .where(
                        QueueMessage.status == QueueMessageStatus.QUEUED.value,
                        col(QueueMessage.run_after) <= to_db_datetime(now),
                    )
                    .order_by(
                        col(QueueMessage.run_after).asc(),
                        col(QueueMessage.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(QueueMessage)
                    .where(
                        col(QueueMessage.message_key) == candidate.message_key,
                        col(QueueMessage.status) == QueueMessageStatus.QUEUED.value,
                    )
                    .values(
                        status=QueueMessageStatus.RUNNING.value,
                        attempt=candidate.attempt + 1,
                        worker_id=worker_id,
                        heartbeat_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                claimed = session.exec(
                    select(QueueMessage).where(
                        QueueMessage.message_key == candidate.message_key,
                    ),
                ).one()
                return _to_message_view(claimed)

    def heartbeat(self, message_key: str) -> bool:
        now = to_db_datetime(utc_now())
        return self._guarded_update(
            message_key,
            expected=(QueueMessageStatus.RUNNING,),
            values={"heartbeat_at": now, "updated_at": now},
        )

    def ack(self, message_key: str) -> bool:
        """Mark a running message as completed."""

        now = to_db_datetime(utc_now())
        return self._guarded_update(
            message_key,
            expected=(QueueMessageStatus.RUNNING,),
            values={
                "status": QueueMessageStatus.COMPLETED.value,
                "finished_at": now,
                "updated_at": now,
            },
        )

    def schedule_retry(self, message_key: str, *, delay_seconds: float, error: str) -> bool:
        """Requeue a running message after ``delay_seconds``."""

        now = utc_now()
        retried = self._guarded_update(
            message_key,
            expected=(QueueMessageStatus.RUNNING,),
            values={
                "status": QueueMessageStatus.QUEUED.value,
                "run_after": to_db_datetime(now + timedelta(seconds=delay_seconds)),
                "worker_id": None,
                "heartbeat_at": None,
                "last_error": error,
                "updated_at": to_db_datetime(now),
            },
        )
        if retried:
            logger.warning(
                "Queue message %s scheduled for retry in %.0fs: %s",
                message_key,
                delay_seconds,
                error,
            )
        return retried

    def fail(self, message_key: str, *, error: str) -> bool:
        """Mark a queued or running message as permanently failed."""

        now = to_db_datetime(utc_now())
        return self._guarded_update(
            message_key,
            expected=(QueueMessageStatus.QUEUED, QueueMessageStatus.RUNNING),
            values={
                "status": QueueMessageStatus.FAILED.value,
                "last_error": error,
                "finished_at": now,
                "updated_at": now,
            },
        )

    def cancel(self, message_key: str) -> bool:
        now = to_db_datetime(utc_now())
        return self._guarded_update(
            message_key,
            expected=(QueueMessageStatus.QUEUED, QueueMessageStatus.RUNNING),
            values={
                "status": QueueMessageStatus.CANCELED.value,
                "finished_at": now,
                "updated_at": now,
            },
        )

    def cancel_in(self, session: Session, message_key: str) -> bool:
        now = to_db_datetime(utc_now())
        result = session.exec(
            sa_update(QueueMessage)
            .where(
                col(QueueMessage.message_key) == message_key,
                col(QueueMessage.status).in_(
                    [QueueMessageStatus.QUEUED.value, QueueMessageStatus.RUNNING.value],
                ),
            )
            .values(
                status=QueueMessageStatus.CANCELED.value,
                finished_at=now,
                updated_at=now,
            ),
        )
        return result.rowcount == 1

    def recover_stale(self, *, stale_after: timedelta) -> list[StaleRecovery]:
        """Release running messages whose heartbeat is older than ``stale_after``.

        Messages with attempts left go back to the queue; the rest are failed
        and reported with ``requeued=False`` so the caller can fail the task.
        """

        now = utc_now()
        cutoff = to_db_datetime(now - stale_after)
        recovered: list[StaleRecovery] = []
        with self.database.session() as session:
            stale = session.exec(
                select(QueueMessage).where(
                    QueueMessage.status == QueueMessageStatus.RUNNING.value,
                    col(QueueMessage.heartbeat_at) < cutoff,
                ),
            ).all()
            candidates = [(row.message_key, row.attempt, row.max_attempts) for row in stale]

        for message_key, attempt, max_attempts in candidates:
            error = f"Worker lease expired after {int(stale_after.total_seconds())}s"
            if attempt < max_attempts:
                requeued = self._guarded_update(
                    message_key,
                    expected=(QueueMessageStatus.RUNNING,),
                    values={
                        "status": QueueMessageStatus.QUEUED.value,
                        "run_after": to_db_datetime(now),
                        "worker_id": None,
                        "heartbeat_at": None,
                        "last_error": error,
                        "updated_at": to_db_datetime(now),
                    },
                )
                if requeued:
                    recovered.append(StaleRecovery(message_key, attempt, True, error))
            elif self.fail(message_key, error=error):
                recovered.append(StaleRecovery(message_key, attempt, False, error))

        for item in recovered:
            logger.warning(
                "Recovered stale queue message %s (attempt %d, requeued=%s)",
                item.message_key,
                item.attempt,
                item.requeued,
            )
        return recovered

    def purge_expired(self, *, now: datetime | None = None) -> PurgeSummary:
        """Delete finished messages past their retention window."""

        current = now or utc_now()
        completed_cutoff = to_db_datetime(current - self.policy.completed_retention)
        failed_cutoff = to_db_datetime(current - self.policy.failed_retention)

        def _purge(session: Session) -> PurgeSummary:
            completed = session.exec(
                sa_delete(QueueMessage).where(
                    col(QueueMessage.status) == QueueMessageStatus.COMPLETED.value,
                    col(QueueMessage.finished_at) < completed_cutoff,
                ),
            )
            failed = session.exec(
                sa_delete(QueueMessage).where(
                    col(QueueMessage.status).in_(
                        [QueueMessageStatus.FAILED.value, QueueMessageStatus.CANCELED.value],
                    ),
                    col(QueueMessage.finished_at) < failed_cutoff,
                ),
            )
            return PurgeSummary(completed=completed.rowcount, failed=failed.rowcount)

        summary = self.database.write(_purge)
        if summary.total:
            logger.info(
                "Purged %d completed and %d failed queue messages",
                summary.completed,
                summary.failed,
            )
        return summary

    def get(self, message_key: str) -> QueueMessageView | None:
        with self.database.session() as session:
            row = session.get(QueueMessage, message_key)
            return _to_message_view(row) if row is not None else None

    def list_messages(
        self,
        *,
        status: QueueMessageStatus | None = None,
        limit: int = 50,
    ) -> list[QueueMessageView]:
        with self.database.session() as session:
            query = select(QueueMessage)
            if status is not None:
                query = query.where(QueueMessage.status == status.value)
            rows = session.exec(
                query.order_by(col(QueueMessage.created_at).desc()).limit(limit),
            ).all()
            return [_to_message_view(row) for row in rows]

    def _guarded_update(
        self,
        message_key: str,
        *,
        expected: tuple[QueueMessageStatus, ...],
        values: dict[str, object],
    ) -> bool:
        def _update(session: Session) -> bool:
            result = session.exec(
                sa_update(QueueMessage)
                .where(
                    col(QueueMessage.message_key) == message_key,
                    col(QueueMessage.status).in_([status.value for status in expected]),
                )
                .values(**values),
            )
            return result.rowcount == 1

        return self.database.write(_update)


def _to_message_view(row: QueueMessage) -> QueueMessageView:
    return QueueMessageView(
        message_key=row.message_key,
        task_kind=row.task_kind,
        payload=load_json(row.payload_json),
        payload_hash=row.payload_hash,
        status=QueueMessageStatus(row.status),
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        run_after=to_utc_aware_datetime(row.run_after),
        worker_id=row.worker_id,
        heartbeat_at=optional_utc(row.heartbeat_at),
        last_error=row.last_error,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        finished_at=optional_utc(row.finished_at),
    )
