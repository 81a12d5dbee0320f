"""Durable task records, unit results and the task audit trail."""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlmodel import Session, col, select

from content_factory.errors import TaskNotFound, ValidationError
from content_factory.storage.common import (
    dump_json,
    load_json,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from content_factory.storage.database import Database, lock_task_row
from content_factory.storage.sqlmodel_models import Task, TaskEvent, TaskUnit
from content_factory.tasks import state_machine
from content_factory.tasks.models import (
    TERMINAL_STATUSES,
    FailureClass,
    TaskDetails,
    TaskEventView,
    TaskKind,
    TaskStatus,
    TaskUnitView,
    TaskView,
    UnitResult,
    UnitStatus,
)

logger = logging.getLogger(__name__)


class TaskRegistry:
    """Task persistence facade backed by SQLModel + SQLite.

    Read helpers open their own session. Mutating helpers end in ``_in`` and
    work on a row obtained from :meth:`lock_in`, inside the caller's write
    transaction, so a state change, its unit rows, its event and any refund
    commit or roll back together.
    """

    def __init__(self, database: Database) -> None:
        self.database = database

    def insert_in(  # noqa: PLR0913
        self,
        session: Session,
        *,
        task_id: str,
        user_id: str,
        kind: TaskKind,
        params: dict[str, Any],
        units_expected: int,
        credits_cost: int,
    ) -> Task:
        now = to_db_datetime(utc_now())
        row = Task(
            task_id=task_id,
            user_id=user_id,
            kind=kind.value,
            params_json=json.dumps(params, ensure_ascii=False, sort_keys=True),
            status=TaskStatus.ENQUEUED.value,
            progress=0,
            units_expected=units_expected,
            credits_cost=credits_cost,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        session.flush()
        self.add_event_in(
            session,
            task_id=task_id,
            event_type="created",
            status_from=None,
            status_to=TaskStatus.ENQUEUED,
            details={
                "kind": kind.value,
                "units_expected": units_expected,
                "credits_cost": credits_cost,
            },
        )
        return row

    def lock_in(self, session: Session, task_id: str) -> Task:
        """Write-lock and load one task row inside ``session``."""

        if not lock_task_row(session, task_id):
            raise TaskNotFound(task_id)
        return session.exec(select(Task).where(Task.task_id == task_id)).one()

    def apply_progress_in(self, session: Session, row: Task, progress: int) -> bool:
        """Raise stored progress; lower or equal reports are ignored."""

        value = state_machine.clamp_progress(progress)
        if TaskStatus(row.status) in TERMINAL_STATUSES or value <= row.progress:
            return False
        row.progress = value
        row.updated_at = to_db_datetime(utc_now())
        session.add(row)
        return True

    def attach_research_in(self, session: Session, row: Task, payload: dict[str, Any]) -> bool:
        """Store the opaque research payload; the first attached payload wins."""

        if TaskStatus(row.status) in TERMINAL_STATUSES or row.research_payload_json is not None:
            return False
        row.research_payload_json = json.dumps(payload, ensure_ascii=False, sort_keys=True)
        row.updated_at = to_db_datetime(utc_now())
        session.add(row)
        return True

    def advance_in(self, session: Session, row: Task, target: TaskStatus) -> bool:
        """Move the task to a later non-terminal phase."""

        kind = TaskKind(row.kind)
        current = TaskStatus(row.status)
        if not state_machine.should_advance(
            kind,
            current,
            target,
            has_research_payload=row.research_payload_json is not None,
        ):
            return False

        now = to_db_datetime(utc_now())
        row.status = target.value
        if row.started_at is None:
            row.started_at = now
        row.updated_at = now
        session.add(row)
        self.add_event_in(
            session,
            task_id=row.task_id,
            event_type="advanced",
            status_from=current,
            status_to=target,
            details={"progress": row.progress},
        )
        return True

    def record_unit_in(self, session: Session, row: Task, unit: UnitResult) -> bool:
        """Persist one unit outcome; redelivery of a settled unit is a no-op."""

        if TaskStatus(row.status) in TERMINAL_STATUSES:
            return False
        existing = session.exec(
            select(TaskUnit).where(
                TaskUnit.task_id == row.task_id,
                TaskUnit.unit_id == unit.unit_id,
            ),
        ).one_or_none()
        if existing is not None and UnitStatus(existing.status) != UnitStatus.GENERATING:
            return False
        if existing is not None and unit.outcome == UnitStatus.GENERATING:
            return False
        settles = unit.outcome != UnitStatus.GENERATING
        if settles and row.units_completed + row.units_failed >= row.units_expected:
            raise ValidationError(
                f"Task {row.task_id} already has all {row.units_expected} units reported; "
                f"unexpected unit {unit.unit_id!r}.",
                field="unit_id",
            )

        now = to_db_datetime(utc_now())
        target = existing or TaskUnit(
            task_id=row.task_id,
            unit_id=unit.unit_id,
            status=unit.outcome.value,
            created_at=now,
            updated_at=now,
        )
        target.status = unit.outcome.value
        target.category = unit.category if unit.category is not None else target.category
        target.size = unit.size
        target.generation_time_ms = unit.generation_time_ms
        target.result_json = dump_json(unit.result)
        target.error_message = unit.error_message
        target.updated_at = now
        session.add(target)

        if unit.outcome == UnitStatus.COMPLETED:
            row.units_completed += 1
        elif unit.outcome == UnitStatus.FAILED:
            row.units_failed += 1
        row.updated_at = now
        session.add(row)
        session.flush()
        if unit.outcome == UnitStatus.FAILED:
            self.add_event_in(
                session,
                task_id=row.task_id,
                event_type="unit_failed",
                status_from=None,
                status_to=None,
                details={"unit_id": unit.unit_id, "error": unit.error_message},
            )
        return True

    def finalize_in(
        self,
        session: Session,
        row: Task,
        status: TaskStatus,
        *,
        error_message: str | None = None,
        failure_class: FailureClass | None = None,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Move a non-terminal task into ``status``; terminal tasks are left untouched."""

        current = TaskStatus(row.status)
        if current in TERMINAL_STATUSES:
            return False
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Unsupported terminal status: {status}")

        now = to_db_datetime(utc_now())
        row.status = status.value
        row.completed_at = now
        row.updated_at = now
        if status != TaskStatus.FAILED:
            row.progress = 100
        if error_message is not None:
            row.error_message = error_message
        if failure_class is not None:
            row.failure_class = failure_class.value
        session.add(row)
        self.add_event_in(
            session,
            task_id=row.task_id,
            event_type="finalized",
            status_from=current,
            status_to=status,
            details={
                "units_completed": row.units_completed,
                "units_failed": row.units_failed,
                "error_message": error_message,
                "failure_class": failure_class.value if failure_class is not None else None,
                **(details or {}),
            },
        )
        return True

    def add_event_in(  # noqa: PLR0913
        self,
        session: Session,
        *,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details),
                created_at=to_db_datetime(utc_now()),
            ),
        )

    def find(self, task_id: str) -> TaskView | None:
        with self.database.session() as session:
            row = session.get(Task, task_id)
            return to_task_view(row) if row is not None else None

    def get(self, task_id: str) -> TaskView:
        task = self.find(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def list_tasks(
        self,
        *,
        user_id: str | None = None,
        status: TaskStatus | None = None,
        kind: TaskKind | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        with self.database.session() as session:
            query = select(Task)
            if user_id is not None:
                query = query.where(Task.user_id == user_id)
            if status is not None:
                query = query.where(Task.status == status.value)
            if kind is not None:
                query = query.where(Task.kind == kind.value)
            rows = session.exec(query.order_by(col(Task.created_at).desc()).limit(limit)).all()
            return [to_task_view(row) for row in rows]

    def list_active(self) -> list[TaskView]:
        """All tasks not yet in a terminal state, oldest first."""

        with self.database.session() as session:
            rows = session.exec(
                select(Task)
                .where(col(Task.status).not_in([status.value for status in TERMINAL_STATUSES]))
                .order_by(col(Task.created_at).asc()),
            ).all()
            return [to_task_view(row) for row in rows]

    def units(self, task_id: str) -> list[TaskUnitView]:
        with self.database.session() as session:
            rows = session.exec(
                select(TaskUnit)
                .where(TaskUnit.task_id == task_id)
                .order_by(col(TaskUnit.id).asc()),
            ).all()
            return [_to_unit_view(row) for row in rows]

    def events(self, task_id: str) -> list[TaskEventView]:
        with self.database.session() as session:
            rows = session.exec(
                select(TaskEvent)
                .where(TaskEvent.task_id == task_id)
                .order_by(col(TaskEvent.id).asc()),
            ).all()
            return [_to_event_view(row) for row in rows]

    def details(self, task_id: str) -> TaskDetails:
        return TaskDetails(
            task=self.get(task_id),
            units=self.units(task_id),
            events=self.events(task_id),
        )

    def delete(self, task_id: str) -> bool:
        """Delete a task; its units and events go with it."""

        def _delete(session: Session) -> bool:
            result = session.exec(sa_delete(Task).where(col(Task.task_id) == task_id))
            return result.rowcount == 1

        deleted = self.database.write(_delete)
        if deleted:
            logger.info("Deleted task %s", task_id)
        return deleted


def to_task_view(row: Task) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        user_id=row.user_id,
        kind=TaskKind(row.kind),
        status=TaskStatus(row.status),
        progress=row.progress,
        units_expected=row.units_expected,
        units_completed=row.units_completed,
        units_failed=row.units_failed,
        credits_cost=row.credits_cost,
        credits_refunded=row.credits_refunded,
        params=load_json(row.params_json),
        research_payload=(
            load_json(row.research_payload_json) if row.research_payload_json is not None else None
        ),
        error_message=row.error_message,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_unit_view(row: TaskUnit) -> TaskUnitView:
    return TaskUnitView(
        task_id=row.task_id,
        unit_id=row.unit_id,
        status=UnitStatus(row.status),
        category=row.category,
        size=row.size,
        generation_time_ms=row.generation_time_ms,
        result=load_json(row.result_json),
        error_message=row.error_message,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_event_view(row: TaskEvent) -> TaskEventView:
    return TaskEventView(
        event_id=row.id or 0,
        task_id=row.task_id,
        event_type=row.event_type,
        status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
        status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        details=load_json(row.details_json),
    )
