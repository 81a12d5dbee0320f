"""Applies worker callbacks to tasks and settles refunds through the ledger."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import partial

from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from content_factory.config import ReconciliationSettings
from content_factory.ledger.ledger import CreditLedger, prorated_credits
from content_factory.ledger.models import EntityType
from content_factory.storage.common import to_db_datetime, utc_now
from content_factory.storage.database import Database
from content_factory.storage.sqlmodel_models import Task
from content_factory.tasks import state_machine
from content_factory.tasks.models import (
    FailureClass,
    ProgressReport,
    ReconcileResult,
    TaskKind,
    TaskStatus,
    TaskView,
    TerminalOutcome,
    UnitResult,
)
from content_factory.tasks.registry import TaskRegistry

logger = logging.getLogger(__name__)

CANCEL_MESSAGE = "Canceled by user"


@dataclass(slots=True)
class OverdueTask:
    """Active task that has outlived its time budget."""

    task_id: str
    status: TaskStatus
    elapsed_seconds: int
    budget_seconds: int
    newly_alerted: bool


def time_budget_seconds(task: TaskView, settings: ReconciliationSettings) -> int:
    """Wall-clock ceiling for the whole task, excluding the grace period."""

    if task.kind == TaskKind.SCAN:
        return settings.scan_budget_seconds
    return settings.research_budget_seconds + task.units_expected * settings.unit_budget_seconds


def estimate_seconds_remaining(task: TaskView, settings: ReconciliationSettings) -> int:
    """Rough time-to-finish used by the status API."""

    if task.status.is_terminal:
        return 0
    if task.kind == TaskKind.SCAN:
        return settings.scan_budget_seconds
    generation = task.units_pending * settings.unit_budget_seconds
    if task.status in {TaskStatus.ENQUEUED, TaskStatus.RESEARCHING}:
        return settings.research_budget_seconds + generation
    return generation


class ReconciliationEngine:
    """Idempotent consumer of ``progress``, ``unit_result`` and ``terminal`` callbacks.

    Every callback runs in one write transaction that locks the task row
    first. Callbacks for a task already in a terminal state are no-ops, which
    together with forward-only transitions and per-unit deduplication makes
    redelivery from the queue harmless. Refunds are issued inside the same
    transaction as the terminal transition, at most once per task.
    """

    def __init__(
        self,
        *,
        database: Database,
        registry: TaskRegistry,
        ledger: CreditLedger,
        settings: ReconciliationSettings | None = None,
    ) -> None:
        self.database = database
        self.registry = registry
        self.ledger = ledger
        self.settings = settings or ReconciliationSettings()

    def progress(self, task_id: str, report: ProgressReport) -> ReconcileResult:
        return self.database.write(lambda session: self.progress_in(session, task_id, report))

    def progress_in(
        self,
        session: Session,
        task_id: str,
        report: ProgressReport,
    ) -> ReconcileResult:
        row = self.registry.lock_in(session, task_id)
        if TaskStatus(row.status).is_terminal:
            return _result(row, applied=False, reason="task is terminal")

        changed = False
        if report.research_payload is not None:
            changed |= self.registry.attach_research_in(session, row, report.research_payload)
        if report.status is not None:
            changed |= self.registry.advance_in(session, row, report.status)
        changed |= self.registry.apply_progress_in(session, row, report.progress)

        refunded = self._finalize_if_all_reported(session, row)
        return _result(row, applied=changed or refunded is not None, refunded=refunded or 0)

    def unit_result(self, task_id: str, unit: UnitResult) -> ReconcileResult:
        return self.database.write(lambda session: self.unit_result_in(session, task_id, unit))

    def unit_result_in(
        self,
        session: Session,
        task_id: str,
        unit: UnitResult,
    ) -> ReconcileResult:
        row = self.registry.lock_in(session, task_id)
        if TaskStatus(row.status).is_terminal:
            return _result(row, applied=False, reason="task is terminal")
        if not self.registry.record_unit_in(session, row, unit):
            return _result(row, applied=False, reason="duplicate unit result")

        refunded = self._finalize_if_all_reported(session, row)
        return _result(row, applied=True, refunded=refunded or 0)

    def terminal(self, task_id: str, outcome: TerminalOutcome) -> ReconcileResult:
        return self.database.write(lambda session: self.terminal_in(session, task_id, outcome))

    def terminal_in(
        self,
        session: Session,
        task_id: str,
        outcome: TerminalOutcome,
    ) -> ReconcileResult:
        row = self.registry.lock_in(session, task_id)
        if TaskStatus(row.status).is_terminal:
            return _result(row, applied=False, reason="task is terminal")

        if outcome.fatal_error is not None:
            refunded = self._fail_in(
                session,
                row,
                failure_class=FailureClass.WORKER_FATAL,
                message=outcome.fatal_error,
                refund_units=row.units_expected,
            )
            return _result(row, applied=True, refunded=refunded)

        state_machine.require_working_phase(TaskKind(row.kind), TaskStatus(row.status))
        completed = max(row.units_completed, outcome.units_completed or 0)
        failed = max(row.units_failed, outcome.units_failed or 0)
        status = state_machine.decide_terminal(
            units_expected=row.units_expected,
            units_completed=completed,
            units_failed=failed,
        )
        row.units_completed = completed
        row.units_failed = failed
        refunded = self._settle_in(session, row, status)
        return _result(row, applied=True, refunded=refunded)

    def fail_task(
        self,
        task_id: str,
        *,
        failure_class: FailureClass,
        message: str,
    ) -> ReconcileResult:
        """Fail a non-terminal task and refund the whole reservation."""

        def _fail(session: Session) -> ReconcileResult:
            row = self.registry.lock_in(session, task_id)
            if TaskStatus(row.status).is_terminal:
                return _result(row, applied=False, reason="task is terminal")
            refunded = self._fail_in(
                session,
                row,
                failure_class=failure_class,
                message=message,
                refund_units=row.units_expected,
            )
            return _result(row, applied=True, refunded=refunded)

        return self.database.write(_fail)

    def cancel_in(self, session: Session, task_id: str) -> ReconcileResult:
        """Cancel a non-terminal task, refunding every unit not yet completed."""

        row = self.registry.lock_in(session, task_id)
        if TaskStatus(row.status).is_terminal:
            return _result(row, applied=False, reason="task is terminal")
        refunded = self._fail_in(
            session,
            row,
            failure_class=FailureClass.CANCELED,
            message=CANCEL_MESSAGE,
            refund_units=row.units_expected - row.units_completed,
        )
        return _result(row, applied=True, refunded=refunded)

    def find_overdue(self, *, now: datetime | None = None) -> list[OverdueTask]:
        """Report active tasks past their time budget; they are never failed here."""

        current = now or utc_now()
        overdue: list[OverdueTask] = []
        for task in self.registry.list_active():
            if current <= overdue_cutoff(task, self.settings):
                continue
            reference = task.started_at or task.created_at
            budget = time_budget_seconds(task, self.settings)
            elapsed = int((current - reference).total_seconds())
            newly_alerted = self.database.write(
                partial(
                    self._mark_overdue_in,
                    task=task,
                    elapsed_seconds=elapsed,
                    budget_seconds=budget,
                ),
            )
            if newly_alerted:
                logger.warning(
                    "Task %s overdue: %s for %ds, budget %ds (+%ds grace)",
                    task.task_id,
                    task.status.value,
                    elapsed,
                    budget,
                    self.settings.overdue_grace_seconds,
                )
            overdue.append(
                OverdueTask(
                    task_id=task.task_id,
                    status=task.status,
                    elapsed_seconds=elapsed,
                    budget_seconds=budget,
                    newly_alerted=newly_alerted,
                ),
            )
        return overdue

    def _mark_overdue_in(
        self,
        session: Session,
        task: TaskView,
        *,
        elapsed_seconds: int,
        budget_seconds: int,
    ) -> bool:
        now = to_db_datetime(utc_now())
        result = session.exec(
            sa_update(Task)
            .where(
                col(Task.task_id) == task.task_id,
                col(Task.overdue_alerted_at).is_(None),
            )
            .values(overdue_alerted_at=now),
        )
        if result.rowcount != 1:
            return False
        self.registry.add_event_in(
            session,
            task_id=task.task_id,
            event_type="overdue_alert",
            status_from=None,
            status_to=None,
            details={
                "status": task.status.value,
                "elapsed_seconds": elapsed_seconds,
                "budget_seconds": budget_seconds,
                "units_pending": task.units_pending,
            },
        )
        return True

    def _finalize_if_all_reported(self, session: Session, row: Task) -> int | None:
        kind = TaskKind(row.kind)
        if TaskStatus(row.status) != state_machine.working_status(kind):
            return None
        if row.units_completed + row.units_failed != row.units_expected:
            return None
        status = state_machine.decide_terminal(
            units_expected=row.units_expected,
            units_completed=row.units_completed,
            units_failed=row.units_failed,
        )
        return self._settle_in(session, row, status)

    def _settle_in(self, session: Session, row: Task, status: TaskStatus) -> int:
        if status == TaskStatus.FAILED:
            return self._fail_in(
                session,
                row,
                failure_class=FailureClass.ALL_UNITS_FAILED,
                message=f"All {row.units_expected} units failed",
                refund_units=row.units_expected,
            )

        self.registry.finalize_in(session, row, status)
        refunded = 0
        if status == TaskStatus.PARTIAL_COMPLETE:
            refunded = self.ledger.refund_in(
                session,
                task_id=row.task_id,
                user_id=row.user_id,
                amount=prorated_credits(row.credits_cost, row.units_failed, row.units_expected),
                reason=f"{row.units_failed}/{row.units_expected} units failed",
                entity_type=_entity_type(row),
            )
        logger.info(
            "Task %s finalized as %s (%d/%d completed, refunded %d)",
            row.task_id,
            status.value,
            row.units_completed,
            row.units_expected,
            refunded,
        )
        return refunded

    def _fail_in(
        self,
        session: Session,
        row: Task,
        *,
        failure_class: FailureClass,
        message: str,
        refund_units: int,
    ) -> int:
        self.registry.finalize_in(
            session,
            row,
            TaskStatus.FAILED,
            error_message=message,
            failure_class=failure_class,
        )
        amount = max(
            0,
            prorated_credits(row.credits_cost, refund_units, row.units_expected)
            - row.credits_refunded,
        )
        refunded = self.ledger.refund_in(
            session,
            task_id=row.task_id,
            user_id=row.user_id,
            amount=amount,
            reason=message,
            entity_type=_entity_type(row),
        )
        logger.info(
            "Task %s failed (%s): %s; refunded %d credits",
            row.task_id,
            failure_class.value,
            message,
            refunded,
        )
        return refunded


def _entity_type(row: Task) -> EntityType:
    return EntityType.SCAN if row.kind == TaskKind.SCAN.value else EntityType.CONTENT


def _result(
    row: Task,
    *,
    applied: bool,
    refunded: int = 0,
    reason: str | None = None,
) -> ReconcileResult:
    return ReconcileResult(
        task_id=row.task_id,
        applied=applied,
        status=TaskStatus(row.status),
        progress=row.progress,
        refunded=refunded,
        reason=reason,
    )


def overdue_cutoff(task: TaskView, settings: ReconciliationSettings) -> datetime:
    """Moment after which ``task`` is reported as overdue."""

    reference = task.started_at or task.created_at
    return reference + timedelta(
        seconds=time_budget_seconds(task, settings) + settings.overdue_grace_seconds,
    )
