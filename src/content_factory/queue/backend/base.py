"""Handler interface for the opaque work behind each task kind."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from content_factory.errors import UnitFailure
from content_factory.tasks.models import (
    ProgressReport,
    ReconcileResult,
    TaskStatus,
    TaskView,
    TerminalOutcome,
    UnitResult,
    UnitStatus,
)

if TYPE_CHECKING:
    from content_factory.queue.adapter import QueueAdapter
    from content_factory.tasks.reconciliation import ReconciliationEngine


@dataclass(slots=True)
class WorkerCallbacks:
    """Callback surface handed to a handler for one delivery of one task.

    Each call is forwarded to the reconciliation engine and refreshes the
    queue lease, so a handler that keeps reporting is never treated as stale.
    """

    task: TaskView
    payload: dict[str, Any]
    engine: ReconciliationEngine
    queue: QueueAdapter
    results: list[ReconcileResult] = field(default_factory=list)

    def progress(
        self,
        progress: int,
        *,
        status: TaskStatus | None = None,
        research_payload: dict[str, Any] | None = None,
    ) -> ReconcileResult:
        result = self.engine.progress(
            self.task.task_id,
            ProgressReport(progress=progress, status=status, research_payload=research_payload),
        )
        return self._track(result)

    def unit_result(self, unit: UnitResult) -> ReconcileResult:
        return self._track(self.engine.unit_result(self.task.task_id, unit))

    def unit_failure(self, failure: UnitFailure, *, category: str | None = None) -> ReconcileResult:
        """Record a failed unit; the task keeps going."""

        return self.unit_result(
            UnitResult(
                unit_id=failure.unit_id,
                outcome=UnitStatus.FAILED,
                category=category,
                error_message=failure.message,
            ),
        )

    def terminal(self, outcome: TerminalOutcome) -> ReconcileResult:
        return self._track(self.engine.terminal(self.task.task_id, outcome))

    def heartbeat(self) -> None:
        self.queue.heartbeat(self.task.task_id)

    def _track(self, result: ReconcileResult) -> ReconcileResult:
        self.queue.heartbeat(self.task.task_id)
        self.results.append(result)
        return result


class TaskHandler(Protocol):
    """Protocol implemented by per-kind workers.

    Raise ``WorkerFatal`` for unrecoverable errors and any other exception
    for failures the delivery policy should retry.
    """

    def run(self, task: TaskView, callbacks: WorkerCallbacks) -> None:
        """Perform the work for ``task`` and report through ``callbacks``."""
