"""Queue worker that dispatches claimed tasks to per-kind handlers."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from content_factory.errors import QueueExhausted, ValidationError, WorkerFatal
from content_factory.queue.adapter import QueueAdapter
from content_factory.queue.backend.base import TaskHandler, WorkerCallbacks
from content_factory.queue.models import QueueMessageView
from content_factory.tasks import state_machine
from content_factory.tasks.models import (
    FailureClass,
    TaskKind,
    TaskStatus,
    TaskView,
    TerminalOutcome,
)
from content_factory.tasks.reconciliation import ReconciliationEngine
from content_factory.tasks.registry import TaskRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    partial: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.partial += other.partial
        self.failed += other.failed
        self.retried += other.retried
        self.skipped += other.skipped
        self.idle_polls += other.idle_polls


class QueueWorker:
    """Consumes queued messages and runs the matching handler."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: QueueAdapter,
        registry: TaskRegistry,
        engine: ReconciliationEngine,
        handlers: Mapping[TaskKind, TaskHandler],
        worker_id: str,
        poll_interval_seconds: float = 2.0,
        stale_lease_seconds: int = 600,
    ) -> None:
        self.queue = queue
        self.registry = registry
        self.engine = engine
        self.handlers = dict(handlers)
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_lease_seconds = stale_lease_seconds
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def run_once(self) -> WorkerRunSummary:
        """Process at most one message from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        message = self._claim_message()
        if message is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        task = self.registry.find(message.message_key)
        if task is None:
            self.queue.fail(message.message_key, error="Task record not found")
            summary.failed = 1
            return summary
        if task.status.is_terminal:
            logger.info("Task %s already %s; acknowledging", task.task_id, task.status.value)
            self.queue.ack(message.message_key)
            summary.skipped = 1
            return summary

        handler = self.handlers.get(task.kind)
        if handler is None:
            self._fail_fatal(task, message, f"No handler registered for {task.kind.value} tasks")
            summary.failed = 1
            return summary

        callbacks = WorkerCallbacks(
            task=task,
            payload=message.payload,
            engine=self.engine,
            queue=self.queue,
        )
        try:
            handler.run(task, callbacks)
        except (WorkerFatal, ValidationError) as error:
            self._fail_fatal(task, message, str(error))
            summary.failed = 1
            return summary
        except Exception as error:  # noqa: BLE001
            logger.exception(
                "Handler error for task %s (attempt %d)",
                task.task_id,
                message.attempt,
            )
            self._handle_retry_or_fail(message=message, error=error, summary=summary)
            return summary

        final = self._settle_after_handler(task)
        self.queue.ack(message.message_key)
        if final.status == TaskStatus.COMPLETE:
            summary.succeeded = 1
        elif final.status == TaskStatus.PARTIAL_COMPLETE:
            summary.partial = 1
        else:
            summary.failed = 1
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run worker loop until queue is idle or max_tasks reached.

        Args:
            max_tasks: Stop after processing this many messages (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        self.queue.purge_expired()
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def _claim_message(self) -> QueueMessageView | None:
        self._recover_stale_leases()
        if self._stop_requested:
            return None
        return self.queue.claim_next(worker_id=self.worker_id)

    def _recover_stale_leases(self) -> None:
        if self.stale_lease_seconds <= 0:
            return
        for item in self.queue.recover_stale(
            stale_after=timedelta(seconds=self.stale_lease_seconds),
        ):
            if item.requeued:
                continue
            self.engine.fail_task(
                item.message_key,
                failure_class=FailureClass.QUEUE_EXHAUSTED,
                message=str(QueueExhausted(item.message_key, item.attempt, item.last_error)),
            )

    def _settle_after_handler(self, task: TaskView) -> TaskView:
        current = self.registry.get(task.task_id)
        if current.status.is_terminal:
            return current
        working = state_machine.working_status(current.kind)
        if current.status != working:
            self.engine.fail_task(
                task.task_id,
                failure_class=FailureClass.WORKER_FATAL,
                message=(
                    f"Worker finished in {current.status.value} "
                    f"before reaching {working.value}"
                ),
            )
        elif current.units_reported == current.units_expected:
            self.engine.terminal(task.task_id, TerminalOutcome())
        else:
            self.engine.fail_task(
                task.task_id,
                failure_class=FailureClass.WORKER_FATAL,
                message=(
                    f"Worker finished with {current.units_pending} of "
                    f"{current.units_expected} units unreported"
                ),
            )
        return self.registry.get(task.task_id)

    def _fail_fatal(self, task: TaskView, message: QueueMessageView, error: str) -> None:
        logger.error("Fatal worker error for task %s: %s", task.task_id, error)
        self.engine.terminal(task.task_id, TerminalOutcome(fatal_error=error))
        self.queue.fail(message.message_key, error=error)

    def _handle_retry_or_fail(
        self,
        *,
        message: QueueMessageView,
        error: Exception,
        summary: WorkerRunSummary,
    ) -> None:
        error_summary = f"{type(error).__name__}: {error}"
        policy = self.queue.policy
        if policy.can_retry(message.attempt):
            delay_seconds = policy.retry_delay(message.attempt)
            if self.queue.schedule_retry(
                message.message_key,
                delay_seconds=delay_seconds,
                error=error_summary,
            ):
                summary.retried = 1
            return

        self.queue.fail(message.message_key, error=error_summary)
        exhausted = QueueExhausted(message.message_key, message.attempt, error_summary)
        self.engine.fail_task(
            message.message_key,
            failure_class=FailureClass.QUEUE_EXHAUSTED,
            message=str(exhausted),
        )
        summary.failed = 1

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        installed = True
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)

    def _request_stop(self, *, signal_name: str) -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name
        logger.info("Worker %s stopping after %s", self.worker_id, signal_name)
