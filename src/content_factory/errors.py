"""Error taxonomy shared by the ledger, task registry and queue worker."""

from __future__ import annotations

from typing import Any


class ContentFactoryError(Exception):
    """Base error carrying structured context for callers."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = context


class ValidationError(ContentFactoryError):
    """Malformed request; rejected synchronously and never retried."""

    def __init__(self, message: str, *, field: str | None = None, **context: Any) -> None:
        super().__init__(message, field=field, **context)
        self.field = field


class AllocationMismatch(ValidationError):
    """Per-category unit counts do not add up to the requested total."""

    def __init__(
        self,
        message: str,
        *,
        total_units: int,
        allocated: int,
        field: str | None = None,
    ) -> None:
        super().__init__(message, field=field, total_units=total_units, allocated=allocated)
        self.total_units = total_units
        self.allocated = allocated


class PlanRestricted(ValidationError):
    """Request is valid but not allowed on the user's current plan."""


class ResultsNotReady(ValidationError):
    """Results were requested for a task that has not finished successfully."""

    def __init__(self, task_id: str, status: str) -> None:
        super().__init__(
            f"Task {task_id} is {status}; results are available only once it completes.",
            field="status",
            task_id=task_id,
            status=status,
        )
        self.status = status


class InsufficientCredits(ContentFactoryError):
    """Guarded reservation failed because the balance is too low."""

    def __init__(self, *, user_id: str, required: int, available: int) -> None:
        super().__init__(
            f"Insufficient credits: need {required}, have {available}.",
            user_id=user_id,
            required=required,
            available=available,
        )
        self.required = required
        self.available = available


class UserNotFound(ContentFactoryError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"User not found: {user_id}", user_id=user_id)


class TaskNotFound(ContentFactoryError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}", task_id=task_id)


class RefundAlreadyIssued(ContentFactoryError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Refund already issued for task {task_id}", task_id=task_id)


class DuplicateMessageConflict(ContentFactoryError):
    """Same message key re-enqueued with a different payload."""

    def __init__(self, message_key: str) -> None:
        super().__init__(
            f"Queue message {message_key} already exists with a different payload.",
            message_key=message_key,
        )


class QueueExhausted(ContentFactoryError):
    """Delivery attempts ran out before the worker finished the task."""

    def __init__(self, task_id: str, attempts: int, last_error: str | None) -> None:
        super().__init__(
            f"Task {task_id} exhausted {attempts} delivery attempts: "
            f"{last_error or 'unknown error'}",
            task_id=task_id,
            attempts=attempts,
            last_error=last_error,
        )
        self.attempts = attempts
        self.last_error = last_error


class WorkerFatal(ContentFactoryError):
    """Unrecoverable worker error; the task fails without further retries."""


class TransientWorkerError(ContentFactoryError):
    """Worker error that should be retried under the delivery policy."""


class UnitFailure(ContentFactoryError):
    """One sub-unit failed; recorded against the task without failing it."""

    def __init__(self, unit_id: str, message: str) -> None:
        super().__init__(message, unit_id=unit_id)
        self.unit_id = unit_id


class NotAuthorized(ContentFactoryError):
    """Caller lacks the role required for an operation."""

    def __init__(self, actor: str, action: str) -> None:
        super().__init__(f"{actor} is not allowed to {action}.", actor=actor, action=action)
