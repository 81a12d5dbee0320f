"""Forward-only task state machine shared by content and scan tasks."""

from __future__ import annotations

from content_factory.errors import ValidationError
from content_factory.tasks.models import TaskKind, TaskStatus

_FLOWS: dict[TaskKind, tuple[TaskStatus, ...]] = {
    TaskKind.CONTENT: (
        TaskStatus.ENQUEUED,
        TaskStatus.RESEARCHING,
        TaskStatus.RESEARCH_COMPLETE,
        TaskStatus.GENERATING,
    ),
    TaskKind.SCAN: (
        TaskStatus.ENQUEUED,
        TaskStatus.SCANNING,
    ),
}

_WORKING_STATUS = {
    TaskKind.CONTENT: TaskStatus.GENERATING,
    TaskKind.SCAN: TaskStatus.SCANNING,
}


def flow(kind: TaskKind) -> tuple[TaskStatus, ...]:
    """Non-terminal states of ``kind`` in lifecycle order."""

    return _FLOWS[kind]


def working_status(kind: TaskKind) -> TaskStatus:
    """State in which units are produced and terminal accounting applies."""

    return _WORKING_STATUS[kind]


def rank(kind: TaskKind, status: TaskStatus) -> int:
    if status.is_terminal:
        return len(_FLOWS[kind])
    try:
        return _FLOWS[kind].index(status)
    except ValueError as error:
        raise ValidationError(
            f"{status.value} is not a valid state for {kind.value} tasks.",
            field="status",
        ) from error


def should_advance(
    kind: TaskKind,
    current: TaskStatus,
    target: TaskStatus,
    *,
    has_research_payload: bool,
) -> bool:
    """Decide whether a reported phase moves the task forward.

    Reports for a phase the task already reached or passed return False so
    redelivered callbacks are harmless. Terminal states are reached only
    through :func:`decide_terminal` or a fatal error, never by a phase report.
    """

    if target.is_terminal:
        raise ValidationError(
            f"Terminal state {target.value} must be reported through the terminal callback.",
            field="status",
        )
    target_rank = rank(kind, target)
    if current.is_terminal or target_rank <= rank(kind, current):
        return False
    if (
        kind == TaskKind.CONTENT
        and target_rank >= rank(kind, TaskStatus.RESEARCH_COMPLETE)
        and not has_research_payload
    ):
        raise ValidationError(
            f"Cannot enter {target.value} before the research payload is attached.",
            field="research_payload",
        )
    return True


def require_working_phase(kind: TaskKind, current: TaskStatus) -> None:
    """Non-fatal completion is accepted only from the kind's working state."""

    expected = working_status(kind)
    if current != expected:
        raise ValidationError(
            f"Cannot complete a {kind.value} task in {current.value}; "
            f"it must reach {expected.value} first.",
            field="status",
            status=current.value,
        )


def decide_terminal(*, units_expected: int, units_completed: int, units_failed: int) -> TaskStatus:
    """Map final unit counts to COMPLETE, PARTIAL_COMPLETE or FAILED."""

    if units_completed < 0 or units_failed < 0:
        raise ValidationError("Unit counts must be non-negative.", field="units")
    if units_completed + units_failed != units_expected:
        raise ValidationError(
            f"Terminal report accounts for {units_completed + units_failed} units "
            f"but {units_expected} are expected.",
            field="units",
            units_expected=units_expected,
            units_completed=units_completed,
            units_failed=units_failed,
        )
    if units_failed == 0:
        return TaskStatus.COMPLETE
    if units_failed < units_expected:
        return TaskStatus.PARTIAL_COMPLETE
    return TaskStatus.FAILED


def clamp_progress(value: int) -> int:
    return max(0, min(100, int(value)))
