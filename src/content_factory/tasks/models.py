"""Domain models for task lifecycle, unit results and worker reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskKind(str, Enum):
    """Fixed set of billable task kinds."""

    CONTENT = "content"
    SCAN = "scan"


class TaskStatus(str, Enum):
    """Durable task lifecycle states shared by all kinds."""

    ENQUEUED = "ENQUEUED"
    RESEARCHING = "RESEARCHING"
    RESEARCH_COMPLETE = "RESEARCH_COMPLETE"
    GENERATING = "GENERATING"
    SCANNING = "SCANNING"
    COMPLETE = "COMPLETE"
    PARTIAL_COMPLETE = "PARTIAL_COMPLETE"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETE, TaskStatus.PARTIAL_COMPLETE, TaskStatus.FAILED},
)
RESULT_READY_STATUSES = frozenset({TaskStatus.COMPLETE, TaskStatus.PARTIAL_COMPLETE})


class UnitStatus(str, Enum):
    GENERATING = "GENERATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class FailureClass(str, Enum):
    """Why a task ended in FAILED."""

    ALL_UNITS_FAILED = "all_units_failed"
    WORKER_FATAL = "worker_fatal"
    QUEUE_EXHAUSTED = "queue_exhausted"
    CANCELED = "canceled"


class ContentCategory(str, Enum):
    """Content unit categories a request allocates its units across."""

    FUNCTIONAL = "functional"
    TRANSACTIONAL = "transactional"
    COMMERCIAL = "commercial"
    INFORMATIONAL = "informational"


CONTENT_TONES = (
    "professional",
    "conversational",
    "authoritative",
    "friendly",
    "technical",
    "casual",
)


@dataclass(slots=True)
class TaskView:
    """Readable task view for services, CLI and worker logic."""

    task_id: str
    user_id: str
    kind: TaskKind
    status: TaskStatus
    progress: int
    units_expected: int
    units_completed: int
    units_failed: int
    credits_cost: int
    credits_refunded: int
    params: dict[str, Any]
    research_payload: dict[str, Any] | None
    error_message: str | None
    failure_class: FailureClass | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime

    @property
    def units_reported(self) -> int:
        return self.units_completed + self.units_failed

    @property
    def units_pending(self) -> int:
        return max(0, self.units_expected - self.units_reported)


@dataclass(slots=True)
class TaskUnitView:
    task_id: str
    unit_id: str
    status: UnitStatus
    category: str | None
    size: int | None
    generation_time_ms: int | None
    result: dict[str, Any]
    error_message: str | None
    created_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task with its units and event stream."""

    task: TaskView
    units: list[TaskUnitView]
    events: list[TaskEventView]


@dataclass(slots=True)
class ProgressReport:
    """Worker progress callback.

    ``progress`` is the absolute percentage the worker has reached, so a
    redelivered or reordered report can never push the task backwards.
    """

    progress: int
    status: TaskStatus | None = None
    research_payload: dict[str, Any] | None = None


@dataclass(slots=True)
class UnitResult:
    """Outcome of one task unit reported by a worker."""

    unit_id: str
    outcome: UnitStatus
    category: str | None = None
    size: int | None = None
    generation_time_ms: int | None = None
    result: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None


@dataclass(slots=True)
class TerminalOutcome:
    """Worker terminal callback; a fatal error short-circuits unit accounting."""

    fatal_error: str | None = None
    units_completed: int | None = None
    units_failed: int | None = None


@dataclass(slots=True)
class ReconcileResult:
    """What a callback changed, if anything."""

    task_id: str
    applied: bool
    status: TaskStatus
    progress: int
    refunded: int = 0
    reason: str | None = None
