"""Task creation, status, results and cancellation on top of ledger, registry and queue."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse
from uuid import uuid4

from sqlmodel import Session, select

from content_factory.config import LimitSettings, ReconciliationSettings
from content_factory.errors import ResultsNotReady, TaskNotFound, UserNotFound, ValidationError
from content_factory.ledger.ledger import CreditLedger
from content_factory.ledger.models import EntityType
from content_factory.ledger.pricing import content_cost, enforce_plan_limits, scan_cost
from content_factory.queue.adapter import QueueAdapter
from content_factory.storage.database import Database
from content_factory.storage.sqlmodel_models import UserAccount
from content_factory.tasks.allocation import validate_allocation
from content_factory.tasks.models import (
    CONTENT_TONES,
    RESULT_READY_STATUSES,
    ReconcileResult,
    TaskKind,
    TaskStatus,
    TaskUnitView,
    TaskView,
    UnitStatus,
)
from content_factory.tasks.reconciliation import ReconciliationEngine, estimate_seconds_remaining
from content_factory.tasks.registry import TaskRegistry

logger = logging.getLogger(__name__)

MIN_WORD_COUNT = 500
MAX_WORD_COUNT = 2500
DEFAULT_WORD_COUNT = 1200
MAX_VALUE_PROPOSITIONS = 10


@dataclass(slots=True)
class CreateContentTask:
    """Input payload for a bulk content generation task."""

    user_id: str
    total_units: int
    allocations: Mapping[str, int]
    niche: str
    value_propositions: Sequence[str]
    tone: str = "professional"
    target_word_count: int = DEFAULT_WORD_COUNT


@dataclass(slots=True)
class CreateScanTask:
    """Input payload for a site audit task."""

    user_id: str
    url: str


@dataclass(slots=True)
class TaskCreated:
    task_id: str
    kind: TaskKind
    status: TaskStatus
    credits_cost: int
    balance_after: int


@dataclass(slots=True)
class TaskStatusView:
    """Polling view returned by the status API."""

    task_id: str
    kind: TaskKind
    status: TaskStatus
    progress: int
    units_completed: int
    units_failed: int
    units_expected: int
    estimated_seconds_remaining: int
    error_message: str | None
    credits_cost: int
    credits_refunded: int


@dataclass(slots=True)
class ResultStats:
    total_units: int
    completed_units: int
    total_failures: int
    average_size: float
    total_size: int
    average_generation_time_ms: float
    credits_refunded: int


@dataclass(slots=True)
class TaskResults:
    task_id: str
    status: TaskStatus
    stats: ResultStats
    units: list[TaskUnitView] = field(default_factory=list)


class TaskService:
    """Synchronous entry points for task lifecycle operations."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        database: Database,
        ledger: CreditLedger,
        registry: TaskRegistry,
        queue: QueueAdapter,
        engine: ReconciliationEngine,
        limits: LimitSettings | None = None,
        reconciliation: ReconciliationSettings | None = None,
        content_pricer: Callable[[int], int] = content_cost,
    ) -> None:
        self.database = database
        self.ledger = ledger
        self.registry = registry
        self.queue = queue
        self.engine = engine
        self.limits = limits or LimitSettings()
        self.reconciliation = reconciliation or ReconciliationSettings()
        self.content_pricer = content_pricer

    def create_content_task(self, request: CreateContentTask) -> TaskCreated:
        """Validate, price, reserve, persist and enqueue a content task atomically."""

        params = self._validate_content_request(request)
        cost = self.content_pricer(request.total_units)
        return self._create(
            user_id=request.user_id,
            kind=TaskKind.CONTENT,
            params=params,
            units_expected=request.total_units,
            cost=cost,
            description=f"Content generation: {request.total_units} units",
        )

    def create_scan_task(self, request: CreateScanTask) -> TaskCreated:
        url = request.url.strip()
        _validate_scan_url(url)
        return self._create(
            user_id=request.user_id,
            kind=TaskKind.SCAN,
            params={"url": url},
            units_expected=1,
            cost=scan_cost(),
            description=f"Site scan: {url}",
        )

    def quote(self, kind: TaskKind, total_units: int = 1) -> int:
        """Credits a task of this shape would reserve."""

        if kind == TaskKind.SCAN:
            return scan_cost()
        return self.content_pricer(total_units)

    def status(self, task_id: str, *, user_id: str | None = None) -> TaskStatusView:
        task = self._get_owned(task_id, user_id)
        return TaskStatusView(
            task_id=task.task_id,
            kind=task.kind,
            status=task.status,
            progress=task.progress,
            units_completed=task.units_completed,
            units_failed=task.units_failed,
            units_expected=task.units_expected,
            estimated_seconds_remaining=estimate_seconds_remaining(task, self.reconciliation),
            error_message=task.error_message,
            credits_cost=task.credits_cost,
            credits_refunded=task.credits_refunded,
        )

    def results(self, task_id: str, *, user_id: str | None = None) -> TaskResults:
        """Collected unit results; only for COMPLETE or PARTIAL_COMPLETE tasks."""

        task = self._get_owned(task_id, user_id)
        if task.status not in RESULT_READY_STATUSES:
            raise ResultsNotReady(task_id, task.status.value)
        units = self.registry.units(task_id)
        completed = [unit for unit in units if unit.status == UnitStatus.COMPLETED]
        sizes = [unit.size for unit in completed if unit.size is not None]
        timings = [
            unit.generation_time_ms for unit in completed if unit.generation_time_ms is not None
        ]
        return TaskResults(
            task_id=task_id,
            status=task.status,
            units=units,
            stats=ResultStats(
                total_units=task.units_expected,
                completed_units=task.units_completed,
                total_failures=task.units_failed,
                average_size=round(sum(sizes) / len(sizes), 1) if sizes else 0.0,
                total_size=sum(sizes),
                average_generation_time_ms=(
                    round(sum(timings) / len(timings), 1) if timings else 0.0
                ),
                credits_refunded=task.credits_refunded,
            ),
        )

    def cancel(self, task_id: str, *, user_id: str | None = None) -> ReconcileResult:
        """Cancel a non-terminal task and drop its queue message in one transaction."""

        self._get_owned(task_id, user_id)

        def _cancel(session: Session) -> ReconcileResult:
            result = self.engine.cancel_in(session, task_id)
            if not result.applied:
                raise ValidationError(
                    f"Task {task_id} is already {result.status.value} and cannot be canceled.",
                    field="status",
                    status=result.status.value,
                )
            self.queue.cancel_in(session, task_id)
            return result

        result = self.database.write(_cancel)
        logger.info("Task %s canceled; refunded %d credits", task_id, result.refunded)
        return result

    def _create(  # noqa: PLR0913
        self,
        *,
        user_id: str,
        kind: TaskKind,
        params: dict[str, Any],
        units_expected: int,
        cost: int,
        description: str,
    ) -> TaskCreated:
        task_id = str(uuid4())
        entity_type = EntityType.SCAN if kind == TaskKind.SCAN else EntityType.CONTENT

        def _create_in(session: Session) -> TaskCreated:
            reservation = self.ledger.reserve_in(
                session,
                user_id=user_id,
                amount=cost,
                task_id=task_id,
                entity_type=entity_type,
                description=description,
            )
            tier = session.exec(
                select(UserAccount.subscription_tier).where(UserAccount.user_id == user_id),
            ).one_or_none()
            if tier is None:
                raise UserNotFound(user_id)
            enforce_plan_limits(
                tier=tier,
                balance_before=reservation.balance_after + cost,
                kind=kind.value,
                total_units=units_expected,
                free_tier_max_units=self.limits.free_tier_max_units,
            )
            self.registry.insert_in(
                session,
                task_id=task_id,
                user_id=user_id,
                kind=kind,
                params=params,
                units_expected=units_expected,
                credits_cost=cost,
            )
            self.queue.enqueue_in(
                session,
                task_id=task_id,
                payload={"task_id": task_id, "user_id": user_id, "kind": kind.value, **params},
                kind=kind.value,
            )
            return TaskCreated(
                task_id=task_id,
                kind=kind,
                status=TaskStatus.ENQUEUED,
                credits_cost=cost,
                balance_after=reservation.balance_after,
            )

        created = self.database.write(_create_in)
        logger.info(
            "Created %s task %s for user %s (%d units, %d credits)",
            kind.value,
            task_id,
            user_id,
            units_expected,
            cost,
        )
        return created

    def _validate_content_request(self, request: CreateContentTask) -> dict[str, Any]:
        if (
            isinstance(request.total_units, bool)
            or not isinstance(request.total_units, int)
            or not 1 <= request.total_units <= self.limits.max_content_units
        ):
            raise ValidationError(
                f"total_units must be between 1 and {self.limits.max_content_units}.",
                field="total_units",
            )
        allocations = validate_allocation(request.total_units, request.allocations)

        niche = request.niche.strip()
        if not niche:
            raise ValidationError("niche is required.", field="niche")
        value_propositions = [item.strip() for item in request.value_propositions if item.strip()]
        if not value_propositions:
            raise ValidationError(
                "At least one value proposition is required.",
                field="value_propositions",
            )
        if len(value_propositions) > MAX_VALUE_PROPOSITIONS:
            raise ValidationError(
                f"At most {MAX_VALUE_PROPOSITIONS} value propositions are allowed.",
                field="value_propositions",
            )
        if request.tone not in CONTENT_TONES:
            raise ValidationError(
                f"Unsupported tone {request.tone!r}. Expected one of: {', '.join(CONTENT_TONES)}.",
                field="tone",
            )
        if not MIN_WORD_COUNT <= request.target_word_count <= MAX_WORD_COUNT:
            raise ValidationError(
                f"target_word_count must be between {MIN_WORD_COUNT} and {MAX_WORD_COUNT}.",
                field="target_word_count",
            )
        return {
            "total_units": request.total_units,
            "allocations": allocations,
            "niche": niche,
            "value_propositions": value_propositions,
            "tone": request.tone,
            "target_word_count": request.target_word_count,
        }

    def _get_owned(self, task_id: str, user_id: str | None) -> TaskView:
        task = self.registry.find(task_id)
        if task is None or (user_id is not None and task.user_id != user_id):
            raise TaskNotFound(task_id)
        return task


def _validate_scan_url(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValidationError(
            f"Invalid scan URL: {url!r}. Use an absolute http(s) URL.",
            field="url",
        )
