from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import timedelta

import allure
import pytest

from content_factory.controllers import Services
from content_factory.errors import RefundAlreadyIssued, ValidationError
from content_factory.queue.models import QueueMessageStatus
from content_factory.storage.common import utc_now
from content_factory.tasks.models import (
    FailureClass,
    ProgressReport,
    TaskStatus,
    TerminalOutcome,
    UnitResult,
    UnitStatus,
)
from content_factory.tasks.service import CreateContentTask, CreateScanTask, TaskService

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Result Reconciliation & Refunds"),
]


def _content_task(
    service: TaskService,
    user_id: str,
    units: int,
    allocations: Mapping[str, int] | None = None,
) -> str:
    return service.create_content_task(
        CreateContentTask(
            user_id=user_id,
            total_units=units,
            allocations=allocations or {"functional": units},
            niche="Dental clinics",
            value_propositions=["Same-day appointments"],
        ),
    ).task_id


def _start_generation(services: Services, task_id: str) -> None:
    engine = services.engine
    engine.progress(task_id, ProgressReport(progress=5, status=TaskStatus.RESEARCHING))
    engine.progress(
        task_id,
        ProgressReport(
            progress=20,
            status=TaskStatus.RESEARCH_COMPLETE,
            research_payload={"keywords": ["implants", "whitening"]},
        ),
    )
    engine.progress(task_id, ProgressReport(progress=25, status=TaskStatus.GENERATING))


def _unit(unit_id: str, *, ok: bool = True) -> UnitResult:
    if ok:
        return UnitResult(
            unit_id=unit_id,
            outcome=UnitStatus.COMPLETED,
            category="functional",
            size=1200,
            generation_time_ms=40,
            result={"title": unit_id},
        )
    return UnitResult(unit_id=unit_id, outcome=UnitStatus.FAILED, error_message="model refused")


def test_partial_completion_refunds_failed_share_once(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user(credits=100)
    task_id = _content_task(services.tasks, user_id, 10)
    assert services.ledger.balance(user_id).credits_remaining == 50
    _start_generation(services, task_id)

    results = [
        services.engine.unit_result(task_id, _unit(f"u{index}", ok=index <= 7))
        for index in range(1, 11)
    ]

    assert results[-1].status == TaskStatus.PARTIAL_COMPLETE
    assert results[-1].refunded == 15
    task = services.registry.get(task_id)
    assert (task.units_completed, task.units_failed, task.progress) == (7, 3, 100)
    assert task.credits_refunded == 15
    assert services.ledger.balance(user_id).credits_remaining == 65

    redelivered = services.engine.unit_result(task_id, _unit("u10", ok=False))
    late_terminal = services.engine.terminal(task_id, TerminalOutcome())
    assert not redelivered.applied
    assert not late_terminal.applied
    assert services.ledger.balance(user_id).credits_remaining == 65
    with pytest.raises(RefundAlreadyIssued):
        services.database.write(
            lambda session: services.ledger.refund_in(
                session,
                task_id=task_id,
                user_id=user_id,
                amount=15,
                reason="again",
            ),
        )
    assert services.ledger.verify_ledger(user_id).ok


def test_three_unit_task_with_one_failure_refunds_a_third(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user(credits=12)
    service = TaskService(
        database=services.database,
        ledger=services.ledger,
        registry=services.registry,
        queue=services.queue,
        engine=services.engine,
        limits=services.settings.limits,
        content_pricer=lambda _units: 12,
    )
    task_id = _content_task(service, user_id, 3, {"functional": 2, "transactional": 1})
    assert services.ledger.balance(user_id).credits_remaining == 0
    _start_generation(services, task_id)

    services.engine.unit_result(task_id, _unit("functional-1"))
    services.engine.unit_result(task_id, _unit("functional-2", ok=False))
    final = services.engine.unit_result(task_id, _unit("transactional-1"))

    assert final.status == TaskStatus.PARTIAL_COMPLETE
    assert final.refunded == 4
    assert services.ledger.balance(user_id).credits_remaining == 4


def test_all_units_failed_refunds_everything(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user(credits=30)
    task_id = _content_task(services.tasks, user_id, 4)
    _start_generation(services, task_id)

    for index in range(1, 5):
        services.engine.unit_result(task_id, _unit(f"u{index}", ok=False))

    task = services.registry.get(task_id)
    assert task.status == TaskStatus.FAILED
    assert task.failure_class == FailureClass.ALL_UNITS_FAILED
    assert task.credits_refunded == 20
    assert services.ledger.balance(user_id).credits_remaining == 30


def test_units_reported_before_generation_finalize_on_entering_it(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user(credits=30)
    task_id = _content_task(services.tasks, user_id, 2)
    services.engine.progress(task_id, ProgressReport(progress=5, status=TaskStatus.RESEARCHING))
    services.engine.progress(
        task_id,
        ProgressReport(
            progress=20,
            status=TaskStatus.RESEARCH_COMPLETE,
            research_payload={"k": 1},
        ),
    )
    services.engine.unit_result(task_id, _unit("u1"))
    services.engine.unit_result(task_id, _unit("u2"))
    assert services.registry.get(task_id).status == TaskStatus.RESEARCH_COMPLETE

    result = services.engine.progress(
        task_id,
        ProgressReport(progress=90, status=TaskStatus.GENERATING),
    )

    assert result.status == TaskStatus.COMPLETE
    assert result.progress == 100


def test_progress_is_monotonic_and_research_payload_first_wins(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user(credits=30)
    task_id = _content_task(services.tasks, user_id, 2)
    _start_generation(services, task_id)

    services.engine.progress(task_id, ProgressReport(progress=60))
    stale = services.engine.progress(
        task_id,
        ProgressReport(
            progress=30,
            status=TaskStatus.RESEARCH_COMPLETE,
            research_payload={"keywords": ["other"]},
        ),
    )

    assert not stale.applied
    task = services.registry.get(task_id)
    assert task.progress == 60
    assert task.status == TaskStatus.GENERATING
    assert task.research_payload == {"keywords": ["implants", "whitening"]}
    assert task.started_at is not None


def test_generation_requires_research_payload(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user(credits=30)
    task_id = _content_task(services.tasks, user_id, 2)

    with pytest.raises(ValidationError, match="research payload"):
        services.engine.progress(
            task_id,
            ProgressReport(progress=25, status=TaskStatus.GENERATING),
        )
    assert services.registry.get(task_id).status == TaskStatus.ENQUEUED


def test_terminal_report_uses_larger_of_stored_and_reported_counts(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user(credits=30)
    task_id = _content_task(services.tasks, user_id, 3)
    _start_generation(services, task_id)
    services.engine.unit_result(task_id, _unit("u1"))

    result = services.engine.terminal(
        task_id,
        TerminalOutcome(units_completed=2, units_failed=1),
    )

    assert result.status == TaskStatus.PARTIAL_COMPLETE
    assert result.refunded == 5
    task = services.registry.get(task_id)
    assert (task.units_completed, task.units_failed) == (2, 1)


def test_inconsistent_terminal_report_is_rejected(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user(credits=30)
    task_id = _content_task(services.tasks, user_id, 3)
    _start_generation(services, task_id)

    with pytest.raises(ValidationError, match="3 are expected"):
        services.engine.terminal(task_id, TerminalOutcome(units_completed=1, units_failed=0))
    assert services.registry.get(task_id).status == TaskStatus.GENERATING


def test_completion_report_before_generation_is_rejected(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user(credits=30)
    task_id = _content_task(services.tasks, user_id, 3)

    with pytest.raises(ValidationError, match="must reach GENERATING first") as raised:
        services.engine.terminal(task_id, TerminalOutcome(units_completed=3, units_failed=0))
    assert raised.value.field == "status"

    task = services.registry.get(task_id)
    assert task.status == TaskStatus.ENQUEUED
    assert task.research_payload is None
    assert services.ledger.balance(user_id).credits_remaining == 15

    fatal = services.engine.terminal(task_id, TerminalOutcome(fatal_error="research API down"))
    assert (fatal.status, fatal.refunded) == (TaskStatus.FAILED, 15)


def test_scan_completion_requires_scanning_phase(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user(credits=60)
    task_id = services.tasks.create_scan_task(
        CreateScanTask(user_id=user_id, url="https://example.com"),
    ).task_id

    with pytest.raises(ValidationError, match="must reach SCANNING first"):
        services.engine.terminal(task_id, TerminalOutcome(units_completed=1, units_failed=0))

    services.engine.progress(task_id, ProgressReport(progress=10, status=TaskStatus.SCANNING))
    result = services.engine.terminal(
        task_id,
        TerminalOutcome(units_completed=1, units_failed=0),
    )
    assert result.status == TaskStatus.COMPLETE


def test_unit_redelivered_during_generation_is_counted_once(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user(credits=30)
    task_id = _content_task(services.tasks, user_id, 3)
    _start_generation(services, task_id)

    first = services.engine.unit_result(task_id, _unit("u1"))
    redelivered = [services.engine.unit_result(task_id, _unit("u1")) for _ in range(3)]
    flipped = services.engine.unit_result(task_id, _unit("u1", ok=False))

    assert first.applied
    assert not any(result.applied for result in redelivered)
    assert not flipped.applied
    task = services.registry.get(task_id)
    assert task.status == TaskStatus.GENERATING
    assert (task.units_completed, task.units_failed) == (1, 0)
    assert task.credits_refunded == 0

    services.engine.unit_result(task_id, _unit("u2"))
    final = services.engine.unit_result(task_id, _unit("u3"))
    assert final.status == TaskStatus.COMPLETE


def test_fatal_error_fails_task_with_full_refund(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user(credits=30)
    task_id = _content_task(services.tasks, user_id, 3)
    _start_generation(services, task_id)
    services.engine.unit_result(task_id, _unit("u1"))

    result = services.engine.terminal(task_id, TerminalOutcome(fatal_error="research API down"))

    assert result.status == TaskStatus.FAILED
    assert result.refunded == 15
    task = services.registry.get(task_id)
    assert task.failure_class == FailureClass.WORKER_FATAL
    assert task.error_message == "research API down"
    assert services.ledger.balance(user_id).credits_remaining == 30


def test_cancel_refunds_unfinished_units_and_drops_message(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user(credits=100)
    task_id = _content_task(services.tasks, user_id, 10)
    _start_generation(services, task_id)
    services.engine.unit_result(task_id, _unit("u1"))
    services.engine.unit_result(task_id, _unit("u2"))

    result = services.tasks.cancel(task_id, user_id=user_id)

    assert result.status == TaskStatus.FAILED
    assert result.refunded == 40
    assert services.registry.get(task_id).failure_class == FailureClass.CANCELED
    message = services.queue.get(task_id)
    assert message is not None
    assert message.status == QueueMessageStatus.CANCELED
    assert services.ledger.balance(user_id).credits_remaining == 90
    with pytest.raises(ValidationError, match="cannot be canceled"):
        services.tasks.cancel(task_id)


def test_overdue_tasks_are_alerted_once_and_left_running(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user(credits=30)
    task_id = _content_task(services.tasks, user_id, 2)
    later = utc_now() + timedelta(hours=2)

    assert services.engine.find_overdue() == []
    first = services.engine.find_overdue(now=later)
    second = services.engine.find_overdue(now=later)

    assert [item.task_id for item in first] == [task_id]
    assert first[0].newly_alerted is True
    assert first[0].budget_seconds == 80
    assert second[0].newly_alerted is False
    alerts = [
        event for event in services.registry.events(task_id) if event.event_type == "overdue_alert"
    ]
    assert len(alerts) == 1
    assert services.registry.get(task_id).status == TaskStatus.ENQUEUED


def test_scan_task_lifecycle(services: Services, make_user: Callable[..., str]) -> None:
    user_id = make_user(credits=50)
    created = services.tasks.create_scan_task(
        CreateScanTask(user_id=user_id, url="https://example.com"),
    )

    services.engine.progress(
        created.task_id,
        ProgressReport(progress=10, status=TaskStatus.SCANNING),
    )
    result = services.engine.unit_result(
        created.task_id,
        UnitResult(unit_id="scan", outcome=UnitStatus.COMPLETED, result={"seo_score": 71}),
    )

    assert result.status == TaskStatus.COMPLETE
    assert services.ledger.balance(user_id).credits_remaining == 30


def test_delete_task_cascades_units_and_events(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user(credits=30)
    task_id = _content_task(services.tasks, user_id, 2)
    _start_generation(services, task_id)
    services.engine.unit_result(task_id, _unit("u1"))

    assert services.registry.delete(task_id)
    assert services.registry.find(task_id) is None
    assert services.registry.units(task_id) == []
    assert services.registry.events(task_id) == []
    assert not services.registry.delete(task_id)
