from __future__ import annotations

import threading
from collections.abc import Callable
from types import SimpleNamespace

import allure
import pytest

from content_factory.controllers import Services
from content_factory.errors import (
    InsufficientCredits,
    RefundAlreadyIssued,
    UserNotFound,
    ValidationError,
)
from content_factory.ledger.models import EntityType, TransactionType
from content_factory.tasks.service import CreateContentTask

pytestmark = [
    allure.epic("Credit Ledger"),
    allure.feature("Atomic Balance Mutation"),
]


def test_reserve_debits_balance_and_appends_transaction(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user(credits=30)

    result = services.ledger.check_and_reserve(
        user_id,
        12,
        entity_type=EntityType.CONTENT,
        description="Content generation: 3 units",
    )

    assert result.ok is True
    assert result.balance_after == 18
    balance = services.ledger.balance(user_id)
    assert (balance.credits_remaining, balance.credits_total, balance.credits_used) == (18, 30, 12)

    latest = services.ledger.history(user_id, limit=1)[0]
    assert latest.type == TransactionType.DEBIT
    assert (latest.amount, latest.balance_before, latest.balance_after) == (12, 30, 18)
    assert latest.delta == -12
    assert latest.transaction_id == result.transaction_id


def test_reserve_rejects_insufficient_balance_without_side_effects(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user(credits=10)
    before = services.ledger.history(user_id)

    with pytest.raises(InsufficientCredits) as error:
        services.ledger.check_and_reserve(user_id, 11)

    assert error.value.required == 11
    assert error.value.available == 10
    assert services.ledger.balance(user_id).credits_remaining == 10
    assert len(services.ledger.history(user_id)) == len(before)


def test_reserve_for_unknown_user(services: Services) -> None:
    with pytest.raises(UserNotFound):
        services.ledger.check_and_reserve("ghost", 1)


@pytest.mark.parametrize("amount", [0, -3, True])
def test_amounts_must_be_positive_integers(
    services: Services,
    make_user: Callable[..., str],
    amount: object,
) -> None:
    user_id = make_user()

    with pytest.raises(ValidationError):
        services.ledger.check_and_reserve(user_id, amount)  # type: ignore[arg-type]
    with pytest.raises(ValidationError):
        services.ledger.grant(
            user_id,
            amount,  # type: ignore[arg-type]
            TransactionType.BONUS,
            "bad",
        )


def test_grant_types_update_counters(services: Services, make_user: Callable[..., str]) -> None:
    user_id = make_user()

    assert services.ledger.grant(user_id, 5, TransactionType.BONUS, "promo") == 15
    assert services.ledger.grant(user_id, 120, TransactionType.RENEWAL, "starter") == 135
    balance = services.ledger.balance(user_id)
    assert (balance.credits_total, balance.credits_used) == (135, 0)

    with pytest.raises(ValidationError, match="cannot increase a balance"):
        services.ledger.grant(user_id, 5, TransactionType.DEBIT, "not a grant")


def test_refund_is_issued_at_most_once_per_task(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user(credits=50)
    services.ledger.check_and_reserve(user_id, 20, task_id="task-1")

    def _refund(amount: int) -> int:
        return services.database.write(
            lambda session: services.ledger.refund_in(
                session,
                task_id="task-1",
                user_id=user_id,
                amount=amount,
                reason="test",
            ),
        )

    assert _refund(0) == 0
    assert _refund(8) == 8
    with pytest.raises(RefundAlreadyIssued):
        _refund(8)

    balance = services.ledger.balance(user_id)
    assert (balance.credits_remaining, balance.credits_used) == (38, 12)
    refunds = [
        item
        for item in services.ledger.task_transactions("task-1")
        if item.type == TransactionType.REFUND
    ]
    assert len(refunds) == 1


def test_concurrent_reservations_never_overdraw(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user(credits=10)
    threads_count = 8
    barrier = threading.Barrier(threads_count)
    outcomes: list[str] = []
    lock = threading.Lock()

    def _reserve() -> None:
        barrier.wait()
        try:
            services.ledger.check_and_reserve(user_id, 3)
        except InsufficientCredits:
            outcome = "rejected"
        else:
            outcome = "reserved"
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=_reserve) for _ in range(threads_count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert outcomes.count("reserved") == 3
    assert outcomes.count("rejected") == threads_count - 3
    assert services.ledger.balance(user_id).credits_remaining == 1
    assert services.ledger.verify_ledger(user_id).ok


def test_verify_ledger_replays_chain(services: Services, make_user: Callable[..., str]) -> None:
    user_id = make_user(credits=40)
    services.ledger.check_and_reserve(user_id, 15, task_id="task-a")
    services.ledger.debit(user_id, 5, TransactionType.MANUAL, "correction")
    services.ledger.grant(user_id, 3, TransactionType.CREDIT, "goodwill")

    audit = services.ledger.verify_ledger(user_id)

    assert audit.ok, audit.problems
    assert audit.replayed_balance == audit.credits_remaining == 23
    assert audit.transaction_count == 5


def test_history_is_newest_first_with_paging(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user(credits=20)
    services.ledger.check_and_reserve(user_id, 1, description="first")
    services.ledger.check_and_reserve(user_id, 2, description="second")

    newest = services.ledger.history(user_id, limit=2)
    assert [item.description for item in newest] == ["second", "first"]
    older = services.ledger.history(user_id, limit=10, offset=2)
    assert [item.type for item in older] == [TransactionType.BONUS, TransactionType.BONUS]


def test_refund_partial_prorates_failed_units(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user(credits=60)
    services.ledger.check_and_reserve(user_id, 50, task_id="task-7")
    task = SimpleNamespace(
        task_id="task-7",
        user_id=user_id,
        credits_cost=50,
        units_expected=10,
        units_failed=3,
    )

    assert services.ledger.refund_partial(user_id, task) == 15
    with pytest.raises(RefundAlreadyIssued):
        services.ledger.refund_partial(user_id, task)
    assert services.ledger.balance(user_id).credits_remaining == 25

    nothing_failed = SimpleNamespace(
        task_id="task-8",
        user_id=user_id,
        credits_cost=20,
        units_expected=4,
        units_failed=0,
    )
    assert services.ledger.refund_partial(user_id, nothing_failed) == 0
    assert services.ledger.task_transactions("task-8") == []


def test_refund_partial_rejects_another_users_task(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    owner = make_user("owner", credits=40)
    stranger = make_user("stranger", credits=40)
    created = services.tasks.create_content_task(
        CreateContentTask(
            user_id=owner,
            total_units=4,
            allocations={"informational": 4},
            niche="Yoga studios",
            value_propositions=["First class free"],
        ),
    )
    task = services.registry.get(created.task_id)

    with pytest.raises(ValidationError, match="does not belong") as raised:
        services.ledger.refund_partial(stranger, task)
    assert raised.value.field == "user_id"
    assert services.ledger.balance(stranger).credits_remaining == 40
    assert services.ledger.balance(owner).credits_remaining == 20
    assert services.ledger.refund_partial(owner, task) == 0
