from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import allure
import pytest
from sqlalchemy.exc import IntegrityError

from content_factory.accounts.models import (
    PaymentReceipt,
    SubscriptionStatus,
    UserProfile,
    UserRole,
)
from content_factory.config import LimitSettings
from content_factory.controllers import Services
from content_factory.errors import (
    InsufficientCredits,
    NotAuthorized,
    PlanRestricted,
    UserNotFound,
    ValidationError,
)
from content_factory.ledger.models import EntityType, TransactionType
from content_factory.storage.sqlmodel_models import Subscription
from content_factory.tasks.service import CreateContentTask, CreateScanTask, TaskService

pytestmark = [
    allure.epic("Accounts"),
    allure.feature("Users, Subscriptions & Admin"),
]

STARTED = datetime(2026, 3, 1, 9, 30, tzinfo=UTC)


def _receipt(tier: str = "starter", payment_id: str = "pay-1") -> PaymentReceipt:
    prices = {"starter": 900, "pro": 1900}
    return PaymentReceipt(
        tier=tier,
        payment_provider="stripe",
        payment_id=payment_id,
        amount_paid_cents=prices.get(tier, 0),
    )


def test_first_login_creates_free_user_with_signup_bonus(services: Services) -> None:
    created = services.users.initialize_user(
        UserProfile(user_id="u-42", email="ada@example.com", display_name="Ada"),
    )

    assert created.created is True
    user = created.user
    assert user.subscription_tier == "free"
    assert user.subscription_status == SubscriptionStatus.ACTIVE
    assert (user.credits_remaining, user.credits_total, user.credits_used) == (10, 10, 0)
    history = services.ledger.history("u-42")
    assert [(item.type, item.balance_before, item.balance_after) for item in history] == [
        (TransactionType.BONUS, 0, 10),
    ]

    again = services.users.initialize_user(
        UserProfile(user_id="u-42", email="ada@new.example.com"),
    )
    assert again.created is False
    assert again.user.email == "ada@new.example.com"
    assert again.user.display_name == "Ada"
    assert again.user.credits_remaining == 10
    assert len(services.ledger.history("u-42")) == 1


def test_initialize_user_validates_profile(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    make_user("owner", email="shared@example.com")

    with pytest.raises(ValidationError, match="user_id is required"):
        services.users.initialize_user(UserProfile(user_id=" ", email="x@example.com"))
    with pytest.raises(ValidationError, match="Invalid email"):
        services.users.initialize_user(UserProfile(user_id="u-2", email="nope"))
    with pytest.raises(ValidationError, match="belongs to another user"):
        services.users.initialize_user(UserProfile(user_id="u-3", email="shared@example.com"))
    assert services.users.find_by_email("shared@example.com").user_id == "owner"
    with pytest.raises(UserNotFound):
        services.users.get("u-3")


def test_upgrade_grants_plan_credits_once_per_payment(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user()

    subscription = services.subscriptions.upgrade(user_id, _receipt(), now=STARTED)
    replayed = services.subscriptions.upgrade(user_id, _receipt(), now=STARTED)

    assert replayed.subscription_id == subscription.subscription_id
    assert subscription.credits_granted == 120
    assert subscription.expires_at == STARTED + timedelta(days=30)
    balance = services.ledger.balance(user_id)
    assert (balance.credits_remaining, balance.credits_total) == (130, 130)
    latest = services.ledger.history(user_id, limit=1)[0]
    assert latest.type == TransactionType.RENEWAL
    assert latest.entity_type == EntityType.SUBSCRIPTION
    assert services.users.get(user_id).subscription_tier == "starter"

    renewed = services.subscriptions.upgrade(user_id, _receipt("pro", "pay-2"), now=STARTED)
    assert renewed.tier == "pro"
    assert services.ledger.balance(user_id).credits_remaining == 530
    assert [item.payment_id for item in services.subscriptions.history(user_id)] == [
        "pay-2",
        "pay-1",
    ]


def test_payment_reference_is_unique_per_provider(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user()
    applied = services.subscriptions.upgrade(user_id, _receipt(), now=STARTED)

    with services.database.session() as session:
        session.add(
            Subscription(
                user_id=user_id,
                tier="starter",
                status=SubscriptionStatus.ACTIVE.value,
                credits_granted=120,
                payment_provider="stripe",
                payment_id="pay-1",
                started_at=STARTED,
                expires_at=applied.expires_at,
                created_at=STARTED,
            ),
        )
        with pytest.raises(IntegrityError):
            session.commit()

    other_provider = services.subscriptions.upgrade(
        user_id,
        PaymentReceipt("starter", "paypal", "pay-1", amount_paid_cents=900),
        now=STARTED,
    )
    assert other_provider.subscription_id != applied.subscription_id
    assert services.ledger.balance(user_id).credits_remaining == 250


def test_upgrade_rejects_bad_receipts(services: Services, make_user: Callable[..., str]) -> None:
    user_id = make_user()
    other = make_user("user-2")
    services.subscriptions.upgrade(other, _receipt(payment_id="pay-other"))

    with pytest.raises(ValidationError, match="cannot be purchased"):
        services.subscriptions.upgrade(user_id, _receipt("free"))
    with pytest.raises(ValidationError, match="Unknown subscription tier"):
        services.subscriptions.upgrade(user_id, _receipt("enterprise"))
    with pytest.raises(ValidationError, match="does not match"):
        services.subscriptions.upgrade(
            user_id,
            PaymentReceipt("pro", "stripe", "pay-9", amount_paid_cents=900),
        )
    with pytest.raises(ValidationError, match="belongs to another user"):
        services.subscriptions.upgrade(user_id, _receipt(payment_id="pay-other"))
    with pytest.raises(UserNotFound):
        services.subscriptions.upgrade("ghost", _receipt(payment_id="pay-ghost"))
    assert services.ledger.balance(user_id).credits_remaining == 10


def test_paid_plan_is_not_bound_by_free_tier_limits(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    free_user = make_user("user-free")
    paid_user = make_user("user-paid")
    services.subscriptions.upgrade(paid_user, _receipt())
    services.ledger.debit(paid_user, 120, TransactionType.MANUAL, "spend down")
    tasks = TaskService(
        database=services.database,
        ledger=services.ledger,
        registry=services.registry,
        queue=services.queue,
        engine=services.engine,
        limits=LimitSettings(free_tier_max_units=1),
    )

    def _request(user_id: str) -> CreateContentTask:
        return CreateContentTask(
            user_id=user_id,
            total_units=2,
            allocations={"transactional": 2},
            niche="Florists",
            value_propositions=["Same-day delivery"],
        )

    with pytest.raises(PlanRestricted):
        tasks.create_content_task(_request(free_user))
    created = tasks.create_content_task(_request(paid_user))

    assert created.balance_after == 0
    assert services.ledger.balance(free_user).credits_remaining == 10


def test_subscription_status_and_cancellation(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user()
    services.subscriptions.upgrade(user_id, _receipt(), now=STARTED)

    status = services.subscriptions.status(user_id, now=STARTED + timedelta(days=1))
    assert (status.tier, status.status, status.days_remaining) == (
        "starter",
        SubscriptionStatus.ACTIVE,
        29,
    )
    expired = services.subscriptions.status(user_id, now=STARTED + timedelta(days=31))
    assert (expired.status, expired.days_remaining) == (SubscriptionStatus.EXPIRED, 0)

    cancelled = services.subscriptions.cancel(user_id, now=STARTED + timedelta(days=2))
    assert cancelled.status == SubscriptionStatus.CANCELLED
    assert cancelled.credits_remaining == 130
    assert services.subscriptions.history(user_id)[0].cancelled_at is not None
    again = services.subscriptions.cancel(user_id, now=STARTED + timedelta(days=3))
    assert again.status == SubscriptionStatus.CANCELLED

    free_user = make_user("user-free")
    with pytest.raises(ValidationError, match="no subscription to cancel"):
        services.subscriptions.cancel(free_user)
    assert services.subscriptions.status(free_user).days_remaining is None


def test_admin_actions_require_admin_role(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user()
    make_user("root", role=UserRole.ADMIN, email="ops@example.com")

    with pytest.raises(NotAuthorized):
        services.admin.grant_bonus(user_id, 5, "promo", admin=user_id)
    with pytest.raises(NotAuthorized):
        services.admin.adjust_credits(user_id, 5, "promo", admin="stranger@example.com")
    with pytest.raises(ValidationError, match="reason is required"):
        services.admin.grant_bonus(user_id, 5, "  ", admin="root")
    with pytest.raises(ValidationError, match="must be > 0"):
        services.admin.grant_bonus(user_id, 0, "promo", admin="root")
    with pytest.raises(ValidationError, match="non-zero"):
        services.admin.adjust_credits(user_id, 0, "typo", admin="root")

    assert services.admin.grant_bonus(user_id, 15, "launch promo", admin="ops@example.com") == 25
    latest = services.ledger.history(user_id, limit=1)[0]
    assert latest.type == TransactionType.BONUS
    assert latest.description == "Admin bonus: launch promo (granted by ops@example.com)"


def test_admin_adjustments_are_guarded(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    user_id = make_user(credits=20)
    make_user("root", role=UserRole.ADMIN)

    assert services.admin.adjust_credits(user_id, -8, "duplicate payment", admin="root") == 12
    assert services.admin.adjust_credits(user_id, 3, "goodwill", admin="root") == 15
    with pytest.raises(InsufficientCredits):
        services.admin.adjust_credits(user_id, -16, "too much", admin="root")

    balance = services.ledger.balance(user_id)
    assert (balance.credits_remaining, balance.credits_used) == (15, 8)
    assert services.ledger.verify_ledger(user_id).ok


def test_platform_stats_and_user_details(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    first = make_user(credits=60)
    second = make_user("user-2")
    make_user("root", role=UserRole.ADMIN)
    services.subscriptions.upgrade(second, _receipt())
    created = services.tasks.create_scan_task(
        CreateScanTask(user_id=first, url="https://example.com"),
    )
    services.tasks.cancel(created.task_id)

    stats = services.admin.platform_stats()

    assert stats.total_users == 3
    assert stats.users_by_tier == {"free": 2, "starter": 1}
    assert stats.active_subscriptions == {"starter": 1}
    assert stats.active_subscription_total == 1
    assert stats.credits_allocated == 60 + 130 + 10
    assert stats.credits_used == 0
    assert stats.credits_refunded == 20
    assert stats.credits_remaining == 200
    assert stats.tasks_by_status == {"FAILED": 1}
    assert stats.transactions_by_type["refund"] == 1

    details = services.admin.user_details(first)
    assert details.user.user_id == first
    assert [task.task_id for task in details.recent_tasks] == [created.task_id]
    assert details.recent_transactions[0].type == TransactionType.REFUND


def test_list_users_filters_and_pages(
    services: Services,
    make_user: Callable[..., str],
) -> None:
    make_user("ana", email="ana@florist.example")
    make_user("bob", email="bob@plumbing.example")
    make_user("cyd", email="cyd@florist.example")
    services.subscriptions.upgrade("cyd", _receipt())
    services.users.initialize_user(
        UserProfile(user_id="dee", email="dee@example.com", display_name="Florist Dee"),
    )

    everyone = services.admin.list_users()
    assert everyone.total == 4
    assert sorted(user.user_id for user in everyone.users) == ["ana", "bob", "cyd", "dee"]

    florists = services.admin.list_users(search="  FLORIST ")
    assert sorted(user.user_id for user in florists.users) == ["ana", "cyd", "dee"]

    starter = services.admin.list_users(tier="starter", status=SubscriptionStatus.ACTIVE)
    assert [user.user_id for user in starter.users] == ["cyd"]
    assert services.admin.list_users(status=SubscriptionStatus.CANCELLED).total == 0

    first_page = services.admin.list_users(limit=3)
    second_page = services.admin.list_users(limit=3, offset=3)
    assert (len(first_page.users), len(second_page.users)) == (3, 1)
    assert second_page.total == 4
    paged = {user.user_id for user in first_page.users + second_page.users}
    assert paged == {"ana", "bob", "cyd", "dee"}

    with pytest.raises(ValidationError, match="limit"):
        services.admin.list_users(limit=0)
