"""Domain models for users, subscriptions and admin reporting."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from content_factory.ledger.models import CreditTransactionView
from content_factory.tasks.models import TaskView


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PAST_DUE = "past_due"


@dataclass(slots=True)
class UserProfile:
    """Identity fields handed over by the external authenticator."""

    user_id: str
    email: str
    display_name: str | None = None
    avatar_url: str | None = None
    role: UserRole = UserRole.USER


@dataclass(slots=True)
class UserView:
    user_id: str
    email: str
    display_name: str | None
    role: UserRole
    subscription_tier: str
    subscription_status: SubscriptionStatus
    subscription_expires_at: datetime | None
    credits_remaining: int
    credits_total: int
    credits_used: int
    created_at: datetime
    last_login_at: datetime | None


@dataclass(slots=True)
class UserInitResult:
    user: UserView
    created: bool


@dataclass(slots=True)
class PaymentReceipt:
    """Trusted confirmation of a plan purchase from the payment provider."""

    tier: str
    payment_provider: str
    payment_id: str
    amount_paid_cents: int
    currency: str = "USD"


@dataclass(slots=True)
class SubscriptionView:
    subscription_id: int
    user_id: str
    tier: str
    status: SubscriptionStatus
    credits_granted: int
    amount_paid_cents: int
    currency: str
    payment_provider: str | None
    payment_id: str | None
    started_at: datetime
    expires_at: datetime
    cancelled_at: datetime | None


@dataclass(slots=True)
class SubscriptionStatusView:
    """Effective subscription state of one user at a point in time."""

    user_id: str
    tier: str
    status: SubscriptionStatus
    started_at: datetime | None
    expires_at: datetime | None
    days_remaining: int | None
    credits_remaining: int


@dataclass(slots=True)
class PlatformStats:
    """Platform-wide aggregates computed from the user store and ledger."""

    total_users: int
    users_by_tier: dict[str, int]
    credits_allocated: int
    credits_used: int
    credits_remaining: int
    credits_refunded: int
    active_subscriptions: dict[str, int]
    tasks_by_status: dict[str, int]
    transactions_by_type: dict[str, int] = field(default_factory=dict)

    @property
    def active_subscription_total(self) -> int:
        return sum(self.active_subscriptions.values())


@dataclass(slots=True)
class UserPage:
    users: list[UserView]
    total: int
    limit: int
    offset: int


@dataclass(slots=True)
class UserDetails:
    user: UserView
    recent_transactions: list[CreditTransactionView]
    recent_tasks: list[TaskView]
