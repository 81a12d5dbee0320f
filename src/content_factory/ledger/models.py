"""Domain models for the credit ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TransactionType(str, Enum):
    """Kinds of balance mutation recorded in the ledger."""

    DEBIT = "debit"
    CREDIT = "credit"
    REFUND = "refund"
    BONUS = "bonus"
    RENEWAL = "renewal"
    MANUAL = "manual"


class EntityType(str, Enum):
    """What a transaction was spent on or granted for."""

    CONTENT = "content"
    SCAN = "scan"
    SUBSCRIPTION = "subscription"
    MANUAL = "manual"


GRANT_TYPES = frozenset(
    {
        TransactionType.CREDIT,
        TransactionType.REFUND,
        TransactionType.BONUS,
        TransactionType.RENEWAL,
        TransactionType.MANUAL,
    },
)


@dataclass(slots=True)
class ReservationResult:
    """Outcome of a guarded debit."""

    ok: bool
    balance_after: int
    transaction_id: int | None


@dataclass(slots=True)
class GrantResult:
    balance_after: int
    transaction_id: int | None


@dataclass(slots=True)
class BalanceView:
    """Current counters for one user."""

    user_id: str
    credits_remaining: int
    credits_total: int
    credits_used: int
    subscription_tier: str


@dataclass(slots=True)
class CreditTransactionView:
    """Immutable ledger entry."""

    transaction_id: int
    user_id: str
    type: TransactionType
    amount: int
    balance_before: int
    balance_after: int
    task_id: str | None
    entity_type: str | None
    description: str
    created_at: datetime

    @property
    def delta(self) -> int:
        return self.balance_after - self.balance_before


@dataclass(slots=True)
class LedgerAudit:
    """Result of replaying a user's transaction chain against the live balance."""

    user_id: str
    credits_remaining: int
    credits_total: int
    credits_used: int
    replayed_balance: int
    transaction_count: int
    problems: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.problems
