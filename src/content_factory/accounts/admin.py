"""Operator actions: manual credit changes and platform reporting."""

from __future__ import annotations

import logging

from sqlalchemy import func, or_
from sqlmodel import col, select

from content_factory.accounts.models import (
    PlatformStats,
    SubscriptionStatus,
    UserDetails,
    UserPage,
)
from content_factory.accounts.users import UserDirectory, to_user_view
from content_factory.errors import NotAuthorized, ValidationError
from content_factory.ledger.ledger import CreditLedger
from content_factory.ledger.models import TransactionType
from content_factory.ledger.pricing import PAID_TIERS
from content_factory.storage.database import Database
from content_factory.storage.sqlmodel_models import CreditTransaction, Task, UserAccount
from content_factory.tasks.registry import TaskRegistry

logger = logging.getLogger(__name__)


class AdminService:
    def __init__(
        self,
        *,
        database: Database,
        ledger: CreditLedger,
        users: UserDirectory,
        registry: TaskRegistry,
    ) -> None:
        self.database = database
        self.ledger = ledger
        self.users = users
        self.registry = registry

    def grant_bonus(self, user_id: str, amount: int, reason: str, admin: str) -> int:
        """Add bonus credits and return the new balance."""

        self._authorize(admin, "grant bonus credits")
        reason = _require_reason(reason)
        if amount <= 0:
            raise ValidationError("Bonus amount must be > 0.", field="amount")
        balance = self.ledger.grant(
            user_id,
            amount,
            TransactionType.BONUS,
            f"Admin bonus: {reason} (granted by {admin})",
        )
        logger.info("Admin %s granted %d bonus credits to %s", admin, amount, user_id)
        return balance

    def adjust_credits(self, user_id: str, amount: int, reason: str, admin: str) -> int:
        """Apply a signed manual correction and return the new balance.

        Negative adjustments go through the guarded debit and can fail with
        ``InsufficientCredits``; the balance never drops below zero.
        """

        self._authorize(admin, "adjust credits")
        reason = _require_reason(reason)
        if amount == 0:
            raise ValidationError("Adjustment amount must be non-zero.", field="amount")
        description = f"Manual adjustment: {reason} (by {admin})"
        if amount > 0:
            balance = self.ledger.grant(user_id, amount, TransactionType.MANUAL, description)
        else:
            balance = self.ledger.debit(
                user_id,
                -amount,
                TransactionType.MANUAL,
                description,
            ).balance_after
        logger.info("Admin %s adjusted %s by %+d credits", admin, user_id, amount)
        return balance

    def platform_stats(self) -> PlatformStats:
        with self.database.session() as session:
            users_by_tier = {
                tier: count
                for tier, count in session.exec(
                    select(UserAccount.subscription_tier, func.count()).group_by(
                        col(UserAccount.subscription_tier),
                    ),
                ).all()
            }
            allocated, used, remaining = session.exec(
                select(
                    func.coalesce(func.sum(UserAccount.credits_total), 0),
                    func.coalesce(func.sum(UserAccount.credits_used), 0),
                    func.coalesce(func.sum(UserAccount.credits_remaining), 0),
                ),
            ).one()
            active_subscriptions = {
                tier: count
                for tier, count in session.exec(
                    select(UserAccount.subscription_tier, func.count())
                    .where(
                        col(UserAccount.subscription_tier).in_(sorted(PAID_TIERS)),
                        UserAccount.subscription_status == SubscriptionStatus.ACTIVE.value,
                    )
                    .group_by(col(UserAccount.subscription_tier)),
                ).all()
            }
            tasks_by_status = {
                status: count
                for status, count in session.exec(
                    select(Task.status, func.count()).group_by(col(Task.status)),
                ).all()
            }
            transactions_by_type = {
                kind: count
                for kind, count in session.exec(
                    select(CreditTransaction.type, func.count()).group_by(
                        col(CreditTransaction.type),
                    ),
                ).all()
            }
            refunded = session.exec(
                select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
                    CreditTransaction.type == TransactionType.REFUND.value,
                ),
            ).one()

        return PlatformStats(
            total_users=sum(users_by_tier.values()),
            users_by_tier=users_by_tier,
            credits_allocated=int(allocated),
            credits_used=int(used),
            credits_remaining=int(remaining),
            credits_refunded=int(refunded),
            active_subscriptions=active_subscriptions,
            tasks_by_status=tasks_by_status,
            transactions_by_type=transactions_by_type,
        )

    def list_users(  # noqa: PLR0913
        self,
        *,
        tier: str | None = None,
        status: SubscriptionStatus | None = None,
        search: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> UserPage:
        """Newest users first, filtered by tier, subscription status and email/name substring."""

        if limit <= 0 or offset < 0:
            raise ValidationError("limit must be > 0 and offset >= 0.", field="limit")
        query = select(UserAccount)
        if tier is not None:
            query = query.where(UserAccount.subscription_tier == tier)
        if status is not None:
            query = query.where(UserAccount.subscription_status == status.value)
        if search and search.strip():
            pattern = f"%{search.strip().lower()}%"
            query = query.where(
                or_(
                    func.lower(UserAccount.email).like(pattern),
                    func.lower(func.coalesce(UserAccount.display_name, "")).like(pattern),
                ),
            )
        with self.database.session() as session:
            total = session.exec(select(func.count()).select_from(query.subquery())).one()
            rows = session.exec(
                query.order_by(
                    col(UserAccount.created_at).desc(),
                    col(UserAccount.user_id),
                )
                .offset(offset)
                .limit(limit),
            ).all()
            users = [to_user_view(row) for row in rows]
        return UserPage(users=users, total=int(total), limit=limit, offset=offset)

    def user_details(self, user_id: str, *, limit: int = 20) -> UserDetails:
        return UserDetails(
            user=self.users.get(user_id),
            recent_transactions=self.ledger.history(user_id, limit=limit),
            recent_tasks=self.registry.list_tasks(user_id=user_id, limit=limit),
        )

    def _authorize(self, admin: str, action: str) -> None:
        if not self.users.is_admin(admin):
            raise NotAuthorized(admin, action)


def _require_reason(reason: str) -> str:
    cleaned = reason.strip()
    if not cleaned:
        raise ValidationError("A reason is required for manual credit changes.", field="reason")
    return cleaned
