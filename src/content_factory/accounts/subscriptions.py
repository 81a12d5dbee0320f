"""Plan purchases, renewals and cancellations."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from content_factory.accounts.models import (
    PaymentReceipt,
    SubscriptionStatus,
    SubscriptionStatusView,
    SubscriptionView,
)
from content_factory.errors import UserNotFound, ValidationError
from content_factory.ledger.ledger import CreditLedger
from content_factory.ledger.models import EntityType, TransactionType
from content_factory.ledger.pricing import FREE_TIER, PAID_TIERS, PLANS, PlanTier, get_plan
from content_factory.storage.common import (
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from content_factory.storage.database import Database
from content_factory.storage.sqlmodel_models import Subscription, UserAccount

logger = logging.getLogger(__name__)

BILLING_PERIOD_DAYS = 30


class SubscriptionService:
    """Applies trusted payment receipts to user plans and balances."""

    def __init__(self, database: Database, ledger: CreditLedger) -> None:
        self.database = database
        self.ledger = ledger

    def plans(self) -> list[PlanTier]:
        return list(PLANS.values())

    def upgrade(
        self,
        user_id: str,
        receipt: PaymentReceipt,
        *,
        now: datetime | None = None,
    ) -> SubscriptionView:
        """Activate or renew a paid plan and grant its credits.

        Receipts are idempotent on ``payment_id``: replaying one returns the
        subscription it created without granting credits again.
        """

        plan = get_plan(receipt.tier)
        if plan.name not in PAID_TIERS:
            raise ValidationError(
                f"Tier {plan.name!r} cannot be purchased.",
                field="tier",
            )
        if receipt.amount_paid_cents != plan.price_cents:
            raise ValidationError(
                f"Payment of {receipt.amount_paid_cents} cents does not match "
                f"the {plan.name} price of {plan.price_cents} cents.",
                field="amount_paid_cents",
            )
        if not receipt.payment_id.strip():
            raise ValidationError("payment_id is required.", field="payment_id")
        started = now or utc_now()

        def _upgrade(session: Session) -> SubscriptionView:
            existing = session.exec(
                select(Subscription).where(
                    Subscription.payment_provider == receipt.payment_provider,
                    Subscription.payment_id == receipt.payment_id,
                ),
            ).first()
            if existing is not None:
                if existing.user_id != user_id:
                    raise ValidationError(
                        f"Payment {receipt.payment_id} belongs to another user.",
                        field="payment_id",
                    )
                logger.info("Payment %s already applied; skipping", receipt.payment_id)
                return _to_subscription_view(existing)

            expires = started + timedelta(days=BILLING_PERIOD_DAYS * plan.period_months)
            result = session.exec(
                sa_update(UserAccount)
                .where(col(UserAccount.user_id) == user_id)
                .values(
                    subscription_tier=plan.name,
                    subscription_status=SubscriptionStatus.ACTIVE.value,
                    subscription_started_at=to_db_datetime(started),
                    subscription_expires_at=to_db_datetime(expires),
                    subscription_cancelled_at=None,
                    updated_at=to_db_datetime(started),
                ),
            )
            if result.rowcount != 1:
                raise UserNotFound(user_id)

            row = Subscription(
                user_id=user_id,
                tier=plan.name,
                status=SubscriptionStatus.ACTIVE.value,
                amount_paid_cents=receipt.amount_paid_cents,
                currency=receipt.currency,
                credits_granted=plan.credits,
                payment_provider=receipt.payment_provider,
                payment_id=receipt.payment_id,
                started_at=to_db_datetime(started),
                expires_at=to_db_datetime(expires),
                created_at=to_db_datetime(started),
            )
            session.add(row)
            session.flush()
            self.ledger.grant_in(
                session,
                user_id=user_id,
                amount=plan.credits,
                transaction_type=TransactionType.RENEWAL,
                entity_type=EntityType.SUBSCRIPTION,
                description=f"{plan.label} plan: {plan.credits} credits",
            )
            session.refresh(row)
            return _to_subscription_view(row)

        view = self.database.write(_upgrade)
        logger.info("User %s on %s plan until %s", user_id, view.tier, view.expires_at)
        return view

    def cancel(self, user_id: str, *, now: datetime | None = None) -> SubscriptionStatusView:
        """Stop renewal. Remaining credits stay with the user."""

        cancelled = now or utc_now()

        def _cancel(session: Session) -> None:
            user = session.get(UserAccount, user_id)
            if user is None:
                raise UserNotFound(user_id)
            if user.subscription_tier == FREE_TIER:
                raise ValidationError("Free plan has no subscription to cancel.", field="tier")
            if user.subscription_status == SubscriptionStatus.CANCELLED.value:
                return
            user.subscription_status = SubscriptionStatus.CANCELLED.value
            user.subscription_cancelled_at = to_db_datetime(cancelled)
            user.updated_at = to_db_datetime(cancelled)
            session.add(user)
            latest = session.exec(
                select(Subscription)
                .where(
                    Subscription.user_id == user_id,
                    Subscription.status == SubscriptionStatus.ACTIVE.value,
                )
                .order_by(col(Subscription.subscription_id).desc()),
            ).first()
            if latest is not None:
                latest.status = SubscriptionStatus.CANCELLED.value
                latest.cancelled_at = to_db_datetime(cancelled)
                session.add(latest)

        self.database.write(_cancel)
        logger.info("Cancelled subscription for user %s", user_id)
        return self.status(user_id, now=cancelled)

    def status(self, user_id: str, *, now: datetime | None = None) -> SubscriptionStatusView:
        current = now or utc_now()
        with self.database.session() as session:
            user = session.get(UserAccount, user_id)
            if user is None:
                raise UserNotFound(user_id)
            expires = optional_utc(user.subscription_expires_at)
            status = SubscriptionStatus(user.subscription_status)
            days_remaining: int | None = None
            if expires is not None:
                if expires < current:
                    status = SubscriptionStatus.EXPIRED
                    days_remaining = 0
                else:
                    days_remaining = (expires - current).days
            return SubscriptionStatusView(
                user_id=user.user_id,
                tier=user.subscription_tier,
                status=status,
                started_at=optional_utc(user.subscription_started_at),
                expires_at=expires,
                days_remaining=days_remaining,
                credits_remaining=user.credits_remaining,
            )

    def history(self, user_id: str) -> list[SubscriptionView]:
        with self.database.session() as session:
            rows = session.exec(
                select(Subscription)
                .where(Subscription.user_id == user_id)
                .order_by(col(Subscription.subscription_id).desc()),
            ).all()
            return [_to_subscription_view(row) for row in rows]


def _to_subscription_view(row: Subscription) -> SubscriptionView:
    return SubscriptionView(
        subscription_id=row.subscription_id or 0,
        user_id=row.user_id,
        tier=row.tier,
        status=SubscriptionStatus(row.status),
        credits_granted=row.credits_granted,
        amount_paid_cents=row.amount_paid_cents,
        currency=row.currency,
        payment_provider=row.payment_provider,
        payment_id=row.payment_id,
        started_at=to_utc_aware_datetime(row.started_at),
        expires_at=to_utc_aware_datetime(row.expires_at),
        cancelled_at=optional_utc(row.cancelled_at),
    )
