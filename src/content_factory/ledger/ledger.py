"""Credit ledger: guarded balance mutation plus an append-only transaction log."""

from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from content_factory.errors import (
    InsufficientCredits,
    RefundAlreadyIssued,
    UserNotFound,
    ValidationError,
)
from content_factory.ledger.models import (
    GRANT_TYPES,
    BalanceView,
    CreditTransactionView,
    EntityType,
    GrantResult,
    LedgerAudit,
    ReservationResult,
    TransactionType,
)
from content_factory.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from content_factory.storage.database import Database
from content_factory.storage.sqlmodel_models import CreditTransaction, Task, UserAccount

logger = logging.getLogger(__name__)


class RefundableTask(Protocol):
    task_id: str
    user_id: str
    credits_cost: int
    units_expected: int
    units_failed: int


def prorated_credits(cost: int, numerator: int, denominator: int) -> int:
    """``round(cost * numerator / denominator)`` with halves rounded up, in integers."""

    if denominator <= 0:
        raise ValueError("denominator must be > 0")
    if numerator <= 0 or cost <= 0:
        return 0
    numerator = min(numerator, denominator)
    return (2 * cost * numerator + denominator) // (2 * denominator)


class CreditLedger:
    """The only writer of user credit counters.

    Every mutation is a single guarded UPDATE on the user row followed, in the
    same transaction, by exactly one ``credit_transactions`` row whose
    ``balance_before``/``balance_after`` bracket the change. Methods named
    ``*_in`` join a caller-owned session so task creation and reconciliation
    can commit the balance change together with their own rows.
    """

    def __init__(self, database: Database) -> None:
        self.database = database

    def check_and_reserve(
        self,
        user_id: str,
        amount: int,
        *,
        task_id: str | None = None,
        entity_type: EntityType | None = None,
        description: str = "",
    ) -> ReservationResult:
        """Atomically debit ``amount`` or raise ``InsufficientCredits``."""

        return self.database.write(
            lambda session: self.reserve_in(
                session,
                user_id=user_id,
                amount=amount,
                task_id=task_id,
                entity_type=entity_type,
                description=description,
            ),
        )

    def reserve_in(  # noqa: PLR0913
        self,
        session: Session,
        *,
        user_id: str,
        amount: int,
        transaction_type: TransactionType = TransactionType.DEBIT,
        task_id: str | None = None,
        entity_type: EntityType | None = None,
        description: str = "",
    ) -> ReservationResult:
        _require_positive(amount)
        now = utc_now()
        result = session.exec(
            sa_update(UserAccount)
            .where(
                col(UserAccount.user_id) == user_id,
                col(UserAccount.credits_remaining) >= amount,
            )
            .values(
                credits_remaining=col(UserAccount.credits_remaining) - amount,
                credits_used=col(UserAccount.credits_used) + amount,
                updated_at=to_db_datetime(now),
            ),
        )
        if result.rowcount != 1:
            available = _current_balance(session, user_id)
            if available is None:
                raise UserNotFound(user_id)
            raise InsufficientCredits(user_id=user_id, required=amount, available=available)

        balance_after = _current_balance(session, user_id)
        if balance_after is None:
            raise UserNotFound(user_id)
        row = _append_transaction(
            session,
            user_id=user_id,
            transaction_type=transaction_type,
            amount=amount,
            balance_after=balance_after,
            balance_before=balance_after + amount,
            task_id=task_id,
            entity_type=entity_type,
            description=description,
        )
        logger.info(
            "Reserved %d credits for user %s (balance %d -> %d, task=%s)",
            amount,
            user_id,
            balance_after + amount,
            balance_after,
            task_id,
        )
        return ReservationResult(
            ok=True,
            balance_after=balance_after,
            transaction_id=row.transaction_id,
        )

    def debit(
        self,
        user_id: str,
        amount: int,
        transaction_type: TransactionType,
        description: str,
    ) -> ReservationResult:
        """Guarded decrement for non-task debits such as negative admin adjustments."""

        return self.database.write(
            lambda session: self.reserve_in(
                session,
                user_id=user_id,
                amount=amount,
                transaction_type=transaction_type,
                entity_type=EntityType.MANUAL,
                description=description,
            ),
        )

    def grant(
        self,
        user_id: str,
        amount: int,
        transaction_type: TransactionType,
        description: str,
        *,
        task_id: str | None = None,
        entity_type: EntityType | None = None,
    ) -> int:
        """Atomically add credits and return the balance after the grant."""

        granted = self.database.write(
            lambda session: self.grant_in(
                session,
                user_id=user_id,
                amount=amount,
                transaction_type=transaction_type,
                description=description,
                task_id=task_id,
                entity_type=entity_type,
            ),
        )
        return granted.balance_after

    def grant_in(  # noqa: PLR0913
        self,
        session: Session,
        *,
        user_id: str,
        amount: int,
        transaction_type: TransactionType,
        description: str,
        task_id: str | None = None,
        entity_type: EntityType | None = None,
    ) -> GrantResult:
        _require_positive(amount)
        if transaction_type not in GRANT_TYPES:
            raise ValidationError(
                f"Transaction type {transaction_type.value!r} cannot increase a balance.",
                field="type",
            )
        now = utc_now()
        values: dict[str, object] = {
            "credits_remaining": col(UserAccount.credits_remaining) + amount,
            "updated_at": to_db_datetime(now),
        }
        if transaction_type == TransactionType.REFUND:
            values["credits_used"] = col(UserAccount.credits_used) - amount
        else:
            values["credits_total"] = col(UserAccount.credits_total) + amount
        result = session.exec(
            sa_update(UserAccount).where(col(UserAccount.user_id) == user_id).values(**values),
        )
        if result.rowcount != 1:
            raise UserNotFound(user_id)

        balance_after = _current_balance(session, user_id)
        if balance_after is None:
            raise UserNotFound(user_id)
        row = _append_transaction(
            session,
            user_id=user_id,
            transaction_type=transaction_type,
            amount=amount,
            balance_after=balance_after,
            balance_before=balance_after - amount,
            task_id=task_id,
            entity_type=entity_type,
            description=description,
        )
        logger.info(
            "Granted %d credits (%s) to user %s (balance %d -> %d)",
            amount,
            transaction_type.value,
            user_id,
            balance_after - amount,
            balance_after,
        )
        return GrantResult(balance_after=balance_after, transaction_id=row.transaction_id)

    def refund_partial(self, user_id: str, task: RefundableTask) -> int:
        """Refund the failed share of ``task`` and return the refunded amount."""

        if task.user_id != user_id:
            raise ValidationError(
                f"Task {task.task_id} does not belong to user {user_id}.",
                field="user_id",
                task_id=task.task_id,
            )
        amount = prorated_credits(task.credits_cost, task.units_failed, task.units_expected)
        return self.database.write(
            lambda session: self.refund_in(
                session,
                task_id=task.task_id,
                user_id=user_id,
                amount=amount,
                reason=f"{task.units_failed}/{task.units_expected} units failed",
            ),
        )

    def refund_in(
        self,
        session: Session,
        *,
        task_id: str,
        user_id: str,
        amount: int,
        reason: str,
        entity_type: EntityType | None = None,
    ) -> int:
        """Issue the single refund allowed for ``task_id``.

        A zero amount records nothing. A second refund for the same task raises
        ``RefundAlreadyIssued``; the partial unique index on refund rows backs
        this up for concurrent writers.
        """

        if amount <= 0:
            return 0
        existing = session.exec(
            select(CreditTransaction.transaction_id).where(
                CreditTransaction.task_id == task_id,
                CreditTransaction.type == TransactionType.REFUND.value,
            ),
        ).first()
        if existing is not None:
            raise RefundAlreadyIssued(task_id)

        try:
            self.grant_in(
                session,
                user_id=user_id,
                amount=amount,
                transaction_type=TransactionType.REFUND,
                description=f"Refund for task {task_id}: {reason}",
                task_id=task_id,
                entity_type=entity_type,
            )
        except IntegrityError as error:
            raise RefundAlreadyIssued(task_id) from error
        session.exec(
            sa_update(Task)
            .where(col(Task.task_id) == task_id)
            .values(credits_refunded=col(Task.credits_refunded) + amount),
        )
        return amount

    def balance(self, user_id: str) -> BalanceView:
        with self.database.session() as session:
            row = session.get(UserAccount, user_id)
            if row is None:
                raise UserNotFound(user_id)
            return BalanceView(
                user_id=row.user_id,
                credits_remaining=row.credits_remaining,
                credits_total=row.credits_total,
                credits_used=row.credits_used,
                subscription_tier=row.subscription_tier,
            )

    def history(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[CreditTransactionView]:
        """Transactions newest first."""

        with self.database.session() as session:
            rows = session.exec(
                select(CreditTransaction)
                .where(CreditTransaction.user_id == user_id)
                .order_by(col(CreditTransaction.transaction_id).desc())
                .offset(offset)
                .limit(limit),
            ).all()
            return [_to_transaction_view(row) for row in rows]

    def task_transactions(self, task_id: str) -> list[CreditTransactionView]:
        with self.database.session() as session:
            rows = session.exec(
                select(CreditTransaction)
                .where(CreditTransaction.task_id == task_id)
                .order_by(col(CreditTransaction.transaction_id).asc()),
            ).all()
            return [_to_transaction_view(row) for row in rows]

    def verify_ledger(self, user_id: str) -> LedgerAudit:
        """Replay the transaction chain and compare it with the live counters."""

        with self.database.session() as session:
            user = session.get(UserAccount, user_id)
            if user is None:
                raise UserNotFound(user_id)
            rows = session.exec(
                select(CreditTransaction)
                .where(CreditTransaction.user_id == user_id)
                .order_by(col(CreditTransaction.transaction_id).asc()),
            ).all()

            audit = LedgerAudit(
                user_id=user_id,
                credits_remaining=user.credits_remaining,
                credits_total=user.credits_total,
                credits_used=user.credits_used,
                replayed_balance=0,
                transaction_count=len(rows),
            )
            for row in rows:
                delta = row.balance_after - row.balance_before
                if abs(delta) != row.amount:
                    audit.problems.append(
                        f"transaction {row.transaction_id}: delta {delta} != amount {row.amount}",
                    )
                if not _delta_sign_matches(row.type, delta):
                    audit.problems.append(
                        f"transaction {row.transaction_id}: {row.type} with delta {delta}",
                    )
                if row.balance_before != audit.replayed_balance:
                    audit.problems.append(
                        f"transaction {row.transaction_id}: balance_before {row.balance_before} "
                        f"!= previous balance_after {audit.replayed_balance}",
                    )
                audit.replayed_balance = row.balance_after

            if audit.replayed_balance != user.credits_remaining:
                audit.problems.append(
                    f"replayed balance {audit.replayed_balance} "
                    f"!= credits_remaining {user.credits_remaining}",
                )
            if user.credits_total - user.credits_used != user.credits_remaining:
                audit.problems.append(
                    f"credits_total - credits_used = {user.credits_total - user.credits_used} "
                    f"!= credits_remaining {user.credits_remaining}",
                )
            return audit


def _require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(
            f"Credit amount must be a positive integer, got {amount!r}.",
            field="amount",
        )


def _current_balance(session: Session, user_id: str) -> int | None:
    return session.exec(
        select(UserAccount.credits_remaining).where(UserAccount.user_id == user_id),
    ).one_or_none()


def _append_transaction(  # noqa: PLR0913
    session: Session,
    *,
    user_id: str,
    transaction_type: TransactionType,
    amount: int,
    balance_before: int,
    balance_after: int,
    task_id: str | None,
    entity_type: EntityType | None,
    description: str,
) -> CreditTransaction:
    row = CreditTransaction(
        user_id=user_id,
        type=transaction_type.value,
        amount=amount,
        balance_before=balance_before,
        balance_after=balance_after,
        task_id=task_id,
        entity_type=entity_type.value if entity_type is not None else None,
        description=description,
        created_at=to_db_datetime(utc_now()),
    )
    session.add(row)
    session.flush()
    return row


def _delta_sign_matches(transaction_type: str, delta: int) -> bool:
    if transaction_type == TransactionType.DEBIT.value:
        return delta < 0
    if transaction_type == TransactionType.MANUAL.value:
        return delta != 0
    return delta > 0


def _to_transaction_view(row: CreditTransaction) -> CreditTransactionView:
    return CreditTransactionView(
        transaction_id=row.transaction_id or 0,
        user_id=row.user_id,
        type=TransactionType(row.type),
        amount=row.amount,
        balance_before=row.balance_before,
        balance_after=row.balance_after,
        task_id=row.task_id,
        entity_type=row.entity_type,
        description=row.description,
        created_at=to_utc_aware_datetime(row.created_at),
    )
