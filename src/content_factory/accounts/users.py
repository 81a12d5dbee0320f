"""User directory fed by the external authenticator."""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from content_factory.accounts.models import (
    SubscriptionStatus,
    UserInitResult,
    UserProfile,
    UserRole,
    UserView,
)
from content_factory.errors import UserNotFound, ValidationError
from content_factory.ledger.ledger import CreditLedger
from content_factory.ledger.models import TransactionType
from content_factory.ledger.pricing import FREE_SIGNUP_CREDITS, FREE_TIER
from content_factory.storage.common import (
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from content_factory.storage.database import Database
from content_factory.storage.sqlmodel_models import UserAccount

logger = logging.getLogger(__name__)


class UserDirectory:
    """Creates users on first login and reads them back."""

    def __init__(self, database: Database, ledger: CreditLedger) -> None:
        self.database = database
        self.ledger = ledger

    def initialize_user(self, profile: UserProfile) -> UserInitResult:
        """Create the user on first login, otherwise refresh profile fields.

        New users start on the free plan with a zero balance followed by a
        signup bonus transaction, so the ledger chain starts at zero.
        """

        if not profile.user_id.strip():
            raise ValidationError("user_id is required.", field="user_id")
        if "@" not in profile.email:
            raise ValidationError(f"Invalid email: {profile.email!r}", field="email")

        try:
            return self.database.write(lambda session: self._initialize_in(session, profile))
        except IntegrityError:
            # Concurrent first login for the same user; the other writer created it.
            pass
        try:
            return self.database.write(lambda session: self._initialize_in(session, profile))
        except IntegrityError as error:
            raise ValidationError(
                f"Email {profile.email!r} belongs to another user.",
                field="email",
            ) from error

    def _initialize_in(self, session: Session, profile: UserProfile) -> UserInitResult:
        now = to_db_datetime(utc_now())
        row = session.get(UserAccount, profile.user_id)
        if row is not None:
            row.email = profile.email
            row.display_name = profile.display_name or row.display_name
            row.avatar_url = profile.avatar_url or row.avatar_url
            row.last_login_at = now
            row.updated_at = now
            session.add(row)
            session.flush()
            return UserInitResult(user=to_user_view(row), created=False)

        user = UserAccount(
            user_id=profile.user_id,
            email=profile.email,
            display_name=profile.display_name,
            avatar_url=profile.avatar_url,
            role=profile.role.value,
            subscription_tier=FREE_TIER,
            subscription_status=SubscriptionStatus.ACTIVE.value,
            credits_remaining=0,
            credits_total=0,
            credits_used=0,
            created_at=now,
            updated_at=now,
            last_login_at=now,
        )
        session.add(user)
        session.flush()
        self.ledger.grant_in(
            session,
            user_id=profile.user_id,
            amount=FREE_SIGNUP_CREDITS,
            transaction_type=TransactionType.BONUS,
            description="Welcome bonus: free plan credits",
        )
        session.refresh(user)
        logger.info("Created user %s with %d free credits", profile.user_id, FREE_SIGNUP_CREDITS)
        return UserInitResult(user=to_user_view(user), created=True)

    def get(self, user_id: str) -> UserView:
        with self.database.session() as session:
            row = session.get(UserAccount, user_id)
            if row is None:
                raise UserNotFound(user_id)
            return to_user_view(row)

    def find_by_email(self, email: str) -> UserView | None:
        with self.database.session() as session:
            row = session.exec(select(UserAccount).where(UserAccount.email == email)).one_or_none()
            return to_user_view(row) if row is not None else None

    def is_admin(self, actor: str) -> bool:
        """True when ``actor`` (user id or email) belongs to an admin."""

        with self.database.session() as session:
            row = session.get(UserAccount, actor)
            if row is None:
                row = session.exec(
                    select(UserAccount).where(UserAccount.email == actor),
                ).one_or_none()
            return row is not None and row.role == UserRole.ADMIN.value


def to_user_view(row: UserAccount) -> UserView:
    return UserView(
        user_id=row.user_id,
        email=row.email,
        display_name=row.display_name,
        role=UserRole(row.role),
        subscription_tier=row.subscription_tier,
        subscription_status=SubscriptionStatus(row.subscription_status),
        subscription_expires_at=optional_utc(row.subscription_expires_at),
        credits_remaining=row.credits_remaining,
        credits_total=row.credits_total,
        credits_used=row.credits_used,
        created_at=to_utc_aware_datetime(row.created_at),
        last_login_at=optional_utc(row.last_login_at),
    )
