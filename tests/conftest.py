"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from content_factory.accounts.models import UserProfile, UserRole
from content_factory.config import QueueSettings, Settings
from content_factory.controllers import Services, build_services
from content_factory.ledger.models import TransactionType
from content_factory.ledger.pricing import FREE_SIGNUP_CREDITS


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings with zero retry backoff so retried messages are claimable at once."""

    return Settings(
        db_path=tmp_path / "content_factory.db",
        queue=QueueSettings(
            backoff_base_seconds=0,
            backoff_max_seconds=0,
            worker_id="test-worker",
            poll_interval_seconds=0.0,
        ),
    )


@pytest.fixture()
def services(settings: Settings) -> Iterator[Services]:
    wired = build_services(settings)
    wired.database.init_schema()
    yield wired
    wired.database.close()


@pytest.fixture()
def make_user(services: Services) -> Callable[..., str]:
    """Create a user through first login, then move the balance to ``credits``."""

    def _make_user(
        user_id: str = "user-1",
        *,
        credits: int = FREE_SIGNUP_CREDITS,
        role: UserRole = UserRole.USER,
        email: str | None = None,
    ) -> str:
        services.users.initialize_user(
            UserProfile(
                user_id=user_id,
                email=email or f"{user_id}@example.com",
                role=role,
            ),
        )
        if credits > FREE_SIGNUP_CREDITS:
            services.ledger.grant(
                user_id,
                credits - FREE_SIGNUP_CREDITS,
                TransactionType.BONUS,
                "Test top-up",
            )
        elif credits < FREE_SIGNUP_CREDITS:
            services.ledger.debit(
                user_id,
                FREE_SIGNUP_CREDITS - credits,
                TransactionType.MANUAL,
                "Test drain",
            )
        return user_id

    return _make_user
