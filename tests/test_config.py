from __future__ import annotations

from pathlib import Path

import allure
import pytest

from content_factory.config import (
    LedgerSettings,
    LimitSettings,
    QueueSettings,
    ReconciliationSettings,
    Settings,
)
from content_factory.queue.models import DeliveryPolicy

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("Configuration"),
]


def test_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("CONTENT_FACTORY_DB_PATH", raising=False)
    monkeypatch.delenv("CONTENT_FACTORY_WORKER_ID", raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".content_factory.db")
    assert settings.queue.max_attempts == 3
    assert settings.queue.worker_id
    assert settings.reconciliation.research_budget_seconds == 60
    assert settings.limits.free_tier_max_units == 2
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CONTENT_FACTORY_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("CONTENT_FACTORY_WORKER_ID", "  worker-7 ")
    monkeypatch.setenv("CONTENT_FACTORY_QUEUE_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("CONTENT_FACTORY_QUEUE_BACKOFF_BASE_SECONDS", "2")
    monkeypatch.setenv("CONTENT_FACTORY_QUEUE_BACKOFF_MAX_SECONDS", "60")
    monkeypatch.setenv("CONTENT_FACTORY_QUEUE_COMPLETED_RETENTION_HOURS", "24")
    monkeypatch.setenv("CONTENT_FACTORY_UNIT_BUDGET_SECONDS", "15")
    monkeypatch.setenv("CONTENT_FACTORY_MAX_CONTENT_UNITS", "20")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.queue.worker_id == "worker-7"
    assert settings.reconciliation.unit_budget_seconds == 15
    assert settings.limits.max_content_units == 20
    policy = DeliveryPolicy.from_settings(settings.queue)
    assert policy.max_attempts == 5
    assert [policy.retry_delay(n) for n in (1, 2, 6)] == [2, 4, 60]
    assert policy.completed_retention.total_seconds() == 24 * 3600


def test_explicit_db_path_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CONTENT_FACTORY_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


@pytest.mark.parametrize(
    ("settings", "match"),
    [
        (Settings(sqlite_busy_timeout_ms=0), "SQLITE_BUSY_TIMEOUT_MS"),
        (Settings(ledger=LedgerSettings(lock_retry_attempts=0)), "LEDGER_LOCK_RETRIES"),
        (Settings(queue=QueueSettings(max_attempts=0)), "QUEUE_MAX_ATTEMPTS"),
        (
            Settings(queue=QueueSettings(backoff_base_seconds=10, backoff_max_seconds=5)),
            "QUEUE_BACKOFF_MAX_SECONDS",
        ),
        (Settings(queue=QueueSettings(stale_lease_seconds=-1)), "STALE_LEASE_SECONDS"),
        (
            Settings(reconciliation=ReconciliationSettings(unit_budget_seconds=0)),
            "UNIT_BUDGET_SECONDS",
        ),
        (Settings(limits=LimitSettings(max_content_units=0)), "MAX_CONTENT_UNITS"),
        (Settings(limits=LimitSettings(free_tier_max_units=0)), "FREE_TIER_MAX_UNITS"),
    ],
)
def test_validate_rejects_out_of_range_values(settings: Settings, match: str) -> None:
    with pytest.raises(ValueError, match=match):
        settings.validate()
