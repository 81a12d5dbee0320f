"""Runtime configuration for the ledger, queue and reconciliation stages."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class LedgerSettings:
    """Credit ledger write-contention settings."""

    lock_retry_attempts: int = 5
    lock_retry_backoff_seconds: float = 0.05


@dataclass(slots=True)
class QueueSettings:
    """Delivery policy and worker loop settings."""

    max_attempts: int = 3
    backoff_base_seconds: int = 5
    backoff_max_seconds: int = 300
    completed_retention_hours: int = 7 * 24
    failed_retention_hours: int = 30 * 24
    stale_lease_seconds: int = 600
    worker_id: str = field(default_factory=lambda: f"{socket.gethostname()}:{os.getpid()}")
    poll_interval_seconds: float = 2.0


@dataclass(slots=True)
class ReconciliationSettings:
    """Time budgets used for status estimates and overdue alerts."""

    research_budget_seconds: int = 60
    unit_budget_seconds: int = 10
    scan_budget_seconds: int = 120
    overdue_grace_seconds: int = 300


@dataclass(slots=True)
class LimitSettings:
    """Request size limits."""

    max_content_units: int = 50
    free_tier_max_units: int = 2


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".content_factory.db")
    sqlite_busy_timeout_ms: int = 5_000
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    reconciliation: ReconciliationSettings = field(default_factory=ReconciliationSettings)
    limits: LimitSettings = field(default_factory=LimitSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        worker_id = os.getenv("CONTENT_FACTORY_WORKER_ID", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("CONTENT_FACTORY_DB_PATH", ".content_factory.db")),
            sqlite_busy_timeout_ms=int(
                os.getenv("CONTENT_FACTORY_SQLITE_BUSY_TIMEOUT_MS", "5000"),
            ),
            ledger=LedgerSettings(
                lock_retry_attempts=int(os.getenv("CONTENT_FACTORY_LEDGER_LOCK_RETRIES", "5")),
                lock_retry_backoff_seconds=float(
                    os.getenv("CONTENT_FACTORY_LEDGER_LOCK_RETRY_BACKOFF_SECONDS", "0.05"),
                ),
            ),
            queue=QueueSettings(
                max_attempts=int(os.getenv("CONTENT_FACTORY_QUEUE_MAX_ATTEMPTS", "3")),
                backoff_base_seconds=int(
                    os.getenv("CONTENT_FACTORY_QUEUE_BACKOFF_BASE_SECONDS", "5"),
                ),
                backoff_max_seconds=int(
                    os.getenv("CONTENT_FACTORY_QUEUE_BACKOFF_MAX_SECONDS", "300"),
                ),
                completed_retention_hours=int(
                    os.getenv("CONTENT_FACTORY_QUEUE_COMPLETED_RETENTION_HOURS", "168"),
                ),
                failed_retention_hours=int(
                    os.getenv("CONTENT_FACTORY_QUEUE_FAILED_RETENTION_HOURS", "720"),
                ),
                stale_lease_seconds=int(
                    os.getenv("CONTENT_FACTORY_QUEUE_STALE_LEASE_SECONDS", "600"),
                ),
                worker_id=worker_id or f"{socket.gethostname()}:{os.getpid()}",
                poll_interval_seconds=float(
                    os.getenv("CONTENT_FACTORY_WORKER_POLL_INTERVAL_SECONDS", "2.0"),
                ),
            ),
            reconciliation=ReconciliationSettings(
                research_budget_seconds=int(
                    os.getenv("CONTENT_FACTORY_RESEARCH_BUDGET_SECONDS", "60"),
                ),
                unit_budget_seconds=int(os.getenv("CONTENT_FACTORY_UNIT_BUDGET_SECONDS", "10")),
                scan_budget_seconds=int(os.getenv("CONTENT_FACTORY_SCAN_BUDGET_SECONDS", "120")),
                overdue_grace_seconds=int(
                    os.getenv("CONTENT_FACTORY_OVERDUE_GRACE_SECONDS", "300"),
                ),
            ),
            limits=LimitSettings(
                max_content_units=int(os.getenv("CONTENT_FACTORY_MAX_CONTENT_UNITS", "50")),
                free_tier_max_units=int(
                    os.getenv("CONTENT_FACTORY_FREE_TIER_MAX_UNITS", "2"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("CONTENT_FACTORY_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.ledger.lock_retry_attempts < 1:
            raise ValueError("CONTENT_FACTORY_LEDGER_LOCK_RETRIES must be >= 1.")
        if self.ledger.lock_retry_backoff_seconds < 0:
            raise ValueError("CONTENT_FACTORY_LEDGER_LOCK_RETRY_BACKOFF_SECONDS must be >= 0.")
        if self.queue.max_attempts < 1:
            raise ValueError("CONTENT_FACTORY_QUEUE_MAX_ATTEMPTS must be >= 1.")
        if self.queue.backoff_base_seconds < 0:
            raise ValueError("CONTENT_FACTORY_QUEUE_BACKOFF_BASE_SECONDS must be >= 0.")
        if self.queue.backoff_max_seconds < self.queue.backoff_base_seconds:
            raise ValueError(
                "CONTENT_FACTORY_QUEUE_BACKOFF_MAX_SECONDS must be >= "
                "CONTENT_FACTORY_QUEUE_BACKOFF_BASE_SECONDS.",
            )
        if self.queue.completed_retention_hours < 0:
            raise ValueError("CONTENT_FACTORY_QUEUE_COMPLETED_RETENTION_HOURS must be >= 0.")
        if self.queue.failed_retention_hours < 0:
            raise ValueError("CONTENT_FACTORY_QUEUE_FAILED_RETENTION_HOURS must be >= 0.")
        if self.queue.stale_lease_seconds < 0:
            raise ValueError("CONTENT_FACTORY_QUEUE_STALE_LEASE_SECONDS must be >= 0.")
        if self.queue.poll_interval_seconds < 0:
            raise ValueError("CONTENT_FACTORY_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.reconciliation.unit_budget_seconds <= 0:
            raise ValueError("CONTENT_FACTORY_UNIT_BUDGET_SECONDS must be > 0.")
        if self.limits.max_content_units < 1:
            raise ValueError("CONTENT_FACTORY_MAX_CONTENT_UNITS must be >= 1.")
        if self.limits.free_tier_max_units < 1:
            raise ValueError("CONTENT_FACTORY_FREE_TIER_MAX_UNITS must be >= 1.")
