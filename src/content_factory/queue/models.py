"""Queue message states, views and the delivery policy."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from content_factory.config import QueueSettings


class QueueMessageStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


@dataclass(slots=True)
class QueueMessageView:
    """Readable queue message for the worker and CLI."""

    message_key: str
    task_kind: str
    payload: dict[str, Any]
    payload_hash: str
    status: QueueMessageStatus
    attempt: int
    max_attempts: int
    run_after: datetime
    worker_id: str | None
    heartbeat_at: datetime | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None

    @property
    def attempts_left(self) -> int:
        return max(0, self.max_attempts - self.attempt)


@dataclass(slots=True)
class StaleRecovery:
    """One running message whose lease expired."""

    message_key: str
    attempt: int
    requeued: bool
    last_error: str | None = None


@dataclass(slots=True)
class PurgeSummary:
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.completed + self.failed


@dataclass(frozen=True, slots=True)
class DeliveryPolicy:
    """Attempts, exponential backoff and retention for queue messages."""

    max_attempts: int = 3
    backoff_base_seconds: int = 5
    backoff_max_seconds: int = 300
    completed_retention: timedelta = field(default=timedelta(days=7))
    failed_retention: timedelta = field(default=timedelta(days=30))

    @classmethod
    def from_settings(cls, settings: QueueSettings) -> DeliveryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            backoff_base_seconds=settings.backoff_base_seconds,
            backoff_max_seconds=settings.backoff_max_seconds,
            completed_retention=timedelta(hours=settings.completed_retention_hours),
            failed_retention=timedelta(hours=settings.failed_retention_hours),
        )

    def retry_delay(self, retry_number: int) -> int:
        """Seconds to wait before retry ``retry_number`` (1-based)."""

        return min(
            self.backoff_max_seconds,
            self.backoff_base_seconds * (2 ** max(retry_number - 1, 0)),
        )

    def can_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts
