from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import allure
import pytest
from sqlalchemy import update as sa_update
from sqlmodel import col

from content_factory.errors import DuplicateMessageConflict
from content_factory.queue.adapter import QueueAdapter
from content_factory.queue.models import DeliveryPolicy, QueueMessageStatus
from content_factory.storage.common import to_db_datetime, utc_now
from content_factory.storage.database import Database
from content_factory.storage.sqlmodel_models import QueueMessage

pytestmark = [
    allure.epic("Durable Queue"),
    allure.feature("Delivery, Retry & Retention"),
]


@pytest.fixture()
def database(tmp_path: Path):
    db = Database(tmp_path / "queue.db")
    db.init_schema()
    yield db
    db.close()


def _age_heartbeat(database: Database, message_key: str, *, seconds: int) -> None:
    past = to_db_datetime(utc_now() - timedelta(seconds=seconds))
    database.write(
        lambda session: session.exec(
            sa_update(QueueMessage)
            .where(col(QueueMessage.message_key) == message_key)
            .values(heartbeat_at=past),
        ),
    )


def test_enqueue_is_idempotent_per_key(database: Database) -> None:
    queue = QueueAdapter(database)

    first = queue.enqueue("task-1", {"task_id": "task-1", "units": 3}, kind="content")
    again = queue.enqueue("task-1", {"units": 3, "task_id": "task-1"}, kind="content")

    assert first.message_key == again.message_key == "task-1"
    assert first.payload_hash == again.payload_hash
    assert len(queue.list_messages()) == 1
    with pytest.raises(DuplicateMessageConflict):
        queue.enqueue("task-1", {"task_id": "task-1", "units": 4}, kind="content")


def test_claim_marks_message_running_once(database: Database) -> None:
    queue = QueueAdapter(database)
    queue.enqueue("task-1", {"task_id": "task-1"}, kind="content")

    claimed = queue.claim_next(worker_id="worker-a")

    assert claimed is not None
    assert claimed.status == QueueMessageStatus.RUNNING
    assert claimed.attempt == 1
    assert claimed.worker_id == "worker-a"
    assert claimed.payload == {"task_id": "task-1"}
    assert queue.claim_next(worker_id="worker-b") is None


def test_delayed_messages_wait_for_run_after(database: Database) -> None:
    queue = QueueAdapter(database)
    queue.enqueue(
        "task-later",
        {"task_id": "task-later"},
        kind="scan",
        run_after=utc_now() + timedelta(minutes=5),
    )

    assert queue.claim_next(worker_id="worker-a") is None


def test_retry_requeues_with_backoff_and_keeps_attempt(database: Database) -> None:
    queue = QueueAdapter(database)
    queue.enqueue("task-1", {"task_id": "task-1"}, kind="content")
    queue.claim_next(worker_id="worker-a")

    assert queue.schedule_retry("task-1", delay_seconds=60, error="TimeoutError: slow")

    message = queue.get("task-1")
    assert message is not None
    assert message.status == QueueMessageStatus.QUEUED
    assert message.attempt == 1
    assert message.attempts_left == 2
    assert message.last_error == "TimeoutError: slow"
    assert message.run_after > utc_now() + timedelta(seconds=50)
    assert queue.claim_next(worker_id="worker-a") is None


def test_backoff_policy_is_exponential_and_capped() -> None:
    policy = DeliveryPolicy(max_attempts=3, backoff_base_seconds=5, backoff_max_seconds=300)

    assert [policy.retry_delay(n) for n in (1, 2, 3, 7)] == [5, 10, 20, 300]
    assert policy.can_retry(2)
    assert not policy.can_retry(3)


def test_ack_and_fail_are_guarded_by_status(database: Database) -> None:
    queue = QueueAdapter(database)
    queue.enqueue("task-1", {"task_id": "task-1"}, kind="content")

    assert not queue.ack("task-1")
    queue.claim_next(worker_id="worker-a")
    assert queue.ack("task-1")
    assert not queue.fail("task-1", error="too late")
    assert not queue.cancel("task-1")

    message = queue.get("task-1")
    assert message is not None
    assert message.status == QueueMessageStatus.COMPLETED
    assert message.finished_at is not None


def test_stale_lease_is_requeued_while_attempts_remain(database: Database) -> None:
    queue = QueueAdapter(database)
    queue.enqueue("task-1", {"task_id": "task-1"}, kind="content")
    queue.claim_next(worker_id="worker-a")
    _age_heartbeat(database, "task-1", seconds=900)

    recovered = queue.recover_stale(stale_after=timedelta(seconds=600))

    assert [(item.message_key, item.requeued) for item in recovered] == [("task-1", True)]
    reclaimed = queue.claim_next(worker_id="worker-b")
    assert reclaimed is not None
    assert reclaimed.attempt == 2
    assert reclaimed.last_error == "Worker lease expired after 600s"


def test_stale_lease_on_last_attempt_fails_message(database: Database) -> None:
    queue = QueueAdapter(database, policy=DeliveryPolicy(max_attempts=1))
    queue.enqueue("task-1", {"task_id": "task-1"}, kind="content")
    queue.claim_next(worker_id="worker-a")
    _age_heartbeat(database, "task-1", seconds=900)

    recovered = queue.recover_stale(stale_after=timedelta(seconds=600))

    assert [(item.message_key, item.requeued) for item in recovered] == [("task-1", False)]
    message = queue.get("task-1")
    assert message is not None
    assert message.status == QueueMessageStatus.FAILED


def test_fresh_heartbeat_is_not_recovered(database: Database) -> None:
    queue = QueueAdapter(database)
    queue.enqueue("task-1", {"task_id": "task-1"}, kind="content")
    queue.claim_next(worker_id="worker-a")

    assert queue.heartbeat("task-1")
    assert queue.recover_stale(stale_after=timedelta(seconds=600)) == []


def test_purge_respects_retention_per_outcome(database: Database) -> None:
    queue = QueueAdapter(database)
    for key in ("done", "broken"):
        queue.enqueue(key, {"task_id": key}, kind="content")
    queue.claim_next(worker_id="worker-a")
    queue.claim_next(worker_id="worker-a")
    queue.ack("done")
    queue.fail("broken", error="fatal")

    assert queue.purge_expired().total == 0
    week_later = queue.purge_expired(now=utc_now() + timedelta(days=8))
    assert (week_later.completed, week_later.failed) == (1, 0)
    month_later = queue.purge_expired(now=utc_now() + timedelta(days=31))
    assert (month_later.completed, month_later.failed) == (0, 1)
    assert queue.list_messages() == []
