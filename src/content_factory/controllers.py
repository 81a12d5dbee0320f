"""Controllers for content-factory CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from content_factory.accounts.admin import AdminService
from content_factory.accounts.models import (
    PaymentReceipt,
    SubscriptionStatus,
    UserProfile,
    UserRole,
)
from content_factory.accounts.subscriptions import SubscriptionService
from content_factory.accounts.users import UserDirectory
from content_factory.config import Settings
from content_factory.ledger.ledger import CreditLedger
from content_factory.ledger.pricing import PLANS, content_cost, scan_cost
from content_factory.queue.adapter import QueueAdapter
from content_factory.queue.backend.echo import EchoContentHandler, EchoScanHandler
from content_factory.queue.models import DeliveryPolicy, QueueMessageStatus
from content_factory.queue.worker import QueueWorker
from content_factory.storage.database import Database
from content_factory.tasks.models import TaskKind, TaskStatus
from content_factory.tasks.reconciliation import ReconciliationEngine
from content_factory.tasks.registry import TaskRegistry
from content_factory.tasks.service import CreateContentTask, CreateScanTask, TaskService


@dataclass(slots=True)
class Services:
    """Wired components sharing one database."""

    settings: Settings
    database: Database
    ledger: CreditLedger
    registry: TaskRegistry
    queue: QueueAdapter
    engine: ReconciliationEngine
    tasks: TaskService
    users: UserDirectory
    subscriptions: SubscriptionService
    admin: AdminService


@dataclass(slots=True)
class UserInitCommand:
    db_path: Path | None
    user_id: str
    email: str
    display_name: str | None
    admin: bool


@dataclass(slots=True)
class UserCommand:
    """CLI input for commands addressing one user."""

    db_path: Path | None
    user_id: str


@dataclass(slots=True)
class CreditHistoryCommand:
    db_path: Path | None
    user_id: str
    limit: int
    offset: int


@dataclass(slots=True)
class CreditChangeCommand:
    """CLI input for admin bonus grants and signed adjustments."""

    db_path: Path | None
    user_id: str
    amount: int
    reason: str
    admin: str


@dataclass(slots=True)
class CreateContentCommand:
    """CLI input for content task creation."""

    db_path: Path | None
    user_id: str
    total_units: int
    allocations: tuple[str, ...]
    niche: str
    value_propositions: tuple[str, ...]
    tone: str
    target_word_count: int


@dataclass(slots=True)
class CreateScanCommand:
    db_path: Path | None
    user_id: str
    url: str


@dataclass(slots=True)
class TaskCommand:
    """CLI input for status/results/inspect/cancel operations."""

    db_path: Path | None
    task_id: str
    user_id: str | None = None


@dataclass(slots=True)
class ListTasksCommand:
    db_path: Path | None
    user_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class QuoteCommand:
    kind: str
    total_units: int


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution with the built-in echo handlers."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int = 1
    fail_units: tuple[int, ...] = ()
    transient_failures: int = 0
    fatal_error: str | None = None


@dataclass(slots=True)
class QueueListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class UpgradeCommand:
    db_path: Path | None
    user_id: str
    tier: str
    payment_provider: str
    payment_id: str
    amount_paid_cents: int


@dataclass(slots=True)
class DbCommand:
    db_path: Path | None


@dataclass(slots=True)
class ListUsersCommand:
    db_path: Path | None
    tier: str | None
    status: str | None
    search: str | None
    limit: int
    offset: int


class ContentFactoryCliController:
    """Coordinates account, credit, task and worker CLI operations."""

    def init_user(self, command: UserInitCommand) -> list[str]:
        with _services(Settings.from_env(db_path=command.db_path)) as services:
            result = services.users.initialize_user(
                UserProfile(
                    user_id=command.user_id,
                    email=command.email,
                    display_name=command.display_name,
                    role=UserRole.ADMIN if command.admin else UserRole.USER,
                ),
            )
        user = result.user
        verb = "created" if result.created else "updated"
        return [
            f"User {verb}: user_id={user.user_id} email={user.email} role={user.role.value} "
            f"tier={user.subscription_tier} credits={user.credits_remaining}",
        ]

    def show_user(self, command: UserCommand) -> list[str]:
        with _services(Settings.from_env(db_path=command.db_path)) as services:
            details = services.admin.user_details(command.user_id)

        user = details.user
        lines = [
            f"User: {user.user_id} <{user.email}> role={user.role.value}",
            f"Plan: {user.subscription_tier} ({user.subscription_status.value})"
            + (
                f" expires={user.subscription_expires_at.isoformat()}"
                if user.subscription_expires_at
                else ""
            ),
            f"Credits: remaining={user.credits_remaining} total={user.credits_total} "
            f"used={user.credits_used}",
            f"Recent tasks: {len(details.recent_tasks)}",
        ]
        lines.extend(
            f"  - {task.task_id} {task.kind.value} {task.status.value} progress={task.progress}"
            for task in details.recent_tasks
        )
        return lines

    def balance(self, command: UserCommand) -> list[str]:
        with _services(Settings.from_env(db_path=command.db_path)) as services:
            balance = services.ledger.balance(command.user_id)
        return [
            f"Balance: user_id={balance.user_id} remaining={balance.credits_remaining} "
            f"total={balance.credits_total} used={balance.credits_used} "
            f"tier={balance.subscription_tier}",
        ]

    def history(self, command: CreditHistoryCommand) -> list[str]:
        with _services(Settings.from_env(db_path=command.db_path)) as services:
            transactions = services.ledger.history(
                command.user_id,
                limit=command.limit,
                offset=command.offset,
            )
        if not transactions:
            return ["No transactions."]
        return [
            f"{item.created_at.isoformat()} #{item.transaction_id} {item.type.value:<8} "
            f"{item.delta:+d} ({item.balance_before} -> {item.balance_after}) "
            f"task={item.task_id or '-'} {item.description}"
            for item in transactions
        ]

    def grant(self, command: CreditChangeCommand) -> list[str]:
        with _services(Settings.from_env(db_path=command.db_path)) as services:
            balance = services.admin.grant_bonus(
                command.user_id,
                command.amount,
                command.reason,
                command.admin,
            )
        return [f"Granted {command.amount} credits to {command.user_id}; balance={balance}"]

    def adjust(self, command: CreditChangeCommand) -> list[str]:
        with _services(Settings.from_env(db_path=command.db_path)) as services:
            balance = services.admin.adjust_credits(
                command.user_id,
                command.amount,
                command.reason,
                command.admin,
            )
        return [f"Adjusted {command.user_id} by {command.amount:+d}; balance={balance}"]

    def verify(self, command: UserCommand) -> list[str]:
        with _services(Settings.from_env(db_path=command.db_path)) as services:
            audit = services.ledger.verify_ledger(command.user_id)
        lines = [
            f"Ledger {'OK' if audit.ok else 'INCONSISTENT'}: user_id={audit.user_id} "
            f"transactions={audit.transaction_count} replayed={audit.replayed_balance} "
            f"remaining={audit.credits_remaining}",
        ]
        lines.extend(f"  - {problem}" for problem in audit.problems)
        return lines

    def create_content(self, command: CreateContentCommand) -> list[str]:
        allocations = _parse_allocations(command.allocations)
        with _services(Settings.from_env(db_path=command.db_path)) as services:
            created = services.tasks.create_content_task(
                CreateContentTask(
                    user_id=command.user_id,
                    total_units=command.total_units,
                    allocations=allocations,
                    niche=command.niche,
                    value_propositions=command.value_propositions,
                    tone=command.tone,
                    target_word_count=command.target_word_count,
                ),
            )
        return [
            f"Task enqueued: task_id={created.task_id} kind={created.kind.value} "
            f"status={created.status.value} cost={created.credits_cost} "
            f"balance={created.balance_after}",
        ]

    def create_scan(self, command: CreateScanCommand) -> list[str]:
        with _services(Settings.from_env(db_path=command.db_path)) as services:
            created = services.tasks.create_scan_task(
                CreateScanTask(user_id=command.user_id, url=command.url),
            )
        return [
            f"Task enqueued: task_id={created.task_id} kind={created.kind.value} "
            f"status={created.status.value} cost={created.credits_cost} "
            f"balance={created.balance_after}",
        ]

    def status(self, command: TaskCommand) -> list[str]:
        with _services(Settings.from_env(db_path=command.db_path)) as services:
            status = services.tasks.status(command.task_id, user_id=command.user_id)
        lines = [
            f"Task {status.task_id}: kind={status.kind.value} status={status.status.value} "
            f"progress={status.progress}%",
            f"Units: completed={status.units_completed} failed={status.units_failed} "
            f"expected={status.units_expected} eta={status.estimated_seconds_remaining}s",
            f"Credits: cost={status.credits_cost} refunded={status.credits_refunded}",
        ]
        if status.error_message:
            lines.append(f"Error: {status.error_message}")
        return lines

    def results(self, command: TaskCommand) -> list[str]:
        with _services(Settings.from_env(db_path=command.db_path)) as services:
            results = services.tasks.results(command.task_id, user_id=command.user_id)
        stats = results.stats
        lines = [
            f"Results for {results.task_id} ({results.status.value}): "
            f"units={stats.total_units} completed={stats.completed_units} "
            f"failed={stats.total_failures} refunded={stats.credits_refunded}",
            f"Size: total={stats.total_size} average={stats.average_size} "
            f"avg_generation_ms={stats.average_generation_time_ms}",
        ]
        for unit in results.units:
            detail = (
                json.dumps(unit.result, ensure_ascii=False, sort_keys=True)
                if unit.result
                else unit.error_message or ""
            )
            lines.append(
                f"  - {unit.unit_id} [{unit.category or '-'}] {unit.status.value} {detail}",
            )
        return lines

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        status = TaskStatus(command.status.upper()) if command.status else None
        with _services(Settings.from_env(db_path=command.db_path)) as services:
            tasks = services.registry.list_tasks(
                user_id=command.user_id,
                status=status,
                limit=command.limit,
            )
        if not tasks:
            return ["No tasks."]
        return [
            f"{task.task_id} user={task.user_id} kind={task.kind.value} "
            f"status={task.status.value} progress={task.progress} "
            f"units={task.units_completed}/{task.units_failed}/{task.units_expected} "
            f"cost={task.credits_cost} refunded={task.credits_refunded}"
            for task in tasks
        ]

    def inspect(self, command: TaskCommand) -> list[str]:
        with _services(Settings.from_env(db_path=command.db_path)) as services:
            details = services.registry.details(command.task_id)
            transactions = services.ledger.task_transactions(command.task_id)
            message = services.queue.get(command.task_id)

        task = details.task
        lines = [
            f"Task {task.task_id}: user={task.user_id} kind={task.kind.value} "
            f"status={task.status.value} progress={task.progress}",
            f"Params: {json.dumps(task.params, ensure_ascii=False, sort_keys=True)}",
        ]
        if task.failure_class is not None:
            lines.append(f"Failure: {task.failure_class.value} {task.error_message or ''}")
        if message is not None:
            lines.append(
                f"Queue: status={message.status.value} attempt={message.attempt}/"
                f"{message.max_attempts} last_error={message.last_error or '-'}",
            )
        lines.append("Events:")
        lines.extend(
            f"  - {event.created_at.isoformat()} {event.event_type} "
            f"{event.status_from.value if event.status_from else '-'} -> "
            f"{event.status_to.value if event.status_to else '-'}"
            for event in details.events
        )
        lines.append("Transactions:")
        lines.extend(
            f"  - #{item.transaction_id} {item.type.value} {item.delta:+d}"
            for item in transactions
        )
        return lines

    def cancel(self, command: TaskCommand) -> list[str]:
        with _services(Settings.from_env(db_path=command.db_path)) as services:
            result = services.tasks.cancel(command.task_id, user_id=command.user_id)
        return [
            f"Task {result.task_id} canceled: status={result.status.value} "
            f"refunded={result.refunded}",
        ]

    def overdue(self, command: DbCommand) -> list[str]:
        with _services(Settings.from_env(db_path=command.db_path)) as services:
            overdue = services.engine.find_overdue()
        if not overdue:
            return ["No overdue tasks."]
        return [
            f"{item.task_id} status={item.status.value} elapsed={item.elapsed_seconds}s "
            f"budget={item.budget_seconds}s{' (new alert)' if item.newly_alerted else ''}"
            for item in overdue
        ]

    def quote(self, command: QuoteCommand) -> list[str]:
        kind = TaskKind(command.kind.lower())
        cost = scan_cost() if kind == TaskKind.SCAN else content_cost(command.total_units)
        units = 1 if kind == TaskKind.SCAN else command.total_units
        return [f"Quote: kind={kind.value} units={units} credits={cost}"]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            worker = QueueWorker(
                queue=services.queue,
                registry=services.registry,
                engine=services.engine,
                handlers={
                    TaskKind.CONTENT: EchoContentHandler(
                        failing_units=frozenset(command.fail_units),
                        transient_failures=command.transient_failures,
                        fatal_error=command.fatal_error,
                    ),
                    TaskKind.SCAN: EchoScanHandler(),
                },
                worker_id=settings.queue.worker_id,
                poll_interval_seconds=settings.queue.poll_interval_seconds,
                stale_lease_seconds=settings.queue.stale_lease_seconds,
            )
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"partial={summary.partial} failed={summary.failed} retried={summary.retried} "
            f"skipped={summary.skipped} idle_polls={summary.idle_polls}",
        ]

    def list_queue(self, command: QueueListCommand) -> list[str]:
        status = QueueMessageStatus(command.status.lower()) if command.status else None
        with _services(Settings.from_env(db_path=command.db_path)) as services:
            messages = services.queue.list_messages(status=status, limit=command.limit)
        if not messages:
            return ["Queue is empty."]
        return [
            f"{message.message_key} kind={message.task_kind} status={message.status.value} "
            f"attempt={message.attempt}/{message.max_attempts} "
            f"run_after={message.run_after.isoformat()}"
            for message in messages
        ]

    def purge_queue(self, command: DbCommand) -> list[str]:
        with _services(Settings.from_env(db_path=command.db_path)) as services:
            summary = services.queue.purge_expired()
        return [
            f"Purged {summary.total} messages: completed={summary.completed} "
            f"failed={summary.failed}",
        ]

    def stats(self, command: DbCommand) -> list[str]:
        with _services(Settings.from_env(db_path=command.db_path)) as services:
            stats = services.admin.platform_stats()
        return [
            f"Users: total={stats.total_users} {_format_counts(stats.users_by_tier)}",
            f"Credits: allocated={stats.credits_allocated} used={stats.credits_used} "
            f"remaining={stats.credits_remaining} refunded={stats.credits_refunded}",
            f"Active paid subscriptions: {stats.active_subscription_total} "
            f"{_format_counts(stats.active_subscriptions)}",
            f"Tasks: {_format_counts(stats.tasks_by_status)}",
            f"Transactions: {_format_counts(stats.transactions_by_type)}",
        ]

    def list_users(self, command: ListUsersCommand) -> list[str]:
        status = SubscriptionStatus(command.status.lower()) if command.status else None
        with _services(Settings.from_env(db_path=command.db_path)) as services:
            page = services.admin.list_users(
                tier=command.tier,
                status=status,
                search=command.search,
                limit=command.limit,
                offset=command.offset,
            )
        lines = [
            f"{user.user_id} email={user.email} role={user.role.value} "
            f"tier={user.subscription_tier} status={user.subscription_status.value} "
            f"credits={user.credits_remaining}/{user.credits_total}"
            for user in page.users
        ]
        shown_to = page.offset + len(page.users)
        lines.append(f"Users {page.offset + 1 if page.users else 0}-{shown_to} of {page.total}")
        return lines

    def plans(self) -> list[str]:
        return [
            f"{plan.name:<8} {plan.label:<8} credits={plan.credits} "
            f"price=${plan.price_cents / 100:.2f}/month"
            for plan in PLANS.values()
        ]

    def upgrade(self, command: UpgradeCommand) -> list[str]:
        with _services(Settings.from_env(db_path=command.db_path)) as services:
            subscription = services.subscriptions.upgrade(
                command.user_id,
                PaymentReceipt(
                    tier=command.tier.lower(),
                    payment_provider=command.payment_provider,
                    payment_id=command.payment_id,
                    amount_paid_cents=command.amount_paid_cents,
                ),
            )
            balance = services.ledger.balance(command.user_id)
        return [
            f"Subscription active: user_id={subscription.user_id} tier={subscription.tier} "
            f"expires={subscription.expires_at.isoformat()} "
            f"credits_granted={subscription.credits_granted} "
            f"balance={balance.credits_remaining}",
        ]

    def cancel_subscription(self, command: UserCommand) -> list[str]:
        with _services(Settings.from_env(db_path=command.db_path)) as services:
            status = services.subscriptions.cancel(command.user_id)
        return [
            f"Subscription cancelled: user_id={status.user_id} tier={status.tier} "
            f"credits_remaining={status.credits_remaining}",
        ]

    def subscription_status(self, command: UserCommand) -> list[str]:
        with _services(Settings.from_env(db_path=command.db_path)) as services:
            status = services.subscriptions.status(command.user_id)
        expires = status.expires_at.isoformat() if status.expires_at else "-"
        days = status.days_remaining if status.days_remaining is not None else "-"
        return [
            f"Subscription: user_id={status.user_id} tier={status.tier} "
            f"status={status.status.value} expires={expires} days_remaining={days} "
            f"credits_remaining={status.credits_remaining}",
        ]


def build_services(settings: Settings) -> Services:
    """Wire every component over one ``Database``; the caller owns ``close()``."""

    settings.validate()
    database = Database(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        lock_retry_attempts=settings.ledger.lock_retry_attempts,
        lock_retry_backoff_seconds=settings.ledger.lock_retry_backoff_seconds,
    )
    ledger = CreditLedger(database)
    registry = TaskRegistry(database)
    queue = QueueAdapter(database, policy=DeliveryPolicy.from_settings(settings.queue))
    engine = ReconciliationEngine(
        database=database,
        registry=registry,
        ledger=ledger,
        settings=settings.reconciliation,
    )
    users = UserDirectory(database, ledger)
    return Services(
        settings=settings,
        database=database,
        ledger=ledger,
        registry=registry,
        queue=queue,
        engine=engine,
        tasks=TaskService(
            database=database,
            ledger=ledger,
            registry=registry,
            queue=queue,
            engine=engine,
            limits=settings.limits,
            reconciliation=settings.reconciliation,
        ),
        users=users,
        subscriptions=SubscriptionService(database, ledger),
        admin=AdminService(database=database, ledger=ledger, users=users, registry=registry),
    )


@contextmanager
def _services(settings: Settings) -> Iterator[Services]:
    services = build_services(settings)
    services.database.init_schema()
    try:
        yield services
    finally:
        services.database.close()


def _parse_allocations(raw: tuple[str, ...]) -> dict[str, int]:
    """Parse repeated ``category=count`` options."""

    allocations: dict[str, int] = {}
    for item in raw:
        category, separator, count = item.partition("=")
        if not separator:
            raise ValueError(f"Allocation must look like category=count, got {item!r}.")
        try:
            allocations[category.strip().lower()] = int(count)
        except ValueError as error:
            raise ValueError(f"Allocation count must be an integer, got {count!r}.") from error
    return allocations


def _format_counts(counts: dict[str, int]) -> str:
    if not counts:
        return "-"
    return " ".join(f"{key}={value}" for key, value in sorted(counts.items()))
