"""CLI entrypoint for content-factory."""

from collections.abc import Callable
from pathlib import Path

import rich_click as click

from content_factory import __version__
from content_factory.controllers import (
    ContentFactoryCliController,
    CreateContentCommand,
    CreateScanCommand,
    CreditChangeCommand,
    CreditHistoryCommand,
    DbCommand,
    ListTasksCommand,
    ListUsersCommand,
    QueueListCommand,
    QuoteCommand,
    TaskCommand,
    UpgradeCommand,
    UserCommand,
    UserInitCommand,
    WorkerCommand,
)
from content_factory.errors import ContentFactoryError
from content_factory.tasks.models import CONTENT_TONES

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ContentFactoryCliController()

DB_PATH_HELP = "SQLite DB path."
TASK_STATUSES = [
    "enqueued",
    "researching",
    "research_complete",
    "generating",
    "scanning",
    "complete",
    "partial_complete",
    "failed",
]


@click.group()
@click.version_option(version=__version__, prog_name="content-factory")
def content_factory() -> None:
    """Credit-metered content generation CLI."""


@content_factory.group()
def users() -> None:
    """User account commands."""


@users.command("init")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--user-id", required=True, help="External user id from the authenticator.")
@click.option("--email", required=True, help="User email.")
@click.option("--display-name", default=None, help="Optional display name.")
@click.option("--admin/--no-admin", default=False, show_default=True, help="Grant admin role.")
def users_init(
    db_path: Path | None,
    user_id: str,
    email: str,
    display_name: str | None,
    admin: bool,
) -> None:
    """Create a user on first login (free plan plus signup credits) or refresh the profile."""

    _run(
        lambda: CONTROLLER.init_user(
            UserInitCommand(
                db_path=db_path,
                user_id=user_id,
                email=email,
                display_name=display_name,
                admin=admin,
            ),
        ),
    )


@users.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--user-id", required=True, help="User id.")
def users_show(db_path: Path | None, user_id: str) -> None:
    """Show a user with plan, credits and recent tasks."""

    _run(lambda: CONTROLLER.show_user(UserCommand(db_path=db_path, user_id=user_id)))


@content_factory.group()
def credits() -> None:
    """Credit ledger commands."""


@credits.command("balance")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--user-id", required=True, help="User id.")
def credits_balance(db_path: Path | None, user_id: str) -> None:
    """Show current credit counters."""

    _run(lambda: CONTROLLER.balance(UserCommand(db_path=db_path, user_id=user_id)))


@credits.command("history")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--user-id", required=True, help="User id.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max transactions to print.",
)
@click.option(
    "--offset",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Skip this many newest transactions.",
)
def credits_history(db_path: Path | None, user_id: str, limit: int, offset: int) -> None:
    """List ledger transactions, newest first."""

    _run(
        lambda: CONTROLLER.history(
            CreditHistoryCommand(db_path=db_path, user_id=user_id, limit=limit, offset=offset),
        ),
    )


@credits.command("grant")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--user-id", required=True, help="User receiving the bonus.")
@click.option("--amount", type=click.IntRange(min=1), required=True, help="Bonus credits.")
@click.option("--reason", required=True, help="Reason recorded in the ledger.")
@click.option("--admin", "admin", required=True, help="Admin user id or email.")
def credits_grant(
    db_path: Path | None,
    user_id: str,
    amount: int,
    reason: str,
    admin: str,
) -> None:
    """Grant bonus credits (admin only)."""

    _run(
        lambda: CONTROLLER.grant(
            CreditChangeCommand(
                db_path=db_path,
                user_id=user_id,
                amount=amount,
                reason=reason,
                admin=admin,
            ),
        ),
    )


@credits.command("adjust")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--user-id", required=True, help="User to adjust.")
@click.option("--amount", type=int, required=True, help="Signed credit change.")
@click.option("--reason", required=True, help="Reason recorded in the ledger.")
@click.option("--admin", "admin", required=True, help="Admin user id or email.")
def credits_adjust(
    db_path: Path | None,
    user_id: str,
    amount: int,
    reason: str,
    admin: str,
) -> None:
    """Apply a signed manual correction (admin only)."""

    _run(
        lambda: CONTROLLER.adjust(
            CreditChangeCommand(
                db_path=db_path,
                user_id=user_id,
                amount=amount,
                reason=reason,
                admin=admin,
            ),
        ),
    )


@credits.command("verify")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--user-id", required=True, help="User id.")
def credits_verify(db_path: Path | None, user_id: str) -> None:
    """Replay the transaction chain and compare with the live balance."""

    lines = _run(lambda: CONTROLLER.verify(UserCommand(db_path=db_path, user_id=user_id)))
    if lines and "INCONSISTENT" in lines[0]:
        raise click.ClickException("Ledger verification failed.")


@content_factory.group()
def tasks() -> None:
    """Task lifecycle commands."""


@tasks.command("create-content")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--user-id", required=True, help="Task owner.")
@click.option("--units", "total_units", type=click.IntRange(min=1), required=True)
@click.option(
    "--allocation",
    "allocations",
    multiple=True,
    help="Category split as category=count. Repeat per category.",
)
@click.option("--niche", required=True, help="Business niche for research.")
@click.option(
    "--value-proposition",
    "value_propositions",
    multiple=True,
    help="Value proposition. Can be repeated.",
)
@click.option(
    "--tone",
    type=click.Choice(list(CONTENT_TONES), case_sensitive=False),
    default="professional",
    show_default=True,
)
@click.option(
    "--target-word-count",
    type=click.IntRange(min=1),
    default=1200,
    show_default=True,
)
def tasks_create_content(  # noqa: PLR0913
    db_path: Path | None,
    user_id: str,
    total_units: int,
    allocations: tuple[str, ...],
    niche: str,
    value_propositions: tuple[str, ...],
    tone: str,
    target_word_count: int,
) -> None:
    """Reserve credits and enqueue a bulk content task."""

    _run(
        lambda: CONTROLLER.create_content(
            CreateContentCommand(
                db_path=db_path,
                user_id=user_id,
                total_units=total_units,
                allocations=allocations,
                niche=niche,
                value_propositions=value_propositions,
                tone=tone.lower(),
                target_word_count=target_word_count,
            ),
        ),
    )


@tasks.command("create-scan")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--user-id", required=True, help="Task owner.")
@click.option("--url", required=True, help="Site URL to audit.")
def tasks_create_scan(db_path: Path | None, user_id: str, url: str) -> None:
    """Reserve credits and enqueue a site scan."""

    _run(
        lambda: CONTROLLER.create_scan(
            CreateScanCommand(db_path=db_path, user_id=user_id, url=url),
        ),
    )


@tasks.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--task-id", required=True, help="Task id.")
@click.option("--user-id", default=None, help="Require the task to belong to this user.")
def tasks_status(db_path: Path | None, task_id: str, user_id: str | None) -> None:
    """Show progress, unit counts and an ETA."""

    _run(
        lambda: CONTROLLER.status(TaskCommand(db_path=db_path, task_id=task_id, user_id=user_id)),
    )


@tasks.command("results")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--task-id", required=True, help="Task id.")
@click.option("--user-id", default=None, help="Require the task to belong to this user.")
def tasks_results(db_path: Path | None, task_id: str, user_id: str | None) -> None:
    """Show unit results of a finished task."""

    _run(
        lambda: CONTROLLER.results(
            TaskCommand(db_path=db_path, task_id=task_id, user_id=user_id),
        ),
    )


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--user-id", default=None, help="Optional owner filter.")
@click.option(
    "--status",
    type=click.Choice(TASK_STATUSES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(db_path: Path | None, user_id: str | None, status: str | None, limit: int) -> None:
    """List tasks, newest first."""

    _run(
        lambda: CONTROLLER.list_tasks(
            ListTasksCommand(db_path=db_path, user_id=user_id, status=status, limit=limit),
        ),
    )


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--task-id", required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with events, queue state and ledger entries."""

    _run(lambda: CONTROLLER.inspect(TaskCommand(db_path=db_path, task_id=task_id)))


@tasks.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--task-id", required=True, help="Task id.")
@click.option("--user-id", default=None, help="Require the task to belong to this user.")
def tasks_cancel(db_path: Path | None, task_id: str, user_id: str | None) -> None:
    """Cancel an unfinished task and refund the unworked share."""

    _run(
        lambda: CONTROLLER.cancel(TaskCommand(db_path=db_path, task_id=task_id, user_id=user_id)),
    )


@tasks.command("overdue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
def tasks_overdue(db_path: Path | None) -> None:
    """List active tasks past their time budget and record alerts."""

    _run(lambda: CONTROLLER.overdue(DbCommand(db_path=db_path)))


@tasks.command("quote")
@click.option(
    "--kind",
    type=click.Choice(["content", "scan"], case_sensitive=False),
    default="content",
    show_default=True,
)
@click.option("--units", "total_units", type=click.IntRange(min=1), default=1, show_default=True)
def tasks_quote(kind: str, total_units: int) -> None:
    """Show the credit cost of a task without creating it."""

    _run(lambda: CONTROLLER.quote(QuoteCommand(kind=kind, total_units=total_units)))


@content_factory.group()
def worker() -> None:
    """Queue worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the loop exits.",
)
@click.option(
    "--fail-unit",
    "fail_units",
    type=click.IntRange(min=1),
    multiple=True,
    help="1-based unit ordinal the echo handler reports as failed. Can be repeated.",
)
@click.option(
    "--transient-failures",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Make the first N handler runs raise a retryable error.",
)
@click.option("--fatal-error", default=None, help="Make every handler run fail fatally.")
def worker_run(  # noqa: PLR0913
    db_path: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int,
    fail_units: tuple[int, ...],
    transient_failures: int,
    fatal_error: str | None,
) -> None:
    """Run the queue worker with the built-in echo handlers."""

    _run(
        lambda: CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
                fail_units=fail_units,
                transient_failures=transient_failures,
                fatal_error=fatal_error,
            ),
        ),
    )


@content_factory.group()
def queue() -> None:
    """Durable queue commands."""


@queue.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option(
    "--status",
    type=click.Choice(["queued", "running", "completed", "failed", "canceled"]),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max messages to print.",
)
def queue_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List queue messages, newest first."""

    _run(
        lambda: CONTROLLER.list_queue(
            QueueListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@queue.command("purge")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
def queue_purge(db_path: Path | None) -> None:
    """Delete finished messages past their retention window."""

    _run(lambda: CONTROLLER.purge_queue(DbCommand(db_path=db_path)))


@content_factory.group()
def admin() -> None:
    """Operator reporting commands."""


@admin.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
def admin_stats(db_path: Path | None) -> None:
    """Show platform-wide user, credit and task aggregates."""

    _run(lambda: CONTROLLER.stats(DbCommand(db_path=db_path)))


@admin.command("users")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--tier", default=None, help="Only users on this plan.")
@click.option(
    "--status",
    type=click.Choice(["active", "cancelled", "expired", "past_due"]),
    default=None,
    help="Only users with this subscription status.",
)
@click.option("--search", default=None, help="Case-insensitive email or name substring.")
@click.option("--limit", type=click.IntRange(min=1, max=500), default=50, show_default=True)
@click.option("--offset", type=click.IntRange(min=0), default=0, show_default=True)
def admin_users(  # noqa: PLR0913
    db_path: Path | None,
    tier: str | None,
    status: str | None,
    search: str | None,
    limit: int,
    offset: int,
) -> None:
    """List users, newest first."""

    _run(
        lambda: CONTROLLER.list_users(
            ListUsersCommand(
                db_path=db_path,
                tier=tier,
                status=status,
                search=search,
                limit=limit,
                offset=offset,
            ),
        ),
    )


@content_factory.group()
def subscription() -> None:
    """Subscription plan commands."""


@subscription.command("plans")
def subscription_plans() -> None:
    """List plans with their monthly credits and price."""

    _run(CONTROLLER.plans)


@subscription.command("upgrade")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--user-id", required=True, help="User id.")
@click.option(
    "--tier",
    type=click.Choice(["starter", "pro"], case_sensitive=False),
    required=True,
)
@click.option("--payment-provider", default="manual", show_default=True)
@click.option("--payment-id", required=True, help="Provider payment reference.")
@click.option(
    "--amount-cents",
    "amount_paid_cents",
    type=click.IntRange(min=0),
    required=True,
    help="Amount paid in cents.",
)
def subscription_upgrade(  # noqa: PLR0913
    db_path: Path | None,
    user_id: str,
    tier: str,
    payment_provider: str,
    payment_id: str,
    amount_paid_cents: int,
) -> None:
    """Apply a confirmed payment: switch plan and grant its credits."""

    _run(
        lambda: CONTROLLER.upgrade(
            UpgradeCommand(
                db_path=db_path,
                user_id=user_id,
                tier=tier,
                payment_provider=payment_provider,
                payment_id=payment_id,
                amount_paid_cents=amount_paid_cents,
            ),
        ),
    )


@subscription.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--user-id", required=True, help="User id.")
def subscription_cancel(db_path: Path | None, user_id: str) -> None:
    """Stop renewal; remaining credits are kept."""

    _run(
        lambda: CONTROLLER.cancel_subscription(UserCommand(db_path=db_path, user_id=user_id)),
    )


@subscription.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--user-id", required=True, help="User id.")
def subscription_status(db_path: Path | None, user_id: str) -> None:
    """Show plan, expiry and remaining credits."""

    _run(
        lambda: CONTROLLER.subscription_status(UserCommand(db_path=db_path, user_id=user_id)),
    )


def _run(call: Callable[[], list[str]]) -> list[str]:
    try:
        lines = call()
    except (ContentFactoryError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)
    return lines


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    content_factory()
