"""Thread Dispatch - operator CLI.

The chat adapter and the execution bridge run elsewhere; these commands
inspect and edit the durable state they share (schedules, queue, recovery
ledger and daily spend).
"""

import logging
import os
import sys
from pathlib import Path

import click
import sentry_sdk
import structlog
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from . import __version__
from .budget import BudgetLedger, BudgetPeriod
from .config import DispatchConfig, is_allowed_cwd, load_config, validate_config
from .daily_summary import DailySummaryStore
from .exceptions import ScheduleError
from .models import ScheduleType, to_iso
from .queue import ProjectQueue
from .recovery import RecoveryLedger
from .schedules import ScheduleRegistry, create_schedule
from .sessions import SessionRegistry


def _init_sentry() -> bool:
    """Initialize Sentry for error tracking."""
    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=f"thread-dispatch@{__version__}",
        traces_sample_rate=1.0 if environment == "development" else 0.2,
        integrations=[
            AsyncioIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        send_default_pii=False,
        attach_stacktrace=True,
        max_breadcrumbs=50,
        server_name="thread-dispatch",
        ignore_errors=[
            "asyncio.CancelledError",
            "KeyboardInterrupt",
            "SystemExit",
        ],
    )

    sentry_sdk.set_tag("service", "thread-dispatch")
    return True


_sentry_enabled = _init_sentry()


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog for console output at the given level."""
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def _ok(message: str) -> None:
    click.echo(click.style("OK", fg="green") + f" {message}")


def _fail(message: str) -> None:
    click.echo(click.style("Error: ", fg="red") + message, err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="thread-dispatch")
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, path_type=Path),
    help="Path to config file",
)
@click.pass_context
def cli(ctx: click.Context, config_file: Path | None) -> None:
    """Thread Dispatch - admission control for chat-driven agent sessions.

    Configuration is loaded from (in priority order):
    1. Environment variables (DISPATCH_*)
    2. Config file (~/.config/thread-dispatch/config.toml or --config)
    """
    config = load_config(config_file)
    configure_logging(config.log_level)
    ctx.obj = config


@cli.command()
@click.pass_obj
def check(config: DispatchConfig) -> None:
    """Validate the configuration."""
    click.echo(click.style("Configuration Check", fg="cyan", bold=True))
    click.echo()
    click.echo(click.style("  Allowed users: ", bold=True) + str(len(config.allowed_user_ids)))
    click.echo(click.style("  Projects: ", bold=True) + str(len(config.projects)))
    for project in config.projects:
        click.echo(f"    {project.name}: {project.path}")
    click.echo(click.style("  Default model: ", bold=True) + config.default_model)
    click.echo(click.style("  Permission mode: ", bold=True) + config.default_permission_mode)
    click.echo(click.style("  Data directory: ", bold=True) + str(config.get_data_dir()))
    click.echo()

    errors = validate_config(config)
    if errors:
        for error in errors:
            click.echo(click.style("  - ", fg="red") + error)
        click.echo()
        click.echo(click.style("Configuration is invalid.", fg="red", bold=True))
        sys.exit(1)

    click.echo(click.style("Configuration is valid!", fg="green", bold=True))


@cli.command()
@click.pass_obj
def status(config: DispatchConfig) -> None:
    """Show active sessions, queued requests and budget usage."""
    data_dir = config.get_data_dir()

    recovery = RecoveryLedger(data_dir)
    click.echo(click.style("Active Sessions", fg="cyan", bold=True))
    entries = recovery.recoverable_sessions()
    if not entries:
        click.echo("  (none)")
    for entry in entries:
        click.echo(f"  {entry.thread_id} [{entry.status.value}] {entry.cwd}")
    click.echo()

    queue = ProjectQueue(SessionRegistry(), data_dir)
    click.echo(click.style("Queued Requests", fg="cyan", bold=True))
    queues = queue.all_queues()
    if not queues:
        click.echo("  (none)")
    for cwd, queued in queues.items():
        click.echo(f"  {cwd}: {len(queued)}")
        for position, item in enumerate(queued, start=1):
            click.echo(f"    {position}. {item.thread_id} (queued {to_iso(item.queued_at)})")
    click.echo()

    ledger = BudgetLedger(DailySummaryStore(data_dir), config.budget)
    click.echo(click.style("Budget", fg="cyan", bold=True))
    spend = {
        BudgetPeriod.DAILY: (ledger.daily_spend(), config.budget.daily_usd),
        BudgetPeriod.WEEKLY: (ledger.weekly_spend(), config.budget.weekly_usd),
        BudgetPeriod.MONTHLY: (ledger.monthly_spend(), config.budget.monthly_usd),
    }
    for period, (spent, limit) in spend.items():
        limit_display = f"${limit:.2f}" if limit > 0 else "unlimited"
        click.echo(f"  {period.value}: ${spent:.2f} / {limit_display}")

    for warning in ledger.warnings():
        click.echo(
            click.style("  Warning: ", fg="yellow")
            + f"{warning.period.value} spend at {warning.percentage:.0f}% of limit"
        )
    exceeded = ledger.check_budget()
    if exceeded:
        click.echo(
            click.style("  Blocked: ", fg="red", bold=True)
            + f"{exceeded.period.value} limit of ${exceeded.limit:.2f} reached"
        )


# =============================================================================
# SCHEDULE COMMANDS
# =============================================================================


@cli.group()
def schedules() -> None:
    """Manage scheduled prompts."""
    pass


@schedules.command("list")
@click.pass_obj
def schedules_list(config: DispatchConfig) -> None:
    """List all scheduled prompts."""
    registry = ScheduleRegistry(config.get_data_dir())
    items = registry.list()

    if not items:
        click.echo(click.style("No schedules configured.", fg="yellow"))
        click.echo("\nAdd one with: thread-dispatch schedules add <name> ...")
        return

    click.echo(click.style("Scheduled Prompts", fg="cyan", bold=True))
    click.echo()
    for schedule in items:
        state = click.style("enabled", fg="green") if schedule.enabled else "disabled"
        click.echo(f"  {click.style(schedule.name, bold=True)} [{state}]")
        recurrence = schedule.schedule_type.value
        if schedule.schedule_type == ScheduleType.WEEKLY:
            recurrence += f" (day {schedule.day_of_week})"
        elif schedule.schedule_type == ScheduleType.ONCE:
            recurrence += f" ({schedule.once_date})"
        click.echo(f"    When: {recurrence} at {schedule.time} UTC")
        click.echo(f"    Project: {schedule.cwd}")
        next_run = to_iso(schedule.next_run_at) if schedule.next_run_at else "-"
        click.echo(f"    Next run: {next_run}")
        click.echo()


@schedules.command("add")
@click.argument("name")
@click.option("--prompt", "prompt_text", required=True, help="Prompt to run")
@click.option("--cwd", default=None, help="Project path (defaults to the default project)")
@click.option("--channel", "channel_id", required=True, help="Channel to open threads in")
@click.option("--created-by", required=True, help="User identifier of the owner")
@click.option(
    "--type",
    "schedule_type",
    type=click.Choice([t.value for t in ScheduleType]),
    default=ScheduleType.DAILY.value,
    help="Recurrence",
)
@click.option("--time", "run_time", required=True, help="Time of day, HH:MM in UTC")
@click.option("--day", "day_of_week", type=click.IntRange(0, 6), help="Weekly: 0=Sunday")
@click.option("--date", "once_date", help="Once: YYYY-MM-DD")
@click.option("--model", default=None, help="Model override")
@click.pass_obj
def schedules_add(
    config: DispatchConfig,
    name: str,
    prompt_text: str,
    cwd: str | None,
    channel_id: str,
    created_by: str,
    schedule_type: str,
    run_time: str,
    day_of_week: int | None,
    once_date: str | None,
    model: str | None,
) -> None:
    """Add a scheduled prompt called NAME."""
    cwd = cwd or config.get_default_cwd()
    if not cwd or not is_allowed_cwd(cwd, config.projects):
        _fail(f'Project path "{cwd}" is not one of the configured projects')

    try:
        schedule = create_schedule(
            name=name,
            prompt_text=prompt_text,
            cwd=cwd,
            channel_id=channel_id,
            created_by=created_by,
            schedule_type=schedule_type,
            time=run_time,
            day_of_week=day_of_week,
            once_date=once_date,
            model=model,
        )
    except ScheduleError as e:
        _fail(str(e))

    registry = ScheduleRegistry(config.get_data_dir())
    if not registry.add(schedule):
        _fail(f'Could not add schedule "{name}" (name already used or save failed)')
    _ok(f"Added schedule {name}, next run {to_iso(schedule.next_run_at)}")


@schedules.command("remove")
@click.argument("name")
@click.pass_obj
def schedules_remove(config: DispatchConfig, name: str) -> None:
    """Remove the scheduled prompt called NAME."""
    registry = ScheduleRegistry(config.get_data_dir())
    if not registry.remove(name):
        _fail(f'Schedule "{name}" not found')
    _ok(f"Removed schedule {name}")


@schedules.command("toggle")
@click.argument("name")
@click.pass_obj
def schedules_toggle(config: DispatchConfig, name: str) -> None:
    """Enable or disable the scheduled prompt called NAME."""
    registry = ScheduleRegistry(config.get_data_dir())
    enabled = registry.toggle(name)
    if enabled is None:
        _fail(f'Schedule "{name}" not found')
    _ok(f"Schedule {name} is now {'enabled' if enabled else 'disabled'}")


# =============================================================================
# RECOVERY COMMANDS
# =============================================================================


@cli.group()
def recovery() -> None:
    """Inspect sessions left behind by an unclean stop."""
    pass


@recovery.command("list")
@click.pass_obj
def recovery_list(config: DispatchConfig) -> None:
    """List recoverable sessions."""
    ledger = RecoveryLedger(config.get_data_dir())
    entries = ledger.recoverable_sessions()

    if not entries:
        click.echo(click.style("No recoverable sessions.", fg="green"))
        return

    click.echo(click.style("Recoverable Sessions", fg="cyan", bold=True))
    click.echo()
    for entry in entries:
        click.echo(f"  {click.style(entry.thread_id, bold=True)} [{entry.status.value}]")
        click.echo(f"    User: {entry.user_id}")
        click.echo(f"    Project: {entry.cwd}")
        click.echo(f"    Prompt: {entry.prompt_text[:80]}")
        click.echo(f"    Last activity: {to_iso(entry.last_activity_at)}")
        click.echo()


@recovery.command("clear")
@click.option("-y", "--yes", is_flag=True, help="Clear without prompting")
@click.pass_obj
def recovery_clear(config: DispatchConfig, yes: bool) -> None:
    """Forget every recoverable session."""
    ledger = RecoveryLedger(config.get_data_dir())
    count = ledger.count()
    if count == 0:
        click.echo("Nothing to clear.")
        return
    if not yes and not click.confirm(f"Clear {count} recoverable session(s)?", default=False):
        click.echo("Cancelled.")
        return
    ledger.clear_all()
    _ok(f"Cleared {count} recoverable session(s)")


if __name__ == "__main__":
    cli()
