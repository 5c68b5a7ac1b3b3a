"""Operator CLI for studio-billing using Typer."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Annotated

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from studio_billing.config import get_settings
from studio_billing.constants import GRACE_PERIODS_CRON, PENALTIES_CRON, REMINDERS_CRON
from studio_billing.container import Services, build_services
from studio_billing.scheduler_tasks import (
    BatchResult,
    apply_penalties,
    check_grace_periods,
    check_payment_reminders,
)
from studio_billing.utils import setup_logging

# Load .env from project directory only
_env_path = Path(__file__).parent.parent / ".env"
load_dotenv(_env_path, override=False)

# CLI styles
STYLE_HEADER = "bold blue"
STYLE_SUCCESS = "bold green"
STYLE_WARNING = "bold yellow"
STYLE_ERROR = "bold red"

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="studio-billing",
    help="Studio billing - run the dunning batches and manage billing data.",
    add_completion=False,
    no_args_is_help=True,
)
console = Console()

Verbose = Annotated[bool, typer.Option("--verbose", "-v", help="Verbose output")]


def _run_batch(title: str, batch_func: Callable[[Services], Awaitable[BatchResult]], verbose: bool) -> None:
    """Build the services, run one batch inline and print its summary."""
    setup_logging(verbose)

    async def _run() -> BatchResult:
        # No arq pool: notifications are delivered inline
        services = build_services(get_settings())
        try:
            return await batch_func(services)
        finally:
            await services.aclose()

    console.print(f"[{STYLE_HEADER}]{title}...[/{STYLE_HEADER}]")
    try:
        batch = asyncio.run(_run())
    except Exception as e:
        console.print(f"[{STYLE_ERROR}]{title} failed: {e}[/{STYLE_ERROR}]")
        raise typer.Exit(1)

    table = Table(title=title)
    table.add_column("Checked", justify="right")
    table.add_column("Applied", justify="right", style="green")
    table.add_column("Skipped", justify="right")
    table.add_column("Failed", justify="right", style="red")
    table.add_row(str(batch.checked), str(batch.applied), str(batch.skipped), str(batch.failed))
    console.print(table)

    if batch.failed:
        console.print(f"[{STYLE_WARNING}]{batch.failed} row(s) failed; they will be retried on the next run.[/{STYLE_WARNING}]")
        raise typer.Exit(1)


@app.command()
def reminders(verbose: Verbose = False):
    """
    Send payment reminders now.

    Reminds active subscribers whose next billing date is 7, 3 or 1 days away.
    Reminders already sent today are skipped.
    """
    _run_batch(
        "Payment reminders",
        lambda s: check_payment_reminders(s.session_factory, s.dispatcher, s.clock, s.settings),
        verbose,
    )


@app.command()
def penalties(verbose: Verbose = False):
    """Apply late-payment penalties to overdue pending payments."""
    _run_batch(
        "Late-payment penalties",
        lambda s: apply_penalties(s.session_factory, s.dispatcher, s.clock, s.settings, s.state_machine),
        verbose,
    )


@app.command("grace-periods")
def grace_periods(verbose: Verbose = False):
    """Suspend past_due subscriptions whose grace period has expired."""
    _run_batch(
        "Grace period expiry",
        lambda s: check_grace_periods(s.session_factory, s.dispatcher, s.clock, s.settings, s.state_machine),
        verbose,
    )


@app.command()
def schedule():
    """Show when the worker runs each batch."""
    settings = get_settings()
    table = Table(title=f"Daily schedule ({settings.billing_timezone})")
    table.add_column("Job")
    table.add_column("Time", justify="right")
    table.add_column("CLI command")
    for job, at, command in (
        ("payment_reminders_job", REMINDERS_CRON, "reminders"),
        ("apply_penalties_job", PENALTIES_CRON, "penalties"),
        ("grace_periods_job", GRACE_PERIODS_CRON, "grace-periods"),
    ):
        table.add_row(job, f"{at['hour']:02d}:{at['minute']:02d}", command)
    console.print(table)


@app.command()
def seed(
    demo: Annotated[bool, typer.Option("--demo", help="Also create a demo subscriber")] = False,
    verbose: Verbose = False,
):
    """
    Insert the default subscription plans.

    Creates missing tables first (use Alembic for PostgreSQL in production).
    """
    from studio_billing.models import Base
    from studio_billing.seed import seed_demo_subscriber, seed_plans

    setup_logging(verbose)

    async def _seed() -> tuple[list[str], int | None]:
        services = build_services(get_settings())
        try:
            async with services.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            created = await seed_plans(services.session_factory)
            user_id = await seed_demo_subscriber(services.session_factory, services.clock.now()) if demo else None
            return created, user_id
        finally:
            await services.aclose()

    try:
        created, user_id = asyncio.run(_seed())
    except Exception as e:
        console.print(f"[{STYLE_ERROR}]Seeding failed: {e}[/{STYLE_ERROR}]")
        raise typer.Exit(1)

    console.print(f"[{STYLE_SUCCESS}]Plans created: {', '.join(created) or 'none (already present)'}[/{STYLE_SUCCESS}]")
    if user_id is not None:
        console.print(f"Demo subscriber: user {user_id}")


if __name__ == "__main__":
    app()
