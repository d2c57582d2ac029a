"""
CLI interface for Entitlement Guard.

Operator and scheduler entry points: schema setup, the trial-expiry
sweep, drift correction and account inspection.
"""

import logging
import sqlite3
import sys
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from entitlement_guard.billing.stripe_client import StripeBillingProvider
from entitlement_guard.config.loader import load_config_or_default
from entitlement_guard.core.errors import EntitlementError
from entitlement_guard.core.expiry_sweep import run_trial_expiry_sweep
from entitlement_guard.core.service import EntitlementService
from entitlement_guard.core.sync_monitor import correct_drift
from entitlement_guard.storage.db import DEFAULT_DB_PATH
from entitlement_guard.storage.repository import (
    AccountStore,
    BillingSnapshotStore,
    DriftReportStore,
    initialize_schema,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DB_OPTION = typer.Option(DEFAULT_DB_PATH, "--db", "-d", help="Path to the SQLite database")
CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to entitlement YAML config")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at INFO level")
):
    """Entitlement Guard CLI."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if ctx.invoked_subcommand is None:
        console.print("Entitlement Guard - Use --help to see available commands")


@app.command()
def init(db: str = DB_OPTION):
    """Initialize the entitlement database."""
    try:
        initialize_schema(db)
        console.print(f"[green]✓[/] Database initialized at {db}")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def sweep(db: str = DB_OPTION, config: Optional[str] = CONFIG_OPTION):
    """
    Demote expired trials to free.

    Safe to run from several schedulers at once; accounts changed by
    another writer mid-sweep are reported as conflicts and left alone.
    """
    try:
        settings = load_config_or_default(config)
        result = run_trial_expiry_sweep(
            AccountStore(db),
            BillingSnapshotStore(db),
            staleness_window=settings.billing.staleness_window,
        )
    except (sqlite3.Error, ValueError, FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"[red]Error running sweep:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print("\n[bold]Trial Expiry Sweep[/bold]")
    console.print("-" * 40)
    console.print(f"Trials examined: {result.examined}")
    console.print(f"Demoted to free: {len(result.demoted)}")
    for user_id in result.demoted:
        console.print(f"  [yellow]↓[/] {user_id}")
    if result.skipped_conflicts:
        console.print(f"Skipped (changed concurrently): {len(result.skipped_conflicts)}")
        for user_id in result.skipped_conflicts:
            console.print(f"  [dim]{user_id}[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def reconcile(
    db: str = DB_OPTION,
    limit: int = typer.Option(500, "--limit", "-l", help="Maximum drift reports to process")
):
    """Correct local statuses that drifted from billing."""
    try:
        result = correct_drift(AccountStore(db), DriftReportStore(db), limit=limit)
    except sqlite3.Error as e:
        console.print(f"[red]Error reconciling drift:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Drift Reconciliation")
    table.add_column("Outcome")
    table.add_column("Reports", justify="right")
    table.add_row("Examined", str(result.examined))
    table.add_row("Corrected", str(result.corrected))
    table.add_row("Already in sync", str(result.already_in_sync))
    table.add_row("Skipped", str(result.skipped))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def info(
    user_id: str = typer.Argument(..., help="Account to inspect"),
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
    live: bool = typer.Option(
        False,
        "--live",
        help="Fetch fresh billing status from Stripe (needs STRIPE_SECRET_KEY)"
    )
):
    """Show the resolved tier and subscription details for an account."""
    try:
        settings = load_config_or_default(config)
        provider = None
        if live:
            provider = StripeBillingProvider(
                timeout_seconds=settings.billing.timeout_seconds,
                checkout=settings.checkout,
            )
        service = EntitlementService.from_db_path(db, billing_provider=provider, config=settings)
        subscription = service.get_subscription_info(user_id)
        promo = service.get_promo_message(user_id)
    except EntitlementError as e:
        console.print(f"[red]{e.user_message}[/] ({str(e)})")
        sys.exit(EXIT_CODE_FAIL)
    except (sqlite3.Error, ValueError, FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    decision = subscription.decision
    table = Table(title=f"Account {user_id}")
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("Status", f"{subscription.badge or ''} {subscription.status}".strip())
    table.add_row("Effective tier", decision.effective_tier.value)
    table.add_row("Source", decision.source.value)
    table.add_row("Trial days left", str(decision.days_left_in_trial))
    table.add_row("Details", subscription.details)
    table.add_row("Billing linked", "yes" if subscription.has_billing_data else "no")
    table.add_row("In sync", "yes" if subscription.synced else "[yellow]no[/]")
    console.print(table)
    if promo:
        console.print(f"[magenta]{promo}[/]")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
