"""
CLI interface for Studio Credits.

Operator access to the credit store: balances, ledger history, manual
grants, payment reconciliation, the guest bucket and stale-job sweeps.
"""

import logging
import sqlite3
import sys
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from studio_credits.config.loader import Settings, default_settings, load_settings
from studio_credits.core.client import CreditClient, build_client
from studio_credits.core.errors import CreditError, UnknownIdentity
from studio_credits.storage.models import PaymentEvent, utcnow
from studio_credits.storage.repository import initialize_schema, schema_initialized

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj["settings"]


def _client(ctx: typer.Context, require_store: bool = True) -> CreditClient:
    settings = _settings(ctx)
    if require_store:
        try:
            ready = schema_initialized(settings.database)
        except CreditError as e:
            _fail(str(e))
        if not ready:
            console.print("[yellow]![/] Credit store not initialized. Run `studio-credits init`.")
            sys.exit(EXIT_CODE_FAIL)
    return build_client(settings)


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to a YAML settings file"
    ),
    db: Optional[str] = typer.Option(
        None, "--db", help="Database file (overrides the settings file)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show log output"),
):
    """Studio Credits CLI."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    try:
        settings = load_settings(config) if config else default_settings()
    except (FileNotFoundError, ValueError) as e:
        _fail(str(e))
    if db:
        settings = replace(settings, database=db)
    ctx.obj = {"settings": settings}
    if ctx.invoked_subcommand is None:
        console.print("Studio Credits - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the credit store."""
    try:
        initialize_schema(_settings(ctx).database)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except (CreditError, sqlite3.Error) as e:
        _fail(f"initializing database: {e}")


@app.command()
def status(ctx: typer.Context):
    """Check initialization status of the credit store."""
    settings = _settings(ctx)
    try:
        accounts = _client(ctx).ledger.repository.list_accounts()
    except CreditError as e:
        _fail(str(e))
    console.print(f"[green]✓[/] Credit store ready at {settings.database}")
    console.print(f"Accounts: {len(accounts)}")
    console.print(f"Stale threshold: {settings.jobs.stale_after_seconds}s, "
                  f"sweep every {settings.jobs.sweep_interval_seconds}s")


@app.command()
def balance(ctx: typer.Context, identity: str = typer.Argument(..., help="Account identity")):
    """Show the balance of an account (opens it with the welcome grant if new)."""
    try:
        amount = _client(ctx).request_balance(identity)
    except (CreditError, ValueError) as e:
        _fail(str(e))
    console.print(f"{identity}: [bold]{_format_credits(amount)}[/] credits")


@app.command()
def history(
    ctx: typer.Context,
    identity: str = typer.Argument(..., help="Account identity"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of transactions"),
):
    """List recent ledger transactions of an account."""
    try:
        transactions = _client(ctx).ledger.history(identity, limit)
    except (CreditError, ValueError) as e:
        _fail(str(e))

    if not transactions:
        console.print(f"[dim]No transactions for {identity}.[/]")
        return

    table = Table(title=f"Ledger: {identity}")
    table.add_column("Time")
    table.add_column("Transaction")
    table.add_column("Amount", justify="right")
    table.add_column("Reason")
    table.add_column("Key")
    for tx in transactions:
        color = "green" if tx.amount > 0 else "red"
        table.add_row(
            _format_time(tx.created_at),
            tx.transaction_id,
            f"[{color}]{tx.amount:+,}[/]",
            tx.reason,
            tx.correlation_key or "",
        )
    console.print(table)


@app.command()
def grant(
    ctx: typer.Context,
    identity: str = typer.Argument(...),
    amount: int = typer.Argument(..., help="Credits to add"),
    reason: str = typer.Option("Manual grant", "--reason", "-r"),
    key: Optional[str] = typer.Option(None, "--key", "-k", help="Idempotency key"),
):
    """Add credits to an account."""
    try:
        entry = _client(ctx).ledger.grant(identity, amount, reason, key)
    except (CreditError, ValueError) as e:
        _fail(str(e))
    _print_entry(entry)


@app.command()
def debit(
    ctx: typer.Context,
    identity: str = typer.Argument(...),
    amount: int = typer.Argument(..., help="Credits to spend"),
    reason: str = typer.Option("Manual debit", "--reason", "-r"),
    key: Optional[str] = typer.Option(None, "--key", "-k", help="Idempotency key"),
):
    """Spend credits from an account."""
    try:
        entry = _client(ctx).ledger.debit(identity, amount, reason, key)
    except (CreditError, ValueError) as e:
        _fail(str(e))
    _print_entry(entry)


@app.command()
def reverse(ctx: typer.Context, transaction_id: str = typer.Argument(...)):
    """Append the compensating entry of a transaction."""
    try:
        entry = _client(ctx).ledger.reverse(transaction_id)
    except CreditError as e:
        _fail(str(e))
    _print_entry(entry)


@app.command()
def plans(ctx: typer.Context):
    """List purchasable plans."""
    table = Table(title="Plans")
    table.add_column("Plan")
    table.add_column("Name")
    table.add_column("Price", justify="right")
    table.add_column("Credits", justify="right")
    table.add_column("Validity")
    for plan in _client(ctx, require_store=False).catalog.all():
        table.add_row(
            plan.plan_id,
            plan.name,
            f"{plan.price:,} {plan.currency}",
            _format_credits(plan.credits),
            f"{plan.duration_months} month{'s' if plan.duration_months != 1 else ''}",
        )
    console.print(table)


@app.command("apply-payment")
def apply_payment(
    ctx: typer.Context,
    payment_id: str = typer.Argument(..., help="Payment reference (idempotency key)"),
    plan_id: str = typer.Argument(...),
    identity: Optional[str] = typer.Option(None, "--identity", "-i", help="Paying account; omit for guest"),
    amount: Optional[int] = typer.Option(None, "--amount", help="Amount paid (defaults to plan price)"),
    currency: Optional[str] = typer.Option(None, "--currency"),
):
    """Apply a confirmed payment to the ledger."""
    client = _client(ctx)
    try:
        plan = client.catalog.get(plan_id)
        receipt = client.apply_payment(PaymentEvent(
            payment_id=payment_id,
            identity=identity,
            plan_id=plan_id,
            amount=amount if amount is not None else plan.price,
            currency=currency or plan.currency,
            delivered_at=utcnow(),
        ))
    except UnknownIdentity as e:
        console.print(f"[yellow]![/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    except CreditError as e:
        _fail(str(e))

    marker = "[yellow]=[/]" if receipt.already_processed else "[green]✓[/]"
    console.print(f"{marker} {receipt.message}")


@app.command("guest-payments")
def guest_payments(ctx: typer.Context):
    """List payments held in the guest bucket."""
    records = _client(ctx).reconciler.list_guest_payments()
    if not records:
        console.print("[dim]Guest bucket is empty.[/]")
        return
    table = Table(title="Guest payments")
    table.add_column("Payment")
    table.add_column("Plan")
    table.add_column("Amount", justify="right")
    table.add_column("Delivered")
    for record in records:
        table.add_row(
            record.payment_id,
            record.plan_id,
            f"{record.amount:,} {record.currency}",
            _format_time(record.delivered_at),
        )
    console.print(table)


@app.command("migrate-guest")
def migrate_guest(
    ctx: typer.Context,
    payment_id: str = typer.Argument(...),
    identity: str = typer.Argument(..., help="Account that receives the credits"),
    operator: str = typer.Option(..., "--operator", "-o", help="Who authorised the migration"),
):
    """Move a guest payment onto a real account (audited)."""
    try:
        receipt = _client(ctx).reconciler.migrate_guest_payment(payment_id, identity, operator)
    except (CreditError, ValueError) as e:
        _fail(str(e))
    console.print(f"[green]✓[/] {receipt.message}")


@app.command()
def sweep(
    ctx: typer.Context,
    older_than: Optional[int] = typer.Option(
        None, "--older-than", min=0, help="Staleness threshold in seconds (defaults to settings)"
    ),
):
    """Reap stale pending jobs and refund their credits."""
    settings = _settings(ctx)
    threshold = timedelta(seconds=older_than) if older_than is not None else settings.jobs.stale_after
    try:
        report = _client(ctx).tracker.sweep_stale(threshold)
    except CreditError as e:
        _fail(str(e))
    console.print(
        f"Reaped {len(report.reaped)} job(s), refunded {_format_credits(report.reclaimed_credits)} credits"
    )
    for error in report.errors:
        console.print(f"[yellow]![/] {error}")
    sys.exit(EXIT_CODE_FAIL if report.errors else EXIT_CODE_PASS)


@app.command()
def reconcile(
    ctx: typer.Context,
    identity: Optional[str] = typer.Argument(None, help="Account to check; all accounts if omitted"),
):
    """Check that every balance equals the sum of its transactions."""
    ledger = _client(ctx).ledger
    identities = [identity] if identity else [a.identity for a in ledger.repository.list_accounts()]

    table = Table(title="Ledger reconciliation")
    table.add_column("Account")
    table.add_column("Balance", justify="right")
    table.add_column("Sum of transactions", justify="right")
    table.add_column("Status")
    mismatches = 0
    for account_id in identities:
        report = ledger.reconcile(account_id)
        if not report.consistent:
            mismatches += 1
        table.add_row(
            account_id,
            _format_credits(report.balance),
            _format_credits(report.transaction_sum),
            "[green]OK[/]" if report.consistent else "[red]MISMATCH[/]",
        )
    console.print(table)
    sys.exit(EXIT_CODE_FAIL if mismatches else EXIT_CODE_PASS)


def _format_credits(amount: int) -> str:
    return f"{amount:,}"


def _format_time(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else ""


def _print_entry(entry) -> None:
    if entry.duplicate:
        console.print(f"[yellow]=[/] Already applied as {entry.transaction_id} (balance {_format_credits(entry.balance or 0)})")
    else:
        console.print(f"[green]✓[/] {entry.transaction_id}: {entry.amount:+,} (balance {_format_credits(entry.balance or 0)})")


if __name__ == "__main__":
    app()
