"""
CLI interface for Jump Guard.

Provides command-line access to the ledger, generation and tracking.
"""

import logging
import sys
import uuid
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from jump_guard.config.loader import AppConfig, load_config
from jump_guard.core.errors import LedgerError
from jump_guard.core.orchestrator import GenerationOrchestrator, RefundStatus
from jump_guard.core.parser import ResponseParser
from jump_guard.sdk.model_client import ResilientModelClient
from jump_guard.storage.counters import UsageCounterStore
from jump_guard.storage.ledger import CreditLedger, default_conflict_policy
from jump_guard.storage.models import CreditPackage, TransactionType
from jump_guard.storage.reconciliation import RefundQueue
from jump_guard.storage.repository import initialize_schema, list_packages, upsert_package

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

TRACK_EVENTS = ("view", "clarification", "reroute", "tool-click", "prompt-copy", "combo")


def _config(ctx: typer.Context) -> AppConfig:
    return ctx.obj["config"]


def build_ledger(config: AppConfig) -> CreditLedger:
    return CreditLedger(
        db_path=config.ledger.db_path,
        welcome_credits=config.ledger.welcome_credits,
        busy_timeout=config.ledger.busy_timeout,
        conflict_policy=default_conflict_policy(
            attempts=config.ledger.conflict_attempts,
            backoff=config.ledger.conflict_backoff
        )
    )


def build_orchestrator(config: AppConfig) -> GenerationOrchestrator:
    """Wire every collaborator from configuration."""
    model = config.model
    client = ResilientModelClient(
        model=model.name,
        api_key=model.api_key,
        base_url=model.base_url,
        timeout=model.timeout,
        max_retries=model.max_retries,
        backoff_base=model.backoff_base,
        temperature=model.temperature,
        max_tokens=model.max_tokens,
        retry_on_status=model.retry_on_status
    )
    return GenerationOrchestrator(
        ledger=build_ledger(config),
        model_client=client,
        parser=ResponseParser(),
        counters=UsageCounterStore(config.ledger.db_path, busy_timeout=config.ledger.busy_timeout),
        refund_queue=RefundQueue(config.ledger.db_path, busy_timeout=config.ledger.busy_timeout),
        cost=config.generation.cost,
        description=config.generation.description
    )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML configuration"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
):
    """Jump Guard CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True
    )
    try:
        ctx.obj = {"config": load_config(config_path)}
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    if ctx.invoked_subcommand is None:
        console.print("Jump Guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the Jump Guard database."""
    try:
        initialize_schema(_config(ctx).ledger.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def balance(ctx: typer.Context, user_id: str):
    """Show a user's credit balance."""
    account = build_ledger(_config(ctx)).get_account(user_id)
    if account is None:
        console.print(f"[yellow]No credit account for {user_id}[/]")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"Balance: [bold]{account.balance}[/] credits")
    console.print(f"Total purchased: {account.total_purchased}")


@app.command()
def history(
    ctx: typer.Context,
    user_id: str,
    limit: int = typer.Option(20, "--limit", "-n", help="Number of entries to show")
):
    """Show a user's credit transactions, newest first."""
    transactions = build_ledger(_config(ctx)).list_transactions(user_id, limit=limit)
    if not transactions:
        console.print("[dim]No transactions found.[/]")
        return

    table = Table(title=f"Credit transactions for {user_id}")
    table.add_column("When")
    table.add_column("Type")
    table.add_column("Amount", justify="right")
    table.add_column("Description")
    table.add_column("Reference")
    for tx in transactions:
        table.add_row(
            tx.created_at.strftime("%Y-%m-%d %H:%M"),
            tx.type.value,
            f"{tx.amount:+d}",
            tx.description,
            tx.reference_id or ""
        )
    console.print(table)


@app.command()
def grant(
    ctx: typer.Context,
    user_id: str,
    amount: int,
    reference: str = typer.Option(..., "--reference", "-r", help="Payment reference (idempotency key)"),
    description: str = typer.Option("Credit purchase", "--description", "-d")
):
    """Credit a purchase to a user's account."""
    ledger = build_ledger(_config(ctx))
    try:
        ledger.initialize(user_id)
        result = ledger.credit(user_id, amount, description, reference_id=reference, kind=TransactionType.PURCHASE)
    except (LedgerError, ValueError) as e:
        console.print(f"[red]Error crediting account:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    if result.applied:
        console.print(f"[green]✓[/] Added {amount} credits, balance {result.balance}")
    else:
        console.print(f"[yellow]Reference {reference} already applied, balance {result.balance}[/]")


@app.command()
def packages(ctx: typer.Context):
    """List active credit packages."""
    catalog = list_packages(db_path=_config(ctx).ledger.db_path)
    if not catalog:
        console.print("[dim]No credit packages available.[/]")
        return
    table = Table(title="Credit packages")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Credits", justify="right")
    table.add_column("Price", justify="right")
    for package in catalog:
        table.add_row(package.id, package.name, str(package.credits), f"${package.price_cents / 100:,.2f}")
    console.print(table)


@app.command("add-package")
def add_package(
    ctx: typer.Context,
    package_id: str,
    name: str,
    credits: int,
    price_cents: int,
    stripe_price_id: Optional[str] = typer.Option(None, "--stripe-price-id"),
    inactive: bool = typer.Option(False, "--inactive", help="Hide the package from purchase")
):
    """Add or update a credit package."""
    try:
        upsert_package(CreditPackage(
            id=package_id,
            name=name,
            credits=credits,
            price_cents=price_cents,
            stripe_price_id=stripe_price_id,
            active=not inactive
        ), db_path=_config(ctx).ledger.db_path)
    except Exception as e:
        console.print(f"[red]Error saving package:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Saved package {package_id}")


@app.command()
def buy(ctx: typer.Context, user_id: str, package_id: str, payment_reference: str):
    """Credit a purchased package under its payment reference."""
    ledger = build_ledger(_config(ctx))
    try:
        ledger.initialize(user_id)
        result = ledger.purchase_package(user_id, package_id, payment_reference)
    except (LedgerError, ValueError) as e:
        console.print(f"[red]Error processing purchase:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    if result.applied:
        console.print(f"[green]✓[/] Purchase applied, balance {result.balance}")
    else:
        console.print(f"[yellow]Payment {payment_reference} already processed, balance {result.balance}[/]")


@app.command()
def generate(
    ctx: typer.Context,
    user_id: str,
    goals: str = typer.Option(..., "--goals", "-g", help="What the user is trying to achieve"),
    challenges: str = typer.Option(..., "--challenges", help="What is preventing them"),
    industry: str = typer.Option("", "--industry"),
    ai_knowledge: str = typer.Option("", "--ai-knowledge"),
    time_commitment: str = typer.Option("", "--time-commitment"),
    budget: str = typer.Option("", "--budget"),
    key: Optional[str] = typer.Option(None, "--key", "-k", help="Idempotency key (default: random)")
):
    """Spend a credit to generate a jump plan."""
    idempotency_key = key or str(uuid.uuid4())
    form = {
        "goals": goals,
        "challenges": challenges,
        "industry": industry,
        "ai_knowledge": ai_knowledge,
        "time_commitment": time_commitment,
        "budget": budget,
    }
    with build_orchestrator(_config(ctx)) as orchestrator:
        result = orchestrator.generate_from_form(user_id, form, idempotency_key)

    if not result.ok:
        console.print(f"[red]Generation failed ({result.error.value}):[/] {result.detail}")
        if result.refund != RefundStatus.NOT_NEEDED:
            console.print(f"Credit refund: {result.refund.value}")
        sys.exit(EXIT_CODE_FAIL)

    plan = result.plan
    console.print(f"\n[bold]{plan.name or 'Your jump'}[/bold]  [dim]({plan.jump_id})[/]")
    console.print("-" * 40)
    for index, phase in enumerate(plan.phases, start=1):
        title = phase.get("name") if isinstance(phase, dict) else str(phase)
        console.print(f"{index}. {title}")
    console.print(f"\nTools: {len(plan.tools)}  Prompts: {len(plan.prompts)}")
    console.print(f"Credits remaining: {result.balance}")


@app.command()
def track(
    ctx: typer.Context,
    jump_id: str,
    event: str = typer.Argument(..., help=f"One of: {', '.join(TRACK_EVENTS)}"),
    level: int = typer.Option(1, "--level", "-l", help="Clarification level")
):
    """Record an engagement event for a jump."""
    store = UsageCounterStore(_config(ctx).ledger.db_path)
    recorders = {
        "view": store.record_view,
        "reroute": store.record_reroute,
        "tool-click": store.record_tool_click,
        "prompt-copy": store.record_prompt_copy,
        "combo": store.record_combo_usage,
    }
    if event == "clarification":
        try:
            recorded = store.record_clarification(jump_id, level)
        except ValueError as e:
            console.print(f"[red]Invalid clarification level:[/] {e}")
            sys.exit(EXIT_CODE_FAIL)
    elif event in recorders:
        recorded = recorders[event](jump_id)
    else:
        console.print(f"[red]Unknown event:[/] {event}")
        sys.exit(EXIT_CODE_FAIL)

    if not recorded:
        console.print(f"[yellow]Nothing recorded for jump {jump_id}[/]")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Tracked {event} for {jump_id}")


@app.command()
def stats(ctx: typer.Context, jump_id: str):
    """Show engagement counters for a jump."""
    counters = UsageCounterStore(_config(ctx).ledger.db_path).get(jump_id)
    if counters is None:
        console.print(f"[yellow]No counters for jump {jump_id}[/]")
        sys.exit(EXIT_CODE_FAIL)
    table = Table(title=f"Usage of {jump_id}")
    table.add_column("Counter")
    table.add_column("Value", justify="right")
    table.add_row("Views", str(counters.views_count))
    table.add_row("Clarifications", str(counters.clarifications_count))
    table.add_row("Max clarification level", str(counters.max_clarification_level))
    table.add_row("Reroutes", str(counters.reroutes_count))
    table.add_row("Tools clicked", str(counters.tools_clicked_count))
    table.add_row("Prompts copied", str(counters.prompts_copied_count))
    table.add_row("Combos used", str(counters.combos_used_count))
    console.print(table)


@app.command()
def reconcile(
    ctx: typer.Context,
    limit: int = typer.Option(100, "--limit", "-n", help="Maximum refunds to process")
):
    """Apply refunds that could not be applied when their generation failed."""
    config = _config(ctx)
    queue = RefundQueue(config.ledger.db_path, busy_timeout=config.ledger.busy_timeout)
    resolved = queue.drain(build_ledger(config), limit=limit)
    remaining = len(queue.pending(limit=limit))
    console.print(f"Resolved {resolved} refunds, {remaining} still pending")
    sys.exit(EXIT_CODE_FAIL if remaining else EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
