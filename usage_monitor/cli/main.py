"""
CLI interface for the usage monitor.

Provides command-line access to polling, the stored usage history and the
maintenance tasks.
"""

import sys
from datetime import datetime, timezone
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from usage_monitor.config.loader import MonitorConfig, load_config
from usage_monitor.config.logging_setup import setup_logging
from usage_monitor.core.alerts import AlertEngine, ConsoleNotifier
from usage_monitor.core.coordinator import CycleResult, PollCoordinator
from usage_monitor.core.credentials import CredentialCache, EnvTokenProvider
from usage_monitor.core.cycles import cycle_label
from usage_monitor.core.errors import MonitorError
from usage_monitor.core.pricing import PRICING_TABLE, compare_costs
from usage_monitor.importer.csv_import import import_usage_csv
from usage_monitor.storage.models import AlertType
from usage_monitor.storage.repository import UsageRepository

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

# Anchor used for CSV imports before any snapshot exists: calendar months.
CALENDAR_ANCHOR = datetime(2000, 1, 1, tzinfo=timezone.utc)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config.yaml (default: ~/.usage_monitor/config.yaml)"
    ),
):
    """Usage monitor CLI."""
    try:
        ctx.obj = load_config(config)
    except (OSError, ValueError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    if ctx.invoked_subcommand is None:
        console.print("Usage Monitor - Use --help to see available commands")


def _repository(config: MonitorConfig) -> UsageRepository:
    repository = UsageRepository(config.database.path)
    repository.initialize_schema()
    return repository


def _build_coordinator(config: MonitorConfig, repository: UsageRepository) -> PollCoordinator:
    credentials = CredentialCache(EnvTokenProvider(config.api.token_env, config.api.token_file))
    engine = AlertEngine(
        sink=ConsoleNotifier(console),
        repository=repository,
        thresholds=config.alerts.thresholds,
        default_sound=config.alerts.sound,
    )
    return PollCoordinator(config, repository, credentials, engine)


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${amount:,.2f}"


@app.command()
def init(ctx: typer.Context):
    """Initialize the usage database."""
    config: MonitorConfig = ctx.obj
    try:
        _repository(config)
        console.print(f"[green]✓[/] Database initialized at {config.database.path}")
        sys.exit(EXIT_CODE_PASS)
    except MonitorError as e:
        console.print(f"[red]Error initializing database:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def poll(ctx: typer.Context):
    """Run a single poll cycle and print the result."""
    config: MonitorConfig = ctx.obj
    setup_logging(config.logging)
    try:
        coordinator = _build_coordinator(config, _repository(config))
    except MonitorError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    result = coordinator.run_cycle(blocking=True)
    _display_cycle_result(result)
    sys.exit(EXIT_CODE_PASS if result.ok else EXIT_CODE_FAIL)


@app.command()
def run(ctx: typer.Context):
    """Poll continuously until interrupted with Ctrl-C."""
    config: MonitorConfig = ctx.obj
    setup_logging(config.logging)
    try:
        coordinator = _build_coordinator(config, _repository(config))
    except MonitorError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        coordinator.run_forever()
    except KeyboardInterrupt:
        coordinator.stop()
        console.print("\nStopping monitor")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def status(ctx: typer.Context):
    """Show the latest snapshot and the current cycle's usage."""
    config: MonitorConfig = ctx.obj
    repository = _repository(config)
    snapshot = repository.get_latest_snapshot()
    if snapshot is None:
        console.print("\n[bold yellow]No usage data recorded yet[/]")
        console.print("\nRun `usage-monitor poll` to fetch the current usage.\n")
        sys.exit(EXIT_CODE_PASS)

    summary = repository.get_cycle_summary(snapshot.billing_cycle_start)
    console.print(f"\n[bold]Billing cycle {snapshot.billing_cycle}[/bold]")
    console.print("-" * 40)
    console.print(f"Requests: {snapshot.requests_used}/{snapshot.requests_limit} "
                  f"({snapshot.usage_percentage:.1f}%)")
    mode = "[bold red]On-Demand[/]" if snapshot.is_on_demand else "[green]Included[/]"
    console.print(f"Billing mode: {mode}")
    console.print(f"On-demand spend: {_format_currency(snapshot.on_demand_spend_cents / 100)}")
    console.print(f"Invoice total: {_format_currency(summary.total_on_demand_usd)}")
    console.print(f"Peak usage this cycle: {summary.max_percentage:.1f}%")
    console.print(f"Last polled: {snapshot.timestamp:%Y-%m-%d %H:%M:%S} UTC")

    stats = repository.get_usage_stats(snapshot.billing_cycle)
    if stats.by_kind:
        table = Table(title="Usage by kind")
        table.add_column("Kind")
        table.add_column("Requests", justify="right")
        table.add_column("Tokens", justify="right")
        table.add_column("Cost", justify="right")
        for kind, totals in sorted(stats.by_kind.items()):
            table.add_row(kind, str(totals.requests), f"{totals.tokens:,}", _format_currency(totals.cost))
        console.print(table)
        console.print(f"Event cost: included {_format_currency(stats.included_cost)}, "
                      f"on-demand {_format_currency(stats.on_demand_cost)}")

    alerts = repository.get_alerts(snapshot.billing_cycle)
    if alerts:
        sent = ", ".join(
            "on-demand switch" if a.alert_type is AlertType.ON_DEMAND_SWITCH else f"{a.threshold_value:g}%"
            for a in alerts
        )
        console.print(f"Alerts sent this cycle: {sent}")

    if config.byok.enabled and config.byok.show_comparison:
        _display_comparison(config, repository, snapshot.billing_cycle, snapshot.on_demand_spend_cents)
    sys.exit(EXIT_CODE_PASS)


def _resolve_cycle(repository: UsageRepository, cycle: Optional[str]) -> Optional[str]:
    if cycle:
        return cycle
    snapshot = repository.get_latest_snapshot()
    return snapshot.billing_cycle if snapshot else None


@app.command()
def events(
    ctx: typer.Context,
    cycle: Optional[str] = typer.Option(
        None,
        "--cycle",
        help="Billing cycle start (YYYY-MM-DD); defaults to the current cycle"
    ),
):
    """Show aggregate event statistics for a billing cycle."""
    repository = _repository(ctx.obj)
    billing_cycle = _resolve_cycle(repository, cycle)
    if billing_cycle is None:
        console.print("[yellow]No billing cycle known yet; pass --cycle or run a poll first[/]")
        sys.exit(EXIT_CODE_PASS)

    stats = repository.get_aggregate_stats(billing_cycle)
    console.print(f"\n[bold]Usage events for cycle {billing_cycle}[/bold]")
    console.print("-" * 40)
    if stats.total_events == 0:
        console.print("\n[dim]No usage events stored for this cycle.[/]")
        sys.exit(EXIT_CODE_PASS)

    console.print(f"Events: {stats.total_events}")
    console.print(f"Total tokens: {stats.total_tokens:,}")
    console.print(f"  Input (w/ cache write): {stats.input_with_cache_write:,}")
    console.print(f"  Input (w/o cache write): {stats.input_without_cache_write:,}")
    console.print(f"  Cache read: {stats.cache_read:,}")
    console.print(f"  Output: {stats.output_tokens:,}")
    console.print(f"Total cost: {_format_currency(stats.total_cost)}")
    console.print(f"Average per request: {_format_currency(stats.avg_cost_per_request)}")
    console.print(f"Most expensive request: {_format_currency(stats.max_single_request)}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def compare(
    ctx: typer.Context,
    cycle: Optional[str] = typer.Option(
        None,
        "--cycle",
        help="Billing cycle start (YYYY-MM-DD); defaults to the current cycle"
    ),
):
    """Compare billed spend with direct API pricing for the same usage."""
    config: MonitorConfig = ctx.obj
    repository = _repository(config)
    billing_cycle = _resolve_cycle(repository, cycle)
    if billing_cycle is None:
        console.print("[yellow]No billing cycle known yet; pass --cycle or run a poll first[/]")
        sys.exit(EXIT_CODE_PASS)

    spend_cents = repository.invoice_total_cents(billing_cycle)
    snapshot = repository.get_latest_snapshot()
    if snapshot is not None and snapshot.billing_cycle == billing_cycle:
        spend_cents = max(spend_cents, snapshot.on_demand_spend_cents)
    try:
        _display_comparison(config, repository, billing_cycle, spend_cents)
    except ValueError as e:
        console.print(f"[red]Invalid pricing aliases:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


def _display_comparison(config: MonitorConfig, repository: UsageRepository, billing_cycle: str, spend_cents: int):
    table_prices = PRICING_TABLE.with_aliases(config.pricing.aliases)
    comparison = compare_costs(
        billing_cycle, spend_cents, repository.get_model_token_totals(billing_cycle), table_prices
    )

    table = Table(title=f"Direct API cost comparison ({billing_cycle})")
    table.add_column("Provider")
    table.add_column("Direct cost", justify="right")
    table.add_column("Savings vs billed", justify="right")
    for provider, direct in sorted(comparison.direct_by_provider.items()):
        table.add_row(provider, _format_currency(direct), _format_currency(comparison.savings(provider)))
    console.print(f"\nBilled on-demand spend: {_format_currency(comparison.billed_usd)}")
    console.print(table)
    if comparison.unknown_models:
        console.print(f"[dim]No pricing for: {', '.join(comparison.unknown_models)}[/]")


@app.command("import-csv")
def import_csv(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Usage CSV exported from the dashboard"),
    anchor: Optional[str] = typer.Option(
        None,
        "--anchor",
        help="Any billing cycle start (YYYY-MM-DD); defaults to the latest snapshot's cycle"
    ),
):
    """Import usage events from a dashboard CSV export."""
    repository = _repository(ctx.obj)
    if anchor:
        try:
            cycle_anchor = datetime.strptime(anchor, "%Y-%m-%d").replace(tzinfo=timezone.utc)
        except ValueError:
            console.print(f"[red]Invalid --anchor date:[/] {anchor}")
            sys.exit(EXIT_CODE_FAIL)
    else:
        snapshot = repository.get_latest_snapshot()
        if snapshot is not None:
            cycle_anchor = snapshot.billing_cycle_start
        else:
            console.print("[yellow]No billing cycle known yet; grouping events by calendar month[/]")
            cycle_anchor = CALENDAR_ANCHOR

    try:
        summary = import_usage_csv(path, repository, cycle_anchor)
    except MonitorError as e:
        console.print(f"[red]Import failed:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Imported {summary.inserted} new events from {summary.rows} rows")
    if summary.duplicates:
        console.print(f"  {summary.duplicates} already stored")
    if summary.skipped:
        console.print(f"  [yellow]{summary.skipped} rows skipped[/]")
    if summary.cycles:
        console.print(f"  Billing cycles: {', '.join(summary.cycles)}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def prune(
    ctx: typer.Context,
    days: Optional[int] = typer.Option(
        None,
        "--days",
        "-d",
        help="Retention in days (default: database.retention_days)"
    ),
):
    """Delete stored data older than the retention window."""
    config: MonitorConfig = ctx.obj
    retention = days if days is not None else config.database.retention_days
    try:
        deleted = _repository(config).prune(retention)
    except (ValueError, MonitorError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Removed data older than {retention} days")
    for table_name, count in deleted.items():
        console.print(f"  {table_name}: {count}")
    sys.exit(EXIT_CODE_PASS)


def _display_cycle_result(result: CycleResult):
    """Display the outcome of a poll cycle."""
    if not result.ok:
        console.print(f"[red]Poll {result.status.value}:[/] {result.error or 'another cycle is running'}")
        return

    snapshot = result.snapshot
    console.print(f"[green]✓[/] Cycle {cycle_label(snapshot.billing_cycle_start)}: "
                  f"{snapshot.requests_used}/{snapshot.requests_limit} requests "
                  f"({snapshot.usage_percentage:.1f}%), "
                  f"on-demand spend {_format_currency(snapshot.on_demand_spend_cents / 100)}")
    if result.events_stored:
        console.print(f"  {result.events_stored} new usage events stored")
    for warning in result.warnings:
        console.print(f"  [yellow]{warning}[/]")
    if result.backfilled:
        console.print(f"  Backfilled invoice data for: {', '.join(result.backfilled)}")


if __name__ == "__main__":
    app()
