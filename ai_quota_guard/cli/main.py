"""
CLI interface for AI Quota Guard.

Provides command-line access to provisioning, metering, reporting and
scheduled maintenance.
"""

import logging
import sys
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from ai_quota_guard.config.loader import QuotaConfig, default_config, load_quota_config
from ai_quota_guard.core.activity import activity_summary, top_models_by_usage
from ai_quota_guard.core.alerts import list_alerts
from ai_quota_guard.core.errors import QuotaGuardError
from ai_quota_guard.core.maintenance import daily_maintenance, monthly_maintenance
from ai_quota_guard.core.quota_gate import provision_ledger, remaining_quota, try_consume
from ai_quota_guard.core.rollover import rollover_elapsed_periods
from ai_quota_guard.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1
EXIT_CODE_QUOTA_EXCEEDED = 2  # Denial is not a server error

_state = {"config_path": None, "db_path": None}


def _load_config() -> QuotaConfig:
    path = _state["config_path"]
    try:
        return load_quota_config(path) if path else default_config()
    except (OSError, ValueError, yaml.YAMLError) as e:
        _fail(e)


def _db_path(config: QuotaConfig) -> str:
    return _state["db_path"] or config.database.path


def _fail(error: Exception) -> None:
    console.print(f"[red]Error:[/] {error}")
    sys.exit(EXIT_CODE_FAIL)


def _format_remaining(value, unit: str = "") -> str:
    if value is None:
        return "unlimited"
    if unit == "$":
        return f"${value:,.4f}"
    return f"{value:,}"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML quota config"),
    db: Optional[str] = typer.Option(None, "--db", help="Path to SQLite database (overrides config)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """AI Quota Guard CLI."""
    _state["config_path"] = config
    _state["db_path"] = db
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if ctx.invoked_subcommand is None:
        console.print("AI Quota Guard - Use --help to see available commands")


@app.command()
def init():
    """Initialize the AI Quota Guard database."""
    try:
        config = _load_config()
        initialize_schema(_db_path(config))
        console.print("[green]✓[/] Database initialized successfully")
    except Exception as e:
        _fail(e)
    sys.exit(EXIT_CODE_OK)


@app.command()
def provision(
    account_id: str = typer.Argument(..., help="Account id from the identity provider"),
    tier: Optional[str] = typer.Option(None, "--tier", "-t", help="Quota tier (defaults to config default)"),
):
    """Create a quota ledger for an account."""
    try:
        config = _load_config()
        ledger = provision_ledger(account_id, tier, _db_path(config), config)
    except (QuotaGuardError, ValueError) as e:
        _fail(e)
    console.print(
        f"[green]✓[/] Provisioned {ledger.account_id} on tier [bold]{ledger.tier}[/] "
        f"({ledger.current_period_start} → {ledger.current_period_end})"
    )
    sys.exit(EXIT_CODE_OK)


@app.command()
def consume(
    account_id: str = typer.Argument(..., help="Account to charge"),
    tokens: int = typer.Option(..., "--tokens", "-n", min=0, help="Tokens to reserve"),
    cost: float = typer.Option(0.0, "--cost", min=0.0, help="Cost to reserve"),
):
    """Check and consume quota for one metered operation."""
    try:
        config = _load_config()
        admitted = try_consume(account_id, tokens, cost, db_path=_db_path(config), config=config)
    except (QuotaGuardError, ValueError) as e:
        _fail(e)
    if not admitted:
        console.print(f"[yellow]Quota exceeded[/] for {account_id}: {tokens:,} tokens not admitted")
        sys.exit(EXIT_CODE_QUOTA_EXCEEDED)
    console.print(f"[green]✓[/] Admitted {tokens:,} tokens for {account_id}")
    sys.exit(EXIT_CODE_OK)


@app.command()
def remaining(account_id: str = typer.Argument(..., help="Account to inspect")):
    """Show what an account has left this period."""
    config = _load_config()
    result = remaining_quota(account_id, _db_path(config))

    table = Table(title=f"Remaining quota: {account_id}")
    table.add_column("Metric")
    table.add_column("Remaining", justify="right")
    table.add_row("Tokens", _format_remaining(result.tokens_remaining))
    table.add_row("Requests", _format_remaining(result.requests_remaining))
    table.add_row("Cost", _format_remaining(result.cost_remaining, "$"))
    table.add_row("Token usage", f"{result.usage_percentage}%")
    console.print(table)
    sys.exit(EXIT_CODE_OK)


@app.command()
def summary(
    account_id: str = typer.Argument(..., help="Account to summarize"),
    days: int = typer.Option(30, "--days", "-d", min=0, help="Lookback window in days"),
):
    """Show an account's activity over a lookback window."""
    config = _load_config()
    result = activity_summary(account_id, days, _db_path(config))

    table = Table(title=f"Activity: {account_id} (last {days} days)")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Requests", f"{result.total_requests:,}")
    table.add_row("Tokens", f"{result.total_tokens:,}")
    table.add_row("Cost", f"${result.total_cost:,.4f}")
    table.add_row("Sessions", f"{result.active_sessions:,}")
    table.add_row("Messages", f"{result.total_messages:,}")
    avg = result.avg_session_length_minutes
    table.add_row("Avg session (min)", "N/A" if avg is None else str(avg))
    console.print(table)
    sys.exit(EXIT_CODE_OK)


@app.command()
def alerts(
    account_id: str = typer.Argument(..., help="Account whose alerts to list"),
    unread: bool = typer.Option(False, "--unread", "-u", help="Only unread alerts"),
):
    """List usage alerts for an account."""
    config = _load_config()
    found = list_alerts(account_id, unread_only=unread, db_path=_db_path(config))
    if not found:
        console.print(f"[dim]No alerts for {account_id}[/]")
        sys.exit(EXIT_CODE_OK)

    table = Table(title=f"Alerts: {account_id}")
    table.add_column("When")
    table.add_column("Type")
    table.add_column("Threshold", justify="right")
    table.add_column("Message")
    for alert in found:
        table.add_row(
            alert.created_at.strftime("%Y-%m-%d %H:%M"),
            alert.alert_type.value,
            f"{alert.threshold_percentage}%" if alert.threshold_percentage is not None else "",
            alert.message,
        )
    console.print(table)
    sys.exit(EXIT_CODE_OK)


@app.command()
def rollover():
    """Reset ledgers whose billing period has ended."""
    try:
        config = _load_config()
        count = rollover_elapsed_periods(
            db_path=_db_path(config), retry=config.retry,
            busy_timeout_ms=config.database.busy_timeout_ms
        )
    except QuotaGuardError as e:
        _fail(e)
    console.print(f"[green]✓[/] Rolled over {count} ledger(s)")
    sys.exit(EXIT_CODE_OK)


@app.command()
def maintenance(job: str = typer.Argument(..., help="'daily' or 'monthly'")):
    """Run a scheduled maintenance job."""
    config = _load_config()
    if job == "daily":
        result = daily_maintenance(
            _db_path(config), retry=config.retry, busy_timeout_ms=config.database.busy_timeout_ms
        )
    elif job == "monthly":
        result = monthly_maintenance(
            _db_path(config), retry=config.retry, busy_timeout_ms=config.database.busy_timeout_ms
        )
    else:
        console.print(f"[red]Unknown job:[/] {job} (expected 'daily' or 'monthly')")
        sys.exit(EXIT_CODE_FAIL)
    for key, value in result.items():
        console.print(f"{key}: {value}")
    sys.exit(EXIT_CODE_OK)


@app.command("top-models")
def top_models(
    limit: int = typer.Option(10, "--limit", "-l", min=1, help="How many models to show"),
    days: int = typer.Option(30, "--days", "-d", min=0, help="Lookback window in days"),
):
    """Show the most used models across all accounts."""
    config = _load_config()
    rows = top_models_by_usage(limit, days, _db_path(config))
    if not rows:
        console.print("\n[bold yellow]No usage data found[/]")
        sys.exit(EXIT_CODE_OK)

    table = Table(title=f"Top models (last {days} days)")
    table.add_column("Model")
    table.add_column("Provider")
    table.add_column("Requests", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Avg latency (ms)", justify="right")
    for row in rows:
        table.add_row(
            row.model_name,
            row.provider,
            f"{row.total_requests:,}",
            f"{row.total_tokens:,}",
            "N/A" if row.avg_latency_ms is None else f"{row.avg_latency_ms:,}",
        )
    console.print(table)
    sys.exit(EXIT_CODE_OK)


if __name__ == "__main__":
    app()
