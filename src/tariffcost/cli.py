"""Command-line interface for tariff cost tracking."""

import json
import logging
from datetime import date, datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import db
from .collectors.octopus import OctopusClient
from .config import load_settings
from .exceptions import CalculationError, OctopusAPIError
from .models import CostCalculation, IntervalType, SeriesKind, utc
from .service import TariffCostService
from .store import IntervalStore

console = Console()
logger = logging.getLogger(__name__)

DATE_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M", "%Y-%m-%dT%H:%M:%S"]
PERIOD_TYPES = [t.value for t in IntervalType if t is not IntervalType.CUSTOM]


@click.group()
@click.option("--db-path", type=click.Path(), help="Path to SQLite database")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Path to tariffcost.yaml")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.pass_context
def cli(ctx, db_path, config_path, verbose):
    """Octopus tariff costs - sync rates and consumption, compare what you paid."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)

    ctx.ensure_object(dict)
    settings = load_settings(Path(config_path) if config_path else None)
    if db_path:
        settings.db_path = Path(db_path)
    ctx.obj["settings"] = settings
    ctx.obj["db_path"] = settings.db_path


def _store(ctx) -> IntervalStore:
    return IntervalStore(ctx.obj["db_path"])


def _client(ctx) -> OctopusClient:
    settings = ctx.obj["settings"]
    return OctopusClient(api_key=settings.api_key, base_url=settings.base_url)


def _local(ctx, value: datetime) -> datetime:
    """Interpret a naive command-line datetime in the configured time zone."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=ZoneInfo(ctx.obj["settings"].timezone))
    return utc(value)


def _format_period(ctx, calc: CostCalculation) -> str:
    tz = ZoneInfo(ctx.obj["settings"].timezone)
    start = calc.period_start.astimezone(tz).strftime("%Y-%m-%d %H:%M")
    end = calc.period_end.astimezone(tz).strftime("%Y-%m-%d %H:%M")
    return f"{start} → {end}"


def _calculation_dict(calc: CostCalculation) -> dict:
    return {
        "tariff_code": calc.tariff_code,
        "interval_type": calc.interval_type.value,
        "period_start": calc.period_start.isoformat(),
        "period_end": calc.period_end.isoformat(),
        "total_kwh": round(calc.total_kwh, 4),
        "cost_excl_tax": round(calc.cost_excl_tax, 4),
        "cost_incl_tax": round(calc.cost_incl_tax, 4),
        "standing_cost_excl_tax": round(calc.standing_cost_excl_tax, 4),
        "standing_cost_incl_tax": round(calc.standing_cost_incl_tax, 4),
        "avg_rate_excl_tax": round(calc.avg_rate_excl_tax, 4),
        "avg_rate_incl_tax": round(calc.avg_rate_incl_tax, 4),
    }


def _print_calculation(ctx, calc: CostCalculation, as_json: bool = False) -> None:
    if as_json:
        click.echo(json.dumps(_calculation_dict(calc), indent=2))
        return

    table = Table(title=f"{calc.tariff_code} ({calc.interval_type.value.lower()})")
    table.add_column("Metric", style="cyan")
    table.add_column("Excl. tax", justify="right")
    table.add_column("Incl. tax", justify="right")

    table.add_row("Period", _format_period(ctx, calc), "")
    table.add_row("Consumption", f"{calc.total_kwh:.2f} kWh", "")
    table.add_row(
        "Standing charges",
        f"£{calc.standing_cost_excl_tax / 100:.2f}",
        f"£{calc.standing_cost_incl_tax / 100:.2f}",
    )
    table.add_row("Total cost", f"£{calc.cost_excl_tax / 100:.2f}", f"£{calc.cost_incl_tax / 100:.2f}")
    table.add_row(
        "Average rate",
        f"{calc.avg_rate_excl_tax:.2f}p/kWh",
        f"{calc.avg_rate_incl_tax:.2f}p/kWh",
    )

    console.print(table)


def _report_error(e: Exception) -> None:
    if isinstance(e, OctopusAPIError):
        console.print(f"[red]Octopus API error: {e}. Try again later.[/red]")
    elif isinstance(e, CalculationError):
        console.print(f"[red]Cannot calculate cost: {e}[/red]")
    else:
        console.print(f"[red]Error: {e}[/red]")


# Database commands
@cli.group()
def database():
    """Database management commands."""
    pass


@database.command("init")
@click.pass_context
def db_init(ctx):
    """Initialize the database schema."""
    db.init_db(ctx.obj["db_path"])
    console.print("[green]Database initialized successfully[/green]")


@database.command("stats")
@click.pass_context
def db_stats(ctx):
    """Show database statistics."""
    db.init_db(ctx.obj["db_path"])
    stats = db.get_stats(ctx.obj["db_path"])

    table = Table(title="Database Statistics")
    table.add_column("Category", style="cyan")
    table.add_column("Count", justify="right")
    table.add_column("Range")

    cons = stats["consumption"]
    table.add_row(
        "Consumption slots",
        str(cons["count"]),
        f"{cons['earliest'] or 'N/A'} → {cons['latest'] or 'N/A'}",
    )

    for tariff_code, rates in stats["rates_by_tariff"].items():
        table.add_row(
            f"Rates {tariff_code}",
            str(rates["count"]),
            f"{rates['earliest'] or 'N/A'} → {rates['latest'] or 'open'}",
        )

    for tariff_code, count in stats["standing_charges_by_tariff"].items():
        table.add_row(f"Standing charges {tariff_code}", str(count), "")

    table.add_row("Cost calculations", str(stats["cost_calculations"]["count"]), "")

    console.print(table)


@database.command("reset")
@click.confirmation_option(prompt="Delete all stored intervals and calculations?")
@click.pass_context
def db_reset(ctx):
    """Delete all synced data and calculations."""
    store = _store(ctx)
    total = 0
    for kind in SeriesKind:
        total += store.delete_all(kind)
    total += store.delete_calculations()
    console.print(f"[green]Deleted {total} row(s)[/green]")


# Sync commands
@cli.command()
@click.option("--tariff", "tariff_code", help="Tariff code (or set OCTOPUS_TARIFF_CODE)")
@click.option(
    "--series",
    multiple=True,
    type=click.Choice([k.value for k in SeriesKind]),
    help="Series to sync (repeatable, default: all configured)",
)
@click.option("--force", is_flag=True, help="Fetch even if local data looks complete")
@click.pass_context
def sync(ctx, tariff_code, series, force):
    """Fetch rates, standing charges and consumption from Octopus."""
    settings = ctx.obj["settings"]
    kinds = [SeriesKind(s) for s in series] or None

    def progress(kind, state, pages, total):
        total_text = f"/{total}" if total else ""
        logger.debug("%s: %s page %d%s", kind.value, state.value, pages, total_text)

    try:
        with _client(ctx) as client:
            service = TariffCostService(_store(ctx), settings, client=client, progress=progress)
            results = service.ensure_coverage(tariff_code, series=kinds, force=force)
    except (OctopusAPIError, ValueError) as e:
        _report_error(e)
        ctx.exit(1)

    table = Table(title="Sync")
    table.add_column("Series", style="cyan")
    table.add_column("Pages", justify="right")
    table.add_column("Inserted", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Stored", justify="right")
    table.add_column("Status")

    for kind, result in results.items():
        if result.throttled:
            status = "[yellow]cooling down[/yellow]"
        elif result.already_covered:
            status = "up to date"
        elif result.missing_slots:
            status = f"[yellow]{result.missing_slots} gap slot(s)[/yellow]"
        else:
            status = "[green]synced[/green]"
        table.add_row(
            kind.value,
            str(result.pages_fetched),
            str(result.inserted),
            str(result.updated),
            str(result.count),
            status,
        )

    console.print(table)


# Cost commands
@cli.command()
@click.option("--tariff", "tariff_code", help="Tariff code, manualPlan or savedAccount")
@click.option("--from", "start", required=True, type=click.DateTime(formats=DATE_FORMATS), help="Start (local time)")
@click.option("--to", "end", required=True, type=click.DateTime(formats=DATE_FORMATS), help="End (local time)")
@click.option(
    "--interval",
    "interval_type",
    default=IntervalType.CUSTOM.value,
    type=click.Choice([t.value for t in IntervalType], case_sensitive=False),
    help="Interval label (DAILY clips to stored consumption)",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def cost(ctx, tariff_code, start, end, interval_type, as_json):
    """Calculate the cost of a tariff over a date range."""
    settings = ctx.obj["settings"]
    try:
        tariff_code = settings.require_tariff_code(tariff_code)
        with _client(ctx) as client:
            service = TariffCostService(_store(ctx), settings, client=client)
            calc = service.compute_cost(
                tariff_code,
                _local(ctx, start),
                _local(ctx, end),
                IntervalType(interval_type.upper()),
            )
    except (CalculationError, OctopusAPIError, ValueError) as e:
        _report_error(e)
        ctx.exit(1)

    _print_calculation(ctx, calc, as_json)


@cli.command()
@click.option("--date", "reference", type=click.DateTime(formats=["%Y-%m-%d"]), help="Any day in the period (default: today)")
@click.option(
    "--interval",
    "interval_type",
    default=IntervalType.MONTHLY.value,
    type=click.Choice(PERIOD_TYPES, case_sensitive=False),
    help="Calendar period",
)
@click.option("--tariff", "tariff_code", help="Tariff code, manualPlan or savedAccount")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def period(ctx, reference, interval_type, tariff_code, as_json):
    """Calculate the cost of a calendar day, week, month or quarter."""
    settings = ctx.obj["settings"]
    day = reference.date() if reference else date.today()
    try:
        with _client(ctx) as client:
            service = TariffCostService(_store(ctx), settings, client=client)
            calc = service.compute_cost_for_period(day, IntervalType(interval_type.upper()), tariff_code)
    except (CalculationError, OctopusAPIError, ValueError) as e:
        _report_error(e)
        ctx.exit(1)

    _print_calculation(ctx, calc, as_json)


@cli.command()
@click.option("--from", "start", required=True, type=click.DateTime(formats=DATE_FORMATS), help="Start (local time)")
@click.option("--to", "end", required=True, type=click.DateTime(formats=DATE_FORMATS), help="End (local time)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def account(ctx, start, end, as_json):
    """Calculate cost across the configured tariff agreements."""
    settings = ctx.obj["settings"]
    try:
        with _client(ctx) as client:
            service = TariffCostService(_store(ctx), settings, client=client)
            calc = service.compute_cost_for_account(None, _local(ctx, start), _local(ctx, end))
    except (CalculationError, OctopusAPIError, ValueError) as e:
        _report_error(e)
        ctx.exit(1)

    _print_calculation(ctx, calc, as_json)


# Cache commands
@cli.group()
def cache():
    """Calculation cache commands."""
    pass


@cache.command("clear")
@click.option("--tariff", "tariff_code", help="Only this tariff (or savedAccount/manualPlan)")
@click.pass_context
def cache_clear(ctx, tariff_code):
    """Delete stored cost calculations."""
    service = TariffCostService(_store(ctx), ctx.obj["settings"])
    count = service.reset_cache(tariff_code)
    console.print(f"[green]Deleted {count} stored calculation(s)[/green]")


if __name__ == "__main__":
    cli()
