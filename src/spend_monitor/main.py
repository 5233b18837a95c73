"""
Main CLI interface for multi-cloud spend monitoring.

Provides command-line access to the combined cost summary, trend statistics
and alert evaluation across AWS, Azure, and GCP.
"""

import asyncio
import json
import logging
import sys
from datetime import datetime, timedelta, timezone

import click

from .config.settings import load_config
from .monitoring.scheduler import EvaluationScheduler
from .providers.base import ProviderScope, TimeGranularity
from .services.cost_service import build_service, build_store
from .utils.periods import utc_today

logger = logging.getLogger(__name__)

PROVIDER_CHOICES = [scope.value for scope in ProviderScope]


def setup_logging(verbose: bool = False, level: str = "INFO"):
    """Configure logging based on verbosity settings."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Keep client library chatter out of the output
    noisy_loggers = ["boto3", "botocore", "urllib3", "httpx", "httpcore", "asyncpg"]
    for logger_name in noisy_loggers:
        logging.getLogger(logger_name).setLevel(logging.INFO if verbose else logging.WARNING)


def _echo_json(data):
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.option("--config", "-c", "config_file", type=click.Path(exists=True), help="Path to configuration file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging and debug output")
@click.pass_context
def cli(ctx, config_file, verbose):
    """Multi-Cloud Spend Monitor - track and alert on AWS, Azure, and GCP spend."""
    ctx.ensure_object(dict)

    # Load configuration
    try:
        config = load_config([config_file] if config_file else None)
    except Exception as e:
        click.echo(f"Error loading configuration: {e}", err=True)
        sys.exit(1)

    setup_logging(verbose, config.log_level)
    ctx.obj["config"] = config
    ctx.obj["verbose"] = verbose


def _display_summary_table(view):
    click.echo("\nMonth-to-date Cost Summary")
    click.echo("=" * 50)
    click.echo(f"Total Cost: {view.total_cost:.2f} {view.currency}")

    click.echo("\nProvider Breakdown:")
    for provider, status in view.provider_status.items():
        totals = view.per_provider.get(provider)
        if totals:
            click.echo(f"  {provider.label}: {totals.total_cost:.2f} {totals.currency}")
        else:
            click.echo(f"  {provider.label}: unavailable ({status})")

    if view.combined_services:
        click.echo("\nTop Services by Cost:")
        for service in view.combined_services[:10]:
            providers = ", ".join(sorted({c.provider.label for c in service.contributors}))
            click.echo(f"  {service.canonical_name}: {service.total_cost:.2f} {view.currency} ({providers})")


@cli.command()
@click.option(
    "--provider",
    type=click.Choice(PROVIDER_CHOICES),
    default="all",
    help="Cloud provider to summarize (default: all)",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
@click.pass_context
def summary(ctx, provider, output_format):
    """Show the combined month-to-date cost summary."""

    async def _summary():
        service = await build_service(ctx.obj["config"])
        try:
            return await service.get_combined_summary(ProviderScope(provider))
        finally:
            await service.close()

    try:
        view = asyncio.run(_summary())
    except Exception as e:
        click.echo(f"Cost summary failed: {e}", err=True)
        sys.exit(1)

    if output_format == "json":
        _echo_json(view.to_dict())
    else:
        _display_summary_table(view)


@cli.command()
@click.option(
    "--provider",
    type=click.Choice(PROVIDER_CHOICES),
    default="all",
    help="Cloud provider to analyze (default: all)",
)
@click.option("--start-date", type=click.DateTime(formats=["%Y-%m-%d"]), help="First day (default: 30 days ago)")
@click.option("--end-date", type=click.DateTime(formats=["%Y-%m-%d"]), help="Day after the last day (default: today)")
@click.option(
    "--granularity",
    type=click.Choice([g.value for g in TimeGranularity]),
    default="daily",
    help="Bucket size",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
@click.pass_context
def trends(ctx, provider, start_date, end_date, granularity, output_format):
    """Show the cost series and trend statistics for a period."""
    end = end_date.date() if end_date else utc_today()
    start = start_date.date() if start_date else end - timedelta(days=30)
    if start >= end:
        click.echo("Start date must be before end date", err=True)
        sys.exit(1)

    async def _trends():
        service = await build_service(ctx.obj["config"])
        try:
            return await service.get_trend_stats(
                ProviderScope(provider), start, end, TimeGranularity(granularity)
            )
        finally:
            await service.close()

    try:
        series, stats = asyncio.run(_trends())
    except Exception as e:
        click.echo(f"Trend analysis failed: {e}", err=True)
        sys.exit(1)

    if output_format == "json":
        _echo_json(
            {
                "series": [point.model_dump(mode="json") for point in series],
                "stats": stats.to_dict(),
            }
        )
        return

    click.echo(f"\nCost Trend ({start} to {end})")
    click.echo("=" * 50)
    click.echo(f"Average: {stats.average_daily:.2f}")
    click.echo(f"Highest: {stats.max_daily:.2f} on {stats.highest_day or '-'}")
    click.echo(f"Lowest:  {stats.min_daily:.2f} on {stats.lowest_day or '-'}")
    click.echo(f"Growth:  {stats.growth_rate * 100:+.1f}%")
    click.echo(f"Volatility: {stats.volatility:.3f}")


@cli.command()
@click.option("--deadline", type=float, help="Seconds after which remaining rules are deferred")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
@click.pass_context
def evaluate(ctx, deadline, output_format):
    """Run one alert evaluation pass."""

    async def _evaluate():
        service = await build_service(ctx.obj["config"])
        try:
            return await service.run_evaluation_pass(deadline_seconds=deadline)
        finally:
            await service.close()

    try:
        report = asyncio.run(_evaluate())
    except Exception as e:
        click.echo(f"Alert evaluation failed: {e}", err=True)
        sys.exit(1)

    if output_format == "json":
        _echo_json(report.to_dict())
        return

    click.echo(f"Evaluated {len(report.outcomes)} rules")
    for status, count in sorted(report.counts().items()):
        click.echo(f"  {status}: {count}")
    for outcome in report.triggered:
        for entry in outcome.entries:
            click.echo(f"  [{outcome.rule_id}] {entry.message}")


@cli.command()
@click.pass_context
def scheduler(ctx):
    """Evaluate alert rules on a fixed interval until interrupted."""
    config = ctx.obj["config"]

    async def _scheduler():
        service = await build_service(config)
        runner = EvaluationScheduler(
            service.evaluator,
            interval=config.evaluation_interval,
            safety_margin=config.pass_safety_margin,
        )
        try:
            await runner.run_forever()
        finally:
            await service.close()

    try:
        asyncio.run(_scheduler())
    except KeyboardInterrupt:
        click.echo("Scheduler stopped")


@cli.command()
@click.option("--rule-id", help="Only show entries of this rule")
@click.option("--limit", default=20, show_default=True, help="Maximum entries to show")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
@click.pass_context
def history(ctx, rule_id, limit, output_format):
    """Show recent alert history."""

    async def _history():
        store = await build_store(ctx.obj["config"])
        try:
            return await store.list_history(rule_id)
        finally:
            await store.close()

    try:
        entries = asyncio.run(_history())[:limit]
    except Exception as e:
        click.echo(f"Could not read alert history: {e}", err=True)
        sys.exit(1)

    if output_format == "json":
        _echo_json([entry.to_dict() for entry in entries])
        return

    if not entries:
        click.echo("No alert history")
        return
    for entry in entries:
        click.echo(f"{entry.triggered_at:%Y-%m-%d %H:%M} [{entry.rule_id}] {entry.provider}: {entry.message}")


@cli.command()
@click.option("--days", type=int, help="Keep this many days of history (default: from config)")
@click.pass_context
def cleanup_history(ctx, days):
    """Delete alert history older than the retention period."""
    config = ctx.obj["config"]
    retention = days if days is not None else config.history_retention_days
    cutoff = datetime.now(timezone.utc) - timedelta(days=retention)

    async def _cleanup():
        store = await build_store(config)
        try:
            return await store.cleanup_history(cutoff)
        finally:
            await store.close()

    try:
        removed = asyncio.run(_cleanup())
    except Exception as e:
        click.echo(f"History cleanup failed: {e}", err=True)
        sys.exit(1)

    click.echo(f"Removed {removed} history entries older than {retention} days")


@cli.command()
@click.pass_context
def config_info(ctx):
    """Display current configuration information."""
    info = ctx.obj["config"].to_dict()

    click.echo("Multi-Cloud Spend Monitor Configuration")
    click.echo("=" * 40)
    click.echo(f"Enabled Providers: {', '.join(info['enabled_providers']) or 'None'}")
    click.echo(f"Provider Timeout: {info['provider_timeout_seconds']:.0f}s")
    click.echo(f"Alert Cooldown: {info['cooldown_hours']:g}h")
    click.echo(f"Spike Baseline: {info['spike_baseline']}")
    click.echo(f"Evaluation Interval: {info['evaluation_interval_seconds']:.0f}s")
    click.echo(f"Notification Channel: {info['notification_channel']}")
    click.echo(f"Alert Store: {'PostgreSQL' if info['database_configured'] else 'in-memory'}")
    click.echo(f"Configured Rules: {info['configured_rules']}")


@cli.command()
def version():
    """Display version information."""
    from . import __version__

    click.echo(f"Multi-Cloud Spend Monitor v{__version__}")
    click.echo("Monitor spend across AWS, Azure, and GCP")


if __name__ == "__main__":
    cli()
