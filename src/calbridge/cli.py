"""Command-line interface with Rich formatting."""

import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
from dateutil.parser import isoparse
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm
import structlog

from . import __version__
from .alerts import AlertService
from .bridge_manager import BridgeManager
from .bridges.base import BridgeError, BridgeNotFoundError
from .config import Settings, load_settings, create_example_config
from .database import DatabaseManager
from .models import SyncOptions, SyncReport, SyncStatus, ensure_utc
from .queue import create_deletion_queue

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, debug: bool = False) -> None:
    """Set up structured logging."""
    import logging

    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format="%(message)s")
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def async_command(f):
    """Decorator to wrap async click commands."""
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        return asyncio.run(f(ctx, *args, **kwargs))
    wrapper.__name__ = f.__name__
    wrapper.__doc__ = f.__doc__
    return wrapper


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return ensure_utc(isoparse(value))
    except ValueError:
        raise click.BadParameter(f"'{value}' is not an ISO date")


def _require_settings(settings: Settings) -> None:
    missing_fields = settings.validate_required_settings()
    if missing_fields:
        console.print(Panel(
            f"[red]Missing required configuration fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields) +
            f"\n\nPlease set these environment variables or create a configuration file.\n" +
            f"Use [bold]calbridge config create[/bold] to create an example file.",
            title="Configuration Error"
        ))
        sys.exit(1)


def _alert_service(settings: Settings) -> AlertService:
    """Alert store access without building the bridges."""
    db_manager = DatabaseManager(settings)
    db_manager.init_db()
    return AlertService(
        db_manager, create_deletion_queue(settings, db_manager), settings.sync_config,
        webhook_url=settings.alert_webhook_url
    )


@click.group()
@click.version_option(version=__version__)
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """calbridge - keep booking-system reservations and Outlook calendars in step.

    Reservations are pushed to the paired Outlook calendars, externally
    created Outlook events are pulled back as reservations, and deletions
    on either side are propagated as cancellations.
    """
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
        if debug:
            settings.debug = True
        if verbose:
            settings.log_level = 'DEBUG'

        ctx.obj['settings'] = settings

        setup_logging(settings.log_level, settings.debug)

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--host', default='0.0.0.0', help='Bind host for HTTP server')
@click.option('--port', default=8080, type=int, help='Bind port for HTTP server')
def serve(host, port):
    """Run the HTTP server with the background sync loop (container friendly)."""
    try:
        import uvicorn
        uvicorn.run("calbridge.server:app", host=host, port=port, reload=False)
    except Exception as e:
        console.print(f"[red]Failed to start server: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--source', '-s', required=True, help='Source bridge name')
@click.option('--target', '-t', required=True, help='Target bridge name')
@click.option('--source-calendar', required=True, help='Calendar or resource ID on the source bridge')
@click.option('--target-calendar', required=True, help='Calendar or resource ID on the target bridge')
@click.option('--start', help='Window start (ISO date)')
@click.option('--end', help='Window end (ISO date)')
@click.option('--dry-run', '-n', is_flag=True,
              help='Show what would be synced without making changes')
@click.option('--handle-deletions/--no-handle-deletions', default=None,
              help='Enqueue deletion checks for vanished source records')
@async_command
async def sync(ctx, source, target, source_calendar, target_calendar, start, end, dry_run, handle_deletions):
    """Synchronize one calendar from a source bridge to a target bridge."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    start_date = _parse_date(start)
    end_date = _parse_date(end)
    options = SyncOptions(
        handle_deletions=settings.sync_config.handle_deletions if handle_deletions is None else handle_deletions,
        dry_run=dry_run or settings.sync_config.dry_run,
    )

    try:
        async with BridgeManager.from_settings(settings) as manager:
            console.print("🚀 Synchronizing calendars...")
            report = await manager.sync(
                source, target, source_calendar, target_calendar,
                start_date=start_date, end_date=end_date, options=options,
            )
            console.print("✅ Sync completed")
    except (BridgeNotFoundError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("[yellow]Sync cancelled by user[/yellow]")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Sync failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)

    _display_sync_report(report)


@cli.command('sync-all')
@click.option('--dry-run', '-n', is_flag=True, help='Show what would be synced without making changes')
@async_command
async def sync_all(ctx, dry_run):
    """Synchronize every enabled calendar pair."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    pairs = settings.sync_config.get_active_pairs()
    if not pairs:
        console.print("[yellow]No calendar pairs configured (SYNC_CONFIG__CALENDAR_PAIRS)[/yellow]")
        return

    options = SyncOptions(handle_deletions=settings.sync_config.handle_deletions, dry_run=dry_run)
    try:
        async with BridgeManager.from_settings(settings) as manager:
            reports = await manager.sync_all_pairs(options)
    except Exception as e:
        console.print(f"[red]Sync failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)

    for report in reports:
        _display_sync_report(report)
    if any(not report.success for report in reports):
        sys.exit(1)


@cli.command()
@async_command
async def poll(ctx):
    """Poll tracked remote calendars for changes and deletions."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    try:
        async with BridgeManager.from_settings(settings) as manager:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True
            ) as progress:
                progress.add_task("Polling calendars...", total=None)
                report = await manager.poll_changes()
    except Exception as e:
        console.print(f"[red]Polling failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)

    table = Table(show_header=True, header_style="bold magenta", title="Poll Results")
    table.add_column("Calendar", style="cyan")
    table.add_column("Mode")
    table.add_column("Changes", justify="center")
    table.add_column("Deletions", justify="center")
    table.add_column("New", justify="center")
    table.add_column("Status")
    for result in report.calendars:
        mode = "delta" if result.used_cursor else "snapshot"
        if result.fell_back:
            mode += " (cursor reset)"
        status = "[green]✓[/green]" if result.healthy and not result.error else f"[red]✗ {result.error or 'unhealthy'}[/red]"
        table.add_row(
            result.calendar_id, mode, str(result.changes_detected),
            str(result.deletions_enqueued), str(result.new_mappings), status
        )
    console.print(table)
    _display_errors(report.errors)


@cli.command('process-deletions')
@async_command
async def process_deletions(ctx):
    """Drain the deletion check queue."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    try:
        async with BridgeManager.from_settings(settings) as manager:
            report = await manager.process_deletion_queue()
    except Exception as e:
        console.print(f"[red]Deletion processing failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)

    console.print(
        f"Processed {report.processed} checks: [green]{report.cancelled} cancelled[/green], "
        f"{report.no_op} unchanged, [yellow]{report.retried} retried[/yellow], [red]{report.failed} failed[/red]"
    )
    _display_errors(report.errors)


@cli.command('detect-cancellations')
@async_command
async def detect_cancellations(ctx):
    """Propagate local cancellations and detect reactivated reservations."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    try:
        async with BridgeManager.from_settings(settings) as manager:
            report = await manager.detect_and_sync_cancellations()
    except Exception as e:
        console.print(f"[red]Cancellation scan failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)

    console.print(
        f"Checked {report.processed} mappings: [red]{report.cancelled} cancelled[/red], "
        f"[green]{report.reactivated} reactivated[/green]"
    )
    _display_errors(report.errors)


@cli.command()
@click.option('--json', 'as_json', is_flag=True, help='Print the raw health document')
@async_command
async def health(ctx, as_json):
    """Show bridge health, polling state and queue depth."""
    settings = ctx.obj['settings']

    try:
        async with BridgeManager.from_settings(settings) as manager:
            status = await manager.health_status()
    except Exception as e:
        console.print(f"[red]Failed to get health: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(status, indent=2, default=str))
        return
    _display_health(status)
    if status['status'] != 'healthy':
        sys.exit(1)


@cli.command()
@click.pass_context
def bridges(ctx):
    """List registered bridges and their capabilities."""
    settings = ctx.obj['settings']
    try:
        manager = BridgeManager.from_settings(settings)
    except ValueError as e:
        console.print(f"[red]Cannot build bridges: {e}[/red]")
        sys.exit(1)

    table = Table(show_header=True, header_style="bold magenta", title="Bridges")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Role")
    table.add_column("Delta", justify="center")
    table.add_column("Webhooks", justify="center")
    table.add_column("Batch", justify="right")

    for info in manager.get_all_bridges_info():
        caps = info['capabilities']
        table.add_row(
            info['name'], info['bridge_type'], info['role'],
            "✓" if caps['supports_delta'] else "-",
            "✓" if caps['supports_webhooks'] else "-",
            str(caps['max_events_per_request']),
        )
    console.print(table)


@cli.command()
@click.option('--status', '-s', 'statuses', multiple=True,
              type=click.Choice([status.value for status in SyncStatus]),
              help='Only show mappings with this status (repeatable)')
@click.option('--resource', '-r', help='Only show mappings for this resource')
@click.option('--limit', '-l', default=50, type=int, help='Maximum rows to show')
@click.pass_context
def mappings(ctx, statuses, resource, limit):
    """List reservation/event mappings."""
    settings = ctx.obj['settings']
    db_manager = DatabaseManager(settings)
    db_manager.init_db()

    with db_manager.get_session() as session:
        rows = db_manager.list_mappings(
            session, statuses=list(statuses) or None, resource_id=resource, limit=limit
        )
        stats = db_manager.get_mapping_statistics(session)

    if not rows:
        console.print("[yellow]No mappings found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta", title="Mappings")
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Reservation", style="cyan")
    table.add_column("Resource")
    table.add_column("Remote event")
    table.add_column("Direction")
    table.add_column("Status")
    table.add_column("Last sync", style="dim")

    status_colors = {
        SyncStatus.SYNCED.value: 'green',
        SyncStatus.PENDING.value: 'yellow',
        SyncStatus.ERROR.value: 'red',
        SyncStatus.CONFLICT.value: 'magenta',
        SyncStatus.CANCELLED.value: 'dim',
    }
    for row in rows:
        color = status_colors.get(row.sync_status, 'white')
        reservation = f"{row.source_kind}:{row.source_id}" if row.source_id else "-"
        remote = row.remote_event_id or "-"
        if len(remote) > 24:
            remote = remote[:21] + "..."
        last_sync = ensure_utc(row.last_sync_at).strftime("%m-%d %H:%M") if row.last_sync_at else "-"
        table.add_row(
            str(row.id), reservation, row.resource_id, remote, row.sync_direction,
            f"[{color}]{row.sync_status}[/{color}]", last_sync
        )
    console.print(table)
    console.print(
        f"[dim]{stats['total']} mappings: " +
        ", ".join(f"{status.value} {stats[status.value]}" for status in SyncStatus) + "[/dim]"
    )


@cli.group()
def subscriptions():
    """Webhook subscription management commands."""
    pass


@subscriptions.command('renew')
@async_command
async def renew_subscriptions(ctx):
    """Renew subscriptions that are about to expire."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    try:
        async with BridgeManager.from_settings(settings) as manager:
            result = await manager.renew_subscriptions()
    except Exception as e:
        console.print(f"[red]Renewal failed: {e}[/red]")
        sys.exit(1)

    console.print(
        f"Renewed {result.get('renewed', 0)}, recreated {result.get('recreated', 0)}, "
        f"failed {result.get('failed', 0)}"
    )
    _display_errors(result.get('errors', []))


@subscriptions.command('create')
@click.option('--bridge', '-b', default='outlook', help='Bridge to subscribe on')
@click.option('--calendar', '-c', 'calendar_id', required=True, help='Remote calendar ID')
@click.option('--resource', '-r', help='Paired local resource ID')
@click.option('--url', help='Notification URL (defaults to WEBHOOK_NOTIFICATION_URL)')
@async_command
async def create_subscription(ctx, bridge, calendar_id, resource, url):
    """Subscribe to change notifications for a calendar."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    try:
        async with BridgeManager.from_settings(settings) as manager:
            subscription = await manager.subscribe_calendar(bridge, calendar_id, url, resource)
    except (BridgeError, ValueError) as e:
        console.print(f"[red]Failed to subscribe: {e}[/red]")
        sys.exit(1)

    if subscription is None:
        console.print(f"[yellow]{bridge} does not support webhooks; {calendar_id} is covered by polling[/yellow]")
        return
    console.print(Panel(
        f"Subscription: {subscription['subscription_id']}\n"
        f"Calendar: {subscription['calendar_id']}\n"
        f"Expires: {subscription['expires_at']}",
        title="[green]Subscribed[/green]",
        border_style="green"
    ))


@subscriptions.command('list')
@click.option('--all', 'show_all', is_flag=True, help='Include inactive subscriptions')
@click.pass_context
def list_subscriptions(ctx, show_all):
    """List stored webhook subscriptions."""
    settings = ctx.obj['settings']
    db_manager = DatabaseManager(settings)
    db_manager.init_db()

    with db_manager.get_session() as session:
        rows = db_manager.list_subscriptions(session) if show_all else db_manager.get_active_subscriptions(session)

    if not rows:
        console.print("[yellow]No subscriptions found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta", title="Webhook Subscriptions")
    table.add_column("Subscription", style="cyan")
    table.add_column("Bridge")
    table.add_column("Calendar")
    table.add_column("Expires")
    table.add_column("Notifications", justify="right")
    table.add_column("Active", justify="center")
    for row in rows:
        table.add_row(
            row.subscription_id, row.bridge_name, row.calendar_id,
            ensure_utc(row.expires_at).strftime("%Y-%m-%d %H:%M"),
            str(row.notification_count), "✓" if row.is_active else "-"
        )
    console.print(table)


@cli.group()
def alerts():
    """Operator alert commands."""
    pass


@alerts.command('check')
@async_command
async def check_alerts(ctx):
    """Run the alert checks and store any alerts raised."""
    settings = ctx.obj['settings']

    try:
        async with BridgeManager.from_settings(settings) as manager:
            report = await manager.check_and_alert()
    except Exception as e:
        console.print(f"[red]Alert check failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)

    if not report.alerts:
        console.print("[green]✓ No alerts raised[/green]")
    for alert in report.alerts:
        colour = "red" if alert.severity.value == 'critical' else "yellow"
        console.print(f"[{colour}]{alert.severity.value.upper()}[/{colour}] {alert.alert_type}: {alert.message}")
    _display_errors(report.errors)
    if any(alert.severity.value == 'critical' for alert in report.alerts):
        sys.exit(2)


@alerts.command('list')
@click.option('--hours', default=24, type=int, help='Look back this many hours')
@click.option('--limit', '-l', default=50, type=int, help='Maximum rows to show')
@click.option('--unacknowledged', '-u', is_flag=True, help='Only show unacknowledged alerts')
@click.pass_context
def list_alerts(ctx, hours, limit, unacknowledged):
    """List recent alerts."""
    settings = ctx.obj['settings']
    alert_service = _alert_service(settings)

    rows = alert_service.get_recent_alerts(hours=hours, limit=limit, unacknowledged_only=unacknowledged)
    stats = alert_service.get_alert_statistics(hours=hours)
    if not rows:
        console.print(f"[green]No alerts in the last {hours} hours[/green]")
        return

    table = Table(show_header=True, header_style="bold magenta", title="Alerts")
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Time", style="dim")
    table.add_column("Severity")
    table.add_column("Type", style="cyan")
    table.add_column("Message")
    table.add_column("Ack", justify="center")
    severity_colors = {'critical': 'red', 'warning': 'yellow', 'info': 'blue'}
    for alert in rows:
        color = severity_colors.get(alert.severity.value, 'white')
        table.add_row(
            str(alert.id), alert.created_at.strftime("%m-%d %H:%M"),
            f"[{color}]{alert.severity.value}[/{color}]", alert.alert_type, alert.message,
            "✓" if alert.acknowledged_at else "-"
        )
    console.print(table)
    console.print(
        f"[dim]critical {stats['critical']}, warning {stats['warning']}, info {stats['info']}; "
        f"{stats['unacknowledged']} unacknowledged[/dim]"
    )


@alerts.command('ack')
@click.argument('alert_id', type=int)
@click.option('--by', 'acknowledged_by', default='cli', help='Who acknowledged the alert')
@click.pass_context
def acknowledge_alert(ctx, alert_id, acknowledged_by):
    """Acknowledge an alert."""
    settings = ctx.obj['settings']
    alert_service = _alert_service(settings)

    alert = alert_service.acknowledge_alert(alert_id, acknowledged_by)
    if alert is None:
        console.print(f"[red]Alert {alert_id} not found[/red]")
        sys.exit(1)
    console.print(f"[green]✓ Alert {alert_id} acknowledged by {alert.acknowledged_by}[/green]")


@alerts.command('clear')
@click.option('--days', '-d', type=int, help='Delete alerts older than this (default: retention setting)')
@click.pass_context
def clear_alerts(ctx, days):
    """Delete old alerts."""
    settings = ctx.obj['settings']
    alert_service = _alert_service(settings)

    deleted = alert_service.clear_old_alerts(days)
    console.print(f"[green]✓ Deleted {deleted} alerts[/green]")


@cli.command()
@click.option('--interval', '-i', type=int,
              help='Sync interval in minutes (overrides config)')
@click.option('--dry-run', '-n', is_flag=True,
              help='Run in dry-run mode')
@click.option('--max-runs', type=int,
              help='Maximum number of cycles (default: infinite)')
@async_command
async def daemon(ctx, interval, dry_run, max_runs):
    """Run sync, polling, deletion and cancellation passes continuously."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    if interval:
        settings.sync_config.sync_interval_minutes = interval

    sync_interval = settings.sync_config.sync_interval_minutes

    if dry_run:
        console.print("[yellow]Running daemon in dry-run mode[/yellow]")

    console.print(f"[green]Starting calbridge daemon[/green] - interval: {sync_interval} minutes")

    options = SyncOptions(handle_deletions=settings.sync_config.handle_deletions, dry_run=dry_run)
    runs = 0
    try:
        async with BridgeManager.from_settings(settings) as manager:
            while True:
                if max_runs and runs >= max_runs:
                    console.print(f"[yellow]Reached maximum runs ({max_runs}), stopping daemon[/yellow]")
                    break

                console.print(f"\n[blue]--- Cycle {runs + 1} at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')} ---[/blue]")

                try:
                    for report in await manager.sync_all_pairs(options):
                        _display_sync_report(report, compact=True)
                    if not dry_run:
                        poll_report = await manager.poll_changes()
                        deletion_report = await manager.process_deletion_queue()
                        cancellation_report = await manager.detect_and_sync_cancellations()
                        await manager.renew_subscriptions()
                        alert_report = await manager.check_and_alert()
                        console.print(
                            f"[dim]poll: {poll_report.changes_detected} changes, "
                            f"{poll_report.deletions_enqueued} deletion checks; "
                            f"deletions: {deletion_report.cancelled} cancelled; "
                            f"cancellations: {cancellation_report.cancelled} cancelled, "
                            f"{cancellation_report.reactivated} reactivated; "
                            f"alerts: {alert_report.alerts_triggered}[/dim]"
                        )
                except Exception as e:
                    logger.error("daemon_cycle_failed", cycle=runs + 1, error=str(e), error_type=type(e).__name__)
                    console.print(f"[red]Cycle failed: {e}[/red]")
                    if settings.debug:
                        console.print_exception()

                runs += 1
                if max_runs and runs >= max_runs:
                    break

                console.print(f"[dim]Next cycle in {sync_interval} minutes...[/dim]")
                await asyncio.sleep(sync_interval * 60)

    except KeyboardInterrupt:
        console.print("\n[yellow]Daemon stopped by user[/yellow]")
        sys.exit(0)


@cli.group()
def config():
    """Configuration management commands."""
    pass


@config.command('create')
@click.option('--path', '-p', type=click.Path(), default='.env',
              help='Path to create config file')
@click.option('--force', '-f', is_flag=True,
              help='Overwrite existing file')
def create_config(path, force):
    """Create an example configuration file."""
    config_path = Path(path)

    if config_path.exists() and not force:
        if not Confirm.ask(f"File {path} already exists. Overwrite?"):
            console.print("[yellow]Configuration creation cancelled[/yellow]")
            return

    try:
        create_example_config(config_path)
        console.print(f"[green]Configuration file created at {path}[/green]")
        console.print("Please edit the file with your actual credentials.")
    except OSError as e:
        console.print(f"[red]Failed to create configuration file: {e}[/red]")
        sys.exit(1)


@config.command('validate')
@click.pass_context
def validate_config(ctx):
    """Validate the current configuration."""
    settings = ctx.obj['settings']

    missing_fields = settings.validate_required_settings()

    if missing_fields:
        console.print(Panel(
            f"[red]Missing required fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields),
            title="Configuration Validation",
            border_style="red"
        ))
        sys.exit(1)
    else:
        pairs = settings.sync_config.get_active_pairs()
        console.print(Panel(
            "[green]✓ All required configuration fields are present[/green]\n" +
            f"{len(pairs)} active calendar pair(s)" +
            "".join(f"\n• {pair}" for pair in pairs),
            title="Configuration Validation",
            border_style="green"
        ))


@cli.command('init-db')
@click.pass_context
def init_db(ctx):
    """Create database tables."""
    settings = ctx.obj['settings']

    try:
        db_manager = DatabaseManager(settings)
        db_manager.init_db()
        console.print(f"[green]✓ Database initialized at {settings.database_url}[/green]")
    except Exception as e:
        console.print(f"[red]Failed to initialize database: {e}[/red]")
        sys.exit(1)


def _display_sync_report(report: SyncReport, compact: bool = False) -> None:
    """Display sync results."""
    header = f"{report.source_bridge}:{report.source_calendar_id} → {report.target_bridge}:{report.target_calendar_id}"
    if compact:
        colour = "green" if report.success else "red"
        console.print(
            f"[{colour}]{header}: {report.created} created, {report.updated} updated, "
            f"{report.skipped} skipped, {len(report.conflicts)} conflicts, {len(report.errors)} errors[/{colour}]"
        )
        return

    if report.dry_run:
        table = Table(show_header=True, header_style="bold magenta", title=f"Dry run: {header}")
        table.add_column("Event", style="cyan")
        table.add_column("Subject")
        table.add_column("Start", style="dim")
        table.add_column("Action")
        for entry in report.events_to_process:
            table.add_row(entry['event_id'], entry['subject'] or "", entry['start'] or "", entry['action'])
        console.print(table)
    else:
        table = Table(show_header=True, header_style="bold magenta", title=f"Sync Results: {header}")
        table.add_column("Found", justify="center")
        table.add_column("Created", justify="center")
        table.add_column("Updated", justify="center")
        table.add_column("Skipped", justify="center", style="dim")
        table.add_column("Deletion checks", justify="center")
        table.add_row(
            str(report.source_events_found), str(report.created), str(report.updated),
            str(report.skipped), str(report.deletions_enqueued)
        )
        console.print(table)

    if report.conflicts:
        console.print(Panel(
            "\n".join(f"• {conflict['event_id']}: {conflict['reason']}" for conflict in report.conflicts),
            title=f"[yellow]{len(report.conflicts)} Conflicts[/yellow]",
            border_style="yellow"
        ))

    _display_errors(report.errors)

    if report.completed_at:
        duration = ensure_utc(report.completed_at) - ensure_utc(report.started_at)
        console.print(f"[dim]Completed in {duration.total_seconds():.1f} seconds[/dim]")


def _display_errors(errors: List[Dict[str, Any]]) -> None:
    if not errors:
        return
    console.print(Panel(
        "\n".join(f"• {error.get('error_type', 'Error')}: {error.get('error')}" for error in errors),
        title="[red]Errors[/red]",
        border_style="red"
    ))


def _display_health(status: Dict[str, Any]) -> None:
    """Display health status."""
    colour = "green" if status['status'] == 'healthy' else "yellow"
    console.print(f"Overall: [{colour}]{status['status']}[/{colour}]")

    table = Table(show_header=True, header_style="bold magenta", title="Bridges")
    table.add_column("Bridge", style="cyan")
    table.add_column("Status")
    table.add_column("Calendars", justify="center")
    table.add_column("Response (ms)", justify="right")
    for name, check in status['bridges'].items():
        if check['status'] == 'healthy':
            state = "[green]✓ Connected[/green]"
            calendars = str(check.get('calendars_count', 0))
        else:
            state = f"[red]✗ {check.get('error_type', 'Error')}[/red]"
            calendars = "N/A"
        table.add_row(name, state, calendars, str(check.get('response_time_ms', '')))
    console.print(table)

    if status['polling']:
        table = Table(show_header=True, header_style="bold magenta", title="Polling")
        table.add_column("Calendar", style="cyan")
        table.add_column("Healthy", justify="center")
        table.add_column("Errors", justify="center")
        table.add_column("Last success", style="dim")
        for state in status['polling']:
            table.add_row(
                state['calendar_id'],
                "[green]✓[/green]" if state['healthy'] else "[red]✗[/red]",
                str(state['consecutive_error_count']),
                state['last_successful_poll_at'] or "never",
            )
        console.print(table)

    queue = ", ".join(f"{key} {value}" for key, value in status['queue'].items())
    console.print(f"[bold]Queue:[/bold] {queue}")
    console.print(f"[bold]Mappings:[/bold] {status['mappings'].get('total', 0)} total")
    alerts = status.get('alerts') or {}
    if alerts.get('unacknowledged'):
        console.print(
            f"[bold]Alerts (24h):[/bold] [red]{alerts.get('critical', 0)} critical[/red], "
            f"[yellow]{alerts.get('warning', 0)} warning[/yellow], {alerts['unacknowledged']} unacknowledged"
        )


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
