"""Command-line interface with Rich formatting."""

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm
import structlog

from . import __version__
from .activity import ActivityLogger
from .backfill import BACKFILL_FIELDS
from .config import load_settings, create_example_config
from .database import DatabaseManager
from .errors import SyncError
from .models import HistoricalSyncStatus, SyncStatus
from .sync_engine import SyncEngine

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, debug: bool = False) -> None:
    """Set up structured logging."""
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
    # Library modules log through the stdlib
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format="%(message)s")


def async_command(f):
    """Decorator to wrap async click commands."""
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        return asyncio.run(f(ctx, *args, **kwargs))
    wrapper.__name__ = f.__name__
    wrapper.__doc__ = f.__doc__
    return wrapper


def _require_settings(settings) -> None:
    missing_fields = settings.validate_required_settings()
    if missing_fields:
        console.print(Panel(
            f"[red]Missing required configuration fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields) +
            f"\n\nPlease set these environment variables or create a configuration file.\n" +
            f"Use [bold]notion-gcal-sync config create[/bold] to create an example file.",
            title="Configuration Error"
        ))
        sys.exit(1)


def _fail(settings, message: str) -> None:
    console.print(f"[red]{message}[/red]")
    if settings.debug:
        console.print_exception()
    sys.exit(1)


def _offline_engine(ctx) -> SyncEngine:
    """Engine for commands that only touch local state."""
    settings = ctx.obj['settings']
    db_manager = DatabaseManager(settings)
    db_manager.init_db()
    return SyncEngine(settings, db_manager=db_manager)


@click.group()
@click.version_option(version=__version__)
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """Notion <-> Google Calendar two-way synchronization.

    Changes arrive through webhooks (see 'serve'); the commands below trigger
    manual syncs, inspect activity and manage historical backfills.
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
    """Run the webhook HTTP server (container friendly)."""
    try:
        import uvicorn
        uvicorn.run("notion_gcal_sync.server:app", host=host, port=port, reload=False)
    except Exception as e:
        console.print(f"[red]Failed to start server: {e}[/red]")
        sys.exit(1)


@cli.command()
@async_command
async def sync(ctx):
    """Reconcile both systems once."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    try:
        console.print("🔧 Initializing sync engine...")
        async with SyncEngine(settings) as sync_engine:
            console.print("🚀 Synchronizing...")
            summary = await sync_engine.trigger_sync()
            console.print("✅ Sync completed")
        _display_sync_results(summary)
    except KeyboardInterrupt:
        console.print("[yellow]Sync cancelled by user[/yellow]")
        sys.exit(1)
    except Exception as e:
        _fail(settings, f"Sync failed: {e}")


@cli.command()
@async_command
async def status(ctx):
    """Show connection status, health and link counts."""
    settings = ctx.obj['settings']

    try:
        async with SyncEngine(settings) as sync_engine:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True
            ) as progress:
                progress.add_task("Checking status...", total=None)
                connection_results = await sync_engine.test_connections()
                sync_status = await sync_engine.get_status()

        _display_connection_status(connection_results)
        _display_sync_status(sync_status)

    except Exception as e:
        _fail(settings, f"Failed to get status: {e}")


@cli.command()
@click.option('--limit', '-l', default=20, type=int, help='Number of entries to show')
@async_command
async def logs(ctx, limit):
    """Show the most recent sync log entries."""
    settings = ctx.obj['settings']
    db_manager = DatabaseManager(settings)
    db_manager.init_db()

    entries = await ActivityLogger(settings, db_manager).recent_logs(limit)
    if not entries:
        console.print("[dim]No sync activity recorded yet[/dim]")
        return

    table = Table(show_header=True, header_style="bold magenta", title="Recent Activity")
    table.add_column("Time", style="dim")
    table.add_column("Direction", style="cyan")
    table.add_column("Operation")
    table.add_column("Item")
    table.add_column("Status")
    table.add_column("ms", justify="right", style="dim")

    for entry in entries:
        if entry.status == SyncStatus.SUCCESS:
            outcome = "[dim]skipped[/dim]" if entry.skipped else "[green]success[/green]"
        else:
            outcome = f"[red]failure[/red] {entry.error or ''}"
        table.add_row(
            entry.timestamp.strftime("%m-%d %H:%M:%S"),
            entry.direction.value.replace('_to_', ' → '),
            entry.operation.value if entry.operation else "-",
            entry.item_title or entry.item_id,
            outcome,
            str(entry.processing_time_ms),
        )
    console.print(table)


@cli.command()
@click.option('--window', '-w', default='24h',
              type=click.Choice(['24h', '7d', '30d', '90d']), help='Aggregation window')
@async_command
async def metrics(ctx, window):
    """Show success/failure metrics for a time window."""
    settings = ctx.obj['settings']
    db_manager = DatabaseManager(settings)
    db_manager.init_db()

    result = await ActivityLogger(settings, db_manager).metrics(window)
    health = "[green]healthy[/green]" if result.healthy else "[red]unhealthy[/red]"
    console.print(Panel(
        f"Successes: [green]{result.total_success}[/green]\n"
        f"Failures: [red]{result.total_failures}[/red]\n"
        f"Last Notion → Google: {result.last_sync_notion_to_google or 'never'}\n"
        f"Last Google → Notion: {result.last_sync_google_to_notion or 'never'}\n"
        + "\n".join(f"{op}: {count}" for op, count in result.operation_counts.items())
        + f"\n\nStatus: {health}",
        title=f"Metrics ({result.window.value})"
    ))


@cli.group()
def historical():
    """Backfill past Google Calendar events into Notion."""
    pass


@historical.command('preview')
@click.option('--days', '-d', required=True, type=int, help='Days to look back')
@async_command
async def historical_preview(ctx, days):
    """Show what a historical sync would touch."""
    settings = ctx.obj['settings']
    try:
        async with SyncEngine(settings) as engine:
            preview = await engine.historical.preview(days)
    except SyncError as e:
        _fail(settings, f"Preview failed: {e}")
        return

    table = Table(show_header=True, header_style="bold magenta", title=f"Last {preview.days} days")
    table.add_column("Total", justify="center")
    table.add_column("New", justify="center", style="green")
    table.add_column("Already synced", justify="center", style="dim")
    table.add_column("Recurring instances", justify="center")
    table.add_row(
        str(preview.total), str(preview.new_events),
        str(preview.already_synced), str(preview.recurring_instances)
    )
    console.print(table)


@historical.command('start')
@click.option('--days', '-d', required=True, type=int, help='Days to look back')
@async_command
async def historical_start(ctx, days):
    """Run a historical sync in the foreground."""
    settings = ctx.obj['settings']
    _require_settings(settings)
    try:
        async with SyncEngine(settings) as engine:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True
            ) as progress:
                progress.add_task(f"Syncing the last {days} days...", total=None)
                result = await engine.historical.start(days, wait=True)
    except SyncError as e:
        _fail(settings, f"Historical sync failed: {e}")
        return

    _display_historical_progress(result)


@historical.command('progress')
@click.pass_context
def historical_progress(ctx):
    """Show the state of the current or last historical sync."""
    _display_historical_progress(_offline_engine(ctx).historical.progress())


@historical.command('cancel')
@click.pass_context
def historical_cancel(ctx):
    """Request cancellation of a running historical sync."""
    result = _offline_engine(ctx).historical.cancel()
    if result.status == HistoricalSyncStatus.CANCELLING:
        console.print("[yellow]Cancellation requested; the run stops before its next batch[/yellow]")
    else:
        console.print(f"[dim]Nothing to cancel (status: {result.status.value})[/dim]")


@historical.command('reset')
@click.option('--force', is_flag=True, help='Reset even if a run appears active')
@click.pass_context
def historical_reset(ctx, force):
    """Clear historical sync progress."""
    settings = ctx.obj['settings']
    try:
        _offline_engine(ctx).historical.reset(force=force)
    except SyncError as e:
        _fail(settings, f"{e} (use --force to override)")
        return
    console.print("[green]✓ Historical sync progress reset[/green]")


@cli.group()
def backfill():
    """Fill newly enabled fields on pages that are already synced."""
    pass


@backfill.command('start')
@click.option('--field', '-f', 'fields', multiple=True, required=True,
              type=click.Choice(BACKFILL_FIELDS), help='Field to backfill (repeatable)')
@async_command
async def backfill_start(ctx, fields):
    """Run a field backfill in the foreground."""
    settings = ctx.obj['settings']
    _require_settings(settings)
    try:
        async with SyncEngine(settings) as engine:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True
            ) as progress:
                progress.add_task(f"Backfilling {', '.join(fields)}...", total=None)
                result = await engine.backfill.start(list(fields), wait=True)
    except SyncError as e:
        _fail(settings, f"Field backfill failed: {e}")
        return

    _display_historical_progress(result, title="Field Backfill")


@backfill.command('progress')
@click.pass_context
def backfill_progress(ctx):
    """Show the state of the current or last field backfill."""
    _display_historical_progress(_offline_engine(ctx).backfill.progress(), title="Field Backfill")


@backfill.command('cancel')
@click.pass_context
def backfill_cancel(ctx):
    """Request cancellation of a running field backfill."""
    result = _offline_engine(ctx).backfill.cancel()
    if result.status == HistoricalSyncStatus.CANCELLING:
        console.print("[yellow]Cancellation requested; the backfill stops before its next batch[/yellow]")
    else:
        console.print(f"[dim]Nothing to cancel (status: {result.status.value})[/dim]")


@backfill.command('reset')
@click.option('--force', is_flag=True, help='Reset even if a run appears active')
@click.pass_context
def backfill_reset(ctx, force):
    """Clear field backfill progress."""
    settings = ctx.obj['settings']
    try:
        _offline_engine(ctx).backfill.reset(force=force)
    except SyncError as e:
        _fail(settings, f"{e} (use --force to override)")
        return
    console.print("[green]✓ Field backfill progress reset[/green]")


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
    except Exception as e:
        console.print(f"[red]Failed to create configuration file: {e}[/red]")


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
        console.print(Panel(
            "[green]✓ All required configuration fields are present[/green]\n"
            f"Synced fields: {', '.join(settings.field_mapping.enabled_fields())}",
            title="Configuration Validation",
            border_style="green"
        ))


@cli.command()
@click.confirmation_option(prompt='Are you sure you want to reset all sync data?')
@click.pass_context
def reset(ctx):
    """Reset links, logs and stored sync state."""
    settings = ctx.obj['settings']

    try:
        DatabaseManager(settings).reset_all()
        console.print("[green]✓ All sync data has been reset[/green]")
        console.print("[yellow]⚠️  Next sync will treat all items as new[/yellow]")
    except Exception as e:
        console.print(f"[red]Failed to reset sync data: {e}[/red]")
        sys.exit(1)


@cli.group()
def google():
    """Google-specific utilities."""
    pass


@google.command('watch')
@click.option('--address', '-a', required=True, help='Public HTTPS webhook URL for push notifications')
@click.option('--token', '-t', help='Shared secret to validate webhook (X-Goog-Channel-Token)')
@async_command
async def google_watch(ctx, address, token):
    """Register a Google push notification channel for the synced calendar."""
    settings = ctx.obj['settings']
    try:
        async with SyncEngine(settings) as engine:
            result = await engine.register_google_channel(address, token or settings.google_channel_token)
        console.print("[green]✓ Watch registered[/green]")
        console.print(json.dumps({
            'channelId': result.get('id'),
            'resourceId': result.get('resourceId'),
            'expiration': result.get('expiration'),
            'address': address,
        }, indent=2))
    except Exception as e:
        _fail(settings, f"Failed to register watch: {e}")


@google.command('unwatch')
@async_command
async def google_unwatch(ctx):
    """Stop the registered push notification channel."""
    settings = ctx.obj['settings']
    try:
        async with SyncEngine(settings) as engine:
            stopped = await engine.stop_google_channel()
    except Exception as e:
        _fail(settings, f"Failed to unwatch: {e}")
        return
    if stopped:
        console.print("[green]✓ Channel stopped[/green]")
    else:
        console.print("[yellow]No registered channel found[/yellow]")


@google.command('renew')
@click.option('--force', is_flag=True, help='Renew even if the channel is not close to expiry')
@async_command
async def google_renew(ctx, force):
    """Replace the push channel when it is about to expire."""
    settings = ctx.obj['settings']
    try:
        async with SyncEngine(settings) as engine:
            result = await engine.renew_google_channel_if_needed(force=force)
    except SyncError as e:
        _fail(settings, f"Failed to renew channel: {e}")
        return
    if result['status'] == 'renewed':
        console.print(f"[green]✓ Channel renewed, expires at {result['expires_at']}[/green]")
    elif result['status'] == 'not_needed':
        console.print(f"[dim]Renewal not needed yet (expires at {result['expires_at']})[/dim]")
    else:
        console.print("[yellow]No registered channel found[/yellow]")


@cli.group()
def notion():
    """Notion-specific utilities."""
    pass


@notion.command('set-token')
@click.argument('token')
@click.pass_context
def notion_set_token(ctx, token):
    """Replace the stored webhook verification token."""
    _offline_engine(ctx).store_notion_verification_token(token, replace=True)
    console.print("[green]✓ Verification token stored[/green]")


def _display_sync_results(summary):
    """Display manual sync results."""
    table = Table(show_header=True, header_style="bold magenta", title="Sync Results")
    table.add_column("Direction", style="cyan")
    table.add_column("Created", justify="center")
    table.add_column("Updated", justify="center")
    table.add_column("Deleted", justify="center")
    table.add_column("Skipped", justify="center", style="dim")
    table.add_column("Failed", justify="center", style="red")

    for direction, counts in summary.items():
        table.add_row(
            direction.replace('_to_', ' → ').title(),
            str(counts['created']),
            str(counts['updated']),
            str(counts['deleted']),
            str(counts['skipped']),
            str(counts['failed'])
        )

    console.print(table)


def _display_connection_status(connection_results):
    """Display connection status."""
    table = Table(show_header=True, header_style="bold magenta", title="Connection Status")
    table.add_column("Service", style="cyan")
    table.add_column("Status")

    for service_name, result in connection_results.items():
        if result['success']:
            status = "[green]✓ Connected[/green]"
        else:
            status = f"[red]✗ {result.get('error_type', 'Error')}: {result.get('error', '')}[/red]"
        table.add_row(service_name.title(), status)

    console.print(table)

    problems = connection_results.get('notion', {}).get('schema_problems')
    if problems:
        console.print(Panel(
            "\n".join(f"• {problem}" for problem in problems),
            title="[yellow]Notion database does not match the field mapping[/yellow]",
            border_style="yellow"
        ))


def _display_sync_status(sync_status):
    """Display sync status."""
    health = "[green]healthy[/green]" if sync_status['healthy'] else "[red]unhealthy[/red]"
    console.print(f"\n[bold]Sync Status[/bold] ({health})")
    console.print(f"Linked items: {sync_status['linked_items']}")
    console.print(f"Successes (24h): {sync_status['total_success']}")
    console.print(f"Failures (24h): {sync_status['total_failures']}")
    console.print(f"Last Notion → Google: {sync_status['last_sync_notion_to_google'] or 'never'}")
    console.print(f"Last Google → Notion: {sync_status['last_sync_google_to_notion'] or 'never'}")
    console.print(f"Google push channel: {sync_status['google_channel_id'] or 'not registered'}")
    if sync_status['google_channel_expires_at']:
        renewal = " [yellow](renewal due)[/yellow]" if sync_status['google_channel_needs_renewal'] else ""
        console.print(f"Channel expires: {sync_status['google_channel_expires_at']}{renewal}")
    console.print(f"Notion webhook verified: {'yes' if sync_status['notion_webhook_verified'] else 'no'}")
    console.print(f"Historical sync: {sync_status['historical']['status']}")
    console.print(f"Field backfill: {sync_status['field_backfill']['status']}")


def _display_historical_progress(progress, title="Historical Sync"):
    """Display historical sync or field backfill progress."""
    status_color = {
        'completed': 'green',
        'failed': 'red',
        'running': 'yellow',
        'cancelling': 'yellow',
        'cancelled': 'yellow',
    }.get(progress.status.value, 'white')

    scope = f"Fields: {', '.join(progress.fields)}" if progress.fields else f"Days: {progress.days_requested or '-'}"

    console.print(Panel(
        f"Status: [{status_color}]{progress.status.value}[/{status_color}]\n"
        f"{scope}\n"
        f"Processed: {progress.items_processed}/{progress.items_total}\n"
        f"Created: {progress.created}  Updated: {progress.updated}  "
        f"Skipped: {progress.skipped}  Failed: {progress.failed}"
        + (f"\n\n[red]{progress.error}[/red]" if progress.error else ""),
        title=title
    ))
    if progress.errors:
        console.print(Panel(
            "\n".join(f"• {error}" for error in progress.errors[:20]),
            title="[red]Errors[/red]",
            border_style="red"
        ))


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
