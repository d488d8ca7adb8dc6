"""CLI commands for running and inspecting external license syncs.

Usage:
    licsync sync run [--basic] [--no-duplicates] [--dry-run] [--bidirectional]
    licsync sync single APP_ID [--dry-run]
    licsync sync status
    licsync sync history [--limit N]
"""

import sys

import click

from ..errors import SyncInProgressError
from ..models import SyncResult
from ..reconciliation import SyncOptions
from .common import run_with_coordinator


@click.group(name="sync")
def cli():
    """External license sync commands."""
    pass


def _print_result(result: SyncResult) -> None:
    totals = result.totals
    click.echo(f"\nSync {result.operation_id or '(not started)'}")
    click.echo("=" * 70)
    click.echo("  Status: ", nl=False)
    if result.success:
        click.secho("success", fg="green")
    else:
        click.secho("failed", fg="red")
    if result.dry_run:
        click.secho("  Dry run: no license store was written", fg="yellow")
    click.echo(f"  Fetched: {totals.fetched}")
    click.echo(f"  Created: {totals.created}")
    click.echo(f"  Updated: {totals.updated}")
    click.echo(f"  Unchanged: {totals.unchanged}")
    click.echo(f"  Skipped: {totals.skipped}")
    click.echo(f"  Failed: {totals.failed}")
    click.echo(f"  Duplicates handled: {totals.duplicates_handled}")
    if totals.pushed:
        click.echo(f"  Pushed: {totals.pushed}")
    click.echo(f"  Duration: {result.duration_seconds:.1f}s")
    click.echo(f"  Circuit breaker: {result.circuit_breaker_state}")

    if result.error:
        click.echo(f"  Error ({result.error_type}): {result.error}")

    if result.errors:
        click.echo("\n  Record errors:")
        for failure in result.errors[:20]:
            click.echo(f"    {failure.identifier}: {failure.reason} [{failure.error_type}]")
        if len(result.errors) > 20:
            click.echo(f"    ... and {len(result.errors) - 20} more")


@cli.command(name="run")
@click.option("--basic", is_flag=True, help="Process records one at a time")
@click.option("--no-duplicates", is_flag=True, help="Skip duplicate detection")
@click.option("--dry-run", is_flag=True, help="Analyse without writing")
@click.option("--bidirectional", is_flag=True, help="Push pending internal licenses")
def run_sync(basic: bool, no_duplicates: bool, dry_run: bool, bidirectional: bool):
    """Run a full sync of external licenses.

    Examples:

        # Full sync with duplicate detection
        licsync sync run

        # See what a sync would change
        licsync sync run --dry-run
    """
    options = SyncOptions(
        comprehensive=not basic,
        detect_duplicates=not no_duplicates,
        dry_run=dry_run,
        bidirectional=bidirectional,
    )

    try:
        result = run_with_coordinator(lambda c: c.run_sync(options))
    except SyncInProgressError as e:
        click.echo(f"Sync already in progress (operation {e.operation_id})", err=True)
        sys.exit(2)

    _print_result(result)
    if not result.success:
        sys.exit(1)


@cli.command(name="single")
@click.argument("app_id")
@click.option("--dry-run", is_flag=True, help="Analyse without writing")
def sync_single(app_id: str, dry_run: bool):
    """Sync one external license by appId."""
    try:
        result = run_with_coordinator(lambda c: c.sync_single(app_id, dry_run=dry_run))
    except SyncInProgressError as e:
        click.echo(f"Sync already in progress (operation {e.operation_id})", err=True)
        sys.exit(2)

    _print_result(result)
    if not result.success:
        sys.exit(1)


@cli.command(name="status")
def sync_status():
    """Show the last sync run and external API health."""

    async def _status(coordinator):
        running = await coordinator.stores.operations.find_running()
        recent = await coordinator.history(1)
        healthy = await coordinator.client.test_connectivity()
        return running, recent[0] if recent else None, healthy, coordinator.client

    running, last, healthy, client = run_with_coordinator(_status)

    click.echo("\nExternal License Sync Status")
    click.echo("=" * 70)
    click.echo(f"  API: {client.base_url} ", nl=False)
    click.secho("healthy" if healthy else "unreachable", fg="green" if healthy else "red")
    click.echo(f"  Circuit breaker: {client.breaker.state.value}")
    if running:
        click.secho(f"  Running: {running.id} since {running.started_at:%Y-%m-%d %H:%M:%S}", fg="yellow")
    if last:
        click.echo(f"  Last run: {last.id} ({last.type.value}) {last.status.value}")
        click.echo(
            f"    created {last.totals.created}, updated {last.totals.updated}, "
            f"failed {last.totals.failed}"
        )
        if last.error:
            click.echo(f"    error: {last.error}")
    else:
        click.echo("  No sync has run yet.")


@cli.command(name="history")
@click.option("--limit", type=int, default=10, help="Maximum runs to show")
def sync_history(limit: int):
    """List recent sync runs."""
    operations = run_with_coordinator(lambda c: c.history(limit))

    if not operations:
        click.echo("No sync runs recorded.")
        return

    status_colors = {"success": "green", "failed": "red", "running": "yellow"}
    click.echo(f"\nSync History ({len(operations)} runs)")
    click.echo("=" * 70)
    for op in operations:
        duration = f"{op.duration_seconds:.1f}s" if op.duration_seconds is not None else "-"
        click.echo(f"{op.started_at:%Y-%m-%d %H:%M:%S}  {op.type.value:<13} ", nl=False)
        click.secho(f"{op.status.value:<8}", fg=status_colors.get(op.status.value), nl=False)
        click.echo(
            f"  +{op.totals.created} ~{op.totals.updated} !{op.totals.failed}  {duration}"
            + ("  (dry run)" if op.dry_run else "")
        )
