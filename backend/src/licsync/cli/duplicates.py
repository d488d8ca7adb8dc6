"""CLI commands for duplicate licenses.

Usage:
    licsync duplicates check [--dba DBA] [--email EMAIL] [--threshold N]
    licsync duplicates consolidate MASTER_ID DUPLICATE_ID... [--strategy S]
"""

import sys
from uuid import UUID

import click

from ..errors import ConsolidationError
from ..models import AppliedBy, ConsolidationStrategy
from .common import run_with_coordinator


@click.group(name="duplicates")
def cli():
    """Duplicate license commands."""
    pass


@cli.command(name="check")
@click.option("--dba", type=str, default=None, help="Business name (DBA)")
@click.option("--email", type=str, default=None, help="Contact email")
@click.option("--zip", "zip_code", type=str, default=None, help="Zip code")
@click.option("--phone", type=str, default=None, help="Phone number")
@click.option("--threshold", type=click.FloatRange(0, 100), default=None, help="Minimum confidence")
@click.option("--limit", type=int, default=20, help="Maximum matches to show")
def check(
    dba: str | None,
    email: str | None,
    zip_code: str | None,
    phone: str | None,
    threshold: float | None,
    limit: int,
):
    """Find internal licenses that look like a business.

    Examples:

        licsync duplicates check --dba "Biz LLC"

        licsync duplicates check --email owner@biz.com --threshold 80
    """
    if not dba and not email:
        click.echo("Provide at least one of --dba or --email", err=True)
        sys.exit(1)

    matches = run_with_coordinator(
        lambda c: c.check_duplicates(
            dba=dba,
            email=email,
            zip_code=zip_code,
            phone=phone,
            threshold=threshold,
            limit=limit,
        )
    )

    if not matches:
        click.echo("No potential duplicates found.")
        return

    click.echo(f"\nPotential Duplicates ({len(matches)} found)")
    click.echo("=" * 70)
    for match in matches:
        color = "red" if match.confidence_score >= 90 else "yellow"
        click.secho(f"{match.confidence_score:5.1f}", fg=color, nl=False)
        click.echo(f"  {match.key}  {match.dba or '-'}  {match.email or ''}")
        click.echo(f"       {match.license_id}  ({', '.join(match.match_reasons)})")


@cli.command(name="consolidate")
@click.argument("master_id", type=click.UUID)
@click.argument("duplicate_ids", type=click.UUID, nargs=-1, required=True)
@click.option(
    "--strategy",
    type=click.Choice([s.value for s in ConsolidationStrategy]),
    default=ConsolidationStrategy.KEEP_MASTER.value,
    help="Consolidation strategy",
)
@click.option("--actor", type=str, default="cli-user", help="Who applies the consolidation")
@click.option("--notes", type=str, default=None, help="Justification")
def consolidate(
    master_id: UUID,
    duplicate_ids: tuple[UUID, ...],
    strategy: str,
    actor: str,
    notes: str | None,
):
    """Fold duplicate licenses into a master license."""
    try:
        decision = run_with_coordinator(
            lambda c: c.consolidator.consolidate(
                master_id,
                list(duplicate_ids),
                strategy=ConsolidationStrategy(strategy),
                applied_by=AppliedBy.USER,
                actor=actor,
                notes=notes,
            )
        )
    except ConsolidationError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    click.echo("\nConsolidation applied")
    click.echo(f"  Decision: {decision.id}")
    click.echo(f"  Master: {decision.master_ref.identifier} ({decision.master_ref.label or '-'})")
    for ref in decision.duplicate_refs:
        click.echo(f"  Folded: {ref.identifier} ({ref.label or '-'})")
    click.echo(f"  Strategy: {decision.strategy.value}")
