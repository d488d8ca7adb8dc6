"""CLI commands for the duplicate review queue.

Usage:
    licsync review list [--status STATUS] [--limit N]
    licsync review approve CANDIDATE_ID [--reviewer NAME] [--notes TEXT]
    licsync review reject CANDIDATE_ID [--reviewer NAME] [--notes TEXT]
"""

import sys
from uuid import UUID

import click

from ..errors import ConsolidationError
from ..models import ReviewStatus
from .common import run_with_coordinator


@click.group(name="review")
def cli():
    """Duplicate review queue commands."""
    pass


@cli.command(name="list")
@click.option(
    "--status",
    type=click.Choice(["pending", "approved", "rejected", "all"]),
    default="pending",
    help="Filter by review status",
)
@click.option("--limit", type=int, default=20, help="Maximum candidates to show")
def list_candidates(status: str, limit: int):
    """List duplicate candidates queued for review."""
    status_filter = None if status == "all" else ReviewStatus(status)
    candidates = run_with_coordinator(lambda c: c.review_queue.list(status_filter, limit))

    if not candidates:
        click.echo("No review items found matching the criteria.")
        return

    click.echo(f"\nDuplicate Review Queue ({len(candidates)} found)")
    click.echo("=" * 70)
    for candidate in candidates:
        click.echo(f"\nCandidate: {candidate.id}")
        click.echo(f"  Scope: {candidate.scope.value}")
        click.echo(f"  Confidence: {candidate.confidence_score:.0f}")
        click.echo(f"  Status: ", nl=False)
        click.secho(candidate.review_status.value, fg="blue")
        for i, member in enumerate(candidate.members):
            role = "master" if i == 0 else "duplicate"
            click.echo(f"  {role}: {member.key} ({member.label or '-'})")
        if candidate.match_reasons:
            click.echo(f"  Reasons: {', '.join(candidate.match_reasons)}")

    click.echo("\n" + "=" * 70)
    click.echo("Use 'licsync review approve|reject <candidate_id>' to resolve")


@cli.command(name="approve")
@click.argument("candidate_id", type=click.UUID)
@click.option("--reviewer", type=str, default="cli-user", help="Reviewer username")
@click.option("--notes", type=str, default=None, help="Review notes")
def approve(candidate_id: UUID, reviewer: str, notes: str | None):
    """Approve a candidate and apply its consolidation."""
    try:
        decision = run_with_coordinator(
            lambda c: c.review_queue.approve(candidate_id, reviewer, notes)
        )
    except ConsolidationError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    click.echo(f"\nCandidate approved")
    click.echo(f"  Decision: {decision.id}")
    click.echo(f"  Strategy: {decision.strategy.value}")
    click.echo(f"  Reviewer: {reviewer}")


@cli.command(name="reject")
@click.argument("candidate_id", type=click.UUID)
@click.option("--reviewer", type=str, default="cli-user", help="Reviewer username")
@click.option("--notes", type=str, default=None, help="Review notes")
def reject(candidate_id: UUID, reviewer: str, notes: str | None):
    """Reject a candidate; its members are not queued together again."""
    try:
        rejected = run_with_coordinator(
            lambda c: c.review_queue.reject(candidate_id, reviewer, notes)
        )
    except ConsolidationError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    click.echo(f"\nCandidate rejected")
    click.echo(f"  Candidate: {rejected.id}")
    click.echo(f"  Reviewer: {reviewer}")
