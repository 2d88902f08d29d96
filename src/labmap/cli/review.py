"""CLI commands for the review queue.

Usage:
    labmap review list [--status STATUS] [--vocabulary V] [--issue TYPE]
    labmap review show ITEM_ID
    labmap review approve ITEM_ID [--code CODE] [--name NAME]
    labmap review reject ITEM_ID [--notes TEXT]
    labmap review correct ITEM_ID --code CODE [--name NAME] [--unit UNIT]
    labmap review stats
"""

import sys
from uuid import UUID

import click

from .utils import VOCABULARY_CHOICE, echo_field, rule, run_async


def _parse_id(item_id: str) -> UUID:
    try:
        return UUID(item_id)
    except ValueError:
        click.echo(f"Invalid item ID: {item_id}", err=True)
        sys.exit(1)


def _run(func):
    """Run a queue operation, reporting labmap errors without a traceback."""
    from ..errors import LabmapError

    try:
        return run_async(func)
    except LabmapError as e:
        click.echo(f"Error ({e.error_code}): {e.message}", err=True)
        for key, value in e.details.items():
            click.echo(f"  {key}: {value}", err=True)
        sys.exit(1)


@click.group(name="review")
def cli():
    """Review queue commands."""
    pass


@cli.command(name="list")
@click.option(
    "--status",
    type=click.Choice(["pending", "approved", "rejected", "all"]),
    default="pending",
    help="Filter by status",
)
@click.option("--vocabulary", type=VOCABULARY_CHOICE, default=None, help="Filter by vocabulary")
@click.option(
    "--issue",
    type=click.Choice(
        ["ambiguous", "unknown_code", "syntax_invalid", "new_candidate",
         "low_confidence", "alias_conflict", "unresolved"]
    ),
    default=None,
    help="Filter by issue type",
)
@click.option("--limit", type=int, default=20, help="Maximum items to show")
def list_items(status: str, vocabulary: str | None, issue: str | None, limit: int):
    """List review items, most frequent first.

    Examples:

        labmap review list

        labmap review list --vocabulary unit --issue syntax_invalid
    """
    from ..models import IssueType, ReviewStatus, Vocabulary
    from ..store.review import get_review_queue

    async def _list():
        return await get_review_queue().list_items(
            status=None if status == "all" else ReviewStatus(status),
            vocabulary=Vocabulary(vocabulary) if vocabulary else None,
            issue_type=IssueType(issue) if issue else None,
            limit=limit,
        )

    items = _run(_list)
    if not items:
        click.echo("No review items found matching the criteria.")
        return

    click.echo(f"\nReview Items ({len(items)} found)")
    rule()
    for item in items:
        click.echo(f"\n{item.id}  [{item.vocabulary.value}] {item.raw_label!r}")
        echo_field("Issue", item.issue_type.value)
        echo_field("Status", item.status.value)
        echo_field("Seen", f"{item.occurrence_count}x")
        if item.proposal.code:
            echo_field("Proposal", item.proposal.code)
        if item.needs_correction:
            click.secho("  Needs correction", fg="red")
    click.echo()
    rule()
    click.echo("Use 'labmap review approve <item_id>' or 'labmap review reject <item_id>'")


@cli.command(name="show")
@click.argument("item_id")
def show_item(item_id: str):
    """Show one review item with its evidence."""
    from ..store.review import get_review_queue

    uuid = _parse_id(item_id)

    async def _show():
        return await get_review_queue().get(uuid)

    item = _run(_show)
    click.echo(f"\nReview item {item.id}")
    rule()
    echo_field("Vocabulary", item.vocabulary.value)
    echo_field("Label", repr(item.raw_label))
    echo_field("Key", repr(item.normalized_key))
    echo_field("Issue", item.issue_type.value)
    echo_field("Status", item.status.value)
    echo_field("Occurrences", item.occurrence_count)
    echo_field("First seen", item.first_seen_at)
    echo_field("Last seen", item.last_seen_at)
    echo_field("Proposed code", item.proposal.code or "-")
    echo_field("Proposed name", item.proposal.name or "-")
    echo_field("Proposed unit", item.proposal.unit or "-")
    echo_field("Needs correction", item.needs_correction)
    if item.reviewed_by:
        echo_field("Reviewed by", f"{item.reviewed_by} at {item.reviewed_at}")
    if item.evidence:
        click.echo("  Evidence:")
        for key, value in item.evidence.items():
            click.echo(f"    {key}: {value}")


@cli.command(name="approve")
@click.argument("item_id")
@click.option("--code", default=None, help="Canonical code (defaults to the proposal)")
@click.option("--name", default=None, help="Display name for a new entry")
@click.option("--reviewer", default="cli-user", help="Reviewer username")
@click.option("--notes", default=None, help="Review notes")
def approve_item(item_id: str, code: str | None, name: str | None, reviewer: str, notes: str | None):
    """Approve an item and write its alias.

    Examples:

        labmap review approve 3f2c... --code FER

        labmap review approve 3f2c... --code LPA --name "Lipoprotein(a)"
    """
    from ..store.review import get_review_queue

    uuid = _parse_id(item_id)

    async def _approve():
        return await get_review_queue().approve(
            uuid, reviewed_by=reviewer, canonical_code=code, display_name=name, notes=notes
        )

    item = _run(_approve)
    click.echo("\nItem approved.")
    echo_field("Item ID", item.id)
    echo_field("Alias", f"{item.normalized_key!r} -> {item.resolved_canonical_id}")
    click.echo("  Status: ", nl=False)
    click.secho(item.status.value, fg="green")


@cli.command(name="reject")
@click.argument("item_id")
@click.option("--reviewer", default="cli-user", help="Reviewer username")
@click.option("--notes", default=None, help="Review notes")
def reject_item(item_id: str, reviewer: str, notes: str | None):
    """Reject an item. No alias is written."""
    from ..store.review import get_review_queue

    uuid = _parse_id(item_id)

    async def _reject():
        return await get_review_queue().reject(uuid, reviewed_by=reviewer, notes=notes)

    item = _run(_reject)
    click.echo("\nItem rejected.")
    click.echo("  Status: ", nl=False)
    click.secho(item.status.value, fg="red")


@cli.command(name="correct")
@click.argument("item_id")
@click.option("--code", required=True, help="Corrected code")
@click.option("--name", default=None, help="Corrected display name")
@click.option("--unit", default=None, help="Corrected canonical unit")
@click.option("--reviewer", default="cli-user", help="Reviewer username")
def correct_item(item_id: str, code: str, name: str | None, unit: str | None, reviewer: str):
    """Replace an item's proposal and re-validate it.

    Example:

        labmap review correct 3f2c... --code "10*9/L"
    """
    from ..store.review import get_review_queue

    uuid = _parse_id(item_id)

    async def _correct():
        return await get_review_queue().correct(
            uuid, code=code, name=name, unit=unit, corrected_by=reviewer
        )

    item = _run(_correct)
    click.echo("\nProposal corrected.")
    echo_field("Code", item.proposal.code)
    echo_field("Needs correction", item.needs_correction)


@cli.command(name="stats")
def queue_stats():
    """Show review queue statistics."""
    from ..store.review import get_review_queue

    async def _stats():
        return await get_review_queue().stats()

    stats = _run(_stats)
    click.echo("\nReview Queue Statistics")
    rule()
    echo_field("Total", stats.total)
    echo_field("Pending", stats.pending)
    for status, count in sorted(stats.by_status.items()):
        echo_field(status.capitalize(), count)
    if stats.pending_by_issue:
        click.echo("\n  Pending by issue:")
        for issue, count in sorted(stats.pending_by_issue.items(), key=lambda kv: -kv[1]):
            click.echo(f"    {issue}: {count}")
    if stats.oldest_pending_at:
        echo_field("Oldest pending", stats.oldest_pending_at)
