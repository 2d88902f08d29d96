"""CLI command for resolving labels.

Usage:
    labmap resolve --vocabulary analyte "Ферритин" "Fer-ritin"
    labmap resolve --vocabulary unit --json "ммоль/л"
"""

import json
import sys

import click

from .utils import VOCABULARY_CHOICE, rule, run_async

DECISION_COLORS = {
    "EXACT_MATCH": "green",
    "FUZZY_MATCH": "green",
    "SEMANTIC_MATCH": "cyan",
    "CONFLICT": "yellow",
    "AMBIGUOUS": "yellow",
    "NEW_CANDIDATE": "magenta",
    "UNKNOWN_CODE": "red",
    "ABSTAIN": "red",
    "UNRESOLVED": "red",
}


@click.command(name="resolve")
@click.argument("labels", nargs=-1, required=True)
@click.option(
    "--vocabulary",
    type=VOCABULARY_CHOICE,
    default="analyte",
    help="Vocabulary to resolve against",
)
@click.option(
    "--semantic/--no-semantic",
    default=True,
    help="Use the semantic tier when an LLM backend is configured",
)
@click.option(
    "--timeout",
    type=float,
    default=None,
    help="Deadline for the whole batch in seconds",
)
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show what would be learned or queued without writing",
)
@click.option(
    "--json",
    "as_json",
    is_flag=True,
    help="Print decisions as JSON",
)
def resolve_command(
    labels: tuple[str, ...],
    vocabulary: str,
    semantic: bool,
    timeout: float | None,
    dry_run: bool,
    as_json: bool,
):
    """Resolve labels to canonical codes.

    Confident answers are learned as aliases; everything else is
    queued for review. With --dry-run nothing is written.

    Examples:

        labmap resolve "Гемоглобин" "HGB" "Fer-ritin"

        labmap resolve --vocabulary unit --no-semantic "мг/дл"

        labmap resolve --dry-run "Fer-ritin"
    """
    from ..resolution.resolver import get_resolver

    async def _resolve():
        resolver = get_resolver(vocabulary, semantic=semantic)
        return await resolver.resolve_batch(list(labels), timeout=timeout, dry_run=dry_run)

    try:
        result = run_async(_resolve)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(result.model_dump(mode="json"), ensure_ascii=False, indent=2))
        return

    click.echo(f"\nResolved {len(result.decisions)} {vocabulary} label(s)")
    rule()
    for decision in result.decisions:
        click.echo(f"\n{decision.label!r} (key: {decision.key!r})")
        click.echo("  Decision: ", nl=False)
        click.secho(
            decision.decision.value,
            fg=DECISION_COLORS.get(decision.decision.value, "white"),
        )
        click.echo(f"  Code: {decision.chosen_code or '-'}")
        click.echo(f"  Confidence: {decision.confidence:.2f}")
        if decision.conflict_detail:
            detail = decision.conflict_detail
            click.echo(
                f"  Conflict: fuzzy {detail.fuzzy.code} ({detail.fuzzy.score:.2f}) vs "
                f"semantic {detail.semantic.code} ({detail.semantic.score:.2f}), "
                f"{detail.resolved_by}"
            )
        if decision.note:
            click.echo(f"  Note: {decision.note}")
        if decision.learned:
            click.secho("  Learned as alias", fg="green")
        if decision.review_item_id:
            click.echo(f"  Queued for review: {decision.review_item_id}")
        if decision.would_learn:
            click.secho("  Would learn alias", fg="green")
        if result.dry_run and decision.review_issue:
            click.echo(f"  Would queue: {decision.review_issue.value}")

    click.echo()
    rule()
    counts = {k: v for k, v in result.summary["counts"].items() if v}
    click.echo(", ".join(f"{k}: {v}" for k, v in counts.items()))
