"""CLI commands for database setup and seeding.

Usage:
    labmap db init
    labmap db seed --vocabulary analyte [--file seeds.json]
"""

import sys

import click

from .utils import VOCABULARY_CHOICE, run_async


@click.group(name="db")
def cli():
    """Database setup commands."""
    pass


@cli.command(name="init")
def init_db():
    """Create the tables directly from the ORM models.

    Intended for SQLite and development databases. PostgreSQL
    deployments should run the Alembic migrations instead.
    """
    from ..db import create_schema

    try:
        run_async(create_schema)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo("Schema created.")


@cli.command(name="seed")
@click.option(
    "--vocabulary",
    type=VOCABULARY_CHOICE,
    required=True,
    help="Vocabulary to seed",
)
@click.option(
    "--file",
    "seed_file",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="JSON seed file (defaults to the built-in seed)",
)
def seed_db(vocabulary: str, seed_file: str | None):
    """Load canonical entries and aliases.

    Loading is idempotent: existing entries and aliases are kept, and
    aliases that would point elsewhere are reported as conflicts.

    Examples:

        labmap db seed --vocabulary unit

        labmap db seed --vocabulary analyte --file my_analytes.json
    """
    from ..models import Vocabulary
    from ..resolution.profiles import get_profile
    from ..seeds import load_builtin_seed, load_seed_file
    from ..store.aliases import AliasStore

    profile = get_profile(vocabulary)
    entries = load_seed_file(seed_file) if seed_file else load_builtin_seed(vocabulary)

    async def _seed():
        return await AliasStore().seed(Vocabulary(vocabulary), entries, profile.key)

    try:
        report = run_async(_seed)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"Seeded {vocabulary}:")
    click.echo(f"  Entries created: {report.entries_created}")
    click.echo(f"  Aliases created: {report.aliases_created}")
    click.echo(f"  Aliases already present: {report.aliases_existing}")
    if report.alias_conflicts:
        click.secho(f"  Conflicts: {len(report.alias_conflicts)}", fg="yellow")
        for conflict in report.alias_conflicts:
            click.echo(f"    {conflict}")
