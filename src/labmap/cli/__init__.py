"""CLI entry points for labmap.

Provides command-line tools for:
- Database setup and seeding
- Resolving labels
- Working the review queue
"""

import click

from ..logging import setup_logging
from .db import cli as db_cli
from .resolve import resolve_command
from .review import cli as review_cli


@click.group()
@click.version_option(version="0.1.0", prog_name="labmap")
def main():
    """labmap - tiered resolution of lab analyte and unit labels.

    Command-line tools for seeding vocabularies, resolving labels
    and reviewing what the resolver could not decide.
    """
    setup_logging()


main.add_command(db_cli, name="db")
main.add_command(resolve_command, name="resolve")
main.add_command(review_cli, name="review")


if __name__ == "__main__":
    main()
