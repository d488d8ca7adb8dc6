"""CLI entry points for license-sync.

Provides command-line tools for:
- Running and inspecting external license syncs
- Checking and consolidating duplicate licenses
- Working the duplicate review queue
- Database setup
"""

import click

from .. import __version__
from ..logging import setup_logging
from .db import cli as db_cli
from .duplicates import cli as duplicates_cli
from .review import cli as review_cli
from .sync import cli as sync_cli


@click.group()
@click.version_option(version=__version__, prog_name="licsync")
def main():
    """license-sync - External license reconciliation.

    Command-line tools for syncing the external license API into the
    internal ledger and managing duplicate licenses.
    """
    setup_logging()


main.add_command(sync_cli, name="sync")
main.add_command(duplicates_cli, name="duplicates")
main.add_command(review_cli, name="review")
main.add_command(db_cli, name="db")


if __name__ == "__main__":
    main()
