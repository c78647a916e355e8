"""
KBSync CLI -- push and pull KB projects.

The main Click group is defined here and the command groups are
registered via register functions.

Entry point: kbsync.cli:main
"""

from __future__ import annotations

import click

from .. import __version__
from ._common import configure_logging


@click.group()
@click.version_option(version=__version__, prog_name="kbsync")
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr.")
def main(verbose):
    """KBSync -- keep a KB project and its remote copy in step."""
    configure_logging(verbose)


from .sync_cmd import register_sync_commands

register_sync_commands(main)
