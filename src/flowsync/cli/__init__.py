"""
FlowSync CLI -- the reading-state sync command line.

This package organizes the CLI into modular command groups.
Each group lives in its own module; the main Click group is
defined here and every group is registered via a register function.

Entry point: flowsync.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="flowsync")
@click.option("--verbose", "-v", is_flag=True, help="Log sync details to stderr.")
def main(verbose):
    """FlowSync -- encrypted multi-device sync for FlowReader.

    Your reading state, on every device. Encrypted before it leaves.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .sync_cmd import register_sync_commands
from .store_cmd import register_store_commands

register_sync_commands(main)
register_store_commands(main)
