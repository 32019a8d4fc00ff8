"""Shared utilities for all CLI command modules.

Provides the Rich console instance, formatting helpers, and the
engine factory used across every command group.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from .. import FLOWSYNC_HOME
from ..models import SyncAction
from ..sync.engine import SyncEngine

console = Console()
logger = logging.getLogger("flowsync.cli")


def action_label(action: Optional[SyncAction]) -> str:
    """Map a sync action to a Rich-formatted label.

    Args:
        action: Outcome of the last cycle, if any.

    Returns:
        str: Rich markup string for the action.
    """
    if action is None:
        return "[dim]never[/]"
    return {
        SyncAction.UPLOADED: "[bold green]UPLOADED[/]",
        SyncAction.DOWNLOADED: "[bold green]DOWNLOADED[/]",
        SyncAction.MERGED: "[bold cyan]MERGED[/]",
        SyncAction.NO_CHANGE: "[green]NO CHANGE[/]",
        SyncAction.SKIPPED: "[yellow]SKIPPED[/]",
        SyncAction.ERROR: "[bold red]ERROR[/]",
    }.get(action, "[dim]UNKNOWN[/]")


def format_ms(timestamp: Optional[int]) -> str:
    """Render an epoch-milliseconds timestamp, or 'never'."""
    if not timestamp:
        return "[dim]never[/]"
    return datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc).strftime(
        "%Y-%m-%d %H:%M:%S UTC"
    )


def load_engine(home: str) -> SyncEngine:
    """Build an engine for the given app home."""
    return SyncEngine(Path(home).expanduser())


def unlock_engine(engine: SyncEngine, passphrase: Optional[str]) -> None:
    """Give an encrypted engine its passphrase, prompting if none was passed."""
    if not engine.config.encryption_enabled:
        return
    if passphrase is None:
        passphrase = click.prompt("Sync passphrase", hide_input=True)
    engine.set_passphrase(passphrase)


home_option = click.option(
    "--home", default=FLOWSYNC_HOME, type=click.Path(), help="FlowSync home directory."
)
passphrase_option = click.option(
    "--passphrase",
    envvar="FLOWSYNC_PASSPHRASE",
    default=None,
    help="Encryption passphrase (or set FLOWSYNC_PASSPHRASE).",
)
