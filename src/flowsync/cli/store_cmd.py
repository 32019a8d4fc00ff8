"""Local store commands: migrate, items, forget."""

from __future__ import annotations

import sys
from pathlib import Path

import click
from rich.table import Table

from ._common import console, format_ms, home_option
from ..errors import FlowSyncError
from ..sync.migrations import CURRENT_STORAGE_VERSION
from ..sync.store import LocalStore


def register_store_commands(main: click.Group) -> None:
    """Register local store commands."""

    @main.command("migrate")
    @home_option
    def migrate(home):
        """Upgrade the local store to the current schema."""
        store = LocalStore(Path(home).expanduser())
        try:
            before = store.stored_version()
            store.load()
        except FlowSyncError as exc:
            console.print(f"[bold red]Migration failed:[/] {exc}")
            sys.exit(1)

        if before is None:
            console.print(f"  [green]Initialized[/] store at v{CURRENT_STORAGE_VERSION}")
        elif before == CURRENT_STORAGE_VERSION:
            console.print(f"  Store already at v{CURRENT_STORAGE_VERSION}")
        else:
            console.print(
                f"  [green]Migrated[/] store v{before} -> v{CURRENT_STORAGE_VERSION}"
            )

    @main.command("items")
    @home_option
    def items(home):
        """List archive items in the local store."""
        store = LocalStore(Path(home).expanduser())
        try:
            state = store.get_state_for_sync()
        except FlowSyncError as exc:
            console.print(f"[bold red]Cannot read local store:[/] {exc}")
            sys.exit(1)
        if not state.archive_items:
            console.print("[dim]No archive items.[/]")
            return

        table = Table(title="Archive")
        table.add_column("ID", style="dim")
        table.add_column("Type")
        table.add_column("Title", style="cyan")
        table.add_column("Source")
        table.add_column("Last opened")
        for item in state.archive_items:
            table.add_row(
                item.id,
                item.type.value,
                item.title,
                item.source_label,
                format_ms(item.last_opened_at),
            )
        console.print(table)

    @main.command("forget")
    @click.argument("item_id")
    @home_option
    def forget(item_id, home):
        """Delete an archive item everywhere on the next sync."""
        store = LocalStore(Path(home).expanduser())
        try:
            removed = store.delete_archive_item(item_id)
        except FlowSyncError as exc:
            console.print(f"[bold red]Cannot update local store:[/] {exc}")
            sys.exit(1)
        if removed is None:
            console.print(f"[yellow]No archive item {item_id}[/]")
            sys.exit(1)
        console.print(f"  [green]Removed[/] {removed.get('title') or item_id}")
