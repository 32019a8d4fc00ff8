"""Sync commands: setup, now, status, inspect, disconnect."""

from __future__ import annotations

import sys
from pathlib import Path

import click
from rich.panel import Panel
from rich.table import Table

from ._common import (
    action_label,
    console,
    format_ms,
    home_option,
    load_engine,
    logger,
    passphrase_option,
    unlock_engine,
)
from ..errors import FlowSyncError
from ..sync.crypto import decrypt, is_encrypted_blob, parse_plain_blob
from ..sync.providers import FolderProvider


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Encrypted reading-state sync.

        Keep settings, library and reading positions in step across
        devices through a shared folder. Encrypted before it leaves.
        """

    @sync.command("setup")
    @click.argument("folder", type=click.Path(file_okay=False))
    @home_option
    @passphrase_option
    @click.option("--no-encrypt", is_flag=True, help="Store state unencrypted.")
    def sync_setup(folder, home, passphrase, no_encrypt):
        """Sync through FOLDER (USB drive, NAS, or a cloud-synced folder)."""
        folder_path = Path(folder).expanduser()
        folder_path.mkdir(parents=True, exist_ok=True)
        engine = load_engine(home)
        provider = FolderProvider(folder_path)

        try:
            if no_encrypt:
                engine.configure_without_encryption(provider)
            else:
                if passphrase is None:
                    passphrase = click.prompt(
                        "Sync passphrase", hide_input=True, confirmation_prompt=True
                    )
                engine.configure(provider, passphrase)
        except FlowSyncError as exc:
            console.print(f"[bold red]Setup failed:[/] {exc}")
            sys.exit(1)

        mode = "[yellow]unencrypted[/]" if no_encrypt else "[green]AES-256-GCM[/]"
        console.print(f"\n  Sync folder: [cyan]{folder_path}[/]")
        console.print(f"  Encryption: {mode}")
        console.print("  Run [cyan]flowsync sync now[/] to sync.\n")

    @sync.command("now")
    @home_option
    @passphrase_option
    def sync_now(home, passphrase):
        """Run one sync cycle."""
        engine = load_engine(home)
        if not engine.config.enabled:
            console.print("[bold red]Sync is not set up.[/] Run flowsync sync setup first.")
            sys.exit(1)
        try:
            unlock_engine(engine, passphrase)
        except FlowSyncError as exc:
            console.print(f"[bold red]{exc}[/]")
            sys.exit(1)

        console.print("\n  Syncing...", end=" ")
        result = engine.sync_now()
        if not result.success:
            console.print("[red]failed[/]")
            console.print(f"  [red]{result.error}[/]\n")
            sys.exit(1)

        console.print(action_label(result.action))
        for conflict in result.conflicts:
            console.print(
                f"    [dim]{conflict.type.value}[/] {conflict.item_id or ''}"
                f" -> {conflict.resolution.value}"
            )
        console.print()

    @sync.command("status")
    @home_option
    def sync_status(home):
        """Show sync configuration and recent activity."""
        engine = load_engine(home)
        try:
            status = engine.status()
        except FlowSyncError as exc:
            console.print(f"[bold red]Cannot read local state:[/] {exc}")
            sys.exit(1)
        state = engine.state
        provider = status["provider"]

        if provider is None:
            provider_line = "[dim]none[/]"
        else:
            connected = "[green]connected[/]" if provider["connected"] else "[red]unreachable[/]"
            provider_line = f"[cyan]{provider['name']}[/] ({connected})"

        last_sync = state.last_sync.strftime("%Y-%m-%d %H:%M:%S UTC") if state.last_sync else "[dim]never[/]"
        console.print()
        console.print(
            Panel(
                f"Enabled: {'[green]yes[/]' if status['enabled'] else '[yellow]no[/]'}\n"
                f"Provider: {provider_line}\n"
                f"Encryption: {'[green]on[/]' if status['encryption_enabled'] else '[yellow]off[/]'}\n"
                f"Device: [dim]{status['device_id']}[/]\n"
                f"Last Sync: {last_sync}\n"
                f"Last Result: {action_label(state.last_action)}\n"
                f"Last Error: {state.last_error or '[dim]none[/]'}\n"
                f"Uploads: {state.upload_count}  Downloads: {state.download_count}"
                f"  Conflicts: {state.conflicts_resolved}",
                title="FlowSync",
                border_style="cyan",
            )
        )
        console.print()

    @sync.command("inspect")
    @home_option
    @passphrase_option
    def sync_inspect(home, passphrase):
        """Decrypt the remote state and summarize it. Nothing is changed."""
        engine = load_engine(home)
        provider = engine.provider
        if provider is None:
            console.print("[bold red]Sync is not set up.[/]")
            sys.exit(1)

        try:
            blob = provider.download()
            if blob is None:
                console.print("[yellow]No remote state yet.[/]")
                return
            if is_encrypted_blob(blob):
                if passphrase is None:
                    passphrase = click.prompt("Sync passphrase", hide_input=True)
                remote = decrypt(blob, passphrase)
            else:
                remote = parse_plain_blob(blob)
        except FlowSyncError as exc:
            logger.debug("Inspect failed: %s", exc)
            console.print(f"[bold red]Cannot read remote state:[/] {exc}")
            sys.exit(1)

        table = Table(title="Remote state", show_header=False)
        table.add_row("Device", remote.device_id)
        table.add_row("Updated", format_ms(remote.updated_at))
        table.add_row("Schema", str(remote.schema_version))
        table.add_row("Encrypted", "yes" if is_encrypted_blob(blob) else "no")
        table.add_row("Archive items", str(len(remote.archive_items)))
        table.add_row("Positions", str(len(remote.positions)))
        table.add_row("Presets", str(len(remote.presets)))
        table.add_row("Themes", str(len(remote.custom_themes)))
        table.add_row("Collections", str(len(remote.collections)))
        table.add_row("Tombstones", str(len(remote.deleted_items)))
        content = len(remote.content_manifest.items) if remote.content_manifest else 0
        table.add_row("Content files", str(content))
        console.print(table)

    @sync.command("disconnect")
    @home_option
    def sync_disconnect(home):
        """Stop syncing. Remote data is left in place."""
        engine = load_engine(home)
        try:
            engine.disconnect()
        except FlowSyncError as exc:
            console.print(f"[bold red]Disconnect failed:[/] {exc}")
            sys.exit(1)
        console.print("  [yellow]Sync disabled.[/] Remote data left in place.")
