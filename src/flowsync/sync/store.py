"""
Local store -- the persisted state of one install.

A single JSON file (``storage.json``) holding the same keys the reader
keeps in its local storage: settings, presets, themes, collections,
archive items (with their local-only cached documents), positions,
flags, tombstones and the device id.

Snapshots for sync are built fresh from this file on every cycle and
never include cached documents. Every read-modify-write goes through
one re-entrant lock.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Optional

from ..errors import StorageError
from ..models import (
    ReadingPosition,
    SyncStateDocument,
    now_ms,
)
from ..urls import normalize_url
from .migrations import (
    CURRENT_STORAGE_VERSION,
    default_storage,
    generate_device_id,
    get_version,
    run_migrations,
)

logger = logging.getLogger("flowsync.sync.store")

STORAGE_FILENAME = "storage.json"


class LocalStore:
    """File-backed local storage for one install."""

    def __init__(self, home: Path):
        """Initialize the store.

        Args:
            home: App home directory. ``storage.json`` lives directly in it.
        """
        self.home = Path(home).expanduser()
        self.path = self.home / STORAGE_FILENAME
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Raw access
    # ------------------------------------------------------------------

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Cannot read {self.path}: {exc}", "read") from exc
        if not isinstance(data, dict):
            raise StorageError(f"{self.path} does not hold an object", "read")
        return data

    def _write(self, data: dict[str, Any]) -> None:
        self.home.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f".{self.path.name}.tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as exc:
            raise StorageError(f"Cannot write {self.path}: {exc}", "write") from exc

    def load(self) -> dict[str, Any]:
        """Read the store, initializing or migrating it first if needed.

        Raises:
            StorageError: The file is unreadable.
            UnsupportedSchemaError: The file was written by a newer build.
        """
        with self._lock:
            data = self._read()
            if not data:
                data = default_storage()
                logger.info("Initialized storage with defaults at %s", self.path)
                self._write(data)
                return data

            migrated = run_migrations(data)
            if migrated is not data:
                self._write(migrated)
            return migrated

    def stored_version(self) -> Optional[int]:
        """Schema version on disk, or None if nothing has been stored yet."""
        with self._lock:
            data = self._read()
        return get_version(data) if data else None

    def set_values(self, values: dict[str, Any], from_remote: bool = False) -> None:
        """Merge ``values`` into the store.

        Local edits bump ``dataUpdatedAt`` so the next merge sees this
        device as newer; values applied from a sync keep the timestamp
        the caller supplies.
        """
        with self._lock:
            data = self.load()
            data.update(values)
            if not from_remote:
                data["dataUpdatedAt"] = now_ms()
            self._write(data)

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def get_device_id(self) -> str:
        """Return the persistent device id, creating it on first use."""
        with self._lock:
            data = self.load()
            device_id = data.get("deviceId")
            if not device_id:
                device_id = generate_device_id()
                data["deviceId"] = device_id
                self._write(data)
            return device_id

    # ------------------------------------------------------------------
    # Local edits
    # ------------------------------------------------------------------

    def update_settings(self, settings: dict[str, Any]) -> None:
        with self._lock:
            current = self.load().get("settings") or {}
            self.set_values({"settings": {**current, **settings}})

    def update_presets(self, presets: dict[str, dict[str, Any]]) -> None:
        self.set_values({"presets": presets})

    def update_custom_themes(self, themes: list[dict[str, Any]]) -> None:
        self.set_values({"customThemes": themes})

    def update_collections(self, collections: list[dict[str, Any]]) -> None:
        self.set_values({"collections": collections})

    def update_positions(self, positions: dict[str, ReadingPosition | dict]) -> None:
        with self._lock:
            current = self.load().get("positions") or {}
            updates = {
                k: (p.to_wire() if isinstance(p, ReadingPosition) else p)
                for k, p in positions.items()
            }
            self.set_values({"positions": {**current, **updates}})

    def update_archive_items(self, items: list[dict[str, Any]]) -> None:
        self.set_values({"archiveItems": items})

    def update_flags(
        self,
        onboarding_completed: Optional[bool] = None,
        exit_confirmation_dismissed: Optional[bool] = None,
    ) -> None:
        flags: dict[str, Any] = {}
        if onboarding_completed is not None:
            flags["onboardingCompleted"] = onboarding_completed
        if exit_confirmation_dismissed is not None:
            flags["exitConfirmationDismissed"] = exit_confirmation_dismissed
        if flags:
            self.set_values(flags)

    def delete_archive_item(self, item_id: str) -> Optional[dict[str, Any]]:
        """Remove an item locally and leave tombstones so sync does not revive it.

        Returns:
            The removed raw item, or None if no item had that id.
        """
        with self._lock:
            items = self.load().get("archiveItems") or []
            removed = next((i for i in items if i.get("id") == item_id), None)
            if removed is None:
                return None
            self.set_values({"archiveItems": [i for i in items if i.get("id") != item_id]})
            self.add_deleted_item_tombstone(
                item_id, file_hash=removed.get("fileHash"), url=removed.get("url")
            )
            return removed

    def add_deleted_item_tombstone(
        self,
        item_id: str,
        file_hash: Optional[str] = None,
        url: Optional[str] = None,
    ) -> None:
        """Record a deletion under every key that identifies the item."""
        with self._lock:
            deleted = dict(self.load().get("deletedItems") or {})
            now = now_ms()
            deleted[item_id] = now
            if file_hash:
                deleted[f"hash:{file_hash}"] = now
            if url:
                deleted[f"url:{normalize_url(url)}"] = now
            self.set_values({"deletedItems": deleted})

    def clear_deleted_item_tombstones(self) -> None:
        self.set_values({"deletedItems": {}})

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def get_state_for_sync(self) -> SyncStateDocument:
        """Build a snapshot of the synced state. Cached documents stay local."""
        with self._lock:
            data = self.load()
            device_id = self.get_device_id()

        return SyncStateDocument.model_validate({
            "schemaVersion": CURRENT_STORAGE_VERSION,
            "updatedAt": data.get("dataUpdatedAt") or 0,
            "deviceId": device_id,
            "settings": data.get("settings") or {},
            "presets": data.get("presets") or {},
            "customThemes": data.get("customThemes") or [],
            "collections": data.get("collections") or [],
            "archiveItems": data.get("archiveItems") or [],
            "positions": data.get("positions") or {},
            "deletedItems": data.get("deletedItems") or {},
            "contentManifest": data.get("contentManifest"),
            "onboardingCompleted": bool(data.get("onboardingCompleted")),
            "exitConfirmationDismissed": bool(data.get("exitConfirmationDismissed")),
        })

    def apply_remote_state(self, state: SyncStateDocument) -> None:
        """Write a merged snapshot back, keeping local cached documents.

        The snapshot is authoritative for the item list: items it does
        not contain were deleted by a tombstone and are not re-added.
        """
        with self._lock:
            data = self.load()
            cached = {
                item["id"]: item["cachedDocument"]
                for item in data.get("archiveItems") or []
                if item.get("cachedDocument") is not None
            }

            items = []
            for item in state.archive_items:
                raw = item.to_wire()
                if item.id in cached:
                    raw["cachedDocument"] = cached[item.id]
                items.append(raw)

            wire = state.to_wire()
            values = {
                "version": CURRENT_STORAGE_VERSION,
                "dataUpdatedAt": state.updated_at,
                "settings": wire["settings"],
                "presets": wire["presets"],
                "customThemes": wire["customThemes"],
                "collections": wire["collections"],
                "archiveItems": items,
                "positions": wire["positions"],
                "deletedItems": wire["deletedItems"],
                "onboardingCompleted": state.onboarding_completed,
                "exitConfirmationDismissed": state.exit_confirmation_dismissed,
                "lastSyncTime": now_ms(),
                "lastSyncError": None,
            }
            if "contentManifest" in wire:
                values["contentManifest"] = wire["contentManifest"]
            self.set_values(values, from_remote=True)
            logger.debug(
                "Applied remote state: %d archive item(s)", len(items)
            )

    def record_sync_result(
        self, sync_time: Optional[int], error: Optional[str]
    ) -> None:
        """Store the outcome of a cycle without touching ``dataUpdatedAt``."""
        values: dict[str, Any] = {"lastSyncError": error}
        if sync_time is not None:
            values["lastSyncTime"] = sync_time
        self.set_values(values, from_remote=True)

    def set_sync_enabled(self, enabled: bool, provider: Optional[str]) -> None:
        self.set_values(
            {"syncEnabled": enabled, "syncProvider": provider}, from_remote=True
        )

    def archive_items_for_content_sync(self) -> list[dict[str, Any]]:
        """Raw archive items including cached documents."""
        return list(self.load().get("archiveItems") or [])

    def update_cached_document(self, item_id: str, document: Any) -> None:
        """Attach a downloaded document to a local item."""
        with self._lock:
            items = self.load().get("archiveItems") or []
            updated = [
                {**item, "cachedDocument": document} if item.get("id") == item_id else item
                for item in items
            ]
            self.set_values({"archiveItems": updated}, from_remote=True)
