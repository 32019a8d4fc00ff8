"""
Merge -- reconcile a local and a remote snapshot into one.

Pairwise and deterministic: each sync cycle merges exactly one local
snapshot with exactly one remote snapshot.

    settings, flags         whole value from the newer document
    presets, themes         union by name, newer document wins a shared key
    collections             union by id, newer collection wins
    archive items           union by id; metadata from the later
                            lastOpenedAt, reading progress always the
                            furthest of the two
    positions               union by key, furthest position wins
    tombstones              union, newest deletion time per key

Reading progress never moves backwards: a device that merely reopened
an item cannot undo what another device read.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from ..models import (
    Collection,
    ConflictInfo,
    ConflictType,
    ContentManifest,
    CustomTheme,
    MergeResult,
    ReadingPosition,
    Resolution,
    SyncArchiveItem,
    SyncStateDocument,
    now_ms,
)
from ..positions import further_position, further_progress
from ..urls import normalize_url

logger = logging.getLogger("flowsync.sync.merge")


def _resolution(merged: Any, local: Any, remote: Any) -> Resolution:
    if merged == local:
        return Resolution.LOCAL_WINS
    if merged == remote:
        return Resolution.REMOTE_WINS
    return Resolution.MERGED


def _wire(value: Any) -> Any:
    return value.to_wire() if hasattr(value, "to_wire") else value


def _conflict(
    kind: ConflictType,
    item_id: Optional[str],
    local: Any,
    remote: Any,
    merged: Any,
) -> ConflictInfo:
    return ConflictInfo(
        type=kind,
        item_id=item_id,
        local_value=_wire(local),
        remote_value=_wire(remote),
        resolution=_resolution(_wire(merged), _wire(local), _wire(remote)),
    )


# ---------------------------------------------------------------------------
# Keyed collections
# ---------------------------------------------------------------------------

def merge_presets(
    local: dict[str, dict[str, Any]],
    remote: dict[str, dict[str, Any]],
    remote_is_newer: bool,
) -> tuple[dict[str, dict[str, Any]], list[ConflictInfo]]:
    """Union presets by name; the newer document wins a shared name."""
    merged = dict(local)
    conflicts: list[ConflictInfo] = []
    for name, remote_preset in remote.items():
        local_preset = merged.get(name)
        if local_preset is None:
            merged[name] = remote_preset
            continue
        if local_preset == remote_preset:
            continue
        winner = remote_preset if remote_is_newer else local_preset
        merged[name] = winner
        conflicts.append(
            _conflict(ConflictType.PRESET, name, local_preset, remote_preset, winner)
        )
    return merged, conflicts


def merge_custom_themes(
    local: list[CustomTheme],
    remote: list[CustomTheme],
    remote_is_newer: bool,
) -> tuple[list[CustomTheme], list[ConflictInfo]]:
    """Union themes by name; the newer document wins a shared name."""
    merged: dict[str, CustomTheme] = {t.name: t for t in local}
    conflicts: list[ConflictInfo] = []
    for theme in remote:
        existing = merged.get(theme.name)
        if existing is None:
            merged[theme.name] = theme
            continue
        if existing.to_wire() == theme.to_wire():
            continue
        winner = theme if remote_is_newer else existing
        merged[theme.name] = winner
        conflicts.append(
            _conflict(ConflictType.THEME, theme.name, existing, theme, winner)
        )
    return list(merged.values()), conflicts


def merge_collections(
    local: list[Collection],
    remote: list[Collection],
    remote_is_newer: bool,
) -> tuple[list[Collection], list[ConflictInfo]]:
    """Union collections by id; the later ``updatedAt`` wins."""
    merged: dict[str, Collection] = {c.id: c for c in local}
    conflicts: list[ConflictInfo] = []
    for collection in remote:
        existing = merged.get(collection.id)
        if existing is None:
            merged[collection.id] = collection
            continue
        if existing.to_wire() == collection.to_wire():
            continue
        take_remote = collection.updated_at > existing.updated_at or (
            collection.updated_at == existing.updated_at and remote_is_newer
        )
        winner = collection if take_remote else existing
        merged[collection.id] = winner
        conflicts.append(
            _conflict(ConflictType.COLLECTION, collection.id, existing, collection, winner)
        )
    return list(merged.values()), conflicts


# ---------------------------------------------------------------------------
# Tombstones
# ---------------------------------------------------------------------------

def merge_deleted_items(
    local: dict[str, int], remote: dict[str, int]
) -> dict[str, int]:
    """Union deletion tombstones, keeping the newest deletion time per key."""
    merged = dict(local)
    for key, deleted_at in remote.items():
        if deleted_at > merged.get(key, 0):
            merged[key] = deleted_at
    return merged


def tombstone_keys(item: SyncArchiveItem) -> list[str]:
    """All tombstone keys that identify an archive item."""
    keys = [item.id]
    if item.file_hash:
        keys.append(f"hash:{item.file_hash}")
    if item.url:
        keys.append(f"url:{normalize_url(item.url)}")
    return keys


def is_item_deleted(item: SyncArchiveItem, deleted_items: dict[str, int]) -> bool:
    """True if a tombstone for the item is at least as recent as its last open."""
    return any(
        deleted_items[key] >= item.last_opened_at
        for key in tombstone_keys(item)
        if key in deleted_items
    )


# ---------------------------------------------------------------------------
# Archive items
# ---------------------------------------------------------------------------

def _union_ids(
    a: Optional[list[str]], b: Optional[list[str]]
) -> Optional[list[str]]:
    if a is None and b is None:
        return None
    merged = list(a or [])
    merged.extend(i for i in (b or []) if i not in merged)
    return merged


def merge_archive_item_pair(
    local: SyncArchiveItem, remote: SyncArchiveItem
) -> SyncArchiveItem:
    """Merge two versions of the same archive item.

    Metadata comes from whichever side was opened most recently (a tie
    keeps local). Position and progress are the furthest of the two,
    independent of which side supplied the metadata.
    """
    newer, older = (remote, local) if remote.last_opened_at > local.last_opened_at else (local, remote)
    created = [t for t in (local.created_at, remote.created_at) if t]

    return newer.model_copy(update={
        "last_position": further_position(local.last_position, remote.last_position),
        "progress": further_progress(local.progress, remote.progress),
        "collection_ids": _union_ids(local.collection_ids, remote.collection_ids),
        "created_at": min(created) if created else 0,
        "author": newer.author or older.author,
        "file_hash": newer.file_hash or older.file_hash,
        "url": newer.url or older.url,
        "paste_content": newer.paste_content or older.paste_content,
    })


def merge_archive_items(
    local: list[SyncArchiveItem],
    remote: list[SyncArchiveItem],
    deleted_items: dict[str, int],
) -> tuple[list[SyncArchiveItem], list[ConflictInfo]]:
    """Union archive items by id, then drop tombstoned ones.

    Local items keep their order; remote-only items follow in remote order.
    """
    merged: dict[str, SyncArchiveItem] = {item.id: item for item in local}
    conflicts: list[ConflictInfo] = []

    for item in remote:
        existing = merged.get(item.id)
        if existing is None:
            merged[item.id] = item
            continue
        combined = merge_archive_item_pair(existing, item)
        merged[item.id] = combined
        if existing.to_wire() != item.to_wire():
            conflicts.append(
                _conflict(ConflictType.ARCHIVE_ITEM, item.id, existing, item, combined)
            )

    kept = [i for i in merged.values() if not is_item_deleted(i, deleted_items)]
    if len(kept) != len(merged):
        logger.debug("Filtered out %d deleted item(s)", len(merged) - len(kept))
    return kept, conflicts


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------

def merge_positions(
    local: dict[str, ReadingPosition],
    remote: dict[str, ReadingPosition],
) -> tuple[dict[str, ReadingPosition], list[ConflictInfo]]:
    """Union positions by document key; the furthest position wins."""
    merged = dict(local)
    conflicts: list[ConflictInfo] = []
    for key, remote_pos in remote.items():
        local_pos = merged.get(key)
        if local_pos is None:
            merged[key] = remote_pos
            continue
        winner = further_position(local_pos, remote_pos)
        merged[key] = winner
        if local_pos.to_wire() != remote_pos.to_wire():
            conflicts.append(
                _conflict(ConflictType.POSITION, key, local_pos, remote_pos, winner)
            )
    return merged, conflicts


# ---------------------------------------------------------------------------
# Content manifest
# ---------------------------------------------------------------------------

def merge_content_manifests(
    local: Optional[ContentManifest], remote: Optional[ContentManifest]
) -> Optional[ContentManifest]:
    """Union manifest entries by file hash; the later ``syncedAt`` wins."""
    if local is None or remote is None:
        return local or remote
    items = dict(local.items)
    for file_hash, entry in remote.items.items():
        existing = items.get(file_hash)
        if existing is None or entry.synced_at > existing.synced_at:
            items[file_hash] = entry
    return ContentManifest(items=items)


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------

def _comparable(doc: SyncStateDocument) -> dict[str, Any]:
    """Order-insensitive view of everything the merge can change."""
    return {
        "settings": doc.settings,
        "onboardingCompleted": doc.onboarding_completed,
        "exitConfirmationDismissed": doc.exit_confirmation_dismissed,
        "presets": doc.presets,
        "customThemes": {t.name: t.to_wire() for t in doc.custom_themes},
        "collections": {c.id: c.to_wire() for c in doc.collections},
        "archiveItems": {i.id: i.to_wire() for i in doc.archive_items},
        "positions": {k: p.to_wire() for k, p in doc.positions.items()},
        "deletedItems": doc.deleted_items,
        "contentManifest": (
            doc.content_manifest.to_wire() if doc.content_manifest else None
        ),
    }


def documents_equivalent(a: SyncStateDocument, b: SyncStateDocument) -> bool:
    """True if two snapshots hold the same data, ignoring order and metadata."""
    return _comparable(a) == _comparable(b)


def merge_states(
    local: SyncStateDocument,
    remote: SyncStateDocument,
    local_device_id: str,
) -> MergeResult:
    """Merge a local and a remote snapshot.

    Args:
        local: Snapshot built from this device's storage.
        remote: Snapshot downloaded and decrypted from the provider.
        local_device_id: This device's persistent id; stamped on the result.

    Returns:
        MergeResult with the merged snapshot (``updatedAt`` always now),
        every conflict found, and whether the result differs from local.
    """
    remote_is_newer = remote.updated_at > local.updated_at
    winner = remote if remote_is_newer else local

    logger.info(
        "Merging states: remote %s (%s) is %s than local %s (%s)",
        remote.device_id, remote.updated_at,
        "newer" if remote_is_newer else "not newer",
        local.device_id, local.updated_at,
    )

    conflicts: list[ConflictInfo] = []
    if local.settings != remote.settings:
        conflicts.append(
            _conflict(ConflictType.SETTINGS, None, local.settings, remote.settings, winner.settings)
        )

    deleted_items = merge_deleted_items(local.deleted_items, remote.deleted_items)

    archive_items, found = merge_archive_items(
        local.archive_items, remote.archive_items, deleted_items
    )
    conflicts.extend(found)

    positions, found = merge_positions(local.positions, remote.positions)
    conflicts.extend(found)

    presets, found = merge_presets(local.presets, remote.presets, remote_is_newer)
    conflicts.extend(found)

    themes, found = merge_custom_themes(
        local.custom_themes, remote.custom_themes, remote_is_newer
    )
    conflicts.extend(found)

    collections, found = merge_collections(
        local.collections, remote.collections, remote_is_newer
    )
    conflicts.extend(found)

    merged = SyncStateDocument(
        schema_version=max(local.schema_version, remote.schema_version),
        device_id=local_device_id,
        updated_at=now_ms(),
        settings=winner.settings,
        presets=presets,
        custom_themes=themes,
        collections=collections,
        archive_items=archive_items,
        positions=positions,
        deleted_items=deleted_items,
        content_manifest=merge_content_manifests(
            local.content_manifest, remote.content_manifest
        ),
        onboarding_completed=winner.onboarding_completed,
        exit_confirmation_dismissed=winner.exit_confirmation_dismissed,
    )

    has_changes = not documents_equivalent(merged, local)
    if conflicts:
        logger.info("%d conflict(s) resolved", len(conflicts))
    logger.debug(
        "Merged %d archive item(s), %d position(s); has_changes=%s",
        len(archive_items), len(positions), has_changes,
    )
    return MergeResult(merged=merged, conflicts=conflicts, has_changes=has_changes)
