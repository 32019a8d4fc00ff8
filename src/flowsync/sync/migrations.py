"""
Storage schema migrations.

The persisted store carries an integer ``version``. Each step upgrades
exactly one version and returns a new dict that is the input with its
own additions layered on top, so any key a step does not touch survives
into the next one. Migrations only move forward: data written by a
newer build is refused rather than guessed at.

    v1 -> v2   legacy recentDocuments become archiveItems
    v2 -> v3   sync bookkeeping fields and a persistent deviceId
"""

from __future__ import annotations

import logging
import secrets
from typing import Any, Callable

from ..errors import UnsupportedSchemaError
from ..models import ArchiveItemType, SyncStateDocument
from ..urls import hostname_of

logger = logging.getLogger("flowsync.sync.migrations")

CURRENT_STORAGE_VERSION = 3

MigrationFn = Callable[[dict[str, Any]], dict[str, Any]]

_SOURCE_TYPES = {
    "web": ArchiveItemType.WEB,
    "selection": ArchiveItemType.WEB,
    "pdf": ArchiveItemType.PDF,
    "docx": ArchiveItemType.DOCX,
    "epub": ArchiveItemType.EPUB,
    "mobi": ArchiveItemType.MOBI,
    "paste": ArchiveItemType.PASTE,
}


def generate_device_id() -> str:
    """Return a new device identifier: 32 lowercase hex characters."""
    return secrets.token_hex(16)


def map_source_to_type(source: Any) -> str:
    """Map a legacy ``source`` string to an archive item type."""
    return _SOURCE_TYPES.get(source, ArchiveItemType.WEB).value


def _cached_metadata(doc: dict[str, Any]) -> dict[str, Any]:
    cached = doc.get("cachedDocument")
    if isinstance(cached, dict) and isinstance(cached.get("metadata"), dict):
        return cached["metadata"]
    return {}


def extract_source_label(doc: dict[str, Any]) -> str:
    """Pick a human label for where a legacy document came from.

    Hostname of the URL when it parses, the raw URL text when it does
    not, then the cached document's file name, then the source string.
    """
    url = doc.get("url")
    if url:
        return hostname_of(url) or url

    file_name = _cached_metadata(doc).get("fileName")
    if file_name:
        return file_name

    return doc.get("source") or ""


def migrate_v1_to_v2(data: dict[str, Any]) -> dict[str, Any]:
    """Convert legacy ``recentDocuments`` into ``archiveItems``."""
    recent = data.get("recentDocuments") or []

    if not recent:
        return {**data, "archiveItems": data.get("archiveItems") or []}

    if data.get("archiveItems"):
        return data

    archive_items = []
    for doc in recent:
        item: dict[str, Any] = {
            "id": doc["id"],
            "type": map_source_to_type(doc.get("source")),
            "title": doc.get("title", ""),
            "sourceLabel": extract_source_label(doc),
            "createdAt": doc.get("timestamp", 0),
            "lastOpenedAt": doc.get("timestamp", 0),
        }
        if doc.get("url"):
            item["url"] = doc["url"]
        if doc.get("cachedDocument") is not None:
            item["cachedDocument"] = doc["cachedDocument"]
        file_hash = _cached_metadata(doc).get("fileHash")
        if file_hash:
            item["fileHash"] = file_hash
        archive_items.append(item)

    logger.info("Migrated %d recent documents to archive items", len(archive_items))
    # recentDocuments stays for older readers of the store
    return {**data, "archiveItems": archive_items}


def migrate_v2_to_v3(data: dict[str, Any]) -> dict[str, Any]:
    """Add sync bookkeeping; create a device id only if there is none."""
    return {
        **data,
        "deviceId": data.get("deviceId") or generate_device_id(),
        "syncEnabled": False,
        "syncProvider": None,
        "lastSyncTime": None,
        "lastSyncError": None,
    }


MIGRATIONS: dict[int, MigrationFn] = {
    2: migrate_v1_to_v2,
    3: migrate_v2_to_v3,
}


def get_version(data: dict[str, Any]) -> int:
    """Schema version of raw store data. Missing means v1."""
    return int(data.get("version") or 1)


def ensure_supported(version: int) -> None:
    """Refuse versions written by a newer build.

    Raises:
        UnsupportedSchemaError: ``version`` is above the current version.
    """
    if version > CURRENT_STORAGE_VERSION:
        raise UnsupportedSchemaError(version, CURRENT_STORAGE_VERSION)


def ensure_supported_schema(document: SyncStateDocument) -> SyncStateDocument:
    """Check a decrypted remote snapshot before merging it."""
    ensure_supported(document.schema_version)
    return document


def run_migrations(data: dict[str, Any]) -> dict[str, Any]:
    """Bring raw store data up to ``CURRENT_STORAGE_VERSION``.

    Args:
        data: Raw store contents.

    Returns:
        Migrated data. Data already at the current version is returned
        unchanged.

    Raises:
        UnsupportedSchemaError: The data is newer than this build.
    """
    version = get_version(data)
    ensure_supported(version)
    if version == CURRENT_STORAGE_VERSION:
        return data

    logger.info(
        "Migrating storage from v%d to v%d", version, CURRENT_STORAGE_VERSION
    )
    migrated = dict(data)
    for target in range(version + 1, CURRENT_STORAGE_VERSION + 1):
        step = MIGRATIONS.get(target)
        if step is not None:
            logger.debug("Running migration to v%d", target)
            migrated = step(migrated)

    return {**migrated, "version": CURRENT_STORAGE_VERSION}


def default_storage() -> dict[str, Any]:
    """Initial store contents for a first run."""
    return {
        "version": CURRENT_STORAGE_VERSION,
        "settings": {},
        "presets": {},
        "positions": {},
        "archiveItems": [],
        "recentDocuments": [],
        "customThemes": [],
        "collections": [],
        "deletedItems": {},
        "onboardingCompleted": False,
        "exitConfirmationDismissed": False,
        "deviceId": generate_device_id(),
        "syncEnabled": False,
        "syncProvider": None,
        "lastSyncTime": None,
        "lastSyncError": None,
        "dataUpdatedAt": 0,
    }
