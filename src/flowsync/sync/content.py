"""
Content sync -- cached source documents as separate files.

The state blob only carries metadata. The documents themselves (parsed
ebooks, extracted articles) are large, so each one travels as its own
gzip-compressed file under the provider's content area, encrypted with
the same passphrase and salt as the state when encryption is on. The
``contentManifest`` inside the synced state says which files exist.

A failed upload or download never fails the sync cycle; it is recorded
in the result and retried next time.
"""

from __future__ import annotations

import base64
import gzip
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from ..errors import FlowSyncError
from ..models import ArchiveItemType, ContentManifest, ContentManifestItem, now_ms
from .crypto import blob_from_json, blob_to_json, decrypt_data, encrypt_data
from .providers import SyncProvider

logger = logging.getLogger("flowsync.sync.content")

CONTENT_FILE_EXTENSION = ".enc"


def hash_string(value: str) -> str:
    """Stable 32-bit string hash, hex encoded to at least 8 characters.

    Matches the identifier other FlowReader installs derive for web
    content, so content files are shared across devices.
    """
    h = 0
    units = value.encode("utf-16-le")
    for i in range(0, len(units), 2):
        h = (h * 31 + int.from_bytes(units[i:i + 2], "little")) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return format(abs(h), "x").zfill(8)


def content_key(item: dict[str, Any]) -> str:
    """Manifest key for an archive item: its file hash, else a hash of url or id."""
    return item.get("fileHash") or hash_string(item.get("url") or item["id"])


def content_file_name(item: dict[str, Any]) -> str:
    return f"{content_key(item)}{CONTENT_FILE_EXTENSION}"


def compress_document(document: Any) -> bytes:
    """Gzip the JSON form of a document."""
    return gzip.compress(json.dumps(document, ensure_ascii=False).encode("utf-8"))


def decompress_document(data: bytes) -> Any:
    return json.loads(gzip.decompress(data).decode("utf-8"))


def checksum(data: bytes) -> str:
    """SHA-256 hex digest of compressed content."""
    return hashlib.sha256(data).hexdigest()


@dataclass
class ContentSyncResult:
    """Outcome of one content sync pass.

    Attributes:
        manifest: Updated manifest covering every synced file.
        uploaded: Archive item ids whose content was uploaded.
        downloaded: (item id, document) pairs fetched from the provider.
        errors: (item id, message) pairs for items that failed.
    """

    manifest: ContentManifest
    uploaded: list[str] = field(default_factory=list)
    downloaded: list[tuple[str, Any]] = field(default_factory=list)
    errors: list[tuple[str, str]] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.uploaded or self.downloaded)


class ContentSync:
    """Moves cached documents between the local store and a provider."""

    def __init__(self, passphrase: Optional[str] = None, salt: Optional[bytes] = None):
        self._passphrase = passphrase
        self._salt = salt

    def set_encryption(self, passphrase: str, salt: bytes) -> None:
        self._passphrase = passphrase
        self._salt = salt

    def clear_encryption(self) -> None:
        self._passphrase = None
        self._salt = None

    def has_encryption(self) -> bool:
        return self._passphrase is not None and self._salt is not None

    def _pack(self, compressed: bytes) -> bytes:
        if not self.has_encryption():
            return compressed
        blob = encrypt_data(
            {"data": base64.b64encode(compressed).decode("ascii")},
            self._passphrase,
            self._salt,
        )
        return blob_to_json(blob).encode("utf-8")

    def _unpack(self, payload: bytes) -> bytes:
        if not self.has_encryption():
            return payload
        wrapped = decrypt_data(blob_from_json(payload), self._passphrase)
        return base64.b64decode(wrapped["data"])

    def upload_content(
        self, provider: SyncProvider, item: dict[str, Any], document: Any
    ) -> Optional[ContentManifestItem]:
        """Compress, optionally encrypt, and upload one document.

        Returns:
            The manifest entry, or None if the upload failed.
        """
        compressed = compress_document(document)
        payload = self._pack(compressed)
        result = provider.upload_content_file(content_file_name(item), payload)
        if not result.success:
            logger.error(
                "Failed to upload content for %s: %s", item.get("title"), result.error
            )
            return None

        return ContentManifestItem(
            file_hash=content_key(item),
            archive_item_id=item["id"],
            type=item.get("type") or ArchiveItemType.WEB,
            title=item.get("title") or "",
            compressed_size=len(payload),
            original_size=len(json.dumps(document, ensure_ascii=False)),
            synced_at=now_ms(),
            checksum=checksum(compressed),
        )

    def download_content(
        self, provider: SyncProvider, entry: ContentManifestItem
    ) -> Optional[Any]:
        """Fetch and decode one document. None if the file is missing."""
        payload = provider.download_content_file(
            f"{entry.file_hash}{CONTENT_FILE_EXTENSION}"
        )
        if payload is None:
            return None

        compressed = self._unpack(payload)
        if checksum(compressed) != entry.checksum:
            logger.warning("Checksum mismatch for %s", entry.title)
        return decompress_document(compressed)

    def sync_content(
        self,
        provider: SyncProvider,
        local_items: list[dict[str, Any]],
        manifest: Optional[ContentManifest],
    ) -> ContentSyncResult:
        """Upload local documents the manifest lacks; download ones local lacks.

        Args:
            provider: Connected provider.
            local_items: Raw local archive items, including ``cachedDocument``.
            manifest: Manifest from the merged state, if any.

        Returns:
            ContentSyncResult with the updated manifest.
        """
        result = ContentSyncResult(
            manifest=ContentManifest(items=dict(manifest.items)) if manifest else ContentManifest()
        )
        try:
            provider.ensure_content_folder()
        except FlowSyncError as exc:
            result.errors.append(("sync", str(exc)))
            return result

        for item in local_items:
            if item.get("cachedDocument") is None:
                continue
            key = content_key(item)
            if key in result.manifest.items:
                continue
            try:
                entry = self.upload_content(provider, item, item["cachedDocument"])
            except (FlowSyncError, OSError, TypeError, ValueError) as exc:
                logger.error("Error uploading content for %s: %s", item.get("title"), exc)
                entry = None
            if entry is None:
                result.errors.append((item["id"], "Upload failed"))
                continue
            result.manifest.items[key] = entry
            result.uploaded.append(item["id"])

        by_key = {content_key(item): item for item in local_items}
        for key, entry in result.manifest.items.items():
            local = by_key.get(key)
            if local is None or local.get("cachedDocument") is not None:
                continue
            try:
                document = self.download_content(provider, entry)
            except (FlowSyncError, OSError, ValueError, KeyError) as exc:
                logger.error("Error downloading content for %s: %s", entry.title, exc)
                document = None
            if document is None:
                result.errors.append((local["id"], "Download failed"))
                continue
            result.downloaded.append((local["id"], document))

        logger.info(
            "Content sync: %d uploaded, %d downloaded, %d error(s)",
            len(result.uploaded), len(result.downloaded), len(result.errors),
        )
        return result

    def prune_orphaned_content(
        self,
        provider: SyncProvider,
        manifest: ContentManifest,
        archive_item_ids: set[str],
    ) -> ContentManifest:
        """Delete content files whose archive item no longer exists."""
        items = dict(manifest.items)
        for key, entry in manifest.items.items():
            if entry.archive_item_id in archive_item_ids:
                continue
            try:
                provider.delete_content_file(f"{key}{CONTENT_FILE_EXTENSION}")
            except FlowSyncError as exc:
                logger.error("Failed to delete orphaned content %s: %s", key, exc)
                continue
            del items[key]
        return ContentManifest(items=items)

    def delete_item_content(self, provider: SyncProvider, item: dict[str, Any]) -> None:
        """Remove one item's content file from the provider."""
        filename = content_file_name(item)
        try:
            provider.delete_content_file(filename)
        except FlowSyncError as exc:
            logger.debug("Could not delete synced content %s: %s", filename, exc)
