"""
Tests for content sync -- cached documents as separate files.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import PASSPHRASE
from flowsync.models import ContentManifest
from flowsync.sync.content import (
    ContentSync,
    checksum,
    compress_document,
    content_file_name,
    content_key,
    decompress_document,
    hash_string,
)
from flowsync.sync.crypto import generate_salt
from flowsync.sync.providers import CONTENT_FOLDER_NAME, FolderProvider

DOCUMENT = {"title": "Moby Dick", "blocks": [{"text": "Call me Ishmael. ✨"}] * 20}


@pytest.fixture
def provider(sync_folder: Path) -> FolderProvider:
    return FolderProvider(sync_folder)


def item(item_id: str, cached=None, **extra) -> dict:
    data = {"id": item_id, "type": "epub", "title": f"Book {item_id}"}
    if cached is not None:
        data["cachedDocument"] = cached
    data.update(extra)
    return data


class TestNaming:
    """Tests for content file naming."""

    def test_hash_string(self):
        assert hash_string("") == "00000000"
        assert hash_string("a") == "00000061"
        assert hash_string("ab") == "00000c21"

    def test_hash_string_stable_for_long_input(self):
        value = "https://example.com/" + "x" * 500
        assert hash_string(value) == hash_string(value)
        assert len(hash_string(value)) >= 8

    def test_file_hash_preferred(self):
        assert content_key(item("a", fileHash="cafe")) == "cafe"
        assert content_file_name(item("a", fileHash="cafe")) == "cafe.enc"

    def test_url_then_id(self):
        assert content_key(item("a", url="https://e.com")) == hash_string("https://e.com")
        assert content_key(item("a")) == hash_string("a")


class TestCompression:
    """Tests for the document payload."""

    def test_compress(self):
        compressed = compress_document(DOCUMENT)
        assert compressed[:2] == b"\x1f\x8b"
        assert decompress_document(compressed) == DOCUMENT
        assert len(checksum(compressed)) == 64


class TestSyncContent:
    """Tests for uploading and downloading content."""

    def test_upload_missing_content(self, provider: FolderProvider, sync_folder: Path):
        result = ContentSync().sync_content(
            provider, [item("a", DOCUMENT, fileHash="h1"), item("b")], None
        )

        assert result.uploaded == ["a"]
        assert result.errors == []
        entry = result.manifest.items["h1"]
        assert entry.archive_item_id == "a"
        assert entry.title == "Book a"
        assert entry.compressed_size == (sync_folder / CONTENT_FOLDER_NAME / "h1.enc").stat().st_size
        assert result.changed is True

    def test_already_synced_not_reuploaded(self, provider: FolderProvider):
        sync = ContentSync()
        first = sync.sync_content(provider, [item("a", DOCUMENT, fileHash="h1")], None)
        second = sync.sync_content(provider, [item("a", DOCUMENT, fileHash="h1")], first.manifest)

        assert second.uploaded == []
        assert second.changed is False

    def test_download_for_other_device(self, provider: FolderProvider):
        uploaded = ContentSync().sync_content(
            provider, [item("a", DOCUMENT, fileHash="h1")], None
        )

        result = ContentSync().sync_content(
            provider, [item("a", fileHash="h1")], uploaded.manifest
        )

        assert result.downloaded == [("a", DOCUMENT)]
        assert result.errors == []

    def test_encrypted_round_trip(self, provider: FolderProvider, sync_folder: Path):
        salt = generate_salt()
        uploaded = ContentSync(PASSPHRASE, salt).sync_content(
            provider, [item("a", DOCUMENT, fileHash="h1")], None
        )

        stored = (sync_folder / CONTENT_FOLDER_NAME / "h1.enc").read_bytes()
        assert json.loads(stored)["algorithm"] == "AES-GCM"
        assert b"Ishmael" not in stored

        reader = ContentSync()
        reader.set_encryption(PASSPHRASE, salt)
        result = reader.sync_content(provider, [item("a", fileHash="h1")], uploaded.manifest)
        assert result.downloaded == [("a", DOCUMENT)]

    def test_wrong_passphrase_collected_not_raised(self, provider: FolderProvider):
        salt = generate_salt()
        uploaded = ContentSync(PASSPHRASE, salt).sync_content(
            provider, [item("a", DOCUMENT, fileHash="h1")], None
        )

        result = ContentSync("some other passphrase", salt).sync_content(
            provider, [item("a", fileHash="h1")], uploaded.manifest
        )

        assert result.downloaded == []
        assert result.errors == [("a", "Download failed")]

    def test_missing_file_is_an_error_entry(self, provider: FolderProvider):
        uploaded = ContentSync().sync_content(
            provider, [item("a", DOCUMENT, fileHash="h1")], None
        )
        provider.delete_content_file("h1.enc")

        result = ContentSync().sync_content(
            provider, [item("a", fileHash="h1")], uploaded.manifest
        )

        assert result.errors == [("a", "Download failed")]

    def test_checksum_mismatch_tolerated(self, provider: FolderProvider, caplog):
        sync = ContentSync()
        uploaded = sync.sync_content(provider, [item("a", DOCUMENT, fileHash="h1")], None)
        entry = uploaded.manifest.items["h1"].model_copy(update={"checksum": "0" * 64})

        with caplog.at_level("WARNING", logger="flowsync.sync.content"):
            document = sync.download_content(provider, entry)

        assert document == DOCUMENT
        assert "Checksum mismatch" in caplog.text

    def test_disconnected_provider(self, provider: FolderProvider):
        provider.disconnect()
        result = ContentSync().sync_content(provider, [item("a", DOCUMENT)], None)
        assert result.uploaded == []
        assert result.errors and result.errors[0][0] == "sync"


class TestPruning:
    """Tests for removing content of deleted items."""

    def test_prune_orphans(self, provider: FolderProvider):
        sync = ContentSync()
        uploaded = sync.sync_content(
            provider,
            [item("a", DOCUMENT, fileHash="h1"), item("b", DOCUMENT, fileHash="h2")],
            None,
        )

        manifest = sync.prune_orphaned_content(provider, uploaded.manifest, {"a"})

        assert set(manifest.items) == {"h1"}
        assert provider.list_content_files() == ["h1.enc"]

    def test_prune_nothing(self, provider: FolderProvider):
        pruned = ContentSync().prune_orphaned_content(provider, ContentManifest(), set())
        assert pruned.items == {}

    def test_delete_item_content(self, provider: FolderProvider):
        ContentSync().sync_content(provider, [item("a", DOCUMENT, fileHash="h1")], None)
        ContentSync().delete_item_content(provider, item("a", fileHash="h1"))
        assert provider.list_content_files() == []
