"""
Tests for sync providers -- folder transport and factory.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from conftest import PASSPHRASE, make_doc
from flowsync.errors import DecryptionError, ProviderError
from flowsync.sync.crypto import encrypt
from flowsync.sync.models import SyncProviderConfig, SyncProviderType
from flowsync.sync.providers import (
    CONTENT_FOLDER_NAME,
    SYNC_FILE_NAME,
    FolderProvider,
    create_provider,
)


@pytest.fixture
def provider(sync_folder: Path) -> FolderProvider:
    return FolderProvider(sync_folder)


@pytest.fixture
def blob():
    return encrypt(make_doc(), PASSPHRASE)


class TestFolderState:
    """Tests for the state file."""

    def test_download_missing_is_none(self, provider: FolderProvider):
        assert provider.download() is None
        assert provider.get_remote_metadata().exists is False

    def test_upload_download(self, provider: FolderProvider, sync_folder: Path, blob):
        result = provider.upload(blob)

        assert result.success is True
        assert result.etag
        assert (sync_folder / SYNC_FILE_NAME).exists()
        assert provider.download().to_wire() == blob.to_wire()

    def test_upload_replaces(self, provider: FolderProvider, blob):
        provider.upload(blob)
        newer = encrypt(make_doc(updated_at=2000), PASSPHRASE)
        provider.upload(newer)
        assert provider.download().ciphertext == newer.ciphertext

    def test_no_temp_files_left(self, provider: FolderProvider, sync_folder: Path, blob):
        provider.upload(blob)
        assert [p.name for p in sync_folder.iterdir()] == [SYNC_FILE_NAME]

    def test_metadata(self, provider: FolderProvider, sync_folder: Path, blob):
        provider.upload(blob)
        meta = provider.get_remote_metadata()

        assert meta.exists is True
        assert meta.size == (sync_folder / SYNC_FILE_NAME).stat().st_size
        assert meta.updated_at > 0

    def test_upload_to_missing_folder_fails_softly(self, tmp_path: Path, blob):
        provider = FolderProvider(tmp_path / "unplugged-usb")

        result = provider.upload(blob)

        assert result.success is False
        assert "not writable" in result.error
        assert provider.is_connected() is False

    def test_corrupt_state_file(self, provider: FolderProvider, sync_folder: Path):
        (sync_folder / SYNC_FILE_NAME).write_text("garbage")
        with pytest.raises(DecryptionError):
            provider.download()

    def test_disconnect(self, provider: FolderProvider, blob):
        provider.upload(blob)
        provider.disconnect()

        assert provider.is_connected() is False
        assert provider.download() is None
        assert provider.upload(blob).success is False

    def test_identity(self, provider: FolderProvider):
        assert provider.provider_type == SyncProviderType.FOLDER
        assert provider.needs_auth is False
        assert provider.name == "Folder Sync"


class TestFolderContent:
    """Tests for content files."""

    def test_content_round_trip(self, provider: FolderProvider, sync_folder: Path):
        provider.ensure_content_folder()
        assert provider.upload_content_file("abc.enc", b"\x1f\x8bdata").success is True

        assert (sync_folder / CONTENT_FOLDER_NAME / "abc.enc").exists()
        assert provider.list_content_files() == ["abc.enc"]
        assert provider.download_content_file("abc.enc") == b"\x1f\x8bdata"

    def test_missing_content(self, provider: FolderProvider):
        assert provider.list_content_files() == []
        assert provider.download_content_file("nope.enc") is None
        provider.delete_content_file("nope.enc")

    def test_delete(self, provider: FolderProvider):
        provider.upload_content_file("x.enc", b"1")
        provider.delete_content_file("x.enc")
        assert provider.list_content_files() == []

    @pytest.mark.parametrize("name", ["../escape.enc", "a/b.enc", "", ".hidden"])
    def test_invalid_names_rejected(self, provider: FolderProvider, name: str):
        with pytest.raises(ProviderError):
            provider.download_content_file(name)

    def test_ensure_content_folder_without_folder(self, provider: FolderProvider):
        provider.disconnect()
        with pytest.raises(ProviderError):
            provider.ensure_content_folder()


class TestCreateProvider:
    """Tests for the provider factory."""

    def test_folder(self, sync_folder: Path):
        provider = create_provider(SyncProviderConfig(folder_path=sync_folder))
        assert isinstance(provider, FolderProvider)
        assert provider.folder == sync_folder

    def test_folder_requires_path(self):
        with pytest.raises(ValueError):
            create_provider(SyncProviderConfig())

    def test_unknown_type_rejected(self):
        """Only the folder transport exists; other types fail validation."""
        with pytest.raises(ValidationError):
            SyncProviderConfig(provider_type="onedrive")
