"""
Sync providers -- where the encrypted state travels.

A provider is a dumb blob store. It moves one state file and a folder
of content files; it never sees plaintext and never merges anything.

Contract every adapter honours:
    - Upload failures come back as ``UploadResult(success=False)``.
    - "Not found" is never an error: ``download`` returns None,
      ``list_content_files`` returns [], deletes are no-ops.
    - Anything else that has to be raised is a ``ProviderError``
      tagged with a ``ProviderErrorKind``.

Folder: plain filesystem directory. USB drives, NAS shares, or a folder
kept in step by a desktop client (iCloud Drive, Google Drive, Dropbox).
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from ..errors import ProviderError, ProviderErrorKind
from ..models import EncryptedBlob, RemoteMetadata, UploadResult
from .crypto import blob_from_json, blob_to_json
from .models import SyncProviderConfig, SyncProviderType

logger = logging.getLogger("flowsync.sync.providers")

SYNC_FILE_NAME = "flowreader_state.enc"
CONTENT_FOLDER_NAME = "content"


def _error_kind(exc: OSError) -> ProviderErrorKind:
    if isinstance(exc, FileNotFoundError):
        return ProviderErrorKind.NOT_FOUND
    if isinstance(exc, PermissionError):
        return ProviderErrorKind.PERMISSION_DENIED
    if isinstance(exc, InterruptedError):
        return ProviderErrorKind.ABORTED
    return ProviderErrorKind.OTHER


class SyncProvider(ABC):
    """Abstract sync transport."""

    needs_auth: bool = False

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable provider name."""

    @property
    @abstractmethod
    def provider_type(self) -> SyncProviderType:
        """Which transport this is."""

    @abstractmethod
    def upload(self, blob: EncryptedBlob) -> UploadResult:
        """Replace the remote state file with ``blob``."""

    @abstractmethod
    def download(self) -> Optional[EncryptedBlob]:
        """Fetch the remote state file.

        Returns:
            The stored blob, or None if no remote state exists yet.
        """

    @abstractmethod
    def get_remote_metadata(self) -> RemoteMetadata:
        """Describe the remote state file without downloading it."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Check if this provider is currently usable."""

    @abstractmethod
    def disconnect(self) -> None:
        """Forget the connection. Remote data is left in place."""

    @abstractmethod
    def ensure_content_folder(self) -> None:
        """Create the content area if it does not exist."""

    @abstractmethod
    def list_content_files(self) -> list[str]:
        """Names of all stored content files."""

    @abstractmethod
    def upload_content_file(self, filename: str, data: bytes) -> UploadResult:
        """Store one content file."""

    @abstractmethod
    def download_content_file(self, filename: str) -> Optional[bytes]:
        """Fetch one content file, or None if it does not exist."""

    @abstractmethod
    def delete_content_file(self, filename: str) -> None:
        """Delete one content file. Missing files are ignored."""


class FolderProvider(SyncProvider):
    """Sync through a directory on a local or mounted filesystem.

    The state blob is written as pretty-printed JSON to
    ``flowreader_state.enc``; content files go under ``content/``.
    Writes go through a temp file and an atomic rename so a desktop
    sync client never picks up a half-written blob.
    """

    def __init__(self, folder: Path):
        self._folder: Optional[Path] = Path(folder).expanduser()

    @property
    def name(self) -> str:
        return "Folder Sync"

    @property
    def provider_type(self) -> SyncProviderType:
        return SyncProviderType.FOLDER

    @property
    def folder(self) -> Optional[Path]:
        return self._folder

    @property
    def state_file(self) -> Optional[Path]:
        return self._folder / SYNC_FILE_NAME if self._folder else None

    @property
    def content_dir(self) -> Optional[Path]:
        return self._folder / CONTENT_FOLDER_NAME if self._folder else None

    def _writable(self) -> bool:
        return (
            self._folder is not None
            and self._folder.is_dir()
            and os.access(self._folder, os.W_OK)
        )

    def _content_path(self, filename: str) -> Path:
        if not filename or Path(filename).name != filename or filename.startswith("."):
            raise ProviderError(
                f"Invalid content file name: {filename!r}",
                ProviderErrorKind.OTHER,
                "content",
            )
        return self.content_dir / filename

    @staticmethod
    def _atomic_write(path: Path, data: bytes) -> None:
        tmp = path.with_name(f".{path.name}.tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)

    def upload(self, blob: EncryptedBlob) -> UploadResult:
        if self._folder is None:
            return UploadResult(success=False, error="No folder selected")
        if not self._writable():
            return UploadResult(
                success=False,
                error="Folder is missing or not writable. Please re-select the folder.",
            )
        try:
            self._atomic_write(self.state_file, blob_to_json(blob).encode("utf-8"))
        except OSError as exc:
            logger.error("Folder upload failed: %s", exc)
            return UploadResult(success=False, error=str(exc))

        meta = self.get_remote_metadata()
        logger.info("State uploaded to folder: %s", self._folder)
        return UploadResult(success=True, etag=meta.etag)

    def download(self) -> Optional[EncryptedBlob]:
        if self._folder is None:
            return None
        try:
            text = self.state_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise ProviderError(str(exc), _error_kind(exc), "download") from exc
        return blob_from_json(text)

    def get_remote_metadata(self) -> RemoteMetadata:
        if self._folder is None:
            return RemoteMetadata(exists=False)
        try:
            st = self.state_file.stat()
        except FileNotFoundError:
            return RemoteMetadata(exists=False)
        except OSError as exc:
            raise ProviderError(str(exc), _error_kind(exc), "metadata") from exc
        return RemoteMetadata(
            exists=True,
            updated_at=int(st.st_mtime * 1000),
            size=st.st_size,
            etag=f"{st.st_mtime_ns:x}-{st.st_size:x}",
        )

    def is_connected(self) -> bool:
        return self._writable()

    def disconnect(self) -> None:
        logger.info("Folder provider disconnected: %s", self._folder)
        self._folder = None

    def ensure_content_folder(self) -> None:
        if self._folder is None:
            raise ProviderError(
                "No folder selected", ProviderErrorKind.NOT_FOUND, "content"
            )
        try:
            self.content_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ProviderError(
                f"Failed to create content folder: {exc}", _error_kind(exc), "content"
            ) from exc

    def list_content_files(self) -> list[str]:
        if self._folder is None or not self.content_dir.is_dir():
            return []
        return sorted(
            p.name for p in self.content_dir.iterdir()
            if p.is_file() and not p.name.startswith(".")
        )

    def upload_content_file(self, filename: str, data: bytes) -> UploadResult:
        if self._folder is None:
            return UploadResult(success=False, error="No folder selected")
        path = self._content_path(filename)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._atomic_write(path, data)
        except OSError as exc:
            logger.error("Content upload failed for %s: %s", filename, exc)
            return UploadResult(success=False, error=str(exc))
        return UploadResult(success=True)

    def download_content_file(self, filename: str) -> Optional[bytes]:
        if self._folder is None:
            return None
        path = self._content_path(filename)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise ProviderError(str(exc), _error_kind(exc), "content") from exc

    def delete_content_file(self, filename: str) -> None:
        if self._folder is None:
            return
        path = self._content_path(filename)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except PermissionError as exc:
            logger.warning("Could not delete content file %s: %s", filename, exc)
        except OSError as exc:
            raise ProviderError(str(exc), _error_kind(exc), "content") from exc


def create_provider(config: SyncProviderConfig) -> SyncProvider:
    """Factory function to create the configured provider.

    Args:
        config: Provider configuration.

    Returns:
        Instantiated SyncProvider.

    Raises:
        ValueError: If the provider type is not supported here or is
            missing required settings.
    """
    if config.provider_type == SyncProviderType.FOLDER:
        if config.folder_path is None:
            raise ValueError("Folder provider requires folder_path")
        return FolderProvider(config.folder_path)
    raise ValueError(f"Unsupported provider: {config.provider_type.value}")
