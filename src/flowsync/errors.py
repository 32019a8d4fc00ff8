"""
Error taxonomy for FlowSync.

Every failure the sync core can raise carries the operation it came
from and a stable ``code`` so callers can record it as ``lastSyncError``
and decide whether the next cycle should retry.
"""

from __future__ import annotations

from enum import Enum

__all__ = [
    "FlowSyncError",
    "DecryptionError",
    "MalformedStateError",
    "UnsupportedSchemaError",
    "SyncError",
    "StorageError",
    "ProviderError",
    "ProviderErrorKind",
]


class FlowSyncError(Exception):
    """Base class for all FlowSync errors."""

    code = "FLOWSYNC_ERROR"

    def __init__(self, message: str, operation: str = ""):
        self.message = message
        self.operation = operation
        super().__init__(message)


class DecryptionError(FlowSyncError):
    """Blob could not be decrypted: wrong passphrase, tampering, or unknown format."""

    code = "DECRYPT_ERROR"

    def __init__(self, message: str, operation: str = "decrypt"):
        super().__init__(message, operation)


class MalformedStateError(FlowSyncError):
    """Decryption succeeded but the plaintext is not a valid state snapshot."""

    code = "MALFORMED_STATE"

    def __init__(self, message: str, operation: str = "deserialize"):
        super().__init__(message, operation)


class UnsupportedSchemaError(FlowSyncError):
    """Data was written by a newer schema than this build understands."""

    code = "UNSUPPORTED_SCHEMA"

    def __init__(self, version: int, supported: int):
        self.version = version
        self.supported = supported
        super().__init__(
            f"Schema version {version} is newer than supported version {supported}",
            "migrate",
        )


class SyncError(FlowSyncError):
    """A sync cycle step failed (configuration, upload, download, decrypt)."""

    code = "SYNC_ERROR"


class StorageError(FlowSyncError):
    """The local store could not be read or written."""

    code = "STORAGE_ERROR"


class ProviderErrorKind(str, Enum):
    """Why a provider operation failed."""

    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    ABORTED = "aborted"
    OTHER = "other"


class ProviderError(FlowSyncError):
    """A transport operation failed in a way that must be raised."""

    code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        kind: ProviderErrorKind = ProviderErrorKind.OTHER,
        operation: str = "",
    ):
        self.kind = kind
        super().__init__(message, operation)
