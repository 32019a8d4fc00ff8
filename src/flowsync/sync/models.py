"""
Sync data models -- configuration and bookkeeping for the sync engine.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from ..models import SyncAction


class SyncProviderType(str, Enum):
    """Supported sync transports."""

    FOLDER = "folder"


class SyncPhase(str, Enum):
    """Step of a running sync cycle, for progress display."""

    CONNECTING = "connecting"
    DOWNLOADING = "downloading"
    MERGING = "merging"
    UPLOADING = "uploading"
    SYNCING_CONTENT = "syncing-content"


class SyncProviderConfig(BaseModel):
    """Configuration for the selected provider."""

    provider_type: SyncProviderType = SyncProviderType.FOLDER

    # Folder
    folder_path: Optional[Path] = None


class SyncConfig(BaseModel):
    """Sync configuration persisted to ``sync/config.yaml``.

    The passphrase is never stored; only the salt it is combined with.
    """

    enabled: bool = False
    provider: Optional[SyncProviderConfig] = None
    encryption_enabled: bool = True
    encryption_salt: Optional[str] = None
    sync_content: bool = True


class SyncStatusState(BaseModel):
    """Outcome of recent cycles, persisted to ``sync/state.json``."""

    last_sync: Optional[datetime] = None
    last_action: Optional[SyncAction] = None
    last_error: Optional[str] = None
    last_attempt: Optional[datetime] = None
    upload_count: int = 0
    download_count: int = 0
    conflicts_resolved: int = 0
