"""
Pydantic models for everything that crosses the sync boundary.

Attributes are snake_case in Python; the JSON form (persisted store and
the encrypted snapshot) keeps the camelCase names every FlowReader
install already writes. Serialize with ``to_wire()`` and parse with
``model_validate`` so aliases and omitted optionals round-trip exactly.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class WireModel(BaseModel):
    """Base for models serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Dump to the JSON-compatible camelCase form, dropping unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ArchiveItemType(str, Enum):
    """Kinds of content kept in the archive."""

    WEB = "web"
    PDF = "pdf"
    DOCX = "docx"
    EPUB = "epub"
    MOBI = "mobi"
    PASTE = "paste"


class ReadingPosition(WireModel):
    """Where the reader stopped. A missing chapter index means chapter 0."""

    block_index: int
    char_offset: int = 0
    timestamp: int = 0
    chapter_index: Optional[int] = None
    sentence_index: Optional[int] = None
    word_index: Optional[int] = None


class ArchiveProgress(WireModel):
    """Coarse progress shown on an archive card."""

    percent: Optional[float] = None
    label: str = ""


class SyncArchiveItem(WireModel):
    """Archive item as synced. Local-only ``cachedDocument`` is dropped on parse."""

    id: str
    type: ArchiveItemType = ArchiveItemType.WEB
    title: str = ""
    author: Optional[str] = None
    source_label: str = ""
    url: Optional[str] = None
    created_at: int = 0
    last_opened_at: int = 0
    last_position: Optional[ReadingPosition] = None
    progress: Optional[ArchiveProgress] = None
    collection_ids: Optional[list[str]] = None
    file_hash: Optional[str] = None
    paste_content: Optional[str] = None


class CustomTheme(WireModel):
    """User-defined colour theme, keyed by name. Extra properties are kept."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    name: str


class Collection(WireModel):
    """A user collection that archive items can belong to."""

    id: str
    name: str
    created_at: int = 0
    updated_at: int = 0
    color: Optional[str] = None


class ContentManifestItem(WireModel):
    """One synced content file."""

    file_hash: str
    archive_item_id: str
    type: ArchiveItemType = ArchiveItemType.WEB
    title: str = ""
    compressed_size: int = 0
    original_size: int = 0
    synced_at: int = 0
    checksum: str = ""


class ContentManifest(WireModel):
    """Index of content files stored next to the state blob."""

    version: Literal[1] = 1
    items: dict[str, ContentManifestItem] = Field(default_factory=dict)


class SyncStateDocument(WireModel):
    """A complete snapshot of the synced state of one install."""

    schema_version: int
    device_id: str
    updated_at: int
    settings: dict[str, Any] = Field(default_factory=dict)
    presets: dict[str, dict[str, Any]] = Field(default_factory=dict)
    custom_themes: list[CustomTheme] = Field(default_factory=list)
    collections: list[Collection] = Field(default_factory=list)
    archive_items: list[SyncArchiveItem] = Field(default_factory=list)
    positions: dict[str, ReadingPosition] = Field(default_factory=dict)
    deleted_items: dict[str, int] = Field(default_factory=dict)
    content_manifest: Optional[ContentManifest] = None
    onboarding_completed: bool = False
    exit_confirmation_dismissed: bool = False


class EncryptedBlob(WireModel):
    """Transport envelope. Bit-exact wire format shared by every install."""

    version: Literal[1] = 1
    algorithm: Literal["AES-GCM"] = "AES-GCM"
    salt: str
    iv: str
    ciphertext: str
    encrypted_at: int


class UploadResult(WireModel):
    """Outcome of a provider upload. Failures are values, not exceptions."""

    success: bool
    updated_at: int = Field(default_factory=now_ms)
    error: Optional[str] = None
    etag: Optional[str] = None


class RemoteMetadata(WireModel):
    """What the provider knows about the remote state file."""

    exists: bool
    updated_at: int = 0
    size: int = 0
    etag: Optional[str] = None


class ConflictType(str, Enum):
    """Which part of the snapshot a conflict was found in."""

    SETTINGS = "settings"
    ARCHIVE_ITEM = "archive-item"
    POSITION = "position"
    PRESET = "preset"
    THEME = "theme"
    COLLECTION = "collection"


class Resolution(str, Enum):
    """How a conflict was settled."""

    LOCAL_WINS = "local-wins"
    REMOTE_WINS = "remote-wins"
    MERGED = "merged"


class ConflictInfo(WireModel):
    """A key present on both sides with differing values."""

    type: ConflictType
    item_id: Optional[str] = None
    local_value: Any = None
    remote_value: Any = None
    resolution: Resolution


class MergeResult(BaseModel):
    """Output of one pairwise merge."""

    merged: SyncStateDocument
    conflicts: list[ConflictInfo] = Field(default_factory=list)
    has_changes: bool = False


class SyncAction(str, Enum):
    """What a sync cycle ended up doing."""

    UPLOADED = "uploaded"
    DOWNLOADED = "downloaded"
    MERGED = "merged"
    NO_CHANGE = "no-change"
    SKIPPED = "skipped"
    ERROR = "error"


class SyncResult(BaseModel):
    """Outcome of ``SyncEngine.sync_now``."""

    success: bool
    timestamp: int = Field(default_factory=now_ms)
    action: SyncAction
    conflicts: list[ConflictInfo] = Field(default_factory=list)
    error: Optional[str] = None
