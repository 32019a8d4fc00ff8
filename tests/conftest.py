"""Shared test fixtures for flowsync."""

from __future__ import annotations

from pathlib import Path

import pytest

from flowsync.models import (
    ReadingPosition,
    SyncArchiveItem,
    SyncStateDocument,
)

PASSPHRASE = "correct horse battery"


@pytest.fixture
def tmp_home(tmp_path: Path) -> Path:
    """Provide a temporary FlowSync home directory for testing."""
    home = tmp_path / ".flowsync"
    home.mkdir()
    return home


@pytest.fixture
def sync_folder(tmp_path: Path) -> Path:
    """Provide an empty shared sync folder."""
    folder = tmp_path / "shared"
    folder.mkdir()
    return folder


def make_item(item_id: str, last_opened_at: int = 1000, **kwargs) -> SyncArchiveItem:
    """Build an archive item with sensible defaults."""
    fields = {
        "id": item_id,
        "type": "web",
        "title": f"Item {item_id}",
        "source_label": "example.com",
        "created_at": 100,
        "last_opened_at": last_opened_at,
    }
    fields.update(kwargs)
    return SyncArchiveItem(**fields)


def make_doc(
    device_id: str = "device-a", updated_at: int = 1000, **kwargs
) -> SyncStateDocument:
    """Build a snapshot with sensible defaults."""
    return SyncStateDocument(
        schema_version=3, device_id=device_id, updated_at=updated_at, **kwargs
    )


def make_position(block_index: int, chapter_index=None, timestamp: int = 0) -> ReadingPosition:
    return ReadingPosition(
        block_index=block_index, chapter_index=chapter_index, timestamp=timestamp
    )


@pytest.fixture
def sample_doc() -> SyncStateDocument:
    """A snapshot carrying one of everything."""
    return make_doc(
        settings={"wpm": 350, "theme": "dark"},
        presets={"fast": {"wpm": 600}},
        custom_themes=[{"name": "Sepia", "background": "#f4ecd8"}],
        collections=[{"id": "c1", "name": "Novels", "createdAt": 10, "updatedAt": 20}],
        archive_items=[make_item("a1", file_hash="abc", type="epub")],
        positions={"doc-1": make_position(12, chapter_index=2, timestamp=900)},
        deleted_items={"gone": 500},
        onboarding_completed=True,
    )
