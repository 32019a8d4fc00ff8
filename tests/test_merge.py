"""
Tests for the merge engine -- field policies, tombstones, conflicts.
"""

from __future__ import annotations

from conftest import make_doc, make_item, make_position
from flowsync.models import (
    ArchiveProgress,
    Collection,
    ConflictType,
    ContentManifest,
    ContentManifestItem,
    Resolution,
)
from flowsync.sync.merge import (
    documents_equivalent,
    is_item_deleted,
    merge_archive_item_pair,
    merge_collections,
    merge_content_manifests,
    merge_deleted_items,
    merge_states,
    tombstone_keys,
)


class TestMergeStates:
    """Tests for whole-document merge."""

    def test_idempotent(self, sample_doc):
        """Merging a snapshot with itself changes nothing but updatedAt."""
        result = merge_states(sample_doc, sample_doc, sample_doc.device_id)

        assert result.has_changes is False
        assert result.conflicts == []
        assert documents_equivalent(result.merged, sample_doc)
        assert result.merged.updated_at >= sample_doc.updated_at

    def test_union_of_archive_items(self):
        local = make_doc(archive_items=[make_item("A", last_opened_at=1000)])
        remote = make_doc("device-b", archive_items=[make_item("B", last_opened_at=2000)])

        result = merge_states(local, remote, "device-a")

        assert [i.id for i in result.merged.archive_items] == ["A", "B"]
        assert result.has_changes is True

    def test_position_chapter_dominates(self):
        local = make_doc(positions={"book-1": make_position(100, chapter_index=1, timestamp=50)})
        remote = make_doc("device-b", positions={"book-1": make_position(5, chapter_index=3, timestamp=50)})

        merged = merge_states(local, remote, "device-a").merged.positions["book-1"]

        assert merged.chapter_index == 3
        assert merged.block_index == 5

    def test_positions_never_regress(self):
        """An older-but-further remote position still wins over a newer local one."""
        local = make_doc(updated_at=9000, positions={"k": make_position(3, timestamp=9000)})
        remote = make_doc("device-b", updated_at=1000, positions={"k": make_position(80, timestamp=1000)})

        result = merge_states(local, remote, "device-a")

        assert result.merged.positions["k"].block_index == 80
        conflict = result.conflicts[0]
        assert conflict.type == ConflictType.POSITION
        assert conflict.item_id == "k"
        assert conflict.resolution == Resolution.REMOTE_WINS

    def test_settings_from_newer_document(self):
        local = make_doc(updated_at=1000, settings={"wpm": 300})
        remote = make_doc("device-b", updated_at=2000, settings={"wpm": 450})

        result = merge_states(local, remote, "device-a")

        assert result.merged.settings == {"wpm": 450}
        settings_conflict = [c for c in result.conflicts if c.type == ConflictType.SETTINGS][0]
        assert settings_conflict.resolution == Resolution.REMOTE_WINS
        assert result.has_changes is True

    def test_settings_tie_keeps_local(self):
        local = make_doc(updated_at=1000, settings={"wpm": 300}, onboarding_completed=True)
        remote = make_doc("device-b", updated_at=1000, settings={"wpm": 450})

        merged = merge_states(local, remote, "device-a").merged

        assert merged.settings == {"wpm": 300}
        assert merged.onboarding_completed is True

    def test_presets_union_newer_wins_shared(self):
        local = make_doc(updated_at=1000, presets={"fast": {"wpm": 600}, "mine": {"wpm": 1}})
        remote = make_doc("device-b", updated_at=2000, presets={"fast": {"wpm": 700}, "theirs": {"wpm": 2}})

        result = merge_states(local, remote, "device-a")

        assert result.merged.presets == {
            "fast": {"wpm": 700}, "mine": {"wpm": 1}, "theirs": {"wpm": 2}
        }
        assert [c.item_id for c in result.conflicts if c.type == ConflictType.PRESET] == ["fast"]

    def test_presets_local_newer_wins_shared(self):
        local = make_doc(updated_at=3000, presets={"fast": {"wpm": 600}})
        remote = make_doc("device-b", updated_at=2000, presets={"fast": {"wpm": 700}})

        assert merge_states(local, remote, "device-a").merged.presets == {"fast": {"wpm": 600}}

    def test_themes_union_by_name(self):
        local = make_doc(updated_at=1000, custom_themes=[{"name": "Sepia", "bg": "#eee"}])
        remote = make_doc(
            "device-b",
            updated_at=2000,
            custom_themes=[{"name": "Sepia", "bg": "#ddd"}, {"name": "Night", "bg": "#000"}],
        )

        merged = merge_states(local, remote, "device-a").merged
        themes = {t.name: t.to_wire() for t in merged.custom_themes}

        assert set(themes) == {"Sepia", "Night"}
        assert themes["Sepia"]["bg"] == "#ddd"

    def test_identity_fields(self):
        local = make_doc(updated_at=5)
        remote = make_doc("device-b", updated_at=10).model_copy(update={"schema_version": 2})

        merged = merge_states(local, remote, "my-device").merged

        assert merged.device_id == "my-device"
        assert merged.schema_version == 3
        assert merged.updated_at > 10

    def test_order_does_not_count_as_change(self):
        a, b = make_item("a"), make_item("b")
        local = make_doc(archive_items=[a, b])
        remote = make_doc("device-b", archive_items=[b, a])

        result = merge_states(local, remote, "device-a")

        assert result.has_changes is False
        assert [i.id for i in result.merged.archive_items] == ["a", "b"]

    def test_remote_empty_local_wins_everything(self, sample_doc):
        remote = make_doc("device-b", updated_at=0)

        result = merge_states(sample_doc, remote, sample_doc.device_id)

        assert result.has_changes is False
        assert documents_equivalent(result.merged, sample_doc)
        assert not documents_equivalent(result.merged, remote)


class TestArchiveItemPair:
    """Tests for merging two versions of one archive item."""

    def test_metadata_by_recency_progress_by_distance(self):
        local = make_item(
            "x", last_opened_at=2000, title="Renamed",
            last_position=make_position(5, chapter_index=1),
            progress=ArchiveProgress(percent=10, label="10%"),
        )
        remote = make_item(
            "x", last_opened_at=1000, title="Original",
            last_position=make_position(0, chapter_index=4),
            progress=ArchiveProgress(percent=60, label="60%"),
        )

        merged = merge_archive_item_pair(local, remote)

        assert merged.title == "Renamed"
        assert merged.last_opened_at == 2000
        assert merged.last_position.chapter_index == 4
        assert merged.progress.percent == 60

    def test_tie_keeps_local_metadata(self):
        local = make_item("x", last_opened_at=1000, title="Local")
        remote = make_item("x", last_opened_at=1000, title="Remote")
        assert merge_archive_item_pair(local, remote).title == "Local"

    def test_backfills_missing_fields(self):
        local = make_item("x", last_opened_at=2000)
        remote = make_item(
            "x", last_opened_at=1000, file_hash="h1",
            url="https://example.com/a", paste_content="text", author="Ann",
        )

        merged = merge_archive_item_pair(local, remote)

        assert merged.file_hash == "h1"
        assert merged.url == "https://example.com/a"
        assert merged.paste_content == "text"
        assert merged.author == "Ann"

    def test_collection_ids_union(self):
        local = make_item("x", last_opened_at=2000, collection_ids=["c1", "c2"])
        remote = make_item("x", last_opened_at=1000, collection_ids=["c2", "c3"])
        assert merge_archive_item_pair(local, remote).collection_ids == ["c1", "c2", "c3"]

    def test_created_at_earliest(self):
        local = make_item("x", last_opened_at=2000, created_at=500)
        remote = make_item("x", last_opened_at=1000, created_at=300)
        assert merge_archive_item_pair(local, remote).created_at == 300

    def test_conflict_recorded_as_merged(self):
        local = make_doc(archive_items=[
            make_item("x", last_opened_at=2000, title="New", last_position=make_position(1))
        ])
        remote = make_doc("device-b", archive_items=[
            make_item("x", last_opened_at=1000, title="Old", last_position=make_position(50))
        ])

        result = merge_states(local, remote, "device-a")

        conflict = [c for c in result.conflicts if c.type == ConflictType.ARCHIVE_ITEM][0]
        assert conflict.item_id == "x"
        assert conflict.resolution == Resolution.MERGED
        assert conflict.local_value["title"] == "New"
        assert conflict.remote_value["title"] == "Old"


class TestTombstones:
    """Tests for deletion tombstones."""

    def test_merge_keeps_newest(self):
        merged = merge_deleted_items({"a": 10, "b": 50}, {"a": 30, "c": 5})
        assert merged == {"a": 30, "b": 50, "c": 5}

    def test_keys(self):
        item = make_item("x", file_hash="h", url="https://www.example.com/a/?utm_source=feed")
        assert tombstone_keys(item) == ["x", "hash:h", "url:https://example.com/a"]

    def test_deleted_item_filtered(self):
        local = make_doc(archive_items=[make_item("x", last_opened_at=1000)])
        remote = make_doc("device-b", deleted_items={"x": 1500})

        result = merge_states(local, remote, "device-a")

        assert result.merged.archive_items == []
        assert result.merged.deleted_items == {"x": 1500}
        assert result.has_changes is True

    def test_reopened_after_delete_survives(self):
        item = make_item("x", last_opened_at=2000)
        assert is_item_deleted(item, {"x": 1500}) is False
        assert is_item_deleted(item, {"x": 2000}) is True

    def test_deleted_by_hash_and_url(self):
        by_hash = make_item("a", file_hash="abc")
        by_url = make_item("b", url="https://www.example.com/story?utm_campaign=x")
        deleted = {"hash:abc": 5000, "url:https://example.com/story": 5000}

        assert is_item_deleted(by_hash, deleted) is True
        assert is_item_deleted(by_url, deleted) is True
        assert is_item_deleted(make_item("c"), deleted) is False


class TestCollectionsAndManifest:
    """Tests for collections and content manifest merge."""

    def test_collection_newer_update_wins(self):
        local = [Collection(id="c", name="Old name", updated_at=100)]
        remote = [Collection(id="c", name="New name", updated_at=200)]

        merged, conflicts = merge_collections(local, remote, remote_is_newer=False)

        assert merged[0].name == "New name"
        assert conflicts[0].resolution == Resolution.REMOTE_WINS

    def test_collection_union(self):
        merged, conflicts = merge_collections(
            [Collection(id="a", name="A")], [Collection(id="b", name="B")], True
        )
        assert [c.id for c in merged] == ["a", "b"]
        assert conflicts == []

    def test_manifest_union(self):
        def entry(key: str, synced_at: int) -> ContentManifestItem:
            return ContentManifestItem(file_hash=key, archive_item_id=key, synced_at=synced_at)

        local = ContentManifest(items={"h1": entry("h1", 10), "h2": entry("h2", 50)})
        remote = ContentManifest(items={"h2": entry("h2", 60), "h3": entry("h3", 1)})

        merged = merge_content_manifests(local, remote)

        assert set(merged.items) == {"h1", "h2", "h3"}
        assert merged.items["h2"].synced_at == 60

    def test_manifest_one_side(self):
        only = ContentManifest()
        assert merge_content_manifests(None, only) is only
        assert merge_content_manifests(None, None) is None
