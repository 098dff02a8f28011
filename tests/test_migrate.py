import json

import pytest

from bookhub.coordinator import SyncCoordinator
from bookhub.errors import InvalidRemoteData
from bookhub.migrate import migrate_legacy
from bookhub.model import Entry, bookmarks_equal
from bookhub.serializer import tree_to_files
from bookhub.state_sqlite import SnapshotStore

from fakes import FakeRemote, MemoryBookmarks, TimerRecorder, make_settings

LEGACY = json.dumps(
    {
        "version": 1,
        "exportedAt": "2024-01-01T00:00:00Z",
        "deviceId": "old-laptop",
        "bookmarks": [
            {"type": "folder", "title": "Work", "children": [{"type": "bookmark", "title": "A", "url": "http://a"}]}
        ],
    }
)
LEGACY_TREE = [Entry.folder("Work", [Entry.link("A", "http://a")])]


def _store(tmp_path):
    return SnapshotStore(tmp_path / "state.sqlite", "default")


def test_legacy_export_is_converted_once(tmp_path):
    remote = FakeRemote({"bookmarks/bookmarks.json": LEGACY, "bookmarks/bookmarks.md": "# old"})
    store = _store(tmp_path)

    state = migrate_legacy(store, remote, base_path="bookmarks", device_id="dev")

    assert bookmarks_equal(state.base, LEGACY_TREE)
    assert "bookmarks/bookmarks.json" not in remote.files
    assert "bookmarks/bookmarks.md" not in remote.files
    assert "bookmarks/README.md" in remote.files
    assert bookmarks_equal(remote.list_tree("bookmarks").tree("bookmarks"), LEGACY_TREE)
    assert store.load().remote_shas.keys() == remote.files.keys()
    assert remote.messages == ["Migrate bookmarks to per-file layout (dev)"]

    writes = list(remote.writes)
    assert migrate_legacy(store, remote, base_path="bookmarks", device_id="dev") is None
    assert remote.writes == writes


def test_no_legacy_export_just_records_state(tmp_path):
    remote = FakeRemote()
    store = _store(tmp_path)

    state = migrate_legacy(store, remote, base_path="bookmarks", device_id="dev")

    assert state.base is None
    assert store.exists()
    assert remote.writes == []


def test_existing_per_file_layout_keeps_legacy_file(tmp_path):
    files = tree_to_files([Entry.link("X", "http://x")], "bookmarks")
    files["bookmarks/bookmarks.json"] = LEGACY
    remote = FakeRemote(files)

    state = migrate_legacy(_store(tmp_path), remote, base_path="bookmarks", device_id="dev")

    assert state.base is None
    assert "bookmarks/bookmarks.json" in remote.files
    assert remote.writes == [] and remote.deletes == []


def test_broken_legacy_export_is_retried_later(tmp_path):
    remote = FakeRemote({"bookmarks/bookmarks.json": '{"version": 1, "bookmarks": "nope"}'})
    store = _store(tmp_path)

    with pytest.raises(InvalidRemoteData):
        migrate_legacy(store, remote, base_path="bookmarks", device_id="dev")
    assert not store.exists()


def test_startup_migrates_then_syncs(tmp_path):
    settings = make_settings(tmp_path)
    remote = FakeRemote({"bookmarks/bookmarks.json": LEGACY})
    local_tree = [Entry.folder("Work", [Entry.link("A", "http://a"), Entry.link("B", "http://b")])]
    local = MemoryBookmarks(local_tree)
    coord = SyncCoordinator(
        profile="default",
        settings=settings,
        local=local,
        remote=remote,
        snapshots=SnapshotStore(settings.state_db_path, "default"),
        timer_factory=TimerRecorder(),
    )
    try:
        coord.startup()
        assert coord.periodic.running
    finally:
        coord.stop()

    assert bookmarks_equal(remote.list_tree("bookmarks").tree("bookmarks"), local_tree)
    assert bookmarks_equal(coord.snapshots.load().base, local_tree)


def test_startup_survives_migration_failure(tmp_path, caplog):
    settings = make_settings(tmp_path, sync_on_startup=False, auto_sync=False)
    remote = FakeRemote({"bookmarks/bookmarks.json": "not json"})
    coord = SyncCoordinator(
        profile="default",
        settings=settings,
        local=MemoryBookmarks([]),
        remote=remote,
        snapshots=SnapshotStore(settings.state_db_path, "default"),
        timer_factory=TimerRecorder(),
    )
    coord.startup()
    coord.stop()

    assert "Legacy migration failed" in caplog.text
    assert not coord.snapshots.exists()
