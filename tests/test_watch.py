import sqlite3

import pytest
from watchdog.events import DirModifiedEvent, FileModifiedEvent, FileMovedEvent

from bookhub.bookmarks import EventKind
from bookhub.firefox_store import FirefoxBookmarks
from bookhub.watch import PlacesChangeHandler, PlacesWatcher

from fakes import make_places_db


@pytest.fixture
def store(tmp_path):
    db = tmp_path / "places.sqlite"
    make_places_db(db)
    return FirefoxBookmarks(db)


def _sql(path, statement):
    conn = sqlite3.connect(path)
    try:
        conn.execute(statement)
        conn.commit()
    finally:
        conn.close()


class _CountingStore:
    def __init__(self, places_path):
        self.places_path = places_path
        self.polls = 0

    def poll(self):
        self.polls += 1
        return False


class _FakeObserver:
    def __init__(self):
        self.scheduled = []
        self.alive = False
        self.joined = False

    def schedule(self, handler, path, recursive=False):
        self.scheduled.append((handler, path, recursive))

    def start(self):
        self.alive = True

    def stop(self):
        self.alive = False

    def join(self, timeout=None):
        self.joined = True

    def is_alive(self):
        return self.alive


def test_bookmark_edit_by_firefox_emits_changed(store):
    events = []
    store.subscribe(lambda e: events.append(e.kind))
    handler = PlacesChangeHandler(store)
    store.poll()

    _sql(store.places_path, "UPDATE moz_bookmarks SET title = 'Moz', lastModified = 9999999999999999 WHERE id = 21")
    handler.dispatch(FileModifiedEvent(str(store.places_path) + "-wal"))

    assert events == [EventKind.CHANGED]


def test_history_write_does_not_emit(store):
    events = []
    store.subscribe(lambda e: events.append(e.kind))
    handler = PlacesChangeHandler(store)
    store.poll()

    _sql(store.places_path, "UPDATE moz_places SET title = 'visited' WHERE id = 100")
    handler.dispatch(FileModifiedEvent(str(store.places_path)))

    assert events == []


def test_only_places_files_are_checked(tmp_path):
    local = _CountingStore(tmp_path / "places.sqlite")
    handler = PlacesChangeHandler(local)

    handler.dispatch(FileModifiedEvent(str(tmp_path / "cookies.sqlite")))
    handler.dispatch(FileModifiedEvent(str(tmp_path / "places.sqlite-shm")))
    handler.dispatch(DirModifiedEvent(str(tmp_path)))
    assert local.polls == 0

    handler.dispatch(FileModifiedEvent(str(tmp_path / "places.sqlite")))
    handler.dispatch(FileMovedEvent(str(tmp_path / "places.sqlite-tmp"), str(tmp_path / "places.sqlite")))
    assert local.polls == 2


def test_watcher_schedules_profile_directory(tmp_path):
    local = _CountingStore(tmp_path / "places.sqlite")
    observers = []

    def _factory():
        observers.append(_FakeObserver())
        return observers[-1]

    watcher = PlacesWatcher(local, observer_factory=_factory)
    watcher.start()
    watcher.start()

    assert len(observers) == 1
    assert local.polls == 1
    (handler, path, recursive) = observers[0].scheduled[0]
    assert handler is watcher.handler
    assert path == str(tmp_path)
    assert recursive is False
    assert watcher.running

    watcher.stop()
    assert observers[0].joined
    assert not watcher.running
