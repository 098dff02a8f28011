"""Watch a Firefox profile directory for writes to places.sqlite."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .firefox_store import FirefoxBookmarks
from .log import get_logger

log = get_logger(__name__)


class PlacesChangeHandler(FileSystemEventHandler):
    """Turns writes to the bookmarks database into :meth:`FirefoxBookmarks.poll` calls.

    History, favicon and session writes land in the same files, so every
    relevant event only asks the store to compare its bookmark fingerprint;
    the store emits a ``changed`` event when bookmarks actually moved on.
    Opened/closed events are ignored since ``poll`` itself opens the database.
    """

    def __init__(self, local: FirefoxBookmarks):
        super().__init__()
        self.local = local
        name = Path(local.places_path).name
        self._names = {name, f"{name}-wal"}

    def _relevant(self, event: FileSystemEvent) -> bool:
        if event.is_directory:
            return False
        paths = [event.src_path, getattr(event, "dest_path", "")]
        return any(Path(str(p)).name in self._names for p in paths if p)

    def _check(self, event: FileSystemEvent) -> None:
        if not self._relevant(event):
            return
        try:
            if self.local.poll():
                log.debug("Bookmarks changed in %s.", self.local.places_path)
        except RuntimeError as e:
            log.warning("%s", e)

    def on_created(self, event: FileSystemEvent) -> None:
        self._check(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._check(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._check(event)


class PlacesWatcher:
    """Runs a watchdog observer on the directory holding places.sqlite."""

    def __init__(self, local: FirefoxBookmarks, *, observer_factory: Callable[[], Observer] = Observer):
        self.local = local
        self.handler = PlacesChangeHandler(local)
        self._observer_factory = observer_factory
        self._observer: Optional[Observer] = None

    @property
    def directory(self) -> Path:
        return Path(self.local.places_path).parent

    @property
    def running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def start(self) -> None:
        if self._observer is not None:
            return
        try:
            self.local.poll()  # records the starting fingerprint
        except RuntimeError as e:
            log.warning("%s", e)
        observer = self._observer_factory()
        observer.schedule(self.handler, str(self.directory), recursive=False)
        observer.start()
        self._observer = observer
        log.debug("Watching %s for bookmark changes.", self.directory)

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(5)
        self._observer = None
