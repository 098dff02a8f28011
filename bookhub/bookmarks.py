from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol

from .diff import Added, ChangeSet, Edited, Moved, Removed
from .log import get_logger
from .model import FOLDER, EntryKey, EntryRecord, Forest

log = get_logger(__name__)


class EventKind(str, Enum):
    CREATED = "created"
    REMOVED = "removed"
    CHANGED = "changed"
    MOVED = "moved"


@dataclass(frozen=True)
class BookmarkEvent:
    kind: EventKind
    id: str = ""


Listener = Callable[[BookmarkEvent], None]


class EventSource:
    """Fan-out of bookmark mutation events to subscribed listeners."""

    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, kind: EventKind, id: str = "") -> None:
        event = BookmarkEvent(kind, str(id))
        for listener in list(self._listeners):
            listener(event)


class LocalBookmarks(Protocol):
    """The browser-side replica."""

    def get_tree(self) -> Forest:
        pass

    def apply_changes(self, changes: ChangeSet) -> "ApplyStats":
        pass

    def replace_tree(self, forest: Forest) -> "ApplyStats":
        pass

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        pass


class BookmarkWriter(Protocol):
    """Primitive mutations a local backend offers; ids are backend ids."""

    def create_folder(self, parent_id: Optional[str], title: str, position: int) -> str:
        pass

    def create_link(self, parent_id: Optional[str], title: str, url: str, position: int) -> str:
        pass

    def move(self, id: str, parent_id: Optional[str], position: int) -> None:
        pass

    def set_title(self, id: str, title: str) -> None:
        pass

    def remove(self, id: str) -> None:
        pass


@dataclass
class ApplyStats:
    added: int = 0
    moved: int = 0
    edited: int = 0
    removed: int = 0

    @property
    def total(self) -> int:
        return self.added + self.moved + self.edited + self.removed


def _depth(key: Optional[EntryKey], records: Dict[EntryKey, EntryRecord]) -> int:
    d = 0
    seen = set()
    while key is not None and key in records and key not in seen:
        seen.add(key)
        key = records[key].parent
        d += 1
    return d


def apply_changeset(target: BookmarkWriter, changes: ChangeSet) -> ApplyStats:
    """Materialize ``changes`` (computed against the target's own tree) on ``target``.

    Creations go parent-first, then moves and title edits, then removals
    deepest-first, so every operation finds the folders it needs.
    """
    stats = ApplyStats()
    ids: Dict[EntryKey, str] = {k: r.local_id for k, r in changes.before.items()}

    def _parent_id(parent: Optional[EntryKey]) -> Optional[str]:
        if parent is None:
            return None
        if parent not in ids:
            raise KeyError(f"no local folder for {parent}")
        return ids[parent]

    adds = changes.of_type(Added)
    adds.sort(key=lambda kc: (_depth(kc[0], changes.after), kc[1].record.position, kc[0]))
    for key, ch in adds:
        r = ch.record
        parent = _parent_id(r.parent)
        if r.kind == FOLDER:
            ids[key] = target.create_folder(parent, r.title, r.position)
        else:
            ids[key] = target.create_link(parent, r.title, r.url or "", r.position)
        stats.added += 1

    for key, ch in changes.of_type(Moved):
        target.move(ids[key], _parent_id(ch.new_parent), changes.after[key].position)
        stats.moved += 1

    for key, ch in changes.of_type(Edited):
        if ch.field == "title":
            target.set_title(ids[key], str(ch.new))
            stats.edited += 1

    removes = changes.of_type(Removed)
    removes.sort(key=lambda kc: (-_depth(kc[0], changes.before), kc[0]))
    for key, _ch in removes:
        target.remove(ids[key])
        stats.removed += 1

    log.info(
        "Applied local changes: %d added, %d moved, %d edited, %d removed.",
        stats.added,
        stats.moved,
        stats.edited,
        stats.removed,
    )
    return stats
