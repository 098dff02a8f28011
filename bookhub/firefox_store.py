from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from .bookmarks import ApplyStats, EventKind, EventSource, apply_changeset
from .diff import ChangeSet
from .log import get_logger
from .model import Entry, Forest
from .places_db import PlacesDB

log = get_logger(__name__)


def resolve_places_path(profile_or_db_path: Path | str) -> Path:
    """Accept either a Firefox profile directory or a places.sqlite file."""
    p = Path(profile_or_db_path).expanduser()
    if p.is_file():
        return p
    db = p / "places.sqlite"
    if db.exists():
        return db
    raise FileNotFoundError(f"places.sqlite not found in {p}")


class _PlacesWriter:
    """BookmarkWriter over an open PlacesDB transaction; collects events until commit."""

    def __init__(self, db: PlacesDB):
        self.db = db
        self.events: List[Tuple[EventKind, str]] = []

    def _parent(self, parent_id: Optional[str]) -> int:
        if parent_id is None:
            # Top-level entries that are not Firefox roots land in "Other Bookmarks".
            rid = self.db.root_ids.get("unfiled") or self.db.root_ids.get("menu")
            if rid is None:
                raise ValueError("no known Firefox bookmark roots found (unfiled/menu)")
            return rid
        return int(parent_id)

    def create_folder(self, parent_id: Optional[str], title: str, position: int) -> str:
        new_id = self.db.add_folder(self._parent(parent_id), title, position)
        self.events.append((EventKind.CREATED, str(new_id)))
        return str(new_id)

    def create_link(self, parent_id: Optional[str], title: str, url: str, position: int) -> str:
        new_id = self.db.add_link(self._parent(parent_id), url, title, position)
        self.events.append((EventKind.CREATED, str(new_id)))
        return str(new_id)

    def move(self, id: str, parent_id: Optional[str], position: int) -> None:
        self.db.move_item(int(id), self._parent(parent_id), position)
        self.events.append((EventKind.MOVED, id))

    def set_title(self, id: str, title: str) -> None:
        self.db.set_title(int(id), title)
        self.events.append((EventKind.CHANGED, id))

    def remove(self, id: str) -> None:
        self.db.remove_item(int(id))
        self.events.append((EventKind.REMOVED, id))


class FirefoxBookmarks(EventSource):
    """Local replica stored in a Firefox profile's places.sqlite.

    Every mutation is one sqlite transaction: it either lands completely or
    not at all. Mutation events fire after commit. Edits made by Firefox
    itself are picked up by :meth:`poll`.
    """

    def __init__(self, places_path: Path | str):
        super().__init__()
        self.places_path = Path(places_path)
        self._fingerprint: Optional[Tuple[int, int]] = None

    @contextmanager
    def _open(self, *, readonly: bool) -> Iterator[PlacesDB]:
        try:
            with PlacesDB(self.places_path, readonly=readonly) as db:
                yield db
        except sqlite3.OperationalError as e:
            msg = str(e).strip()
            if "locked" in msg.lower() or "busy" in msg.lower():
                raise RuntimeError(
                    f"Firefox database is locked ({self.places_path}). Close Firefox and rerun."
                ) from e
            raise

    def get_tree(self) -> Forest:
        with self._open(readonly=True) as db:
            return db.read_tree()

    def apply_changes(self, changes: ChangeSet) -> ApplyStats:
        with self._open(readonly=False) as db:
            writer = _PlacesWriter(db)
            stats = apply_changeset(writer, changes)
            db.recompute_foreign_count()
            db.validate_integrity()
        self._after_commit(writer)
        return stats

    def replace_tree(self, forest: Forest) -> ApplyStats:
        """Make the local bookmarks exactly ``forest`` (destructive)."""
        stats = ApplyStats()
        with self._open(readonly=False) as db:
            writer = _PlacesWriter(db)
            roots = {db.root_label(name): rid for name, rid in db.root_folders()}
            for _name, rid in db.root_folders():
                stats.removed += db.clear_folder(rid)
                writer.events.append((EventKind.REMOVED, str(rid)))
            for top in forest:
                if top.is_folder and top.title in roots:
                    self._create_children(writer, str(roots[top.title]), top.children, stats)
                else:
                    log.warning("Top-level entry %r is not a Firefox root; placing it in Other Bookmarks.", top.title)
                    self._create_children(writer, None, [top], stats)
            db.recompute_foreign_count()
            db.validate_integrity()
        self._after_commit(writer)
        log.info("Replaced local bookmarks: %d removed, %d created.", stats.removed, stats.added)
        return stats

    def _create_children(self, writer: _PlacesWriter, parent_id: Optional[str], entries: List[Entry], stats: ApplyStats) -> None:
        for pos, e in enumerate(entries):
            if e.is_folder:
                fid = writer.create_folder(parent_id, e.title, pos)
                stats.added += 1
                self._create_children(writer, fid, e.children, stats)
            else:
                writer.create_link(parent_id, e.title, e.url or "", pos)
                stats.added += 1

    def poll(self) -> bool:
        """Emit a ``changed`` event if the database changed since the last poll."""
        with self._open(readonly=True) as db:
            fp = db.fingerprint()
        changed = self._fingerprint is not None and fp != self._fingerprint
        self._fingerprint = fp
        if changed:
            self.emit(EventKind.CHANGED)
        return changed

    def _after_commit(self, writer: _PlacesWriter) -> None:
        with self._open(readonly=True) as db:
            self._fingerprint = db.fingerprint()
        for kind, item_id in writer.events:
            self.emit(kind, item_id)
