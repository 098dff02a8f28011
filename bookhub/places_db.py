from __future__ import annotations

import base64
import os
import sqlite3
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .model import Entry, Forest

TYPE_LINK = 1
TYPE_FOLDER = 2

_ROOT_LABELS = {
    "toolbar": "Bookmarks Toolbar",
    "menu": "Bookmarks Menu",
    "unfiled": "Other Bookmarks",
    "mobile": "Mobile Bookmarks",
}

# Order in which roots are exposed as top-level folders.
_ROOT_ORDER = ("toolbar", "menu", "unfiled", "mobile")

_ROOT_GUID_TO_NAME = {
    "menu________": "menu",
    "toolbar_____": "toolbar",
    "tags________": "tags",
    "unfiled_____": "unfiled",
    "mobile______": "mobile",
}


class PlacesDB:
    """Bookmark tree access to a Firefox ``places.sqlite``.

    Mutating methods do not commit; callers group them into one transaction
    and call :meth:`commit` (or :meth:`rollback`).
    """

    def __init__(self, db_path: Path | str, *, readonly: bool = False, busy_timeout_ms: int = 5000):
        self.db_path = Path(db_path)
        self.readonly = readonly
        self.busy_timeout_ms = max(0, int(busy_timeout_ms))
        self.conn: sqlite3.Connection | None = None
        self._has_guid = False
        self._has_foreign_count = False
        self.root_ids: Dict[str, int] = {}

    def __enter__(self) -> "PlacesDB":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.conn is not None and not self.readonly:
            if exc_type is None:
                self.conn.commit()
            else:
                self.conn.rollback()
        self.close()

    def open(self) -> None:
        mode = "ro" if self.readonly else "rw"
        uri = f"file:{self.db_path.as_posix()}?mode={mode}"
        timeout_s = max(0.1, self.busy_timeout_ms / 1000.0) if self.busy_timeout_ms > 0 else 0.1
        self.conn = sqlite3.connect(uri, uri=True, timeout=timeout_s)
        self.conn.row_factory = sqlite3.Row
        if self.busy_timeout_ms > 0:
            self.conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
        self._has_guid = self._has_column("moz_bookmarks", "guid")
        self._has_foreign_count = self._has_column("moz_places", "foreign_count")
        self.root_ids = self._discover_root_ids()

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def commit(self) -> None:
        if self.conn is not None:
            self.conn.commit()

    def rollback(self) -> None:
        if self.conn is not None:
            self.conn.rollback()

    def root_folders(self) -> List[Tuple[str, int]]:
        return [(name, self.root_ids[name]) for name in _ROOT_ORDER if name in self.root_ids]

    def root_label(self, name: str) -> str:
        return _ROOT_LABELS.get(name, name.title())

    def is_root(self, item_id: int) -> bool:
        return item_id in self.root_ids.values()

    def read_tree(self) -> Forest:
        """Bookmark roots (toolbar, menu, other, mobile) as top-level folders; tags are left out."""
        c = self._cursor()
        rows = c.execute(
            """
            SELECT b.id, b.type, b.parent, b.position, b.title, b.dateAdded, p.url
            FROM moz_bookmarks b
            LEFT JOIN moz_places p ON p.id = b.fk
            WHERE b.type IN (1, 2)
            ORDER BY b.parent, b.position, b.id
            """
        ).fetchall()
        by_parent: Dict[int, List[sqlite3.Row]] = {}
        for r in rows:
            by_parent.setdefault(int(r["parent"] or 0), []).append(r)

        def _children(folder_id: int, seen: set) -> List[Entry]:
            out: List[Entry] = []
            for r in by_parent.get(folder_id, []):
                rid = int(r["id"])
                created = _us_to_ms(r["dateAdded"])
                if int(r["type"]) == TYPE_FOLDER:
                    if rid in seen:
                        continue
                    seen.add(rid)
                    kids = _children(rid, seen)
                    out.append(Entry.folder(r["title"] or "", kids, id=str(rid), created_at=created))
                    continue
                url = (r["url"] or "").strip()
                if not url or url.startswith("place:"):
                    continue
                out.append(Entry.link(r["title"] or "", url, id=str(rid), created_at=created))
            return out

        forest: Forest = []
        for name, rid in self.root_folders():
            forest.append(Entry.folder(self.root_label(name), _children(rid, {rid}), id=str(rid)))
        return forest

    def fingerprint(self) -> Tuple[int, int]:
        """(bookmark row count, newest lastModified); changes whenever the tree does."""
        c = self._cursor()
        row = c.execute("SELECT COUNT(*) AS n, COALESCE(MAX(lastModified), 0) AS m FROM moz_bookmarks").fetchone()
        return int(row["n"]), int(row["m"])

    def add_folder(self, parent_id: int, title: str, position: Optional[int] = None) -> int:
        self._assert_writable()
        self._require_folder(parent_id)
        return self._insert_bookmark(btype=TYPE_FOLDER, fk=None, parent_id=parent_id, position=position, title=title)

    def add_link(self, parent_id: int, url: str, title: str, position: Optional[int] = None) -> int:
        self._assert_writable()
        self._require_folder(parent_id)
        url = (url or "").strip()
        if not url:
            raise ValueError("link URL cannot be empty")
        place_id = self._ensure_place(url, title)
        return self._insert_bookmark(btype=TYPE_LINK, fk=place_id, parent_id=parent_id, position=position, title=title)

    def move_item(self, item_id: int, new_parent_id: int, position: Optional[int] = None) -> None:
        self._assert_writable()
        self._require_item(item_id)
        self._require_folder(new_parent_id)
        if self.is_root(item_id):
            raise ValueError("cannot move Firefox root folders")
        parent_map = self._parent_map()
        if self._descends_from(new_parent_id, item_id, parent_map):
            raise ValueError("cannot move folder into itself/descendant")
        old_parent = int(parent_map.get(item_id, 0))
        c = self._cursor()
        row = c.execute("SELECT position FROM moz_bookmarks WHERE id = ?", (item_id,)).fetchone()
        c.execute(
            "UPDATE moz_bookmarks SET position = position - 1 WHERE parent = ? AND position > ?",
            (old_parent, int(row["position"] or 0)),
        )
        c.execute("UPDATE moz_bookmarks SET parent = -1 WHERE id = ?", (item_id,))
        pos = self._make_room(new_parent_id, position)
        c.execute(
            "UPDATE moz_bookmarks SET parent = ?, position = ?, lastModified = ? WHERE id = ?",
            (new_parent_id, pos, self._now_us(), item_id),
        )
        self._touch_folder(old_parent)
        self._touch_folder(new_parent_id)

    def set_title(self, item_id: int, title: str) -> None:
        self._assert_writable()
        self._require_item(item_id)
        if self.is_root(item_id):
            raise ValueError("cannot rename Firefox root folders")
        c = self._cursor()
        c.execute(
            "UPDATE moz_bookmarks SET title = ?, lastModified = ? WHERE id = ?",
            (title, self._now_us(), item_id),
        )

    def remove_item(self, item_id: int) -> None:
        """Remove a link, or a folder with everything below it."""
        self._assert_writable()
        self._require_item(item_id)
        if self.is_root(item_id):
            raise ValueError("cannot remove Firefox root folders")
        c = self._cursor()
        row = c.execute("SELECT parent, position FROM moz_bookmarks WHERE id = ?", (item_id,)).fetchone()
        parent, pos = int(row["parent"] or 0), int(row["position"] or 0)
        self._delete_subtree(item_id)
        c.execute("UPDATE moz_bookmarks SET position = position - 1 WHERE parent = ? AND position > ?", (parent, pos))
        self._touch_folder(parent)

    def clear_folder(self, folder_id: int) -> int:
        self._assert_writable()
        self._require_folder(folder_id)
        c = self._cursor()
        kids = [int(r["id"]) for r in c.execute("SELECT id FROM moz_bookmarks WHERE parent = ?", (folder_id,))]
        for kid in kids:
            self._delete_subtree(kid)
        self._touch_folder(folder_id)
        return len(kids)

    def recompute_foreign_count(self) -> None:
        self._assert_writable()
        if not self._has_foreign_count:
            return
        c = self._cursor()
        c.execute(
            """
            UPDATE moz_places
            SET foreign_count = (
                SELECT COUNT(*)
                FROM moz_bookmarks b
                WHERE b.type = 1 AND b.fk = moz_places.id
            )
            """
        )

    def validate_integrity(self) -> None:
        c = self._cursor()
        row = c.execute("PRAGMA integrity_check").fetchone()
        status = str(row[0]) if row is not None else ""
        if status.lower() != "ok":
            raise RuntimeError(f"sqlite integrity_check failed: {status or '<empty>'}")

    def _delete_subtree(self, item_id: int) -> None:
        c = self._cursor()
        for r in c.execute("SELECT id FROM moz_bookmarks WHERE parent = ?", (item_id,)).fetchall():
            self._delete_subtree(int(r["id"]))
        c.execute("DELETE FROM moz_bookmarks WHERE id = ?", (item_id,))

    def _parent_map(self) -> Dict[int, int]:
        c = self._cursor()
        return {int(r["id"]): int(r["parent"] or 0) for r in c.execute("SELECT id, parent FROM moz_bookmarks")}

    def _descends_from(self, node_id: int, ancestor_id: int, parent_map: Dict[int, int]) -> bool:
        current = node_id
        seen = set()
        while current and current not in seen:
            if current == ancestor_id:
                return True
            seen.add(current)
            current = parent_map.get(current, 0)
        return False

    def _discover_root_ids(self) -> Dict[str, int]:
        c = self._cursor()
        out: Dict[str, int] = {}
        if self._has_table("moz_bookmarks_roots"):
            rows = c.execute("SELECT root_name, folder_id FROM moz_bookmarks_roots").fetchall()
            for r in rows:
                out[str(r["root_name"])] = int(r["folder_id"])
        if not out and self._has_guid:
            rows = c.execute(
                "SELECT id, guid FROM moz_bookmarks WHERE guid IN (?, ?, ?, ?, ?)",
                tuple(_ROOT_GUID_TO_NAME.keys()),
            ).fetchall()
            for r in rows:
                name = _ROOT_GUID_TO_NAME.get(str(r["guid"]))
                if name:
                    out[name] = int(r["id"])
        return out

    def _ensure_place(self, url: str, title: str) -> int:
        c = self._cursor()
        row = c.execute("SELECT id, title FROM moz_places WHERE url = ? LIMIT 1", (url,)).fetchone()
        if row:
            pid = int(row["id"])
            if title and not (row["title"] or ""):
                c.execute("UPDATE moz_places SET title = ? WHERE id = ?", (title, pid))
            return pid
        cols = ["url", "title"]
        vals: List[object] = [url, title]
        if self._has_column("moz_places", "guid"):
            cols.append("guid")
            vals.append(self._new_guid())
        placeholders = ", ".join(["?"] * len(vals))
        c.execute(f"INSERT INTO moz_places ({', '.join(cols)}) VALUES ({placeholders})", vals)
        return int(c.lastrowid)

    def _insert_bookmark(
        self,
        *,
        btype: int,
        fk: Optional[int],
        parent_id: int,
        position: Optional[int],
        title: Optional[str],
    ) -> int:
        c = self._cursor()
        now = self._now_us()
        pos = self._make_room(parent_id, position)
        cols = ["type", "fk", "parent", "position", "title", "dateAdded", "lastModified"]
        vals: List[object] = [btype, fk, parent_id, pos, title, now, now]
        if self._has_guid:
            cols.append("guid")
            vals.append(self._new_guid())
        placeholders = ", ".join(["?"] * len(vals))
        c.execute(f"INSERT INTO moz_bookmarks ({', '.join(cols)}) VALUES ({placeholders})", vals)
        row_id = int(c.lastrowid)
        self._touch_folder(parent_id)
        return row_id

    def _make_room(self, parent_id: int, position: Optional[int]) -> int:
        c = self._cursor()
        row = c.execute("SELECT COUNT(*) AS n FROM moz_bookmarks WHERE parent = ?", (parent_id,)).fetchone()
        count = int(row["n"])
        if position is None or position < 0 or position >= count:
            return count
        c.execute(
            "UPDATE moz_bookmarks SET position = position + 1 WHERE parent = ? AND position >= ?",
            (parent_id, int(position)),
        )
        return int(position)

    def _touch_folder(self, folder_id: int) -> None:
        if not folder_id:
            return
        c = self._cursor()
        c.execute("UPDATE moz_bookmarks SET lastModified = ? WHERE id = ?", (self._now_us(), folder_id))

    def _require_item(self, item_id: int) -> None:
        c = self._cursor()
        row = c.execute("SELECT type FROM moz_bookmarks WHERE id = ?", (item_id,)).fetchone()
        if not row:
            raise ValueError(f"bookmark id not found: {item_id}")

    def _require_folder(self, folder_id: int) -> None:
        c = self._cursor()
        row = c.execute("SELECT type FROM moz_bookmarks WHERE id = ?", (folder_id,)).fetchone()
        if not row:
            raise ValueError(f"folder id not found: {folder_id}")
        if int(row["type"] or 0) != TYPE_FOLDER:
            raise ValueError(f"id is not a folder: {folder_id}")

    def _assert_writable(self) -> None:
        if self.readonly:
            raise RuntimeError("database opened in readonly mode")

    def _has_table(self, name: str) -> bool:
        c = self._cursor()
        row = c.execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name=? LIMIT 1",
            (name,),
        ).fetchone()
        return row is not None

    def _has_column(self, table_name: str, column_name: str) -> bool:
        c = self._cursor()
        rows = c.execute(f"PRAGMA table_info({table_name})").fetchall()
        for r in rows:
            if str(r[1]) == column_name:
                return True
        return False

    def _cursor(self) -> sqlite3.Cursor:
        if self.conn is None:
            raise RuntimeError("database is not open")
        return self.conn.cursor()

    def _now_us(self) -> int:
        return int(time.time() * 1_000_000)

    def _new_guid(self) -> str:
        # Firefox GUIDs are commonly 12-char URL-safe strings.
        raw = os.urandom(9)
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _us_to_ms(value) -> Optional[int]:
    if value is None:
        return None
    try:
        v = int(value)
    except (TypeError, ValueError):
        return None
    return v // 1000 if v else None
