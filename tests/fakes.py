"""In-memory stand-ins for the remote repository and the browser bookmarks."""

from __future__ import annotations

import copy
import hashlib
from typing import Dict, List, Optional, Tuple

from bookhub.bookmarks import ApplyStats, EventKind, EventSource, apply_changeset
from bookhub.config import ProfileConfig, Settings
from bookhub.errors import NotFound, RemoteConflict
from bookhub.model import Entry, Forest, walk
from bookhub.remote import CommitResult, RemoteFile, RemoteSnapshot


def git_sha(content: str) -> str:
    return hashlib.sha1(content.encode("utf-8")).hexdigest()


class FakeRemote:
    """Path -> content store; commits are atomic and must build on the current head."""

    def __init__(self, files: Optional[Dict[str, str]] = None):
        self.files: Dict[str, Tuple[str, str]] = {}
        self.commits = 0
        self.writes: List[str] = []
        self.deletes: List[str] = []
        self.messages: List[str] = []
        self.failures: List[Exception] = []  # raised by the next commits, in order
        self.list_calls = 0
        if files:
            self.seed(files)

    def seed(self, files: Dict[str, str]) -> None:
        """Change the remote behind everybody's back (another device)."""
        for path, content in files.items():
            self.files[path] = (content, git_sha(content))
        self.commits += 1

    def _commit(self) -> str:
        self.commits += 1
        return f"commit-{self.commits}"

    def get_file(self, path: str) -> Optional[RemoteFile]:
        if path not in self.files:
            return None
        content, sha = self.files[path]
        return RemoteFile(path, content, sha)

    def commit_files(self, changes: Dict[str, Optional[str]], message: str, parent: Optional[str]) -> CommitResult:
        """All-or-nothing commit that, like a ref update, refuses a stale parent."""
        head = f"commit-{self.commits}" if self.commits else None
        if parent != head:
            raise RemoteConflict(f"branch is at {head}, not {parent}", status_code=422)
        if self.failures:
            raise self.failures.pop(0)
        missing = [p for p, c in changes.items() if c is None and p not in self.files]
        if missing:
            raise NotFound(f"no such file: {missing[0]}", status_code=404)
        shas: Dict[str, Optional[str]] = {}
        for path in sorted(changes):
            content = changes[path]
            if content is None:
                del self.files[path]
                self.deletes.append(path)
                shas[path] = None
            else:
                sha = git_sha(content)
                self.files[path] = (content, sha)
                self.writes.append(path)
                shas[path] = sha
        self.messages.append(message)
        return CommitResult(commit=self._commit(), shas=shas)

    def list_tree(self, prefix: str) -> RemoteSnapshot:
        self.list_calls += 1
        if not self.commits:
            return RemoteSnapshot(commit=None)
        want = prefix.strip("/") + "/"
        files = {p: RemoteFile(p, c, s) for p, (c, s) in self.files.items() if p.startswith(want)}
        return RemoteSnapshot(commit=f"commit-{self.commits}", files=files)

    def entry_writes(self) -> List[str]:
        return [p for p in self.writes if not p.endswith("README.md")]


class MemoryBookmarks(EventSource):
    """Browser bookmarks kept in memory; every mutation emits an event."""

    def __init__(self, forest: Optional[Forest] = None):
        super().__init__()
        self._next_id = 1
        self.roots: Forest = self._adopt(copy.deepcopy(forest or []))

    def _adopt(self, forest: Forest) -> Forest:
        for e, _parent, _pos in walk(forest):
            e.id = self._new_id()
        return forest

    def _new_id(self) -> str:
        self._next_id += 1
        return f"m{self._next_id}"

    def _siblings(self, parent_id: Optional[str]) -> List[Entry]:
        if parent_id is None:
            return self.roots
        return self.find(parent_id).children

    def _locate(self, id: str) -> Tuple[Entry, List[Entry]]:
        for e, parent, _pos in walk(self.roots):
            if e.id == id:
                return e, (parent.children if parent is not None else self.roots)
        raise KeyError(id)

    def find(self, id: str) -> Entry:
        return self._locate(id)[0]

    # LocalBookmarks

    def get_tree(self) -> Forest:
        return copy.deepcopy(self.roots)

    def apply_changes(self, changes) -> ApplyStats:
        return apply_changeset(self, changes)

    def replace_tree(self, forest: Forest) -> ApplyStats:
        self.roots = self._adopt(copy.deepcopy(forest))
        self.emit(EventKind.REMOVED)
        added = 0
        for e, _parent, _pos in walk(self.roots):
            added += 1
            self.emit(EventKind.CREATED, e.id)
        return ApplyStats(added=added)

    # BookmarkWriter

    def create_folder(self, parent_id: Optional[str], title: str, position: int) -> str:
        e = Entry.folder(title, id=self._new_id())
        sibs = self._siblings(parent_id)
        sibs.insert(min(position, len(sibs)), e)
        self.emit(EventKind.CREATED, e.id)
        return e.id

    def create_link(self, parent_id: Optional[str], title: str, url: str, position: int) -> str:
        e = Entry.link(title, url, id=self._new_id())
        sibs = self._siblings(parent_id)
        sibs.insert(min(position, len(sibs)), e)
        self.emit(EventKind.CREATED, e.id)
        return e.id

    def move(self, id: str, parent_id: Optional[str], position: int) -> None:
        e, sibs = self._locate(id)
        sibs.remove(e)
        target = self._siblings(parent_id)
        target.insert(min(position, len(target)), e)
        self.emit(EventKind.MOVED, id)

    def set_title(self, id: str, title: str) -> None:
        self.find(id).title = title
        self.emit(EventKind.CHANGED, id)

    def remove(self, id: str) -> None:
        e, sibs = self._locate(id)
        sibs.remove(e)
        self.emit(EventKind.REMOVED, id)


class FakeTimer:
    def __init__(self, delay_s: float, fn):
        self.delay_s = delay_s
        self.fn = fn
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True


class TimerRecorder:
    def __init__(self):
        self.timers: List[FakeTimer] = []

    def __call__(self, delay_s: float, fn) -> FakeTimer:
        t = FakeTimer(delay_s, fn)
        self.timers.append(t)
        return t

    @property
    def last(self) -> FakeTimer:
        return self.timers[-1]


def make_settings(tmp_path, **overrides) -> Settings:
    s = Settings(
        state_dir=str(tmp_path / "state"),
        device_id="test-device",
        profiles={"default": ProfileConfig(token="t0ken", owner="me", repo="marks")},
    )
    for k, v in overrides.items():
        setattr(s, k, v)
    return s


def make_places_db(path) -> None:
    """Minimal places.sqlite: toolbar/Dev/GitHub, menu/Mozilla, a tag and a place: query."""
    import sqlite3

    conn = sqlite3.connect(path)
    try:
        conn.executescript(
            """
            CREATE TABLE moz_places (
              id INTEGER PRIMARY KEY,
              url TEXT,
              title TEXT,
              hidden INTEGER DEFAULT 0,
              guid TEXT,
              foreign_count INTEGER DEFAULT 0
            );
            CREATE TABLE moz_bookmarks (
              id INTEGER PRIMARY KEY,
              type INTEGER,
              fk INTEGER DEFAULT NULL,
              parent INTEGER,
              position INTEGER,
              title TEXT,
              keyword_id INTEGER,
              folder_type TEXT,
              dateAdded INTEGER,
              lastModified INTEGER,
              guid TEXT,
              syncStatus INTEGER NOT NULL DEFAULT 0,
              syncChangeCounter INTEGER NOT NULL DEFAULT 1
            );
            CREATE TABLE moz_bookmarks_roots (root_name TEXT PRIMARY KEY, folder_id INTEGER);
            """
        )
        conn.executemany(
            "INSERT INTO moz_bookmarks_roots(root_name, folder_id) VALUES(?, ?)",
            [("toolbar", 3), ("menu", 2), ("tags", 4), ("unfiled", 5), ("mobile", 6)],
        )
        conn.executemany(
            "INSERT INTO moz_places(id,url,title,hidden,guid,foreign_count) VALUES(?,?,?,?,?,?)",
            [
                (100, "https://github.com/", "GitHub", 0, "p100", 2),
                (101, "https://www.mozilla.org/", "Mozilla", 0, "p101", 1),
                (102, "place:sort=8&maxResults=10", "Recent Tags", 0, "p102", 1),
            ],
        )
        conn.executemany(
            "INSERT INTO moz_bookmarks(id,type,fk,parent,position,title,dateAdded,lastModified,guid) VALUES(?,?,?,?,?,?,?,?,?)",
            [
                (1, 2, None, 0, 0, "root", 0, 0, "root________"),
                (2, 2, None, 1, 0, "menu", 0, 0, "menu________"),
                (3, 2, None, 1, 1, "toolbar", 0, 0, "toolbar_____"),
                (4, 2, None, 1, 2, "tags", 0, 0, "tags________"),
                (5, 2, None, 1, 3, "unfiled", 0, 0, "unfiled_____"),
                (6, 2, None, 1, 4, "mobile", 0, 0, "mobile______"),
                (10, 2, None, 3, 0, "Dev", 0, 0, "folder-dev"),
                (20, 1, 100, 10, 0, "GitHub", 1700000000000000, 0, "l20"),
                (21, 1, 101, 2, 0, "Mozilla", 0, 0, "l21"),
                (22, 1, 102, 5, 0, "Recent Tags", 0, 0, "l22"),
                (30, 2, None, 4, 0, "code", 0, 0, "tag-code"),
                (31, 1, 100, 30, 0, None, 0, 0, "l31"),
            ],
        )
        conn.commit()
    finally:
        conn.close()
