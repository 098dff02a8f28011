from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

FOLDER = "folder"
LINK = "link"


@dataclass
class Entry:
    title: str
    kind: str = LINK
    url: Optional[str] = None
    children: List["Entry"] = field(default_factory=list)
    id: str = ""
    created_at: Optional[int] = None  # ms since epoch, informational only

    @property
    def is_folder(self) -> bool:
        return self.kind == FOLDER

    @staticmethod
    def folder(title: str, children: Optional[List["Entry"]] = None, *, id: str = "", created_at: Optional[int] = None) -> "Entry":
        return Entry(title=title, kind=FOLDER, url=None, children=list(children or []), id=id, created_at=created_at)

    @staticmethod
    def link(title: str, url: str, *, id: str = "", created_at: Optional[int] = None) -> "Entry":
        return Entry(title=title, kind=LINK, url=url, children=[], id=id, created_at=created_at)


Forest = List[Entry]


@dataclass(frozen=True, order=True)
class EntryKey:
    """Cross-replica identity: kind + URL for links, kind + title for folders.

    ``ordinal`` tells apart entries sharing kind and name; it is the number of
    earlier such entries in a depth-first walk that visits siblings in
    ``sibling_order``. Both replicas walk in that order, so duplicates get the
    same ordinals whatever order the browser keeps them in.
    """

    kind: str
    name: str
    ordinal: int = 0

    def __str__(self) -> str:
        label = f"{self.kind} {self.name!r}"
        return f"{label} #{self.ordinal + 1}" if self.ordinal else label


@dataclass(frozen=True)
class EntryRecord:
    key: EntryKey
    kind: str
    title: str
    url: Optional[str]
    parent: Optional[EntryKey]
    position: int
    local_id: str = ""
    created_at: Optional[int] = None

    def with_fields(self, **changes) -> "EntryRecord":
        return replace(self, **changes)


def sibling_order(e: Entry) -> Tuple:
    """Order the remote stores siblings in: folders first, then by title and URL."""
    return (0 if e.is_folder else 1, e.title.lower(), e.url or "")


def walk(
    forest: Iterable[Entry],
    order: Optional[Callable[[Entry], Tuple]] = None,
) -> Iterator[Tuple[Entry, Optional[Entry], int]]:
    """Yield (entry, parent, position) in depth-first pre-order.

    ``order`` changes the visiting order of siblings; positions are always the
    entries' indexes in their own list.
    """

    def _indexed(entries: List[Entry]) -> List[Tuple[int, Entry]]:
        pairs = list(enumerate(entries))
        if order is not None:
            pairs.sort(key=lambda p: order(p[1]))
        return pairs

    stack: List[Tuple[Entry, Optional[Entry], int]] = [(e, None, i) for i, e in _indexed(list(forest))]
    stack.reverse()
    while stack:
        entry, parent, pos = stack.pop()
        yield entry, parent, pos
        if entry.is_folder:
            for i, child in reversed(_indexed(entry.children)):
                stack.append((child, entry, i))


def count_entries(forest: Iterable[Entry]) -> Tuple[int, int]:
    folders = links = 0
    for e, _parent, _pos in walk(forest):
        if e.is_folder:
            folders += 1
        else:
            links += 1
    return folders, links


def flatten(forest: Iterable[Entry]) -> Dict[EntryKey, EntryRecord]:
    seen: Dict[Tuple[str, str], int] = defaultdict(int)
    keys: Dict[int, EntryKey] = {}
    out: Dict[EntryKey, EntryRecord] = {}
    for entry, parent, pos in walk(forest, sibling_order):
        name = entry.title if entry.is_folder else (entry.url or "")
        ordinal = seen[(entry.kind, name)]
        seen[(entry.kind, name)] += 1
        key = EntryKey(entry.kind, name, ordinal)
        keys[id(entry)] = key
        out[key] = EntryRecord(
            key=key,
            kind=entry.kind,
            title=entry.title,
            url=None if entry.is_folder else entry.url,
            parent=keys[id(parent)] if parent is not None else None,
            position=pos,
            local_id=entry.id,
            created_at=entry.created_at,
        )
    return out


def build_tree(
    records: Iterable[EntryRecord],
    *,
    order_key: Optional[Callable[[EntryRecord], Tuple]] = None,
) -> Forest:
    """Rebuild a forest from flat records.

    Raises ValueError when a record points at a parent that is not among the
    records (callers check structure before building).
    """
    recs = list(records)
    by_key = {r.key: r for r in recs}
    children: Dict[Optional[EntryKey], List[EntryRecord]] = defaultdict(list)
    for r in recs:
        if r.parent is not None and r.parent not in by_key:
            raise ValueError(f"{r.key} refers to missing parent {r.parent}")
        children[r.parent].append(r)

    sort_key = order_key or (lambda r: (r.position, r.key))

    emitted = 0

    def _build(parent: Optional[EntryKey]) -> Forest:
        nonlocal emitted
        out: Forest = []
        for r in sorted(children.get(parent, []), key=sort_key):
            emitted += 1
            if r.kind == FOLDER:
                out.append(Entry.folder(r.title, _build(r.key), id=r.local_id, created_at=r.created_at))
            else:
                out.append(Entry.link(r.title, r.url or "", id=r.local_id, created_at=r.created_at))
        return out

    forest = _build(None)
    if emitted != len(recs):
        raise ValueError("folder cycle detected")
    return forest


def canonical(forest: Iterable[Entry]) -> Tuple:
    """Order-insensitive content form; ids and timestamps are left out."""
    items = []
    for e in forest:
        if e.is_folder:
            items.append((FOLDER, e.title, "", canonical(e.children)))
        else:
            items.append((LINK, e.title, e.url or "", ()))
    return tuple(sorted(items))


def bookmarks_equal(a: Optional[Iterable[Entry]], b: Optional[Iterable[Entry]]) -> bool:
    if a is None or b is None:
        return False
    return canonical(a) == canonical(b)


def find_folder(forest: Iterable[Entry], *path: str) -> Optional[Entry]:
    level = list(forest)
    node = None
    for comp in path:
        node = next((e for e in level if e.is_folder and e.title == comp), None)
        if node is None:
            return None
        level = node.children
    return node
