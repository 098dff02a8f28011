"""Conversions between bookmark trees and their file representations.

Remote layout (one file per entry, under the profile path)::

    bookmarks/
      README.md                        generated index, never read back
      bookmarks-toolbar/_folder.json   {"type": "folder", "title": ...}
      bookmarks-toolbar/github.com-1a2b3c4d.json
                                       {"type": "bookmark", "title": ..., "url": ...}
"""

from __future__ import annotations

import hashlib
import json
import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Tuple
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import InvalidRemoteData
from .log import get_logger
from .model import Entry, Forest, sibling_order

log = get_logger(__name__)

FOLDER_FILE = "_folder.json"
INDEX_FILE = "README.md"
LEGACY_JSON = "bookmarks.json"
LEGACY_MARKDOWN = "bookmarks.md"

_SKIP_FILES = {INDEX_FILE, LEGACY_JSON, LEGACY_MARKDOWN}


class RemoteEntryFile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["folder", "bookmark"]
    title: str = ""
    url: Optional[str] = None
    dateAdded: Optional[int] = None


class LegacyNode(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["folder", "bookmark"]
    title: str = ""
    url: Optional[str] = None
    dateAdded: Optional[int] = None
    children: List["LegacyNode"] = []


LegacyNode.model_rebuild()


class LegacyExport(BaseModel):
    model_config = ConfigDict(extra="ignore")

    version: Literal[1]
    exportedAt: Optional[str] = None
    deviceId: Optional[str] = None
    bookmarks: List[LegacyNode]


# ---- node dicts (base snapshots and the legacy blob share this shape) ----


def entry_to_dict(e: Entry) -> Dict[str, Any]:
    out: Dict[str, Any] = {"title": e.title, "dateAdded": e.created_at}
    if e.is_folder:
        out["type"] = "folder"
        out["children"] = [entry_to_dict(c) for c in e.children]
    else:
        out["type"] = "bookmark"
        out["url"] = e.url
    return out


def entry_from_dict(data: Mapping[str, Any]) -> Entry:
    created = data.get("dateAdded")
    created_at = int(created) if created is not None else None
    if data.get("type") == "folder" or "children" in data:
        return Entry.folder(
            str(data.get("title") or ""),
            [entry_from_dict(c) for c in data.get("children") or []],
            created_at=created_at,
        )
    return Entry.link(str(data.get("title") or ""), str(data.get("url") or ""), created_at=created_at)


def forest_to_json(forest: Iterable[Entry]) -> str:
    return json.dumps([entry_to_dict(e) for e in forest], ensure_ascii=False, separators=(",", ":"))


def forest_from_json(text: str) -> Forest:
    data = json.loads(text)
    return [entry_from_dict(x) for x in data]


# ---- per-file layout ----


def slugify(text: str, *, max_len: int = 60) -> str:
    s = unicodedata.normalize("NFKD", text or "").encode("ascii", "ignore").decode("ascii")
    s = re.sub(r"[^A-Za-z0-9._-]+", "-", s.lower()).strip("-._")
    return s[:max_len].rstrip("-._") or "untitled"


def _url_hash(url: str) -> str:
    return hashlib.sha1((url or "").encode("utf-8", errors="ignore")).hexdigest()[:8]


def _link_stem(url: str) -> str:
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        host = ""
    if host.startswith("www."):
        host = host[4:]
    return f"{slugify(host or 'link', max_len=40)}-{_url_hash(url)}"


def _unique(name: str, taken: set) -> str:
    candidate = name
    n = 2
    while candidate in taken:
        candidate = f"{name}-{n}"
        n += 1
    taken.add(candidate)
    return candidate


def _dump(data: Dict[str, Any]) -> str:
    return json.dumps(data, ensure_ascii=False, indent=2) + "\n"


def tree_to_files(forest: Iterable[Entry], base_path: str) -> Dict[str, str]:
    """Serialize a forest into {repo path: file content}."""
    files: Dict[str, str] = {}

    def _emit(entries: Iterable[Entry], prefix: str) -> None:
        taken: set = set()
        for e in sorted(entries, key=sibling_order):
            if e.is_folder:
                d = f"{prefix}/{_unique(slugify(e.title), taken)}"
                body = RemoteEntryFile(type="folder", title=e.title, dateAdded=e.created_at)
                files[f"{d}/{FOLDER_FILE}"] = _dump(body.model_dump(exclude_none=True))
                _emit(e.children, d)
            else:
                name = _unique(_link_stem(e.url or ""), taken)
                body = RemoteEntryFile(type="bookmark", title=e.title, url=e.url, dateAdded=e.created_at)
                files[f"{prefix}/{name}.json"] = _dump(body.model_dump(exclude_none=True))

    _emit(forest, base_path.strip("/"))
    return files


def is_entry_path(path: str, base_path: str) -> bool:
    prefix = base_path.strip("/") + "/"
    if not path.startswith(prefix) or not path.endswith(".json"):
        return False
    rel = path[len(prefix):]
    return rel not in _SKIP_FILES


def files_to_tree(files: Mapping[str, str], base_path: str) -> Forest:
    """Rebuild a forest from remote entry files.

    Directories without a ``_folder.json`` (created by hand) become folders
    named after the directory. Sibling order is normalized: folders first,
    then links, each by title.
    """
    prefix = base_path.strip("/") + "/"
    folders: Dict[str, Entry] = {}
    links: List[Tuple[str, Entry]] = []

    def _folder(dir_path: str) -> Entry:
        if dir_path not in folders:
            folders[dir_path] = Entry.folder(dir_path.rsplit("/", 1)[-1])
        return folders[dir_path]

    for path in sorted(files):
        if not is_entry_path(path, base_path):
            continue
        rel = path[len(prefix):]
        parent_dir, _, name = rel.rpartition("/")
        try:
            data = RemoteEntryFile.model_validate_json(files[path])
        except ValidationError as e:
            raise InvalidRemoteData(f"Invalid bookmark file {path}: {e.errors()[0].get('msg', e)}") from e
        if name == FOLDER_FILE:
            if not parent_dir:
                raise InvalidRemoteData(f"Folder file outside a folder: {path}")
            f = _folder(parent_dir)
            f.title = data.title
            f.created_at = data.dateAdded
        elif data.type == "bookmark":
            if not data.url:
                raise InvalidRemoteData(f"Bookmark without url: {path}")
            links.append((parent_dir, Entry.link(data.title, data.url, created_at=data.dateAdded)))
        else:
            raise InvalidRemoteData(f"Folder entry must be named {FOLDER_FILE}: {path}")

    # Make sure every ancestor directory exists as a folder.
    for dir_path in list(folders) + [d for d, _ in links]:
        parts = dir_path.split("/") if dir_path else []
        for i in range(1, len(parts) + 1):
            _folder("/".join(parts[:i]))

    roots: Forest = []
    for dir_path in sorted(folders, key=lambda d: (d.count("/"), d)):
        parent_dir, _, _ = dir_path.rpartition("/")
        (folders[parent_dir].children if parent_dir else roots).append(folders[dir_path])
    for parent_dir, link in links:
        (folders[parent_dir].children if parent_dir else roots).append(link)

    def _sort(entries: Forest) -> None:
        entries.sort(key=sibling_order)
        for e in entries:
            if e.is_folder:
                _sort(e.children)

    _sort(roots)
    return roots


# ---- generated index ----


def render_index(forest: Iterable[Entry], *, device_id: str, synced_at: Optional[str] = None) -> str:
    when = synced_at or datetime.now(timezone.utc).isoformat(timespec="seconds")
    lines: List[str] = ["# Bookmarks", "", f"> Last synchronized: {when}", f"> Device: `{device_id}`", ""]
    for e in sorted(forest, key=sibling_order):
        _render_node(e, lines, 2)
    return "\n".join(lines).rstrip("\n") + "\n"


def _render_node(node: Entry, lines: List[str], level: int) -> None:
    if node.is_folder:
        lines.append(f"{'#' * min(level, 6)} {node.title or '(untitled)'}")
        lines.append("")
        kids = sorted(node.children, key=sibling_order)
        leaf = [c for c in kids if not c.is_folder]
        sub = [c for c in kids if c.is_folder]
        for c in leaf:
            _render_node(c, lines, level + 1)
        if leaf:
            lines.append("")
        for c in sub:
            _render_node(c, lines, level + 1)
    else:
        title = (node.title or node.url or "").replace("[", "\\[").replace("]", "\\]")
        lines.append(f"- [{title}]({node.url})")


# ---- legacy single-blob export ----


def parse_legacy_json(text: str) -> Forest:
    try:
        data = LegacyExport.model_validate_json(text)
    except ValidationError as e:
        raise InvalidRemoteData(f"Invalid legacy bookmark export: {e.errors()[0].get('msg', e)}") from e
    return [_from_legacy(n) for n in data.bookmarks]


def _from_legacy(node: LegacyNode) -> Entry:
    if node.type == "folder":
        return Entry.folder(node.title, [_from_legacy(c) for c in node.children], created_at=node.dateAdded)
    return Entry.link(node.title, node.url or "", created_at=node.dateAdded)
