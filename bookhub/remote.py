from __future__ import annotations

from dataclasses import dataclass, field
import json
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

from .errors import RemoteConflict
from .log import get_logger
from .model import Forest
from .serializer import INDEX_FILE, files_to_tree, is_entry_path, render_index

log = get_logger(__name__)


@dataclass(frozen=True)
class RemoteFile:
    path: str
    content: str
    sha: str


@dataclass(frozen=True)
class WriteResult:
    sha: str
    commit: Optional[str] = None


@dataclass(frozen=True)
class CommitResult:
    commit: Optional[str]
    shas: Dict[str, Optional[str]] = field(default_factory=dict)  # None for deleted paths


@dataclass
class RemoteSnapshot:
    """All files under a prefix as of a single commit."""

    commit: Optional[str] = None
    files: Dict[str, RemoteFile] = field(default_factory=dict)

    def shas(self) -> Dict[str, str]:
        return {p: f.sha for p, f in self.files.items()}

    def entry_files(self, base_path: str) -> Dict[str, str]:
        return {p: f.content for p, f in self.files.items() if is_entry_path(p, base_path)}

    def tree(self, base_path: str) -> Forest:
        return files_to_tree(self.entry_files(base_path), base_path)


class RemoteStore(Protocol):
    """Path-addressed file store on one branch of a repository."""

    def get_file(self, path: str) -> Optional[RemoteFile]:
        pass

    def commit_files(self, changes: Mapping[str, Optional[str]], message: str, parent: Optional[str]) -> CommitResult:
        """Apply ``changes`` ({path: content, or None to delete}) as one commit on top of ``parent``.

        Raises RemoteConflict when the branch no longer points at ``parent``;
        nothing becomes visible in that case.
        """
        pass

    def list_tree(self, prefix: str) -> RemoteSnapshot:
        pass


@dataclass(frozen=True)
class FileWrite:
    path: str
    content: Optional[str]  # None deletes the file
    expected_sha: Optional[str]

    @property
    def is_delete(self) -> bool:
        return self.content is None


def same_entry(a: Optional[str], b: Optional[str]) -> bool:
    """Compare two entry files, ignoring the informational dateAdded field."""
    if a is None or b is None:
        return a is b
    return _entry_content(a) == _entry_content(b)


def _entry_content(text: str) -> Any:
    try:
        data = json.loads(text)
    except ValueError:
        return text
    if isinstance(data, dict):
        data.pop("dateAdded", None)
    return data


def plan_writes(
    desired: Mapping[str, str],
    current: Mapping[str, RemoteFile],
    base_path: str,
    *,
    previous: Optional[Mapping[str, str]] = None,
    known_shas: Optional[Mapping[str, str]] = None,
) -> List[FileWrite]:
    """Compute the file writes that turn the remote entry files into ``desired``.

    Without ``previous`` the remote is diffed as it is now, using its current
    shas (the caller has already reconciled with it). With ``previous`` (the
    files of the last synced tree) only paths that changed locally since then
    are written, each against the sha recorded at that time; any such path
    that moved on the remote raises RemoteConflict before anything is written.
    """
    writes: List[FileWrite] = []
    if previous is None:
        for path in sorted(desired):
            cur = current.get(path)
            if cur is None or not same_entry(cur.content, desired[path]):
                writes.append(FileWrite(path, desired[path], cur.sha if cur else None))
        for path in sorted(current):
            if is_entry_path(path, base_path) and path not in desired:
                writes.append(FileWrite(path, None, current[path].sha))
        return writes

    known = known_shas or {}
    stale: List[str] = []
    for path in sorted(set(desired) | set(previous)):
        want = desired.get(path)
        had = previous.get(path)
        if same_entry(want, had):
            continue
        cur = current.get(path)
        if want is not None and cur is not None and same_entry(cur.content, want):
            continue  # already there
        if want is None and cur is None:
            continue  # already gone
        expected = known.get(path) if had is not None else None
        cur_sha = cur.sha if cur is not None else None
        if cur_sha != expected:
            stale.append(path)
            continue
        writes.append(FileWrite(path, want, expected))

    if stale:
        sample = ", ".join(stale[:3])
        raise RemoteConflict(
            f"{len(stale)} remote file(s) changed since the last sync ({sample}). Run a full sync instead."
        )
    return writes


def apply_writes(
    store: RemoteStore,
    writes: List[FileWrite],
    *,
    message: str,
    parent: Optional[str],
    extra: Optional[Mapping[str, Optional[str]]] = None,
) -> Tuple[Dict[str, Optional[str]], Optional[str]]:
    """Commit planned writes, plus ``extra`` files such as the index, as one commit on ``parent``.

    Returns ({path: new sha or None if deleted}, new commit). Either every
    change lands or none does.
    """
    changes: Dict[str, Optional[str]] = {w.path: w.content for w in writes}
    changes.update(extra or {})
    if not changes:
        return {}, parent
    res = store.commit_files(changes, message, parent)
    log.debug("Committed %d remote change(s) as %s.", len(changes), (res.commit or "?")[:7])
    return res.shas, res.commit


def index_path(base_path: str) -> str:
    return f"{base_path.strip('/')}/{INDEX_FILE}"


def updated_shas(shas: Mapping[str, str], written: Mapping[str, Optional[str]]) -> Dict[str, str]:
    out = dict(shas)
    for path, sha in written.items():
        if sha is None:
            out.pop(path, None)
        else:
            out[path] = sha
    return out


def index_change(forest: Forest, base_path: str, *, device_id: str) -> Dict[str, Optional[str]]:
    return {index_path(base_path): render_index(forest, device_id=device_id)}
