from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple, Union

from .diff import ChangeSet, diff
from .log import get_logger
from .model import Entry, EntryKey, EntryRecord, Forest, bookmarks_equal, build_tree, flatten

log = get_logger(__name__)

# Fields merged independently when both sides touched the same entry.
_MERGE_FIELDS = ("title", "parent")


@dataclass(frozen=True)
class ConflictDetail:
    key: EntryKey
    reason: str
    local: str = ""
    remote: str = ""

    def describe(self) -> str:
        extra = ""
        if self.local or self.remote:
            extra = f" (local: {self.local or '-'}; remote: {self.remote or '-'})"
        return f"{self.key}: {self.reason}{extra}"


@dataclass
class Clean:
    merged: Forest
    to_local: ChangeSet = field(default_factory=ChangeSet)
    to_remote: ChangeSet = field(default_factory=ChangeSet)

    success = True


@dataclass
class Conflict:
    details: List[ConflictDetail]

    success = False

    def summary(self, limit: int = 5) -> str:
        lines = [d.describe() for d in self.details[:limit]]
        more = len(self.details) - limit
        if more > 0:
            lines.append(f"... and {more} more")
        return f"{len(self.details)} conflict(s): " + "; ".join(lines)


MergeResult = Union[Clean, Conflict]


def merge(base: Optional[Iterable[Entry]], local: Iterable[Entry], remote: Iterable[Entry]) -> MergeResult:
    """Three-way merge of two bookmark trees against their common ancestor.

    All-or-nothing: one conflicting entry aborts the whole merge and nothing
    is produced for either side.
    """
    local = list(local)
    remote = list(remote)
    if bookmarks_equal(local, remote):
        return Clean(merged=copy.deepcopy(local))

    base_recs = flatten(base or [])
    local_recs = flatten(local)
    remote_recs = flatten(remote)
    d_local = diff(base_recs, local_recs)
    d_remote = diff(base_recs, remote_recs)

    merged: Dict[EntryKey, EntryRecord] = dict(base_recs)
    conflicts: List[ConflictDetail] = []
    for key in sorted(d_local.keys() | d_remote.keys()):
        in_local = key in d_local
        in_remote = key in d_remote
        if in_local and not in_remote:
            outcome = local_recs.get(key)
        elif in_remote and not in_local:
            outcome = remote_recs.get(key)
        else:
            outcome, detail = _resolve_both(key, base_recs.get(key), local_recs.get(key), remote_recs.get(key))
            if detail is not None:
                conflicts.append(detail)
                continue
        if outcome is None:
            merged.pop(key, None)
        else:
            merged[key] = outcome

    if not conflicts:
        conflicts.extend(_structural_conflicts(merged, local_recs, remote_recs))
    if conflicts:
        log.warning("Merge found %d conflict(s).", len(conflicts))
        return Conflict(details=conflicts)

    def _order(r: EntryRecord) -> Tuple:
        lr = local_recs.get(r.key)
        if lr is not None and lr.parent == r.parent:
            return (0, lr.position, r.key)
        rr = remote_recs.get(r.key)
        if rr is not None and rr.parent == r.parent:
            return (1, rr.position, r.key)
        return (2, r.position, r.key)

    merged_tree = build_tree(merged.values(), order_key=_order)
    merged_recs = flatten(merged_tree)
    to_local = diff(local_recs, merged_recs)
    to_remote = diff(remote_recs, merged_recs)
    log.debug("Merge clean: to_local=%s, to_remote=%s", to_local.summary(), to_remote.summary())
    return Clean(merged=merged_tree, to_local=to_local, to_remote=to_remote)


def _resolve_both(
    key: EntryKey,
    base: Optional[EntryRecord],
    local: Optional[EntryRecord],
    remote: Optional[EntryRecord],
) -> Tuple[Optional[EntryRecord], Optional[ConflictDetail]]:
    if local is None and remote is None:
        return None, None
    if local is None:
        return None, ConflictDetail(key, "removed locally but changed remotely", "removed", _describe(remote))
    if remote is None:
        return None, ConflictDetail(key, "changed locally but removed remotely", _describe(local), "removed")

    values = {}
    for name in _MERGE_FIELDS:
        lv, rv = getattr(local, name), getattr(remote, name)
        if lv == rv:
            values[name] = lv
            continue
        bv = getattr(base, name) if base is not None else None
        if base is not None and lv == bv:
            values[name] = rv
        elif base is not None and rv == bv:
            values[name] = lv
        else:
            reason = "added on both sides with different " if base is None else "both sides changed "
            return None, ConflictDetail(key, reason + _FIELD_LABELS[name], _show(name, lv), _show(name, rv))
    return local.with_fields(**values), None


_FIELD_LABELS = {"title": "title", "parent": "folder"}


def _show(name: str, value) -> str:
    if name == "parent":
        return value.name if value is not None else "(top level)"
    return str(value)


def _describe(r: EntryRecord) -> str:
    parent = r.parent.name if r.parent is not None else "(top level)"
    return f"{r.title!r} in {parent}"


def _structural_conflicts(
    merged: Dict[EntryKey, EntryRecord],
    local: Dict[EntryKey, EntryRecord],
    remote: Dict[EntryKey, EntryRecord],
) -> List[ConflictDetail]:
    out: List[ConflictDetail] = []
    for key in sorted(merged):
        r = merged[key]
        if r.parent is not None and r.parent not in merged:
            side = "locally" if r.parent not in local else "remotely"
            other = "remotely" if side == "locally" else "locally"
            out.append(ConflictDetail(key, f"placed {other} in folder {r.parent.name!r}, which was removed {side}"))
    if out:
        return out

    for key in sorted(merged):
        seen = set()
        cur: Optional[EntryKey] = key
        while cur is not None and cur not in seen:
            seen.add(cur)
            cur = merged[cur].parent
        if cur is not None:
            out.append(ConflictDetail(key, "moves on both sides would nest the folder inside itself"))
    return out
