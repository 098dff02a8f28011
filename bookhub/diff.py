from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from .model import Entry, EntryKey, EntryRecord, flatten

# Fields compared on entries present in both snapshots. url and folder titles
# are part of the identity, so a change there shows up as removed + added.
_DIFF_FIELDS = ("title",)


@dataclass(frozen=True)
class Added:
    record: EntryRecord

    @property
    def parent(self) -> Optional[EntryKey]:
        return self.record.parent


@dataclass(frozen=True)
class Removed:
    record: EntryRecord


@dataclass(frozen=True)
class Moved:
    old_parent: Optional[EntryKey]
    new_parent: Optional[EntryKey]


@dataclass(frozen=True)
class Edited:
    field: str
    old: Any
    new: Any


Change = Union[Added, Removed, Moved, Edited]

Snapshot = Union[Iterable[Entry], Mapping[EntryKey, EntryRecord]]


@dataclass
class ChangeSet:
    """Structural delta from ``before`` to ``after``, keyed by entry identity.

    Identities missing from ``changes`` are unchanged. An entry can be both
    moved and edited; added and removed entries carry a single change.
    """

    changes: Dict[EntryKey, Tuple[Change, ...]] = field(default_factory=dict)
    before: Dict[EntryKey, EntryRecord] = field(default_factory=dict)
    after: Dict[EntryKey, EntryRecord] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.changes)

    def __bool__(self) -> bool:
        return bool(self.changes)

    def __contains__(self, key: object) -> bool:
        return key in self.changes

    def __iter__(self) -> Iterator[EntryKey]:
        return iter(self.changes)

    def keys(self):
        return self.changes.keys()

    def items(self):
        return self.changes.items()

    def get(self, key: EntryKey) -> Tuple[Change, ...]:
        return self.changes.get(key, ())

    def of_type(self, kind: type) -> List[Tuple[EntryKey, Change]]:
        out = []
        for key in sorted(self.changes):
            for ch in self.changes[key]:
                if isinstance(ch, kind):
                    out.append((key, ch))
        return out

    def counts(self) -> Dict[str, int]:
        out = {"added": 0, "removed": 0, "moved": 0, "edited": 0}
        for chs in self.changes.values():
            for ch in chs:
                out[type(ch).__name__.lower()] += 1
        return out

    def summary(self) -> str:
        c = self.counts()
        parts = [f"{n} {label}" for label, n in c.items() if n]
        return ", ".join(parts) if parts else "no changes"


def _records(snapshot: Optional[Snapshot]) -> Dict[EntryKey, EntryRecord]:
    if snapshot is None:
        return {}
    if isinstance(snapshot, Mapping):
        return dict(snapshot)
    return flatten(snapshot)


def diff(base: Optional[Snapshot], current: Optional[Snapshot]) -> ChangeSet:
    """Compute the ChangeSet turning ``base`` into ``current``. Pure."""
    before = _records(base)
    after = _records(current)
    changes: Dict[EntryKey, Tuple[Change, ...]] = {}

    for key in sorted(before.keys() | after.keys()):
        old = before.get(key)
        new = after.get(key)
        if old is None and new is not None:
            changes[key] = (Added(new),)
            continue
        if new is None and old is not None:
            changes[key] = (Removed(old),)
            continue

        found: List[Change] = []
        if old.parent != new.parent:
            found.append(Moved(old.parent, new.parent))
        for name in _DIFF_FIELDS:
            ov, nv = getattr(old, name), getattr(new, name)
            if ov != nv:
                found.append(Edited(name, ov, nv))
        if found:
            changes[key] = tuple(found)

    return ChangeSet(changes=changes, before=before, after=after)
