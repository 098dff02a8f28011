import copy

import pytest

from bookhub.merge import Clean, Conflict, merge
from bookhub.model import LINK, Entry, EntryKey, bookmarks_equal, find_folder


def _base():
    return [Entry.folder("Work", [Entry.link("A", "http://a")])]


def test_rename_and_remote_add_merge_cleanly():
    base = _base()
    local = _base()
    local[0].children[0].title = "A2"
    remote = _base()
    remote[0].children.append(Entry.link("B", "http://b"))

    res = merge(base, local, remote)

    assert isinstance(res, Clean)
    work = find_folder(res.merged, "Work")
    assert [(e.title, e.url) for e in work.children] == [("A2", "http://a"), ("B", "http://b")]
    assert list(res.to_remote.keys()) == [EntryKey(LINK, "http://a")]
    assert list(res.to_local.keys()) == [EntryKey(LINK, "http://b")]


def test_delete_versus_rename_conflicts():
    local = [Entry.folder("Work")]
    remote = _base()
    remote[0].children[0].title = "A-renamed"

    res = merge(_base(), local, remote)

    assert isinstance(res, Conflict)
    assert not res.success
    assert res.details[0].key == EntryKey(LINK, "http://a")
    assert "removed locally" in res.summary()


def test_equal_sides_short_circuit():
    local = _base()
    remote = [Entry.folder("Work", [Entry.link("A", "http://a", created_at=1)])]
    res = merge(None, local, remote)
    assert isinstance(res, Clean)
    assert not res.to_local and not res.to_remote


def test_same_edit_on_both_sides_converges():
    local = _base()
    local[0].children[0].title = "Same"
    remote = copy.deepcopy(local)
    remote.append(Entry.link("C", "http://c"))
    res = merge(_base(), local, remote)
    assert isinstance(res, Clean)
    assert list(res.to_remote.keys()) == []
    assert list(res.to_local.keys()) == [EntryKey(LINK, "http://c")]


def test_different_titles_conflict():
    local = _base()
    local[0].children[0].title = "L"
    remote = _base()
    remote[0].children[0].title = "R"
    res = merge(_base(), local, remote)
    assert isinstance(res, Conflict)
    assert "title" in res.details[0].reason


def test_add_on_both_sides_with_different_folders_conflicts():
    local = [Entry.folder("X", [Entry.link("N", "http://n")]), Entry.folder("Y")]
    remote = [Entry.folder("X"), Entry.folder("Y", [Entry.link("N", "http://n")])]
    res = merge([Entry.folder("X"), Entry.folder("Y")], local, remote)
    assert isinstance(res, Conflict)
    assert "added on both sides" in res.details[0].reason


def test_add_into_folder_removed_on_other_side_conflicts():
    base = [Entry.folder("Old")]
    local = [Entry.folder("Old", [Entry.link("New", "http://new")])]
    remote = []
    res = merge(base, local, remote)
    assert isinstance(res, Conflict)
    assert "removed remotely" in res.details[0].reason


def test_crossed_folder_moves_conflict_as_cycle():
    base = [Entry.folder("X"), Entry.folder("Y")]
    local = [Entry.folder("Y", [Entry.folder("X")])]
    remote = [Entry.folder("X", [Entry.folder("Y")])]
    res = merge(base, local, remote)
    assert isinstance(res, Conflict)
    assert "inside itself" in res.summary()


def test_first_sync_without_base_unions_both_sides():
    local = [Entry.folder("Work", [Entry.link("A", "http://a")])]
    remote = [Entry.folder("Home", [Entry.link("H", "http://h")])]
    res = merge(None, local, remote)
    assert isinstance(res, Clean)
    assert bookmarks_equal(res.merged, local + remote)


def _apply(tree, *edits):
    out = copy.deepcopy(tree)
    for edit in edits:
        edit(out)
    return out


def _rename_a(t):
    t[0].children[0].title = "A2"


def _add_b(t):
    t[0].children.append(Entry.link("B", "http://b"))


def _add_home(t):
    t.append(Entry.folder("Home", [Entry.link("H", "http://h")]))


def _drop_c(t):
    t[0].children = [e for e in t[0].children if e.url != "http://c"]


def _move_d(t):
    d = next(e for e in t[0].children if e.url == "http://d")
    t[0].children.remove(d)
    t.append(d)


@pytest.mark.parametrize(
    "local_edits,remote_edits",
    [
        ((_rename_a,), (_add_b,)),
        ((_add_home, _drop_c), (_rename_a,)),
        ((_move_d,), (_add_b, _drop_c)),
        ((_rename_a, _add_b), (_move_d, _add_home)),
    ],
)
def test_non_conflicting_changes_converge_in_either_order(local_edits, remote_edits):
    base = [
        Entry.folder(
            "Work",
            [Entry.link("A", "http://a"), Entry.link("C", "http://c"), Entry.link("D", "http://d")],
        )
    ]
    local = _apply(base, *local_edits)
    remote = _apply(base, *remote_edits)
    both = _apply(base, *(local_edits + remote_edits))

    ab = merge(base, local, remote)
    ba = merge(base, remote, local)

    assert isinstance(ab, Clean) and isinstance(ba, Clean)
    assert bookmarks_equal(ab.merged, both)
    assert bookmarks_equal(ba.merged, both)
