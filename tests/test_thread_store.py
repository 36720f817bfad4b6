"""Tests for the in-memory thread store."""

from datetime import datetime, timedelta, timezone

import pytest

from thread_tracker.errors import DuplicateEntry, NotFound, ParentNotFound
from thread_tracker.models import Category, Entry, Status
from thread_tracker.thread_store import ThreadStore

T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def _entry(entry_id: str, minutes: int = 0, author: str = "AB") -> Entry:
    return Entry(
        id=entry_id,
        author_id=author,
        category=Category.PO,
        description="Order 4411",
        content=f"<p>{entry_id}</p>",
        status=Status.NEW,
        created_at=T0 + timedelta(minutes=minutes),
    )


def _build_store() -> ThreadStore:
    store = ThreadStore()
    store.insert_root(_entry("a"))
    store.insert_root(_entry("b"))
    store.insert_reply("a", _entry("a1"))
    store.insert_reply("a1", _entry("a1x"))
    store.insert_reply("a", _entry("a2"))
    return store


def test_walk_is_preorder_across_roots():
    store = _build_store()
    assert [entry.id for entry in store.walk()] == ["a", "a1", "a1x", "a2", "b"]
    assert len(store) == 5


def test_insert_reply_sets_parent_and_keeps_order():
    store = _build_store()
    parent = store.find_by_id("a")

    assert [child.id for child in parent.children] == ["a1", "a2"]
    assert store.find_by_id("a1x").parent_id == "a1"


def test_insert_reply_into_missing_parent_changes_nothing():
    store = _build_store()
    before = store.to_records()

    with pytest.raises(ParentNotFound):
        store.insert_reply("missing", _entry("orphan"))

    assert store.to_records() == before
    assert "orphan" not in store


def test_duplicate_ids_are_rejected():
    store = _build_store()

    with pytest.raises(DuplicateEntry):
        store.insert_root(_entry("a1"))
    with pytest.raises(DuplicateEntry):
        store.insert_reply("b", _entry("a"))


def test_find_by_id_missing_raises():
    store = _build_store()

    with pytest.raises(NotFound):
        store.find_by_id("zzz")
    assert store.get("zzz") is None


def test_update_by_id_preserves_position_and_children():
    store = _build_store()

    def mutate(entry: Entry) -> None:
        entry.content = "<p>changed</p>"

    updated = store.update_by_id("a1", mutate)

    assert updated.content == "<p>changed</p>"
    assert [child.id for child in store.find_by_id("a").children] == ["a1", "a2"]
    assert [child.id for child in updated.children] == ["a1x"]

    with pytest.raises(NotFound):
        store.update_by_id("nope", mutate)


def test_detach_removes_subtree():
    store = _build_store()

    store.detach("a1")

    assert [entry.id for entry in store.walk()] == ["a", "a2", "b"]
    assert "a1x" not in store


def test_nested_records_round_trip():
    store = _build_store()

    rebuilt = ThreadStore.from_records(store.to_records())

    assert [entry.id for entry in rebuilt.walk()] == ["a", "a1", "a1x", "a2", "b"]
    assert rebuilt.to_records() == store.to_records()


def test_flat_rows_are_reassembled():
    store = _build_store()
    rows = store.to_rows()
    assert all("children" not in row for row in rows)

    # Order of children follows row order, regardless of where parents appear.
    rebuilt = ThreadStore.from_records(list(reversed(rows)))

    assert [root.id for root in rebuilt.roots] == ["b", "a"]
    assert [child.id for child in rebuilt.find_by_id("a").children] == ["a2", "a1"]
    assert rebuilt.find_by_id("a1x").parent_id == "a1"


def test_orphan_rows_become_roots():
    rows = [
        _entry("root").to_dict(include_children=False),
        dict(_entry("lost").to_dict(include_children=False), parentId="gone"),
    ]

    store = ThreadStore.from_records(rows)

    assert [root.id for root in store.roots] == ["root", "lost"]
    assert store.find_by_id("lost").parent_id is None


def test_parent_cycles_are_broken():
    rows = [
        dict(_entry("x").to_dict(include_children=False), parentId="y"),
        dict(_entry("y").to_dict(include_children=False), parentId="x"),
    ]

    store = ThreadStore.from_records(rows)

    assert [root.id for root in store.roots] == ["x"]
    assert [child.id for child in store.find_by_id("x").children] == ["y"]
    assert len(list(store.walk())) == 2


def test_every_entry_sits_under_its_declared_parent():
    store = _build_store()

    for entry in store.walk():
        for child in entry.children:
            assert child.parent_id == entry.id
    for root in store.roots:
        assert root.parent_id is None
    ids = [entry.id for entry in store.walk()]
    assert len(ids) == len(set(ids))
