"""Tests for the entry service."""

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from thread_tracker.errors import (
    EmptyContent,
    InvalidValue,
    NoIdentity,
    NotFound,
    ParentNotFound,
    PersistenceError,
)
from thread_tracker.models import Category, Status
from thread_tracker.persistence import MemoryPersistence, MutationKind
from thread_tracker.service import EntryService

T0 = datetime(2025, 6, 2, 8, 30, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: int = 1) -> datetime:
        self.now += timedelta(minutes=minutes)
        return self.now


class FailingPersistence(MemoryPersistence):
    """Accepts loads but rejects commits while ``failing`` is set."""

    def __init__(self):
        super().__init__()
        self.failing = False

    def commit(self, mutation, snapshot):
        if self.failing:
            raise PersistenceError("storage offline")
        super().commit(mutation, snapshot)


def _service(persistence=None, clock=None) -> EntryService:
    counter = itertools.count(1)
    return EntryService(
        persistence or MemoryPersistence(),
        clock=clock or FakeClock(),
        id_factory=lambda: f"e{next(counter)}",
    )


def test_create_root_entry():
    service = _service()

    entry = service.create_entry(
        None, "<p>Quote requested</p>", Category.RFQ, "Valves", Status.NEW, "AB"
    )

    assert entry.id == "e1"
    assert entry.parent_id is None
    assert entry.author_id == "AB"
    assert entry.category is Category.RFQ
    assert entry.description == "Valves"
    assert entry.created_at == T0
    assert entry.edited_at is None and entry.edited_by is None
    assert service.roots() == [entry]


def test_create_accepts_string_classifications():
    service = _service()

    entry = service.create_entry(None, "x", "claim", "Damaged", "in progress", "AB")

    assert entry.category is Category.CLAIM
    assert entry.status is Status.IN_PROGRESS


def test_unknown_category_is_rejected():
    service = _service()

    with pytest.raises(InvalidValue):
        service.create_entry(None, "x", "INVOICE", "", "New", "AB")
    assert service.roots() == []


def test_empty_content_is_rejected_without_state_change():
    service = _service()
    service.create_entry(None, "first", caller_identity="AB")

    with pytest.raises(EmptyContent):
        service.create_entry(None, "   ", caller_identity="AB")

    assert len(service.roots()) == 1
    assert len(service.persistence.mutations) == 1


def test_root_without_identity_is_rejected():
    service = _service()

    with pytest.raises(NoIdentity):
        service.create_entry(None, "content", caller_identity="  ")
    assert service.roots() == []


def test_reply_inherits_classification_from_parent():
    service = _service()
    root = service.create_entry(None, "root", Category.CLAIM, "Late pallets", Status.IN_PROGRESS, "AB")

    reply = service.create_entry(root.id, "reply", Category.PO, "ignored", Status.COMPLETE, "CD")

    assert reply.parent_id == root.id
    assert (reply.category, reply.description, reply.status) == (
        Category.CLAIM,
        "Late pallets",
        Status.IN_PROGRESS,
    )
    assert service.find_by_id(root.id).children == [reply]


def test_reply_uses_current_parent_status():
    service = _service()
    root = service.create_entry(None, "root", Category.ETA, "Ship 12", Status.NEW, "AB")
    service.update_entry(root.id, status=Status.COMPLETE, caller_identity="AB")

    reply = service.create_entry(root.id, "reply", caller_identity="CD")

    assert reply.status is Status.COMPLETE


def test_reply_falls_back_to_parent_author():
    service = _service()
    root = service.create_entry(None, "root", caller_identity="AB")

    reply = service.create_entry(root.id, "reply", caller_identity=None)

    assert reply.author_id == "AB"


def test_reply_to_missing_parent():
    service = _service()

    with pytest.raises(ParentNotFound):
        service.create_entry("ghost", "reply", caller_identity="AB")
    with pytest.raises(NoIdentity):
        service.create_entry("ghost", "reply", caller_identity="")
    assert service.roots() == []


def test_update_changes_only_content_and_edit_stamp():
    clock = FakeClock()
    service = _service(clock=clock)
    root = service.create_entry(None, "<p>v1</p>", Category.PO, "PO 88", Status.NEW, "AB")
    reply = service.create_entry(root.id, "reply", caller_identity="CD")
    before = root.to_dict(include_children=False)
    edit_time = clock.advance(15)

    updated = service.update_entry(root.id, content="X", caller_identity="EF")

    after = updated.to_dict(include_children=False)
    for key in ("id", "parentId", "authorId", "category", "description", "createdAt", "status"):
        assert after[key] == before[key]
    assert updated.content == "X"
    assert updated.edited_at == edit_time
    assert updated.edited_by == "EF"
    assert updated.children == [reply]


def test_update_status_only_keeps_content():
    service = _service()
    root = service.create_entry(None, "<p>keep</p>", caller_identity="AB")

    updated = service.update_entry(root.id, status="Cancelled", caller_identity="AB")

    assert updated.content == "<p>keep</p>"
    assert updated.status is Status.CANCELLED


def test_update_errors():
    service = _service()
    root = service.create_entry(None, "text", caller_identity="AB")

    with pytest.raises(NotFound):
        service.update_entry("missing", content="x", caller_identity="AB")
    with pytest.raises(EmptyContent):
        service.update_entry(root.id, content=" ", caller_identity="AB")
    assert service.find_by_id(root.id).edited_at is None


def test_edit_stamp_never_precedes_creation():
    clock = FakeClock()
    service = _service(clock=clock)
    root = service.create_entry(None, "text", caller_identity="AB")
    clock.now = T0 - timedelta(days=1)

    updated = service.update_entry(root.id, content="later", caller_identity="AB")

    assert updated.edited_at >= updated.created_at


def test_latest_activity_follows_child_edit():
    clock = FakeClock()
    service = _service(clock=clock)
    root = service.create_entry(None, "root", caller_identity="AB")
    clock.advance(5)
    child = service.create_entry(root.id, "child", caller_identity="CD")
    t1 = clock.advance(60)
    service.update_entry(child.id, content="child edited", caller_identity="EF")

    latest = service.latest_activity(root.id)

    assert latest.timestamp == t1
    assert latest.author_id == "EF"
    assert latest.content == "child edited"
    assert [state.entry_id for state in service.thread_history(root.id)] == [child.id, root.id]


def test_sorted_roots_by_activity():
    clock = FakeClock()
    service = _service(clock=clock)
    first = service.create_entry(None, "first", caller_identity="AB")
    clock.advance()
    second = service.create_entry(None, "second", caller_identity="AB")
    assert service.sorted_roots_by_activity() == [second, first]

    clock.advance()
    service.create_entry(first.id, "bump", caller_identity="CD")

    assert service.sorted_roots_by_activity() == [first, second]


def test_register_user_is_idempotent():
    service = _service()

    first = service.register_user("AB", "Alice Brown")
    again = service.register_user("AB", "Someone Else")

    assert again is first
    assert again.display_name == "Alice Brown"
    assert len(service.users) == 1
    kinds = [mutation.kind for mutation in service.persistence.mutations]
    assert kinds == [MutationKind.REGISTER_USER]


def test_register_blank_user_is_rejected():
    service = _service()

    with pytest.raises(NoIdentity):
        service.register_user(" ", "Nobody")


def test_failed_create_is_rolled_back():
    persistence = FailingPersistence()
    service = _service(persistence)
    root = service.create_entry(None, "root", caller_identity="AB")
    persistence.failing = True

    with pytest.raises(PersistenceError):
        service.create_entry(root.id, "reply", caller_identity="CD")
    with pytest.raises(PersistenceError):
        service.create_entry(None, "another", caller_identity="CD")

    assert service.roots() == [root]
    assert root.children == []
    assert len(service.store) == 1


def test_failed_update_is_restored():
    persistence = FailingPersistence()
    service = _service(persistence)
    root = service.create_entry(None, "original", caller_identity="AB")
    persistence.failing = True

    with pytest.raises(PersistenceError):
        service.update_entry(root.id, content="new", status="Complete", caller_identity="CD")

    assert root.content == "original"
    assert root.status is Status.NEW
    assert root.edited_at is None and root.edited_by is None


def test_failed_registration_is_rolled_back():
    persistence = FailingPersistence()
    service = _service(persistence)
    persistence.failing = True

    with pytest.raises(PersistenceError):
        service.register_user("AB", "Alice")

    assert "AB" not in service.users


def test_reload_restores_committed_state():
    persistence = MemoryPersistence()
    service = _service(persistence)
    root = service.create_entry(None, "root", Category.PO, "PO 1", Status.NEW, "AB")
    service.create_entry(root.id, "reply", caller_identity="CD")
    service.register_user("AB", "Alice")

    fresh = _service(persistence)

    assert fresh.snapshot() == service.snapshot()
    assert fresh.find_by_id(root.id).children[0].content == "reply"


def test_tree_integrity_over_many_creates():
    service = _service()
    roots = [service.create_entry(None, f"root {n}", caller_identity="AB") for n in range(3)]
    targets = [root.id for root in roots]
    for n in range(12):
        reply = service.create_entry(targets[n % len(targets)], f"reply {n}", caller_identity="CD")
        targets.append(reply.id)

    seen = set()
    for root in service.roots():
        assert root.parent_id is None
        stack = [root]
        while stack:
            entry = stack.pop()
            assert entry.id not in seen
            seen.add(entry.id)
            for child in entry.children:
                assert child.parent_id == entry.id
                stack.append(child)
    assert len(seen) == 15


def test_content_is_sanitized_on_create_and_update():
    service = _service()

    root = service.create_entry(None, '<img src=x onerror="alert(1)"><p onclick="x()">Quote</p>', caller_identity="AB")
    assert root.content == "<p>Quote</p>"

    service.update_entry(root.id, content="<p>v2</p><script>alert(1)</script>", caller_identity="AB")
    assert service.find_by_id(root.id).content == "<p>v2</p>"
    assert service.persistence.snapshot["entries"][0]["content"] == "<p>v2</p>"


def test_markup_that_sanitizes_to_nothing_is_empty():
    service = _service()

    with pytest.raises(EmptyContent):
        service.create_entry(None, "<script>alert(1)</script>", caller_identity="AB")
    root = service.create_entry(None, "<p>ok</p>", caller_identity="AB")
    with pytest.raises(EmptyContent):
        service.update_entry(root.id, content="<iframe src='//x'></iframe>", caller_identity="AB")
    assert service.find_by_id(root.id).content == "<p>ok</p>"


def test_reload_sanitizes_stored_content():
    persistence = MemoryPersistence(
        entries=[
            {
                "id": "x1",
                "authorId": "ZZ",
                "category": "PO",
                "content": '<p style="color: red" onmouseover="x()">stored</p>',
                "status": "New",
                "createdAt": "2025-06-01T00:00:00.000Z",
            }
        ]
    )

    service = _service(persistence)

    assert service.find_by_id("x1").content == "<p>stored</p>"


def test_rows_are_flat_preorder():
    service = _service()
    root = service.create_entry(None, "root", caller_identity="AB")
    reply = service.create_entry(root.id, "reply", caller_identity="CD")
    other = service.create_entry(None, "other", caller_identity="AB")

    rows = service.rows()

    assert [row["id"] for row in rows] == [root.id, reply.id, other.id]
    assert rows[1]["parentId"] == root.id
    assert all("children" not in row for row in rows)
