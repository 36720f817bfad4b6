"""In-memory hierarchical store of thread entries."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from thread_tracker.errors import DuplicateEntry, NotFound, ParentNotFound
from thread_tracker.models import Entry

logger = logging.getLogger(__name__)

EntryRecord = Dict[str, Any]


class ThreadStore:
    """Ordered forest of entries with an auxiliary id index.

    Lookups go through the index but return exactly what a pre-order
    depth-first search over the roots would find.
    """

    def __init__(self) -> None:
        self._roots: List[Entry] = []
        self._index: Dict[str, Entry] = {}

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._index

    @property
    def roots(self) -> List[Entry]:
        return list(self._roots)

    # ------------------------------------------------------------------
    # Insertion
    # ------------------------------------------------------------------

    def insert_root(self, entry: Entry) -> Entry:
        """Append a new thread to the root sequence."""

        self._check_unused(entry)
        entry.parent_id = None
        self._roots.append(entry)
        self._index_subtree(entry)
        return entry

    def insert_reply(self, parent_id: str, entry: Entry) -> Entry:
        """Append ``entry`` to the children of ``parent_id``.

        Raises:
            ParentNotFound: The parent does not exist; nothing is mutated.
        """

        parent = self._index.get(parent_id)
        if parent is None:
            raise ParentNotFound(parent_id)
        self._check_unused(entry)
        entry.parent_id = parent.id
        parent.children.append(entry)
        self._index_subtree(entry)
        return entry

    def detach(self, entry_id: str) -> Entry:
        """Remove an entry (and its subtree) from the forest.

        Only used to roll back an insertion whose persistence commit failed;
        entries are otherwise never deleted.
        """

        entry = self.find_by_id(entry_id)
        container = self._roots if entry.parent_id is None else self._index[entry.parent_id].children
        container[:] = [item for item in container if item is not entry]
        for node in _preorder([entry]):
            self._index.pop(node.id, None)
        return entry

    # ------------------------------------------------------------------
    # Lookup and update
    # ------------------------------------------------------------------

    def get(self, entry_id: str) -> Optional[Entry]:
        return self._index.get(entry_id)

    def find_by_id(self, entry_id: str) -> Entry:
        entry = self._index.get(entry_id)
        if entry is None:
            raise NotFound(entry_id)
        return entry

    def update_by_id(self, entry_id: str, mutator: Callable[[Entry], None]) -> Entry:
        """Apply ``mutator`` to the entry in place, keeping its position and children."""

        entry = self.find_by_id(entry_id)
        mutator(entry)
        return entry

    def walk(self) -> Iterator[Entry]:
        """Yield every entry, depth-first and pre-order across all roots."""

        return _preorder(self._roots)

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def to_records(self) -> List[EntryRecord]:
        """Nested records: root entries each carrying a ``children`` array."""

        return [root.to_dict() for root in self._roots]

    def to_rows(self) -> List[EntryRecord]:
        """Flat pre-order rows linked by ``parentId``."""

        return [entry.to_dict(include_children=False) for entry in self.walk()]

    @classmethod
    def from_records(cls, records: Iterable[EntryRecord]) -> ThreadStore:
        """Rebuild the forest from nested or flat persisted records.

        Rows are indexed by id first and then attached to their parent in a
        single pass. A row whose parent is missing becomes a root.
        """

        store = cls()
        ordered: List[Entry] = []
        by_id: Dict[str, Entry] = {}

        for record in _flatten(records):
            entry = Entry.from_dict(record)
            if entry.id in by_id:
                logger.warning(f"Skipping duplicate entry id {entry.id} while loading")
                continue
            by_id[entry.id] = entry
            ordered.append(entry)

        for entry in ordered:
            parent = by_id.get(entry.parent_id) if entry.parent_id else None
            if entry.parent_id and parent is None:
                logger.warning(f"Entry {entry.id} references missing parent {entry.parent_id}; loading as root")
                entry.parent_id = None
            if parent is None:
                store._roots.append(entry)
            else:
                parent.children.append(entry)

        # Rows forming a parent cycle are unreachable from any root; cut them loose.
        reached = {entry.id for entry in _preorder(store._roots)}
        for entry in ordered:
            if entry.id in reached:
                continue
            logger.warning(f"Entry {entry.id} is part of a parent cycle; loading as root")
            parent = by_id[entry.parent_id]
            parent.children[:] = [child for child in parent.children if child is not entry]
            entry.parent_id = None
            store._roots.append(entry)
            reached.update(node.id for node in _preorder([entry]))

        store._index = {entry.id: entry for entry in ordered}
        return store

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _check_unused(self, entry: Entry) -> None:
        for node in _preorder([entry]):
            if node.id in self._index:
                raise DuplicateEntry(node.id)

    def _index_subtree(self, entry: Entry) -> None:
        for node in _preorder([entry]):
            self._index[node.id] = node


def _preorder(entries: List[Entry]) -> Iterator[Entry]:
    stack = list(reversed(entries))
    while stack:
        entry = stack.pop()
        yield entry
        stack.extend(reversed(entry.children))


def _flatten(records: Iterable[EntryRecord], parent_id: Optional[str] = None) -> Iterator[EntryRecord]:
    """Yield childless copies of nested records, filling in missing parent ids."""

    for record in records:
        row = {key: value for key, value in record.items() if key != "children"}
        if parent_id is not None and not (row.get("parentId") or row.get("parent_id")):
            row["parentId"] = parent_id
        yield row
        children = record.get("children") or []
        if children:
            yield from _flatten(children, parent_id=str(record["id"]))
