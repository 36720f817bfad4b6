"""Recency aggregation over threads."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List

from thread_tracker.models import Entry, format_timestamp


@dataclass(frozen=True)
class Activity:
    """The state of one entry at its most recent creation or edit."""

    timestamp: datetime
    author_id: str
    content: str
    entry_id: str

    def to_dict(self) -> dict:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "authorId": self.author_id,
            "content": self.content,
            "entryId": self.entry_id,
        }


def entry_activity(entry: Entry) -> Activity:
    """Activity of a single entry, ignoring its replies."""

    if entry.edited_at is not None:
        return Activity(
            timestamp=entry.edited_at,
            author_id=entry.edited_by or entry.author_id,
            content=entry.content,
            entry_id=entry.id,
        )
    return Activity(
        timestamp=entry.created_at,
        author_id=entry.author_id,
        content=entry.content,
        entry_id=entry.id,
    )


def latest_activity(entry: Entry) -> Activity:
    """Most recent activity anywhere in the thread rooted at ``entry``.

    Only a strictly later child replaces the current candidate, so on equal
    timestamps the entry encountered first (the parent) wins.
    """

    latest = entry_activity(entry)
    for child in entry.children:
        candidate = latest_activity(child)
        if candidate.timestamp > latest.timestamp:
            latest = candidate
    return latest


def _thread_entries(entry: Entry) -> List[Entry]:
    collected = [entry]
    for child in entry.children:
        collected.extend(_thread_entries(child))
    return collected


def thread_history(entry: Entry) -> List[Activity]:
    """Every entry's state in the thread, newest first, ties in pre-order."""

    states = [entry_activity(item) for item in _thread_entries(entry)]
    return sorted(states, key=lambda state: state.timestamp, reverse=True)


def thread_size(entry: Entry) -> int:
    return len(_thread_entries(entry))


def sorted_roots_by_activity(roots: Iterable[Entry]) -> List[Entry]:
    """Root threads ordered by descending latest activity (stable on ties)."""

    return sorted(roots, key=lambda root: latest_activity(root).timestamp, reverse=True)
