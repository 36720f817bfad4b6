"""Persistence collaborators: load initial state, commit mutations."""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from thread_tracker.errors import PersistenceError
from thread_tracker.git_helper import GitHelper
from thread_tracker.models import Entry, User

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_KEY = "speedforce_update_thread_app"

Records = List[Dict[str, Any]]
Snapshot = Dict[str, Records]


class MutationKind(str, Enum):
    CREATE_ENTRY = "create_entry"
    UPDATE_ENTRY = "update_entry"
    REGISTER_USER = "register_user"


@dataclass(frozen=True)
class Mutation:
    """Description of one committed change."""

    kind: MutationKind
    entry: Optional[Entry] = None
    user: Optional[User] = None
    actor: Optional[str] = None

    def describe(self) -> str:
        """One-line summary, used as a commit message."""

        if self.kind is MutationKind.CREATE_ENTRY:
            entry = self.entry
            where = f"reply to {entry.parent_id}" if entry.parent_id else "new thread"
            return f"Create entry {entry.id} ({where}, {entry.heading}) by {entry.author_id}"
        if self.kind is MutationKind.UPDATE_ENTRY:
            entry = self.entry
            return f"Update entry {entry.id} (status {entry.status.value}) by {self.actor or entry.edited_by}"
        if self.kind is MutationKind.REGISTER_USER:
            return f"Register user {self.user.identity}"
        raise ValueError(f"Unhandled mutation kind: {self.kind}")


class Persistence(ABC):
    """Storage backend contract."""

    @abstractmethod
    def load_all(self) -> Tuple[Records, Records]:
        """Return ``(entry_records, user_records)``.

        Entry records may be nested (``children`` arrays) or flat
        (``parentId`` links); the thread store accepts both.
        """

    @abstractmethod
    def commit(self, mutation: Mutation, snapshot: Snapshot) -> None:
        """Persist one mutation. ``snapshot`` is the full state after it.

        Raises:
            PersistenceError: The write was not accepted.
        """


class MemoryPersistence(Persistence):
    """Keeps the latest snapshot in memory."""

    def __init__(self, entries: Optional[Records] = None, users: Optional[Records] = None):
        self.snapshot: Snapshot = {"entries": list(entries or []), "users": list(users or [])}
        self.mutations: List[Mutation] = []

    def load_all(self) -> Tuple[Records, Records]:
        return copy.deepcopy(self.snapshot["entries"]), copy.deepcopy(self.snapshot["users"])

    def commit(self, mutation: Mutation, snapshot: Snapshot) -> None:
        self.snapshot = copy.deepcopy(snapshot)
        self.mutations.append(mutation)


class JsonFilePersistence(Persistence):
    """Local JSON snapshot stored under a fixed storage key.

    File layout: ``{storage_key: {"entries": [...], "users": [...]}}``.
    Other top-level keys in the file are preserved.
    """

    def __init__(
        self,
        path: Path,
        storage_key: str = DEFAULT_STORAGE_KEY,
        git_helper: Optional[GitHelper] = None,
    ):
        self.path = Path(path).expanduser()
        self.storage_key = storage_key
        self.git_helper = git_helper

    def _read_file(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise PersistenceError(f"Malformed snapshot file {self.path}: {exc}") from exc
        except OSError as exc:
            raise PersistenceError(f"Unable to read {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise PersistenceError(f"Snapshot file {self.path} does not contain an object")
        return data

    def load_all(self) -> Tuple[Records, Records]:
        stored = self._read_file().get(self.storage_key) or {}
        entries = list(stored.get("entries", []))
        users = list(stored.get("users", []))
        logger.info(f"Loaded {len(entries)} root entries and {len(users)} users from {self.path}")
        return entries, users

    def commit(self, mutation: Mutation, snapshot: Snapshot) -> None:
        data = self._read_file()
        data[self.storage_key] = {"entries": snapshot["entries"], "users": snapshot["users"]}

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".tracker-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(data, handle, indent=2)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise PersistenceError(f"Unable to write {self.path}: {exc}") from exc

        if self.git_helper and self.git_helper.is_available():
            success, error = self.git_helper.commit_file(
                self.path, mutation.describe(), author_name=mutation.actor or None
            )
            if not success or error:
                logger.error(f"Snapshot written but git commit reported: {error}")
