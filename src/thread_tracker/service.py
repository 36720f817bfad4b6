"""Entry service: the only way entries are created or changed."""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Callable, List, Optional

from thread_tracker import activity
from thread_tracker.activity import Activity
from thread_tracker.errors import DuplicateIdentity, EmptyContent, NoIdentity, ParentNotFound
from thread_tracker.models import (
    DEFAULT_CATEGORY,
    DEFAULT_STATUS,
    Category,
    Entry,
    Status,
    User,
    utc_now,
)
from thread_tracker.normalizer import sanitize_html
from thread_tracker.persistence import MemoryPersistence, Mutation, MutationKind, Persistence, Snapshot
from thread_tracker.thread_store import ThreadStore
from thread_tracker.users import UserDirectory

logger = logging.getLogger(__name__)


def new_entry_id() -> str:
    return uuid.uuid4().hex


def _clean_content(content: Optional[str]) -> str:
    cleaned = sanitize_html(content) if content and content.strip() else ""
    if not cleaned.strip():
        raise EmptyContent("Entry content must not be empty")
    return cleaned


class EntryService:
    """Coordinates the thread store, the user directory and persistence.

    Mutations are applied to the in-memory store first and rolled back if the
    persistence commit fails. A single re-entrant lock serializes every
    operation, so readers never observe a half-applied mutation.
    """

    def __init__(
        self,
        persistence: Optional[Persistence] = None,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = new_entry_id,
    ):
        self.persistence = persistence or MemoryPersistence()
        self.clock = clock
        self.id_factory = id_factory
        self.store = ThreadStore()
        self.users = UserDirectory()
        self._lock = threading.RLock()
        self.reload()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def reload(self) -> None:
        """Replace in-memory state with what the persistence layer holds."""

        with self._lock:
            entry_records, user_records = self.persistence.load_all()
            store = ThreadStore.from_records(entry_records)
            for entry in store.walk():
                entry.content = sanitize_html(entry.content)
            users = UserDirectory.from_records(user_records)
            self.store, self.users = store, users
            logger.info(f"Loaded {len(store)} entries in {len(store.roots)} threads, {len(users)} users")

    def snapshot(self) -> Snapshot:
        with self._lock:
            return {"entries": self.store.to_records(), "users": self.users.to_records()}

    def _commit(self, mutation: Mutation, rollback: Callable[[], None]) -> None:
        try:
            self.persistence.commit(mutation, self.snapshot())
        except Exception:
            logger.error(f"Commit failed, rolling back: {mutation.describe()}", exc_info=True)
            rollback()
            raise

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_entry(
        self,
        parent_id: Optional[str],
        content: str,
        category: Any = DEFAULT_CATEGORY,
        description: str = "",
        status: Any = DEFAULT_STATUS,
        caller_identity: Optional[str] = None,
    ) -> Entry:
        """Create a new thread (``parent_id`` None) or a reply.

        Replies always take their parent's category, description and status,
        and fall back to the parent's author when no caller identity is given.

        Raises:
            EmptyContent: ``content`` is blank once sanitized.
            NoIdentity: No author identity could be resolved.
            ParentNotFound: ``parent_id`` does not exist.
            InvalidValue: Unknown category or status for a new thread.
            PersistenceError: The commit failed; nothing was changed.
        """

        with self._lock:
            content = _clean_content(content)

            parent = self.store.get(parent_id) if parent_id is not None else None

            identity = (caller_identity or "").strip()
            if not identity and parent is not None:
                identity = parent.author_id
            if not identity:
                raise NoIdentity("No author identity supplied")

            if parent_id is not None and parent is None:
                raise ParentNotFound(parent_id)

            if parent is not None:
                entry_category = parent.category
                entry_description = parent.description
                entry_status = parent.status
            else:
                entry_category = Category.parse(category)
                entry_description = (description or "").strip()
                entry_status = Status.parse(status)

            entry = Entry(
                id=self.id_factory(),
                parent_id=parent_id,
                author_id=identity,
                category=entry_category,
                description=entry_description,
                content=content,
                status=entry_status,
                created_at=self.clock(),
            )

            if parent is None:
                self.store.insert_root(entry)
            else:
                self.store.insert_reply(parent.id, entry)

            self._commit(
                Mutation(MutationKind.CREATE_ENTRY, entry=entry, actor=identity),
                rollback=lambda: self.store.detach(entry.id),
            )
            logger.info(f"Created entry {entry.id} by {identity}" + (f" in reply to {parent_id}" if parent_id else ""))
            return entry

    def update_entry(
        self,
        entry_id: str,
        content: Optional[str] = None,
        status: Any = None,
        caller_identity: Optional[str] = None,
    ) -> Entry:
        """Replace content and/or status and stamp the edit.

        Category, description, author, creation time and replies are never
        touched.

        Raises:
            NotFound: ``entry_id`` does not exist.
            EmptyContent: ``content`` was supplied but is blank once sanitized.
            InvalidValue: Unknown status.
            PersistenceError: The commit failed; the entry was restored.
        """

        with self._lock:
            entry = self.store.find_by_id(entry_id)
            if content is not None:
                content = _clean_content(content)
            new_status = Status.parse(status) if status is not None else None
            editor = (caller_identity or "").strip() or None
            edited_at = max(self.clock(), entry.created_at)

            previous = (entry.content, entry.status, entry.edited_at, entry.edited_by)

            def apply(target: Entry) -> None:
                if content is not None:
                    target.content = content
                if new_status is not None:
                    target.status = new_status
                target.edited_at = edited_at
                target.edited_by = editor

            def restore() -> None:
                entry.content, entry.status, entry.edited_at, entry.edited_by = previous

            self.store.update_by_id(entry_id, apply)
            self._commit(Mutation(MutationKind.UPDATE_ENTRY, entry=entry, actor=editor), rollback=restore)
            logger.info(f"Updated entry {entry_id} by {editor or 'unknown editor'}")
            return entry

    def register_user(self, identity: str, display_name: str = "") -> User:
        """Ensure a user exists; repeated registrations keep the first record."""

        with self._lock:
            try:
                user = self.users.add(identity, display_name)
            except DuplicateIdentity as exc:
                logger.debug(f"{exc}; keeping existing record")
                return self.users.get(exc.identity)

            self._commit(
                Mutation(MutationKind.REGISTER_USER, user=user, actor=user.identity),
                rollback=lambda: self.users.remove(user.identity),
            )
            logger.info(f"Registered user {user.identity}")
            return user

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find_by_id(self, entry_id: str) -> Entry:
        with self._lock:
            return self.store.find_by_id(entry_id)

    def roots(self) -> List[Entry]:
        with self._lock:
            return self.store.roots

    def rows(self) -> List[dict]:
        with self._lock:
            return self.store.to_rows()

    def latest_activity(self, entry_id: str) -> Activity:
        with self._lock:
            return activity.latest_activity(self.store.find_by_id(entry_id))

    def thread_history(self, entry_id: str) -> List[Activity]:
        with self._lock:
            return activity.thread_history(self.store.find_by_id(entry_id))

    def sorted_roots_by_activity(self) -> List[Entry]:
        with self._lock:
            return activity.sorted_roots_by_activity(self.store.roots)
