"""
SQL persistence
===============

Stores the tracker in a relational table pair:

- ``users`` keyed by the identity code,
- ``entries`` linked to their parent by ``parent_id`` and to their author by
  ``user_id``.

Entries are loaded flat, in insertion order, and reassembled into threads by
``ThreadStore.from_records``. Each commit touches exactly one row inside its
own transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from thread_tracker.errors import PersistenceError
from thread_tracker.models import Entry
from thread_tracker.persistence import Mutation, MutationKind, Persistence, Records, Snapshot

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class UserRow(Base):
    """ORM model for the ``users`` table."""

    __tablename__ = "users"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identity: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(Text, nullable=False, default="")

    def to_record(self) -> dict:
        return {"identity": self.identity, "displayName": self.display_name}


class EntryRow(Base):
    """ORM model for the ``entries`` table.

    ``seq`` preserves insertion order, which is also reply order.
    """

    __tablename__ = "entries"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    parent_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("entries.id"), nullable=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.identity"), nullable=False)
    category: Mapped[str] = mapped_column(String(16), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    content: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    edited_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    edited_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    @classmethod
    def from_entry(cls, entry: Entry) -> EntryRow:
        return cls(
            id=entry.id,
            parent_id=entry.parent_id,
            user_id=entry.author_id,
            category=entry.category.value,
            description=entry.description,
            content=entry.content,
            status=entry.status.value,
            created_at=entry.created_at,
            edited_at=entry.edited_at,
            edited_by=entry.edited_by,
        )

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "parentId": self.parent_id,
            "authorId": self.user_id,
            "category": self.category,
            "description": self.description,
            "content": self.content,
            "status": self.status,
            "createdAt": self.created_at,
            "editedAt": self.edited_at,
            "editedBy": self.edited_by,
        }


class SqlPersistence(Persistence):
    """Persistence backed by a SQLAlchemy engine."""

    def __init__(self, engine: Engine):
        self.engine = engine
        Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, database_url: str) -> SqlPersistence:
        return cls(create_engine(database_url))

    def load_all(self) -> Tuple[Records, Records]:
        try:
            with Session(self.engine) as session:
                users = [row.to_record() for row in session.scalars(select(UserRow).order_by(UserRow.seq))]
                entries = [row.to_record() for row in session.scalars(select(EntryRow).order_by(EntryRow.seq))]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Unable to load tracker tables: {exc}") from exc
        logger.info(f"Loaded {len(entries)} entry rows and {len(users)} users from database")
        return entries, users

    def commit(self, mutation: Mutation, snapshot: Snapshot) -> None:
        try:
            with Session(self.engine) as session, session.begin():
                if mutation.kind is MutationKind.CREATE_ENTRY:
                    self._ensure_user(session, mutation.entry.author_id)
                    session.add(EntryRow.from_entry(mutation.entry))
                elif mutation.kind is MutationKind.UPDATE_ENTRY:
                    self._apply_update(session, mutation.entry)
                elif mutation.kind is MutationKind.REGISTER_USER:
                    self._ensure_user(session, mutation.user.identity, mutation.user.display_name)
                else:
                    raise PersistenceError(f"Unhandled mutation kind: {mutation.kind}")
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Database rejected '{mutation.describe()}': {exc}") from exc

    @staticmethod
    def _ensure_user(session: Session, identity: str, display_name: str = "") -> None:
        # Entries may be posted by identities never registered; the foreign key still needs a row.
        existing = session.scalars(select(UserRow).where(UserRow.identity == identity)).first()
        if existing is None:
            session.add(UserRow(identity=identity, display_name=display_name))
            session.flush()
        elif display_name and not existing.display_name:
            existing.display_name = display_name

    @staticmethod
    def _apply_update(session: Session, entry: Entry) -> None:
        row = session.scalars(select(EntryRow).where(EntryRow.id == entry.id)).first()
        if row is None:
            raise PersistenceError(f"Entry row missing for update: {entry.id}")
        row.content = entry.content
        row.status = entry.status.value
        row.edited_at = entry.edited_at
        row.edited_by = entry.edited_by
