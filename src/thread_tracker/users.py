"""Append-only directory of known user identities."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from thread_tracker.errors import DuplicateIdentity, NoIdentity
from thread_tracker.models import User

logger = logging.getLogger(__name__)


class UserDirectory:
    """Users keyed by identity code, in registration order."""

    def __init__(self, users: Iterable[User] = ()):
        self._users: Dict[str, User] = {}
        for user in users:
            if user.identity in self._users:
                logger.warning(f"Ignoring duplicate user {user.identity} while loading")
                continue
            self._users[user.identity] = user

    def __len__(self) -> int:
        return len(self._users)

    def __contains__(self, identity: object) -> bool:
        return identity in self._users

    def __iter__(self):
        return iter(list(self._users.values()))

    def get(self, identity: str) -> Optional[User]:
        return self._users.get(identity)

    def add(self, identity: str, display_name: str = "") -> User:
        """Register a new identity.

        Raises:
            NoIdentity: The identity is blank.
            DuplicateIdentity: The identity is already registered.
        """

        identity = (identity or "").strip()
        if not identity:
            raise NoIdentity("User identity must not be empty")
        if identity in self._users:
            raise DuplicateIdentity(identity)
        user = User(identity=identity, display_name=(display_name or "").strip())
        self._users[identity] = user
        return user

    def remove(self, identity: str) -> None:
        """Forget a just-added user; only used to roll back a failed commit."""

        self._users.pop(identity, None)

    def display_name(self, identity: str) -> str:
        user = self._users.get(identity)
        return user.display_name if user and user.display_name else identity

    def to_records(self) -> List[Dict[str, str]]:
        return [user.to_dict() for user in self._users.values()]

    @classmethod
    def from_records(cls, records: Iterable[Dict[str, Any]]) -> UserDirectory:
        return cls(User.from_dict(record) for record in records)
