"""Data model for entries, users and their classifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from thread_tracker.errors import InvalidValue


class Category(str, Enum):
    """Topic an update thread is filed under."""

    RFQ = "RFQ"
    PO = "PO"
    ETA = "ETA"
    CLAIM = "CLAIM"

    @classmethod
    def parse(cls, value: Any) -> Category:
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().upper()
        for member in cls:
            if member.value == text:
                return member
        raise InvalidValue(f"Unknown category: {value!r}")


class Status(str, Enum):
    """Workflow state of an entry."""

    NEW = "New"
    IN_PROGRESS = "In Progress"
    COMPLETE = "Complete"
    CANCELLED = "Cancelled"

    @classmethod
    def parse(cls, value: Any) -> Status:
        """Accept either the display value or the member name, case-insensitively."""

        if isinstance(value, cls):
            return value
        text = str(value or "").strip()
        normalized = text.upper().replace("_", " ")
        for member in cls:
            if normalized in (member.value.upper(), member.name.replace("_", " ")):
                return member
        raise InvalidValue(f"Unknown status: {value!r}")


DEFAULT_CATEGORY = Category.RFQ
DEFAULT_STATUS = Status.NEW


# ----------------------------------------------------------------------
# Timestamps
# ----------------------------------------------------------------------


def utc_now() -> datetime:
    """Current UTC time truncated to the persisted millisecond precision."""

    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def format_timestamp(value: datetime) -> str:
    """Render a fixed-width UTC ISO-8601 string, e.g. ``2025-01-31T09:15:02.123Z``."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (or datetime) into an aware UTC datetime."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise InvalidValue(f"Invalid timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# ----------------------------------------------------------------------
# Records
# ----------------------------------------------------------------------


@dataclass
class User:
    """A registered identity and its display name."""

    identity: str
    display_name: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"identity": self.identity, "displayName": self.display_name}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> User:
        identity = data.get("identity") or data.get("initials") or ""
        display_name = data.get("displayName") or data.get("display_name") or data.get("name") or ""
        return cls(identity=str(identity), display_name=str(display_name))


@dataclass
class Entry:
    """One posted update or reply; a node in the thread tree."""

    id: str
    author_id: str
    category: Category
    description: str
    content: str
    status: Status
    created_at: datetime
    parent_id: Optional[str] = None
    edited_at: Optional[datetime] = None
    edited_by: Optional[str] = None
    children: List[Entry] = field(default_factory=list)

    @property
    def heading(self) -> str:
        """Category plus description, as shown on thread cards."""

        if self.description:
            return f"{self.category.value} - {self.description}"
        return self.category.value

    def to_dict(self, include_children: bool = True) -> Dict[str, Any]:
        """Return the JSON-serializable record for this entry."""

        data: Dict[str, Any] = {
            "id": self.id,
            "parentId": self.parent_id,
            "authorId": self.author_id,
            "category": self.category.value,
            "description": self.description,
            "content": self.content,
            "status": self.status.value,
            "createdAt": format_timestamp(self.created_at),
            "editedAt": format_timestamp(self.edited_at) if self.edited_at else None,
            "editedBy": self.edited_by,
        }
        if include_children:
            data["children"] = [child.to_dict() for child in self.children]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Entry:
        """Build a childless entry from a persisted record.

        Accepts camelCase, snake_case and the legacy ``initials``/``html`` keys.
        Children are attached by the thread store, not here.
        """

        def pick(*keys: str, default: Any = None) -> Any:
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return default

        parent_id = pick("parentId", "parent_id")
        created_at = parse_timestamp(pick("createdAt", "created_at"))
        if created_at is None:
            raise InvalidValue(f"Entry {data.get('id')!r} has no creation timestamp")

        return cls(
            id=str(data["id"]),
            parent_id=str(parent_id) if parent_id not in (None, "") else None,
            author_id=str(pick("authorId", "author_id", "user_id", "initials", default="")),
            category=Category.parse(pick("category", default=DEFAULT_CATEGORY)),
            description=str(pick("description", default="")),
            content=str(pick("content", "html", default="")),
            status=Status.parse(pick("status", default=DEFAULT_STATUS)),
            created_at=created_at,
            edited_at=parse_timestamp(pick("editedAt", "edited_at")),
            edited_by=pick("editedBy", "edited_by"),
        )
