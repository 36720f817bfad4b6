"""Pending input for a new top-level entry."""

from __future__ import annotations

from dataclasses import dataclass

from thread_tracker.models import DEFAULT_CATEGORY, DEFAULT_STATUS, Category, Entry, Status
from thread_tracker.normalizer import normalize_paste
from thread_tracker.service import EntryService


@dataclass
class Composer:
    """The caller-owned composition form.

    The form is only cleared after the entry has been created; if creation
    fails for any reason the pending input stays as it was.
    """

    content: str = ""
    category: Category = DEFAULT_CATEGORY
    description: str = ""
    status: Status = DEFAULT_STATUS
    default_category: Category = DEFAULT_CATEGORY
    default_status: Status = DEFAULT_STATUS

    def reset(self) -> None:
        self.content = ""
        self.category = self.default_category
        self.description = ""
        self.status = self.default_status

    def to_dict(self) -> dict:
        return {
            "content": self.content,
            "category": Category.parse(self.category).value,
            "description": self.description,
            "status": Status.parse(self.status).value,
        }

    def paste(self, html: str | None = None, text: str | None = None) -> bool:
        """Append a normalized clipboard payload.

        Returns True when the paste was handled here and the default paste
        must be suppressed.
        """

        result = normalize_paste(html, text)
        if result.handled:
            self.content += result.html
        return result.handled

    def submit(self, service: EntryService, identity: str | None) -> Entry:
        entry = service.create_entry(
            None,
            self.content,
            category=self.category,
            description=self.description,
            status=self.status,
            caller_identity=identity,
        )
        self.reset()
        return entry
