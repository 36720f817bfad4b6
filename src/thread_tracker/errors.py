"""Error taxonomy for the thread tracker.

Every error here is a local, recoverable condition that is reported back to
the caller. None of them is fatal to the process.
"""


class TrackerError(Exception):
    """Base class for all tracker errors."""


class EmptyContent(TrackerError):
    """Submitted content was empty after trimming whitespace."""


class NoIdentity(TrackerError):
    """No author identity could be resolved for a submission."""


class ParentNotFound(TrackerError):
    """A reply targeted a parent entry that does not exist."""

    def __init__(self, parent_id: str):
        super().__init__(f"Parent entry not found: {parent_id}")
        self.parent_id = parent_id


class NotFound(TrackerError):
    """Lookup or update of an entry id that does not exist."""

    def __init__(self, entry_id: str):
        super().__init__(f"Entry not found: {entry_id}")
        self.entry_id = entry_id


class DuplicateEntry(TrackerError):
    """An entry id was inserted twice."""

    def __init__(self, entry_id: str):
        super().__init__(f"Entry id already exists: {entry_id}")
        self.entry_id = entry_id


class DuplicateIdentity(TrackerError):
    """A user identity was registered twice.

    ``UserDirectory.register`` swallows this so repeated "ensure user exists"
    calls stay idempotent.
    """

    def __init__(self, identity: str):
        super().__init__(f"User already registered: {identity}")
        self.identity = identity


class InvalidValue(TrackerError, ValueError):
    """A category or status value outside its enumeration."""


class PersistenceError(TrackerError):
    """The persistence collaborator rejected a commit or load."""
