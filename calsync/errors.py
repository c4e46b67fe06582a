"""Error taxonomy for calendar imports.

Only ``SourceSetupError`` (and its subclasses) and ``AuthError`` are allowed to
escape a sync pass. Everything raised inside the per-calendar and per-event
loops is caught and reported in the result's ``errors`` list.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for sync failures."""


class AuthError(SyncError):
    """Missing or unrefreshable credentials; the user must reconnect."""


class FetchError(SyncError):
    """Network or HTTP failure for one feed or calendar."""

    def __init__(self, message: str, calendar_id: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.calendar_id = calendar_id
        self.status_code = status_code


class ParseError(SyncError):
    """Malformed calendar data."""


class PersistenceError(SyncError):
    """Create, update or delete of an internal entity failed."""


class SourceSetupError(SyncError):
    """The source cannot be synced at all (missing, inactive, misconfigured)."""


class SourceNotFoundError(SourceSetupError):
    """No such source, or it belongs to another user."""


class SyncInProgressError(SourceSetupError):
    """Another pass holds the source's sync flag."""
