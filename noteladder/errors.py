# noteladder/errors.py
from __future__ import annotations


class ReviewError(Exception):
    """Base class for review engine errors reported to callers."""


class InvalidPeriod(ReviewError, ValueError):
    """Period key could not be parsed for the given review type."""

    def __init__(self, period_key: str, review_type: str, reason: str = ""):
        self.period_key = period_key
        self.review_type = review_type
        msg = f"invalid {review_type} period key: {period_key!r}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


class InvalidNote(ReviewError, LookupError):
    """Note is missing or does not belong to the session's review cohort."""


class SessionNotFound(ReviewError, LookupError):
    pass


class SessionClosed(ReviewError):
    """A new decision was submitted to a session that already reached its total."""


class PersistenceFailure(ReviewError):
    """The store rejected a write; nothing from the operation was applied."""


class InvalidDecision(ReviewError, ValueError):
    """Decision value is not one of kept / archived."""
