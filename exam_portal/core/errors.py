"""Exception types raised by the exam portal core."""

from __future__ import annotations


class PortalError(Exception):
    """Base class for portal failures."""


class StoreUnavailableError(PortalError):
    """The backing store could not be reached. Safe to retry."""


class ProfileNotFoundError(PortalError):
    """No profile exists for the requested user id."""


class ExamNotFoundError(PortalError):
    """No exam exists for the requested id."""


class SessionNotFoundError(PortalError):
    """No exam session is open for the requested student and exam."""


class PermissionDeniedError(PortalError):
    """The acting user may not perform a staff operation."""


class ProfileValidationError(PortalError, ValueError):
    """Profile data is missing or malformed."""

    def __init__(self, message: str, fields: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.fields = fields


class SessionStateError(PortalError, RuntimeError):
    """An exam session operation was requested in a state that does not allow it."""


class ExamContentError(PortalError):
    """Exam content is missing or malformed."""


class ExamImportError(PortalError):
    """Raised when a question bank file cannot be parsed."""
