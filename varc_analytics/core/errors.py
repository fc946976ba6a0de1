"""
Error taxonomy for the analytics pipeline.

Fatal errors abort a session run and propagate to the caller:
- SessionNotFoundError: session missing or owned by another user
- InvalidSessionStateError: session not completed yet (caller should wait)
- DataIntegrityError: attempt references a missing question (needs a human)
- TransientStoreError: store hiccup; nothing was marked analysed, retry is safe

DiagnosticServiceError is soft: the pipeline logs it and continues with no
diagnostics.
"""
from __future__ import annotations


class AnalyticsError(Exception):
    """Base class for all analytics pipeline errors."""

    retryable: bool = False


class SessionNotFoundError(AnalyticsError):
    """Raised when a session does not exist for the given user."""

    def __init__(self, session_id: str, user_id: str):
        self.session_id = session_id
        self.user_id = user_id
        super().__init__(f"Session {session_id} not found for user {user_id}")


class InvalidSessionStateError(AnalyticsError):
    """Raised when a session is not in the 'completed' state."""

    def __init__(self, session_id: str, status: str | None):
        self.session_id = session_id
        self.status = status
        super().__init__(f"Session {session_id} status is '{status}', expected 'completed'")


class DataIntegrityError(AnalyticsError):
    """Raised when session data references rows that do not exist."""

    def __init__(self, message: str, *, session_id: str | None = None, question_id: str | None = None):
        self.session_id = session_id
        self.question_id = question_id
        super().__init__(message)


class TransientStoreError(AnalyticsError):
    """Raised when the store fails in a way that is safe to retry."""

    retryable = True


class DiagnosticServiceError(AnalyticsError):
    """Raised by annotators when the diagnosis service fails or answers garbage."""

    retryable = True


class TaxonomyError(AnalyticsError):
    """Raised when a node -> metric mapping document is invalid."""
