"""Failure classes raised by the sync client.

Gateways raise the raw classes; the retry controller absorbs
`TransientError` up to its budget; the reconciler is the only layer that
rolls state back; callers only ever see `MutationFailed` for writes.
"""
from typing import Any, Optional


class SyncError(Exception):
    """Base class for every sync client failure."""

    def __init__(self, message: str = '', status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


class RemoteError(SyncError):
    """The remote store answered with an error we don't classify further."""


class ValidationError(SyncError):
    """Malformed mutation payload. Rejected before any optimistic apply."""


class NotFoundError(SyncError):
    """The target entity does not exist (remotely or locally)."""


class AuthError(SyncError):
    """Session missing, invalid or expired. The caller should re-authenticate."""


class TransientError(SyncError):
    """Network or server hiccup; safe to retry."""


class RetryExhaustedError(TransientError):
    """A transient failure that outlived the retry budget."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f'gave up after {attempts} attempt(s): {last_error}', getattr(last_error, 'status', None))
        self.attempts = attempts
        self.last_error = last_error


class ConflictError(SyncError):
    """The remote copy changed underneath a pending optimistic mutation."""

    def __init__(self, message: str = 'conflict', server: Optional[dict[str, Any]] = None, status: Optional[int] = 409):
        super().__init__(message, status)
        self.server = server


class MutationFailed(SyncError):
    """What the UI sees: the write failed and local state was reverted."""

    def __init__(self, reason: str, entity_id: Any = None, cause: Optional[BaseException] = None):
        super().__init__(reason, getattr(cause, 'status', None))
        self.reason = reason
        self.entity_id = entity_id
        self.cause = cause
