"""
Error types for the meeting library.

This module defines all exception types surfaced to callers:
- MeetingLibraryError: Base exception
- InvalidArgumentError: Malformed identifiers, fields or paging tokens
- AuthorizationError: Viewer may not perform the operation
- NotFoundError: Principal or meeting does not exist
- TransientStoreError: A backing store is unavailable (retryable)

Invariants:
    - All errors inherit from MeetingLibraryError
    - Every error carries a code and an HTTP-like status
    - Dangling references found during a rebuild are never raised
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any


class MeetingLibraryError(Exception):
    """Base exception for all meeting library errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        status: HTTP-like status code
        details: Additional error context
        retryable: Whether the caller may retry the operation
    """

    status = 500
    retryable = False

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "MEETING_LIBRARY_ERROR"
        self.details = details or {}


class InvalidArgumentError(MeetingLibraryError):
    """A request argument is malformed.

    Raised when:
    - A principal or resource id does not parse
    - A profile field is missing, too long or not allowed
    - A paging token cannot be decoded
    """

    status = 400

    def __init__(self, message: str, argument: str | None = None) -> None:
        super().__init__(message, code="INVALID_ARGUMENT", details={"argument": argument})
        self.argument = argument


class AuthorizationError(MeetingLibraryError):
    """The viewer is not permitted to perform the operation."""

    status = 401

    def __init__(self, message: str, principal_id: str | None = None) -> None:
        super().__init__(message, code="UNAUTHORIZED", details={"principal_id": principal_id})
        self.principal_id = principal_id


class NotFoundError(MeetingLibraryError):
    """A requested entity does not exist."""

    status = 404

    def __init__(self, message: str, entity_id: str | None = None) -> None:
        super().__init__(message, code="NOT_FOUND", details={"id": entity_id})
        self.entity_id = entity_id


class PrincipalNotFoundError(NotFoundError):
    """User or group does not exist."""

    pass


class MeetingNotFoundError(NotFoundError):
    """Meeting does not exist."""

    pass


class TransientStoreError(MeetingLibraryError):
    """A backing store could not be reached.

    The index is left in its prior state; the operation can be retried.
    """

    status = 503
    retryable = True

    def __init__(self, message: str, store: str | None = None) -> None:
        super().__init__(message, code="STORE_UNAVAILABLE", details={"store": store})
        self.store = store


@contextmanager
def translate_store_errors(store: str) -> Iterator[None]:
    """Re-raise SQLite failures of a backing store as TransientStoreError.

    Example:
        >>> with translate_store_errors("authz"):
        ...     await authz_store.get_roles(resource_id)
    """
    try:
        yield
    except sqlite3.Error as e:
        raise TransientStoreError(f"The {store} store is unavailable: {e}", store=store) from e
