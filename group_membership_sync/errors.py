"""
Error taxonomy for group membership reconciliation.

Clients raise NotFound and RemoteError; the reconciler wraps whatever aborted an
operation in ReconcileError so the caller knows which step and group failed.
"""

from typing import Optional


class MembershipError(Exception):
    """Base exception for membership sync errors."""
    pass


class NotFound(MembershipError):
    """Raised when a referenced user or group does not exist."""

    def __init__(self, resource_id: str, kind: str = 'user', message: Optional[str] = None):
        self.resource_id = resource_id
        self.kind = kind
        super().__init__(message or f"error fetching {kind} with id {resource_id}: not found")


class RemoteError(MembershipError):
    """Raised for any other transport or API failure from the remote service."""

    def __init__(self, message: str, operation: Optional[str] = None,
                 status_code: Optional[int] = None):
        self.operation = operation
        self.status_code = status_code
        if operation:
            message = f"{operation}: {message}"
        super().__init__(message)


class TruncatedListingError(RemoteError):
    """Raised when a membership listing could not be read completely."""
    pass


class ReconcileError(MembershipError):
    """Raised when a reconciliation operation aborts part way through."""

    def __init__(self, operation: str, group_id: str, cause: Exception):
        self.operation = operation
        self.group_id = group_id
        self.cause = cause
        super().__init__(f"{operation} of group {group_id} failed: {cause}")
