"""
Custom exception classes for the Azure DevOps to Azure DevOps migration tool.
"""

from __future__ import annotations


class MigrationError(Exception):
    """Base exception for migration errors."""


class MalformedIdentityError(MigrationError):
    """Raised when a reflected identity cannot be derived or parsed."""


class UnknownRelationshipKindError(MigrationError):
    """Raised when a relationship has a kind the replicator does not handle."""


class TargetNotPersistedError(MigrationError):
    """Raised when links are replicated onto a target entity without an id."""


class MalformedRelationshipError(MigrationError):
    """Raised when relationship data from a store cannot be interpreted."""


class StoreError(MigrationError):
    """Base class for failures reported by a source or target store."""


class StoreRejectedError(StoreError):
    """Raised when a store refuses a write.

    ``resource_type_unsupported`` is set when the store cannot represent the
    resource type of an artifact link at all.
    """

    reason: str
    status_code: int | None
    resource_type_unsupported: bool

    def __init__(
        self,
        reason: str,
        *,
        status_code: int | None = None,
        resource_type_unsupported: bool = False,
    ) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code
        self.resource_type_unsupported = resource_type_unsupported


class RelationshipValidationError(StoreRejectedError):
    """Raised when a store rejects a relationship write during validation."""


class StoreUnavailableError(StoreError):
    """Raised when a store cannot be reached or fails server-side."""


class TransientStoreError(StoreError):
    """Raised for unexpected, non-repeatable store failures on a single write."""
