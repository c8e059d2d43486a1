"""
Error taxonomy for hierarchy and authorization operations.

Permanent errors (validation, missing nodes, cycles) are raised before any
write happens and must not be retried. RetryableError subclasses signal a
transient condition; the whole operation may be attempted again.

A denied permission is never an exception: authorization checks return False.
"""
from typing import Any, Dict, Optional


class HierarchyError(Exception):
    """Base class for all errors raised by this package."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": type(self).__name__, "message": self.message, **self.details}


class ValidationError(HierarchyError):
    """Malformed path, permission token, or entity type."""


class LevelMismatchError(ValidationError):
    """A child must sit exactly one level below its parent."""


class NotFoundError(HierarchyError):
    pass


class NodeNotFoundError(NotFoundError):
    pass


class ParentNotFoundError(NotFoundError):
    pass


class PrincipalNotFoundError(NotFoundError):
    pass


class CircularDependencyError(HierarchyError):
    """The requested parent lies inside the moved node's own subtree."""


class HasChildrenError(HierarchyError):
    """Nodes with children cannot be deleted."""


class RetryableError(HierarchyError):
    """Transient failure; the caller may retry the whole operation."""


class ConcurrencyConflictError(RetryableError):
    """Another writer changed the affected rows during the transaction."""


class TransactionTimeoutError(RetryableError):
    """The transaction did not finish within its time budget."""


class StoreUnavailableError(RetryableError):
    """The backing store could not be reached."""
