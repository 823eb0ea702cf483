"""Exceptions for cascading soft delete and restore operations."""

from typing import Optional


class CascadeError(Exception):
    """Base exception for cascade operations."""

    def __init__(self, message: str, entity_id: Optional[str] = None):
        self.entity_id = entity_id
        super().__init__(message)


class ValidationError(CascadeError):
    """Raised when a request is rejected before any store access."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class NotFoundError(CascadeError):
    """Raised when the target entity does not exist."""

    def __init__(self, entity_id: str):
        super().__init__(f"Entity {entity_id} not found", entity_id=entity_id)


class InvalidOperationError(CascadeError):
    """Raised when the entity state does not allow the requested operation."""

    def __init__(
        self, entity_id: str, message: str, guidance: Optional[str] = None
    ):
        self.guidance = guidance
        full_message = f"{message}. {guidance}" if guidance else message
        super().__init__(full_message, entity_id=entity_id)


class ConflictError(CascadeError):
    """Raised when a concurrent cascade touched an overlapping subtree.

    Callers should fetch a fresh plan and retry.
    """

    def __init__(self, entity_id: str):
        super().__init__(
            f"Concurrent modification detected in the subtree of {entity_id}; "
            "re-plan and retry",
            entity_id=entity_id,
        )


class StorageError(CascadeError):
    """Raised when the underlying store fails; no partial effects remain."""

    def __init__(self, message: str, entity_id: Optional[str] = None):
        super().__init__(f"Storage failure: {message}", entity_id=entity_id)
