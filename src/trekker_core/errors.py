"""Error taxonomy shared by all engine components.

Component-specific errors (InvalidTransitionError, BlockedByDependencyError,
SelfDependencyError, CycleError) live next to the code that raises them and
subclass TrekkerError as well.
"""
from typing import Optional


class TrekkerError(Exception):
    """Base class for every error raised by the engine."""

    retryable = False


class ValidationError(TrekkerError):
    """Raised when command input is malformed."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFoundError(TrekkerError):
    """Raised when an id does not resolve to a stored record."""

    def __init__(self, entity_id: str, kind: str = "entity"):
        super().__init__(f"{kind} {entity_id} not found")
        self.entity_id = entity_id
        self.kind = kind


class ImmutableFieldError(TrekkerError):
    """Raised when a patch tries to change a field fixed at creation."""

    def __init__(self, entity_id: str, field: str):
        super().__init__(f"{field} of {entity_id} is immutable and cannot be changed")
        self.entity_id = entity_id
        self.field = field


class StorageError(TrekkerError):
    """Raised when the underlying store fails (I/O, lock contention).

    This is the only error class a caller may retry with backoff.
    """

    retryable = True
