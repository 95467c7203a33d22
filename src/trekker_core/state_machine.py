"""State machine validation for epic, task and subtask status transitions.

Enforces valid status transitions per entity kind:
- Epics: todo → in_progress → completed, with archived as the way out
- Tasks/Subtasks: todo → in_progress → completed, or wont_fix / archived
- Terminal statuses (completed, wont_fix, archived) cannot be left
- Tasks/Subtasks cannot start or complete while a dependency is incomplete
"""
import logging

from .errors import TrekkerError
from .models import EntityKind, EntityStatus

logger = logging.getLogger("trekker-core.state_machine")


class InvalidTransitionError(TrekkerError):
    """Raised when an invalid state transition is attempted."""

    def __init__(
        self,
        message: str,
        current_status: EntityStatus,
        requested_status: EntityStatus,
        kind: EntityKind,
        allowed_transitions: list[EntityStatus],
    ):
        super().__init__(message)
        self.current_status = current_status
        self.requested_status = requested_status
        self.kind = kind
        self.allowed_transitions = allowed_transitions


class BlockedByDependencyError(TrekkerError):
    """Raised when a task or subtask has incomplete dependencies."""

    def __init__(
        self,
        entity_id: str,
        kind: EntityKind,
        requested_status: EntityStatus,
        blocking_ids: list[str],
    ):
        noun = "dependency" if len(blocking_ids) == 1 else "dependencies"
        super().__init__(
            f"{kind.value} {entity_id} blocked by incomplete {noun} {', '.join(blocking_ids)}"
        )
        self.entity_id = entity_id
        self.kind = kind
        self.requested_status = requested_status
        self.blocking_ids = blocking_ids


# Epic transition matrix
# Maps current status → list of allowed next statuses
EPIC_TRANSITION_MATRIX: dict[EntityStatus, list[EntityStatus]] = {
    EntityStatus.TODO: [
        EntityStatus.TODO,          # No-op (allowed)
        EntityStatus.IN_PROGRESS,   # Forward: work started
        EntityStatus.COMPLETED,     # Forward: closed without explicit start
        EntityStatus.ARCHIVED,      # Terminal: shelved
    ],
    EntityStatus.IN_PROGRESS: [
        EntityStatus.IN_PROGRESS,   # No-op (allowed)
        EntityStatus.COMPLETED,     # Forward: done (archives open children)
        EntityStatus.ARCHIVED,      # Terminal: shelved
    ],
    EntityStatus.COMPLETED: [
        EntityStatus.COMPLETED,     # No-op (allowed)
    ],
    EntityStatus.ARCHIVED: [
        EntityStatus.ARCHIVED,      # No-op (allowed)
    ],
}


# Task and subtask transition matrix
WORK_TRANSITION_MATRIX: dict[EntityStatus, list[EntityStatus]] = {
    EntityStatus.TODO: [
        EntityStatus.TODO,          # No-op (allowed)
        EntityStatus.IN_PROGRESS,   # Forward: work started (dependency guard)
        EntityStatus.COMPLETED,     # Forward: done (dependency guard)
        EntityStatus.WONT_FIX,      # Terminal: rejected
        EntityStatus.ARCHIVED,      # Terminal: shelved
    ],
    EntityStatus.IN_PROGRESS: [
        EntityStatus.IN_PROGRESS,   # No-op (allowed)
        EntityStatus.COMPLETED,     # Forward: done (dependency guard)
        EntityStatus.WONT_FIX,      # Terminal: abandoned
        EntityStatus.ARCHIVED,      # Terminal: shelved
    ],
    EntityStatus.COMPLETED: [
        EntityStatus.COMPLETED,     # No-op (allowed)
    ],
    EntityStatus.WONT_FIX: [
        EntityStatus.WONT_FIX,      # No-op (allowed)
    ],
    EntityStatus.ARCHIVED: [
        EntityStatus.ARCHIVED,      # No-op (allowed)
    ],
}


# Valid status domain per kind
STATUS_DOMAIN: dict[EntityKind, frozenset[EntityStatus]] = {
    EntityKind.EPIC: frozenset(EPIC_TRANSITION_MATRIX),
    EntityKind.TASK: frozenset(WORK_TRANSITION_MATRIX),
    EntityKind.SUBTASK: frozenset(WORK_TRANSITION_MATRIX),
}

TERMINAL_STATUSES = frozenset({EntityStatus.COMPLETED, EntityStatus.WONT_FIX, EntityStatus.ARCHIVED})

# Statuses a task/subtask may only enter once every dependency is completed
GUARDED_STATUSES = frozenset({EntityStatus.IN_PROGRESS, EntityStatus.COMPLETED})

# Parents in these statuses cannot receive new children
CLOSED_PARENT_STATUSES = frozenset({EntityStatus.ARCHIVED, EntityStatus.WONT_FIX})


def get_transition_matrix(kind: EntityKind) -> dict[EntityStatus, list[EntityStatus]]:
    """Get the transition matrix for an entity kind."""
    if kind == EntityKind.EPIC:
        return EPIC_TRANSITION_MATRIX
    return WORK_TRANSITION_MATRIX


def is_valid_status(kind: EntityKind, status: EntityStatus) -> bool:
    """Check that a status belongs to the kind's status domain."""
    return status in STATUS_DOMAIN[kind]


def is_terminal_status(status: EntityStatus) -> bool:
    """Check if a status is terminal (no further transitions)."""
    return status in TERMINAL_STATUSES


def requires_dependency_check(kind: EntityKind, new_status: EntityStatus) -> bool:
    """Check if entering new_status requires all dependencies to be completed."""
    return kind != EntityKind.EPIC and new_status in GUARDED_STATUSES


def is_transition_valid(
    kind: EntityKind,
    current_status: EntityStatus,
    new_status: EntityStatus
) -> bool:
    """
    Check if a status transition is valid.

    Args:
        kind: Entity kind (selects the transition matrix)
        current_status: Current status
        new_status: Requested new status

    Returns:
        True if transition is allowed, False otherwise
    """
    allowed_transitions = get_transition_matrix(kind).get(current_status, [])
    return new_status in allowed_transitions


def validate_transition(
    kind: EntityKind,
    current_status: EntityStatus,
    new_status: EntityStatus
) -> None:
    """
    Validate a status transition and raise exception if invalid.

    Args:
        kind: Entity kind (selects the transition matrix)
        current_status: Current status
        new_status: Requested new status

    Raises:
        InvalidTransitionError: If the transition is not allowed
    """
    # No-op transitions are always allowed (setting same status)
    if current_status == new_status:
        logger.debug(f"No-op {kind.value} transition: {current_status.value} → {new_status.value}")
        return

    if not is_transition_valid(kind, current_status, new_status):
        allowed_transitions = get_allowed_transitions(kind, current_status)
        allowed_names = [s.value for s in allowed_transitions]

        error_msg = f"Invalid {kind.value} status transition: {current_status.value} → {new_status.value}."
        if allowed_names:
            error_msg += f" From {current_status.value}, you can only transition to: {', '.join(allowed_names)}."

        # Add helpful guidance based on the attempted transition
        if not is_valid_status(kind, new_status):
            error_msg += f" '{new_status.value}' is not a valid {kind.value} status."
        elif is_terminal_status(current_status):
            error_msg += f" '{current_status.value}' is terminal. Create a new {kind.value} to resume the work."
        elif new_status == EntityStatus.TODO:
            error_msg += " Started work cannot return to todo."

        logger.warning(f"Blocked transition: {error_msg}")
        raise InvalidTransitionError(
            message=error_msg,
            current_status=current_status,
            requested_status=new_status,
            kind=kind,
            allowed_transitions=allowed_transitions,
        )

    logger.debug(f"Valid {kind.value} transition: {current_status.value} → {new_status.value}")


def get_allowed_transitions(kind: EntityKind, current_status: EntityStatus) -> list[EntityStatus]:
    """
    Get list of allowed transitions from current status.

    Args:
        kind: Entity kind
        current_status: Current status

    Returns:
        List of allowed next statuses (excluding no-op same status)
    """
    all_transitions = get_transition_matrix(kind).get(current_status, [])
    # Filter out the no-op transition (same status)
    return [s for s in all_transitions if s != current_status]


def cascades_to_children(kind: EntityKind, new_status: EntityStatus) -> bool:
    """
    Check if entering new_status archives the entity's open descendants.

    - Epic completed or archived: open tasks and their open subtasks
    - Task wont_fix or archived: open subtasks
    Completing a task leaves its subtasks alone.
    """
    if kind == EntityKind.EPIC:
        return new_status in (EntityStatus.COMPLETED, EntityStatus.ARCHIVED)
    if kind == EntityKind.TASK:
        return new_status in (EntityStatus.WONT_FIX, EntityStatus.ARCHIVED)
    return False


# Status sort order for list queries
# Lower number = shown first: active work first, closed work last
STATUS_SORT_ORDER: dict[EntityStatus, int] = {
    EntityStatus.IN_PROGRESS: 1,   # Actively working
    EntityStatus.TODO: 2,          # Backlog
    EntityStatus.COMPLETED: 3,     # Done
    EntityStatus.WONT_FIX: 4,      # Rejected
    EntityStatus.ARCHIVED: 5,      # Shelved
}
