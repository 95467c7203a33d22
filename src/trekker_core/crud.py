"""CRUD operations for epics, tasks, subtasks and comments.

Functions here never commit: they run inside the façade's write
transaction, flush as they go, and write history events and search
postings alongside every change.
"""
import logging
from typing import Optional

from sqlalchemy import case
from sqlalchemy.orm import Session

from . import models, schemas
from . import dependencies as graph
from .errors import ValidationError, NotFoundError, ImmutableFieldError
from .history import record_event
from .search import index_entity, index_comment, TITLE_FIELD, DESCRIPTION_FIELD
from .state_machine import (
    validate_transition,
    requires_dependency_check,
    cascades_to_children,
    is_terminal_status,
    BlockedByDependencyError,
    CLOSED_PARENT_STATUSES,
    STATUS_SORT_ORDER,
)

logger = logging.getLogger("trekker-core.crud")

# Required parent kind per entity kind
PARENT_KIND = {
    models.EntityKind.TASK: models.EntityKind.EPIC,
    models.EntityKind.SUBTASK: models.EntityKind.TASK,
}

# Fixed at creation; a patch naming them is rejected
IMMUTABLE_FIELDS = ("parent_id", "kind")


def _status_sort_expression():
    """Build SQLAlchemy CASE expression for status-based sorting.

    Returns a CASE expression that maps status to sort order,
    with in_progress first and archived last.
    """
    return case(
        *[(models.Entity.status == status, order)
          for status, order in STATUS_SORT_ORDER.items()],
        else_=99
    )


def _normalize_id(entity_id: str) -> str:
    return entity_id.strip().upper()


def _touch(entity: models.Entity) -> None:
    """Refresh updated_at without ever moving it backwards."""
    now = models.utcnow()
    if entity.updated_at is None or now > entity.updated_at:
        entity.updated_at = now


# ============================================================================
# Human-readable IDs
# ============================================================================

def next_human_readable_id(db: Session, prefix: str) -> str:
    """
    Draw the next human-readable id for a prefix (e.g., TREK-8).

    Args:
        db: Database session (inside the creating transaction)
        prefix: Sequence prefix (EPIC, TREK, CMT)

    Returns:
        Formatted id
    """
    sequence = db.query(models.IDSequence).filter(models.IDSequence.prefix == prefix).first()
    if sequence is None:
        sequence = models.IDSequence(prefix=prefix, next_number=1)
        db.add(sequence)
        db.flush()

    number = sequence.next_number
    sequence.next_number = number + 1
    db.flush()
    return f"{prefix}-{number}"


# ============================================================================
# Entity Store
# ============================================================================

def get_entity(db: Session, entity_id: str) -> Optional[models.Entity]:
    """
    Get an epic, task or subtask by human-readable id (case-insensitive).

    Args:
        db: Database session
        entity_id: Human-readable id, e.g. 'EPIC-1' or 'trek-7'

    Returns:
        Entity or None if not found
    """
    return db.query(models.Entity).filter(
        models.Entity.human_readable_id == _normalize_id(entity_id)
    ).first()


def require_entity(
    db: Session,
    entity_id: str,
    kind: Optional[models.EntityKind] = None,
) -> models.Entity:
    """
    Get an entity or raise NotFoundError.

    Args:
        db: Database session
        entity_id: Human-readable id
        kind: If given, the entity must be of this kind

    Raises:
        NotFoundError: No entity (of the requested kind) has this id
    """
    entity = get_entity(db, entity_id)
    if entity is None or (kind is not None and entity.kind != kind):
        raise NotFoundError(entity_id, kind.value if kind else "entity")
    return entity


def _resolve_parent(db: Session, kind: models.EntityKind, parent_id: str) -> models.Entity:
    """Load and vet the parent for a new task or subtask."""
    parent_kind = PARENT_KIND[kind]
    parent = get_entity(db, parent_id)
    if parent is None:
        raise NotFoundError(parent_id, parent_kind.value)

    if parent.kind != parent_kind:
        raise ValidationError(
            f"A {kind.value} must belong to a {parent_kind.value}; "
            f"{parent.human_readable_id} is a {parent.kind.value}",
            field="parent_id",
        )

    if parent.status in CLOSED_PARENT_STATUSES:
        raise ValidationError(
            f"Cannot add a {kind.value} to {parent.human_readable_id}: it is {parent.status.value}",
            field="parent_id",
        )
    return parent


def create_entity(
    db: Session,
    kind: models.EntityKind,
    data: schemas.EntityCreate,
    prefix: str,
    actor: str,
    parent_id: Optional[str] = None,
) -> models.Entity:
    """
    Create an epic, task or subtask.

    Args:
        db: Database session
        kind: Kind of entity to create
        data: Validated creation data
        prefix: Human-readable id prefix for this kind
        actor: Who is creating the entity
        parent_id: Parent epic (for tasks) or task (for subtasks)

    Returns:
        Created entity (flushed, not committed)

    Raises:
        NotFoundError: Parent does not exist
        ValidationError: Parent has the wrong kind or is archived/wont_fix
    """
    parent = None
    if kind in PARENT_KIND:
        if not parent_id:
            raise ValidationError(f"A {kind.value} requires a parent {PARENT_KIND[kind].value}", field="parent_id")
        parent = _resolve_parent(db, kind, parent_id)

    now = models.utcnow()
    entity = models.Entity(
        human_readable_id=next_human_readable_id(db, prefix),
        kind=kind,
        parent_id=parent.id if parent else None,
        title=data.title,
        description=data.description,
        status=models.EntityStatus.TODO,
        priority=data.priority,
        created_at=now,
        updated_at=now,
    )
    db.add(entity)
    db.flush()

    # Record creation in history
    record_event(db, entity, models.ChangeType.CREATED, actor, new_value=entity.title)
    index_entity(db, entity)

    logger.info(f"Created {kind.value} {entity.human_readable_id}: {entity.title}")
    return entity


def list_entities(
    db: Session,
    status: Optional[models.EntityStatus] = None,
    kind: Optional[models.EntityKind] = None,
    parent: Optional[models.Entity] = None,
) -> list[models.Entity]:
    """
    List entities with optional filtering.

    Ordered by status (in_progress first, archived last), then priority,
    then creation time.

    Args:
        db: Database session
        status: Filter by status
        kind: Filter by kind
        parent: Only direct children of this entity

    Returns:
        List of entities
    """
    query = db.query(models.Entity)

    if status:
        query = query.filter(models.Entity.status == status)

    if kind:
        query = query.filter(models.Entity.kind == kind)

    if parent is not None:
        query = query.filter(models.Entity.parent_id == parent.id)

    return query.order_by(
        _status_sort_expression(),
        models.Entity.priority.asc(),
        models.Entity.created_at.asc(),
        models.Entity.id.asc(),
    ).all()


def get_children(db: Session, entity: models.Entity) -> list[models.Entity]:
    """Get direct children (tasks of an epic, subtasks of a task) in creation order."""
    return db.query(models.Entity).filter(
        models.Entity.parent_id == entity.id
    ).order_by(models.Entity.id).all()


def _open_descendants(db: Session, entity: models.Entity) -> list[models.Entity]:
    """Non-terminal descendants in cascade order (each task before its subtasks)."""
    found = []
    for child in get_children(db, entity):
        if not is_terminal_status(child.status):
            found.append(child)
        if child.kind == models.EntityKind.TASK:
            found.extend(s for s in get_children(db, child) if not is_terminal_status(s.status))
    return found


def _set_status(db: Session, entity: models.Entity, new_status: models.EntityStatus, actor: str) -> None:
    old_status = entity.status
    entity.status = new_status
    _touch(entity)
    db.flush()
    record_event(
        db, entity, models.ChangeType.STATUS_CHANGED, actor,
        field_name="status", old_value=old_status, new_value=new_status,
    )


def check_not_blocked(db: Session, entity: models.Entity, new_status: models.EntityStatus) -> None:
    """
    Enforce the dependency guard for a task/subtask status change.

    Raises:
        BlockedByDependencyError: Some dependency is not completed
    """
    if not requires_dependency_check(entity.kind, new_status):
        return

    blocking = graph.get_blocked_by(db, entity)
    if blocking:
        error = BlockedByDependencyError(
            entity.human_readable_id,
            entity.kind,
            new_status,
            [dep.human_readable_id for dep in blocking],
        )
        logger.warning(f"Blocked transition: {error}")
        raise error


def change_status(
    db: Session,
    entity: models.Entity,
    new_status: models.EntityStatus,
    actor: str,
) -> list[models.Entity]:
    """
    Move an entity to a new status, applying guards and cascades.

    - Transition must be allowed by the kind's state machine
    - Tasks/subtasks entering in_progress/completed need completed dependencies
    - Epic completed/archived archives open tasks and their open subtasks
    - Task wont_fix/archived archives its open subtasks

    Args:
        db: Database session
        entity: Entity to change
        new_status: Requested status
        actor: Who is making the change

    Returns:
        Descendants archived by the cascade (empty for no-op changes)

    Raises:
        InvalidTransitionError: Transition not allowed for this kind
        BlockedByDependencyError: Incomplete dependencies
    """
    validate_transition(entity.kind, entity.status, new_status)
    if entity.status == new_status:
        return []

    check_not_blocked(db, entity, new_status)

    archived = []
    if cascades_to_children(entity.kind, new_status):
        for child in _open_descendants(db, entity):
            validate_transition(child.kind, child.status, models.EntityStatus.ARCHIVED)
            _set_status(db, child, models.EntityStatus.ARCHIVED, actor)
            archived.append(child)

    _set_status(db, entity, new_status, actor)

    if archived:
        logger.info(
            f"{entity.human_readable_id} → {new_status.value} archived "
            f"{len(archived)} open descendants: {', '.join(c.human_readable_id for c in archived)}"
        )
    return archived


def update_entity(
    db: Session,
    entity: models.Entity,
    update: schemas.EntityUpdate,
    actor: str,
) -> list[models.Entity]:
    """
    Apply a patch to an entity.

    One history event is written per field whose value actually changes.

    Args:
        db: Database session
        entity: Entity to update
        update: Validated patch (only fields explicitly set are applied)
        actor: Who is making the change

    Returns:
        Descendants archived by a cascading status change

    Raises:
        ImmutableFieldError: Patch tries to change parent_id or kind
        ValidationError: Patch clears the title
        InvalidTransitionError, BlockedByDependencyError: see change_status
    """
    provided = update.model_fields_set

    for field in IMMUTABLE_FIELDS:
        if field in provided:
            raise ImmutableFieldError(entity.human_readable_id, field)

    if "title" in provided and update.title is None:
        raise ValidationError("title cannot be empty", field="title")

    reindex = []

    if update.title is not None and update.title != entity.title:
        old_title = entity.title
        entity.title = update.title
        _touch(entity)
        db.flush()
        record_event(db, entity, models.ChangeType.UPDATED, actor,
                     field_name="title", old_value=old_title, new_value=entity.title)
        reindex.append(TITLE_FIELD)

    if "description" in provided and update.description != entity.description:
        old_description = entity.description
        entity.description = update.description
        _touch(entity)
        db.flush()
        record_event(db, entity, models.ChangeType.UPDATED, actor,
                     field_name="description", old_value=old_description, new_value=entity.description)
        reindex.append(DESCRIPTION_FIELD)

    if reindex:
        index_entity(db, entity, reindex)

    if update.priority is not None and update.priority != entity.priority:
        old_priority = entity.priority
        entity.priority = update.priority
        _touch(entity)
        db.flush()
        record_event(db, entity, models.ChangeType.PRIORITY_CHANGED, actor,
                     field_name="priority", old_value=old_priority, new_value=entity.priority)

    archived = []
    if update.status is not None:
        archived = change_status(db, entity, update.status, actor)

    logger.info(f"Updated {entity.kind.value} {entity.human_readable_id}")
    return archived


def complete_epic(db: Session, epic: models.Entity, actor: str) -> list[models.Entity]:
    """
    Complete an epic, archiving every open task and subtask beneath it.

    Returns:
        The archived descendants
    """
    return change_status(db, epic, models.EntityStatus.COMPLETED, actor)


# ============================================================================
# Dependencies
# ============================================================================

def add_dependency(
    db: Session,
    dependent: models.Entity,
    dependency: models.Entity,
    actor: str,
) -> bool:
    """
    Make dependent wait on dependency.

    Returns:
        True if a new edge was added, False if it already existed
    """
    created = graph.add_edge(db, dependent, dependency)
    if created:
        _touch(dependent)
        db.flush()
        record_event(db, dependent, models.ChangeType.DEPENDENCY_ADDED, actor,
                     field_name="dependency", new_value=dependency.human_readable_id)
        logger.info(f"{dependent.human_readable_id} now depends on {dependency.human_readable_id}")
    return created


def remove_dependency(
    db: Session,
    dependent: models.Entity,
    dependency: models.Entity,
    actor: str,
) -> bool:
    """
    Remove a dependency edge; removing a missing edge is a no-op.

    Returns:
        True if an edge was removed
    """
    removed = graph.remove_edge(db, dependent, dependency)
    if removed:
        _touch(dependent)
        db.flush()
        record_event(db, dependent, models.ChangeType.DEPENDENCY_REMOVED, actor,
                     field_name="dependency", old_value=dependency.human_readable_id)
        logger.info(f"{dependent.human_readable_id} no longer depends on {dependency.human_readable_id}")
    return removed


# ============================================================================
# Comments
# ============================================================================

def add_comment(
    db: Session,
    entity: models.Entity,
    data: schemas.CommentCreate,
    prefix: str,
) -> models.Comment:
    """
    Attach a comment to an entity (allowed in any status).

    The comment author is recorded as the actor of the history event.
    """
    comment = models.Comment(
        human_readable_id=next_human_readable_id(db, prefix),
        entity_id=entity.id,
        author=data.author,
        body=data.body,
        created_at=models.utcnow(),
    )
    db.add(comment)
    _touch(entity)
    db.flush()

    record_event(db, entity, models.ChangeType.COMMENTED, data.author,
                 field_name="comment", new_value=comment.human_readable_id)
    index_comment(db, comment)

    logger.info(f"Added comment {comment.human_readable_id} to {entity.human_readable_id}")
    return comment


def get_comments(db: Session, entity: models.Entity) -> list[models.Comment]:
    """Get an entity's comments, oldest first."""
    return db.query(models.Comment).filter(
        models.Comment.entity_id == entity.id
    ).order_by(models.Comment.id).all()
