"""Append-only audit log.

Every committed mutation writes its events through record_event() inside
the same transaction as the change itself, so an entity change and its
audit row commit or roll back together. Rows are never updated or deleted
(SQLite triggers reject both).
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from . import models

logger = logging.getLogger("trekker-core.history")


def _to_text(value: Any) -> Optional[str]:
    """Serialize a field value for storage in old_value/new_value."""
    if value is None:
        return None
    if isinstance(value, models.EntityStatus):
        return value.value
    return str(value)


def _as_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to the naive UTC form timestamps are stored in."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def record_event(
    db: Session,
    entity: models.Entity,
    change_type: models.ChangeType,
    actor: str,
    field_name: Optional[str] = None,
    old_value: Any = None,
    new_value: Any = None,
) -> models.HistoryEvent:
    """Append a history event for an entity change.

    The sequence number is assigned by the store when the row is flushed.

    Args:
        db: Database session (inside the command's write transaction)
        entity: Entity the change applies to
        change_type: Type of change (created, status_changed, etc.)
        actor: Who made the change
        field_name: Name of the field that changed
        old_value: Previous value
        new_value: New value

    Returns:
        The flushed HistoryEvent with its seq populated
    """
    history_event = models.HistoryEvent(
        entity_id=entity.human_readable_id,
        entity_kind=entity.kind,
        change_type=change_type,
        field_name=field_name,
        old_value=_to_text(old_value),
        new_value=_to_text(new_value),
        actor=actor,
    )
    db.add(history_event)
    db.flush()
    logger.debug(
        f"History #{history_event.seq}: {entity.human_readable_id} {change_type.value} "
        f"{field_name or ''} {history_event.old_value!r} → {history_event.new_value!r}"
    )
    return history_event


def get_history(
    db: Session,
    entity_id: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    skip: int = 0,
    limit: Optional[int] = None,
) -> list[models.HistoryEvent]:
    """
    Get history events ordered by sequence number.

    Args:
        db: Database session
        entity_id: Only events for this human-readable id
        since: Only events at or after this time (naive values are UTC)
        until: Only events at or before this time (naive values are UTC)
        skip: Number of events to skip (paging)
        limit: Maximum number of events (unbounded when None)

    Returns:
        List of history events, oldest first
    """
    query = db.query(models.HistoryEvent)

    if entity_id is not None:
        query = query.filter(models.HistoryEvent.entity_id == entity_id)

    if since is not None:
        query = query.filter(models.HistoryEvent.changed_at >= _as_naive_utc(since))

    if until is not None:
        query = query.filter(models.HistoryEvent.changed_at <= _as_naive_utc(until))

    query = query.order_by(models.HistoryEvent.seq.asc())

    if skip:
        query = query.offset(skip)

    if limit is not None:
        query = query.limit(limit)

    return query.all()
