"""SQLAlchemy database models."""
from datetime import datetime, timezone
import enum

from sqlalchemy import (
    Column,
    String,
    Text,
    Integer,
    DateTime,
    ForeignKey,
    Enum,
    CheckConstraint,
    UniqueConstraint,
    Index,
    Table,
    DDL,
    event,
)
from sqlalchemy.orm import declarative_base, relationship

# Base class for all models
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite stores datetimes without offsets)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class EntityKind(str, enum.Enum):
    """Entity kind tag shared by the single entities table."""

    EPIC = "epic"
    TASK = "task"
    SUBTASK = "subtask"


class EntityStatus(str, enum.Enum):
    """Union of every status; the valid subset depends on EntityKind."""

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    WONT_FIX = "wont_fix"  # Tasks/Subtasks only
    ARCHIVED = "archived"


class ChangeType(str, enum.Enum):
    """Change type enum for history tracking."""

    CREATED = "created"
    UPDATED = "updated"
    STATUS_CHANGED = "status_changed"
    PRIORITY_CHANGED = "priority_changed"
    DEPENDENCY_ADDED = "dependency_added"
    DEPENDENCY_REMOVED = "dependency_removed"
    COMMENTED = "commented"


PRIORITY_MIN = 0  # Critical
PRIORITY_MAX = 5  # Someday
PRIORITY_DEFAULT = 2


# Association table for dependency edges (dependent cannot start until dependency completes)
entity_dependencies = Table(
    'entity_dependencies',
    Base.metadata,
    Column('id', Integer, primary_key=True),
    Column('dependent_id', Integer, ForeignKey('entities.id'), nullable=False, index=True),
    Column('dependency_id', Integer, ForeignKey('entities.id'), nullable=False, index=True),
    Column('created_at', DateTime, nullable=False, default=utcnow),
    UniqueConstraint('dependent_id', 'dependency_id', name='unique_entity_dependency'),
    CheckConstraint('dependent_id != dependency_id', name='no_self_dependency'),
)


class Entity(Base):
    """Epic, Task or Subtask.

    Kinds share one table; `kind` selects the status domain and the
    required parent (Task -> Epic, Subtask -> Task).
    """

    __tablename__ = "entities"

    id = Column(Integer, primary_key=True)
    human_readable_id = Column(String(20), unique=True, nullable=False)  # e.g., EPIC-1, TREK-7
    kind = Column(Enum(EntityKind, values_callable=lambda obj: [e.value for e in obj]), nullable=False, index=True)
    parent_id = Column(Integer, ForeignKey("entities.id"), nullable=True, index=True)

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(
        Enum(EntityStatus, values_callable=lambda obj: [e.value for e in obj]),
        nullable=False,
        default=EntityStatus.TODO,
        index=True,
    )
    priority = Column(Integer, nullable=False, default=PRIORITY_DEFAULT, index=True)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    # Relationships
    parent = relationship("Entity", remote_side=[id], backref="children")
    comments = relationship("Comment", back_populates="entity", order_by="Comment.id")

    __table_args__ = (
        CheckConstraint(
            "(kind = 'epic' AND parent_id IS NULL) OR (kind != 'epic' AND parent_id IS NOT NULL)",
            name="valid_parent",
        ),
        CheckConstraint(f"priority >= {PRIORITY_MIN} AND priority <= {PRIORITY_MAX}", name="chk_priority_range"),
        CheckConstraint("kind != 'epic' OR status != 'wont_fix'", name="chk_epic_status"),
        CheckConstraint("length(title) > 0", name="chk_title_not_empty"),
    )

    @property
    def parent_hrid(self):
        return self.parent.human_readable_id if self.parent else None

    def __repr__(self) -> str:
        return f"<Entity {self.human_readable_id} ({self.kind.value}): {self.title[:30]}>"


class Comment(Base):
    """Append-only note attached to an epic, task or subtask."""

    __tablename__ = "comments"

    id = Column(Integer, primary_key=True)
    human_readable_id = Column(String(20), unique=True, nullable=False)  # e.g., CMT-3
    entity_id = Column(Integer, ForeignKey("entities.id"), nullable=False, index=True)
    author = Column(String(100), nullable=False)
    body = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    entity = relationship("Entity", back_populates="comments")

    def __repr__(self) -> str:
        return f"<Comment {self.human_readable_id} on {self.entity_id} by {self.author}>"


class HistoryEvent(Base):
    """Audit trail row: one committed field change.

    `seq` is an AUTOINCREMENT key so numbers are never reused, giving a
    total order over every mutation in the store. Events reference entities
    by human-readable id and carry no foreign key.
    """

    __tablename__ = "history_events"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    entity_id = Column(String(20), nullable=False, index=True)
    entity_kind = Column(Enum(EntityKind, values_callable=lambda obj: [e.value for e in obj]), nullable=False)
    change_type = Column(Enum(ChangeType, values_callable=lambda x: [e.value for e in x]), nullable=False)

    # What changed
    field_name = Column(String(50))
    old_value = Column(Text)
    new_value = Column(Text)

    # Who and when
    actor = Column(String(100), nullable=False)
    changed_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    __table_args__ = ({"sqlite_autoincrement": True},)

    def __repr__(self) -> str:
        return f"<HistoryEvent #{self.seq} {self.entity_id} {self.change_type.value}>"


class SearchPosting(Base):
    """Inverted index entry: `token` occurs in `field` of an entity.

    Comment text is posted under the owning entity with `comment_id` set.
    """

    __tablename__ = "search_postings"

    id = Column(Integer, primary_key=True)
    token = Column(String(100), nullable=False)
    entity_id = Column(Integer, ForeignKey("entities.id"), nullable=False, index=True)
    field = Column(String(20), nullable=False)  # title | description | comment
    comment_id = Column(Integer, ForeignKey("comments.id"), nullable=True)

    __table_args__ = (
        Index("idx_search_postings_token", "token", "entity_id"),
    )

    def __repr__(self) -> str:
        return f"<SearchPosting {self.token!r} -> {self.entity_id}.{self.field}>"


class IDSequence(Base):
    """
    Tracks next available number for human-readable IDs per prefix.

    Numbers are drawn inside the creating transaction, so a rolled-back
    create does not burn a number.
    """

    __tablename__ = "id_sequences"

    id = Column(Integer, primary_key=True)
    prefix = Column(String(10), nullable=False, unique=True)
    next_number = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint("next_number > 0", name="chk_next_number_positive"),
    )

    def __repr__(self) -> str:
        return f"<IDSequence {self.prefix} next={self.next_number}>"


# Append-only guards. The same statements are emitted by migration 001.
APPEND_ONLY_TRIGGERS = {
    "history_events": (
        "CREATE TRIGGER IF NOT EXISTS history_events_no_update BEFORE UPDATE ON history_events "
        "BEGIN SELECT RAISE(ABORT, 'history_events is append-only'); END",
        "CREATE TRIGGER IF NOT EXISTS history_events_no_delete BEFORE DELETE ON history_events "
        "BEGIN SELECT RAISE(ABORT, 'history_events is append-only'); END",
    ),
    "comments": (
        "CREATE TRIGGER IF NOT EXISTS comments_no_update BEFORE UPDATE ON comments "
        "BEGIN SELECT RAISE(ABORT, 'comments are immutable'); END",
        "CREATE TRIGGER IF NOT EXISTS comments_no_delete BEFORE DELETE ON comments "
        "BEGIN SELECT RAISE(ABORT, 'comments are immutable'); END",
    ),
}

for _table, _statements in APPEND_ONLY_TRIGGERS.items():
    for _statement in _statements:
        event.listen(
            Base.metadata.tables[_table],
            "after_create",
            DDL(_statement).execute_if(dialect="sqlite"),
        )
