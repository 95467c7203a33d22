"""Command/query façade consumed by the Trekker CLI.

Each command runs in one write transaction (BEGIN IMMEDIATE): validate,
mutate, audit, index, commit. Any exception rolls the whole command back,
so a failed call leaves the store exactly as it was. Queries run in
short read transactions against committed state.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Generator, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud, models, schemas
from . import dependencies as graph
from .config import Settings, get_settings
from .database import create_store_engine, create_session_factories, init_db
from .errors import ValidationError, StorageError
from .history import get_history
from .search import search as search_index

logger = logging.getLogger("trekker-core.tracker")


def _validate(schema_cls, **data):
    """Build a pydantic schema, reporting failures as ValidationError."""
    try:
        return schema_cls(**data)
    except PydanticValidationError as e:
        error = e.errors()[0]
        field = ".".join(str(part) for part in error["loc"]) or None
        if error["type"] == "extra_forbidden":
            message = f"Unknown field: {field}"
        else:
            message = f"{field}: {error['msg']}" if field else error["msg"]
        raise ValidationError(message, field=field) from e


def _coerce(enum_cls, value, field: str):
    """Accept an enum member or its string value."""
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {field} '{value}' (expected one of: {allowed})", field=field)


def _entity_to_response(entity: models.Entity) -> schemas.EntityResponse:
    """Convert an Entity model to its response schema."""
    return schemas.EntityResponse(
        id=entity.human_readable_id,
        kind=entity.kind,
        title=entity.title,
        description=entity.description,
        status=entity.status,
        priority=entity.priority,
        parent_id=entity.parent_hrid,
        created_at=entity.created_at,
        updated_at=entity.updated_at,
    )


def _comment_to_response(comment: models.Comment) -> schemas.CommentResponse:
    return schemas.CommentResponse(
        id=comment.human_readable_id,
        entity_id=comment.entity.human_readable_id,
        author=comment.author,
        body=comment.body,
        created_at=comment.created_at,
    )


class Tracker:
    """Entry point for every Trekker command and query.

    Example:
        with Tracker.open(".trekker/trekker.db") as tracker:
            epic = tracker.create_epic("Auth rewrite")
            task = tracker.create_task("Add login", epic_id=epic.id)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        url: Optional[str] = None,
        engine: Optional[Engine] = None,
    ):
        self.settings = settings or get_settings()
        self.engine = engine or create_store_engine(self.settings, url=url)
        self._read_factory, self._write_factory = create_session_factories(self.engine)
        init_db(self.engine)

    @classmethod
    def open(cls, path: str, settings: Optional[Settings] = None) -> "Tracker":
        """Open (creating if needed) the store file at path."""
        return cls(settings=settings, url=f"sqlite:///{path}")

    def close(self) -> None:
        self.engine.dispose()

    def __enter__(self) -> "Tracker":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self) -> Generator[Session, None, None]:
        """
        Run one command in a write transaction.

        Commits on success; rolls back on any exception. Underlying
        SQLAlchemy failures are re-raised as StorageError.
        """
        db = self._write_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Storage failure, command rolled back: {e}", exc_info=True)
            raise StorageError(str(e)) from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @contextmanager
    def _query(self) -> Generator[Session, None, None]:
        """Run a read-only query against committed state."""
        db = self._read_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            logger.error(f"Storage failure during query: {e}", exc_info=True)
            raise StorageError(str(e)) from e
        finally:
            db.close()

    def _actor(self, actor: Optional[str]) -> str:
        return actor or self.settings.default_actor

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def create_epic(
        self,
        title: str,
        description: Optional[str] = None,
        priority: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> schemas.EntityResponse:
        """Create an epic."""
        fields = {"title": title, "description": description}
        if priority is not None:
            fields["priority"] = priority
        data = _validate(schemas.EpicCreate, **fields)

        with self._transaction() as db:
            epic = crud.create_entity(
                db, models.EntityKind.EPIC, data, self.settings.epic_prefix, self._actor(actor)
            )
            result = _entity_to_response(epic)
        logger.info(f"Committed epic.create {result.id}")
        return result

    def create_task(
        self,
        title: str,
        epic_id: str,
        description: Optional[str] = None,
        priority: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> schemas.EntityResponse:
        """Create a task under an epic that is not archived."""
        fields = {"title": title, "epic_id": epic_id, "description": description}
        if priority is not None:
            fields["priority"] = priority
        data = _validate(schemas.TaskCreate, **fields)

        with self._transaction() as db:
            task = crud.create_entity(
                db, models.EntityKind.TASK, data, self.settings.task_prefix, self._actor(actor),
                parent_id=data.epic_id,
            )
            result = _entity_to_response(task)
        logger.info(f"Committed task.create {result.id}")
        return result

    def create_subtask(
        self,
        title: str,
        task_id: str,
        description: Optional[str] = None,
        priority: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> schemas.EntityResponse:
        """Create a subtask under a task that is not archived or wont_fix."""
        fields = {"title": title, "task_id": task_id, "description": description}
        if priority is not None:
            fields["priority"] = priority
        data = _validate(schemas.SubtaskCreate, **fields)

        with self._transaction() as db:
            subtask = crud.create_entity(
                db, models.EntityKind.SUBTASK, data, self.settings.task_prefix, self._actor(actor),
                parent_id=data.task_id,
            )
            result = _entity_to_response(subtask)
        logger.info(f"Committed subtask.create {result.id}")
        return result

    def update(self, entity_id: str, actor: Optional[str] = None, **changes: Any) -> schemas.EntityResponse:
        """
        Patch an epic, task or subtask.

        Accepted fields: status, priority, title, description. Setting
        parent_id raises ImmutableFieldError; any other field raises
        ValidationError.
        """
        patch = _validate(schemas.EntityUpdate, **changes)

        with self._transaction() as db:
            entity = crud.require_entity(db, entity_id)
            crud.update_entity(db, entity, patch, self._actor(actor))
            result = _entity_to_response(entity)
        logger.info(f"Committed entity.update {result.id}")
        return result

    def complete_epic(self, epic_id: str, actor: Optional[str] = None) -> schemas.EpicCompletionResponse:
        """Complete an epic and archive its open tasks and subtasks."""
        with self._transaction() as db:
            epic = crud.require_entity(db, epic_id, models.EntityKind.EPIC)
            archived = crud.complete_epic(db, epic, self._actor(actor))
            result = schemas.EpicCompletionResponse(
                epic=_entity_to_response(epic),
                archived=[_entity_to_response(child) for child in archived],
            )
        logger.info(f"Committed epic.complete {result.epic.id} ({len(result.archived)} archived)")
        return result

    def add_dependency(
        self,
        dependent_id: str,
        dependency_id: str,
        actor: Optional[str] = None,
    ) -> schemas.DependencyResponse:
        """Make dependent_id wait until dependency_id is completed."""
        with self._transaction() as db:
            dependent = crud.require_entity(db, dependent_id)
            dependency = crud.require_entity(db, dependency_id)
            created = crud.add_dependency(db, dependent, dependency, self._actor(actor))
            result = schemas.DependencyResponse(
                dependent_id=dependent.human_readable_id,
                dependency_id=dependency.human_readable_id,
                created=created,
            )
        return result

    def remove_dependency(self, dependent_id: str, dependency_id: str, actor: Optional[str] = None) -> bool:
        """Remove a dependency edge. Returns False if there was no such edge."""
        with self._transaction() as db:
            dependent = crud.require_entity(db, dependent_id)
            dependency = crud.require_entity(db, dependency_id)
            removed = crud.remove_dependency(db, dependent, dependency, self._actor(actor))
        return removed

    def add_comment(self, entity_id: str, author: str, body: str) -> schemas.CommentResponse:
        """Attach a comment to any epic, task or subtask, whatever its status."""
        data = _validate(schemas.CommentCreate, author=author, body=body)

        with self._transaction() as db:
            entity = crud.require_entity(db, entity_id)
            comment = crud.add_comment(db, entity, data, self.settings.comment_prefix)
            result = _comment_to_response(comment)
        logger.info(f"Committed comment.add {result.id} on {result.entity_id}")
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, entity_id: str) -> schemas.EntityResponse:
        with self._query() as db:
            return _entity_to_response(crud.require_entity(db, entity_id))

    def dependencies(self, entity_id: str) -> schemas.DependencyInfoResponse:
        """Show what an entity depends on, what still blocks it, and what it blocks."""
        with self._query() as db:
            entity = crud.require_entity(db, entity_id)
            return schemas.DependencyInfoResponse(
                id=entity.human_readable_id,
                depends_on=[e.human_readable_id for e in graph.get_dependencies(db, entity)],
                blocked_by=[e.human_readable_id for e in graph.get_blocked_by(db, entity)],
                blocks=[e.human_readable_id for e in graph.get_dependents(db, entity)],
            )

    def comments(self, entity_id: str) -> list[schemas.CommentResponse]:
        with self._query() as db:
            entity = crud.require_entity(db, entity_id)
            return [_comment_to_response(c) for c in crud.get_comments(db, entity)]

    def search(
        self,
        query: str,
        kind: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[schemas.SearchHit]:
        """Ranked full-text search over titles, descriptions and comments."""
        kind = _coerce(models.EntityKind, kind, "kind")
        status = _coerce(models.EntityStatus, status, "status")

        with self._query() as db:
            results = search_index(db, query, kind=kind, status=status, limit=limit)
            return [
                schemas.SearchHit(
                    id=r.entity.human_readable_id,
                    kind=r.entity.kind,
                    status=r.entity.status,
                    title=r.entity.title,
                    score=r.matched_tokens,
                    hits=r.hits,
                    comment_ids=r.comment_ids,
                    updated_at=r.entity.updated_at,
                )
                for r in results
            ]

    def history(
        self,
        entity_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> list[schemas.HistoryEventResponse]:
        """
        Audit events ordered by sequence number.

        Raises:
            NotFoundError: entity_id is given and does not resolve
        """
        with self._query() as db:
            hrid = None
            if entity_id is not None:
                hrid = crud.require_entity(db, entity_id).human_readable_id
            events = get_history(db, entity_id=hrid, since=since, until=until, skip=skip, limit=limit)
            return [schemas.HistoryEventResponse.model_validate(e) for e in events]

    def ready(self) -> list[schemas.EntityResponse]:
        """Tasks and subtasks in todo whose dependencies are all completed."""
        with self._query() as db:
            return [_entity_to_response(e) for e in graph.get_ready(db)]

    def export(self) -> dict[str, list[dict[str, Any]]]:
        """
        Snapshot every table, rows ordered by primary key.

        Two exports compare equal exactly when the stores hold the same data.
        """
        with self._query() as db:
            snapshot = {}
            for table in models.Base.metadata.sorted_tables:
                rows = db.execute(table.select().order_by(*table.primary_key.columns)).mappings()
                snapshot[table.name] = [dict(row) for row in rows]
            return snapshot

    def list(
        self,
        status: Optional[str] = None,
        kind: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> list[schemas.EntityResponse]:
        """List entities, in_progress first, then by priority and age."""
        status = _coerce(models.EntityStatus, status, "status")
        kind = _coerce(models.EntityKind, kind, "kind")

        with self._query() as db:
            parent = crud.require_entity(db, parent_id) if parent_id else None
            entities = crud.list_entities(db, status=status, kind=kind, parent=parent)
            return [_entity_to_response(e) for e in entities]
