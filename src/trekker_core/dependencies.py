"""Dependency graph over tasks and subtasks.

An edge (dependent, dependency) means the dependent cannot start or
complete until the dependency is completed. The relation is kept acyclic:
before an edge is inserted, a depth-first reachability check from the new
dependency back to the dependent rejects any edge that would close a loop.
"""
import logging
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, aliased

from . import models
from .errors import TrekkerError, ValidationError

logger = logging.getLogger("trekker-core.dependencies")

GRAPH_KINDS = (models.EntityKind.TASK, models.EntityKind.SUBTASK)


class SelfDependencyError(TrekkerError):
    """Raised when an entity is made to depend on itself."""

    def __init__(self, entity_id: str):
        super().__init__(f"{entity_id} cannot depend on itself")
        self.entity_id = entity_id


class CycleError(TrekkerError):
    """Raised when a new edge would create a circular dependency."""

    def __init__(self, dependent_id: str, dependency_id: str, path: list[str]):
        cycle_str = " -> ".join(path)
        super().__init__(
            f"Circular dependency detected: {dependent_id} cannot depend on {dependency_id} ({cycle_str})"
        )
        self.dependent_id = dependent_id
        self.dependency_id = dependency_id
        self.path = path


class DependencyGraph:
    """Adjacency list of depends-on edges keyed by entity row id."""

    def __init__(self, edges: Iterable[tuple[int, int]] = ()):
        self._adjacency: dict[int, list[int]] = {}
        for dependent, dependency in edges:
            self.add_edge(dependent, dependency)

    @classmethod
    def load(cls, db: Session) -> "DependencyGraph":
        rows = db.execute(
            select(
                models.entity_dependencies.c.dependent_id,
                models.entity_dependencies.c.dependency_id,
            ).order_by(models.entity_dependencies.c.id)
        ).all()
        return cls((dependent, dependency) for dependent, dependency in rows)

    @property
    def node_count(self) -> int:
        nodes = set(self._adjacency)
        for targets in self._adjacency.values():
            nodes.update(targets)
        return len(nodes)

    def add_edge(self, dependent: int, dependency: int) -> None:
        targets = self._adjacency.setdefault(dependent, [])
        if dependency not in targets:
            targets.append(dependency)

    def successors(self, node: int) -> list[int]:
        return self._adjacency.get(node, [])

    def find_path(self, start: int, goal: int) -> Optional[list[int]]:
        """
        Find a depends-on path from start to goal.

        Iterative DFS; each node is expanded at most once, so the walk is
        bounded by the number of nodes even on a corrupted graph.

        Returns:
            Node ids from start to goal inclusive, or None if unreachable
        """
        if start == goal:
            return [start]

        parents: dict[int, int] = {}
        visited = {start}
        stack = [start]
        budget = self.node_count + 1

        while stack and budget > 0:
            node = stack.pop()
            budget -= 1
            for nxt in self.successors(node):
                if nxt in visited:
                    continue
                parents[nxt] = node
                if nxt == goal:
                    path = [goal]
                    while path[-1] != start:
                        path.append(parents[path[-1]])
                    return list(reversed(path))
                visited.add(nxt)
                stack.append(nxt)

        return None

    def would_create_cycle(self, dependent: int, dependency: int) -> Optional[list[int]]:
        """
        Check whether adding dependent -> dependency closes a cycle.

        Returns:
            The resulting cycle (dependent, dependency, ..., dependent) or None
        """
        path = self.find_path(dependency, dependent)
        if path is None:
            return None
        return [dependent] + path


def _require_graph_node(entity: models.Entity) -> None:
    if entity.kind not in GRAPH_KINDS:
        raise ValidationError(
            f"Only tasks and subtasks can have dependencies; {entity.human_readable_id} is an {entity.kind.value}",
            field="dependency",
        )


def edge_exists(db: Session, dependent: models.Entity, dependency: models.Entity) -> bool:
    """Check whether dependent already depends on dependency."""
    row = db.execute(
        select(models.entity_dependencies.c.id).where(
            models.entity_dependencies.c.dependent_id == dependent.id,
            models.entity_dependencies.c.dependency_id == dependency.id,
        )
    ).first()
    return row is not None


def add_edge(db: Session, dependent: models.Entity, dependency: models.Entity) -> bool:
    """
    Insert a dependency edge after validating it.

    Checks:
    1. No self-dependency
    2. Both ends are tasks or subtasks
    3. No circular dependency

    Args:
        db: Database session (inside the command's write transaction)
        dependent: Entity that must wait
        dependency: Entity that must complete first

    Returns:
        True if the edge was inserted, False if it already existed

    Raises:
        SelfDependencyError: dependent and dependency are the same entity
        ValidationError: either end is an epic
        CycleError: the edge would create a cycle
    """
    if dependent.id == dependency.id:
        raise SelfDependencyError(dependent.human_readable_id)

    _require_graph_node(dependent)
    _require_graph_node(dependency)

    if edge_exists(db, dependent, dependency):
        logger.debug(f"Dependency {dependent.human_readable_id} -> {dependency.human_readable_id} already exists")
        return False

    graph = DependencyGraph.load(db)
    cycle = graph.would_create_cycle(dependent.id, dependency.id)
    if cycle:
        hrids = _hrids_for(db, cycle)
        logger.warning(f"Rejected cyclic dependency: {' -> '.join(hrids)}")
        raise CycleError(dependent.human_readable_id, dependency.human_readable_id, hrids)

    db.execute(
        models.entity_dependencies.insert().values(
            dependent_id=dependent.id,
            dependency_id=dependency.id,
            created_at=models.utcnow(),
        )
    )
    logger.debug(f"Added dependency {dependent.human_readable_id} -> {dependency.human_readable_id}")
    return True


def remove_edge(db: Session, dependent: models.Entity, dependency: models.Entity) -> bool:
    """
    Delete a dependency edge if it exists.

    Returns:
        True if an edge was removed, False if there was nothing to remove
    """
    result = db.execute(
        models.entity_dependencies.delete().where(
            models.entity_dependencies.c.dependent_id == dependent.id,
            models.entity_dependencies.c.dependency_id == dependency.id,
        )
    )
    removed = result.rowcount > 0
    if removed:
        logger.debug(f"Removed dependency {dependent.human_readable_id} -> {dependency.human_readable_id}")
    return removed


def _hrids_for(db: Session, entity_ids: list[int]) -> list[str]:
    rows = db.query(models.Entity.id, models.Entity.human_readable_id).filter(
        models.Entity.id.in_(set(entity_ids))
    ).all()
    by_id = dict(rows)
    return [by_id[i] for i in entity_ids]


def get_dependencies(db: Session, entity: models.Entity) -> list[models.Entity]:
    """Get the entities this entity depends on (outgoing edges)."""
    return (
        db.query(models.Entity)
        .join(
            models.entity_dependencies,
            models.Entity.id == models.entity_dependencies.c.dependency_id
        )
        .filter(models.entity_dependencies.c.dependent_id == entity.id)
        .order_by(models.Entity.id)
        .all()
    )


def get_dependents(db: Session, entity: models.Entity) -> list[models.Entity]:
    """Get the entities that depend on (are blocked by) this entity."""
    return (
        db.query(models.Entity)
        .join(
            models.entity_dependencies,
            models.Entity.id == models.entity_dependencies.c.dependent_id
        )
        .filter(models.entity_dependencies.c.dependency_id == entity.id)
        .order_by(models.Entity.id)
        .all()
    )


def get_blocked_by(db: Session, entity: models.Entity) -> list[models.Entity]:
    """
    Get outstanding dependencies: targets that are not completed.

    Dependencies in wont_fix or archived still block; the dependent is
    released by removing the edge.
    """
    return [dep for dep in get_dependencies(db, entity) if dep.status != models.EntityStatus.COMPLETED]


def get_ready(db: Session) -> list[models.Entity]:
    """
    Get tasks and subtasks that can be started right now.

    Ready = status todo and every dependency completed (or no dependencies).
    Ordered by priority (0 first), then creation time, then id.
    """
    dependency = aliased(models.Entity)
    has_incomplete_dependency = (
        select(models.entity_dependencies.c.id)
        .join(dependency, dependency.id == models.entity_dependencies.c.dependency_id)
        .where(
            models.entity_dependencies.c.dependent_id == models.Entity.id,
            dependency.status != models.EntityStatus.COMPLETED,
        )
        .exists()
    )

    return (
        db.query(models.Entity)
        .filter(
            models.Entity.kind.in_(GRAPH_KINDS),
            models.Entity.status == models.EntityStatus.TODO,
            ~has_incomplete_dependency,
        )
        .order_by(models.Entity.priority.asc(), models.Entity.created_at.asc(), models.Entity.id.asc())
        .all()
    )
