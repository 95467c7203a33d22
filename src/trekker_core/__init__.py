"""Trekker Core - local task tracking engine for agent work sessions.

This package provides the storage engine behind the Trekker CLI:
epics, tasks and subtasks with dependency edges, comments, full-text
search and an append-only audit log, all kept in one SQLite file.

Modules:
- tracker: command/query facade used by the CLI
- crud: entity store operations
- state_machine: status transition rules per entity kind
- dependencies: dependency graph, cycle detection and readiness
- history: append-only audit log
- search: token index over titles, descriptions and comments
"""

__version__ = "1.0.0"

from .errors import (
    TrekkerError,
    ValidationError,
    NotFoundError,
    ImmutableFieldError,
    StorageError,
)
from .state_machine import InvalidTransitionError, BlockedByDependencyError
from .dependencies import SelfDependencyError, CycleError
from .tracker import Tracker

__all__ = [
    "Tracker",
    "TrekkerError",
    "ValidationError",
    "NotFoundError",
    "ImmutableFieldError",
    "InvalidTransitionError",
    "BlockedByDependencyError",
    "SelfDependencyError",
    "CycleError",
    "StorageError",
    "__version__",
]
