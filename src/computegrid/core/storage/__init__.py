"""
Task Store - SQLAlchemy models and transaction helpers.

The store is the single source of truth for the task pool, assignments and
trust records. Every mutation runs inside session_scope().
"""

from computegrid.core.storage.database import (
    Base,
    DEFAULT_DATABASE_URL,
    create_grid_engine,
    create_session_factory,
    init_db,
    insert_ignore,
    session_scope,
    utcnow,
)
from computegrid.core.storage.models import (
    AssignmentStatus,
    CanaryTask,
    ComputeTask,
    Earning,
    Node,
    NodeCapabilities,
    NodeTrust,
    TaskAssignment,
    TaskResult,
    TaskStatus,
)

__all__ = [
    "Base",
    "DEFAULT_DATABASE_URL",
    "create_grid_engine",
    "create_session_factory",
    "init_db",
    "insert_ignore",
    "session_scope",
    "utcnow",
    "AssignmentStatus",
    "CanaryTask",
    "ComputeTask",
    "Earning",
    "Node",
    "NodeCapabilities",
    "NodeTrust",
    "TaskAssignment",
    "TaskResult",
    "TaskStatus",
]
