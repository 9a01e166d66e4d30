"""
Database module for Update Audit Core.

Single import point for all database functionality.
"""

from .database import (
    build_engine,
    create_tables,
    drop_tables,
    get_engine,
    get_session_factory,
    make_session_factory,
    on_shutdown,
    on_startup,
    ping,
    table_exists,
    with_unit_of_work,
)
from .models import Base, PolicyOption, UpdateLog, VersionSnapshot
from .repositories import (
    PolicyOptionsRepository,
    RepositoryError,
    UpdateLogsRepository,
    VersionSnapshotsRepository,
)

__all__ = [
    # Session management
    "with_unit_of_work",
    "build_engine",
    "get_engine",
    "get_session_factory",
    "make_session_factory",
    "table_exists",
    # Lifecycle
    "on_startup",
    "on_shutdown",
    # Health
    "ping",
    # Schema
    "create_tables",
    "drop_tables",
    # Models
    "Base",
    "UpdateLog",
    "VersionSnapshot",
    "PolicyOption",
    # Repositories
    "UpdateLogsRepository",
    "VersionSnapshotsRepository",
    "PolicyOptionsRepository",
    "RepositoryError",
]
