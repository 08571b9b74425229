"""Persistence for SafeHarbor services.

Provides connection pooling, health checks, an in-memory table for
development and tests, and the repository base class shared by the
incident, responder, resource and audit stores.
"""

from .connection import (
    DatabaseConfig,
    ConnectionManager,
    get_connection_manager,
)
from .memory import MemoryTable
from .repository import (
    BaseRepository,
    RepositoryError,
    like_contains,
    to_db_value,
)

__all__ = [
    "DatabaseConfig",
    "ConnectionManager",
    "get_connection_manager",
    "MemoryTable",
    "BaseRepository",
    "RepositoryError",
    "like_contains",
    "to_db_value",
]
