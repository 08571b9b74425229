"""Base repository pattern for the crisis stores.

Each repository runs against PostgreSQL when given a ConnectionManager
and against an in-memory MemoryTable otherwise. Common CRUD lives here;
subclasses add the entity-specific queries and atomic updates.
"""
import dataclasses
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

from psycopg2 import Error as PsycopgError
from psycopg2 import errors as pg_errors
from psycopg2.extras import Json

from safeharbor.shared.errors import ConflictError, NotFoundError, SafeHarborError
from .connection import ConnectionManager
from .memory import MemoryTable

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RepositoryError(SafeHarborError):
    """Storage backend failed."""
    pass


def like_contains(text: str) -> str:
    """ILIKE pattern that matches text literally anywhere in a column.

    Escapes LIKE metacharacters so the SQL path agrees with contains_ci
    on the memory backend (backslash is the PostgreSQL default escape).
    """
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def to_db_value(value: Any) -> Any:
    """Adapt a Python value for psycopg2 parameters."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(to_db_value(v) for v in value)
    if isinstance(value, (tuple, list)):
        return [to_db_value(v) for v in value]
    if isinstance(value, dict):
        return Json(value)
    return value


class BaseRepository(ABC, Generic[T]):
    """Abstract base repository with common operations.

    Subclasses implement row/entity conversion while inheriting:
    - Backend selection (PostgreSQL or memory)
    - Error translation to RepositoryError/ConflictError
    - Logging patterns
    """

    def __init__(
        self,
        table_name: str,
        connection_manager: Optional[ConnectionManager] = None,
    ):
        """Initialize repository.

        Args:
            table_name: Name of the database table
            connection_manager: PostgreSQL connection manager; None keeps
                rows in memory
        """
        self.table_name = table_name
        self.connection_manager = connection_manager
        self._memory: Optional[MemoryTable[T]] = (
            None if connection_manager else MemoryTable(table_name)
        )

        logger.info(
            "REPOSITORY_INITIALIZED",
            extra={
                "table_name": table_name,
                "backend": "postgresql" if connection_manager else "memory",
            }
        )

    @property
    def uses_database(self) -> bool:
        return self.connection_manager is not None

    @abstractmethod
    def _row_to_entity(self, row: Dict[str, Any]) -> T:
        """Convert a database row (dict cursor) to an entity."""
        pass

    @abstractmethod
    def _entity_to_params(self, entity: T) -> Dict[str, Any]:
        """Convert an entity to column -> value parameters."""
        pass

    def _conflicts_with(self, existing: T, new: T) -> bool:
        """Memory-backend stand-in for UNIQUE constraints beyond the id."""
        return False

    # ------------------------------------------------------------------
    # SQL helpers
    # ------------------------------------------------------------------

    def _fetch_one(self, query: str, params: tuple = ()) -> Optional[T]:
        try:
            with self.connection_manager.transaction() as cur:
                cur.execute(query, params)
                row = cur.fetchone()
        except PsycopgError as e:
            self._raise_storage_error("fetch_one", e)
        return self._row_to_entity(row) if row else None

    def _fetch_all(self, query: str, params: tuple = ()) -> List[T]:
        try:
            with self.connection_manager.transaction() as cur:
                cur.execute(query, params)
                rows = cur.fetchall()
        except PsycopgError as e:
            self._raise_storage_error("fetch_all", e)
        return [self._row_to_entity(row) for row in rows]

    def _raise_storage_error(self, operation: str, error: Exception) -> None:
        logger.error(
            "REPOSITORY_QUERY_FAILED",
            extra={
                "table_name": self.table_name,
                "operation": operation,
                "error": str(error),
                "error_type": type(error).__name__,
            }
        )
        raise RepositoryError(f"{self.table_name}.{operation} failed: {error}") from error

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def find_by_id(self, entity_id: str) -> Optional[T]:
        """Find entity by ID.

        Returns:
            Entity if found, None otherwise
        """
        if self._memory is not None:
            return self._memory.get(entity_id)
        return self._fetch_one(
            f"SELECT * FROM {self.table_name} WHERE id = %s",
            (entity_id,),
        )

    def get(self, entity_id: str) -> T:
        """Find entity by ID or fail.

        Raises:
            NotFoundError: If no row has this id
        """
        entity = self.find_by_id(entity_id)
        if entity is None:
            raise NotFoundError(f"{self.table_name}: {entity_id} not found")
        return entity

    def insert(self, entity: T) -> T:
        """Insert a new entity.

        Raises:
            ConflictError: If the id (or another unique key) already exists
        """
        if self._memory is not None:
            return self._memory.insert(
                getattr(entity, "id"),
                entity,
                lambda existing: self._conflicts_with(existing, entity),
            )

        params = self._entity_to_params(entity)
        columns = list(params.keys())
        values = tuple(to_db_value(v) for v in params.values())
        placeholders = ", ".join(["%s"] * len(values))
        query = (
            f"INSERT INTO {self.table_name} ({', '.join(columns)}) "
            f"VALUES ({placeholders}) RETURNING *"
        )
        try:
            with self.connection_manager.transaction() as cur:
                cur.execute(query, values)
                row = cur.fetchone()
        except pg_errors.UniqueViolation as e:
            raise ConflictError(f"{self.table_name}: duplicate {getattr(entity, 'id')}") from e
        except PsycopgError as e:
            self._raise_storage_error("insert", e)
        return self._row_to_entity(row)

    def update_fields(self, entity_id: str, **fields: Any) -> T:
        """Set the given fields on one entity.

        Raises:
            NotFoundError: If no row has this id
        """
        if not fields:
            return self.get(entity_id)

        if self._memory is not None:
            return self._memory.update(
                entity_id,
                lambda current: dataclasses.replace(current, **fields),
            )

        assignments = ", ".join(f"{col} = %s" for col in fields)
        values = tuple(to_db_value(v) for v in fields.values()) + (entity_id,)
        updated = self._fetch_one(
            f"UPDATE {self.table_name} SET {assignments} WHERE id = %s RETURNING *",
            values,
        )
        if updated is None:
            raise NotFoundError(f"{self.table_name}: {entity_id} not found")
        return updated

    def count(self) -> int:
        """Count total entities."""
        if self._memory is not None:
            return self._memory.count()
        try:
            with self.connection_manager.transaction() as cur:
                cur.execute(f"SELECT COUNT(*) AS n FROM {self.table_name}")
                row = cur.fetchone()
        except PsycopgError as e:
            self._raise_storage_error("count", e)
        return row["n"] if row else 0
