"""Thread-safe in-memory table.

Backs every repository when no PostgreSQL connection is configured
(local development, tests). Rows are frozen dataclasses, so handing
them out without copying is safe.
"""
import threading
from typing import Callable, Dict, Generic, List, Optional, TypeVar

from safeharbor.shared.errors import ConflictError, NotFoundError

T = TypeVar("T")


class MemoryTable(Generic[T]):
    """Keyed rows guarded by a single lock.

    `update` runs its mutator under the lock, which makes
    read-check-write sequences atomic per table. Mutators must be pure:
    no I/O and no calls into other collaborators.
    """

    def __init__(self, name: str):
        self.name = name
        self._rows: Dict[str, T] = {}
        self._lock = threading.RLock()

    def insert(
        self,
        key: str,
        row: T,
        conflicts: Optional[Callable[[T], bool]] = None,
    ) -> T:
        """Add a row; fails if the key exists or any row conflicts with it.

        Raises:
            ConflictError: On duplicate key or a `conflicts(existing)` hit
        """
        with self._lock:
            if key in self._rows:
                raise ConflictError(f"{self.name}: duplicate key {key}")
            if conflicts is not None and any(conflicts(r) for r in self._rows.values()):
                raise ConflictError(f"{self.name}: unique constraint violated by {key}")
            self._rows[key] = row
            return row

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            return self._rows.get(key)

    def select(self, predicate: Optional[Callable[[T], bool]] = None) -> List[T]:
        """Snapshot of matching rows in insertion order."""
        with self._lock:
            rows = list(self._rows.values())
        if predicate is None:
            return rows
        return [r for r in rows if predicate(r)]

    def update(self, key: str, mutate: Callable[[T], Optional[T]]) -> Optional[T]:
        """Atomically replace a row with mutate(row).

        Returns the new row, or None when the mutator declines by
        returning None (row left untouched).

        Raises:
            NotFoundError: If key does not exist
        """
        with self._lock:
            current = self._rows.get(key)
            if current is None:
                raise NotFoundError(f"{self.name}: {key} not found")
            replacement = mutate(current)
            if replacement is None:
                return None
            self._rows[key] = replacement
            return replacement

    def update_many(self, keys: List[str], mutate: Callable[[T], T]) -> int:
        """Apply mutate to every existing key in one critical section."""
        with self._lock:
            changed = 0
            for key in keys:
                current = self._rows.get(key)
                if current is None:
                    continue
                self._rows[key] = mutate(current)
                changed += 1
            return changed

    def count(self, predicate: Optional[Callable[[T], bool]] = None) -> int:
        return len(self.select(predicate))
