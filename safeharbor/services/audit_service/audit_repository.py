"""Append-only storage for incident audit entries.

PostgreSQL table `crisis_logs` grants INSERT/SELECT only; entries are
never updated or deleted. Without a database the entries live in memory
(development and tests).
"""
import logging
from typing import Any, Dict, List, Optional

from safeharbor.shared.database import BaseRepository, ConnectionManager, RepositoryError
from safeharbor.shared.models import IncidentLogEntry

logger = logging.getLogger(__name__)


class AuditRepository(BaseRepository[IncidentLogEntry]):
    """Repository for immutable IncidentLogEntry records."""

    def __init__(self, connection_manager: Optional[ConnectionManager] = None):
        super().__init__("crisis_logs", connection_manager)

    def _row_to_entity(self, row: Dict[str, Any]) -> IncidentLogEntry:
        return IncidentLogEntry(
            id=row["id"],
            incident_id=row["incident_id"],
            action=row["action"],
            details=row.get("details") or {},
            performed_by=row.get("performed_by") or "SYSTEM",
            created_at=row["created_at"],
            previous_hash=row["previous_hash"],
            entry_hash=row["entry_hash"],
        )

    def _entity_to_params(self, entity: IncidentLogEntry) -> Dict[str, Any]:
        return {
            "id": entity.id,
            "incident_id": entity.incident_id,
            "action": entity.action,
            "details": entity.details,
            "performed_by": entity.performed_by,
            "created_at": entity.created_at,
            "previous_hash": entity.previous_hash,
            "entry_hash": entity.entry_hash,
        }

    def _conflicts_with(self, existing: IncidentLogEntry, new: IncidentLogEntry) -> bool:
        # Mirrors the UNIQUE (incident_id, previous_hash) index
        return (
            existing.incident_id == new.incident_id
            and existing.previous_hash == new.previous_hash
        )

    def chain_head(self, incident_id: str, genesis: str) -> str:
        """Hash of the entry nothing links to yet, or genesis for a new chain.

        Read from storage on every call, so writers in other processes
        are always seen.
        """
        if self._memory is not None:
            entries = self._memory.select(lambda e: e.incident_id == incident_id)
            linked = {e.previous_hash for e in entries}
            heads = [e.entry_hash for e in entries if e.entry_hash not in linked]
            return heads[-1] if heads else genesis

        head = self._fetch_one(
            "SELECT * FROM crisis_logs l WHERE l.incident_id = %s "
            "AND NOT EXISTS (SELECT 1 FROM crisis_logs n "
            "WHERE n.incident_id = l.incident_id AND n.previous_hash = l.entry_hash) "
            "ORDER BY l.created_at DESC LIMIT 1",
            (incident_id,),
        )
        return head.entry_hash if head else genesis

    def append(self, entry: IncidentLogEntry) -> IncidentLogEntry:
        """Append an entry to immutable storage.

        Raises:
            RepositoryError: If storage fails
            ConflictError: If the entry id already exists, or another
                entry already follows entry.previous_hash
        """
        stored = self.insert(entry)
        logger.debug(
            "AUDIT_ENTRY_STORED",
            extra={
                "entry_id": entry.id,
                "incident_id": entry.incident_id,
                "action": entry.action,
                "backend": "postgresql" if self.uses_database else "memory",
            }
        )
        return stored

    def update_fields(self, entity_id: str, **fields: Any) -> IncidentLogEntry:
        raise RepositoryError("crisis_logs is append-only")

    def list_for_incident(
        self,
        incident_id: str,
        limit: Optional[int] = None,
    ) -> List[IncidentLogEntry]:
        """Entries for one incident, newest first.

        Args:
            incident_id: Incident the entries belong to
            limit: Maximum entries to return (None for all)
        """
        if self._memory is not None:
            rows = self._memory.select(lambda e: e.incident_id == incident_id)
            rows.reverse()
            return rows if limit is None else rows[:limit]

        query = (
            "SELECT * FROM crisis_logs WHERE incident_id = %s "
            "ORDER BY created_at DESC"
        )
        params: tuple = (incident_id,)
        if limit is not None:
            query += " LIMIT %s"
            params = (incident_id, limit)
        return self._fetch_all(query, params)
