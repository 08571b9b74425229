"""Incident store.

Status changes are conditional on the status the caller last read, so
two writers racing on one incident cannot silently overwrite each
other. The follow-up flag flips at most once.
"""
import dataclasses
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg2 import Error as PsycopgError

from safeharbor.shared.database import BaseRepository, ConnectionManager, to_db_value
from safeharbor.shared.models import (
    CrisisType,
    Incident,
    IncidentStatus,
    UrgencyLevel,
)

logger = logging.getLogger(__name__)

SWEEPABLE_STATUSES = (IncidentStatus.ACTIVE, IncidentStatus.FOLLOWUP_PENDING)


class IncidentRepository(BaseRepository[Incident]):
    """Repository for crisis incidents."""

    def __init__(self, connection_manager: Optional[ConnectionManager] = None):
        super().__init__("crisis_incidents", connection_manager)

    def _row_to_entity(self, row: Dict[str, Any]) -> Incident:
        return Incident(
            id=row["id"],
            subject_id=row["subject_id"],
            crisis_type=CrisisType(row["crisis_type"]),
            urgency_level=UrgencyLevel(row["urgency_level"]),
            status=IncidentStatus(row["status"]),
            description=row.get("description"),
            location=row.get("location"),
            contact_number=row.get("contact_number"),
            preferred_language=row.get("preferred_language") or "en",
            trigger_keywords=frozenset(row.get("trigger_keywords") or ()),
            responder_id=row.get("responder_id"),
            followup_deadline=row.get("followup_deadline"),
            followup_completed=bool(row.get("followup_completed")),
            resolved_at=row.get("resolved_at"),
            resolved_by=row.get("resolved_by"),
            resolution_notes=row.get("resolution_notes"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _entity_to_params(self, entity: Incident) -> Dict[str, Any]:
        return {
            "id": entity.id,
            "subject_id": entity.subject_id,
            "crisis_type": entity.crisis_type,
            "urgency_level": entity.urgency_level,
            "status": entity.status,
            "description": entity.description,
            "location": entity.location,
            "contact_number": entity.contact_number,
            "preferred_language": entity.preferred_language,
            "trigger_keywords": entity.trigger_keywords,
            "responder_id": entity.responder_id,
            "followup_deadline": entity.followup_deadline,
            "followup_completed": entity.followup_completed,
            "resolved_at": entity.resolved_at,
            "resolved_by": entity.resolved_by,
            "resolution_notes": entity.resolution_notes,
            "created_at": entity.created_at,
            "updated_at": entity.updated_at,
        }

    def _update_returning(self, operation: str, query: str, params: tuple) -> Optional[Incident]:
        try:
            with self.connection_manager.transaction() as cur:
                cur.execute(query, params)
                row = cur.fetchone()
        except PsycopgError as e:
            self._raise_storage_error(operation, e)
        return self._row_to_entity(row) if row else None

    def find_by_subject(self, subject_id: str, limit: int = 10) -> List[Incident]:
        """A subject's incidents, newest first."""
        if self._memory is not None:
            rows = sorted(
                reversed(self._memory.select(lambda i: i.subject_id == subject_id)),
                key=lambda i: i.created_at,
                reverse=True,
            )
            return rows[:limit]
        return self._fetch_all(
            "SELECT * FROM crisis_incidents WHERE subject_id = %s "
            "ORDER BY created_at DESC LIMIT %s",
            (subject_id, limit),
        )

    def update_if_status(
        self,
        incident_id: str,
        expected: IncidentStatus,
        **fields: Any,
    ) -> Optional[Incident]:
        """Apply fields only while the incident is still in `expected`.

        Returns:
            The updated incident, or None if its status moved on

        Raises:
            NotFoundError: If the incident does not exist (memory backend)
        """
        if self._memory is not None:
            return self._memory.update(
                incident_id,
                lambda i: dataclasses.replace(i, **fields) if i.status == expected else None,
            )

        assignments = ", ".join(f"{col} = %s" for col in fields)
        values = tuple(to_db_value(v) for v in fields.values())
        return self._update_returning(
            "update_if_status",
            f"UPDATE crisis_incidents SET {assignments} "
            "WHERE id = %s AND status = %s RETURNING *",
            values + (incident_id, expected.value),
        )

    def schedule_followup(self, incident_id: str, deadline: datetime, now: datetime) -> Incident:
        """Set the deadline; ACTIVE becomes FOLLOWUP_PENDING, later states are kept.

        Raises:
            NotFoundError: If the incident does not exist
        """
        if self._memory is not None:
            return self._memory.update(
                incident_id,
                lambda i: dataclasses.replace(
                    i,
                    followup_deadline=deadline,
                    status=(
                        IncidentStatus.FOLLOWUP_PENDING
                        if i.status == IncidentStatus.ACTIVE else i.status
                    ),
                    updated_at=now,
                ),
            )

        updated = self._update_returning(
            "schedule_followup",
            "UPDATE crisis_incidents SET followup_deadline = %s, "
            "status = CASE WHEN status = 'ACTIVE' THEN 'FOLLOWUP_PENDING' ELSE status END, "
            "updated_at = %s WHERE id = %s RETURNING *",
            (deadline, now, incident_id),
        )
        if updated is None:
            return self.get(incident_id)
        return updated

    def find_due_followups(self, now: datetime, limit: int = 100) -> List[Incident]:
        """Open incidents whose follow-up deadline has passed, oldest deadline first."""
        if self._memory is not None:
            rows = self._memory.select(
                lambda i: i.status in SWEEPABLE_STATUSES
                and i.followup_deadline is not None
                and i.followup_deadline <= now
                and not i.followup_completed
            )
            return sorted(rows, key=lambda i: i.followup_deadline)[:limit]
        return self._fetch_all(
            "SELECT * FROM crisis_incidents "
            "WHERE status IN ('ACTIVE', 'FOLLOWUP_PENDING') "
            "AND followup_deadline <= %s AND NOT followup_completed "
            "ORDER BY followup_deadline ASC LIMIT %s",
            (now, limit),
        )

    def mark_followup_completed(self, incident_id: str, now: datetime) -> Optional[Incident]:
        """Claim a due follow-up.

        Returns:
            The updated incident, or None if it was already completed or
            is not yet due
        """
        def mutate(incident: Incident) -> Optional[Incident]:
            if incident.followup_completed:
                return None
            if incident.followup_deadline is None or incident.followup_deadline > now:
                return None
            return dataclasses.replace(incident, followup_completed=True, updated_at=now)

        if self._memory is not None:
            return self._memory.update(incident_id, mutate)

        return self._update_returning(
            "mark_followup_completed",
            "UPDATE crisis_incidents SET followup_completed = TRUE, updated_at = %s "
            "WHERE id = %s AND NOT followup_completed AND followup_deadline <= %s "
            "RETURNING *",
            (now, incident_id, now),
        )
