"""Audit logger - immutable trail of every action taken on an incident.

Each incident has its own hash chain: the first entry links to
"genesis", every later entry carries the hash of its predecessor.
Writing is best-effort. A failed append is logged and swallowed so
that it never fails the incident operation that triggered it.
"""
import dataclasses
import json
import logging
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from safeharbor.shared.errors import ConflictError
from safeharbor.shared.models import IncidentLogEntry
from safeharbor.shared.utils import Clock, SystemClock
from .audit_repository import AuditRepository

logger = logging.getLogger(__name__)

GENESIS_HASH = "genesis"


class AuditAction(Enum):
    """Actions recorded against an incident."""
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    VOLUNTEER_CONNECTED = "VOLUNTEER_CONNECTED"
    FOLLOWUP_SCHEDULED = "FOLLOWUP_SCHEDULED"
    FOLLOWUP_SENT = "FOLLOWUP_SENT"
    RESOURCE_ACCESSED = "RESOURCE_ACCESSED"
    CONNECTION_CLOSED = "CONNECTION_CLOSED"


def _json_safe(details: Dict[str, Any]) -> Dict[str, Any]:
    # What is hashed must equal what the JSONB column gives back
    return json.loads(json.dumps(details, default=str))


class AuditLogger:
    """Writes hash-chained IncidentLogEntry records.

    Every append reads the chain head from storage. Storage accepts one
    successor per entry, so when another writer (the follow-up sweep in
    its own process, say) links first, the append is rebuilt on the new
    head and retried.
    """

    MAX_APPEND_ATTEMPTS = 5

    def __init__(
        self,
        repository: Optional[AuditRepository] = None,
        clock: Optional[Clock] = None,
    ):
        """Initialize audit logger.

        Args:
            repository: Append-only entry storage (in-memory by default)
            clock: Time source for entry timestamps
        """
        self.repository = repository or AuditRepository()
        self.clock = clock or SystemClock()

        logger.info("AUDIT_LOGGER_INITIALIZED")

    def log(
        self,
        incident_id: str,
        action: AuditAction,
        details: Optional[Dict[str, Any]] = None,
        performed_by: str = "SYSTEM",
    ) -> Optional[IncidentLogEntry]:
        """Append an audit entry for an incident.

        Never raises.

        Args:
            incident_id: Incident acted upon
            action: Action being audited
            details: Structured context (must not contain raw PII)
            performed_by: Actor identifier, "SYSTEM" for engine actions

        Returns:
            The stored entry, or None if storage failed

        Logs:
            - AUDIT_ENTRY_CREATED: After entry is stored
            - AUDIT_CHAIN_CONTENDED: Another writer took the head; retrying
            - AUDIT_APPEND_FAILED: If storage failed (error level)
        """
        safe_details = _json_safe(details or {})
        try:
            entry = None
            for attempt in range(1, self.MAX_APPEND_ATTEMPTS + 1):
                try:
                    entry = self.repository.append(
                        self._build_entry(incident_id, action, safe_details, performed_by)
                    )
                    break
                except ConflictError:
                    logger.warning(
                        "AUDIT_CHAIN_CONTENDED",
                        extra={"incident_id": incident_id, "attempt": attempt}
                    )
            if entry is None:
                raise ConflictError(
                    f"chain head for {incident_id} kept moving after "
                    f"{self.MAX_APPEND_ATTEMPTS} attempts"
                )
        except Exception as e:
            logger.error(
                "AUDIT_APPEND_FAILED",
                extra={
                    "incident_id": incident_id,
                    "action": action.value,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )
            return None

        logger.info(
            "AUDIT_ENTRY_CREATED",
            extra={
                "entry_id": entry.id,
                "incident_id": incident_id,
                "action": action.value,
                "entry_hash": entry.entry_hash[:16],  # Truncated for logs
            }
        )
        return entry

    def _build_entry(
        self,
        incident_id: str,
        action: AuditAction,
        details: Dict[str, Any],
        performed_by: str,
    ) -> IncidentLogEntry:
        entry = IncidentLogEntry(
            id=f"log_{uuid.uuid4().hex[:16]}",
            incident_id=incident_id,
            action=action.value,
            details=details,
            performed_by=performed_by,
            created_at=self.clock.now(),
            previous_hash=self.repository.chain_head(incident_id, GENESIS_HASH),
        )
        return dataclasses.replace(entry, entry_hash=entry.compute_hash())

    def recent(self, incident_id: str, limit: int = 10) -> List[IncidentLogEntry]:
        """Most recent entries for an incident, newest first."""
        return self.repository.list_for_incident(incident_id, limit=limit)

    def verify_chain(self, incident_id: str) -> bool:
        """Verify integrity of one incident's audit chain.

        Follows the links from genesis rather than trusting timestamps,
        so entries written within the same instant still verify.

        Returns:
            True if chain is valid, False if tampered or broken
        """
        entries = self.repository.list_for_incident(incident_id)
        if not entries:
            return True

        by_previous: Dict[str, IncidentLogEntry] = {}
        for entry in entries:
            if entry.previous_hash in by_previous:
                logger.critical(
                    "AUDIT_CHAIN_FORKED",
                    extra={"incident_id": incident_id, "entry_id": entry.id}
                )
                return False
            by_previous[entry.previous_hash] = entry

        expected_prev = GENESIS_HASH
        visited = 0
        while expected_prev in by_previous:
            entry = by_previous[expected_prev]
            computed = entry.compute_hash()
            if computed != entry.entry_hash:
                logger.critical(
                    "AUDIT_ENTRY_HASH_MISMATCH",
                    extra={
                        "incident_id": incident_id,
                        "entry_id": entry.id,
                        "computed": computed[:16],
                        "stored": entry.entry_hash[:16],
                    }
                )
                return False
            expected_prev = entry.entry_hash
            visited += 1

        if visited != len(entries):
            logger.critical(
                "AUDIT_CHAIN_VERIFICATION_FAILED",
                extra={
                    "incident_id": incident_id,
                    "linked_entries": visited,
                    "stored_entries": len(entries),
                }
            )
            return False

        logger.info(
            "AUDIT_CHAIN_VERIFIED",
            extra={"incident_id": incident_id, "entry_count": visited}
        )
        return True
