"""Incident orchestration - the crisis lifecycle state machine.

Opens incidents, decides urgency, matches resources and dispatches a
responder in parallel, schedules the follow-up and drives status
changes through to resolution.

State machine:
    ACTIVE -> IN_PROGRESS -> RESOLVED
    ACTIVE -> FOLLOWUP_PENDING -> IN_PROGRESS | RESOLVED

Audit entries, moderator alerts and usage counters are best-effort:
their failures are logged and never fail the incident operation.
"""
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, FrozenSet, List, Optional

from safeharbor.shared.errors import (
    ConflictError,
    UnauthorizedError,
    ValidationError,
)
from safeharbor.shared.models import (
    STATUS_TRANSITIONS,
    Connection,
    ConnectionChannel,
    ConnectionOutcome,
    CrisisType,
    Incident,
    IncidentLogEntry,
    IncidentStatus,
    Resource,
    Responder,
    UrgencyLevel,
)
from safeharbor.shared.utils import Clock, SystemClock, hash_pii
from safeharbor.services.audit_service import AuditAction, AuditLogger
from safeharbor.services.detection_service import CrisisDetector
from safeharbor.services.resource_service import ResourceMatcher
from safeharbor.services.responder_service import ConnectionRepository, ResponderDispatcher
from .config import (
    CONFIDENT_DETECTION_URGENCY,
    DEFAULT_NEXT_STEPS,
    IMMEDIATE_STEPS,
    NEXT_STEPS,
    URGENCY_BY_TYPE,
    EngineConfig,
)
from .notifier import IncidentNotifier
from .repository import IncidentRepository

logger = logging.getLogger(__name__)

# Fields a caller may change through update()
UPDATABLE_FIELDS: FrozenSet[str] = frozenset({
    "status",
    "resolution_notes",
    "description",
    "location",
    "contact_number",
    "preferred_language",
})

NOTIFY_URGENCIES = (UrgencyLevel.IMMEDIATE, UrgencyLevel.HIGH)


@dataclass(frozen=True)
class IncidentIntake:
    """Request to open an incident."""
    subject_id: str
    crisis_type: CrisisType
    urgency_level: Optional[UrgencyLevel] = None
    description: Optional[str] = None
    location: Optional[str] = None
    contact_number: Optional[str] = None
    preferred_language: str = "en"
    trigger_keywords: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class Requester:
    """Caller identity supplied by the auth layer."""
    subject_id: str
    role: str = "USER"


@dataclass
class IncidentResponse:
    """Everything returned to the subject when an incident opens."""
    incident: Incident
    resources: List[Resource] = field(default_factory=list)
    responder: Optional[Responder] = None
    next_steps: List[str] = field(default_factory=list)
    emergency_contacts: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "incident": self.incident.to_dict(),
            "resources": [r.to_dict() for r in self.resources],
            "responder": self.responder.to_dict() if self.responder else None,
            "next_steps": list(self.next_steps),
            "emergency_contacts": list(self.emergency_contacts),
        }


@dataclass
class IncidentDetail:
    """An incident with its recent audit trail and connections."""
    incident: Incident
    logs: List[IncidentLogEntry] = field(default_factory=list)
    connections: List[Connection] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = self.incident.to_dict()
        data["logs"] = [entry.to_dict() for entry in self.logs]
        data["connections"] = [c.to_dict() for c in self.connections]
        return data


def _enum_value(value: Any, enum_cls, name: str):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).upper())
    except ValueError as e:
        raise ValidationError(f"Invalid {name}: {value}") from e


def _is_rating(value: Any) -> bool:
    # bool is an int subclass; JSON true must not count as a 1
    return isinstance(value, int) and not isinstance(value, bool) and 1 <= value <= 5


class IncidentOrchestrator:
    """Runs the incident lifecycle.

    Collaborators are injected; every default is an in-memory backend
    so the orchestrator is usable without infrastructure.
    """

    def __init__(
        self,
        incidents: Optional[IncidentRepository] = None,
        connections: Optional[ConnectionRepository] = None,
        detector: Optional[CrisisDetector] = None,
        matcher: Optional[ResourceMatcher] = None,
        dispatcher: Optional[ResponderDispatcher] = None,
        audit: Optional[AuditLogger] = None,
        notifier: Optional[IncidentNotifier] = None,
        clock: Optional[Clock] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.config = config or EngineConfig()
        self.clock = clock or SystemClock()
        self.incidents = incidents or IncidentRepository()
        self.connections = connections or ConnectionRepository()
        self.detector = detector or CrisisDetector()
        self.matcher = matcher or ResourceMatcher(default_country=self.config.default_country)
        self.dispatcher = dispatcher or ResponderDispatcher(
            connections=self.connections, clock=self.clock
        )
        self.audit = audit or AuditLogger(clock=self.clock)
        self.notifier = notifier or IncidentNotifier(
            stream_name=self.config.notify_stream,
            enabled=self.config.notify_enabled,
            region=self.config.aws_region,
        )

        logger.info("INCIDENT_ORCHESTRATOR_INITIALIZED")

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(self, intake: IncidentIntake) -> IncidentResponse:
        """Open an incident and set up the response around it.

        Steps: decide urgency, persist ACTIVE, match resources and (unless
        IMMEDIATE) dispatch a responder in parallel, connect the
        responder, schedule the follow-up, alert moderators for
        IMMEDIATE/HIGH.

        Args:
            intake: The incident request

        Returns:
            IncidentResponse with resources, responder, next steps and
            the emergency directory

        Logs:
            - INCIDENT_CREATED: After persisting (critical when IMMEDIATE)
        """
        urgency = intake.urgency_level or self.assess_urgency(
            intake.crisis_type, intake.description
        )
        now = self.clock.now()
        incident = self.incidents.insert(Incident(
            id=f"inc_{uuid.uuid4().hex[:12]}",
            subject_id=intake.subject_id,
            crisis_type=intake.crisis_type,
            urgency_level=urgency,
            description=intake.description,
            location=intake.location,
            contact_number=intake.contact_number,
            preferred_language=intake.preferred_language or "en",
            trigger_keywords=frozenset(intake.trigger_keywords),
            created_at=now,
            updated_at=now,
        ))

        log = logger.critical if urgency == UrgencyLevel.IMMEDIATE else logger.info
        log(
            "INCIDENT_CREATED",
            extra={
                "incident_id": incident.id,
                "subject_id_hash": hash_pii(incident.subject_id),
                "crisis_type": incident.crisis_type.value,
                "urgency_level": urgency.value,
            }
        )
        self.audit.log(
            incident.id,
            AuditAction.CREATED,
            {"crisis_type": incident.crisis_type.value, "urgency_level": urgency.value},
            performed_by=incident.subject_id,
        )

        resources, responder = self._match_and_dispatch(incident)

        if responder is not None:
            incident = self._connect_responder(incident, responder)

        incident = self._schedule_followup(incident)

        if urgency in NOTIFY_URGENCIES:
            self._notify_moderators(incident)

        return IncidentResponse(
            incident=incident,
            resources=resources,
            responder=responder,
            next_steps=self.next_steps(urgency, incident.crisis_type),
            emergency_contacts=self.matcher.format_emergency_contacts(),
        )

    def assess_urgency(self, crisis_type: CrisisType, description: Optional[str]) -> UrgencyLevel:
        """Urgency for an intake that did not supply one.

        A confident detection on the description can raise urgency for
        suicide, self-harm and medical crises; otherwise the per-type
        default applies.
        """
        if description:
            result = self.detector.detect(description)
            if (
                result.detected
                and result.confidence > self.config.urgency_confidence_threshold
                and result.crisis_type in CONFIDENT_DETECTION_URGENCY
            ):
                return CONFIDENT_DETECTION_URGENCY[result.crisis_type]
        return URGENCY_BY_TYPE.get(crisis_type, UrgencyLevel.MODERATE)

    @staticmethod
    def next_steps(urgency: UrgencyLevel, crisis_type: CrisisType) -> List[str]:
        steps: List[str] = []
        if urgency == UrgencyLevel.IMMEDIATE:
            steps.extend(IMMEDIATE_STEPS)
        steps.extend(NEXT_STEPS.get(crisis_type, DEFAULT_NEXT_STEPS))
        return steps

    def _match_and_dispatch(self, incident: Incident):
        """Resource lookup and responder dispatch, run concurrently.

        IMMEDIATE incidents skip dispatch. A reservation made while the
        resource lookup failed is released before the error propagates.
        """
        limit = self.config.resource_limit_for(incident.urgency_level)
        dispatch = incident.urgency_level != UrgencyLevel.IMMEDIATE

        with ThreadPoolExecutor(max_workers=2) as pool:
            resources_future = pool.submit(
                self.matcher.for_crisis,
                incident.crisis_type,
                incident.location,
                incident.preferred_language,
                limit,
            )
            responder_future = None
            if dispatch:
                responder_future = pool.submit(
                    self.dispatcher.find_available,
                    incident.crisis_type,
                    incident.location,
                    incident.preferred_language,
                )

        responder = responder_future.result() if responder_future else None
        try:
            resources = resources_future.result()
        except Exception:
            if responder is not None:
                self._release_quietly(responder.id, incident.id)
            raise
        return resources, responder

    def _connect_responder(self, incident: Incident, responder: Responder) -> Incident:
        """Open a CHAT connection and move the incident to IN_PROGRESS."""
        now = self.clock.now()
        connected = self.incidents.update_if_status(
            incident.id,
            incident.status,
            status=IncidentStatus.IN_PROGRESS,
            responder_id=responder.id,
            updated_at=now,
        )
        if connected is None:
            # Status moved on under us; give the slot back
            self._release_quietly(responder.id, incident.id)
            return self.incidents.get(incident.id)

        connection = self.connections.insert(Connection(
            id=f"conn_{uuid.uuid4().hex[:12]}",
            incident_id=incident.id,
            responder_id=responder.id,
            channel=ConnectionChannel.CHAT,
            started_at=now,
        ))
        self.audit.log(
            incident.id,
            AuditAction.VOLUNTEER_CONNECTED,
            {"responder_id": responder.id, "connection_id": connection.id},
        )
        logger.info(
            "RESPONDER_CONNECTED",
            extra={
                "incident_id": incident.id,
                "responder_id": responder.id,
                "connection_id": connection.id,
            }
        )
        return connected

    def _schedule_followup(self, incident: Incident) -> Incident:
        hours = self.config.followup_hours[incident.urgency_level]
        now = self.clock.now()
        deadline = now + timedelta(hours=hours)
        scheduled = self.incidents.schedule_followup(incident.id, deadline, now)
        self.audit.log(
            incident.id,
            AuditAction.FOLLOWUP_SCHEDULED,
            {"followup_deadline": deadline.isoformat(), "hours": hours},
        )
        logger.info(
            "FOLLOWUP_SCHEDULED",
            extra={
                "incident_id": incident.id,
                "hours": hours,
                "status": scheduled.status.value,
            }
        )
        return scheduled

    def _notify_moderators(self, incident: Incident) -> None:
        try:
            self.notifier.notify_moderators(incident)
        except Exception as e:
            logger.error(
                "MODERATOR_NOTIFICATION_FAILED",
                extra={
                    "incident_id": incident.id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )

    def _release_quietly(self, responder_id: str, incident_id: str) -> None:
        try:
            self.dispatcher.release(responder_id)
        except Exception as e:
            logger.error(
                "RESPONDER_RELEASE_FAILED",
                extra={
                    "incident_id": incident_id,
                    "responder_id": responder_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def _can_view(self, incident: Incident, requester: Requester) -> bool:
        return (
            requester.subject_id == incident.subject_id
            or (requester.role or "").upper() in self.config.elevated_roles
        )

    def _deny(self, event: str, requester: Requester, **ids: str) -> None:
        logger.warning(
            event,
            extra={
                **ids,
                "requester_hash": hash_pii(requester.subject_id),
                "role": requester.role,
            }
        )

    def get_incident(self, incident_id: str, requester: Requester) -> IncidentDetail:
        """Incident with its 10 latest log entries and its connections.

        Raises:
            NotFoundError: If the incident does not exist
            UnauthorizedError: Requester is neither the subject nor elevated
        """
        incident = self.incidents.get(incident_id)
        if not self._can_view(incident, requester):
            self._deny("INCIDENT_ACCESS_DENIED", requester, incident_id=incident_id)
            raise UnauthorizedError("Not authorized to view this incident")

        return IncidentDetail(
            incident=incident,
            logs=self.audit.recent(incident_id, limit=10),
            connections=self.connections.list_for_incident(incident_id),
        )

    def authorize_connection(self, connection_id: str, requester: Requester) -> Connection:
        """Load a connection the requester may change.

        Allowed: the incident's subject, an elevated role, or the
        responder assigned to the connection.

        Raises:
            NotFoundError: If the connection or its incident does not exist
            UnauthorizedError: Anyone else
        """
        connection = self.connections.get(connection_id)
        incident = self.incidents.get(connection.incident_id)
        if self._can_view(incident, requester):
            return connection
        if connection.responder_id:
            responder = self.dispatcher.repository.find_by_subject(requester.subject_id)
            if responder is not None and responder.id == connection.responder_id:
                return connection

        self._deny(
            "CONNECTION_ACCESS_DENIED",
            requester,
            connection_id=connection_id,
            incident_id=connection.incident_id,
        )
        raise UnauthorizedError("Not authorized to change this connection")

    def list_subject_incidents(self, subject_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """A subject's incidents, newest first, with connection summaries."""
        result = []
        for incident in self.incidents.find_by_subject(subject_id, limit=limit):
            data = incident.to_dict()
            data["connections"] = [
                {
                    "id": c.id,
                    "channel": c.channel.value,
                    "outcome": c.outcome.value if c.outcome else None,
                    "rating": c.rating,
                }
                for c in self.connections.list_for_incident(incident.id)
            ]
            result.append(data)
        return result

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def update(self, incident_id: str, actor_id: str, **changes: Any) -> Incident:
        """Apply status/resolution changes to an incident.

        Resolving stamps resolved_at/resolved_by and releases the
        connected responder's slot. Urgency cannot be changed.

        Raises:
            NotFoundError: If the incident does not exist
            ValidationError: Unknown field, urgency change or disallowed transition
            ConflictError: The incident changed concurrently
        """
        if "urgency_level" in changes:
            raise ValidationError("urgency_level is fixed at creation")
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown incident fields: {sorted(unknown)}")

        current = self.incidents.get(incident_id)
        fields = dict(changes)
        new_status = _enum_value(fields.get("status"), IncidentStatus, "status")
        if new_status is not None:
            fields["status"] = new_status
            if new_status != current.status and new_status not in STATUS_TRANSITIONS[current.status]:
                raise ValidationError(
                    f"Cannot move incident from {current.status.value} to {new_status.value}"
                )

        now = self.clock.now()
        resolving = new_status == IncidentStatus.RESOLVED and not current.is_resolved
        if resolving:
            fields["resolved_at"] = now
            fields["resolved_by"] = actor_id
        fields["updated_at"] = now

        updated = self.incidents.update_if_status(incident_id, current.status, **fields)
        if updated is None:
            raise ConflictError("Incident changed concurrently; retry")

        self.audit.log(
            incident_id,
            AuditAction.UPDATED,
            {"changes": dict(changes)},
            performed_by=actor_id,
        )
        logger.info(
            "INCIDENT_UPDATED",
            extra={
                "incident_id": incident_id,
                "fields": sorted(changes),
                "status": updated.status.value,
            }
        )

        if resolving and current.responder_id:
            self._release_quietly(current.responder_id, incident_id)

        return updated

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def connect_resource(
        self,
        incident_id: str,
        channel: Any = ConnectionChannel.CHAT,
        resource_id: Optional[str] = None,
        responder_id: Optional[str] = None,
        performed_by: str = "SYSTEM",
    ) -> Connection:
        """Record that the subject engaged a resource or responder.

        Raises:
            NotFoundError: If the incident does not exist
            ValidationError: Unknown channel
        """
        channel = _enum_value(channel, ConnectionChannel, "channel") or ConnectionChannel.CHAT
        incident = self.incidents.get(incident_id)
        connection = self.connections.insert(Connection(
            id=f"conn_{uuid.uuid4().hex[:12]}",
            incident_id=incident.id,
            channel=channel,
            resource_id=resource_id,
            responder_id=responder_id,
            started_at=self.clock.now(),
        ))
        self.audit.log(
            incident.id,
            AuditAction.RESOURCE_ACCESSED,
            {
                "connection_id": connection.id,
                "resource_id": resource_id,
                "responder_id": responder_id,
                "channel": channel.value,
            },
            performed_by=performed_by,
        )
        return connection

    def close_connection(
        self,
        connection_id: str,
        outcome: Any = None,
        notes: Optional[str] = None,
        rating: Optional[int] = None,
        feedback: Optional[str] = None,
        duration_seconds: Optional[int] = None,
        performed_by: str = "SYSTEM",
    ) -> Connection:
        """Conclude a connection; a rating updates the responder's average.

        ended_at is set exactly when an outcome is given; duration is
        computed from started_at when not supplied. A concluded connection
        accepts no further changes, and a rating is counted only once.

        Raises:
            NotFoundError: If the connection does not exist
            ValidationError: Rating outside 1-5 or unknown outcome
            ConflictError: Connection already concluded or already rated
        """
        outcome = _enum_value(outcome, ConnectionOutcome, "outcome")
        if rating is not None and not _is_rating(rating):
            raise ValidationError("rating must be an integer from 1 to 5")

        connection = self.connections.get(connection_id)
        fields: Dict[str, Any] = {}
        if outcome is not None:
            now = self.clock.now()
            fields["outcome"] = outcome
            fields["ended_at"] = now
            fields["duration_seconds"] = (
                duration_seconds if duration_seconds is not None
                else int((now - connection.started_at).total_seconds())
            )
        elif duration_seconds is not None:
            fields["duration_seconds"] = duration_seconds
        if notes is not None:
            fields["notes"] = notes
        if rating is not None:
            fields["rating"] = rating
        if feedback is not None:
            fields["feedback"] = feedback

        if not fields:
            return connection

        updated = self.connections.update_open(connection_id, **fields)
        if updated is None:
            logger.warning(
                "CONNECTION_UPDATE_REJECTED",
                extra={"connection_id": connection_id, "incident_id": connection.incident_id}
            )
            raise ConflictError(f"connection {connection_id} is already concluded")

        # Only the update that recorded the rating gets here with one
        if rating is not None and connection.responder_id:
            self.dispatcher.apply_rating(connection.responder_id, rating)

        self.audit.log(
            connection.incident_id,
            AuditAction.CONNECTION_CLOSED,
            {
                "connection_id": connection_id,
                "outcome": outcome.value if outcome else None,
                "rating": rating,
            },
            performed_by=performed_by,
        )
        return updated
