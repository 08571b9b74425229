"""Crisis domain models.

Enums for crisis classification and the persisted records of the
incident lifecycle. Records are frozen; stores hand out copies and
updates go through dataclasses.replace().
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple
import hashlib
import json


class CrisisType(Enum):
    """Crisis categories recognised by detection and dispatch."""
    SUICIDE_RISK = "SUICIDE_RISK"
    SELF_HARM = "SELF_HARM"
    PANIC_ATTACK = "PANIC_ATTACK"
    MELTDOWN = "MELTDOWN"
    MEDICAL_EMERGENCY = "MEDICAL_EMERGENCY"
    FAMILY_CONFLICT = "FAMILY_CONFLICT"
    BURNOUT = "BURNOUT"


class UrgencyLevel(Enum):
    """Response urgency. Fixed at incident creation."""
    IMMEDIATE = "IMMEDIATE"
    HIGH = "HIGH"
    MODERATE = "MODERATE"
    LOW = "LOW"


class IncidentStatus(Enum):
    """Incident lifecycle states.

    ACTIVE -> IN_PROGRESS -> RESOLVED, with ACTIVE -> FOLLOWUP_PENDING
    as a side branch that can still move to IN_PROGRESS or RESOLVED.
    """
    ACTIVE = "ACTIVE"
    IN_PROGRESS = "IN_PROGRESS"
    FOLLOWUP_PENDING = "FOLLOWUP_PENDING"
    RESOLVED = "RESOLVED"


# Allowed status moves. RESOLVED is terminal.
STATUS_TRANSITIONS: Dict[IncidentStatus, FrozenSet[IncidentStatus]] = {
    IncidentStatus.ACTIVE: frozenset({
        IncidentStatus.IN_PROGRESS,
        IncidentStatus.FOLLOWUP_PENDING,
        IncidentStatus.RESOLVED,
    }),
    IncidentStatus.FOLLOWUP_PENDING: frozenset({
        IncidentStatus.IN_PROGRESS,
        IncidentStatus.RESOLVED,
    }),
    IncidentStatus.IN_PROGRESS: frozenset({IncidentStatus.RESOLVED}),
    IncidentStatus.RESOLVED: frozenset(),
}


class ConnectionChannel(Enum):
    """Medium of one contact attempt."""
    CALL = "CALL"
    CHAT = "CHAT"
    MESSAGING_APP = "MESSAGING_APP"


class ConnectionOutcome(Enum):
    """How a contact concluded."""
    RESOLVED = "RESOLVED"
    ESCALATED = "ESCALATED"
    DISCONNECTED = "DISCONNECTED"


class ResourceChannel(Enum):
    """Kind of support channel a Resource offers."""
    HELPLINE = "HELPLINE"
    CHAT = "CHAT"
    IN_PERSON = "IN_PERSON"
    ONLINE = "ONLINE"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Incident:
    """One tracked crisis episode opened for a subject."""
    id: str
    subject_id: str
    crisis_type: CrisisType
    urgency_level: UrgencyLevel
    status: IncidentStatus = IncidentStatus.ACTIVE
    description: Optional[str] = None
    location: Optional[str] = None          # "city, region"
    contact_number: Optional[str] = None
    preferred_language: str = "en"
    trigger_keywords: FrozenSet[str] = frozenset()
    responder_id: Optional[str] = None
    followup_deadline: Optional[datetime] = None
    followup_completed: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_resolved(self) -> bool:
        return self.status == IncidentStatus.RESOLVED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "crisis_type": self.crisis_type.value,
            "urgency_level": self.urgency_level.value,
            "status": self.status.value,
            "description": self.description,
            "location": self.location,
            "contact_number": self.contact_number,
            "preferred_language": self.preferred_language,
            "trigger_keywords": sorted(self.trigger_keywords),
            "responder_id": self.responder_id,
            "followup_deadline": _iso(self.followup_deadline),
            "followup_completed": self.followup_completed,
            "resolved_at": _iso(self.resolved_at),
            "resolved_by": self.resolved_by,
            "resolution_notes": self.resolution_notes,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class IncidentLogEntry:
    """Immutable audit record of one action taken against an Incident.

    Entries are hash-chained: each carries the hash of its predecessor.
    """
    id: str
    incident_id: str
    action: str
    details: Dict[str, Any] = field(default_factory=dict)
    performed_by: str = "SYSTEM"
    created_at: datetime = field(default_factory=datetime.utcnow)
    previous_hash: str = ""
    entry_hash: str = ""

    def compute_hash(self) -> str:
        """SHA-256 over every field except entry_hash."""
        content = {
            "id": self.id,
            "incident_id": self.incident_id,
            "action": self.action,
            "details": self.details,
            "performed_by": self.performed_by,
            "created_at": self.created_at.isoformat(),
            "previous_hash": self.previous_hash,
        }
        content_str = json.dumps(content, sort_keys=True, default=str)
        return hashlib.sha256(content_str.encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "incident_id": self.incident_id,
            "action": self.action,
            "details": self.details,
            "performed_by": self.performed_by,
            "created_at": _iso(self.created_at),
        }


@dataclass(frozen=True)
class Connection:
    """A contact attempt between an incident and a responder or resource."""
    id: str
    incident_id: str
    channel: ConnectionChannel = ConnectionChannel.CHAT
    responder_id: Optional[str] = None
    resource_id: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.utcnow)
    ended_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    outcome: Optional[ConnectionOutcome] = None
    notes: Optional[str] = None
    rating: Optional[int] = None
    feedback: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "incident_id": self.incident_id,
            "channel": self.channel.value,
            "responder_id": self.responder_id,
            "resource_id": self.resource_id,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "duration_seconds": self.duration_seconds,
            "outcome": self.outcome.value if self.outcome else None,
            "notes": self.notes,
            "rating": self.rating,
            "feedback": self.feedback,
        }


@dataclass(frozen=True)
class Responder:
    """A vetted human who can be dispatched to incidents.

    Registered inactive and unavailable; becomes dispatchable only after
    admin approval, completed training and opting in.
    """
    id: str
    subject_id: str
    training_completed: bool = False
    is_active: bool = False
    is_available: bool = False
    specializations: FrozenSet[CrisisType] = frozenset()
    languages: FrozenSet[str] = frozenset()
    region: Optional[str] = None
    city: Optional[str] = None
    max_concurrent_cases: int = 3
    current_case_count: int = 0
    total_cases_handled: int = 0
    average_rating: Optional[float] = None
    certifications: Tuple[str, ...] = ()
    available_from: Optional[datetime] = None
    available_till: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    def can_accept(self, crisis_type: CrisisType) -> bool:
        """Dispatch eligibility, including spare capacity."""
        return (
            self.is_active
            and self.is_available
            and self.training_completed
            and crisis_type in self.specializations
            and self.current_case_count < self.max_concurrent_cases
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "training_completed": self.training_completed,
            "is_active": self.is_active,
            "is_available": self.is_available,
            "specializations": sorted(t.value for t in self.specializations),
            "languages": sorted(self.languages),
            "region": self.region,
            "city": self.city,
            "max_concurrent_cases": self.max_concurrent_cases,
            "current_case_count": self.current_case_count,
            "total_cases_handled": self.total_cases_handled,
            "average_rating": self.average_rating,
            "certifications": list(self.certifications),
            "available_from": _iso(self.available_from),
            "available_till": _iso(self.available_till),
            "approved_at": _iso(self.approved_at),
            "approved_by": self.approved_by,
        }


@dataclass(frozen=True)
class Resource:
    """A support channel (helpline, chat line, clinic) independent of any person.

    A resource with no region is national and serves as the fallback for
    every region in its country.
    """
    id: str
    name: str
    channel_type: ResourceChannel = ResourceChannel.HELPLINE
    crisis_categories: FrozenSet[str] = frozenset()
    phone: Optional[str] = None
    whatsapp: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    available_24x7: bool = False
    operating_hours: Optional[str] = None
    languages: FrozenSet[str] = frozenset({"en"})
    country: str = "IN"
    region: Optional[str] = None
    city: Optional[str] = None
    priority: int = 10
    is_verified: bool = False
    is_active: bool = True
    usage_count: int = 0
    average_rating: Optional[float] = None
    description: Optional[str] = None
    verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_national(self) -> bool:
        return self.region is None

    def serves(self, crisis_type: CrisisType) -> bool:
        return crisis_type.value in self.crisis_categories

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "channel_type": self.channel_type.value,
            "crisis_categories": sorted(self.crisis_categories),
            "phone": self.phone,
            "whatsapp": self.whatsapp,
            "email": self.email,
            "website": self.website,
            "available_24x7": self.available_24x7,
            "operating_hours": self.operating_hours,
            "languages": sorted(self.languages),
            "country": self.country,
            "region": self.region,
            "city": self.city,
            "priority": self.priority,
            "is_verified": self.is_verified,
            "is_active": self.is_active,
            "usage_count": self.usage_count,
            "average_rating": self.average_rating,
            "description": self.description,
        }


def parse_location(location: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Split a "city, region" string into (city, region).

    Either part may be missing; blanks become None.
    """
    if not location:
        return None, None
    parts = [p.strip() for p in location.split(",")]
    city = parts[0] or None
    region = parts[1] if len(parts) > 1 and parts[1] else None
    return city, region


def contains_ci(haystack: Optional[str], needle: Optional[str]) -> bool:
    """Case-insensitive containment; False when the field is unset."""
    if not haystack or not needle:
        return False
    return needle.lower() in haystack.lower()
