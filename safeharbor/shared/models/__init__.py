"""Shared domain models for SafeHarbor."""
from .crisis import (
    CrisisType,
    UrgencyLevel,
    IncidentStatus,
    STATUS_TRANSITIONS,
    ConnectionChannel,
    ConnectionOutcome,
    ResourceChannel,
    Incident,
    IncidentLogEntry,
    Connection,
    Responder,
    Resource,
    parse_location,
    contains_ci,
)

__all__ = [
    "CrisisType",
    "UrgencyLevel",
    "IncidentStatus",
    "STATUS_TRANSITIONS",
    "ConnectionChannel",
    "ConnectionOutcome",
    "ResourceChannel",
    "Incident",
    "IncidentLogEntry",
    "Connection",
    "Responder",
    "Resource",
    "parse_location",
    "contains_ci",
]
