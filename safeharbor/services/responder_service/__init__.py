"""Responder Service: dispatch of human responders to incidents.

Components:
- dispatcher.py: ResponderDispatcher (reserve/release, registration, availability)
- repository.py: ResponderRepository (atomic caseload counters), ConnectionRepository
"""

from .dispatcher import (
    REGISTRATION_ROLES,
    DispatchConfig,
    ResponderDispatcher,
    ResponderProfile,
)
from .repository import (
    ConnectionRepository,
    ResponderFilters,
    ResponderRepository,
)

__all__ = [
    "REGISTRATION_ROLES",
    "DispatchConfig",
    "ResponderDispatcher",
    "ResponderProfile",
    "ConnectionRepository",
    "ResponderFilters",
    "ResponderRepository",
]
