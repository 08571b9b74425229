"""Crisis Engine: incident lifecycle orchestration.

Opening an incident decides urgency, matches support resources and
dispatches a trained responder in parallel, schedules a follow-up and
alerts moderators for IMMEDIATE/HIGH incidents. Follow-ups are swept on
a recurring trigger and notified at most once.

Endpoints:
- POST /crisis/incident - Open an incident
- GET|PATCH /crisis/incident/<id> - Read or update an incident
- GET /crisis/incidents/my - Caller's incidents
- POST /crisis/connection, PATCH /crisis/connection/<id> - Record engagement
- POST /crisis/follow-ups/check - Run the follow-up sweep
- GET /crisis/resources[/emergency|/national] - Resource lookup
- /crisis/responders/... - Responder onboarding and availability
"""

from .bootstrap import CrisisServices, build_services
from .config import EngineConfig
from .followup import FollowUpScheduler
from .notifier import IncidentNotifier, NotificationEvent
from .orchestrator import (
    IncidentDetail,
    IncidentIntake,
    IncidentOrchestrator,
    IncidentResponse,
    Requester,
)
from .repository import IncidentRepository

__all__ = [
    "CrisisServices",
    "build_services",
    "EngineConfig",
    "FollowUpScheduler",
    "IncidentNotifier",
    "NotificationEvent",
    "IncidentDetail",
    "IncidentIntake",
    "IncidentOrchestrator",
    "IncidentResponse",
    "Requester",
    "IncidentRepository",
]
