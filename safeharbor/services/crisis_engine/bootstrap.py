"""Service wiring shared by the HTTP and command-line entry points."""
import logging
import os
from dataclasses import dataclass
from typing import Optional

from safeharbor.shared.database import ConnectionManager, get_connection_manager
from safeharbor.shared.utils import Clock, SystemClock
from safeharbor.services.audit_service import AuditLogger, AuditRepository
from safeharbor.services.detection_service import (
    CrisisDetector,
    DetectionConfig,
    PatternAnalyzer,
)
from safeharbor.services.resource_service import (
    ResourceDirectory,
    ResourceMatcher,
    ResourceRepository,
)
from safeharbor.services.responder_service import (
    ConnectionRepository,
    DispatchConfig,
    ResponderDispatcher,
    ResponderRepository,
)
from .config import EngineConfig
from .followup import FollowUpScheduler
from .notifier import IncidentNotifier
from .orchestrator import IncidentOrchestrator
from .repository import IncidentRepository

logger = logging.getLogger(__name__)


@dataclass
class CrisisServices:
    """Every engine component, wired to the same stores and clock."""
    orchestrator: IncidentOrchestrator
    scheduler: FollowUpScheduler
    dispatcher: ResponderDispatcher
    matcher: ResourceMatcher
    directory: ResourceDirectory
    detector: CrisisDetector
    analyzer: PatternAnalyzer
    connection_manager: Optional[ConnectionManager] = None


def database_enabled() -> bool:
    return os.getenv("DATABASE_ENABLED", "false").strip().lower() in ("1", "true", "yes")


def build_services(
    config: Optional[EngineConfig] = None,
    connection_manager: Optional[ConnectionManager] = None,
    notifier: Optional[IncidentNotifier] = None,
    clock: Optional[Clock] = None,
) -> CrisisServices:
    """Construct the engine.

    Uses PostgreSQL when a connection manager is given, or when
    DATABASE_ENABLED is set; in-memory stores otherwise.
    """
    config = config or EngineConfig.from_env()
    clock = clock or SystemClock()
    if connection_manager is None and database_enabled():
        connection_manager = get_connection_manager()

    incidents = IncidentRepository(connection_manager)
    connections = ConnectionRepository(connection_manager)
    resources = ResourceRepository(connection_manager)
    responders = ResponderRepository(connection_manager)
    audit = AuditLogger(repository=AuditRepository(connection_manager), clock=clock)
    notifier = notifier or IncidentNotifier(
        stream_name=config.notify_stream,
        enabled=config.notify_enabled,
        region=config.aws_region,
    )

    detector = CrisisDetector(config=DetectionConfig.from_env())
    matcher = ResourceMatcher(repository=resources, default_country=config.default_country)
    dispatcher = ResponderDispatcher(
        repository=responders,
        connections=connections,
        clock=clock,
        config=DispatchConfig.from_env(),
    )
    orchestrator = IncidentOrchestrator(
        incidents=incidents,
        connections=connections,
        detector=detector,
        matcher=matcher,
        dispatcher=dispatcher,
        audit=audit,
        notifier=notifier,
        clock=clock,
        config=config,
    )

    logger.info(
        "CRISIS_SERVICES_BUILT",
        extra={"backend": "postgresql" if connection_manager else "memory"}
    )

    return CrisisServices(
        orchestrator=orchestrator,
        scheduler=FollowUpScheduler(incidents, notifier, audit=audit, clock=clock),
        dispatcher=dispatcher,
        matcher=matcher,
        directory=ResourceDirectory(repository=resources, clock=clock),
        detector=detector,
        analyzer=PatternAnalyzer(detector=detector),
        connection_manager=connection_manager,
    )
