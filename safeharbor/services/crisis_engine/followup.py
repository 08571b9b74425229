"""Follow-up sweep.

Run on a recurring trigger (cron, scheduled task). Each due incident is
claimed with a conditional update before its notification goes out, so
overlapping or repeated sweeps notify an incident at most once.
"""
import logging
from datetime import datetime
from typing import Optional, Set

from safeharbor.shared.models import Incident
from safeharbor.shared.utils import Clock, SystemClock
from safeharbor.services.audit_service import AuditAction, AuditLogger
from .notifier import IncidentNotifier
from .repository import IncidentRepository

logger = logging.getLogger(__name__)


class FollowUpScheduler:
    """Processes incidents whose follow-up deadline has passed."""

    def __init__(
        self,
        incidents: IncidentRepository,
        notifier: IncidentNotifier,
        audit: Optional[AuditLogger] = None,
        clock: Optional[Clock] = None,
        batch_size: int = 100,
    ):
        self.incidents = incidents
        self.notifier = notifier
        self.clock = clock or SystemClock()
        self.audit = audit or AuditLogger(clock=self.clock)
        self.batch_size = batch_size

    def sweep(self) -> int:
        """Notify and complete every due follow-up.

        Reads the due set in pages of batch_size until it is drained.
        Claimed incidents leave the due set, so each page is fresh work;
        a page with nothing new ends the sweep.

        Returns:
            Number of follow-ups processed by this sweep

        Logs:
            - FOLLOWUP_NOTIFICATION_FAILED: Notifier raised (error)
            - FOLLOWUP_SWEEP_COMPLETED: Summary
        """
        now = self.clock.now()
        seen: Set[str] = set()
        processed = 0
        pages = 0

        while True:
            page = self.incidents.find_due_followups(now, limit=self.batch_size)
            fresh = [incident for incident in page if incident.id not in seen]
            if not fresh:
                break
            pages += 1
            for incident in fresh:
                seen.add(incident.id)
                if self._process(incident, now):
                    processed += 1
            if len(page) < self.batch_size:
                break

        logger.info(
            "FOLLOWUP_SWEEP_COMPLETED",
            extra={"due": len(seen), "processed": processed, "pages": pages}
        )
        return processed

    def _process(self, incident: Incident, now: datetime) -> bool:
        claimed = self.incidents.mark_followup_completed(incident.id, now)
        if claimed is None:
            # Another sweep got there first
            return False

        try:
            delivered = self.notifier.notify_followup(claimed)
        except Exception as e:
            delivered = False
            logger.error(
                "FOLLOWUP_NOTIFICATION_FAILED",
                extra={
                    "incident_id": incident.id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )

        self.audit.log(
            incident.id,
            AuditAction.FOLLOWUP_SENT,
            {"delivered": bool(delivered), "deadline": incident.followup_deadline},
        )
        return True
