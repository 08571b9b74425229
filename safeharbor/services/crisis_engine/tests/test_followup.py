"""Tests for the follow-up sweep."""
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from safeharbor.shared.models import CrisisType, Incident, IncidentStatus, UrgencyLevel
from safeharbor.shared.utils import FrozenClock, configure_pii_salt
from safeharbor.services.audit_service import AuditAction, AuditLogger
from safeharbor.services.crisis_engine.followup import FollowUpScheduler
from safeharbor.services.crisis_engine.repository import IncidentRepository


NOW = datetime(2026, 10, 19, 12, 0, 0)


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def incidents():
    return IncidentRepository()


@pytest.fixture
def notifier():
    mock = MagicMock()
    mock.notify_followup.return_value = True
    return mock


@pytest.fixture
def audit(clock):
    return AuditLogger(clock=clock)


@pytest.fixture
def scheduler(incidents, notifier, audit, clock):
    return FollowUpScheduler(incidents, notifier, audit=audit, clock=clock)


def open_incident(incidents, incident_id, deadline, status=IncidentStatus.FOLLOWUP_PENDING):
    return incidents.insert(Incident(
        id=incident_id,
        subject_id=f"user_{incident_id}",
        crisis_type=CrisisType.BURNOUT,
        urgency_level=UrgencyLevel.LOW,
        status=status,
        followup_deadline=deadline,
        created_at=NOW - timedelta(days=2),
        updated_at=NOW - timedelta(days=2),
    ))


class TestSweep:

    def test_notifies_due_incidents_once(self, scheduler, incidents, notifier, audit):
        open_incident(incidents, "inc_due", NOW - timedelta(minutes=1))

        assert scheduler.sweep() == 1
        assert scheduler.sweep() == 0

        notifier.notify_followup.assert_called_once()
        assert incidents.get("inc_due").followup_completed is True
        sent = [e for e in audit.recent("inc_due") if e.action == AuditAction.FOLLOWUP_SENT.value]
        assert len(sent) == 1
        assert sent[0].details["delivered"] is True

    def test_skips_incidents_not_yet_due(self, scheduler, incidents, notifier, clock):
        open_incident(incidents, "inc_later", NOW + timedelta(hours=1))

        assert scheduler.sweep() == 0
        notifier.notify_followup.assert_not_called()

        clock.advance(hours=1)
        assert scheduler.sweep() == 1

    def test_deadline_exactly_now_is_due(self, scheduler, incidents):
        open_incident(incidents, "inc_now", NOW)

        assert scheduler.sweep() == 1

    @pytest.mark.parametrize("status", [IncidentStatus.IN_PROGRESS, IncidentStatus.RESOLVED])
    def test_ignores_non_sweepable_status(self, scheduler, incidents, notifier, status):
        open_incident(incidents, "inc_busy", NOW - timedelta(hours=1), status=status)

        assert scheduler.sweep() == 0
        notifier.notify_followup.assert_not_called()

    def test_active_incidents_are_swept(self, scheduler, incidents):
        open_incident(incidents, "inc_active", NOW - timedelta(hours=1), status=IncidentStatus.ACTIVE)

        assert scheduler.sweep() == 1

    def test_notifier_failure_still_completes(self, scheduler, incidents, notifier, audit):
        notifier.notify_followup.side_effect = RuntimeError("stream down")
        open_incident(incidents, "inc_due", NOW - timedelta(minutes=5))

        assert scheduler.sweep() == 1

        assert incidents.get("inc_due").followup_completed is True
        sent = [e for e in audit.recent("inc_due") if e.action == AuditAction.FOLLOWUP_SENT.value]
        assert sent[0].details["delivered"] is False

    def test_oldest_deadline_first_across_pages(self, incidents, notifier, audit, clock):
        open_incident(incidents, "inc_new", NOW - timedelta(minutes=1))
        open_incident(incidents, "inc_old", NOW - timedelta(hours=3))
        scheduler = FollowUpScheduler(incidents, notifier, audit=audit, clock=clock, batch_size=1)

        assert scheduler.sweep() == 2

        notified = [c[0][0].id for c in notifier.notify_followup.call_args_list]
        assert notified == ["inc_old", "inc_new"]

    def test_backlog_larger_than_batch_is_drained(self, incidents, notifier, audit, clock):
        for i in range(7):
            open_incident(incidents, f"inc_{i}", NOW - timedelta(minutes=10 + i))
        scheduler = FollowUpScheduler(incidents, notifier, audit=audit, clock=clock, batch_size=3)
        find_due = MagicMock(wraps=incidents.find_due_followups)
        incidents.find_due_followups = find_due

        assert scheduler.sweep() == 7

        assert find_due.call_count == 3
        assert all(incidents.get(f"inc_{i}").followup_completed for i in range(7))
        assert scheduler.sweep() == 0

    def test_lost_claim_is_skipped(self, scheduler, incidents, notifier, monkeypatch):
        open_incident(incidents, "inc_due", NOW - timedelta(minutes=1))
        monkeypatch.setattr(incidents, "mark_followup_completed", lambda *args: None)

        assert scheduler.sweep() == 0
        notifier.notify_followup.assert_not_called()
