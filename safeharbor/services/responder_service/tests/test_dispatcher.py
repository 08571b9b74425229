"""Tests for ResponderDispatcher dispatch, capacity and lifecycle."""
import threading
from datetime import datetime, timedelta

import pytest

from safeharbor.shared.errors import ConflictError, NotFoundError, ValidationError
from safeharbor.shared.models import (
    Connection,
    ConnectionOutcome,
    CrisisType,
    Responder,
)
from safeharbor.shared.utils import FrozenClock, configure_pii_salt
from safeharbor.services.responder_service import (
    ConnectionRepository,
    ResponderDispatcher,
    ResponderFilters,
    ResponderProfile,
    ResponderRepository,
)


NOW = datetime(2026, 10, 19, 12, 0, 0)


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


def make_responder(responder_id, **fields):
    defaults = dict(
        id=responder_id,
        subject_id=f"user_{responder_id}",
        training_completed=True,
        is_active=True,
        is_available=True,
        specializations=frozenset({CrisisType.SUICIDE_RISK, CrisisType.BURNOUT}),
        languages=frozenset({"en", "hi"}),
        region="Maharashtra",
        city="Mumbai",
        created_at=NOW,
    )
    defaults.update(fields)
    return Responder(**defaults)


@pytest.fixture
def repository():
    return ResponderRepository()


@pytest.fixture
def connections():
    return ConnectionRepository()


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def dispatcher(repository, connections, clock):
    return ResponderDispatcher(repository=repository, connections=connections, clock=clock)


def load(repository, *responders):
    for responder in responders:
        repository.insert(responder)


class TestFindAvailable:

    def test_reserves_least_busy(self, repository, dispatcher):
        load(
            repository,
            make_responder("busy", current_case_count=2),
            make_responder("idle", current_case_count=0),
        )

        chosen = dispatcher.find_available(CrisisType.SUICIDE_RISK)

        assert chosen.id == "idle"
        assert chosen.current_case_count == 1
        assert repository.get("idle").current_case_count == 1
        assert repository.get("busy").current_case_count == 2

    def test_rating_then_experience_break_ties(self, repository, dispatcher):
        load(
            repository,
            make_responder("unrated", total_cases_handled=90),
            make_responder("good", average_rating=4.5, total_cases_handled=3),
            make_responder("good_veteran", average_rating=4.5, total_cases_handled=40),
        )

        assert dispatcher.find_available(CrisisType.SUICIDE_RISK).id == "good_veteran"

    @pytest.mark.parametrize("fields", [
        {"is_active": False},
        {"is_available": False},
        {"training_completed": False},
        {"specializations": frozenset({CrisisType.PANIC_ATTACK})},
        {"current_case_count": 3},
    ])
    def test_ineligible_responders_skipped(self, repository, dispatcher, fields):
        load(repository, make_responder("only", **fields))

        assert dispatcher.find_available(CrisisType.SUICIDE_RISK) is None
        assert repository.get("only").current_case_count == fields.get("current_case_count", 0)

    def test_per_responder_capacity(self, repository, dispatcher):
        load(repository, make_responder("small", max_concurrent_cases=1, current_case_count=1))

        assert dispatcher.find_available(CrisisType.SUICIDE_RISK) is None

    def test_location_parts_must_all_match(self, repository, dispatcher):
        load(
            repository,
            make_responder("mumbai"),
            make_responder("pune", city="Pune"),
            make_responder("delhi", region="Delhi", city="New Delhi"),
        )

        chosen = dispatcher.find_available(CrisisType.SUICIDE_RISK, location="pune, maharashtra")

        assert chosen.id == "pune"

    def test_no_fallback_outside_location(self, repository, dispatcher, caplog):
        load(repository, make_responder("mumbai"))

        chosen = dispatcher.find_available(CrisisType.SUICIDE_RISK, location="Chennai, Tamil Nadu")

        assert chosen is None
        assert any(r.getMessage() == "RESPONDER_NOT_AVAILABLE" for r in caplog.records)

    def test_language_required(self, repository, dispatcher):
        load(repository, make_responder("mumbai"))

        assert dispatcher.find_available(CrisisType.SUICIDE_RISK, language="ta") is None
        assert dispatcher.find_available(CrisisType.SUICIDE_RISK, language="hi").id == "mumbai"

    def test_never_exceeds_capacity(self, repository, dispatcher):
        load(repository, make_responder("solo"))

        results = [dispatcher.find_available(CrisisType.SUICIDE_RISK) for _ in range(5)]

        assert [r is not None for r in results] == [True, True, True, False, False]
        assert repository.get("solo").current_case_count == 3

    def test_concurrent_dispatch_for_last_slot(self, repository, dispatcher):
        load(repository, make_responder("last_slot", current_case_count=2))
        barrier = threading.Barrier(2)
        results = []
        lock = threading.Lock()

        def dispatch():
            barrier.wait()
            responder = dispatcher.find_available(CrisisType.SUICIDE_RISK)
            with lock:
                results.append(responder)

        threads = [threading.Thread(target=dispatch) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for r in results if r is not None) == 1
        assert repository.get("last_slot").current_case_count == 3

    def test_falls_through_when_top_candidate_taken(self, repository, dispatcher):
        load(repository, make_responder("first"), make_responder("second", current_case_count=1))
        original = repository.try_reserve
        calls = []

        def racing_reserve(responder_id, crisis_type):
            calls.append(responder_id)
            if responder_id == "first":
                return None
            return original(responder_id, crisis_type)

        repository.try_reserve = racing_reserve

        chosen = dispatcher.find_available(CrisisType.SUICIDE_RISK)

        assert calls == ["first", "second"]
        assert chosen.id == "second"


class TestRelease:

    def test_decrements(self, repository, dispatcher):
        load(repository, make_responder("r", current_case_count=2))

        assert dispatcher.release("r").current_case_count == 1

    def test_floored_at_zero(self, repository, dispatcher):
        load(repository, make_responder("r", current_case_count=1))

        for _ in range(3):
            dispatcher.release("r")

        assert repository.get("r").current_case_count == 0

    def test_unknown_responder(self, dispatcher):
        with pytest.raises(NotFoundError):
            dispatcher.release("missing")


class TestRating:

    def test_incremental_average(self, repository, dispatcher):
        load(repository, make_responder("r", average_rating=4.0, total_cases_handled=3))

        updated = dispatcher.apply_rating("r", 2)

        assert updated.average_rating == pytest.approx(3.5)
        assert updated.total_cases_handled == 4

    def test_first_rating(self, repository, dispatcher):
        load(repository, make_responder("r"))

        updated = dispatcher.apply_rating("r", 5)

        assert updated.average_rating == 5.0
        assert updated.total_cases_handled == 1

    def test_missing_responder_skipped(self, dispatcher, caplog):
        assert dispatcher.apply_rating("missing", 4) is None
        assert any(r.getMessage() == "RESPONDER_RATING_SKIPPED" for r in caplog.records)


class TestLifecycle:

    def test_register_starts_offline(self, dispatcher):
        responder = dispatcher.register(
            "user_1",
            "THERAPIST",
            ResponderProfile(
                specializations=frozenset({CrisisType.PANIC_ATTACK}),
                region="Goa",
            ),
        )

        assert responder.id.startswith("resp_")
        assert responder.is_active is False
        assert responder.is_available is False
        assert responder.training_completed is False
        assert responder.current_case_count == 0
        assert responder.total_cases_handled == 0
        assert responder.max_concurrent_cases == 3
        assert responder.created_at == NOW

    def test_register_twice_conflicts(self, dispatcher):
        dispatcher.register("user_1", "EDUCATOR")

        with pytest.raises(ConflictError):
            dispatcher.register("user_1", "EDUCATOR")

    def test_store_rejects_duplicate_subject(self, repository):
        load(repository, make_responder("a", subject_id="same"))

        with pytest.raises(ConflictError):
            repository.insert(make_responder("b", subject_id="same"))

    @pytest.mark.parametrize("role", ["STUDENT", "PARENT", ""])
    def test_register_rejects_role(self, dispatcher, role):
        with pytest.raises(ValidationError):
            dispatcher.register("user_1", role)

    def test_full_onboarding_makes_dispatchable(self, dispatcher, clock):
        responder = dispatcher.register(
            "user_1", "moderator",
            ResponderProfile(specializations=frozenset({CrisisType.BURNOUT})),
        )

        with pytest.raises(ValidationError):
            dispatcher.update_availability("user_1", True)

        trained = dispatcher.complete_training("user_1", ["cert_a", "cert_b"])
        assert trained.training_completed is True
        assert trained.certifications == ("cert_a", "cert_b")

        with pytest.raises(ValidationError):
            dispatcher.update_availability("user_1", True)

        approved = dispatcher.approve(responder.id, approved_by="admin_1")
        assert approved.is_active is True
        assert approved.approved_at == NOW
        assert approved.approved_by == "admin_1"

        till = NOW + timedelta(hours=4)
        online = dispatcher.update_availability("user_1", True, available_from=NOW, available_till=till)
        assert online.is_available is True
        assert online.available_till == till

        assert dispatcher.find_available(CrisisType.BURNOUT).id == responder.id

    def test_training_appends_certifications(self, repository, dispatcher):
        load(repository, make_responder("r", certifications=("old",)))

        updated = dispatcher.complete_training("user_r", ["new"])

        assert updated.certifications == ("old", "new")

    def test_going_offline_resets_caseload(self, repository, dispatcher):
        load(repository, make_responder("r", current_case_count=2))

        offline = dispatcher.update_availability("user_r", False)

        assert offline.is_available is False
        assert offline.current_case_count == 0

    def test_unknown_subject(self, dispatcher):
        with pytest.raises(NotFoundError):
            dispatcher.update_availability("nobody", False)
        with pytest.raises(NotFoundError):
            dispatcher.complete_training("nobody")
        with pytest.raises(NotFoundError):
            dispatcher.approve("missing", approved_by="admin_1")


class TestProfileAndListing:

    def test_profile_stats(self, repository, connections, dispatcher):
        load(repository, make_responder("r"))
        entries = [
            # (started_at, duration, outcome, rating)
            (NOW - timedelta(days=1), 600, ConnectionOutcome.RESOLVED, 5),
            (NOW - timedelta(days=3), 1200, ConnectionOutcome.ESCALATED, 3),
            (NOW - timedelta(days=12), None, None, None),
            (NOW - timedelta(days=40), 300, ConnectionOutcome.RESOLVED, None),
        ]
        for i, (started, duration, outcome, rating) in enumerate(entries):
            connections.insert(Connection(
                id=f"conn_{i}",
                incident_id=f"inc_{i}",
                responder_id="r",
                started_at=started,
                duration_seconds=duration,
                outcome=outcome,
                rating=rating,
            ))

        profile = dispatcher.get_profile("user_r")

        assert profile["responder"]["id"] == "r"
        assert [c["id"] for c in profile["recent_connections"]] == [
            "conn_0", "conn_1", "conn_2", "conn_3",
        ]
        assert profile["stats"] == {
            "total_cases": 4,
            "resolved_cases": 2,
            "resolution_rate": 50.0,
            "avg_duration_minutes": 12,
            "avg_rating": 4.0,
            "cases_this_month": 3,
            "cases_this_week": 2,
        }

    def test_profile_without_connections(self, repository, dispatcher):
        load(repository, make_responder("r"))

        stats = dispatcher.get_profile("user_r")["stats"]

        assert stats["total_cases"] == 0
        assert stats["resolution_rate"] == 0
        assert stats["avg_duration_minutes"] is None
        assert stats["avg_rating"] == 0

    def test_recent_connections_capped(self, repository, connections, dispatcher):
        load(repository, make_responder("r"))
        for i in range(12):
            connections.insert(Connection(
                id=f"conn_{i:02d}",
                incident_id="inc",
                responder_id="r",
                started_at=NOW - timedelta(hours=i),
            ))

        recent = dispatcher.get_profile("user_r")["recent_connections"]

        assert len(recent) == 10
        assert recent[0]["id"] == "conn_00"

    def test_listing_order_and_filters(self, repository, dispatcher):
        load(
            repository,
            make_responder("offline", is_available=False, average_rating=5.0),
            make_responder("ok", average_rating=3.0),
            make_responder("great", average_rating=4.9),
            make_responder("goa", region="Goa", average_rating=4.0),
        )

        everyone = dispatcher.list_responders()
        in_maharashtra = dispatcher.list_responders(ResponderFilters(region="maha", is_available=True))

        assert [r.id for r in everyone] == ["great", "goa", "ok", "offline"]
        assert [r.id for r in in_maharashtra] == ["great", "ok"]
