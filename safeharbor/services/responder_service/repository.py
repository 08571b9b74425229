"""Responder and connection stores.

Capacity accounting lives here: reservation and release are single
atomic statements (or one critical section in memory), so concurrent
dispatches can never push a responder past its caseload.
"""
import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from psycopg2 import Error as PsycopgError

from safeharbor.shared.database import (
    BaseRepository,
    ConnectionManager,
    like_contains,
    to_db_value,
)
from safeharbor.shared.errors import NotFoundError
from safeharbor.shared.models import (
    Connection,
    ConnectionChannel,
    ConnectionOutcome,
    CrisisType,
    Responder,
    contains_ci,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResponderFilters:
    """Optional filters for the admin responder listing."""
    is_active: Optional[bool] = None
    is_available: Optional[bool] = None
    region: Optional[str] = None
    specialization: Optional[CrisisType] = None


def _dispatch_order(responder: Responder):
    # Least busy, then best rated (unrated last), then most experienced
    rating = responder.average_rating
    return (
        responder.current_case_count,
        rating is None,
        -(rating or 0.0),
        -responder.total_cases_handled,
    )


def _listing_order(responder: Responder):
    rating = responder.average_rating
    return (
        not responder.is_available,
        rating is None,
        -(rating or 0.0),
        -responder.total_cases_handled,
    )


def _reserve(crisis_type: CrisisType):
    def mutate(current: Responder) -> Optional[Responder]:
        if not current.can_accept(crisis_type):
            return None
        return dataclasses.replace(
            current, current_case_count=current.current_case_count + 1
        )
    return mutate


def _rated(rating: int):
    def mutate(current: Responder) -> Responder:
        handled = current.total_cases_handled
        average = ((current.average_rating or 0.0) * handled + rating) / (handled + 1)
        return dataclasses.replace(
            current, average_rating=average, total_cases_handled=handled + 1
        )
    return mutate


class ResponderRepository(BaseRepository[Responder]):
    """Repository for crisis responders.

    subject_id is unique: a subject registers at most once.
    """

    def __init__(self, connection_manager: Optional[ConnectionManager] = None):
        super().__init__("crisis_responders", connection_manager)

    def _row_to_entity(self, row: Dict[str, Any]) -> Responder:
        return Responder(
            id=row["id"],
            subject_id=row["subject_id"],
            training_completed=bool(row.get("training_completed")),
            is_active=bool(row.get("is_active")),
            is_available=bool(row.get("is_available")),
            specializations=frozenset(
                CrisisType(s) for s in row.get("specializations") or ()
            ),
            languages=frozenset(row.get("languages") or ()),
            region=row.get("region"),
            city=row.get("city"),
            max_concurrent_cases=row.get("max_concurrent_cases", 3),
            current_case_count=row.get("current_case_count") or 0,
            total_cases_handled=row.get("total_cases_handled") or 0,
            average_rating=row.get("average_rating"),
            certifications=tuple(row.get("certifications") or ()),
            available_from=row.get("available_from"),
            available_till=row.get("available_till"),
            approved_at=row.get("approved_at"),
            approved_by=row.get("approved_by"),
            created_at=row["created_at"],
        )

    def _entity_to_params(self, entity: Responder) -> Dict[str, Any]:
        return {
            "id": entity.id,
            "subject_id": entity.subject_id,
            "training_completed": entity.training_completed,
            "is_active": entity.is_active,
            "is_available": entity.is_available,
            "specializations": entity.specializations,
            "languages": entity.languages,
            "region": entity.region,
            "city": entity.city,
            "max_concurrent_cases": entity.max_concurrent_cases,
            "current_case_count": entity.current_case_count,
            "total_cases_handled": entity.total_cases_handled,
            "average_rating": entity.average_rating,
            "certifications": entity.certifications,
            "available_from": entity.available_from,
            "available_till": entity.available_till,
            "approved_at": entity.approved_at,
            "approved_by": entity.approved_by,
            "created_at": entity.created_at,
        }

    def _conflicts_with(self, existing: Responder, new: Responder) -> bool:
        return existing.subject_id == new.subject_id

    def _update_returning(self, operation: str, query: str, params: tuple) -> Optional[Responder]:
        try:
            with self.connection_manager.transaction() as cur:
                cur.execute(query, params)
                row = cur.fetchone()
        except PsycopgError as e:
            self._raise_storage_error(operation, e)
        return self._row_to_entity(row) if row else None

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find_by_subject(self, subject_id: str) -> Optional[Responder]:
        if self._memory is not None:
            rows = self._memory.select(lambda r: r.subject_id == subject_id)
            return rows[0] if rows else None
        return self._fetch_one(
            "SELECT * FROM crisis_responders WHERE subject_id = %s",
            (subject_id,),
        )

    def get_by_subject(self, subject_id: str) -> Responder:
        """Raises NotFoundError if the subject never registered."""
        responder = self.find_by_subject(subject_id)
        if responder is None:
            raise NotFoundError("crisis_responders: no responder for subject")
        return responder

    def find_candidates(
        self,
        crisis_type: CrisisType,
        city: Optional[str] = None,
        region: Optional[str] = None,
        language: Optional[str] = None,
        limit: int = 5,
    ) -> List[Responder]:
        """Dispatchable responders with spare capacity, best first.

        Location narrowing is strict: every given part must match.
        Order: current_case_count asc, average_rating desc, total_cases_handled desc.
        """
        if self._memory is not None:
            rows = self._memory.select(
                lambda r: r.can_accept(crisis_type)
                and (region is None or contains_ci(r.region, region))
                and (city is None or contains_ci(r.city, city))
                and (language is None or language in r.languages)
            )
            return sorted(rows, key=_dispatch_order)[:limit]

        clauses = [
            "is_active",
            "is_available",
            "training_completed",
            "%s = ANY(specializations)",
            "current_case_count < max_concurrent_cases",
        ]
        params: List[Any] = [crisis_type.value]
        if region is not None:
            clauses.append("region ILIKE %s")
            params.append(like_contains(region))
        if city is not None:
            clauses.append("city ILIKE %s")
            params.append(like_contains(city))
        if language is not None:
            clauses.append("%s = ANY(languages)")
            params.append(language)
        params.append(limit)

        query = (
            f"SELECT * FROM crisis_responders WHERE {' AND '.join(clauses)} "
            "ORDER BY current_case_count ASC, average_rating DESC NULLS LAST, "
            "total_cases_handled DESC LIMIT %s"
        )
        return self._fetch_all(query, tuple(params))

    def list_responders(self, filters: Optional[ResponderFilters] = None) -> List[Responder]:
        """Admin listing: available first, then rating, then experience."""
        filters = filters or ResponderFilters()
        if self._memory is not None:
            rows = self._memory.select(
                lambda r: (filters.is_active is None or r.is_active == filters.is_active)
                and (filters.is_available is None or r.is_available == filters.is_available)
                and (filters.region is None or contains_ci(r.region, filters.region))
                and (filters.specialization is None or filters.specialization in r.specializations)
            )
            return sorted(rows, key=_listing_order)

        clauses = ["TRUE"]
        params: List[Any] = []
        if filters.is_active is not None:
            clauses.append("is_active = %s")
            params.append(filters.is_active)
        if filters.is_available is not None:
            clauses.append("is_available = %s")
            params.append(filters.is_available)
        if filters.region is not None:
            clauses.append("region ILIKE %s")
            params.append(like_contains(filters.region))
        if filters.specialization is not None:
            clauses.append("%s = ANY(specializations)")
            params.append(filters.specialization.value)
        query = (
            f"SELECT * FROM crisis_responders WHERE {' AND '.join(clauses)} "
            "ORDER BY is_available DESC, average_rating DESC NULLS LAST, "
            "total_cases_handled DESC"
        )
        return self._fetch_all(query, tuple(params))

    # ------------------------------------------------------------------
    # Atomic counters
    # ------------------------------------------------------------------

    def try_reserve(self, responder_id: str, crisis_type: CrisisType) -> Optional[Responder]:
        """Compare-and-increment current_case_count.

        Returns:
            The updated responder, or None when it is no longer eligible
            (capacity reached, went offline, lost the specialization)
        """
        if self._memory is not None:
            try:
                return self._memory.update(responder_id, _reserve(crisis_type))
            except NotFoundError:
                return None

        return self._update_returning(
            "try_reserve",
            "UPDATE crisis_responders "
            "SET current_case_count = current_case_count + 1 "
            "WHERE id = %s AND is_active AND is_available AND training_completed "
            "AND %s = ANY(specializations) "
            "AND current_case_count < max_concurrent_cases "
            "RETURNING *",
            (responder_id, crisis_type.value),
        )

    def release(self, responder_id: str) -> Responder:
        """Decrement current_case_count, floored at zero.

        Raises:
            NotFoundError: If the responder does not exist
        """
        if self._memory is not None:
            return self._memory.update(
                responder_id,
                lambda r: dataclasses.replace(
                    r, current_case_count=max(0, r.current_case_count - 1)
                ),
            )

        updated = self._update_returning(
            "release",
            "UPDATE crisis_responders "
            "SET current_case_count = GREATEST(current_case_count - 1, 0) "
            "WHERE id = %s RETURNING *",
            (responder_id,),
        )
        if updated is None:
            raise NotFoundError(f"crisis_responders: {responder_id} not found")
        return updated

    def apply_rating(self, responder_id: str, rating: int) -> Optional[Responder]:
        """Fold one rating into the running average and count the case.

        Returns:
            The updated responder, or None if it does not exist
        """
        if self._memory is not None:
            try:
                return self._memory.update(responder_id, _rated(rating))
            except NotFoundError:
                return None

        # Right-hand sides see the pre-update row
        return self._update_returning(
            "apply_rating",
            "UPDATE crisis_responders SET "
            "average_rating = (COALESCE(average_rating, 0) * total_cases_handled + %s) "
            "/ (total_cases_handled + 1), "
            "total_cases_handled = total_cases_handled + 1 "
            "WHERE id = %s RETURNING *",
            (rating, responder_id),
        )

    # ------------------------------------------------------------------
    # Administrative writes
    # ------------------------------------------------------------------

    def set_availability(
        self,
        responder_id: str,
        is_available: bool,
        available_from: Optional[datetime] = None,
        available_till: Optional[datetime] = None,
    ) -> Responder:
        """Toggle availability. Going offline clears current_case_count."""
        fields: Dict[str, Any] = {
            "is_available": is_available,
            "available_from": available_from,
            "available_till": available_till,
        }
        if not is_available:
            fields["current_case_count"] = 0
        return self.update_fields(responder_id, **fields)

    def complete_training(self, responder_id: str, certifications: Tuple[str, ...]) -> Responder:
        """Mark trained and append certificate ids.

        Raises:
            NotFoundError: If the responder does not exist
        """
        if self._memory is not None:
            return self._memory.update(
                responder_id,
                lambda r: dataclasses.replace(
                    r,
                    training_completed=True,
                    certifications=r.certifications + tuple(certifications),
                ),
            )

        updated = self._update_returning(
            "complete_training",
            "UPDATE crisis_responders SET training_completed = TRUE, "
            "certifications = certifications || %s::text[] "
            "WHERE id = %s RETURNING *",
            (list(certifications), responder_id),
        )
        if updated is None:
            raise NotFoundError(f"crisis_responders: {responder_id} not found")
        return updated


def _month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def summarize_cases(
    total: int,
    resolved: int,
    avg_duration_seconds: Optional[float],
    avg_rating: Optional[float],
    this_month: int,
    this_week: int,
) -> Dict[str, Any]:
    """Profile statistics from raw connection aggregates."""
    return {
        "total_cases": total,
        "resolved_cases": resolved,
        "resolution_rate": (resolved / total) * 100 if total else 0,
        "avg_duration_minutes": (
            round(avg_duration_seconds / 60) if avg_duration_seconds else None
        ),
        "avg_rating": float(avg_rating) if avg_rating else 0,
        "cases_this_month": this_month,
        "cases_this_week": this_week,
    }


class ConnectionRepository(BaseRepository[Connection]):
    """Repository for contact attempts between incidents and responders/resources."""

    def __init__(self, connection_manager: Optional[ConnectionManager] = None):
        super().__init__("crisis_connections", connection_manager)

    def _row_to_entity(self, row: Dict[str, Any]) -> Connection:
        outcome = row.get("outcome")
        return Connection(
            id=row["id"],
            incident_id=row["incident_id"],
            channel=ConnectionChannel(row["channel"]),
            responder_id=row.get("responder_id"),
            resource_id=row.get("resource_id"),
            started_at=row["started_at"],
            ended_at=row.get("ended_at"),
            duration_seconds=row.get("duration_seconds"),
            outcome=ConnectionOutcome(outcome) if outcome else None,
            notes=row.get("notes"),
            rating=row.get("rating"),
            feedback=row.get("feedback"),
        )

    def _entity_to_params(self, entity: Connection) -> Dict[str, Any]:
        return {
            "id": entity.id,
            "incident_id": entity.incident_id,
            "channel": entity.channel,
            "responder_id": entity.responder_id,
            "resource_id": entity.resource_id,
            "started_at": entity.started_at,
            "ended_at": entity.ended_at,
            "duration_seconds": entity.duration_seconds,
            "outcome": entity.outcome,
            "notes": entity.notes,
            "rating": entity.rating,
            "feedback": entity.feedback,
        }

    def update_open(self, connection_id: str, **fields: Any) -> Optional[Connection]:
        """Set fields on a connection that has no outcome yet.

        When fields carries a rating the connection must also be unrated,
        so a rating is recorded at most once.

        Returns:
            The updated connection, or None when it is already concluded
            (or already rated)

        Raises:
            NotFoundError: If the connection does not exist
        """
        rating_given = fields.get("rating") is not None

        if self._memory is not None:
            def mutate(current: Connection) -> Optional[Connection]:
                if current.outcome is not None:
                    return None
                if rating_given and current.rating is not None:
                    return None
                return dataclasses.replace(current, **fields)
            return self._memory.update(connection_id, mutate)

        assignments = ", ".join(f"{col} = %s" for col in fields)
        values = tuple(to_db_value(v) for v in fields.values()) + (connection_id,)
        guard = "outcome IS NULL" + (" AND rating IS NULL" if rating_given else "")
        updated = self._fetch_one(
            f"UPDATE crisis_connections SET {assignments} "
            f"WHERE id = %s AND {guard} RETURNING *",
            values,
        )
        if updated is None and self.find_by_id(connection_id) is None:
            raise NotFoundError(f"crisis_connections: {connection_id} not found")
        return updated

    def _newest_first(self, predicate, limit: Optional[int]) -> List[Connection]:
        rows = sorted(
            reversed(self._memory.select(predicate)),
            key=lambda c: c.started_at,
            reverse=True,
        )
        return rows if limit is None else rows[:limit]

    def list_for_incident(self, incident_id: str) -> List[Connection]:
        """Connections of one incident, newest first."""
        if self._memory is not None:
            return self._newest_first(lambda c: c.incident_id == incident_id, None)
        return self._fetch_all(
            "SELECT * FROM crisis_connections WHERE incident_id = %s "
            "ORDER BY started_at DESC",
            (incident_id,),
        )

    def list_for_responder(self, responder_id: str, limit: Optional[int] = None) -> List[Connection]:
        """Connections handled by one responder, newest first."""
        if self._memory is not None:
            return self._newest_first(lambda c: c.responder_id == responder_id, limit)

        query = (
            "SELECT * FROM crisis_connections WHERE responder_id = %s "
            "ORDER BY started_at DESC"
        )
        params: Tuple[Any, ...] = (responder_id,)
        if limit is not None:
            query += " LIMIT %s"
            params += (limit,)
        return self._fetch_all(query, params)

    def responder_stats(self, responder_id: str, now: datetime) -> Dict[str, Any]:
        """Case statistics for a responder profile.

        Month counts start at midnight on the 1st; week counts cover the
        last 7 days.
        """
        month_start = _month_start(now)
        week_start = now - timedelta(days=7)

        if self._memory is not None:
            rows = self._memory.select(lambda c: c.responder_id == responder_id)
            durations = [c.duration_seconds for c in rows if c.duration_seconds is not None]
            ratings = [c.rating for c in rows if c.rating is not None]
            return summarize_cases(
                total=len(rows),
                resolved=sum(1 for c in rows if c.outcome == ConnectionOutcome.RESOLVED),
                avg_duration_seconds=sum(durations) / len(durations) if durations else None,
                avg_rating=sum(ratings) / len(ratings) if ratings else None,
                this_month=sum(1 for c in rows if c.started_at >= month_start),
                this_week=sum(1 for c in rows if c.started_at >= week_start),
            )

        try:
            with self.connection_manager.transaction() as cur:
                cur.execute(
                    "SELECT COUNT(*) AS total, "
                    "COUNT(*) FILTER (WHERE outcome = 'RESOLVED') AS resolved, "
                    "AVG(duration_seconds) AS avg_duration_seconds, "
                    "AVG(rating) AS avg_rating, "
                    "COUNT(*) FILTER (WHERE started_at >= %s) AS this_month, "
                    "COUNT(*) FILTER (WHERE started_at >= %s) AS this_week "
                    "FROM crisis_connections WHERE responder_id = %s",
                    (month_start, week_start, responder_id),
                )
                row = cur.fetchone()
        except PsycopgError as e:
            self._raise_storage_error("responder_stats", e)
        return summarize_cases(
            total=row["total"],
            resolved=row["resolved"],
            avg_duration_seconds=row["avg_duration_seconds"],
            avg_rating=row["avg_rating"],
            this_month=row["this_month"],
            this_week=row["this_week"],
        )
