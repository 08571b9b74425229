"""Resource store: support channels ranked for crisis lookups."""
import dataclasses
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from psycopg2 import Error as PsycopgError

from safeharbor.shared.database import (
    BaseRepository,
    ConnectionManager,
    like_contains,
    to_db_value,
)
from safeharbor.shared.errors import ConflictError
from safeharbor.shared.models import (
    CrisisType,
    Resource,
    ResourceChannel,
    contains_ci,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocationFilter:
    """Inclusive location match built from a "city, region" string.

    A resource qualifies when its city contains `city`, OR its region
    contains `region` (or `city` when no region was given), OR it is a
    national resource of `country`.
    """
    city: Optional[str]
    region: Optional[str]
    country: str

    def matches(self, resource: Resource) -> bool:
        if resource.country == self.country and resource.region is None:
            return True
        if self.city and contains_ci(resource.city, self.city):
            return True
        region_term = self.region or self.city
        return contains_ci(resource.region, region_term)


@dataclass(frozen=True)
class ResourceSearch:
    """Optional filters for an unbounded resource search."""
    crisis_type: Optional[CrisisType] = None
    region: Optional[str] = None
    city: Optional[str] = None
    language: Optional[str] = None
    available_24x7: Optional[bool] = None


def _lookup_order(resource: Resource):
    return (
        resource.priority,
        not resource.is_verified,
        not resource.available_24x7,
        -resource.usage_count,
    )


def _national_order(resource: Resource):
    return (resource.priority, not resource.available_24x7)


def _search_order(resource: Resource):
    rating = resource.average_rating
    return (
        resource.priority,
        not resource.is_verified,
        rating is None,
        -(rating or 0.0),
    )


class ResourceRepository(BaseRepository[Resource]):
    """Repository for crisis resources."""

    def __init__(self, connection_manager: Optional[ConnectionManager] = None):
        super().__init__("crisis_resources", connection_manager)

    def _row_to_entity(self, row: Dict[str, Any]) -> Resource:
        return Resource(
            id=row["id"],
            name=row["name"],
            channel_type=ResourceChannel(row["channel_type"]),
            crisis_categories=frozenset(row.get("crisis_categories") or ()),
            phone=row.get("phone"),
            whatsapp=row.get("whatsapp"),
            email=row.get("email"),
            website=row.get("website"),
            available_24x7=bool(row.get("available_24x7")),
            operating_hours=row.get("operating_hours"),
            languages=frozenset(row.get("languages") or ()),
            country=row.get("country") or "IN",
            region=row.get("region"),
            city=row.get("city"),
            priority=row.get("priority", 10),
            is_verified=bool(row.get("is_verified")),
            is_active=bool(row.get("is_active")),
            usage_count=row.get("usage_count") or 0,
            average_rating=row.get("average_rating"),
            description=row.get("description"),
            verified_at=row.get("verified_at"),
            created_at=row["created_at"],
        )

    def _entity_to_params(self, entity: Resource) -> Dict[str, Any]:
        return {
            "id": entity.id,
            "name": entity.name,
            "channel_type": entity.channel_type,
            "crisis_categories": entity.crisis_categories,
            "phone": entity.phone,
            "whatsapp": entity.whatsapp,
            "email": entity.email,
            "website": entity.website,
            "available_24x7": entity.available_24x7,
            "operating_hours": entity.operating_hours,
            "languages": entity.languages,
            "country": entity.country,
            "region": entity.region,
            "city": entity.city,
            "priority": entity.priority,
            "is_verified": entity.is_verified,
            "is_active": entity.is_active,
            "usage_count": entity.usage_count,
            "average_rating": entity.average_rating,
            "description": entity.description,
            "verified_at": entity.verified_at,
            "created_at": entity.created_at,
        }

    # ------------------------------------------------------------------
    # Ranked lookups
    # ------------------------------------------------------------------

    def find_for_crisis(
        self,
        crisis_type: CrisisType,
        location: Optional[LocationFilter] = None,
        language: Optional[str] = None,
        limit: int = 5,
    ) -> List[Resource]:
        """Active resources for a crisis type, best first.

        Order: priority asc, verified first, 24x7 first, most used first.
        """
        if self._memory is not None:
            rows = self._memory.select(
                lambda r: r.is_active
                and r.serves(crisis_type)
                and (location is None or location.matches(r))
                and (language is None or language in r.languages)
            )
            return sorted(rows, key=_lookup_order)[:limit]

        clauses = ["is_active", "%s = ANY(crisis_categories)"]
        params: List[Any] = [crisis_type.value]
        if location is not None:
            alternatives = ["(country = %s AND region IS NULL)"]
            params.append(location.country)
            if location.city:
                alternatives.append("city ILIKE %s")
                params.append(like_contains(location.city))
            region_term = location.region or location.city
            if region_term:
                alternatives.append("region ILIKE %s")
                params.append(like_contains(region_term))
            clauses.append("(" + " OR ".join(alternatives) + ")")
        if language is not None:
            clauses.append("%s = ANY(languages)")
            params.append(language)
        params.append(limit)

        query = (
            f"SELECT * FROM crisis_resources WHERE {' AND '.join(clauses)} "
            "ORDER BY priority ASC, is_verified DESC, available_24x7 DESC, usage_count DESC "
            "LIMIT %s"
        )
        return self._fetch_all(query, tuple(params))

    def find_national(
        self,
        country: str,
        crisis_type: Optional[CrisisType] = None,
        limit: int = 5,
    ) -> List[Resource]:
        """Active, verified, region-less resources of a country."""
        if self._memory is not None:
            rows = self._memory.select(
                lambda r: r.is_active
                and r.is_verified
                and r.country == country
                and r.region is None
                and (crisis_type is None or r.serves(crisis_type))
            )
            return sorted(rows, key=_national_order)[:limit]

        clauses = ["is_active", "is_verified", "country = %s", "region IS NULL"]
        params: List[Any] = [country]
        if crisis_type is not None:
            clauses.append("%s = ANY(crisis_categories)")
            params.append(crisis_type.value)
        params.append(limit)
        query = (
            f"SELECT * FROM crisis_resources WHERE {' AND '.join(clauses)} "
            "ORDER BY priority ASC, available_24x7 DESC LIMIT %s"
        )
        return self._fetch_all(query, tuple(params))

    def search(self, filters: ResourceSearch) -> List[Resource]:
        """All active resources matching the filters, unbounded."""
        if self._memory is not None:
            rows = self._memory.select(
                lambda r: r.is_active
                and (filters.crisis_type is None or r.serves(filters.crisis_type))
                and (filters.region is None or contains_ci(r.region, filters.region))
                and (filters.city is None or contains_ci(r.city, filters.city))
                and (filters.language is None or filters.language in r.languages)
                and (filters.available_24x7 is None or r.available_24x7 == filters.available_24x7)
            )
            return sorted(rows, key=_search_order)

        clauses = ["is_active"]
        params: List[Any] = []
        if filters.crisis_type is not None:
            clauses.append("%s = ANY(crisis_categories)")
            params.append(filters.crisis_type.value)
        if filters.region is not None:
            clauses.append("region ILIKE %s")
            params.append(like_contains(filters.region))
        if filters.city is not None:
            clauses.append("city ILIKE %s")
            params.append(like_contains(filters.city))
        if filters.language is not None:
            clauses.append("%s = ANY(languages)")
            params.append(filters.language)
        if filters.available_24x7 is not None:
            clauses.append("available_24x7 = %s")
            params.append(filters.available_24x7)
        query = (
            f"SELECT * FROM crisis_resources WHERE {' AND '.join(clauses)} "
            "ORDER BY priority ASC, is_verified DESC, average_rating DESC NULLS LAST"
        )
        return self._fetch_all(query, tuple(params))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def increment_usage(self, resource_ids: List[str]) -> int:
        """Add one to usage_count of every resource, in one transaction.

        Returns:
            Number of resources updated
        """
        if not resource_ids:
            return 0

        if self._memory is not None:
            return self._memory.update_many(
                resource_ids,
                lambda r: dataclasses.replace(r, usage_count=r.usage_count + 1),
            )

        try:
            with self.connection_manager.transaction() as cur:
                cur.execute(
                    "UPDATE crisis_resources SET usage_count = usage_count + 1 "
                    "WHERE id = ANY(%s)",
                    (list(resource_ids),),
                )
                return cur.rowcount
        except PsycopgError as e:
            self._raise_storage_error("increment_usage", e)

    def insert_many(self, resources: Iterable[Resource]) -> int:
        """Insert resources, skipping ids that already exist.

        Returns:
            Number of resources inserted
        """
        resources = list(resources)
        if self._memory is not None:
            inserted = 0
            for resource in resources:
                try:
                    self._memory.insert(resource.id, resource)
                    inserted += 1
                except ConflictError:
                    continue
            return inserted

        if not resources:
            return 0
        columns = list(self._entity_to_params(resources[0]).keys())
        placeholders = ", ".join(["%s"] * len(columns))
        query = (
            f"INSERT INTO crisis_resources ({', '.join(columns)}) "
            f"VALUES ({placeholders}) ON CONFLICT (id) DO NOTHING"
        )
        inserted = 0
        try:
            with self.connection_manager.transaction() as cur:
                for resource in resources:
                    params = self._entity_to_params(resource)
                    cur.execute(query, tuple(to_db_value(v) for v in params.values()))
                    inserted += cur.rowcount
        except PsycopgError as e:
            self._raise_storage_error("insert_many", e)
        return inserted

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Totals and breakdowns for the admin dashboard."""
        if self._memory is not None:
            rows = self._memory.select()
            total = len(rows)
            active = sum(1 for r in rows if r.is_active)
            by_type = Counter(r.channel_type.value for r in rows)
            by_region = Counter(r.region for r in rows if r.region is not None)
            verified = sum(1 for r in rows if r.is_verified)
        else:
            try:
                with self.connection_manager.transaction() as cur:
                    cur.execute(
                        "SELECT COUNT(*) AS total, "
                        "COUNT(*) FILTER (WHERE is_verified) AS verified, "
                        "COUNT(*) FILTER (WHERE is_active) AS active "
                        "FROM crisis_resources"
                    )
                    counts = cur.fetchone()
                    cur.execute(
                        "SELECT channel_type, COUNT(*) AS n FROM crisis_resources "
                        "GROUP BY channel_type"
                    )
                    by_type = {row["channel_type"]: row["n"] for row in cur.fetchall()}
                    cur.execute(
                        "SELECT region, COUNT(*) AS n FROM crisis_resources "
                        "WHERE region IS NOT NULL GROUP BY region"
                    )
                    by_region = {row["region"]: row["n"] for row in cur.fetchall()}
            except PsycopgError as e:
                self._raise_storage_error("stats", e)
            total, verified, active = counts["total"], counts["verified"], counts["active"]

        return {
            "total": total,
            "verified": verified,
            "active": active,
            "inactive": total - active,
            "by_type": [{"type": k, "count": v} for k, v in sorted(by_type.items())],
            "by_region": [{"region": k, "count": v} for k, v in sorted(by_region.items())],
        }
