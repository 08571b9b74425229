"""Resource matching for incidents.

Ranks active support resources for a crisis type near the subject, in
their language, falling back to verified national resources when
nothing local matches.
"""
import logging
from typing import Any, Dict, List, Optional

from safeharbor.shared.models import CrisisType, Resource, parse_location
from .repository import LocationFilter, ResourceRepository, ResourceSearch

logger = logging.getLogger(__name__)


# Fixed directory shown with every incident response
EMERGENCY_CONTACTS: Dict[str, Dict[str, Any]] = {
    "ambulance": {
        "name": "National Emergency Ambulance",
        "number": "102",
        "alternate_number": "108",
        "available_24x7": True,
    },
    "police": {
        "name": "Police",
        "number": "100",
        "women_helpline": "1091",
        "available_24x7": True,
    },
    "child_helpline": {
        "name": "CHILDLINE India",
        "number": "1098",
        "available_24x7": True,
    },
    "mental_health": {
        "name": "KIRAN Mental Health Helpline",
        "number": "1800-599-0019",
        "available_24x7": True,
        "languages": ["Hindi", "English", "Tamil", "Telugu", "Marathi"],
    },
}


class ResourceMatcher:
    """Ranks support resources for a crisis."""

    def __init__(
        self,
        repository: Optional[ResourceRepository] = None,
        default_country: str = "IN",
    ):
        """Initialize matcher.

        Args:
            repository: Resource store (in-memory by default)
            default_country: Country whose region-less resources are national
        """
        self.repository = repository or ResourceRepository()
        self.default_country = default_country

    def for_crisis(
        self,
        crisis_type: CrisisType,
        location: Optional[str] = None,
        language: Optional[str] = None,
        limit: int = 5,
    ) -> List[Resource]:
        """Best resources for a crisis type near a location.

        Args:
            crisis_type: Type of crisis
            location: "city, region" (region optional)
            language: Required language code
            limit: Maximum resources to return

        Returns:
            Ranked resources; national fallback when nothing matched

        Logs:
            - RESOURCES_MATCHED: After a primary-path match
            - RESOURCES_NATIONAL_FALLBACK: When falling back
        """
        city, region = parse_location(location)
        location_filter = None
        if city or region:
            location_filter = LocationFilter(
                city=city, region=region, country=self.default_country
            )

        resources = self.repository.find_for_crisis(
            crisis_type, location=location_filter, language=language, limit=limit
        )

        if not resources:
            logger.info(
                "RESOURCES_NATIONAL_FALLBACK",
                extra={
                    "crisis_type": crisis_type.value,
                    "has_location": location_filter is not None,
                    "language": language,
                }
            )
            return self.national_resources(crisis_type, limit)

        self._record_usage(resources)

        logger.info(
            "RESOURCES_MATCHED",
            extra={
                "crisis_type": crisis_type.value,
                "resource_count": len(resources),
                "limit": limit,
            }
        )
        return resources

    def national_resources(
        self,
        crisis_type: Optional[CrisisType] = None,
        limit: int = 5,
    ) -> List[Resource]:
        """Verified national resources, lowest priority number first."""
        return self.repository.find_national(
            self.default_country, crisis_type=crisis_type, limit=limit
        )

    def search(self, filters: ResourceSearch) -> List[Resource]:
        """Unbounded search: priority asc, verified first, best rated first."""
        return self.repository.search(filters)

    def _record_usage(self, resources: List[Resource]) -> None:
        """Bump usage counters. Never raises."""
        try:
            self.repository.increment_usage([r.id for r in resources])
        except Exception as e:
            logger.error(
                "RESOURCE_USAGE_INCREMENT_FAILED",
                extra={
                    "resource_count": len(resources),
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )

    @staticmethod
    def emergency_contacts() -> Dict[str, Dict[str, Any]]:
        """The fixed emergency directory."""
        return {key: dict(value) for key, value in EMERGENCY_CONTACTS.items()}

    @staticmethod
    def format_emergency_contacts(
        contacts: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> List[Dict[str, Any]]:
        """Flatten the directory to [{name, number, available_24x7}]."""
        contacts = contacts if contacts is not None else EMERGENCY_CONTACTS
        return [
            {
                "name": contact["name"],
                "number": contact.get("number") or contact.get("alternate_number"),
                "available_24x7": contact["available_24x7"],
            }
            for contact in contacts.values()
        ]
