"""Administrative operations on the resource directory."""
import dataclasses
import logging
import uuid
from typing import Any, Dict, Iterable, Optional

from safeharbor.shared.errors import ValidationError
from safeharbor.shared.models import Resource, ResourceChannel
from safeharbor.shared.utils import Clock, SystemClock
from .repository import ResourceRepository

logger = logging.getLogger(__name__)

# Fields an administrator may edit after creation
EDITABLE_FIELDS = frozenset({
    "name", "channel_type", "crisis_categories", "phone", "whatsapp",
    "email", "website", "available_24x7", "operating_hours", "languages",
    "country", "region", "city", "priority", "description",
})


class ResourceDirectory:
    """Create, edit, verify and retire resources."""

    def __init__(
        self,
        repository: Optional[ResourceRepository] = None,
        clock: Optional[Clock] = None,
    ):
        self.repository = repository or ResourceRepository()
        self.clock = clock or SystemClock()

    def create_resource(self, name: str, **fields: Any) -> Resource:
        """Add a resource. New resources start unverified and active.

        Raises:
            ValidationError: If name is blank or a field is not editable
        """
        if not name or not name.strip():
            raise ValidationError("Resource name is required")
        self._check_fields(fields)
        fields = _normalize(fields)
        resource_id = fields.pop("id", None) or f"res_{uuid.uuid4().hex[:16]}"

        resource = Resource(
            id=resource_id,
            name=name.strip(),
            created_at=self.clock.now(),
            **fields,
        )
        resource = dataclasses.replace(resource, is_verified=False, is_active=True)
        created = self.repository.insert(resource)

        logger.info(
            "RESOURCE_CREATED",
            extra={"resource_id": created.id, "channel_type": created.channel_type.value}
        )
        return created

    def get_resource(self, resource_id: str) -> Resource:
        """Raises NotFoundError for an unknown id."""
        return self.repository.get(resource_id)

    def update_resource(self, resource_id: str, **fields: Any) -> Resource:
        """Edit descriptive fields of a resource.

        Raises:
            NotFoundError: If the resource does not exist
            ValidationError: If a field is not editable
        """
        self._check_fields(fields)
        fields = _normalize(fields)
        fields.pop("id", None)
        updated = self.repository.update_fields(resource_id, **fields)
        logger.info(
            "RESOURCE_UPDATED",
            extra={"resource_id": resource_id, "fields": sorted(fields)}
        )
        return updated

    def verify_resource(self, resource_id: str, verified_by: str) -> Resource:
        updated = self.repository.update_fields(
            resource_id, is_verified=True, verified_at=self.clock.now()
        )
        logger.info(
            "RESOURCE_VERIFIED",
            extra={"resource_id": resource_id, "verified_by": verified_by}
        )
        return updated

    def deactivate_resource(self, resource_id: str) -> Resource:
        updated = self.repository.update_fields(resource_id, is_active=False)
        logger.info("RESOURCE_DEACTIVATED", extra={"resource_id": resource_id})
        return updated

    def resource_stats(self) -> Dict[str, Any]:
        return self.repository.stats()

    def bulk_import(self, resources: Iterable[Resource]) -> int:
        """Insert vetted resources as verified and active.

        Resources whose id already exists are skipped.

        Returns:
            Number of resources inserted
        """
        now = self.clock.now()
        prepared = [
            dataclasses.replace(
                r,
                is_verified=True,
                is_active=True,
                verified_at=r.verified_at or now,
            )
            for r in resources
        ]
        inserted = self.repository.insert_many(prepared)
        logger.info(
            "RESOURCES_BULK_IMPORTED",
            extra={"submitted": len(prepared), "inserted": inserted}
        )
        return inserted

    @staticmethod
    def _check_fields(fields: Dict[str, Any]) -> None:
        unknown = set(fields) - EDITABLE_FIELDS - {"id"}
        if unknown:
            raise ValidationError(f"Fields not editable: {', '.join(sorted(unknown))}")


def _normalize(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Coerce request values (lists, strings) to model types."""
    normalized = dict(fields)
    for key in ("crisis_categories", "languages"):
        if key in normalized and normalized[key] is not None:
            normalized[key] = frozenset(normalized[key])
    if isinstance(normalized.get("channel_type"), str):
        try:
            normalized["channel_type"] = ResourceChannel(normalized["channel_type"].upper())
        except ValueError:
            raise ValidationError(f"Unknown channel type: {normalized['channel_type']}")
    return normalized
