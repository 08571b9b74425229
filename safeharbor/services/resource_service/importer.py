"""Tab-separated resource directory importer.

Expected columns: Name, Type, Phone, WhatsApp, Email, Website, State,
City, 24x7, Operating_Hours, Languages, Specialization, Notes.
Rows with State "All" become national resources.
"""
import csv
import io
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from safeharbor.shared.models import Resource, ResourceChannel
from .directory import ResourceDirectory

logger = logging.getLogger(__name__)

_MISSING = {"", "N/A"}

TYPE_CHANNELS: Dict[str, ResourceChannel] = {
    "National Helpline": ResourceChannel.HELPLINE,
    "NGO": ResourceChannel.HELPLINE,
    "Emergency Service": ResourceChannel.HELPLINE,
    "LGBTQ+ Support": ResourceChannel.IN_PERSON,
    "Psychosocial Helpline": ResourceChannel.HELPLINE,
    "Hospital Psychiatric Emergency": ResourceChannel.IN_PERSON,
    "ADHD Support": ResourceChannel.IN_PERSON,
    "Parent Support Group": ResourceChannel.CHAT,
}

TYPE_CATEGORIES: Dict[str, Tuple[str, ...]] = {
    "National Helpline": ("MENTAL_HEALTH", "SUICIDE_PREVENTION"),
    "NGO": ("MENTAL_HEALTH",),
    "Emergency Service": ("MEDICAL_EMERGENCY",),
    "LGBTQ+ Support": ("LGBTQ_SUPPORT",),
    "Psychosocial Helpline": ("GENERAL_COUNSELING",),
    "Hospital Psychiatric Emergency": ("MEDICAL_EMERGENCY",),
    "ADHD Support": ("ADHD_SUPPORT",),
    "Parent Support Group": ("PARENT_SUPPORT",),
}

# (terms found in Specialization, categories they add)
SPECIALIZATION_CATEGORIES: Tuple[Tuple[Tuple[str, ...], Tuple[str, ...]], ...] = (
    (("suicide",), ("SUICIDE_PREVENTION", "SUICIDE_RISK")),
    (("autism",), ("AUTISM_SUPPORT",)),
    (("adhd",), ("ADHD_SUPPORT",)),
    (("child",), ("CHILD_CRISIS",)),
    (("women", "domestic abuse"), ("WOMEN_CRISIS",)),
    (("poison",), ("POISON_CONTROL",)),
    (("lgbtq",), ("LGBTQ_SUPPORT",)),
    (("parent",), ("PARENT_SUPPORT",)),
    (("panic",), ("PANIC_ATTACK",)),
    (("meltdown",), ("MELTDOWN",)),
    (("self-harm", "self harm"), ("SELF_HARM",)),
    (("burnout",), ("BURNOUT",)),
    (("family conflict",), ("FAMILY_CONFLICT",)),
)

NATIONAL_PRIORITY = 1
REGIONAL_PRIORITY = 10


@dataclass
class ImportSummary:
    """Outcome of one import run."""
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[Tuple[str, str]] = field(default_factory=list)

    def to_dict(self):
        return {
            "imported": self.imported,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": [{"name": n, "error": e} for n, e in self.errors],
        }


def slugify(name: str) -> str:
    """Lowercase, non-alphanumeric runs collapsed to "-"."""
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def clean_phone(value: Optional[str]) -> Optional[str]:
    """Keep digits and "+" only; None for missing values."""
    if value is None or value.strip() in _MISSING:
        return None
    cleaned = re.sub(r"[^\d+]", "", value)
    return cleaned or None


def _text(value: Optional[str]) -> Optional[str]:
    if value is None or value.strip() in _MISSING:
        return None
    return value.strip()


def _split_list(value: Optional[str]) -> List[str]:
    if value is None or value.strip() in _MISSING:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def categories_for(type_name: str, specialization: Optional[str]) -> List[str]:
    """Crisis categories for a row, type-derived first, deduplicated."""
    categories: List[str] = list(TYPE_CATEGORIES.get(type_name, ()))
    spec = (specialization or "").lower()
    for terms, added in SPECIALIZATION_CATEGORIES:
        if any(term in spec for term in terms):
            categories.extend(c for c in added if c not in categories)
    return categories or ["GENERAL_COUNSELING"]


def row_to_resource(row: Dict[str, str], now: datetime, country: str = "IN") -> Optional[Resource]:
    """Build a Resource from one directory row.

    Returns:
        The resource, or None when the row has no usable phone number
    """
    name = (row.get("Name") or "").strip()
    phone = clean_phone(row.get("Phone"))
    if not name or phone is None:
        return None

    type_name = (row.get("Type") or "").strip()
    state = _text(row.get("State"))
    national = state is None or state == "All"
    city = _text(row.get("City"))
    whatsapp = row.get("WhatsApp")
    hours = _text(row.get("Operating_Hours"))

    return Resource(
        id=slugify(name),
        name=name,
        channel_type=TYPE_CHANNELS.get(type_name, ResourceChannel.HELPLINE),
        crisis_categories=frozenset(categories_for(type_name, row.get("Specialization"))),
        phone=phone,
        whatsapp=None if (whatsapp or "").strip() == "No" else clean_phone(whatsapp),
        email=_text(row.get("Email")),
        website=_text(row.get("Website")),
        available_24x7=(row.get("24x7") or "").strip() == "Yes",
        operating_hours=None if hours == "24x7" else hours,
        languages=frozenset(_split_list(row.get("Languages")) or ["en"]),
        country=country,
        region=None if national else state,
        city=None if national or city == "All" else city,
        priority=NATIONAL_PRIORITY if national else REGIONAL_PRIORITY,
        is_verified=True,
        is_active=True,
        description=_text(row.get("Notes")),
        verified_at=now,
        created_at=now,
    )


def parse_rows(content: str) -> List[Dict[str, str]]:
    """Parse tab-separated text with a header row."""
    reader = csv.DictReader(io.StringIO(content), delimiter="\t")
    rows = []
    for raw in reader:
        # Surplus cells land under the None key; ignore them
        row = {k.strip(): (v or "").strip() for k, v in raw.items() if k is not None}
        if any(row.values()):
            rows.append(row)
    return rows


class ResourceImporter:
    """Loads a directory export into the resource store."""

    def __init__(self, directory: ResourceDirectory):
        self.directory = directory

    def import_text(self, content: str) -> ImportSummary:
        """Import every row of a tab-separated export.

        Logs:
            - RESOURCE_IMPORT_ROW_SKIPPED: Row without a phone number
            - RESOURCE_IMPORT_COMPLETED: Summary counts
        """
        summary = ImportSummary()
        now = self.directory.clock.now()
        resources: List[Resource] = []

        for row in parse_rows(content):
            name = row.get("Name", "")
            try:
                resource = row_to_resource(row, now)
            except Exception as e:
                summary.failed += 1
                summary.errors.append((name, str(e)))
                logger.error(
                    "RESOURCE_IMPORT_ROW_FAILED",
                    extra={"resource_name": name, "error": str(e)}
                )
                continue
            if resource is None:
                summary.skipped += 1
                logger.warning("RESOURCE_IMPORT_ROW_SKIPPED", extra={"resource_name": name})
                continue
            resources.append(resource)

        summary.imported = self.directory.bulk_import(resources)

        logger.info("RESOURCE_IMPORT_COMPLETED", extra=summary.to_dict())
        return summary

    def import_file(self, path: Union[str, Path]) -> ImportSummary:
        with open(path, "r", encoding="utf-8") as f:
            return self.import_text(f.read())
