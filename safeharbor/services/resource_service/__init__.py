"""Resource Service: support channels matched to incidents.

Components:
- matcher.py: ResourceMatcher (ranked lookup, national fallback, emergency directory)
- directory.py: ResourceDirectory (create/verify/deactivate, stats, bulk import)
- importer.py: ResourceImporter (tab-separated directory exports)
- repository.py: ResourceRepository (PostgreSQL or memory)
"""

from .directory import ResourceDirectory
from .importer import ImportSummary, ResourceImporter
from .matcher import EMERGENCY_CONTACTS, ResourceMatcher
from .repository import LocationFilter, ResourceRepository, ResourceSearch

__all__ = [
    "ResourceDirectory",
    "ImportSummary",
    "ResourceImporter",
    "EMERGENCY_CONTACTS",
    "ResourceMatcher",
    "LocationFilter",
    "ResourceRepository",
    "ResourceSearch",
]
