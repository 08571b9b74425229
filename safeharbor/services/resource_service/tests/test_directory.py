"""Tests for ResourceDirectory administration and the TSV importer."""
from datetime import datetime

import pytest

from safeharbor.shared.errors import NotFoundError, ValidationError
from safeharbor.shared.models import CrisisType, Resource, ResourceChannel
from safeharbor.shared.utils import FrozenClock, configure_pii_salt
from safeharbor.services.resource_service.directory import ResourceDirectory
from safeharbor.services.resource_service.importer import (
    ResourceImporter,
    categories_for,
    clean_phone,
    slugify,
)
from safeharbor.services.resource_service.matcher import ResourceMatcher
from safeharbor.services.resource_service.repository import ResourceRepository


NOW = datetime(2026, 10, 19, 12, 0, 0)


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


@pytest.fixture
def repository():
    return ResourceRepository()


@pytest.fixture
def directory(repository):
    return ResourceDirectory(repository=repository, clock=FrozenClock(NOW))


class TestResourceAdministration:

    def test_create_starts_unverified_and_active(self, directory):
        resource = directory.create_resource(
            "Vandrevala Foundation",
            channel_type="chat",
            crisis_categories=["SUICIDE_RISK"],
            languages=["en", "hi"],
            phone="+919999666555",
        )

        assert resource.id.startswith("res_")
        assert resource.is_verified is False
        assert resource.is_active is True
        assert resource.channel_type == ResourceChannel.CHAT
        assert resource.crisis_categories == frozenset({"SUICIDE_RISK"})
        assert resource.created_at == NOW

    def test_create_rejects_unknown_field(self, directory):
        with pytest.raises(ValidationError):
            directory.create_resource("X", usage_count=100)

    def test_create_rejects_blank_name(self, directory):
        with pytest.raises(ValidationError):
            directory.create_resource("  ")

    def test_get_unknown_raises(self, directory):
        with pytest.raises(NotFoundError):
            directory.get_resource("missing")

    def test_update(self, directory):
        created = directory.create_resource("Line", id="line")

        updated = directory.update_resource("line", city="Pune", region="Maharashtra")

        assert updated.city == "Pune"
        assert updated.name == created.name

    def test_update_unknown_raises(self, directory):
        with pytest.raises(NotFoundError):
            directory.update_resource("missing", city="Pune")

    def test_verify_stamps_time(self, directory):
        directory.create_resource("Line", id="line")

        verified = directory.verify_resource("line", verified_by="admin_1")

        assert verified.is_verified is True
        assert verified.verified_at == NOW

    def test_deactivated_resource_not_matched(self, directory, repository):
        directory.create_resource("Line", id="line", crisis_categories=["BURNOUT"])
        directory.deactivate_resource("line")

        result = ResourceMatcher(repository=repository).for_crisis(CrisisType.BURNOUT)

        assert result == []

    def test_stats(self, directory):
        directory.create_resource("A", id="a", region="Goa")
        directory.create_resource("B", id="b", region="Goa", channel_type="CHAT")
        directory.create_resource("C", id="c")
        directory.verify_resource("a", verified_by="admin_1")
        directory.deactivate_resource("c")

        stats = directory.resource_stats()

        assert stats["total"] == 3
        assert stats["verified"] == 1
        assert stats["active"] == 2
        assert stats["inactive"] == 1
        assert stats["by_type"] == [
            {"type": "CHAT", "count": 1},
            {"type": "HELPLINE", "count": 2},
        ]
        assert stats["by_region"] == [{"region": "Goa", "count": 2}]

    def test_bulk_import_marks_verified_and_skips_duplicates(self, directory, repository):
        directory.create_resource("Existing", id="existing")
        incoming = [
            Resource(id="existing", name="Existing again", created_at=NOW),
            Resource(id="new_line", name="New line", created_at=NOW),
        ]

        inserted = directory.bulk_import(incoming)

        assert inserted == 1
        assert repository.get("existing").name == "Existing"
        assert repository.get("new_line").is_verified is True
        assert repository.get("new_line").verified_at == NOW


HEADER = "\t".join([
    "Name", "Type", "Phone", "WhatsApp", "Email", "Website", "State", "City",
    "24x7", "Operating_Hours", "Languages", "Specialization", "Notes",
])


def tsv(*rows):
    return "\n".join([HEADER] + ["\t".join(r) for r in rows]) + "\n"


class TestImporterHelpers:

    def test_slugify(self):
        assert slugify("Tele MANAS (Govt. of India)") == "tele-manas-govt-of-india"

    @pytest.mark.parametrize("raw,expected", [
        ("1800-891-4416", "18008914416"),
        ("+91 (22) 2754 6669", "+912227546669"),
        ("N/A", None),
        ("", None),
        (None, None),
    ])
    def test_clean_phone(self, raw, expected):
        assert clean_phone(raw) == expected

    def test_categories_from_type_and_specialization(self):
        categories = categories_for("National Helpline", "Suicide prevention, Self-harm")

        assert categories == [
            "MENTAL_HEALTH", "SUICIDE_PREVENTION", "SUICIDE_RISK", "SELF_HARM",
        ]

    def test_unknown_type_defaults_to_general(self):
        assert categories_for("Something else", "") == ["GENERAL_COUNSELING"]


class TestResourceImporter:

    def test_import_rows(self, directory, repository):
        content = tsv(
            ["Tele MANAS", "National Helpline", "14416", "No", "N/A", "https://telemanas.in",
             "All", "All", "Yes", "24x7", "English, Hindi", "Suicide prevention", "Govt line"],
            ["Pune Parents", "Parent Support Group", "020-1234 5678", "+91 98220 00000",
             "help@example.org", "N/A", "Maharashtra", "Pune", "No", "10am-6pm", "",
             "Autism", "N/A"],
            ["No Phone Org", "NGO", "N/A", "No", "N/A", "N/A", "Goa", "Panaji", "No",
             "N/A", "English", "", ""],
        )

        summary = ResourceImporter(directory).import_text(content)

        assert summary.imported == 2
        assert summary.skipped == 1
        assert summary.failed == 0

        national = repository.get("tele-manas")
        assert national.region is None
        assert national.city is None
        assert national.priority == 1
        assert national.available_24x7 is True
        assert national.operating_hours is None
        assert national.whatsapp is None
        assert national.languages == frozenset({"English", "Hindi"})
        assert national.is_verified is True
        assert "SUICIDE_RISK" in national.crisis_categories

        regional = repository.get("pune-parents")
        assert regional.region == "Maharashtra"
        assert regional.city == "Pune"
        assert regional.priority == 10
        assert regional.channel_type == ResourceChannel.CHAT
        assert regional.phone == "02012345678"
        assert regional.whatsapp == "+919822000000"
        assert regional.languages == frozenset({"en"})
        assert regional.operating_hours == "10am-6pm"
        assert regional.description is None
        assert regional.crisis_categories == frozenset({"PARENT_SUPPORT", "AUTISM_SUPPORT"})

    def test_import_file(self, directory, repository, tmp_path):
        path = tmp_path / "resources.tsv"
        path.write_text(tsv(
            ["Kiran", "National Helpline", "1800-599-0019", "No", "N/A", "N/A",
             "All", "All", "Yes", "24x7", "English", "Suicide", "N/A"],
        ))

        summary = ResourceImporter(directory).import_file(path)

        assert summary.imported == 1
        assert repository.get("kiran").phone == "18005990019"
