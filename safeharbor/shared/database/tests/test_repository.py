"""Tests for base repository pattern and the in-memory table."""
import threading
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional
from unittest.mock import MagicMock

import pytest
from psycopg2 import OperationalError
from psycopg2 import errors as pg_errors
from psycopg2.extras import Json

from safeharbor.shared.errors import ConflictError, NotFoundError, SafeHarborError
from safeharbor.shared.models import CrisisType
from safeharbor.shared.utils import configure_pii_salt
from safeharbor.shared.database import (
    BaseRepository,
    MemoryTable,
    RepositoryError,
    like_contains,
    to_db_value,
)


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


@dataclass(frozen=True)
class Widget:
    id: str
    label: str
    count: int = 0
    owner: Optional[str] = None


class WidgetRepository(BaseRepository[Widget]):
    """Concrete repository with `owner` as a second unique key."""

    def __init__(self, connection_manager=None):
        super().__init__("widgets", connection_manager)

    def _row_to_entity(self, row: Dict[str, Any]) -> Widget:
        return Widget(id=row["id"], label=row["label"], count=row["count"], owner=row.get("owner"))

    def _entity_to_params(self, entity: Widget) -> Dict[str, Any]:
        return {"id": entity.id, "label": entity.label, "count": entity.count, "owner": entity.owner}

    def _conflicts_with(self, existing: Widget, new: Widget) -> bool:
        return new.owner is not None and existing.owner == new.owner


def mock_database(fetchone=None, fetchall=None):
    cursor = MagicMock()
    cursor.fetchone.return_value = fetchone
    cursor.fetchall.return_value = fetchall or []
    manager = MagicMock()
    manager.transaction.return_value.__enter__.return_value = cursor
    return manager, cursor


class TestToDbValue:

    def test_enum_becomes_value(self):
        assert to_db_value(CrisisType.BURNOUT) == "BURNOUT"

    def test_sets_become_sorted_lists(self):
        assert to_db_value(frozenset({CrisisType.SELF_HARM, CrisisType.BURNOUT})) == [
            "BURNOUT", "SELF_HARM",
        ]

    def test_tuples_become_lists(self):
        assert to_db_value(("a", "b")) == ["a", "b"]

    def test_dicts_become_json(self):
        assert isinstance(to_db_value({"a": 1}), Json)

    def test_scalars_pass_through(self):
        assert to_db_value(5) == 5
        assert to_db_value(None) is None


class TestLikeContains:

    def test_plain_text_wrapped(self):
        assert like_contains("Pune") == "%Pune%"

    @pytest.mark.parametrize("text, pattern", [
        ("50%", "%50\\%%"),
        ("new_delhi", "%new\\_delhi%"),
        ("a\\b", "%a\\\\b%"),
    ])
    def test_metacharacters_escaped(self, text, pattern):
        assert like_contains(text) == pattern


class TestMemoryBackend:

    def test_insert_and_get(self):
        repo = WidgetRepository()
        repo.insert(Widget("w1", "first"))

        assert repo.get("w1").label == "first"
        assert repo.find_by_id("missing") is None
        assert repo.count() == 1

    def test_duplicate_id_conflicts(self):
        repo = WidgetRepository()
        repo.insert(Widget("w1", "first"))

        with pytest.raises(ConflictError):
            repo.insert(Widget("w1", "again"))

    def test_secondary_unique_key_conflicts(self):
        repo = WidgetRepository()
        repo.insert(Widget("w1", "first", owner="alice"))

        with pytest.raises(ConflictError):
            repo.insert(Widget("w2", "second", owner="alice"))
        repo.insert(Widget("w3", "third", owner="bob"))

    def test_get_missing_raises(self):
        with pytest.raises(NotFoundError):
            WidgetRepository().get("missing")

    def test_update_fields(self):
        repo = WidgetRepository()
        repo.insert(Widget("w1", "first"))

        updated = repo.update_fields("w1", count=4)

        assert updated.count == 4
        assert repo.get("w1").count == 4

    def test_update_fields_missing_raises(self):
        with pytest.raises(NotFoundError):
            WidgetRepository().update_fields("missing", count=1)


class TestMemoryTable:

    def test_declining_mutator_leaves_row(self):
        table = MemoryTable("widgets")
        table.insert("w1", Widget("w1", "first"))

        assert table.update("w1", lambda w: None) is None
        assert table.get("w1").label == "first"

    def test_update_many_skips_missing(self):
        table = MemoryTable("widgets")
        table.insert("w1", Widget("w1", "first"))

        changed = table.update_many(["w1", "missing"], lambda w: replace(w, count=w.count + 1))

        assert changed == 1
        assert table.get("w1").count == 1

    def test_update_is_atomic(self):
        table = MemoryTable("widgets")
        table.insert("w1", Widget("w1", "counter"))

        def bump():
            for _ in range(200):
                table.update("w1", lambda w: replace(w, count=w.count + 1))

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert table.get("w1").count == 800


class TestPostgresBackend:

    def test_insert_builds_returning_query(self):
        manager, cursor = mock_database(
            fetchone={"id": "w1", "label": "first", "count": 0, "owner": None}
        )
        repo = WidgetRepository(connection_manager=manager)

        created = repo.insert(Widget("w1", "first"))

        query, params = cursor.execute.call_args[0]
        assert query.startswith("INSERT INTO widgets (id, label, count, owner)")
        assert query.endswith("RETURNING *")
        assert params == ("w1", "first", 0, None)
        assert created == Widget("w1", "first")

    def test_unique_violation_becomes_conflict(self):
        manager, cursor = mock_database()
        cursor.execute.side_effect = pg_errors.UniqueViolation("duplicate key")
        repo = WidgetRepository(connection_manager=manager)

        with pytest.raises(ConflictError):
            repo.insert(Widget("w1", "first"))

    def test_driver_error_becomes_repository_error(self):
        manager, cursor = mock_database()
        cursor.execute.side_effect = OperationalError("server closed the connection")
        repo = WidgetRepository(connection_manager=manager)

        with pytest.raises(RepositoryError) as exc_info:
            repo.find_by_id("w1")
        assert isinstance(exc_info.value, SafeHarborError)

    def test_update_fields_missing_row(self):
        manager, cursor = mock_database(fetchone=None)
        repo = WidgetRepository(connection_manager=manager)

        with pytest.raises(NotFoundError):
            repo.update_fields("w1", count=3)

        query, params = cursor.execute.call_args[0]
        assert query == "UPDATE widgets SET count = %s WHERE id = %s RETURNING *"
        assert params == (3, "w1")

    def test_count(self):
        manager, _ = mock_database(fetchone={"n": 7})

        assert WidgetRepository(connection_manager=manager).count() == 7
