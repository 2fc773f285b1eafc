"""
Unit tests for typed value stores.

Tests cover:
- Per-kind validation and normalization
- Scalar writes (replace, orphan, clear)
- Array writes (diff, counts, duplicates)
- Constraint violations from the storage substrate
"""

import uuid
from decimal import Decimal

import pytest

from tests.helpers import (
    CONTAINS,
    ESTIMATE,
    EDITOR,
    EXTERNAL_ID,
    KIT,
    PRICE,
    PRIORITY,
    SEE_ALSO,
    TAGS,
    TITLE,
)
from ticketdb.ticketdb_core.errors import ConstraintViolation, ValidationError
from ticketdb.ticketdb_core.schema.types import StorageKind
from ticketdb.ticketdb_core.store.acls import AclStore
from ticketdb.ticketdb_core.store.entities import EntityStore
from ticketdb.ticketdb_core.store.values import ArrayDiff, value_store_for


class TestValidation:
    """Tests for value validation rules."""

    def test_text(self, catalog):
        store = value_store_for(StorageKind.TEXT)
        title = catalog.definition_of(TITLE)
        assert store.validate(title, "Kit") == "Kit"
        with pytest.raises(ValidationError):
            store.validate(title, 42)
        with pytest.raises(ValidationError, match="longer than"):
            store.validate(title, "x" * 201)

    def test_required_rejects_none(self, catalog):
        store = value_store_for(StorageKind.TEXT)
        with pytest.raises(ValidationError, match="required"):
            store.validate(catalog.definition_of(TITLE), None)

    def test_optional_accepts_none(self, catalog):
        store = value_store_for(StorageKind.INTEGER)
        assert store.validate(catalog.definition_of(PRIORITY), None) is None

    def test_integer_rejects_bool_and_overflow(self, catalog):
        store = value_store_for(StorageKind.INTEGER)
        priority = catalog.definition_of(PRIORITY)
        assert store.validate(priority, -5) == -5
        with pytest.raises(ValidationError):
            store.validate(priority, True)
        with pytest.raises(ValidationError, match="64-bit"):
            store.validate(priority, 2**63)

    def test_float_must_be_finite(self, catalog):
        store = value_store_for(StorageKind.FLOAT)
        estimate = catalog.definition_of(ESTIMATE)
        assert store.validate(estimate, 3) == 3.0
        with pytest.raises(ValidationError, match="finite"):
            store.validate(estimate, float("nan"))

    def test_amount_two_decimal_places(self, catalog):
        store = value_store_for(StorageKind.AMOUNT)
        price = catalog.definition_of(PRICE)
        assert store.validate(price, "12.5") == Decimal("12.50")
        assert store.validate(price, 3) == Decimal("3.00")
        with pytest.raises(ValidationError, match="two decimal places"):
            store.validate(price, Decimal("1.005"))
        with pytest.raises(ValidationError):
            store.validate(price, 1.5)
        with pytest.raises(ValidationError, match="not a decimal"):
            store.validate(price, "cheap")

    def test_amount_beyond_decimal_precision(self, catalog):
        store = value_store_for(StorageKind.AMOUNT)
        price = catalog.definition_of(PRICE)
        with pytest.raises(ValidationError, match="out of range"):
            store.validate(price, Decimal("1E+30"))
        with pytest.raises(ValidationError, match="out of range"):
            store.validate(price, "123456789012345678901234567890")

    def test_uuid_canonical_lowercase(self, catalog):
        store = value_store_for(StorageKind.UUID)
        external_id = catalog.definition_of(EXTERNAL_ID)
        value = uuid.uuid4()
        assert store.validate(external_id, str(value).upper()) == str(value)
        assert store.validate(external_id, value) == str(value)
        with pytest.raises(ValidationError, match="not a UUID"):
            store.validate(external_id, "nope")

    def test_relation_must_be_positive(self, catalog):
        store = value_store_for(StorageKind.ENTITY_RELATION)
        with pytest.raises(ValidationError):
            store.validate(catalog.definition_of(SEE_ALSO), 0)

    def test_array_items(self, catalog):
        store = value_store_for(StorageKind.ENTITY_RELATION)
        contains = catalog.definition_of(CONTAINS)
        assert store.validate(contains, [(7, 3), 8, (9, 0)]) == {7: 3, 8: 1}

    def test_array_rejects_duplicates(self, catalog):
        store = value_store_for(StorageKind.ENTITY_RELATION)
        with pytest.raises(ValidationError, match="duplicate"):
            store.validate(catalog.definition_of(CONTAINS), [(7, 1), (7, 2)])

    def test_array_rejects_negative_count(self, catalog):
        store = value_store_for(StorageKind.ENTITY_RELATION)
        with pytest.raises(ValidationError, match="invalid count"):
            store.validate(catalog.definition_of(CONTAINS), [(7, -1)])

    def test_uncounted_array_rejects_counts(self, catalog):
        store = value_store_for(StorageKind.CATEGORY_REF)
        tags = catalog.definition_of(TAGS)
        assert store.validate(tags, [1, (2, 1)]) == {1: 1, 2: 1}
        with pytest.raises(ValidationError, match="does not carry counts"):
            store.validate(tags, [(1, 2)])

    def test_wrong_store_for_field(self, catalog):
        with pytest.raises(ValueError):
            value_store_for(StorageKind.TEXT).validate(catalog.definition_of(PRIORITY), 1)


class TestValueWrites:
    """Tests for row-level writes."""

    @pytest.fixture
    def entity_id(self, database):
        with database.transaction() as conn:
            acl = AclStore().create(conn, {1: 0x1F})
            entity = EntityStore().insert(conn, KIT, acl.acl_id, EDITOR, now=1000)
        return entity.entity_id

    def test_write_one_round_trip(self, database, catalog, entity_id):
        store = value_store_for(StorageKind.TEXT)
        title = catalog.definition_of(TITLE)
        with database.transaction() as conn:
            old_row, new_row = store.write_one(conn, entity_id, title, "Kit")
        assert old_row is None
        assert new_row.value == "Kit"

        with database.connect() as conn:
            rows = store.read(conn, entity_id, TITLE)
        assert [(r.row_id, r.value) for r in rows] == [(new_row.row_id, "Kit")]

    def test_write_one_orphans_replaced_row(self, database, catalog, entity_id):
        store = value_store_for(StorageKind.AMOUNT)
        price = catalog.definition_of(PRICE)
        with database.transaction() as conn:
            _, first = store.write_one(conn, entity_id, price, "9.99")
            old_row, second = store.write_one(conn, entity_id, price, "12.00")

        assert old_row.row_id == first.row_id
        with database.connect() as conn:
            live = store.read(conn, entity_id, PRICE)
            orphan = store.read_row(conn, first.row_id)
        assert [r.value for r in live] == [Decimal("12.00")]
        assert orphan.is_orphan
        assert orphan.value == Decimal("9.99")

    def test_write_none_clears_value(self, database, catalog, entity_id):
        store = value_store_for(StorageKind.INTEGER)
        priority = catalog.definition_of(PRIORITY)
        with database.transaction() as conn:
            store.write_one(conn, entity_id, priority, 3)
            old_row, new_row = store.write_one(conn, entity_id, priority, None)
        assert old_row.value == 3
        assert new_row is None
        with database.connect() as conn:
            assert store.read(conn, entity_id, PRIORITY) == []

    def test_write_array_diff(self, database, catalog, entity_id):
        store = value_store_for(StorageKind.CATEGORY_REF)
        tags = catalog.definition_of(TAGS)
        with database.transaction() as conn:
            first = store.write_array(conn, entity_id, tags, [1, 2, 3])
            second = store.write_array(conn, entity_id, tags, [2, 3, 4])

        assert first == ArrayDiff(added=((1, 1), (2, 1), (3, 1)))
        assert second == ArrayDiff(added=((4, 1),), removed=(1,))
        with database.connect() as conn:
            assert store.current_value(conn, entity_id, tags) == [(2, 1), (3, 1), (4, 1)]

    def test_write_array_count_change(self, database, catalog, entity_id):
        store = value_store_for(StorageKind.ENTITY_RELATION)
        contains = catalog.definition_of(CONTAINS)
        with database.transaction() as conn:
            other = EntityStore().insert(conn, KIT, 1, EDITOR, now=1000)
            store.write_array(conn, entity_id, contains, [(other.entity_id, 3)])
            diff = store.write_array(conn, entity_id, contains, [(other.entity_id, 5)])
        assert diff == ArrayDiff(changed=((other.entity_id, 5),))

    def test_write_array_unchanged_is_empty(self, database, catalog, entity_id):
        store = value_store_for(StorageKind.CATEGORY_REF)
        tags = catalog.definition_of(TAGS)
        with database.transaction() as conn:
            store.write_array(conn, entity_id, tags, [1])
            assert store.write_array(conn, entity_id, tags, [(1, 1)]).is_empty

    def test_foreign_key_violation(self, database, catalog):
        store = value_store_for(StorageKind.TEXT)
        with pytest.raises(ConstraintViolation) as exc_info:
            with database.transaction() as conn:
                store.write_one(conn, 4242, catalog.definition_of(TITLE), "ghost")
        assert exc_info.value.table == "entity_texts"

    def test_orphan_referenced(self, database, catalog, entity_id):
        store = value_store_for(StorageKind.TEXT)
        title = catalog.definition_of(TITLE)
        with database.transaction() as conn:
            _, row = store.write_one(conn, entity_id, title, "Kit")
            conn.execute(
                "INSERT INTO changelog (field_id, subject_id, actor_id, chg_dt, new_value_ref) "
                "VALUES (?, ?, ?, ?, ?)",
                (TITLE, entity_id, EDITOR, 1000, row.row_id),
            )
            assert store.orphan_referenced(conn, entity_id) == 1
            assert store.read(conn, entity_id, TITLE) == []
            assert store.read_row(conn, row.row_id).is_orphan


class TestArrayDiff:
    """Tests for ArrayDiff."""

    def test_apply(self):
        diff = ArrayDiff(added=((3, 1),), removed=(1,), changed=((2, 5),))
        assert diff.apply({1: 1, 2: 2}) == {2: 5, 3: 1}

    def test_from_dict_accepts_json_lists(self):
        diff = ArrayDiff.from_dict({"added": [[7, 3]], "removed": [8], "changed": []})
        assert diff.added == ((7, 3),)
        assert diff.removed == (8,)
        assert diff.to_dict() == {"added": [[7, 3]], "removed": [8], "changed": []}
