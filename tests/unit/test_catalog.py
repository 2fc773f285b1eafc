"""
Unit tests for the field catalog and its types.

Tests cover:
- FieldDefinition validation
- Registration, duplicates and freezing
- Reverse mapping validation
- Visible fields and sub-facets
- Serialization and fingerprinting
"""

import json

import pytest

from tests.helpers import CONTAINED_IN, CONTAINS, KIT, PART, TITLE, TITLE_NOTE, build_catalog
from ticketdb.ticketdb_core.errors import (
    CatalogError,
    CatalogFrozenError,
    DuplicateRegistrationError,
    NotFoundError,
)
from ticketdb.ticketdb_core.schema.catalog import FieldCatalog, load_catalog
from ticketdb.ticketdb_core.schema.types import (
    ChangeEvent,
    EntityTypeDef,
    FieldDefinition,
    FieldFlag,
    StorageKind,
    field,
)


class TestFieldDefinition:
    """Tests for FieldDefinition validation."""

    def test_field_helper_sets_flags(self):
        definition = field(7, "contains", "relation", array=True, counted=True, reverse_of=8)
        assert definition.kind == StorageKind.ENTITY_RELATION
        assert definition.is_array
        assert definition.has_count
        assert definition.flags == FieldFlag.IS_ARRAY | FieldFlag.ARRAY_HAS_COUNT

    def test_field_id_must_be_positive(self):
        with pytest.raises(ValueError, match="positive"):
            field(0, "bad", "text")

    def test_count_requires_array(self):
        with pytest.raises(ValueError, match="ARRAY_HAS_COUNT"):
            field(1, "bad", "int", counted=True)

    def test_text_cannot_be_array(self):
        with pytest.raises(ValueError, match="cannot be an array"):
            field(1, "bad", "text", array=True)

    def test_reverse_requires_relation_array(self):
        with pytest.raises(ValueError, match="relation array"):
            field(1, "bad", "relation", reverse_of=2)

    def test_max_length_only_for_text(self):
        with pytest.raises(ValueError, match="max_length"):
            field(1, "bad", "int", max_length=5)

    def test_invalid_kind(self):
        with pytest.raises(ValueError, match="Invalid storage kind"):
            field(1, "bad", "blob")

    def test_round_trip_dict(self):
        definition = field(3, "estimate", "float", sortable=True, ordering=2.5, description="Hours")
        assert FieldDefinition.from_dict(definition.to_dict()) == definition

    def test_integer_ordering_serializes_like_float(self):
        definition = field(2, "priority", "int", ordering=2)
        assert isinstance(definition.ordering, float)
        restored = FieldDefinition.from_dict(json.loads(json.dumps(definition.to_dict())))
        assert json.dumps(restored.to_dict()) == json.dumps(definition.to_dict())

    def test_flag_names(self):
        flags = FieldFlag.from_names(["required", "create_only"])
        assert flags == FieldFlag.REQUIRED | FieldFlag.CREATE_ONLY
        assert sorted(flags.to_names()) == ["create_only", "required"]

    def test_unknown_flag_name(self):
        with pytest.raises(ValueError, match="Invalid field flag"):
            FieldFlag.from_names(["sticky"])


class TestChangeEvent:
    """Tests for changelog event ids."""

    def test_event_ids_are_negative(self):
        assert all(event.value < 0 for event in ChangeEvent)

    def test_is_event(self):
        assert ChangeEvent.is_event(-200)
        assert not ChangeEvent.is_event(1)


class TestFieldCatalog:
    """Tests for FieldCatalog."""

    def test_lookup_by_id_and_name(self):
        catalog = build_catalog()
        assert catalog.definition_of(TITLE).name == "title"
        assert catalog.definition_of("contains").field_id == CONTAINS
        assert catalog.find(999) is None

    def test_definition_of_unknown_raises(self):
        catalog = build_catalog()
        with pytest.raises(NotFoundError):
            catalog.definition_of(999)

    def test_reverse_of(self):
        catalog = build_catalog()
        assert catalog.reverse_of(CONTAINS) == CONTAINED_IN
        assert catalog.reverse_of(CONTAINED_IN) == CONTAINS
        assert catalog.reverse_of(TITLE) is None
        assert catalog.reverse_of(999) is None

    def test_fields_for_kind_sorted_by_ordering(self):
        catalog = build_catalog()
        texts = catalog.fields_for_kind(StorageKind.TEXT)
        assert [f.name for f in texts] == ["title", "title_note", "serial"]

    def test_visible_fields_include_sub_facets(self):
        catalog = build_catalog()
        kit_fields = [f.field_id for f in catalog.visible_fields(KIT)]
        assert TITLE_NOTE in kit_fields
        assert kit_fields.index(TITLE) < kit_fields.index(TITLE_NOTE)
        part_fields = {f.field_id for f in catalog.visible_fields(PART)}
        assert CONTAINS not in part_fields
        assert CONTAINED_IN in part_fields

    def test_unknown_entity_type(self):
        catalog = build_catalog()
        with pytest.raises(NotFoundError):
            catalog.entity_type(42)
        assert catalog.entity_type("part").type_id == PART

    def test_duplicate_field_id(self):
        catalog = FieldCatalog()
        catalog.register_field(field(1, "title", "text"))
        with pytest.raises(DuplicateRegistrationError):
            catalog.register_field(field(1, "other", "text"))

    def test_duplicate_field_name(self):
        catalog = FieldCatalog()
        catalog.register_field(field(1, "title", "text"))
        with pytest.raises(DuplicateRegistrationError):
            catalog.register_field(field(2, "title", "int"))

    def test_frozen_rejects_registration(self):
        catalog = build_catalog()
        assert catalog.frozen
        with pytest.raises(CatalogFrozenError):
            catalog.register_field(field(100, "late", "text"))
        with pytest.raises(CatalogFrozenError):
            catalog.freeze()

    def test_freeze_rejects_one_sided_reverse(self):
        catalog = FieldCatalog()
        catalog.register_field(field(1, "parents", "relation", array=True, reverse_of=2))
        catalog.register_field(field(2, "children", "relation", array=True))
        with pytest.raises(CatalogError) as exc_info:
            catalog.freeze()
        assert any("not mutual" in e for e in exc_info.value.errors)

    def test_freeze_rejects_count_mismatch(self):
        catalog = FieldCatalog()
        catalog.register_field(field(1, "parents", "relation", array=True, counted=True, reverse_of=2))
        catalog.register_field(field(2, "children", "relation", array=True, reverse_of=1))
        with pytest.raises(CatalogError) as exc_info:
            catalog.freeze()
        assert any("counts" in e for e in exc_info.value.errors)

    def test_freeze_rejects_unknown_type_field(self):
        catalog = FieldCatalog()
        catalog.register_field(field(1, "title", "text"))
        catalog.register_entity_type(EntityTypeDef(type_id=1, name="task", field_ids=(1, 2)))
        with pytest.raises(CatalogError):
            catalog.freeze()
        assert not catalog.frozen

    def test_fingerprint_is_stable(self):
        first = build_catalog()
        second = FieldCatalog.from_json(first.to_json())
        assert first.fingerprint.startswith("sha256:")
        assert first.fingerprint == second.fingerprint

    def test_load_catalog(self, data_dir):
        path = f"{data_dir}/catalog.json"
        with open(path, "w", encoding="utf-8") as f:
            json.dump(build_catalog().to_dict(), f)

        catalog = load_catalog(path)
        assert catalog.frozen
        assert catalog.definition_of(CONTAINS).reverse_of == CONTAINED_IN
        assert [t.name for t in catalog.entity_types()] == ["kit", "part"]
