"""
Field catalog for TicketDB.

The FieldCatalog is the central authority for field and entity type
definitions. It provides:
- Registration of field definitions and entity types
- Lookup by ID or name, by storage kind, and of reverse fields
- Per-type visible field resolution (including sub-facet fields)
- Catalog fingerprinting for consistency checks
- Freeze mechanism to prevent runtime modifications

Invariants:
    - Catalog is mutable while loading, frozen before serving
    - Once frozen, no new fields or types can be registered
    - field_id and type_id must be globally unique
    - Reverse field mappings are mutual and both sides are relation arrays

How to change safely:
    - Register all fields and types before calling freeze()
    - Never change the reverse mapping of a field on live data; the
      relation maintainer only trusts the current mapping and does not
      repair rows written under an older one

Example:
    >>> catalog = FieldCatalog()
    >>> catalog.register_field(field(1, "title", "text", required=True))
    >>> catalog.register_entity_type(EntityTypeDef(type_id=1, name="task", field_ids=(1,)))
    >>> catalog.freeze()
    >>> catalog.definition_of(1).name
    'title'
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from pathlib import Path
from typing import Dict, Iterator, Optional, Union

from ..errors import (
    CatalogError,
    CatalogFrozenError,
    DuplicateRegistrationError,
    NotFoundError,
)
from .types import EntityTypeDef, FieldDefinition, StorageKind

logger = logging.getLogger(__name__)


class FieldCatalog:
    """Registry of all field definitions and entity types.

    Thread-safety:
        - Registration is thread-safe (uses internal lock)
        - Lookups after freeze are lock-free
        - Freeze is atomic and irreversible

    Attributes:
        frozen: Whether the catalog is frozen (immutable)
        fingerprint: SHA-256 hash of the catalog (computed on freeze)
    """

    def __init__(self) -> None:
        """Initialize an empty, mutable catalog."""
        self._fields: Dict[int, FieldDefinition] = {}
        self._fields_by_name: Dict[str, FieldDefinition] = {}
        self._types: Dict[int, EntityTypeDef] = {}
        self._types_by_name: Dict[str, EntityTypeDef] = {}
        self._frozen = False
        self._fingerprint: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        """Whether the catalog is frozen."""
        return self._frozen

    @property
    def fingerprint(self) -> Optional[str]:
        """Catalog fingerprint (available after freeze)."""
        return self._fingerprint

    def register_field(self, definition: FieldDefinition) -> None:
        """Register a field definition.

        Args:
            definition: The field to register

        Raises:
            CatalogFrozenError: If catalog is frozen
            DuplicateRegistrationError: If field_id or name is already registered
        """
        with self._lock:
            if self._frozen:
                raise CatalogFrozenError(
                    f"Cannot register field '{definition.name}': catalog is frozen"
                )

            if definition.field_id in self._fields:
                existing = self._fields[definition.field_id]
                raise DuplicateRegistrationError(
                    f"field_id {definition.field_id} already registered as '{existing.name}'"
                )

            if definition.name in self._fields_by_name:
                existing = self._fields_by_name[definition.name]
                raise DuplicateRegistrationError(
                    f"Field name '{definition.name}' already registered with field_id {existing.field_id}"
                )

            self._fields[definition.field_id] = definition
            self._fields_by_name[definition.name] = definition
            logger.debug(
                f"Registered field: {definition.name} (field_id={definition.field_id}, "
                f"kind={definition.kind.value})"
            )

    def register_entity_type(self, entity_type: EntityTypeDef) -> None:
        """Register an entity type.

        Args:
            entity_type: The entity type to register

        Raises:
            CatalogFrozenError: If catalog is frozen
            DuplicateRegistrationError: If type_id or name is already registered
        """
        with self._lock:
            if self._frozen:
                raise CatalogFrozenError(
                    f"Cannot register entity type '{entity_type.name}': catalog is frozen"
                )

            if entity_type.type_id in self._types:
                existing = self._types[entity_type.type_id]
                raise DuplicateRegistrationError(
                    f"type_id {entity_type.type_id} already registered as '{existing.name}'"
                )

            if entity_type.name in self._types_by_name:
                existing = self._types_by_name[entity_type.name]
                raise DuplicateRegistrationError(
                    f"Entity type name '{entity_type.name}' already registered with type_id {existing.type_id}"
                )

            self._types[entity_type.type_id] = entity_type
            self._types_by_name[entity_type.name] = entity_type
            logger.debug(
                f"Registered entity type: {entity_type.name} (type_id={entity_type.type_id})"
            )

    def find(self, field_id_or_name: Union[int, str]) -> Optional[FieldDefinition]:
        """Get a field by ID or name.

        Args:
            field_id_or_name: field_id (int) or name (str)

        Returns:
            FieldDefinition if found, None otherwise
        """
        if isinstance(field_id_or_name, int):
            return self._fields.get(field_id_or_name)
        return self._fields_by_name.get(field_id_or_name)

    def definition_of(self, field_id_or_name: Union[int, str]) -> FieldDefinition:
        """Get a field by ID or name, raising if it does not exist.

        Raises:
            NotFoundError: If no such field is registered
        """
        definition = self.find(field_id_or_name)
        if definition is None:
            raise NotFoundError(
                f"Unknown field {field_id_or_name!r}", "field", field_id_or_name
            )
        return definition

    def fields_for_kind(self, kind: StorageKind) -> list[FieldDefinition]:
        """All fields stored in the given kind's value table, by display order."""
        return sorted(
            (f for f in self._fields.values() if f.kind == kind),
            key=lambda f: (f.ordering, f.field_id),
        )

    def reverse_of(self, field_id: int) -> Optional[int]:
        """The reverse field id of a relation field, or None."""
        definition = self._fields.get(field_id)
        if definition is None:
            return None
        return definition.reverse_of

    def entity_type(self, type_id_or_name: Union[int, str]) -> EntityTypeDef:
        """Get an entity type by ID or name.

        Raises:
            NotFoundError: If no such type is registered
        """
        if isinstance(type_id_or_name, int):
            entity_type = self._types.get(type_id_or_name)
        else:
            entity_type = self._types_by_name.get(type_id_or_name)
        if entity_type is None:
            raise NotFoundError(
                f"Unknown entity type {type_id_or_name!r}", "entity_type", type_id_or_name
            )
        return entity_type

    def visible_fields(self, type_id: int) -> list[FieldDefinition]:
        """Fields visible for entities of a type.

        A field is visible if the type lists it, or if it is a sub-facet of
        a listed field. Fields are returned by display order.
        """
        listed = set(self.entity_type(type_id).field_ids)
        visible = [
            f
            for f in self._fields.values()
            if f.field_id in listed or (f.parent_field_id is not None and f.parent_field_id in listed)
        ]
        return sorted(visible, key=lambda f: (f.ordering, f.field_id))

    def fields(self) -> Iterator[FieldDefinition]:
        """Iterate over all registered fields."""
        yield from self._fields.values()

    def entity_types(self) -> Iterator[EntityTypeDef]:
        """Iterate over all registered entity types."""
        yield from self._types.values()

    def freeze(self) -> str:
        """Validate and freeze the catalog.

        Returns:
            Catalog fingerprint string

        Raises:
            CatalogFrozenError: If already frozen
            CatalogError: If the catalog is inconsistent
        """
        with self._lock:
            if self._frozen:
                raise CatalogFrozenError("Catalog is already frozen")

            errors = self.validate_all()
            if errors:
                raise CatalogError(
                    f"Field catalog is inconsistent ({len(errors)} errors)", errors=errors
                )

            self._fingerprint = self._compute_fingerprint()
            self._frozen = True
            logger.info(
                f"Field catalog frozen with {len(self._fields)} fields, "
                f"{len(self._types)} entity types, fingerprint={self._fingerprint}"
            )
            return self._fingerprint

    def validate_all(self) -> list[str]:
        """Validate cross-field references.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        for f in self._fields.values():
            if f.reverse_of is not None:
                other = self._fields.get(f.reverse_of)
                if other is None:
                    errors.append(
                        f"Field '{f.name}' (field_id={f.field_id}) declares unknown "
                        f"reverse field {f.reverse_of}"
                    )
                elif other.reverse_of != f.field_id:
                    errors.append(
                        f"Reverse mapping of '{f.name}' -> '{other.name}' is not mutual"
                    )
                elif other.has_count != f.has_count:
                    errors.append(
                        f"Reverse fields '{f.name}' and '{other.name}' disagree on counts"
                    )
            if f.parent_field_id is not None and f.parent_field_id not in self._fields:
                errors.append(
                    f"Field '{f.name}' (field_id={f.field_id}) references unknown "
                    f"parent field {f.parent_field_id}"
                )

        for t in self._types.values():
            for field_id in t.field_ids:
                if field_id not in self._fields:
                    errors.append(
                        f"Entity type '{t.name}' (type_id={t.type_id}) lists unknown "
                        f"field_id {field_id}"
                    )

        return errors

    def _compute_fingerprint(self) -> str:
        """Compute SHA-256 fingerprint of the catalog.

        Returns:
            Fingerprint string in format 'sha256:<hash>'
        """
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        hash_bytes = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        return f"sha256:{hash_bytes}"

    def to_dict(self) -> dict:
        """Convert catalog to dictionary representation, sorted by ID."""
        return {
            "fields": [self._fields[fid].to_dict() for fid in sorted(self._fields.keys())],
            "entity_types": [self._types[tid].to_dict() for tid in sorted(self._types.keys())],
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        """Convert catalog to JSON string."""
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict, freeze: bool = True) -> FieldCatalog:
        """Create catalog from dictionary representation.

        Args:
            data: Dictionary with 'fields' and 'entity_types'
            freeze: Whether to freeze the catalog after loading

        Returns:
            New FieldCatalog
        """
        catalog = cls()
        for field_data in data.get("fields", []):
            catalog.register_field(FieldDefinition.from_dict(field_data))
        for type_data in data.get("entity_types", []):
            catalog.register_entity_type(EntityTypeDef.from_dict(type_data))
        if freeze:
            catalog.freeze()
        return catalog

    @classmethod
    def from_json(cls, json_str: str, freeze: bool = True) -> FieldCatalog:
        """Create catalog from JSON string."""
        return cls.from_dict(json.loads(json_str), freeze=freeze)


def load_catalog(path: Union[str, Path]) -> FieldCatalog:
    """Load and freeze a catalog from a JSON file.

    Args:
        path: Path to the catalog JSON file

    Returns:
        Frozen FieldCatalog
    """
    catalog_path = Path(path)
    catalog = FieldCatalog.from_json(catalog_path.read_text(encoding="utf-8"))
    logger.info(f"Loaded field catalog from {catalog_path}")
    return catalog
