"""
Core type definitions for the TicketDB field catalog.

This module defines the building blocks of the attribute model:
- StorageKind: Closed set of storage kinds; each maps to one value table
- FieldFlag: Behaviour flags of a field
- FieldDefinition: One configurable entity field
- EntityTypeDef: An entity type and the fields visible for it
- ChangeEvent: Changelog field ids for events that carry no field value

Invariants:
    - field_id must be a positive integer (1-65535); negative ids are
      reserved for ChangeEvent entries in the changelog
    - type_id must be a positive integer (1-2^31)
    - A field's kind fully determines the value table its rows live in
    - Names are labels only; IDs are canonical

How to change safely:
    - Add new storage kinds by extending StorageKind and the kind table in
      store/values.py, never by subclassing stores
    - Never renumber ChangeEvent members; they are persisted
    - Add new flags at the next free bit

Example:
    >>> from ticketdb.ticketdb_core.schema.types import EntityTypeDef, field
    >>> contains = field(10, "contains", "relation", array=True, counted=True, reverse_of=11)
    >>> contained_in = field(11, "contained_in", "relation", array=True, counted=True, reverse_of=10)
    >>> Kit = EntityTypeDef(type_id=1, name="kit", field_ids=(1, 10))
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field as dataclass_field
from enum import Enum, IntEnum, IntFlag
from typing import Any

# Subject id used for changelog entries that do not describe an entity
# (account, group and deletion events).
SYSTEM_SUBJECT_ID = 0


class StorageKind(Enum):
    """Supported storage kinds.

    Each kind has exactly one value table and one validation rule set.
    """

    TEXT = "text"
    INTEGER = "int"
    FLOAT = "float"
    AMOUNT = "amount"  # Monetary amount, two decimal places
    UUID = "uuid"
    CATEGORY_REF = "category"  # Reference to a category id
    ENTITY_RELATION = "relation"  # Reference to another entity id

    @classmethod
    def from_str(cls, value: str) -> StorageKind:
        """Convert string representation to StorageKind.

        Args:
            value: String name of the storage kind

        Returns:
            Corresponding StorageKind enum value

        Raises:
            ValueError: If value is not a valid storage kind
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid storage kind '{value}'. Valid kinds: {valid}")


# Kinds whose fields may hold several values per entity.
ARRAY_CAPABLE_KINDS = frozenset(
    {StorageKind.INTEGER, StorageKind.CATEGORY_REF, StorageKind.ENTITY_RELATION}
)


class FieldFlag(IntFlag):
    """Behaviour flags for a field definition."""

    NONE = 0
    IS_ARRAY = 0x01  # Several values per entity
    ARRAY_HAS_COUNT = 0x02  # Each array value carries a count
    REQUIRED = 0x04  # Must be supplied on create, cannot be cleared
    SORTABLE = 0x08
    VISIBILITY_CONFIG = 0x10  # Visibility is configured per entity type
    CREATE_ONLY = 0x20  # Written on create, never updated afterwards

    @classmethod
    def from_names(cls, names: list[str]) -> FieldFlag:
        """Combine flags from their lowercase names."""
        result = cls.NONE
        for name in names:
            try:
                result |= cls[name.upper()]
            except KeyError:
                raise ValueError(f"Invalid field flag '{name}'") from None
        return result

    def to_names(self) -> list[str]:
        """List the lowercase names of the set flags."""
        return [f.name.lower() for f in FieldFlag if f is not FieldFlag.NONE and f in self]


class ChangeEvent(IntEnum):
    """Changelog field ids for events without field data.

    Entity events are logged with the entity id as subject; system events
    are logged with SYSTEM_SUBJECT_ID.
    """

    ENTITY_CREATED = -200  # subject = entity
    TEMPLATE_CREATED = -201  # subject = template, free_text = template name
    ACL_CHANGED = -202  # subject = entity, old/new refs = ACL ids
    ENTITY_DELETED = -143  # system; old_value_ref = deleted entity id

    @classmethod
    def is_event(cls, field_id: int) -> bool:
        return any(field_id == event.value for event in cls)


@dataclass(frozen=True)
class FieldDefinition:
    """Definition of a single entity field.

    Attributes:
        field_id: Stable numeric identifier (never changes, never reused)
        name: Human-readable name (can change, ID is canonical)
        kind: Storage kind; selects the value table
        flags: FieldFlag bits
        reverse_of: Field id this field is the reverse of (relations only)
        parent_field_id: Field this one is a sub-facet of
        ordering: Display order only
        max_length: Maximum length for TEXT values
        description: Human-readable description

    Invariants:
        - ARRAY_HAS_COUNT requires IS_ARRAY
        - IS_ARRAY only for INTEGER, CATEGORY_REF and ENTITY_RELATION
        - reverse_of requires an ENTITY_RELATION array field

    Example:
        >>> title = FieldDefinition(
        ...     field_id=1,
        ...     name="title",
        ...     kind=StorageKind.TEXT,
        ...     flags=FieldFlag.REQUIRED | FieldFlag.SORTABLE,
        ... )
    """

    field_id: int
    name: str
    kind: StorageKind
    flags: FieldFlag = FieldFlag.NONE
    reverse_of: int | None = None
    parent_field_id: int | None = None
    ordering: float = 0.0
    max_length: int | None = None
    description: str = ""

    def __post_init__(self) -> None:
        """Validate field definition."""
        # Keeps to_dict() output identical before and after a JSON round trip
        object.__setattr__(self, "ordering", float(self.ordering))
        if self.field_id <= 0:
            raise ValueError(f"field_id must be positive, got {self.field_id}")
        if self.field_id > 65535:
            raise ValueError(f"field_id must be <= 65535, got {self.field_id}")
        if not self.name:
            raise ValueError("Field name cannot be empty")
        if FieldFlag.ARRAY_HAS_COUNT in self.flags and FieldFlag.IS_ARRAY not in self.flags:
            raise ValueError(f"Field '{self.name}' has ARRAY_HAS_COUNT without IS_ARRAY")
        if FieldFlag.IS_ARRAY in self.flags and self.kind not in ARRAY_CAPABLE_KINDS:
            raise ValueError(f"Field '{self.name}' of kind {self.kind.value} cannot be an array")
        if self.reverse_of is not None:
            if self.kind != StorageKind.ENTITY_RELATION or not self.is_array:
                raise ValueError(
                    f"Field '{self.name}' declares a reverse field but is not a relation array"
                )
            if self.reverse_of == self.field_id:
                raise ValueError(f"Field '{self.name}' cannot be its own reverse")
        if self.max_length is not None:
            if self.kind != StorageKind.TEXT:
                raise ValueError(f"max_length only applies to text fields ('{self.name}')")
            if self.max_length <= 0:
                raise ValueError(f"max_length must be positive for '{self.name}'")

    @property
    def is_array(self) -> bool:
        return FieldFlag.IS_ARRAY in self.flags

    @property
    def has_count(self) -> bool:
        return FieldFlag.ARRAY_HAS_COUNT in self.flags

    @property
    def required(self) -> bool:
        return FieldFlag.REQUIRED in self.flags

    @property
    def create_only(self) -> bool:
        return FieldFlag.CREATE_ONLY in self.flags

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation for serialization."""
        result: dict[str, Any] = {
            "field_id": self.field_id,
            "name": self.name,
            "kind": self.kind.value,
        }
        if self.flags:
            result["flags"] = self.flags.to_names()
        if self.reverse_of is not None:
            result["reverse_of"] = self.reverse_of
        if self.parent_field_id is not None:
            result["parent_field_id"] = self.parent_field_id
        if self.ordering:
            result["ordering"] = self.ordering
        if self.max_length is not None:
            result["max_length"] = self.max_length
        if self.description:
            result["description"] = self.description
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FieldDefinition:
        """Create from dictionary representation."""
        return cls(
            field_id=data["field_id"],
            name=data["name"],
            kind=StorageKind.from_str(data["kind"]),
            flags=FieldFlag.from_names(data.get("flags", [])),
            reverse_of=data.get("reverse_of"),
            parent_field_id=data.get("parent_field_id"),
            ordering=float(data.get("ordering", 0.0)),
            max_length=data.get("max_length"),
            description=data.get("description", ""),
        )


def field(
    field_id: int,
    name: str,
    kind: str | StorageKind,
    *,
    array: bool = False,
    counted: bool = False,
    required: bool = False,
    sortable: bool = False,
    visibility_config: bool = False,
    create_only: bool = False,
    reverse_of: int | None = None,
    parent_field_id: int | None = None,
    ordering: float = 0.0,
    max_length: int | None = None,
    description: str = "",
) -> FieldDefinition:
    """Convenience function to create a FieldDefinition.

    Args:
        field_id: Stable numeric identifier
        name: Human-readable name
        kind: Storage kind (string or StorageKind enum)
        array: Field holds several values per entity
        counted: Array values carry a count
        required: Field must be supplied on create
        sortable: Field can be sorted on
        visibility_config: Visibility configured per entity type
        create_only: Field cannot be updated after create
        reverse_of: Reverse relation field id
        parent_field_id: Parent field for sub-facets
        ordering: Display order
        max_length: Maximum text length
        description: Human-readable description

    Returns:
        FieldDefinition instance

    Example:
        >>> title = field(1, "title", "text", required=True)
        >>> parents = field(20, "parents", "relation", array=True, reverse_of=21)
    """
    if isinstance(kind, str):
        kind = StorageKind.from_str(kind)
    flags = FieldFlag.NONE
    if array:
        flags |= FieldFlag.IS_ARRAY
    if counted:
        flags |= FieldFlag.ARRAY_HAS_COUNT
    if required:
        flags |= FieldFlag.REQUIRED
    if sortable:
        flags |= FieldFlag.SORTABLE
    if visibility_config:
        flags |= FieldFlag.VISIBILITY_CONFIG
    if create_only:
        flags |= FieldFlag.CREATE_ONLY
    return FieldDefinition(
        field_id=field_id,
        name=name,
        kind=kind,
        flags=flags,
        reverse_of=reverse_of,
        parent_field_id=parent_field_id,
        ordering=ordering,
        max_length=max_length,
        description=description,
    )


@dataclass(frozen=True)
class EntityTypeDef:
    """Definition of an entity type.

    An entity type names the fields that are visible for its entities.
    Sub-facet fields (those with a parent_field_id) are visible whenever
    their parent is.

    Attributes:
        type_id: Stable numeric identifier (1-2^31, never changes)
        name: Human-readable name
        field_ids: Visible field ids in display order
        description: Human-readable description

    Example:
        >>> Part = EntityTypeDef(type_id=2, name="part", field_ids=(1, 11))
    """

    type_id: int
    name: str
    field_ids: tuple[int, ...] = dataclass_field(default_factory=tuple)
    description: str = ""

    def __post_init__(self) -> None:
        """Validate entity type definition."""
        if self.type_id <= 0:
            raise ValueError(f"type_id must be positive, got {self.type_id}")
        if self.type_id > 2147483647:
            raise ValueError(f"type_id must be <= 2^31-1, got {self.type_id}")
        if not self.name:
            raise ValueError("Entity type name cannot be empty")
        if len(self.field_ids) != len(set(self.field_ids)):
            raise ValueError(f"Duplicate field_id in entity type '{self.name}'")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        result: dict[str, Any] = {
            "type_id": self.type_id,
            "name": self.name,
            "field_ids": list(self.field_ids),
        }
        if self.description:
            result["description"] = self.description
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EntityTypeDef:
        """Create from dictionary representation."""
        return cls(
            type_id=data["type_id"],
            name=data["name"],
            field_ids=tuple(data.get("field_ids", [])),
            description=data.get("description", ""),
        )
