"""
Schema module for TicketDB.

This module provides the configuration-driven attribute model:
- Field definitions and storage kinds (FieldDefinition, StorageKind)
- Entity types and their visible fields (EntityTypeDef)
- The field catalog for lookup by id, name, kind and reverse field

Invariants:
    - field_id and type_id are immutable once assigned
    - The catalog is frozen before any entity data is read or written
    - Reverse field mappings are mutual

How to change safely:
    - Add new fields with new field_ids
    - Add new storage kinds by extending StorageKind
    - Never reassign a field's reverse mapping on live data
"""

from .catalog import FieldCatalog, load_catalog
from .types import (
    SYSTEM_SUBJECT_ID,
    ChangeEvent,
    EntityTypeDef,
    FieldDefinition,
    FieldFlag,
    StorageKind,
    field,
)

__all__ = [
    # Types
    "FieldDefinition",
    "EntityTypeDef",
    "StorageKind",
    "FieldFlag",
    "ChangeEvent",
    "SYSTEM_SUBJECT_ID",
    "field",
    # Catalog
    "FieldCatalog",
    "load_catalog",
]
