"""
Typed value storage for TicketDB fields.

Every field value lives in exactly one value table, selected by the field's
StorageKind. Per-kind behaviour (table, validation, SQL conversion) is a
closed table of KindSpec entries; there is one ValueStore per kind.

Invariants:
    - Values are validated and normalized before any row is touched
    - A scalar field has at most one live row per (entity_id, field_id)
    - Replaced scalar rows are orphaned (entity_id = NULL), never deleted,
      because changelog entries reference them by row id
    - Array rows carry a count; count 0 means the value is absent
    - Array rows are never referenced by the changelog, so removed array
      values are deleted

How to change safely:
    - Add a storage kind by adding a StorageKind member, a KindSpec entry
      here and a table in store/database.py
    - Never change the stored text form of AMOUNT or UUID values; history
      rows written in the old form would stop comparing equal
"""

from __future__ import annotations

import logging
import math
import sqlite3
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from ..errors import ValidationError
from ..schema.types import FieldDefinition, StorageKind
from .database import constraint_guard

logger = logging.getLogger(__name__)

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

_CENTS = Decimal("0.01")


@dataclass(frozen=True)
class FieldValueRow:
    """One row of a value table.

    Attributes:
        row_id: Row id (referenced by changelog entries)
        entity_id: Owning entity, None for orphaned historical rows
        field_id: Field the value belongs to
        value: Normalized value
        count: Count for array rows, None for scalar rows
    """

    row_id: int
    entity_id: Optional[int]
    field_id: int
    value: Any
    count: Optional[int] = None

    @property
    def is_orphan(self) -> bool:
        return self.entity_id is None


@dataclass(frozen=True)
class ArrayDiff:
    """Difference between two states of an array field.

    Attributes:
        added: (value, count) pairs that did not exist before
        removed: Values that no longer exist
        changed: (value, new count) pairs whose count changed
    """

    added: tuple[tuple[Any, int], ...] = ()
    removed: tuple[Any, ...] = ()
    changed: tuple[tuple[Any, int], ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.changed)

    def apply(self, state: dict[Any, int]) -> dict[Any, int]:
        """Return a copy of ``state`` with this diff applied."""
        result = dict(state)
        for value in self.removed:
            result.pop(value, None)
        for value, count in self.added:
            result[value] = count
        for value, count in self.changed:
            result[value] = count
        return result

    def to_dict(self) -> dict[str, list]:
        return {
            "added": [[v, c] for v, c in self.added],
            "removed": list(self.removed),
            "changed": [[v, c] for v, c in self.changed],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArrayDiff:
        return cls(
            added=tuple((v, c) for v, c in data.get("added", [])),
            removed=tuple(data.get("removed", [])),
            changed=tuple((v, c) for v, c in data.get("changed", [])),
        )


def _reject(definition: FieldDefinition, message: str) -> ValidationError:
    return ValidationError(
        f"Invalid value for field '{definition.name}': {message}",
        field_name=definition.name,
        errors=[message],
    )


def _normalize_text(definition: FieldDefinition, value: Any) -> str:
    if not isinstance(value, str):
        raise _reject(definition, f"expected str, got {type(value).__name__}")
    if definition.max_length is not None and len(value) > definition.max_length:
        raise _reject(definition, f"longer than {definition.max_length} characters")
    return value


def _normalize_int(definition: FieldDefinition, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise _reject(definition, f"expected int, got {type(value).__name__}")
    if not INT64_MIN <= value <= INT64_MAX:
        raise _reject(definition, "out of 64-bit integer range")
    return value


def _normalize_float(definition: FieldDefinition, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise _reject(definition, f"expected float, got {type(value).__name__}")
    result = float(value)
    if not math.isfinite(result):
        raise _reject(definition, "must be finite")
    return result


def _normalize_amount(definition: FieldDefinition, value: Any) -> Decimal:
    if isinstance(value, (bool, float)) or not isinstance(value, (Decimal, int, str)):
        raise _reject(definition, f"expected Decimal, int or str, got {type(value).__name__}")
    try:
        amount = Decimal(value)
    except InvalidOperation:
        raise _reject(definition, f"not a decimal number: {value!r}") from None
    if not amount.is_finite():
        raise _reject(definition, "must be finite")
    try:
        quantized = amount.quantize(_CENTS)
    except InvalidOperation:
        # More digits than the decimal context precision
        raise _reject(definition, "out of range") from None
    if quantized != amount:
        raise _reject(definition, "more than two decimal places")
    return quantized


def _normalize_uuid(definition: FieldDefinition, value: Any) -> str:
    if isinstance(value, uuid.UUID):
        return str(value)
    if not isinstance(value, str):
        raise _reject(definition, f"expected UUID or str, got {type(value).__name__}")
    try:
        return str(uuid.UUID(value))
    except ValueError:
        raise _reject(definition, f"not a UUID: {value!r}") from None


def _normalize_relation(definition: FieldDefinition, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise _reject(definition, f"expected entity id, got {type(value).__name__}")
    if value <= 0 or value > INT64_MAX:
        raise _reject(definition, f"invalid entity id {value}")
    return value


def _identity(value: Any) -> Any:
    return value


@dataclass(frozen=True)
class KindSpec:
    """Storage strategy for one StorageKind.

    Attributes:
        kind: Storage kind served
        table: Value table name
        normalize: Validates a value and returns its normalized form
        to_sql: Converts a normalized value to its column value
        from_sql: Converts a column value back to the normalized form
        has_count: Whether the table has a count column
    """

    kind: StorageKind
    table: str
    normalize: Callable[[FieldDefinition, Any], Any]
    to_sql: Callable[[Any], Any] = _identity
    from_sql: Callable[[Any], Any] = _identity
    has_count: bool = False


KIND_SPECS: dict[StorageKind, KindSpec] = {
    StorageKind.TEXT: KindSpec(StorageKind.TEXT, "entity_texts", _normalize_text),
    StorageKind.INTEGER: KindSpec(
        StorageKind.INTEGER, "entity_ints", _normalize_int, has_count=True
    ),
    StorageKind.FLOAT: KindSpec(StorageKind.FLOAT, "entity_floats", _normalize_float),
    StorageKind.AMOUNT: KindSpec(
        StorageKind.AMOUNT, "entity_amounts", _normalize_amount, to_sql=str, from_sql=Decimal
    ),
    StorageKind.UUID: KindSpec(StorageKind.UUID, "entity_uuids", _normalize_uuid),
    StorageKind.CATEGORY_REF: KindSpec(
        StorageKind.CATEGORY_REF, "entity_categories", _normalize_int, has_count=True
    ),
    StorageKind.ENTITY_RELATION: KindSpec(
        StorageKind.ENTITY_RELATION, "entity_relations", _normalize_relation, has_count=True
    ),
}


class ValueStore:
    """Row-level reads and writes for one storage kind.

    Stores hold no connection; every method takes the connection of the
    caller's transaction so that value writes, changelog appends and
    relation sync commit together.
    """

    def __init__(self, spec: KindSpec) -> None:
        self.spec = spec
        self.kind = spec.kind
        self.table = spec.table

    def __repr__(self) -> str:
        return f"ValueStore({self.kind.value})"

    def _check_kind(self, definition: FieldDefinition) -> None:
        if definition.kind != self.kind:
            raise ValueError(
                f"Field '{definition.name}' of kind {definition.kind.value} "
                f"does not belong in {self.table}"
            )

    def validate(self, definition: FieldDefinition, value: Any) -> Any:
        """Validate and normalize a value for a field.

        Array fields return a ``{value: count}`` dict with absent values
        (count 0) dropped; scalar fields return the normalized value, or
        None to clear a non-required field.

        Raises:
            ValidationError: If the value does not fit the field
        """
        self._check_kind(definition)
        if definition.is_array:
            return self.validate_items(definition, value)
        if value is None:
            if definition.required:
                raise _reject(definition, "field is required")
            return None
        return self.spec.normalize(definition, value)

    def validate_items(self, definition: FieldDefinition, items: Any) -> dict[Any, int]:
        """Validate array items given as (value, count) pairs or bare values."""
        if items is None:
            items = []
        if isinstance(items, (str, bytes, dict)) or not isinstance(items, Iterable):
            raise _reject(definition, "expected a list of values")

        result: dict[Any, int] = {}
        seen = set()
        for item in items:
            if isinstance(item, (tuple, list)):
                if len(item) != 2:
                    raise _reject(definition, f"expected (value, count), got {item!r}")
                raw_value, count = item
            else:
                raw_value, count = item, 1

            if isinstance(count, bool) or not isinstance(count, int) or count < 0:
                raise _reject(definition, f"invalid count {count!r}")
            if count != 1 and not definition.has_count:
                raise _reject(definition, "field does not carry counts")

            value = self.spec.normalize(definition, raw_value)
            if value in seen:
                raise _reject(definition, f"duplicate value {value!r}")
            seen.add(value)
            if count:
                result[value] = count

        if definition.required and not result:
            raise _reject(definition, "field is required")
        return result

    def _row(self, row: sqlite3.Row) -> FieldValueRow:
        return FieldValueRow(
            row_id=row["i"],
            entity_id=row["entity_id"],
            field_id=row["field_id"],
            value=self.spec.from_sql(row["value"]),
            count=row["count"] if self.spec.has_count else None,
        )

    def read(self, conn: sqlite3.Connection, entity_id: int, field_id: int) -> list[FieldValueRow]:
        """Live rows of a field, in insertion order."""
        cursor = conn.execute(
            f"SELECT * FROM {self.table} WHERE entity_id = ? AND field_id = ? ORDER BY i",
            (entity_id, field_id),
        )
        return [self._row(row) for row in cursor.fetchall()]

    def read_row(self, conn: sqlite3.Connection, row_id: int) -> Optional[FieldValueRow]:
        """A row by id, including orphaned rows."""
        cursor = conn.execute(f"SELECT * FROM {self.table} WHERE i = ?", (row_id,))
        row = cursor.fetchone()
        return self._row(row) if row else None

    def current_value(
        self, conn: sqlite3.Connection, entity_id: int, definition: FieldDefinition
    ) -> Any:
        """The projected value of a field.

        Scalars map to their value or None; arrays to a list of
        (value, count) tuples.
        """
        rows = self.read(conn, entity_id, definition.field_id)
        if definition.is_array:
            return [(row.value, row.count) for row in rows]
        return rows[0].value if rows else None

    def write_one(
        self,
        conn: sqlite3.Connection,
        entity_id: int,
        definition: FieldDefinition,
        value: Any,
    ) -> tuple[Optional[FieldValueRow], Optional[FieldValueRow]]:
        """Replace the live row of a scalar field.

        The replaced row is orphaned, not deleted. A value of None removes
        the live value.

        Returns:
            (replaced row or None, new row or None)
        """
        if definition.is_array:
            raise ValueError(f"Field '{definition.name}' is an array field")
        value = self.validate(definition, value)

        existing = self.read(conn, entity_id, definition.field_id)
        old_row = existing[0] if existing else None

        with constraint_guard(self.table):
            if old_row is not None:
                conn.execute(
                    f"UPDATE {self.table} SET entity_id = NULL WHERE i = ?",
                    (old_row.row_id,),
                )
            if value is None:
                return old_row, None
            cursor = conn.execute(
                f"INSERT INTO {self.table} (entity_id, field_id, value) VALUES (?, ?, ?)",
                (entity_id, definition.field_id, self.spec.to_sql(value)),
            )

        new_row = FieldValueRow(
            row_id=cursor.lastrowid,
            entity_id=entity_id,
            field_id=definition.field_id,
            value=value,
        )
        return old_row, new_row

    def write_array(
        self,
        conn: sqlite3.Connection,
        entity_id: int,
        definition: FieldDefinition,
        items: Any,
    ) -> ArrayDiff:
        """Replace the full value set of an array field.

        Values missing from ``items`` (or given with count 0) are removed,
        new values inserted and changed counts updated in place.

        Returns:
            The ArrayDiff relative to the previous state
        """
        if not definition.is_array:
            raise ValueError(f"Field '{definition.name}' is not an array field")
        desired = self.validate(definition, items)
        current = {row.value: row for row in self.read(conn, entity_id, definition.field_id)}

        removed = tuple(value for value in current if value not in desired)
        added = tuple((v, c) for v, c in desired.items() if v not in current)
        changed = tuple(
            (v, c) for v, c in desired.items() if v in current and current[v].count != c
        )
        diff = ArrayDiff(added=added, removed=removed, changed=changed)

        for value in removed:
            self.remove_item(conn, entity_id, definition.field_id, value)
        for value, count in added + changed:
            self.upsert_item(conn, entity_id, definition.field_id, value, count)
        return diff

    def upsert_item(
        self,
        conn: sqlite3.Connection,
        entity_id: int,
        field_id: int,
        value: Any,
        count: int,
    ) -> None:
        """Insert an array row or update its count."""
        with constraint_guard(self.table):
            conn.execute(
                f"""
                INSERT INTO {self.table} (entity_id, field_id, value, count)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (entity_id, field_id, value) DO UPDATE SET count = excluded.count
                """,
                (entity_id, field_id, self.spec.to_sql(value), count),
            )

    def remove_item(
        self, conn: sqlite3.Connection, entity_id: int, field_id: int, value: Any
    ) -> bool:
        """Delete an array row. Returns True if a row was deleted."""
        with constraint_guard(self.table):
            cursor = conn.execute(
                f"DELETE FROM {self.table} WHERE entity_id = ? AND field_id = ? AND value = ?",
                (entity_id, field_id, self.spec.to_sql(value)),
            )
        return cursor.rowcount > 0

    def count_of(
        self, conn: sqlite3.Connection, entity_id: int, field_id: int, value: Any
    ) -> Optional[int]:
        """Count of one array value, or None if the row does not exist."""
        cursor = conn.execute(
            f"SELECT count FROM {self.table} WHERE entity_id = ? AND field_id = ? AND value = ?",
            (entity_id, field_id, self.spec.to_sql(value)),
        )
        row = cursor.fetchone()
        return row["count"] if row else None

    def rows_with_value(self, conn: sqlite3.Connection, value: Any) -> list[FieldValueRow]:
        """Live rows of any entity and field holding ``value``."""
        cursor = conn.execute(
            f"SELECT * FROM {self.table} WHERE value = ? AND entity_id IS NOT NULL ORDER BY i",
            (self.spec.to_sql(value),),
        )
        return [self._row(row) for row in cursor.fetchall()]

    def orphan_referenced(self, conn: sqlite3.Connection, entity_id: int) -> int:
        """Orphan the entity's rows that changelog entries point at.

        Used before deleting an entity so that the cascade keeps every row
        history still needs.

        Returns:
            Number of rows orphaned
        """
        with constraint_guard(self.table):
            cursor = conn.execute(
                f"""
                UPDATE {self.table} SET entity_id = NULL
                WHERE entity_id = ?
                  AND i IN (
                      SELECT new_value_ref FROM changelog
                      WHERE subject_id = ?
                        AND field_id = {self.table}.field_id
                        AND new_value_ref IS NOT NULL
                  )
                """,
                (entity_id, entity_id),
            )
        return cursor.rowcount


_STORES: dict[StorageKind, ValueStore] = {kind: ValueStore(spec) for kind, spec in KIND_SPECS.items()}


def value_store_for(kind: StorageKind) -> ValueStore:
    """The ValueStore serving a storage kind."""
    return _STORES[kind]


def all_value_stores() -> list[ValueStore]:
    return list(_STORES.values())
