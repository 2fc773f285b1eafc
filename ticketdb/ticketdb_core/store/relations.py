"""
Reverse relation maintenance.

A relation field F may declare a reverse field F'. For every link
(A, F, B, c) there must be exactly one mirror link (B, F', A, c), and
neither may exist without the other. The RelationMaintainer writes both
sides and verifies them inside the caller's transaction.

Invariants:
    - Only the current catalog mapping is trusted; rows written under an
      older reverse mapping are not repaired
    - Any failure raises ConsistencyViolation, which must abort the
      enclosing transaction
    - A link to a non-existent entity is a consistency failure

How to change safely:
    - Reverse mappings are changed by data migration, never at runtime
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Optional

from ..errors import ConsistencyViolation, ConstraintViolation
from ..schema.catalog import FieldCatalog
from ..schema.types import FieldDefinition, StorageKind
from .values import ArrayDiff, value_store_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReverseChange:
    """A change made on the reverse side of a relation.

    Attributes:
        entity_id: Entity holding the reverse field
        field_id: The reverse field
        diff: Change of the reverse field's value set
    """

    entity_id: int
    field_id: int
    diff: ArrayDiff


def _reverse_diff(source_id: int, before: Optional[int], after: Optional[int]) -> ArrayDiff:
    if before == after:
        return ArrayDiff()
    if after is None:
        return ArrayDiff(removed=(source_id,))
    if before is None:
        return ArrayDiff(added=((source_id, after),))
    return ArrayDiff(changed=((source_id, after),))


class RelationMaintainer:
    """Keeps relation fields and their reverse fields symmetric."""

    def __init__(self, catalog: FieldCatalog) -> None:
        self._catalog = catalog
        self._store = value_store_for(StorageKind.ENTITY_RELATION)

    def sync(
        self,
        conn: sqlite3.Connection,
        source_id: int,
        field_id: int,
        target_id: int,
        new_count: Optional[int],
    ) -> Optional[ReverseChange]:
        """Bring one link and its mirror to ``new_count``.

        A count of 0 or None removes both rows; otherwise both rows are
        upserted with the same count. Fields without a reverse are left
        to the value store alone.

        Returns:
            The change applied to the mirror row, or None if the field has
            no reverse or the mirror was already up to date

        Raises:
            ConsistencyViolation: If either side could not be written or
                the two sides disagree afterwards
        """
        reverse_id = self._catalog.reverse_of(field_id)
        if reverse_id is None:
            return None

        count = new_count or None
        try:
            before = self._store.count_of(conn, target_id, reverse_id, source_id)
            if count is None:
                self._store.remove_item(conn, source_id, field_id, target_id)
                self._store.remove_item(conn, target_id, reverse_id, source_id)
            else:
                self._store.upsert_item(conn, source_id, field_id, target_id, count)
                self._store.upsert_item(conn, target_id, reverse_id, source_id, count)
        except ConstraintViolation as e:
            raise ConsistencyViolation(
                f"Cannot link entity {source_id} field {field_id} to entity {target_id}: {e.message}",
                source_id=source_id,
                field_id=field_id,
                target_id=target_id,
            ) from e

        self.verify(conn, source_id, field_id, target_id)

        diff = _reverse_diff(source_id, before, count)
        if diff.is_empty:
            return None
        logger.debug(
            "Synchronized reverse relation",
            extra={
                "source_id": source_id,
                "field_id": field_id,
                "target_id": target_id,
                "reverse_field_id": reverse_id,
                "count": count,
            },
        )
        return ReverseChange(entity_id=target_id, field_id=reverse_id, diff=diff)

    def sync_diff(
        self,
        conn: sqlite3.Connection,
        source_id: int,
        definition: FieldDefinition,
        diff: ArrayDiff,
    ) -> list[ReverseChange]:
        """Apply a whole array diff to the reverse side.

        Returns:
            One ReverseChange per target entity whose reverse field changed
        """
        if definition.reverse_of is None:
            return []

        changes = []
        targets = [(value, 0) for value in diff.removed] + list(diff.added) + list(diff.changed)
        for target_id, count in targets:
            change = self.sync(conn, source_id, definition.field_id, target_id, count)
            if change is not None:
                changes.append(change)
        return changes

    def verify(self, conn: sqlite3.Connection, source_id: int, field_id: int, target_id: int) -> None:
        """Check that a link and its mirror agree.

        Raises:
            ConsistencyViolation: If exactly one side exists or the counts differ
        """
        reverse_id = self._catalog.reverse_of(field_id)
        if reverse_id is None:
            return
        forward = self._store.count_of(conn, source_id, field_id, target_id)
        backward = self._store.count_of(conn, target_id, reverse_id, source_id)
        if forward != backward:
            raise ConsistencyViolation(
                f"Relation {source_id} -[{field_id}]-> {target_id} has count {forward} "
                f"but its reverse has {backward}",
                source_id=source_id,
                field_id=field_id,
                target_id=target_id,
            )

    def detach_entity(self, conn: sqlite3.Connection, entity_id: int) -> list[ReverseChange]:
        """Remove mirror links other entities hold to an entity being deleted.

        The entity's own rows are left to the delete cascade.

        Returns:
            One ReverseChange per (entity, field) whose value set shrank
        """
        changes = []
        for row in self._store.rows_with_value(conn, entity_id):
            if row.entity_id == entity_id or self._catalog.reverse_of(row.field_id) is None:
                continue
            try:
                self._store.remove_item(conn, row.entity_id, row.field_id, entity_id)
            except ConstraintViolation as e:
                raise ConsistencyViolation(
                    f"Cannot detach entity {entity_id} from entity {row.entity_id}: {e.message}",
                    source_id=row.entity_id,
                    field_id=row.field_id,
                    target_id=entity_id,
                ) from e
            changes.append(
                ReverseChange(
                    entity_id=row.entity_id,
                    field_id=row.field_id,
                    diff=ArrayDiff(removed=(entity_id,)),
                )
            )
        return changes
