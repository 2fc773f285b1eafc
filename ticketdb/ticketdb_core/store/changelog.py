"""
Append-only changelog for TicketDB.

Every successful field mutation produces exactly one changelog entry, in the
same transaction as the value write it describes. Entries are the audit
trail and the source for reconstructing past entity states.

Entry shapes:
    - Scalar field: old_value_ref / new_value_ref are row ids in the field's
      value table (None when there was / is no value)
    - Array field: both refs are None and free_text holds the JSON form of
      the ArrayDiff ({"added": [[v, c]], "removed": [v], "changed": [[v, c]]})
    - Event (negative field id, see ChangeEvent): refs and free_text as
      documented on the event

Invariants:
    - append() is the only mutator and always runs inside the caller's
      transaction; triggers reject UPDATE and DELETE on the table
    - Entry ids follow commit order, and entries_for() returns that order
    - Timestamps are non-decreasing in entry id order per subject

How to change safely:
    - Never rewrite the free_text format of existing array entries; as_of()
      replays them
    - New event types need a new ChangeEvent member, not a new table
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Any, Optional

from ..schema.catalog import FieldCatalog
from ..schema.types import SYSTEM_SUBJECT_ID, ChangeEvent
from .database import Database, constraint_guard
from .values import ArrayDiff, value_store_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeLogEntry:
    """One changelog row.

    Attributes:
        entry_id: Auto-incrementing id (commit order)
        field_id: Field changed, or a negative ChangeEvent id
        subject_id: Entity id, or SYSTEM_SUBJECT_ID for system events
        actor_id: User who made the change
        timestamp: Change time (Unix ms)
        old_value_ref: Row id of the previous value
        new_value_ref: Row id of the new value
        free_text: Array diff JSON or event details
    """

    entry_id: int
    field_id: int
    subject_id: int
    actor_id: Optional[int]
    timestamp: int
    old_value_ref: Optional[int] = None
    new_value_ref: Optional[int] = None
    free_text: Optional[str] = None

    @property
    def is_event(self) -> bool:
        return ChangeEvent.is_event(self.field_id)

    def array_diff(self) -> ArrayDiff:
        """Parse free_text as an array diff."""
        return ArrayDiff.from_dict(json.loads(self.free_text or "{}"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "field_id": self.field_id,
            "subject_id": self.subject_id,
            "actor_id": self.actor_id,
            "timestamp": self.timestamp,
            "old_value_ref": self.old_value_ref,
            "new_value_ref": self.new_value_ref,
            "free_text": self.free_text,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ChangeLogEntry:
        return cls(
            entry_id=row["i"],
            field_id=row["field_id"],
            subject_id=row["subject_id"],
            actor_id=row["actor_id"],
            timestamp=row["chg_dt"],
            old_value_ref=row["old_value_ref"],
            new_value_ref=row["new_value_ref"],
            free_text=row["free_text"],
        )


class ChangeLogCursor:
    """Lazy, restartable sequence of entries for one subject.

    Each iteration re-queries the database page by page (keyset pagination
    on the entry id), so entries committed after the cursor was created are
    seen by the next iteration.
    """

    def __init__(
        self,
        database: Database,
        subject_id: int,
        field_id: Optional[int] = None,
        page_size: int = 500,
    ) -> None:
        self._database = database
        self.subject_id = subject_id
        self.field_id = field_id
        self.page_size = page_size

    def _page(self, after_id: int) -> list[ChangeLogEntry]:
        query = "SELECT * FROM changelog WHERE subject_id = ? AND i > ?"
        params: list[Any] = [self.subject_id, after_id]
        if self.field_id is not None:
            query += " AND field_id = ?"
            params.append(self.field_id)
        query += " ORDER BY i LIMIT ?"
        params.append(self.page_size)

        with self._database.connect() as conn:
            return [ChangeLogEntry.from_row(row) for row in conn.execute(query, params)]

    def __iter__(self) -> Iterator[ChangeLogEntry]:
        last_id = 0
        while True:
            page = self._page(last_id)
            yield from page
            if len(page) < self.page_size:
                return
            last_id = page[-1].entry_id

    def to_list(self) -> list[ChangeLogEntry]:
        return list(self)


class ChangeLog:
    """The changelog table.

    Example:
        >>> changelog = ChangeLog(database)
        >>> with database.transaction() as conn:
        ...     changelog.append(conn, field_id=1, subject_id=42, actor_id=7,
        ...                      timestamp=now, old_value_ref=None, new_value_ref=12)
        >>> [e.new_value_ref for e in changelog.entries_for(42, field_id=1)]
        [12]
    """

    def __init__(self, database: Database, page_size: int = 500) -> None:
        self._database = database
        self.page_size = page_size

    def append(
        self,
        conn: sqlite3.Connection,
        field_id: int,
        subject_id: int,
        actor_id: Optional[int],
        timestamp: int,
        old_value_ref: Optional[int] = None,
        new_value_ref: Optional[int] = None,
        free_text: Optional[str] = None,
    ) -> int:
        """Append an entry inside the caller's transaction.

        Returns:
            The new entry id
        """
        with constraint_guard("changelog"):
            cursor = conn.execute(
                """
                INSERT INTO changelog (field_id, subject_id, actor_id, chg_dt,
                                       old_value_ref, new_value_ref, free_text)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (int(field_id), subject_id, actor_id, timestamp, old_value_ref, new_value_ref, free_text),
            )
        logger.debug(
            "Appended changelog entry",
            extra={
                "entry_id": cursor.lastrowid,
                "field_id": field_id,
                "subject_id": subject_id,
                "actor_id": actor_id,
            },
        )
        return cursor.lastrowid

    def append_diff(
        self,
        conn: sqlite3.Connection,
        field_id: int,
        subject_id: int,
        actor_id: Optional[int],
        timestamp: int,
        diff: ArrayDiff,
    ) -> int:
        """Append the entry for an array field change."""
        return self.append(
            conn,
            field_id,
            subject_id,
            actor_id,
            timestamp,
            free_text=json.dumps(diff.to_dict(), separators=(",", ":")),
        )

    def entries_for(self, subject_id: int, field_id: Optional[int] = None) -> ChangeLogCursor:
        """Entries of a subject (optionally one field) in commit order."""
        return ChangeLogCursor(self._database, subject_id, field_id, self.page_size)

    def global_entries(
        self,
        field_ids: Optional[Iterable[int]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[ChangeLogEntry]:
        """Entries across all subjects, newest first.

        Args:
            field_ids: Only entries for these field or event ids
            limit: Maximum entries to return (None = all)
            offset: Pagination offset
        """
        query = "SELECT * FROM changelog"
        params: list[Any] = []
        if field_ids is not None:
            ids = sorted(set(field_ids))
            if not ids:
                return []
            query += f" WHERE field_id IN ({', '.join('?' for _ in ids)})"
            params.extend(ids)
        query += " ORDER BY i DESC LIMIT ? OFFSET ?"
        params.extend([-1 if limit is None else limit, offset])

        with self._database.connect() as conn:
            return [ChangeLogEntry.from_row(row) for row in conn.execute(query, params)]

    def deletion_of(self, entity_id: int) -> Optional[ChangeLogEntry]:
        """The system entry recording the deletion of an entity, if any."""
        with self._database.connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM changelog
                WHERE field_id = ? AND subject_id = ? AND old_value_ref = ?
                ORDER BY i DESC LIMIT 1
                """,
                (int(ChangeEvent.ENTITY_DELETED), SYSTEM_SUBJECT_ID, entity_id),
            ).fetchone()
        return ChangeLogEntry.from_row(row) if row else None

    def as_of(self, subject_id: int, timestamp: int, catalog: FieldCatalog) -> dict[int, Any]:
        """Reconstruct the field values of a subject at a point in time.

        Scalar fields take the latest new_value_ref at or before
        ``timestamp`` and resolve it through the field's value store
        (orphaned rows included). Array fields replay their diffs in order.
        Fields unknown to the catalog and fields without a value are
        omitted.

        Returns:
            Mapping of field_id to value; arrays map to lists of
            (value, count) tuples
        """
        scalar_refs: dict[int, Optional[int]] = {}
        arrays: dict[int, dict[Any, int]] = {}

        with self._database.connect() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM changelog
                WHERE subject_id = ? AND chg_dt <= ? AND field_id > 0
                ORDER BY i
                """,
                (subject_id, timestamp),
            )
            for row in cursor:
                entry = ChangeLogEntry.from_row(row)
                definition = catalog.find(entry.field_id)
                if definition is None:
                    continue
                if definition.is_array:
                    arrays[entry.field_id] = entry.array_diff().apply(
                        arrays.get(entry.field_id, {})
                    )
                else:
                    scalar_refs[entry.field_id] = entry.new_value_ref

            result: dict[int, Any] = {}
            for field_id, ref in scalar_refs.items():
                if ref is None:
                    continue
                store = value_store_for(catalog.definition_of(field_id).kind)
                row = store.read_row(conn, ref)
                if row is None:
                    logger.warning(
                        f"Changelog references missing row {ref} in {store.table}",
                        extra={"subject_id": subject_id, "field_id": field_id},
                    )
                    continue
                result[field_id] = row.value

        for field_id, state in arrays.items():
            if state:
                result[field_id] = list(state.items())
        return result
