"""
Entity core rows.

An entity is the fixed part of a ticket: its type, its ACL and ownership
metadata. All field data lives in the value tables.

Invariants:
    - Templates have NULL owner and NULL timestamps
    - last_mod_at strictly increases on every mutation of an entity
    - Deleting an entity row cascades to its remaining value rows
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Optional

from ..errors import NotFoundError
from .database import constraint_guard


@dataclass(frozen=True)
class Entity:
    """The core record of a ticket.

    Attributes:
        entity_id: Entity identifier
        type_id: Entity type identifier
        acl_id: ACL guarding the entity
        owner_uid: Owning user (None for templates)
        created_at: Creation timestamp (Unix ms, None for templates)
        created_by_uid: Creating user (None for templates)
        last_mod_at: Last modification timestamp (Unix ms, None for templates)
        last_mod_by_uid: Last modifying user (None for templates)
        is_template: Whether the entity is a creation blueprint
        created_from_id: Template or entity this one was derived from
        template_name: Display name of a template
    """

    entity_id: int
    type_id: int
    acl_id: int
    owner_uid: Optional[int] = None
    created_at: Optional[int] = None
    created_by_uid: Optional[int] = None
    last_mod_at: Optional[int] = None
    last_mod_by_uid: Optional[int] = None
    is_template: bool = False
    created_from_id: Optional[int] = None
    template_name: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "type_id": self.type_id,
            "acl_id": self.acl_id,
            "owner_uid": self.owner_uid,
            "created_at": self.created_at,
            "created_by_uid": self.created_by_uid,
            "last_mod_at": self.last_mod_at,
            "last_mod_by_uid": self.last_mod_by_uid,
            "is_template": self.is_template,
            "created_from_id": self.created_from_id,
            "template_name": self.template_name,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Entity:
        return cls(
            entity_id=row["i"],
            type_id=row["type_id"],
            acl_id=row["acl_id"],
            owner_uid=row["owner_uid"],
            created_at=row["created_dt"],
            created_by_uid=row["created_uid"],
            last_mod_at=row["lastmod_dt"],
            last_mod_by_uid=row["lastmod_uid"],
            is_template=bool(row["template"]),
            created_from_id=row["created_from"],
            template_name=row["template_name"],
        )


class EntityStore:
    """Reads and writes of the entities table within a caller's transaction."""

    def insert(
        self,
        conn: sqlite3.Connection,
        type_id: int,
        acl_id: int,
        actor_id: int,
        now: int,
        created_from_id: Optional[int] = None,
    ) -> Entity:
        with constraint_guard("entities"):
            cursor = conn.execute(
                """
                INSERT INTO entities (type_id, acl_id, owner_uid, created_dt, created_uid,
                                      lastmod_dt, lastmod_uid, template, created_from)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (type_id, acl_id, actor_id, now, actor_id, now, actor_id, created_from_id),
            )
        return Entity(
            entity_id=cursor.lastrowid,
            type_id=type_id,
            acl_id=acl_id,
            owner_uid=actor_id,
            created_at=now,
            created_by_uid=actor_id,
            last_mod_at=now,
            last_mod_by_uid=actor_id,
            created_from_id=created_from_id,
        )

    def insert_template(
        self,
        conn: sqlite3.Connection,
        type_id: int,
        acl_id: int,
        name: str,
        created_from_id: Optional[int] = None,
    ) -> Entity:
        with constraint_guard("entities"):
            cursor = conn.execute(
                """
                INSERT INTO entities (type_id, acl_id, template, template_name, created_from)
                VALUES (?, ?, 1, ?, ?)
                """,
                (type_id, acl_id, name, created_from_id),
            )
        return Entity(
            entity_id=cursor.lastrowid,
            type_id=type_id,
            acl_id=acl_id,
            is_template=True,
            created_from_id=created_from_id,
            template_name=name,
        )

    def get(self, conn: sqlite3.Connection, entity_id: int) -> Optional[Entity]:
        cursor = conn.execute("SELECT * FROM entities WHERE i = ?", (entity_id,))
        row = cursor.fetchone()
        return Entity.from_row(row) if row else None

    def require(self, conn: sqlite3.Connection, entity_id: int) -> Entity:
        """Get an entity, raising NotFoundError if it does not exist."""
        entity = self.get(conn, entity_id)
        if entity is None:
            raise NotFoundError(f"Entity {entity_id} not found", "entity", entity_id)
        return entity

    def touch(self, conn: sqlite3.Connection, entity: Entity, actor_id: int, now: int) -> Optional[int]:
        """Bump last_mod_at and last_mod_by_uid.

        last_mod_at becomes max(now, previous + 1) so that two mutations in
        the same millisecond still yield distinct timestamps. Templates
        keep their NULL timestamps.

        Returns:
            The new last_mod_at, or None for templates
        """
        if entity.is_template:
            return None
        current = conn.execute(
            "SELECT lastmod_dt FROM entities WHERE i = ?", (entity.entity_id,)
        ).fetchone()["lastmod_dt"]
        last_mod = now if current is None else max(now, current + 1)
        conn.execute(
            "UPDATE entities SET lastmod_dt = ?, lastmod_uid = ? WHERE i = ?",
            (last_mod, actor_id, entity.entity_id),
        )
        return last_mod

    def set_acl(self, conn: sqlite3.Connection, entity_id: int, acl_id: int) -> None:
        with constraint_guard("entities"):
            conn.execute("UPDATE entities SET acl_id = ? WHERE i = ?", (acl_id, entity_id))

    def delete(self, conn: sqlite3.Connection, entity_id: int) -> bool:
        with constraint_guard("entities"):
            cursor = conn.execute("DELETE FROM entities WHERE i = ?", (entity_id,))
        return cursor.rowcount > 0

    def list_by_type(
        self,
        conn: sqlite3.Connection,
        type_id: int,
        group_ids: Optional[Iterable[int]] = None,
        permission_bit: int = 0x01,
        limit: int = 100,
        offset: int = 0,
        include_templates: bool = False,
    ) -> list[Entity]:
        """Entities of a type, newest first.

        Args:
            conn: Connection
            type_id: Entity type identifier
            group_ids: If given, only entities whose ACL grants
                ``permission_bit`` to one of these groups
            permission_bit: Single permission bit to filter on
            limit: Maximum entities to return
            offset: Pagination offset
            include_templates: Whether templates are listed too
        """
        query = "SELECT e.* FROM entities e WHERE e.type_id = ?"
        params: list[Any] = [type_id]

        if not include_templates:
            query += " AND e.template = 0"

        if group_ids is not None:
            groups = sorted(set(group_ids))
            if not groups:
                return []
            placeholders = ", ".join("?" for _ in groups)
            query += f"""
                AND e.acl_id IN (
                    SELECT aid FROM acl_entries
                    WHERE gid IN ({placeholders}) AND (bits & ?) != 0
                )
            """
            params.extend(groups)
            params.append(int(permission_bit))

        query += " ORDER BY e.created_dt DESC, e.i DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        cursor = conn.execute(query, params)
        return [Entity.from_row(row) for row in cursor.fetchall()]
