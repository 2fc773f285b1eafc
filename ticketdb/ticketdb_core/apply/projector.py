"""
Read projection for TicketDB.

The ReadProjector assembles what callers see of an entity:
- current_view: the live values of every field visible for its type
- historical_view: the values as of a timestamp, replayed from the changelog

Invariants:
    - Read-only; never opens a write transaction
    - Every read is gated by READ on the entity's ACL
    - History of a deleted entity stays readable under the ACL it had
      when it was deleted
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from ..errors import NotFoundError
from ..schema.catalog import FieldCatalog
from ..store.acls import Permission
from ..store.changelog import ChangeLog
from ..store.database import Database
from ..store.entities import Entity, EntityStore
from ..store.values import value_store_for
from .acl import AccessGate
from .coordinator import OperationContext

logger = logging.getLogger(__name__)


class ReadProjector:
    """Gated read access to entities and their field values."""

    def __init__(
        self,
        database: Database,
        catalog: FieldCatalog,
        gate: AccessGate,
        changelog: ChangeLog,
        entities: Optional[EntityStore] = None,
    ) -> None:
        self._database = database
        self._catalog = catalog
        self._gate = gate
        self._changelog = changelog
        self._entities = entities or EntityStore()

    async def get_entity(self, ctx: OperationContext, entity_id: int) -> Entity:
        """Get an entity's core record.

        Raises:
            NotFoundError: If the entity does not exist
            AccessDeniedError: If the actor may not read it
        """
        with self._database.connect() as conn:
            entity = self._entities.require(conn, entity_id)
            self._gate.require(conn, ctx.actor_id, entity.acl_id, Permission.READ)
        return entity

    async def current_view(self, ctx: OperationContext, entity_id: int) -> dict[int, Any]:
        """Current values of the entity's visible fields.

        Scalars map to their value and arrays to lists of (value, count)
        tuples. Fields without data are omitted.

        Raises:
            NotFoundError: If the entity does not exist (or was deleted)
            AccessDeniedError: If the actor may not read it
        """
        view: dict[int, Any] = {}
        with self._database.connect() as conn:
            entity = self._entities.require(conn, entity_id)
            self._gate.require(conn, ctx.actor_id, entity.acl_id, Permission.READ)

            for definition in self._catalog.visible_fields(entity.type_id):
                store = value_store_for(definition.kind)
                value = store.current_value(conn, entity_id, definition)
                if value is None or (definition.is_array and not value):
                    continue
                view[definition.field_id] = value
        return view

    async def historical_view(
        self, ctx: OperationContext, entity_id: int, timestamp: int
    ) -> dict[int, Any]:
        """Values of the entity's visible fields as of ``timestamp``.

        Raises:
            NotFoundError: If the entity never existed
            AccessDeniedError: If the actor may not read it
        """
        type_id, acl_id = self._locate(entity_id)
        with self._database.connect() as conn:
            self._gate.require(conn, ctx.actor_id, acl_id, Permission.READ)

        visible = {f.field_id for f in self._catalog.visible_fields(type_id)}
        values = self._changelog.as_of(entity_id, timestamp, self._catalog)
        return {fid: value for fid, value in values.items() if fid in visible}

    async def entities_of_type(
        self,
        ctx: OperationContext,
        type_id: int,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Entity]:
        """Entities of a type the actor can read, newest first."""
        self._catalog.entity_type(type_id)
        with self._database.connect() as conn:
            return self._entities.list_by_type(
                conn,
                type_id,
                group_ids=self._gate.groups_for(ctx.actor_id),
                permission_bit=Permission.READ,
                limit=limit,
                offset=offset,
            )

    def _locate(self, entity_id: int) -> tuple[int, int]:
        """(type_id, acl_id) of a live or deleted entity."""
        with self._database.connect() as conn:
            entity = self._entities.get(conn, entity_id)
        if entity is not None:
            return entity.type_id, entity.acl_id

        deletion = self._changelog.deletion_of(entity_id)
        if deletion is None:
            raise NotFoundError(f"Entity {entity_id} not found", "entity", entity_id)
        details = json.loads(deletion.free_text or "{}")
        logger.debug(
            "Reading history of deleted entity",
            extra={"entity_id": entity_id, "deleted_at": deletion.timestamp},
        )
        return details["type_id"], details["acl_id"]
