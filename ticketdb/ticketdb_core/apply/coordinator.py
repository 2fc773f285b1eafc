"""
Write coordination for TicketDB.

The WriteCoordinator is the only component that opens write transactions.
Each public operation is one logical mutation:

    gate check -> validation -> value write -> changelog append -> reverse sync

and runs inside a single BEGIN IMMEDIATE transaction.

Invariants:
    - Access is checked before any row is touched; a denial has no side effects
    - All values of an operation are validated before the first write
    - Every changed field gets exactly one changelog entry; unchanged
      values are neither written nor logged
    - Reverse relation changes are logged on the entity that holds them
    - last_mod_at strictly increases on every committed mutation
    - Expected errors (validation, access, not found, conflict) propagate
      only after the transaction has been rolled back
    - ConstraintViolation and ConsistencyViolation roll back the whole
      operation and surface as TransactionError

How to change safely:
    - Never await inside a transaction; a suspended transaction holds the
      SQLite write lock
    - New operations must go through _transaction() so error mapping and
      rollback stay uniform
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from ..clock import Clock, SystemClock
from ..errors import (
    ConflictError,
    ConsistencyViolation,
    ConstraintViolation,
    TransactionError,
    ValidationError,
)
from ..schema.catalog import FieldCatalog
from ..schema.types import SYSTEM_SUBJECT_ID, ChangeEvent, FieldDefinition, StorageKind
from ..store.acls import Permission
from ..store.changelog import ChangeLog
from ..store.database import Database
from ..store.entities import Entity, EntityStore
from ..store.relations import RelationMaintainer, ReverseChange
from ..store.values import all_value_stores, value_store_for
from .acl import AccessGate

logger = logging.getLogger(__name__)

FieldKey = Union[int, str]


@dataclass(frozen=True)
class OperationContext:
    """Explicit per-call context.

    Attributes:
        actor_id: User performing the operation
        clock: Source of timestamps
    """

    actor_id: int
    clock: Clock = field(default_factory=SystemClock)

    def now_ms(self) -> int:
        return self.clock.now_ms()


class WriteCoordinator:
    """Orchestrates mutations of entities.

    Example:
        >>> ctx = OperationContext(actor_id=7)
        >>> kit = await coordinator.create_entity(ctx, KIT, acl_id, {"title": "Kit"})
        >>> await coordinator.update_field(ctx, kit.entity_id, "title", "Starter kit")
        'Kit'
    """

    def __init__(
        self,
        database: Database,
        catalog: FieldCatalog,
        gate: AccessGate,
        changelog: ChangeLog,
        relations: Optional[RelationMaintainer] = None,
        entities: Optional[EntityStore] = None,
    ) -> None:
        self._database = database
        self._catalog = catalog
        self._gate = gate
        self._changelog = changelog
        self._relations = relations or RelationMaintainer(catalog)
        self._entities = entities or EntityStore()

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        try:
            with self._database.transaction() as conn:
                yield conn
        except (ConstraintViolation, ConsistencyViolation) as e:
            logger.warning(
                f"{operation} rolled back: {e.message}",
                extra={"operation": operation, "error_code": e.code},
            )
            raise TransactionError(
                f"{operation} failed and was rolled back: {e.message}", operation=operation
            ) from e
        except sqlite3.OperationalError as e:
            logger.warning(f"{operation} rolled back: {e}", extra={"operation": operation})
            raise TransactionError(
                f"{operation} failed and was rolled back: {e}", operation=operation
            ) from e

    # ------------------------------------------------------------------
    # Helpers (all run inside the caller's transaction)
    # ------------------------------------------------------------------

    def _field_for(self, type_id: int, key: FieldKey) -> FieldDefinition:
        definition = self._catalog.definition_of(key)
        visible = {f.field_id for f in self._catalog.visible_fields(type_id)}
        if definition.field_id not in visible:
            raise ValidationError(
                f"Field '{definition.name}' is not available for entity type {type_id}",
                field_name=definition.name,
            )
        return definition

    def _resolve_values(
        self, type_id: int, values: Mapping[FieldKey, Any]
    ) -> dict[int, tuple[FieldDefinition, Any]]:
        """Resolve keys and validate every value before anything is written."""
        resolved: dict[int, tuple[FieldDefinition, Any]] = {}
        for key, value in values.items():
            definition = self._field_for(type_id, key)
            if definition.field_id in resolved:
                raise ValidationError(
                    f"Field '{definition.name}' given more than once", field_name=definition.name
                )
            normalized = value_store_for(definition.kind).validate(definition, value)
            resolved[definition.field_id] = (definition, normalized)
        return resolved

    def _check_targets(
        self, conn: sqlite3.Connection, resolved: Mapping[int, tuple[FieldDefinition, Any]]
    ) -> None:
        """Raise NotFoundError for relation values naming a missing entity."""
        for definition, normalized in resolved.values():
            if definition.kind != StorageKind.ENTITY_RELATION or normalized is None:
                continue
            targets = normalized.keys() if definition.is_array else (normalized,)
            for target_id in targets:
                self._entities.require(conn, target_id)

    def _is_unchanged(
        self,
        conn: sqlite3.Connection,
        entity_id: int,
        definition: FieldDefinition,
        normalized: Any,
    ) -> bool:
        rows = value_store_for(definition.kind).read(conn, entity_id, definition.field_id)
        if definition.is_array:
            return {row.value: row.count for row in rows} == normalized
        current = rows[0].value if rows else None
        return current == normalized

    def _write_field(
        self,
        conn: sqlite3.Connection,
        ctx: OperationContext,
        entity_id: int,
        definition: FieldDefinition,
        normalized: Any,
        timestamp: int,
    ) -> bool:
        """Write one validated value, log it and sync its reverse side.

        Returns:
            True if anything changed
        """
        store = value_store_for(definition.kind)

        if definition.is_array:
            diff = store.write_array(conn, entity_id, definition, list(normalized.items()))
            if diff.is_empty:
                return False
            self._changelog.append_diff(
                conn, definition.field_id, entity_id, ctx.actor_id, timestamp, diff
            )
            changes = self._relations.sync_diff(conn, entity_id, definition, diff)
            self._log_reverse_changes(conn, ctx, changes)
            return True

        old_row, new_row = store.write_one(conn, entity_id, definition, normalized)
        if old_row is None and new_row is None:
            return False
        self._changelog.append(
            conn,
            definition.field_id,
            entity_id,
            ctx.actor_id,
            timestamp,
            old_value_ref=old_row.row_id if old_row else None,
            new_value_ref=new_row.row_id if new_row else None,
        )
        return True

    def _log_reverse_changes(
        self,
        conn: sqlite3.Connection,
        ctx: OperationContext,
        changes: list[ReverseChange],
    ) -> None:
        for change in changes:
            holder = self._entities.require(conn, change.entity_id)
            timestamp = self._entities.touch(conn, holder, ctx.actor_id, ctx.now_ms())
            self._changelog.append_diff(
                conn,
                change.field_id,
                change.entity_id,
                ctx.actor_id,
                timestamp if timestamp is not None else ctx.now_ms(),
                change.diff,
            )

    def _check_required(self, type_id: int, resolved: Mapping[int, tuple[FieldDefinition, Any]]) -> None:
        missing = []
        for definition in self._catalog.visible_fields(type_id):
            if not definition.required:
                continue
            value = resolved.get(definition.field_id, (definition, None))[1]
            if value is None or (definition.is_array and not value):
                missing.append(definition.name)
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                field_name=missing[0],
                errors=[f"'{name}' is required" for name in missing],
            )

    def _template_defaults(
        self, conn: sqlite3.Connection, template: Entity
    ) -> dict[int, tuple[FieldDefinition, Any]]:
        defaults: dict[int, tuple[FieldDefinition, Any]] = {}
        for definition in self._catalog.visible_fields(template.type_id):
            store = value_store_for(definition.kind)
            value = store.current_value(conn, template.entity_id, definition)
            if definition.is_array:
                if value:
                    defaults[definition.field_id] = (definition, dict(value))
            elif value is not None:
                defaults[definition.field_id] = (definition, value)
        return defaults

    @staticmethod
    def _check_last_mod(entity: Entity, expected_last_mod: Optional[int]) -> None:
        if expected_last_mod is not None and entity.last_mod_at != expected_last_mod:
            raise ConflictError(entity.entity_id, expected_last_mod, entity.last_mod_at)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create_entity(
        self,
        ctx: OperationContext,
        type_id: Optional[int],
        acl_id: Optional[int],
        field_values: Optional[Mapping[FieldKey, Any]] = None,
        template_id: Optional[int] = None,
    ) -> Entity:
        """Create an entity with its initial field values.

        With a template, CREATE is checked on the template's ACL, type and
        ACL default to the template's, and the template's field values are
        used for fields not given in ``field_values``.

        Args:
            ctx: Operation context
            type_id: Entity type (may be None with a template)
            acl_id: ACL for the new entity (may be None with a template)
            field_values: field id or name -> value
            template_id: Template to create the entity from

        Returns:
            The created Entity

        Raises:
            AccessDeniedError: If the actor may not create
            ValidationError: If a value is invalid or a required field is missing
            NotFoundError: If the type, ACL, template, a field or a linked entity does not exist
            TransactionError: If the storage layer rejected the write
        """
        with self._transaction("create_entity") as conn:
            defaults: dict[int, tuple[FieldDefinition, Any]] = {}
            if template_id is not None:
                template = self._entities.require(conn, template_id)
                if not template.is_template:
                    raise ValidationError(f"Entity {template_id} is not a template")
                self._gate.require(conn, ctx.actor_id, template.acl_id, Permission.CREATE)
                type_id = type_id if type_id is not None else template.type_id
                acl_id = acl_id if acl_id is not None else template.acl_id
                defaults = self._template_defaults(conn, template)
                if acl_id != template.acl_id:
                    self._gate.require(conn, ctx.actor_id, acl_id, Permission.CREATE)
            else:
                if type_id is None or acl_id is None:
                    raise ValidationError("type_id and acl_id are required without a template")
                self._gate.require(conn, ctx.actor_id, acl_id, Permission.CREATE)

            self._catalog.entity_type(type_id)
            visible = {f.field_id for f in self._catalog.visible_fields(type_id)}
            resolved = {fid: v for fid, v in defaults.items() if fid in visible}
            resolved.update(self._resolve_values(type_id, field_values or {}))
            self._check_required(type_id, resolved)
            self._check_targets(conn, resolved)

            now = ctx.now_ms()
            entity = self._entities.insert(
                conn, type_id, acl_id, ctx.actor_id, now, created_from_id=template_id
            )
            self._changelog.append(
                conn, ChangeEvent.ENTITY_CREATED, entity.entity_id, ctx.actor_id, now
            )
            for definition, normalized in resolved.values():
                self._write_field(conn, ctx, entity.entity_id, definition, normalized, now)

            entity = self._entities.require(conn, entity.entity_id)

        logger.info(
            "Created entity",
            extra={
                "entity_id": entity.entity_id,
                "type_id": entity.type_id,
                "actor_id": ctx.actor_id,
                "template_id": template_id,
            },
        )
        return entity

    async def create_template(
        self,
        ctx: OperationContext,
        type_id: int,
        acl_id: int,
        name: str,
        field_values: Optional[Mapping[FieldKey, Any]] = None,
    ) -> Entity:
        """Create a template: a blueprint entity without owner or timestamps.

        Required fields are not enforced on templates.
        """
        if not name:
            raise ValidationError("Template name cannot be empty", field_name="template_name")

        with self._transaction("create_template") as conn:
            self._gate.require(conn, ctx.actor_id, acl_id, Permission.CREATE)
            self._catalog.entity_type(type_id)
            resolved = self._resolve_values(type_id, field_values or {})
            self._check_targets(conn, resolved)

            now = ctx.now_ms()
            template = self._entities.insert_template(conn, type_id, acl_id, name)
            self._changelog.append(
                conn,
                ChangeEvent.TEMPLATE_CREATED,
                template.entity_id,
                ctx.actor_id,
                now,
                free_text=name,
            )
            for definition, normalized in resolved.values():
                self._write_field(conn, ctx, template.entity_id, definition, normalized, now)

        logger.info(
            f"Created template '{name}'",
            extra={"entity_id": template.entity_id, "type_id": type_id, "actor_id": ctx.actor_id},
        )
        return template

    async def update_field(
        self,
        ctx: OperationContext,
        entity_id: int,
        field_id: FieldKey,
        new_value: Any,
        expected_last_mod: Optional[int] = None,
    ) -> Any:
        """Set one field of an entity.

        Array fields take the full new value set; (value, 0) or leaving a
        value out removes it.

        Args:
            ctx: Operation context
            entity_id: Entity to update
            field_id: Field id or name
            new_value: New value (None clears a scalar field)
            expected_last_mod: Fail with ConflictError unless the entity's
                last_mod_at still has this value

        Returns:
            The previous value (list of (value, count) for arrays)

        Raises:
            AccessDeniedError: If the actor may not update the entity
            ConflictError: If expected_last_mod is stale
            ValidationError: If the value is invalid or the field cannot be updated
            NotFoundError: If the entity, a field or a linked entity does not exist
            TransactionError: If the storage layer rejected the write
        """
        previous = self._update(ctx, entity_id, {field_id: new_value}, expected_last_mod, "update_field")
        old_value, _ = next(iter(previous.values()))
        return old_value

    async def update_fields(
        self,
        ctx: OperationContext,
        entity_id: int,
        values: Mapping[FieldKey, Any],
        expected_last_mod: Optional[int] = None,
    ) -> dict[int, Any]:
        """Set several fields of an entity in one transaction.

        last_mod_at is bumped once if anything changed.

        Returns:
            field id -> previous value, for the fields that changed
        """
        previous = self._update(ctx, entity_id, values, expected_last_mod, "update_fields")
        return {fid: old for fid, (old, changed) in previous.items() if changed}

    def _update(
        self,
        ctx: OperationContext,
        entity_id: int,
        values: Mapping[FieldKey, Any],
        expected_last_mod: Optional[int],
        operation: str,
    ) -> dict[int, tuple[Any, bool]]:
        """Shared body of the update operations.

        Returns:
            field id -> (previous value, whether it changed)
        """
        with self._transaction(operation) as conn:
            entity = self._entities.require(conn, entity_id)
            self._gate.require(conn, ctx.actor_id, entity.acl_id, Permission.UPDATE)
            self._check_last_mod(entity, expected_last_mod)
            if entity.is_template:
                raise ValidationError(f"Entity {entity_id} is a template and cannot be updated")

            resolved = self._resolve_values(entity.type_id, values)
            for definition, _ in resolved.values():
                if definition.create_only:
                    raise ValidationError(
                        f"Field '{definition.name}' cannot be changed after creation",
                        field_name=definition.name,
                    )
            self._check_targets(conn, resolved)

            previous: dict[int, tuple[Any, bool]] = {}
            pending = []
            for fid, (definition, normalized) in resolved.items():
                store = value_store_for(definition.kind)
                old_value = store.current_value(conn, entity_id, definition)
                changed = not self._is_unchanged(conn, entity_id, definition, normalized)
                previous[fid] = (old_value, changed)
                if changed:
                    pending.append((definition, normalized))

            if not pending:
                return previous

            timestamp = self._entities.touch(conn, entity, ctx.actor_id, ctx.now_ms())
            for definition, normalized in pending:
                self._write_field(conn, ctx, entity_id, definition, normalized, timestamp)

        logger.debug(
            "Updated entity fields",
            extra={
                "entity_id": entity_id,
                "field_ids": [d.field_id for d, _ in pending],
                "actor_id": ctx.actor_id,
            },
        )
        return previous

    async def delete_entity(self, ctx: OperationContext, entity_id: int) -> None:
        """Delete an entity.

        Value rows still referenced by the changelog are orphaned, mirror
        links on other entities are removed (and logged there), the entity
        row is deleted with its remaining value rows, and a system entry
        records the deletion. The entity's own history is left untouched.

        Raises:
            AccessDeniedError: If the actor may not delete the entity
            NotFoundError: If the entity does not exist
            TransactionError: If the storage layer rejected the write
        """
        with self._transaction("delete_entity") as conn:
            entity = self._entities.require(conn, entity_id)
            self._gate.require(conn, ctx.actor_id, entity.acl_id, Permission.DELETE)

            timestamp = self._entities.touch(conn, entity, ctx.actor_id, ctx.now_ms())
            if timestamp is None:
                timestamp = ctx.now_ms()

            orphaned = sum(store.orphan_referenced(conn, entity_id) for store in all_value_stores())
            changes = self._relations.detach_entity(conn, entity_id)
            self._log_reverse_changes(conn, ctx, changes)

            self._entities.delete(conn, entity_id)
            self._changelog.append(
                conn,
                ChangeEvent.ENTITY_DELETED,
                SYSTEM_SUBJECT_ID,
                ctx.actor_id,
                timestamp,
                old_value_ref=entity_id,
                free_text=json.dumps(
                    {
                        "type_id": entity.type_id,
                        "acl_id": entity.acl_id,
                        "template": entity.is_template,
                    },
                    separators=(",", ":"),
                ),
            )

        logger.info(
            "Deleted entity",
            extra={
                "entity_id": entity_id,
                "actor_id": ctx.actor_id,
                "orphaned_rows": orphaned,
                "detached_links": len(changes),
            },
        )

    async def set_acl(self, ctx: OperationContext, entity_id: int, acl_id: int) -> Entity:
        """Point an entity at another ACL.

        Requires UPDATE on both the current and the new ACL.
        """
        with self._transaction("set_acl") as conn:
            entity = self._entities.require(conn, entity_id)
            self._gate.require(conn, ctx.actor_id, entity.acl_id, Permission.UPDATE)
            self._gate.require(conn, ctx.actor_id, acl_id, Permission.UPDATE)
            if acl_id == entity.acl_id:
                return entity

            timestamp = self._entities.touch(conn, entity, ctx.actor_id, ctx.now_ms())
            self._entities.set_acl(conn, entity_id, acl_id)
            self._changelog.append(
                conn,
                ChangeEvent.ACL_CHANGED,
                entity_id,
                ctx.actor_id,
                timestamp if timestamp is not None else ctx.now_ms(),
                old_value_ref=entity.acl_id,
                new_value_ref=acl_id,
            )
            entity = self._entities.require(conn, entity_id)

        logger.info(
            "Changed entity ACL",
            extra={"entity_id": entity_id, "acl_id": acl_id, "actor_id": ctx.actor_id},
        )
        return entity
