"""
Storage layer for TicketDB.

This module provides the SQLite-backed stores:
- Database: connection factory, layout bootstrap, transactions
- EntityStore: entity core rows
- ValueStore: one typed value table per storage kind
- ChangeLog: append-only audit trail and history reconstruction
- RelationMaintainer: symmetric relation / reverse-relation rows
- AclStore: access control lists

Every write method takes the connection of the caller's transaction;
transactions are opened by the WriteCoordinator only.
"""

from .acls import AccessControlList, AclStore, Permission
from .changelog import ChangeLog, ChangeLogCursor, ChangeLogEntry
from .database import Database
from .entities import Entity, EntityStore
from .relations import RelationMaintainer, ReverseChange
from .values import ArrayDiff, FieldValueRow, KindSpec, ValueStore, value_store_for

__all__ = [
    "Database",
    "Entity",
    "EntityStore",
    "FieldValueRow",
    "ArrayDiff",
    "KindSpec",
    "ValueStore",
    "value_store_for",
    "ChangeLog",
    "ChangeLogCursor",
    "ChangeLogEntry",
    "RelationMaintainer",
    "ReverseChange",
    "AccessControlList",
    "AclStore",
    "Permission",
]
